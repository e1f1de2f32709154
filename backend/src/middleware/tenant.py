"""
Request context dependencies for chapter-scoped operations.

Provides:
- RequestContext: Dataclass carrying the acting chapter/member
- get_request_context: FastAPI dependency building the context from headers
- require_admin: FastAPI dependency rejecting callers without the admin flag

Authentication happens upstream: the authentication proxy sets the
X-Chapter-Id, X-Member-Id and X-Is-Admin headers. Services receive the
context explicitly and never read it from ambient state.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

TRUE_VALUES = {"1", "true", "yes"}


@dataclass(frozen=True)
class RequestContext:
    """
    Acting chapter and member for one request.

    Attributes:
        chapter_id: Chapter the request operates in (None for platform-wide)
        member_id: Acting member (None for anonymous guests)
        is_admin: Whether the member may edit events in the chapter

    Usage:
        @router.patch("/series/{guid}")
        async def edit_series(
            guid: str,
            ctx: RequestContext = Depends(require_admin)
        ):
            editor.edit(ctx, guid, ...)
    """

    chapter_id: Optional[int] = None
    member_id: Optional[int] = None
    is_admin: bool = False

    @classmethod
    def system(cls) -> "RequestContext":
        """Context for maintenance scripts and tests acting as an administrator."""
        return cls(is_admin=True)


def _parse_id(value: Optional[str], header: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if not value.isdigit():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} must be a positive integer"
        )
    return int(value)


async def get_request_context(
    x_chapter_id: Optional[str] = Header(default=None),
    x_member_id: Optional[str] = Header(default=None),
    x_is_admin: Optional[str] = Header(default=None),
) -> RequestContext:
    """
    FastAPI dependency to extract the request context from proxy headers.

    Raises:
        HTTPException 400: If an id header is not an integer
    """
    return RequestContext(
        chapter_id=_parse_id(x_chapter_id, "X-Chapter-Id"),
        member_id=_parse_id(x_member_id, "X-Member-Id"),
        is_admin=(x_is_admin or "").strip().lower() in TRUE_VALUES,
    )


def require_admin(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """
    FastAPI dependency that requires the admin flag.

    Raises:
        HTTPException 403: If the caller is not a chapter administrator
    """
    if not ctx.is_admin:
        logger.warning(
            "Rejected event edit without admin flag",
            extra={"chapter_id": ctx.chapter_id, "member_id": ctx.member_id}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Chapter administrator privileges required"
        )
    return ctx
