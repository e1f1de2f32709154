"""
Middleware components for the chapter events backend.

This module provides:
- RequestContext: Dataclass carrying the acting chapter and member
- get_request_context: FastAPI dependency building the context from proxy headers
- require_admin: FastAPI dependency requiring the chapter admin flag
"""

from backend.src.middleware.tenant import RequestContext, get_request_context, require_admin

__all__ = [
    "RequestContext",
    "get_request_context",
    "require_admin",
]
