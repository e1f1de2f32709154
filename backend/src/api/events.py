"""
Events API endpoints for recurring chapter events.

Provides endpoints for:
- Creating, reading and deleting event series
- Expanding a series into occurrences for a date window
- Scoped edits (this / this_and_following / all), including splits
- Member and guest RSVPs per occurrence, and the admin RSVP list
- Describing a rule for event forms (description, preset, preview)

Design:
- Services raise ServiceError subclasses; this module maps them to HTTP
- Series are addressed by GUID (ser_xxx), occurrences by ISO date
- Mutations require the chapter admin flag, except RSVPs
"""

from datetime import date, datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from backend.src.config.settings import get_settings
from backend.src.db.database import get_db
from backend.src.middleware.tenant import RequestContext, get_request_context, require_admin
from backend.src.models import EventSeries
from backend.src.schemas.event_series import (
    EditResponse,
    InstanceDetailResponse,
    InstanceListResponse,
    OccurrenceResponse,
    RuleDescribeRequest,
    RuleDescribeResponse,
    SeriesCreate,
    SeriesDetailResponse,
    SeriesEdit,
    SeriesResponse,
)
from backend.src.schemas.rsvp import (
    GuestRsvpRequest,
    RsvpRequest,
    RsvpResponse,
    RsvpSummaryResponse,
)
from backend.src.services.exceptions import (
    ConflictError,
    DataIntegrityError,
    InvalidInstanceError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from backend.src.services.instance_service import preview
from backend.src.services.recurrence_codec import (
    describe,
    detect,
    format_rule,
    parse_end,
    parse_rule,
    serialize,
)
from backend.src.services.rsvp_service import Attendee, RsvpService
from backend.src.services.series_service import EditScope, SeriesService
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/events",
    tags=["Events"],
)


# ============================================================================
# Dependencies
# ============================================================================


def get_series_service(db: Session = Depends(get_db)) -> SeriesService:
    """Create SeriesService instance with database session."""
    return SeriesService(db=db)


def get_rsvp_service(series_service: SeriesService = Depends(get_series_service)) -> RsvpService:
    """Create RsvpService sharing the series service's instance service."""
    return RsvpService(db=series_service.db, instances=series_service.instances)


# ============================================================================
# Helpers
# ============================================================================


def service_error_to_http(e: ServiceError) -> HTTPException:
    """Translate a service error to an HTTP error."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, DataIntegrityError):
        return HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(e))
    if isinstance(e, ConflictError):
        headers = {"X-Retryable": "true"} if e.retryable else None
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e), headers=headers)
    if isinstance(e, (ValidationError, InvalidInstanceError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.error(f"Unmapped service error: {type(e).__name__}: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _today(series: EventSeries) -> date:
    """Current date in the series' timezone."""
    return datetime.now(ZoneInfo(series.timezone)).date()


# ============================================================================
# Series Endpoints
# ============================================================================


@router.post(
    "/series",
    response_model=SeriesResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create event series",
    description="Create a recurring or single event",
)
async def create_series(
    series_data: SeriesCreate,
    ctx: RequestContext = Depends(require_admin),
    series_service: SeriesService = Depends(get_series_service),
) -> SeriesResponse:
    """
    Create an event series.

    Raises:
        400: Invalid rule, timezone or times
        403: Caller is not a chapter administrator

    Example:
        POST /api/events/series
        {
          "title": "Monday Night Meetup",
          "start_date": "2024-01-01",
          "rule": "FREQ=WEEKLY;BYDAY=MO"
        }
    """
    try:
        series = series_service.create_series(ctx, **series_data.model_dump(exclude_none=True))
    except ServiceError as e:
        raise service_error_to_http(e)
    return SeriesResponse.from_series(series)


@router.get(
    "/series/{guid}",
    response_model=SeriesDetailResponse,
    summary="Get event series by GUID",
    description="Series details with rule description, detected preset and upcoming occurrences",
)
async def get_series(
    guid: str,
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
) -> SeriesDetailResponse:
    """Get an event series by GUID."""
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        upcoming = series_service.instances.upcoming(series, _today(series))
        return SeriesDetailResponse.from_series(
            series,
            rule_description=describe(series.rule),
            preset=detect(series.rule, series.start_date),
            end=parse_end(series.rule),
            upcoming=[OccurrenceResponse.from_occurrence(o) for o in upcoming],
        )
    except ServiceError as e:
        raise service_error_to_http(e)


@router.get(
    "/series/{guid}/instances",
    response_model=InstanceListResponse,
    summary="List occurrences",
    description="Expand a series into its live occurrences within a date window",
)
async def list_instances(
    guid: str,
    start: Optional[date] = Query(default=None, description="First date (default: today)"),
    end: Optional[date] = Query(default=None, description="Last date (default: start + upcoming horizon)"),
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
) -> InstanceListResponse:
    """
    List occurrences of a series.

    Example:
        GET /api/events/series/ser_xxx/instances?start=2024-01-01&end=2024-01-31
    """
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        start = start or _today(series)
        end = end or start + timedelta(days=get_settings().upcoming_horizon_days)
        occurrences = series_service.instances.expand(series, start, end)
    except ServiceError as e:
        raise service_error_to_http(e)

    return InstanceListResponse(
        series_guid=series.guid,
        start=start,
        end=end,
        instances=[OccurrenceResponse.from_occurrence(o) for o in occurrences],
    )


@router.get(
    "/series/{guid}/instances/{instance_date}",
    response_model=InstanceDetailResponse,
    summary="Get one occurrence",
    description="One occurrence with override fields merged and its RSVP summary",
)
async def get_instance(
    guid: str,
    instance_date: date,
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
    rsvp_service: RsvpService = Depends(get_rsvp_service),
) -> InstanceDetailResponse:
    """
    Get one occurrence.

    user_rsvp carries the calling member's own RSVP, if any.

    Raises:
        400: The date is not a live occurrence of the series
        404: Series not found
    """
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        occurrence = series_service.instances.get_instance(series, instance_date)
        summary = rsvp_service.summary(series, instance_date)
        own = None
        if ctx.member_id is not None:
            own = rsvp_service.get(series, instance_date, Attendee.member(ctx.member_id))
    except ServiceError as e:
        raise service_error_to_http(e)

    return InstanceDetailResponse(
        occurrence=OccurrenceResponse.from_occurrence(occurrence),
        rsvp=RsvpSummaryResponse.model_validate(summary),
        user_rsvp=RsvpResponse.model_validate(own) if own is not None else None,
    )


@router.get(
    "/series/{guid}/instances/{instance_date}/rsvps",
    response_model=List[RsvpResponse],
    summary="List RSVPs for an occurrence",
    description="All member and guest RSVPs for one occurrence (administrators only)",
)
async def list_rsvps(
    guid: str,
    instance_date: date,
    ctx: RequestContext = Depends(require_admin),
    series_service: SeriesService = Depends(get_series_service),
    rsvp_service: RsvpService = Depends(get_rsvp_service),
) -> List[RsvpResponse]:
    """
    List RSVPs for one occurrence, oldest first.

    Dates the series no longer generates (or cancelled dates) return an
    empty list: RSVPs left on them are not part of the event.

    Raises:
        403: Caller is not a chapter administrator
        404: Series not found
    """
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        records = rsvp_service.list_for_instance(series, instance_date)
    except ServiceError as e:
        raise service_error_to_http(e)
    return [RsvpResponse.model_validate(r) for r in records]


@router.patch(
    "/series/{guid}",
    response_model=EditResponse,
    summary="Edit event series",
    description="Apply changes to one occurrence, this and following occurrences, or the whole series",
)
async def edit_series(
    guid: str,
    edit: SeriesEdit,
    ctx: RequestContext = Depends(require_admin),
    series_service: SeriesService = Depends(get_series_service),
) -> EditResponse:
    """
    Apply a scoped edit.

    Returns:
        EditResponse; split=true with new_series for this_and_following

    Raises:
        400: Invalid changes, or instance_date is not a live occurrence
        403: Caller is not a chapter administrator
        404: Series not found
        409: The series changed concurrently (safe to retry after reloading)
        423: The series is on integrity hold

    Example:
        PATCH /api/events/series/ser_xxx
        {
          "instance_date": "2024-01-15",
          "scope": "this_and_following",
          "rule": "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"
        }
    """
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        result = series_service.edit(
            ctx,
            series,
            edit.instance_date,
            edit.scope,
            edit.changes(),
            expected_revision=edit.expected_revision,
        )

        occurrence = None
        if edit.scope == EditScope.THIS and not result.override.cancelled:
            occurrence = OccurrenceResponse.from_occurrence(
                series_service.instances.get_instance(result.series, edit.instance_date)
            )
    except ServiceError as e:
        raise service_error_to_http(e)

    return EditResponse(
        split=result.split,
        series=SeriesResponse.from_series(result.series),
        new_series=SeriesResponse.from_series(result.new_series) if result.new_series else None,
        occurrence=occurrence,
    )


@router.delete(
    "/series/{guid}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete event series",
    description="Delete a series with its overrides and RSVPs",
)
async def delete_series(
    guid: str,
    ctx: RequestContext = Depends(require_admin),
    series_service: SeriesService = Depends(get_series_service),
) -> Response:
    """Delete an event series."""
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        series_service.delete_series(ctx, series)
    except ServiceError as e:
        raise service_error_to_http(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# RSVP Endpoints
# ============================================================================


@router.put(
    "/series/{guid}/instances/{instance_date}/rsvp",
    response_model=RsvpResponse,
    summary="RSVP as a member",
)
async def set_member_rsvp(
    guid: str,
    instance_date: date,
    rsvp: RsvpRequest,
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
    rsvp_service: RsvpService = Depends(get_rsvp_service),
) -> RsvpResponse:
    """
    Record the calling member's RSVP for one occurrence.

    Raises:
        400: The date is not a live occurrence
        401: No member identity on the request
        423: The series is on integrity hold
    """
    if ctx.member_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Member identity required")
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        record = rsvp_service.set(
            ctx,
            series,
            instance_date,
            Attendee.member(ctx.member_id),
            rsvp.status,
            guest_count=rsvp.guest_count,
            notes=rsvp.notes,
        )
    except ServiceError as e:
        raise service_error_to_http(e)
    return RsvpResponse.model_validate(record)


@router.delete(
    "/series/{guid}/instances/{instance_date}/rsvp",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Withdraw a member RSVP",
)
async def unset_member_rsvp(
    guid: str,
    instance_date: date,
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
    rsvp_service: RsvpService = Depends(get_rsvp_service),
) -> Response:
    """Remove the calling member's RSVP; succeeds even if there was none."""
    if ctx.member_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Member identity required")
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        rsvp_service.unset(ctx, series, instance_date, Attendee.member(ctx.member_id))
    except ServiceError as e:
        raise service_error_to_http(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/series/{guid}/instances/{instance_date}/guest-rsvp",
    response_model=RsvpResponse,
    summary="RSVP as a guest",
)
async def set_guest_rsvp(
    guid: str,
    instance_date: date,
    rsvp: GuestRsvpRequest,
    ctx: RequestContext = Depends(get_request_context),
    series_service: SeriesService = Depends(get_series_service),
    rsvp_service: RsvpService = Depends(get_rsvp_service),
) -> RsvpResponse:
    """Record a guest RSVP, identified by email."""
    try:
        series = series_service.get_by_guid(guid, chapter_id=ctx.chapter_id)
        record = rsvp_service.set(
            ctx,
            series,
            instance_date,
            Attendee.guest(rsvp.email),
            rsvp.status,
            guest_count=rsvp.guest_count,
            notes=rsvp.notes,
            guest_name=rsvp.name,
        )
    except ServiceError as e:
        raise service_error_to_http(e)
    return RsvpResponse.model_validate(record)


# ============================================================================
# Rule Endpoints
# ============================================================================


@router.post(
    "/rules/describe",
    response_model=RuleDescribeResponse,
    summary="Describe a recurrence rule",
    description="Canonical text, human description, detected preset, end condition and preview dates",
)
async def describe_rule(request: RuleDescribeRequest) -> RuleDescribeResponse:
    """
    Describe a rule for an event form.

    Example:
        POST /api/events/rules/describe
        {"anchor": "2024-01-01", "preset": "weekly", "end_type": "after_count", "count": 12}

        Response:
        {
          "rule": "FREQ=WEEKLY;BYDAY=MO;COUNT=12",
          "description": "Weekly on Monday, 12 times",
          "preset": "weekly",
          ...
        }
    """
    try:
        if request.rule:
            text = format_rule(parse_rule(request.rule))
        else:
            text = serialize(request.rule_fields(), anchor=request.anchor)
        return RuleDescribeResponse(
            rule=text,
            description=describe(text),
            preset=detect(text, request.anchor),
            end=parse_end(text),
            preview=preview(text, request.anchor),
        )
    except ServiceError as e:
        raise service_error_to_http(e)
