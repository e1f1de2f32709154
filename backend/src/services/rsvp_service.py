"""
RSVP service for per-occurrence attendance.

Records who is coming to which occurrence of a series. Writes are
validated against the live occurrences computed by InstanceService;
reads re-validate so RSVPs left behind on dates a series no longer
generates (or cancelled dates) are ignored.

Design:
- Keyed by (series, instance_date, attendee); set() is an upsert, last
  write wins
- unset() is idempotent
- Only published series accept RSVPs, and only until the occurrence's
  rsvp_deadline (wall-clock time in the series timezone)
- Capacity (max_attendees) is reported, not enforced
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.src.middleware.tenant import RequestContext
from backend.src.models import EventSeries, RsvpRecord, RsvpStatus, SeriesStatus
from backend.src.services.exceptions import InvalidInstanceError, ValidationError
from backend.src.services.instance_service import InstanceService, ensure_writable
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Attendee:
    """
    Identity of an RSVP: a member id or a normalized guest email, never both.

    Usage:
        >>> Attendee.member(42)
        >>> Attendee.guest("  Pat@Example.org ")  # stored as pat@example.org
    """

    member_id: Optional[int] = None
    guest_email: Optional[str] = None

    @classmethod
    def member(cls, member_id: int) -> "Attendee":
        if not isinstance(member_id, int) or isinstance(member_id, bool) or member_id < 1:
            raise ValidationError("Member id must be a positive integer", field="member_id")
        return cls(member_id=member_id)

    @classmethod
    def guest(cls, email: str) -> "Attendee":
        normalized = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValidationError(f"Invalid guest email: {email!r}", field="guest_email")
        return cls(guest_email=normalized)

    @property
    def is_guest(self) -> bool:
        return self.guest_email is not None

    def __str__(self) -> str:
        return f"guest:{self.guest_email}" if self.is_guest else f"member:{self.member_id}"


@dataclass
class RsvpSummary:
    """Attendance totals for one occurrence."""

    instance_date: date
    counts: Dict[str, int] = field(default_factory=dict)
    headcount: int = 0
    max_attendees: Optional[int] = None

    @property
    def is_full(self) -> bool:
        return self.max_attendees is not None and self.headcount >= self.max_attendees


def _coerce_status(value: Union[RsvpStatus, str]) -> RsvpStatus:
    if isinstance(value, RsvpStatus):
        return value
    try:
        return RsvpStatus(str(value).lower())
    except ValueError:
        valid = ", ".join(s.value for s in RsvpStatus)
        raise ValidationError(f"Invalid RSVP status: {value!r}. Valid: {valid}", field="status")


def _deadline_passed(series: EventSeries, deadline: datetime, now: Optional[datetime]) -> bool:
    """Compare in naive wall-clock time of the series timezone."""
    zone = ZoneInfo(series.timezone)
    if now is None:
        now = datetime.now(zone)
    if now.tzinfo is not None:
        now = now.astimezone(zone).replace(tzinfo=None)
    if deadline.tzinfo is not None:
        deadline = deadline.astimezone(zone).replace(tzinfo=None)
    return now > deadline


class RsvpService:
    """
    Service for recording attendance per occurrence.

    Usage:
        >>> service = RsvpService(db_session)
        >>> service.set(ctx, series, date(2024, 1, 15), Attendee.member(42), "attending")
        >>> service.count(series, date(2024, 1, 15), "attending")
        1
    """

    def __init__(self, db: Session, instances: Optional[InstanceService] = None):
        """
        Initialize RSVP service.

        Args:
            db: SQLAlchemy database session
            instances: Instance service used to validate dates
        """
        self.db = db
        self.instances = instances or InstanceService(db)

    # =========================================================================
    # Writes
    # =========================================================================

    def set(
        self,
        ctx: RequestContext,
        series: EventSeries,
        instance_date: date,
        attendee: Attendee,
        status: Union[RsvpStatus, str],
        guest_count: int = 0,
        notes: Optional[str] = None,
        guest_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RsvpRecord:
        """
        Create or replace an attendee's RSVP for one occurrence.

        Args:
            ctx: Request context of the caller
            series: Series the occurrence belongs to
            instance_date: Occurrence date
            attendee: Member or guest identity
            status: attending, maybe or declined
            guest_count: Additional people the attendee brings
            notes: Free-form note
            guest_name: Display name for guest attendees
            now: Current time for the deadline check (default: the clock)

        Returns:
            The stored RsvpRecord

        Raises:
            InvalidInstanceError: If the date is not a live occurrence
            ValidationError: If status or guest_count is invalid, the series
                is not published, or the RSVP deadline has passed
            DataIntegrityError: If the series is on integrity hold
        """
        ensure_writable(series)
        status = _coerce_status(status)
        if guest_count is None or guest_count < 0:
            raise ValidationError("guest_count cannot be negative", field="guest_count")
        if series.status != SeriesStatus.PUBLISHED.value:
            raise ValidationError("Cannot RSVP to this event")

        if not self.instances.validate_instance(series, instance_date):
            logger.warning(
                f"Rejected RSVP for {series.guid} on {instance_date}: not a live occurrence",
                extra={"series_guid": series.guid, "attendee": str(attendee)}
            )
            raise InvalidInstanceError(series.guid, instance_date)

        deadline = self.instances.get_instance(series, instance_date).fields.get("rsvp_deadline")
        if deadline is not None and _deadline_passed(series, deadline, now):
            logger.warning(
                f"Rejected RSVP for {series.guid} on {instance_date}: deadline passed",
                extra={"series_guid": series.guid, "attendee": str(attendee)}
            )
            raise ValidationError("RSVP deadline has passed", field="rsvp_deadline")

        values = {
            "status": status.value,
            "guest_count": guest_count,
            "notes": notes,
            "guest_name": guest_name if attendee.is_guest else None,
        }

        record = self.get(series, instance_date, attendee)
        if record is None:
            record = RsvpRecord(
                series_id=series.id,
                instance_date=instance_date,
                member_id=attendee.member_id,
                guest_email=attendee.guest_email,
                **values
            )
            nested = self.db.begin_nested()
            try:
                self.db.add(record)
                self.db.flush()
                nested.commit()
            except IntegrityError:
                nested.rollback()
                # Concurrent insert of the same key, update it instead
                record = self.get(series, instance_date, attendee)
                if record is None:
                    raise
                self._apply(record, values)
        else:
            self._apply(record, values)

        self.db.commit()
        self.db.refresh(record)

        logger.info(
            f"Recorded RSVP for {series.guid} on {instance_date}",
            extra={
                "series_guid": series.guid,
                "instance_date": instance_date.isoformat(),
                "attendee": str(attendee),
                "status": status.value,
                "member_id": ctx.member_id,
            }
        )
        return record

    def unset(
        self,
        ctx: RequestContext,
        series: EventSeries,
        instance_date: date,
        attendee: Attendee,
    ) -> bool:
        """
        Remove an attendee's RSVP. Removing a missing RSVP is a no-op.

        Returns:
            True if a row was deleted

        Raises:
            DataIntegrityError: If the series is on integrity hold
        """
        ensure_writable(series)
        record = self.get(series, instance_date, attendee)
        if record is None:
            return False

        self.db.delete(record)
        self.db.commit()

        logger.info(
            f"Removed RSVP for {series.guid} on {instance_date}",
            extra={
                "series_guid": series.guid,
                "instance_date": instance_date.isoformat(),
                "attendee": str(attendee),
                "member_id": ctx.member_id,
            }
        )
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, series: EventSeries, instance_date: date, attendee: Attendee) -> Optional[RsvpRecord]:
        """The attendee's RSVP row, or None if they have not answered."""
        query = self.db.query(RsvpRecord).filter(
            RsvpRecord.series_id == series.id,
            RsvpRecord.instance_date == instance_date,
        )
        if attendee.is_guest:
            query = query.filter(RsvpRecord.guest_email == attendee.guest_email)
        else:
            query = query.filter(RsvpRecord.member_id == attendee.member_id)
        return query.first()

    def count(self, series: EventSeries, instance_date: date, status: Union[RsvpStatus, str]) -> int:
        """Number of RSVPs with a status for a live occurrence (0 for dates no longer live)."""
        status = _coerce_status(status)
        if not self.instances.validate_instance(series, instance_date):
            return 0
        return (
            self.db.query(func.count(RsvpRecord.id))
            .filter(
                RsvpRecord.series_id == series.id,
                RsvpRecord.instance_date == instance_date,
                RsvpRecord.status == status.value,
            )
            .scalar()
        )

    def list_for_instance(self, series: EventSeries, instance_date: date) -> List[RsvpRecord]:
        """RSVPs for a live occurrence, oldest first; empty for dates no longer live."""
        if not self.instances.validate_instance(series, instance_date):
            return []
        return (
            self.db.query(RsvpRecord)
            .filter(
                RsvpRecord.series_id == series.id,
                RsvpRecord.instance_date == instance_date,
            )
            .order_by(RsvpRecord.created_at, RsvpRecord.id)
            .all()
        )

    def summary(self, series: EventSeries, instance_date: date) -> RsvpSummary:
        """
        Attendance totals for a live occurrence.

        headcount counts attending RSVPs plus the guests they bring;
        max_attendees honors a per-date override.

        Raises:
            InvalidInstanceError: If the date is not a live occurrence
        """
        occurrence = self.instances.get_instance(series, instance_date)

        rows = (
            self.db.query(
                RsvpRecord.status,
                func.count(RsvpRecord.id),
                func.coalesce(func.sum(RsvpRecord.guest_count), 0),
            )
            .filter(
                RsvpRecord.series_id == series.id,
                RsvpRecord.instance_date == instance_date,
            )
            .group_by(RsvpRecord.status)
            .all()
        )

        counts = {s.value: 0 for s in RsvpStatus}
        headcount = 0
        for status, total, guests in rows:
            counts[status] = total
            if status == RsvpStatus.ATTENDING.value:
                headcount = total + guests

        return RsvpSummary(
            instance_date=instance_date,
            counts=counts,
            headcount=headcount,
            max_attendees=occurrence.fields.get("max_attendees"),
        )

    @staticmethod
    def _apply(record: RsvpRecord, values: dict) -> None:
        for key, value in values.items():
            setattr(record, key, value)
