"""
RsvpRecord model for per-occurrence attendance.

Each row records one attendee's answer for one occurrence of a series.
The attendee is either a member (member_id) or a guest (guest_email,
stored lower-cased), never both.

Design Rationale:
- instance_date is validated against the live occurrences at write time
  only; rows whose date later stops being generated are kept (orphaned)
  and filtered out by readers
- Splits re-point series_id and never rewrite instance_date
"""

import enum
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Text,
    ForeignKey, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class RsvpStatus(enum.Enum):
    """Attendance answer."""
    ATTENDING = "attending"
    MAYBE = "maybe"
    DECLINED = "declined"


class RsvpRecord(Base, GuidMixin):
    """
    Attendance for one attendee at one occurrence.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid / guid: External identifier (rsv_xxx)
        series_id: Owning series
        instance_date: Occurrence date
        member_id: Member attendee (NULL for guests)
        guest_email: Normalized guest email (NULL for members)
        guest_name: Display name given by a guest
        status: attending, maybe or declined
        guest_count: Additional people the attendee brings
        notes: Free-form note

    Constraints:
        - exactly one of member_id / guest_email is set
        - (series_id, instance_date, member_id) unique
        - (series_id, instance_date, guest_email) unique
    """

    __tablename__ = "event_rsvps"

    GUID_PREFIX = "rsv"

    id = Column(Integer, primary_key=True, autoincrement=True)

    series_id = Column(
        Integer,
        ForeignKey("event_series.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    instance_date = Column(Date, nullable=False)

    member_id = Column(Integer, nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_name = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False)
    guest_count = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    series = relationship("EventSeries", back_populates="rsvps")

    __table_args__ = (
        CheckConstraint(
            "(member_id IS NULL) <> (guest_email IS NULL)",
            name="ck_rsvp_single_identity",
        ),
        CheckConstraint("guest_count >= 0", name="ck_rsvp_guest_count"),
        UniqueConstraint("series_id", "instance_date", "member_id", name="uq_rsvp_member"),
        UniqueConstraint("series_id", "instance_date", "guest_email", name="uq_rsvp_guest"),
        Index("idx_rsvp_series_date_status", "series_id", "instance_date", "status"),
    )

    @property
    def is_guest(self) -> bool:
        return self.guest_email is not None

    def __repr__(self) -> str:
        attendee = f"guest={self.guest_email}" if self.is_guest else f"member={self.member_id}"
        return (
            f"<RsvpRecord(series_id={self.series_id}, instance_date={self.instance_date}, "
            f"{attendee}, status={self.status})>"
        )
