"""
EventSeries model for recurring and single events.

An EventSeries is one logical event definition. Its occurrences are not
stored: they are materialized on demand from start_date and the rule text.
Per-date exceptions live in InstanceOverride and attendance in RsvpRecord,
both keyed by (series_id, instance_date).

Design Rationale:
- rule is canonical rule text (NULL = single occurrence on start_date)
- series_until is derived from the rule whenever it is written and lets
  range queries skip series that ended before a window
- Wall-clock start/end times plus an IANA timezone keep the local time
  stable across DST transitions
- revision backs optimistic concurrency for scoped edits and splits
- split_from_id keeps the history of "this and following" splits
- integrity_hold blocks writes to a series found inconsistent after a split
"""

import enum
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, Time, Text,
    ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class SeriesStatus(enum.Enum):
    """Publication status of a series."""
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"


# Fields an organizer may change at series level; copied into the new
# series on a split
SERIES_FIELDS = (
    "chapter_id",
    "group_id",
    "audience",
    "visibility",
    "title",
    "description",
    "location_name",
    "location_address",
    "is_virtual",
    "virtual_link",
    "start_time",
    "end_time",
    "timezone",
    "is_all_day",
    "max_attendees",
    "rsvp_deadline",
    "status",
)


class EventSeries(Base, GuidMixin):
    """
    Recurring (or single) event definition.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (ser_xxx, inherited from GuidMixin)

        Targeting Fields (opaque to the recurrence engine):
            chapter_id: Owning chapter
            audience: "chapter" or "group"
            group_id: Target group when audience is "group"
            visibility: "public", "members" or "private"

        Descriptive Fields:
            title, description, location_name, location_address,
            is_virtual, virtual_link, max_attendees, rsvp_deadline

        Time Fields:
            start_date: Anchor date of the series
            start_time: Wall-clock start (NULL for all-day)
            end_time: Wall-clock end (NULL for all-day)
            timezone: IANA timezone the wall-clock times are declared in
            is_all_day: Whether occurrences span the full day

        Recurrence Fields:
            rule: Canonical rule text (NULL = does not repeat)
            series_until: Derived last date this series can generate

        Bookkeeping:
            status: draft, published or cancelled
            split_from_id: Series this one was split from
            revision: Optimistic concurrency counter
            integrity_hold: Writes rejected pending manual repair
            created_by_member_id / updated_by_member_id: Acting members

    Relationships:
        overrides: Per-date exceptions (one-to-many, CASCADE on delete)
        rsvps: Attendance rows (one-to-many, CASCADE on delete)
        split_from: Original series of a split (many-to-one, SET NULL on delete)

    Constraints:
        - series_until >= start_date when set
    """

    __tablename__ = "event_series"

    GUID_PREFIX = "ser"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Targeting
    chapter_id = Column(Integer, nullable=True, index=True)
    audience = Column(String(20), default="chapter", nullable=False)
    group_id = Column(Integer, nullable=True)
    visibility = Column(String(20), default="public", nullable=False)

    # Descriptive
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location_name = Column(String(255), nullable=True)
    location_address = Column(String(500), nullable=True)
    is_virtual = Column(Boolean, default=False, nullable=False)
    virtual_link = Column(String(500), nullable=True)
    max_attendees = Column(Integer, nullable=True)
    rsvp_deadline = Column(DateTime, nullable=True)

    # Time
    start_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    timezone = Column(String(64), nullable=False, default="America/New_York")
    is_all_day = Column(Boolean, default=False, nullable=False)

    # Recurrence
    rule = Column(String(255), nullable=True)
    series_until = Column(Date, nullable=True, index=True)

    status = Column(String(20), default=SeriesStatus.PUBLISHED.value, nullable=False)

    split_from_id = Column(
        Integer,
        ForeignKey("event_series.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    revision = Column(Integer, default=1, nullable=False)
    integrity_hold = Column(Boolean, default=False, nullable=False)

    created_by_member_id = Column(Integer, nullable=True)
    updated_by_member_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    overrides = relationship(
        "InstanceOverride",
        back_populates="series",
        lazy="dynamic",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    rsvps = relationship(
        "RsvpRecord",
        back_populates="series",
        lazy="dynamic",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    split_from = relationship("EventSeries", remote_side=[id])

    __table_args__ = (
        CheckConstraint(
            "series_until IS NULL OR series_until >= start_date",
            name="ck_event_series_until_after_start",
        ),
        Index("idx_event_series_chapter_start", "chapter_id", "start_date"),
    )

    @property
    def is_recurring(self) -> bool:
        return bool(self.rule)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EventSeries("
            f"id={self.id}, "
            f"title='{self.title}', "
            f"start_date={self.start_date}, "
            f"rule='{self.rule}'"
            f")>"
        )

    def __str__(self) -> str:
        """Human-readable string representation."""
        return f"{self.title} ({self.start_date})"
