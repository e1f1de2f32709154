"""
InstanceOverride model for per-occurrence exceptions.

An override changes selected fields of one occurrence of a series, or
cancels it. NULL payload columns mean "inherit from the series".
"""

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, Time, Text,
    ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from backend.src.models import Base


# Fields an override may change for a single date
OVERRIDABLE_FIELDS = (
    "title",
    "description",
    "location_name",
    "location_address",
    "is_virtual",
    "virtual_link",
    "start_time",
    "end_time",
    "max_attendees",
    "rsvp_deadline",
)


class InstanceOverride(Base):
    """
    Per-date exception to a series.

    Attributes:
        id: Primary key
        series_id: Owning series (re-pointed on split, never its date)
        instance_date: The generated occurrence this row applies to
        cancelled: Occurrence is cancelled
        (payload): Nullable copies of OVERRIDABLE_FIELDS

    Constraints:
        - (series_id, instance_date) is unique
    """

    __tablename__ = "event_instance_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)

    series_id = Column(
        Integer,
        ForeignKey("event_series.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    instance_date = Column(Date, nullable=False)
    cancelled = Column(Boolean, default=False, nullable=False)

    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    location_name = Column(String(255), nullable=True)
    location_address = Column(String(500), nullable=True)
    is_virtual = Column(Boolean, nullable=True)
    virtual_link = Column(String(500), nullable=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    max_attendees = Column(Integer, nullable=True)
    rsvp_deadline = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    series = relationship("EventSeries", back_populates="overrides")

    __table_args__ = (
        UniqueConstraint("series_id", "instance_date", name="uq_override_series_date"),
    )

    def changed_fields(self) -> dict:
        """Payload fields this override sets (non-NULL)."""
        return {
            field: getattr(self, field)
            for field in OVERRIDABLE_FIELDS
            if getattr(self, field) is not None
        }

    def __repr__(self) -> str:
        return (
            f"<InstanceOverride(series_id={self.series_id}, "
            f"instance_date={self.instance_date}, cancelled={self.cancelled})>"
        )
