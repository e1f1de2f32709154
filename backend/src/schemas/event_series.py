"""
Pydantic schemas for event series API request/response validation.

Provides data validation and serialization for:
- Series creation and scoped edits
- Series responses (with description, detected preset, upcoming occurrences)
- Materialized occurrences
- Rule description requests used by event forms

Design:
- GUIDs are exposed, never internal IDs
- Scoped edits send only the fields that changed; explicit nulls clear an
  override field (inherit from the series) or, for rule, stop repeating
"""

from datetime import date, datetime, time
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from backend.src.schemas.recurrence import (
    EndCondition,
    EndType,
    Frequency,
    MonthlyPosition,
    RecurrencePreset,
    Weekday,
)
from backend.src.schemas.rsvp import RsvpResponse, RsvpSummaryResponse
from backend.src.services.instance_service import Occurrence
from backend.src.services.series_service import EditScope


AUDIENCE_PATTERN = "^(chapter|group)$"
VISIBILITY_PATTERN = "^(public|members|private)$"
STATUS_PATTERN = "^(draft|published|cancelled)$"


def _strip_title(v: Optional[str]) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError("Title cannot be empty or whitespace")
    return v.strip() if v else v


# ============================================================================
# Request Schemas
# ============================================================================


class SeriesCreate(BaseModel):
    """
    Schema for creating an event series.

    rule is canonical rule text ("FREQ=WEEKLY;BYDAY=MO;COUNT=12"); omit it
    for a single event. Clients holding preset selections build the text
    with POST /rules/describe first.
    """

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: date
    rule: Optional[str] = Field(default=None, max_length=255)

    start_time: Optional[time] = None
    end_time: Optional[time] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    is_all_day: bool = False

    location_name: Optional[str] = Field(default=None, max_length=255)
    location_address: Optional[str] = Field(default=None, max_length=500)
    is_virtual: bool = False
    virtual_link: Optional[str] = Field(default=None, max_length=500)

    audience: str = Field(default="chapter", pattern=AUDIENCE_PATTERN)
    group_id: Optional[int] = None
    visibility: str = Field(default="public", pattern=VISIBILITY_PATTERN)
    max_attendees: Optional[int] = Field(default=None, ge=1)
    rsvp_deadline: Optional[datetime] = None
    status: str = Field(default="published", pattern=STATUS_PATTERN)

    @field_validator("title")
    @classmethod
    def validate_title_not_whitespace(cls, v: str) -> str:
        return _strip_title(v)

    model_config = {
        "json_schema_extra": {
            "example": {
                "title": "Monday Night Meetup",
                "start_date": "2024-01-01",
                "rule": "FREQ=WEEKLY;BYDAY=MO",
                "start_time": "19:00:00",
                "end_time": "21:00:00",
                "timezone": "America/New_York",
                "location_name": "Community Hall",
            }
        }
    }


class SeriesEdit(BaseModel):
    """
    Schema for a scoped edit.

    Fields:
        instance_date: Occurrence the organizer was viewing
        scope: this, this_and_following or all
        expected_revision: Revision the organizer loaded (optional)
        (others): Only the fields being changed
    """

    instance_date: date
    scope: EditScope
    expected_revision: Optional[int] = Field(default=None, ge=1)

    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    start_date: Optional[date] = None
    rule: Optional[str] = Field(default=None, max_length=255)
    cancelled: Optional[bool] = None

    start_time: Optional[time] = None
    end_time: Optional[time] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    is_all_day: Optional[bool] = None

    location_name: Optional[str] = Field(default=None, max_length=255)
    location_address: Optional[str] = Field(default=None, max_length=500)
    is_virtual: Optional[bool] = None
    virtual_link: Optional[str] = Field(default=None, max_length=500)

    audience: Optional[str] = Field(default=None, pattern=AUDIENCE_PATTERN)
    group_id: Optional[int] = None
    visibility: Optional[str] = Field(default=None, pattern=VISIBILITY_PATTERN)
    max_attendees: Optional[int] = Field(default=None, ge=1)
    rsvp_deadline: Optional[datetime] = None
    status: Optional[str] = Field(default=None, pattern=STATUS_PATTERN)

    @field_validator("title")
    @classmethod
    def validate_title_not_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return _strip_title(v)

    def changes(self) -> dict:
        """Fields the client actually sent, minus the edit envelope."""
        return self.model_dump(
            exclude_unset=True,
            exclude={"instance_date", "scope", "expected_revision"},
        )

    model_config = {
        "json_schema_extra": {
            "example": {
                "instance_date": "2024-01-15",
                "scope": "this_and_following",
                "rule": "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE",
            }
        }
    }


class RuleDescribeRequest(BaseModel):
    """
    Schema for describing a rule on an event form.

    Send either rule text, or preset/canonical fields to be serialized.
    """

    anchor: date = Field(..., description="Start date the rule is anchored at")
    rule: Optional[str] = Field(default=None, max_length=255)

    preset: Optional[RecurrencePreset] = None
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(default=None, ge=1)
    by_weekday: Optional[List[Weekday]] = None
    monthly_position: Optional[MonthlyPosition] = None
    end_type: Optional[EndType] = None
    end_date: Optional[date] = None
    count: Optional[int] = Field(default=None, ge=0)

    def rule_fields(self) -> dict:
        return self.model_dump(exclude_none=True, exclude={"anchor", "rule"})


# ============================================================================
# Response Schemas
# ============================================================================


class OccurrenceResponse(BaseModel):
    """One materialized occurrence with its effective (override-merged) fields."""

    series_guid: str = Field(..., description="Series GUID (ser_xxx)")
    instance_date: date
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_override: bool
    is_recurring: bool

    title: str
    description: Optional[str] = None
    location_name: Optional[str] = None
    location_address: Optional[str] = None
    is_virtual: bool = False
    virtual_link: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    timezone: str
    is_all_day: bool = False
    max_attendees: Optional[int] = None
    rsvp_deadline: Optional[datetime] = None

    @classmethod
    def from_occurrence(cls, occurrence: Occurrence) -> "OccurrenceResponse":
        return cls(
            series_guid=occurrence.series_guid,
            instance_date=occurrence.instance_date,
            starts_at=occurrence.starts_at,
            ends_at=occurrence.ends_at,
            is_override=occurrence.is_override,
            is_recurring=occurrence.is_recurring,
            **{
                name: occurrence.fields.get(name)
                for name in (
                    "title", "description", "location_name", "location_address",
                    "is_virtual", "virtual_link", "start_time", "end_time",
                    "timezone", "is_all_day", "max_attendees", "rsvp_deadline",
                )
            }
        )


class InstanceDetailResponse(BaseModel):
    """One occurrence with its attendance summary and the caller's own RSVP."""

    occurrence: OccurrenceResponse
    rsvp: RsvpSummaryResponse
    user_rsvp: Optional[RsvpResponse] = None


class InstanceListResponse(BaseModel):
    """Occurrences of a series within a window."""

    series_guid: str
    start: date
    end: date
    instances: List[OccurrenceResponse] = Field(default_factory=list)


class SeriesResponse(BaseModel):
    """Schema for event series API responses."""

    guid: str = Field(..., description="Series GUID (ser_xxx)")
    title: str
    description: Optional[str] = None
    chapter_id: Optional[int] = None
    audience: str
    group_id: Optional[int] = None
    visibility: str
    status: str

    start_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    timezone: str
    is_all_day: bool

    location_name: Optional[str] = None
    location_address: Optional[str] = None
    is_virtual: bool
    virtual_link: Optional[str] = None
    max_attendees: Optional[int] = None
    rsvp_deadline: Optional[datetime] = None

    rule: Optional[str] = None
    series_until: Optional[date] = None
    split_from_guid: Optional[str] = None
    revision: int
    integrity_hold: bool

    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    @classmethod
    def serialize_datetime_utc(cls, v: datetime) -> str:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None

    @classmethod
    def from_series(cls, series, **extra) -> "SeriesResponse":
        data = {name: getattr(series, name) for name in SeriesResponse.model_fields if hasattr(series, name)}
        data["split_from_guid"] = series.split_from.guid if series.split_from is not None else None
        return cls(**data, **extra)

    model_config = {
        "json_schema_extra": {
            "example": {
                "guid": "ser_01hgw2bbg0000000000000001",
                "title": "Monday Night Meetup",
                "start_date": "2024-01-01",
                "rule": "FREQ=WEEKLY;BYDAY=MO",
                "timezone": "America/New_York",
                "revision": 1,
            }
        }
    }


class SeriesDetailResponse(SeriesResponse):
    """Series with its rule description, detected preset and next occurrences."""

    rule_description: str = ""
    preset: Optional[RecurrencePreset] = None
    end: EndCondition = Field(default_factory=EndCondition)
    upcoming: List[OccurrenceResponse] = Field(default_factory=list)


class EditResponse(BaseModel):
    """
    Result of a scoped edit.

    split is true when a this_and_following edit created new_series.
    """

    split: bool = False
    series: SeriesResponse
    new_series: Optional[SeriesResponse] = None
    occurrence: Optional[OccurrenceResponse] = None


class RuleDescribeResponse(BaseModel):
    """Canonical rule text with everything an event form displays for it."""

    rule: str
    description: str
    preset: Optional[RecurrencePreset] = None
    end: EndCondition
    preview: List[date] = Field(default_factory=list)
