"""
Pydantic schemas for RSVP API request/response validation.
"""

from datetime import date, datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from backend.src.models import RsvpStatus


class RsvpRequest(BaseModel):
    """Member RSVP for one occurrence."""

    status: RsvpStatus
    guest_count: int = Field(default=0, ge=0, le=50)
    notes: Optional[str] = Field(default=None, max_length=2000)

    model_config = {
        "json_schema_extra": {
            "example": {"status": "attending", "guest_count": 1}
        }
    }


class GuestRsvpRequest(RsvpRequest):
    """RSVP from a non-member, identified by email."""

    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RsvpResponse(BaseModel):
    """Stored RSVP."""

    guid: str = Field(..., description="RSVP GUID (rsv_xxx)")
    instance_date: date
    member_id: Optional[int] = None
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None
    status: str
    guest_count: int
    notes: Optional[str] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class RsvpSummaryResponse(BaseModel):
    """Attendance totals for one occurrence."""

    instance_date: date
    counts: Dict[str, int] = Field(default_factory=dict)
    headcount: int = 0
    max_attendees: Optional[int] = None
    is_full: bool = False

    model_config = {"from_attributes": True}
