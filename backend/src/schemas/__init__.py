"""
Pydantic schemas for API request/response validation.

This module exports the schema classes used by API endpoints.
"""

from backend.src.schemas.recurrence import (
    EndCondition,
    EndType,
    Frequency,
    MonthlyPosition,
    RecurrencePreset,
    RecurrenceRule,
    Weekday,
)

__all__ = [
    "EndCondition",
    "EndType",
    "Frequency",
    "MonthlyPosition",
    "RecurrencePreset",
    "RecurrenceRule",
    "Weekday",
]
