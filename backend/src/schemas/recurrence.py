"""
Pydantic schemas for recurrence rules.

Provides the canonical in-memory representation of a repeating rule:
- Frequency, weekday and monthly position enumerations
- EndCondition (never / on a date / after a count)
- RecurrenceRule (pattern fields plus end condition)
- RecurrencePreset (named shorthands offered by edit forms)

Design:
- RecurrenceRule is immutable and hashable so rules compare by value
- by_weekday is kept as a sorted tuple (Monday first) so equal sets are equal
- Text encoding/decoding lives in services.recurrence_codec
"""

import enum
from datetime import date
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


# ============================================================================
# Enums
# ============================================================================


class Frequency(str, enum.Enum):
    """Base repetition unit."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(str, enum.Enum):
    """Weekday codes, declared Monday first to match date.weekday()."""
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def number(self) -> int:
        """0 for Monday through 6 for Sunday."""
        return list(Weekday).index(self)

    @property
    def label(self) -> str:
        return WEEKDAY_NAMES[self.number]

    @classmethod
    def from_date(cls, value: date) -> "Weekday":
        return list(cls)[value.weekday()]


WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class MonthlyPosition(str, enum.Enum):
    """Ordinal of a weekday within its month."""
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"
    FIFTH = "fifth"
    LAST = "last"

    @property
    def ordinal(self) -> int:
        """RRULE ordinal: 1..5, or -1 for last."""
        return POSITION_ORDINALS[self]

    @classmethod
    def from_ordinal(cls, ordinal: int) -> "MonthlyPosition":
        for position, value in POSITION_ORDINALS.items():
            if value == ordinal:
                return position
        raise ValueError(f"No monthly position for ordinal {ordinal}")

    @classmethod
    def for_date(cls, value: date) -> "MonthlyPosition":
        """Position of the date's weekday in its month (the 15th is the third)."""
        return cls.from_ordinal((value.day - 1) // 7 + 1)


POSITION_ORDINALS = {
    MonthlyPosition.FIRST: 1,
    MonthlyPosition.SECOND: 2,
    MonthlyPosition.THIRD: 3,
    MonthlyPosition.FOURTH: 4,
    MonthlyPosition.FIFTH: 5,
    MonthlyPosition.LAST: -1,
}


class EndType(str, enum.Enum):
    """How a rule terminates."""
    NEVER = "never"
    ON_DATE = "on_date"
    AFTER_COUNT = "after_count"


class RecurrencePreset(str, enum.Enum):
    """Named rule templates offered by event forms."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


# ============================================================================
# Rule Models
# ============================================================================


class EndCondition(BaseModel):
    """
    Terminal condition of a rule.

    Exactly one shape is valid per end_type:
    - never: no end_date, no count
    - on_date: end_date set (inclusive last possible date)
    - after_count: count set (total occurrences counted from the anchor)
    """

    end_type: EndType = EndType.NEVER
    end_date: Optional[date] = None
    count: Optional[int] = Field(default=None, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_shape(self) -> "EndCondition":
        if self.end_type == EndType.ON_DATE and self.end_date is None:
            raise ValueError("end_date is required when end_type is on_date")
        if self.end_type == EndType.AFTER_COUNT and self.count is None:
            raise ValueError("count is required when end_type is after_count")
        if self.end_type != EndType.ON_DATE and self.end_date is not None:
            raise ValueError(f"end_date is not allowed when end_type is {self.end_type.value}")
        if self.end_type != EndType.AFTER_COUNT and self.count is not None:
            raise ValueError(f"count is not allowed when end_type is {self.end_type.value}")
        return self

    @classmethod
    def never(cls) -> "EndCondition":
        return cls()

    @classmethod
    def on(cls, end_date: date) -> "EndCondition":
        return cls(end_type=EndType.ON_DATE, end_date=end_date)

    @classmethod
    def after(cls, count: int) -> "EndCondition":
        return cls(end_type=EndType.AFTER_COUNT, count=count)


class RecurrenceRule(BaseModel):
    """
    Canonical repeating rule.

    Attributes:
        frequency: daily, weekly, monthly or yearly
        interval: Step between periods (1 = every period)
        by_weekday: Weekdays used by weekly and monthly rules
        monthly_position: Ordinal for monthly-by-weekday rules ("first Monday")
        end: Terminal condition
    """

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    by_weekday: Tuple[Weekday, ...] = ()
    monthly_position: Optional[MonthlyPosition] = None
    end: EndCondition = Field(default_factory=EndCondition)

    model_config = {"frozen": True}

    @field_validator("by_weekday", mode="before")
    @classmethod
    def normalize_weekdays(cls, v):
        if v is None:
            return ()
        days = {d if isinstance(d, Weekday) else Weekday(d.upper()) for d in v}
        return tuple(sorted(days, key=lambda d: d.number))

    def pattern(self) -> "RecurrenceRule":
        """The same rule with its end condition removed."""
        return self.model_copy(update={"end": EndCondition()})

    def with_end(self, end: EndCondition) -> "RecurrenceRule":
        return self.model_copy(update={"end": end})
