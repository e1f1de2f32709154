"""
Recurrence rule codec.

Converts between the compact rule text stored on event series
(RRULE-style, e.g. "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO;COUNT=12") and the
canonical RecurrenceRule model, maps rules to and from the named presets
offered by event forms, and renders human-readable descriptions.

Design:
- Every function here is pure: no database access, no clock
- Serialization is canonical (fixed part order, Monday-first weekdays), so
  equal rules always produce equal text
- Malformed input raises InvalidRuleError; well-formed input outside the
  supported subset raises UnsupportedRuleError
"""

import re
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from backend.src.schemas.recurrence import (
    EndCondition,
    EndType,
    Frequency,
    MonthlyPosition,
    RecurrencePreset,
    RecurrenceRule,
    Weekday,
)
from backend.src.services.exceptions import InvalidRuleError, UnsupportedRuleError


RuleInput = Union[str, RecurrenceRule]

KNOWN_KEYS = {"FREQ", "INTERVAL", "BYDAY", "UNTIL", "COUNT"}

# RFC 5545 frequencies this engine recognizes but does not schedule
UNSUPPORTED_FREQUENCIES = {"SECONDLY", "MINUTELY", "HOURLY"}

BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
UNTIL_PATTERN = re.compile(r"^(\d{8})(T\d{6}Z?)?$")

FREQUENCY_WORDS = {
    Frequency.DAILY: ("Daily", "day"),
    Frequency.WEEKLY: ("Weekly", "week"),
    Frequency.MONTHLY: ("Monthly", "month"),
    Frequency.YEARLY: ("Yearly", "year"),
}

# Presets compared by detect(), in a fixed order
TEMPLATE_PRESETS = (
    RecurrencePreset.DAILY,
    RecurrencePreset.WEEKLY,
    RecurrencePreset.BIWEEKLY,
    RecurrencePreset.MONTHLY,
)

MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


# ============================================================================
# Parsing and Formatting
# ============================================================================


def parse_rule(text: RuleInput) -> RecurrenceRule:
    """
    Parse rule text into a RecurrenceRule.

    Args:
        text: Rule text (an "RRULE:" prefix is tolerated) or an existing rule

    Returns:
        Validated RecurrenceRule

    Raises:
        InvalidRuleError: If the text is malformed
        UnsupportedRuleError: If the rule uses unsupported keys or combinations
    """
    if isinstance(text, RecurrenceRule):
        return check_supported(text)
    if not isinstance(text, str) or not text.strip():
        raise InvalidRuleError("Recurrence rule is empty")

    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]

    parts = {}
    for raw in body.split(";"):
        if not raw.strip():
            continue
        if "=" not in raw:
            raise InvalidRuleError(f"Malformed rule part '{raw.strip()}'")
        key, value = raw.split("=", 1)
        key = key.strip().upper()
        value = value.strip().upper()
        if key in parts:
            raise InvalidRuleError(f"Rule part {key} appears more than once")
        parts[key] = value

    unknown = sorted(set(parts) - KNOWN_KEYS)
    if unknown:
        raise UnsupportedRuleError(f"Unsupported rule parts: {', '.join(unknown)}")

    if "FREQ" not in parts:
        raise InvalidRuleError("Rule is missing FREQ")
    freq_value = parts["FREQ"]
    if freq_value in UNSUPPORTED_FREQUENCIES:
        raise UnsupportedRuleError(f"Frequency {freq_value} is not supported")
    try:
        frequency = Frequency(freq_value.lower())
    except ValueError:
        raise InvalidRuleError(f"Unknown frequency '{freq_value}'")

    interval = 1
    if "INTERVAL" in parts:
        interval = _parse_int(parts["INTERVAL"], "INTERVAL")
        if interval < 1:
            raise InvalidRuleError("INTERVAL must be at least 1")

    weekdays, position = (), None
    if "BYDAY" in parts:
        weekdays, position = _parse_byday(parts["BYDAY"])

    if "UNTIL" in parts and "COUNT" in parts:
        raise InvalidRuleError("A rule cannot have both UNTIL and COUNT")

    end = EndCondition()
    if "UNTIL" in parts:
        end = EndCondition.on(_parse_until(parts["UNTIL"]))
    elif "COUNT" in parts:
        count = _parse_int(parts["COUNT"], "COUNT")
        if count < 0:
            raise InvalidRuleError("COUNT cannot be negative")
        end = EndCondition.after(count)

    rule = RecurrenceRule(
        frequency=frequency,
        interval=interval,
        by_weekday=weekdays,
        monthly_position=position,
        end=end,
    )
    return check_supported(rule)


def format_rule(rule: RecurrenceRule) -> str:
    """Render a rule as canonical text."""
    check_supported(rule)
    parts = [f"FREQ={rule.frequency.value.upper()}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.by_weekday:
        if rule.monthly_position is not None:
            parts.append(f"BYDAY={rule.monthly_position.ordinal}{rule.by_weekday[0].value}")
        else:
            parts.append("BYDAY=" + ",".join(d.value for d in rule.by_weekday))
    if rule.end.end_type == EndType.ON_DATE:
        parts.append(f"UNTIL={rule.end.end_date:%Y%m%d}")
    elif rule.end.end_type == EndType.AFTER_COUNT:
        parts.append(f"COUNT={rule.end.count}")
    return ";".join(parts)


def load_rule(value: Optional[RuleInput]) -> Optional[RecurrenceRule]:
    """Parse a nullable rule column; None and blank text mean "does not repeat"."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_rule(value)


def check_supported(rule: RecurrenceRule) -> RecurrenceRule:
    """
    Reject canonical rules outside the supported subset.

    Raises:
        UnsupportedRuleError: For weekday or position combinations the
            materializer does not schedule
    """
    if rule.monthly_position is not None:
        if not rule.by_weekday:
            raise UnsupportedRuleError("monthly_position requires a weekday")
        if rule.frequency != Frequency.MONTHLY:
            raise UnsupportedRuleError("monthly_position is only supported on monthly rules")
        if len(rule.by_weekday) > 1:
            raise UnsupportedRuleError("monthly_position supports a single weekday")
    if rule.by_weekday and rule.frequency in (Frequency.DAILY, Frequency.YEARLY):
        raise UnsupportedRuleError(
            f"Weekday selection is not supported on {rule.frequency.value} rules"
        )
    return rule


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise InvalidRuleError(f"{key} must be an integer, got '{value}'")


def _parse_until(value: str) -> date:
    match = UNTIL_PATTERN.match(value)
    if not match:
        raise InvalidRuleError(f"UNTIL must be a YYYYMMDD date, got '{value}'")
    try:
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    except ValueError:
        raise InvalidRuleError(f"UNTIL is not a valid date: '{value}'")


def _parse_byday(value: str):
    tokens = [t.strip() for t in value.split(",") if t.strip()]
    if not tokens:
        raise InvalidRuleError("BYDAY is empty")

    weekdays = []
    ordinals = []
    for token in tokens:
        match = BYDAY_PATTERN.match(token)
        if not match:
            raise InvalidRuleError(f"Malformed BYDAY value '{token}'")
        if match.group(1) is not None:
            ordinal = int(match.group(1))
            if ordinal == 0:
                raise InvalidRuleError(f"Malformed BYDAY value '{token}'")
            ordinals.append(ordinal)
        weekdays.append(Weekday(match.group(2)))

    if not ordinals:
        return tuple(weekdays), None
    if len(tokens) > 1:
        raise UnsupportedRuleError("Positional BYDAY cannot be combined with other weekdays")
    try:
        return tuple(weekdays), MonthlyPosition.from_ordinal(ordinals[0])
    except ValueError:
        raise UnsupportedRuleError(f"Unsupported weekday position {ordinals[0]}")


# ============================================================================
# End Conditions
# ============================================================================


def parse_end(rule: Optional[RuleInput]) -> EndCondition:
    """
    Extract the end condition of a rule.

    A missing rule reports "never", matching an unset end selector on the form.
    """
    parsed = load_rule(rule)
    if parsed is None:
        return EndCondition()
    return parsed.end


def with_end(rule: RuleInput, end: EndCondition) -> str:
    """Return rule text with its end condition replaced."""
    return format_rule(parse_rule(rule).with_end(end))


def _end_from_fields(data: Mapping[str, Any]) -> EndCondition:
    end = data.get("end")
    if isinstance(end, EndCondition):
        return end
    if isinstance(end, Mapping):
        return EndCondition.model_validate(end)
    return EndCondition(
        end_type=data.get("end_type") or EndType.NEVER,
        end_date=data.get("end_date"),
        count=data.get("count"),
    )


# ============================================================================
# Presets
# ============================================================================


def build_preset(
    preset: Union[str, RecurrencePreset],
    anchor: date,
    end: Optional[EndCondition] = None,
    **custom: Any,
) -> RecurrenceRule:
    """
    Build the rule a preset stands for at the given anchor date.

    Args:
        preset: Preset name
        anchor: Series start date the template is derived from
        end: Optional end condition (templates carry none)
        **custom: Canonical fields, used only by the custom preset

    Raises:
        InvalidRuleError: If the preset name or custom fields are invalid
    """
    try:
        preset = RecurrencePreset(preset)
    except ValueError:
        raise InvalidRuleError(f"Unknown recurrence preset '{preset}'")
    end = end or EndCondition()
    weekday = Weekday.from_date(anchor)

    if preset == RecurrencePreset.DAILY:
        return RecurrenceRule(frequency=Frequency.DAILY, end=end)
    if preset == RecurrencePreset.WEEKLY:
        return RecurrenceRule(frequency=Frequency.WEEKLY, by_weekday=[weekday], end=end)
    if preset == RecurrencePreset.BIWEEKLY:
        return RecurrenceRule(frequency=Frequency.WEEKLY, interval=2, by_weekday=[weekday], end=end)
    if preset == RecurrencePreset.MONTHLY:
        return RecurrenceRule(
            frequency=Frequency.MONTHLY,
            by_weekday=[weekday],
            monthly_position=MonthlyPosition.for_date(anchor),
            end=end,
        )
    return _rule_from_fields(custom, end, anchor)


def detect(rule: Optional[RuleInput], anchor: date) -> Optional[RecurrencePreset]:
    """
    Name the preset a rule was built from.

    Returns:
        The matching preset when the rule's pattern equals that preset's
        template for the anchor, CUSTOM for any other rule, None when the
        series does not repeat
    """
    parsed = load_rule(rule)
    if parsed is None:
        return None
    pattern = parsed.pattern()
    for preset in TEMPLATE_PRESETS:
        if build_preset(preset, anchor) == pattern:
            return preset
    return RecurrencePreset.CUSTOM


def preset_shape(rule: RecurrenceRule) -> Optional[RecurrencePreset]:
    """Anchor-independent preset a single-weekday rule has the shape of, if any."""
    if len(rule.by_weekday) != 1:
        return None
    if rule.frequency == Frequency.WEEKLY and rule.monthly_position is None:
        return {1: RecurrencePreset.WEEKLY, 2: RecurrencePreset.BIWEEKLY}.get(rule.interval)
    if (
        rule.frequency == Frequency.MONTHLY
        and rule.interval == 1
        and rule.monthly_position not in (None, MonthlyPosition.LAST)
    ):
        return RecurrencePreset.MONTHLY
    return None


def align_to_anchor(rule: RuleInput, anchor: date) -> RecurrenceRule:
    """
    Re-derive a preset-shaped rule from a new anchor.

    Keeps the cadence and end condition, takes the weekday (and monthly
    ordinal) from the anchor. Rules of any other shape are returned as is.
    """
    parsed = parse_rule(rule)
    shape = preset_shape(parsed)
    if shape is None:
        return parsed
    return build_preset(shape, anchor, end=parsed.end)


# ============================================================================
# Serialization from form fields
# ============================================================================


def serialize(fields: Union[Mapping[str, Any], BaseModel], anchor: Optional[date] = None) -> str:
    """
    Serialize form fields into canonical rule text.

    Accepts canonical pattern fields (frequency, interval, by_weekday,
    monthly_position), end fields (end_type, end_date, count, or a nested
    end), and optionally a preset name resolved against the anchor.
    Missing pattern fields default to a daily rule with interval 1.

    Raises:
        InvalidRuleError: If the fields do not form a valid rule
        UnsupportedRuleError: If the combination is not supported
    """
    if isinstance(fields, RecurrenceRule):
        return format_rule(fields)
    data = fields.model_dump() if isinstance(fields, BaseModel) else dict(fields)

    try:
        end = _end_from_fields(data)
    except PydanticValidationError as e:
        raise InvalidRuleError(_first_error(e))

    preset = data.get("preset")
    if preset is not None and preset != RecurrencePreset.CUSTOM:
        if anchor is None:
            raise InvalidRuleError("A start date is required to build a preset rule")
        return format_rule(build_preset(preset, anchor, end=end))
    return format_rule(_rule_from_fields(data, end, anchor))


def _rule_from_fields(data: Mapping[str, Any], end: EndCondition, anchor: Optional[date]) -> RecurrenceRule:
    frequency = data.get("frequency") or Frequency.DAILY
    interval = data.get("interval")
    by_weekday = data.get("by_weekday") or ()
    try:
        frequency = Frequency(frequency.lower())
        if frequency == Frequency.WEEKLY and not by_weekday and anchor is not None:
            by_weekday = [Weekday.from_date(anchor)]
        rule = RecurrenceRule(
            frequency=frequency,
            interval=1 if interval is None else interval,
            by_weekday=by_weekday,
            monthly_position=data.get("monthly_position"),
            end=end,
        )
    except PydanticValidationError as e:
        raise InvalidRuleError(_first_error(e))
    except ValueError as e:
        raise InvalidRuleError(str(e))
    return check_supported(rule)


def _first_error(error: PydanticValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail.get("loc", ()))
    return f"{location}: {detail['msg']}" if location else detail["msg"]


# ============================================================================
# Descriptions
# ============================================================================


def describe(rule: Optional[RuleInput]) -> str:
    """
    Describe a rule in one English sentence.

    Examples:
        "Weekly on Monday, 12 times"
        "Every 2 weeks until Dec 31, 2024"
        "Monthly on the first Monday"
    """
    parsed = load_rule(rule)
    if parsed is None:
        return ""

    adverb, unit = FREQUENCY_WORDS[parsed.frequency]
    text = adverb if parsed.interval == 1 else f"Every {parsed.interval} {unit}s"

    if parsed.by_weekday:
        if parsed.monthly_position is not None:
            text += f" on the {parsed.monthly_position.value} {parsed.by_weekday[0].label}"
        else:
            text += " on " + _join_words(d.label for d in parsed.by_weekday)

    end = parsed.end
    if end.end_type == EndType.AFTER_COUNT:
        text += ", once" if end.count == 1 else f", {end.count} times"
    elif end.end_type == EndType.ON_DATE:
        text += f" until {format_day(end.end_date)}"
    return text


def format_day(value: date) -> str:
    """Format a date as "Dec 31, 2024"."""
    return f"{MONTH_ABBREVIATIONS[value.month - 1]} {value.day}, {value.year}"


def _join_words(words: Iterable[str]) -> str:
    words = list(words)
    if len(words) == 1:
        return words[0]
    return ", ".join(words[:-1]) + " and " + words[-1]
