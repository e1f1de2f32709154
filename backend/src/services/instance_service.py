"""
Instance service for materializing series occurrences.

Expands an EventSeries rule into concrete occurrence dates inside a
window, merges per-date overrides, and answers membership questions
("is this date a live occurrence?") for the RSVP ledger and the series
editor.

Design:
- Pattern generation is delegated to python-dateutil's rrule, anchored at
  the series start_date; the anchor is always the first occurrence
- after_count is counted from the anchor, so expansion always walks the
  pattern from start_date even when the window starts later
- Dates are local calendar dates in the series timezone; wall-clock times
  are attached per occurrence, so the local start time survives DST changes
- A cancelled override removes a date from the live set but not from the
  underlying pattern
- Nothing is generated past the series horizon (max_series_years after
  start_date); bounded rules reaching beyond it are rejected on write
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterator, List, Optional
from zoneinfo import ZoneInfo

from dateutil import rrule as du_rrule
from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from backend.src.config.settings import AppSettings, get_settings
from backend.src.models import EventSeries, InstanceOverride
from backend.src.models.event_series import SERIES_FIELDS
from backend.src.schemas.recurrence import EndType, Frequency, RecurrenceRule
from backend.src.services.exceptions import DataIntegrityError, InvalidInstanceError, ValidationError
from backend.src.services.recurrence_codec import RuleInput, load_rule, parse_rule
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


DATEUTIL_FREQUENCIES = {
    Frequency.DAILY: du_rrule.DAILY,
    Frequency.WEEKLY: du_rrule.WEEKLY,
    Frequency.MONTHLY: du_rrule.MONTHLY,
    Frequency.YEARLY: du_rrule.YEARLY,
}

DATEUTIL_WEEKDAYS = (
    du_rrule.MO, du_rrule.TU, du_rrule.WE, du_rrule.TH,
    du_rrule.FR, du_rrule.SA, du_rrule.SU,
)


@dataclass
class Occurrence:
    """
    One materialized occurrence of a series.

    Attributes:
        series_id: Owning series (internal id)
        series_guid: Owning series GUID
        instance_date: Occurrence date (local to the series timezone)
        fields: Effective field values (override wins per field)
        starts_at: Timezone-aware start, None for all-day
        ends_at: Timezone-aware end, None when no end time
        is_override: An override row applies to this date
        is_recurring: The series repeats
    """

    series_id: int
    series_guid: str
    instance_date: date
    fields: Dict[str, Any] = field(default_factory=dict)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_override: bool = False
    is_recurring: bool = False


# ============================================================================
# Pattern Generation
# ============================================================================


def _dateutil_rule(anchor: date, rule: RecurrenceRule, until: Optional[date]) -> du_rrule.rrule:
    byweekday = None
    if rule.by_weekday:
        if rule.monthly_position is not None:
            weekday = DATEUTIL_WEEKDAYS[rule.by_weekday[0].number]
            byweekday = [weekday(rule.monthly_position.ordinal)]
        else:
            byweekday = [DATEUTIL_WEEKDAYS[d.number] for d in rule.by_weekday]

    return du_rrule.rrule(
        DATEUTIL_FREQUENCIES[rule.frequency],
        dtstart=datetime.combine(anchor, time()),
        interval=rule.interval,
        byweekday=byweekday,
        until=datetime.combine(until, time()) if until else None,
    )


def iter_pattern_dates(
    anchor: date,
    rule: Optional[RecurrenceRule],
    stop: Optional[date] = None,
) -> Iterator[date]:
    """
    Yield the dates a rule generates from an anchor, in increasing order.

    Overrides are not consulted. The anchor is always the first date (when
    the end condition allows any date at all) and counts toward after_count.

    Args:
        anchor: Series start date
        rule: Parsed rule, or None for a single occurrence
        stop: Inclusive upper bound; required for rules that never end
            unless the caller stops iterating itself
    """
    if rule is None:
        if stop is None or anchor <= stop:
            yield anchor
        return

    limit = rule.end.count if rule.end.end_type == EndType.AFTER_COUNT else None
    until = rule.end.end_date if rule.end.end_type == EndType.ON_DATE else None
    bounds = [d for d in (until, stop) if d is not None]
    last = min(bounds) if bounds else None

    if limit == 0 or (last is not None and anchor > last):
        return

    yield anchor
    emitted = 1
    if limit is not None and emitted >= limit:
        return

    for generated in _dateutil_rule(anchor, rule, last):
        day = generated.date()
        if day <= anchor:
            continue
        yield day
        emitted += 1
        if limit is not None and emitted >= limit:
            return


def last_pattern_date(anchor: date, rule: Optional[RecurrenceRule]) -> Optional[date]:
    """Last date the rule generates, or None if it never ends or generates nothing."""
    if rule is not None and rule.end.end_type == EndType.NEVER:
        return None
    last = None
    for day in iter_pattern_dates(anchor, rule):
        last = day
    return last


def compute_series_until(anchor: date, rule: Optional[RecurrenceRule]) -> Optional[date]:
    """
    Derive the series_until column.

    Single events end on their anchor; open-ended rules have no end;
    bounded rules end on their last generated date.
    """
    if rule is None:
        return anchor
    return last_pattern_date(anchor, rule)


def series_horizon(anchor: date, settings: Optional[AppSettings] = None) -> date:
    """Last date a series anchored at the given date may generate."""
    settings = settings or get_settings()
    if anchor.year + settings.max_series_years > date.max.year:
        return date.max
    return anchor + relativedelta(years=settings.max_series_years)


def check_extent(anchor: date, rule: Optional[RecurrenceRule], settings: Optional[AppSettings] = None) -> None:
    """
    Reject bounded rules that reach past the series horizon.

    Open-ended rules are accepted; their expansion stops at the horizon.
    The walk for after_count rules never goes past the horizon either.

    Raises:
        ValidationError: If UNTIL, or the date COUNT would end on, lies
            after the horizon
    """
    if rule is None or rule.end.end_type == EndType.NEVER:
        return
    settings = settings or get_settings()
    horizon = series_horizon(anchor, settings)

    if rule.end.end_type == EndType.ON_DATE:
        beyond = rule.end.end_date > horizon
    else:
        beyond = sum(1 for _ in iter_pattern_dates(anchor, rule, stop=horizon)) < rule.end.count
    if beyond:
        raise ValidationError(
            f"A series cannot run more than {settings.max_series_years} years past its start date",
            field="rule"
        )


def ensure_writable(series: EventSeries) -> None:
    """
    Reject writes to a series on integrity hold.

    Raises:
        DataIntegrityError: If the series was found inconsistent after a split
    """
    if series.integrity_hold:
        raise DataIntegrityError(series.guid, "writes are blocked until the series is repaired")


def preview(
    rule: RuleInput,
    anchor: date,
    count: Optional[int] = None,
    horizon_days: Optional[int] = None,
    settings: Optional[AppSettings] = None,
) -> List[date]:
    """
    First few dates of a rule, for form previews.

    Args:
        rule: Rule text or model
        anchor: Start date the rule would be anchored at
        count: Maximum dates (default: settings.preview_count)
        horizon_days: Days after the anchor to look (default: settings.preview_horizon_days)
    """
    settings = settings or get_settings()
    count = settings.preview_count if count is None else count
    if horizon_days is None:
        horizon_days = settings.preview_horizon_days
    horizon = anchor + timedelta(days=horizon_days)

    dates = []
    for day in iter_pattern_dates(anchor, parse_rule(rule), stop=horizon):
        if len(dates) >= count:
            break
        dates.append(day)
    return dates


# ============================================================================
# Instance Service
# ============================================================================


class InstanceService:
    """
    Service for materializing occurrences of event series.

    Usage:
        >>> service = InstanceService(db_session)
        >>> occurrences = service.expand(series, date(2024, 1, 1), date(2024, 1, 31))
        >>> [o.instance_date for o in occurrences]
    """

    def __init__(self, db: Session, settings: Optional[AppSettings] = None):
        """
        Initialize instance service.

        Args:
            db: SQLAlchemy database session
            settings: Application settings (default: cached settings)
        """
        self.db = db
        self.settings = settings or get_settings()

    # =========================================================================
    # Expansion
    # =========================================================================

    def expand(self, series: EventSeries, start: date, end: date) -> List[Occurrence]:
        """
        Materialize the live occurrences of a series within a window.

        Args:
            series: Series to expand
            start: First date of the window (inclusive)
            end: Last date of the window (inclusive)

        Returns:
            Occurrences in strictly increasing date order, cancelled dates
            removed, override fields merged

        Raises:
            ValidationError: If the window is inverted or too long
            InvalidRuleError / UnsupportedRuleError: If the stored rule is bad
        """
        self._validate_window(start, end)
        rule = load_rule(series.rule)
        overrides = self._overrides_by_date(series, start, end)

        occurrences = []
        for day in iter_pattern_dates(series.start_date, rule, stop=min(end, self.horizon(series))):
            if day < start:
                continue
            override = overrides.get(day)
            if override is not None and override.cancelled:
                continue
            occurrences.append(self._build_occurrence(series, day, override))

        logger.debug(
            f"Expanded series {series.guid} over {start}..{end}: {len(occurrences)} occurrences"
        )
        return occurrences

    def get_instance(self, series: EventSeries, instance_date: date) -> Occurrence:
        """
        Materialize a single live occurrence.

        Raises:
            InvalidInstanceError: If the date is not generated or is cancelled
        """
        if not self.is_pattern_date(series, instance_date):
            raise InvalidInstanceError(series.guid, instance_date)
        override = self._get_override(series, instance_date)
        if override is not None and override.cancelled:
            raise InvalidInstanceError(
                series.guid,
                instance_date,
                f"The {instance_date.isoformat()} occurrence of this event has been cancelled",
            )
        return self._build_occurrence(series, instance_date, override)

    def upcoming(
        self,
        series: EventSeries,
        today: date,
        limit: Optional[int] = None,
    ) -> List[Occurrence]:
        """Next live occurrences on or after today, within the upcoming horizon."""
        limit = self.settings.upcoming_limit if limit is None else limit
        horizon = today + timedelta(days=self.settings.upcoming_horizon_days)
        return self.expand(series, today, horizon)[:limit]

    # =========================================================================
    # Membership
    # =========================================================================

    def is_pattern_date(self, series: EventSeries, instance_date: date) -> bool:
        """True if the rule generates the date, cancelled or not."""
        if instance_date < series.start_date or instance_date > self.horizon(series):
            return False
        rule = load_rule(series.rule)
        for day in iter_pattern_dates(series.start_date, rule, stop=instance_date):
            if day == instance_date:
                return True
        return False

    def validate_instance(self, series: EventSeries, instance_date: date) -> bool:
        """
        True if the date is a live occurrence.

        A cancelled date is still part of the pattern (overrides may be kept
        for it) but is not a valid target for new RSVPs.
        """
        if not self.is_pattern_date(series, instance_date):
            return False
        override = self._get_override(series, instance_date)
        return override is None or not override.cancelled

    def previous_occurrence(self, series: EventSeries, instance_date: date) -> Optional[date]:
        """Pattern date immediately before the given date, cancellations included."""
        rule = load_rule(series.rule)
        previous = None
        for day in iter_pattern_dates(series.start_date, rule, stop=self._stop_before(series, instance_date)):
            previous = day
        return previous

    def count_before(self, series: EventSeries, instance_date: date) -> int:
        """Number of pattern dates strictly before the given date."""
        rule = load_rule(series.rule)
        return sum(
            1 for _ in iter_pattern_dates(series.start_date, rule, stop=self._stop_before(series, instance_date))
        )

    def horizon(self, series: EventSeries) -> date:
        """Last date the series may generate."""
        return series_horizon(series.start_date, self.settings)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _stop_before(self, series: EventSeries, instance_date: date) -> date:
        return min(instance_date - timedelta(days=1), self.horizon(series))

    def _validate_window(self, start: date, end: date) -> None:
        if start > end:
            raise ValidationError(
                f"Window start {start} is after window end {end}",
                field="start"
            )
        if (end - start).days + 1 > self.settings.max_window_days:
            raise ValidationError(
                f"Window cannot exceed {self.settings.max_window_days} days",
                field="end"
            )

    def _overrides_by_date(self, series: EventSeries, start: date, end: date) -> Dict[date, InstanceOverride]:
        rows = (
            self.db.query(InstanceOverride)
            .filter(
                InstanceOverride.series_id == series.id,
                InstanceOverride.instance_date >= start,
                InstanceOverride.instance_date <= end,
            )
            .all()
        )
        return {row.instance_date: row for row in rows}

    def _get_override(self, series: EventSeries, instance_date: date) -> Optional[InstanceOverride]:
        return (
            self.db.query(InstanceOverride)
            .filter(
                InstanceOverride.series_id == series.id,
                InstanceOverride.instance_date == instance_date,
            )
            .first()
        )

    def _build_occurrence(
        self,
        series: EventSeries,
        instance_date: date,
        override: Optional[InstanceOverride],
    ) -> Occurrence:
        fields = {name: getattr(series, name) for name in SERIES_FIELDS}
        if override is not None:
            fields.update(override.changed_fields())

        starts_at = ends_at = None
        if not series.is_all_day and fields["start_time"] is not None:
            zone = ZoneInfo(series.timezone)
            starts_at = datetime.combine(instance_date, fields["start_time"], tzinfo=zone)
            if fields["end_time"] is not None:
                ends_at = datetime.combine(instance_date, fields["end_time"], tzinfo=zone)

        return Occurrence(
            series_id=series.id,
            series_guid=series.guid,
            instance_date=instance_date,
            fields=fields,
            starts_at=starts_at,
            ends_at=ends_at,
            is_override=override is not None,
            is_recurring=series.is_recurring,
        )
