"""
Series service for creating and editing event series.

Applies organizer edits under one of three scopes:
- this: a per-date override (or cancellation) of one occurrence
- all: a change to the series row itself, rule included
- this_and_following: a split into two series at the chosen occurrence

Design:
- A split is one transaction: the new series, the truncated original and
  the re-pointed override/RSVP rows commit together or not at all
- Every series mutation is a conditional UPDATE on (revision, rule) as read
  at the start of the edit; a lost race raises ConcurrentModificationError
- After a split commits, the original is checked for dates or rows past
  the split point; a failure puts it on integrity hold
- The caller's RequestContext is passed explicitly and recorded on the row
"""

import enum
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Dict, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.src.config.settings import AppSettings, get_settings
from backend.src.middleware.tenant import RequestContext
from backend.src.models import EventSeries, InstanceOverride, OVERRIDABLE_FIELDS, RsvpRecord
from backend.src.models.event_series import SERIES_FIELDS
from backend.src.schemas.recurrence import EndCondition, EndType, RecurrenceRule
from backend.src.services.exceptions import (
    ConcurrentModificationError,
    DataIntegrityError,
    InvalidInstanceError,
    NotFoundError,
    ValidationError,
)
from backend.src.services.guid import GuidService
from backend.src.services.instance_service import (
    InstanceService,
    check_extent,
    compute_series_until,
    ensure_writable,
    last_pattern_date,
)
from backend.src.services.recurrence_codec import (
    RuleInput,
    align_to_anchor,
    format_rule,
    load_rule,
)
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class EditScope(str, enum.Enum):
    """Which occurrences an edit applies to."""
    THIS = "this"
    THIS_AND_FOLLOWING = "this_and_following"
    ALL = "all"


# Series-level settings a single occurrence cannot diverge on
SERIES_ONLY_FIELDS = frozenset({
    "timezone", "is_all_day", "status", "visibility", "audience", "group_id",
})

EDITABLE_FIELDS = (
    frozenset(SERIES_FIELDS) - {"chapter_id"}
) | {"rule", "start_date", "cancelled"}

CREATE_FIELDS = (frozenset(SERIES_FIELDS) - {"chapter_id"}) | {"rule", "start_date"}


@dataclass
class EditResult:
    """
    Outcome of a scoped edit.

    Attributes:
        series: The edited series (the truncated original after a split)
        split: True if the edit split the series
        new_series: Series created by the split
        override: Override written by a "this" edit
    """

    series: EventSeries
    split: bool = False
    new_series: Optional[EventSeries] = None
    override: Optional[InstanceOverride] = None


@dataclass(frozen=True)
class _Snapshot:
    revision: int
    rule: Optional[str]


class SeriesService:
    """
    Service for event series lifecycle and scoped edits.

    Usage:
        >>> service = SeriesService(db_session)
        >>> series = service.create_series(ctx, title="Monthly Meetup",
        ...     start_date=date(2024, 1, 1), rule="FREQ=WEEKLY;BYDAY=MO")
        >>> result = service.edit(ctx, series, date(2024, 1, 15),
        ...     "this_and_following", {"rule": "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"})
        >>> result.new_series.start_date
        datetime.date(2024, 1, 15)
    """

    def __init__(
        self,
        db: Session,
        instances: Optional[InstanceService] = None,
        settings: Optional[AppSettings] = None,
    ):
        """
        Initialize series service.

        Args:
            db: SQLAlchemy database session
            instances: Instance service used for date validation
            settings: Application settings (default: cached settings)
        """
        self.db = db
        self.settings = settings or get_settings()
        self.instances = instances or InstanceService(db, self.settings)

    # =========================================================================
    # Lookup / Create / Delete
    # =========================================================================

    def get_by_guid(self, guid: str, chapter_id: Optional[int] = None) -> EventSeries:
        """
        Get a series by GUID.

        Args:
            guid: Series GUID (ser_xxx format)
            chapter_id: Restrict the lookup to a chapter when given

        Raises:
            NotFoundError: If the series does not exist (or is in another chapter)
        """
        if not GuidService.validate_guid(guid, "ser"):
            raise NotFoundError("Event series", guid)

        try:
            uuid_value = GuidService.parse_guid(guid, "ser")
        except ValueError:
            raise NotFoundError("Event series", guid)

        query = self.db.query(EventSeries).filter(EventSeries.uuid == uuid_value)
        if chapter_id is not None:
            query = query.filter(EventSeries.chapter_id == chapter_id)

        series = query.first()
        if not series:
            raise NotFoundError("Event series", guid)
        return series

    def create_series(self, ctx: RequestContext, **fields: Any) -> EventSeries:
        """
        Create a recurring or single event series.

        Args:
            ctx: Request context (chapter and acting member are recorded)
            **fields: title and start_date (required), rule text, and any
                other series field

        Returns:
            The created EventSeries

        Raises:
            ValidationError: If a field is unknown or invalid
            InvalidRuleError / UnsupportedRuleError: If the rule is bad
        """
        unknown = sorted(set(fields) - CREATE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", field=unknown[0])
        if not (fields.get("title") or "").strip():
            raise ValidationError("Title is required", field="title")
        if fields.get("start_date") is None:
            raise ValidationError("Start date is required", field="start_date")

        fields["rule"] = self._normalize_rule(fields.get("rule"))
        fields["timezone"] = self._validate_timezone(
            fields.get("timezone") or self.settings.default_timezone
        )
        self._validate_times(fields.get("start_time"), fields.get("end_time"), fields.get("is_all_day"))

        series = EventSeries(
            chapter_id=ctx.chapter_id,
            created_by_member_id=ctx.member_id,
            updated_by_member_id=ctx.member_id,
            **fields
        )
        rule = load_rule(series.rule)
        check_extent(series.start_date, rule, self.settings)
        series.series_until = compute_series_until(series.start_date, rule)

        self.db.add(series)
        self.db.commit()
        self.db.refresh(series)

        logger.info(
            f"Created event series: {series.guid} - {series.title}",
            extra={"series_guid": series.guid, "rule": series.rule, "chapter_id": ctx.chapter_id}
        )
        return series

    def delete_series(self, ctx: RequestContext, series: EventSeries) -> None:
        """Delete a series together with its overrides and RSVPs."""
        guid = series.guid
        self.db.query(InstanceOverride).filter(InstanceOverride.series_id == series.id).delete(
            synchronize_session=False
        )
        self.db.query(RsvpRecord).filter(RsvpRecord.series_id == series.id).delete(
            synchronize_session=False
        )
        self.db.delete(series)
        self.db.commit()

        logger.info(
            f"Deleted event series: {guid}",
            extra={"series_guid": guid, "member_id": ctx.member_id}
        )

    # =========================================================================
    # Scoped Edits
    # =========================================================================

    def edit(
        self,
        ctx: RequestContext,
        series: EventSeries,
        instance_date: date,
        scope: Union[EditScope, str],
        changes: Mapping[str, Any],
        expected_revision: Optional[int] = None,
    ) -> EditResult:
        """
        Apply field changes to a series under an edit scope.

        Args:
            ctx: Request context of the editor
            series: Series being edited
            instance_date: Occurrence the editor was viewing
            scope: this, this_and_following or all
            changes: Field name -> new value
            expected_revision: Revision the editor loaded; defaults to the
                revision read now

        Returns:
            EditResult (with split=True and new_series for a split)

        Raises:
            ValidationError: If the scope or changes are invalid
            InvalidInstanceError: If instance_date is not a live occurrence
            ConcurrentModificationError: If the series changed concurrently
            DataIntegrityError: If the series is (or ends up) on integrity hold
        """
        ensure_writable(series)
        try:
            scope = EditScope(scope)
        except ValueError:
            raise ValidationError(f"Invalid edit scope: {scope!r}", field="scope")

        changes = dict(changes)
        self._validate_changes(scope, changes)

        snapshot = _Snapshot(
            revision=series.revision if expected_revision is None else expected_revision,
            rule=series.rule,
        )

        if scope == EditScope.THIS:
            return self._edit_this(ctx, series, instance_date, changes, snapshot)
        if scope == EditScope.ALL:
            return self._edit_all(ctx, series, changes, snapshot)
        return self._split(ctx, series, instance_date, changes, snapshot)

    def _edit_this(
        self,
        ctx: RequestContext,
        series: EventSeries,
        instance_date: date,
        changes: Dict[str, Any],
        snapshot: _Snapshot,
    ) -> EditResult:
        # Restoring a cancelled occurrence only needs the date in the pattern
        self._require_live(series, instance_date, allow_cancelled=changes.get("cancelled") is False)

        override = (
            self.db.query(InstanceOverride)
            .filter(
                InstanceOverride.series_id == series.id,
                InstanceOverride.instance_date == instance_date,
            )
            .first()
        )
        # NULL override fields inherit from the series
        effective = {"start_time": series.start_time, "end_time": series.end_time}
        if override is not None:
            effective.update(override.changed_fields())
        effective.update({k: v for k, v in changes.items() if v is not None})
        self._validate_times(effective["start_time"], effective["end_time"], series.is_all_day)

        if override is None:
            override = InstanceOverride(series_id=series.id, instance_date=instance_date, cancelled=False)
            self.db.add(override)
        for name, value in changes.items():
            setattr(override, name, value)

        try:
            self._check_unchanged(series, snapshot)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(override)

        logger.info(
            f"Edited occurrence {instance_date} of {series.guid}",
            extra={
                "series_guid": series.guid,
                "scope": EditScope.THIS.value,
                "instance_date": instance_date.isoformat(),
                "fields": sorted(changes),
                "member_id": ctx.member_id,
            }
        )
        return EditResult(series=series, override=override)

    def _edit_all(
        self,
        ctx: RequestContext,
        series: EventSeries,
        changes: Dict[str, Any],
        snapshot: _Snapshot,
    ) -> EditResult:
        values = dict(changes)
        if "rule" in values:
            values["rule"] = self._normalize_rule(values["rule"])
        if "timezone" in values:
            values["timezone"] = self._validate_timezone(values["timezone"])
        if "title" in values and not (values["title"] or "").strip():
            raise ValidationError("Title is required", field="title")
        if values.get("start_date", series.start_date) is None:
            raise ValidationError("Start date is required", field="start_date")

        self._validate_times(
            values.get("start_time", series.start_time),
            values.get("end_time", series.end_time),
            values.get("is_all_day", series.is_all_day),
        )

        start_date = values.get("start_date", series.start_date)
        rule_text = values.get("rule", series.rule)
        rule = load_rule(rule_text)
        check_extent(start_date, rule, self.settings)
        values["series_until"] = compute_series_until(start_date, rule)

        try:
            self._conditional_update(ctx, series, snapshot, values)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(series)

        logger.info(
            f"Edited all occurrences of {series.guid}",
            extra={
                "series_guid": series.guid,
                "scope": EditScope.ALL.value,
                "fields": sorted(changes),
                "revision": series.revision,
                "member_id": ctx.member_id,
            }
        )
        return EditResult(series=series)

    def _split(
        self,
        ctx: RequestContext,
        series: EventSeries,
        split_date: date,
        changes: Dict[str, Any],
        snapshot: _Snapshot,
    ) -> EditResult:
        if not series.is_recurring:
            raise ValidationError(
                "This event does not repeat; edit the whole event instead",
                field="scope"
            )
        self._require_live(series, split_date)

        original_rule = load_rule(series.rule)
        previous = self.instances.previous_occurrence(series, split_date)
        truncated = original_rule.with_end(
            EndCondition.on(previous) if previous is not None else EndCondition.after(0)
        )

        if "rule" in changes:
            requested = self._normalize_rule(changes.pop("rule"))
            new_rule = align_to_anchor(requested, split_date) if requested else None
        else:
            new_rule = self._continue_rule(series, original_rule, split_date)

        new_series = EventSeries(
            **{name: getattr(series, name) for name in SERIES_FIELDS},
            start_date=split_date,
            rule=format_rule(new_rule) if new_rule is not None else None,
            split_from_id=series.id,
            created_by_member_id=ctx.member_id,
            updated_by_member_id=ctx.member_id,
        )
        for name, value in changes.items():
            setattr(new_series, name, value)
        if "title" in changes and not (new_series.title or "").strip():
            raise ValidationError("Title is required", field="title")
        self._validate_times(new_series.start_time, new_series.end_time, new_series.is_all_day)
        check_extent(split_date, new_rule, self.settings)
        new_series.series_until = compute_series_until(split_date, new_rule)

        try:
            self.db.add(new_series)
            self.db.flush()
            self._conditional_update(ctx, series, snapshot, {
                "rule": format_rule(truncated),
                "series_until": compute_series_until(series.start_date, truncated),
            })
            moved = self._repoint_rows(series, new_series, split_date)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.refresh(series)
        self.db.refresh(new_series)

        logger.info(
            f"Split series {series.guid} at {split_date} into {new_series.guid}",
            extra={
                "series_guid": series.guid,
                "new_series_guid": new_series.guid,
                "scope": EditScope.THIS_AND_FOLLOWING.value,
                "split_date": split_date.isoformat(),
                "rows_moved": moved,
                "member_id": ctx.member_id,
            }
        )

        self._verify_split(series, split_date)
        return EditResult(series=series, split=True, new_series=new_series)

    # =========================================================================
    # Split Helpers
    # =========================================================================

    def _continue_rule(
        self,
        series: EventSeries,
        rule: RecurrenceRule,
        split_date: date,
    ) -> RecurrenceRule:
        """The original pattern continued from the split date, with the remaining count."""
        if rule.end.end_type != EndType.AFTER_COUNT:
            return rule
        remaining = rule.end.count - self.instances.count_before(series, split_date)
        return rule.with_end(EndCondition.after(max(remaining, 0)))

    def _repoint_rows(self, series: EventSeries, new_series: EventSeries, split_date: date) -> int:
        """Move overrides and RSVPs on or after the split date to the new series."""
        moved = 0
        for model in (InstanceOverride, RsvpRecord):
            result = self.db.execute(
                update(model)
                .where(model.series_id == series.id, model.instance_date >= split_date)
                .values(series_id=new_series.id)
                .execution_options(synchronize_session=False)
            )
            moved += result.rowcount
        return moved

    def _verify_split(self, series: EventSeries, split_date: date) -> None:
        """
        Check the original no longer reaches past the split date.

        Raises:
            DataIntegrityError: After placing the series on integrity hold
        """
        problems = []
        rule = load_rule(series.rule)
        if rule is not None and rule.end.end_type == EndType.NEVER:
            problems.append("rule is still open-ended")
        else:
            last = last_pattern_date(series.start_date, rule)
            if last is not None and last >= split_date:
                problems.append(f"rule still generates {last}")

        for model in (InstanceOverride, RsvpRecord):
            leftover = (
                self.db.query(func.count(model.id))
                .filter(model.series_id == series.id, model.instance_date >= split_date)
                .scalar()
            )
            if leftover:
                problems.append(f"{leftover} {model.__tablename__} rows at or after {split_date}")

        if not problems:
            return

        detail = "; ".join(problems)
        series.integrity_hold = True
        self.db.commit()
        logger.error(
            f"Series {series.guid} inconsistent after split, placed on hold: {detail}",
            extra={"series_guid": series.guid, "split_date": split_date.isoformat()}
        )
        raise DataIntegrityError(series.guid, detail)

    # =========================================================================
    # Concurrency
    # =========================================================================

    def _conditional_update(
        self,
        ctx: RequestContext,
        series: EventSeries,
        snapshot: _Snapshot,
        values: Dict[str, Any],
    ) -> None:
        """
        Update the series row only if it still matches the snapshot.

        Raises:
            ConcurrentModificationError: If another request changed the row
        """
        rule_matches = (
            EventSeries.rule.is_(None) if snapshot.rule is None
            else EventSeries.rule == snapshot.rule
        )
        result = self.db.execute(
            update(EventSeries)
            .where(
                EventSeries.id == series.id,
                EventSeries.revision == snapshot.revision,
                rule_matches,
            )
            .values(
                revision=EventSeries.revision + 1,
                updated_by_member_id=ctx.member_id,
                **values
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._lost_race(series)

    @staticmethod
    def _locked_snapshot(series_id: int):
        """SELECT of revision and rule holding the row lock until commit."""
        return (
            select(EventSeries.revision, EventSeries.rule)
            .where(EventSeries.id == series_id)
            .with_for_update()
        )

    def _check_unchanged(self, series: EventSeries, snapshot: _Snapshot) -> None:
        """
        Re-read revision and rule under a row lock; raise if they moved.

        The lock keeps a concurrent split from committing between this
        check and the caller's commit.
        """
        current = self.db.execute(self._locked_snapshot(series.id)).one_or_none()
        if current is None or (current.revision, current.rule) != (snapshot.revision, snapshot.rule):
            self._lost_race(series)

    def _lost_race(self, series: EventSeries) -> None:
        guid = series.guid
        self.db.rollback()
        logger.warning(
            f"Concurrent modification of series {guid}",
            extra={"series_guid": guid}
        )
        raise ConcurrentModificationError(guid)

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_changes(self, scope: EditScope, changes: Dict[str, Any]) -> None:
        if not changes:
            raise ValidationError("No changes provided")

        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", field=unknown[0])

        if "start_date" in changes and scope != EditScope.ALL:
            raise ValidationError(
                "The start date can only be changed for the whole series",
                field="start_date"
            )
        if "cancelled" in changes and scope != EditScope.THIS:
            raise ValidationError(
                "Only a single occurrence can be cancelled",
                field="cancelled"
            )
        if scope == EditScope.THIS:
            if "rule" in changes:
                raise ValidationError(
                    "Recurrence can only be changed for all or following occurrences",
                    field="rule"
                )
            series_only = sorted(set(changes) & SERIES_ONLY_FIELDS)
            if series_only:
                raise ValidationError(
                    f"{', '.join(series_only)} cannot be changed for a single occurrence",
                    field=series_only[0]
                )
            invalid = sorted(set(changes) - set(OVERRIDABLE_FIELDS) - {"cancelled"})
            if invalid:
                raise ValidationError(
                    f"{', '.join(invalid)} cannot be changed for a single occurrence",
                    field=invalid[0]
                )
            if "cancelled" in changes and not isinstance(changes["cancelled"], bool):
                raise ValidationError("cancelled must be true or false", field="cancelled")

    def _require_live(self, series: EventSeries, instance_date: date, allow_cancelled: bool = False) -> None:
        check = self.instances.is_pattern_date if allow_cancelled else self.instances.validate_instance
        if not check(series, instance_date):
            logger.warning(
                f"Rejected edit of {series.guid}: {instance_date} is not a live occurrence",
                extra={"series_guid": series.guid, "instance_date": instance_date.isoformat()}
            )
            raise InvalidInstanceError(series.guid, instance_date)

    @staticmethod
    def _normalize_rule(value: Optional[RuleInput]) -> Optional[str]:
        parsed = load_rule(value)
        return format_rule(parsed) if parsed is not None else None

    @staticmethod
    def _validate_timezone(name: str) -> str:
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone: {name!r}", field="timezone")
        return name

    @staticmethod
    def _validate_times(start_time: Optional[time], end_time: Optional[time], is_all_day: Optional[bool]) -> None:
        if is_all_day:
            return
        if end_time is not None and start_time is None:
            raise ValidationError("An end time requires a start time", field="end_time")
        if start_time is not None and end_time is not None and end_time <= start_time:
            raise ValidationError("End time must be after start time", field="end_time")
