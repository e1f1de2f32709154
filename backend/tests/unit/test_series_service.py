"""
Unit tests for SeriesService.

Tests cover:
- Series creation, lookup and deletion
- Change validation per edit scope
- "this" edits (overrides, cancellation)
- "all" edits (rule changes, series_until, revision)
- "this_and_following" splits (alignment, count continuation, row re-pointing)
- Optimistic concurrency (stale revision, mid-edit races)
- Integrity hold after an inconsistent split
"""

from datetime import date, time
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.dialects import postgresql

from backend.src.models import EventSeries, InstanceOverride, RsvpRecord
from backend.src.services.exceptions import (
    ConcurrentModificationError,
    DataIntegrityError,
    InvalidInstanceError,
    InvalidRuleError,
    NotFoundError,
    ValidationError,
)
from backend.src.services.instance_service import InstanceService
from backend.src.services.rsvp_service import Attendee, RsvpService
from backend.src.services.series_service import EditScope, SeriesService


JAN_1 = date(2024, 1, 1)
JAN_15 = date(2024, 1, 15)


def dates(occurrences):
    return [o.instance_date for o in occurrences]


@pytest.fixture
def series_service(test_db_session):
    """Create a SeriesService instance."""
    return SeriesService(test_db_session)


@pytest.fixture
def rsvp_service(series_service):
    """Create an RsvpService sharing the series service's instance service."""
    return RsvpService(series_service.db, instances=series_service.instances)


class TestCreateSeries:
    """Tests for create_series."""

    def test_create_recurring_series(self, series_service, admin_ctx):
        """Test creating a weekly series."""
        series = series_service.create_series(
            admin_ctx,
            title="Monday Night Meetup",
            start_date=JAN_1,
            rule="rrule:freq=weekly;byday=mo",
            start_time=time(19, 0),
            end_time=time(21, 0),
        )

        assert series.guid.startswith("ser_")
        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"
        assert series.series_until is None
        assert series.timezone == "America/New_York"
        assert series.chapter_id == 1
        assert series.created_by_member_id == 7
        assert series.revision == 1
        assert series.is_recurring

    def test_create_bounded_and_single_series(self, series_service, admin_ctx):
        """Test series_until for count-ended and single events."""
        bounded = series_service.create_series(
            admin_ctx, title="Short Course", start_date=JAN_1, rule="FREQ=WEEKLY;BYDAY=MO;COUNT=3"
        )
        single = series_service.create_series(admin_ctx, title="Gala", start_date=date(2024, 6, 1))

        assert bounded.series_until == JAN_15
        assert single.rule is None
        assert single.series_until == date(2024, 6, 1)
        assert not single.is_recurring

    @pytest.mark.parametrize("fields,error", [
        ({"title": "  "}, ValidationError),
        ({"start_date": None}, ValidationError),
        ({"rule": "FREQ=WEEKLY;INTERVAL=0"}, InvalidRuleError),
        ({"timezone": "Mars/Olympus_Mons"}, ValidationError),
        ({"start_time": time(21, 0), "end_time": time(19, 0)}, ValidationError),
        ({"end_time": time(19, 0)}, ValidationError),
        ({"colour": "red"}, ValidationError),
        ({"rule": "FREQ=DAILY;COUNT=2000000"}, ValidationError),
        ({"rule": "FREQ=DAILY;UNTIL=99991231"}, ValidationError),
    ])
    def test_create_rejects_invalid_fields(self, series_service, admin_ctx, test_db_session, fields, error):
        """Test invalid creation input."""
        data = {"title": "Meetup", "start_date": JAN_1, "rule": "FREQ=DAILY"}
        data.update(fields)

        with pytest.raises(error):
            series_service.create_series(admin_ctx, **data)
        assert test_db_session.query(EventSeries).count() == 0


class TestLookupAndDelete:
    """Tests for get_by_guid and delete_series."""

    def test_get_by_guid(self, series_service, sample_series):
        """Test lookup by GUID, scoped to a chapter."""
        series = sample_series()
        assert series_service.get_by_guid(series.guid).id == series.id
        assert series_service.get_by_guid(series.guid.upper(), chapter_id=1).id == series.id

    @pytest.mark.parametrize("guid", ["", "not-a-guid", "rsv_" + "0" * 26, "ser_" + "0" * 26])
    def test_get_by_guid_not_found(self, series_service, sample_series, guid):
        """Test malformed, wrong-type and unknown GUIDs."""
        sample_series()
        with pytest.raises(NotFoundError):
            series_service.get_by_guid(guid)

    def test_get_by_guid_other_chapter(self, series_service, sample_series):
        """Test that a series in another chapter is not found."""
        series = sample_series()
        with pytest.raises(NotFoundError):
            series_service.get_by_guid(series.guid, chapter_id=2)

    def test_delete_series_cascades(
        self, series_service, rsvp_service, sample_series, admin_ctx, member_ctx, test_db_session
    ):
        """Test that deleting a series removes its overrides and RSVPs."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "this", {"title": "Special"})
        rsvp_service.set(member_ctx, series, JAN_15, Attendee.member(42), "attending")

        series_service.delete_series(admin_ctx, series)

        assert test_db_session.query(EventSeries).count() == 0
        assert test_db_session.query(InstanceOverride).count() == 0
        assert test_db_session.query(RsvpRecord).count() == 0


class TestChangeValidation:
    """Tests for scope/field validation."""

    @pytest.mark.parametrize("scope,changes", [
        ("this", {}),
        ("this", {"colour": "red"}),
        ("this", {"rule": "FREQ=DAILY"}),
        ("this", {"timezone": "Europe/Paris"}),
        ("this", {"status": "draft"}),
        ("this", {"start_date": date(2024, 1, 16)}),
        ("this", {"cancelled": "yes"}),
        ("this_and_following", {"cancelled": True}),
        ("this_and_following", {"start_date": date(2024, 1, 16)}),
        ("all", {"cancelled": True}),
        ("sometimes", {"title": "X"}),
    ])
    def test_invalid_changes(self, series_service, sample_series, admin_ctx, test_db_session, scope, changes):
        """Test changes that are not allowed at a scope."""
        series = sample_series()
        with pytest.raises(ValidationError):
            series_service.edit(admin_ctx, series, JAN_15, scope, changes)

        assert test_db_session.query(InstanceOverride).count() == 0
        assert test_db_session.query(EventSeries).count() == 1

    def test_empty_changes_message(self, series_service, sample_series, admin_ctx):
        """Test the message for an empty change set."""
        series = sample_series()
        with pytest.raises(ValidationError, match="No changes provided"):
            series_service.edit(admin_ctx, series, JAN_15, EditScope.ALL, {})

    @pytest.mark.parametrize("scope", ["this", "this_and_following"])
    def test_off_pattern_date(self, series_service, sample_series, admin_ctx, scope):
        """Test that an instance date the rule does not generate is rejected."""
        series = sample_series()
        with pytest.raises(InvalidInstanceError):
            series_service.edit(admin_ctx, series, date(2024, 1, 16), scope, {"title": "X"})


class TestEditThis:
    """Tests for single-occurrence edits."""

    def test_override_one_occurrence(self, series_service, sample_series, admin_ctx):
        """Test that only the edited date carries the new location."""
        series = sample_series()
        result = series_service.edit(admin_ctx, series, JAN_15, "this", {"location_name": "Library"})

        assert not result.split
        assert result.override.instance_date == JAN_15

        occurrences = series_service.instances.expand(series, JAN_1, date(2024, 1, 31))
        assert dates(occurrences) == [
            date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15),
            date(2024, 1, 22), date(2024, 1, 29),
        ]
        locations = {o.instance_date: o.fields["location_name"] for o in occurrences}
        assert locations[JAN_15] == "Library"
        assert {v for d, v in locations.items() if d != JAN_15} == {"Community Hall"}

    def test_second_edit_merges(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test that a second edit on the same date updates the same override."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "this", {"location_name": "Library"})
        series_service.edit(admin_ctx, series, JAN_15, "this", {"title": "Library Night"})

        occurrence = series_service.instances.get_instance(series, JAN_15)
        assert occurrence.fields["location_name"] == "Library"
        assert occurrence.fields["title"] == "Library Night"
        assert test_db_session.query(InstanceOverride).count() == 1

    def test_null_clears_override_field(self, series_service, sample_series, admin_ctx):
        """Test that an explicit null reverts a field to the series value."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "this", {"location_name": "Library"})
        series_service.edit(admin_ctx, series, JAN_15, "this", {"location_name": None})

        occurrence = series_service.instances.get_instance(series, JAN_15)
        assert occurrence.fields["location_name"] == "Community Hall"

    def test_times_validated_on_effective_values(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test that an override start after the series end is rejected."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "this", {"start_time": time(20, 0)})

        with pytest.raises(ValidationError):
            series_service.edit(admin_ctx, series, date(2024, 1, 22), "this", {"start_time": time(22, 0)})
        assert test_db_session.query(InstanceOverride).count() == 1

    def test_this_edit_keeps_revision(self, series_service, sample_series, admin_ctx):
        """Test that an override does not touch the series row."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "this", {"title": "Special"})
        assert series.revision == 1

    def test_cancel_occurrence(self, series_service, sample_series, admin_ctx):
        """Test cancelling a single occurrence."""
        series = sample_series()
        result = series_service.edit(admin_ctx, series, JAN_15, "this", {"cancelled": True})

        assert result.override.cancelled
        assert JAN_15 not in dates(series_service.instances.expand(series, JAN_1, date(2024, 1, 31)))

        # Other changes to a cancelled date are rejected; restoring it is not
        with pytest.raises(InvalidInstanceError):
            series_service.edit(admin_ctx, series, JAN_15, "this", {"title": "Back on"})

        series_service.edit(admin_ctx, series, JAN_15, "this", {"cancelled": False})
        assert series_service.instances.validate_instance(series, JAN_15)

    def test_restore_requires_pattern_date(self, series_service, sample_series, admin_ctx):
        """Test that restoring a date outside the pattern is rejected."""
        series = sample_series()
        with pytest.raises(InvalidInstanceError):
            series_service.edit(admin_ctx, series, date(2024, 1, 16), "this", {"cancelled": False})


class TestEditAll:
    """Tests for whole-series edits."""

    def test_edit_fields(self, series_service, sample_series, admin_ctx):
        """Test changing series fields bumps the revision."""
        series = sample_series()
        result = series_service.edit(admin_ctx, series, JAN_15, "all", {"title": "Meetup v2", "max_attendees": 30})

        assert result.series.title == "Meetup v2"
        assert result.series.max_attendees == 30
        assert result.series.revision == 2
        assert result.series.updated_by_member_id == 7

    def test_edit_rule_recomputes_until(self, series_service, sample_series, admin_ctx):
        """Test that a rule change recomputes series_until."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "all", {"rule": "freq=weekly;byday=mo;count=3"})

        assert series.rule == "FREQ=WEEKLY;BYDAY=MO;COUNT=3"
        assert series.series_until == JAN_15

    def test_stop_repeating(self, series_service, sample_series, admin_ctx):
        """Test that a null rule turns the series into a single event."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_1, "all", {"rule": None})

        assert series.rule is None
        assert series.series_until == JAN_1
        assert dates(series_service.instances.expand(series, JAN_1, date(2024, 12, 31))) == [JAN_1]

    def test_move_start_date(self, series_service, sample_series, admin_ctx):
        """Test moving the anchor of a series."""
        series = sample_series(rule="FREQ=WEEKLY;BYDAY=MO;COUNT=2")
        series_service.edit(admin_ctx, series, JAN_1, "all", {"start_date": date(2024, 1, 8)})

        assert series.start_date == date(2024, 1, 8)
        assert series.series_until == JAN_15

    def test_invalid_rule_leaves_series_unchanged(self, series_service, sample_series, admin_ctx):
        """Test that a bad rule is rejected before any write."""
        series = sample_series()
        with pytest.raises(InvalidRuleError):
            series_service.edit(admin_ctx, series, JAN_15, "all", {"rule": "FREQ=WEEKLY;INTERVAL=0"})

        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"
        assert series.revision == 1

    def test_rule_past_horizon_leaves_series_unchanged(self, series_service, sample_series, admin_ctx):
        """Test that a rule ending decades out is rejected before any write."""
        series = sample_series()
        with pytest.raises(ValidationError, match="years past its start date"):
            series_service.edit(admin_ctx, series, JAN_15, "all", {"rule": "FREQ=WEEKLY;BYDAY=MO;UNTIL=21000101"})

        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"
        assert series.revision == 1

    def test_invalid_timezone(self, series_service, sample_series, admin_ctx):
        """Test that an unknown timezone is rejected."""
        series = sample_series()
        with pytest.raises(ValidationError):
            series_service.edit(admin_ctx, series, JAN_15, "all", {"timezone": "Nowhere/Special"})


class TestSplit:
    """Tests for this_and_following edits."""

    def test_split_with_new_cadence(self, series_service, sample_series, admin_ctx):
        """Test splitting a weekly series into a biweekly one."""
        series = sample_series()
        result = series_service.edit(
            admin_ctx, series, JAN_15, "this_and_following", {"rule": "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"}
        )
        original, new_series = result.series, result.new_series

        assert result.split
        assert original.rule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20240108"
        assert original.series_until == date(2024, 1, 8)
        assert original.revision == 2
        assert dates(series_service.instances.expand(original, JAN_1, date(2024, 3, 31))) == [
            date(2024, 1, 1), date(2024, 1, 8),
        ]

        assert new_series.start_date == JAN_15
        assert new_series.split_from_id == original.id
        assert new_series.title == original.title
        assert dates(series_service.instances.expand(new_series, JAN_1, date(2024, 2, 15))) == [
            date(2024, 1, 15), date(2024, 1, 29), date(2024, 2, 12),
        ]

    def test_split_preserves_dates(self, series_service, sample_series, admin_ctx):
        """Test that a split without a rule change generates the same dates."""
        series = sample_series()
        window = (JAN_1, date(2024, 3, 31))
        before = dates(series_service.instances.expand(series, *window))

        result = series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"location_name": "Library"})
        original = series_service.instances.expand(result.series, *window)
        following = series_service.instances.expand(result.new_series, *window)

        assert dates(original) + dates(following) == before
        assert {o.fields["location_name"] for o in original} == {"Community Hall"}
        assert {o.fields["location_name"] for o in following} == {"Library"}
        assert result.new_series.series_until is None

    def test_split_continues_count(self, series_service, sample_series, admin_ctx):
        """Test that a count-ended series keeps its total across a split."""
        series = sample_series(rule="FREQ=WEEKLY;BYDAY=MO;COUNT=6")
        before = dates(series_service.instances.expand(series, JAN_1, date(2024, 12, 31)))

        result = series_service.edit(admin_ctx, series, date(2024, 1, 22), "this_and_following", {"title": "Part 2"})

        assert result.new_series.rule == "FREQ=WEEKLY;BYDAY=MO;COUNT=3"
        assert result.new_series.series_until == date(2024, 2, 5)
        after = (
            dates(series_service.instances.expand(result.series, JAN_1, date(2024, 12, 31)))
            + dates(series_service.instances.expand(result.new_series, JAN_1, date(2024, 12, 31)))
        )
        assert after == before

    def test_split_at_first_occurrence(self, series_service, sample_series, admin_ctx):
        """Test that splitting at the anchor empties the original."""
        series = sample_series()
        result = series_service.edit(admin_ctx, series, JAN_1, "this_and_following", {"title": "Renamed"})

        assert result.series.rule == "FREQ=WEEKLY;BYDAY=MO;COUNT=0"
        assert result.series.series_until is None
        assert series_service.instances.expand(result.series, JAN_1, date(2024, 3, 31)) == []
        assert result.new_series.start_date == JAN_1
        assert result.new_series.title == "Renamed"

    def test_split_to_single_occurrence(self, series_service, sample_series, admin_ctx):
        """Test that a null rule makes the new series a single event."""
        series = sample_series()
        result = series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"rule": None})

        assert result.new_series.rule is None
        assert result.new_series.series_until == JAN_15
        assert dates(series_service.instances.expand(result.new_series, JAN_1, date(2024, 3, 31))) == [JAN_15]

    def test_split_repoints_rows(
        self, series_service, rsvp_service, sample_series, admin_ctx, member_ctx, test_db_session
    ):
        """Test that overrides and RSVPs from the split date on move to the new series."""
        series = sample_series()
        series_service.edit(admin_ctx, series, date(2024, 1, 22), "this", {"title": "Quiz Night"})
        rsvp_service.set(member_ctx, series, date(2024, 1, 8), Attendee.member(42), "attending")
        rsvp_service.set(member_ctx, series, date(2024, 1, 29), Attendee.member(42), "attending")

        result = series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"location_name": "Library"})
        new_series = result.new_series

        override = test_db_session.query(InstanceOverride).one()
        assert override.series_id == new_series.id
        assert override.instance_date == date(2024, 1, 22)

        rows = {r.instance_date: r.series_id for r in test_db_session.query(RsvpRecord).all()}
        assert rows == {date(2024, 1, 8): series.id, date(2024, 1, 29): new_series.id}

        assert series_service.instances.get_instance(new_series, date(2024, 1, 22)).fields["title"] == "Quiz Night"
        assert rsvp_service.count(new_series, date(2024, 1, 29), "attending") == 1
        assert rsvp_service.count(series, date(2024, 1, 8), "attending") == 1

    def test_split_single_event_rejected(self, series_service, sample_series, admin_ctx):
        """Test that a non-repeating series cannot be split."""
        series = sample_series(rule=None)
        with pytest.raises(ValidationError, match="does not repeat"):
            series_service.edit(admin_ctx, series, JAN_1, "this_and_following", {"title": "X"})

    def test_split_rule_past_horizon_rejected(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test that a new rule running past the horizon aborts the split."""
        series = sample_series()
        with pytest.raises(ValidationError, match="years past its start date"):
            series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"rule": "FREQ=DAILY;COUNT=2000000"})

        assert test_db_session.query(EventSeries).count() == 1
        test_db_session.refresh(series)
        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"
        assert series.revision == 1

    def test_split_invalid_times_rejected(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test that invalid times abort the split before any write."""
        series = sample_series()
        with pytest.raises(ValidationError):
            series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"end_time": time(18, 0)})

        assert test_db_session.query(EventSeries).count() == 1
        test_db_session.refresh(series)
        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"


class TestConcurrency:
    """Tests for optimistic concurrency on series rows."""

    def test_stale_revision(self, series_service, sample_series, admin_ctx):
        """Test that an edit based on an old revision is rejected."""
        series = sample_series()
        series_service.edit(admin_ctx, series, JAN_15, "all", {"title": "First"})

        with pytest.raises(ConcurrentModificationError) as exc_info:
            series_service.edit(admin_ctx, series, JAN_15, "all", {"title": "Second"}, expected_revision=1)

        assert exc_info.value.retryable
        assert series.title == "First"
        assert series.revision == 2

    def test_race_during_split(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test a concurrent change landing while a split is in progress."""
        series = sample_series()
        real_previous = InstanceService.previous_occurrence

        def racing(self, target, instance_date):
            test_db_session.execute(
                update(EventSeries)
                .where(EventSeries.id == target.id)
                .values(revision=EventSeries.revision + 1)
            )
            test_db_session.commit()
            return real_previous(self, target, instance_date)

        with patch.object(InstanceService, "previous_occurrence", autospec=True, side_effect=racing):
            with pytest.raises(ConcurrentModificationError):
                series_service.edit(
                    admin_ctx, series, JAN_15, "this_and_following", {"rule": "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO"}
                )

        assert test_db_session.query(EventSeries).count() == 1
        test_db_session.refresh(series)
        assert series.rule == "FREQ=WEEKLY;BYDAY=MO"
        assert series.series_until is None
        assert series.revision == 2

    def test_race_during_single_edit(self, series_service, sample_series, admin_ctx, test_db_session):
        """Test that a rule change landing during a "this" edit aborts it."""
        series = sample_series()
        real_validate = InstanceService.validate_instance

        def racing(self, target, instance_date):
            result = real_validate(self, target, instance_date)
            test_db_session.execute(
                update(EventSeries)
                .where(EventSeries.id == target.id)
                .values(rule="FREQ=WEEKLY;BYDAY=MO;UNTIL=20240108", revision=EventSeries.revision + 1)
            )
            test_db_session.commit()
            return result

        with patch.object(InstanceService, "validate_instance", autospec=True, side_effect=racing):
            with pytest.raises(ConcurrentModificationError):
                series_service.edit(admin_ctx, series, JAN_15, "this", {"title": "Special"})

        assert test_db_session.query(InstanceOverride).count() == 0

    def test_unchanged_check_locks_series_row(self):
        """Test that the re-read takes a row lock on databases that support it."""
        sql = str(SeriesService._locked_snapshot(1).compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" in sql
        assert "event_series" in sql


class TestIntegrityHold:
    """Tests for the post-split consistency check."""

    def test_partial_split_places_hold(
        self, series_service, rsvp_service, sample_series, admin_ctx, member_ctx, test_db_session
    ):
        """Test that rows left behind by a split put the original on hold."""
        series = sample_series()
        rsvp_service.set(member_ctx, series, date(2024, 1, 29), Attendee.member(42), "attending")

        with patch.object(SeriesService, "_repoint_rows", return_value=0):
            with pytest.raises(DataIntegrityError) as exc_info:
                series_service.edit(admin_ctx, series, JAN_15, "this_and_following", {"title": "Later"})

        assert exc_info.value.series_guid == series.guid
        test_db_session.refresh(series)
        assert series.integrity_hold

        new_series = test_db_session.query(EventSeries).filter(EventSeries.split_from_id == series.id).one()
        assert new_series.start_date == JAN_15
        assert not new_series.integrity_hold

    def test_held_series_rejects_writes(
        self, series_service, rsvp_service, sample_series, admin_ctx, member_ctx, test_db_session
    ):
        """Test that every write to a held series raises DataIntegrityError."""
        series = sample_series()
        series.integrity_hold = True
        test_db_session.commit()

        for scope in ("this", "all", "this_and_following"):
            with pytest.raises(DataIntegrityError):
                series_service.edit(admin_ctx, series, JAN_15, scope, {"title": "X"})
        with pytest.raises(DataIntegrityError):
            rsvp_service.set(member_ctx, series, JAN_15, Attendee.member(42), "attending")

        # Reads keep working
        assert len(series_service.instances.expand(series, JAN_1, date(2024, 1, 31))) == 5
