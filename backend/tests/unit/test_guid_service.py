"""
Unit tests for GuidService and the GUID mixin.

Tests cover:
- GUID encoding
- Format validation
- Parsing back to UUIDs
- Entity type lookup
- GUIDs assigned to persisted series
"""

import uuid

import pytest

from backend.src.models import EventSeries
from backend.src.services.guid import (
    GuidService,
    ENTITY_PREFIXES,
    GUID_PATTERN,
)


SAMPLE_UUID = uuid.UUID("018c3f5e-7d2a-7b4c-9e1f-0a1b2c3d4e5f")


class TestGuidEncoding:
    """Tests for GUID encoding."""

    def test_encode_uuid_with_valid_prefix(self):
        """Test encoding with every entity prefix."""
        for prefix in ENTITY_PREFIXES.keys():
            result = GuidService.encode_uuid(SAMPLE_UUID, prefix)
            assert result.startswith(f"{prefix}_")
            assert len(result) == 30  # 3 (prefix) + 1 (_) + 26 (base32)
            assert GUID_PATTERN.match(result)

    def test_encode_uuid_is_lowercase(self):
        """Test that encoded GUIDs are lowercase."""
        result = GuidService.encode_uuid(SAMPLE_UUID, "ser")
        assert result == result.lower()

    def test_encode_uuid_invalid_prefix(self):
        """Test that unknown prefixes are rejected."""
        with pytest.raises(ValueError, match="Invalid prefix"):
            GuidService.encode_uuid(SAMPLE_UUID, "evt")


class TestGuidValidation:
    """Tests for validate_guid."""

    def test_valid_guid(self):
        """Test a well-formed GUID with and without an expected prefix."""
        guid = GuidService.encode_uuid(SAMPLE_UUID, "ser")
        assert GuidService.validate_guid(guid)
        assert GuidService.validate_guid(guid, "ser")
        assert GuidService.validate_guid(guid.upper(), "ser")
        assert not GuidService.validate_guid(guid, "rsv")

    @pytest.mark.parametrize("value", [
        None,
        "",
        "ser_",
        "ser_123",
        "col_01hgw2bbg00000000000000000",
        "ser-01hgw2bbg0000000000000000",
        "ser_01hgw2bbg000000000000000u",  # U is not Crockford Base32
    ])
    def test_invalid_guid(self, value):
        """Test malformed GUIDs."""
        assert not GuidService.validate_guid(value)


class TestGuidParsing:
    """Tests for parse_guid."""

    @pytest.mark.parametrize("prefix", ["ser", "rsv"])
    def test_round_trip(self, prefix):
        """Test that parsing an encoded GUID returns the UUID."""
        guid = GuidService.encode_uuid(SAMPLE_UUID, prefix)
        assert GuidService.parse_guid(guid, prefix) == SAMPLE_UUID

    def test_prefix_mismatch(self):
        """Test parsing with the wrong expected prefix."""
        guid = GuidService.encode_uuid(SAMPLE_UUID, "rsv")
        with pytest.raises(ValueError, match="prefix mismatch"):
            GuidService.parse_guid(guid, "ser")

    def test_invalid_format(self):
        """Test parsing a malformed GUID."""
        with pytest.raises(ValueError, match="Invalid GUID format"):
            GuidService.parse_guid("ser_nope", "ser")

    def test_get_entity_type(self):
        """Test entity type lookup by prefix."""
        assert GuidService.get_entity_type("ser_01hgw2bbg0000000000000000") == "EventSeries"
        assert GuidService.get_entity_type("RSV_01hgw2bbg0000000000000000") == "RsvpRecord"
        assert GuidService.get_entity_type("xyz_01hgw2bbg0000000000000000") is None
        assert GuidService.get_entity_type("") is None


class TestModelGuids:
    """Tests for GUIDs assigned by the GUID mixin."""

    def test_series_guid_round_trips(self, sample_series):
        """Test that a persisted series' GUID parses back to its UUID."""
        series = sample_series()

        assert series.uuid.version == 7
        assert series.guid == GuidService.encode_uuid(series.uuid, "ser")
        assert EventSeries.parse_guid(series.guid) == series.uuid

    def test_series_guids_are_unique(self, sample_series):
        """Test that each series gets its own GUID."""
        guids = {sample_series(title=f"Series {i}").guid for i in range(5)}
        assert len(guids) == 5

    def test_model_parse_guid_rejects_other_prefix(self):
        """Test that the model refuses GUIDs of another entity."""
        guid = GuidService.encode_uuid(SAMPLE_UUID, "rsv")
        with pytest.raises(ValueError, match="Invalid prefix"):
            EventSeries.parse_guid(guid)
