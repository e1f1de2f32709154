"""
GUID service for entity identification.

Provides utilities for encoding, decoding and validating the Global
Unique Identifiers used in URLs and API responses.

GUID Format: {prefix}_{base32_uuid}
- prefix: 3-character entity type identifier (ser, rsv)
- base32_uuid: 26-character Crockford Base32 encoded UUIDv7
"""

import re
import uuid

import base32_crockford

# Prefix mappings for entity types
#   ser - EventSeries
#   rsv - RsvpRecord
ENTITY_PREFIXES = {
    "ser": "EventSeries",
    "rsv": "RsvpRecord",
}

# Format: {3-char prefix}_{26-char Crockford Base32}
GUID_PATTERN = re.compile(
    r"^(ser|rsv)_[0-9A-HJKMNP-TV-Za-hjkmnp-tv-z]{26}$",
    re.IGNORECASE
)


class GuidService:
    """
    Static helpers for GUID operations.

    Usage:
        >>> GuidService.validate_guid("ser_01hgw2bbg0000000000000000", "ser")
        True
    """

    @staticmethod
    def encode_uuid(uuid_value: uuid.UUID, prefix: str) -> str:
        """
        Encode a UUID to a GUID string.

        Raises:
            ValueError: If prefix is invalid
        """
        if prefix not in ENTITY_PREFIXES:
            raise ValueError(
                f"Invalid prefix '{prefix}'. "
                f"Valid prefixes: {', '.join(ENTITY_PREFIXES.keys())}"
            )

        encoded = base32_crockford.encode(int.from_bytes(uuid_value.bytes, "big"))
        return f"{prefix}_{encoded.zfill(26).lower()}"

    @staticmethod
    def validate_guid(guid: str, expected_prefix: str = None) -> bool:
        """
        Validate a GUID format.

        Args:
            guid: GUID string to validate
            expected_prefix: Optional expected prefix for type checking

        Returns:
            True if valid, False otherwise
        """
        if not guid or not GUID_PATTERN.match(guid):
            return False

        if expected_prefix:
            return guid[:3].lower() == expected_prefix.lower()

        return True

    @staticmethod
    def parse_guid(guid: str, expected_prefix: str) -> uuid.UUID:
        """
        Parse a GUID string to UUID, validating the prefix.

        Raises:
            ValueError: If format invalid or prefix doesn't match
        """
        if not GuidService.validate_guid(guid):
            raise ValueError(
                f"Invalid GUID format: {guid}. "
                f"Expected format: {{prefix}}_{{26-char base32}}"
            )

        prefix = guid[:3].lower()
        if prefix != expected_prefix.lower():
            raise ValueError(
                f"GUID prefix mismatch. "
                f"Expected '{expected_prefix}', got '{prefix}'"
            )

        try:
            uuid_int = base32_crockford.decode(guid[4:].upper())
            return uuid.UUID(bytes=uuid_int.to_bytes(16, "big"))
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid GUID encoding: {e}")

    @staticmethod
    def get_entity_type(guid: str) -> str | None:
        """Entity type name for a GUID, or None if the prefix is unknown."""
        if not guid or len(guid) < 3:
            return None
        return ENTITY_PREFIXES.get(guid[:3].lower())
