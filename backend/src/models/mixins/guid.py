"""
GUID mixin for SQLAlchemy models.

Gives series and RSVP rows a stable external identifier so internal
integer keys never leave the service layer. Uses UUIDv7 (time-ordered)
encoded with Crockford's Base32.

GUID Format: {prefix}_{base32_uuid}
Examples:
    - ser_01hgw2bbg0000000000000000 (EventSeries)
    - rsv_01hgw2bbg0000000000000001 (RsvpRecord)
"""

import uuid as uuid_module
from typing import ClassVar

import base32_crockford
from sqlalchemy import Column, TypeDecorator, LargeBinary
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from uuid_extensions import uuid7


class UUIDType(TypeDecorator):
    """
    Platform-independent UUID type.

    Native UUID on PostgreSQL, 16-byte LargeBinary elsewhere (SQLite tests).
    Always presents as a Python UUID object.
    """

    impl = LargeBinary
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(LargeBinary(16))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid_module.UUID):
            value = uuid_module.UUID(bytes=value) if isinstance(value, bytes) else uuid_module.UUID(str(value))
        if dialect.name == 'postgresql':
            return value
        return value.bytes

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid_module.UUID):
            return value
        if isinstance(value, bytes):
            return uuid_module.UUID(bytes=value)
        return uuid_module.UUID(str(value))


class GuidMixin:
    """
    Mixin providing GUID support for entities.

    Adds:
    - uuid: UUIDv7 column, generated on insert
    - guid: Property returning the prefixed Base32 string
    - parse_guid: Class method decoding a GUID back to a UUID

    Usage:
        class EventSeries(Base, GuidMixin):
            GUID_PREFIX = "ser"
    """

    GUID_PREFIX: ClassVar[str]

    uuid = Column(
        UUIDType(),
        nullable=False,
        unique=True,
        index=True,
        default=uuid7,
    )

    @property
    def guid(self) -> str:
        """GUID in format {prefix}_{base32_uuid}, or None before the row is flushed."""
        if self.uuid is None:
            return None
        uuid_bytes = self.uuid if isinstance(self.uuid, bytes) else self.uuid.bytes
        encoded = base32_crockford.encode(int.from_bytes(uuid_bytes, "big")).zfill(26)
        return f"{self.GUID_PREFIX}_{encoded.lower()}"

    @classmethod
    def parse_guid(cls, guid: str) -> uuid_module.UUID:
        """
        Parse a GUID string to a UUID object.

        Raises:
            ValueError: If the GUID format is invalid or prefix doesn't match
        """
        if not guid:
            raise ValueError("GUID cannot be empty")

        expected_prefix = f"{cls.GUID_PREFIX}_"
        if not guid.lower().startswith(expected_prefix):
            raise ValueError(
                f"Invalid prefix for {cls.__name__}. "
                f"Expected '{cls.GUID_PREFIX}', got '{guid.split('_')[0]}'"
            )

        encoded_part = guid[len(expected_prefix):]
        if len(encoded_part) != 26:
            raise ValueError(
                f"Invalid GUID length. Expected 26 characters after prefix, "
                f"got {len(encoded_part)}"
            )

        try:
            uuid_int = base32_crockford.decode(encoded_part.upper())
            return uuid_module.UUID(bytes=uuid_int.to_bytes(16, "big"))
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid GUID encoding: {e}")
