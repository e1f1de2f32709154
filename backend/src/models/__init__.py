"""
SQLAlchemy models for the chapter events backend.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# Create the declarative base class
# All models will inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models
from backend.src.models.event_series import EventSeries, SeriesStatus
from backend.src.models.instance_override import InstanceOverride, OVERRIDABLE_FIELDS
from backend.src.models.rsvp import RsvpRecord, RsvpStatus

# Export Base and all models
__all__ = [
    "Base",
    "EventSeries",
    "SeriesStatus",
    "InstanceOverride",
    "OVERRIDABLE_FIELDS",
    "RsvpRecord",
    "RsvpStatus",
]
