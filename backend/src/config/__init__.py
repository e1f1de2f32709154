"""
Configuration module for the chapter events backend.

Provides centralized configuration for:
- Database connection
- Occurrence expansion limits
- Event form defaults
"""

from backend.src.config.settings import AppSettings, get_settings

__all__ = [
    "AppSettings",
    "get_settings",
]
