"""
Configuration module for the catalog admin tool.

Provides the environment-driven ``Settings`` object.
"""

from config.settings import (
    ConfigurationError,
    DEFAULT_LEGACY_STORAGE_HOSTS,
    Settings,
    load_settings,
)

__all__ = [
    'ConfigurationError',
    'DEFAULT_LEGACY_STORAGE_HOSTS',
    'Settings',
    'load_settings',
]
