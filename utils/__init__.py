"""
Utilities for the catalog admin tool.

Provides structured event logging helpers.
"""

from utils.events import EventFormatter, configure_logging, emit

__all__ = [
    'EventFormatter',
    'configure_logging',
    'emit',
]
