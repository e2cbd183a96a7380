"""
Migration module for the catalog admin tool.

Moves product images from legacy storage onto the image CDN.
"""

from migration.legacy import (
    LegacyImageMigrator,
    MigrationError,
    MigrationStatus,
    MigrationSummary,
)

__all__ = [
    'LegacyImageMigrator',
    'MigrationError',
    'MigrationStatus',
    'MigrationSummary',
]
