"""
Migration utility: legacy storage to the image CDN.

Copies product images that still live on the previous storage provider onto
the CDN and points the product records at the new URLs. Products are handled
one at a time with a fixed pause between them to stay under the provider's
rate limit. A failing product is recorded and the batch moves on.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config.settings import DEFAULT_LEGACY_STORAGE_HOSTS
from storage.cdn import DEFAULT_FOLDER, is_legacy_storage_url
from storage.products import utc_now
from utils.events import emit

logger = logging.getLogger(__name__)


@dataclass
class MigrationError:
    product: str
    error: str


@dataclass
class MigrationSummary:
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[MigrationError] = field(default_factory=list)


@dataclass
class MigrationStatus:
    total: int = 0
    cdn: int = 0
    legacy: int = 0
    other: int = 0

    @property
    def complete(self) -> bool:
        return self.legacy == 0


class LegacyImageMigrator:
    """Move product images from legacy storage to the CDN.

    Args:
        store: Product store providing ``list_records`` and ``update_product``.
        cdn: CDN client providing ``upload_from_url`` and ``owns``.
        delay_seconds: Pause between consecutive products.
        legacy_hosts: Hostname fragments identifying legacy storage URLs.
        folder: CDN folder for migrated images.
        sleep: Injected for tests.
    """

    def __init__(self, store, cdn, delay_seconds: float = 2.0,
                 legacy_hosts=DEFAULT_LEGACY_STORAGE_HOSTS, folder: str = DEFAULT_FOLDER,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.cdn = cdn
        self.delay_seconds = delay_seconds
        self.legacy_hosts = tuple(legacy_hosts)
        self.folder = folder
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, store, cdn) -> 'LegacyImageMigrator':
        return cls(store, cdn,
                   delay_seconds=settings.migration_delay_seconds,
                   legacy_hosts=settings.legacy_storage_hosts,
                   folder=settings.cdn_folder)

    def is_legacy(self, url: Optional[str]) -> bool:
        return is_legacy_storage_url(url, self.legacy_hosts)

    def legacy_url_for(self, record: Dict[str, Any]) -> Optional[str]:
        """The legacy URL to copy: the preserved old URL first, then the current one."""
        for key in ('legacy_image_url', 'image_url'):
            url = record.get(key)
            if self.is_legacy(url):
                return url
        return None

    def needs_migration(self, record: Dict[str, Any]) -> bool:
        return self.legacy_url_for(record) is not None and not self.cdn.owns(record.get('image_url'))

    def migrate_product(self, record: Dict[str, Any]) -> Optional[str]:
        """Migrate one product's image.

        Returns:
            The new CDN URL, or None when the product has no legacy URL.

        Raises:
            Whatever the CDN or store raise; the caller decides whether to go on.
        """
        name = record.get('name') or record.get('id')
        legacy_url = self.legacy_url_for(record)
        if not legacy_url:
            emit(logger, logging.INFO, "migration.skip",
                 "No legacy storage URL found", product=name)
            return None

        emit(logger, logging.INFO, "migration.product", "Migrating",
             product=name, current=record.get('image_url', ''), source=legacy_url)
        cdn_url = self.cdn.upload_from_url(legacy_url, folder=self.folder)

        updates = {
            'image_url': cdn_url,
            'migrated_to_cdn_at': utc_now(),
        }
        # Keep the old URL when it came from image_url and was not already saved
        if legacy_url == record.get('image_url') and legacy_url != record.get('legacy_image_url'):
            updates['legacy_image_url'] = legacy_url

        self.store.update_product(record['id'], updates)
        emit(logger, logging.INFO, "migration.product_done", "Updated product",
             product=name, url=cdn_url)
        return cdn_url

    def migrate_all(self) -> MigrationSummary:
        """Migrate every product that still uses a legacy image."""
        emit(logger, logging.INFO, "migration.start", "Starting migration to the CDN")
        records = self.store.list_records()
        summary = MigrationSummary(total=len(records))

        candidates = [r for r in records if self.needs_migration(r)]
        summary.skipped = summary.total - len(candidates)
        emit(logger, logging.INFO, "migration.candidates",
             total=summary.total, to_migrate=len(candidates))

        for index, record in enumerate(candidates):
            name = record.get('name') or record.get('id')
            emit(logger, logging.INFO, "migration.progress",
                 f"[{index + 1}/{len(candidates)}] Processing", product=name)
            try:
                self.migrate_product(record)
                summary.migrated += 1
            except Exception as e:
                summary.failed += 1
                summary.errors.append(MigrationError(product=name, error=str(e)))
                emit(logger, logging.ERROR, "migration.product_failed", "Migration failed",
                     product=name, error=str(e))

            if index < len(candidates) - 1 and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

        emit(logger, logging.INFO, "migration.summary", "Migration summary",
             total=summary.total, migrated=summary.migrated,
             skipped=summary.skipped, failed=summary.failed)
        return summary

    def migrate_first(self) -> Optional[str]:
        """Trial run: migrate the first product that needs it.

        Returns:
            The new URL, or None when nothing needs migrating.
        """
        for record in self.store.list_records():
            if self.needs_migration(record):
                return self.migrate_product(record)
        emit(logger, logging.INFO, "migration.nothing_to_test", "No legacy images found to test")
        return None

    def check_status(self) -> MigrationStatus:
        """Count products by where their image currently lives."""
        status = MigrationStatus()
        for record in self.store.list_records():
            status.total += 1
            if self.cdn.owns(record.get('image_url')):
                status.cdn += 1
            elif self.legacy_url_for(record):
                status.legacy += 1
            else:
                status.other += 1
        emit(logger, logging.INFO, "migration.status", total=status.total,
             cdn=status.cdn, legacy=status.legacy, other=status.other)
        return status
