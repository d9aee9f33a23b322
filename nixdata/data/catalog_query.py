"""
Read-only access to the mirrored catalog.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from nixdata.core.config import CatalogSettings
from nixdata.domain.models import CatalogEntry, EntryKind, PackageEntry
from nixdata.storage.db_manager import CacheStore

logger = logging.getLogger(__name__)


class CatalogQuery:
    """
    Queries the committed generation of a cache store.

    Never triggers or waits for a sync. Before the first successful sync
    every lookup returns None and every search is empty.
    """

    def __init__(self, store: CacheStore, settings: CatalogSettings):
        self.store = store
        self.settings = settings

    def lookup(self, kind: EntryKind, key: str) -> Optional[CatalogEntry]:
        """Find an entry by its exact attribute or option path."""
        logger.debug(f"Looking up {EntryKind(kind).value}: {key}")
        return self.store.read(kind, key)

    def search(self, kind: EntryKind, text: str, limit: Optional[int] = None) -> Iterator[CatalogEntry]:
        """
        Case-insensitive substring search.

        Results come exact match first, then prefix matches, then other
        substring matches, each group in lexicographic key order.
        """
        if not text:
            return iter(())
        return self.store.search(kind, text, limit=limit)

    def package_version(self, attribute: str) -> Optional[str]:
        entry = self.store.read(EntryKind.PACKAGE, attribute)
        return entry.version if isinstance(entry, PackageEntry) else None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        metadata = self.store.read_metadata()
        return metadata.is_stale(self.settings.staleness_threshold_seconds, now)

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summary for display: what is mirrored, how old it is, and the last error."""
        metadata = self.store.read_metadata()
        return {
            "channel": self.settings.channel,
            "revision": metadata.last_revision,
            "packages": metadata.package_count,
            "options": metadata.option_count,
            "last_success_at": metadata.last_success_at,
            "last_checked_at": metadata.last_checked_at,
            "age_seconds": metadata.age_seconds(now),
            "stale": metadata.is_stale(self.settings.staleness_threshold_seconds, now),
            "last_error": metadata.last_error,
            "last_error_at": metadata.last_error_at,
        }
