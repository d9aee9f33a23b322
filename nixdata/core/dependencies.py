from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import httpx

from nixdata.core.config import CatalogSettings, get_data_dir, load_settings
from nixdata.data.catalog_query import CatalogQuery
from nixdata.services.importer.channel_client import ChannelClient
from nixdata.services.sync import SyncEngine
from nixdata.storage.sqlite_db_manager import SqliteCacheStore

logger = logging.getLogger(__name__)

PAYLOAD_SUBDIR = "payloads"


class Catalog:
    """
    One opened catalog mirror: store, sync engine and query interface
    sharing a single store instance.

    Use as a context manager, or call close() when done.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        settings: Optional[CatalogSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.data_dir = data_dir or get_data_dir()
        self.settings = settings or load_settings(self.data_dir)
        self.store = open_store(self.data_dir, self.settings)
        payload_dir = self.data_dir / PAYLOAD_SUBDIR if self.settings.keep_payloads else None
        self.client = ChannelClient(self.settings, transport=transport, payload_dir=payload_dir)
        self.sync = SyncEngine(self.store, self.client, self.settings)
        self.query = CatalogQuery(self.store, self.settings)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Catalog":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def open_store(data_dir: Path, settings: CatalogSettings) -> SqliteCacheStore:
    """Open (or create) the cache file named by the settings."""
    db_path = data_dir / settings.db_filename
    logger.debug(f"Opening catalog cache at {db_path}")
    return SqliteCacheStore(db_path, writer_timeout=settings.writer_timeout_seconds)
