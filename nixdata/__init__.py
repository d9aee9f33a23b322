"""
nix-data: a local, queryable mirror of the Nix package and NixOS option
catalogs published for a channel.
"""

from nixdata.core.config import CatalogSettings, load_settings
from nixdata.core.dependencies import Catalog, open_store
from nixdata.data.catalog_query import CatalogQuery
from nixdata.domain.models import (
    EntryKind,
    OptionEntry,
    PackageEntry,
    Snapshot,
    SyncMetadata,
    SyncOutcome,
    SyncResult,
    SyncState,
)
from nixdata.services.sync import SyncEngine

__version__ = "0.1.0"

__all__ = [
    "Catalog",
    "CatalogQuery",
    "CatalogSettings",
    "EntryKind",
    "OptionEntry",
    "PackageEntry",
    "Snapshot",
    "SyncEngine",
    "SyncMetadata",
    "SyncOutcome",
    "SyncResult",
    "SyncState",
    "load_settings",
    "open_store",
]
