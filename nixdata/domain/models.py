"""
Pydantic models for nix-data.

This module defines the data models used throughout the library, including:
- Catalog entries (packages and NixOS options)
- Snapshots produced by a single fetch-and-parse run
- Sync metadata persisted next to the catalog
- Results reported by the sync engine

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Catalog Entries
# ---------------------------------------------------------------------------


class EntryKind(str, Enum):
    PACKAGE = "package"
    OPTION = "option"


class PackageEntry(BaseModel):
    """
    A single package from a channel's packages.json.

    The attribute path is the identity key; pname is not unique across
    nixpkgs (e.g. several python versions share a pname).
    """

    model_config = ConfigDict(extra="ignore")

    kind: Literal["package"] = "package"
    attribute: str = Field(description="Attribute path, e.g. 'firefox' or 'python3Packages.requests'.")
    pname: str
    version: str
    description: Optional[str] = None

    system: Optional[str] = None
    long_description: Optional[str] = None
    homepage: Optional[str] = None
    license: Optional[Any] = None
    maintainers: Optional[Any] = None
    platforms: Optional[Any] = None
    position: Optional[str] = None

    broken: bool = False
    insecure: bool = False
    unfree: bool = False
    unsupported: bool = False

    @property
    def key(self) -> str:
        return self.attribute

    @property
    def identity(self) -> Tuple[EntryKind, str]:
        return EntryKind.PACKAGE, self.attribute


class OptionEntry(BaseModel):
    """A single NixOS configuration option from a channel's options.json."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["option"] = "option"
    path: str = Field(description="Dotted option path, e.g. 'services.nginx.enable'.")
    type: str = Field(description="Type descriptor as published, e.g. 'boolean'.")
    default: Optional[Any] = None
    description: str = ""
    example: Optional[Any] = None
    read_only: bool = False
    declarations: List[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.path

    @property
    def identity(self) -> Tuple[EntryKind, str]:
        return EntryKind.OPTION, self.path


CatalogEntry = Annotated[Union[PackageEntry, OptionEntry], Field(discriminator="kind")]

catalog_entry_adapter: TypeAdapter = TypeAdapter(CatalogEntry)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class Snapshot(BaseModel):
    """
    One complete, internally consistent fetch-and-parse result.

    The revision lives on the snapshot only, so every entry belongs to it.
    """

    revision: str
    fetched_at: datetime = Field(default_factory=utcnow)
    entries: List[CatalogEntry] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def count(self, kind: EntryKind) -> int:
        return sum(1 for e in self.entries if e.kind == kind.value)

    def merge(self, other: "Snapshot") -> "Snapshot":
        """
        Combine the package and option halves of the same channel revision.

        Entries of ``other`` replace entries of ``self`` with the same identity.
        """
        if other.revision != self.revision:
            raise ValueError(
                f"Cannot merge snapshots of different revisions: {self.revision} != {other.revision}"
            )
        merged = {e.identity: e for e in self.entries}
        for e in other.entries:
            merged[e.identity] = e
        return Snapshot(
            revision=self.revision,
            fetched_at=max(self.fetched_at, other.fetched_at),
            entries=list(merged.values()),
        )


class ParseReport(BaseModel):
    """Parser output: the snapshot plus counters for observability."""

    snapshot: Snapshot
    skipped: int = Field(default=0, description="Records dropped for missing required fields.")
    duplicates: int = Field(default=0, description="Identity keys overwritten by a later record.")


# ---------------------------------------------------------------------------
# Sync Metadata
# ---------------------------------------------------------------------------


class SyncMetadata(BaseModel):
    """
    Singleton row persisted alongside the catalog.
    """

    last_revision: Optional[str] = Field(default=None, description="Revision of the committed generation.")
    last_success_at: Optional[datetime] = Field(default=None, description="When the last commit finished.")
    last_checked_at: Optional[datetime] = Field(
        default=None,
        description="Last time the committed revision was confirmed current (commit or not-modified).",
    )
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_error_at: Optional[datetime] = None
    etag: Optional[str] = None
    generation: Optional[int] = None
    package_count: int = 0
    option_count: int = 0

    @property
    def has_catalog(self) -> bool:
        return self.generation is not None

    @property
    def confirmed_at(self) -> Optional[datetime]:
        """Last time the committed catalog was known to match the channel."""
        return self.last_checked_at or self.last_success_at

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.confirmed_at is None:
            return None
        return ((now or utcnow()) - self.confirmed_at).total_seconds()

    def is_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        """True before any successful sync, or once the catalog is older than the threshold."""
        if not self.has_catalog or self.last_success_at is None:
            return True
        return self.age_seconds(now) > threshold_seconds

    def in_failure_cooldown(self, cooldown_seconds: float, now: Optional[datetime] = None) -> bool:
        """A failure newer than the last confirmation happened less than cooldown_seconds ago."""
        if self.last_error_at is None:
            return False
        if self.confirmed_at is not None and self.confirmed_at >= self.last_error_at:
            return False
        return ((now or utcnow()) - self.last_error_at).total_seconds() < cooldown_seconds


class CommitResult(BaseModel):
    generation: int
    revision: str
    package_count: int = 0
    option_count: int = 0
    retired_generation: Optional[int] = None
    collected_generations: List[int] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sync Engine
# ---------------------------------------------------------------------------


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    COMMITTING = "committing"
    FAILED = "failed"


class SyncOutcome(str, Enum):
    COMMITTED = "committed"
    NOT_MODIFIED = "not_modified"
    FAILED = "failed"


class SyncResult(BaseModel):
    """Outcome of one sync attempt, shared by every coalesced caller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: SyncOutcome
    revision: Optional[str] = None
    generation: Optional[int] = None
    package_count: int = 0
    option_count: int = 0
    skipped: int = 0
    duplicates: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    exception: Optional[BaseException] = Field(default=None, exclude=True, repr=False)

    @property
    def ok(self) -> bool:
        return self.outcome != SyncOutcome.FAILED

    def raise_for_error(self) -> "SyncResult":
        """Re-raise the captured exception of a failed attempt."""
        if self.exception is not None:
            raise self.exception
        return self
