from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Iterator, Optional

from nixdata.domain.models import (
    CatalogEntry,
    CommitResult,
    EntryKind,
    SyncMetadata,
)


class WriteHandle(ABC):
    """
    An in-progress generation. Nothing written through it is visible to
    readers until commit() returns.
    """

    @abstractmethod
    def insert(self, entry: CatalogEntry) -> None:
        """Add an entry; a later insert with the same identity replaces it."""
        pass

    def insert_many(self, entries: Iterable[CatalogEntry]) -> int:
        count = 0
        for entry in entries:
            self.insert(entry)
            count += 1
        return count

    @abstractmethod
    def commit(self, revision: str, etag: Optional[str] = None) -> CommitResult:
        """Atomically make this generation the current one."""
        pass

    @abstractmethod
    def abort(self) -> None:
        """Discard the generation with no visible effect on readers."""
        pass

    def __enter__(self) -> "WriteHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        # A handle left open by an exception is discarded.
        if exc_type is not None:
            self.abort()


class CacheStore(ABC):
    """
    Abstract base class for the persisted catalog.

    Only the sync engine writes; any number of readers may read concurrently
    and always observe exactly one committed generation.
    """

    @abstractmethod
    def begin_replace(self) -> WriteHandle:
        """Open the single write handle for a new generation."""
        pass

    @abstractmethod
    def read(self, kind: EntryKind, key: str) -> Optional[CatalogEntry]:
        """Read one entry of the current generation."""
        pass

    @abstractmethod
    def read_all(self, kind: EntryKind) -> Iterable[CatalogEntry]:
        """
        Lazily read every entry of one kind from the current generation.
        The returned iterable is restartable: each iteration issues a fresh read.
        """
        pass

    @abstractmethod
    def search(self, kind: EntryKind, text: str, limit: Optional[int] = None) -> Iterator[CatalogEntry]:
        """Case-insensitive substring search ordered by relevance, then key."""
        pass

    @abstractmethod
    def count(self, kind: EntryKind) -> int:
        pass

    @abstractmethod
    def read_metadata(self) -> SyncMetadata:
        pass

    @abstractmethod
    def record_attempt(self, at: datetime) -> None:
        """Stamp the start of a sync attempt."""
        pass

    @abstractmethod
    def record_not_modified(self, at: datetime, etag: Optional[str] = None) -> None:
        """The remote catalog is unchanged: refresh timestamps only."""
        pass

    @abstractmethod
    def record_failure(self, at: datetime, error: str, error_kind: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
