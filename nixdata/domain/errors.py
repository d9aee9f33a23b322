"""
Exception hierarchy for nix-data.

Fetch errors are raised by the channel client, parse errors by the catalog
parser and store errors by the cache store. The sync engine catches all of
them, records the failure in the sync metadata and leaves the last good
generation in place.
"""
from __future__ import annotations

from typing import Optional


class NixDataError(Exception):
    """Base class for every error raised by nix-data."""

    #: Short machine-readable category recorded in the sync metadata.
    kind = "error"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class FetchError(NixDataError):
    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NetworkError(FetchError):
    """Connection, read or timeout failure. Retryable."""

    kind = "network"


class RemoteError(FetchError):
    """The server answered with a non-success status."""

    kind = "remote"

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, url)
        self.status_code = status_code


class FetchCancelled(FetchError):
    """The caller's deadline expired or the attempt was cancelled before commit."""

    kind = "cancelled"


class NotModified(NixDataError):
    """
    Conditional fetch confirmed the catalog is unchanged.

    Not a failure: the sync engine short-circuits to idle.
    """

    kind = "not_modified"

    def __init__(self, revision: Optional[str] = None, url: Optional[str] = None):
        super().__init__(f"Catalog not modified (revision={revision})")
        self.revision = revision
        self.url = url


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseError(NixDataError):
    kind = "parse"


class MalformedPayloadError(ParseError):
    kind = "malformed"


class EmptySnapshotError(ParseError):
    """A payload produced zero valid entries."""

    kind = "empty_snapshot"

    def __init__(self, message: str = "Snapshot contains no valid entries", skipped: int = 0):
        super().__init__(message)
        self.skipped = skipped


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StoreError(NixDataError):
    kind = "store"


class StorageIOError(StoreError):
    kind = "io"


class SchemaVersionError(StoreError):
    kind = "schema_version"

    def __init__(self, message: str, found: Optional[int] = None, expected: Optional[int] = None):
        super().__init__(message)
        self.found = found
        self.expected = expected


class WriterBusyError(StoreError):
    """Another write handle is already open on this store."""

    kind = "writer_busy"


# ---------------------------------------------------------------------------
# Configuration editing
# ---------------------------------------------------------------------------


class ConfigEditorError(NixDataError):
    kind = "config_editor"


class UnknownOptionError(ConfigEditorError):
    kind = "unknown_option"

    def __init__(self, option: str):
        super().__init__(f"Unknown NixOS option: {option}")
        self.option = option
