"""
Sync engine: keeps the local catalog mirror in step with the channel.

This service handles:
- Deciding whether the remote catalog changed (revision handshake, ETag)
- Downloading and parsing the package and option payloads
- Committing the parsed snapshot as a new store generation
- Recording failures so callers can report staleness
- Periodic refreshes in the background

States: idle -> fetching -> parsing -> committing -> idle, with failed as a
per-attempt end state that always returns to idle. Only one attempt runs at a
time. A request identical to the one in flight waits for its outcome; any
other request waits for the attempt to finish and then runs its own.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

import aiofiles

from nixdata.core.config import CatalogSettings
from nixdata.domain.errors import (
    FetchCancelled,
    MalformedPayloadError,
    NixDataError,
    NotModified,
)
from nixdata.domain.models import (
    CommitResult,
    ParseReport,
    Snapshot,
    SyncMetadata,
    SyncOutcome,
    SyncResult,
    SyncState,
    utcnow,
)
from nixdata.services.importer.catalog_parser import CatalogParser
from nixdata.services.importer.channel_client import ChannelClient
from nixdata.storage.db_manager import CacheStore

logger = logging.getLogger(__name__)

StateListener = Callable[[SyncState, SyncState], None]

# (parse report, etag to store with the commit)
_Prepared = Tuple[ParseReport, Optional[str]]


class SyncEngine:
    """
    Orchestrates fetch -> parse -> commit against a cache store.

    The store is passed in explicitly; the engine never opens or closes it.
    """

    def __init__(
        self,
        store: CacheStore,
        client: ChannelClient,
        settings: CatalogSettings,
        parser: Optional[CatalogParser] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.settings = settings
        self.parser = parser or CatalogParser()
        self._clock = clock
        self._state = SyncState.IDLE
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_request: Optional[Hashable] = None
        self._waiters: Dict[asyncio.Future, int] = {}
        self._phase: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._listeners: List[StateListener] = []

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def add_listener(self, listener: StateListener) -> None:
        """Call listener(old_state, new_state) on every transition."""
        self._listeners.append(listener)

    def _transition(self, new_state: SyncState) -> None:
        old_state, self._state = self._state, new_state
        logger.debug(f"Sync state {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Sync state listener failed: {e}", exc_info=True)

    # ========================================================================
    # Entry points
    # ========================================================================

    async def refresh(self, force: bool = False, deadline: Optional[float] = None) -> SyncResult:
        """
        Bring the store up to date with the channel.

        Args:
            force: Skip the revision/ETag checks and always download
            deadline: Seconds allowed for fetching and parsing; the commit
                itself is never interrupted

        Returns:
            The attempt's result. Failures are reported, not raised; call
            ``raise_for_error()`` on the result to raise them.

        A call made while another refresh is in flight shares that
        attempt and its result; its own ``force`` and ``deadline`` are not
        applied. Cancelling the calling task cancels the attempt only when
        no other caller is waiting for it and it has not started committing.
        """
        return await self._coalesce(
            "refresh", lambda: self._fetch_and_parse(force), deadline, force=force
        )

    async def import_payloads(self, paths: Sequence[Path], revision: Optional[str] = None) -> SyncResult:
        """
        Commit catalog payloads from local files, e.g. ones kept by an
        earlier download or generated with `nix-env -qa --json`.

        Waits for any refresh in flight to finish, then commits the files.
        """
        request = ("import", tuple(str(p) for p in paths), revision)
        return await self._coalesce(request, lambda: self._read_and_parse(paths, revision), None)

    async def refresh_if_stale(self, max_age_seconds: Optional[float] = None) -> Optional[SyncResult]:
        """
        Refresh when the catalog is older than max_age_seconds (default:
        the refresh interval). Returns None when no attempt was made.

        A recent failure suppresses the attempt for failure_cooldown_seconds.
        """
        max_age = max_age_seconds if max_age_seconds is not None else self.settings.refresh_interval_seconds
        metadata = await asyncio.to_thread(self.store.read_metadata)
        now = self._clock()
        if not metadata.is_stale(max_age, now):
            return None
        if metadata.in_failure_cooldown(self.settings.failure_cooldown_seconds, now):
            logger.info(
                f"Catalog is stale but the last attempt failed at {metadata.last_error_at}; "
                f"waiting for the cooldown to pass"
            )
            return None
        return await self.refresh()

    def cancel(self) -> bool:
        """
        Cancel the in-flight attempt if it has not started committing.
        Returns True when a cancellation was requested.
        """
        if self._phase is None or self._phase.done():
            return False
        if self._state not in (SyncState.FETCHING, SyncState.PARSING):
            return False
        self._cancel_requested = True
        self._phase.cancel()
        return True

    async def run_periodic(self, poll_seconds: float = 300.0) -> None:
        """
        Refresh whenever the catalog becomes older than the refresh interval.
        Runs until cancelled.
        """
        while True:
            try:
                result = await self.refresh_if_stale()
                if result is not None and not result.ok:
                    logger.warning(f"Periodic refresh failed: {result.error}")
            except Exception as e:
                logger.error(f"Error in periodic refresh loop: {e}")
            await asyncio.sleep(poll_seconds)

    # ========================================================================
    # Attempt
    # ========================================================================

    async def _coalesce(
        self,
        request: Hashable,
        prepare: Callable[[], Awaitable[_Prepared]],
        deadline: Optional[float],
        force: bool = False,
    ) -> SyncResult:
        while self.busy:
            if self._inflight_request == request:
                logger.info("Sync already in progress; waiting for its outcome")
                if force or deadline is not None:
                    logger.debug(f"Joined attempt ignores force={force}, deadline={deadline}")
                return await self._wait(self._inflight)
            logger.info(f"Waiting for the running {self._describe(self._inflight_request)} to finish")
            await asyncio.wait([self._inflight])

        self._inflight = asyncio.ensure_future(self._attempt(prepare, deadline))
        self._inflight_request = request
        return await self._wait(self._inflight)

    async def _wait(self, inflight: asyncio.Task) -> SyncResult:
        """Await an attempt; the last waiter to be cancelled takes the attempt with it."""
        self._waiters[inflight] = self._waiters.get(inflight, 0) + 1
        try:
            return await asyncio.shield(inflight)
        except asyncio.CancelledError:
            if self._waiters[inflight] == 1 and inflight is self._inflight and not inflight.done():
                if self.cancel():
                    logger.info("Every caller of the running sync was cancelled; cancelling the attempt")
            raise
        finally:
            self._waiters[inflight] -= 1
            if not self._waiters[inflight]:
                del self._waiters[inflight]

    @staticmethod
    def _describe(request: Optional[Hashable]) -> str:
        if isinstance(request, tuple):
            return str(request[0])
        return str(request)

    async def _attempt(self, prepare: Callable[[], Awaitable[_Prepared]], deadline: Optional[float]) -> SyncResult:
        started_at = self._clock()
        result = SyncResult(outcome=SyncOutcome.FAILED, started_at=started_at)
        self._cancel_requested = False
        try:
            await asyncio.to_thread(self.store.record_attempt, started_at)
            report, etag = await self._run_phase(prepare, deadline)

            self._transition(SyncState.COMMITTING)
            # Once started, the commit runs to completion or aborts by itself.
            commit = await asyncio.shield(asyncio.to_thread(self._commit, report.snapshot, etag))

            result.outcome = SyncOutcome.COMMITTED
            result.revision = commit.revision
            result.generation = commit.generation
            result.package_count = commit.package_count
            result.option_count = commit.option_count
            result.skipped = report.skipped
            result.duplicates = report.duplicates
            logger.info(
                f"Catalog updated to revision {commit.revision} "
                f"({commit.package_count} packages, {commit.option_count} options, "
                f"{report.skipped} skipped, {report.duplicates} duplicates)"
            )
        except NotModified as e:
            result.outcome = SyncOutcome.NOT_MODIFIED
            try:
                await asyncio.to_thread(self.store.record_not_modified, self._clock())
                metadata = await asyncio.to_thread(self.store.read_metadata)
            except NixDataError as store_error:
                self._transition(SyncState.FAILED)
                await self._record_failure(result, store_error)
                result.outcome = SyncOutcome.FAILED
            else:
                result.revision = metadata.last_revision
                result.generation = metadata.generation
                result.package_count = metadata.package_count
                result.option_count = metadata.option_count
                logger.info(f"Catalog is up to date (revision {e.revision or metadata.last_revision})")
        except NixDataError as e:
            self._transition(SyncState.FAILED)
            await self._record_failure(result, e)
        except Exception as e:
            self._transition(SyncState.FAILED)
            await self._record_failure(result, e)
            raise
        finally:
            self._phase = None
            result.finished_at = self._clock()
            self._transition(SyncState.IDLE)
        return result

    async def _run_phase(self, prepare: Callable[[], Awaitable[_Prepared]], deadline: Optional[float]) -> _Prepared:
        """Run the cancellable part of an attempt (fetching and parsing)."""
        self._phase = asyncio.ensure_future(prepare())
        try:
            if deadline is None:
                return await self._phase
            return await asyncio.wait_for(self._phase, timeout=deadline)
        except asyncio.TimeoutError as e:
            raise FetchCancelled(f"Refresh exceeded its {deadline:.1f}s deadline before committing") from e
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            raise FetchCancelled("Refresh was cancelled before committing") from None

    async def _record_failure(self, result: SyncResult, error: BaseException) -> None:
        kind = getattr(error, "kind", type(error).__name__)
        result.error = str(error) or type(error).__name__
        result.error_kind = kind
        result.exception = error
        logger.error(f"Sync failed ({kind}): {result.error}")
        try:
            await asyncio.to_thread(self.store.record_failure, self._clock(), result.error, kind)
        except NixDataError as e:
            logger.error(f"Could not record sync failure: {e}")

    # ========================================================================
    # Phases
    # ========================================================================

    async def _fetch_and_parse(self, force: bool) -> _Prepared:
        self._transition(SyncState.FETCHING)
        metadata: SyncMetadata = await asyncio.to_thread(self.store.read_metadata)

        revision = await self.client.resolve_revision()
        if not force and revision and metadata.has_catalog and revision == metadata.last_revision:
            raise NotModified(revision=revision, url=self.settings.channel_url)

        # A changed revision must be downloaded even if the packages file kept its ETag.
        etag = metadata.etag if not force and metadata.has_catalog and revision is None else None
        packages = await self.client.fetch(self.settings.packages_url, etag=etag)
        options = None
        if self.settings.include_options:
            options = await self.client.fetch(self.settings.options_url)

        self._transition(SyncState.PARSING)
        report = await asyncio.to_thread(self.parser.parse, packages.content, revision)
        if options is not None:
            option_report = await asyncio.to_thread(self.parser.parse, options.content, report.snapshot.revision)
            report = self._combine(report, option_report)
        return report, packages.etag

    async def _read_and_parse(self, paths: Sequence[Path], revision: Optional[str]) -> _Prepared:
        self._transition(SyncState.PARSING)
        report: Optional[ParseReport] = None
        for path in paths:
            try:
                async with aiofiles.open(path, "rb") as f:
                    raw = await f.read()
            except OSError as e:
                raise MalformedPayloadError(f"Cannot read catalog payload {path}: {e}") from e
            part = await asyncio.to_thread(
                self.parser.parse, raw, revision or (report.snapshot.revision if report else None)
            )
            report = part if report is None else self._combine(report, part)
        if report is None:
            raise MalformedPayloadError("No catalog payloads given")
        return report, None

    @staticmethod
    def _combine(first: ParseReport, second: ParseReport) -> ParseReport:
        try:
            snapshot: Snapshot = first.snapshot.merge(second.snapshot)
        except ValueError as e:
            raise MalformedPayloadError(str(e)) from e
        return ParseReport(
            snapshot=snapshot,
            skipped=first.skipped + second.skipped,
            duplicates=first.duplicates + second.duplicates,
        )

    def _commit(self, snapshot: Snapshot, etag: Optional[str]) -> CommitResult:
        handle = self.store.begin_replace()
        try:
            handle.insert_many(snapshot.entries)
        except BaseException:
            handle.abort()
            raise
        return handle.commit(snapshot.revision, etag=etag)
