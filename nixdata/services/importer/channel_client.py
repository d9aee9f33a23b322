"""
Download catalog payloads from a Nix channel server.
"""
from __future__ import annotations

import asyncio
import gzip
import logging
import re
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

import aiofiles
import brotli
import httpx
from pydantic import BaseModel

from nixdata.core.config import CatalogSettings
from nixdata.domain.catalog_utils import revision_from_url
from nixdata.domain.errors import (
    FetchCancelled,
    FetchError,
    NetworkError,
    NotModified,
    RemoteError,
)

logger = logging.getLogger(__name__)

_NIXOS_VERSION_RE = re.compile(r"^(\d+\.\d+)(\S*)")


class FetchResult(BaseModel):
    url: str
    content: bytes
    etag: Optional[str] = None


class ChannelClient:
    """
    Fetches channel revisions and catalog payloads over HTTP(S).

    Transient failures (network errors and non-success statuses) are retried
    with a linear backoff up to ``max_fetch_attempts``, then surfaced.
    """

    def __init__(
        self,
        settings: CatalogSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        payload_dir: Optional[Path] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.payload_dir = payload_dir
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.fetch_timeout_seconds,
            transport=self._transport,
        )

    # ========================================================================
    # Revision handshake
    # ========================================================================

    async def resolve_revision(self, channel_url: Optional[str] = None) -> Optional[str]:
        """
        Resolve the revision a channel currently points to.

        channels.nixos.org/nixos-unstable redirects to
        releases.nixos.org/nixos/unstable/nixos-<revision>; the last path
        segment of the final URL identifies the revision.
        """
        url = channel_url or self.settings.channel_url

        async def head() -> str:
            async with self._client() as client:
                response = await client.head(url)
                if not response.is_success:
                    raise RemoteError(
                        f"Channel {url} answered {response.status_code}",
                        url=url,
                        status_code=response.status_code,
                    )
                return str(response.url)

        final_url = await self._with_retries(url, head)
        if final_url.rstrip("/") == url.rstrip("/"):
            # No redirect: the server does not expose revisions this way.
            logger.info(f"Channel {url} did not redirect to a release; revision unknown")
            return None
        revision = revision_from_url(final_url)
        logger.info(f"Channel {url} resolves to revision {revision}")
        return revision

    # ========================================================================
    # Payload download
    # ========================================================================

    async def fetch(self, url: str, etag: Optional[str] = None, deadline: Optional[float] = None) -> FetchResult:
        """
        Download a payload and return its decoded bytes.

        Args:
            url: Resource to fetch
            etag: ETag of the copy already stored; sent as If-None-Match
            deadline: Optional overall time limit in seconds

        Raises:
            NotModified: The server confirmed the stored copy is current
            NetworkError / RemoteError: After retries are exhausted
            FetchCancelled: The deadline expired
        """
        if deadline is None:
            return await self._fetch(url, etag)
        try:
            return await asyncio.wait_for(self._fetch(url, etag), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise FetchCancelled(f"Fetching {url} exceeded the {deadline:.1f}s deadline", url=url) from e

    async def _fetch(self, url: str, etag: Optional[str]) -> FetchResult:
        headers = {}
        if etag:
            headers["If-None-Match"] = etag

        async def get() -> FetchResult:
            logger.info(f"Downloading {url}...")
            async with self._client() as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code == 304:
                        raise NotModified(url=url)
                    if not response.is_success:
                        raise RemoteError(
                            f"GET {url} answered {response.status_code}",
                            url=url,
                            status_code=response.status_code,
                        )

                    total_size = int(response.headers.get("content-length", 0))
                    buffer = bytearray()
                    # aiter_bytes() already undoes any Content-Encoding.
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                    logger.debug(f"Downloaded {len(buffer)} bytes from {url} (content-length={total_size})")

                    content = self._decode(bytes(buffer), url, response.headers.get("content-encoding", ""))
                    return FetchResult(url=str(response.url), content=content, etag=response.headers.get("etag"))

        result = await self._with_retries(url, get)
        if self.payload_dir is not None:
            await self._spool(result)
        return result

    async def _with_retries(self, url: str, operation: Callable[[], Awaitable]):
        attempts = self.settings.max_fetch_attempts
        last_error: Optional[FetchError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except NotModified:
                raise
            except RemoteError as e:
                last_error = e
            except httpx.TransportError as e:
                last_error = NetworkError(f"Request to {url} failed: {e!r}", url=url)

            if attempt < attempts:
                delay = self.settings.retry_backoff_seconds * attempt
                logger.warning(f"Fetch failed (attempt {attempt}/{attempts}): {last_error}. Retrying in {delay:.1f}s...")
                await self._sleep(delay)

        logger.error(f"Giving up on {url} after {attempts} attempt(s): {last_error}")
        raise last_error

    @staticmethod
    def _decode(data: bytes, url: str, content_encoding: str) -> bytes:
        """
        Undo file-level compression.

        channels.nixos.org serves packages.json.br both with and without a
        Content-Encoding header depending on the client; httpx only decodes
        the former, so a still-compressed body is detected by file suffix.
        """
        path = urlsplit(url).path
        encodings = {e.strip().lower() for e in content_encoding.split(",") if e.strip()}
        try:
            if path.endswith(".br") and "br" not in encodings:
                return brotli.decompress(data)
            if path.endswith(".gz") and "gzip" not in encodings:
                return gzip.decompress(data)
        except (brotli.error, OSError, EOFError) as e:
            raise FetchError(f"Cannot decode compressed payload from {url}: {e}", url=url) from e
        return data

    async def _spool(self, result: FetchResult) -> None:
        """Keep a copy of the decoded payload for offline re-import."""
        name = Path(urlsplit(result.url).path).name or "payload"
        for suffix in (".br", ".gz"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
        self.payload_dir.mkdir(parents=True, exist_ok=True)
        target = self.payload_dir / name
        tmp_path = self.payload_dir / f"{name}.tmp"
        try:
            # Write to a temp file first to avoid leaving a partial payload behind.
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(result.content)
            tmp_path.replace(target)
            logger.debug(f"Payload kept at {target}")
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            logger.warning(f"Could not keep payload {target}: {e}")


def detect_nixos_channel() -> Optional[str]:
    """
    Channel of the running NixOS system, derived from `nixos-version`.

    Returns None when not running on NixOS.
    """
    try:
        out = subprocess.run(["nixos-version"], capture_output=True, text=True, check=True).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug(f"nixos-version unavailable: {e}")
        return None

    match = _NIXOS_VERSION_RE.match(out.strip())
    if not match:
        return None
    release, rest = match.groups()
    # Pre-release builds come from the unstable channel.
    if rest.startswith("pre"):
        return "nixos-unstable"
    return f"nixos-{release}"
