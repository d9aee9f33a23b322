from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

import brotli
import httpx
import pytest

from nixdata.core.config import CatalogSettings
from nixdata.domain.models import CatalogEntry, OptionEntry, PackageEntry
from nixdata.storage.sqlite_db_manager import SqliteCacheStore

CHANNEL_URL = "https://channels.nixos.org/nixos-unstable"
RELEASE_URL = "https://releases.nixos.org/nixos/unstable/nixos-"


def pkg(pname: str, version: str, description: Optional[str] = None, **meta) -> dict:
    if description is not None:
        meta["description"] = description
    return {
        "name": f"{pname}-{version}",
        "pname": pname,
        "version": version,
        "system": "x86_64-linux",
        "meta": meta,
    }


def packages_payload(packages: Dict[str, dict]) -> bytes:
    return json.dumps({"version": 2, "packages": packages}).encode("utf-8")


def options_payload(options: Dict[str, dict]) -> bytes:
    return json.dumps(options).encode("utf-8")


def package_entry(attribute: str, version: str = "1.0", pname: Optional[str] = None) -> PackageEntry:
    return PackageEntry(attribute=attribute, pname=pname or attribute, version=version)


def option_entry(path: str, type: str = "boolean") -> OptionEntry:
    return OptionEntry(path=path, type=type, description=f"Option {path}")


def commit_entries(store: SqliteCacheStore, entries: Iterable[CatalogEntry], revision: str = "rev-1"):
    handle = store.begin_replace()
    handle.insert_many(entries)
    return handle.commit(revision)


DEFAULT_PACKAGES = {
    "firefox": pkg("firefox", "128.0", "A web browser", homepage=["https://www.mozilla.org/firefox/"]),
    "firefox-esr": pkg("firefox-esr", "115.13.0", "A web browser (extended support release)"),
    "hello": pkg("hello", "2.12.1", "A program that produces a familiar, friendly greeting"),
}

DEFAULT_OPTIONS = {
    "services.nginx.enable": {
        "type": "boolean",
        "default": {"_type": "literalExpression", "text": "false"},
        "description": "Whether to enable Nginx Web Server.",
        "declarations": ["nixos/modules/services/web-servers/nginx/default.nix"],
        "readOnly": False,
    },
    "networking.hostName": {
        "type": "string",
        "default": "nixos",
        "description": "The name of the machine.",
    },
}


class FakeChannel:
    """
    In-memory channels.nixos.org: the channel URL redirects to a release
    URL naming the revision, and the catalog files are served brotli
    compressed without a Content-Encoding header, like the real server.
    """

    def __init__(
        self,
        revision: str = "24.11pre700000.abcdef0",
        packages: bytes = packages_payload(DEFAULT_PACKAGES),
        options: bytes = options_payload(DEFAULT_OPTIONS),
    ):
        self.revision = revision
        self.packages = packages
        self.options = options
        self.etag = '"packages-v1"'
        self.redirect = True
        self.failures = 0
        self.failure_status = 503
        self.requests: List[httpx.Request] = []

    @property
    def downloads(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            self.failures -= 1
            return httpx.Response(self.failure_status)

        url = str(request.url)
        if url == CHANNEL_URL:
            if self.redirect:
                return httpx.Response(302, headers={"location": RELEASE_URL + self.revision})
            return httpx.Response(200)
        if url.startswith(RELEASE_URL):
            return httpx.Response(200)
        if url == f"{CHANNEL_URL}/packages.json.br":
            if request.headers.get("if-none-match") == self.etag:
                return httpx.Response(304)
            return httpx.Response(200, content=brotli.compress(self.packages), headers={"etag": self.etag})
        if url == f"{CHANNEL_URL}/options.json.br":
            return httpx.Response(200, content=brotli.compress(self.options))
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def settings() -> CatalogSettings:
    return CatalogSettings(
        channel="nixos-unstable",
        staleness_threshold_seconds=3600,
        refresh_interval_seconds=600,
        failure_cooldown_seconds=300,
        max_fetch_attempts=3,
        retry_backoff_seconds=0,
        writer_timeout_seconds=0,
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqliteCacheStore]:
    store = SqliteCacheStore(tmp_path / "catalog.db", writer_timeout=0)
    yield store
    store.close()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()
