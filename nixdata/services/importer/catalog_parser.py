"""
Parse channel catalog payloads into snapshots.

Three payload shapes are understood:

- packages.json: {"version": 2, "packages": {"<attribute>": {...}}}
- options.json:  {"<option.path>": {"type": ..., "description": ..., ...}}
- entries list:  {"revision": ..., "entries": [{"kind": "package", ...}, ...]}

A record missing required fields is skipped and counted; only a payload
that yields no entries at all is rejected.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from nixdata.domain.catalog_utils import first_string, literal_text, text_or_none
from nixdata.domain.errors import EmptySnapshotError, MalformedPayloadError
from nixdata.domain.models import (
    CatalogEntry,
    OptionEntry,
    PackageEntry,
    ParseReport,
    Snapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

UNKNOWN_REVISION = "unknown"


class _Mapping(dict):
    """A JSON object that remembers how many of its keys were repeated."""

    duplicates = 0


def _object_pairs(pairs: List[Tuple[str, Any]]) -> _Mapping:
    mapping = _Mapping()
    for key, value in pairs:
        if key in mapping:
            mapping.duplicates += 1
        mapping[key] = value
    return mapping


def _split_name(name: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a derivation name into pname and version.

    'firefox-esr-115.0' -> ('firefox-esr', '115.0'); the version starts at
    the first dash followed by a digit.
    """
    for i, ch in enumerate(name):
        if ch == "-" and i + 1 < len(name) and name[i + 1].isdigit():
            return name[:i], name[i + 1:]
    return None, None


class CatalogParser:
    """Decodes catalog payloads. Stateless; safe to share."""

    def parse(self, raw: bytes, revision: Optional[str] = None, fetched_at: Optional[datetime] = None) -> ParseReport:
        """
        Parse a payload into a snapshot.

        Raises:
            MalformedPayloadError: Not JSON, or not one of the known shapes
            EmptySnapshotError: No record had the required fields
        """
        try:
            document = json.loads(raw, object_pairs_hook=_object_pairs)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"Catalog payload is not valid JSON: {e}") from e

        if not isinstance(document, dict):
            raise MalformedPayloadError(f"Catalog payload must be a JSON object, got {type(document).__name__}")

        if "packages" in document and isinstance(document["packages"], dict):
            entries, skipped, duplicates = self._parse_packages(document["packages"])
        elif "entries" in document and isinstance(document["entries"], list):
            entries, skipped, duplicates = self._parse_entry_list(document["entries"])
        elif "packages" in document or "entries" in document:
            raise MalformedPayloadError("Catalog payload has an unexpected 'packages'/'entries' section")
        else:
            entries, skipped, duplicates = self._parse_options(document)

        revision = revision or text_or_none(document.get("revision")) or UNKNOWN_REVISION

        if skipped:
            logger.warning(f"Skipped {skipped} catalog record(s) missing required fields")
        if duplicates:
            logger.info(f"{duplicates} duplicate catalog key(s) overwritten by later records")

        if not entries:
            raise EmptySnapshotError(
                f"Catalog payload for revision {revision} contains no valid entries ({skipped} skipped)",
                skipped=skipped,
            )

        snapshot = Snapshot(
            revision=revision,
            fetched_at=fetched_at or utcnow(),
            entries=list(entries.values()),
        )
        logger.debug(f"Parsed {len(snapshot)} entries for revision {revision}")
        return ParseReport(snapshot=snapshot, skipped=skipped, duplicates=duplicates)

    # ========================================================================
    # Shapes
    # ========================================================================

    def _parse_packages(self, packages: Dict[str, Any]) -> Tuple[Dict[tuple, CatalogEntry], int, int]:
        entries: Dict[tuple, CatalogEntry] = {}
        skipped = 0
        for attribute, data in packages.items():
            entry = self._package(attribute, data)
            if entry is None:
                skipped += 1
                continue
            entries[entry.identity] = entry
        return entries, skipped, getattr(packages, "duplicates", 0)

    def _parse_options(self, options: Dict[str, Any]) -> Tuple[Dict[tuple, CatalogEntry], int, int]:
        entries: Dict[tuple, CatalogEntry] = {}
        skipped = 0
        for path, data in options.items():
            if path in ("revision", "version"):
                continue
            entry = self._option(path, data)
            if entry is None:
                skipped += 1
                continue
            entries[entry.identity] = entry
        return entries, skipped, getattr(options, "duplicates", 0)

    def _parse_entry_list(self, records: List[Any]) -> Tuple[Dict[tuple, CatalogEntry], int, int]:
        entries: Dict[tuple, CatalogEntry] = {}
        skipped = 0
        duplicates = 0
        for record in records:
            if not isinstance(record, dict):
                skipped += 1
                continue
            kind = record.get("kind")
            if kind == "package":
                entry = self._package(record.get("attribute"), record)
            elif kind == "option":
                entry = self._option(record.get("path"), record)
            else:
                entry = None
            if entry is None:
                skipped += 1
                continue
            if entry.identity in entries:
                duplicates += 1
            entries[entry.identity] = entry
        return entries, skipped, duplicates

    # ========================================================================
    # Records
    # ========================================================================

    def _package(self, attribute: Any, data: Any) -> Optional[PackageEntry]:
        if not isinstance(attribute, str) or not attribute or not isinstance(data, dict):
            return None

        pname = text_or_none(data.get("pname"))
        version = text_or_none(data.get("version"))
        if not pname or version is None:
            name = data.get("name")
            if isinstance(name, str):
                split_pname, split_version = _split_name(name)
                pname = pname or split_pname
                version = version if version is not None else split_version
        if not pname or version is None:
            return None

        meta = data.get("meta")
        if not isinstance(meta, dict):
            meta = {}

        return PackageEntry(
            attribute=attribute,
            pname=pname,
            version=version,
            description=text_or_none(meta.get("description", data.get("description"))),
            system=text_or_none(data.get("system")),
            long_description=text_or_none(meta.get("longDescription")),
            homepage=first_string(meta.get("homepage")),
            license=meta.get("license"),
            maintainers=meta.get("maintainers"),
            platforms=meta.get("platforms"),
            position=text_or_none(meta.get("position")),
            broken=bool(meta.get("broken", False)),
            insecure=bool(meta.get("insecure", False)),
            unfree=bool(meta.get("unfree", False)),
            unsupported=bool(meta.get("unsupported", False)),
        )

    def _option(self, path: Any, data: Any) -> Optional[OptionEntry]:
        if not isinstance(path, str) or not path or not isinstance(data, dict):
            return None

        option_type = text_or_none(data.get("type"))
        if not option_type:
            return None

        declarations = data.get("declarations")
        if not isinstance(declarations, list):
            declarations = []

        return OptionEntry(
            path=path,
            type=option_type,
            default=literal_text(data.get("default")),
            description=text_or_none(data.get("description")) or "",
            example=literal_text(data.get("example")),
            read_only=bool(data.get("readOnly", data.get("read_only", False))),
            declarations=[str(d) for d in declarations],
        )
