from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlsplit

REVISION_PREFIXES = ("nixos-", "nixpkgs-")


def escape_like(value: str, escape: str = "\\") -> str:
    """Escape SQL LIKE wildcards so user input matches literally."""
    return (
        value.replace(escape, escape + escape)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )


def revision_from_url(url: str) -> Optional[str]:
    """
    Extract a channel revision from the URL a channel redirects to.

    https://releases.nixos.org/nixos/unstable/nixos-24.05pre12345.abcdef
    -> 24.05pre12345.abcdef
    """
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments:
        return None
    last = segments[-1]
    for prefix in REVISION_PREFIXES:
        if last.startswith(prefix):
            return last[len(prefix):]
    return last


def literal_text(value: Any) -> Any:
    """
    Flatten options.json literal wrappers to their text.

    {"_type": "literalExpression", "text": "[ ]"} -> "[ ]"
    """
    if isinstance(value, dict) and "_type" in value and "text" in value:
        return value["text"]
    return value


def first_string(value: Any) -> Optional[str]:
    """Return a string, or the first string of a list (homepage may be either)."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, str):
                return item
    return None


def text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    value = literal_text(value)
    return value if isinstance(value, str) else str(value)
