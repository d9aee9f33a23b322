"""
Bridge to the external Nix configuration editor.

The catalog never looks inside a configuration file. It hands the editor an
attribute path (and a value when writing) and works with what comes back.
"""
from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List

from nixdata.data.catalog_query import CatalogQuery
from nixdata.domain.errors import ConfigEditorError, UnknownOptionError
from nixdata.domain.models import EntryKind

logger = logging.getLogger(__name__)

SYSTEM_PACKAGES_ATTRIBUTE = "environment.systemPackages"


class ConfigEditor(ABC):
    """Reads and writes attributes of a Nix configuration file."""

    @abstractmethod
    def read_list(self, file: Path, attribute: str) -> List[str]:
        """Return the elements of a list-valued attribute."""
        pass

    @abstractmethod
    def set_value(self, file: Path, attribute: str, value: str) -> None:
        """Set an attribute to a Nix expression, in place."""
        pass


class NixEditorCli(ConfigEditor):
    """ConfigEditor driving the `nix-editor` command line tool."""

    def __init__(self, executable: str = "nix-editor", timeout: float = 30.0):
        self.executable = executable
        self.timeout = timeout

    def _run(self, args: List[str]) -> str:
        cmd = [self.executable, *args]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ConfigEditorError(f"Failed to run {self.executable}: {e}") from e
        if proc.returncode != 0:
            raise ConfigEditorError(
                f"{self.executable} exited with {proc.returncode}: {proc.stderr.strip()}"
            )
        return proc.stdout

    def read_list(self, file: Path, attribute: str) -> List[str]:
        out = self._run([str(file), attribute]).strip()
        if not out:
            return []
        if out.startswith("[") and out.endswith("]"):
            out = out[1:-1]
        values = []
        for token in out.split():
            # with pkgs; [ firefox ] and [ pkgs.firefox ] both name attribute 'firefox'
            if token.startswith("pkgs."):
                token = token[len("pkgs."):]
            values.append(token)
        return values

    def set_value(self, file: Path, attribute: str, value: str) -> None:
        self._run([str(file), attribute, "--val", value, "--inplace"])


def installed_packages(
    query: CatalogQuery,
    config_files: Iterable[Path],
    editor: ConfigEditor,
) -> Dict[str, str]:
    """
    Map every package listed in environment.systemPackages of the given
    configuration files to its version in the mirrored catalog.

    Attributes the catalog does not know are left out.
    """
    attributes = set()
    for path in config_files:
        try:
            attributes.update(editor.read_list(Path(path), SYSTEM_PACKAGES_ATTRIBUTE))
        except ConfigEditorError as e:
            logger.warning(f"Could not read {SYSTEM_PACKAGES_ATTRIBUTE} from {path}: {e}")

    versions: Dict[str, str] = {}
    for attribute in sorted(attributes):
        version = query.package_version(attribute)
        if version is not None:
            versions[attribute] = version
    return versions


def set_option(
    query: CatalogQuery,
    editor: ConfigEditor,
    file: Path,
    option: str,
    value: object,
) -> None:
    """
    Set a NixOS option in a configuration file after checking the option
    exists in the mirrored catalog.

    Python values are rendered as Nix literals; strings are passed through
    as Nix expressions.
    """
    if query.lookup(EntryKind.OPTION, option) is None:
        raise UnknownOptionError(option)
    editor.set_value(Path(file), option, to_nix_expression(value))


def to_nix_expression(value: object) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[ " + " ".join(_nix_item(v) for v in value) + " ]"
    raise ConfigEditorError(f"Cannot render {type(value).__name__} as a Nix expression")


def _nix_item(value: object) -> str:
    if isinstance(value, str):
        # Inside a list a bare string would be an identifier.
        return json.dumps(value)
    return to_nix_expression(value)
