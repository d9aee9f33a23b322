from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from conftest import commit_entries, option_entry, package_entry
from nixdata.data.catalog_query import CatalogQuery
from nixdata.domain.errors import ConfigEditorError, UnknownOptionError
from nixdata.services import config_editor
from nixdata.services.config_editor import (
    SYSTEM_PACKAGES_ATTRIBUTE,
    ConfigEditor,
    NixEditorCli,
    installed_packages,
    set_option,
    to_nix_expression,
)


class FakeEditor(ConfigEditor):
    def __init__(self, lists: Dict[str, List[str]]):
        self.lists = lists
        self.writes: List[Tuple[Path, str, str]] = []

    def read_list(self, file: Path, attribute: str) -> List[str]:
        assert attribute == SYSTEM_PACKAGES_ATTRIBUTE
        if file.name not in self.lists:
            raise ConfigEditorError(f"{file} does not exist")
        return self.lists[file.name]

    def set_value(self, file: Path, attribute: str, value: str) -> None:
        self.writes.append((file, attribute, value))


@pytest.fixture
def query(store, settings) -> CatalogQuery:
    commit_entries(
        store,
        [
            package_entry("firefox", "128.0"),
            package_entry("hello", "2.12.1"),
            option_entry("services.nginx.enable"),
        ],
    )
    return CatalogQuery(store, settings)


def test_installed_packages(query: CatalogQuery) -> None:
    editor = FakeEditor(
        {
            "configuration.nix": ["firefox", "not-in-catalog"],
            "home.nix": ["hello", "firefox"],
        }
    )

    versions = installed_packages(
        query,
        [Path("/etc/nixos/configuration.nix"), Path("/etc/nixos/home.nix"), Path("/etc/nixos/missing.nix")],
        editor,
    )

    assert versions == {"firefox": "128.0", "hello": "2.12.1"}


def test_set_known_option(query: CatalogQuery) -> None:
    editor = FakeEditor({})
    set_option(query, editor, Path("configuration.nix"), "services.nginx.enable", True)
    assert editor.writes == [(Path("configuration.nix"), "services.nginx.enable", "true")]


def test_set_unknown_option_is_refused(query: CatalogQuery) -> None:
    editor = FakeEditor({})
    with pytest.raises(UnknownOptionError) as excinfo:
        set_option(query, editor, Path("configuration.nix"), "services.nginx.enabel", True)

    assert excinfo.value.option == "services.nginx.enabel"
    assert editor.writes == []


@pytest.mark.parametrize(
    "value, expected",
    [
        (True, "true"),
        (False, "false"),
        (None, "null"),
        (8080, "8080"),
        ("pkgs.firefox", "pkgs.firefox"),
        (["a", 1, False], '[ "a" 1 false ]'),
        ([], "[  ]"),
    ],
)
def test_to_nix_expression(value, expected: str) -> None:
    assert to_nix_expression(value) == expected


def test_to_nix_expression_rejects_unknown_types() -> None:
    with pytest.raises(ConfigEditorError):
        to_nix_expression({"a": 1})


def test_nix_editor_cli_reads_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="[ firefox pkgs.hello git ]\n", stderr="")

    monkeypatch.setattr(config_editor.subprocess, "run", fake_run)

    editor = NixEditorCli()
    assert editor.read_list(Path("/etc/nixos/configuration.nix"), SYSTEM_PACKAGES_ATTRIBUTE) == ["firefox", "hello", "git"]
    assert calls == [["nix-editor", "/etc/nixos/configuration.nix", SYSTEM_PACKAGES_ATTRIBUTE]]


def test_nix_editor_cli_writes_in_place(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(config_editor.subprocess, "run", fake_run)

    NixEditorCli().set_value(Path("configuration.nix"), "networking.hostName", '"box"')
    assert calls == [["nix-editor", "configuration.nix", "networking.hostName", "--val", '"box"', "--inplace"]]


def test_nix_editor_cli_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="attribute not found")

    monkeypatch.setattr(config_editor.subprocess, "run", failing_run)
    with pytest.raises(ConfigEditorError, match="attribute not found"):
        NixEditorCli().read_list(Path("configuration.nix"), "foo")

    def missing_run(cmd, **kwargs):
        raise FileNotFoundError("nix-editor")

    monkeypatch.setattr(config_editor.subprocess, "run", missing_run)
    with pytest.raises(ConfigEditorError):
        NixEditorCli().read_list(Path("configuration.nix"), "foo")
