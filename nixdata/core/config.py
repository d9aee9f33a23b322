from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DATA_ROOT_ENV_VAR = "NIX_DATA_DIR"
_DEFAULT_DATA_DIR = Path("~/.cache/nix-data")

SETTINGS_FILE = "settings.json"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class CatalogSettings(BaseModel):
    """
    Settings for the local catalog mirror.
    Persisted at: <DATA_DIR>/settings.json
    """

    channel: str = Field(
        default="nixos-unstable",
        description="Channel to mirror, e.g. 'nixos-unstable' or 'nixos-24.05'.",
    )
    base_url: str = Field(
        default="https://channels.nixos.org",
        description="Root of the channel server.",
    )
    packages_file: str = Field(
        default="packages.json.br",
        description="Package catalog file published for each channel.",
    )
    options_file: str = Field(
        default="options.json.br",
        description="Option catalog file published for each channel.",
    )
    include_options: bool = Field(
        default=True,
        description="Also mirror NixOS options. Only NixOS channels publish them.",
    )
    db_filename: str = Field(
        default="catalog.db",
        description="Name of the SQLite cache file inside the data directory.",
    )
    staleness_threshold_seconds: int = Field(
        default=86400,
        ge=60,
        description="Age after which the mirrored catalog is reported as stale. Minimum: 60 seconds.",
    )
    refresh_interval_seconds: int = Field(
        default=21600,
        ge=60,
        description="How often the periodic loop checks for a newer revision.",
    )
    failure_cooldown_seconds: int = Field(
        default=900,
        ge=0,
        description="Do not retry a stale refresh this soon after a failed attempt.",
    )
    fetch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request HTTP timeout.",
    )
    max_fetch_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per resource before a transient fetch error is surfaced.",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff step between fetch attempts.",
    )
    keep_payloads: bool = Field(
        default=False,
        description="Keep the last downloaded payloads in <DATA_DIR>/payloads for offline re-import.",
    )
    writer_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long begin_replace waits for another writer to finish.",
    )

    @property
    def channel_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.channel}"

    @property
    def packages_url(self) -> str:
        return f"{self.channel_url}/{self.packages_file}"

    @property
    def options_url(self) -> str:
        return f"{self.channel_url}/{self.options_file}"


def get_data_dir() -> Path:
    """
    Determine the data directory path.

    Priority:
    1. Environment variable NIX_DATA_DIR
    2. '~/.cache/nix-data'
    """
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    if env_path:
        d = Path(env_path).expanduser()
    else:
        d = _DEFAULT_DATA_DIR.expanduser()
    d.mkdir(parents=True, exist_ok=True)
    return d


def load_settings(data_dir: Optional[Path] = None) -> CatalogSettings:
    """
    Load settings.json, merging with defaults for any missing fields,
    and write it back so any new fields are persisted.
    """
    data_dir = data_dir or get_data_dir()
    path = data_dir / SETTINGS_FILE
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            settings = CatalogSettings(**raw)
        except Exception as e:
            # If parsing fails, fall back to defaults and overwrite file.
            logger.warning(f"Ignoring unreadable settings file {path}: {e}")
            settings = CatalogSettings()
    else:
        settings = CatalogSettings()

    save_settings(settings, data_dir)
    return settings


def save_settings(settings: CatalogSettings, data_dir: Optional[Path] = None) -> None:
    data_dir = data_dir or get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / SETTINGS_FILE
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
