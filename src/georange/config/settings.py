# src/georange/config/settings.py
"""
Library settings (Pydantic).

Settings are loaded from `src/georange/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `GEORANGE_LOG_LEVEL`, `FIRESTORE_ACCESS_TOKEN`)
- an external YAML file via `GEORANGE_CONFIG_PATH`

Design rule:
- Tuning knobs live in YAML, not hard-coded in query logic.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any
from georange.core.env import load_dotenv_if_present

import yaml
from pydantic import BaseModel, Field

from georange.core.geohash import GEOHASH_PRECISION, MAX_PRECISION


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `georange.config`."""
    text = resources.files("georange.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "georange"
    http_timeout_seconds: float = 15
    log_level: str = "INFO"


class GeohashSettings(BaseModel):
    # Precision of the `g` field written alongside every document.
    precision: int = Field(GEOHASH_PRECISION, ge=1, le=MAX_PRECISION)


class QuerySettings(BaseModel):
    fanout_max_workers: int = Field(9, ge=1, le=64)
    location_key: str = "coordinates"


class RetrySettings(BaseModel):
    max_attempts: int = Field(3, ge=0)
    base_delay_seconds: float = Field(0.5, ge=0)
    max_delay_seconds: float = Field(8.0, ge=0)


class FirestoreSettings(BaseModel):
    base_url: str = "https://firestore.googleapis.com/v1"
    project_id: str | None = None
    database: str = "(default)"
    collection: str = "places"
    access_token: str | None = None
    poll_interval_seconds: float = Field(2.0, gt=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    geohash: GeohashSettings = Field(default_factory=GeohashSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    firestore: FirestoreSettings = Field(default_factory=FirestoreSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("GEORANGE_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    precision = os.getenv("GEORANGE_GEOHASH_PRECISION")
    if precision:
        data.setdefault("geohash", {})["precision"] = precision

    workers = os.getenv("GEORANGE_FANOUT_WORKERS")
    if workers:
        data.setdefault("query", {})["fanout_max_workers"] = workers

    project_id = os.getenv("FIRESTORE_PROJECT_ID")
    if project_id:
        data.setdefault("firestore", {})["project_id"] = project_id

    token = os.getenv("FIRESTORE_ACCESS_TOKEN")
    if token:
        data.setdefault("firestore", {})["access_token"] = token

    # Same variable the official clients honour; the emulator speaks plain HTTP.
    emulator_host = os.getenv("FIRESTORE_EMULATOR_HOST")
    if emulator_host:
        data.setdefault("firestore", {})["base_url"] = f"http://{emulator_host}/v1"

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("GEORANGE_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
