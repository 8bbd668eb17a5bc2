"""calmirror settings.

Sections: google (OAuth files and REST client tuning), store (SQLite cache),
sync (workers, windows, retry), logging and runtime (lock file).

Values are layered, later layers winning: YAML file, then CALMIRROR__* environment
variables, then CLI overrides. Environment keys nest with a double underscore:

  CALMIRROR__store__db_path=/data/calmirror.sqlite
  CALMIRROR__sync__workers=6
  CALMIRROR__google__max_concurrent_requests=4
  CALMIRROR__logging__json=false
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .utils.retry import RetryConfig
from .utils.timezones import get_zoneinfo

# ----------------------------
# Sections
# ----------------------------


class GoogleConfig(BaseModel):
    # OAuth client secrets; GOOGLE_CREDENTIALS_JSON / GOOGLE_CREDENTIALS_FILE take precedence
    credentials_file: str | None = None
    token_store: str = "/data/google_token.json"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    request_timeout_sec: float = Field(30.0, gt=0, le=300)
    # Cap on simultaneous outbound requests (shared by sync workers and mutations)
    max_concurrent_requests: int = Field(8, ge=1, le=64)
    page_size: int = Field(250, ge=1, le=2500)
    minimal_listing: bool = False

    @field_validator("api_base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("google.api_base_url must start with http:// or https://")
        return v.rstrip("/")


class StoreConfig(BaseModel):
    db_path: str = "/data/calmirror.sqlite"
    pool_size: int = Field(4, ge=1, le=32)


class SyncConfig(BaseModel):
    workers: int = Field(4, ge=1, le=32)
    incremental_past_days: int = Field(0, ge=0, le=36500)
    incremental_future_days: int = Field(90, ge=1, le=36500)
    full_past_days: int = Field(3650, ge=0, le=36500)
    full_future_days: int = Field(3650, ge=1, le=36500)
    max_retries: int = Field(4, ge=0, le=10)
    backoff_initial_sec: float = Field(1.0, gt=0, le=60)
    backoff_factor: float = Field(2.0, ge=1, le=10)
    backoff_max_sec: float = Field(60.0, gt=0, le=600)
    default_timezone: str = "UTC"
    agenda_past_days: int = Field(1, ge=0, le=365)
    agenda_future_days: int = Field(2, ge=0, le=365)

    @field_validator("default_timezone")
    @classmethod
    def _validate_tz(cls, v: str) -> str:
        if get_zoneinfo(v) is None:
            raise ValueError(f"sync.default_timezone {v!r} is not a known IANA zone")
        return v

    @model_validator(mode="after")
    def _full_covers_incremental(self) -> SyncConfig:
        if (
            self.incremental_past_days > self.full_past_days
            or self.incremental_future_days > self.full_future_days
        ):
            raise ValueError("the full sync window must cover the incremental window")
        return self

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            backoff_initial_sec=self.backoff_initial_sec,
            backoff_factor=self.backoff_factor,
            backoff_max_sec=self.backoff_max_sec,
        )


_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class LoggingConfig(BaseModel):
    # "json" in YAML/ENV; the attribute is renamed to stay clear of BaseModel.json
    model_config = ConfigDict(populate_by_name=True)
    level: str = "INFO"
    as_json: bool = Field(False, alias="json")

    @field_validator("level")
    @classmethod
    def _level_name(cls, v: str) -> str:
        name = (v or "INFO").strip().upper()
        if name not in _LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(_LEVELS)}")
        return name


class RuntimeConfig(BaseModel):
    lock_path: str = "/tmp/calmirror.lock"


class AppConfig(BaseModel):
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


__all__ = [
    "AppConfig",
    "GoogleConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "StoreConfig",
    "SyncConfig",
    "load_config",
    "merge_dicts",
    "read_env_config",
]


# ----------------------------
# Sources: YAML file, environment, CLI
# ----------------------------

_TRUTHY = frozenset({"1", "true", "yes", "on", "y", "t"})
_FALSY = frozenset({"0", "false", "no", "off", "n", "f"})
_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?\d+\.\d*")


def _coerce_value(raw: str) -> Any:
    """Turn an ENV string into bool, int, float, list (comma separated) or str."""
    text = raw.strip()
    lowered = text.lower()
    if lowered in _TRUTHY or lowered in _FALSY:
        return lowered in _TRUTHY
    if _INT_RE.fullmatch(text):
        return int(text)
    if _FLOAT_RE.fullmatch(text):
        return float(text)
    if "," in text:
        return [item.strip() for item in text.split(",") if item.strip()]
    return text


def merge_dicts(
    base: MutableMapping[str, Any], override: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Recursively fold `override` into `base` in place; non-mapping values replace."""
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merge_dicts(current, value)
        else:
            base[key] = value
    return base


def read_yaml_config(path: str | Path | None) -> dict[str, Any]:
    """Parse the YAML config file; a missing file contributes nothing."""
    if path is None:
        return {}
    resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        return {}
    data = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{resolved}: config root must be a YAML mapping")
    return data


def read_env_config(prefix: str = "CALMIRROR__", nested_delim: str = "__") -> dict[str, Any]:
    """Collect `<prefix>section<delim>key=value` variables into a nested dict."""
    if not prefix.endswith(nested_delim):
        raise ValueError(f"env prefix {prefix!r} must end with {nested_delim!r}")

    tree: dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(prefix):
            continue
        *parents, leaf = name[len(prefix):].split(nested_delim)
        node = tree
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = _coerce_value(raw)
    return tree


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_prefix: str = "CALMIRROR__",
    env_nested_delim: str = "__",
) -> AppConfig:
    """Build AppConfig from defaults, then YAML, then ENV, then CLI overrides.

    Raises ValueError("Invalid configuration: ...") when the merged values fail validation.
    """
    if cli_overrides is not None and not isinstance(cli_overrides, Mapping):
        raise TypeError("cli_overrides must be a nested mapping")

    layers = (
        read_yaml_config(file_path),
        read_env_config(prefix=env_prefix, nested_delim=env_nested_delim),
        cli_overrides or {},
    )
    merged: dict[str, Any] = {}
    for layer in layers:
        merge_dicts(merged, layer)

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
