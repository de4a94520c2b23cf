"""Configuration loader for c2g.

This module provides:
- Typed config models (pydantic BaseModel), including the sync Policy
- Precedence-aware loader: file (YAML) < ENV (C2G__*) < CLI overrides
- Minimal coercion for ENV values (bool/int/float/list)

ENV format (nested via delimiter):
  C2G__feed__url=https://canvas.example.edu/feeds/calendars/user_abc.ics
  C2G__google__calendar_name=Canvas
  C2G__sync__max_concurrency=8
  C2G__policy__tasks__included_courses=CS101,MATH221

CLI overrides can pass a nested dict, e.g.:
  {"sync": {"dry_run": True}, "logging": {"level": "DEBUG"}}

Example:
  cfg = load_config("/data/config.yaml", cli_overrides={"sync": {"dry_run": True}})
  print(cfg.policy.tasks.included_courses)
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import Category

# ----------------------------
# Policy models (per-run routing rules)
# ----------------------------


class DestinationPolicy(BaseModel):
    categories: list[Category] = Field(default_factory=list)
    included_courses: list[str] = Field(default_factory=list)
    excluded_courses: list[str] = Field(default_factory=list)

    @field_validator("included_courses", "excluded_courses")
    @classmethod
    def _normalize_courses(cls, v: list[str]) -> list[str]:
        # Course codes are compared in their normalized form (no separators)
        out: list[str] = []
        for code in v:
            norm = re.sub(r"[-\s]", "", str(code)).upper()
            if norm and norm not in out:
                out.append(norm)
        return out


class CalendarPolicy(DestinationPolicy):
    categories: list[Category] = Field(default_factory=lambda: [Category.EVENT])


class TasksPolicy(DestinationPolicy):
    categories: list[Category] = Field(default_factory=lambda: [Category.ASSIGNMENT])
    grouping: Literal["per_course", "consolidated"] = "per_course"
    consolidated_list_name: str = "Canvas"


class DateRange(BaseModel):
    past_days: int | None = Field(None, ge=0, le=3650)
    future_days: int | None = Field(365, ge=0, le=3650)


def _default_calendar_policy() -> CalendarPolicy:
    return CalendarPolicy()


def _default_tasks_policy() -> TasksPolicy:
    return TasksPolicy()


def _default_date_range() -> DateRange:
    return DateRange()


class Policy(BaseModel):
    calendar: CalendarPolicy = Field(default_factory=_default_calendar_policy)
    tasks: TasksPolicy = Field(default_factory=_default_tasks_policy)
    date_range: DateRange = Field(default_factory=_default_date_range)


# ----------------------------
# Pydantic models (typed config)
# ----------------------------


class FeedConfig(BaseModel):
    url: str | None = None  # may also be stored per owner or passed on the CLI
    allowed_hosts: list[str] = Field(
        default_factory=lambda: [
            r"canvas\.[a-z0-9-]+\.edu",
            r"[a-z0-9-]+\.instructure\.com",
        ]
    )
    path_prefix: str = "/feeds/calendars/"
    # Bounded fetch: 1..120s, 1KiB..50MiB, 1..50000 entries
    timeout_sec: float = Field(20.0, gt=0, le=120)
    max_bytes: int = Field(5 * 1024 * 1024, ge=1024, le=50 * 1024 * 1024)
    max_entries: int = Field(5000, ge=1, le=50000)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("https://"):
            raise ValueError("feed.url must start with https://")
        return v

    @field_validator("allowed_hosts")
    @classmethod
    def _validate_hosts(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"feed.allowed_hosts entry {pattern!r} is not a regex: {exc}")
        return v


class GoogleConfig(BaseModel):
    credentials_file: str | None = None  # or GOOGLE_CREDENTIALS_JSON via ENV
    token_store: str = "/data/google_token.json"
    allow_interactive: bool = True
    calendar_name: str = "Canvas"


class SyncConfig(BaseModel):
    # Parallel downstream mutations per destination pass (1..32)
    max_concurrency: int = Field(4, ge=1, le=32)
    # Run-level deadline; None disables it
    run_timeout_sec: float | None = Field(600.0, gt=0)
    honor_excluded_courses: bool = False
    # Caller-side retries for feed transport errors (0..10)
    max_retries: int = Field(3, ge=0, le=10)
    backoff_initial_sec: float = Field(1.0, gt=0, le=60)
    dry_run: bool = False


class StateConfig(BaseModel):
    db_path: str = "/data/state.sqlite"


class LoggingConfig(BaseModel):
    # Allow using alias "json" in config/env while avoiding BaseModel.json clash
    model_config = ConfigDict(populate_by_name=True)
    level: str = "INFO"
    as_json: bool = Field(True, alias="json")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        lv = (v or "INFO").upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if lv not in allowed:
            raise ValueError(f"logging.level must be one of {sorted(allowed)}")
        return lv


class RuntimeConfig(BaseModel):
    owner_id: str = "default"
    lock_dir: str = "/tmp"

    @field_validator("owner_id")
    @classmethod
    def _validate_owner(cls, v: str) -> str:
        # Used in lock file names
        if not re.fullmatch(r"[A-Za-z0-9_.@-]{1,128}", v):
            raise ValueError("runtime.owner_id may only contain letters, digits and _.@-")
        return v


def _default_feed_config() -> FeedConfig:
    return FeedConfig()


def _default_google_config() -> GoogleConfig:
    return GoogleConfig()


def _default_sync_config() -> SyncConfig:
    return SyncConfig()


def _default_state_config() -> StateConfig:
    return StateConfig()


def _default_logging_config() -> LoggingConfig:
    return LoggingConfig(json=True)


def _default_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


def _default_policy() -> Policy:
    return Policy()


class AppConfig(BaseModel):
    feed: FeedConfig = Field(default_factory=_default_feed_config)
    google: GoogleConfig = Field(default_factory=_default_google_config)
    sync: SyncConfig = Field(default_factory=_default_sync_config)
    state: StateConfig = Field(default_factory=_default_state_config)
    logging: LoggingConfig = Field(default_factory=_default_logging_config)
    runtime: RuntimeConfig = Field(default_factory=_default_runtime_config)
    policy: Policy = Field(default_factory=_default_policy)


__all__ = [
    "AppConfig",
    "CalendarPolicy",
    "DateRange",
    "DestinationPolicy",
    "FeedConfig",
    "GoogleConfig",
    "LoggingConfig",
    "Policy",
    "RuntimeConfig",
    "StateConfig",
    "SyncConfig",
    "TasksPolicy",
    "load_config",
    "merge_dicts",
    "read_env_config",
]


# ----------------------------
# Utilities
# ----------------------------


_BOOL_TRUE = {"1", "true", "yes", "on", "y", "t"}
_BOOL_FALSE = {"0", "false", "no", "off", "n", "f"}

_LIST_SPLIT_RE = re.compile(r"\s*,\s*")

# Keys whose ENV value is always a list, even with a single element
_LIST_KEYS = {"included_courses", "excluded_courses", "categories", "allowed_hosts"}


def _coerce_value(val: str, key: str = "") -> Any:
    """Best-effort coercion for ENV values."""
    s = val.strip()

    if key in _LIST_KEYS:
        return [p for p in _LIST_SPLIT_RE.split(s) if p != ""]

    ls = s.lower()
    if ls in _BOOL_TRUE:
        return True
    if ls in _BOOL_FALSE:
        return False

    if re.fullmatch(r"[+-]?\d+", s):
        return int(s)
    if re.fullmatch(r"[+-]?\d+\.\d*", s):
        return float(s)

    if "," in s:
        return [p for p in _LIST_SPLIT_RE.split(s) if p != ""]

    return s


def merge_dicts(
    base: MutableMapping[str, Any], override: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Deep-merge override into base (mutates base). Lists/atoms are replaced."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, Mapping):
            merge_dicts(base[k], v)
        else:
            base[k] = v
    return base


def read_yaml_config(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    p = Path(path).resolve()

    # Only read configuration from expected locations
    allowed_prefixes = [
        Path.home(),
        Path("/data"),
        Path("/opt/c2g"),
        Path("/etc/c2g"),
        Path.cwd(),
        Path("/tmp"),
        Path("/var/tmp"),
    ]

    path_allowed = False
    for prefix in allowed_prefixes:
        try:
            p.relative_to(prefix.resolve())
            path_allowed = True
            break
        except ValueError:
            continue

    if not path_allowed:
        raise ValueError(
            f"Configuration file path '{p}' is outside allowed directories. "
            f"Allowed prefixes: {[str(prefix) for prefix in allowed_prefixes]}"
        )

    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Top-level YAML must be a mapping in {p}")
        return data


def read_env_config(prefix: str = "C2G__", nested_delim: str = "__") -> dict[str, Any]:
    """Build nested dict from environment variables.

    Keys must start with `prefix` (default 'C2G__').
    Nested keys split by `nested_delim`.
    """
    if not prefix.endswith(nested_delim):
        raise ValueError("prefix must end with the nested_delim (default 'C2G__' and '__').")

    result: dict[str, Any] = {}
    plen = len(prefix)
    for key, raw in os.environ.items():
        if not key.startswith(prefix):
            continue
        path_parts = key[plen:].split(nested_delim)
        cursor = result
        for part in path_parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path_parts[-1]] = _coerce_value(raw, path_parts[-1])
    return result


# ----------------------------
# Loader (precedence: file < env < cli_overrides)
# ----------------------------


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_prefix: str = "C2G__",
    env_nested_delim: str = "__",
) -> AppConfig:
    """Load AppConfig with precedence: file < env < CLI overrides.

    Raises:
        ValueError: when the merged configuration does not validate
    """
    merged: dict[str, Any] = {}

    merge_dicts(merged, read_yaml_config(Path(file_path) if file_path else None))
    merge_dicts(merged, read_env_config(prefix=env_prefix, nested_delim=env_nested_delim))

    if cli_overrides:
        if not isinstance(cli_overrides, Mapping):
            raise TypeError("cli_overrides must be a mapping (nested dict-like).")
        merge_dicts(merged, cli_overrides)

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as ve:
        raise ValueError(f"Invalid configuration: {ve}") from ve
