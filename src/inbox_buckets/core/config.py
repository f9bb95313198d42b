"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity and folder layout."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(default=None, description="Account username")
    app_password: str | None = Field(default=None, description="App password")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    inbox_folder: str = Field(default="INBOX", description="Primary inbox folder")
    archive_folder: str = Field(
        default="Archives", description="Folder archived messages are moved to"
    )
    sent_folder: str | None = Field(
        default=None, description="Optional sent folder to mirror into the cache"
    )
    drafts_folder: str = Field(default="Drafts", description="Folder for drafts")
    connect_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout while connecting"
    )
    command_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for flag and position commands"
    )
    fetch_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Timeout for body fetches and searches"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_buckets.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle key=value structured logging"
    )
    imap_debug: bool = Field(
        default=False, description="Emit DEBUG records from the IMAP transport"
    )


class SyncSettings(BaseModel):
    """Settings controlling reconciliation cadence and bounds."""

    start_date: date = Field(
        default=date(2025, 6, 1),
        description="Messages dated before this day are outside the sync window",
    )
    import_starred: bool = Field(
        default=True, description="Include flagged messages older than the cutoff"
    )
    batch_size: int = Field(
        default=50, ge=1, description="Messages fetched per IMAP batch"
    )
    interval_seconds: float = Field(
        default=300.0, gt=0, description="Period between background sync runs"
    )
    initial_delay_seconds: float = Field(
        default=1.0, ge=0, description="Delay before the first background run"
    )
    bucket_refresh_seconds: float = Field(
        default=30.0, ge=0, description="Minimum gap between bucket refreshes"
    )
    orphan_sample_size: int = Field(
        default=10, ge=0, description="Rows inspected per orphan cleanup pass"
    )
    auto_consolidate: bool = Field(
        default=True, description="Reunite threads on every inbox refresh"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)


ENV_PREFIX = "INBOX_BUCKETS_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if value == "":
        return None
    lowercase_value = value.lower()
    if lowercase_value == "true":
        return True
    if lowercase_value == "false":
        return False
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values: dict[str, Any] = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, Any] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce_value(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ENV_PREFIX",
    "ImapSettings",
    "LoggingSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
