"""Tests for configuration loading."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from inbox_buckets.core.config import load_app_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


def test_defaults_loaded_without_env_file() -> None:
    """Default values should be returned when no overrides are present."""

    settings = load_app_settings(include_environment=False)
    assert settings.imap.host == "imap.gmail.com"
    assert settings.imap.archive_folder == "Archives"
    assert settings.imap.sent_folder is None
    assert settings.storage.db_path == Path("./inbox_buckets.db")
    assert settings.sync.batch_size == 50
    assert settings.sync.interval_seconds == 300
    assert settings.sync.orphan_sample_size == 10
    assert settings.sync.start_date == date(2025, 6, 1)


def test_env_file_overrides(tmp_path: Path) -> None:
    """Values defined in an env file should override defaults."""

    env_file = tmp_path / "test.env"
    env_file.write_text(
        "\n".join(
            [
                "INBOX_BUCKETS_IMAP__HOST=imap.example.com",
                "INBOX_BUCKETS_IMAP__SENT_FOLDER=Sent Items",
                "INBOX_BUCKETS_SYNC__START_DATE=2025-09-15",
                "INBOX_BUCKETS_SYNC__IMPORT_STARRED=false",
                "OTHER_APP_SETTING=ignored",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.imap.host == "imap.example.com"
    assert settings.imap.sent_folder == "Sent Items"
    assert settings.sync.start_date == date(2025, 9, 15)
    assert settings.sync.import_starred is False


def test_environment_wins_over_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Process environment values take precedence over the env file."""

    env_file = tmp_path / "test.env"
    env_file.write_text("INBOX_BUCKETS_IMAP__PORT=1143\n", encoding="utf-8")
    monkeypatch.setenv("INBOX_BUCKETS_IMAP__PORT", "2143")

    settings = load_app_settings(env_file=env_file)
    assert settings.imap.port == 2143


def test_empty_value_becomes_none(tmp_path: Path) -> None:
    """An empty assignment clears optional settings."""

    env_file = tmp_path / "test.env"
    env_file.write_text("INBOX_BUCKETS_IMAP__USERNAME=\n", encoding="utf-8")

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.imap.username is None
