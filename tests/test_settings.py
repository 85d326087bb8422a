"""Tests for settings and production safeguards."""

import re
from pathlib import Path

import pytest

from audit_ledger.settings import Settings

SETTINGS_FILE = Path(__file__).resolve().parent.parent / "audit_ledger" / "settings.py"


def test_no_default_minio_credentials():
    """Fail if Settings ships default MinIO credentials."""
    content = SETTINGS_FILE.read_text()

    for default in ("minioadmin", "minioadmin123"):
        pattern = rf'minio_(access_key|secret_key)\s*[:=][^\n]*["\']{re.escape(default)}["\']'
        assert not re.search(pattern, content), f"default MinIO credential '{default}' in {SETTINGS_FILE}"


def test_production_requires_minio_credentials(monkeypatch):
    """Non-development environments refuse to start without credentials."""
    monkeypatch.delenv("MINIO_ACCESS_KEY", raising=False)
    monkeypatch.delenv("MINIO_SECRET_KEY", raising=False)
    with pytest.raises(ValueError, match="MINIO_ACCESS_KEY"):
        Settings(_env_file=None, environment="production").validate_production_settings()

    Settings(
        _env_file=None, environment="production", minio_access_key="k", minio_secret_key="s"
    ).validate_production_settings()
    Settings(_env_file=None, environment="development").validate_production_settings()


def test_production_requires_positive_retention():
    settings = Settings(
        _env_file=None,
        environment="production",
        minio_access_key="k",
        minio_secret_key="s",
        archive_retention_days=0,
    )
    with pytest.raises(ValueError, match="ARCHIVE_RETENTION_DAYS"):
        settings.validate_production_settings()


def test_database_urls(monkeypatch):
    """The async URL uses asyncpg; Alembic gets the sync driver."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    settings = Settings(_env_file=None, database_url="postgresql://u:p@db:5432/ledger")
    assert settings.database_url_computed == "postgresql+asyncpg://u:p@db:5432/ledger"
    assert settings.database_url_sync == "postgresql://u:p@db:5432/ledger"

    settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///ledger.db")
    assert settings.database_url_sync == "sqlite:///ledger.db"

    assert Settings(_env_file=None).database_url_computed.startswith("postgresql+asyncpg://ledger:")
