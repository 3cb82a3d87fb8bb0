from __future__ import annotations

import sqlite3

import pytest

from canteen_dashboard import database
from canteen_dashboard.repository import CanteenRepository


def test_database_url_from_parts(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_USER", "owner")
    monkeypatch.setenv("DB_PASSWORD", "pw")
    monkeypatch.setenv("DB_HOST", "db")
    monkeypatch.setenv("DB_PORT", "6543")
    monkeypatch.setenv("DB_NAME", "dashboard")

    assert database.database_url() == "postgresql://owner:pw@db:6543/dashboard"


def test_sqlite_url_serves_the_repository(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'dev.db'}")

    database.init_db()
    repo = CanteenRepository()
    repo.add_canteen("canteen-chem", "Chemistry Canteen", "owner-1")

    assert repo.resolve_canteen_for_owner("owner-1") == "canteen-chem"


def test_connection_attempts_are_retried_then_raised(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_CONNECT_MAX_RETRIES", "3")
    monkeypatch.setenv("DB_CONNECT_RETRY_DELAY", "0")
    attempts = []
    real_connect = sqlite3.connect

    def counting_connect(*args, **kwargs):
        attempts.append(args[0])
        return real_connect(*args, **kwargs)

    monkeypatch.setattr(database.sqlite3, "connect", counting_connect)
    missing_dir = tmp_path / "missing" / "dev.db"

    with pytest.raises(sqlite3.OperationalError):
        database.get_connection(f"sqlite:///{missing_dir}")

    assert len(attempts) == 3
