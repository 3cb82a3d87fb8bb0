from __future__ import annotations

import logging
import os
import sqlite3
import time
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite:///"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS canteens (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    owner_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    canteen_id TEXT NOT NULL,
    customer_name TEXT NOT NULL,
    customer_phone TEXT,
    customer_department TEXT,
    items_json TEXT,
    total_amount NUMERIC NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (canteen_id) REFERENCES canteens (id)
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    canteen_id TEXT NOT NULL,
    customer_name TEXT NOT NULL,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    comment TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (canteen_id) REFERENCES canteens (id)
);
"""


def database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "canteen")
    password = os.environ.get("DB_PASSWORD", "canteen")
    host = os.environ.get("DB_HOST", "canteen-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "canteen_dashboard")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def get_connection(url: str | None = None):
    """Open a connection to Postgres, or to a SQLite file for ``sqlite:///`` URLs.

    The database container may still be booting, so failed attempts are
    retried ``DB_CONNECT_MAX_RETRIES`` times.
    """
    url = url or database_url()
    retries = max(1, int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30")))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    for attempt in range(1, retries + 1):
        try:
            return connect(url)
        except (psycopg.OperationalError, sqlite3.OperationalError) as exc:
            if attempt == retries:
                raise
            logger.warning("Database not ready (%s), retry %d/%d", exc, attempt, retries)
            time.sleep(delay)


def connect(url: str):
    if url.startswith(SQLITE_PREFIX):
        conn = sqlite3.connect(url[len(SQLITE_PREFIX):], check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn
    return psycopg.connect(url, autocommit=True, row_factory=dict_row)


def init_db(url: str | None = None) -> None:
    conn = get_connection(url)
    try:
        apply_schema(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
