"""Database layer for the generation engine.

Supports two backends:
- PostgreSQL (production, set TAILOR_DATABASE_URL env var)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite). No ORM.

Thread-safety: Postgres uses a ThreadedConnectionPool for connection reuse.
SQLite uses per-call connections with check_same_thread=False, so every
generation thread gets its own connection.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("TAILOR_DATABASE_URL", "")

# SQLite path (override with TAILOR_SQLITE_PATH)
SQLITE_PATH = Path(os.environ.get("TAILOR_SQLITE_PATH", str(Path(__file__).parent / "tailor.db")))

_initialized = False
_pg_pool = None


def _is_postgres() -> bool:
    """Check if we're using Postgres."""
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=5,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-5 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(str(SQLITE_PATH), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def adapt_sql(sql: str) -> str:
    """Adapt %s placeholders to the active backend (SQLite uses ?)."""
    if _is_postgres():
        return sql
    return sql.replace("%s", "?")


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a SQL statement.

    Args:
        sql: SQL statement (use %s placeholders; adapted to ? for SQLite)
        params: Parameters tuple
        fetch: "none", "one", "all", or "rowcount"

    Returns:
        None for "none", dict for "one", list[dict] for "all",
        int (affected rows) for "rowcount"
    """
    adapted_sql = adapt_sql(sql)

    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(adapted_sql, params)

        if fetch == "none":
            conn.commit()
            return None
        elif fetch == "rowcount":
            count = cursor.rowcount
            conn.commit()
            return count
        elif fetch == "one":
            row = cursor.fetchone()
            conn.commit()
            if row is None:
                return None
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return dict(zip(columns, row))
            return dict(row)
        elif fetch == "all":
            rows = cursor.fetchall()
            conn.commit()
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return [dict(zip(columns, row)) for row in rows]
            return [dict(row) for row in rows]

        raise ValueError(f"Unknown fetch mode: {fetch}")


def init_db():
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    if _is_postgres():
        _init_postgres()
    else:
        SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
        _init_sqlite()

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Tailor database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id VARCHAR(200) PRIMARY KEY,
        owner_id VARCHAR(200) NOT NULL,
        state VARCHAR(20) NOT NULL DEFAULT 'processing',
        locked INTEGER NOT NULL DEFAULT 0,
        approved_at TIMESTAMP,
        job JSONB DEFAULT '{}',
        artifacts JSONB DEFAULT '{}',
        error TEXT,
        created_at TIMESTAMP DEFAULT NOW(),
        updated_at TIMESTAMP DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_owner
        ON sessions(owner_id, created_at);

    CREATE TABLE IF NOT EXISTS chat_messages (
        id SERIAL PRIMARY KEY,
        session_id VARCHAR(200) NOT NULL REFERENCES sessions(session_id),
        role VARCHAR(20) NOT NULL,
        content TEXT NOT NULL,
        result JSONB,
        logs JSONB,
        created_at TIMESTAMP DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_chat_messages_session
        ON chat_messages(session_id, id);

    CREATE TABLE IF NOT EXISTS session_logs (
        session_id VARCHAR(200) NOT NULL REFERENCES sessions(session_id),
        idx INTEGER NOT NULL,
        level VARCHAR(20) NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        run_id VARCHAR(100),
        created_at TIMESTAMP DEFAULT NOW(),
        PRIMARY KEY (session_id, idx)
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'processing',
        locked INTEGER NOT NULL DEFAULT 0,
        approved_at TEXT,
        job TEXT DEFAULT '{}',
        artifacts TEXT DEFAULT '{}',
        error TEXT,
        created_at TEXT,
        updated_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_owner
        ON sessions(owner_id, created_at);

    CREATE TABLE IF NOT EXISTS chat_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(session_id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        result TEXT,
        logs TEXT,
        created_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_chat_messages_session
        ON chat_messages(session_id, id);

    CREATE TABLE IF NOT EXISTS session_logs (
        session_id TEXT NOT NULL REFERENCES sessions(session_id),
        idx INTEGER NOT NULL,
        level TEXT NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        run_id TEXT,
        created_at TEXT,
        PRIMARY KEY (session_id, idx)
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
