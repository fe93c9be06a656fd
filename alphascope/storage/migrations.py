"""Database migrations: create and upgrade schema."""

from __future__ import annotations

import sqlite3

from alphascope.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS profiles (
            user_id TEXT PRIMARY KEY,
            custody_wallet_id TEXT NOT NULL,
            custody_address TEXT NOT NULL,
            username TEXT,
            avatar_url TEXT,
            main_wallet TEXT,
            safe_wallet_address TEXT,
            session_signer_delegated INTEGER NOT NULL DEFAULT 0,
            safe_deployed INTEGER NOT NULL DEFAULT 0,
            allowances_set INTEGER NOT NULL DEFAULT 0,
            clob_credentials_issued INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS clob_credentials (
            user_id TEXT PRIMARY KEY,
            address TEXT NOT NULL,
            api_key TEXT NOT NULL,
            secret TEXT NOT NULL,
            passphrase TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES profiles(user_id)
        );
        """,
    ],
    2: [
        "CREATE INDEX IF NOT EXISTS idx_profiles_safe ON profiles(safe_wallet_address);",
        "CREATE INDEX IF NOT EXISTS idx_profiles_custody ON profiles(custody_address);",
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.info("migrations.complete", version=get_current_version(conn))


def get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
