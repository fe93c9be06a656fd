"""CredentialStore: SQLite persistence for provisioning progress.

Every write is keyed by ``user_id`` and convergent: records are created
with insert-or-ignore, the Safe address is set once (first observed value
wins), and flag writes only ever store 1. Concurrent writers for the same
user therefore end in the same state whatever order they run in.

Any sqlite failure surfaces as ``StoreUnavailableError``.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from alphascope.config import StorageConfig
from alphascope.errors import StoreUnavailableError
from alphascope.observability.logger import get_logger
from alphascope.storage.migrations import run_migrations
from alphascope.storage.models import (
    ClobCredentialRecord,
    ProvisioningFlag,
    ProvisioningRecord,
    ProvisioningStatus,
    utcnow,
)

log = get_logger(__name__)


class CredentialStore:
    """SQLite-backed store of provisioning records and exchange credentials."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        db_path = Path(self._config.sqlite_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            run_migrations(self._conn)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"cannot open store at {db_path}: {e}") from e
        log.info("store.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("store not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _guard(self, op: str) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            log.error("store.error", op=op, error=str(e))
            raise StoreUnavailableError(f"{op}: {e}") from e

    # ── Provisioning records ─────────────────────────────────────────

    async def get_record(self, user_id: str) -> Optional[ProvisioningRecord]:
        with self._guard("get_record") as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
        return ProvisioningRecord.from_row(row) if row else None

    async def create_record_if_missing(
        self,
        user_id: str,
        custody_wallet_id: str,
        custody_address: str,
        username: str | None = None,
        avatar_url: str | None = None,
        main_wallet: str | None = None,
    ) -> ProvisioningRecord:
        """Insert a fresh record with all flags false; keep an existing one."""
        now = utcnow()
        with self._guard("create_record") as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO profiles
                    (user_id, custody_wallet_id, custody_address,
                     username, avatar_url, main_wallet, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, custody_wallet_id, custody_address,
                 username, avatar_url, main_wallet, now, now),
            )
            created = cur.rowcount == 1
        if created:
            log.info("store.record_created", user_id=user_id)
        record = await self.get_record(user_id)
        if record is None:
            raise StoreUnavailableError(f"record for {user_id} vanished after insert")
        return record

    async def update_profile(
        self,
        user_id: str,
        username: str | None = None,
        avatar_url: str | None = None,
        main_wallet: str | None = None,
    ) -> None:
        """Refresh display fields. Custody identity and flags are untouched."""
        with self._guard("update_profile") as conn:
            conn.execute(
                """
                UPDATE profiles
                SET username = COALESCE(?, username),
                    avatar_url = COALESCE(?, avatar_url),
                    main_wallet = COALESCE(?, main_wallet),
                    updated_at = ?
                WHERE user_id = ?
                """,
                (username, avatar_url, main_wallet, utcnow(), user_id),
            )

    async def set_safe_address(self, user_id: str, safe_address: str) -> str:
        """Persist the Safe address unless one is already stored.

        Returns the stored address, which is the first one ever written.
        """
        with self._guard("set_safe_address") as conn:
            conn.execute(
                """
                UPDATE profiles
                SET safe_wallet_address = COALESCE(safe_wallet_address, ?),
                    updated_at = ?
                WHERE user_id = ?
                """,
                (safe_address, utcnow(), user_id),
            )
            row = conn.execute(
                "SELECT safe_wallet_address FROM profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None or row[0] is None:
            raise StoreUnavailableError(f"no record for {user_id}")
        return row[0]

    async def mark_flag(self, user_id: str, flag: ProvisioningFlag) -> None:
        """Set ``flag`` to true. There is no way to set it back."""
        column = ProvisioningFlag(flag).value
        with self._guard("mark_flag") as conn:
            conn.execute(
                f"UPDATE profiles SET {column} = 1, updated_at = ? WHERE user_id = ?",
                (utcnow(), user_id),
            )
        log.info("store.flag_set", user_id=user_id, flag=column)

    async def record_error(self, user_id: str, message: str) -> None:
        with self._guard("record_error") as conn:
            conn.execute(
                "UPDATE profiles SET last_error = ?, updated_at = ? WHERE user_id = ?",
                (message[:1000], utcnow(), user_id),
            )

    async def clear_error(self, user_id: str) -> None:
        with self._guard("clear_error") as conn:
            conn.execute(
                "UPDATE profiles SET last_error = NULL, updated_at = ? "
                "WHERE user_id = ? AND last_error IS NOT NULL",
                (utcnow(), user_id),
            )

    # ── Exchange credentials ─────────────────────────────────────────

    async def get_credentials(self, user_id: str) -> Optional[ClobCredentialRecord]:
        with self._guard("get_credentials") as conn:
            row = conn.execute(
                "SELECT * FROM clob_credentials WHERE user_id = ?", (user_id,)
            ).fetchone()
        return ClobCredentialRecord(**dict(row)) if row else None

    async def upsert_credentials(self, record: ClobCredentialRecord) -> None:
        with self._guard("upsert_credentials") as conn:
            conn.execute(
                """
                INSERT INTO clob_credentials
                    (user_id, address, api_key, secret, passphrase, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    address = excluded.address,
                    api_key = excluded.api_key,
                    secret = excluded.secret,
                    passphrase = excluded.passphrase
                """,
                (record.user_id, record.address, record.api_key,
                 record.secret, record.passphrase, record.created_at),
            )
        log.info("store.credentials_saved", user_id=record.user_id, address=record.address)

    # ── Status ───────────────────────────────────────────────────────

    async def get_status(self, user_id: str) -> ProvisioningStatus:
        record = await self.get_record(user_id)
        if record is None:
            return ProvisioningStatus(user_id=user_id)
        creds = await self.get_credentials(user_id)
        return ProvisioningStatus(
            user_id=user_id,
            exists=True,
            flags=record.flags,
            custody_address=record.custody_address,
            safe_wallet_address=record.safe_wallet_address,
            has_credentials=creds is not None,
            last_error=record.last_error,
        )
