"""Tests for the SQLite credential store.

Covers:
  - Migrations: tables and schema version
  - Insert-or-ignore record creation
  - Safe address: first written value wins
  - Flags: set-only, never lowered
  - last_error record / clear
  - Credential upsert keyed by user id
  - sqlite failures surfacing as StoreUnavailableError
"""

from __future__ import annotations

import sqlite3

import pytest

from alphascope.config import StorageConfig
from alphascope.errors import StoreUnavailableError
from alphascope.storage.database import CredentialStore
from alphascope.storage.migrations import SCHEMA_VERSION, get_current_version, run_migrations
from alphascope.storage.models import ClobCredentialRecord, ProvisioningFlag
from conftest import EOA, USER_ID, WALLET_ID


def _creds(api_key: str = "key-1") -> ClobCredentialRecord:
    return ClobCredentialRecord(
        user_id=USER_ID, address=EOA, api_key=api_key, secret="c2VjcmV0", passphrase="pass",
    )


class TestMigrations:

    def test_fresh_database_at_latest_version(self, store):
        assert get_current_version(store.conn) == SCHEMA_VERSION
        tables = {
            r[0] for r in store.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"schema_version", "profiles", "clob_credentials"} <= tables

    def test_rerun_is_noop(self, store):
        run_migrations(store.conn)
        assert get_current_version(store.conn) == SCHEMA_VERSION

    def test_connect_creates_parent_dirs(self, tmp_path):
        s = CredentialStore(StorageConfig(sqlite_path=str(tmp_path / "nested" / "dir" / "a.db")))
        s.connect()
        assert (tmp_path / "nested" / "dir" / "a.db").exists()
        s.close()


class TestRecords:

    @pytest.mark.asyncio
    async def test_missing_record(self, store):
        assert await store.get_record(USER_ID) is None

    @pytest.mark.asyncio
    async def test_create_then_keep(self, store):
        first = await store.create_record_if_missing(USER_ID, WALLET_ID, EOA, username="a")
        second = await store.create_record_if_missing(USER_ID, "other-wallet", "0x" + "cd" * 20)

        assert first.custody_address == EOA
        assert second.custody_wallet_id == WALLET_ID
        assert second.custody_address == EOA
        assert not any(second.flags.model_dump().values())

    @pytest.mark.asyncio
    async def test_update_profile_keeps_identity(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA, username="old")
        await store.update_profile(USER_ID, username="new")
        record = await store.get_record(USER_ID)
        assert record.username == "new"
        assert record.custody_address == EOA

    @pytest.mark.asyncio
    async def test_safe_address_first_value_wins(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        first = "0x" + "11" * 20
        assert await store.set_safe_address(USER_ID, first) == first
        assert await store.set_safe_address(USER_ID, "0x" + "22" * 20) == first
        assert (await store.get_record(USER_ID)).safe_wallet_address == first

    @pytest.mark.asyncio
    async def test_safe_address_unknown_user(self, store):
        with pytest.raises(StoreUnavailableError):
            await store.set_safe_address("nobody", "0x" + "11" * 20)


class TestFlags:

    @pytest.mark.asyncio
    async def test_mark_flag(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        await store.mark_flag(USER_ID, ProvisioningFlag.SAFE_DEPLOYED)
        flags = (await store.get_record(USER_ID)).flags
        assert flags.safe_deployed
        assert not flags.allowances_set

    @pytest.mark.asyncio
    async def test_flags_are_monotonic(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        for flag in ProvisioningFlag:
            await store.mark_flag(USER_ID, flag)
            await store.mark_flag(USER_ID, flag)
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        assert (await store.get_record(USER_ID)).flags.complete

    @pytest.mark.asyncio
    async def test_unknown_flag_rejected(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        with pytest.raises(ValueError):
            await store.mark_flag(USER_ID, "custody_address = 0, safe_deployed")


class TestErrors:

    @pytest.mark.asyncio
    async def test_record_and_clear(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        await store.record_error(USER_ID, "allowances: reverted")
        assert (await store.get_record(USER_ID)).last_error == "allowances: reverted"
        await store.record_error(USER_ID, "safe_wallet: timeout")
        assert (await store.get_record(USER_ID)).last_error == "safe_wallet: timeout"
        await store.clear_error(USER_ID)
        assert (await store.get_record(USER_ID)).last_error is None

    @pytest.mark.asyncio
    async def test_closed_store_raises(self, store):
        store.close()
        with pytest.raises(StoreUnavailableError):
            await store.get_record(USER_ID)

    @pytest.mark.asyncio
    async def test_sqlite_error_wrapped(self, store):
        store.conn.execute("DROP TABLE clob_credentials")
        with pytest.raises(StoreUnavailableError):
            await store.get_credentials(USER_ID)

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        s = CredentialStore(StorageConfig(sqlite_path=str(blocker / "a.db")))
        with pytest.raises(StoreUnavailableError):
            s.connect()


class TestCredentials:

    @pytest.mark.asyncio
    async def test_upsert_and_read(self, store):
        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        await store.upsert_credentials(_creds())
        await store.upsert_credentials(_creds("key-2"))

        creds = await store.get_credentials(USER_ID)
        assert creds.api_key == "key-2"
        count = store.conn.execute("SELECT COUNT(*) FROM clob_credentials").fetchone()[0]
        assert count == 1

    def test_secrets_not_in_repr(self):
        text = repr(_creds())
        assert "c2VjcmV0" not in text
        assert "pass'" not in text

    @pytest.mark.asyncio
    async def test_status(self, store):
        assert not (await store.get_status(USER_ID)).exists

        await store.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        for flag in ProvisioningFlag:
            await store.mark_flag(USER_ID, flag)
        st = await store.get_status(USER_ID)
        assert st.exists
        assert not st.has_credentials
        assert not st.complete

        await store.upsert_credentials(_creds())
        assert (await store.get_status(USER_ID)).complete

    @pytest.mark.asyncio
    async def test_rows_survive_reconnect(self, tmp_path):
        cfg = StorageConfig(sqlite_path=str(tmp_path / "a.db"))
        s = CredentialStore(cfg)
        s.connect()
        await s.create_record_if_missing(USER_ID, WALLET_ID, EOA)
        await s.mark_flag(USER_ID, ProvisioningFlag.SESSION_SIGNER_DELEGATED)
        s.close()

        s2 = CredentialStore(cfg)
        s2.connect()
        assert (await s2.get_record(USER_ID)).flags.session_signer_delegated
        s2.close()
        conn = sqlite3.connect(cfg.sqlite_path)
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        conn.close()
