"""Tests for the provisioning service: identity resolution, single-flight,
drift reporting, balance sources and withdrawals."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

import alphascope.provisioning.service as service_module
from alphascope.config import AppConfig, BuilderCredentials, CustodyConfig, WithdrawConfig
from alphascope.connectors.custody import CustodyProfile, CustodyWallet
from alphascope.connectors.polymarket_clob import ClobBalances
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import AuthenticationError, NotProvisionedError, SessionEndedError, StoreUnavailableError
from alphascope.provisioning.service import ProvisioningService
from conftest import CONTRACTS, EOA, USER_ID, WALLET_ID, FakeClob, FakeCustody

FEE_WALLET = "0x" + "fe" * 20
DEST = "0x" + "de" * 20


class SessionCustody(FakeCustody):
    """Custody fake that also answers identity lookups."""

    def __init__(self) -> None:
        super().__init__()
        self.wallet_lookups = 0
        self.wallet = CustodyWallet(WALLET_ID, EOA)

    def verify_session_token(self, token: str) -> str:
        if token != "good-token":
            raise AuthenticationError("invalid session token")
        return USER_ID

    async def resolve_wallet(self, user_id: str) -> CustodyWallet:
        self.wallet_lookups += 1
        await asyncio.sleep(0.01)
        return self.wallet

    async def resolve_profile(self, user_id: str) -> CustodyProfile:
        return CustodyProfile(user_id=user_id, username="trader")

    async def close(self) -> None:
        pass


class BalancesClob(FakeClob):
    async def get_balances(self, creds, address) -> ClobBalances:
        assert creds.api_key == "key-" + address[-6:]
        return ClobBalances(available=7.5, locked=2.5)


class FakeDataApi:
    async def get_positions_value(self, address: str) -> float:
        return 11.0


@pytest.fixture
def service(monkeypatch, store, chain, relayer):
    monkeypatch.setattr(service_module, "RelayExecutor", lambda *args, **kwargs: relayer)
    config = AppConfig(
        custody=CustodyConfig(signer_id="signer-1"),
        withdraw=WithdrawConfig(fee_bps=100, fee_wallet=FEE_WALLET),
    )
    return ProvisioningService(
        config=config,
        store=store,
        custody=SessionCustody(),
        chain=chain,
        clob=BalancesClob(),
        data_api=FakeDataApi(),
        builder_credentials=BuilderCredentials(key="k", secret="c2VjcmV0", passphrase="p"),
        retry=RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0),
    )


class TestProvision:

    @pytest.mark.asyncio
    async def test_provision_with_token(self, service, store):
        result = await service.provision("good-token")

        assert result.ok
        assert result.user_id == USER_ID
        record = await store.get_record(USER_ID)
        assert record.username == "trader"
        assert record.custody_address == EOA

    @pytest.mark.asyncio
    async def test_bad_token(self, service):
        with pytest.raises(AuthenticationError):
            await service.provision("forged")

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_run(self, service, relayer):
        first, second = await asyncio.gather(
            service.provision_user(USER_ID), service.provision_user(USER_ID),
        )

        assert first is second
        assert first.ok
        assert service._custody.wallet_lookups == 1
        assert len(relayer.deploys) == 1
        assert len(relayer.executions) == 1

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self, service, relayer):
        await service.provision_user(USER_ID)
        await service.provision_user(USER_ID)
        assert service._custody.wallet_lookups == 2
        assert len(relayer.submissions) == 2

    @pytest.mark.asyncio
    async def test_status(self, service):
        before = await service.status(USER_ID)
        assert not before.exists

        await service.provision_user(USER_ID)

        after = await service.status(USER_ID)
        assert after.complete
        assert after.has_credentials
        assert after.safe_wallet_address == service.relayer_for(CustodyWallet(WALLET_ID, EOA)).safe


class TestVerifyAllowances:

    @pytest.mark.asyncio
    async def test_requires_provisioned_user(self, service):
        with pytest.raises(NotProvisionedError):
            await service.verify_allowances(USER_ID)

    @pytest.mark.asyncio
    async def test_drift_reported_without_touching_flags(self, service, chain, store):
        await service.provision_user(USER_ID)
        assert (await service.verify_allowances(USER_ID)).all_set

        chain.approvals.clear()
        state = await service.verify_allowances(USER_ID)

        assert state.missing == ["ctf_to_exchange"]
        record = await store.get_record(USER_ID)
        assert record.flags.allowances_set


class TestBalancesAndWithdraw:

    @pytest.mark.asyncio
    async def test_balance_sources(self, service, chain, relayer):
        await service.provision_user(USER_ID)
        chain.balances[(CONTRACTS.collateral.lower(), relayer.safe.lower())] = 25_000_000

        sources = await service.balance_sources(USER_ID)

        assert await sources.collateral() == pytest.approx(25.0)
        clob = await sources.clob_balances()
        assert (clob.available, clob.locked) == (7.5, 2.5)
        assert await sources.positions_value() == 11.0

    @pytest.mark.asyncio
    async def test_balance_sync_registered_once(self, service):
        await service.provision_user(USER_ID)

        sync = await service.start_balance_sync(USER_ID)
        again = await service.start_balance_sync(USER_ID)

        assert sync is again
        await service.end_session(USER_ID)
        assert sync.state.value == "stopped"

    @pytest.mark.asyncio
    async def test_withdraw(self, service, chain, relayer):
        await service.provision_user(USER_ID)
        chain.balances[(CONTRACTS.collateral.lower(), relayer.safe.lower())] = 10_000_000

        receipt = await service.withdraw(USER_ID, DEST, 50)

        assert receipt.quote.gross == 5_000_000
        assert receipt.quote.fee == 50_000
        assert receipt.quote.net == 4_950_000
        last = relayer.executions[-1]
        assert last.note == "user withdrawal"
        assert len(last.calls) == 2

    @pytest.mark.asyncio
    async def test_withdraw_requires_provisioning(self, service):
        with pytest.raises(NotProvisionedError):
            await service.withdraw(USER_ID, DEST, 50)


@pytest.mark.asyncio
async def test_close_releases_connectors(store):
    custody, chain, clob, data_api = AsyncMock(), AsyncMock(), AsyncMock(), AsyncMock()
    service = ProvisioningService(
        config=AppConfig(),
        store=store,
        custody=custody,
        chain=chain,
        clob=clob,
        data_api=data_api,
        builder_credentials=BuilderCredentials(key="k", secret="c2VjcmV0", passphrase="p"),
    )

    await service.close()

    for connector in (custody, chain, clob, data_api):
        connector.close.assert_awaited_once()
    with pytest.raises(StoreUnavailableError):
        await store.get_record(USER_ID)


class TestSessionLifecycle:

    @pytest.mark.asyncio
    async def test_session_ended_mid_run(self, service, relayer):
        custody = service._custody
        delegate = custody.delegate_session_signer

        async def auth_lost_then_delegate(*args, **kwargs):
            await service.end_session(USER_ID)
            return await delegate(*args, **kwargs)

        custody.delegate_session_signer = auth_lost_then_delegate

        result = await service.provision_user(USER_ID)

        assert result.ok
        assert len(relayer.deploys) == 1
        with pytest.raises(SessionEndedError):
            service.relayer_for(CustodyWallet(WALLET_ID, EOA))

    @pytest.mark.asyncio
    async def test_wallet_change_stops_old_synchronizer(self, service):
        await service.provision_user(USER_ID)
        old_sync = await service.start_balance_sync(USER_ID)

        service._custody.wallet = CustodyWallet("wallet-2", EOA)
        await service.provision_user(USER_ID)

        assert old_sync.state.value == "stopped"
        assert service.relayer_for(CustodyWallet("wallet-2", EOA)) is not None
