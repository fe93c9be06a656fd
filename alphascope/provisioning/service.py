"""Provisioning service: the entry point the UI layer talks to.

Owns the shared connectors and the store, plus an explicit per-user
registry of relay executors and balance synchronizers. Nothing here lives
in module globals; closing the service releases everything it built.

Identity always comes from the custody provider: ``provision`` takes a
session token, verifies it, and re-resolves the user's wallet from Privy.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from alphascope.config import AppConfig, BuilderCredentials, CustodySecrets
from alphascope.connectors.chain import ChainClient
from alphascope.connectors.custody import CustodyWallet, PrivyCustodyClient, WalletSigner
from alphascope.connectors.polymarket_clob import ApiCredentials, ClobBalances, CLOBClient
from alphascope.connectors.polymarket_data import DataAPIClient
from alphascope.connectors.rate_limiter import rate_limiter
from alphascope.connectors.relayer import RelayExecutor
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import NotProvisionedError, SessionEndedError
from alphascope.observability.logger import get_logger
from alphascope.provisioning.allowances import AllowanceState, read_allowance_state
from alphascope.provisioning.orchestrator import ProvisioningOrchestrator, ProvisioningResult
from alphascope.provisioning.withdraw import COLLATERAL_UNIT, WithdrawalReceipt, withdraw_collateral
from alphascope.storage.database import CredentialStore
from alphascope.storage.models import ProvisioningRecord, ProvisioningStatus
from alphascope.sync.balances import BalanceSources, BalanceSynchronizer

log = get_logger(__name__)


@dataclass
class UserSession:
    """Per-user clients held by the service."""
    wallet: CustodyWallet
    relayer: RelayExecutor
    synchronizer: Optional[BalanceSynchronizer] = None


class ProvisioningService:
    def __init__(
        self,
        config: AppConfig,
        store: CredentialStore,
        custody: PrivyCustodyClient,
        chain: ChainClient,
        clob: CLOBClient,
        data_api: DataAPIClient,
        builder_credentials: BuilderCredentials,
        retry: RetryPolicy | None = None,
        relayer_http: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._store = store
        self._custody = custody
        self._chain = chain
        self._clob = clob
        self._data_api = data_api
        self._builder_credentials = builder_credentials
        self._retry = retry or RetryPolicy.from_config(config.retry)
        self._relayer_http = relayer_http or httpx.AsyncClient(
            timeout=30.0, headers={"Content-Type": "application/json"},
        )
        self._sessions: dict[str, UserSession] = {}
        self._inflight: dict[str, asyncio.Task[ProvisioningResult]] = {}
        self._orchestrator = ProvisioningOrchestrator(
            store=store,
            custody=custody,
            chain=chain,
            clob=clob,
            relayer_for=self.relayer_for,
            contracts=config.chain,
            custody_config=config.custody,
            relayer_config=config.relayer,
        )

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        custody_secrets: CustodySecrets,
        builder_credentials: BuilderCredentials,
    ) -> "ProvisioningService":
        rate_limiter.apply(config.rate_limits)
        retry = RetryPolicy.from_config(config.retry)
        store = CredentialStore(config.storage)
        store.connect()
        return cls(
            config=config,
            store=store,
            custody=PrivyCustodyClient(config.custody, custody_secrets, retry=retry),
            chain=ChainClient(config.chain, retry=retry),
            clob=CLOBClient(config.clob, chain_id=config.chain.chain_id, retry=retry),
            data_api=DataAPIClient(config.data_api, retry=retry),
            builder_credentials=builder_credentials,
            retry=retry,
        )

    async def close(self) -> None:
        for user_id in list(self._sessions):
            await self.end_session(user_id)
        await self._relayer_http.aclose()
        await self._custody.close()
        await self._chain.close()
        await self._clob.close()
        await self._data_api.close()
        self._store.close()

    # ── Per-user registry ────────────────────────────────────────────

    async def _session(self, user_id: str, wallet: CustodyWallet) -> UserSession:
        session = self._sessions.get(user_id)
        if session is None or session.wallet != wallet:
            if session is not None and session.synchronizer is not None:
                log.warning("service.wallet_changed", user_id=user_id, wallet_id=wallet.wallet_id)
                await session.synchronizer.stop()
            relayer = RelayExecutor(
                self._config.relayer,
                self._config.chain,
                WalletSigner(self._custody, wallet),
                self._builder_credentials,
                retry=self._retry,
                client=self._relayer_http,
            )
            session = UserSession(wallet=wallet, relayer=relayer)
            self._sessions[user_id] = session
        return session

    def relayer_for(self, wallet: CustodyWallet) -> RelayExecutor:
        for session in self._sessions.values():
            if session.wallet == wallet:
                return session.relayer
        raise SessionEndedError(f"no session registered for wallet {wallet.wallet_id}")

    async def end_session(self, user_id: str) -> None:
        """Authentication lost: stop polling and drop the user's clients."""
        session = self._sessions.pop(user_id, None)
        if session and session.synchronizer:
            await session.synchronizer.stop()
        log.info("service.session_ended", user_id=user_id)

    # ── Provisioning ─────────────────────────────────────────────────

    async def provision(self, session_token: str) -> ProvisioningResult:
        user_id = self._custody.verify_session_token(session_token)
        return await self.provision_user(user_id)

    async def provision_user(self, user_id: str) -> ProvisioningResult:
        """Concurrent calls for the same user share one in-flight run."""
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._provision(user_id))
            self._inflight[user_id] = task
            task.add_done_callback(lambda _t: self._inflight.pop(user_id, None))
        else:
            log.info("service.provision_joined", user_id=user_id)
        return await asyncio.shield(task)

    async def _provision(self, user_id: str) -> ProvisioningResult:
        wallet = await self._custody.resolve_wallet(user_id)
        profile = await self._custody.resolve_profile(user_id)
        session = await self._session(user_id, wallet)
        return await self._orchestrator.ensure_provisioned(
            user_id, wallet.wallet_id, wallet.address, profile=profile, relayer=session.relayer,
        )

    async def status(self, user_id: str) -> ProvisioningStatus:
        return await self._store.get_status(user_id)

    async def _provisioned_record(self, user_id: str) -> ProvisioningRecord:
        record = await self._store.get_record(user_id)
        if record is None or not record.flags.complete or not record.safe_wallet_address:
            raise NotProvisionedError(f"user {user_id} has not completed provisioning")
        return record

    async def verify_allowances(self, user_id: str) -> AllowanceState:
        """Re-read the Safe's approvals. Reports drift only; flags are not touched."""
        record = await self._provisioned_record(user_id)
        state = await read_allowance_state(self._chain, self._config.chain, record.safe_wallet_address)
        if state.all_set:
            log.info("service.allowances_verified", user_id=user_id)
        else:
            log.warning("service.allowance_drift", user_id=user_id, missing=state.missing)
        return state

    # ── Balances ─────────────────────────────────────────────────────

    async def balance_sources(self, user_id: str) -> BalanceSources:
        record = await self._provisioned_record(user_id)
        stored = await self._store.get_credentials(user_id)
        if stored is None:
            raise NotProvisionedError(f"user {user_id} has no exchange credentials")
        creds = ApiCredentials(api_key=stored.api_key, secret=stored.secret, passphrase=stored.passphrase)
        safe = record.safe_wallet_address
        contracts = self._config.chain

        async def collateral() -> float:
            return await self._chain.erc20_balance(contracts.collateral, safe) / COLLATERAL_UNIT

        async def clob_balances() -> ClobBalances:
            return await self._clob.get_balances(creds, stored.address)

        async def positions_value() -> float:
            return await self._data_api.get_positions_value(safe)

        return BalanceSources(collateral, clob_balances, positions_value)

    async def start_balance_sync(self, user_id: str) -> BalanceSynchronizer:
        record = await self._provisioned_record(user_id)
        session = await self._session(
            user_id, CustodyWallet(record.custody_wallet_id, record.custody_address),
        )
        if session.synchronizer is None:
            session.synchronizer = BalanceSynchronizer(
                await self.balance_sources(user_id), self._config.sync.interval_secs,
            )
        session.synchronizer.start()
        return session.synchronizer

    # ── Withdrawal ───────────────────────────────────────────────────

    async def withdraw(self, user_id: str, to_address: str, percent: float) -> WithdrawalReceipt:
        record = await self._provisioned_record(user_id)
        session = await self._session(
            user_id, CustodyWallet(record.custody_wallet_id, record.custody_address),
        )
        return await withdraw_collateral(
            self._chain,
            session.relayer,
            self._config.chain,
            self._config.withdraw,
            record.safe_wallet_address,
            to_address,
            percent,
        )
