"""Provisioning orchestrator: brings an authenticated user to a tradable state.

Steps, each gated by its stored flag and run strictly in order:
  1. profile record (insert-or-ignore keyed on user id)
  2. session-signer delegation on the custody wallet
  3. Safe address persisted, Safe deployed through the relayer
  4. exchange allowances approved from the Safe in one batched transaction
  5. exchange API credentials derived and stored

Before any transaction is submitted the chain is read; a flag is written
only after the chain (or a provider conflict signal) confirms the effect.
A failing step aborts the run, records ``last_error`` and leaves every
flag already set in place, so calling again resumes where it stopped.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from alphascope.config import ChainConfig, CustodyConfig, RelayerConfig
from alphascope.connectors.chain import ChainClient
from alphascope.connectors.custody import CustodyProfile, CustodyWallet, PrivyCustodyClient, WalletSigner
from alphascope.connectors.polymarket_clob import CLOBClient
from alphascope.connectors.relayer import RelayExecutor
from alphascope.errors import (
    AlphascopeError,
    ConfirmationTimeoutError,
    IdentityMismatchError,
    ProviderConflictError,
    ProvisioningError,
    ProvisioningStep,
    StoreUnavailableError,
)
from alphascope.observability.logger import get_logger
from alphascope.observability.metrics import metrics
from alphascope.provisioning.allowances import build_approval_calls, read_allowance_state
from alphascope.storage.database import CredentialStore
from alphascope.storage.models import ClobCredentialRecord, ProvisioningFlag, ProvisioningRecord

log = get_logger(__name__)

RelayerFactory = Callable[[CustodyWallet], RelayExecutor]


@dataclass
class ProvisioningResult:
    """Outcome of one ``ensure_provisioned`` run."""
    user_id: str
    ok: bool
    record: Optional[ProvisioningRecord] = None
    error: Optional[ProvisioningError] = None

    @property
    def failed_step(self) -> Optional[ProvisioningStep]:
        return self.error.step if self.error else None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "ok": self.ok,
            "flags": self.record.flags.model_dump() if self.record else None,
            "safe_wallet_address": self.record.safe_wallet_address if self.record else None,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error_kind": self.error.kind if self.error else None,
            "error": str(self.error.cause) if self.error else None,
            "retryable": self.retryable,
        }


class ProvisioningOrchestrator:
    """Sequences the provisioning steps for one user at a time."""

    def __init__(
        self,
        store: CredentialStore,
        custody: PrivyCustodyClient,
        chain: ChainClient,
        clob: CLOBClient,
        relayer_for: RelayerFactory,
        contracts: ChainConfig,
        custody_config: CustodyConfig,
        relayer_config: RelayerConfig,
    ):
        self._store = store
        self._custody = custody
        self._chain = chain
        self._clob = clob
        self._relayer_for = relayer_for
        self._contracts = contracts
        self._custody_config = custody_config
        self._confirm_timeout = relayer_config.confirmation_timeout_secs
        self._poll_interval = relayer_config.poll_interval_secs

    async def ensure_provisioned(
        self,
        user_id: str,
        custody_wallet_id: str,
        custody_address: str,
        profile: CustodyProfile | None = None,
        relayer: RelayExecutor | None = None,
    ) -> ProvisioningResult:
        """Run every step whose flag is still false.

        ``custody_wallet_id``/``custody_address`` must come from the custody
        provider, never from the client. ``relayer`` pins the executor for
        this run; without it one is looked up through ``relayer_for``.
        """
        wallet = CustodyWallet(wallet_id=custody_wallet_id, address=custody_address)
        start = time.monotonic()
        step = ProvisioningStep.PROFILE
        log.info("provisioning.started", user_id=user_id, custody_address=custody_address)

        try:
            record = await self._ensure_profile(user_id, wallet, profile)

            step = ProvisioningStep.SESSION_SIGNER
            if not record.flags.session_signer_delegated:
                await self._delegate_session_signer(user_id, wallet)
            else:
                _skipped(step)

            step = ProvisioningStep.SAFE_WALLET
            if relayer is None:
                relayer = self._relayer_for(wallet)
            safe = await self._resolve_safe(user_id, relayer, wallet)
            if not record.flags.safe_deployed:
                await self._deploy_safe(user_id, relayer, safe)
            else:
                _skipped(step)

            step = ProvisioningStep.ALLOWANCES
            if not record.flags.allowances_set:
                await self._set_allowances(user_id, relayer, safe)
            else:
                _skipped(step)

            step = ProvisioningStep.CLOB_CREDENTIALS
            if not record.flags.clob_credentials_issued:
                await self._issue_credentials(user_id, wallet)
            else:
                _skipped(step)

            await self._store.clear_error(user_id)
            final = await self._store.get_record(user_id)
        except AlphascopeError as e:
            return await self._fail(user_id, step, e, start)

        elapsed_ms = (time.monotonic() - start) * 1000
        metrics.incr("provisioning.completed")
        metrics.histogram("provisioning.duration_ms", elapsed_ms)
        log.info("provisioning.completed", user_id=user_id, safe=safe, duration_ms=round(elapsed_ms, 1))
        return ProvisioningResult(user_id=user_id, ok=True, record=final)

    # ── Steps ────────────────────────────────────────────────────────

    async def _ensure_profile(
        self, user_id: str, wallet: CustodyWallet, profile: CustodyProfile | None,
    ) -> ProvisioningRecord:
        record = await self._store.create_record_if_missing(
            user_id,
            wallet.wallet_id,
            wallet.address,
            username=profile.username if profile else None,
            avatar_url=profile.avatar_url if profile else None,
            main_wallet=profile.main_wallet if profile else None,
        )
        if record.custody_address.lower() != wallet.address.lower():
            raise IdentityMismatchError(
                f"stored custody address {record.custody_address} != provider address {wallet.address}"
            )
        if profile is not None:
            await self._store.update_profile(
                user_id, profile.username, profile.avatar_url, profile.main_wallet,
            )
        return record

    async def _delegate_session_signer(self, user_id: str, wallet: CustodyWallet) -> None:
        try:
            await self._custody.delegate_session_signer(
                wallet.wallet_id,
                self._custody_config.signer_id,
                self._custody_config.policy_ids,
            )
        except ProviderConflictError:
            log.info("provisioning.signer_already_delegated", user_id=user_id)
        await self._store.mark_flag(user_id, ProvisioningFlag.SESSION_SIGNER_DELEGATED)
        _done(ProvisioningStep.SESSION_SIGNER)

    async def _resolve_safe(self, user_id: str, relayer: RelayExecutor, wallet: CustodyWallet) -> str:
        expected = relayer.expected_safe_address(wallet.address)
        stored = await self._store.set_safe_address(user_id, expected)
        if stored.lower() != expected.lower():
            raise IdentityMismatchError(f"stored safe address {stored} != derived {expected}")
        return stored

    async def _deploy_safe(self, user_id: str, relayer: RelayExecutor, safe: str) -> None:
        if await self._chain.is_deployed(safe):
            log.info("provisioning.safe_already_on_chain", user_id=user_id, safe=safe)
        else:
            try:
                pending = await relayer.deploy()
                await pending.wait()
            except ProviderConflictError:
                log.info("provisioning.safe_already_deployed", user_id=user_id, safe=safe)
            await self._until_observed(
                lambda: self._chain.is_deployed(safe), f"code at {safe}",
            )
        await self._store.mark_flag(user_id, ProvisioningFlag.SAFE_DEPLOYED)
        _done(ProvisioningStep.SAFE_WALLET)

    async def _set_allowances(self, user_id: str, relayer: RelayExecutor, safe: str) -> None:
        state = await read_allowance_state(self._chain, self._contracts, safe)
        calls = build_approval_calls(state, self._contracts)
        if calls:
            log.info("provisioning.approving", user_id=user_id, safe=safe, missing=state.missing)
            pending = await relayer.execute(calls, note="approve exchange allowances")
            await pending.wait()

            async def _all_set() -> bool:
                current = await read_allowance_state(self._chain, self._contracts, safe)
                return current.all_set

            await self._until_observed(_all_set, f"allowances of {safe}")
        else:
            log.info("provisioning.allowances_already_set", user_id=user_id, safe=safe)
        await self._store.mark_flag(user_id, ProvisioningFlag.ALLOWANCES_SET)
        _done(ProvisioningStep.ALLOWANCES)

    async def _issue_credentials(self, user_id: str, wallet: CustodyWallet) -> None:
        signer = WalletSigner(self._custody, wallet)
        creds = await self._clob.create_or_derive_api_key(signer)
        await self._store.upsert_credentials(ClobCredentialRecord(
            user_id=user_id,
            address=wallet.address,
            api_key=creds.api_key,
            secret=creds.secret,
            passphrase=creds.passphrase,
        ))
        await self._store.mark_flag(user_id, ProvisioningFlag.CLOB_CREDENTIALS_ISSUED)
        _done(ProvisioningStep.CLOB_CREDENTIALS)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _until_observed(self, check: Callable[[], Awaitable[bool]], what: str) -> None:
        """Poll the chain until ``check`` holds; the relay receipt alone is not enough."""
        deadline = time.monotonic() + self._confirm_timeout
        while not await check():
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(f"{what} not observed on chain after relay confirmation")
            await asyncio.sleep(self._poll_interval)

    async def _fail(
        self, user_id: str, step: ProvisioningStep, cause: AlphascopeError, start: float,
    ) -> ProvisioningResult:
        error = ProvisioningError(step, cause)
        metrics.incr("provisioning.step", step=step.value, outcome="failed")
        log.error(
            "provisioning.failed",
            user_id=user_id,
            step=step.value,
            error_kind=error.kind,
            retryable=error.retryable,
            error=str(cause),
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        record: ProvisioningRecord | None = None
        if not isinstance(cause, StoreUnavailableError):
            try:
                await self._store.record_error(user_id, str(error))
                record = await self._store.get_record(user_id)
            except StoreUnavailableError as store_err:
                log.warning("provisioning.record_error_failed", user_id=user_id, error=str(store_err))
        return ProvisioningResult(user_id=user_id, ok=False, record=record, error=error)


def _done(step: ProvisioningStep) -> None:
    metrics.incr("provisioning.step", step=step.value, outcome="done")
    log.info("provisioning.step_done", step=step.value)


def _skipped(step: ProvisioningStep) -> None:
    metrics.incr("provisioning.step", step=step.value, outcome="skipped")
