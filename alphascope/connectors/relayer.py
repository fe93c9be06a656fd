"""Polymarket builder relayer connector.

Submits gasless meta-transactions for a user's Safe wallet:
  - ``deploy()``: SAFE-CREATE through the proxy factory
  - ``execute(calls, note)``: one Safe transaction, several calls packed
    into a MultiSend delegate-call so that a batch lands atomically

Both return a ``PendingResult`` whose ``wait()`` polls the relayer until
the transaction is mined or has failed. The Safe address itself is a pure
CREATE2 computation (``expected_safe_address``) and needs no network.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

import httpx
from eth_abi.packed import encode_packed
from web3 import Web3

from alphascope.config import BuilderCredentials, ChainConfig, RelayerConfig
from alphascope.connectors.chain import encode_call
from alphascope.connectors.custody import WalletSigner
from alphascope.connectors.http import error_text, json_body, send
from alphascope.connectors.retry import RetryPolicy
from alphascope.connectors.signing import (
    ZERO_ADDRESS,
    derive_safe_address,
    hmac_signature,
    safe_create_typed_data,
    safe_tx_hash,
    to_safe_eth_sign_signature,
)
from alphascope.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    OnChainRevertError,
    RelayError,
    SafeAlreadyDeployedError,
    TransientNetworkError,
    UnrecognizedResponseError,
)
from alphascope.observability.logger import get_logger
from alphascope.observability.metrics import metrics

log = get_logger(__name__)

SUCCESS_STATES = frozenset({"STATE_MINED", "STATE_CONFIRMED"})
FAILURE_STATES = frozenset({"STATE_FAILED", "STATE_INVALID"})


class OperationType(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True)
class SafeCall:
    """One call executed by the Safe."""
    target: str
    data: bytes
    value: int = 0
    operation: OperationType = OperationType.CALL


@dataclass(frozen=True)
class RelayReceipt:
    transaction_id: str
    transaction_hash: str
    state: str


def encode_multisend(calls: Sequence[SafeCall]) -> bytes:
    """Calldata for ``MultiSend.multiSend(bytes)`` over ``calls``."""
    packed = b"".join(
        encode_packed(
            ["uint8", "address", "uint256", "uint256", "bytes"],
            [int(c.operation), Web3.to_checksum_address(c.target), c.value, len(c.data), c.data],
        )
        for c in calls
    )
    return encode_call("multiSend(bytes)", ["bytes"], [packed])


def expected_safe_address(signer_address: str, chain: ChainConfig) -> str:
    return derive_safe_address(signer_address, chain.safe_factory, chain.safe_init_code_hash)


class PendingResult:
    """Handle on a submitted relayer transaction."""

    def __init__(self, executor: "RelayExecutor", transaction_id: str, note: str = ""):
        self._executor = executor
        self.transaction_id = transaction_id
        self.note = note

    async def wait(
        self,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> RelayReceipt:
        """Block until the relayer reports a terminal state.

        Raises ConfirmationTimeoutError when nothing terminal was observed
        within ``timeout``; the transaction may still land afterwards.
        """
        cfg = self._executor.config
        timeout = cfg.confirmation_timeout_secs if timeout is None else timeout
        poll_interval = cfg.poll_interval_secs if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout

        while True:
            try:
                tx = await self._executor.get_transaction(self.transaction_id)
            except TransientNetworkError as e:
                log.warning("relayer.poll_error", transaction_id=self.transaction_id, error=str(e))
                tx = None

            if tx is not None:
                state = str(tx.get("state", ""))
                tx_hash = str(tx.get("transactionHash") or "")
                if state in SUCCESS_STATES:
                    log.info(
                        "relayer.confirmed",
                        transaction_id=self.transaction_id,
                        tx_hash=tx_hash,
                        note=self.note,
                    )
                    return RelayReceipt(self.transaction_id, tx_hash, state)
                if state in FAILURE_STATES:
                    raise _failure_error(tx, self.transaction_id)

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"relayer transaction {self.transaction_id} not terminal after {timeout:.0f}s",
                    transaction_id=self.transaction_id,
                )
            await asyncio.sleep(poll_interval)


class RelayExecutor:
    """Relayer client bound to one custody signer and its Safe."""

    def __init__(
        self,
        config: RelayerConfig,
        chain: ChainConfig,
        signer: WalletSigner,
        credentials: BuilderCredentials,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._chain = chain
        self._signer = signer
        self._credentials = credentials
        self._retry = retry or RetryPolicy()
        self._base = config.url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=30.0, headers={"Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def signer_address(self) -> str:
        return self._signer.address

    def expected_safe_address(self, signer_address: str | None = None) -> str:
        return expected_safe_address(signer_address or self._signer.address, self._chain)

    # ── Transport ────────────────────────────────────────────────────

    def _builder_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        ts = int(time.time())
        return {
            "POLY_BUILDER_API_KEY": self._credentials.key,
            "POLY_BUILDER_PASSPHRASE": self._credentials.passphrase,
            "POLY_BUILDER_TIMESTAMP": str(ts),
            "POLY_BUILDER_SIGNATURE": hmac_signature(self._credentials.secret, ts, method, path, body),
        }

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        async def _once() -> Any:
            resp = await send(self._client, "GET", f"{self._base}{path}", endpoint="relayer", params=params)
            if resp.status_code != 200:
                raise RelayError(f"GET {path} -> {resp.status_code}: {error_text(resp)}", resp.status_code)
            return json_body(resp, f"GET {path}")

        return await self._retry.run(_once, label=f"relayer.get{path}")

    async def _submit(self, payload: dict[str, Any]) -> str:
        body = json.dumps(payload, separators=(",", ":"))

        async def _once() -> str:
            headers = self._builder_headers("POST", "/submit", body)
            resp = await send(
                self._client, "POST", f"{self._base}/submit",
                endpoint="relayer", content=body, headers=headers,
            )
            if resp.status_code != 200:
                text = error_text(resp)
                if "already deployed" in text.lower():
                    raise SafeAlreadyDeployedError(text)
                raise RelayError(f"submit -> {resp.status_code}: {text}", resp.status_code)
            data = json_body(resp, "relayer submit")
            tx_id = data.get("transactionID") if isinstance(data, dict) else None
            if not tx_id:
                raise UnrecognizedResponseError("relayer submit response has no transactionID")
            return str(tx_id)

        tx_id = await self._retry.run(_once, label="relayer.submit")
        metrics.incr("relayer.submitted", type=payload["type"])
        return tx_id

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        data = await self._get("/transaction", {"id": transaction_id})
        if isinstance(data, list):
            return data[0] if data else None
        raise UnrecognizedResponseError("relayer /transaction did not return a list")

    async def get_nonce(self) -> int:
        data = await self._get("/nonce", {"address": self._signer.address, "type": "SAFE"})
        if not isinstance(data, dict) or "nonce" not in data:
            raise UnrecognizedResponseError("relayer /nonce response has no nonce")
        return int(data["nonce"])

    async def is_deployed(self, safe_address: str | None = None) -> bool:
        data = await self._get("/deployed", {"address": safe_address or self.expected_safe_address()})
        if not isinstance(data, dict) or not isinstance(data.get("deployed"), bool):
            raise UnrecognizedResponseError("relayer /deployed response has no boolean 'deployed'")
        return data["deployed"]

    # ── Operations ───────────────────────────────────────────────────

    async def deploy(self) -> PendingResult:
        """Deploy the signer's Safe.

        Raises SafeAlreadyDeployedError if the relayer already knows it.
        """
        safe = self.expected_safe_address()
        if await self.is_deployed(safe):
            raise SafeAlreadyDeployedError(f"safe {safe} already deployed")

        typed = safe_create_typed_data(self._chain.chain_id, self._chain.safe_factory)
        signature = await self._signer.sign_typed_data(typed)
        payload = {
            "from": self._signer.address,
            "to": Web3.to_checksum_address(self._chain.safe_factory),
            "proxyWallet": safe,
            "data": "0x",
            "signature": signature,
            "signatureParams": {
                "paymentToken": ZERO_ADDRESS,
                "payment": "0",
                "paymentReceiver": ZERO_ADDRESS,
            },
            "type": "SAFE-CREATE",
        }
        tx_id = await self._submit(payload)
        log.info("relayer.deploy_submitted", safe=safe, transaction_id=tx_id)
        return PendingResult(self, tx_id, note="deploy safe")

    async def execute(self, calls: Sequence[SafeCall], note: str = "") -> PendingResult:
        if not calls:
            raise ValueError("execute() needs at least one call")

        if len(calls) == 1:
            call = calls[0]
            to, value, data, operation = call.target, call.value, call.data, call.operation
        else:
            to = self._chain.multisend
            value = 0
            data = encode_multisend(calls)
            operation = OperationType.DELEGATE_CALL

        safe = self.expected_safe_address()
        nonce = await self.get_nonce()
        digest = safe_tx_hash(
            chain_id=self._chain.chain_id, safe=safe, to=to, value=value,
            data=data, operation=int(operation), nonce=nonce,
        )
        signature = to_safe_eth_sign_signature(await self._signer.sign_message(digest))
        payload = {
            "from": self._signer.address,
            "to": Web3.to_checksum_address(to),
            "proxyWallet": safe,
            "data": Web3.to_hex(data),
            "nonce": str(nonce),
            "signature": signature,
            "signatureParams": {
                "gasPrice": "0",
                "operation": str(int(operation)),
                "safeTxnGas": "0",
                "baseGas": "0",
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
            },
            "type": "SAFE",
            "metadata": note,
        }
        tx_id = await self._submit(payload)
        log.info("relayer.execute_submitted", safe=safe, calls=len(calls), note=note, transaction_id=tx_id)
        return PendingResult(self, tx_id, note=note)


def _failure_error(tx: dict[str, Any], transaction_id: str) -> Exception:
    reason = str(tx.get("errorMsg") or tx.get("state") or "failed")
    tx_hash = str(tx.get("transactionHash") or "")
    if "insufficient funds" in reason.lower():
        return InsufficientFundsError(f"relayer transaction {transaction_id}: {reason}")
    return OnChainRevertError(f"relayer transaction {transaction_id}: {reason}", transaction_hash=tx_hash)
