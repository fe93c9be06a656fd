"""Polymarket CLOB (Central-Limit Order Book) connector.

Handles:
  - L1 authentication: a custody-signed ClobAuth challenge exchanged for
    API credentials (create, or derive the existing ones)
  - L2 authentication: HMAC-signed requests with those credentials
  - Collateral balance and open-order reads for the balance synchronizer

Order placement is not part of this connector.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from alphascope.config import ClobConfig
from alphascope.connectors.custody import WalletSigner
from alphascope.connectors.http import error_text, json_body, send
from alphascope.connectors.retry import RetryPolicy
from alphascope.connectors.signing import clob_auth_typed_data, hmac_signature
from alphascope.errors import AuthenticationError, UnrecognizedResponseError
from alphascope.observability.logger import get_logger

log = get_logger(__name__)

CLOB_BASE = "https://clob.polymarket.com"
COLLATERAL_DECIMALS = 6
_END_CURSOR = "LTE="


# ── Data Models ──────────────────────────────────────────────────────

class ApiCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_key: str = Field(alias="apiKey")
    secret: str
    passphrase: str

    def __repr__(self) -> str:
        return f"ApiCredentials(api_key={self.api_key[:8]!r}***)"


class OpenOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    side: str
    price: float
    original_size: float
    size_matched: float = 0.0

    @property
    def remaining_size(self) -> float:
        return max(self.original_size - self.size_matched, 0.0)

    @property
    def locked_notional(self) -> float:
        """Collateral reserved by this order (BUY side only)."""
        if self.side.upper() != "BUY":
            return 0.0
        return self.remaining_size * self.price


@dataclass
class ClobBalances:
    available: float
    locked: float


def locked_collateral(orders: list[OpenOrder]) -> float:
    return sum(o.locked_notional for o in orders)


# ── Client ───────────────────────────────────────────────────────────

class CLOBClient:
    """Async client for the authenticated parts of the CLOB REST API."""

    def __init__(
        self,
        config: ClobConfig,
        chain_id: int = 137,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._chain_id = chain_id
        self._retry = retry or RetryPolicy()
        self._base = config.host.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._base,
            timeout=config.timeout_secs,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ── L1: credential derivation ────────────────────────────────────

    async def _l1_headers(self, signer: WalletSigner, nonce: int = 0) -> dict[str, str]:
        ts = int(time.time())
        typed = clob_auth_typed_data(signer.address, self._chain_id, ts, nonce)
        signature = await signer.sign_typed_data(typed)
        return {
            "POLY_ADDRESS": signer.address,
            "POLY_SIGNATURE": signature,
            "POLY_TIMESTAMP": str(ts),
            "POLY_NONCE": str(nonce),
        }

    async def _auth_request(self, method: str, path: str, headers: dict[str, str]) -> httpx.Response:
        async def _once() -> httpx.Response:
            return await send(self._client, method, f"{self._base}{path}", endpoint="clob", headers=headers)

        return await self._retry.run(_once, label=f"clob.{path}")

    async def create_api_key(self, signer: WalletSigner, nonce: int = 0) -> ApiCredentials | None:
        """Create new credentials; None if the exchange refuses (already exists)."""
        resp = await self._auth_request("POST", "/auth/api-key", await self._l1_headers(signer, nonce))
        if resp.status_code != 200:
            log.info("clob.create_api_key_refused", status=resp.status_code, detail=error_text(resp))
            return None
        return _parse_credentials(json_body(resp, "clob api key"))

    async def derive_api_key(self, signer: WalletSigner, nonce: int = 0) -> ApiCredentials:
        resp = await self._auth_request("GET", "/auth/derive-api-key", await self._l1_headers(signer, nonce))
        if resp.status_code in (401, 403):
            raise AuthenticationError(f"derive api key rejected: {error_text(resp)}")
        if resp.status_code != 200:
            raise UnrecognizedResponseError(f"derive api key -> {resp.status_code}: {error_text(resp)}")
        return _parse_credentials(json_body(resp, "clob api key"))

    async def create_or_derive_api_key(self, signer: WalletSigner, nonce: int = 0) -> ApiCredentials:
        """Same signer and nonce always yield the same credentials."""
        creds = await self.create_api_key(signer, nonce)
        if creds is None:
            creds = await self.derive_api_key(signer, nonce)
        log.info("clob.credentials_ready", address=signer.address, api_key=creds.api_key[:8] + "***")
        return creds

    # ── L2: authenticated reads ──────────────────────────────────────

    def _l2_headers(self, creds: ApiCredentials, address: str, method: str, path: str) -> dict[str, str]:
        ts = int(time.time())
        return {
            "POLY_ADDRESS": address,
            "POLY_SIGNATURE": hmac_signature(creds.secret, ts, method, path),
            "POLY_TIMESTAMP": str(ts),
            "POLY_API_KEY": creds.api_key,
            "POLY_PASSPHRASE": creds.passphrase,
        }

    async def _l2_get(
        self, creds: ApiCredentials, address: str, path: str, params: dict[str, Any],
    ) -> Any:
        async def _once() -> Any:
            headers = self._l2_headers(creds, address, "GET", path)
            resp = await send(
                self._client, "GET", f"{self._base}{path}",
                endpoint="clob", headers=headers, params=params,
            )
            if resp.status_code in (401, 403):
                raise AuthenticationError(f"CLOB rejected credentials on {path}")
            if resp.status_code != 200:
                raise UnrecognizedResponseError(f"GET {path} -> {resp.status_code}: {error_text(resp)}")
            return json_body(resp, f"GET {path}")

        return await self._retry.run(_once, label=f"clob.{path}")

    async def get_collateral_balance(self, creds: ApiCredentials, address: str) -> float:
        data = await self._l2_get(
            creds, address, "/balance-allowance",
            {"asset_type": "COLLATERAL", "signature_type": self._config.signature_type},
        )
        if not isinstance(data, dict) or "balance" not in data:
            raise UnrecognizedResponseError("balance-allowance response has no balance")
        return int(data["balance"]) / 10 ** COLLATERAL_DECIMALS

    async def get_open_orders(self, creds: ApiCredentials, address: str) -> list[OpenOrder]:
        orders: list[OpenOrder] = []
        cursor = "MA=="
        seen: set[str] = set()
        while cursor != _END_CURSOR:
            if cursor in seen:
                raise UnrecognizedResponseError(f"orders pagination repeated cursor {cursor!r}")
            seen.add(cursor)
            page = await self._l2_get(creds, address, "/data/orders", {"next_cursor": cursor})
            if not isinstance(page, dict) or not isinstance(page.get("data"), list):
                raise UnrecognizedResponseError("orders response has no data list")
            try:
                orders.extend(OpenOrder.model_validate(o) for o in page["data"])
            except ValidationError as e:
                raise UnrecognizedResponseError(f"unexpected order payload: {e.error_count()} error(s)") from e
            cursor = str(page.get("next_cursor") or _END_CURSOR)
        return orders

    async def get_balances(self, creds: ApiCredentials, address: str) -> ClobBalances:
        available = await self.get_collateral_balance(creds, address)
        orders = await self.get_open_orders(creds, address)
        return ClobBalances(available=available, locked=locked_collateral(orders))


# ── Parsing helpers ──────────────────────────────────────────────────

def _parse_credentials(data: Any) -> ApiCredentials:
    try:
        return ApiCredentials.model_validate(data)
    except ValidationError as e:
        raise UnrecognizedResponseError(f"unexpected api key payload: {e.error_count()} error(s)") from e
