"""Polymarket Data API connector.

User-level portfolio data. The balance synchronizer reads the aggregate
mark-to-market value of a wallet's open positions from here.

Base URL: https://data-api.polymarket.com
Endpoints:
  - GET /value?user={address}
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from alphascope.config import DataApiConfig
from alphascope.connectors.http import error_text, json_body, send
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import UnrecognizedResponseError
from alphascope.observability.logger import get_logger

log = get_logger(__name__)

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "alphascope/1.0",
}


class PortfolioValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user: str
    value: float


class DataAPIClient:
    """Async client for the Polymarket Data API."""

    def __init__(
        self,
        config: DataApiConfig,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._base = config.base_url.rstrip("/")
        self._retry = retry or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=_TIMEOUT, headers=_HEADERS)

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        async def _once() -> Any:
            resp = await send(self._client, "GET", f"{self._base}{path}", endpoint="data", params=params)
            if resp.status_code != 200:
                raise UnrecognizedResponseError(f"GET {path} -> {resp.status_code}: {error_text(resp)}")
            return json_body(resp, f"GET {path}")

        return await self._retry.run(_once, label=f"data{path}")

    async def get_positions_value(self, address: str) -> float:
        """Total current value of the wallet's positions, in collateral units.

        The endpoint answers with a one-element list; an empty list means
        the wallet holds nothing.
        """
        data = await self._get("/value", {"user": address.lower()})
        if not isinstance(data, list):
            raise UnrecognizedResponseError("/value did not return a list")
        if not data:
            return 0.0
        try:
            entry = PortfolioValue.model_validate(data[0])
        except ValidationError as e:
            raise UnrecognizedResponseError(f"unexpected /value payload: {e.error_count()} error(s)") from e
        log.debug("data_api.positions_value", address=address, value=entry.value)
        return entry.value
