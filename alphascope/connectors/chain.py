"""Polygon JSON-RPC connector.

Read access to the chain for the provisioning pipeline and the balance
synchronizer:
  - eth_call for ERC-20 allowance / balance / decimals and ERC-1155
    isApprovedForAll
  - eth_getCode to decide whether the Safe has been deployed
  - gas estimation and fee data for callers that do not go through the
    relayer

ABI encoding uses eth-abi; selectors come from ``Web3.keccak``.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from alphascope.config import ChainConfig
from alphascope.connectors.http import json_body, send
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import (
    InsufficientFundsError,
    OnChainRevertError,
    TransientNetworkError,
    UnrecognizedResponseError,
)
from alphascope.observability.logger import get_logger

log = get_logger(__name__)

MAX_UINT256 = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ── ABI helpers ──────────────────────────────────────────────────────

def selector(signature: str) -> bytes:
    """First four bytes of keccak256(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> bytes:
    return selector(signature) + encode(list(types), list(args))


def erc20_approve_data(spender: str, amount: int = MAX_UINT256) -> bytes:
    return encode_call(
        "approve(address,uint256)", ["address", "uint256"],
        [Web3.to_checksum_address(spender), amount],
    )


def erc20_transfer_data(to: str, amount: int) -> bytes:
    return encode_call(
        "transfer(address,uint256)", ["address", "uint256"],
        [Web3.to_checksum_address(to), amount],
    )


def erc1155_set_approval_for_all_data(operator: str, approved: bool = True) -> bytes:
    return encode_call(
        "setApprovalForAll(address,bool)", ["address", "bool"],
        [Web3.to_checksum_address(operator), approved],
    )


def _decode_single(typ: str, raw: bytes, what: str) -> Any:
    try:
        return decode([typ], raw)[0]
    except (DecodingError, ValueError) as e:
        raise UnrecognizedResponseError(f"cannot decode {what} result 0x{raw.hex()}") from e


@dataclass
class FeeData:
    gas_price: int
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None


# ── Client ───────────────────────────────────────────────────────────

class ChainClient:
    """Async JSON-RPC client for an EVM chain."""

    def __init__(
        self,
        config: ChainConfig,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._retry = retry or RetryPolicy()
        self._client = client or httpx.AsyncClient(
            timeout=config.rpc_timeout_secs,
            headers={"Content-Type": "application/json"},
        )
        self._ids = itertools.count(1)

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    async def close(self) -> None:
        await self._client.aclose()

    # ── Transport ────────────────────────────────────────────────────

    async def _rpc_once(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await send(self._client, "POST", self._config.rpc_url, endpoint="rpc", json=payload)
        if resp.status_code != 200:
            raise UnrecognizedResponseError(f"rpc {method} -> HTTP {resp.status_code}")
        body = json_body(resp, f"rpc {method}")
        if not isinstance(body, dict):
            raise UnrecognizedResponseError(f"rpc {method} returned {type(body).__name__}")
        if "error" in body and body["error"] is not None:
            raise _rpc_error(method, body["error"])
        if "result" not in body:
            raise UnrecognizedResponseError(f"rpc {method} response has no result")
        return body["result"]

    async def rpc(self, method: str, params: list[Any]) -> Any:
        return await self._retry.run(self._rpc_once, method, params, label=f"rpc.{method}")

    # ── Primitive reads ──────────────────────────────────────────────

    async def call(self, target: str, data: bytes) -> bytes:
        result = await self.rpc(
            "eth_call",
            [{"to": Web3.to_checksum_address(target), "data": Web3.to_hex(data)}, "latest"],
        )
        return _hex_bytes(result, "eth_call")

    async def get_code(self, address: str) -> bytes:
        result = await self.rpc("eth_getCode", [Web3.to_checksum_address(address), "latest"])
        return _hex_bytes(result, "eth_getCode")

    async def is_deployed(self, address: str) -> bool:
        return len(await self.get_code(address)) > 0

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        result = await self.rpc("eth_estimateGas", [tx])
        return _hex_int(result, "eth_estimateGas")

    async def get_fee_data(self) -> FeeData:
        gas_price = _hex_int(await self.rpc("eth_gasPrice", []), "eth_gasPrice")
        block = await self.rpc("eth_getBlockByNumber", ["latest", False])
        base_fee = block.get("baseFeePerGas") if isinstance(block, dict) else None
        if base_fee is None:
            return FeeData(gas_price=gas_price)
        priority = _hex_int(
            await self.rpc("eth_maxPriorityFeePerGas", []), "eth_maxPriorityFeePerGas"
        )
        return FeeData(
            gas_price=gas_price,
            max_fee_per_gas=_hex_int(base_fee, "baseFeePerGas") * 2 + priority,
            max_priority_fee_per_gas=priority,
        )

    # ── Token reads ──────────────────────────────────────────────────

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        data = encode_call(
            "allowance(address,address)", ["address", "address"],
            [Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)],
        )
        return int(_decode_single("uint256", await self.call(token, data), "allowance"))

    async def erc20_balance(self, token: str, owner: str) -> int:
        data = encode_call("balanceOf(address)", ["address"], [Web3.to_checksum_address(owner)])
        return int(_decode_single("uint256", await self.call(token, data), "balanceOf"))

    async def erc20_decimals(self, token: str) -> int:
        data = encode_call("decimals()", [], [])
        return int(_decode_single("uint8", await self.call(token, data), "decimals"))

    async def is_approved_for_all(self, token: str, owner: str, operator: str) -> bool:
        data = encode_call(
            "isApprovedForAll(address,address)", ["address", "address"],
            [Web3.to_checksum_address(owner), Web3.to_checksum_address(operator)],
        )
        return bool(_decode_single("bool", await self.call(token, data), "isApprovedForAll"))


# ── Parsing helpers ──────────────────────────────────────────────────

def _hex_bytes(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise UnrecognizedResponseError(f"{what} returned {value!r}")
    return bytes(Web3.to_bytes(hexstr=value))


def _hex_int(value: Any, what: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise UnrecognizedResponseError(f"{what} returned {value!r}")
    return int(value, 16)


def _rpc_error(method: str, error: Any) -> Exception:
    """Map a JSON-RPC error object onto the error taxonomy."""
    if not isinstance(error, dict):
        return UnrecognizedResponseError(f"rpc {method} error: {error!r}")
    code = error.get("code")
    message = str(error.get("message", ""))
    lowered = message.lower()
    if code == 3 or "revert" in lowered:
        return OnChainRevertError(f"rpc {method}: {message}")
    if "insufficient funds" in lowered:
        return InsufficientFundsError(f"rpc {method}: {message}")
    if code in (-32005, -32603) or "rate limit" in lowered or "timeout" in lowered:
        return TransientNetworkError(f"rpc {method}: {message}")
    return UnrecognizedResponseError(f"rpc {method} error {code}: {message}")
