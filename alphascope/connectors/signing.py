"""Hashing and signature helpers for the relayer and the CLOB.

Pure functions only: EIP-712 Safe transaction hashes, the typed-data
payloads the custody wallet is asked to sign, CREATE2 address prediction
and the HMAC request signatures used by builder and L2 API credentials.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any

from eth_abi import encode
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_SAFE_DOMAIN_TYPEHASH = Web3.keccak(text="EIP712Domain(uint256 chainId,address verifyingContract)")
_SAFE_TX_TYPEHASH = Web3.keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
        "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
    )
)

CLOB_AUTH_MESSAGE = "This message attests that I control the given wallet"


def _hex_to_bytes(value: str) -> bytes:
    return bytes(Web3.to_bytes(hexstr=value))


# ── Safe address prediction ──────────────────────────────────────────

def create2_address(factory: str, salt: bytes, init_code_hash: str) -> str:
    digest = Web3.keccak(
        b"\xff" + _hex_to_bytes(factory) + salt + _hex_to_bytes(init_code_hash)
    )
    return Web3.to_checksum_address("0x" + bytes(digest[12:]).hex())


def safe_salt(signer: str) -> bytes:
    return bytes(Web3.keccak(encode(["address"], [Web3.to_checksum_address(signer)])))


def derive_safe_address(signer: str, factory: str, init_code_hash: str) -> str:
    """Counterfactual Safe address owned by ``signer``. No network access."""
    return create2_address(factory, safe_salt(signer), init_code_hash)


# ── Safe transactions ────────────────────────────────────────────────

def safe_tx_hash(
    *,
    chain_id: int,
    safe: str,
    to: str,
    value: int,
    data: bytes,
    operation: int,
    nonce: int,
) -> bytes:
    """EIP-712 hash of a Safe transaction with zero gas refund parameters."""
    domain_separator = Web3.keccak(encode(
        ["bytes32", "uint256", "address"],
        [_SAFE_DOMAIN_TYPEHASH, chain_id, Web3.to_checksum_address(safe)],
    ))
    struct_hash = Web3.keccak(encode(
        [
            "bytes32", "address", "uint256", "bytes32", "uint8", "uint256",
            "uint256", "uint256", "address", "address", "uint256",
        ],
        [
            _SAFE_TX_TYPEHASH, Web3.to_checksum_address(to), value, Web3.keccak(data),
            operation, 0, 0, 0, ZERO_ADDRESS, ZERO_ADDRESS, nonce,
        ],
    ))
    return bytes(Web3.keccak(b"\x19\x01" + domain_separator + struct_hash))


def to_safe_eth_sign_signature(signature: str) -> str:
    """Adapt a personal_sign signature for Safe's eth_sign path (v + 4)."""
    raw = _hex_to_bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"expected a 65-byte signature, got {len(raw)} bytes")
    v = raw[64]
    if v in (0, 1):
        v += 27
    if v not in (27, 28):
        raise ValueError(f"unexpected signature recovery id {v}")
    return "0x" + (raw[:64] + bytes([v + 4])).hex()


def safe_create_typed_data(chain_id: int, factory: str) -> dict[str, Any]:
    return {
        "domain": {
            "name": "Polymarket Contract Proxy Factory",
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(factory),
        },
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "CreateProxy": [
                {"name": "paymentToken", "type": "address"},
                {"name": "payment", "type": "uint256"},
                {"name": "paymentReceiver", "type": "address"},
            ],
        },
        "primaryType": "CreateProxy",
        "message": {
            "paymentToken": ZERO_ADDRESS,
            "payment": "0",
            "paymentReceiver": ZERO_ADDRESS,
        },
    }


# ── CLOB authentication ──────────────────────────────────────────────

def clob_auth_typed_data(address: str, chain_id: int, timestamp: int, nonce: int = 0) -> dict[str, Any]:
    """The L1 challenge whose signature proves control of ``address``."""
    return {
        "domain": {"name": "ClobAuthDomain", "version": "1", "chainId": chain_id},
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
            ],
            "ClobAuth": [
                {"name": "address", "type": "address"},
                {"name": "timestamp", "type": "string"},
                {"name": "nonce", "type": "uint256"},
                {"name": "message", "type": "string"},
            ],
        },
        "primaryType": "ClobAuth",
        "message": {
            "address": Web3.to_checksum_address(address),
            "timestamp": str(timestamp),
            "nonce": nonce,
            "message": CLOB_AUTH_MESSAGE,
        },
    }


def hmac_signature(secret: str, timestamp: int, method: str, path: str, body: str = "") -> str:
    """urlsafe-base64 HMAC-SHA256 over ``timestamp + method + path + body``."""
    key = base64.urlsafe_b64decode(secret)
    message = f"{timestamp}{method.upper()}{path}{body}"
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8")
