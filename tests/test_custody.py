"""Tests for the Privy custody connector (respx-mocked REST API).

Covers:
  - Session token verification (ES256)
  - Embedded wallet resolution; unrecognised shapes fail loudly
  - Session signer delegation: read-first, conflict signals
  - Typed-data and message signing through the wallet RPC
"""

from __future__ import annotations

import json
import time

import jwt
import pytest
import respx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from httpx import Response
from web3 import Web3

from alphascope.config import CustodyConfig, CustodySecrets
from alphascope.connectors.custody import CustodyWallet, PrivyCustodyClient, WalletSigner
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import (
    AuthenticationError,
    ProviderConflictError,
    UnrecognizedResponseError,
)

API = "https://api.privy.io"
APP_ID = "app-123"
USER = "did:privy:abc"
EMBEDDED = "0x" + "ab" * 20
EXTERNAL = "0x" + "cd" * 20

_KEY = ec.generate_private_key(ec.SECP256R1())
_PUBLIC_PEM = _KEY.public_key().public_bytes(
    serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo,
).decode()


def _client() -> PrivyCustodyClient:
    return PrivyCustodyClient(
        CustodyConfig(api_base=API),
        CustodySecrets(app_id=APP_ID, app_secret="shh", verification_key=_PUBLIC_PEM),
        retry=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=0.0),
    )


def _token(**claims) -> str:
    payload = {"sub": USER, "iss": "privy.io", "aud": APP_ID, "exp": int(time.time()) + 60}
    payload.update(claims)
    return jwt.encode(payload, _KEY, algorithm="ES256")


USER_PAYLOAD = {
    "id": USER,
    "linked_accounts": [
        {"type": "twitter_oauth", "username": "alpha_kol", "profile_picture_url": "https://pbs/1.png"},
        {
            "type": "wallet", "id": "w-1", "address": EMBEDDED, "chain_type": "ethereum",
            "connector_type": "embedded", "wallet_client_type": "privy",
        },
        {
            "type": "wallet", "address": EXTERNAL, "chain_type": "ethereum",
            "connector_type": "injected", "wallet_client_type": "metamask",
        },
    ],
}


class TestSessionToken:

    def test_valid(self):
        assert _client().verify_session_token(_token()) == USER

    @pytest.mark.parametrize("claims", [{"aud": "other-app"}, {"iss": "evil"}, {"exp": 1}])
    def test_rejected_claims(self, claims):
        with pytest.raises(AuthenticationError):
            _client().verify_session_token(_token(**claims))

    def test_missing(self):
        with pytest.raises(AuthenticationError):
            _client().verify_session_token("")

    def test_wrong_key(self):
        other = ec.generate_private_key(ec.SECP256R1())
        token = jwt.encode(
            {"sub": USER, "iss": "privy.io", "aud": APP_ID, "exp": int(time.time()) + 60},
            other, algorithm="ES256",
        )
        with pytest.raises(AuthenticationError):
            _client().verify_session_token(token)


class TestResolve:

    @pytest.mark.asyncio
    @respx.mock
    async def test_embedded_wallet(self):
        respx.get(f"{API}/v1/users/{USER}").mock(return_value=Response(200, json=USER_PAYLOAD))
        client = _client()
        wallet = await client.resolve_wallet(USER)
        assert wallet == CustodyWallet("w-1", Web3.to_checksum_address(EMBEDDED))
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_profile(self):
        respx.get(f"{API}/v1/users/{USER}").mock(return_value=Response(200, json=USER_PAYLOAD))
        client = _client()
        profile = await client.resolve_profile(USER)
        assert profile.username == "alpha_kol"
        assert profile.avatar_url == "https://pbs/1.png"
        assert profile.main_wallet == EXTERNAL
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_embedded_wallet(self):
        payload = {"id": USER, "linked_accounts": [USER_PAYLOAD["linked_accounts"][2]]}
        respx.get(f"{API}/v1/users/{USER}").mock(return_value=Response(200, json=payload))
        client = _client()
        with pytest.raises(UnrecognizedResponseError, match="No embedded EVM wallet"):
            await client.resolve_wallet(USER)
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unrecognised_shape(self):
        respx.get(f"{API}/v1/users/{USER}").mock(
            return_value=Response(200, json={"user": {"wallet": {"address": EMBEDDED}}})
        )
        client = _client()
        with pytest.raises(UnrecognizedResponseError):
            await client.resolve_wallet(USER)
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_address(self):
        payload = json.loads(json.dumps(USER_PAYLOAD))
        payload["linked_accounts"][1]["address"] = "0x1234"
        respx.get(f"{API}/v1/users/{USER}").mock(return_value=Response(200, json=payload))
        client = _client()
        with pytest.raises(UnrecognizedResponseError):
            await client.resolve_wallet(USER)
        await client.close()


class TestDelegation:

    def _wallet(self, signers: list[dict]) -> dict:
        return {"id": "w-1", "address": EMBEDDED, "chain_type": "ethereum", "additional_signers": signers}

    @pytest.mark.asyncio
    @respx.mock
    async def test_adds_signer(self):
        respx.get(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json=self._wallet([])))
        patch = respx.patch(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json=self._wallet([])))
        client = _client()

        await client.delegate_session_signer("w-1", "signer-1", ["policy-1"])

        body = json.loads(patch.calls.last.request.content)
        assert body == {
            "additional_signers": [{"signer_id": "signer-1", "override_policy_ids": ["policy-1"]}],
        }
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_keeps_existing_signers(self):
        existing = [{"signer_id": "other", "override_policy_ids": []}]
        respx.get(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json=self._wallet(existing)))
        patch = respx.patch(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json={}))
        client = _client()
        await client.delegate_session_signer("w-1", "signer-1")
        signers = json.loads(patch.calls.last.request.content)["additional_signers"]
        assert [s["signer_id"] for s in signers] == ["other", "signer-1"]
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_already_present_is_conflict(self):
        signers = [{"signer_id": "signer-1", "override_policy_ids": []}]
        respx.get(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json=self._wallet(signers)))
        client = _client()
        with pytest.raises(ProviderConflictError):
            await client.delegate_session_signer("w-1", "signer-1")
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_409_is_conflict(self):
        respx.get(f"{API}/v1/wallets/w-1").mock(return_value=Response(200, json=self._wallet([])))
        respx.patch(f"{API}/v1/wallets/w-1").mock(return_value=Response(409, json={"error": "duplicate"}))
        client = _client()
        with pytest.raises(ProviderConflictError):
            await client.delegate_session_signer("w-1", "signer-1")
        await client.close()


class TestSigning:

    @pytest.mark.asyncio
    @respx.mock
    async def test_typed_data(self):
        route = respx.post(f"{API}/v1/wallets/w-1/rpc").mock(return_value=Response(200, json={
            "method": "eth_signTypedData_v4",
            "data": {"signature": "0xdeadbeef", "encoding": "hex"},
        }))
        client = _client()
        signer = WalletSigner(client, CustodyWallet("w-1", EMBEDDED))
        typed = {"domain": {"name": "D"}, "types": {"T": []}, "primaryType": "T", "message": {}}

        assert await signer.sign_typed_data(typed) == "0xdeadbeef"

        body = json.loads(route.calls.last.request.content)
        assert body["method"] == "eth_signTypedData_v4"
        assert body["params"]["typed_data"]["primary_type"] == "T"
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_message_hex_encoded(self):
        route = respx.post(f"{API}/v1/wallets/w-1/rpc").mock(return_value=Response(200, json={
            "method": "personal_sign",
            "data": {"signature": "0x" + "11" * 65, "encoding": "hex"},
        }))
        client = _client()
        await client.sign_message("w-1", b"\x01\x02")
        body = json.loads(route.calls.last.request.content)
        assert body["params"] == {"message": "0x0102", "encoding": "hex"}
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_transient_then_success(self):
        route = respx.post(f"{API}/v1/wallets/w-1/rpc").mock(side_effect=[
            Response(502),
            Response(200, json={"method": "personal_sign", "data": {"signature": "0xaa", "encoding": "hex"}}),
        ])
        client = _client()
        assert await client.sign_message("w-1", b"x") == "0xaa"
        assert route.call_count == 2
        await client.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unexpected_signature_payload(self):
        respx.post(f"{API}/v1/wallets/w-1/rpc").mock(
            return_value=Response(200, json={"signature": "0xaa"})
        )
        client = _client()
        with pytest.raises(UnrecognizedResponseError):
            await client.sign_message("w-1", b"x")
        await client.close()
