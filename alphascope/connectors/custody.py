"""Privy custody connector.

The custody provider holds each user's embedded EVM key. This adapter:
  - verifies session tokens issued to the browser (ES256 JWT)
  - resolves the user's embedded wallet id/address (never trusted from
    client input)
  - registers the app's session signer on the wallet
  - signs EIP-712 typed data and raw messages through the wallet RPC

Provider payloads are parsed into typed models at this boundary. A shape
we do not recognise raises ``UnrecognizedResponseError`` instead of being
guessed at.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import jwt
from privy.lib.authorization_signatures import get_authorization_signature
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from web3 import Web3

from alphascope.config import CustodyConfig, CustodySecrets
from alphascope.connectors.http import error_text, json_body, send
from alphascope.connectors.retry import RetryPolicy
from alphascope.errors import (
    AuthenticationError,
    ProviderConflictError,
    TransientNetworkError,
    UnrecognizedResponseError,
)
from alphascope.observability.logger import get_logger

log = get_logger(__name__)


# ── Provider payload models ──────────────────────────────────────────

class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LinkedAccount(_Model):
    type: str
    id: Optional[str] = None
    address: Optional[str] = None
    chain_type: Optional[str] = None
    connector_type: Optional[str] = None
    wallet_client_type: Optional[str] = None
    username: Optional[str] = None
    profile_picture_url: Optional[str] = None

    @property
    def is_embedded_evm(self) -> bool:
        return (
            self.type == "wallet"
            and self.chain_type == "ethereum"
            and self.connector_type == "embedded"
            and self.wallet_client_type == "privy"
        )

    @property
    def is_external_evm(self) -> bool:
        return (
            self.type == "wallet"
            and self.chain_type == "ethereum"
            and self.connector_type != "embedded"
        )


class PrivyUser(_Model):
    id: str
    linked_accounts: list[LinkedAccount] = Field(default_factory=list)


class AdditionalSigner(_Model):
    signer_id: str
    override_policy_ids: list[str] = Field(default_factory=list)


class PrivyWallet(_Model):
    id: str
    address: str
    chain_type: str
    additional_signers: list[AdditionalSigner] = Field(default_factory=list)


class _SignatureData(_Model):
    signature: str
    encoding: str = "hex"


class RpcSignatureResponse(_Model):
    method: str
    data: _SignatureData


def _parse(model: type[_Model], payload: Any, what: str) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise UnrecognizedResponseError(f"unexpected {what} payload: {e.error_count()} error(s)") from e


# ── Results ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CustodyWallet:
    wallet_id: str
    address: str


@dataclass(frozen=True)
class CustodyProfile:
    user_id: str
    username: str | None = None
    avatar_url: str | None = None
    main_wallet: str | None = None


# ── Client ───────────────────────────────────────────────────────────

class PrivyCustodyClient:
    """Async client for the Privy wallet and user REST API."""

    def __init__(
        self,
        config: CustodyConfig,
        secrets: CustodySecrets,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._secrets = secrets
        self._retry = retry or RetryPolicy()
        self._base = config.api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout_secs,
            auth=(secrets.app_id, secrets.app_secret),
            headers={
                "privy-app-id": secrets.app_id,
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _signed_headers(self, method: str, url: str, body: dict[str, Any]) -> dict[str, str]:
        """Authorization signature header for wallet-mutating requests."""
        if not self._secrets.authorization_key:
            return {}
        signature = get_authorization_signature(
            url=url,
            body=body,
            method=method,
            app_id=self._secrets.app_id,
            private_key=self._secrets.authorization_key.replace("wallet-auth:", ""),
        )
        return {"privy-authorization-signature": signature}

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None, signed: bool = False,
    ) -> httpx.Response:
        url = f"{self._base}{path}"
        headers = self._signed_headers(method, url, body or {}) if signed else {}

        async def _once() -> httpx.Response:
            return await send(
                self._client, method, url, endpoint="privy", json=body, headers=headers,
            )

        return await self._retry.run(_once, label=f"privy.{method}.{path.split('/')[2]}")

    # ── Identity ─────────────────────────────────────────────────────

    def verify_session_token(self, token: str) -> str:
        """Validate a browser session token and return the Privy user id."""
        if not token:
            raise AuthenticationError("missing session token")
        if not self._secrets.verification_key:
            raise AuthenticationError("PRIVY_VERIFICATION_KEY is not configured")
        try:
            claims = jwt.decode(
                token,
                self._secrets.verification_key,
                algorithms=["ES256"],
                issuer="privy.io",
                audience=self._secrets.app_id,
            )
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"invalid session token: {e}") from e
        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationError("session token has no subject")
        return user_id

    async def get_user(self, user_id: str) -> PrivyUser:
        resp = await self._request("GET", f"/v1/users/{user_id}")
        if resp.status_code == 404:
            raise UnrecognizedResponseError(f"Privy user not found: {user_id}")
        if resp.status_code != 200:
            raise UnrecognizedResponseError(f"get user -> {resp.status_code}: {error_text(resp)}")
        return _parse(PrivyUser, json_body(resp, "privy user"), "user")

    async def resolve_wallet(self, user_id: str) -> CustodyWallet:
        """The user's embedded EVM wallet, as the provider reports it."""
        user = await self.get_user(user_id)
        embedded = [a for a in user.linked_accounts if a.is_embedded_evm]
        if not embedded:
            raise UnrecognizedResponseError(f"No embedded EVM wallet found for user {user_id}")
        account = embedded[0]
        if not account.id or not account.address or not Web3.is_address(account.address):
            raise UnrecognizedResponseError("Embedded EVM wallet is missing an id or a valid address")
        return CustodyWallet(
            wallet_id=account.id,
            address=Web3.to_checksum_address(account.address),
        )

    async def resolve_profile(self, user_id: str) -> CustodyProfile:
        user = await self.get_user(user_id)
        twitter = next((a for a in user.linked_accounts if a.type == "twitter_oauth"), None)
        external = next((a for a in user.linked_accounts if a.is_external_evm), None)
        return CustodyProfile(
            user_id=user.id,
            username=twitter.username if twitter else None,
            avatar_url=twitter.profile_picture_url if twitter else None,
            main_wallet=external.address if external else None,
        )

    # ── Session signer delegation ────────────────────────────────────

    async def get_wallet(self, wallet_id: str) -> PrivyWallet:
        resp = await self._request("GET", f"/v1/wallets/{wallet_id}")
        if resp.status_code != 200:
            raise UnrecognizedResponseError(f"get wallet -> {resp.status_code}: {error_text(resp)}")
        return _parse(PrivyWallet, json_body(resp, "privy wallet"), "wallet")

    async def delegate_session_signer(
        self, wallet_id: str, signer_id: str, policy_ids: list[str] | None = None,
    ) -> None:
        """Add ``signer_id`` as an additional signer on the wallet.

        Raises ProviderConflictError when the signer is already present,
        whether we see it on the read or the provider reports it on write.
        """
        wallet = await self.get_wallet(wallet_id)
        existing = [s.model_dump() for s in wallet.additional_signers]
        if any(s.signer_id == signer_id for s in wallet.additional_signers):
            raise ProviderConflictError(f"signer {signer_id} already delegated on {wallet_id}")

        body = {
            "additional_signers": existing + [
                {"signer_id": signer_id, "override_policy_ids": list(policy_ids or [])},
            ],
        }
        resp = await self._request("PATCH", f"/v1/wallets/{wallet_id}", body, signed=True)
        if resp.status_code == 409:
            raise ProviderConflictError(f"signer {signer_id} already delegated on {wallet_id}")
        if resp.status_code != 200:
            raise UnrecognizedResponseError(
                f"delegate signer -> {resp.status_code}: {error_text(resp)}"
            )
        log.info("custody.signer_delegated", wallet_id=wallet_id, signer_id=signer_id)

    # ── Signing ──────────────────────────────────────────────────────

    async def _wallet_rpc(self, wallet_id: str, method: str, params: dict[str, Any]) -> str:
        body = {"method": method, "params": params}
        resp = await self._request("POST", f"/v1/wallets/{wallet_id}/rpc", body, signed=True)
        if resp.status_code == 429:
            raise TransientNetworkError("privy rpc rate limited", status_code=429)
        if resp.status_code != 200:
            raise UnrecognizedResponseError(f"wallet rpc {method} -> {resp.status_code}: {error_text(resp)}")
        parsed: RpcSignatureResponse = _parse(
            RpcSignatureResponse, json_body(resp, f"privy {method}"), f"{method} response",
        )
        if parsed.data.encoding != "hex" or not parsed.data.signature.startswith("0x"):
            raise UnrecognizedResponseError(f"{method} returned a non-hex signature")
        return parsed.data.signature

    async def sign_typed_data(self, wallet_id: str, typed_data: dict[str, Any]) -> str:
        """EIP-712 signature. ``typed_data`` holds domain/types/primaryType/message."""
        payload = {
            "domain": typed_data["domain"],
            "types": typed_data["types"],
            "primary_type": typed_data["primaryType"],
            "message": typed_data["message"],
        }
        return await self._wallet_rpc(wallet_id, "eth_signTypedData_v4", {"typed_data": payload})

    async def sign_message(self, wallet_id: str, message: bytes) -> str:
        """personal_sign over raw bytes."""
        return await self._wallet_rpc(
            wallet_id, "personal_sign", {"message": "0x" + message.hex(), "encoding": "hex"},
        )


class WalletSigner:
    """A custody wallet bound to its signing client.

    Relayer and CLOB code sign through this without ever seeing a key.
    """

    def __init__(self, custody: PrivyCustodyClient, wallet: CustodyWallet):
        self._custody = custody
        self.wallet_id = wallet.wallet_id
        self.address = wallet.address

    async def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        return await self._custody.sign_typed_data(self.wallet_id, typed_data)

    async def sign_message(self, message: bytes) -> str:
        return await self._custody.sign_message(self.wallet_id, message)
