"""Shared configuration loader and Pydantic settings.

Non-secret settings come from ``config.yaml`` (missing file = defaults).
Secrets are never read from YAML; they come from the environment:

  - PRIVY_APP_ID / PRIVY_APP_SECRET / PRIVY_VERIFICATION_KEY
  - PRIVY_AUTHORIZATION_KEY (optional, signs wallet requests)
  - POLYMARKET_BUILDERS_API_KEY / _SECRET / _PASSPHRASE
  - POLYGON_RPC_URL (overrides chain.rpc_url)
  - WITHDRAW_FEE_WALLET (overrides withdraw.fee_wallet)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class ChainConfig(BaseModel):
    """Polygon PoS contracts used by the exchange."""
    rpc_url: str = "https://polygon-rpc.com"
    chain_id: int = 137
    collateral: str = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"          # USDC.e
    conditional_tokens: str = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"  # CTF
    exchange: str = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"            # CTF exchange
    safe_factory: str = "0xaacFeEa03eb1561C4e67d661e40682Bd20E3541b"
    safe_init_code_hash: str = (
        "0x2bce2127ff07fb632d16c8347c4ebf501f4841168bed00d9e6ef715ddb6fcecf"
    )
    multisend: str = "0xA238CBeb142c10Ef7Ad8442C6D1f9E89e07e7761"
    rpc_timeout_secs: float = 20.0


class CustodyConfig(BaseModel):
    api_base: str = "https://api.privy.io"
    signer_id: str = ""             # key quorum id registered as session signer
    policy_ids: list[str] = Field(default_factory=list)
    timeout_secs: float = 30.0


class RelayerConfig(BaseModel):
    url: str = "https://relayer-v2.polymarket.com"
    poll_interval_secs: float = 2.0
    confirmation_timeout_secs: float = 120.0


class ClobConfig(BaseModel):
    host: str = "https://clob.polymarket.com"
    signature_type: int = 2         # Safe proxy wallet
    timeout_secs: float = 30.0


class DataApiConfig(BaseModel):
    base_url: str = "https://data-api.polymarket.com"


class RetryConfig(BaseModel):
    max_attempts: int = 3
    base_delay_secs: float = 0.5
    max_delay_secs: float = 4.0
    jitter: float = 0.2


class RateLimitConfig(BaseModel):
    tokens_per_second: float
    max_burst: int


class SyncConfig(BaseModel):
    interval_secs: float = 15.0


class WithdrawConfig(BaseModel):
    fee_bps: int = 50               # 0.5%
    fee_wallet: str = ""


class StorageConfig(BaseModel):
    db_type: str = "sqlite"
    sqlite_path: str = "data/alphascope.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/alphascope.log"


class AppConfig(BaseModel):
    chain: ChainConfig = Field(default_factory=ChainConfig)
    custody: CustodyConfig = Field(default_factory=CustodyConfig)
    relayer: RelayerConfig = Field(default_factory=RelayerConfig)
    clob: ClobConfig = Field(default_factory=ClobConfig)
    data_api: DataApiConfig = Field(default_factory=DataApiConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    withdraw: WithdrawConfig = Field(default_factory=WithdrawConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    rate_limits: dict[str, RateLimitConfig] = Field(default_factory=dict)  # per-endpoint overrides


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    cfg = AppConfig(**raw)

    rpc = os.environ.get("POLYGON_RPC_URL")
    if rpc:
        cfg.chain.rpc_url = rpc
    fee_wallet = os.environ.get("WITHDRAW_FEE_WALLET")
    if fee_wallet:
        cfg.withdraw.fee_wallet = fee_wallet
    return cfg


# ── Secrets ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CustodySecrets:
    app_id: str
    app_secret: str
    verification_key: str
    authorization_key: str = ""

    def __repr__(self) -> str:
        return f"CustodySecrets(app_id={self.app_id!r})"


@dataclass(frozen=True)
class BuilderCredentials:
    key: str
    secret: str
    passphrase: str

    def __repr__(self) -> str:
        return f"BuilderCredentials(key={self.key[:8]!r}***)"


def load_custody_secrets() -> CustodySecrets:
    app_id = os.environ.get("PRIVY_APP_ID", "")
    app_secret = os.environ.get("PRIVY_APP_SECRET", "")
    if not app_id or not app_secret:
        raise RuntimeError("Missing Privy environment variables (PRIVY_APP_ID, PRIVY_APP_SECRET)")
    return CustodySecrets(
        app_id=app_id,
        app_secret=app_secret,
        verification_key=os.environ.get("PRIVY_VERIFICATION_KEY", ""),
        authorization_key=os.environ.get("PRIVY_AUTHORIZATION_KEY", ""),
    )


def load_builder_credentials() -> BuilderCredentials:
    key = os.environ.get("POLYMARKET_BUILDERS_API_KEY", "")
    secret = os.environ.get("POLYMARKET_BUILDERS_SECRET", "")
    passphrase = os.environ.get("POLYMARKET_BUILDERS_PASSPHRASE", "")
    if not all([key, secret, passphrase]):
        raise RuntimeError(
            "Missing Polymarket Builder API credentials "
            "(POLYMARKET_BUILDERS_API_KEY, POLYMARKET_BUILDERS_SECRET, "
            "POLYMARKET_BUILDERS_PASSPHRASE)."
        )
    return BuilderCredentials(key=key, secret=secret, passphrase=passphrase)
