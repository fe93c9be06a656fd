"""Storage models: Pydantic models for provisioning records."""

from __future__ import annotations

import datetime as dt
import sqlite3
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class ProvisioningFlag(str, Enum):
    """Progress flags. Values are the ``profiles`` column names."""
    SESSION_SIGNER_DELEGATED = "session_signer_delegated"
    SAFE_DEPLOYED = "safe_deployed"
    ALLOWANCES_SET = "allowances_set"
    CLOB_CREDENTIALS_ISSUED = "clob_credentials_issued"


class ProvisioningFlags(BaseModel):
    session_signer_delegated: bool = False
    safe_deployed: bool = False
    allowances_set: bool = False
    clob_credentials_issued: bool = False

    @property
    def complete(self) -> bool:
        return all(self.model_dump().values())

    def is_set(self, flag: ProvisioningFlag) -> bool:
        return bool(getattr(self, flag.value))


class ProvisioningRecord(BaseModel):
    """One row of ``profiles``: a user's provisioning progress."""
    user_id: str
    custody_wallet_id: str
    custody_address: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    main_wallet: Optional[str] = None
    safe_wallet_address: Optional[str] = None
    flags: ProvisioningFlags = Field(default_factory=ProvisioningFlags)
    last_error: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProvisioningRecord":
        data = dict(row)
        flags = ProvisioningFlags(**{f.value: bool(data.pop(f.value)) for f in ProvisioningFlag})
        return cls(flags=flags, **data)


class ClobCredentialRecord(BaseModel):
    """Derived exchange API credentials, one row per user."""
    user_id: str
    address: str
    api_key: str
    secret: str = Field(repr=False)
    passphrase: str = Field(repr=False)
    created_at: str = Field(default_factory=utcnow)


class ProvisioningStatus(BaseModel):
    """Read-only view of a user's progress for the UI and the CLI."""
    user_id: str
    exists: bool = False
    flags: ProvisioningFlags = Field(default_factory=ProvisioningFlags)
    custody_address: Optional[str] = None
    safe_wallet_address: Optional[str] = None
    has_credentials: bool = False
    last_error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.exists and self.flags.complete and self.has_credentials
