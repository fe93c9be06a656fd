"""Shared test fixtures.

In-memory fakes for the chain, the custody provider, the relayer and the
CLOB. The fake relayer applies approvals and deployments to the fake chain
only when a submission is awaited, and counts every submission, so tests
can assert exactly which on-chain transactions a run produced.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

# Ensure alphascope is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from eth_abi import decode  # noqa: E402
from web3 import Web3  # noqa: E402

from alphascope.config import ChainConfig, CustodyConfig, RelayerConfig, StorageConfig  # noqa: E402
from alphascope.connectors.chain import selector  # noqa: E402
from alphascope.connectors.polymarket_clob import ApiCredentials  # noqa: E402
from alphascope.connectors.rate_limiter import DEFAULT_LIMITS, rate_limiter  # noqa: E402
from alphascope.connectors.relayer import RelayReceipt, SafeCall, expected_safe_address  # noqa: E402
from alphascope.errors import ProviderConflictError, SafeAlreadyDeployedError  # noqa: E402
from alphascope.observability.metrics import metrics  # noqa: E402
from alphascope.provisioning.orchestrator import ProvisioningOrchestrator  # noqa: E402
from alphascope.storage.database import CredentialStore  # noqa: E402

USER_ID = "did:privy:user-1"
WALLET_ID = "wallet-1"
EOA = Web3.to_checksum_address("0x" + "ab" * 20)
CONTRACTS = ChainConfig()

_APPROVE = selector("approve(address,uint256)")
_SET_APPROVAL_FOR_ALL = selector("setApprovalForAll(address,bool)")


@pytest.fixture(autouse=True)
def _unthrottled() -> None:
    for name in DEFAULT_LIMITS:
        rate_limiter.configure(name, tokens_per_second=10_000.0, max_burst=10_000)
    metrics.reset()


# ── Fakes ────────────────────────────────────────────────────────────

class FakeChain:
    """Chain state: deployed contracts, ERC-20 allowances, ERC-1155 approvals."""

    def __init__(self) -> None:
        self.deployed: set[str] = set()
        self.allowances: dict[tuple[str, str, str], int] = {}
        self.approvals: dict[tuple[str, str, str], bool] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.reads = 0

    async def is_deployed(self, address: str) -> bool:
        self.reads += 1
        return address.lower() in self.deployed

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        self.reads += 1
        return self.allowances.get((token.lower(), owner.lower(), spender.lower()), 0)

    async def is_approved_for_all(self, token: str, owner: str, operator: str) -> bool:
        self.reads += 1
        return self.approvals.get((token.lower(), owner.lower(), operator.lower()), False)

    async def erc20_balance(self, token: str, owner: str) -> int:
        self.reads += 1
        return self.balances.get((token.lower(), owner.lower()), 0)

    def approve_all(self, owner: str, contracts: ChainConfig = CONTRACTS) -> None:
        """Set every exchange approval out-of-band."""
        o = owner.lower()
        self.allowances[(contracts.collateral.lower(), o, contracts.conditional_tokens.lower())] = 2**256 - 1
        self.allowances[(contracts.collateral.lower(), o, contracts.exchange.lower())] = 2**256 - 1
        self.approvals[(contracts.conditional_tokens.lower(), o, contracts.exchange.lower())] = True

    def apply(self, owner: str, call: SafeCall) -> None:
        sel, args = call.data[:4], call.data[4:]
        if sel == _APPROVE:
            spender, amount = decode(["address", "uint256"], args)
            self.allowances[(call.target.lower(), owner.lower(), spender.lower())] = amount
        elif sel == _SET_APPROVAL_FOR_ALL:
            operator, approved = decode(["address", "bool"], args)
            self.approvals[(call.target.lower(), owner.lower(), operator.lower())] = approved


class FakeCustody:
    def __init__(self) -> None:
        self.delegated: set[str] = set()
        self.delegate_calls = 0
        self.report_conflict = False

    async def delegate_session_signer(self, wallet_id: str, signer_id: str, policy_ids: Any = None) -> None:
        self.delegate_calls += 1
        if self.report_conflict or wallet_id in self.delegated:
            raise ProviderConflictError(f"signer already delegated on {wallet_id}")
        self.delegated.add(wallet_id)

    async def sign_typed_data(self, wallet_id: str, typed_data: dict[str, Any]) -> str:
        return "0x" + "11" * 65

    async def sign_message(self, wallet_id: str, message: bytes) -> str:
        return "0x" + "22" * 64 + "1b"


@dataclass
class Submission:
    kind: str
    calls: list[SafeCall] = field(default_factory=list)
    note: str = ""


class FakePending:
    def __init__(self, relayer: "FakeRelayer", submission: Submission):
        self._relayer = relayer
        self._submission = submission
        self.transaction_id = f"tx-{len(relayer.submissions)}"

    async def wait(self, timeout: float | None = None, poll_interval: float | None = None) -> RelayReceipt:
        if self._relayer.fail_with is not None:
            raise self._relayer.fail_with
        if self._relayer.apply_effects:
            chain, safe = self._relayer.chain, self._relayer.safe
            if self._submission.kind == "deploy":
                chain.deployed.add(safe.lower())
            for call in self._submission.calls:
                chain.apply(safe, call)
        return RelayReceipt(self.transaction_id, "0x" + "cd" * 32, "STATE_MINED")


class FakeRelayer:
    """Relayer bound to the test EOA's Safe."""

    def __init__(self, chain: FakeChain, signer_address: str = EOA):
        self.chain = chain
        self.signer_address = signer_address
        self.safe = expected_safe_address(signer_address, CONTRACTS)
        self.submissions: list[Submission] = []
        self.fail_with: Exception | None = None
        self.apply_effects = True
        self.deploy_conflict = False

    @property
    def deploys(self) -> list[Submission]:
        return [s for s in self.submissions if s.kind == "deploy"]

    @property
    def executions(self) -> list[Submission]:
        return [s for s in self.submissions if s.kind == "execute"]

    def expected_safe_address(self, signer_address: str | None = None) -> str:
        return expected_safe_address(signer_address or self.signer_address, CONTRACTS)

    async def deploy(self) -> FakePending:
        if self.deploy_conflict:
            raise SafeAlreadyDeployedError(f"safe {self.safe} already deployed")
        sub = Submission("deploy")
        self.submissions.append(sub)
        return FakePending(self, sub)

    async def execute(self, calls: list[SafeCall], note: str = "") -> FakePending:
        sub = Submission("execute", list(calls), note)
        self.submissions.append(sub)
        return FakePending(self, sub)


class FakeClob:
    def __init__(self) -> None:
        self.derive_calls = 0
        self.fail_with: Exception | None = None

    async def create_or_derive_api_key(self, signer: Any, nonce: int = 0) -> ApiCredentials:
        self.derive_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return ApiCredentials(api_key="key-" + signer.address[-6:], secret="c2VjcmV0", passphrase="pass")


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def store(tmp_path: Path) -> CredentialStore:
    s = CredentialStore(StorageConfig(sqlite_path=str(tmp_path / "alphascope.db")))
    s.connect()
    yield s
    s.close()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def custody() -> FakeCustody:
    return FakeCustody()


@pytest.fixture
def relayer(chain: FakeChain) -> FakeRelayer:
    return FakeRelayer(chain)


@pytest.fixture
def clob() -> FakeClob:
    return FakeClob()


@pytest.fixture
def orchestrator(store, custody, chain, clob, relayer) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        store=store,
        custody=custody,
        chain=chain,
        clob=clob,
        relayer_for=lambda wallet: relayer,
        contracts=CONTRACTS,
        custody_config=CustodyConfig(signer_id="signer-1", policy_ids=["policy-1"]),
        relayer_config=RelayerConfig(poll_interval_secs=0.0, confirmation_timeout_secs=0.05),
    )
