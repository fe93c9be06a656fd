"""Exchange allowances for a Safe wallet.

Trading needs three approvals owned by the Safe:
  - collateral (USDC.e) ERC-20 allowance to the conditional-tokens contract
  - collateral ERC-20 allowance to the exchange
  - conditional-tokens ERC-1155 approve-for-all to the exchange

They are always read from the chain, never inferred from a stored flag.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from alphascope.config import ChainConfig
from alphascope.connectors.chain import (
    ChainClient,
    erc1155_set_approval_for_all_data,
    erc20_approve_data,
)
from alphascope.connectors.relayer import SafeCall


@dataclass(frozen=True)
class AllowanceState:
    """Each field is True when that approval is still missing."""
    collateral_to_ctf: bool
    collateral_to_exchange: bool
    ctf_to_exchange: bool

    @property
    def missing(self) -> list[str]:
        return [
            name
            for name in ("collateral_to_ctf", "collateral_to_exchange", "ctf_to_exchange")
            if getattr(self, name)
        ]

    @property
    def all_set(self) -> bool:
        return not self.missing


async def read_allowance_state(chain: ChainClient, contracts: ChainConfig, owner: str) -> AllowanceState:
    """Read the three approvals concurrently."""
    to_ctf, to_exchange, ctf_approved = await asyncio.gather(
        chain.erc20_allowance(contracts.collateral, owner, contracts.conditional_tokens),
        chain.erc20_allowance(contracts.collateral, owner, contracts.exchange),
        chain.is_approved_for_all(contracts.conditional_tokens, owner, contracts.exchange),
    )
    return AllowanceState(
        collateral_to_ctf=to_ctf == 0,
        collateral_to_exchange=to_exchange == 0,
        ctf_to_exchange=not ctf_approved,
    )


def build_approval_calls(state: AllowanceState, contracts: ChainConfig) -> list[SafeCall]:
    """Approval calls for whatever ``state`` reports missing, in a fixed order."""
    calls: list[SafeCall] = []
    if state.collateral_to_ctf:
        calls.append(SafeCall(contracts.collateral, erc20_approve_data(contracts.conditional_tokens)))
    if state.collateral_to_exchange:
        calls.append(SafeCall(contracts.collateral, erc20_approve_data(contracts.exchange)))
    if state.ctf_to_exchange:
        calls.append(SafeCall(
            contracts.conditional_tokens, erc1155_set_approval_for_all_data(contracts.exchange),
        ))
    return calls
