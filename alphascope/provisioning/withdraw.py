"""Collateral withdrawal from a user's Safe.

Moves ``percent`` of the Safe's USDC.e balance to a destination address,
minus a platform fee. Fee and net transfers go out as one batched Safe
transaction through the relayer, so either both land or neither does.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any

from web3 import Web3

from alphascope.config import ChainConfig, WithdrawConfig
from alphascope.connectors.chain import ChainClient, erc20_transfer_data
from alphascope.connectors.relayer import RelayExecutor, SafeCall
from alphascope.errors import InsufficientFundsError
from alphascope.observability.logger import get_logger
from alphascope.observability.metrics import metrics

log = get_logger(__name__)

COLLATERAL_UNIT = 10 ** 6


@dataclass(frozen=True)
class WithdrawalQuote:
    """Amounts in collateral base units (6 decimals)."""
    balance: int
    percent: float
    gross: int
    fee: int
    net: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance": self.balance / COLLATERAL_UNIT,
            "requested_percent": self.percent,
            "fee": self.fee / COLLATERAL_UNIT,
            "net": self.net / COLLATERAL_UNIT,
        }


@dataclass(frozen=True)
class WithdrawalReceipt:
    transaction_id: str
    transaction_hash: str
    quote: WithdrawalQuote


def quote_withdrawal(balance: int, percent: float, fee_bps: int) -> WithdrawalQuote:
    """Split ``percent`` of ``balance`` into fee and net, rounding down."""
    if not 0 < percent <= 100:
        raise ValueError(f"percent must be in (0, 100], got {percent}")
    if balance <= 0:
        raise InsufficientFundsError("Insufficient USDC.e balance")

    gross = int((Decimal(balance) * Decimal(str(percent)) / 100).to_integral_value(ROUND_DOWN))
    fee = gross * fee_bps // 10_000
    net = gross - fee
    if net <= 0:
        raise InsufficientFundsError("Withdrawal amount too small after fees")
    return WithdrawalQuote(balance=balance, percent=percent, gross=gross, fee=fee, net=net)


async def withdraw_collateral(
    chain: ChainClient,
    relayer: RelayExecutor,
    contracts: ChainConfig,
    config: WithdrawConfig,
    safe_address: str,
    to_address: str,
    percent: float,
) -> WithdrawalReceipt:
    if not config.fee_wallet:
        raise RuntimeError("Missing withdraw fee wallet (withdraw.fee_wallet or WITHDRAW_FEE_WALLET)")
    if not Web3.is_address(to_address):
        raise ValueError(f"invalid destination address: {to_address}")

    balance = await chain.erc20_balance(contracts.collateral, safe_address)
    quote = quote_withdrawal(balance, percent, config.fee_bps)

    calls = []
    if quote.fee > 0:
        calls.append(SafeCall(contracts.collateral, erc20_transfer_data(config.fee_wallet, quote.fee)))
    calls.append(SafeCall(contracts.collateral, erc20_transfer_data(to_address, quote.net)))

    log.info(
        "withdraw.submitting",
        safe=safe_address,
        to=to_address,
        net=quote.net / COLLATERAL_UNIT,
        fee=quote.fee / COLLATERAL_UNIT,
    )
    pending = await relayer.execute(calls, note="user withdrawal")
    receipt = await pending.wait()
    metrics.incr("withdraw.completed")
    log.info("withdraw.completed", safe=safe_address, tx_hash=receipt.transaction_hash)
    return WithdrawalReceipt(
        transaction_id=receipt.transaction_id,
        transaction_hash=receipt.transaction_hash,
        quote=quote,
    )
