"""CLI entry point for the Alphascope provisioning pipeline.

Commands:
  alphascope provision --token         Provision the user behind a session token
  alphascope status USER_ID            Show stored provisioning flags
  alphascope verify USER_ID            Re-read on-chain allowances (drift report)
  alphascope balances USER_ID          One balance refresh for a provisioned user
  alphascope safe-address SIGNER       Predict the Safe address for a signer
  alphascope withdraw USER_ID --to --percent  Withdraw collateral from the Safe
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Awaitable, Callable, TypeVar

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from web3 import Web3

from alphascope.config import AppConfig, load_builder_credentials, load_config, load_custody_secrets
from alphascope.connectors.relayer import expected_safe_address
from alphascope.errors import AlphascopeError
from alphascope.observability.logger import configure_logging, get_logger
from alphascope.provisioning.service import ProvisioningService
from alphascope.storage.database import CredentialStore
from alphascope.sync.balances import BalanceSynchronizer

load_dotenv()

console = Console()
log = get_logger(__name__)

T = TypeVar("T")


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _with_service(cfg: AppConfig, fn: Callable[[ProvisioningService], Awaitable[T]]) -> T:
    async def _go() -> T:
        service = ProvisioningService.from_config(
            cfg, load_custody_secrets(), load_builder_credentials(),
        )
        try:
            return await fn(service)
        finally:
            await service.close()

    try:
        return _run(_go())
    except (AlphascopeError, RuntimeError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _yes_no(value: bool) -> str:
    return "✅" if value else "❌"


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Alphascope account provisioning."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── PROVISION ───────────────────────────────────────────────────────

@cli.command()
@click.option("--token", required=True, envvar="ALPHASCOPE_SESSION_TOKEN", help="Privy session token")
@click.pass_context
def provision(ctx: click.Context, token: str) -> None:
    """Bring the token's user to a tradable state."""
    cfg: AppConfig = ctx.obj["config"]
    result = _with_service(cfg, lambda s: s.provision(token))
    data = result.to_dict()

    table = Table(title=f"🔐 Provisioning: {result.user_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for name, value in (data["flags"] or {}).items():
        table.add_row(name, _yes_no(value))
    table.add_row("safe_wallet_address", data["safe_wallet_address"] or "—")
    if not result.ok:
        table.add_row("[red]failed_step[/red]", data["failed_step"])
        table.add_row("[red]error[/red]", f"{data['error_kind']}: {data['error']}")
        table.add_row("retryable", _yes_no(data["retryable"]))
    console.print(table)
    if not result.ok:
        sys.exit(1)


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("user_id")
@click.pass_context
def status(ctx: click.Context, user_id: str) -> None:
    """Show stored provisioning progress."""
    cfg: AppConfig = ctx.obj["config"]
    store = CredentialStore(cfg.storage)
    store.connect()
    try:
        st = _run(store.get_status(user_id))
    finally:
        store.close()

    if not st.exists:
        console.print(f"[yellow]No provisioning record for {user_id}[/yellow]")
        return

    table = Table(title=f"📋 Status: {user_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for name, value in st.flags.model_dump().items():
        table.add_row(name, _yes_no(value))
    table.add_row("custody_address", st.custody_address or "—")
    table.add_row("safe_wallet_address", st.safe_wallet_address or "—")
    table.add_row("has_credentials", _yes_no(st.has_credentials))
    table.add_row("last_error", st.last_error or "—")
    console.print(table)


# ─── VERIFY ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("user_id")
@click.pass_context
def verify(ctx: click.Context, user_id: str) -> None:
    """Re-read allowances on chain. Reports only; never changes flags."""
    cfg: AppConfig = ctx.obj["config"]
    state = _with_service(cfg, lambda s: s.verify_allowances(user_id))

    table = Table(title=f"🔎 Allowances: {user_id}")
    table.add_column("Approval", style="bold")
    table.add_column("On chain")
    table.add_row("collateral → conditional tokens", _yes_no(not state.collateral_to_ctf))
    table.add_row("collateral → exchange", _yes_no(not state.collateral_to_exchange))
    table.add_row("conditional tokens → exchange", _yes_no(not state.ctf_to_exchange))
    console.print(table)
    if not state.all_set:
        console.print(f"[yellow]Drift detected: {', '.join(state.missing)}[/yellow]")


# ─── BALANCES ────────────────────────────────────────────────────────

@cli.command()
@click.argument("user_id")
@click.pass_context
def balances(ctx: click.Context, user_id: str) -> None:
    """Read every balance source once."""
    cfg: AppConfig = ctx.obj["config"]

    async def _refresh(service: ProvisioningService) -> Any:
        sync = BalanceSynchronizer(await service.balance_sources(user_id), cfg.sync.interval_secs)
        return await sync.force_refresh()

    snap = _with_service(cfg, _refresh)

    def _usd(value: float | None) -> str:
        return "—" if value is None else f"${value:,.2f}"

    table = Table(title=f"💰 Balances: {user_id}")
    table.add_column("Source", style="bold")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Collateral (Safe)", _usd(snap.collateral))
    table.add_row("Available (CLOB)", _usd(snap.available))
    table.add_row("Locked in orders", _usd(snap.locked))
    table.add_row("Positions value", _usd(snap.positions_value))
    table.add_row("Last sync", snap.last_sync_at or "—")
    console.print(table)
    for source, err in snap.errors.items():
        console.print(f"[red]{source}:[/red] {err}")


# ─── SAFE ADDRESS ────────────────────────────────────────────────────

@cli.command("safe-address")
@click.argument("signer")
@click.pass_context
def safe_address(ctx: click.Context, signer: str) -> None:
    """Predict the Safe address owned by SIGNER (no network)."""
    cfg: AppConfig = ctx.obj["config"]
    if not Web3.is_address(signer):
        raise click.BadParameter(f"not an address: {signer}", param_hint="SIGNER")
    console.print(expected_safe_address(signer, cfg.chain))


# ─── WITHDRAW ────────────────────────────────────────────────────────

@cli.command()
@click.argument("user_id")
@click.option("--to", "to_address", required=True, help="Destination address")
@click.option("--percent", type=float, required=True, help="Percent of the Safe balance (0, 100]")
@click.pass_context
def withdraw(ctx: click.Context, user_id: str, to_address: str, percent: float) -> None:
    """Withdraw collateral from the user's Safe."""
    cfg: AppConfig = ctx.obj["config"]
    receipt = _with_service(cfg, lambda s: s.withdraw(user_id, to_address, percent))
    summary = receipt.quote.to_dict()
    console.print(
        f"[green]Withdrew ${summary['net']:,.2f}[/green] "
        f"(fee ${summary['fee']:,.2f}) — tx {receipt.transaction_hash}"
    )


if __name__ == "__main__":
    cli()
