"""Balance synchronizer: periodic, best-effort balance reads for one user.

Each tick reads three independent sources concurrently:
  - collateral (USDC.e) held by the Safe, from the chain
  - available / locked exchange balance, through the user's CLOB credentials
  - aggregate position value, from the Data API

A failed source keeps its previous value and records its error; the
others still update. Nothing is written back to the credential store.

States: IDLE -> POLLING <-> PAUSED, and STOPPED (terminal) on
authentication loss.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from contextlib import suppress
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

from alphascope.connectors.polymarket_clob import ClobBalances
from alphascope.observability.logger import get_logger
from alphascope.observability.metrics import metrics

log = get_logger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class BalanceSnapshot:
    collateral: Optional[float] = None
    available: Optional[float] = None
    locked: Optional[float] = None
    positions_value: Optional[float] = None
    last_sync_at: Optional[str] = None
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class BalanceSources:
    """The three reads, already bound to one user's addresses and credentials."""
    collateral: Callable[[], Awaitable[float]]
    clob_balances: Callable[[], Awaitable[ClobBalances]]
    positions_value: Callable[[], Awaitable[float]]


Subscriber = Callable[[BalanceSnapshot], None]


class BalanceSynchronizer:
    """Polls balances every ``interval_secs`` while active."""

    def __init__(self, sources: BalanceSources, interval_secs: float = 15.0):
        self._sources = sources
        self._interval = interval_secs
        self._state = SyncState.IDLE
        self._snapshot = BalanceSnapshot()
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task | None = None
        self._refresh_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._resumed = asyncio.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def snapshot(self) -> BalanceSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._state is SyncState.STOPPED:
            raise RuntimeError("synchronizer is stopped")
        if self._state is not SyncState.IDLE:
            return
        self._state = SyncState.POLLING
        self._resumed.set()
        self._task = asyncio.create_task(self._run())
        log.info("balance_sync.started", interval_secs=self._interval)

    def pause(self) -> None:
        if self._state is SyncState.POLLING:
            self._state = SyncState.PAUSED
            self._resumed.clear()
            log.info("balance_sync.paused")

    def resume(self) -> None:
        """Back to polling; refreshes immediately."""
        if self._state is SyncState.PAUSED:
            self._state = SyncState.POLLING
            self._resumed.set()
            self._wake.set()
            log.info("balance_sync.resumed")

    async def stop(self) -> None:
        self._state = SyncState.STOPPED
        self._resumed.set()
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        log.info("balance_sync.stopped")

    async def force_refresh(self) -> BalanceSnapshot:
        if self._state is SyncState.STOPPED:
            raise RuntimeError("synchronizer is stopped")
        return await self.refresh()

    async def _run(self) -> None:
        while self._state is not SyncState.STOPPED:
            if self._state is SyncState.PAUSED:
                await self._resumed.wait()
                continue
            await self.refresh()
            self._wake.clear()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)

    # ── Reads ────────────────────────────────────────────────────────

    async def refresh(self) -> BalanceSnapshot:
        """One fan-out read of every source."""
        async with self._refresh_lock:
            collateral, clob, positions = await asyncio.gather(
                self._sources.collateral(),
                self._sources.clob_balances(),
                self._sources.positions_value(),
                return_exceptions=True,
            )
            snap = self._snapshot
            errors: dict[str, str] = {}
            updated = False

            if isinstance(collateral, Exception):
                errors["collateral"] = _describe(collateral)
            else:
                snap = replace(snap, collateral=collateral)
                updated = True

            if isinstance(clob, Exception):
                errors["clob"] = _describe(clob)
            else:
                snap = replace(snap, available=clob.available, locked=clob.locked)
                updated = True

            if isinstance(positions, Exception):
                errors["positions"] = _describe(positions)
            else:
                snap = replace(snap, positions_value=positions)
                updated = True

            for source, err in errors.items():
                metrics.incr("balance_sync.source_failed", source=source)
                log.warning("balance_sync.source_failed", source=source, error=err)

            if updated:
                snap = replace(snap, last_sync_at=dt.datetime.now(dt.timezone.utc).isoformat())
            self._snapshot = replace(snap, errors=errors)

        self._publish(self._snapshot)
        return self._snapshot

    def _publish(self, snapshot: BalanceSnapshot) -> None:
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                log.exception("balance_sync.subscriber_error")


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
