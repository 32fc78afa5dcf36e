"""
Sweep Loop - fixed-interval driver for the trigger and dispatch sweeps.

Each sweep is stateless between runs: everything it needs lives in the
database, so a restart loses nothing and several instances may run side by
side (the repository's conditional updates keep them from double-processing).

Usage:
    from outreach_engine.scheduling.polling_daemon import SweepLoop

    loop = SweepLoop("dispatch", dispatcher.run_once, interval_seconds=60)
    await loop.start()
    # ... loop runs in background ...
    await loop.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

SweepCallback = Callable[[], Awaitable[Any]]


class SweepLoop:
    """
    Runs one sweep callback every ``interval_seconds``.

    A cycle that raises is logged and retried with exponential backoff
    (doubling per consecutive error, capped at ``max_backoff_seconds``).
    A successful cycle resets the backoff.

    Attributes:
        name: Label used in console output and health checks.
        run_cycle: Async callable performing one sweep pass.
        stats: Cycle counters and the last cycle's result.

    Example:
        >>> loop = SweepLoop("triggers", evaluator.run_once, interval_seconds=900)
        >>> await loop.start()
        >>> loop.health_check()["cycles"]
        1
    """

    def __init__(
        self,
        name: str,
        run_cycle: SweepCallback,
        interval_seconds: float,
        max_backoff_seconds: float = 300,
        console: Optional[Console] = None,
    ):
        self.name = name
        self.run_cycle = run_cycle
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.console = console or Console()
        self.stats = {
            "cycles": 0,
            "cycle_errors": 0,
            "consecutive_errors": 0,
            "last_result": None,
            "last_cycle_at": None,
            "started_at": None,
        }

    async def start(self) -> None:
        """Start the loop in a background task. No-op if already running."""
        if self._running:
            self.console.print(f"[yellow]{self.name} loop already running[/yellow]")
            return

        self._running = True
        self.stats["started_at"] = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._loop())
        self.console.print(
            f"[green]{self.name} loop started (interval: {self.interval_seconds}s)[/green]"
        )

    async def stop(self) -> None:
        """
        Stop the loop.

        A cycle in progress is cancelled at its next await point. Messages it
        had claimed but not finished keep their claim until the lease expires
        and are then picked up by a later sweep.
        """
        if not self._running:
            return

        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self.console.print(f"[green]{self.name} loop stopped[/green]")

    async def run_cycle_once(self) -> Any:
        """Run a single cycle and record it in stats. Errors propagate."""
        self.stats["cycles"] += 1
        self.stats["last_cycle_at"] = datetime.now(timezone.utc)
        result = await self.run_cycle()
        self.stats["last_result"] = result
        return result

    def next_delay(self, consecutive_errors: int) -> float:
        if consecutive_errors == 0:
            return self.interval_seconds
        return min(self.interval_seconds * (2 ** consecutive_errors), self.max_backoff_seconds)

    async def _loop(self) -> None:
        consecutive_errors = 0

        while self._running:
            try:
                await self.run_cycle_once()
                consecutive_errors = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                consecutive_errors += 1
                self.stats["cycle_errors"] += 1
                self.console.print(
                    f"[red]{self.name} cycle error: {e} "
                    f"(retry in {self.next_delay(consecutive_errors)}s, "
                    f"errors: {consecutive_errors})[/red]"
                )
            self.stats["consecutive_errors"] = consecutive_errors

            try:
                await asyncio.sleep(self.next_delay(consecutive_errors))
            except asyncio.CancelledError:
                break

    def health_check(self) -> dict:
        """
        Loop health for status output and container health checks.

        Returns:
            Dictionary with running flag, uptime, cycle counters and the
            last cycle's result.
        """
        uptime = None
        if self.stats["started_at"]:
            uptime = (datetime.now(timezone.utc) - self.stats["started_at"]).total_seconds()

        return {
            "name": self.name,
            "running": self._running,
            "uptime_seconds": uptime,
            "cycles": self.stats["cycles"],
            "cycle_errors": self.stats["cycle_errors"],
            "consecutive_errors": self.stats["consecutive_errors"],
            "last_result": self.stats["last_result"],
            "interval_seconds": self.interval_seconds,
        }

    @property
    def is_running(self) -> bool:
        return self._running
