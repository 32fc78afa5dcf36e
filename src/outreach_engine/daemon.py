#!/usr/bin/env python3
"""
Outreach Engine Daemon.

Long-running service driving the trigger sweep and the dispatch sweep on
their own intervals, plus one-shot operator commands.

Usage:
    outreach-engine run                 # both loops until SIGINT/SIGTERM
    outreach-engine run --dry-run       # print instead of sending
    outreach-engine trigger-sweep       # one trigger pass (cron friendly)
    outreach-engine dispatch            # one dispatch pass
    outreach-engine reset-counters --weekly
    outreach-engine assign-agent <contact-id> webinar --introduce
    outreach-engine requeue <message-id>
    outreach-engine migrate
    outreach-engine status
"""
import argparse
import asyncio
import json
import logging
import os
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from outreach_engine.core.config import EngineConfig, load_config
from outreach_engine.database.init import init_database, run_migrations
from outreach_engine.database.pool import get_pool
from outreach_engine.database.postgres import PostgresRepository
from outreach_engine.database.repository import EngineRepository
from outreach_engine.dispatch.dispatcher import Dispatcher
from outreach_engine.dispatch.side_effects import SideEffectQueue
from outreach_engine.errors import EngineError
from outreach_engine.integrations.channels import ChannelSender, ConsoleChannelSender, HttpChannelSender
from outreach_engine.integrations.composer import Composer, HttpComposer
from outreach_engine.integrations.embeddings import HttpEmbedder
from outreach_engine.registry.agents import AgentRegistry
from outreach_engine.scheduling.polling_daemon import SweepLoop
from outreach_engine.scheduling.scheduler import Scheduler
from outreach_engine.throttle.counters import CounterMaintenance
from outreach_engine.triggers.evaluator import TriggerEvaluator

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Route library logging through rich. Level from LOG_LEVEL (default INFO)."""
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


class EngineDaemon:
    """Wires the repository, integrations and both sweeps together."""

    def __init__(
        self,
        config: EngineConfig,
        repository: EngineRepository,
        composer: Composer,
        sender: ChannelSender,
    ):
        self.config = config
        self.repository = repository
        self.side_effects = SideEffectQueue(workers=config.integrations.side_effect_workers)

        embedder = HttpEmbedder(config.integrations)
        self.evaluator = TriggerEvaluator(repository, composer, config=config)
        self.dispatcher = Dispatcher(
            repository,
            sender,
            config=config,
            side_effects=self.side_effects,
            embedder=embedder if embedder.enabled else None,
        )
        self.trigger_loop = SweepLoop(
            "trigger",
            self.evaluator.run_once,
            interval_seconds=config.sweep.trigger_interval_seconds,
            max_backoff_seconds=config.sweep.max_backoff_seconds,
            console=console,
        )
        self.dispatch_loop = SweepLoop(
            "dispatch",
            self.dispatcher.run_once,
            interval_seconds=config.sweep.dispatch_interval_seconds,
            max_backoff_seconds=config.sweep.max_backoff_seconds,
            console=console,
        )
        self.running = False
        self.started_at: Optional[datetime] = None

    def _create_status_table(self) -> Table:
        table = Table(title="Outreach Engine Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        if self.started_at:
            uptime = datetime.now(timezone.utc) - self.started_at
            table.add_row("Uptime", str(uptime).split(".")[0])

        for loop in (self.trigger_loop, self.dispatch_loop):
            health = loop.health_check()
            table.add_row(f"{loop.name} cycles", str(health["cycles"]))
            table.add_row(f"{loop.name} errors", str(health["cycle_errors"]))

        stats = self.dispatcher.stats
        table.add_row("Messages Sent", str(stats["sent"]))
        table.add_row("Messages Failed", str(stats["failed"]))
        table.add_row("Messages Deferred", str(stats["deferred"]))
        table.add_row("Triggers Scheduled", str(self.evaluator.stats["scheduled"]))
        table.add_row("Triggers Deferred", str(self.evaluator.stats["deferred"]))
        table.add_row("Side Effects Failed", str(self.side_effects.stats["failed"]))
        return table

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run both loops until ``stop_event`` is set."""
        self.running = True
        self.started_at = datetime.now(timezone.utc)

        console.print(Panel.fit(
            "[bold green]Outreach Engine Started[/bold green]\n"
            f"Triggers every {self.config.sweep.trigger_interval_seconds}s, "
            f"dispatch every {self.config.sweep.dispatch_interval_seconds}s\n"
            "Press Ctrl+C to stop",
            title="Status",
        ))

        await self.side_effects.start()
        await self.trigger_loop.start()
        await self.dispatch_loop.start()

        status_interval = 60 * 5
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=status_interval)
                except asyncio.TimeoutError:
                    console.print(self._create_status_table())
        except asyncio.CancelledError:
            console.print("\n[yellow]Shutdown requested...[/yellow]")
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        self.running = False
        console.print("[yellow]Shutting down...[/yellow]")

        await self.trigger_loop.stop()
        await self.dispatch_loop.stop()
        await self.side_effects.stop(drain=True)

        try:
            await self.repository.close()
            console.print("[green]Database connections closed[/green]")
        except Exception as e:
            console.print(f"[yellow]Warning: Error closing database pool: {e}[/yellow]")

        console.print(self._create_status_table())


# =============================================================================
# CLI
# =============================================================================


async def _open_repository(config: EngineConfig) -> PostgresRepository:
    pool = await get_pool(config.database_url, max_size=max(10, config.sweep.max_workers + 2))
    return PostgresRepository(pool)


def _summary_table(title: str, summary: dict) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key, value in summary.items():
        table.add_row(key.replace("_", " "), str(value))
    return table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outreach-engine",
        description="Multi-agent message scheduling and delivery engine",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run both sweeps until interrupted")
    run.add_argument("--dry-run", action="store_true", help="Print messages instead of sending")
    run.add_argument("--skip-migrations", action="store_true")

    dispatch = sub.add_parser("dispatch", help="Run one dispatch pass")
    dispatch.add_argument("--dry-run", action="store_true", help="Print messages instead of sending")

    sub.add_parser("trigger-sweep", help="Run one trigger pass")

    reset = sub.add_parser("reset-counters", help="Reset throttle counters now")
    reset.add_argument("--weekly", action="store_true", help="Also reset weekly counters")
    reset.add_argument("--no-daily", action="store_true", help="Leave daily counters alone")

    assign = sub.add_parser("assign-agent", help="Assign a product agent to a contact")
    assign.add_argument("contact_id")
    assign.add_argument("product_type")
    assign.add_argument("--days", type=int, default=None, help="Override lifetime in days")
    assign.add_argument("--context", default=None, help="Agent context as a JSON object")
    assign.add_argument("--introduce", action="store_true", help="Schedule an introduction message")
    assign.add_argument("--channel", choices=["sms", "email"], default="sms")

    requeue = sub.add_parser("requeue", help="Requeue a failed message as a new pending one")
    requeue.add_argument("message_id")

    sub.add_parser("migrate", help="Apply pending database migrations")
    sub.add_parser("status", help="Show configuration and the due backlog")
    return parser


async def _cmd_run(config: EngineConfig, args: argparse.Namespace) -> int:
    if not args.skip_migrations:
        await init_database(config.database_url)
    repository = await _open_repository(config)
    sender = ConsoleChannelSender(console) if args.dry_run else HttpChannelSender(config.integrations)
    daemon = EngineDaemon(config, repository, HttpComposer(config.integrations), sender)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    await daemon.run(stop_event)
    return 0


async def _cmd_trigger_sweep(config: EngineConfig, args: argparse.Namespace) -> int:
    repository = await _open_repository(config)
    try:
        evaluator = TriggerEvaluator(repository, HttpComposer(config.integrations), config=config)
        console.print(_summary_table("Trigger Pass", await evaluator.run_once()))
    finally:
        await repository.close()
    return 0


async def _cmd_dispatch(config: EngineConfig, args: argparse.Namespace) -> int:
    repository = await _open_repository(config)
    try:
        sender = ConsoleChannelSender(console) if args.dry_run else HttpChannelSender(config.integrations)
        embedder = HttpEmbedder(config.integrations)
        dispatcher = Dispatcher(
            repository, sender, config=config, embedder=embedder if embedder.enabled else None
        )
        console.print(_summary_table("Dispatch Pass", await dispatcher.run_once()))
    finally:
        await repository.close()
    return 0


async def _cmd_reset_counters(config: EngineConfig, args: argparse.Namespace) -> int:
    repository = await _open_repository(config)
    try:
        maintenance = CounterMaintenance(repository, config.sweep)
        result = await maintenance.reset_now(daily=not args.no_daily, weekly=args.weekly)
        console.print(f"[green]Counters reset:[/green] {result['daily']} daily, {result['weekly']} weekly")
    finally:
        await repository.close()
    return 0


async def _cmd_assign_agent(config: EngineConfig, args: argparse.Namespace) -> int:
    context = {}
    if args.context:
        try:
            context = json.loads(args.context)
        except json.JSONDecodeError as e:
            console.print(f"[red]--context is not valid JSON: {e}[/red]")
            return 2

    repository = await _open_repository(config)
    try:
        registry = AgentRegistry(repository, config, composer=HttpComposer(config.integrations))
        result = await registry.assign_agent(
            args.contact_id,
            args.product_type,
            context=context,
            days_active=args.days,
            send_introduction=args.introduce,
            channel=args.channel,
        )
        console.print(
            f"[green]✓[/green] Agent {result.agent.id} ({result.agent.product_type}) "
            f"active until {result.agent.expiration_date.date().isoformat()}"
        )
        if args.introduce:
            console.print(f"  Introduction: {result.introduction_status}")
    finally:
        await repository.close()
    return 0


async def _cmd_requeue(config: EngineConfig, args: argparse.Namespace) -> int:
    repository = await _open_repository(config)
    try:
        scheduler = Scheduler(repository, config.dispatch)
        message = await scheduler.requeue_failed(args.message_id)
        console.print(f"[green]✓[/green] Requeued as {message.id} (retry {message.retry_count})")
    finally:
        await repository.close()
    return 0


async def _cmd_migrate(config: EngineConfig, args: argparse.Namespace) -> int:
    applied = await run_migrations(config.database_url)
    console.print(f"[green]{applied} migration(s) applied[/green]")
    return 0


async def _cmd_status(config: EngineConfig, args: argparse.Namespace) -> int:
    table = Table(title="Outreach Engine Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Trigger interval", f"{config.sweep.trigger_interval_seconds}s")
    table.add_row("Dispatch interval", f"{config.sweep.dispatch_interval_seconds}s")
    table.add_row("Caps", f"{config.throttle.max_messages_per_day}/day, {config.throttle.max_messages_per_week}/week")
    table.add_row("Minimum gap", f"{config.throttle.min_hours_between_messages:g}h")
    table.add_row("Timezone", config.sweep.timezone)
    table.add_row("Composer", config.integrations.composer_url or "[red]not configured[/red]")
    table.add_row("SMS gateway", config.integrations.sms_gateway_url or "[red]not configured[/red]")
    table.add_row("Email gateway", config.integrations.email_gateway_url or "[red]not configured[/red]")

    repository = await _open_repository(config)
    try:
        due = await repository.fetch_due_messages(
            datetime.now(timezone.utc), config.dispatch.batch_size, config.dispatch.claim_lease_seconds
        )
        active = await repository.list_active_agents()
        table.add_row("Active agents", str(len(active)))
        table.add_row("Due messages", f"{len(due)}{'+' if len(due) >= config.dispatch.batch_size else ''}")
    finally:
        await repository.close()

    console.print(table)
    return 0


COMMANDS = {
    "run": _cmd_run,
    "trigger-sweep": _cmd_trigger_sweep,
    "dispatch": _cmd_dispatch,
    "reset-counters": _cmd_reset_counters,
    "assign-agent": _cmd_assign_agent,
    "requeue": _cmd_requeue,
    "migrate": _cmd_migrate,
    "status": _cmd_status,
}


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args.config)
        return await COMMANDS[args.command](config, args)
    except KeyboardInterrupt:
        return 130
    except EngineError as e:
        console.print(f"[red bold]{e}[/red bold]")
        return 1


def cli() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
