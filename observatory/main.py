"""Entry point for the Observatory monitoring service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from observatory.config import Settings
from observatory.health.engine import execute_check
from observatory.health.models import CheckOutcome, Status, TargetDescriptor, probe_to_dict
from observatory.targets.registry import TargetConfigError, TargetRegistry

console = Console()

STATUS_STYLES = {
    Status.HEALTHY: "green",
    Status.DEGRADED: "yellow",
    Status.UNHEALTHY: "red",
}


def _load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line flags layered on top."""
    overrides: dict[str, Any] = {
        "targets_file": getattr(args, "targets", None),
        "database": getattr(args, "database", None),
        "api_port": getattr(args, "port", None),
        "api_host": getattr(args, "address", None),
        "observation_retention_days": getattr(args, "observation_retention_duration", None),
        "observation_retention_check_interval": getattr(
            args, "observation_retention_check_interval", None,
        ),
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def _load_targets(settings: Settings) -> list[TargetDescriptor]:
    try:
        return TargetRegistry(settings.targets_file).load()
    except TargetConfigError as e:
        console.print(f"[red]Invalid target file: {e}[/red]")
        sys.exit(1)


def run_server(settings: Settings) -> None:
    """Start the FastAPI server."""
    from observatory.api.server import create_app

    targets = _load_targets(settings)
    console.print(Panel(
        f"Starting Observatory on {settings.api_host}:{settings.api_port} "
        f"({len(targets)} targets)",
        style="bold green",
    ))
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


def show_targets(settings: Settings) -> None:
    """Validate the target file and list what it declares."""
    targets = _load_targets(settings)

    table = Table(title=f"Targets ({settings.targets_file or 'none configured'})")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Probe")
    table.add_column("Interval", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Timeout", justify="right")
    for t in targets:
        probe = probe_to_dict(t.probe)
        kind = probe.pop("type")
        table.add_row(
            t.id, t.name, f"{kind} {next(iter(probe.values()))}",
            f"{t.interval}s", str(t.retries), f"{t.timeout}s",
        )
    console.print(table)


async def _check_all(targets: list[TargetDescriptor]) -> list[CheckOutcome]:
    async def one(target: TargetDescriptor) -> CheckOutcome:
        try:
            return await asyncio.wait_for(execute_check(target.probe), target.timeout)
        except asyncio.TimeoutError:
            return CheckOutcome(Status.UNHEALTHY, "Timeout")

    return await asyncio.gather(*(one(t) for t in targets))


def run_checks(settings: Settings) -> None:
    """Probe every target once and print the outcomes. Nothing is stored."""
    targets = _load_targets(settings)
    if not targets:
        console.print("[yellow]No targets configured[/yellow]")
        return

    with console.status("[bold green]Probing targets..."):
        outcomes = asyncio.run(_check_all(targets))

    table = Table(title="Check results")
    table.add_column("ID", style="bold")
    table.add_column("Status")
    table.add_column("Description", overflow="fold")
    for target, outcome in zip(targets, outcomes):
        style = STATUS_STYLES[outcome.status]
        table.add_row(
            target.id, f"[{style}]{outcome.status.value}[/{style}]", outcome.description.strip(),
        )
    console.print(table)


def _add_targets_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-t", "--targets", help="Target file (YAML or JSON)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Observatory — service monitoring")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Start monitoring and the API server")
    _add_targets_arg(serve)
    serve.add_argument("-d", "--database", help="SQLite database path")
    serve.add_argument("-p", "--port", type=int, help="API port")
    serve.add_argument("-a", "--address", help="API bind address")
    serve.add_argument(
        "--observation-retention-duration", type=float,
        help="Days to keep observations",
    )
    serve.add_argument(
        "--observation-retention-check-interval", type=float,
        help="Seconds between retention sweeps",
    )

    _add_targets_arg(sub.add_parser("targets", help="Validate and list targets"))
    _add_targets_arg(sub.add_parser("check", help="Probe every target once"))

    args = parser.parse_args()
    settings = _load_settings(args)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if args.command == "serve":
        run_server(settings)
    elif args.command == "targets":
        show_targets(settings)
    elif args.command == "check":
        run_checks(settings)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
