"""CLI for the Fastmail calendar server."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from fastmail_calendar.calendar.operations import CalendarOperations, OperationResult
from fastmail_calendar.calendar.providers import build_provider
from fastmail_calendar.config import DEFAULT_CONFIG_PATH, AppConfig, ConfigError, load_config
from fastmail_calendar.core.logging import configure_logging
from fastmail_calendar.core.telemetry import init_telemetry
from fastmail_calendar.server import SERVER_NAME, run_server

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the calendar TOML config",
)


def _load(config_path: Path) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
        protocol=config.calendar.protocol.value,
    )
    return config


def _run_operation(
    config: AppConfig,
    call: Callable[[CalendarOperations], Awaitable[OperationResult]],
) -> OperationResult:
    async def _main() -> OperationResult:
        provider = build_provider(config.calendar)
        try:
            return await call(CalendarOperations(provider, time_zone=config.calendar.timezone))
        finally:
            await provider.shutdown()

    return asyncio.run(_main())


def _exit_on_error(result: OperationResult) -> Any:
    if not result.ok:
        click.echo(f"Error ({result.error_type}): {result.error}", err=True)
        sys.exit(1)
    return result.data


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Fastmail calendar tools for agents, over CalDAV or JMAP."""


@cli.command()
@_config_option
def serve(config_path: Path) -> None:
    """Run the MCP server on stdio."""
    config = _load(config_path)
    init_telemetry(SERVER_NAME)
    asyncio.run(run_server(config))


@cli.command()
@_config_option
def check(config_path: Path) -> None:
    """Verify credentials by connecting and listing calendars."""
    config = _load(config_path)
    data = _exit_on_error(_run_operation(config, lambda ops: ops.check_connection()))
    click.echo(f"Protocol: {data['protocol']}")
    click.echo(f"Endpoint: {data['endpoint']}")
    click.echo(f"Calendars: {data['calendar_count']}")


@cli.command()
@_config_option
def calendars(config_path: Path) -> None:
    """List the calendars on the account."""
    config = _load(config_path)
    data = _exit_on_error(_run_operation(config, lambda ops: ops.list_calendars()))
    if not data:
        click.echo("No calendars found.")
        return

    click.echo(f"{'Name':<30} {'Writable':<10} {'ID'}")
    click.echo("-" * 80)
    for calendar in data:
        writable = "yes" if calendar["writable"] else "no"
        click.echo(f"{calendar['name']:<30} {writable:<10} {calendar['id']}")


@cli.command("free-slots")
@_config_option
@click.option("--after", required=True, help="Window start (ISO-8601)")
@click.option("--before", required=True, help="Window end (ISO-8601)")
@click.option("--min-duration", default="PT30M", show_default=True, help="ISO-8601 duration")
@click.option("--calendar-id", default=None, help="Restrict to one calendar")
def free_slots(
    config_path: Path,
    after: str,
    before: str,
    min_duration: str,
    calendar_id: str | None,
) -> None:
    """Print free time slots within a window."""
    config = _load(config_path)
    data = _exit_on_error(
        _run_operation(
            config,
            lambda ops: ops.find_free_slots(
                after=after,
                before=before,
                min_duration=min_duration,
                calendar_id=calendar_id,
            ),
        )
    )
    if not data:
        click.echo("No free slots found.")
        return

    for slot in data:
        minutes = slot["duration_minutes"]
        click.echo(f"{slot['start_local']} -> {slot['end_local']}  ({minutes} min)")
