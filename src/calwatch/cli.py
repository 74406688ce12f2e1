"""CLI for calwatch: run the webhook server and scheduler."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calwatch import __version__
from calwatch.config import DEFAULT_CONFIG_FILENAME, CalwatchConfig, ConfigError, load_config
from calwatch.core.logging import configure_logging
from calwatch.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    show_default=True,
    help="Path to calwatch.toml (or a directory containing it)",
)


def _load_or_exit(config_path: Path) -> CalwatchConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


def _configure(config: CalwatchConfig) -> None:
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    init_telemetry("calwatch")


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Calwatch: Google Calendar notifications for chat users."""


@cli.command()
@_config_option
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8080, show_default=True, help="Bind port")
def serve(config_path: Path, host: str, port: int) -> None:
    """Run the HTTP server with the notification scheduler."""
    config = _load_or_exit(config_path)
    _configure(config)
    click.echo(f"Starting calwatch on {host}:{port}")
    asyncio.run(_serve(config, host, port))


async def _serve(config: CalwatchConfig, host: str, port: int) -> None:
    import uvicorn

    from calwatch.api.app import create_app
    from calwatch.engine import CalendarSyncEngine

    engine = await CalendarSyncEngine.from_config(config)
    app = create_app(engine)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
    await server.serve()


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Load the config and print a summary."""
    config = _load_or_exit(config_path)
    scheduler = config.scheduler
    click.echo(f"site_url:        {config.site_url}")
    click.echo(f"bot_username:    {config.bot_username}")
    click.echo(f"oauth client_id: {config.oauth.client_id}")
    click.echo(f"store:           {config.store.backend}")
    click.echo(f"sink:            {config.sink.backend}")
    click.echo(
        "scheduler:       "
        f"tick={scheduler.tick_period_seconds}s "
        f"lead={scheduler.notify_lead_minutes}m "
        f"renewal_margin={scheduler.renewal_margin_seconds}s "
        f"token_margin={scheduler.token_expiry_margin_seconds}s "
        f"window={scheduler.fetch_window_minutes}m "
        f"window_refresh={scheduler.window_refresh_minutes}m "
        f"sync_on_tick={str(scheduler.sync_on_tick).lower()}"
    )
    click.echo(f"logging:         {config.logging.level} ({config.logging.format})")


@cli.command()
@_config_option
def tick(config_path: Path) -> None:
    """Run exactly one scheduler tick and report per-user results."""
    config = _load_or_exit(config_path)
    _configure(config)
    failed = asyncio.run(_tick_once(config))
    sys.exit(1 if failed else 0)


async def _tick_once(config: CalwatchConfig) -> bool:
    from calwatch.engine import CalendarSyncEngine

    engine = await CalendarSyncEngine.from_config(config)
    try:
        results = await engine.tick()
    finally:
        await engine.aclose()

    if not results:
        click.echo("No connected users")
    for result in results:
        status = result.error or "ok"
        notified = ", ".join(result.notified_event_ids) or "-"
        watch = result.watch_action or "-"
        click.echo(f"{result.user_id:<30} {status:<20} notified={notified} watch={watch}")
    return any(result.error for result in results)
