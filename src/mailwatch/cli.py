"""Command line entry points for mailwatch."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .configuration.settings import (
    ConfigurationError,
    InstanceSettings,
    Settings,
    describe_settings,
    load_settings,
    resolve_config_path,
)
from .forwarding.discord import DiscordWebhookChannel
from .parsing.email_parser import MailParser
from .watcher.group import WatcherGroup
from .watcher.mailbox_watcher import NewMessageHandler


logger = logging.getLogger(__name__)

console = Console()
error_console = Console(stderr=True)

cli = typer.Typer(help="Watch IMAP mailboxes and forward new mail to webhooks")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        error_console.print(f"Error: unknown log level '{level_name}'")
        raise typer.Exit(1)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # imapclient logs protocol traffic at DEBUG, including credentials
    logging.getLogger("imapclient").setLevel(max(level, logging.WARNING))


def _load_or_exit(config: Optional[Path], *, json_output: bool = False) -> Settings:
    try:
        return load_settings(config)
    except ConfigurationError as exc:
        if json_output:
            print(json.dumps({"error": str(exc)}))
        else:
            error_console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1)


@cli.command("run")
def run(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: $MAILWATCH_CONFIG or ./env-config.json)"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Logging level"),
) -> None:
    """Watch every configured mailbox until interrupted.

    Examples:
        mailwatch run
        mailwatch run --config /etc/mailwatch.json --log-level DEBUG
    """
    _configure_logging(log_level)
    settings = _load_or_exit(config)

    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, watchers stopped[/yellow]")


async def _serve(settings: Settings) -> None:
    channels: List[DiscordWebhookChannel] = []

    def _handler_for(instance: InstanceSettings) -> NewMessageHandler:
        channel = DiscordWebhookChannel(instance.webhook_url)
        channels.append(channel)
        return channel

    group = WatcherGroup.from_settings(
        settings,
        decoder=MailParser(),
        handler_factory=_handler_for,
    )

    loop = asyncio.get_running_loop()
    sigterm_installed = False
    try:
        loop.add_signal_handler(signal.SIGTERM, lambda: loop.create_task(group.stop()))
        sigterm_installed = True
    except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
        logger.debug("SIGTERM handler not supported on this platform")

    try:
        await group.run_forever()
    finally:
        if sigterm_installed:
            loop.remove_signal_handler(signal.SIGTERM)
        await group.stop()
        for channel in channels:
            await channel.aclose()


@cli.command("check-config")
def check_config(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Validate the configuration and list what would be watched."""
    settings = _load_or_exit(config, json_output=json_output)

    if json_output:
        print(json.dumps(describe_settings(settings), indent=2))
        return

    table = Table(title=f"mailwatch configuration ({resolve_config_path(config)})")
    table.add_column("Account", style="cyan")
    table.add_column("Server")
    table.add_column("TLS")
    table.add_column("Mailboxes")
    table.add_column("Webhook")

    described = describe_settings(settings)
    for instance, masked in zip(settings.instances, described["instances"]):
        account = instance.account
        mailboxes = ", ".join(f"{role.value}={folder}" for role, folder in instance.mailboxes.items())
        table.add_row(
            account.user,
            f"{account.host}:{account.port}",
            "yes" if account.secure else "[red]no[/red]",
            mailboxes,
            masked["webhook_url"],
        )

    console.print(table)
    reconnect = settings.reconnect
    console.print(
        f"Reconnect backoff: +{reconnect.increment_seconds:g}s per attempt, "
        f"max {reconnect.max_delay_seconds:g}s"
    )


__all__ = ["cli"]
