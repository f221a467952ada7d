"""Command-line interface for InboxPilot.

Provides commands for configuration validation, database setup, the HTTP
server, and one-off operations against a connected account.

Usage:
    python -m inboxpilot validate-config
    python -m inboxpilot init-db
    python -m inboxpilot serve --port 8000
    python -m inboxpilot process-message --account me@example.com --message-id 18c2...
    python -m inboxpilot list-accounts
    python -m inboxpilot list-rules --account me@example.com
    python -m inboxpilot cancel-scheduled --account me@example.com --message-id 18c2...
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click
from rich.console import Console
from rich.table import Table

from inboxpilot.config import validate_config_file
from inboxpilot.core.logging import configure_logging

if TYPE_CHECKING:
    from inboxpilot.db.store import EmailAccount
    from inboxpilot.engine.context import Services

console = Console()

T = TypeVar("T")


async def _init_services() -> Services:
    """Load config and build services, exiting with a readable error on failure."""
    from inboxpilot.config import get_config
    from inboxpilot.core.errors import ConfigLoadError, ConfigValidationError
    from inboxpilot.engine.context import create_services

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and fill it in."
        )
        sys.exit(1)

    return await create_services(config)


async def _load_account(services: Services, email: str) -> EmailAccount:
    account = await services.store.get_email_account_by_email(email.lower())
    if account is None:
        console.print(f"[red]No connected account for[/red] {email}")
        sys.exit(1)
    return account


def _run(operation: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body with the CLI's error conventions."""
    try:
        return asyncio.run(operation())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """InboxPilot - AI rules for Gmail and Outlook."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and its tables."""

    async def _init() -> str:
        services = await _init_services()
        await services.close()
        return services.config.database.path

    path = _run(_init)
    console.print(f"[green]✓[/green] Database ready at [cyan]{path}[/cyan]")


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the webhook and API server."""
    import uvicorn

    from inboxpilot.config import get_config
    from inboxpilot.web.app import create_app

    logging_config = get_config().logging
    configure_logging(log_level=logging_config.level, json_output=logging_config.json_output)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("process-message")
@click.option("--account", "account_email", required=True, help="Connected account email")
@click.option("--message-id", required=True, help="Provider message id")
@click.option(
    "--execute/--plan-only",
    default=True,
    help="Run actions of automated rules, or only record the decision",
)
@click.option("--force", is_flag=True, help="Execute even if the rule is not automated")
def process_message(account_email: str, message_id: str, execute: bool, force: bool) -> None:
    """Run the rules against one message and print the outcome."""
    from inboxpilot.engine.run_rules import run_rules

    async def _process():
        services = await _init_services()
        try:
            account = await _load_account(services, account_email)
            rules = await services.store.list_rules(account.id, enabled_only=True)
            provider = await services.provider_for(account)
            message = await provider.get_message(message_id)
            return await run_rules(
                services=services,
                provider=provider,
                account=account,
                message=message,
                rules=rules,
                allow_execute=execute,
                force_execute=force,
            )
        finally:
            await services.close()

    result = _run(_process)

    console.print("\n[bold]Result[/bold]")
    console.print(f"  Rule:    {result.rule.name if result.rule else '-'}")
    console.print(f"  Status:  {result.status}")
    console.print(f"  Reason:  {result.reason or '-'}")
    if result.scheduled:
        console.print(f"  Scheduled actions: {len(result.scheduled)}")
    if result.requires_more_information:
        console.print("  [yellow]The model asked for more information to decide.[/yellow]")


@cli.command("list-accounts")
def list_accounts() -> None:
    """Show the connected mail accounts."""

    async def _list():
        services = await _init_services()
        try:
            return await services.store.list_email_accounts()
        finally:
            await services.close()

    accounts = _run(_list)
    if not accounts:
        console.print("[yellow]No connected accounts.[/yellow]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("ID", justify="right")
    table.add_column("Email", style="cyan")
    table.add_column("Provider")
    table.add_column("Tier")
    table.add_column("Watching")
    for account in accounts:
        table.add_row(
            str(account.id),
            account.email,
            account.provider,
            account.premium_tier or "-",
            "yes" if account.watch_subscription_id else "no",
        )
    console.print(table)


@cli.command("list-rules")
@click.option("--account", "account_email", required=True, help="Connected account email")
def list_rules(account_email: str) -> None:
    """Show the rules of an account in evaluation order."""

    async def _list():
        services = await _init_services()
        try:
            account = await _load_account(services, account_email)
            return await services.store.list_rules(account.id)
        finally:
            await services.close()

    rules = _run(_list)
    if not rules:
        console.print("[yellow]No rules configured.[/yellow]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Enabled")
    table.add_column("Automate")
    table.add_column("Actions")
    for rule in rules:
        table.add_row(
            str(rule.id),
            rule.name,
            "yes" if rule.enabled else "no",
            "yes" if rule.automate else "no",
            ", ".join(
                f"{a.type}" + (f" (+{a.delay_in_minutes}m)" if a.delay_in_minutes else "")
                for a in rule.actions
            ),
        )
    console.print(table)


@cli.command("cancel-scheduled")
@click.option("--account", "account_email", required=True, help="Connected account email")
@click.option("--message-id", required=True, help="Provider message id")
@click.option("--reason", default="Cancelled from CLI", help="Reason stored on the cancelled rows")
def cancel_scheduled(account_email: str, message_id: str, reason: str) -> None:
    """Cancel the pending delayed actions of a message."""
    from inboxpilot.scheduling.scheduler import cancel_scheduled_actions

    async def _cancel() -> int:
        services = await _init_services()
        try:
            account = await _load_account(services, account_email)
            return await cancel_scheduled_actions(
                services.store, services.queue, account.id, message_id, reason=reason
            )
        finally:
            await services.close()

    count = _run(_cancel)
    console.print(f"[green]✓[/green] Cancelled {count} scheduled action(s)")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
