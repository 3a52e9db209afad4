"""CLI interface for listing-watcher."""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from listing_watcher import __version__
from listing_watcher.config import WatcherSettings, load_settings
from listing_watcher.database.engine import get_session, get_session_factory, init_db
from listing_watcher.errors import ConfigNotFoundError
from listing_watcher.models.pydantic_models import DevicePlatform, SearchConfigCreate
from listing_watcher.services.credential_store import CredentialStore, load_fernet
from listing_watcher.services.listing_service import ListingNotFoundError, ListingService
from listing_watcher.services.notification_service import (
    NotificationNotFoundError,
    NotificationService,
)
from listing_watcher.services.search_config_service import SearchConfigService, ServiceNotFoundError
from listing_watcher.worker import create_scheduler

app = typer.Typer(
    name="listing-watcher",
    help="Marketplace listing watcher: scheduled searches, dedup and push notifications",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)


def output_json(data: Any) -> None:
    """Output JSON to stdout."""
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def configure_logging(level: str) -> None:
    """Route all logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"listing-watcher version {__version__}")
        raise typer.Exit()


def _load_settings_or_exit(config: Path | None) -> WatcherSettings:
    try:
        return load_settings(config)
    except (FileNotFoundError, ValidationError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1) from e


def _parse_filters(values: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; repeated keys collect into a list."""
    filters: dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {item!r}", param_hint="--filter")
        if key in filters:
            existing = filters[key]
            filters[key] = [*existing, value] if isinstance(existing, list) else [existing, value]
        else:
            filters[key] = value
    return filters


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        envvar="WATCHER_LOG_LEVEL",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Marketplace listing watcher."""
    configure_logging(log_level)


# ========== WORKER ==========


@app.command(name="init-db")
def init_database(
    db_path: Path | None = typer.Option(
        None,
        "--db",
        "-d",
        help="Path to SQLite database file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Show SQL statements.",
    ),
) -> None:
    """Initialize the database, creating all tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")

    try:
        engine = init_db(db_path, echo=verbose)
        console.print(f"[green]Database initialized at: {engine.url}[/green]")
    except Exception as e:
        console.print(f"[red]Error initializing database: {e}[/red]")
        raise typer.Exit(1) from e


async def _run_worker(settings: WatcherSettings) -> None:
    scheduler = create_scheduler(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await scheduler.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutdown requested, draining runs")
        await scheduler.stop()


@app.command()
def worker(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to watcher YAML config.",
    ),
) -> None:
    """Run the scheduler until SIGINT or SIGTERM."""
    settings = _load_settings_or_exit(config)
    init_db()
    console.print("[bold blue]Starting worker[/bold blue] (Ctrl+C to stop)")
    asyncio.run(_run_worker(settings))
    console.print("[green]Worker stopped[/green]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
) -> None:
    """Run the worker behind the HTTP health and scheduling API."""
    import uvicorn

    init_db()
    uvicorn.run("listing_watcher.api.main:app", host=host, port=port, log_config=None)


async def _run_once(config_id: int, settings: WatcherSettings) -> dict[str, Any]:
    scheduler = create_scheduler(settings)
    try:
        result = await scheduler.run_once(config_id)
    finally:
        await scheduler.stop()
    return result.model_dump()


@app.command(name="run-once")
def run_once(
    config_id: int = typer.Argument(..., help="Search config ID."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to watcher YAML config."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Run one saved search now and record the outcome."""
    settings = _load_settings_or_exit(config)
    init_db()

    try:
        result = asyncio.run(_run_once(config_id, settings))
    except ConfigNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e

    if json_output:
        output_json(result)
    elif result["success"]:
        console.print("[green]Run complete[/green]")
        console.print(f"  Records found: {result['records_found']}")
        console.print(f"  New listings: {result['new_listings']}")
        console.print(f"  Notifications: {result['notifications_created']}")
    else:
        console.print(f"[red]Run failed ({result['error_kind']}): {result['error_message']}[/red]")

    if not result["success"]:
        raise typer.Exit(1)


# ========== SERVICES, CREDENTIALS, CONFIGS ==========


@app.command(name="add-service")
def add_service(
    name: str = typer.Argument(..., help="Unique service name, e.g. OLX.pl"),
    base_url: str = typer.Argument(..., help="Base URL, e.g. https://www.olx.pl"),
    login_flow: str = typer.Argument(..., help="Scrape strategy key, e.g. olx"),
) -> None:
    """Register a marketplace service."""
    init_db()
    with get_session() as session:
        try:
            service_id = SearchConfigService(session).create_service(name, base_url, login_flow)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    console.print(f"[green]Service {name} created with ID {service_id}[/green]")


@app.command(name="add-credential")
def add_credential(
    user_id: int = typer.Argument(..., help="Owner user ID."),
    service_id: int = typer.Argument(..., help="Service ID."),
    username: str = typer.Option(..., "--username", "-u", prompt=True),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
) -> None:
    """Store an encrypted login for a user on a service."""
    init_db()
    try:
        store = CredentialStore(get_session_factory(), load_fernet())
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e

    credential_id = store.save_credential(user_id, service_id, username, password)
    console.print(f"[green]Credential {credential_id} saved[/green]")


@app.command(name="add-config")
def add_config(
    user_id: int = typer.Option(..., "--user", help="Owner user ID."),
    service_id: int = typer.Option(..., "--service", help="Service ID."),
    name: str = typer.Option(..., "--name", help="Search name."),
    keywords: list[str] = typer.Option([], "--keyword", "-k", help="Search keyword (repeatable)."),
    price_min: int | None = typer.Option(None, "--price-min"),
    price_max: int | None = typer.Option(None, "--price-max"),
    location: str | None = typer.Option(None, "--location"),
    filters: list[str] = typer.Option([], "--filter", "-f", help="Custom filter key=value (repeatable)."),
    interval: int = typer.Option(300, "--interval", help="Seconds between runs (30-86400)."),
    jitter: int = typer.Option(60, "--jitter", help="Random extra seconds per run (0-300)."),
    disabled: bool = typer.Option(False, "--disabled", help="Create the search disabled."),
) -> None:
    """Create a saved search."""
    try:
        data = SearchConfigCreate(
            user_id=user_id,
            service_id=service_id,
            name=name,
            keywords=keywords,
            price_min=price_min,
            price_max=price_max,
            location=location,
            custom_filters=_parse_filters(filters),
            interval_seconds=interval,
            random_range_seconds=jitter,
            enabled=not disabled,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid search config: {e}[/red]")
        raise typer.Exit(1) from e

    init_db()
    with get_session() as session:
        try:
            created = SearchConfigService(session).create_config(data)
        except ServiceNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    console.print(f"[green]Search config {created.id} created[/green]")


@app.command(name="toggle-config")
def toggle_config(
    config_id: int = typer.Argument(..., help="Search config ID."),
) -> None:
    """Enable or disable a saved search. Re-enabling clears auto-disable."""
    init_db()
    with get_session() as session:
        try:
            config = SearchConfigService(session).toggle_config(config_id)
        except ConfigNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    state = "enabled" if config.enabled else "disabled"
    console.print(f"[green]Search config {config_id} {state}[/green]")


@app.command()
def configs(
    user_id: int | None = typer.Option(None, "--user", help="Filter by owner."),
    enabled_only: bool = typer.Option(False, "--enabled", help="Only enabled searches."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List saved searches with their schedule state."""
    init_db()
    with get_session() as session:
        rows = SearchConfigService(session).get_configs(user_id=user_id, enabled_only=enabled_only)

    if json_output:
        output_json([row.model_dump(mode="json") for row in rows])
        return
    if not rows:
        console.print("[yellow]No search configs found.[/yellow]")
        return

    table = Table(title=f"Search configs ({len(rows)})")
    table.add_column("ID", style="dim", width=5)
    table.add_column("User", width=6)
    table.add_column("Name", max_width=30)
    table.add_column("Every", justify="right")
    table.add_column("Enabled")
    table.add_column("Failures", justify="right")
    table.add_column("Next run")
    table.add_column("Last error", max_width=40)

    for row in rows:
        enabled = "[green]yes[/green]" if row.enabled else "[red]no[/red]"
        if row.needs_attention:
            enabled += " [yellow]![/yellow]"
        table.add_row(
            str(row.id),
            str(row.user_id),
            row.name,
            f"{row.interval_seconds}s+{row.random_range_seconds}",
            enabled,
            str(row.consecutive_failure_count),
            row.next_run_at.strftime("%Y-%m-%d %H:%M:%S") if row.next_run_at else "-",
            row.last_error or "",
        )

    console.print(table)


# ========== LISTINGS & NOTIFICATIONS ==========


@app.command()
def listings(
    user_id: int = typer.Argument(..., help="User ID."),
    include_spam: bool = typer.Option(False, "--include-spam", help="Include listings marked spam."),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of listings."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List listings a user was notified about."""
    init_db()
    with get_session() as session:
        rows = ListingService(session).get_listings(user_id, include_spam=include_spam, limit=limit)

    if json_output:
        output_json([row.model_dump(mode="json") for row in rows])
        return
    if not rows:
        console.print("[yellow]No listings found.[/yellow]")
        return

    table = Table(title=f"Listings for user {user_id}")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Title", max_width=45)
    table.add_column("Price", justify="right")
    table.add_column("Location", max_width=20)
    table.add_column("Phone")
    table.add_column("Flags")

    for row in rows:
        flags = " ".join(
            flag for flag, on in (("spam", row.is_spam), ("success", row.is_success)) if on
        )
        table.add_row(
            str(row.id),
            row.title,
            f"{row.price:,} {row.currency}" if row.price is not None else "-",
            row.location or "-",
            row.phone or "-",
            flags,
        )

    console.print(table)


@app.command(name="mark-listing")
def mark_listing(
    listing_id: int = typer.Argument(..., help="Listing ID."),
    spam: bool | None = typer.Option(None, "--spam/--not-spam", help="Set the spam flag."),
    success: bool | None = typer.Option(None, "--success/--not-success", help="Set the success flag."),
) -> None:
    """Set moderation flags on a listing."""
    if spam is None and success is None:
        console.print("[red]Pass --spam/--not-spam or --success/--not-success[/red]")
        raise typer.Exit(1)

    init_db()
    with get_session() as session:
        service = ListingService(session)
        try:
            if spam is not None:
                service.mark_spam(listing_id, spam)
            if success is not None:
                service.mark_success(listing_id, success)
        except ListingNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    console.print(f"[green]Listing {listing_id} updated[/green]")


@app.command()
def notifications(
    user_id: int = typer.Argument(..., help="User ID."),
    unread: bool = typer.Option(False, "--unread", help="Only unread notifications."),
    mark_all_read: bool = typer.Option(False, "--mark-all-read", help="Mark all as read."),
    limit: int = typer.Option(20, "--limit", "-l"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show a user's notifications."""
    init_db()
    with get_session() as session:
        service = NotificationService(session)
        if mark_all_read:
            changed = service.mark_all_read(user_id)
            console.print(f"[green]{changed} notifications marked read[/green]")
            return
        rows = service.get_notifications(user_id, unread_only=unread, limit=limit)
        unread_count = service.unread_count(user_id)

    if json_output:
        output_json({
            "unread": unread_count,
            "notifications": [row.model_dump(mode="json") for row in rows],
        })
        return

    table = Table(title=f"Notifications for user {user_id} ({unread_count} unread)")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Listing", width=8)
    table.add_column("Status")
    table.add_column("Title", max_width=30)
    table.add_column("Body", max_width=45)
    table.add_column("Created")

    for row in rows:
        table.add_row(
            str(row.id),
            str(row.listing_id),
            row.status.value,
            str(row.payload.get("title", "")),
            str(row.payload.get("body", "")),
            row.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command(name="mark-read")
def mark_read(
    notification_id: int = typer.Argument(..., help="Notification ID."),
    user_id: int = typer.Option(..., "--user", help="Owner user ID."),
) -> None:
    """Mark one notification as read."""
    init_db()
    with get_session() as session:
        try:
            NotificationService(session).mark_read(notification_id, user_id)
        except NotificationNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    console.print(f"[green]Notification {notification_id} marked read[/green]")


# ========== DEVICES ==========


@app.command()
def devices(
    user_id: int = typer.Argument(..., help="User ID."),
    include_inactive: bool = typer.Option(False, "--all", help="Include deactivated devices."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List a user's push devices."""
    init_db()
    with get_session() as session:
        rows = NotificationService(session).get_devices(user_id, active_only=not include_inactive)

    if json_output:
        output_json([row.model_dump(mode="json") for row in rows])
        return

    table = Table(title=f"Devices for user {user_id}")
    table.add_column("ID", style="dim", width=5)
    table.add_column("Platform")
    table.add_column("Token", max_width=24)
    table.add_column("Active")
    for row in rows:
        table.add_row(
            str(row.id),
            row.platform.value,
            f"{row.token[:20]}...",
            "[green]yes[/green]" if row.is_active else "[red]no[/red]",
        )
    console.print(table)


@app.command(name="register-device")
def register_device(
    user_id: int = typer.Argument(..., help="User ID."),
    token: str = typer.Argument(..., help="Push token."),
    platform: DevicePlatform = typer.Option(DevicePlatform.ANDROID, "--platform", help="Device platform."),
) -> None:
    """Register (or re-activate) a push token."""
    init_db()
    with get_session() as session:
        device = NotificationService(session).register_device(user_id, token, platform)
    console.print(f"[green]Device {device.id} registered[/green]")


@app.command(name="unregister-device")
def unregister_device(
    user_id: int = typer.Argument(..., help="User ID."),
    token: str = typer.Argument(..., help="Push token."),
) -> None:
    """Deactivate a push token."""
    init_db()
    with get_session() as session:
        removed = NotificationService(session).unregister_device(user_id, token)
    if not removed:
        console.print("[yellow]No active device with that token[/yellow]")
        raise typer.Exit(1)
    console.print("[green]Device unregistered[/green]")


if __name__ == "__main__":
    app()
