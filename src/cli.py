"""
Command-line interface for room-notifier.

Provides commands to run the polling service, initialize the database,
manage room subscriptions, and run diagnostic checks.

Usage:
    room-notifier run           # Poll all source kinds until stopped
    room-notifier run-once      # Run one cycle per source kind
    room-notifier init-db       # Initialize database
    room-notifier health        # Check service health
    room-notifier subscriptions list '!room:example.org' --kind feed
"""

import asyncio
import signal
import sys

import click

from src.config.settings import get_settings
from src.observability.logging import setup_logging
from src.observability.metrics import get_metrics
from src.subscriptions.schemas import SourceKind

KIND_CHOICE = click.Choice([kind.value for kind in SourceKind])


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Room Notifier - GitHub and RSS/Atom notifications for chat rooms."""
    setup_logging("DEBUG" if debug else None)


@main.command()
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def run(metrics: bool, metrics_port: int | None) -> None:
    """Run the notifier service until interrupted."""
    from src.services.notifier_service import NotifierService, TransportNotConfiguredError

    async def run_service():
        try:
            service = NotifierService()
        except TransportNotConfiguredError as e:
            click.echo(click.style(str(e), fg="red"), err=True)
            sys.exit(1)

        if metrics:
            get_metrics().start_server(port=metrics_port)

        # Handle shutdown signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

        await service.start()

    asyncio.run(run_service())


@main.command("run-once")
def run_once() -> None:
    """Run one poll cycle for every source kind and print the reports."""
    from src.services.notifier_service import NotifierService, TransportNotConfiguredError

    async def run_cycles():
        try:
            service = NotifierService()
        except TransportNotConfiguredError as e:
            click.echo(click.style(str(e), fg="red"), err=True)
            sys.exit(1)
        reports = await service.run_once()

        click.echo("\nPoll Results:")
        click.echo("-" * 40)
        for report in reports:
            if report.error is not None:
                click.echo(click.style(f"  {report.kind:8s} FAILED: {report.error}", fg="red"))
                continue
            click.echo(
                f"  {report.kind:8s} subscriptions={report.subscriptions} "
                f"polled={report.polled} delivered={report.items_delivered} "
                f"removed={report.removed} skipped={report.skipped_rate_limited}"
            )
            failures = report.fetch_errors + report.auth_failures + report.dispatch_failures
            if failures:
                click.echo(click.style(
                    f"           fetch_errors={report.fetch_errors} "
                    f"auth_failures={report.auth_failures} "
                    f"dispatch_failures={report.dispatch_failures}",
                    fg="yellow",
                ))
        click.echo("-" * 40)

        if any(report.error is not None for report in reports):
            sys.exit(1)

    asyncio.run(run_cycles())


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from src.storage.database import Database
    from src.subscriptions.repository import SubscriptionRepository

    async def run_init():
        db = Database()
        await db.connect()

        try:
            repo = SubscriptionRepository(db)
            await repo.create_table()
            click.echo("Database initialized successfully")
        finally:
            await db.close()

    asyncio.run(run_init())


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}

        # Check PostgreSQL
        try:
            from src.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            await db.close()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        settings = get_settings()
        results["matrix_configured"] = settings.matrix_configured

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))

        click.echo("-" * 40)

        if results["postgres"] and results["matrix_configured"]:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


# ── subscriptions ────────────────────────────────────────


def _run_with_service(command):
    """Run ``command(service)`` against a connected SubscriptionService."""
    from src.polling.kinds import build_kind_specs
    from src.storage.database import Database
    from src.subscriptions.repository import SubscriptionRepository
    from src.subscriptions.service import SubscriptionService

    async def run_command():
        db = Database()
        await db.connect()

        try:
            specs = build_kind_specs(get_settings())
            service = SubscriptionService(
                SubscriptionRepository(db),
                {kind: spec.client_factory for kind, spec in specs.items()},
            )
            return await command(service)
        finally:
            await db.close()

    return asyncio.run(run_command())


@main.group()
def subscriptions() -> None:
    """Room subscription management commands."""


@subscriptions.command("list")
@click.argument("room_id")
@click.option("--kind", type=KIND_CHOICE, default=None, help="Only list one source kind")
def subscriptions_list(room_id: str, kind: str | None) -> None:
    """List a room's subscriptions.

    Example:
        room-notifier subscriptions list '!abc:matrix.org' --kind feed
    """
    kinds = [SourceKind(kind)] if kind else list(SourceKind)

    async def command(service):
        return {k: await service.list_for_room(room_id, k) for k in kinds}

    listing = _run_with_service(command)

    total = 0
    for source_kind, identities in listing.items():
        click.echo(f"{source_kind.value}:")
        if not identities:
            click.echo("  (none)")
        for identity in identities:
            click.echo(f"  {identity}")
        total += len(identities)
    click.echo(f"\nTotal: {total}")


@subscriptions.command("enable-github")
@click.argument("room_id")
@click.argument("username")
@click.option(
    "--token",
    envvar="GITHUB_TOKEN",
    prompt=True,
    hide_input=True,
    help="Personal access token with the notifications scope",
)
def subscriptions_enable_github(room_id: str, username: str, token: str) -> None:
    """Send a GitHub account's notifications into a room."""

    async def command(service):
        return await service.enable_github(room_id, username, token)

    if _run_with_service(command):
        click.echo(click.style(f"Subscribed {room_id} to GitHub notifications of {username}", fg="green"))
    else:
        click.echo(click.style("Token rejected by GitHub, nothing changed", fg="red"))
        sys.exit(1)


@subscriptions.command("enable-feed")
@click.argument("room_id")
@click.argument("url")
def subscriptions_enable_feed(room_id: str, url: str) -> None:
    """Send new entries of an RSS/Atom feed into a room."""
    from src.subscriptions.service import InvalidIdentityError

    async def command(service):
        return await service.enable_feed(room_id, url)

    try:
        enabled = _run_with_service(command)
    except InvalidIdentityError as e:
        raise click.BadParameter(str(e), param_hint="URL") from e

    if enabled:
        click.echo(click.style(f"Subscribed {room_id} to {url}", fg="green"))
    else:
        click.echo(click.style(f"Could not read a feed at {url}, nothing changed", fg="red"))
        sys.exit(1)


@subscriptions.command("disable")
@click.argument("room_id")
@click.argument("kind", type=KIND_CHOICE)
@click.argument("identity")
def subscriptions_disable(room_id: str, kind: str, identity: str) -> None:
    """Remove one subscription (feed URL or GitHub username)."""

    async def command(service):
        return await service.disable(room_id, SourceKind(kind), identity)

    if _run_with_service(command):
        click.echo(f"Unsubscribed {room_id} from {identity}")
    else:
        click.echo(click.style(f"No {kind} subscription to {identity} in {room_id}", fg="yellow"))
        sys.exit(1)


@subscriptions.command("clear")
@click.argument("room_id")
@click.argument("kind", type=KIND_CHOICE)
@click.confirmation_option(prompt="Remove all of this room's subscriptions of that kind?")
def subscriptions_clear(room_id: str, kind: str) -> None:
    """Remove all of a room's subscriptions of one kind."""

    async def command(service):
        return await service.clear(room_id, SourceKind(kind))

    removed = _run_with_service(command)
    click.echo(f"Removed {removed} {kind} subscription(s) from {room_id}")


if __name__ == "__main__":
    main()
