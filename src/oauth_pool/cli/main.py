"""Command-line interface for the OAuth credential pool."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated

import typer
from rich import box
from rich.console import Console
from rich.table import Table
from structlog import get_logger

from oauth_pool import __version__
from oauth_pool.config.settings import get_settings
from oauth_pool.core.logging import setup_logging
from oauth_pool.db import close_db, init_db
from oauth_pool.exceptions import OAuthPoolError
from oauth_pool.oauth.device_flow import DevicePollStatus
from oauth_pool.rotation.accounts import Account
from oauth_pool.services.credential_service import CredentialService


app = typer.Typer(
    name="oauth-pool",
    help="OAuth credential pool for agent executions",
    no_args_is_help=True,
)

console = Console()
logger = get_logger(__name__)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"oauth-pool {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """Manage OAuth accounts for GitHub Copilot and Google Antigravity."""


@asynccontextmanager
async def open_service() -> AsyncIterator[CredentialService]:
    """Service over the local database, without the refresh scheduler."""
    settings = get_settings()
    await init_db(settings.storage.database_path)
    service = CredentialService(settings)
    try:
        yield service
    finally:
        await service.aclose()
        await close_db()


def _format_ms(ms: int | None) -> str:
    if ms is None:
        return "[dim]unknown[/dim]"
    dt = datetime.fromtimestamp(ms / 1000, tz=UTC)
    remaining = dt - datetime.now(UTC)
    stamp = dt.strftime("%Y-%m-%d %H:%M UTC")
    if remaining.total_seconds() <= 0:
        return f"{stamp} [red](expired)[/red]"
    hours = int(remaining.total_seconds() // 3600)
    minutes = int(remaining.total_seconds() % 3600 // 60)
    return f"{stamp} ({hours}h {minutes}m)"


def _accounts_table(title: str, accounts: list[Account]) -> Table:
    table = Table(
        show_header=True,
        header_style="bold cyan",
        box=box.ROUNDED,
        title=title,
        title_style="bold white",
    )
    table.add_column("Account", style="cyan")
    table.add_column("Label")
    table.add_column("Email")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Source", style="dim")
    table.add_column("Expires")
    for account in accounts:
        state = account.status.value
        if not account.active:
            state += " [dim](inactive)[/dim]"
        if account.refresh_failed:
            state += " [red](re-auth needed)[/red]"
        table.add_row(
            account.account_id,
            account.label or "",
            account.email or "",
            str(account.priority),
            state,
            account.source.value,
            _format_ms(account.expires_at),
        )
    return table


def _fail(e: OAuthPoolError) -> None:
    console.print(f"[red]✗[/red] {e.message}")
    raise typer.Exit(code=1) from e


@app.command()
def serve(
    host: Annotated[str | None, typer.Option(help="Bind address")] = None,
    port: Annotated[int | None, typer.Option(help="Bind port")] = None,
    reload: Annotated[bool, typer.Option(help="Reload on code changes")] = False,
) -> None:
    """Run the HTTP API server."""
    import uvicorn

    settings = get_settings()
    setup_logging(
        json_logs=settings.server.log_format == "json",
        log_level_name=settings.server.log_level,
        log_file=settings.server.log_file,
    )
    uvicorn.run(
        "oauth_pool.api.app:get_app",
        factory=True,
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=reload,
        log_config=None,
    )


@app.command()
def status() -> None:
    """Show connection status for every provider."""

    async def run() -> None:
        async with open_service() as service:
            pool_status = await service.get_status()

        if not pool_status.storage_ready:
            console.print(
                "[yellow]![/yellow] Storage not ready: set OAUTH_POOL_ENCRYPTION_SECRET"
            )
        for provider_id, provider in pool_status.providers.items():
            ready = (
                "[green]execution ready[/green]"
                if provider.execution_ready
                else "[red]not execution ready[/red]"
            )
            console.print(
                f"\n[bold]{provider.spec.display_name}[/bold] ({provider_id}): {ready}"
                f"  accounts={provider.counts.total} active={provider.counts.active}"
                f" runnable={provider.counts.runnable}"
            )
            if provider.detected:
                console.print("  [dim]Local CLI credential detected[/dim]")
            if provider.accounts:
                console.print(
                    _accounts_table(
                        provider.spec.display_name, [v.account for v in provider.accounts]
                    )
                )

    asyncio.run(run())


@app.command()
def accounts(
    provider: Annotated[str, typer.Argument(help="Provider id")],
) -> None:
    """List a provider's accounts in selection order."""

    async def run() -> None:
        async with open_service() as service:
            items = await service.list_accounts(provider)
        if not items:
            console.print(f"[dim]No accounts for {provider}[/dim]")
            return
        console.print(_accounts_table(provider, items))

    try:
        asyncio.run(run())
    except OAuthPoolError as e:
        _fail(e)


@app.command()
def login(
    provider: Annotated[
        str, typer.Argument(help="Provider id")
    ] = "github-copilot",
) -> None:
    """Connect an account with the device-code grant."""

    async def run() -> None:
        async with open_service() as service:
            attempt = await service.start_device_flow(provider, session="cli")
            console.print(
                f"\nOpen [bold cyan]{attempt.verification_uri}[/bold cyan] "
                f"and enter code [bold]{attempt.user_code}[/bold]\n"
            )
            interval = attempt.poll_interval
            with console.status("Waiting for authorization..."):
                while True:
                    await asyncio.sleep(interval)
                    result = await service.poll_device_flow(attempt.state_id, provider)
                    if result.interval:
                        interval = result.interval
                    if result.status == DevicePollStatus.COMPLETE:
                        account = result.account
                        who = account.email or account.account_id if account else ""
                        console.print(f"[green]✓[/green] Connected {who}")
                        return
                    if result.is_terminal:
                        console.print(
                            f"[red]✗[/red] Authorization {result.status.value}"
                            + (f": {result.error}" if result.error else "")
                        )
                        raise typer.Exit(code=1)

    try:
        asyncio.run(run())
    except OAuthPoolError as e:
        _fail(e)


@app.command()
def refresh(
    account_id: Annotated[str, typer.Argument(help="Account id")],
    provider: Annotated[str | None, typer.Option(help="Provider id")] = None,
) -> None:
    """Refresh one account's access token now."""

    async def run() -> Account:
        async with open_service() as service:
            return await service.refresh_token(provider=provider, account_id=account_id)

    try:
        account = asyncio.run(run())
    except OAuthPoolError as e:
        _fail(e)
    else:
        console.print(
            f"[green]✓[/green] Refreshed {account.account_id}, "
            f"expires {_format_ms(account.expires_at)}"
        )


@app.command(name="import")
def import_detected(
    provider: Annotated[str, typer.Argument(help="Provider id")],
) -> None:
    """Import the local CLI credential file as an account."""

    async def run() -> Account:
        async with open_service() as service:
            return await service.import_detected(provider)

    try:
        account = asyncio.run(run())
    except OAuthPoolError as e:
        _fail(e)
    else:
        console.print(f"[green]✓[/green] Imported {account.account_id} ({account.label})")


if __name__ == "__main__":
    app()
