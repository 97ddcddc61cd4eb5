"""cashu-mcp command line: run the MCP server or inspect the wallet."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Annotated, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ServerConfig, load_config
from .log import setup_logging
from .orchestrator import WalletOrchestrator
from .server import serve as serve_stdio
from .types import WalletApiError, WalletError

T = TypeVar("T")

app = typer.Typer(
    name="cashu-mcp",
    help="Cashu wallet MCP server",
    rich_markup_mode="markdown",
)
# stdout belongs to the MCP stream while serving
console = Console(stderr=True)


def handle_wallet_error(e: Exception) -> None:
    """Print wallet errors with their code."""
    if isinstance(e, WalletApiError):
        console.print(f"[red]{e.code}: {e.message}[/red]")
    elif isinstance(e, WalletError):
        console.print(f"[red]{e}[/red]")
    else:
        console.print(f"[red]Error: {e}[/red]")


def _load() -> ServerConfig:
    config = load_config()
    setup_logging(config.log_level)
    return config


def _run_with_wallet(action: Callable[[WalletOrchestrator], Awaitable[T]]) -> T:
    """Load config, open the wallet, run ``action`` and always clean up."""

    async def _run() -> T:
        config = _load()
        wallet = WalletOrchestrator(config.wallet)
        try:
            await wallet.initialize()
            return await action(wallet)
        finally:
            await wallet.cleanup()

    try:
        return asyncio.run(_run())
    except (WalletApiError, WalletError) as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


def _format_time(timestamp: int | None) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def serve() -> None:
    """Run the MCP server over stdio."""
    try:
        config = _load()
        asyncio.run(serve_stdio(config))
    except KeyboardInterrupt:
        console.print("[yellow]Shutting down[/yellow]")
    except (WalletApiError, WalletError) as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


@app.command()
def balance() -> None:
    """Show the total balance and the balance of each mint."""

    async def _balance(wallet: WalletOrchestrator) -> None:
        result = await wallet.get_balance()
        table = Table(title="Balance by mint")
        table.add_column("Mint", style="cyan")
        table.add_column("Balance (sat)", justify="right", style="green")
        for mint_url, amount in result["breakdown"].items():
            table.add_row(mint_url, str(amount))
        console.print(table)
        console.print(f"[bold green]Total: {result['total']} sat[/bold green]")

    _run_with_wallet(_balance)


@app.command()
def mints(
    filter: Annotated[
        str, typer.Option("--filter", "-f", help="all, trusted or untrusted")
    ] = "all",
) -> None:
    """List known mints."""
    if filter not in ("all", "trusted", "untrusted"):
        console.print(f"[red]Unknown filter {filter!r}[/red]")
        raise typer.Exit(2)

    async def _mints(wallet: WalletOrchestrator) -> None:
        result = await wallet.list_mints(filter)  # type: ignore[arg-type]
        table = Table(title=f"Mints ({filter})")
        table.add_column("Mint", style="cyan")
        table.add_column("Trusted")
        table.add_column("Last checked", style="dim")
        for mint in result["mints"]:
            table.add_row(
                mint["mintUrl"],
                "[green]yes[/green]" if mint["trusted"] else "[yellow]no[/yellow]",
                _format_time(mint["lastChecked"]),
            )
        console.print(table)
        console.print(
            f"{result['total']} total, {result['trusted']} trusted, "
            f"{result['untrusted']} untrusted"
        )

    _run_with_wallet(_mints)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Entries to show")] = 20,
    offset: Annotated[int, typer.Option("--offset", min=0, help="Entries to skip")] = 0,
) -> None:
    """Show recent wallet history, newest first."""

    async def _history(wallet: WalletOrchestrator) -> None:
        entries = await wallet.list_transactions(limit=limit, offset=offset)
        if not entries:
            console.print("[yellow]No history yet[/yellow]")
            return
        table = Table(title="History")
        table.add_column("Time", style="dim")
        table.add_column("Type")
        table.add_column("Amount", justify="right", style="green")
        table.add_column("Mint", style="cyan")
        table.add_column("Quote")
        for entry in entries:
            table.add_row(
                _format_time(entry["createdAt"]),
                entry["type"],
                f"{entry['amount']} {entry['unit']}",
                entry["mintUrl"],
                str(entry.get("quoteId") or ""),
            )
        console.print(table)

    _run_with_wallet(_history)


@app.command()
def restore(
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint URL, defaults to all trusted mints")
    ] = None,
) -> None:
    """Recover proofs derived from the wallet seed."""

    async def _restore(wallet: WalletOrchestrator) -> None:
        results = await wallet.restore(mint_url)
        if not results:
            console.print("[yellow]No trusted mints to restore from[/yellow]")
            return
        for url, amount in results.items():
            console.print(f"[green]{url}: restored {amount} sat[/green]")

    _run_with_wallet(_restore)


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print(f"cashu-mcp v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
) -> None:
    """Cashu wallet MCP server.

    Configuration is read from the environment and from `.env`:

    * `CASHU_SEED` - BIP-39 mnemonic, generated and saved to `.env` when missing
    * `CASHU_DATABASE_PATH` - SQLite file (default `./cashu.db`)
    * `CASHU_DEFAULT_MINT` - mint added as trusted when the server starts
    * `LOG_LEVEL` - debug, info, warn or error
    """


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
