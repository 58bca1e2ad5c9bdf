"""Typer CLI for Stashu-Engine."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="stashu", help="Stashu-Engine: ecash settlement and custody server")
console = Console()


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind host (default: STASHU_HOST)"),
    port: int = typer.Option(None, help="Bind port (default: STASHU_PORT)"),
):
    """Start the Stashu-Engine API server."""
    import uvicorn
    from stashu_engine.app import create_app
    from stashu_engine.common.config import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold green]Starting Stashu-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(settings), host=host, port=port)


@app.command()
def keygen():
    """Print a fresh token encryption key for STASHU_TOKEN_ENCRYPTION_KEY."""
    from stashu_engine.vault.cipher import TokenVault

    console.print(f"[bold]{TokenVault.generate_key_hex()}[/bold]")


@app.command()
def reconcile():
    """Run vault checks and crash recovery once, then exit."""
    from stashu_engine.common.config import get_settings
    from stashu_engine.common.exceptions import StashuError
    from stashu_engine.common.logging import setup_logging
    from stashu_engine.deps import build_services, shutdown, startup

    settings = get_settings()
    setup_logging(settings.log_level)

    async def _run():
        services = build_services(settings)
        try:
            return await startup(services, timers=False)
        finally:
            await shutdown(services)

    try:
        report = asyncio.run(_run())
    except StashuError as e:
        console.print(f"[bold red]{e.code}[/bold red] — {e.message}")
        raise typer.Exit(1)

    table = Table(title="Reconciliation")
    table.add_column("Outcome")
    table.add_column("Count", justify="right")
    for name, count in report.as_dict().items():
        table.add_row(name.replace("_", " "), str(count))
    console.print(table)


@app.command()
def health(
    url: str = typer.Option("http://localhost:3000", help="Server URL"),
):
    """Check Stashu-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — {data['name']} v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
