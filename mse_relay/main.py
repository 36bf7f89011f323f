"""
main.py — mse-relay application entrypoint.

Bootstraps:
  1. Config loading
  2. Channel pool (one PepTalk client per engine)
  3. FastAPI server (uvicorn)

CLI:
  python run.py start              start the relay server
  python run.py init-config        create a default config.yaml
  python run.py list-channels      print configured engine channels
  python run.py check              test MSE connectivity and show what is on air
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table
from rich.logging import RichHandler

from mse_relay import __version__
from mse_relay.config import Settings, reload_settings
from mse_relay.core import MSEClient, init_pool
from mse_relay.api import create_app

console = Console()
app = typer.Typer(name="mse-relay", help="Media Sequencer control link & on-air state relay")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def build_and_run(config_path: Optional[Path] = None) -> None:
    settings = reload_settings(config_path)
    setup_logging(settings.api.log_level)
    log = logging.getLogger("mse_relay")

    console.rule(f"[bold blue]mse-relay v{__version__}[/bold blue]")

    # 1. Channel pool
    channels = settings.effective_channels()
    pool = init_pool(channels, **settings.client_options())

    # 2. Initial connections (non-fatal: failed channels retry in the background)
    results = await pool.connect_all()

    # 3. API
    fast_app = create_app()

    # 4. Startup summary
    for ch in channels:
        if not ch.enabled:
            console.print(f"[dim]- MSE[/dim]       {ch.name} @ {ch.host}:{ch.port} (disabled)")
        elif results.get(ch.name):
            console.print(f"[green]✓ MSE[/green]       {ch.name} @ {ch.host}:{ch.port} (connected)")
        else:
            console.print(f"[yellow]⚠ MSE[/yellow]       {ch.name} @ {ch.host}:{ch.port} — will retry every {settings.mse.reconnect_interval:g}s")
    console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws")
    if settings.api.api_key:
        console.print(f"[green]✓ Auth[/green]      API key set — Bearer token required")
    else:
        console.print(f"[yellow]⚠ Auth[/yellow]      No API key set — open access (fine for LAN, not internet)")
    console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

    # 5. uvicorn
    config = uvicorn.Config(
        fast_app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True
        loop.create_task(pool.disconnect_all())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    await server.serve()
    await pool.disconnect_all()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
    mse_host: Optional[str] = typer.Option(None, "--mse-host", help="Media Sequencer host"),
    mse_port: Optional[int] = typer.Option(None, "--mse-port", help="Media Sequencer PepTalk port"),
):
    """Start the mse-relay server."""
    import os
    if host:
        os.environ["API_HOST"] = host
    if port:
        os.environ["API_PORT"] = str(port)
    if mse_host:
        os.environ["MSE_HOST"] = mse_host
    if mse_port:
        os.environ["MSE_PORT"] = str(mse_port)
    asyncio.run(build_and_run(config))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("list-channels")
def list_channels_cmd(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Print the engine channels the relay would connect to."""
    settings = Settings.load(config)
    table = Table(title="MSE Channels", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Host", style="green")
    table.add_column("Port")
    table.add_column("Enabled", style="yellow")
    for ch in settings.effective_channels():
        table.add_row(ch.name, ch.host, str(ch.port), "yes" if ch.enabled else "no")
    console.print(table)


@app.command("check")
def check_mse(
    host: str = typer.Option("localhost", "--host"),
    port: int = typer.Option(8595, "--port"),
    wait: float = typer.Option(3.0, "--wait", help="Seconds to collect on-air state after the handshake"),
):
    """Test MSE connectivity and list what is currently on air."""
    async def _check():
        client = MSEClient(host=host, port=port, name="check")
        if not await client.connect():
            await client.disconnect()
            console.print(f"[red]✗ Could not connect to MSE at {host}:{port}[/red] ({client.last_error})")
            sys.exit(1)
        if not await client.wait_ready(timeout=wait):
            await client.disconnect()
            console.print(f"[red]✗ MSE at {host}:{port} did not answer the PepTalk handshake[/red]")
            sys.exit(1)
        console.print(f"[green]✓ Connected to MSE[/green]")
        console.print(f"  Protocol: {' '.join(client.capabilities)}")
        await asyncio.sleep(wait)

        table = Table(title="On Air", show_header=True)
        table.add_column("Key", style="dim")
        table.add_column("Show", style="cyan")
        table.add_column("Playlist", style="green")
        table.add_column("Element", style="yellow")
        for key, rec in client.state.snapshot().items():
            table.add_row(key, rec.show_name, rec.playlist_name, rec.element_id)
        console.print(table)
        await client.disconnect()
    asyncio.run(_check())


if __name__ == "__main__":
    app()
