"""Daemon commands: serve, version."""

import os

import typer

from .. import __version__
from . import app, console


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(9000, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
    workers: int = typer.Option(1, "--workers", min=1, help="Worker processes"),
):
    """Run the toolgate HTTP daemon in the foreground."""
    import uvicorn

    store = (os.getenv("TOOLGATE_STORE") or "").strip().lower()
    redis_url = (os.getenv("TOOLGATE_REDIS_URL") or "").strip()
    if workers > 1 and (store == "memory" or not redis_url):
        console.print("[red]Multiple workers need a shared Redis store (set TOOLGATE_REDIS_URL).[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Starting toolgate {__version__} on {host}:{port}...[/green]")
    uvicorn.run(
        "toolgate.daemon.app:app",
        host=host,
        port=port,
        reload=reload,
        workers=None if reload else workers,
        log_level=(os.getenv("TOOLGATE_LOG_LEVEL") or "info").lower(),
    )


@app.command("version")
def show_version():
    """Show toolgate version."""
    console.print(f"toolgate {__version__}")
