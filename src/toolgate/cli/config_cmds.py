"""Configuration commands: validate, plans, token."""

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from ..daemon.auth import generate_token
from ..daemon.utils.config_loader import ConfigLoader
from . import app, config_app, console


def _load(config_dir: Optional[Path]):
    loader = ConfigLoader(config_dir)
    if not loader.config_file.exists():
        console.print(f"[yellow]No config at {loader.config_file}; showing built-in defaults.[/yellow]")
    return loader.load_config()


@config_app.command("validate")
def validate_config(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Directory holding gateway.yaml"),
):
    """Validate gateway.yaml without starting the daemon."""
    try:
        cfg = _load(config_dir)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Configuration is valid.[/green]")
    console.print(f"  Plans:        {', '.join(sorted(cfg.plans))}")
    console.print(f"  Default plan: {cfg.default_plan}")
    console.print(f"  Global limit: {cfg.global_limit.limit} / {cfg.global_limit.window_seconds}s")
    console.print(f"  Session TTL:  {cfg.sessions.ttl_seconds}s")
    console.print(f"  Credentials:  {len(cfg.credentials)}")
    if cfg.fail_open:
        console.print("[yellow]  fail_open is enabled: requests are admitted when the store is down.[/yellow]")


@app.command("plans")
def show_plans(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Directory holding gateway.yaml"),
):
    """Show the plan matrix."""
    try:
        cfg = _load(config_dir)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Plans")
    table.add_column("Plan")
    table.add_column("Read/min", justify="right")
    table.add_column("Read burst", justify="right")
    table.add_column("Write/min", justify="right")
    table.add_column("Write burst", justify="right")
    table.add_column("Bulk/hour", justify="right")
    table.add_column("Bulk items", justify="right")
    table.add_column("Chain depth", justify="right")
    table.add_column("Export/day", justify="right")

    for name in sorted(cfg.plans):
        p = cfg.plans[name]
        label = f"{name} (default)" if name == cfg.default_plan else name
        table.add_row(
            label,
            str(p.read.sustained_limit),
            f"{p.read.burst_limit}/{p.read.burst_window_seconds}s",
            str(p.write.sustained_limit),
            f"{p.write.burst_limit}/{p.write.burst_window_seconds}s",
            str(p.bulk_calls_per_hour),
            str(p.bulk_max_items_per_call),
            str(p.chain_depth_limit),
            str(p.export_per_day),
        )
    console.print(table)


@config_app.command("token")
def new_token():
    """Generate a bearer token and the digest for the credentials table."""
    raw, digest = generate_token()
    console.print(f"Token:  {raw}")
    console.print(f"Digest: {digest}")
    console.print("[dim]Put the digest under `credentials:` in gateway.yaml; the token is shown only once.[/dim]")
