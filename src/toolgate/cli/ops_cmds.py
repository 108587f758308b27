"""Operational commands against the running daemon: usage, reset, sessions, reload."""

import httpx
import typer
from rich.table import Table

from . import admin_headers, app, config_app, console, daemon_url


@app.command("usage")
def show_usage(
    token: str = typer.Option(..., "--token", envvar="TOOLGATE_TOKEN", help="Bearer token of the caller"),
):
    """Show current quota usage for a credential."""
    try:
        r = httpx.get(
            f"{daemon_url()}/v1/usage",
            headers={"Authorization": f"Bearer {token}"},
            timeout=5.0,
        )
        if r.status_code != 200:
            console.print(f"[red]Daemon returned {r.status_code}: {r.text}[/red]")
            raise typer.Exit(1)
        data = r.json()
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]Plan:[/bold] {data['plan']}")
    table = Table(title="Usage")
    table.add_column("Class")
    table.add_column("Current", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Window", justify="right")
    for op, usage in data["per_class_usage"].items():
        table.add_row(
            op,
            str(usage["current"]),
            str(usage["limit"]),
            str(usage["remaining"]),
            f"{usage['window_seconds']}s",
        )
    console.print(table)
    g = data["global"]
    console.print(f"Global: {g['current']} / {g['limit']} per {g['window_seconds']}s")


@app.command("reset")
def reset_limits(
    identity_id: str = typer.Argument(None, help="Identity to reset; omit with --all to reset everything"),
    all_identities: bool = typer.Option(False, "--all", help="Reset every counter, the global one included"),
    token_id: list[str] = typer.Option([], "--token-id", help="Credential token ids to reset as well"),
    reason: str = typer.Option("operator request", "--reason"),
):
    """Reset rate-limit counters. Sessions are not touched."""
    if bool(identity_id) == all_identities:
        console.print("[red]Pass exactly one of IDENTITY_ID or --all.[/red]")
        raise typer.Exit(1)

    if all_identities:
        url = f"{daemon_url()}/admin/rate_limits/reset_all"
        body = {"reason": reason}
    else:
        url = f"{daemon_url()}/admin/rate_limits/reset/{identity_id}"
        body = {"reason": reason, "token_ids": token_id}

    try:
        r = httpx.post(url, json=body, headers=admin_headers(), timeout=5.0)
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        raise typer.Exit(1)
    if r.status_code != 200:
        console.print(f"[red]Reset failed: {r.status_code} - {r.text}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Reset complete ({r.json()['keys_deleted']} keys deleted).[/green]")


@app.command("sessions")
def list_sessions(
    owner: str = typer.Option("", "--owner", help="Only sessions owned by this identity"),
):
    """List pending action sessions (audit)."""
    try:
        r = httpx.get(
            f"{daemon_url()}/admin/sessions",
            params={"owner": owner} if owner else None,
            headers=admin_headers(),
            timeout=5.0,
        )
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        raise typer.Exit(1)
    if r.status_code != 200:
        console.print(f"[red]Daemon returned {r.status_code}: {r.text}[/red]")
        raise typer.Exit(1)

    data = r.json()
    table = Table(title=f"Pending sessions ({data['count']})")
    table.add_column("Session")
    table.add_column("Owner")
    table.add_column("Action")
    table.add_column("Resource")
    table.add_column("Expires in", justify="right")
    for s in data["sessions"]:
        target = s["target"]
        resource = f"{target['resource_type']}:{target.get('resource_id') or '-'}"
        table.add_row(s["session"], s["owner_identity_id"], target["action"], resource, f"{s['expires_in_seconds']}s")
    console.print(table)


@config_app.command("reload")
def reload_config():
    """Reload gateway.yaml in the running daemon."""
    try:
        r = httpx.post(f"{daemon_url()}/admin/reload_config", headers=admin_headers(), timeout=5.0)
        if r.status_code == 200:
            console.print("[green]Configuration reloaded successfully.[/green]")
        else:
            console.print(f"[red]Failed to reload config: {r.status_code} - {r.text}[/red]")
            raise typer.Exit(1)
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        raise typer.Exit(1)
