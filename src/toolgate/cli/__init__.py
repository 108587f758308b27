"""toolgate CLI: modular command package."""

import os

import typer
from rich.console import Console

# ── Shared state ────────────────────────────────────────────────────────────

app = typer.Typer(help="toolgate - admission control for agent tool calls")
console = Console()

# Sub-command groups
config_app = typer.Typer()

app.add_typer(config_app, name="config", help="Validate and inspect gateway configuration")


# ── Shared helpers ──────────────────────────────────────────────────────────

def daemon_url() -> str:
    return (os.getenv("TOOLGATE_URL") or "http://127.0.0.1:9000").rstrip("/")


def admin_headers() -> dict:
    key = (os.getenv("TOOLGATE_ADMIN_KEY") or "").strip()
    return {"x-toolgate-admin-key": key} if key else {}


# ── Register submodule commands (import triggers decorator registration) ────

from . import daemon_cmds   # noqa: E402, F401
from . import config_cmds   # noqa: E402, F401
from . import ops_cmds      # noqa: E402, F401
