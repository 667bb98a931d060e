"""Console status report for ``pocketbase-mcp status``.

Pattern: Prompt Renderer
-------------------------
The status command is the only human-facing output of the project; the
``serve`` command speaks MCP on stdout and must never print there.  This
module renders:

  1. **Capabilities**: which backends are configured and which hint applies
     to those that are not.
  2. **Connectivity** (``--check``): a live probe of PocketBase health,
     anonymous collection access and superuser authentication.

Rich is used for display.  The renderer knows nothing about MCP; it reads
``Settings`` and delegates probing to ``pocketbase.diagnostics``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pocketbase_mcp.config import Settings
from pocketbase_mcp.errors import ConfigurationError
from pocketbase_mcp.mcp.server import CONFIG_HINTS, SERVER_NAME, SERVER_VERSION
from pocketbase_mcp.pocketbase import diagnostics
from pocketbase_mcp.pocketbase.credentials import resolve

logger = logging.getLogger(__name__)
console = Console()


def _mark(ok: bool) -> str:
    return "[green]yes[/green]" if ok else "[red]no[/red]"


def _print_banner() -> None:
    console.print(
        Panel(
            f"[bold]{SERVER_NAME}[/bold] {SERVER_VERSION}\n"
            "MCP tools for PocketBase, Stripe and email",
            border_style="blue",
        )
    )


def _capabilities_table(settings: Settings) -> Table:
    table = Table(title="Configured Services")
    table.add_column("Service", style="bold")
    table.add_column("Configured")
    table.add_column("Details", style="dim")

    pb = settings.pocketbase
    table.add_row("PocketBase", _mark(bool(pb.url)), pb.url or CONFIG_HINTS["pocketbase"])
    table.add_row(
        "PocketBase admin",
        _mark(bool(pb.admin_email and pb.admin_password)),
        pb.admin_email or "public-only access",
    )
    if not settings.stripe.is_configured:
        stripe_details = CONFIG_HINTS["stripe"]
    elif settings.stripe.webhook_secret:
        stripe_details = "webhooks enabled"
    else:
        stripe_details = "no webhook secret"
    table.add_row("Stripe", _mark(settings.stripe.is_configured), stripe_details)
    table.add_row(
        "Email",
        _mark(settings.email.is_configured),
        settings.email.provider or CONFIG_HINTS["email"],
    )
    return table


def _probe_table(tests: dict[str, Any]) -> Table:
    table = Table(title="PocketBase Connectivity")
    table.add_column("Check", style="bold")
    table.add_column("Result")
    table.add_column("Message", style="dim")
    for name, result in tests.items():
        if result is None:
            table.add_row(name, "[dim]not run[/dim]", "")
            continue
        message = result.get("message") or result.get("error", "")
        table.add_row(name, _mark(bool(result.get("success"))), message)
    return table


def run_status(settings: Settings, check: bool = False) -> int:
    """Render the status report and return a process exit code."""
    _print_banner()
    console.print(_capabilities_table(settings))
    if not check:
        return 0

    try:
        config = resolve(settings.pocketbase.as_raw())
    except ConfigurationError as exc:
        for violation in exc.violations:
            console.print(f"[red]PocketBase configuration:[/red] {violation}")
        return 1

    tests = asyncio.run(diagnostics.probe(config, timeout=settings.server.request_timeout))
    console.print(_probe_table(tests))
    healthy = bool(tests["healthCheck"] and tests["healthCheck"].get("success"))
    return 0 if healthy else 1
