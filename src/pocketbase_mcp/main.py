"""CLI entry point: loads settings and runs the MCP server or the status report."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pocketbase_mcp.config import SettingsError, load_settings


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="pocketbase-mcp",
        description="MCP server exposing PocketBase, Stripe and email tools",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a settings.yaml (environment variables take precedence)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the MCP server on stdio (default)")
    status = commands.add_parser("status", help="Show configured services")
    status.add_argument(
        "--check",
        action="store_true",
        help="Also probe PocketBase health and admin authentication",
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        parser.exit(2, f"pocketbase-mcp: {exc}\n")

    # stdout carries the MCP protocol, so logs always go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if args.verbose or settings.server.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    if args.command == "status":
        from pocketbase_mcp.cli import run_status

        sys.exit(run_status(settings, check=args.check))

    from pocketbase_mcp.mcp.server import PocketBaseMCPServer

    server = PocketBaseMCPServer(settings)
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
