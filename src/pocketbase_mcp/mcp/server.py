"""The PocketBase MCP server: wires settings, session, services and tools.

One process owns one ``SessionHolder``, one ``OperationExecutor`` and one
``HibernationController``.  Stripe and email clients are created only when
their settings are present; their tools answer ``NOT_CONFIGURED`` otherwise.
PocketBase tools are never gated here: without a URL the executor raises
``UnavailableError`` and the envelope carries the configuration hint.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from pocketbase_mcp.config import Settings
from pocketbase_mcp.errors import utc_timestamp
from pocketbase_mcp.mcp.base_server import BaseMCPServer
from pocketbase_mcp.mcp.email_tools import EmailTools
from pocketbase_mcp.mcp.pocketbase_tools import PocketBaseTools
from pocketbase_mcp.mcp.stripe_tools import StripeTools
from pocketbase_mcp.pocketbase import diagnostics
from pocketbase_mcp.pocketbase.client import PocketBaseClient
from pocketbase_mcp.pocketbase.executor import ActivityClock, OperationExecutor
from pocketbase_mcp.pocketbase.hibernation import HibernationController
from pocketbase_mcp.pocketbase.session import Clock, SessionHolder, utcnow
from pocketbase_mcp.services.email import EmailService
from pocketbase_mcp.services.stripe import StripeClient

logger = logging.getLogger(__name__)

SERVER_NAME = "pocketbase-mcp"
SERVER_VERSION = "0.1.0"

CONFIG_HINTS = {
    "pocketbase": (
        "Set POCKETBASE_URL (and optionally POCKETBASE_ADMIN_EMAIL, "
        "POCKETBASE_ADMIN_PASSWORD) to enable PocketBase functionality."
    ),
    "stripe": "Set STRIPE_SECRET_KEY to enable Stripe functionality.",
    "email": (
        "Set SENDGRID_API_KEY (EMAIL_SERVICE=sendgrid) or SMTP_HOST, SMTP_USER, "
        "SMTP_PASSWORD to enable email functionality."
    ),
}


class PocketBaseMCPServer(BaseMCPServer):
    """Exposes PocketBase, Stripe and email tools over MCP."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(SERVER_NAME)
        self._settings = settings
        self._transport = transport
        self._clock = clock
        timeout = settings.server.request_timeout

        self.holder = SessionHolder.from_raw(
            settings.pocketbase.as_raw(),
            clock=clock,
            client_factory=lambda url: PocketBaseClient(url, timeout=timeout, transport=transport),
        )
        self.activity = ActivityClock(clock)
        self.executor = OperationExecutor(self.holder, self.activity, sleep=sleep)
        self.hibernation = HibernationController(
            self.holder,
            self.activity,
            active_connections=lambda: self.in_flight,
            clock=clock,
        )
        self.stripe: StripeClient | None = None
        if settings.stripe.is_configured:
            self.stripe = StripeClient(settings.stripe.secret_key, timeout=timeout, transport=transport)
        self.email = EmailService(settings.email, timeout=timeout, transport=transport)

        PocketBaseTools(self.executor).register(self)
        StripeTools(self.stripe, self.executor, settings.stripe.webhook_secret).register(self)
        EmailTools(self.email, self.executor, sleep=sleep).register(self)
        self._register_server_tools()
        logger.info("Registered %d tools", len(self.list_tools()))

    # -- hooks ---------------------------------------------------------------

    def service_status(self, service: str) -> tuple[bool, str]:
        if service == "stripe":
            return self._settings.stripe.is_configured, CONFIG_HINTS["stripe"]
        if service == "email":
            return self._settings.email.is_configured, CONFIG_HINTS["email"]
        return True, ""

    def on_inbound_call(self, name: str) -> None:
        self.activity.touch()
        self.hibernation.wake()

    def capabilities(self) -> dict[str, bool]:
        return {
            "pocketbase": self.holder.is_configured,
            "pocketbaseAdmin": bool(self.holder.config and self.holder.config.has_admin_credentials),
            "stripe": self._settings.stripe.is_configured,
            "stripeWebhooks": bool(self._settings.stripe.webhook_secret),
            "email": self._settings.email.is_configured,
        }

    # -- server tools --------------------------------------------------------

    def _register_server_tools(self) -> None:
        empty = {"type": "object", "properties": {}}
        self.register_tool(
            "health_check",
            "Simple health check endpoint",
            empty,
            self._health_check,
        )
        self.register_tool(
            "get_server_status",
            "Get comprehensive server status and configuration",
            empty,
            self._get_server_status,
        )
        self.register_tool(
            "debug_pocketbase_auth",
            "Diagnose PocketBase connectivity and admin authentication",
            empty,
            self._debug_pocketbase_auth,
        )
        self.register_tool(
            "hibernate",
            "Release the PocketBase session and realtime subscriptions now",
            empty,
            self._hibernate,
        )

    async def _health_check(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"status": "healthy", "server": SERVER_NAME, "version": SERVER_VERSION}

    async def _get_server_status(self, args: dict[str, Any]) -> dict[str, Any]:
        session = self.holder.current
        now = self._clock()
        tools_by_service: dict[str, int] = {}
        for service in self._tool_services.values():
            key = service or "server"
            tools_by_service[key] = tools_by_service.get(key, 0) + 1
        status: dict[str, Any] = {
            "server": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": self.capabilities(),
            "tools": {"total": len(self.list_tools()), "byService": tools_by_service},
            "pocketbase": {
                "url": self.holder.config.base_url if self.holder.config else None,
                "session": session.describe(now) if session else None,
                "authAttempts": self.holder.auth_attempts,
            },
            "hibernation": {
                "state": self.hibernation.state.value,
                "hibernatedAt": self.hibernation.hibernated_at.isoformat()
                if self.hibernation.hibernated_at
                else None,
                "idleSeconds": round(self.activity.idle_for().total_seconds(), 1),
            },
            "email": {"provider": self.email.provider},
        }
        missing = [svc for svc in CONFIG_HINTS if not self._service_ready(svc)]
        if missing:
            status["hints"] = {svc: CONFIG_HINTS[svc] for svc in missing}
        return {"status": status}

    def _service_ready(self, service: str) -> bool:
        if service == "pocketbase":
            return self.holder.is_configured
        return self.service_status(service)[0]

    async def _debug_pocketbase_auth(self, args: dict[str, Any]) -> dict[str, Any]:
        config = self.holder.config
        pb = self._settings.pocketbase
        debug: dict[str, Any] = {
            "environment": {
                "pocketbaseUrl": pb.url or "NOT_SET",
                "hasAdminEmail": bool(pb.admin_email),
                "hasAdminPassword": bool(pb.admin_password),
            },
            "instance": self.holder.current.describe(self._clock()) if self.holder.current else None,
        }
        if config is None:
            debug["tests"] = {"healthCheck": {"success": False, "error": "POCKETBASE_URL not configured"}}
            return {"debug": debug, "hint": CONFIG_HINTS["pocketbase"]}
        debug["tests"] = await diagnostics.probe(
            config,
            timeout=self._settings.server.request_timeout,
            transport=self._transport,
        )
        return {"debug": debug}

    async def _hibernate(self, args: dict[str, Any]) -> dict[str, Any]:
        await self.hibernation.hibernate()
        return {"message": "Hibernated", "state": self.hibernation.state.value, "at": utc_timestamp()}

    # -- lifecycle -----------------------------------------------------------

    async def aclose(self) -> None:
        await self.hibernation.stop()
        await self.holder.reset()
        if self.stripe is not None:
            await self.stripe.aclose()

    async def run(self) -> None:
        """Serve MCP on stdio with the hibernation check running alongside."""
        self.hibernation.start()
        logger.info("Starting %s (capabilities: %s)", SERVER_NAME, self.capabilities())
        try:
            await self.serve_stdio()
        finally:
            await self.aclose()
