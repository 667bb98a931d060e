"""Base class for the MCP tool server.

Pattern: Schema-Gated Tool Registry
-------------------------------------
Tools are registered as ``(name, description, input schema, handler)``
entries, optionally tagged with the backend service they need.  Every call
goes through ``dispatch``, which is the single error boundary of the server:

  - Unknown tool names, arguments that fail schema validation, and tools
    whose service is not configured are answered with an envelope without
    running the handler.
  - Handler exceptions are classified and converted to the uniform
    ``{success: false, error, code, hint}`` envelope; nothing propagates to
    the MCP transport.
  - Successful payloads are wrapped as ``{success: true, ...payload}``.

Inbound calls also feed the activity clock and wake the hibernation
controller, and the number of calls in flight is exposed so that the
controller never tears a session down under a running call.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from mcp.server import Server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, ValidationError

from pocketbase_mcp.errors import error_envelope, utc_timestamp
from pocketbase_mcp.mcp.schema import (
    format_validation_error,
    json_schema_to_model,
    validate_arguments,
)

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

# Argument values echoed back in failure envelopes.
_ERROR_CONTEXT_KEYS = ("collection", "id", "recordId", "customerId")


class BaseMCPServer:
    """Scaffolding shared by the tool server.

    Subclasses must:
      1. Call ``super().__init__(server_name)`` to set up the MCP ``Server``.
      2. Register tools via ``self.register_tool(name, description, schema, handler)``.
      3. Implement ``service_status(service)`` when tools declare a service.
      4. Call ``self.run()`` to start the stdio event loop.
    """

    def __init__(self, server_name: str) -> None:
        self._server = Server(server_name)
        self._tools: dict[str, Tool] = {}
        self._tool_handlers: dict[str, Handler] = {}
        self._tool_models: dict[str, type[BaseModel]] = {}
        self._tool_services: dict[str, str | None] = {}
        self._in_flight = 0

    # -- tool registration ---------------------------------------------------

    def register_tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        handler: Handler,
        service: str | None = None,
    ) -> None:
        """Register a tool.  *service* names the backend the handler needs."""
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        self._tools[name] = Tool(name=name, description=description, inputSchema=input_schema)
        self._tool_handlers[name] = handler
        self._tool_models[name] = json_schema_to_model(name, input_schema)
        self._tool_services[name] = service

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    @property
    def in_flight(self) -> int:
        """Number of tool calls currently executing."""
        return self._in_flight

    # -- hooks for subclasses -------------------------------------------------

    def service_status(self, service: str) -> tuple[bool, str]:
        """Return ``(configured, hint)`` for *service*."""
        return True, ""

    def on_inbound_call(self, name: str) -> None:
        """Called before every dispatched tool call."""

    # -- dispatch ---------------------------------------------------------------

    async def dispatch(self, name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Run tool *name* and return its envelope.  Never raises."""
        handler = self._tool_handlers.get(name)
        if handler is None:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
                "code": "UNKNOWN_TOOL",
                "hint": "Call tools/list to see the available tools",
                "timestamp": utc_timestamp(),
            }

        try:
            args = validate_arguments(self._tool_models[name], arguments)
        except ValidationError as exc:
            problems = format_validation_error(exc)
            return {
                "success": False,
                "error": f"Invalid arguments for {name}",
                "code": "INVALID_ARGUMENTS",
                "hint": "; ".join(problems),
                "problems": problems,
                "tool": name,
                "timestamp": utc_timestamp(),
            }

        service = self._tool_services[name]
        if service is not None:
            configured, hint = self.service_status(service)
            if not configured:
                return {
                    "success": False,
                    "error": f"{name} requires {service} to be configured",
                    "code": "NOT_CONFIGURED",
                    "hint": hint,
                    "tool": name,
                    "timestamp": utc_timestamp(),
                }

        self.on_inbound_call(name)
        self._in_flight += 1
        try:
            payload = await handler(args)
        except Exception as exc:
            logger.error("Tool %s failed: %s", name, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            context = {key: args[key] for key in _ERROR_CONTEXT_KEYS if key in args}
            return error_envelope(exc, tool=name, **context)
        finally:
            self._in_flight -= 1

        return {"success": True, **payload, "timestamp": utc_timestamp()}

    # -- lifecycle ------------------------------------------------------------

    def setup_handlers(self) -> None:
        """Wire up MCP protocol handlers.  Call after all tools are registered."""
        server = self._server

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return self.list_tools()

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            envelope = await self.dispatch(name, arguments)
            return [TextContent(type="text", text=json.dumps(envelope, indent=2, default=str))]

    async def serve_stdio(self) -> None:
        """Run the MCP protocol on stdio until the client disconnects."""
        from mcp.server.stdio import stdio_server

        self.setup_handlers()
        async with stdio_server() as (read_stream, write_stream):
            await self._server.run(
                read_stream,
                write_stream,
                self._server.create_initialization_options(),
            )
