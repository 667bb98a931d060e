"""Email tools.

Templates are records of the PocketBase ``email_templates`` collection
(``name``, ``subject``, ``htmlContent``, ``textContent``, ``variables``).
Every send attempt is logged to ``email_logs`` when PocketBase is reachable;
a failed log write never fails the send.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pocketbase_mcp.errors import InputRejected, ServiceError
from pocketbase_mcp.mcp.base_server import BaseMCPServer
from pocketbase_mcp.pocketbase.client import quote_filter
from pocketbase_mcp.pocketbase.executor import OperationExecutor
from pocketbase_mcp.pocketbase.session import Session
from pocketbase_mcp.services.email import EmailService, OutgoingEmail, render_template

logger = logging.getLogger(__name__)

TEMPLATES_COLLECTION = "email_templates"
LOGS_COLLECTION = "email_logs"
BULK_BATCH_SIZE = 10
BULK_BATCH_PAUSE = 1.0

DEFAULT_TEMPLATES: tuple[dict[str, Any], ...] = (
    {
        "name": "welcome",
        "subject": "Welcome to {{appName}}!",
        "htmlContent": (
            "<h1>Welcome {{userName}}!</h1>"
            "<p>Thank you for joining {{appName}}. We're excited to have you on board!</p>"
            "<p>If you have any questions, feel free to reach out to our support team.</p>"
            "<p>Best regards,<br>The {{appName}} Team</p>"
        ),
        "textContent": (
            "Welcome {{userName}}!\n\n"
            "Thank you for joining {{appName}}. We're excited to have you on board!\n\n"
            "Best regards,\nThe {{appName}} Team\n"
        ),
        "variables": ["userName", "appName"],
    },
    {
        "name": "payment_success",
        "subject": "Payment Successful - {{planName}}",
        "htmlContent": (
            "<h1>Payment Successful!</h1>"
            "<p>Hi {{userName}},</p>"
            "<p>Your payment for <strong>{{planName}}</strong> has been processed successfully.</p>"
            "<p><strong>Amount:</strong> {{amount}} {{currency}}</p>"
            "<p><strong>Date:</strong> {{date}}</p>"
            "<p>Best regards,<br>The {{appName}} Team</p>"
        ),
        "textContent": (
            "Hi {{userName}},\n\n"
            "Your payment for {{planName}} has been processed successfully.\n\n"
            "Amount: {{amount}} {{currency}}\nDate: {{date}}\n\n"
            "Best regards,\nThe {{appName}} Team\n"
        ),
        "variables": ["userName", "planName", "amount", "currency", "date", "appName"],
    },
    {
        "name": "subscription_expired",
        "subject": "Your {{planName}} subscription has expired",
        "htmlContent": (
            "<h1>Subscription Expired</h1>"
            "<p>Hi {{userName}},</p>"
            "<p>Your <strong>{{planName}}</strong> subscription has expired on {{expirationDate}}.</p>"
            "<p>To continue enjoying our services, please "
            "<a href=\"{{renewalUrl}}\">renew your subscription</a>.</p>"
            "<p>Best regards,<br>The {{appName}} Team</p>"
        ),
        "textContent": (
            "Hi {{userName}},\n\n"
            "Your {{planName}} subscription has expired on {{expirationDate}}.\n\n"
            "Renew here: {{renewalUrl}}\n\n"
            "Best regards,\nThe {{appName}} Team\n"
        ),
        "variables": ["userName", "planName", "expirationDate", "renewalUrl", "appName"],
    },
)


class EmailTools:
    """Registers and implements the ``email_*`` tools."""

    def __init__(
        self,
        email: EmailService,
        executor: OperationExecutor,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._email = email
        self._executor = executor
        self._sleep = sleep

    def register(self, server: BaseMCPServer) -> None:
        def tool(name: str, description: str, properties: dict[str, Any], required: list[str], handler: Any) -> None:
            schema: dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            server.register_tool(name, description, schema, handler, service="email")

        sender = {"type": "string", "description": "Sender email"}
        variable_names = {
            "type": "array",
            "items": {"type": "string"},
            "description": "Template variable names",
        }

        tool(
            "email_send_simple",
            "Send a custom email",
            {
                "to": {"type": "string", "description": "Recipient email"},
                "subject": {"type": "string", "description": "Email subject"},
                "htmlContent": {"type": "string", "description": "Email HTML content"},
                "textContent": {"type": "string", "description": "Email text content"},
                "from": sender,
                "cc": {"type": "array", "items": {"type": "string"}, "description": "CC recipients"},
                "bcc": {"type": "array", "items": {"type": "string"}, "description": "BCC recipients"},
                "replyTo": {"type": "string", "description": "Reply-To address"},
            },
            ["to", "subject", "htmlContent"],
            self._send_simple,
        )
        tool(
            "email_send_bulk",
            "Send bulk custom emails",
            {
                "emails": {
                    "type": "array",
                    "description": "Array of {to, subject, html, text?, from?} objects",
                    "items": {"type": "object"},
                },
                "batchSize": {"type": "number", "description": "Batch size for sending"},
            },
            ["emails"],
            self._send_bulk,
        )
        tool(
            "email_create_template",
            "Create an email template",
            {
                "name": {"type": "string", "description": "Template name"},
                "subject": {"type": "string", "description": "Email subject template"},
                "htmlContent": {"type": "string", "description": "Email HTML template"},
                "textContent": {"type": "string", "description": "Email text template"},
                "variables": variable_names,
            },
            ["name", "subject", "htmlContent"],
            self._create_template,
        )
        tool(
            "email_get_template",
            "Get email template by name",
            {"name": {"type": "string", "description": "Template name"}},
            ["name"],
            self._get_template_tool,
        )
        tool(
            "email_create_default_templates",
            "Create the default welcome, payment and subscription templates",
            {},
            [],
            self._create_default_templates,
        )
        tool(
            "email_update_template",
            "Update an email template",
            {
                "name": {"type": "string", "description": "Template name"},
                "subject": {"type": "string", "description": "Updated subject template"},
                "htmlContent": {"type": "string", "description": "Updated HTML template"},
                "textContent": {"type": "string", "description": "Updated text template"},
                "variables": variable_names,
            },
            ["name"],
            self._update_template,
        )
        tool(
            "email_send_templated",
            "Send a templated email",
            {
                "template": {"type": "string", "description": "Template name"},
                "to": {"type": "string", "description": "Recipient email"},
                "from": sender,
                "variables": {"type": "object", "description": "Template variables"},
                "customSubject": {"type": "string", "description": "Subject overriding the template's"},
            },
            ["template", "to"],
            self._send_templated,
        )
        tool(
            "email_test_connection",
            "Test the configured email provider connection",
            {},
            [],
            self._test_connection,
        )

    # -- templates -----------------------------------------------------------

    async def _get_template(self, name: str) -> dict[str, Any]:
        async def _lookup(session: Session) -> dict[str, Any]:
            try:
                return await session.handle.get_first_list_item(
                    TEMPLATES_COLLECTION, f"name={quote_filter(name)}"
                )
            except ServiceError as exc:
                if exc.status == 404:
                    raise ServiceError(404, f"Template not found: {name}", service="pocketbase") from exc
                raise

        return await self._executor.execute(_lookup, name=f"email_get_template:{name}")

    async def _create_template(self, args: dict[str, Any]) -> dict[str, Any]:
        body = {
            "name": args["name"],
            "subject": args["subject"],
            "htmlContent": args["htmlContent"],
            "textContent": args.get("textContent", ""),
            "variables": args.get("variables", []),
        }
        template = await self._executor.execute(
            lambda s: s.handle.create_record(TEMPLATES_COLLECTION, body),
            name="email_create_template",
        )
        return {"template": template}

    async def _get_template_tool(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"template": await self._get_template(args["name"])}

    async def _create_default_templates(self, args: dict[str, Any]) -> dict[str, Any]:
        """Create each default template that does not exist yet."""
        results: list[dict[str, Any]] = []
        for template in DEFAULT_TEMPLATES:
            name = template["name"]
            try:
                await self._get_template(name)
            except ServiceError as exc:
                if exc.status != 404:
                    results.append({"template": name, "action": "error", "error": exc.message})
                    continue
            else:
                results.append({"template": name, "action": "exists"})
                continue
            try:
                await self._executor.execute(
                    lambda s, body=template: s.handle.create_record(TEMPLATES_COLLECTION, dict(body)),
                    name=f"email_create_default_templates:{name}",
                )
            except Exception as exc:
                results.append({"template": name, "action": "error", "error": str(exc)})
                continue
            results.append({"template": name, "action": "created"})
        created = sum(1 for r in results if r["action"] == "created")
        logger.info("Default email templates: %d created of %d", created, len(DEFAULT_TEMPLATES))
        return {"defaultTemplates": results}

    async def _update_template(self, args: dict[str, Any]) -> dict[str, Any]:
        existing = await self._get_template(args["name"])
        changes = {
            key: args[key]
            for key in ("subject", "htmlContent", "textContent", "variables")
            if key in args
        }
        if not changes:
            raise InputRejected("Nothing to update: pass subject, htmlContent, textContent or variables")
        template = await self._executor.execute(
            lambda s: s.handle.update_record(TEMPLATES_COLLECTION, existing["id"], changes),
            name="email_update_template",
        )
        return {"template": template}

    # -- sending -------------------------------------------------------------

    async def _log(self, entry: dict[str, Any]) -> dict[str, Any] | None:
        if not self._executor.holder.is_configured:
            return None
        try:
            return await self._executor.execute(
                lambda s: s.handle.create_record(LOGS_COLLECTION, entry),
                name="email_log",
            )
        except Exception as exc:
            logger.warning("Could not write email log: %s", exc)
            return None

    async def _deliver(
        self,
        message: OutgoingEmail,
        template: str | None = None,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "to": ", ".join(message.to),
            "from": message.sender or self._email.default_sender,
            "subject": message.subject,
        }
        if template is not None:
            entry["template"] = template
            entry["variables"] = variables or {}
        try:
            delivery = await self._email.send(message)
        except Exception as exc:
            await self._log({**entry, "status": "failed", "error": str(exc)})
            raise
        log = await self._log({**entry, "status": "sent"})
        return {"delivery": delivery, "emailLog": log}

    async def _send_simple(self, args: dict[str, Any]) -> dict[str, Any]:
        message = OutgoingEmail(
            to=(args["to"],),
            subject=args["subject"],
            html=args["htmlContent"],
            text=args.get("textContent"),
            sender=args.get("from"),
            cc=tuple(args.get("cc", ())),
            bcc=tuple(args.get("bcc", ())),
            reply_to=args.get("replyTo"),
        )
        return await self._deliver(message)

    async def _send_bulk(self, args: dict[str, Any]) -> dict[str, Any]:
        emails = args["emails"]
        batch_size = max(1, int(args.get("batchSize") or BULK_BATCH_SIZE))
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for start in range(0, len(emails), batch_size):
            for item in emails[start:start + batch_size]:
                recipient = item.get("to")
                if not recipient or not item.get("subject") or not item.get("html"):
                    errors.append({"email": recipient, "error": "to, subject and html are required"})
                    continue
                message = OutgoingEmail(
                    to=(recipient,),
                    subject=item["subject"],
                    html=item["html"],
                    text=item.get("text"),
                    sender=item.get("from"),
                )
                try:
                    results.append(await self._deliver(message))
                except Exception as exc:
                    errors.append({"email": recipient, "error": str(exc)})
            if start + batch_size < len(emails):
                await self._sleep(BULK_BATCH_PAUSE)
        logger.info("Bulk email: %d sent, %d failed", len(results), len(errors))
        return {"sent": len(results), "failed": len(errors), "results": results, "errors": errors}

    async def _send_templated(self, args: dict[str, Any]) -> dict[str, Any]:
        template = await self._get_template(args["template"])
        variables = args.get("variables", {})
        subject = render_template(args.get("customSubject") or template.get("subject", ""), variables)
        html_body = render_template(template.get("htmlContent", ""), variables, escape=True)
        text_template = template.get("textContent")
        message = OutgoingEmail(
            to=(args["to"],),
            subject=subject,
            html=html_body,
            text=render_template(text_template, variables) if text_template else None,
            sender=args.get("from"),
        )
        return await self._deliver(message, template=args["template"], variables=variables)

    async def _test_connection(self, args: dict[str, Any]) -> dict[str, Any]:
        result = await self._email.test_connection()
        return {"connection": result, "message": f"{result['provider']} connection OK"}
