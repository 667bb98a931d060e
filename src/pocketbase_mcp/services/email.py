"""Outbound email through SendGrid's REST API or a plain SMTP server.

The provider is picked from ``EmailSettings.provider``.  SMTP uses the
standard library client in a worker thread so the event loop never blocks.
Templates use ``{{ variable }}`` placeholders; values substituted into HTML
bodies are escaped, ``{{{ variable }}}`` inserts them raw.
"""

from __future__ import annotations

import asyncio
import dataclasses
import html
import logging
import re
import smtplib
import ssl
from email.message import EmailMessage
from typing import Any

import httpx

from pocketbase_mcp.config import EmailSettings
from pocketbase_mcp.errors import RemoteError, ServiceError, UnavailableError

logger = logging.getLogger(__name__)

SENDGRID_API_BASE = "https://api.sendgrid.com"
_PLACEHOLDER = re.compile(r"\{\{(\{?)\s*([\w.]+)\s*\}?\}\}")
SENDER_HINT = "Set DEFAULT_FROM_EMAIL (or SMTP_USER for SMTP) or pass a 'from' address"
PROVIDER_HINT = "Set SENDGRID_API_KEY or SMTP_HOST to enable email functionality"


class EmailDeliveryError(RemoteError):
    """Raised when the SMTP server refuses the message or the login."""


@dataclasses.dataclass(frozen=True)
class OutgoingEmail:
    to: tuple[str, ...]
    subject: str
    text: str | None = None
    html: str | None = None
    sender: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    reply_to: str | None = None

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc, *self.bcc]


def _lookup(variables: dict[str, Any], dotted: str) -> Any:
    value: Any = variables
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return ""
        value = value[part]
    return value


def render_template(template: str, variables: dict[str, Any], *, escape: bool = False) -> str:
    """Substitute ``{{ name }}`` placeholders; unknown names render empty."""

    def _sub(match: re.Match[str]) -> str:
        raw, name = match.group(1), match.group(2)
        value = _lookup(variables, name)
        text = "" if value is None else str(value)
        return html.escape(text) if escape and not raw else text

    return _PLACEHOLDER.sub(_sub, template)


class EmailService:
    """Sends mail through whichever provider the settings configure."""

    def __init__(
        self,
        settings: EmailSettings,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._transport = transport

    @property
    def provider(self) -> str | None:
        return self._settings.provider

    @property
    def default_sender(self) -> str | None:
        return self._settings.default_from or self._settings.smtp_user

    async def send(self, message: OutgoingEmail) -> dict[str, Any]:
        """Deliver *message* and return a delivery summary."""
        sender = message.sender or self.default_sender
        if not sender:
            raise UnavailableError(
                "No sender address: set DEFAULT_FROM_EMAIL or pass 'from'", hint=SENDER_HINT
            )
        message = dataclasses.replace(message, sender=sender)

        if self.provider == "sendgrid":
            result = await self._send_sendgrid(message)
        elif self.provider == "smtp":
            result = await asyncio.to_thread(self._send_smtp, message)
        else:
            raise UnavailableError("Email is not configured", hint=PROVIDER_HINT)
        logger.info(
            "Sent email via %s to %d recipient(s): %s",
            self.provider,
            len(message.recipients),
            message.subject,
        )
        return result

    async def test_connection(self) -> dict[str, Any]:
        if self.provider == "sendgrid":
            async with self._client() as client:
                response = await client.get("/v3/scopes")
            if response.is_error:
                raise ServiceError.from_response(response, service="sendgrid")
            scopes = response.json().get("scopes", [])
            return {"provider": "sendgrid", "scopes": len(scopes)}
        if self.provider == "smtp":
            await asyncio.to_thread(self._smtp_probe)
            return {"provider": "smtp", "host": self._settings.smtp_host}
        raise UnavailableError("Email is not configured", hint=PROVIDER_HINT)

    # -- sendgrid ------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=SENDGRID_API_BASE,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._settings.sendgrid_api_key}"},
        )

    async def _send_sendgrid(self, message: OutgoingEmail) -> dict[str, Any]:
        personalization: dict[str, Any] = {"to": [{"email": addr} for addr in message.to]}
        if message.cc:
            personalization["cc"] = [{"email": addr} for addr in message.cc]
        if message.bcc:
            personalization["bcc"] = [{"email": addr} for addr in message.bcc]

        content = []
        if message.text:
            content.append({"type": "text/plain", "value": message.text})
        if message.html:
            content.append({"type": "text/html", "value": message.html})
        payload: dict[str, Any] = {
            "personalizations": [personalization],
            "from": {"email": message.sender},
            "subject": message.subject,
            "content": content,
        }
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        async with self._client() as client:
            response = await client.post("/v3/mail/send", json=payload)
        if response.is_error:
            raise ServiceError.from_response(response, service="sendgrid")
        return {
            "provider": "sendgrid",
            "messageId": response.headers.get("X-Message-Id"),
            "recipients": len(message.recipients),
        }

    # -- smtp ----------------------------------------------------------------

    def _connect(self) -> smtplib.SMTP:
        s = self._settings
        implicit_tls = s.smtp_port == 465
        if implicit_tls:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                s.smtp_host, s.smtp_port, timeout=self._timeout, context=ssl.create_default_context()
            )
        else:
            server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self._timeout)
        # The caller's ``with`` only owns the connection once we return it.
        try:
            if not implicit_tls:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=ssl.create_default_context())
                    server.ehlo()
            if s.smtp_user and s.smtp_password:
                server.login(s.smtp_user, s.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def _send_smtp(self, message: OutgoingEmail) -> dict[str, Any]:
        msg = EmailMessage()
        msg["From"] = message.sender
        msg["To"] = ", ".join(message.to)
        if message.cc:
            msg["Cc"] = ", ".join(message.cc)
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        msg["Subject"] = message.subject
        msg.set_content(message.text or "")
        if message.html:
            msg.add_alternative(message.html, subtype="html")

        try:
            with self._connect() as server:
                refused = server.send_message(msg, to_addrs=message.recipients)
        except smtplib.SMTPAuthenticationError as exc:
            raise EmailDeliveryError("SMTP authentication failed; check SMTP_USER/SMTP_PASSWORD") from exc
        except smtplib.SMTPException as exc:
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc
        return {
            "provider": "smtp",
            "messageId": None,
            "recipients": len(message.recipients) - len(refused),
            "refused": sorted(refused),
        }

    def _smtp_probe(self) -> None:
        try:
            with self._connect() as server:
                server.noop()
        except smtplib.SMTPException as exc:
            raise EmailDeliveryError(f"SMTP connection test failed: {exc}") from exc
