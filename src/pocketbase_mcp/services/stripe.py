"""Stripe REST client (form-encoded bodies, bearer-token auth).

Stripe calls are stateless: every request carries the secret key, so there
is no session to renew and no retry policy here.  Non-2xx answers are raised
as ``ServiceError(service="stripe")`` and classified by HTTP status like any
other remote failure.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any
from urllib.parse import urlencode

import httpx

from pocketbase_mcp.errors import InputRejected, ServiceError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
STRIPE_API_VERSION = "2023-10-16"
WEBHOOK_TOLERANCE_SECONDS = 300


class WebhookSignatureError(InputRejected):
    """Raised when a webhook payload does not match its ``Stripe-Signature``."""


def encode_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracketed form keys.

    ``{"metadata": {"a": 1}, "items": [{"price": "p"}]}`` becomes
    ``[("metadata[a]", "1"), ("items[0][price]", "p")]``.  ``None`` values
    are dropped.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                elif item is not None:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def verify_webhook(
    payload: str,
    signature_header: str,
    secret: str,
    *,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    now: float | None = None,
) -> dict[str, Any]:
    """Check a ``Stripe-Signature`` header and return the decoded event.

    Raises ``WebhookSignatureError`` when the header is malformed, no ``v1``
    signature matches, or the timestamp is outside *tolerance*.
    """
    parts: dict[str, list[str]] = {}
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)
    try:
        timestamp = int(parts["t"][0])
    except (KeyError, ValueError) as exc:
        raise WebhookSignatureError("Unable to extract timestamp from signature header") from exc

    expected = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in parts.get("v1", [])):
        raise WebhookSignatureError("No signatures found matching the expected signature")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")

    try:
        return json.loads(payload)
    except ValueError as exc:
        raise WebhookSignatureError(f"Invalid webhook payload: {exc}") from exc


class StripeClient:
    """Async client for the subset of the Stripe API the tools expose."""

    def __init__(
        self,
        secret_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = STRIPE_API_BASE,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Stripe-Version": STRIPE_API_VERSION,
            },
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._http.request(
            method,
            path,
            content=urlencode(encode_form(data)) if data else None,
            params=encode_form(params) if params else None,
            headers={"Content-Type": "application/x-www-form-urlencoded"} if data else None,
        )
        logger.debug("stripe %s %s -> %d", method, path, response.status_code)
        if response.is_error:
            raise ServiceError.from_response(response, service="stripe")
        return response.json()

    async def list_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Follow ``starting_after`` cursors and return every object of a list endpoint."""
        items: list[dict[str, Any]] = []
        query = {"limit": 100, **(params or {})}
        while True:
            page = await self.request("GET", path, params=query)
            data = page.get("data", [])
            items.extend(data)
            if not page.get("has_more") or not data:
                return items
            query["starting_after"] = data[-1]["id"]

    # -- customers -----------------------------------------------------------

    async def create_customer(
        self,
        email: str,
        name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST", "/customers", {"email": email, "name": name, "metadata": metadata}
        )

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/customers/{customer_id}")

    async def update_customer(self, customer_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", f"/customers/{customer_id}", fields)

    # -- products & prices ---------------------------------------------------

    async def create_product(
        self,
        name: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/products",
            {"name": name, "description": description, "metadata": metadata},
        )

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str = "usd",
        interval: str | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/prices",
            {
                "product": product_id,
                "unit_amount": unit_amount,
                "currency": currency,
                "recurring": {"interval": interval} if interval else None,
            },
        )

    async def list_active_products(self) -> list[dict[str, Any]]:
        return await self.list_all("/products", {"active": True})

    async def list_active_prices(self, product_id: str) -> list[dict[str, Any]]:
        return await self.list_all("/prices", {"product": product_id, "active": True})

    # -- payment intents & refunds ------------------------------------------

    async def create_payment_intent(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/payment_intents", fields)

    async def confirm_payment_intent(
        self, payment_intent_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.request("POST", f"/payment_intents/{payment_intent_id}/confirm", fields)

    async def capture_payment_intent(
        self, payment_intent_id: str, amount_to_capture: int | None = None
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            f"/payment_intents/{payment_intent_id}/capture",
            {"amount_to_capture": amount_to_capture},
        )

    async def create_refund(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/refunds", fields)

    # -- subscriptions & checkout -------------------------------------------

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = False
    ) -> dict[str, Any]:
        if at_period_end:
            return await self.request(
                "POST", f"/subscriptions/{subscription_id}", {"cancel_at_period_end": True}
            )
        return await self.request("DELETE", f"/subscriptions/{subscription_id}")

    async def create_checkout_session(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/checkout/sessions", fields)

    async def create_payment_link(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/payment_links", fields)

    async def create_coupon(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/coupons", fields)

    # -- payment methods & setup intents ------------------------------------

    async def create_payment_method(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/payment_methods", fields)

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> dict[str, Any]:
        return await self.request(
            "POST", f"/payment_methods/{payment_method_id}/attach", {"customer": customer_id}
        )

    async def detach_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return await self.request("POST", f"/payment_methods/{payment_method_id}/detach")

    async def list_payment_methods(
        self, customer_id: str, type: str = "card"
    ) -> dict[str, Any]:
        return await self.request(
            "GET", "/payment_methods", params={"customer": customer_id, "type": type}
        )

    async def create_setup_intent(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/setup_intents", fields)
