"""Stripe tools.

Customers and products created through these tools are mirrored into the
PocketBase ``stripe_customers`` / ``stripe_products`` collections, and
verified webhook events update ``stripe_payments`` / ``stripe_subscriptions``.
Mirroring is best effort: a Stripe call that succeeded is reported as a
success even when PocketBase is absent or rejects the mirror write.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

from pocketbase_mcp.errors import InputRejected, ServiceError, UnavailableError
from pocketbase_mcp.mcp.base_server import BaseMCPServer
from pocketbase_mcp.pocketbase.client import quote_filter
from pocketbase_mcp.pocketbase.executor import OperationExecutor
from pocketbase_mcp.pocketbase.session import Session
from pocketbase_mcp.services.stripe import StripeClient, verify_webhook

logger = logging.getLogger(__name__)

CUSTOMERS_COLLECTION = "stripe_customers"
PRODUCTS_COLLECTION = "stripe_products"
PAYMENTS_COLLECTION = "stripe_payments"
SUBSCRIPTIONS_COLLECTION = "stripe_subscriptions"


def _iso(epoch: int | None) -> str | None:
    if epoch is None:
        return None
    return datetime.datetime.fromtimestamp(epoch, datetime.UTC).isoformat()


class StripeTools:
    """Registers and implements the ``stripe_*`` tools."""

    def __init__(
        self,
        stripe: StripeClient | None,
        executor: OperationExecutor,
        webhook_secret: str | None = None,
    ) -> None:
        self._stripe = stripe
        self._executor = executor
        self._webhook_secret = webhook_secret

    @property
    def client(self) -> StripeClient:
        if self._stripe is None:
            raise UnavailableError(
                "Stripe not configured. Set STRIPE_SECRET_KEY environment variable.",
                hint="Set STRIPE_SECRET_KEY to enable Stripe functionality",
            )
        return self._stripe

    # -- mirroring -----------------------------------------------------------

    async def _mirror(self, name: str, operation: Any) -> Any:
        """Run a PocketBase write, logging instead of raising on failure."""
        if not self._executor.holder.is_configured:
            return None
        try:
            return await self._executor.execute(operation, name=name)
        except Exception as exc:
            logger.warning("Mirroring %s to PocketBase failed: %s", name, exc)
            return None

    async def _find_mirrored(self, collection: str, filter: str) -> tuple[bool, dict[str, Any] | None]:
        """Return ``(answered, record)``.

        ``answered`` is false when PocketBase is absent or the lookup itself
        failed, so callers can tell "no such row" from "could not check".
        """
        if not self._executor.holder.is_configured:
            return False, None

        async def _lookup(session: Session) -> dict[str, Any] | None:
            try:
                return await session.handle.get_first_list_item(collection, filter)
            except ServiceError as exc:
                if exc.status == 404:
                    return None
                raise

        try:
            record = await self._executor.execute(_lookup, name=f"lookup:{collection}")
        except Exception as exc:
            logger.warning("Looking up %s in PocketBase failed: %s", collection, exc)
            return False, None
        return True, record

    # -- registration --------------------------------------------------------

    def register(self, server: BaseMCPServer) -> None:
        def tool(name: str, description: str, properties: dict[str, Any], required: list[str], handler: Any) -> None:
            schema: dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            server.register_tool(name, description, schema, handler, service="stripe")

        metadata = {"type": "object", "description": "Custom metadata"}
        customer_id = {"type": "string", "description": "Stripe customer ID"}
        payment_intent_id = {"type": "string", "description": "Payment Intent ID"}

        tool(
            "stripe_create_customer",
            "Create a new Stripe customer",
            {
                "email": {"type": "string", "description": "Customer email"},
                "name": {"type": "string", "description": "Customer name"},
                "userId": {"type": "string", "description": "PocketBase user ID to link"},
                "metadata": metadata,
            },
            ["email"],
            self._create_customer,
        )
        tool(
            "stripe_get_customer",
            "Retrieve a Stripe customer by ID",
            {"customerId": customer_id},
            ["customerId"],
            self._get_customer,
        )
        tool(
            "stripe_update_customer",
            "Update a Stripe customer",
            {
                "customerId": customer_id,
                "email": {"type": "string", "description": "Updated email"},
                "name": {"type": "string", "description": "Updated name"},
                "metadata": {"type": "object", "description": "Updated metadata"},
            },
            ["customerId"],
            self._update_customer,
        )
        tool(
            "stripe_create_product",
            "Create a new Stripe product with a price",
            {
                "name": {"type": "string", "description": "Product name"},
                "description": {"type": "string", "description": "Product description"},
                "price": {"type": "number", "description": "Price in cents"},
                "currency": {"type": "string", "description": "Currency code"},
                "recurring": {"type": "boolean", "description": "Whether the price is recurring"},
                "interval": {
                    "type": "string",
                    "description": "Billing interval for recurring prices",
                    "enum": ["day", "week", "month", "year"],
                },
                "metadata": metadata,
            },
            ["name", "price"],
            self._create_product,
        )
        tool(
            "stripe_sync_products",
            "Sync active Stripe products and prices into PocketBase",
            {},
            [],
            self._sync_products,
        )
        tool(
            "stripe_create_payment_intent",
            "Create a payment intent for processing payments",
            {
                "amount": {"type": "number", "description": "Amount in cents"},
                "currency": {"type": "string", "description": "Currency code (e.g., USD)"},
                "customerId": customer_id,
                "description": {"type": "string", "description": "Payment description"},
                "metadata": metadata,
            },
            ["amount", "currency"],
            self._create_payment_intent,
        )
        tool(
            "stripe_confirm_payment_intent",
            "Confirm a payment intent",
            {
                "paymentIntentId": payment_intent_id,
                "paymentMethodId": {"type": "string", "description": "Payment Method ID"},
                "returnUrl": {"type": "string", "description": "Return URL for redirect-based methods"},
            },
            ["paymentIntentId"],
            self._confirm_payment_intent,
        )
        tool(
            "stripe_capture_payment_intent",
            "Capture an authorised payment intent",
            {
                "paymentIntentId": payment_intent_id,
                "amountToCapture": {"type": "number", "description": "Amount to capture in cents"},
            },
            ["paymentIntentId"],
            self._capture_payment_intent,
        )
        tool(
            "stripe_create_refund",
            "Create a refund",
            {
                "paymentIntentId": payment_intent_id,
                "chargeId": {"type": "string", "description": "Charge ID"},
                "amount": {"type": "number", "description": "Refund amount in cents"},
                "reason": {
                    "type": "string",
                    "description": "Refund reason",
                    "enum": ["duplicate", "fraudulent", "requested_by_customer"],
                },
                "metadata": metadata,
            },
            [],
            self._create_refund,
        )
        tool(
            "stripe_cancel_subscription",
            "Cancel a subscription",
            {
                "subscriptionId": {"type": "string", "description": "Subscription ID"},
                "atPeriodEnd": {"type": "boolean", "description": "Cancel at period end"},
            },
            ["subscriptionId"],
            self._cancel_subscription,
        )
        tool(
            "stripe_create_checkout_session",
            "Create a Checkout session",
            {
                "priceId": {"type": "string", "description": "Price ID"},
                "successUrl": {"type": "string", "description": "Success redirect URL"},
                "cancelUrl": {"type": "string", "description": "Cancel redirect URL"},
                "customerId": customer_id,
                "customerEmail": {"type": "string", "description": "Customer Email"},
                "mode": {
                    "type": "string",
                    "description": "Mode (payment, subscription, setup)",
                    "enum": ["payment", "subscription", "setup"],
                },
                "metadata": {"type": "object", "description": "Session metadata"},
            },
            ["priceId", "successUrl", "cancelUrl"],
            self._create_checkout_session,
        )
        tool(
            "stripe_create_payment_method",
            "Create a payment method",
            {
                "type": {"type": "string", "description": "Payment method type (card, sepa_debit, etc.)"},
                "card": {"type": "object", "description": "Card details"},
                "metadata": {"type": "object", "description": "Payment method metadata"},
            },
            ["type"],
            self._create_payment_method,
        )
        tool(
            "stripe_attach_payment_method",
            "Attach payment method to customer",
            {
                "paymentMethodId": {"type": "string", "description": "Payment method ID"},
                "customerId": customer_id,
            },
            ["paymentMethodId", "customerId"],
            self._attach_payment_method,
        )
        tool(
            "stripe_detach_payment_method",
            "Detach a payment method from its customer",
            {"paymentMethodId": {"type": "string", "description": "Payment method ID"}},
            ["paymentMethodId"],
            self._detach_payment_method,
        )
        tool(
            "stripe_list_payment_methods",
            "List customer payment methods",
            {
                "customerId": customer_id,
                "type": {"type": "string", "description": "Payment method type filter"},
            },
            ["customerId"],
            self._list_payment_methods,
        )
        tool(
            "stripe_create_setup_intent",
            "Create a setup intent for saving payment methods",
            {
                "customerId": customer_id,
                "usage": {
                    "type": "string",
                    "description": "Usage type (on_session, off_session)",
                    "enum": ["on_session", "off_session"],
                },
                "paymentMethodTypes": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Payment method types",
                },
            },
            ["customerId"],
            self._create_setup_intent,
        )
        tool(
            "stripe_create_payment_link",
            "Create a payment link",
            {
                "priceId": {"type": "string", "description": "Price ID"},
                "quantity": {"type": "number", "description": "Quantity"},
                "metadata": {"type": "object", "description": "Link metadata"},
            },
            ["priceId"],
            self._create_payment_link,
        )
        tool(
            "stripe_create_coupon",
            "Create a discount coupon",
            {
                "id": {"type": "string", "description": "Coupon code (generated when omitted)"},
                "duration": {
                    "type": "string",
                    "description": "How long the discount applies",
                    "enum": ["forever", "once", "repeating"],
                },
                "percentOff": {"type": "number", "description": "Percentage discount"},
                "amountOff": {"type": "number", "description": "Fixed discount in cents"},
                "currency": {"type": "string", "description": "Currency for amountOff"},
                "durationInMonths": {"type": "number", "description": "Months, for repeating coupons"},
                "maxRedemptions": {"type": "number", "description": "Maximum number of redemptions"},
                "metadata": metadata,
            },
            ["duration"],
            self._create_coupon,
        )
        tool(
            "stripe_handle_webhook",
            "Verify and process a Stripe webhook event",
            {
                "body": {"type": "string", "description": "Webhook payload"},
                "signature": {"type": "string", "description": "Stripe signature header"},
            },
            ["body", "signature"],
            self._handle_webhook,
        )

    # -- customers -----------------------------------------------------------

    async def _create_customer(self, args: dict[str, Any]) -> dict[str, Any]:
        email = args["email"]
        answered, existing = await self._find_mirrored(CUSTOMERS_COLLECTION, f"email={quote_filter(email)}")
        if existing is not None:
            return {"customer": existing, "existing": True}

        customer_metadata = {"userId": args.get("userId", ""), **args.get("metadata", {})}
        customer = await self.client.create_customer(email, args.get("name"), customer_metadata)
        if not answered:
            return {"customer": customer, "record": None}
        mirrored = await self._mirror(
            "stripe_create_customer",
            lambda s: s.handle.create_record(
                CUSTOMERS_COLLECTION,
                {
                    "email": email,
                    "name": args.get("name"),
                    "stripeCustomerId": customer["id"],
                    "userId": args.get("userId"),
                    "metadata": args.get("metadata", {}),
                },
            ),
        )
        return {"customer": customer, "record": mirrored}

    async def _get_customer(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"customer": await self.client.retrieve_customer(args["customerId"])}

    async def _update_customer(self, args: dict[str, Any]) -> dict[str, Any]:
        fields = {key: args[key] for key in ("email", "name", "metadata") if key in args}
        customer = await self.client.update_customer(args["customerId"], fields)
        return {"customer": customer}

    # -- products ------------------------------------------------------------

    async def _create_product(self, args: dict[str, Any]) -> dict[str, Any]:
        currency = (args.get("currency") or "usd").lower()
        recurring = bool(args.get("recurring"))
        interval = (args.get("interval") or "month") if recurring else None
        product = await self.client.create_product(
            args["name"], args.get("description"), args.get("metadata")
        )
        price = await self.client.create_price(
            product["id"], int(args["price"]), currency=currency, interval=interval
        )
        mirrored = await self._mirror(
            "stripe_create_product",
            lambda s: s.handle.create_record(
                PRODUCTS_COLLECTION,
                {
                    "name": args["name"],
                    "description": args.get("description"),
                    "price": int(args["price"]),
                    "currency": currency,
                    "recurring": recurring,
                    "interval": interval,
                    "stripeProductId": product["id"],
                    "stripePriceId": price["id"],
                    "active": True,
                    "metadata": args.get("metadata", {}),
                },
            ),
        )
        return {"product": product, "price": price, "record": mirrored}

    async def _sync_products(self, args: dict[str, Any]) -> dict[str, Any]:
        """Upsert one ``stripe_products`` row per active (product, price) pair."""
        if not self._executor.holder.is_configured:
            raise UnavailableError("Syncing products needs a PocketBase instance to write to")
        results: list[dict[str, Any]] = []
        for product in await self.client.list_active_products():
            for price in await self.client.list_active_prices(product["id"]):
                results.append(await self._sync_price(product, price))
        logger.info("Synced %d Stripe prices into %s", len(results), PRODUCTS_COLLECTION)
        return {"synced": len(results), "results": results}

    async def _sync_price(self, product: dict[str, Any], price: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {"productId": product["id"], "priceId": price["id"]}
        recurring = price.get("recurring") or {}
        data = {
            "name": product.get("name"),
            "description": product.get("description"),
            "price": price.get("unit_amount") or 0,
            "currency": price.get("currency"),
            "recurring": bool(recurring),
            "interval": recurring.get("interval"),
            "stripeProductId": product["id"],
            "stripePriceId": price["id"],
            "active": bool(product.get("active", True) and price.get("active", True)),
            "metadata": {**(product.get("metadata") or {}), **(price.get("metadata") or {})},
        }
        answered, existing = await self._find_mirrored(
            PRODUCTS_COLLECTION,
            f"stripeProductId={quote_filter(product['id'])} && stripePriceId={quote_filter(price['id'])}",
        )
        if not answered:
            return {**result, "action": "error", "error": "PocketBase lookup failed"}
        try:
            if existing is not None:
                await self._executor.execute(
                    lambda s: s.handle.update_record(PRODUCTS_COLLECTION, existing["id"], data),
                    name="stripe_sync_products:update",
                )
                return {**result, "action": "updated"}
            await self._executor.execute(
                lambda s: s.handle.create_record(PRODUCTS_COLLECTION, data),
                name="stripe_sync_products:create",
            )
        except Exception as exc:
            return {**result, "action": "error", "error": str(exc)}
        return {**result, "action": "created"}

    # -- payments ------------------------------------------------------------

    async def _create_payment_intent(self, args: dict[str, Any]) -> dict[str, Any]:
        intent = await self.client.create_payment_intent({
            "amount": int(args["amount"]),
            "currency": args["currency"].lower(),
            "customer": args.get("customerId"),
            "description": args.get("description"),
            "metadata": args.get("metadata"),
        })
        return {
            "paymentIntentId": intent["id"],
            "clientSecret": intent.get("client_secret"),
            "status": intent.get("status"),
        }

    async def _confirm_payment_intent(self, args: dict[str, Any]) -> dict[str, Any]:
        intent = await self.client.confirm_payment_intent(
            args["paymentIntentId"],
            {"payment_method": args.get("paymentMethodId"), "return_url": args.get("returnUrl")},
        )
        return {"paymentIntent": intent}

    async def _capture_payment_intent(self, args: dict[str, Any]) -> dict[str, Any]:
        amount = args.get("amountToCapture")
        intent = await self.client.capture_payment_intent(
            args["paymentIntentId"], int(amount) if amount is not None else None
        )
        return {"paymentIntent": intent}

    async def _create_refund(self, args: dict[str, Any]) -> dict[str, Any]:
        if not args.get("paymentIntentId") and not args.get("chargeId"):
            raise InputRejected("Either paymentIntentId or chargeId is required")
        amount = args.get("amount")
        refund = await self.client.create_refund({
            "payment_intent": args.get("paymentIntentId"),
            "charge": args.get("chargeId"),
            "amount": int(amount) if amount is not None else None,
            "reason": args.get("reason"),
            "metadata": args.get("metadata"),
        })
        return {"refund": refund}

    # -- subscriptions & checkout --------------------------------------------

    async def _cancel_subscription(self, args: dict[str, Any]) -> dict[str, Any]:
        subscription = await self.client.cancel_subscription(
            args["subscriptionId"], at_period_end=bool(args.get("atPeriodEnd"))
        )
        return {"subscription": subscription}

    async def _create_checkout_session(self, args: dict[str, Any]) -> dict[str, Any]:
        mode = args.get("mode") or "payment"
        fields: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": args["priceId"], "quantity": 1}],
            "success_url": args["successUrl"],
            "cancel_url": args["cancelUrl"],
            "customer": args.get("customerId"),
            "metadata": args.get("metadata"),
        }
        if not args.get("customerId"):
            fields["customer_email"] = args.get("customerEmail")
        session = await self.client.create_checkout_session(fields)
        return {"sessionId": session["id"], "url": session.get("url")}

    # -- payment methods -----------------------------------------------------

    async def _create_payment_method(self, args: dict[str, Any]) -> dict[str, Any]:
        method = await self.client.create_payment_method({
            "type": args["type"],
            "card": args.get("card"),
            "metadata": args.get("metadata"),
        })
        return {"paymentMethod": method}

    async def _attach_payment_method(self, args: dict[str, Any]) -> dict[str, Any]:
        method = await self.client.attach_payment_method(args["paymentMethodId"], args["customerId"])
        return {"paymentMethod": method}

    async def _detach_payment_method(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"paymentMethod": await self.client.detach_payment_method(args["paymentMethodId"])}

    async def _list_payment_methods(self, args: dict[str, Any]) -> dict[str, Any]:
        result = await self.client.list_payment_methods(args["customerId"], args.get("type") or "card")
        methods = result.get("data", [])
        return {"paymentMethods": methods, "count": len(methods), "hasMore": result.get("has_more", False)}

    async def _create_setup_intent(self, args: dict[str, Any]) -> dict[str, Any]:
        intent = await self.client.create_setup_intent({
            "customer": args["customerId"],
            "usage": args.get("usage") or "off_session",
            "payment_method_types": args.get("paymentMethodTypes") or ["card"],
        })
        return {"setupIntentId": intent["id"], "clientSecret": intent.get("client_secret")}

    async def _create_payment_link(self, args: dict[str, Any]) -> dict[str, Any]:
        link = await self.client.create_payment_link({
            "line_items": [{"price": args["priceId"], "quantity": int(args.get("quantity") or 1)}],
            "metadata": args.get("metadata"),
        })
        return {"paymentLink": link, "url": link.get("url")}

    async def _create_coupon(self, args: dict[str, Any]) -> dict[str, Any]:
        if args.get("percentOff") is None and args.get("amountOff") is None:
            raise InputRejected("Either percentOff or amountOff is required")
        coupon = await self.client.create_coupon({
            "id": args.get("id"),
            "duration": args["duration"],
            "percent_off": args.get("percentOff"),
            "amount_off": args.get("amountOff"),
            "currency": args.get("currency"),
            "duration_in_months": args.get("durationInMonths"),
            "max_redemptions": args.get("maxRedemptions"),
            "metadata": args.get("metadata"),
        })
        return {"coupon": coupon}

    # -- webhooks ------------------------------------------------------------

    async def _handle_webhook(self, args: dict[str, Any]) -> dict[str, Any]:
        if not self._webhook_secret:
            raise UnavailableError(
                "STRIPE_WEBHOOK_SECRET environment variable is required",
                hint="Set STRIPE_WEBHOOK_SECRET to the signing secret of the webhook endpoint",
            )
        event = verify_webhook(args["body"], args["signature"], self._webhook_secret)
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {})
        logger.info("Stripe webhook %s (%s)", event_type, event.get("id"))

        if event_type == "checkout.session.completed":
            processed = await self._record_payment(
                obj, obj.get("amount_total"), f"Payment for session {obj.get('id')}"
            )
        elif event_type == "invoice.payment_succeeded":
            processed = await self._record_payment(
                obj, obj.get("amount_paid"), f"Invoice payment {obj.get('number')}"
            )
        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            processed = await self._upsert_subscription(obj)
        elif event_type == "customer.subscription.deleted":
            processed = await self._upsert_subscription({**obj, "status": "canceled"})
        else:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"received": True, "eventType": event_type, "processed": False}
        return {"received": True, "eventType": event_type, "processed": processed}

    async def _record_payment(self, obj: dict[str, Any], amount: int | None, description: str) -> bool:
        if not amount or not obj.get("customer"):
            return False
        record = await self._mirror(
            "stripe_payments",
            lambda s: s.handle.create_record(
                PAYMENTS_COLLECTION,
                {
                    "customerId": obj["customer"],
                    "amount": amount,
                    "currency": obj.get("currency"),
                    "status": "succeeded",
                    "stripePaymentIntentId": obj.get("payment_intent") or obj.get("id"),
                    "description": description,
                    "metadata": obj.get("metadata") or {},
                },
            ),
        )
        return record is not None

    async def _upsert_subscription(self, sub: dict[str, Any]) -> bool:
        fields = {
            "status": sub.get("status"),
            "currentPeriodStart": _iso(sub.get("current_period_start")),
            "currentPeriodEnd": _iso(sub.get("current_period_end")),
            "cancelAtPeriodEnd": sub.get("cancel_at_period_end", False),
        }
        answered, existing = await self._find_mirrored(
            SUBSCRIPTIONS_COLLECTION, f"stripeSubscriptionId={quote_filter(sub.get('id', ''))}"
        )
        if not answered:
            logger.warning("Skipping mirror of subscription %s: lookup did not complete", sub.get("id"))
            return False
        if existing is not None:
            record = await self._mirror(
                "stripe_subscriptions",
                lambda s: s.handle.update_record(SUBSCRIPTIONS_COLLECTION, existing["id"], fields),
            )
        else:
            record = await self._mirror(
                "stripe_subscriptions",
                lambda s: s.handle.create_record(
                    SUBSCRIPTIONS_COLLECTION,
                    {
                        "customerId": sub.get("customer"),
                        "stripeSubscriptionId": sub.get("id"),
                        "metadata": sub.get("metadata") or {},
                        **fields,
                    },
                ),
            )
        return record is not None
