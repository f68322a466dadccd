"""Stripe Service - Checkout Session creation, verification and webhook parsing.

Key Principles:
- Hosted Checkout in subscription mode; the price comes from the plan catalog
- Metadata carries user_id, plan_id and tx_ref for webhook correlation
- Subscription metadata mirrors the checkout metadata so renewal invoices
  can be correlated too
- The SDK is synchronous; calls run in a worker thread bounded by the
  configured provider timeout

Events Handled:
- checkout.session.completed / checkout.session.async_payment_succeeded
- checkout.session.async_payment_failed
- invoice.paid / invoice.payment_succeeded (renewals)
- invoice.payment_failed
- customer.subscription.deleted
"""
from typing import Any, Mapping, Optional
import asyncio
import json
import logging

import stripe

from models import PaymentProviderName
from services.plan_catalog import BillingConfig
from services.payment_events import (
    CheckoutRequest,
    CheckoutSession,
    PaymentFailed,
    PaymentProvider,
    PaymentSucceeded,
    ProviderEvent,
    SubscriptionCanceled,
    UnknownEvent,
    VerifiedTransaction,
    metadata_value,
)
from utils.errors import BadRequest, InvalidPlan, PaymentInitError, PaymentProviderError, Unauthorized

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def _field(obj: Any, key: str) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _cents_to_amount(value: Any) -> Optional[float]:
    return value / 100 if isinstance(value, (int, float)) else None


def _with_query(url: str, query: str) -> str:
    return f"{url}{'&' if '?' in url else '?'}{query}"


class StripeService(PaymentProvider):
    """Stripe billing operations implementing the PaymentProvider contract."""

    name = PaymentProviderName.STRIPE

    def __init__(self, config: BillingConfig):
        self.config = config
        # The SDK otherwise waits up to 80s per request
        stripe.default_http_client = stripe.new_default_http_client(timeout=config.provider_timeout_seconds)

    async def _call(self, fn, **params):
        if not self.config.stripe_secret_key:
            raise PaymentProviderError(
                "Payment provider is not configured.",
                provider_message="STRIPE_SECRET_KEY is not set",
            )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self.config.stripe_secret_key, **params),
                timeout=self.config.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Stripe call timed out fn=%s", getattr(fn, "__qualname__", fn))
            raise PaymentProviderError(provider_message="timeout")
        except stripe.StripeError as e:
            logger.error("Stripe API error fn=%s error=%s", getattr(fn, "__qualname__", fn), e)
            raise PaymentProviderError(provider_message=str(e))

    # =========================================================================
    # Checkout
    # =========================================================================

    async def initialize_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        price_id = request.plan.stripe_price_id
        if not price_id:
            raise InvalidPlan(
                f"Plan '{request.plan.plan_id.value}' has no Stripe price configured",
                code="STRIPE_PRICE_MISSING",
            )

        metadata = {**request.metadata, "tx_ref": request.tx_ref}
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": request.tx_ref,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": _with_query(
                request.redirect_url,
                f"status=successful&tx_ref={request.tx_ref}&transaction_id={{CHECKOUT_SESSION_ID}}",
            ),
            "cancel_url": _with_query(request.redirect_url, f"status=cancelled&tx_ref={request.tx_ref}"),
        }
        if request.customer_ref:
            params["customer"] = request.customer_ref
        else:
            params["customer_email"] = request.customer_email

        try:
            session = await self._call(stripe.checkout.Session.create, **params)
        except PaymentProviderError as e:
            raise PaymentInitError(provider_message=e.provider_message)

        url = _field(session, "url")
        if not url:
            raise PaymentInitError(provider_message="Checkout session has no url")
        return CheckoutSession(
            payment_link=url,
            tx_ref=request.tx_ref,
            checkout_ref=_field(session, "id"),
            customer_ref=_field(session, "customer"),
        )

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_transaction(
        self,
        tx_ref: Optional[str] = None,
        transaction_ref: Optional[str] = None,
    ) -> VerifiedTransaction:
        # Stripe can only be queried by checkout session id
        if not transaction_ref:
            return VerifiedTransaction(status="not_found", tx_ref=tx_ref)

        session = await self._call(stripe.checkout.Session.retrieve, id=transaction_ref)
        metadata = _field(session, "metadata")
        payment_status = str(_field(session, "payment_status") or "")
        currency = _field(session, "currency")
        return VerifiedTransaction(
            status="successful" if payment_status == "paid" else payment_status or "unknown",
            tx_ref=_field(session, "client_reference_id") or _field(metadata, "tx_ref") or tx_ref,
            transaction_ref=transaction_ref,
            user_id=_field(metadata, "user_id"),
            plan_id=_field(metadata, "plan_id"),
            customer_ref=_field(session, "customer"),
            subscription_ref=_field(session, "subscription"),
            amount=_cents_to_amount(_field(session, "amount_total")),
            currency=currency.upper() if currency else None,
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_subscription(self, subscription_ref: str) -> None:
        await self._call(stripe.Subscription.cancel, subscription_exposed_id=subscription_ref)
        logger.info("Stripe subscription cancelled subscription_ref=%s", subscription_ref)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        secret = self.config.stripe_webhook_secret
        if not secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting Stripe webhook")
            raise Unauthorized("Webhook secret not configured.", code="WEBHOOK_SECRET_MISSING")

        signature = headers.get(SIGNATURE_HEADER) or ""
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Stripe webhook signature verification failed: %s", e)
            raise Unauthorized("Invalid webhook signature.", code="INVALID_WEBHOOK_SIGNATURE")
        except ValueError:
            raise BadRequest("Invalid JSON payload", code="INVALID_JSON")

        envelope = json.loads(payload)
        event_id = envelope.get("id") or "unknown"
        event_type = envelope.get("type") or "unknown"
        obj = (envelope.get("data") or {}).get("object") or {}

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            if obj.get("mode") == "subscription" and obj.get("payment_status") == "paid":
                return self._checkout_succeeded(event_id, obj)
        elif event_type == "checkout.session.async_payment_failed":
            metadata = obj.get("metadata") or {}
            return PaymentFailed(
                event_id=event_id,
                provider=self.name,
                tx_ref=obj.get("client_reference_id") or metadata.get("tx_ref"),
                user_id=metadata.get("user_id"),
                reason="async_payment_failed",
            )
        elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
            # The first invoice is covered by checkout.session.completed
            if obj.get("billing_reason") != "subscription_create":
                return self._invoice_succeeded(event_id, obj)
        elif event_type == "invoice.payment_failed":
            metadata = self._invoice_metadata(obj)
            return PaymentFailed(
                event_id=event_id,
                provider=self.name,
                tx_ref=obj.get("id"),
                user_id=metadata.get("user_id"),
                reason=(obj.get("last_finalization_error") or {}).get("message"),
            )
        elif event_type == "customer.subscription.deleted":
            return SubscriptionCanceled(
                event_id=event_id,
                provider=self.name,
                subscription_ref=obj.get("id"),
                customer_ref=obj.get("customer"),
            )

        return UnknownEvent(event_id=event_id, provider=self.name, event_type=event_type)

    def _checkout_succeeded(self, event_id: str, session: dict) -> PaymentSucceeded:
        metadata = session.get("metadata") or {}
        currency = session.get("currency")
        return PaymentSucceeded(
            event_id=event_id,
            provider=self.name,
            tx_ref=session.get("client_reference_id") or metadata.get("tx_ref"),
            user_id=metadata_value(metadata, "user_id"),
            plan_id=metadata_value(metadata, "plan_id"),
            customer_ref=session.get("customer"),
            subscription_ref=session.get("subscription"),
            amount=_cents_to_amount(session.get("amount_total")),
            currency=currency.upper() if currency else None,
        )

    @staticmethod
    def _invoice_metadata(invoice: dict) -> dict:
        details = invoice.get("subscription_details") or (
            (invoice.get("parent") or {}).get("subscription_details") or {}
        )
        return details.get("metadata") or {}

    @staticmethod
    def _invoice_subscription(invoice: dict) -> Optional[str]:
        subscription = invoice.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        if subscription:
            return subscription
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return details.get("subscription")

    def _invoice_succeeded(self, event_id: str, invoice: dict) -> PaymentSucceeded:
        metadata = self._invoice_metadata(invoice)
        currency = invoice.get("currency")
        return PaymentSucceeded(
            event_id=event_id,
            provider=self.name,
            tx_ref=invoice.get("id"),
            user_id=metadata_value(metadata, "user_id"),
            plan_id=metadata_value(metadata, "plan_id"),
            customer_ref=invoice.get("customer"),
            subscription_ref=self._invoice_subscription(invoice),
            amount=_cents_to_amount(invoice.get("amount_paid")),
            currency=currency.upper() if currency else None,
        )
