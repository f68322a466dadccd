"""Flutterwave Service - hosted payments, verification and webhooks (API v3).

- POST /payments                              hosted payment link for a plan
- GET  /transactions/verify_by_reference      authoritative status by tx_ref
- GET  /transactions/{id}/verify              authoritative status by transaction id
- GET  /subscriptions                         subscription id for a paying customer
- PUT  /subscriptions/{id}/cancel             provider-side cancellation

Webhooks carry a `verif-hash` header that must equal FLW_WEBHOOK_SECRET.
Every outbound call uses a bounded timeout; any transport failure or non-2xx
response becomes a PaymentProviderError.
"""
from typing import Any, Dict, Mapping, Optional
import hmac
import json
import logging

import httpx

from models import PaymentProviderName
from services.plan_catalog import BillingConfig, PlanTerms
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

SIGNATURE_HEADER = "verif-hash"


class FlutterwaveService(PaymentProvider):
    """Flutterwave v3 client implementing the PaymentProvider contract."""

    name = PaymentProviderName.FLUTTERWAVE

    def __init__(self, config: BillingConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.config.flutterwave_secret_key:
            raise PaymentProviderError(
                "Payment provider is not configured.",
                provider_message="FLW_SECRET_KEY is not set",
            )

        headers = {
            "Authorization": f"Bearer {self.config.flutterwave_secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.config.flutterwave_base_url,
                timeout=self.config.provider_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=payload, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Flutterwave timeout method=%s path=%s", method, path)
            raise PaymentProviderError(provider_message=f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.error("Flutterwave transport error method=%s path=%s error=%s", method, path, e)
            raise PaymentProviderError(provider_message=str(e))

        if response.status_code >= 400:
            logger.error(
                "Flutterwave API error method=%s path=%s status=%s body=%s",
                method, path, response.status_code, response.text[:500],
            )
            raise PaymentProviderError(provider_message=f"HTTP {response.status_code}: {response.text[:500]}")

        try:
            body = response.json()
        except ValueError:
            raise PaymentProviderError(provider_message="Invalid JSON from Flutterwave")
        if not isinstance(body, dict):
            raise PaymentProviderError(provider_message="Unexpected Flutterwave response payload type")
        return body

    # =========================================================================
    # Checkout
    # =========================================================================

    async def initialize_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        payment_plan = request.plan.flutterwave_plan_id
        if not payment_plan:
            raise InvalidPlan(
                f"Plan '{request.plan.plan_id.value}' has no Flutterwave payment plan configured",
                code="FLW_PLAN_MISSING",
            )

        payload = {
            "tx_ref": request.tx_ref,
            "amount": request.amount,
            "currency": request.currency,
            "payment_plan": payment_plan,
            "redirect_url": request.redirect_url,
            "customer": {
                "email": request.customer_email,
                "name": request.customer_name,
            },
            "meta": request.metadata,
        }
        try:
            body = await self._request("POST", "/payments", payload=payload)
        except PaymentProviderError as e:
            raise PaymentInitError(provider_message=e.provider_message)

        link = (body.get("data") or {}).get("link")
        if body.get("status") != "success" or not link:
            logger.error("Flutterwave payment init rejected tx_ref=%s body=%s", request.tx_ref, body)
            raise PaymentInitError(provider_message=str(body.get("message") or body)[:500])

        return CheckoutSession(payment_link=link, tx_ref=request.tx_ref)

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_transaction(
        self,
        tx_ref: Optional[str] = None,
        transaction_ref: Optional[str] = None,
    ) -> VerifiedTransaction:
        if transaction_ref:
            body = await self._request("GET", f"/transactions/{transaction_ref}/verify")
        elif tx_ref:
            body = await self._request("GET", "/transactions/verify_by_reference", params={"tx_ref": tx_ref})
        else:
            raise BadRequest("A transaction reference is required.", code="TX_REF_REQUIRED")

        data = body.get("data") or {}
        if body.get("status") != "success" or not data:
            # Flutterwave answers unknown references with status=error; nothing to activate
            return VerifiedTransaction(status="not_found", tx_ref=tx_ref, transaction_ref=transaction_ref)

        meta = data.get("meta") or data.get("meta_data") or {}
        customer = data.get("customer") or {}
        amount = data.get("amount")
        return VerifiedTransaction(
            status=str(data.get("status") or "").lower(),
            tx_ref=data.get("tx_ref") or tx_ref,
            transaction_ref=str(data["id"]) if data.get("id") is not None else transaction_ref,
            user_id=metadata_value(meta, "user_id", "userId"),
            plan_id=metadata_value(meta, "plan_id", "planId"),
            customer_ref=str(customer["id"]) if customer.get("id") is not None else None,
            amount=float(amount) if amount is not None else None,
            currency=data.get("currency"),
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def find_subscription_ref(self, customer_email: str, plan: PlanTerms) -> Optional[str]:
        """Payment plan checkouts do not return the subscription id; list it by customer."""
        params = {"email": customer_email, "status": "active"}
        if plan.flutterwave_plan_id:
            params["plan"] = plan.flutterwave_plan_id
        body = await self._request("GET", "/subscriptions", params=params)
        if body.get("status") != "success":
            raise PaymentProviderError(provider_message=str(body.get("message") or body)[:500])

        for entry in body.get("data") or []:
            if entry.get("id") is not None and str(entry.get("status") or "active").lower() == "active":
                return str(entry["id"])
        logger.warning("No active Flutterwave subscription found plan=%s", plan.plan_id.value)
        return None

    async def cancel_subscription(self, subscription_ref: str) -> None:
        body = await self._request("PUT", f"/subscriptions/{subscription_ref}/cancel")
        if body.get("status") != "success":
            raise PaymentProviderError(provider_message=str(body.get("message") or body)[:500])
        logger.info("Flutterwave subscription cancelled subscription_ref=%s", subscription_ref)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        secret = self.config.flutterwave_webhook_secret
        signature = headers.get(SIGNATURE_HEADER) or ""
        if not secret:
            logger.error("FLW_WEBHOOK_SECRET not set - rejecting Flutterwave webhook")
            raise Unauthorized("Webhook secret not configured.", code="WEBHOOK_SECRET_MISSING")
        if not signature or not hmac.compare_digest(signature.encode(), secret.encode()):
            raise Unauthorized("Invalid webhook signature.", code="INVALID_WEBHOOK_SIGNATURE")

        try:
            envelope = json.loads(payload)
        except ValueError:
            raise BadRequest("Invalid JSON payload", code="INVALID_JSON")
        if not isinstance(envelope, dict):
            raise BadRequest("Invalid webhook envelope", code="INVALID_JSON")

        event_type = envelope.get("event") or envelope.get("event.type") or ""
        data = envelope.get("data") or {}
        event_id = f"{event_type}:{data.get('id') or data.get('tx_ref') or 'unknown'}"
        meta = envelope.get("meta_data") or data.get("meta") or data.get("meta_data") or {}
        customer = data.get("customer") or {}
        customer_ref = str(customer["id"]) if customer.get("id") is not None else None

        if event_type == "charge.completed":
            status = str(data.get("status") or "").lower()
            if status == "successful":
                amount = data.get("amount")
                return PaymentSucceeded(
                    event_id=event_id,
                    provider=self.name,
                    tx_ref=data.get("tx_ref"),
                    user_id=metadata_value(meta, "user_id", "userId"),
                    plan_id=metadata_value(meta, "plan_id", "planId"),
                    customer_ref=customer_ref,
                    amount=float(amount) if amount is not None else None,
                    currency=data.get("currency"),
                )
            if status == "failed":
                return PaymentFailed(
                    event_id=event_id,
                    provider=self.name,
                    tx_ref=data.get("tx_ref"),
                    user_id=metadata_value(meta, "user_id", "userId"),
                    reason=data.get("processor_response"),
                )
        elif event_type == "subscription.cancelled":
            return SubscriptionCanceled(
                event_id=event_id,
                provider=self.name,
                subscription_ref=str(data["id"]) if data.get("id") is not None else None,
                customer_ref=customer_ref,
            )

        return UnknownEvent(event_id=event_id, provider=self.name, event_type=event_type or "unknown")
