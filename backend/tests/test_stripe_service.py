"""
Stripe adapter: Checkout Session creation and retrieval with the SDK patched,
webhook parsing against real Stripe-style signatures.
"""
import dataclasses
import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from models import PlanId
from services.payment_events import (
    CheckoutRequest,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    UnknownEvent,
)
from services.plan_catalog import default_catalog
from services.stripe_service import StripeService
from utils.errors import InvalidPlan, PaymentInitError, PaymentProviderError, Unauthorized


def _signed(payload: dict, secret="whsec_test"):
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return body, {"stripe-signature": f"t={timestamp},v1={signature}"}


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def _checkout_request():
    terms = default_catalog()[PlanId.PREMIUM]
    return CheckoutRequest(
        tx_ref="SM_1700000000000_abc123",
        plan=terms,
        amount=terms.amount,
        currency="USD",
        customer_email="ada@example.com",
        customer_name="Ada Okafor",
        redirect_url="https://app.test/verify",
        metadata={"user_id": "user-a", "plan_id": "premium"},
    )


def test_sdk_http_client_uses_provider_timeout(billing_config):
    with patch.object(stripe, "default_http_client", None), \
            patch.object(stripe, "new_default_http_client") as new_client:
        StripeService(dataclasses.replace(billing_config, provider_timeout_seconds=7.5))
        assert stripe.default_http_client is new_client.return_value

    new_client.assert_called_once_with(timeout=7.5)


@pytest.mark.asyncio
async def test_initialize_checkout_creates_subscription_session(billing_config):
    session = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1", "customer": None}
    with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
        result = await StripeService(billing_config).initialize_checkout(_checkout_request())

    assert result.payment_link == session["url"]
    assert result.checkout_ref == "cs_test_1"
    kwargs = create.call_args.kwargs
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_premium", "quantity": 1}]
    assert kwargs["client_reference_id"] == "SM_1700000000000_abc123"
    assert kwargs["metadata"]["user_id"] == "user-a"
    assert kwargs["subscription_data"]["metadata"]["plan_id"] == "premium"
    assert kwargs["customer_email"] == "ada@example.com"
    assert "transaction_id={CHECKOUT_SESSION_ID}" in kwargs["success_url"]


@pytest.mark.asyncio
async def test_sdk_error_is_wrapped(billing_config):
    with patch.object(stripe.checkout.Session, "create", side_effect=stripe.StripeError("card network down")):
        with pytest.raises(PaymentInitError) as exc_info:
            await StripeService(billing_config).initialize_checkout(_checkout_request())
    assert exc_info.value.provider_message == "card network down"
    assert "card network" not in exc_info.value.message


@pytest.mark.asyncio
async def test_missing_price_is_invalid_plan(billing_config):
    request = _checkout_request()
    request = dataclasses.replace(request, plan=dataclasses.replace(request.plan, stripe_price_id=None))
    with pytest.raises(InvalidPlan):
        await StripeService(billing_config).initialize_checkout(request)


@pytest.mark.asyncio
async def test_unconfigured_key_is_provider_error(billing_config):
    service = StripeService(dataclasses.replace(billing_config, stripe_secret_key=""))
    with pytest.raises(PaymentProviderError):
        await service.cancel_subscription("sub_1")


@pytest.mark.asyncio
async def test_verify_transaction_by_session(billing_config):
    session = {
        "id": "cs_test_1",
        "client_reference_id": "SM_1",
        "payment_status": "paid",
        "metadata": {"user_id": "user-a", "plan_id": "premium", "tx_ref": "SM_1"},
        "customer": "cus_1",
        "subscription": "sub_1",
        "amount_total": 999,
        "currency": "usd",
    }
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session) as retrieve:
        verified = await StripeService(billing_config).verify_transaction(tx_ref="SM_1", transaction_ref="cs_test_1")

    assert retrieve.call_args.kwargs["id"] == "cs_test_1"
    assert verified.successful
    assert verified.amount == 9.99
    assert verified.currency == "USD"
    assert verified.subscription_ref == "sub_1"
    assert verified.user_id == "user-a"


@pytest.mark.asyncio
async def test_verify_without_session_id_is_not_found(billing_config):
    verified = await StripeService(billing_config).verify_transaction(tx_ref="SM_1")
    assert verified.status == "not_found"


@pytest.mark.asyncio
async def test_cancel_subscription_calls_sdk(billing_config):
    with patch.object(stripe.Subscription, "cancel", return_value={"id": "sub_1", "status": "canceled"}) as cancel:
        await StripeService(billing_config).cancel_subscription("sub_1")
    assert cancel.call_args.kwargs["subscription_exposed_id"] == "sub_1"


def test_webhook_signature_is_verified(billing_config):
    service = StripeService(billing_config)
    body, headers = _signed(_event("checkout.session.completed", {"id": "cs_1"}), secret="whsec_other")
    with pytest.raises(Unauthorized):
        service.parse_event(body, headers)
    with pytest.raises(Unauthorized):
        service.parse_event(body, {})


def test_checkout_completed_is_payment_succeeded(billing_config):
    body, headers = _signed(_event("checkout.session.completed", {
        "id": "cs_1",
        "mode": "subscription",
        "payment_status": "paid",
        "client_reference_id": "SM_1",
        "customer": "cus_1",
        "subscription": "sub_1",
        "amount_total": 2999,
        "currency": "usd",
        "metadata": {"user_id": "user-a", "plan_id": "enterprise", "tx_ref": "SM_1"},
    }))

    event = StripeService(billing_config).parse_event(body, headers)

    assert isinstance(event, PaymentSucceeded)
    assert event.event_id == "evt_1"
    assert event.tx_ref == "SM_1"
    assert event.plan_id == "enterprise"
    assert event.subscription_ref == "sub_1"
    assert event.amount == 29.99


def test_renewal_invoice_carries_subscription(billing_config):
    body, headers = _signed(_event("invoice.paid", {
        "id": "in_2",
        "billing_reason": "subscription_cycle",
        "customer": "cus_1",
        "amount_paid": 999,
        "currency": "usd",
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {}}},
    }, event_id="evt_2"))

    event = StripeService(billing_config).parse_event(body, headers)

    assert isinstance(event, PaymentSucceeded)
    assert event.tx_ref == "in_2"
    assert event.subscription_ref == "sub_1"
    assert event.user_id is None


def test_first_invoice_is_left_to_checkout_event(billing_config):
    body, headers = _signed(_event("invoice.paid", {"id": "in_1", "billing_reason": "subscription_create"}))
    assert isinstance(StripeService(billing_config).parse_event(body, headers), UnknownEvent)


def test_failed_invoice_and_deleted_subscription(billing_config):
    service = StripeService(billing_config)
    body, headers = _signed(_event("invoice.payment_failed", {
        "id": "in_3",
        "subscription_details": {"metadata": {"user_id": "user-a"}},
    }))
    failed = service.parse_event(body, headers)
    assert isinstance(failed, PaymentFailed)
    assert failed.user_id == "user-a"

    body, headers = _signed(_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))
    canceled = service.parse_event(body, headers)
    assert isinstance(canceled, SubscriptionCanceled)
    assert canceled.subscription_ref == "sub_1"
