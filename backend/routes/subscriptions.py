"""Subscription Routes - plan changes, cancellation and payment verification.

Endpoints:
- POST  /api/v1/subscriptions                 - Subscribe to a plan (free applies immediately)
- POST  /api/v1/subscriptions/cancel          - Cancel the active paid subscription
- GET   /api/v1/subscriptions/verify          - Redirect callback from the hosted payment page (public)
- GET   /api/v1/subscriptions/details         - Current plan and billing period
- PATCH /api/v1/subscriptions/payment-method  - Store a payment method reference
- GET   /api/v1/subscriptions/plans           - Plan catalog (public)
- GET   /api/v1/subscriptions/entitlements    - Caller's features, ceilings and usage
- GET   /api/v1/subscriptions/history         - Caller's billing audit trail
"""
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from middleware import require_auth
from services.entitlement_service import EntitlementService, get_entitlement_service
from services.subscription_service import SubscriptionService, get_billing_service
from utils.audit import get_audit_logs_for_user
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])

VERIFY_MAX_ATTEMPTS = 20
VERIFY_WINDOW_SECONDS = 60


class SubscribeRequest(BaseModel):
    """Request to change plan."""
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId")
    payment_method_ref: Optional[str] = Field(default=None, alias="paymentMethodRef")


class PaymentMethodRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method_ref: str = Field(alias="paymentMethodRef", min_length=1)


@router.post("")
async def subscribe(
    body: SubscribeRequest,
    user: dict = Depends(require_auth),
    billing: SubscriptionService = Depends(get_billing_service),
):
    result = await billing.subscribe(user["user_id"], body.plan_id, body.payment_method_ref)
    if "payment_link" in result:
        return {
            "success": True,
            "message": "Payment initialized",
            "data": {"paymentLink": result["payment_link"], "txRef": result["tx_ref"], "planId": result["plan_id"]},
        }
    return {"success": True, "message": result["message"], "data": {"planId": result["plan_id"]}}


@router.post("/cancel")
async def cancel_subscription(
    user: dict = Depends(require_auth),
    billing: SubscriptionService = Depends(get_billing_service),
):
    result = await billing.cancel_subscription(user["user_id"])
    return {"success": True, "message": "Subscription canceled", "data": result}


@router.get("/verify")
async def verify_payment(
    request: Request,
    status: Optional[str] = Query(default=None),
    tx_ref: Optional[str] = Query(default=None),
    transaction_id: Optional[str] = Query(default=None),
    billing: SubscriptionService = Depends(get_billing_service),
):
    """
    Public: the browser lands here after the hosted payment page.
    
    Nothing in the query string is trusted; the provider is asked directly.
    """
    client_ip = request.client.host if request.client else "unknown"
    await rate_limiter.enforce(f"verify:{client_ip}", VERIFY_MAX_ATTEMPTS, VERIFY_WINDOW_SECONDS)

    result = await billing.verify_and_activate(status=status, tx_ref=tx_ref, transaction_ref=transaction_id)
    return result


@router.get("/details")
async def get_details(
    user: dict = Depends(require_auth),
    billing: SubscriptionService = Depends(get_billing_service),
):
    return {"success": True, "data": await billing.get_subscription_details(user["user_id"])}


@router.patch("/payment-method")
async def update_payment_method(
    body: PaymentMethodRequest,
    user: dict = Depends(require_auth),
    billing: SubscriptionService = Depends(get_billing_service),
):
    result = await billing.update_payment_method(user["user_id"], body.payment_method_ref)
    return {"success": True, "message": result["message"]}


@router.get("/plans")
async def list_plans(billing: SubscriptionService = Depends(get_billing_service)):
    return {"success": True, "data": billing.config.describe_plans()}


@router.get("/entitlements")
async def get_entitlements(
    user: dict = Depends(require_auth),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    return {"success": True, "data": await entitlements.get_entitlements(user["user_id"])}


@router.get("/history")
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
    user: dict = Depends(require_auth),
):
    logs = await get_audit_logs_for_user(user["user_id"], limit=limit)
    return {"success": True, "data": logs}
