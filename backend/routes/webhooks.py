"""Webhook Routes - payment provider callbacks.

POST /webhook/{provider} - provider is "flutterwave" or "stripe"

200 {"received": true} for any processed, duplicate or ignored event.
401 on a missing/invalid signature, 500 when processing failed (the
provider retries; the failure is recorded in billing_events).
"""
from fastapi import APIRouter, Depends, Request
from services.webhook_service import WebhookService, get_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhook/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    payload = await request.body()
    await webhooks.process(provider, payload, request.headers)
    return {"received": True}
