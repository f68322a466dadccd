"""Webhook Service - provider-neutral webhook consumer with idempotency.

Key Principles:
1. Signature verification happens in the provider's parse_event; a bad or
   missing signature is rejected before anything is recorded
2. Idempotency: every verified event is recorded in billing_events keyed by
   "{provider}:{event id}"; a PROCESSED event is acknowledged and skipped
3. Payment success funnels into SubscriptionService.activate_subscription,
   the same transition used by the redirect callback
4. Failures are marked FAILED and re-raised so the provider retries
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import logging

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, BillingEvent, BillingEventStatus, EmailTemplateAlias, SubscriptionStatus
from services.payment_events import (
    PaymentFailed,
    PaymentSucceeded,
    ProviderEvent,
    SubscriptionCanceled,
    UnknownEvent,
)
from services.subscription_service import SubscriptionService, get_billing_service
from utils.audit import create_audit_log
from utils.errors import InvalidPlan, NotFound, Unauthorized

logger = logging.getLogger(__name__)


def _event_type(event: ProviderEvent) -> str:
    if isinstance(event, UnknownEvent):
        return event.event_type
    return type(event).__name__


class WebhookService:
    """Consumes verified provider events and applies them to subscriptions."""

    def __init__(self, billing: SubscriptionService):
        self.billing = billing

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process(self, provider_name: str, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        provider = self.billing.get_provider(provider_name)

        try:
            event = provider.parse_event(payload, headers)
        except Unauthorized as e:
            logger.warning("WEBHOOK_REJECTED provider=%s code=%s", provider.name.value, e.code)
            await create_audit_log(
                action=AuditAction.WEBHOOK_REJECTED,
                actor_id=provider.name.value,
                metadata={"provider": provider.name.value, "code": e.code},
            )
            raise

        ledger_id = f"{provider.name.value}:{event.event_id}"
        event_type = _event_type(event)
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s", ledger_id, event_type)

        db = database.get_db()
        existing = await db.billing_events.find_one({"event_id": ledger_id}, {"_id": 0})
        if existing and existing.get("status") == BillingEventStatus.PROCESSED.value:
            logger.info("Event %s already processed - skipping", ledger_id)
            return {"event_id": ledger_id, "duplicate": True}

        record = BillingEvent(event_id=ledger_id, provider=provider.name, event_type=event_type).model_dump()
        if existing:
            await db.billing_events.update_one(
                {"event_id": ledger_id},
                {"$set": {"status": BillingEventStatus.PROCESSING.value, "error": None}},
            )
        else:
            try:
                await db.billing_events.insert_one(record)
            except DuplicateKeyError:
                logger.info("Event %s duplicate insert (race) - skipping", ledger_id)
                return {"event_id": ledger_id, "duplicate": True}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                ledger_id, event_type, e,
            )
            await db.billing_events.update_one(
                {"event_id": ledger_id},
                {"$set": {
                    "status": BillingEventStatus.FAILED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await create_audit_log(
                action=AuditAction.WEBHOOK_FAILED,
                actor_id=provider.name.value,
                metadata={"event_id": ledger_id, "event_type": event_type, "error": str(e)},
            )
            raise

        await db.billing_events.update_one(
            {"event_id": ledger_id},
            {"$set": {
                "status": BillingEventStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc),
                "related_user_id": result.get("user_id"),
            }},
        )
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s", ledger_id, event_type)
        return {"event_id": ledger_id, **result}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: ProviderEvent) -> Dict[str, Any]:
        handlers = {
            PaymentSucceeded: self._handle_payment_succeeded,
            PaymentFailed: self._handle_payment_failed,
            SubscriptionCanceled: self._handle_subscription_canceled,
        }
        handler = handlers.get(type(event))
        if handler:
            return await handler(event)

        logger.info("Ignoring unhandled event type: %s", _event_type(event))
        return {"handled": False}

    async def _handle_payment_succeeded(self, event: PaymentSucceeded) -> Dict[str, Any]:
        user_id, plan_id = event.user_id, event.plan_id

        if (not user_id or not plan_id) and event.subscription_ref:
            # Renewals may only carry the provider subscription id
            db = database.get_db()
            record = await db.subscriptions.find_one(
                {
                    "provider_subscription_ref": event.subscription_ref,
                    "status": {"$ne": SubscriptionStatus.CANCELED.value},
                },
                {"_id": 0},
            )
            if record:
                user_id = user_id or record["user_id"]
                plan_id = plan_id or record["plan_id"]

        if not user_id or not plan_id or not event.tx_ref:
            logger.warning(
                "Payment success without correlation data - dropped event_id=%s tx_ref=%s",
                event.event_id, event.tx_ref,
            )
            return {"handled": False, "reason": "missing_metadata"}

        try:
            result = await self.billing.activate_subscription(
                user_id=user_id,
                plan_id=plan_id,
                tx_ref=event.tx_ref,
                provider=event.provider,
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
                source="webhook",
            )
        except (NotFound, InvalidPlan) as e:
            logger.warning(
                "Payment success could not be applied - dropped event_id=%s user_id=%s plan_id=%s code=%s",
                event.event_id, user_id, plan_id, e.code,
            )
            return {"handled": False, "reason": e.code, "user_id": user_id}

        return {"handled": True, "user_id": user_id, **result}

    async def _handle_payment_failed(self, event: PaymentFailed) -> Dict[str, Any]:
        """Failed charges only get recorded; the pending record stays pending."""
        logger.warning(
            "PAYMENT_FAILED provider=%s tx_ref=%s user_id=%s reason=%s",
            event.provider.value, event.tx_ref, event.user_id, event.reason,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_FAILED,
            user_id=event.user_id,
            actor_id=event.provider.value,
            resource_type="subscription",
            metadata={"tx_ref": event.tx_ref, "reason": event.reason},
        )
        if event.user_id:
            db = database.get_db()
            user = await db.users.find_one({"user_id": event.user_id}, {"_id": 0})
            await self.billing.notify(user, EmailTemplateAlias.PAYMENT_FAILED)
        return {"handled": True, "user_id": event.user_id}

    async def _handle_subscription_canceled(self, event: SubscriptionCanceled) -> Dict[str, Any]:
        result = await self.billing.mark_canceled_by_provider(
            event.subscription_ref,
            customer_ref=event.customer_ref,
            provider=event.provider,
        )
        return {"handled": True, **result}


_webhook_service: Optional[WebhookService] = None


def get_webhook_service() -> WebhookService:
    global _webhook_service
    if _webhook_service is None:
        _webhook_service = WebhookService(get_billing_service())
    return _webhook_service
