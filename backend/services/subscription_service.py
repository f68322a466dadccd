"""Subscription Service - checkout, activation, cancellation and reconciliation.

Every state change goes through a single atomic MongoDB operation keyed by
user_id (upsert / find-and-update), never read-modify-write, because the
webhook, the redirect callback and a user re-subscribing can race.

State machine (subscriptions.status):
    (none) -> pending -> active -> canceled
    active -> active   renewal, due_date extended
    active -> overdue  daily sweep, due_date passed without renewal
    overdue -> active  late renewal

Free users have no subscription record; users.plan is authoritative for them.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
import logging
import uuid

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AppliedTransaction,
    AuditAction,
    EmailTemplateAlias,
    PAID_PLANS,
    PaymentProviderName,
    PlanId,
    Subscription,
    SubscriptionStatus,
    User,
)
from services.email_service import email_service
from services.payment_events import CheckoutRequest, PaymentProvider, VerifiedTransaction, create_tx_ref
from services.plan_catalog import BillingConfig, PlanTerms
from utils.audit import create_audit_log
from utils.errors import BadRequest, NotFound, PaymentMethodRequired

logger = logging.getLogger(__name__)

ACTOR_SYSTEM = "SYSTEM"

INCOMPLETE_MESSAGE = "Payment is not complete yet. Please try again shortly."
CONSUMED_MESSAGE = "This payment does not match your current checkout and cannot be applied again."
CONSUMED_REASONS = ("stale_reference", "already_applied")


def _new_subscription_id() -> str:
    return f"SUB-{uuid.uuid4().hex[:12].upper()}"


def _display_name(user: Mapping[str, Any]) -> str:
    return User.model_validate(user).display_name


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


class SubscriptionService:
    """Billing reconciliation between local records and the payment provider."""

    def __init__(self, config: BillingConfig, providers: Mapping[PaymentProviderName, PaymentProvider]):
        self.config = config
        self.providers = dict(providers)

    # =========================================================================
    # Helpers
    # =========================================================================

    @property
    def checkout_provider(self) -> PaymentProvider:
        return self.get_provider(self.config.provider)

    def get_provider(self, name) -> PaymentProvider:
        try:
            provider = self.providers.get(PaymentProviderName(name))
        except ValueError:
            provider = None
        if provider is None:
            raise NotFound(f"Unknown payment provider: {name}", code="PROVIDER_NOT_FOUND")
        return provider

    async def _get_user(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
        if not user:
            raise NotFound("User not found", code="USER_NOT_FOUND")
        return user

    async def notify(self, user: Optional[Mapping[str, Any]], alias: EmailTemplateAlias, **model) -> None:
        if not user:
            return
        await email_service.send_billing_email(
            user.get("email"),
            alias,
            {"name": _display_name(user), **model},
        )

    # =========================================================================
    # Checkout Initiator
    # =========================================================================

    async def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_method_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a plan change.

        Free is applied immediately with no provider call. A paid plan gets a
        hosted payment link; local state is written only after the provider
        accepted the checkout, and access stays withheld until payment is
        confirmed by a webhook or the redirect callback.
        """
        plan = self.config.resolve_plan(plan_id)
        user = await self._get_user(user_id)

        if plan == PlanId.FREE:
            return await self.downgrade_to_free(user)

        terms = self.config.get_terms(plan.value)
        if self.config.require_payment_method and not payment_method_ref:
            raise PaymentMethodRequired()

        db = database.get_db()
        provider = self.checkout_provider
        existing = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        customer_ref = None
        if existing and existing.get("provider") == provider.name.value:
            customer_ref = existing.get("provider_customer_ref")

        tx_ref = create_tx_ref()
        session = await provider.initialize_checkout(CheckoutRequest(
            tx_ref=tx_ref,
            plan=terms,
            amount=terms.amount,
            currency=self.config.currency,
            customer_email=user["email"],
            customer_name=_display_name(user),
            redirect_url=self.config.redirect_url,
            metadata={"user_id": user_id, "plan_id": plan.value},
            customer_ref=customer_ref,
            payment_method_ref=payment_method_ref,
        ))

        now = datetime.now(timezone.utc)
        pending_fields = {
            "plan_id": plan.value,
            "status": SubscriptionStatus.PENDING.value,
            "provider": provider.name.value,
            "provider_tx_ref": session.tx_ref,
            "provider_checkout_ref": session.checkout_ref,
            "updated_at": now,
        }
        if session.customer_ref or customer_ref:
            pending_fields["provider_customer_ref"] = session.customer_ref or customer_ref
        if payment_method_ref:
            pending_fields["payment_method_ref"] = payment_method_ref

        record = await db.subscriptions.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": pending_fields,
                "$unset": {
                    "start_date": "",
                    "due_date": "",
                    "canceled_at": "",
                    "provider_subscription_ref": "",
                },
                "$setOnInsert": {
                    "subscription_id": _new_subscription_id(),
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        await db.users.update_one(
            {"user_id": user_id},
            {"$set": {
                "plan": plan.value,
                "is_sub_active": False,
                "subscription_ref": record["subscription_id"],
            }},
        )

        logger.info(
            "SUBSCRIPTION_CHECKOUT_STARTED user_id=%s plan_id=%s tx_ref=%s provider=%s",
            user_id, plan.value, tx_ref, provider.name.value,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CHECKOUT_STARTED,
            user_id=user_id,
            actor_id=user_id,
            resource_type="subscription",
            resource_id=record["subscription_id"],
            metadata={"plan_id": plan.value, "tx_ref": tx_ref, "provider": provider.name.value},
        )

        return {
            "plan_id": plan.value,
            "payment_link": session.payment_link,
            "tx_ref": session.tx_ref,
        }

    async def downgrade_to_free(self, user: Mapping[str, Any]) -> Dict[str, Any]:
        db = database.get_db()
        user_id = user["user_id"]

        previous = await db.subscriptions.find_one_and_delete({"user_id": user_id}, projection={"_id": 0})
        await db.users.update_one(
            {"user_id": user_id},
            {"$set": {"plan": PlanId.FREE.value, "is_sub_active": True, "subscription_ref": None}},
        )

        if previous and previous.get("provider_subscription_ref") and previous.get("status") in (
            SubscriptionStatus.ACTIVE.value, SubscriptionStatus.OVERDUE.value,
        ):
            # The provider side is left untouched on this path
            logger.warning(
                "Free downgrade dropped a provider subscription user_id=%s subscription_ref=%s",
                user_id, previous.get("provider_subscription_ref"),
            )

        logger.info("SUBSCRIPTION_DOWNGRADED_TO_FREE user_id=%s previous_plan=%s", user_id, user.get("plan"))
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_DOWNGRADED_TO_FREE,
            user_id=user_id,
            actor_id=user_id,
            resource_type="subscription",
            resource_id=(previous or {}).get("subscription_id"),
            metadata={"previous_plan": user.get("plan"), "previous_status": (previous or {}).get("status")},
        )
        return {"plan_id": PlanId.FREE.value, "is_sub_active": True, "message": "Switched to the Free plan"}

    # =========================================================================
    # Activation (shared by webhook and callback paths)
    # =========================================================================

    async def activate_subscription(
        self,
        user_id: str,
        plan_id: str,
        tx_ref: str,
        provider: Optional[PaymentProviderName] = None,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
        source: str = "webhook",
    ) -> Dict[str, Any]:
        """Mark the user's record active for a new period.

        A provider payment grants one period only. Its reference is claimed in
        applied_transactions (unique transaction_key) before the record is
        touched, so a replay after a downgrade, an overdue sweep or a newer
        checkout is reported as "already applied". Re-applying the current
        tx_ref to an active record is also excluded by the upsert filter.
        """
        terms: PlanTerms = self.config.get_terms(plan_id)
        user = await self._get_user(user_id)
        db = database.get_db()

        existing = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        if existing and existing.get("status") == SubscriptionStatus.CANCELED.value and (
            (subscription_ref and existing.get("provider_subscription_ref") == subscription_ref)
            or existing.get("provider_tx_ref") == tx_ref
        ):
            logger.info(
                "Ignoring activation for canceled subscription user_id=%s tx_ref=%s subscription_ref=%s",
                user_id, tx_ref, subscription_ref,
            )
            return {"activated": False, "reason": "canceled"}

        if subscription_ref:
            canceled = await db.subscriptions.find_one({
                "provider_subscription_ref": subscription_ref,
                "status": SubscriptionStatus.CANCELED.value,
            })
            if canceled:
                logger.info("Ignoring activation for canceled subscription_ref=%s", subscription_ref)
                return {"activated": False, "reason": "canceled"}

        provider_name = (
            PaymentProviderName(provider).value if provider else (existing or {}).get("provider") or "unknown"
        )
        transaction_key = f"{provider_name}:{tx_ref}"
        try:
            await db.applied_transactions.insert_one(AppliedTransaction(
                transaction_key=transaction_key,
                provider=provider_name if provider_name != "unknown" else None,
                tx_ref=tx_ref,
                user_id=user_id,
                plan_id=terms.plan_id,
                source=source,
            ).model_dump())
        except DuplicateKeyError:
            logger.info("Payment already applied transaction_key=%s user_id=%s", transaction_key, user_id)
            return {"activated": False, "reason": "already_applied"}

        now = datetime.now(timezone.utc)
        due_date = now + timedelta(days=terms.billing_interval_days)
        active_fields = {
            "plan_id": terms.plan_id.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "provider_tx_ref": tx_ref,
            "start_date": now,
            "due_date": due_date,
            "updated_at": now,
        }
        if provider:
            active_fields["provider"] = PaymentProviderName(provider).value
        if customer_ref:
            active_fields["provider_customer_ref"] = customer_ref
        if subscription_ref:
            active_fields["provider_subscription_ref"] = subscription_ref

        try:
            record = await db.subscriptions.find_one_and_update(
                {
                    "user_id": user_id,
                    "$or": [
                        {"status": {"$ne": SubscriptionStatus.ACTIVE.value}},
                        {"provider_tx_ref": {"$ne": tx_ref}},
                    ],
                },
                {
                    "$set": active_fields,
                    "$unset": {"canceled_at": ""},
                    "$setOnInsert": {
                        "subscription_id": _new_subscription_id(),
                        "created_at": now,
                    },
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )
        except DuplicateKeyError:
            logger.info("Activation already applied user_id=%s tx_ref=%s", user_id, tx_ref)
            return {"activated": False, "reason": "already_applied"}
        except Exception:
            # A failed write must not consume the payment
            await db.applied_transactions.delete_one({"transaction_key": transaction_key})
            raise

        await db.users.update_one(
            {"user_id": user_id},
            {"$set": {
                "plan": terms.plan_id.value,
                "is_sub_active": True,
                "subscription_ref": record["subscription_id"],
            }},
        )

        logger.info(
            "SUBSCRIPTION_ACTIVATED user_id=%s plan_id=%s tx_ref=%s due_date=%s source=%s",
            user_id, terms.plan_id.value, tx_ref, due_date.isoformat(), source,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            user_id=user_id,
            actor_id=(PaymentProviderName(provider).value if provider else ACTOR_SYSTEM),
            resource_type="subscription",
            resource_id=record["subscription_id"],
            metadata={
                "plan_id": terms.plan_id.value,
                "tx_ref": tx_ref,
                "source": source,
                "renewal": bool(existing and existing.get("status") in (
                    SubscriptionStatus.ACTIVE.value, SubscriptionStatus.OVERDUE.value,
                )),
            },
        )
        await self.notify(
            user,
            EmailTemplateAlias.SUBSCRIPTION_CONFIRMED,
            plan_name=terms.name,
            due_date=due_date.strftime("%d %B %Y"),
        )

        return {
            "activated": True,
            "subscription_id": record["subscription_id"],
            "plan_id": terms.plan_id.value,
            "due_date": due_date,
        }

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_subscription(self, user_id: str) -> Dict[str, Any]:
        """User-initiated cancellation; takes effect immediately."""
        db = database.get_db()
        record = await db.subscriptions.find_one(
            {
                "user_id": user_id,
                "status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.OVERDUE.value]},
            },
            {"_id": 0},
        )
        if not record:
            raise BadRequest("No active subscription to cancel", code="NO_ACTIVE_SUBSCRIPTION")

        subscription_ref = record.get("provider_subscription_ref")
        if record.get("provider"):
            provider = self.get_provider(record["provider"])
            if not subscription_ref:
                subscription_ref = await self._lookup_subscription_ref(provider, record)
            if subscription_ref:
                # Provider failure leaves local state untouched
                await provider.cancel_subscription(subscription_ref)
        if not subscription_ref:
            logger.warning(
                "Canceling without provider subscription ref user_id=%s provider=%s",
                user_id, record.get("provider"),
            )

        await self._apply_cancellation(record, actor_id=user_id, source="user")
        return {"plan_id": PlanId.FREE.value, "status": SubscriptionStatus.CANCELED.value}

    async def _lookup_subscription_ref(self, provider: PaymentProvider, record: Mapping[str, Any]) -> Optional[str]:
        user = await self._get_user(record["user_id"])
        subscription_ref = await provider.find_subscription_ref(
            user["email"], self.config.get_terms(record["plan_id"])
        )
        if subscription_ref:
            db = database.get_db()
            await db.subscriptions.update_one(
                {"subscription_id": record["subscription_id"]},
                {"$set": {"provider_subscription_ref": subscription_ref}},
            )
        return subscription_ref

    async def mark_canceled_by_provider(
        self,
        subscription_ref: Optional[str],
        customer_ref: Optional[str] = None,
        provider: Optional[PaymentProviderName] = None,
    ) -> Dict[str, Any]:
        """Provider-initiated cancellation. Re-applying it is a no-op."""
        db = database.get_db()
        record = None
        if subscription_ref:
            record = await db.subscriptions.find_one(
                {"provider_subscription_ref": subscription_ref}, {"_id": 0}
            )
        if record is None and customer_ref:
            query = {
                "provider_customer_ref": customer_ref,
                "status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.OVERDUE.value]},
            }
            if provider:
                query["provider"] = PaymentProviderName(provider).value
            record = await db.subscriptions.find_one(query, {"_id": 0})

        if record is None:
            logger.warning(
                "Provider cancellation for unknown subscription subscription_ref=%s customer_ref=%s",
                subscription_ref, customer_ref,
            )
            return {"canceled": False, "reason": "not_found"}

        actor = PaymentProviderName(provider).value if provider else ACTOR_SYSTEM
        return await self._apply_cancellation(record, actor_id=actor, source="provider")

    async def _apply_cancellation(self, record: Mapping[str, Any], actor_id: str, source: str) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        result = await db.subscriptions.update_one(
            {
                "subscription_id": record["subscription_id"],
                "status": {"$ne": SubscriptionStatus.CANCELED.value},
            },
            {"$set": {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
                "updated_at": now,
            }},
        )
        if result.modified_count == 0:
            logger.info("Subscription already canceled subscription_id=%s", record["subscription_id"])
            return {"canceled": False, "reason": "already_canceled"}

        user_id = record["user_id"]
        await db.users.update_one(
            {"user_id": user_id},
            {"$set": {"plan": PlanId.FREE.value, "is_sub_active": False, "subscription_ref": None}},
        )

        logger.info(
            "SUBSCRIPTION_CANCELED user_id=%s subscription_id=%s plan_id=%s source=%s",
            user_id, record["subscription_id"], record.get("plan_id"), source,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            user_id=user_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=record["subscription_id"],
            metadata={"plan_id": record.get("plan_id"), "source": source},
        )
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
        await self.notify(user, EmailTemplateAlias.SUBSCRIPTION_CANCELED)
        return {"canceled": True, "subscription_id": record["subscription_id"]}

    # =========================================================================
    # Callback Verifier
    # =========================================================================

    async def verify_and_activate(
        self,
        status: Optional[str] = None,
        tx_ref: Optional[str] = None,
        transaction_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Confirm a payment after the browser returns from the hosted page.

        The status query parameter is only logged. The provider's own
        verification decides whether anything is activated.
        """
        if not tx_ref and not transaction_ref:
            raise BadRequest("tx_ref or transaction_id is required", code="TX_REF_REQUIRED")

        db = database.get_db()
        hint = None
        if tx_ref:
            hint = await db.subscriptions.find_one({"provider_tx_ref": tx_ref}, {"_id": 0})

        provider = (
            self.get_provider(hint["provider"]) if hint and hint.get("provider") else self.checkout_provider
        )
        verified = await provider.verify_transaction(
            tx_ref=tx_ref,
            transaction_ref=transaction_ref or (hint or {}).get("provider_checkout_ref"),
        )
        logger.info(
            "CALLBACK_VERIFY tx_ref=%s transaction_ref=%s claimed_status=%s provider_status=%s",
            tx_ref, transaction_ref, status, verified.status,
        )

        if not verified.successful:
            return await self._verification_incomplete(verified, tx_ref, verified.status)
        if tx_ref and verified.tx_ref and verified.tx_ref != tx_ref:
            return await self._verification_incomplete(verified, tx_ref, "reference_mismatch")

        paid_tx_ref = verified.tx_ref or tx_ref
        record = hint
        if paid_tx_ref and (record is None or record.get("provider_tx_ref") != paid_tx_ref):
            record = await db.subscriptions.find_one({"provider_tx_ref": paid_tx_ref}, {"_id": 0})

        if record:
            user_id, plan_id = record["user_id"], record["plan_id"]
        elif verified.user_id and verified.plan_id:
            user_id, plan_id = verified.user_id, verified.plan_id
            current = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
            if current and current.get("provider_tx_ref") != paid_tx_ref:
                # Only the record's own checkout reference may activate it
                return await self._verification_incomplete(verified, tx_ref, "stale_reference")
        else:
            raise NotFound("Pending subscription not found", code="PENDING_SUBSCRIPTION_NOT_FOUND")

        terms = self.config.get_terms(plan_id)
        if not self._amount_covers_plan(verified, terms):
            return await self._verification_incomplete(verified, tx_ref, "amount_mismatch")

        result = await self.activate_subscription(
            user_id=user_id,
            plan_id=plan_id,
            tx_ref=paid_tx_ref or verified.transaction_ref,
            provider=provider.name,
            customer_ref=verified.customer_ref,
            subscription_ref=verified.subscription_ref,
            source="callback",
        )
        if result.get("reason") == "canceled":
            return {"success": False, "status": SubscriptionStatus.CANCELED.value,
                    "message": "This subscription has been canceled."}
        if result.get("reason") == "already_applied":
            current = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
            if not (
                current
                and current.get("status") == SubscriptionStatus.ACTIVE.value
                and current.get("provider_tx_ref") == paid_tx_ref
            ):
                # The payment was consumed by an earlier period
                return await self._verification_incomplete(verified, tx_ref, "already_applied")

        return {
            "success": True,
            "status": SubscriptionStatus.ACTIVE.value,
            "plan_id": terms.plan_id.value,
            "tx_ref": paid_tx_ref,
            "message": "Subscription activated",
        }

    def _amount_covers_plan(self, verified: VerifiedTransaction, terms: PlanTerms) -> bool:
        if verified.currency and verified.currency.upper() != self.config.currency:
            return False
        if verified.amount is not None and round(verified.amount, 2) < round(terms.amount, 2):
            return False
        return True

    async def _verification_incomplete(self, verified: VerifiedTransaction, tx_ref: Optional[str], reason: str):
        logger.warning(
            "CALLBACK_VERIFICATION_FAILED tx_ref=%s provider_tx_ref=%s reason=%s",
            tx_ref, verified.tx_ref, reason,
        )
        await create_audit_log(
            action=AuditAction.CALLBACK_VERIFICATION_FAILED,
            user_id=verified.user_id,
            actor_id=ACTOR_SYSTEM,
            resource_type="subscription",
            metadata={"tx_ref": tx_ref, "reason": reason},
        )
        return {
            "success": False,
            "status": reason,
            "message": CONSUMED_MESSAGE if reason in CONSUMED_REASONS else INCOMPLETE_MESSAGE,
        }

    # =========================================================================
    # Details / payment method
    # =========================================================================

    async def get_subscription_details(self, user_id: str) -> Dict[str, Any]:
        user = await self._get_user(user_id)
        db = database.get_db()
        record = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        if not record:
            return {
                "plan_id": user.get("plan") or PlanId.FREE.value,
                "status": SubscriptionStatus.ACTIVE.value,
                "start_date": None,
                "due_date": None,
                "is_sub_active": user.get("is_sub_active", True),
            }
        subscription = Subscription.model_validate(record)
        return {
            "subscription_id": subscription.subscription_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status,
            "provider": subscription.provider,
            "start_date": _iso(subscription.start_date),
            "due_date": _iso(subscription.due_date),
            "canceled_at": _iso(subscription.canceled_at),
            "has_payment_method": bool(subscription.payment_method_ref),
            "is_sub_active": user.get("is_sub_active", False),
        }

    async def update_payment_method(self, user_id: str, payment_method_ref: str) -> Dict[str, Any]:
        if not payment_method_ref:
            raise PaymentMethodRequired()
        db = database.get_db()
        result = await db.subscriptions.update_one(
            {"user_id": user_id},
            {"$set": {"payment_method_ref": payment_method_ref, "updated_at": datetime.now(timezone.utc)}},
        )
        if result.matched_count == 0:
            raise BadRequest("No subscription found for this account", code="NO_SUBSCRIPTION")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PAYMENT_METHOD_UPDATED,
            user_id=user_id,
            actor_id=user_id,
            resource_type="subscription",
        )
        return {"message": "Payment method updated"}

    # =========================================================================
    # Daily sweep
    # =========================================================================

    async def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Expire lapsed trials and mark unrenewed subscriptions overdue."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        paid = [plan.value for plan in PAID_PLANS]

        trial_query = {
            "plan": {"$in": paid},
            "trial_end_date": {"$lt": now},
            "is_sub_active": True,
            # Users with a provider-managed subscription are never touched here
            "subscription_ref": None,
        }
        trials_expired = 0
        for user in await db.users.find(trial_query, {"_id": 0}).to_list(length=None):
            result = await db.users.update_one(
                {"user_id": user["user_id"], **trial_query},
                {"$set": {"plan": PlanId.FREE.value, "is_sub_active": False}},
            )
            if result.modified_count:
                trials_expired += 1
                logger.info("TRIAL_EXPIRED user_id=%s plan=%s", user["user_id"], user.get("plan"))
                await create_audit_log(
                    action=AuditAction.TRIAL_EXPIRED,
                    user_id=user["user_id"],
                    actor_id=ACTOR_SYSTEM,
                    metadata={"previous_plan": user.get("plan")},
                )

        lapsed_query = {"status": SubscriptionStatus.ACTIVE.value, "due_date": {"$lt": now}}
        marked_overdue = 0
        for record in await db.subscriptions.find(lapsed_query, {"_id": 0}).to_list(length=None):
            updated = await db.subscriptions.find_one_and_update(
                {"subscription_id": record["subscription_id"], **lapsed_query},
                {"$set": {"status": SubscriptionStatus.OVERDUE.value, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )
            if not updated:
                continue
            marked_overdue += 1
            await db.users.update_one(
                {"user_id": record["user_id"], "subscription_ref": record["subscription_id"]},
                {"$set": {"is_sub_active": False}},
            )
            logger.info(
                "SUBSCRIPTION_OVERDUE user_id=%s subscription_id=%s due_date=%s",
                record["user_id"], record["subscription_id"], _iso(record.get("due_date")),
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_OVERDUE,
                user_id=record["user_id"],
                actor_id=ACTOR_SYSTEM,
                resource_type="subscription",
                resource_id=record["subscription_id"],
                metadata={"due_date": _iso(record.get("due_date"))},
            )

        return {"trials_expired": trials_expired, "marked_overdue": marked_overdue}


# ============================================================================
# Wiring
# ============================================================================

_billing_service: Optional[SubscriptionService] = None


def build_billing_service(config: Optional[BillingConfig] = None) -> SubscriptionService:
    from services.flutterwave_service import FlutterwaveService
    from services.stripe_service import StripeService

    config = config or BillingConfig.from_env()
    return SubscriptionService(
        config,
        {
            PaymentProviderName.FLUTTERWAVE: FlutterwaveService(config),
            PaymentProviderName.STRIPE: StripeService(config),
        },
    )


def get_billing_service() -> SubscriptionService:
    """Process-wide service, built from the environment on first use."""
    global _billing_service
    if _billing_service is None:
        _billing_service = build_billing_service()
    return _billing_service
