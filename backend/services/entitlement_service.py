"""Entitlement Gate - plan-based feature and usage enforcement.

Read-time checks only: the user's plan and is_sub_active flag are read fresh
from the database on every call and looked up in the plan limit table. No
check ever writes subscription state.
"""
from typing import Any, Dict, Optional
import logging

from pymongo import ReturnDocument

from database import database
from models import AuditAction, PlanId
from services.plan_catalog import BillingConfig, RESOURCE_LIMIT_KEYS
from utils.audit import create_audit_log
from utils.errors import BadRequest, FeatureNotAvailable, NotFound, PlanLimitReached, SubscriptionInactive

logger = logging.getLogger(__name__)

# Human-readable feature names for error messages
FEATURE_NAMES = {
    "has_advanced_measurements": "Advanced Measurements",
    "has_professional_pattern_designer": "Professional Pattern Designer",
    "has_calendar_scheduling": "Calendar Scheduling",
    "has_invoice_generation": "Invoice Generation",
    "has_analytics_dashboard": "Analytics Dashboard",
    "has_client_portal": "Client Portal",
    "has_team_collaboration": "Team Collaboration",
    "has_custom_branding": "Custom Branding",
}

RESOURCE_NAMES = {
    "clients": "clients",
    "projects": "projects",
    "ai_generations": "AI generations this month",
}


class EntitlementService:
    def __init__(self, config: BillingConfig):
        self.config = config

    async def _get_user(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        user = await db.users.find_one(
            {"user_id": user_id},
            {"_id": 0, "user_id": 1, "plan": 1, "is_sub_active": 1, "ai_generations_this_month": 1},
        )
        if not user:
            raise NotFound("User not found", code="USER_NOT_FOUND")
        return user

    async def _deny(self, user: Dict[str, Any], reason: str, detail: str) -> None:
        logger.info(
            "ENTITLEMENT_DENIED user_id=%s plan=%s reason=%s detail=%s",
            user.get("user_id"), user.get("plan"), reason, detail,
        )
        await create_audit_log(
            action=AuditAction.ENTITLEMENT_DENIED,
            user_id=user.get("user_id"),
            actor_id=user.get("user_id"),
            metadata={"plan": user.get("plan"), "reason": reason, "detail": detail},
        )

    async def _require_active(self, user: Dict[str, Any]) -> None:
        if not user.get("is_sub_active", True):
            await self._deny(user, "SUBSCRIPTION_INACTIVE", "is_sub_active=false")
            raise SubscriptionInactive()

    async def _usage(self, user: Dict[str, Any], resource_kind: str) -> int:
        db = database.get_db()
        if resource_kind == "clients":
            return await db.clients.count_documents({"user_id": user["user_id"]})
        if resource_kind == "projects":
            return await db.projects.count_documents({"user_id": user["user_id"]})
        return int(user.get("ai_generations_this_month") or 0)

    # =========================================================================
    # Gate
    # =========================================================================

    async def check_feature(self, user_id: str, feature: str) -> Dict[str, Any]:
        """Raise unless the user's plan includes the boolean feature."""
        user = await self._get_user(user_id)
        await self._require_active(user)

        limits = self.config.get_limits(user.get("plan") or PlanId.FREE.value)
        if not feature.startswith("has_") or feature not in limits:
            raise BadRequest(f"Unknown feature: {feature}", code="UNKNOWN_FEATURE")
        if not limits[feature]:
            await self._deny(user, "FEATURE_NOT_AVAILABLE", feature)
            raise FeatureNotAvailable(
                f"{FEATURE_NAMES.get(feature, feature)} is not available on your current plan. Please upgrade.",
                errors={"feature": feature, "plan": user.get("plan")},
            )
        return user

    async def check_usage_limit(self, user_id: str, resource_kind: str) -> Dict[str, Any]:
        """Raise when creating one more resource would exceed the plan ceiling."""
        limit_key = RESOURCE_LIMIT_KEYS.get(resource_kind)
        if not limit_key:
            raise BadRequest(f"Unknown resource kind: {resource_kind}", code="UNKNOWN_RESOURCE")

        user = await self._get_user(user_id)
        await self._require_active(user)

        ceiling: Optional[int] = self.config.get_limits(user.get("plan") or PlanId.FREE.value)[limit_key]
        if ceiling is None:
            return user

        current = await self._usage(user, resource_kind)
        if current >= ceiling:
            await self._deny(user, "PLAN_LIMIT_REACHED", f"{resource_kind}={current}/{ceiling}")
            raise PlanLimitReached(
                f"You have reached the maximum of {ceiling} {RESOURCE_NAMES[resource_kind]} on your plan. "
                "Please upgrade to add more.",
                errors={"resource": resource_kind, "limit": ceiling, "current": current},
            )
        return user

    async def record_ai_generation(self, user_id: str) -> int:
        """Check the monthly AI ceiling and count one generation."""
        await self.check_usage_limit(user_id, "ai_generations")
        db = database.get_db()
        user = await db.users.find_one_and_update(
            {"user_id": user_id},
            {"$inc": {"ai_generations_this_month": 1}},
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0, "ai_generations_this_month": 1},
        )
        return int((user or {}).get("ai_generations_this_month") or 0)

    async def get_entitlements(self, user_id: str) -> Dict[str, Any]:
        user = await self._get_user(user_id)
        plan = user.get("plan") or PlanId.FREE.value
        limits = self.config.get_limits(plan)
        return {
            "plan_id": plan,
            "is_sub_active": user.get("is_sub_active", True),
            "features": {k: v for k, v in limits.items() if k.startswith("has_")},
            "limits": {kind: limits[key] for kind, key in RESOURCE_LIMIT_KEYS.items()},
            "usage": {kind: await self._usage(user, kind) for kind in RESOURCE_LIMIT_KEYS},
        }


_entitlement_service: Optional[EntitlementService] = None


def get_entitlement_service() -> EntitlementService:
    global _entitlement_service
    if _entitlement_service is None:
        from services.subscription_service import get_billing_service
        _entitlement_service = EntitlementService(get_billing_service().config)
    return _entitlement_service
