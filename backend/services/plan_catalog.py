"""Plan Catalog - single source of truth for plan pricing, limits and features.

Pricing and provider plan identifiers come from BillingConfig, which is
built once at startup (BillingConfig.from_env()) and passed to the billing
services. Tests build their own BillingConfig with an injected catalog.

Plan Structure:
- free: no persisted subscription, capped usage, core features only
- premium: unbounded usage, professional features
- enterprise: everything in premium plus team collaboration and branding
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Any
import os
import logging

from dotenv import load_dotenv

from models import PlanId, PaymentProviderName
from utils.errors import InvalidPlan

logger = logging.getLogger(__name__)

load_dotenv()

UNLIMITED = None


# ============================================================================
# FEATURE MATRIX - What each plan gets
# ============================================================================
PLAN_LIMITS: Mapping[PlanId, Mapping[str, Any]] = MappingProxyType({
    PlanId.FREE: MappingProxyType({
        "max_clients": 3,
        "max_projects": 5,
        "max_ai_generations_per_month": 5,
        "has_advanced_measurements": False,
        "has_professional_pattern_designer": False,
        "has_calendar_scheduling": False,
        "has_invoice_generation": False,
        "has_analytics_dashboard": False,
        "has_client_portal": False,
        "has_team_collaboration": False,
        "has_custom_branding": False,
    }),
    PlanId.PREMIUM: MappingProxyType({
        "max_clients": UNLIMITED,
        "max_projects": UNLIMITED,
        "max_ai_generations_per_month": UNLIMITED,
        "has_advanced_measurements": True,
        "has_professional_pattern_designer": True,
        "has_calendar_scheduling": True,
        "has_invoice_generation": True,
        "has_analytics_dashboard": True,
        "has_client_portal": True,
        "has_team_collaboration": False,
        "has_custom_branding": False,
    }),
    PlanId.ENTERPRISE: MappingProxyType({
        "max_clients": UNLIMITED,
        "max_projects": UNLIMITED,
        "max_ai_generations_per_month": UNLIMITED,
        "has_advanced_measurements": True,
        "has_professional_pattern_designer": True,
        "has_calendar_scheduling": True,
        "has_invoice_generation": True,
        "has_analytics_dashboard": True,
        "has_client_portal": True,
        "has_team_collaboration": True,
        "has_custom_branding": True,
    }),
})

# Count-based resource kind -> ceiling key
RESOURCE_LIMIT_KEYS = {
    "clients": "max_clients",
    "projects": "max_projects",
    "ai_generations": "max_ai_generations_per_month",
}


@dataclass(frozen=True)
class PlanTerms:
    """Price and interval of a paid plan."""
    plan_id: PlanId
    name: str
    amount: float
    billing_interval_days: int
    flutterwave_plan_id: Optional[str] = None
    stripe_price_id: Optional[str] = None


@dataclass(frozen=True)
class BillingConfig:
    """Immutable billing configuration injected into the billing services."""
    catalog: Mapping[PlanId, PlanTerms]
    provider: PaymentProviderName = PaymentProviderName.FLUTTERWAVE
    currency: str = "USD"
    redirect_url: str = "http://localhost:3000/subscription/verify"
    require_payment_method: bool = False
    provider_timeout_seconds: float = 20.0
    flutterwave_secret_key: str = ""
    flutterwave_webhook_secret: str = ""
    flutterwave_base_url: str = "https://api.flutterwave.com/v3"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    limits: Mapping[PlanId, Mapping[str, Any]] = field(default_factory=lambda: PLAN_LIMITS)

    @classmethod
    def from_env(cls) -> "BillingConfig":
        catalog = {
            PlanId.PREMIUM: PlanTerms(
                plan_id=PlanId.PREMIUM,
                name="Premium",
                amount=float(os.getenv("PLAN_PREMIUM_AMOUNT", "9.99")),
                billing_interval_days=int(os.getenv("PLAN_PREMIUM_INTERVAL_DAYS", "30")),
                flutterwave_plan_id=(os.getenv("FLW_PLAN_PREMIUM_ID") or "").strip() or None,
                stripe_price_id=(os.getenv("STRIPE_PRICE_PREMIUM") or "").strip() or None,
            ),
            PlanId.ENTERPRISE: PlanTerms(
                plan_id=PlanId.ENTERPRISE,
                name="Enterprise",
                amount=float(os.getenv("PLAN_ENTERPRISE_AMOUNT", "29.99")),
                billing_interval_days=int(os.getenv("PLAN_ENTERPRISE_INTERVAL_DAYS", "30")),
                flutterwave_plan_id=(os.getenv("FLW_PLAN_ENTERPRISE_ID") or "").strip() or None,
                stripe_price_id=(os.getenv("STRIPE_PRICE_ENTERPRISE") or "").strip() or None,
            ),
        }
        provider_name = (os.getenv("PAYMENT_PROVIDER") or "flutterwave").strip().lower()
        try:
            provider = PaymentProviderName(provider_name)
        except ValueError:
            logger.error("Unknown PAYMENT_PROVIDER=%s - falling back to flutterwave", provider_name)
            provider = PaymentProviderName.FLUTTERWAVE

        config = cls(
            catalog=MappingProxyType(catalog),
            provider=provider,
            currency=(os.getenv("BILLING_CURRENCY") or "USD").strip().upper(),
            redirect_url=os.getenv("BILLING_REDIRECT_URL", "http://localhost:3000/subscription/verify"),
            require_payment_method=os.getenv("BILLING_REQUIRE_PAYMENT_METHOD", "").strip().lower() == "true",
            provider_timeout_seconds=float(os.getenv("PAYMENT_PROVIDER_TIMEOUT_SECONDS", "20")),
            flutterwave_secret_key=(os.getenv("FLW_SECRET_KEY") or "").strip(),
            flutterwave_webhook_secret=(os.getenv("FLW_WEBHOOK_SECRET") or "").strip(),
            stripe_secret_key=(os.getenv("STRIPE_SECRET_KEY") or "").strip(),
            stripe_webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
        )
        if not config.flutterwave_webhook_secret and not config.stripe_webhook_secret:
            logger.warning("No webhook secret configured - all provider webhooks will be rejected")
        return config

    # =========================================================================
    # Lookups
    # =========================================================================

    def resolve_plan(self, plan_id: str) -> PlanId:
        """Parse a client-supplied plan identifier."""
        try:
            return PlanId((plan_id or "").strip().lower())
        except ValueError:
            raise InvalidPlan(f"Invalid plan: {plan_id}")

    def get_terms(self, plan_id: str) -> PlanTerms:
        """Catalog entry for a paid plan; absent plans are an InvalidPlan failure."""
        plan = self.resolve_plan(plan_id)
        terms = self.catalog.get(plan)
        if terms is None:
            raise InvalidPlan(f"Plan '{plan.value}' is not available for purchase")
        return terms

    def get_limits(self, plan_id: str) -> Mapping[str, Any]:
        try:
            plan = PlanId(plan_id)
        except ValueError:
            logger.warning("Unknown plan on user record: %s - using free limits", plan_id)
            plan = PlanId.FREE
        return self.limits.get(plan, self.limits[PlanId.FREE])

    def describe_plans(self) -> list:
        """Catalog rendered for the plans listing endpoint."""
        plans = [{
            "plan_id": PlanId.FREE.value,
            "name": "Free",
            "amount": 0,
            "currency": self.currency,
            "billing_interval_days": None,
            "limits": dict(self.limits[PlanId.FREE]),
        }]
        for plan_id, terms in self.catalog.items():
            plans.append({
                "plan_id": plan_id.value,
                "name": terms.name,
                "amount": terms.amount,
                "currency": self.currency,
                "billing_interval_days": terms.billing_interval_days,
                "limits": dict(self.get_limits(plan_id.value)),
            })
        return plans


def default_catalog() -> Mapping[PlanId, PlanTerms]:
    """Catalog with the built-in prices; handy for scripts and tests."""
    return MappingProxyType({
        PlanId.PREMIUM: PlanTerms(PlanId.PREMIUM, "Premium", 9.99, 30,
                                  flutterwave_plan_id="flw_plan_premium",
                                  stripe_price_id="price_premium"),
        PlanId.ENTERPRISE: PlanTerms(PlanId.ENTERPRISE, "Enterprise", 29.99, 30,
                                     flutterwave_plan_id="flw_plan_enterprise",
                                     stripe_price_id="price_enterprise"),
    })
