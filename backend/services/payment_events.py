"""Provider-neutral payment types.

Webhook payloads differ per provider and per event type. Each provider
parses its own envelope into one of the ProviderEvent variants below so the
webhook consumer never touches raw provider JSON:

- PaymentSucceeded: a charge for a plan went through (first payment or renewal)
- PaymentFailed: a charge was declined / failed
- SubscriptionCanceled: the provider ended a subscription
- UnknownEvent: anything else (ignored, kept for forward compatibility)
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union
import random
import string
import time

from models import PaymentProviderName
from services.plan_catalog import PlanTerms


def create_tx_ref(prefix: str = "SM") -> str:
    """Unique per checkout attempt: millisecond timestamp plus random suffix."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


# ============================================================================
# Webhook events
# ============================================================================

@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    provider: PaymentProviderName
    tx_ref: Optional[str]
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    provider: PaymentProviderName
    tx_ref: Optional[str] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCanceled:
    event_id: str
    provider: PaymentProviderName
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    provider: PaymentProviderName
    event_type: str


ProviderEvent = Union[PaymentSucceeded, PaymentFailed, SubscriptionCanceled, UnknownEvent]


# ============================================================================
# Checkout / verification
# ============================================================================

@dataclass(frozen=True)
class CheckoutRequest:
    tx_ref: str
    plan: PlanTerms
    amount: float
    currency: str
    customer_email: str
    customer_name: str
    redirect_url: str
    metadata: Dict[str, str] = field(default_factory=dict)
    customer_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    payment_link: str
    tx_ref: str
    checkout_ref: Optional[str] = None
    customer_ref: Optional[str] = None


@dataclass(frozen=True)
class VerifiedTransaction:
    """What the provider itself reports for a transaction."""
    status: str
    tx_ref: Optional[str] = None
    transaction_ref: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None

    @property
    def successful(self) -> bool:
        return self.status == "successful"


class PaymentProvider(ABC):
    """Outbound + inbound contract every payment provider implements."""

    name: PaymentProviderName

    @abstractmethod
    async def initialize_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a hosted payment page. Raises PaymentInitError."""

    @abstractmethod
    async def verify_transaction(
        self,
        tx_ref: Optional[str] = None,
        transaction_ref: Optional[str] = None,
    ) -> VerifiedTransaction:
        """Ask the provider for the authoritative status. Raises PaymentProviderError."""

    async def find_subscription_ref(self, customer_email: str, plan: PlanTerms) -> Optional[str]:
        """Look up the provider subscription created by a paid checkout, when it was not reported."""
        return None

    @abstractmethod
    async def cancel_subscription(self, subscription_ref: str) -> None:
        """Cancel a provider-managed subscription. Raises PaymentProviderError."""

    @abstractmethod
    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        """Verify the webhook signature and parse the envelope. Raises Unauthorized."""


def metadata_value(metadata: Optional[Mapping[str, Any]], *keys: str) -> Optional[str]:
    """First non-empty value among keys (providers echo meta with varying casing)."""
    if not metadata:
        return None
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            return str(value)
    return None

