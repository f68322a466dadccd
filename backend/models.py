from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanId(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

PAID_PLANS = (PlanId.PREMIUM, PlanId.ENTERPRISE)

class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    TRIALING = "trialing"  # historical, never written by the billing core
    ACTIVE = "active"
    CANCELED = "canceled"
    OVERDUE = "overdue"

class PaymentProviderName(str, Enum):
    FLUTTERWAVE = "flutterwave"
    STRIPE = "stripe"

class BillingEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Checkout
    SUBSCRIPTION_CHECKOUT_STARTED = "SUBSCRIPTION_CHECKOUT_STARTED"
    SUBSCRIPTION_DOWNGRADED_TO_FREE = "SUBSCRIPTION_DOWNGRADED_TO_FREE"

    # Lifecycle
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_OVERDUE = "SUBSCRIPTION_OVERDUE"
    SUBSCRIPTION_PAYMENT_METHOD_UPDATED = "SUBSCRIPTION_PAYMENT_METHOD_UPDATED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"

    # Provider
    PAYMENT_FAILED = "PAYMENT_FAILED"
    WEBHOOK_REJECTED = "WEBHOOK_REJECTED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"
    CALLBACK_VERIFICATION_FAILED = "CALLBACK_VERIFICATION_FAILED"

    # Entitlements
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"

class EmailTemplateAlias(str, Enum):
    SUBSCRIPTION_CONFIRMED = "subscription-confirmed"
    SUBSCRIPTION_CANCELED = "subscription-canceled"
    PAYMENT_FAILED = "payment-failed"

# ============================================================================
# DOCUMENT MODELS
# ============================================================================

class User(BaseModel):
    """Account owner. Only plan, is_sub_active and subscription_ref are written by billing."""
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    first_name: str = ""
    last_name: str = ""
    business_name: Optional[str] = None
    plan: str = PlanId.FREE.value
    is_sub_active: bool = True
    subscription_ref: Optional[str] = None
    trial_end_date: Optional[datetime] = None
    ai_generations_this_month: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.business_name or self.email

class Subscription(BaseModel):
    """One record per user (unique user_id). Free users have none."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    plan_id: PlanId
    status: SubscriptionStatus = SubscriptionStatus.PENDING

    # Provider references (opaque)
    provider: Optional[PaymentProviderName] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    provider_tx_ref: Optional[str] = None
    provider_checkout_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None

    # Current paid period
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    canceled_at: Optional[datetime] = None

class BillingEvent(BaseModel):
    """Ledger entry for a verified provider webhook delivery."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    event_id: str
    provider: PaymentProviderName
    event_type: str
    status: BillingEventStatus = BillingEventStatus.PROCESSING
    error: Optional[str] = None
    related_user_id: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

class AppliedTransaction(BaseModel):
    """A provider payment that has already granted a paid period. Unique on transaction_key."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    transaction_key: str
    provider: Optional[PaymentProviderName] = None
    tx_ref: str
    user_id: str
    plan_id: PlanId
    source: str
    applied_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# GATED RESOURCES
# ============================================================================

class Client(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Project(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    client_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Measurement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    measurement_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    client_id: str
    unit: str = "inches"
    values: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Pattern(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pattern_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    name: str
    pattern_type: str
    difficulty: str
    description: Optional[str] = None
    instructions: List[Any] = Field(default_factory=list)
    materials: List[Any] = Field(default_factory=list)
    is_ai_generated: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
