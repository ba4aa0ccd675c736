"""Pydantic models for the subscription ledger.

All monetary values use Decimal quantized to 7 places, never float.
JSON output renders amounts as fixed-point strings ("10.0000000").
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer

from ..payments.revenue import ZERO, format_money, to_money

Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(format_money, return_type=str, when_used="json"),
]

STELLAR_ACCOUNT_PATTERN = r"^G[A-Z2-7]{55}$"
TX_HASH_PATTERN = r"^[0-9a-fA-F]{64}$"


# =============================================================================
# Enums
# =============================================================================


class TierLevel(str, Enum):
    """Tier classification levels."""

    free = "FREE"
    basic = "BASIC"
    premium = "PREMIUM"
    vip = "VIP"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states. cancelled and expired are terminal."""

    active = "ACTIVE"
    cancelled = "CANCELLED"
    suspended = "SUSPENDED"
    expired = "EXPIRED"


class PaymentStatus(str, Enum):
    """Outcome of the most recent payment on a subscription."""

    completed = "COMPLETED"
    failed = "FAILED"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.cancelled, SubscriptionStatus.expired})
RENEWABLE_STATUSES = frozenset({SubscriptionStatus.active, SubscriptionStatus.suspended})


# =============================================================================
# Billing policy
# =============================================================================


@dataclass(frozen=True)
class BillingPolicy:
    """Billing cycle constants, normally read from Settings."""

    cycle_days: int = 30
    notice_days: int = 3
    max_payment_failures: int = 3

    @classmethod
    def from_settings(cls, settings) -> "BillingPolicy":
        return cls(
            cycle_days=settings.billing_cycle_days,
            notice_days=settings.renewal_notice_days,
            max_payment_failures=settings.max_payment_failures,
        )

    def period_end(self, period_start: datetime) -> datetime:
        return period_start + timedelta(days=self.cycle_days)

    def renews_at(self, period_end: datetime) -> datetime:
        return period_end - timedelta(days=self.notice_days)


# =============================================================================
# Database / Domain Models
# =============================================================================


class SubscriptionTier(BaseModel):
    """A priced access level offered by a provider (mirrors subscription_tiers)."""

    id: str
    provider_id: str
    name: str
    description: str | None = None
    level: TierLevel
    price: Money
    signal_limit: int | None = None  # None = unlimited
    benefits: list[str] = Field(default_factory=list)
    active: bool = True
    accepting_new_subscribers: bool = True
    subscriber_count: int = 0
    total_revenue: Money = ZERO
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_free(self) -> bool:
        return self.level == TierLevel.free


class UserSubscription(BaseModel):
    """A subscriber's membership in a tier (mirrors user_subscriptions)."""

    id: str
    user_id: str
    tier_id: str
    provider_id: str
    status: SubscriptionStatus = SubscriptionStatus.active
    payment_status: PaymentStatus = PaymentStatus.completed
    amount_paid: Money = ZERO
    platform_commission: Money = ZERO
    provider_earnings: Money = ZERO
    ledger_tx_hash: str | None = None
    period_start: datetime
    period_end: datetime
    renews_at: datetime
    subscriber_wallet: str = ""
    provider_wallet: str = ""
    auto_renew: bool = True
    renewal_count: int = 0
    payment_failure_count: int = 0
    last_failure_reason: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# =============================================================================
# API Request / Response Models
# =============================================================================


class CreateTierRequest(BaseModel):
    """Provider creates a new subscription tier."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    level: TierLevel
    price: Decimal = Field(..., ge=0, le=10000, decimal_places=7)
    signal_limit: int | None = Field(default=None, ge=1, description="Max signals per day; null = unlimited")
    benefits: list[str] = Field(default_factory=list)


class UpdateTierRequest(BaseModel):
    """Partial tier update. Price is frozen once the tier has subscribers."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    benefits: list[str] | None = None
    price: Decimal | None = Field(default=None, ge=0, le=10000, decimal_places=7)
    signal_limit: int | None = Field(default=None, ge=1)
    active: bool | None = None
    accepting_new_subscribers: bool | None = Field(
        default=None,
        description="Stop accepting new subscribers without cancelling existing ones",
    )


class SubscribeRequest(BaseModel):
    """Subscribe the authenticated user to a tier."""

    tier_id: str
    subscriber_wallet: str = Field(
        ...,
        pattern=STELLAR_ACCOUNT_PATTERN,
        description="Subscriber's Stellar account (56-char G...)",
    )
    ledger_tx_hash: str | None = Field(
        default=None,
        pattern=TX_HASH_PATTERN,
        description="Stellar transaction hash proving the USDC payment (omit for FREE tiers)",
    )
    auto_renew: bool = True


class CancelSubscriptionRequest(BaseModel):
    """Cancel now (immediate=true) or at the end of the current period."""

    reason: str | None = Field(default=None, max_length=500)
    immediate: bool = False


class RenewSubscriptionRequest(BaseModel):
    """Renew with a fresh payment proof (omit for FREE tiers)."""

    ledger_tx_hash: str | None = Field(default=None, pattern=TX_HASH_PATTERN)


class TierResponse(SubscriptionTier):
    """Tier as returned by the API, with the memo subscribers should attach."""

    payment_memo: str


class AccessCheckResult(BaseModel):
    """Answer to 'does this user have access to this provider'."""

    has_access: bool
    reason: str
    subscription: UserSubscription | None = None
    signal_limit: int | None = None


class SignalAccessResult(BaseModel):
    """Answer to 'may this user view this piece of content'."""

    allowed: bool
    reason: str


class TierRevenue(BaseModel):
    """Per-tier slice of a provider revenue summary."""

    tier_id: str
    tier_name: str
    active_subscribers: int
    total_revenue: Money
    platform_commission: Money
    provider_earnings: Money


class RevenueSummary(BaseModel):
    """Provider revenue across all tiers (COMPLETED payments only)."""

    provider_id: str
    total_revenue: Money
    platform_commission_paid: Money
    net_earnings: Money
    active_subscribers: int
    tiers: list[TierRevenue]
