"""Subscription tiers, the subscription ledger and access gating."""

from .access import AccessGate
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailedError,
    SubscriptionError,
    ValidationError,
)
from .models import (
    AccessCheckResult,
    BillingPolicy,
    CancelSubscriptionRequest,
    CreateTierRequest,
    PaymentStatus,
    RenewSubscriptionRequest,
    RevenueSummary,
    SignalAccessResult,
    SubscribeRequest,
    SubscriptionStatus,
    SubscriptionTier,
    TierLevel,
    TierResponse,
    TierRevenue,
    UpdateTierRequest,
    UserSubscription,
)
from .scheduler import LoggingNotifier, Notifier, RenewalScheduler, SweepReport
from .service import SubscriptionLedger
from .storage import InMemorySubscriptionStore, SubscriptionStore
from .tiers import TierRegistry

__all__ = [
    # Components
    "AccessGate",
    "RenewalScheduler",
    "SubscriptionLedger",
    "TierRegistry",
    "Notifier",
    "LoggingNotifier",
    "SweepReport",
    # Storage
    "SubscriptionStore",
    "InMemorySubscriptionStore",
    # Enums / policy
    "BillingPolicy",
    "PaymentStatus",
    "SubscriptionStatus",
    "TierLevel",
    # Models
    "AccessCheckResult",
    "CancelSubscriptionRequest",
    "CreateTierRequest",
    "RenewSubscriptionRequest",
    "RevenueSummary",
    "SignalAccessResult",
    "SubscribeRequest",
    "SubscriptionTier",
    "TierResponse",
    "TierRevenue",
    "UpdateTierRequest",
    "UserSubscription",
    # Errors
    "SubscriptionError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "ForbiddenError",
    "PaymentFailedError",
]
