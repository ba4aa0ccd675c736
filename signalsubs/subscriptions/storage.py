"""
Subscription storage layer.

Defines the persistence protocol the ledger, registry and access gate work
through, plus an in-memory backend for tests and local development.

Every method that touches a tier's aggregate counters together with a
subscription row is a single atomic operation on the backend: the in-memory
store runs it inside one lock-held critical section, the Supabase store as
one Postgres function.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from .errors import ConflictError, ValidationError
from .models import (
    RENEWABLE_STATUSES,
    SubscriptionStatus,
    SubscriptionTier,
    TierLevel,
    UserSubscription,
)

TIER_CLOSED_MESSAGE = "This tier is not accepting new subscribers"


class SubscriptionStore(Protocol):
    """Protocol for subscription persistence backends."""

    # Tiers
    async def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        """Get a tier by ID."""
        ...

    async def list_tiers(
        self, provider_id: str, include_inactive: bool = False
    ) -> list[SubscriptionTier]:
        """List a provider's tiers, cheapest first."""
        ...

    async def find_active_free_tier(
        self, provider_id: str, exclude_tier_id: Optional[str] = None
    ) -> Optional[SubscriptionTier]:
        """Return the provider's active FREE tier, if any."""
        ...

    async def insert_tier(self, tier: SubscriptionTier) -> SubscriptionTier:
        """Insert a tier. Raises ConflictError on a second active FREE tier."""
        ...

    async def update_tier(
        self,
        tier_id: str,
        fields: dict,
        require_no_subscribers: bool = False,
    ) -> Optional[SubscriptionTier]:
        """Update registry-owned tier fields.

        With require_no_subscribers, the write only applies while
        subscriber_count is 0; returns None otherwise (or if missing).
        """
        ...

    async def revoke_tier_subscriptions(
        self,
        tier_id: str,
        reason: str,
        now: datetime,
        deactivate_tier: bool = False,
    ) -> int:
        """Cancel every ACTIVE subscription of a tier. Returns affected count.

        With deactivate_tier, also deactivates the tier and zeroes its
        subscriber_count in the same atomic unit.
        """
        ...

    # Subscriptions
    async def get_subscription(self, subscription_id: str) -> Optional[UserSubscription]:
        """Get a subscription by ID."""
        ...

    async def list_subscriptions(
        self,
        user_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        tier_id: Optional[str] = None,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> list[UserSubscription]:
        """List subscriptions matching all given filters, newest first."""
        ...

    async def find_active_subscription(
        self, user_id: str, tier_id: str
    ) -> Optional[UserSubscription]:
        """Return the ACTIVE subscription for (user, tier), if any."""
        ...

    async def tx_hash_in_use(self, tx_hash: str) -> bool:
        """True if a ledger transaction hash is already recorded."""
        ...

    async def list_due_for_renewal(self, now: datetime) -> list[UserSubscription]:
        """ACTIVE, auto-renewing subscriptions with renews_at <= now."""
        ...

    async def list_expired_candidates(self, now: datetime) -> list[UserSubscription]:
        """ACTIVE or SUSPENDED subscriptions with period_end <= now."""
        ...

    async def list_renewals_between(
        self, start: datetime, end: datetime
    ) -> list[UserSubscription]:
        """ACTIVE, auto-renewing subscriptions with start <= renews_at < end."""
        ...

    async def insert_subscription(self, subscription: UserSubscription) -> UserSubscription:
        """Insert a subscription and bump its tier's counters atomically.

        subscriber_count += 1 and total_revenue += amount_paid. Raises
        ValidationError when the tier is no longer active or accepting
        subscribers, and ConflictError when (user, tier) already has an
        ACTIVE subscription.
        """
        ...

    async def update_subscription(
        self,
        subscription_id: str,
        fields: dict,
        expected_statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Optional[UserSubscription]:
        """Update a subscription if its status is still one of expected_statuses."""
        ...

    async def cancel_subscription_now(
        self, subscription_id: str, fields: dict
    ) -> Optional[UserSubscription]:
        """Move an ACTIVE/SUSPENDED subscription to CANCELLED and decrement
        the tier's subscriber_count (floored at 0), atomically."""
        ...

    async def apply_renewal(
        self,
        subscription_id: str,
        fields: dict,
        amount: Decimal,
        expected_statuses: Iterable[SubscriptionStatus],
        expected_period_end: datetime,
    ) -> Optional[UserSubscription]:
        """Write a successful renewal and add ``amount`` to total_revenue, atomically.

        Only applies while the row still has ``expected_period_end``; a
        renewal that already moved the period wins and this returns None.
        """
        ...

    async def expire_subscription(
        self, subscription_id: str, now: datetime
    ) -> Optional[UserSubscription]:
        """Move an ACTIVE/SUSPENDED subscription whose period_end <= now to
        EXPIRED, clear auto_renew and decrement subscriber_count (floored
        at 0), atomically.

        Returns None when the row is already terminal or its period was
        extended since it was listed (no-op).
        """
        ...


class InMemorySubscriptionStore:
    """In-memory subscription storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._tiers: dict[str, SubscriptionTier] = {}
        self._subscriptions: dict[str, UserSubscription] = {}
        self._lock = asyncio.Lock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    # === Tiers ===

    async def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        return self._copy(self._tiers.get(tier_id))

    async def list_tiers(
        self, provider_id: str, include_inactive: bool = False
    ) -> list[SubscriptionTier]:
        tiers = [
            t for t in self._tiers.values()
            if t.provider_id == provider_id and (include_inactive or t.active)
        ]
        tiers.sort(key=lambda t: t.price)
        return [self._copy(t) for t in tiers]

    def _active_free_tier(
        self, provider_id: str, exclude_tier_id: Optional[str] = None
    ) -> Optional[SubscriptionTier]:
        for tier in self._tiers.values():
            if (
                tier.provider_id == provider_id
                and tier.level == TierLevel.free
                and tier.active
                and tier.id != exclude_tier_id
            ):
                return tier
        return None

    async def find_active_free_tier(
        self, provider_id: str, exclude_tier_id: Optional[str] = None
    ) -> Optional[SubscriptionTier]:
        return self._copy(self._active_free_tier(provider_id, exclude_tier_id))

    async def insert_tier(self, tier: SubscriptionTier) -> SubscriptionTier:
        async with self._lock:
            if tier.level == TierLevel.free and tier.active:
                if self._active_free_tier(tier.provider_id):
                    raise ConflictError("Provider already has an active FREE tier")
            now = self._utc_now()
            stored = tier.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
            self._tiers[stored.id] = stored
            return self._copy(stored)

    async def update_tier(
        self,
        tier_id: str,
        fields: dict,
        require_no_subscribers: bool = False,
    ) -> Optional[SubscriptionTier]:
        async with self._lock:
            tier = self._tiers.get(tier_id)
            if tier is None:
                return None
            if require_no_subscribers and tier.subscriber_count > 0:
                return None
            updated = tier.model_copy(update={**fields, "updated_at": self._utc_now()})
            if updated.level == TierLevel.free and updated.active:
                if self._active_free_tier(updated.provider_id, exclude_tier_id=tier_id):
                    raise ConflictError("Provider already has an active FREE tier")
            self._tiers[tier_id] = updated
            return self._copy(updated)

    async def revoke_tier_subscriptions(
        self,
        tier_id: str,
        reason: str,
        now: datetime,
        deactivate_tier: bool = False,
    ) -> int:
        async with self._lock:
            affected = 0
            for sub_id, sub in list(self._subscriptions.items()):
                if sub.tier_id != tier_id or sub.status != SubscriptionStatus.active:
                    continue
                self._subscriptions[sub_id] = sub.model_copy(
                    update={
                        "status": SubscriptionStatus.cancelled,
                        "cancellation_reason": reason,
                        "cancelled_at": now,
                        "auto_renew": False,
                        "updated_at": now,
                    }
                )
                affected += 1

            tier = self._tiers.get(tier_id)
            if tier is not None:
                if deactivate_tier:
                    self._tiers[tier_id] = tier.model_copy(
                        update={
                            "active": False,
                            "accepting_new_subscribers": False,
                            "subscriber_count": 0,
                            "updated_at": now,
                        }
                    )
                elif affected:
                    self._tiers[tier_id] = tier.model_copy(
                        update={
                            "subscriber_count": max(0, tier.subscriber_count - affected),
                            "updated_at": now,
                        }
                    )
            return affected

    # === Subscriptions ===

    async def get_subscription(self, subscription_id: str) -> Optional[UserSubscription]:
        return self._copy(self._subscriptions.get(subscription_id))

    async def list_subscriptions(
        self,
        user_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        tier_id: Optional[str] = None,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> list[UserSubscription]:
        wanted = set(statuses) if statuses is not None else None
        subs = [
            s for s in self._subscriptions.values()
            if (user_id is None or s.user_id == user_id)
            and (provider_id is None or s.provider_id == provider_id)
            and (tier_id is None or s.tier_id == tier_id)
            and (wanted is None or s.status in wanted)
        ]
        subs.sort(key=lambda s: s.created_at or s.period_start, reverse=True)
        return [self._copy(s) for s in subs]

    async def find_active_subscription(
        self, user_id: str, tier_id: str
    ) -> Optional[UserSubscription]:
        return self._copy(self._active_for(user_id, tier_id))

    def _active_for(self, user_id: str, tier_id: str) -> Optional[UserSubscription]:
        for sub in self._subscriptions.values():
            if (
                sub.user_id == user_id
                and sub.tier_id == tier_id
                and sub.status == SubscriptionStatus.active
            ):
                return sub
        return None

    async def tx_hash_in_use(self, tx_hash: str) -> bool:
        return any(s.ledger_tx_hash == tx_hash for s in self._subscriptions.values())

    async def list_due_for_renewal(self, now: datetime) -> list[UserSubscription]:
        return [
            self._copy(s) for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.active and s.auto_renew and s.renews_at <= now
        ]

    async def list_expired_candidates(self, now: datetime) -> list[UserSubscription]:
        return [
            self._copy(s) for s in self._subscriptions.values()
            if s.status in RENEWABLE_STATUSES and s.period_end <= now
        ]

    async def list_renewals_between(
        self, start: datetime, end: datetime
    ) -> list[UserSubscription]:
        return [
            self._copy(s) for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.active
            and s.auto_renew
            and start <= s.renews_at < end
        ]

    async def insert_subscription(self, subscription: UserSubscription) -> UserSubscription:
        async with self._lock:
            tier = self._tiers.get(subscription.tier_id)
            if tier is None:
                raise ConflictError(f"Tier {subscription.tier_id} no longer exists")
            if not tier.active or not tier.accepting_new_subscribers:
                raise ValidationError(TIER_CLOSED_MESSAGE)
            if subscription.ledger_tx_hash and any(
                s.ledger_tx_hash == subscription.ledger_tx_hash
                for s in self._subscriptions.values()
            ):
                raise ConflictError("This payment transaction has already been used")
            if self._active_for(subscription.user_id, subscription.tier_id):
                raise ConflictError("You already have an active subscription to this tier")

            now = self._utc_now()
            stored = subscription.model_copy(
                update={"created_at": subscription.created_at or now, "updated_at": now},
                deep=True,
            )
            self._subscriptions[stored.id] = stored
            self._tiers[tier.id] = tier.model_copy(
                update={
                    "subscriber_count": tier.subscriber_count + 1,
                    "total_revenue": tier.total_revenue + subscription.amount_paid,
                    "updated_at": now,
                }
            )
            return self._copy(stored)

    def _guarded_update(
        self,
        subscription_id: str,
        fields: dict,
        expected_statuses: Optional[Iterable[SubscriptionStatus]],
    ) -> tuple[Optional[UserSubscription], Optional[UserSubscription]]:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return None, None
        if expected_statuses is not None and sub.status not in set(expected_statuses):
            return sub, None
        updated = sub.model_copy(update={**fields, "updated_at": self._utc_now()})
        self._subscriptions[subscription_id] = updated
        return sub, updated

    def _adjust_tier(self, tier_id: str, count_delta: int = 0, revenue_delta: Decimal = Decimal(0)) -> None:
        tier = self._tiers.get(tier_id)
        if tier is None:
            return
        self._tiers[tier_id] = tier.model_copy(
            update={
                "subscriber_count": max(0, tier.subscriber_count + count_delta),
                "total_revenue": tier.total_revenue + revenue_delta,
                "updated_at": self._utc_now(),
            }
        )

    async def update_subscription(
        self,
        subscription_id: str,
        fields: dict,
        expected_statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Optional[UserSubscription]:
        async with self._lock:
            _, updated = self._guarded_update(subscription_id, fields, expected_statuses)
            return self._copy(updated)

    async def cancel_subscription_now(
        self, subscription_id: str, fields: dict
    ) -> Optional[UserSubscription]:
        async with self._lock:
            before, updated = self._guarded_update(
                subscription_id,
                {**fields, "status": SubscriptionStatus.cancelled},
                RENEWABLE_STATUSES,
            )
            if updated is None:
                return None
            self._adjust_tier(before.tier_id, count_delta=-1)
            return self._copy(updated)

    async def apply_renewal(
        self,
        subscription_id: str,
        fields: dict,
        amount: Decimal,
        expected_statuses: Iterable[SubscriptionStatus],
        expected_period_end: datetime,
    ) -> Optional[UserSubscription]:
        async with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None or current.period_end != expected_period_end:
                return None
            tx_hash = fields.get("ledger_tx_hash")
            if tx_hash and any(
                s.ledger_tx_hash == tx_hash
                for s in self._subscriptions.values()
            ):
                raise ConflictError("This payment transaction has already been used")
            before, updated = self._guarded_update(subscription_id, fields, expected_statuses)
            if updated is None:
                return None
            self._adjust_tier(before.tier_id, revenue_delta=amount)
            return self._copy(updated)

    async def expire_subscription(
        self, subscription_id: str, now: datetime
    ) -> Optional[UserSubscription]:
        async with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None or current.period_end > now:
                return None
            before, updated = self._guarded_update(
                subscription_id,
                {"status": SubscriptionStatus.expired, "auto_renew": False},
                RENEWABLE_STATUSES,
            )
            if updated is None:
                return None
            self._adjust_tier(before.tier_id, count_delta=-1)
            return self._copy(updated)
