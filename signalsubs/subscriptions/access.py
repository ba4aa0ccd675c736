"""Access gate: read-side answers to "can this user see this provider's content".

Also owns the two narrow status writes (suspend / restore) used by the
ledger and the scheduler, and bulk revocation of a tier's subscribers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..logging_config import get_logger, log_transition
from .errors import NotFoundError, ValidationError
from .models import (
    AccessCheckResult,
    SignalAccessResult,
    SubscriptionStatus,
    TierLevel,
    UserSubscription,
)
from .storage import SubscriptionStore

logger = get_logger("access")


class AccessGate:
    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def check_access(
        self, user_id: str, provider_id: str, now: datetime | None = None
    ) -> AccessCheckResult:
        """Pick the user's best live subscription to a provider.

        Among ACTIVE subscriptions whose period has not ended, the one tied
        to the highest-priced tier wins.
        """
        now = now or datetime.now(timezone.utc)
        subscriptions = await self.store.list_subscriptions(
            user_id=user_id,
            provider_id=provider_id,
            statuses=[SubscriptionStatus.active],
        )
        live = [s for s in subscriptions if s.period_end > now]
        if not live:
            return AccessCheckResult(has_access=False, reason="No active subscription")

        best: Optional[UserSubscription] = None
        best_tier = None
        for sub in live:
            tier = await self.store.get_tier(sub.tier_id)
            if tier is None:
                continue
            if best_tier is None or tier.price > best_tier.price:
                best, best_tier = sub, tier

        if best is None:
            return AccessCheckResult(has_access=False, reason="No active subscription")

        return AccessCheckResult(
            has_access=True,
            reason=f"Active {best_tier.level.value} subscription",
            subscription=best,
            signal_limit=best_tier.signal_limit,
        )

    async def can_user_view_signal(
        self,
        user_id: str,
        provider_id: str,
        content_tier_level: TierLevel | None = None,
        now: datetime | None = None,
    ) -> SignalAccessResult:
        # Untagged and FREE content is public
        if content_tier_level is None or content_tier_level == TierLevel.free:
            return SignalAccessResult(allowed=True, reason="Free content")

        access = await self.check_access(user_id, provider_id, now=now)
        return SignalAccessResult(allowed=access.has_access, reason=access.reason)

    async def revoke_access_for_tier(
        self, tier_id: str, reason: str, now: datetime | None = None
    ) -> int:
        """Cancel every ACTIVE subscription of a tier. Returns affected count.

        The tier itself stays as-is apart from its subscriber_count.
        """
        now = now or datetime.now(timezone.utc)
        affected = await self.store.revoke_tier_subscriptions(tier_id, reason, now)
        logger.warning(f"Access revoked for tier | tier={tier_id} | count={affected} | reason={reason}")
        return affected

    async def suspend_subscription(self, subscription_id: str, reason: str) -> UserSubscription:
        updated = await self.store.update_subscription(
            subscription_id,
            {
                "status": SubscriptionStatus.suspended,
                "last_failure_reason": reason,
            },
            expected_statuses=[SubscriptionStatus.active],
        )
        if updated is None:
            raise await self._transition_error(subscription_id, "suspend")
        log_transition(
            logger,
            subscription_id,
            SubscriptionStatus.active.value,
            SubscriptionStatus.suspended.value,
            reason=reason,
        )
        return updated

    async def restore_subscription(self, subscription_id: str) -> UserSubscription:
        updated = await self.store.update_subscription(
            subscription_id,
            {
                "status": SubscriptionStatus.active,
                "payment_failure_count": 0,
                "last_failure_reason": None,
            },
            expected_statuses=[SubscriptionStatus.suspended],
        )
        if updated is None:
            raise await self._transition_error(subscription_id, "restore")
        log_transition(
            logger,
            subscription_id,
            SubscriptionStatus.suspended.value,
            SubscriptionStatus.active.value,
        )
        return updated

    async def get_active_subscribers_for_provider(
        self, provider_id: str
    ) -> list[UserSubscription]:
        return await self.store.list_subscriptions(
            provider_id=provider_id, statuses=[SubscriptionStatus.active]
        )

    async def _transition_error(self, subscription_id: str, action: str) -> Exception:
        current = await self.store.get_subscription(subscription_id)
        if current is None:
            return NotFoundError(f"Subscription {subscription_id} not found")
        return ValidationError(
            f"Cannot {action} a subscription with status {current.status.value}"
        )
