"""Subscription ledger: business logic for subscribe, cancel and renew.

All monetary values use Decimal. Payment proofs are verified against the
ledger *before* any store write, so no store lock or transaction is ever
held across the network call. Each write that moves a tier's counters is
a single atomic store operation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..database import UserDirectory
from ..logging_config import get_logger, log_transition
from ..payments.revenue import ZERO, RevenueSplitter, format_money
from ..payments.verification import PaymentVerifier, normalize_tx_hash
from .access import AccessGate
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailedError,
    ValidationError,
)
from .models import (
    RENEWABLE_STATUSES,
    BillingPolicy,
    CancelSubscriptionRequest,
    PaymentStatus,
    RenewSubscriptionRequest,
    RevenueSummary,
    SubscribeRequest,
    SubscriptionStatus,
    SubscriptionTier,
    TierRevenue,
    UserSubscription,
)
from .storage import TIER_CLOSED_MESSAGE, SubscriptionStore
from .tiers import TierRegistry

logger = get_logger("ledger")

REPLAYED_TX_MESSAGE = "This payment transaction has already been used"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionLedger:
    """Sole writer of subscription rows and of tier subscriber/revenue counters."""

    def __init__(
        self,
        store: SubscriptionStore,
        tiers: TierRegistry,
        verifier: PaymentVerifier,
        splitter: RevenueSplitter,
        users: UserDirectory,
        access: AccessGate,
        policy: BillingPolicy | None = None,
    ):
        self.store = store
        self.tiers = tiers
        self.verifier = verifier
        self.splitter = splitter
        self.users = users
        self.access = access
        self.policy = policy or BillingPolicy()

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(
        self, user_id: str, request: SubscribeRequest, now: datetime | None = None
    ) -> UserSubscription:
        """Create an ACTIVE subscription for ``user_id``.

        Paid tiers require a ledger transaction paying the tier price from
        the subscriber wallet to the provider wallet. FREE tiers never touch
        the verifier.
        """
        now = now or _now()
        tier = await self.tiers.get_tier(request.tier_id)

        if not tier.active or not tier.accepting_new_subscribers:
            raise ValidationError(TIER_CLOSED_MESSAGE)

        if await self.store.find_active_subscription(user_id, tier.id):
            raise ConflictError("You already have an active subscription to this tier")

        provider_wallet = await self.users.get_wallet_address(tier.provider_id)
        tx_hash: Optional[str] = None

        if tier.is_free:
            amount = ZERO
            commission = earnings = ZERO
        else:
            if not request.ledger_tx_hash:
                raise ValidationError("A payment transaction hash is required for paid tiers")
            if not provider_wallet:
                raise ValidationError("Provider has not configured a payout wallet")

            tx_hash = normalize_tx_hash(request.ledger_tx_hash)
            if await self.store.tx_hash_in_use(tx_hash):
                raise ConflictError(REPLAYED_TX_MESSAGE)

            await self._verify_or_raise(
                tx_hash, tier, request.subscriber_wallet, provider_wallet
            )
            split = self.splitter.split(tier.price)
            amount = split.gross
            commission = split.platform_commission
            earnings = split.provider_earnings

        period_end = self.policy.period_end(now)
        subscription = UserSubscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tier_id=tier.id,
            provider_id=tier.provider_id,
            status=SubscriptionStatus.active,
            payment_status=PaymentStatus.completed,
            amount_paid=amount,
            platform_commission=commission,
            provider_earnings=earnings,
            ledger_tx_hash=tx_hash,
            period_start=now,
            period_end=period_end,
            renews_at=self.policy.renews_at(period_end),
            subscriber_wallet=request.subscriber_wallet,
            provider_wallet=provider_wallet or "",
            auto_renew=request.auto_renew,
        )

        created = await self.store.insert_subscription(subscription)
        log_transition(
            logger,
            created.id,
            None,
            created.status.value,
            user=user_id,
            tier=tier.id,
            amount=format_money(amount),
            tx=tx_hash,
        )
        return created

    async def _verify_or_raise(
        self,
        tx_hash: str,
        tier: SubscriptionTier,
        sender: str,
        receiver: str,
    ):
        verification = await self.verifier.verify(tx_hash, tier.price, sender, receiver)
        if not verification.valid:
            raise PaymentFailedError(
                verification.error or "Payment verification failed", verification
            )
        return verification

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_subscription(
        self,
        subscription_id: str,
        user_id: str,
        request: CancelSubscriptionRequest,
        now: datetime | None = None,
    ) -> UserSubscription:
        """Cancel now, or switch off renewal and let the period run out."""
        now = now or _now()
        subscription = await self.get_subscription(subscription_id, user_id=user_id)
        if subscription.is_terminal:
            raise ValidationError(
                f"Subscription is already {subscription.status.value.lower()}"
            )

        fields = {
            "auto_renew": False,
            "cancellation_reason": request.reason,
            "cancelled_at": now,
        }

        if request.immediate:
            updated = await self.store.cancel_subscription_now(subscription_id, fields)
        else:
            # Stays ACTIVE until the expiry sweep picks it up at period_end
            updated = await self.store.update_subscription(
                subscription_id, fields, expected_statuses=RENEWABLE_STATUSES
            )

        if updated is None:
            raise ValidationError("Subscription changed state while cancelling; retry")

        log_transition(
            logger,
            subscription_id,
            subscription.status.value,
            updated.status.value,
            immediate=request.immediate,
            reason=request.reason,
        )
        return updated

    # ------------------------------------------------------------------
    # Renew
    # ------------------------------------------------------------------

    async def renew_subscription(
        self,
        subscription_id: str,
        user_id: str,
        request: RenewSubscriptionRequest,
        now: datetime | None = None,
    ) -> UserSubscription:
        """Extend a subscription by one billing cycle.

        The new period starts at the old period_end, not at ``now``. A
        rejected payment bumps payment_failure_count and, once the limit is
        reached on an ACTIVE subscription, suspends it; the rejection is
        then raised as PaymentFailedError. LedgerUnavailableError propagates
        untouched and changes nothing.
        If another renewal moved the period first, this one raises
        ConflictError and leaves the row and revenue as that renewal left them.
        """
        subscription = await self.get_subscription(subscription_id, user_id=user_id)

        if subscription.status not in RENEWABLE_STATUSES:
            raise ValidationError(
                f"Cannot renew a subscription with status {subscription.status.value}"
            )
        if not subscription.auto_renew:
            raise ValidationError("Auto-renew is disabled for this subscription")

        tier = await self.tiers.get_tier(subscription.tier_id)
        if not tier.active:
            raise ValidationError("This tier is no longer active")

        tx_hash: Optional[str] = None
        if not tier.is_free:
            if not request.ledger_tx_hash:
                raise ValidationError("A payment transaction hash is required to renew")
            tx_hash = normalize_tx_hash(request.ledger_tx_hash)
            if await self.store.tx_hash_in_use(tx_hash):
                raise ConflictError(REPLAYED_TX_MESSAGE)

            verification = await self.verifier.verify(
                tx_hash,
                tier.price,
                subscription.subscriber_wallet,
                subscription.provider_wallet,
            )
            if not verification.valid:
                await self._record_payment_failure(
                    subscription, verification.error or "Payment verification failed"
                )
                raise PaymentFailedError(
                    verification.error or "Payment verification failed", verification
                )

        split = self.splitter.split(tier.price)
        period_start = subscription.period_end
        period_end = self.policy.period_end(period_start)
        fields = {
            "status": SubscriptionStatus.active,
            "payment_status": PaymentStatus.completed,
            "ledger_tx_hash": tx_hash,
            "amount_paid": split.gross,
            "platform_commission": split.platform_commission,
            "provider_earnings": split.provider_earnings,
            "period_start": period_start,
            "period_end": period_end,
            "renews_at": self.policy.renews_at(period_end),
            "renewal_count": subscription.renewal_count + 1,
            "payment_failure_count": 0,
            "last_failure_reason": None,
        }

        updated = await self.store.apply_renewal(
            subscription_id,
            fields,
            split.gross,
            expected_statuses=RENEWABLE_STATUSES,
            expected_period_end=subscription.period_end,
        )
        if updated is None:
            current = await self.store.get_subscription(subscription_id)
            if current is not None and current.period_end != subscription.period_end:
                logger.warning(
                    f"Concurrent renewal lost | subscription={subscription_id} | tx={tx_hash}"
                )
                raise ConflictError(
                    "Subscription was already renewed for this period; payment not applied"
                )
            raise ValidationError("Subscription changed state while renewing; retry")

        log_transition(
            logger,
            subscription_id,
            subscription.status.value,
            updated.status.value,
            renewal=updated.renewal_count,
            period_end=updated.period_end.isoformat(),
            tx=tx_hash,
        )
        return updated

    async def _record_payment_failure(self, subscription: UserSubscription, reason: str) -> None:
        failures = subscription.payment_failure_count + 1
        updated = await self.store.update_subscription(
            subscription.id,
            {
                "payment_failure_count": failures,
                "last_failure_reason": reason,
                "payment_status": PaymentStatus.failed,
            },
            expected_statuses=[subscription.status],
        )
        if updated is None:
            logger.warning(
                f"Payment failure not recorded, subscription changed state | "
                f"subscription={subscription.id}"
            )
            return

        logger.warning(
            f"Renewal payment failed | subscription={subscription.id} | "
            f"failures={failures}/{self.policy.max_payment_failures} | reason={reason}"
        )
        if (
            failures >= self.policy.max_payment_failures
            and updated.status == SubscriptionStatus.active
        ):
            await self.access.suspend_subscription(
                subscription.id,
                f"Suspended after {failures} failed payments: {reason}",
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_subscription(
        self, subscription_id: str, user_id: str | None = None
    ) -> UserSubscription:
        """Fetch one subscription; with ``user_id`` the caller must own it."""
        subscription = await self.store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if user_id is not None and subscription.user_id != user_id:
            raise ForbiddenError("You do not own this subscription")
        return subscription

    async def list_user_subscriptions(self, user_id: str) -> list[UserSubscription]:
        return await self.store.list_subscriptions(user_id=user_id)

    async def list_due_for_renewal(self, now: datetime | None = None) -> list[UserSubscription]:
        return await self.store.list_due_for_renewal(now or _now())

    async def list_expired_candidates(
        self, now: datetime | None = None
    ) -> list[UserSubscription]:
        return await self.store.list_expired_candidates(now or _now())

    async def list_renewals_between(
        self, start: datetime, end: datetime
    ) -> list[UserSubscription]:
        return await self.store.list_renewals_between(start, end)

    async def list_suspended(self) -> list[UserSubscription]:
        return await self.store.list_subscriptions(statuses=[SubscriptionStatus.suspended])

    async def expire_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> Optional[UserSubscription]:
        """Move an ACTIVE or SUSPENDED subscription to EXPIRED.

        Only rows whose period_end <= ``now`` move. Returns None when the row
        was already terminal or a renewal extended its period in the meantime.
        """
        before = await self.store.get_subscription(subscription_id)
        expired = await self.store.expire_subscription(subscription_id, now or _now())
        if expired is not None:
            log_transition(
                logger,
                subscription_id,
                before.status.value if before else None,
                expired.status.value,
            )
        return expired

    async def revenue_summary(self, provider_id: str) -> RevenueSummary:
        """Sum COMPLETED payments per tier and count current ACTIVE subscribers."""
        tiers = await self.store.list_tiers(provider_id, include_inactive=True)
        subscriptions = await self.store.list_subscriptions(provider_id=provider_id)

        rows = []
        for tier in tiers:
            tier_subs = [s for s in subscriptions if s.tier_id == tier.id]
            paid = [s for s in tier_subs if s.payment_status == PaymentStatus.completed]
            rows.append(
                TierRevenue(
                    tier_id=tier.id,
                    tier_name=tier.name,
                    active_subscribers=sum(
                        1 for s in tier_subs if s.status == SubscriptionStatus.active
                    ),
                    total_revenue=sum((s.amount_paid for s in paid), Decimal(0)),
                    platform_commission=sum((s.platform_commission for s in paid), Decimal(0)),
                    provider_earnings=sum((s.provider_earnings for s in paid), Decimal(0)),
                )
            )

        return RevenueSummary(
            provider_id=provider_id,
            total_revenue=sum((r.total_revenue for r in rows), Decimal(0)),
            platform_commission_paid=sum((r.platform_commission for r in rows), Decimal(0)),
            net_earnings=sum((r.provider_earnings for r in rows), Decimal(0)),
            active_subscribers=sum(r.active_subscribers for r in rows),
            tiers=rows,
        )
