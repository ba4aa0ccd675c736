"""Tier registry: provider-owned tier definitions and their pricing rules."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from ..logging_config import get_logger
from ..payments.revenue import ZERO, to_money
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import CreateTierRequest, SubscriptionTier, TierLevel, UpdateTierRequest
from .storage import SubscriptionStore

logger = get_logger("tiers")

TIER_CANCELLED_REASON = "tier cancelled"

# Patch fields where an explicit null is meaningful (signal_limit null = unlimited)
NULLABLE_FIELDS = {"description", "signal_limit"}


def _check_price(level: TierLevel, price: Decimal) -> None:
    """FREE tiers cost nothing; every other level must cost something."""
    if level == TierLevel.free and price != ZERO:
        raise ValidationError("FREE tier must have a price of 0")
    if level != TierLevel.free and price <= ZERO:
        raise ValidationError("Paid tiers must have a price greater than 0")


class TierRegistry:
    """Sole writer of tier definition fields (everything but the counters)."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def create_tier(self, provider_id: str, request: CreateTierRequest) -> SubscriptionTier:
        price = to_money(request.price)
        _check_price(request.level, price)

        if request.level == TierLevel.free:
            if await self.store.find_active_free_tier(provider_id):
                raise ConflictError("Provider already has an active FREE tier")

        tier = SubscriptionTier(
            id=str(uuid.uuid4()),
            provider_id=provider_id,
            name=request.name,
            description=request.description,
            level=request.level,
            price=price,
            signal_limit=request.signal_limit,
            benefits=list(request.benefits),
        )
        # The store re-checks the FREE tier rule under its own lock / unique index
        created = await self.store.insert_tier(tier)
        logger.info(
            f"Tier created | tier={created.id} | provider={provider_id} | "
            f"level={created.level.value} | price={created.price}"
        )
        return created

    async def get_tier(self, tier_id: str) -> SubscriptionTier:
        tier = await self.store.get_tier(tier_id)
        if tier is None:
            raise NotFoundError(f"Tier {tier_id} not found")
        return tier

    async def list_tiers(
        self, provider_id: str, include_inactive: bool = False
    ) -> list[SubscriptionTier]:
        return await self.store.list_tiers(provider_id, include_inactive=include_inactive)

    async def _owned_tier(self, tier_id: str, provider_id: str) -> SubscriptionTier:
        tier = await self.get_tier(tier_id)
        if tier.provider_id != provider_id:
            raise ForbiddenError("You do not own this tier")
        return tier

    async def update_tier(
        self, tier_id: str, provider_id: str, patch: UpdateTierRequest
    ) -> SubscriptionTier:
        """Apply a partial update.

        A price change is only accepted while the tier has no subscribers;
        the check is repeated as a guarded write so a subscribe that lands
        between the read and the write cannot slip through.
        """
        tier = await self._owned_tier(tier_id, provider_id)
        fields = {
            key: value
            for key, value in patch.model_dump(exclude_unset=True).items()
            if value is not None or key in NULLABLE_FIELDS
        }
        if not fields:
            return tier

        price_change = False
        if "price" in fields:
            fields["price"] = to_money(fields["price"])
            if fields["price"] == tier.price:
                del fields["price"]
            else:
                if tier.subscriber_count > 0:
                    raise ValidationError(
                        "Cannot change price while the tier has active subscribers"
                    )
                _check_price(tier.level, fields["price"])
                price_change = True

        if fields.get("active") is False:
            fields.setdefault("accepting_new_subscribers", False)
        elif fields.get("active") and not tier.active:
            fields.setdefault("accepting_new_subscribers", True)

        if tier.level == TierLevel.free and fields.get("active") and not tier.active:
            if await self.store.find_active_free_tier(provider_id, exclude_tier_id=tier_id):
                raise ConflictError("Provider already has an active FREE tier")

        updated = await self.store.update_tier(
            tier_id, fields, require_no_subscribers=price_change
        )
        if updated is None:
            if price_change:
                raise ValidationError(
                    "Cannot change price while the tier has active subscribers"
                )
            raise NotFoundError(f"Tier {tier_id} not found")

        logger.info(
            f"Tier updated | tier={tier_id} | provider={provider_id} | "
            f"fields={sorted(fields)}"
        )
        return updated

    async def cancel_tier(
        self, tier_id: str, provider_id: str, now: datetime | None = None
    ) -> int:
        """Deactivate a tier and cancel all of its ACTIVE subscriptions.

        Both happen in one atomic store operation. Returns how many
        subscriptions were cancelled.
        """
        await self._owned_tier(tier_id, provider_id)
        now = now or datetime.now(timezone.utc)
        affected = await self.store.revoke_tier_subscriptions(
            tier_id, TIER_CANCELLED_REASON, now, deactivate_tier=True
        )
        logger.warning(
            f"Tier cancelled | tier={tier_id} | provider={provider_id} | "
            f"subscriptions_cancelled={affected}"
        )
        return affected
