"""Supabase-backed subscription storage.

Single-row reads and guarded single-statement updates go through the
PostgREST table API. Every write that also moves a tier's aggregate
counters is a Postgres function (see migrations/001_subscriptions.sql)
called via ``db.rpc`` so the row change and the ``col = col + n`` counter
update commit in one transaction.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..database import SUBSCRIPTIONS_TABLE, TIERS_TABLE
from ..payments.revenue import format_money
from .errors import ConflictError, SubscriptionError, ValidationError
from .models import (
    RENEWABLE_STATUSES,
    SubscriptionStatus,
    SubscriptionTier,
    TierLevel,
    UserSubscription,
)
from .storage import TIER_CLOSED_MESSAGE

logger = logging.getLogger("signalsubs.storage")

UNIQUE_VIOLATION = "23505"
RAISE_EXCEPTION = "P0001"

# Raised by insert_subscription_with_counters when the locked tier row is closed
TIER_NOT_ACCEPTING = "tier_not_accepting"

# Unique index names (see migration) -> user-facing conflict message
_CONFLICT_MESSAGES = {
    "uq_active_free_tier": "Provider already has an active FREE tier",
    "uq_active_subscription": "You already have an active subscription to this tier",
    "uq_subscription_tx_hash": "This payment transaction has already been used",
}


def _domain_error_from(error: APIError) -> SubscriptionError | None:
    code = getattr(error, "code", None)
    if code == RAISE_EXCEPTION and TIER_NOT_ACCEPTING in str(getattr(error, "message", "")):
        return ValidationError(TIER_CLOSED_MESSAGE)
    if code != UNIQUE_VIOLATION:
        return None
    text = f"{getattr(error, 'message', '')} {getattr(error, 'details', '')}"
    for index_name, message in _CONFLICT_MESSAGES.items():
        if index_name in text:
            return ConflictError(message)
    return ConflictError("Conflicting record already exists")


def _serialize(fields: dict) -> dict:
    """Turn a field dict into JSON-ready values for PostgREST."""
    out = {}
    for key, value in fields.items():
        if isinstance(value, Decimal):
            out[key] = format_money(value)
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


def _rows(data) -> list[dict]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


class SupabaseSubscriptionStore:
    """Stateless wrapper; every call runs the blocking client in a thread."""

    def __init__(self, db: Client):
        self.db = db

    async def _run(self, fn):
        try:
            return await asyncio.to_thread(fn)
        except APIError as e:
            domain_error = _domain_error_from(e)
            if domain_error is not None:
                raise domain_error from e
            logger.error("Supabase error: code=%s message=%s", getattr(e, "code", None), e)
            raise

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        result = await self._run(
            lambda: self.db.table(TIERS_TABLE).select("*").eq("id", tier_id).limit(1).execute()
        )
        return SubscriptionTier(**result.data[0]) if result.data else None

    async def list_tiers(
        self, provider_id: str, include_inactive: bool = False
    ) -> list[SubscriptionTier]:
        def _query():
            query = self.db.table(TIERS_TABLE).select("*").eq("provider_id", provider_id)
            if not include_inactive:
                query = query.eq("active", True)
            return query.order("price").execute()

        result = await self._run(_query)
        return [SubscriptionTier(**row) for row in result.data or []]

    async def find_active_free_tier(
        self, provider_id: str, exclude_tier_id: Optional[str] = None
    ) -> Optional[SubscriptionTier]:
        def _query():
            query = (
                self.db.table(TIERS_TABLE)
                .select("*")
                .eq("provider_id", provider_id)
                .eq("level", TierLevel.free.value)
                .eq("active", True)
            )
            if exclude_tier_id:
                query = query.neq("id", exclude_tier_id)
            return query.limit(1).execute()

        result = await self._run(_query)
        return SubscriptionTier(**result.data[0]) if result.data else None

    async def insert_tier(self, tier: SubscriptionTier) -> SubscriptionTier:
        data = tier.model_dump(mode="json", exclude={"created_at", "updated_at"})
        result = await self._run(lambda: self.db.table(TIERS_TABLE).insert(data).execute())
        if not result.data:
            raise RuntimeError(f"Failed to create tier for provider {tier.provider_id}")
        return SubscriptionTier(**result.data[0])

    async def update_tier(
        self,
        tier_id: str,
        fields: dict,
        require_no_subscribers: bool = False,
    ) -> Optional[SubscriptionTier]:
        update = _serialize(fields)  # updated_at is set by trigger

        def _update():
            query = self.db.table(TIERS_TABLE).update(update).eq("id", tier_id)
            if require_no_subscribers:
                query = query.eq("subscriber_count", 0)  # Optimistic lock
            return query.execute()

        result = await self._run(_update)
        return SubscriptionTier(**result.data[0]) if result.data else None

    async def revoke_tier_subscriptions(
        self,
        tier_id: str,
        reason: str,
        now: datetime,
        deactivate_tier: bool = False,
    ) -> int:
        result = await self._run(
            lambda: self.db.rpc(
                "revoke_tier_subscriptions",
                {
                    "p_tier_id": tier_id,
                    "p_reason": reason,
                    "p_now": now.isoformat(),
                    "p_deactivate": deactivate_tier,
                },
            ).execute()
        )
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else 0
        if isinstance(data, dict):
            data = next(iter(data.values()), 0)
        return int(data or 0)

    # ------------------------------------------------------------------
    # Subscriptions: reads
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> Optional[UserSubscription]:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("id", subscription_id)
            .limit(1)
            .execute()
        )
        return UserSubscription(**result.data[0]) if result.data else None

    async def list_subscriptions(
        self,
        user_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        tier_id: Optional[str] = None,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> list[UserSubscription]:
        def _query():
            query = self.db.table(SUBSCRIPTIONS_TABLE).select("*")
            if user_id is not None:
                query = query.eq("user_id", user_id)
            if provider_id is not None:
                query = query.eq("provider_id", provider_id)
            if tier_id is not None:
                query = query.eq("tier_id", tier_id)
            if statuses is not None:
                query = query.in_("status", [s.value for s in statuses])
            return query.order("created_at", desc=True).execute()

        result = await self._run(_query)
        return [UserSubscription(**row) for row in result.data or []]

    async def find_active_subscription(
        self, user_id: str, tier_id: str
    ) -> Optional[UserSubscription]:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("tier_id", tier_id)
            .eq("status", SubscriptionStatus.active.value)
            .limit(1)
            .execute()
        )
        return UserSubscription(**result.data[0]) if result.data else None

    async def tx_hash_in_use(self, tx_hash: str) -> bool:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("id")
            .eq("ledger_tx_hash", tx_hash)
            .limit(1)
            .execute()
        )
        return bool(result.data)

    async def list_due_for_renewal(self, now: datetime) -> list[UserSubscription]:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("status", SubscriptionStatus.active.value)
            .eq("auto_renew", True)
            .lte("renews_at", now.isoformat())
            .execute()
        )
        return [UserSubscription(**row) for row in result.data or []]

    async def list_expired_candidates(self, now: datetime) -> list[UserSubscription]:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .in_("status", [s.value for s in RENEWABLE_STATUSES])
            .lte("period_end", now.isoformat())
            .execute()
        )
        return [UserSubscription(**row) for row in result.data or []]

    async def list_renewals_between(
        self, start: datetime, end: datetime
    ) -> list[UserSubscription]:
        result = await self._run(
            lambda: self.db.table(SUBSCRIPTIONS_TABLE)
            .select("*")
            .eq("status", SubscriptionStatus.active.value)
            .eq("auto_renew", True)
            .gte("renews_at", start.isoformat())
            .lt("renews_at", end.isoformat())
            .execute()
        )
        return [UserSubscription(**row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Subscriptions: writes
    # ------------------------------------------------------------------

    async def insert_subscription(self, subscription: UserSubscription) -> UserSubscription:
        payload = subscription.model_dump(mode="json", exclude={"created_at", "updated_at"})
        result = await self._run(
            lambda: self.db.rpc(
                "insert_subscription_with_counters", {"p_subscription": payload}
            ).execute()
        )
        rows = _rows(result.data)
        if not rows:
            raise RuntimeError(f"Failed to create subscription for user {subscription.user_id}")
        return UserSubscription(**rows[0])

    async def update_subscription(
        self,
        subscription_id: str,
        fields: dict,
        expected_statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Optional[UserSubscription]:
        update = _serialize(fields)  # updated_at is set by trigger

        def _update():
            query = self.db.table(SUBSCRIPTIONS_TABLE).update(update).eq("id", subscription_id)
            if expected_statuses is not None:
                query = query.in_("status", [s.value for s in expected_statuses])
            return query.execute()

        result = await self._run(_update)
        return UserSubscription(**result.data[0]) if result.data else None

    async def cancel_subscription_now(
        self, subscription_id: str, fields: dict
    ) -> Optional[UserSubscription]:
        result = await self._run(
            lambda: self.db.rpc(
                "cancel_subscription_now",
                {"p_id": subscription_id, "p_fields": _serialize(fields)},
            ).execute()
        )
        rows = _rows(result.data)
        return UserSubscription(**rows[0]) if rows else None

    async def apply_renewal(
        self,
        subscription_id: str,
        fields: dict,
        amount: Decimal,
        expected_statuses: Iterable[SubscriptionStatus],
        expected_period_end: datetime,
    ) -> Optional[UserSubscription]:
        result = await self._run(
            lambda: self.db.rpc(
                "apply_subscription_renewal",
                {
                    "p_id": subscription_id,
                    "p_fields": _serialize(fields),
                    "p_amount": format_money(amount),
                    "p_expected_statuses": [s.value for s in expected_statuses],
                    "p_expected_period_end": expected_period_end.isoformat(),
                },
            ).execute()
        )
        rows = _rows(result.data)
        return UserSubscription(**rows[0]) if rows else None

    async def expire_subscription(
        self, subscription_id: str, now: datetime
    ) -> Optional[UserSubscription]:
        result = await self._run(
            lambda: self.db.rpc(
                "expire_subscription",
                {"p_id": subscription_id, "p_now": now.isoformat()},
            ).execute()
        )
        rows = _rows(result.data)
        return UserSubscription(**rows[0]) if rows else None
