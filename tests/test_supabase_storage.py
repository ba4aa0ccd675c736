"""Tests for the Supabase store using a mocked client."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from signalsubs.database import SUBSCRIPTIONS_TABLE, TIERS_TABLE
from signalsubs.subscriptions.errors import ConflictError, ValidationError
from signalsubs.subscriptions.models import (
    SubscriptionStatus,
    SubscriptionTier,
    TierLevel,
    UserSubscription,
)
from signalsubs.subscriptions.supabase_storage import (
    SupabaseSubscriptionStore,
    _domain_error_from,
    _rows,
    _serialize,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

QUERY_METHODS = (
    "select", "eq", "neq", "in_", "lte", "gte", "lt", "limit", "order", "insert", "update",
)


def make_query(data=None, error=None):
    """A chainable PostgREST builder whose execute() returns ``data``."""
    query = MagicMock()
    for name in QUERY_METHODS:
        getattr(query, name).return_value = query
    if error is not None:
        query.execute.side_effect = error
    else:
        query.execute.return_value = MagicMock(data=data)
    return query


def make_db(query):
    db = MagicMock()
    db.table.return_value = query
    db.rpc.return_value = query
    return db


def tier_row(**overrides):
    row = {
        "id": str(uuid.uuid4()),
        "provider_id": "usr_provider",
        "name": "Basic",
        "level": "BASIC",
        "price": "10.0000000",
        "signal_limit": None,
        "benefits": [],
        "active": True,
        "accepting_new_subscribers": True,
        "subscriber_count": 0,
        "total_revenue": "0.0000000",
        "created_at": NOW.isoformat(),
        "updated_at": NOW.isoformat(),
    }
    row.update(overrides)
    return row


def subscription_row(**overrides):
    row = {
        "id": str(uuid.uuid4()),
        "user_id": "usr_sub",
        "tier_id": str(uuid.uuid4()),
        "provider_id": "usr_provider",
        "status": "ACTIVE",
        "amount_paid": "10.0000000",
        "period_start": NOW.isoformat(),
        "period_end": "2024-01-31T00:00:00+00:00",
        "renews_at": "2024-01-28T00:00:00+00:00",
    }
    row.update(overrides)
    return row


def api_error(code, message=""):
    return APIError({"code": code, "message": message, "details": None, "hint": None})


class TestHelpers:
    def test_serialize(self):
        assert _serialize(
            {
                "price": Decimal("5"),
                "cancelled_at": NOW,
                "status": SubscriptionStatus.cancelled,
                "auto_renew": False,
                "cancellation_reason": None,
            }
        ) == {
            "price": "5.0000000",
            "cancelled_at": "2024-01-01T00:00:00+00:00",
            "status": "CANCELLED",
            "auto_renew": False,
            "cancellation_reason": None,
        }

    @pytest.mark.parametrize(
        "index_name,expected",
        [
            ("uq_active_free_tier", "Provider already has an active FREE tier"),
            ("uq_active_subscription", "You already have an active subscription to this tier"),
            ("uq_subscription_tx_hash", "This payment transaction has already been used"),
            ("some_other_index", "Conflicting record already exists"),
        ],
    )
    def test_unique_violation_maps_to_conflict(self, index_name, expected):
        error = api_error(
            "23505", f'duplicate key value violates unique constraint "{index_name}"'
        )
        conflict = _domain_error_from(error)
        assert isinstance(conflict, ConflictError)
        assert conflict.message == expected

    def test_other_errors_are_not_conflicts(self):
        assert _domain_error_from(api_error("42501", "permission denied")) is None
        assert _domain_error_from(api_error("P0001", "something else")) is None

    def test_closed_tier_maps_to_validation_error(self):
        error = _domain_error_from(api_error("P0001", "tier_not_accepting"))
        assert isinstance(error, ValidationError)
        assert error.message == "This tier is not accepting new subscribers"

    def test_rows(self):
        assert _rows(None) == []
        assert _rows({"id": "a"}) == [{"id": "a"}]
        assert _rows([{"id": "a"}]) == [{"id": "a"}]


class TestTierQueries:
    @pytest.mark.asyncio
    async def test_get_tier(self):
        row = tier_row()
        query = make_query([row])
        store = SupabaseSubscriptionStore(make_db(query))

        tier = await store.get_tier(row["id"])

        assert tier.id == row["id"]
        assert tier.price == Decimal("10")
        assert tier.level == TierLevel.basic
        query.eq.assert_called_with("id", row["id"])

    @pytest.mark.asyncio
    async def test_get_tier_missing(self):
        store = SupabaseSubscriptionStore(make_db(make_query([])))
        assert await store.get_tier("missing") is None

    @pytest.mark.asyncio
    async def test_list_tiers_filters_inactive_by_default(self):
        query = make_query([tier_row()])
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        await store.list_tiers("usr_provider")

        db.table.assert_called_with(TIERS_TABLE)
        query.eq.assert_any_call("active", True)
        query.order.assert_called_with("price")

    @pytest.mark.asyncio
    async def test_price_update_is_guarded_on_subscriber_count(self):
        query = make_query([])
        store = SupabaseSubscriptionStore(make_db(query))

        result = await store.update_tier(
            "tier-1", {"price": Decimal("20")}, require_no_subscribers=True
        )

        assert result is None
        query.update.assert_called_with({"price": "20.0000000"})
        query.eq.assert_any_call("subscriber_count", 0)

    @pytest.mark.asyncio
    async def test_insert_tier_conflict(self):
        query = make_query(
            error=api_error("23505", 'violates unique constraint "uq_active_free_tier"')
        )
        store = SupabaseSubscriptionStore(make_db(query))

        tier = SubscriptionTier(**tier_row(level="FREE", price="0"))
        with pytest.raises(ConflictError, match="FREE tier"):
            await store.insert_tier(tier)

    @pytest.mark.asyncio
    async def test_non_conflict_errors_propagate(self):
        query = make_query(error=api_error("42501", "permission denied"))
        store = SupabaseSubscriptionStore(make_db(query))

        with pytest.raises(APIError):
            await store.get_tier("tier-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [3, [3], [{"revoke_tier_subscriptions": 3}]])
    async def test_revoke_returns_count(self, data):
        query = make_query(data)
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        affected = await store.revoke_tier_subscriptions(
            "tier-1", "tier cancelled", NOW, deactivate_tier=True
        )

        assert affected == 3
        db.rpc.assert_called_once_with(
            "revoke_tier_subscriptions",
            {
                "p_tier_id": "tier-1",
                "p_reason": "tier cancelled",
                "p_now": NOW.isoformat(),
                "p_deactivate": True,
            },
        )


class TestSubscriptionQueries:
    @pytest.mark.asyncio
    async def test_list_subscriptions_applies_filters(self):
        query = make_query([subscription_row()])
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        subs = await store.list_subscriptions(
            user_id="usr_sub", statuses=[SubscriptionStatus.active]
        )

        assert len(subs) == 1
        db.table.assert_called_with(SUBSCRIPTIONS_TABLE)
        query.eq.assert_any_call("user_id", "usr_sub")
        query.in_.assert_called_with("status", ["ACTIVE"])
        query.order.assert_called_with("created_at", desc=True)

    @pytest.mark.asyncio
    async def test_tx_hash_in_use(self):
        store = SupabaseSubscriptionStore(make_db(make_query([{"id": "x"}])))
        assert await store.tx_hash_in_use("a" * 64) is True

        store = SupabaseSubscriptionStore(make_db(make_query([])))
        assert await store.tx_hash_in_use("a" * 64) is False

    @pytest.mark.asyncio
    async def test_insert_subscription_goes_through_rpc(self):
        row = subscription_row()
        query = make_query(row)
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        created = await store.insert_subscription(UserSubscription(**row))

        assert created.id == row["id"]
        name, params = db.rpc.call_args.args
        assert name == "insert_subscription_with_counters"
        payload = params["p_subscription"]
        assert payload["amount_paid"] == "10.0000000"
        assert "created_at" not in payload

    @pytest.mark.asyncio
    async def test_insert_duplicate_subscription(self):
        query = make_query(
            error=api_error("23505", 'violates unique constraint "uq_active_subscription"')
        )
        store = SupabaseSubscriptionStore(make_db(query))

        with pytest.raises(ConflictError, match="already have an active subscription"):
            await store.insert_subscription(UserSubscription(**subscription_row()))

    @pytest.mark.asyncio
    async def test_insert_into_closed_tier(self):
        query = make_query(error=api_error("P0001", "tier_not_accepting"))
        store = SupabaseSubscriptionStore(make_db(query))

        with pytest.raises(ValidationError, match="not accepting new subscribers"):
            await store.insert_subscription(UserSubscription(**subscription_row()))

    @pytest.mark.asyncio
    async def test_guarded_update_filters_on_status(self):
        query = make_query([])
        store = SupabaseSubscriptionStore(make_db(query))

        result = await store.update_subscription(
            "sub-1", {"auto_renew": False}, expected_statuses=[SubscriptionStatus.active]
        )

        assert result is None
        query.update.assert_called_with({"auto_renew": False})
        query.in_.assert_called_with("status", ["ACTIVE"])

    @pytest.mark.asyncio
    async def test_apply_renewal_params(self):
        row = subscription_row(renewal_count=1)
        query = make_query([row])
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        renewed = await store.apply_renewal(
            row["id"],
            {"renewal_count": 1, "period_end": NOW},
            Decimal("10"),
            expected_statuses=[SubscriptionStatus.active],
            expected_period_end=NOW,
        )

        assert renewed.renewal_count == 1
        db.rpc.assert_called_once_with(
            "apply_subscription_renewal",
            {
                "p_id": row["id"],
                "p_fields": {"renewal_count": 1, "period_end": NOW.isoformat()},
                "p_amount": "10.0000000",
                "p_expected_statuses": ["ACTIVE"],
                "p_expected_period_end": NOW.isoformat(),
            },
        )

    @pytest.mark.asyncio
    async def test_expire_already_terminal_returns_none(self):
        query = make_query([])
        db = make_db(query)
        store = SupabaseSubscriptionStore(db)

        assert await store.expire_subscription("sub-1", NOW) is None
        db.rpc.assert_called_once_with(
            "expire_subscription", {"p_id": "sub-1", "p_now": NOW.isoformat()}
        )

    @pytest.mark.asyncio
    async def test_cancel_now(self):
        row = subscription_row(status="CANCELLED")
        db = make_db(make_query([row]))
        store = SupabaseSubscriptionStore(db)

        cancelled = await store.cancel_subscription_now(
            row["id"], {"cancelled_at": NOW, "cancellation_reason": "bye"}
        )

        assert cancelled.status == SubscriptionStatus.cancelled
        name, params = db.rpc.call_args.args
        assert name == "cancel_subscription_now"
        assert params["p_fields"] == {
            "cancelled_at": NOW.isoformat(),
            "cancellation_reason": "bye",
        }
