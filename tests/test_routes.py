"""API tests for the tier, subscription, access and maintenance routes."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from signalsubs.payments import LedgerUnavailableError, VerificationResult

PROVIDER_ID = "usr_TEST_PROVIDER_0001"
SUBSCRIBER_ID = "usr_TEST_SUBSCRIBER_01"
SUBSCRIBER_WALLET = "G" + "S" * 55


def create_tier(client, headers, level="BASIC", price="10", **extra):
    response = client.post(
        "/api/v1/tiers",
        json={"name": f"{level.title()} tier", "level": level, "price": price, **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def subscribe(client, headers, tier_id, tx_hash="a" * 64):
    body = {"tier_id": tier_id, "subscriber_wallet": SUBSCRIBER_WALLET}
    if tx_hash is not None:
        body["ledger_tx_hash"] = tx_hash
    return client.post("/api/v1/subscriptions", json=body, headers=headers)


class TestService:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestAuthRequired:
    def test_create_tier_requires_auth(self, client):
        response = client.post(
            "/api/v1/tiers", json={"name": "Basic", "level": "BASIC", "price": "10"}
        )
        assert response.status_code == 401

    def test_garbage_token_rejected(self, client):
        response = client.get(
            "/api/v1/subscriptions", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


class TestTierRoutes:
    def test_create_returns_memo_and_string_money(self, client, provider_headers):
        tier = create_tier(client, provider_headers, price="12.5")

        assert tier["provider_id"] == PROVIDER_ID
        assert tier["price"] == "12.5000000"
        assert tier["total_revenue"] == "0.0000000"
        assert tier["payment_memo"] == f"SUB:{tier['id'][:22]}"

    def test_free_tier_with_price_is_rejected(self, client, provider_headers):
        response = client.post(
            "/api/v1/tiers",
            json={"name": "Free", "level": "FREE", "price": "1"},
            headers=provider_headers,
        )
        assert response.status_code == 400
        assert "FREE tier" in response.json()["detail"]

    def test_second_free_tier_conflicts(self, client, provider_headers):
        create_tier(client, provider_headers, level="FREE", price="0")
        response = client.post(
            "/api/v1/tiers",
            json={"name": "Free again", "level": "FREE", "price": "0"},
            headers=provider_headers,
        )
        assert response.status_code == 409

    def test_list_and_get(self, client, provider_headers):
        cheap = create_tier(client, provider_headers, level="BASIC", price="5")
        dear = create_tier(client, provider_headers, level="VIP", price="50")

        listed = client.get(f"/api/v1/providers/{PROVIDER_ID}/tiers").json()
        assert [t["id"] for t in listed] == [cheap["id"], dear["id"]]

        fetched = client.get(f"/api/v1/tiers/{dear['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["level"] == "VIP"

    def test_get_missing_tier(self, client):
        assert client.get("/api/v1/tiers/missing").status_code == 404

    def test_only_owner_can_update(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)

        response = client.patch(
            f"/api/v1/tiers/{tier['id']}", json={"name": "Hijacked"}, headers=subscriber_headers
        )
        assert response.status_code == 403

        response = client.patch(
            f"/api/v1/tiers/{tier['id']}", json={"name": "Renamed"}, headers=provider_headers
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"

    def test_price_frozen_with_subscribers(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        assert subscribe(client, subscriber_headers, tier["id"]).status_code == 201

        response = client.patch(
            f"/api/v1/tiers/{tier['id']}", json={"price": "20"}, headers=provider_headers
        )
        assert response.status_code == 400

    def test_delete_cancels_subscriptions(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.delete(f"/api/v1/tiers/{tier['id']}", headers=provider_headers)

        assert response.status_code == 204
        after = client.get(f"/api/v1/subscriptions/{sub['id']}", headers=subscriber_headers)
        assert after.json()["status"] == "CANCELLED"
        assert client.get(f"/api/v1/providers/{PROVIDER_ID}/tiers").json() == []


class TestSubscriptionRoutes:
    def test_subscribe_paid_tier(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)

        response = subscribe(client, subscriber_headers, tier["id"])

        assert response.status_code == 201
        body = response.json()
        assert body["user_id"] == SUBSCRIBER_ID
        assert body["status"] == "ACTIVE"
        assert body["amount_paid"] == "10.0000000"
        assert body["platform_commission"] == "2.0000000"
        assert body["provider_earnings"] == "8.0000000"

    def test_duplicate_subscription_conflicts(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        subscribe(client, subscriber_headers, tier["id"], tx_hash="a" * 64)

        response = subscribe(client, subscriber_headers, tier["id"], tx_hash="b" * 64)
        assert response.status_code == 409

    def test_malformed_tx_hash_is_422(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        response = subscribe(client, subscriber_headers, tier["id"], tx_hash="nothex")
        assert response.status_code == 422

    def test_rejected_payment_is_400(
        self, client, verifier, provider_headers, subscriber_headers
    ):
        tier = create_tier(client, provider_headers)
        verifier.verify = AsyncMock(
            return_value=VerificationResult(
                valid=False,
                tx_hash="a" * 64,
                error="Insufficient payment",
                error_code="INSUFFICIENT_AMOUNT",
            )
        )

        response = subscribe(client, subscriber_headers, tier["id"])

        assert response.status_code == 400
        assert client.get("/api/v1/subscriptions", headers=subscriber_headers).json() == []

    def test_ledger_outage_is_503(self, client, verifier, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        verifier.verify = AsyncMock(side_effect=LedgerUnavailableError("timeout"))

        response = subscribe(client, subscriber_headers, tier["id"])

        assert response.status_code == 503
        assert "unavailable" in response.json()["detail"]

    def test_get_foreign_subscription_forbidden(
        self, client, provider_headers, subscriber_headers, auth_headers_for
    ):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.get(
            f"/api/v1/subscriptions/{sub['id']}", headers=auth_headers_for("usr_someone_else")
        )
        assert response.status_code == 403

    def test_admin_can_read_any_subscription(
        self, client, provider_headers, subscriber_headers, admin_headers
    ):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.get(f"/api/v1/subscriptions/{sub['id']}", headers=admin_headers)
        assert response.status_code == 200

    def test_cancel_at_period_end(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.patch(
            f"/api/v1/subscriptions/{sub['id']}/cancel",
            json={"reason": "too pricey"},
            headers=subscriber_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ACTIVE"
        assert body["auto_renew"] is False
        assert body["cancellation_reason"] == "too pricey"

    def test_cancel_immediately(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.patch(
            f"/api/v1/subscriptions/{sub['id']}/cancel",
            json={"immediate": True},
            headers=subscriber_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        fetched = client.get(f"/api/v1/tiers/{tier['id']}").json()
        assert fetched["subscriber_count"] == 0

    def test_renew(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.patch(
            f"/api/v1/subscriptions/{sub['id']}/renew",
            json={"ledger_tx_hash": "c" * 64},
            headers=subscriber_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["renewal_count"] == 1
        assert body["ledger_tx_hash"] == "c" * 64

    def test_renew_with_used_hash_conflicts(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"], tx_hash="a" * 64).json()

        response = client.patch(
            f"/api/v1/subscriptions/{sub['id']}/renew",
            json={"ledger_tx_hash": "a" * 64},
            headers=subscriber_headers,
        )
        assert response.status_code == 409


class TestAccessRoutes:
    def test_access_check(self, client, provider_headers, subscriber_headers):
        before = client.get(f"/api/v1/access/{PROVIDER_ID}", headers=subscriber_headers)
        assert before.json()["has_access"] is False

        tier = create_tier(client, provider_headers, signal_limit=5)
        subscribe(client, subscriber_headers, tier["id"])

        after = client.get(f"/api/v1/access/{PROVIDER_ID}", headers=subscriber_headers).json()
        assert after["has_access"] is True
        assert after["signal_limit"] == 5

    def test_checking_someone_else_needs_admin(
        self, client, subscriber_headers, admin_headers
    ):
        url = f"/api/v1/access/{PROVIDER_ID}?user_id=usr_other"
        assert client.get(url, headers=subscriber_headers).status_code == 403
        assert client.get(url, headers=admin_headers).status_code == 200

    def test_signal_access(self, client, provider_headers, subscriber_headers):
        url = f"/api/v1/access/{PROVIDER_ID}/signals"

        public = client.get(url, params={"content_tier_level": "FREE"}, headers=subscriber_headers)
        assert public.json()["allowed"] is True

        gated = client.get(url, params={"content_tier_level": "VIP"}, headers=subscriber_headers)
        assert gated.json()["allowed"] is False

    def test_revenue_summary_is_provider_only(
        self, client, provider_headers, subscriber_headers
    ):
        tier = create_tier(client, provider_headers)
        subscribe(client, subscriber_headers, tier["id"])
        url = f"/api/v1/providers/{PROVIDER_ID}/revenue"

        assert client.get(url, headers=subscriber_headers).status_code == 403

        summary = client.get(url, headers=provider_headers).json()
        assert summary["total_revenue"] == "10.0000000"
        assert summary["platform_commission_paid"] == "2.0000000"
        assert summary["net_earnings"] == "8.0000000"
        assert summary["active_subscribers"] == 1

    def test_active_subscribers(self, client, provider_headers, subscriber_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        response = client.get(
            f"/api/v1/providers/{PROVIDER_ID}/subscribers", headers=provider_headers
        )
        assert [s["id"] for s in response.json()] == [sub["id"]]


class TestMaintenanceRoutes:
    def test_sweeps_require_admin(self, client, subscriber_headers):
        response = client.post("/api/v1/maintenance/sweeps/expiry", headers=subscriber_headers)
        assert response.status_code == 403

    def test_expiry_sweep(self, client, provider_headers, subscriber_headers, admin_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()
        later = sub["period_end"]

        candidates = client.get(
            "/api/v1/maintenance/expired-candidates",
            params={"now": later},
            headers=admin_headers,
        ).json()
        assert [c["id"] for c in candidates] == [sub["id"]]

        response = client.post(
            "/api/v1/maintenance/sweeps/expiry", params={"now": later}, headers=admin_headers
        )

        assert response.status_code == 200
        report = response.json()
        assert report["job"] == "expiry"
        assert report["processed"] == 1
        assert report["failed"] == []
        after = client.get(f"/api/v1/subscriptions/{sub['id']}", headers=subscriber_headers)
        assert after.json()["status"] == "EXPIRED"

    def test_reminder_and_suspended_sweeps(self, client, admin_headers):
        for job in ("reminders", "suspended"):
            response = client.post(f"/api/v1/maintenance/sweeps/{job}", headers=admin_headers)
            assert response.status_code == 200
            assert response.json()["job"] == job

    def test_due_renewals(self, client, provider_headers, subscriber_headers, admin_headers):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        due = client.get(
            "/api/v1/maintenance/due-renewals",
            params={"now": sub["renews_at"]},
            headers=admin_headers,
        ).json()
        assert [d["id"] for d in due] == [sub["id"]]

    def test_restore_suspended(
        self, client, verifier, provider_headers, subscriber_headers, admin_headers
    ):
        tier = create_tier(client, provider_headers)
        sub = subscribe(client, subscriber_headers, tier["id"]).json()

        # Not suspended yet
        response = client.post(
            f"/api/v1/maintenance/subscriptions/{sub['id']}/restore", headers=admin_headers
        )
        assert response.status_code == 400

        verifier.verify = AsyncMock(
            return_value=VerificationResult(valid=False, tx_hash="0" * 64, error="No payment")
        )
        for n in range(3):
            response = client.patch(
                f"/api/v1/subscriptions/{sub['id']}/renew",
                json={"ledger_tx_hash": f"{n + 1:064x}"},
                headers=subscriber_headers,
            )
            assert response.status_code == 400
        suspended = client.get(f"/api/v1/subscriptions/{sub['id']}", headers=subscriber_headers)
        assert suspended.json()["status"] == "SUSPENDED"

        response = client.post(
            f"/api/v1/maintenance/subscriptions/{sub['id']}/restore", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ACTIVE"

    def test_revoke_tier(self, client, provider_headers, subscriber_headers, admin_headers):
        tier = create_tier(client, provider_headers)
        subscribe(client, subscriber_headers, tier["id"])

        response = client.post(
            f"/api/v1/maintenance/tiers/{tier['id']}/revoke",
            json={"reason": "provider banned"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"tier_id": tier["id"], "cancelled": 1}
        fetched = client.get(f"/api/v1/tiers/{tier['id']}").json()
        assert fetched["active"] is True
        assert fetched["subscriber_count"] == 0

    def test_revoke_missing_tier(self, client, admin_headers):
        response = client.post(
            "/api/v1/maintenance/tiers/missing/revoke",
            json={"reason": "x"},
            headers=admin_headers,
        )
        assert response.status_code == 404


def test_period_end_is_thirty_days_after_start(client, provider_headers, subscriber_headers):
    tier = create_tier(client, provider_headers)
    sub = subscribe(client, subscriber_headers, tier["id"]).json()

    start = datetime.fromisoformat(sub["period_start"].replace("Z", "+00:00"))
    end = datetime.fromisoformat(sub["period_end"].replace("Z", "+00:00"))
    assert end - start == timedelta(days=30)
