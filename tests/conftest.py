"""Pytest configuration and fixtures."""

import os
import secrets
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# Unit tests never talk to a real project
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
    os.environ.setdefault("STELLAR_NETWORK", "testnet")
else:
    from pathlib import Path

    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from fastapi.testclient import TestClient  # noqa: E402

from signalsubs.auth import create_access_token  # noqa: E402
from signalsubs.config import USDC_TESTNET_ISSUER, get_settings  # noqa: E402
from signalsubs.database import InMemoryUserDirectory  # noqa: E402
from signalsubs.dependencies import build_services, get_services  # noqa: E402
from signalsubs.main import app  # noqa: E402
from signalsubs.payments import PaymentVerifier, VerificationResult, to_money  # noqa: E402
from signalsubs.rate_limit import limiter  # noqa: E402
from signalsubs.subscriptions.models import CreateTierRequest, TierLevel  # noqa: E402
from signalsubs.subscriptions.storage import InMemorySubscriptionStore  # noqa: E402

# Clearly fake ids / wallets that cannot collide with production data
PROVIDER_ID = "usr_TEST_PROVIDER_0001"
SUBSCRIBER_ID = "usr_TEST_SUBSCRIBER_01"
ADMIN_ID = "usr_TEST_ADMIN_000001"
PROVIDER_WALLET = "G" + "P" * 55
SUBSCRIBER_WALLET = "G" + "S" * 55

FIXED_NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _valid_payment(tx_hash, expected_amount, sender, receiver):
    return VerificationResult(
        valid=True,
        tx_hash=tx_hash,
        paid_amount=to_money(expected_amount),
        asset_code="USDC",
        asset_issuer=USDC_TESTNET_ISSUER,
        sender=sender,
        receiver=receiver,
    )


@pytest.fixture
def provider_id():
    return PROVIDER_ID


@pytest.fixture
def subscriber_id():
    return SUBSCRIBER_ID


@pytest.fixture
def provider_wallet():
    return PROVIDER_WALLET


@pytest.fixture
def subscriber_wallet():
    return SUBSCRIBER_WALLET


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def tx_hash():
    """Factory for distinct 64-hex transaction hashes."""
    return lambda n: f"{n:064x}"


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def users():
    return InMemoryUserDirectory({PROVIDER_ID: PROVIDER_WALLET})


@pytest.fixture
def verifier():
    """Payment verifier that accepts every payment unless told otherwise."""
    mock = MagicMock(spec=PaymentVerifier)
    mock.verify = AsyncMock(side_effect=_valid_payment)
    return mock


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.renewal_due = AsyncMock()
    mock.payment_retry = AsyncMock()
    return mock


@pytest.fixture
def services(store, users, verifier, notifier):
    return build_services(store, users, verifier, get_settings(), notifier=notifier)


@pytest.fixture
def tiers(services):
    return services.tiers


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def access(services):
    return services.access


@pytest.fixture
def scheduler(services):
    return services.scheduler


@pytest.fixture
def tier_request():
    """Build a CreateTierRequest with sensible defaults."""

    def _make(level=TierLevel.basic, price="10.0000000", **kwargs):
        kwargs.setdefault("name", f"{level.value.title()} tier")
        return CreateTierRequest(level=level, price=price, **kwargs)

    return _make


@pytest.fixture
def client(services):
    """Test client wired to the in-memory services, rate limiting off."""
    app.dependency_overrides[get_services] = lambda: services
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True


def _headers(user_id: str, is_admin: bool = False) -> dict:
    token = create_access_token(user_id, get_settings(), is_admin=is_admin)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def provider_headers():
    return _headers(PROVIDER_ID)


@pytest.fixture
def subscriber_headers():
    return _headers(SUBSCRIBER_ID)


@pytest.fixture
def admin_headers():
    return _headers(ADMIN_ID, is_admin=True)


@pytest.fixture
def auth_headers_for():
    return _headers
