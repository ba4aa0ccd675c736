"""Subscriber-facing subscription routes."""

from fastapi import APIRouter, Request, status

from ..auth import CurrentUser
from ..dependencies import ServicesDep
from ..logging_config import get_logger
from ..rate_limit import limiter, payment_limit, write_limit
from ..subscriptions.models import (
    CancelSubscriptionRequest,
    RenewSubscriptionRequest,
    SubscribeRequest,
    UserSubscription,
)

logger = get_logger("routes.subscriptions")

router = APIRouter(prefix="/api/v1", tags=["subscriptions"])


# ── POST /api/v1/subscriptions ────────────────────────────────────────────

@router.post(
    "/subscriptions",
    response_model=UserSubscription,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(payment_limit)
async def subscribe(
    request: Request,
    body: SubscribeRequest,
    auth: CurrentUser,
    services: ServicesDep,
):
    """
    Subscribe the caller to a tier.

    Paid tiers require ``ledger_tx_hash``: a Stellar transaction paying the
    tier price in USDC from ``subscriber_wallet`` to the provider's wallet.
    """
    logger.info(f"POST /subscriptions | user={auth.user_id} | tier={body.tier_id}")
    return await services.ledger.subscribe(auth.user_id, body)


# ── GET /api/v1/subscriptions ─────────────────────────────────────────────

@router.get("/subscriptions", response_model=list[UserSubscription])
async def list_my_subscriptions(auth: CurrentUser, services: ServicesDep):
    """List the caller's subscriptions, newest first."""
    return await services.ledger.list_user_subscriptions(auth.user_id)


# ── GET /api/v1/subscriptions/{subscription_id} ───────────────────────────

@router.get("/subscriptions/{subscription_id}", response_model=UserSubscription)
async def get_subscription(
    subscription_id: str,
    auth: CurrentUser,
    services: ServicesDep,
):
    owner = None if auth.is_admin else auth.user_id
    return await services.ledger.get_subscription(subscription_id, user_id=owner)


# ── PATCH /api/v1/subscriptions/{subscription_id}/cancel ──────────────────

@router.patch("/subscriptions/{subscription_id}/cancel", response_model=UserSubscription)
@limiter.limit(write_limit)
async def cancel_subscription(
    request: Request,
    subscription_id: str,
    body: CancelSubscriptionRequest,
    auth: CurrentUser,
    services: ServicesDep,
):
    """Cancel immediately, or at the end of the current period (default)."""
    logger.info(
        f"PATCH /subscriptions/{subscription_id}/cancel | user={auth.user_id} | "
        f"immediate={body.immediate}"
    )
    return await services.ledger.cancel_subscription(subscription_id, auth.user_id, body)


# ── PATCH /api/v1/subscriptions/{subscription_id}/renew ───────────────────

@router.patch("/subscriptions/{subscription_id}/renew", response_model=UserSubscription)
@limiter.limit(payment_limit)
async def renew_subscription(
    request: Request,
    subscription_id: str,
    body: RenewSubscriptionRequest,
    auth: CurrentUser,
    services: ServicesDep,
):
    """Renew for another billing cycle with a fresh payment proof."""
    logger.info(f"PATCH /subscriptions/{subscription_id}/renew | user={auth.user_id}")
    return await services.ledger.renew_subscription(subscription_id, auth.user_id, body)
