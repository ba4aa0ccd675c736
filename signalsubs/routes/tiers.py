"""Tier management routes.

The authenticated user acts as the provider: tiers are created under, and
can only be changed by, the caller's own user id.
"""

from fastapi import APIRouter, Query, Request, Response, status

from ..auth import CurrentUser
from ..dependencies import ServicesDep
from ..logging_config import get_logger
from ..payments import build_payment_memo
from ..rate_limit import limiter, write_limit
from ..subscriptions.models import (
    CreateTierRequest,
    SubscriptionTier,
    TierResponse,
    UpdateTierRequest,
)

logger = get_logger("routes.tiers")

router = APIRouter(prefix="/api/v1", tags=["tiers"])


def _to_response(tier: SubscriptionTier) -> TierResponse:
    return TierResponse(**tier.model_dump(), payment_memo=build_payment_memo(tier.id))


# ── POST /api/v1/tiers ────────────────────────────────────────────────────

@router.post("/tiers", response_model=TierResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(write_limit)
async def create_tier(
    request: Request,
    body: CreateTierRequest,
    auth: CurrentUser,
    services: ServicesDep,
):
    """Create a subscription tier owned by the caller."""
    logger.info(f"POST /tiers | provider={auth.user_id} | level={body.level.value}")
    tier = await services.tiers.create_tier(auth.user_id, body)
    return _to_response(tier)


# ── GET /api/v1/providers/{provider_id}/tiers ─────────────────────────────

@router.get("/providers/{provider_id}/tiers", response_model=list[TierResponse])
async def list_provider_tiers(
    provider_id: str,
    services: ServicesDep,
    include_inactive: bool = Query(False),
):
    """List a provider's tiers, cheapest first."""
    tiers = await services.tiers.list_tiers(provider_id, include_inactive=include_inactive)
    return [_to_response(t) for t in tiers]


# ── GET /api/v1/tiers/{tier_id} ───────────────────────────────────────────

@router.get("/tiers/{tier_id}", response_model=TierResponse)
async def get_tier(tier_id: str, services: ServicesDep):
    tier = await services.tiers.get_tier(tier_id)
    return _to_response(tier)


# ── PATCH /api/v1/tiers/{tier_id} ─────────────────────────────────────────

@router.patch("/tiers/{tier_id}", response_model=TierResponse)
@limiter.limit(write_limit)
async def update_tier(
    request: Request,
    tier_id: str,
    body: UpdateTierRequest,
    auth: CurrentUser,
    services: ServicesDep,
):
    """Update a tier. Price cannot change once the tier has subscribers."""
    logger.info(f"PATCH /tiers/{tier_id} | provider={auth.user_id}")
    tier = await services.tiers.update_tier(tier_id, auth.user_id, body)
    return _to_response(tier)


# ── DELETE /api/v1/tiers/{tier_id} ────────────────────────────────────────

@router.delete("/tiers/{tier_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(write_limit)
async def cancel_tier(
    request: Request,
    tier_id: str,
    auth: CurrentUser,
    services: ServicesDep,
):
    """Deactivate a tier and cancel every active subscription to it."""
    logger.info(f"DELETE /tiers/{tier_id} | provider={auth.user_id}")
    await services.tiers.cancel_tier(tier_id, auth.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
