"""Access-gating and provider reporting routes."""

from fastapi import APIRouter, HTTPException, Query, status

from ..auth import AuthContext, CurrentUser
from ..dependencies import ServicesDep
from ..subscriptions.models import (
    AccessCheckResult,
    RevenueSummary,
    SignalAccessResult,
    TierLevel,
    UserSubscription,
)

router = APIRouter(prefix="/api/v1", tags=["access"])


def _subject(auth: AuthContext, user_id: str | None) -> str:
    """The user whose access is being checked; only admins may name someone else."""
    if user_id is None or user_id == auth.user_id:
        return auth.user_id
    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot check access for another user",
        )
    return user_id


def _require_provider(auth: AuthContext, provider_id: str) -> None:
    if auth.user_id != provider_id and not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the provider can view this",
        )


# ── GET /api/v1/access/{provider_id} ──────────────────────────────────────

@router.get("/access/{provider_id}", response_model=AccessCheckResult)
async def check_access(
    provider_id: str,
    auth: CurrentUser,
    services: ServicesDep,
    user_id: str | None = Query(None, description="Admin only: check another user"),
):
    """Does the user hold a live subscription to this provider?"""
    return await services.access.check_access(_subject(auth, user_id), provider_id)


# ── GET /api/v1/access/{provider_id}/signals ──────────────────────────────

@router.get("/access/{provider_id}/signals", response_model=SignalAccessResult)
async def check_signal_access(
    provider_id: str,
    auth: CurrentUser,
    services: ServicesDep,
    content_tier_level: TierLevel | None = Query(None),
    user_id: str | None = Query(None, description="Admin only: check another user"),
):
    """May the user view content tagged with ``content_tier_level``?"""
    return await services.access.can_user_view_signal(
        _subject(auth, user_id), provider_id, content_tier_level
    )


# ── GET /api/v1/providers/{provider_id}/revenue ───────────────────────────

@router.get("/providers/{provider_id}/revenue", response_model=RevenueSummary)
async def get_revenue_summary(
    provider_id: str,
    auth: CurrentUser,
    services: ServicesDep,
):
    _require_provider(auth, provider_id)
    return await services.ledger.revenue_summary(provider_id)


# ── GET /api/v1/providers/{provider_id}/subscribers ───────────────────────

@router.get("/providers/{provider_id}/subscribers", response_model=list[UserSubscription])
async def list_active_subscribers(
    provider_id: str,
    auth: CurrentUser,
    services: ServicesDep,
):
    """ACTIVE subscriptions to any of the provider's tiers, newest first."""
    _require_provider(auth, provider_id)
    return await services.access.get_active_subscribers_for_provider(provider_id)
