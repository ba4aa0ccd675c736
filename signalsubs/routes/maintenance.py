"""Maintenance routes for the subscription ledger.

Endpoints for the renewal scheduler's sweeps and for manual repair.
These should be called periodically (e.g., via cron) to enforce:
- Expiry of subscriptions whose period has ended (daily)
- Renewal reminders for subscriptions renewing today (daily)
- Expiry / retry prompts for suspended subscriptions (every 6 hours)
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from ..auth import AdminUser
from ..dependencies import ServicesDep
from ..logging_config import get_logger
from ..rate_limit import limiter, maintenance_limit
from ..subscriptions.models import UserSubscription

logger = get_logger("routes.maintenance")
router = APIRouter(prefix="/api/v1/maintenance", tags=["maintenance"])


# =============================================================================
# Request/Response Models
# =============================================================================


class SweepResponse(BaseModel):
    """Outcome of one sweep run."""

    job: str
    ran_at: datetime
    examined: int
    processed: int
    skipped: int
    failed: list[str]


class RevokeTierRequest(BaseModel):
    """Cancel all ACTIVE subscriptions of a tier without touching the tier."""

    reason: str = Field(..., min_length=1, max_length=500)


class RevokeTierResponse(BaseModel):
    tier_id: str
    cancelled: int


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


# =============================================================================
# Routes
# =============================================================================


@router.post("/sweeps/expiry", response_model=SweepResponse)
@limiter.limit(maintenance_limit)
async def run_expiry_sweep(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    now: datetime | None = Query(None, description="Override the sweep clock"),
):
    """Expire ACTIVE/SUSPENDED subscriptions whose period has ended. Idempotent."""
    logger.info(f"POST /maintenance/sweeps/expiry | admin={admin.user_id}")
    report = await services.scheduler.run_expiry_sweep(_now(now))
    return SweepResponse(**report.to_dict())


@router.post("/sweeps/reminders", response_model=SweepResponse)
@limiter.limit(maintenance_limit)
async def run_reminder_sweep(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    now: datetime | None = Query(None, description="Override the sweep clock"),
):
    """Notify subscribers whose renewal falls today. Changes no ledger state."""
    logger.info(f"POST /maintenance/sweeps/reminders | admin={admin.user_id}")
    report = await services.scheduler.run_reminder_sweep(_now(now))
    return SweepResponse(**report.to_dict())


@router.post("/sweeps/suspended", response_model=SweepResponse)
@limiter.limit(maintenance_limit)
async def run_suspended_sweep(
    request: Request,
    admin: AdminUser,
    services: ServicesDep,
    now: datetime | None = Query(None, description="Override the sweep clock"),
):
    """Expire suspended subscriptions past period end; prompt the rest to retry."""
    logger.info(f"POST /maintenance/sweeps/suspended | admin={admin.user_id}")
    report = await services.scheduler.run_suspended_sweep(_now(now))
    return SweepResponse(**report.to_dict())


@router.get("/due-renewals", response_model=list[UserSubscription])
async def list_due_renewals(
    admin: AdminUser,
    services: ServicesDep,
    now: datetime | None = Query(None),
):
    """ACTIVE auto-renewing subscriptions whose renews_at has passed.

    Read-only: renewals still need a payment proof from the subscriber.
    """
    return await services.ledger.list_due_for_renewal(_now(now))


@router.get("/expired-candidates", response_model=list[UserSubscription])
async def list_expired_candidates(
    admin: AdminUser,
    services: ServicesDep,
    now: datetime | None = Query(None),
):
    """What the next expiry sweep would pick up."""
    return await services.ledger.list_expired_candidates(_now(now))


@router.post("/subscriptions/{subscription_id}/restore", response_model=UserSubscription)
@limiter.limit(maintenance_limit)
async def restore_subscription(
    request: Request,
    subscription_id: str,
    admin: AdminUser,
    services: ServicesDep,
):
    """Move a SUSPENDED subscription back to ACTIVE and clear its failures."""
    logger.warning(
        f"POST /maintenance/subscriptions/{subscription_id}/restore | admin={admin.user_id}"
    )
    return await services.access.restore_subscription(subscription_id)


@router.post("/tiers/{tier_id}/revoke", response_model=RevokeTierResponse)
@limiter.limit(maintenance_limit)
async def revoke_tier_access(
    request: Request,
    tier_id: str,
    body: RevokeTierRequest,
    admin: AdminUser,
    services: ServicesDep,
):
    """Cancel every ACTIVE subscription of a tier (the tier stays as it is)."""
    logger.warning(
        f"POST /maintenance/tiers/{tier_id}/revoke | admin={admin.user_id} | "
        f"reason={body.reason}"
    )
    await services.tiers.get_tier(tier_id)
    cancelled = await services.access.revoke_access_for_tier(tier_id, body.reason)
    return RevokeTierResponse(tier_id=tier_id, cancelled=cancelled)
