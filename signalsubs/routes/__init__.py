"""API routes."""

from .access import router as access_router
from .maintenance import router as maintenance_router
from .subscriptions import router as subscriptions_router
from .tiers import router as tiers_router

__all__ = [
    "access_router",
    "maintenance_router",
    "subscriptions_router",
    "tiers_router",
]
