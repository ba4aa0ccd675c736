"""Database utilities for Supabase integration."""

import asyncio
from typing import Optional, Protocol

from supabase import Client, create_client

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


# =============================================================================
# Table Names (keep in sync with migrations/001_subscriptions.sql)
# =============================================================================

USERS_TABLE = "users"
TIERS_TABLE = "subscription_tiers"
SUBSCRIPTIONS_TABLE = "user_subscriptions"


# =============================================================================
# User lookup
# =============================================================================


class UserDirectory(Protocol):
    """Read-only lookup of user records owned by the identity service."""

    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        """Return the user's Stellar wallet address, or None."""
        ...


class InMemoryUserDirectory:
    """Dict-backed user directory for tests and local development."""

    def __init__(self, wallets: dict[str, str] | None = None):
        self._wallets = dict(wallets or {})

    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        return self._wallets.get(user_id)


class SupabaseUserDirectory:
    """User directory reading the users table."""

    def __init__(self, db: Client):
        self.db = db

    async def get_user(self, user_id: str) -> dict | None:
        """Get a user by ID."""

        def _query():
            return (
                self.db.table(USERS_TABLE)
                .select("id, wallet_address")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return result.data[0] if result.data else None

    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        user = await self.get_user(user_id)
        return user.get("wallet_address") if user else None
