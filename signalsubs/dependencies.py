"""Service wiring for the API and the CLI."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from .config import Settings, get_settings
from .database import SupabaseUserDirectory, UserDirectory, get_supabase_client
from .logging_config import get_logger
from .payments import PaymentVerifier, RevenueSplitter
from .subscriptions.access import AccessGate
from .subscriptions.models import BillingPolicy
from .subscriptions.scheduler import Notifier, RenewalScheduler
from .subscriptions.service import SubscriptionLedger
from .subscriptions.storage import SubscriptionStore
from .subscriptions.supabase_storage import SupabaseSubscriptionStore
from .subscriptions.tiers import TierRegistry

logger = get_logger("dependencies")


@dataclass
class Services:
    """Every component the routes need, built around one store."""

    store: SubscriptionStore
    tiers: TierRegistry
    ledger: SubscriptionLedger
    access: AccessGate
    scheduler: RenewalScheduler


def build_services(
    store: SubscriptionStore,
    users: UserDirectory,
    verifier: PaymentVerifier,
    settings: Settings,
    notifier: Notifier | None = None,
) -> Services:
    tiers = TierRegistry(store)
    access = AccessGate(store)
    ledger = SubscriptionLedger(
        store=store,
        tiers=tiers,
        verifier=verifier,
        splitter=RevenueSplitter(settings.platform_commission_rate),
        users=users,
        access=access,
        policy=BillingPolicy.from_settings(settings),
    )
    return Services(
        store=store,
        tiers=tiers,
        ledger=ledger,
        access=access,
        scheduler=RenewalScheduler(ledger, notifier=notifier),
    )


@lru_cache
def get_services() -> Services:
    """Production wiring: Supabase store, Supabase user directory, Horizon verifier."""
    settings = get_settings()
    if not settings.platform_wallet_address:
        logger.warning("PLATFORM_WALLET_ADDRESS is not set")
    db = get_supabase_client(settings)
    return build_services(
        store=SupabaseSubscriptionStore(db),
        users=SupabaseUserDirectory(db),
        verifier=PaymentVerifier.from_settings(settings),
        settings=settings,
    )


ServicesDep = Annotated[Services, Depends(get_services)]
