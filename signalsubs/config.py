"""Configuration settings for the signalsubs service."""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings

# Circle's USDC issuers on the Stellar networks
USDC_TESTNET_ISSUER = "GBBD47IF6LWK7P7MDEVSCWR7DPUWV3NY3DTQEVFL4NAT4AQH3ZLLFLA5"
USDC_MAINNET_ISSUER = "GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN"

STELLAR_NETWORKS = {
    "testnet": {
        "horizon_url": "https://horizon-testnet.stellar.org",
        "usdc_issuer": USDC_TESTNET_ISSUER,
    },
    "mainnet": {
        "horizon_url": "https://horizon.stellar.org",
        "usdc_issuer": USDC_MAINNET_ISSUER,
    },
}


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase
    supabase_url: str
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key name, still honoured
    supabase_service_role_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week
    admin_user_ids: list[str] = []

    # Stellar ledger
    stellar_network: str = "testnet"
    horizon_url: str | None = None  # Falls back to the network default
    stablecoin_code: str = "USDC"
    stablecoin_issuer: str | None = None  # Falls back to the network default
    # Only read at startup, where an unset value logs a warning.
    # Payment verification never uses it.
    platform_wallet_address: str | None = None
    verification_timeout_seconds: float = 30.0

    # Billing
    platform_commission_rate: Decimal = Decimal("0.20")
    billing_cycle_days: int = 30
    renewal_notice_days: int = 3
    max_payment_failures: int = 3

    # Rate limiting
    # X-Forwarded-For is honoured only when the peer is inside one of these
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]
    write_rate_limit: str = "30/minute"
    payment_rate_limit: str = "10/minute"
    maintenance_rate_limit: str = "10/minute"

    # App
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def _network(self) -> dict:
        if self.stellar_network not in STELLAR_NETWORKS:
            raise ValueError(
                f"Unknown STELLAR_NETWORK '{self.stellar_network}'. "
                f"Valid networks: {', '.join(sorted(STELLAR_NETWORKS))}"
            )
        return STELLAR_NETWORKS[self.stellar_network]

    @property
    def resolved_horizon_url(self) -> str:
        return (self.horizon_url or self._network()["horizon_url"]).rstrip("/")

    @property
    def resolved_stablecoin_issuer(self) -> str:
        return self.stablecoin_issuer or self._network()["usdc_issuer"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
