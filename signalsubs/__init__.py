"""signalsubs - recurring paid access tiers for signal providers.

Subscribers pay for tiers with Stellar USDC transfers; the service verifies
those transfers, keeps the subscription ledger and answers access checks.
"""

__version__ = "0.1.0"
