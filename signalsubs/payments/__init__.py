"""Payment verification and revenue accounting for signalsubs."""

from .revenue import (
    MONEY_QUANTUM,
    PLATFORM_COMMISSION_RATE,
    RevenueSplit,
    RevenueSplitter,
    calculate_revenue_split,
    format_money,
    to_money,
)
from .verification import (
    AMOUNT_TOLERANCE,
    LedgerUnavailableError,
    PaymentVerificationError,
    PaymentVerifier,
    VerificationResult,
    build_payment_memo,
    normalize_tx_hash,
)

__all__ = [
    "PaymentVerifier",
    "VerificationResult",
    "PaymentVerificationError",
    "LedgerUnavailableError",
    "AMOUNT_TOLERANCE",
    "build_payment_memo",
    "normalize_tx_hash",
    "RevenueSplit",
    "RevenueSplitter",
    "calculate_revenue_split",
    "PLATFORM_COMMISSION_RATE",
    "MONEY_QUANTUM",
    "to_money",
    "format_money",
]
