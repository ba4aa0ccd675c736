"""Fixed-point money helpers and the platform / provider revenue split.

Every amount in the system is a Decimal quantized to 7 fractional digits
(the precision of a Stellar asset amount). Floats are rejected outright.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MONEY_PLACES = 7
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)  # 0.0000001
ZERO = Decimal(0).quantize(MONEY_QUANTUM)

# Platform commission: 20% of every gross payment
PLATFORM_COMMISSION_RATE = Decimal("0.20")


def to_money(value) -> Decimal:
    """Convert ``value`` to a 7-place Decimal.

    Accepts Decimal, int and numeric strings. Floats are converted through
    their shortest repr so values read back from JSON keep their digits;
    no arithmetic is ever done on the float itself.
    """
    if isinstance(value, bool):
        raise ValueError("Booleans are not money")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_money(value) -> str:
    """Render an amount with exactly 7 fractional digits (never exponent form)."""
    return f"{to_money(value):f}"


@dataclass(frozen=True)
class RevenueSplit:
    """Division of a gross payment between the platform and the provider."""

    gross: Decimal
    platform_commission: Decimal
    provider_earnings: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": format_money(self.gross),
            "platform_commission": format_money(self.platform_commission),
            "provider_earnings": format_money(self.provider_earnings),
        }


def calculate_revenue_split(
    gross,
    rate: Decimal = PLATFORM_COMMISSION_RATE,
) -> RevenueSplit:
    """Split ``gross`` into commission (rounded to 7 places) and the remainder.

    providerEarnings is derived by subtraction so the two parts always sum
    back to the gross amount exactly.
    """
    gross = to_money(gross)
    commission = (gross * Decimal(rate)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    return RevenueSplit(
        gross=gross,
        platform_commission=commission,
        provider_earnings=gross - commission,
    )


class RevenueSplitter:
    """Callable-style wrapper holding the configured commission rate."""

    def __init__(self, rate: Decimal = PLATFORM_COMMISSION_RATE):
        rate = Decimal(rate)
        if rate < 0 or rate > 1:
            raise ValueError(f"Commission rate must be between 0 and 1, got {rate}")
        self.rate = rate

    def split(self, gross) -> RevenueSplit:
        return calculate_revenue_split(gross, self.rate)
