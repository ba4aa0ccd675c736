"""Stellar USDC payment verification against a Horizon server.

Verifies that a stablecoin payment actually occurred on-ledger by:
1. Fetching the transaction by hash
2. Fetching its operations and picking payment operations in the pinned asset
3. Validating sender, receiver and amount

Business-level mismatches come back as a VerificationResult with
valid=False. Only an unreachable ledger raises (LedgerUnavailableError).
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from .revenue import MONEY_QUANTUM, format_money, to_money

logger = logging.getLogger("signalsubs.payments")

# Absorbs ledger rounding: one stroop of the asset
AMOUNT_TOLERANCE = MONEY_QUANTUM

# Horizon caps a page of operations at 200 records
OPERATIONS_PAGE_LIMIT = 200

PAYMENT_OPERATION_TYPE = "payment"
CREDIT_ASSET_TYPES = {"credit_alphanum4", "credit_alphanum12"}


class PaymentVerificationError(Exception):
    """Raised when payment verification cannot be carried out."""
    pass


class LedgerUnavailableError(PaymentVerificationError):
    """The ledger could not be reached (connect error, timeout, 5xx)."""
    pass


@dataclass
class VerificationResult:
    """Result of verifying a stablecoin payment."""

    valid: bool
    tx_hash: str

    # Observed payment (populated when a matching operation was found)
    paid_amount: Decimal = Decimal(0)
    asset_code: str = ""
    asset_issuer: Optional[str] = None
    sender: str = ""
    receiver: str = ""

    # Error info (populated if valid=False)
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "valid": self.valid,
            "tx_hash": self.tx_hash,
            "paid_amount": format_money(self.paid_amount),
            "asset_code": self.asset_code,
            "asset_issuer": self.asset_issuer,
            "sender": self.sender,
            "receiver": self.receiver,
            "error": self.error,
            "error_code": self.error_code,
        }


def normalize_tx_hash(tx_hash: str) -> str:
    """Lowercase a transaction hash and drop a stray 0x prefix."""
    if not tx_hash:
        return ""
    tx_hash = tx_hash.strip().lower()
    if tx_hash.startswith("0x"):
        tx_hash = tx_hash[2:]
    return tx_hash


def build_payment_memo(tier_id: str) -> str:
    """Memo a subscriber attaches to a payment so the provider can identify it."""
    return f"SUB:{tier_id[:22]}"


async def _horizon_get(
    base_url: str,
    path: str,
    params: dict | None = None,
    timeout: float = 30.0,
) -> Optional[dict]:
    """GET a Horizon resource. Returns None on 404.

    Raises:
        LedgerUnavailableError: connect failures, timeouts, 429 and 5xx
        httpx.HTTPStatusError: any other non-2xx status
    """
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
            response = await client.get(path, params=params, headers={"Accept": "application/json"})
    except httpx.TimeoutException as e:
        raise LedgerUnavailableError(f"Ledger request timed out: {path}") from e
    except httpx.TransportError as e:
        raise LedgerUnavailableError(f"Ledger unreachable: {e}") from e

    if response.status_code == 404:
        return None
    if response.status_code == 429 or response.status_code >= 500:
        raise LedgerUnavailableError(
            f"Ledger returned HTTP {response.status_code} for {path}"
        )
    response.raise_for_status()
    return response.json()


def _is_stablecoin_payment(op: dict, asset_code: str, asset_issuer: str) -> bool:
    """True when ``op`` is a payment in exactly the pinned asset (code AND issuer)."""
    return (
        op.get("type") == PAYMENT_OPERATION_TYPE
        and op.get("asset_type") in CREDIT_ASSET_TYPES
        and op.get("asset_code") == asset_code
        and op.get("asset_issuer") == asset_issuer
    )


def _parse_amount(raw) -> Optional[Decimal]:
    try:
        return to_money(str(raw))
    except (ValueError, InvalidOperation):
        return None


class PaymentVerifier:
    """Checks cited ledger transactions against expected payment terms."""

    def __init__(
        self,
        horizon_url: str,
        asset_code: str,
        asset_issuer: str,
        timeout: float = 30.0,
        tolerance: Decimal = AMOUNT_TOLERANCE,
    ):
        self.horizon_url = horizon_url.rstrip("/")
        self.asset_code = asset_code
        self.asset_issuer = asset_issuer
        self.timeout = timeout
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings) -> "PaymentVerifier":
        return cls(
            horizon_url=settings.resolved_horizon_url,
            asset_code=settings.stablecoin_code,
            asset_issuer=settings.resolved_stablecoin_issuer,
            timeout=settings.verification_timeout_seconds,
        )

    def _fail(self, tx_hash: str, error: str, error_code: str, **observed) -> VerificationResult:
        logger.warning("Payment %s rejected: %s (%s)", tx_hash, error, error_code)
        return VerificationResult(
            valid=False,
            tx_hash=tx_hash,
            error=error,
            error_code=error_code,
            **observed,
        )

    async def verify(
        self,
        tx_hash: str,
        expected_amount,
        expected_sender: str,
        expected_receiver: str,
    ) -> VerificationResult:
        """Verify a stablecoin payment on the ledger.

        Args:
            tx_hash: Transaction hash cited by the subscriber
            expected_amount: Amount owed (Decimal or decimal string)
            expected_sender: Subscriber wallet (compared case-insensitively)
            expected_receiver: Provider wallet (compared case-insensitively)

        Returns:
            VerificationResult; valid=False for every business-level mismatch

        Raises:
            LedgerUnavailableError: If the ledger cannot be reached
        """
        tx_hash = normalize_tx_hash(tx_hash)
        expected = to_money(expected_amount)
        sender = (expected_sender or "").lower()
        receiver = (expected_receiver or "").lower()

        logger.info("Verifying subscription payment: tx_hash=%s", tx_hash)

        if not tx_hash:
            return self._fail(tx_hash, "Transaction hash is required", "INVALID_TX_HASH")

        try:
            tx = await _horizon_get(
                self.horizon_url, f"/transactions/{tx_hash}", timeout=self.timeout
            )
            if not tx:
                return self._fail(
                    tx_hash, "Transaction not found on Stellar network", "TX_NOT_FOUND"
                )

            if tx.get("successful") is False:
                return self._fail(tx_hash, "Transaction failed on the ledger", "TX_FAILED")

            ops = await _horizon_get(
                self.horizon_url,
                f"/transactions/{tx_hash}/operations",
                params={"limit": OPERATIONS_PAGE_LIMIT},
                timeout=self.timeout,
            )
            records = ((ops or {}).get("_embedded") or {}).get("records", [])

            for op in records:
                if not _is_stablecoin_payment(op, self.asset_code, self.asset_issuer):
                    continue

                op_from = op.get("from", "")
                op_to = op.get("to", "")
                if op_from.lower() != sender or op_to.lower() != receiver:
                    continue

                paid = _parse_amount(op.get("amount"))
                if paid is None:
                    continue

                observed = {
                    "paid_amount": paid,
                    "asset_code": self.asset_code,
                    "asset_issuer": op.get("asset_issuer"),
                    "sender": op_from,
                    "receiver": op_to,
                }

                if paid >= expected - self.tolerance:
                    logger.info(
                        "Payment verified: %s %s from %s to %s",
                        format_money(paid),
                        self.asset_code,
                        op_from,
                        op_to,
                    )
                    return VerificationResult(valid=True, tx_hash=tx_hash, **observed)

                return self._fail(
                    tx_hash,
                    f"Insufficient payment: expected {format_money(expected)} {self.asset_code}, "
                    f"got {format_money(paid)} {self.asset_code}",
                    "INSUFFICIENT_PAYMENT",
                    **observed,
                )

            return self._fail(
                tx_hash,
                f"No matching {self.asset_code} payment operation found in transaction",
                "NO_MATCHING_PAYMENT",
            )

        except LedgerUnavailableError as e:
            logger.error("Ledger unavailable verifying %s: %s", tx_hash, e)
            raise
        except httpx.HTTPStatusError as e:
            return self._fail(
                tx_hash,
                f"Stellar network error: HTTP {e.response.status_code}",
                "NETWORK_ERROR",
            )
        except Exception:
            logger.exception("Unexpected error verifying payment %s", tx_hash)
            return self._fail(tx_hash, "Payment could not be verified", "UNEXPECTED_ERROR")
