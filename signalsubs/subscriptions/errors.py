"""Domain errors raised by the tier registry, ledger and access gate.

Each carries a user-facing message; routes translate them to HTTP statuses
(NotFound 404, Conflict 409, Validation 400, Forbidden 403).
"""


class SubscriptionError(Exception):
    """Base class for subscription domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SubscriptionError):
    """Missing tier or subscription."""

    status_code = 404


class ConflictError(SubscriptionError):
    """Duplicate FREE tier, duplicate active subscription, reused payment."""

    status_code = 409


class ValidationError(SubscriptionError):
    """Price rule violation or invalid state transition."""

    status_code = 400


class ForbiddenError(SubscriptionError):
    """Caller does not own the tier or subscription."""

    status_code = 403


class PaymentFailedError(ValidationError):
    """Payment verification rejected the cited transaction."""

    def __init__(self, message: str, verification=None):
        super().__init__(message)
        self.verification = verification
