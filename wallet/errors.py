class WalletError(Exception):
    """Base class for every failure the wallet core reports to callers."""

    kind = "WalletError"


class InsufficientFundsError(WalletError):
    kind = "InsufficientFunds"


class InvalidAmountError(WalletError):
    kind = "InvalidAmount"


class PriceUnavailableError(WalletError):
    kind = "PriceUnavailable"


class PlanBoundsViolationError(WalletError):
    kind = "PlanBoundsViolation"


class InvalidTransitionError(WalletError):
    kind = "InvalidTransition"


class NotFoundError(WalletError):
    kind = "NotFound"


class UnauthorizedError(WalletError):
    kind = "Unauthorized"


class ConflictError(WalletError):
    kind = "Conflict"


class IdempotencyConflictError(ConflictError):
    pass


class VersionConflict(Exception):
    """Raised by storage when a staged unit of work lost a compare-and-swap.

    Never escapes the ledger: it is retried and, once retries run out,
    reported as ``ConflictError``.
    """
