"""Stashu-Engine exception hierarchy.

Every request-path error carries a stable ``code`` and the HTTP status it
maps to; the app renders them as ``{"success": false, "error", "code"}``.
"""


class StashuError(Exception):
    """Base exception for all Stashu errors."""

    status_code = 500

    def __init__(self, message: str = "", code: str = "STASHU_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(StashuError):
    """Fatal misconfiguration. The process must not start."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message, code="CONFIGURATION")


class ValidationError(StashuError):
    """Malformed request. No state was changed."""

    status_code = 400

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message, code="VALIDATION")


class InsufficientValueError(StashuError):
    """Presented token is worth less than the stash price."""

    status_code = 400

    def __init__(self, message: str = "Insufficient token value"):
        super().__init__(message, code="INSUFFICIENT_VALUE")


class InsufficientBalanceError(StashuError):
    """Custodied proofs cannot cover amount plus fee reserve."""

    status_code = 400

    def __init__(self, message: str = "Insufficient balance"):
        super().__init__(message, code="INSUFFICIENT_BALANCE")


class PaymentRejectedError(StashuError):
    """A previous attempt with this token or quote failed terminally."""

    status_code = 400

    def __init__(self, message: str = "Previous payment failed, try with a new token"):
        super().__init__(message, code="PAYMENT_REJECTED")


class ConflictError(StashuError):
    """The same payment or melt is already in flight."""

    status_code = 409

    def __init__(self, message: str = "Payment is processing, please wait"):
        super().__init__(message, code="CONFLICT")


class UnauthorizedError(StashuError):
    status_code = 401

    def __init__(self, message: str = "Authorization required"):
        super().__init__(message, code="UNAUTHORIZED")


class ForbiddenError(StashuError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN")


class NotFoundError(StashuError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND")


class TooManyRequestsError(StashuError):
    status_code = 429

    def __init__(self, message: str = "Too many requests. Please try again later."):
        super().__init__(message, code="RATE_LIMITED")


class MintError(StashuError):
    """A call to the mint failed or timed out. Safe to retry."""

    status_code = 502

    def __init__(self, message: str = "Mint request failed"):
        super().__init__(message, code="MINT_ERROR")


class PaymentFailedError(StashuError):
    """The mint reported the Lightning payment as definitively not made."""

    status_code = 502

    def __init__(self, message: str = "Lightning payment failed"):
        super().__init__(message, code="PAYMENT_FAILED")


class PaymentIndeterminateError(StashuError):
    """Melt outcome unknown. Must be settled by reconciliation, not reported as failed."""

    status_code = 502

    def __init__(
        self,
        message: str = "Lightning payment outcome unknown; it will be reconciled",
        quote_id: str = "",
    ):
        self.quote_id = quote_id
        super().__init__(message, code="PAYMENT_INDETERMINATE")


class LightningAddressError(StashuError):
    """Payout address could not be resolved to an invoice."""

    status_code = 400

    def __init__(self, message: str = "Could not resolve Lightning address"):
        super().__init__(message, code="LNADDRESS_ERROR")


class AmountOutOfRangeError(LightningAddressError):
    """Requested amount is outside the address's sendable bounds."""

    def __init__(self, amount_sats: int, min_sats: int, max_sats: int):
        self.amount_sats = amount_sats
        self.min_sats = min_sats
        self.max_sats = max_sats
        super().__init__(
            f"Amount {amount_sats} sats is outside the allowed range: "
            f"{min_sats}-{max_sats} sats"
        )
        self.code = "AMOUNT_OUT_OF_RANGE"


class VaultError(StashuError):
    """Ciphertext is malformed or failed authentication."""

    def __init__(self, message: str = "Could not decrypt token"):
        super().__init__(message, code="VAULT_ERROR")
