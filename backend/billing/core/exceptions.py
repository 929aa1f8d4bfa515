"""Domain exceptions raised by the billing services"""


class BillingError(Exception):
    """Base exception for the billing engine."""

    status_code = 500

    def __init__(self, message: str, account_id: int = None):
        self.message = message
        self.account_id = account_id
        super().__init__(message)


class ValidationError(BillingError):
    """Raised before any write when a request is malformed (unknown tier, bad scope list)."""

    status_code = 422


class ConflictError(BillingError):
    """Raised when a concurrent transition on the same account won. Safe to retry."""

    status_code = 409


class NotFoundError(BillingError):
    """Raised when an account, tier or subscription does not exist."""

    status_code = 404


class ConfigurationError(BillingError):
    """Raised when the catalog or settings make an operation impossible (e.g. no default tier)."""

    status_code = 500
