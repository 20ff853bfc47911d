"""Error taxonomy shared by the billing services.

Every error carries a machine-readable ``kind`` next to its human-readable
message, so API callers can branch on the kind instead of parsing text.
"""


class BillingError(Exception):
    """Base class for billing engine errors."""

    kind = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class ValidationError(BillingError):
    """Request cannot be honored with the current data (raised before any provider call)."""

    kind = "validation_error"


class NotFoundError(BillingError):
    """Referenced record does not exist."""

    kind = "not_found"


class ExternalProviderError(BillingError):
    """Billing provider rejected the request or could not be reached.

    ``code`` is the provider's own error code when it sent one.
    ``status_code`` is the HTTP status, None when no response was read.
    ``transport_failure`` is True when the outcome is unknown: connection
    error, timeout, a 5xx answer or a success answer without a usable body.
    """

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        transport_failure: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.transport_failure = transport_failure


class ConsistencyError(BillingError):
    """A stored derived value does not match its recomputation."""

    kind = "consistency_error"


__all__ = [
    "BillingError",
    "ValidationError",
    "NotFoundError",
    "ExternalProviderError",
    "ConsistencyError",
]
