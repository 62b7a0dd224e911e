"""
Error taxonomy for PayPer.

Every failure the core can surface derives from PayperError. The `retryable`
flag tells callers whether repeating the same request later can succeed.
"""

from typing import Optional


class PayperError(Exception):
    """Base class for all PayPer errors."""
    code = "payper_error"
    retryable = False


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

class PaymentError(PayperError):
    """Base class for payment handshake errors."""
    code = "payment_error"

    def __init__(self, message: str, generation_id: Optional[str] = None, reference: Optional[str] = None):
        self.generation_id = generation_id
        self.reference = reference
        super().__init__(message)


class PaymentRequired(PaymentError):
    """Raised when a request arrives without a settlement reference."""
    code = "payment_required"
    retryable = True

    def __init__(self, challenge):
        self.challenge = challenge
        super().__init__(
            f"Payment of {challenge.amount} {challenge.currency} required",
            generation_id=challenge.generation_id,
        )


class PaymentNotFound(PaymentError):
    """The reference is not (yet) visible on the ledger. Retry later."""
    code = "payment_not_found"
    retryable = True


class PaymentMismatched(PaymentError):
    """The transaction does not pay the expected amount to the collection account."""
    code = "payment_mismatched"


class PaymentFailed(PaymentError):
    """The ledger reports that the transaction itself errored."""
    code = "payment_failed"


class PaymentExpired(PaymentError):
    """The generation id is unknown or its challenge outlived its TTL."""
    code = "payment_expired"


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

class OracleUnavailable(PayperError):
    """No price source, including the static fallback, produced a usable quote."""
    code = "oracle_unavailable"
    retryable = True


class InvalidPrice(PayperError, ValueError):
    """Price is non-positive or non-finite."""
    code = "invalid_price"


# ---------------------------------------------------------------------------
# Generation providers
# ---------------------------------------------------------------------------

class UnknownModel(PayperError, ValueError):
    """Model id is not in the catalog."""
    code = "unknown_model"

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Unknown model '{model_id}'")


class ProviderError(PayperError):
    """Base class for provider adapter errors."""
    code = "provider_error"

    def __init__(self, message: str, provider_id: Optional[str] = None):
        self.provider_id = provider_id
        super().__init__(message)


class ProviderUnavailable(ProviderError):
    """The provider could not be reached or refused the request."""
    code = "provider_unavailable"
    retryable = True


class InvalidOptions(ProviderError, ValueError):
    """Generation options were rejected."""
    code = "invalid_options"


class TaskNotFound(ProviderError):
    """The task id is unknown here and, when asked, at its provider."""
    code = "task_not_found"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Unknown task '{task_id}'")


class ProviderTaskFailed(ProviderError):
    """The provider reported a terminal task failure."""
    code = "provider_task_failed"

    def __init__(
        self,
        task_id: str,
        error_message: str,
        error_code: Optional[str] = None,
        provider_id: Optional[str] = None,
    ):
        self.task_id = task_id
        self.error_code = error_code
        self.error_message = error_message
        detail = f"[{error_code}] {error_message}" if error_code else error_message
        super().__init__(f"Task {task_id} failed: {detail}", provider_id=provider_id)


# ---------------------------------------------------------------------------
# Buyback
# ---------------------------------------------------------------------------

class BuybackFailed(PayperError):
    """A swap attempt failed. Logged by the buyback executor, never propagated."""
    code = "buyback_failed"
    retryable = True
