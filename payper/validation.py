"""
Input validation for PayPer.

Rejects malformed requests before any money or provider call is involved.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from payper.schemas import MediaType


class ValidationError(ValueError):
    """Raised when input validation fails."""
    code = "validation_error"
    retryable = False


MAX_PROMPT_LENGTH = 10_000
MAX_USD_AMOUNT = Decimal("100")  # Sanity check: $100 per generation
# base58 ed25519 signatures encode to 87 or 88 characters
REFERENCE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,90}$")


def validate_prompt(prompt: Any) -> None:
    """
    Validate prompt input.

    Raises:
        ValidationError: If prompt is invalid
    """
    if not isinstance(prompt, str):
        raise ValidationError(f"Prompt must be a string, got {type(prompt).__name__}")

    if not prompt.strip():
        raise ValidationError("Prompt cannot be empty or whitespace-only")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(
            f"Prompt too long: {len(prompt):,} characters "
            f"(max: {MAX_PROMPT_LENGTH:,})"
        )


def validate_usd_amount(amount: Any) -> Decimal:
    """
    Validate a USD amount and return it as a Decimal.

    Zero is allowed (free models); negative and non-finite values are not.
    """
    if isinstance(amount, bool):
        raise ValidationError("USD amount must be a number, got bool")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"USD amount must be a number, got {amount!r}")

    if not value.is_finite():
        raise ValidationError(f"USD amount must be finite, got {amount}")

    if value < 0:
        raise ValidationError(f"USD amount cannot be negative, got {amount}")

    if value > MAX_USD_AMOUNT:
        raise ValidationError(
            f"USD amount too large: ${value} (max: ${MAX_USD_AMOUNT} per request)"
        )
    return value


def validate_fee_percent(fee_percent: Any) -> Decimal:
    """Validate a fee percentage in [0, 100)."""
    if isinstance(fee_percent, bool):
        raise ValidationError("fee_percent must be a number, got bool")
    try:
        value = Decimal(str(fee_percent))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"fee_percent must be a number, got {fee_percent!r}")

    if not value.is_finite() or value < 0 or value >= 100:
        raise ValidationError(f"fee_percent must be in [0, 100), got {fee_percent}")
    return value


def validate_reference(reference: Any) -> None:
    """Validate the shape of a settlement reference (transaction signature)."""
    if not isinstance(reference, str):
        raise ValidationError(
            f"Settlement reference must be a string, got {type(reference).__name__}"
        )
    if not REFERENCE_PATTERN.match(reference):
        raise ValidationError("Settlement reference is not a valid transaction signature")


def validate_media_type(media_type: Any) -> MediaType:
    """Validate the requested artifact type."""
    try:
        return MediaType(media_type)
    except ValueError:
        allowed = ", ".join(m.value for m in MediaType)
        raise ValidationError(f"type must be one of: {allowed}; got {media_type!r}")


def validate_generation_request(
    model_id: Any,
    prompt: Any,
    media_type: Any,
    options: Optional[Any] = None,
) -> MediaType:
    """
    Validate all generation request parameters.

    Raises:
        ValidationError: If any parameter is invalid
    """
    if not isinstance(model_id, str) or not model_id:
        raise ValidationError("modelId is required")
    validate_prompt(prompt)
    kind = validate_media_type(media_type)
    if options is not None and not isinstance(options, dict):
        raise ValidationError(f"options must be an object, got {type(options).__name__}")
    return kind
