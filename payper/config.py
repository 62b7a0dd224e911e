"""Global configuration for PayPer."""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Any


DEFAULT_MODEL_PRICES: Dict[str, str] = {
    "gpt-image-1": "0.042",
    "ideogram": "0.066",
    "qwen": "0.03",
    "sora-2": "0.21",
    "veo-3.1": "0.36",
}

# Per-model overrides kept compatible with existing deployments.
MODEL_PRICE_ENV: Dict[str, str] = {
    "gpt-image-1": "PRICE_IMAGE_GPT",
    "ideogram": "PRICE_IMAGE_IDEOGRAM",
    "qwen": "PRICE_IMAGE_QWEN",
    "sora-2": "PRICE_VIDEO_SORA_2",
    "veo-3.1": "PRICE_VIDEO_VEO",
}

NATIVE_MINT_ADDRESS = "So11111111111111111111111111111111111111112"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_model_prices: Dict[str, Decimal] = {k: Decimal(v) for k, v in DEFAULT_MODEL_PRICES.items()}


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _to_decimal(value: Any, allow_zero: bool = False) -> Decimal | None:
    try:
        # comma decimal separators show up in hand-edited env files
        result = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite() or result < 0 or (result == 0 and not allow_zero):
        return None
    return result


def _env_str(name: str, default: str) -> str:
    return os.getenv(name) or default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_decimal(name: str, default: str, allow_zero: bool = False) -> Decimal:
    parsed = _to_decimal(os.getenv(name), allow_zero) if os.getenv(name) else None
    return parsed if parsed is not None else Decimal(default)


def get_model_prices() -> Dict[str, Decimal]:
    """Return USD list prices per model id, with env overrides applied."""
    prices = copy.deepcopy(_model_prices)
    parsed = _parse_json_env("PAYPER_MODEL_PRICES_JSON")
    if parsed:
        for model_id, raw in parsed.items():
            price = _to_decimal(raw)
            if price is not None:
                prices[model_id] = price
    for model_id, var_name in MODEL_PRICE_ENV.items():
        raw = os.getenv(var_name)
        if raw:
            price = _to_decimal(raw)
            if price is not None:
                prices[model_id] = price
    return prices


def set_model_prices(prices: Dict[str, Any]) -> None:
    """Set model list prices at runtime."""
    global _model_prices
    if not isinstance(prices, dict) or not prices:
        raise ValueError("prices must be a non-empty dict")
    updated = copy.deepcopy(_model_prices)
    for model_id, raw in prices.items():
        price = _to_decimal(raw)
        if price is None:
            raise ValueError(f"price for {model_id} must be a positive number")
        updated[model_id] = price
    _model_prices = updated


def reset_model_prices() -> None:
    """Restore the built-in price table."""
    global _model_prices
    _model_prices = {k: Decimal(v) for k, v in DEFAULT_MODEL_PRICES.items()}


@dataclass
class PayperSettings:
    """Runtime settings, normally read from PAYPER_* environment variables."""
    # Payment token
    token_mint: str = "PAYPERmintaddress1111111111111111111111111"
    token_symbol: str = "PAYPER"
    network: str = "solana"
    collection_account: str = "BXm4a7VzW3GWH2MkUqFTc5uM3XrQDvVbYA3KbXoUvgez"
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    realm: str = "PayPer402"

    # Pricing
    fee_percent: Decimal = Decimal("10")
    price_ttl_seconds: float = 30.0
    fallback_token_price_usd: Decimal = Decimal("0.0001")
    fallback_native_price_usd: Decimal = Decimal("150")
    reference_charge_usd: Decimal = Decimal("0.03")
    max_tokens_for_reference: int = 100_000
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    jupiter_url: str = "https://price.jup.ag/v4/price"
    oracle_timeout_seconds: float = 5.0

    # Payments
    pending_ttl_seconds: float = 900.0
    ledger_timeout_seconds: float = 10.0
    db_path: str | None = None
    challenges_per_minute: int = 30
    challenges_per_hour: int = 300
    max_outstanding_usd_per_hour: float = 25.0

    # Providers
    provider_base_url: str = "https://api.kie.ai"
    provider_api_key: str | None = None
    provider_timeout_seconds: float = 30.0
    callback_url: str | None = None
    # route every model to the in-process mock provider
    dry_run: bool = False

    # Buyback
    swap_url: str = "https://pumpportal.fun/api/trade"
    swap_api_key: str | None = None
    swap_slippage_percent: int = 15
    swap_priority_fee: float = 0.001
    swap_timeout_seconds: float = 30.0
    buyback_batch_size: int = 10
    buyback_window_seconds: float = 60.0
    buyback_max_attempts: int = 3
    buyback_retry_base_delay_seconds: float = 2.0
    buyback_retry_max_delay_seconds: float = 60.0

    model_prices: Dict[str, Decimal] = field(default_factory=get_model_prices)


def get_settings() -> PayperSettings:
    """Build settings from the environment."""
    defaults = PayperSettings()
    return PayperSettings(
        token_mint=_env_str("PAYPER_TOKEN_MINT", defaults.token_mint),
        token_symbol=_env_str("PAYPER_TOKEN_SYMBOL", defaults.token_symbol),
        network=_env_str("PAYPER_NETWORK", defaults.network),
        collection_account=_env_str("PAYPER_COLLECTION_ACCOUNT", defaults.collection_account),
        rpc_url=_env_str("SOLANA_RPC_URL", defaults.rpc_url),
        realm=_env_str("PAYPER_REALM", defaults.realm),
        fee_percent=_env_decimal("PAYPER_FEE_PERCENT", str(defaults.fee_percent), allow_zero=True),
        price_ttl_seconds=_env_float("PAYPER_PRICE_TTL_SECONDS", defaults.price_ttl_seconds),
        fallback_token_price_usd=_env_decimal(
            "PAYPER_FALLBACK_TOKEN_PRICE_USD", str(defaults.fallback_token_price_usd)
        ),
        fallback_native_price_usd=_env_decimal(
            "PAYPER_FALLBACK_NATIVE_PRICE_USD", str(defaults.fallback_native_price_usd)
        ),
        reference_charge_usd=_env_decimal(
            "PAYPER_REFERENCE_CHARGE_USD", str(defaults.reference_charge_usd)
        ),
        max_tokens_for_reference=_env_int(
            "PAYPER_MAX_TOKENS_FOR_REFERENCE", defaults.max_tokens_for_reference
        ),
        dexscreener_url=_env_str("PAYPER_DEXSCREENER_URL", defaults.dexscreener_url),
        jupiter_url=_env_str("PAYPER_JUPITER_URL", defaults.jupiter_url),
        oracle_timeout_seconds=_env_float("PAYPER_ORACLE_TIMEOUT_SECONDS", defaults.oracle_timeout_seconds),
        pending_ttl_seconds=_env_float("PAYPER_PENDING_TTL_SECONDS", defaults.pending_ttl_seconds),
        ledger_timeout_seconds=_env_float("PAYPER_LEDGER_TIMEOUT_SECONDS", defaults.ledger_timeout_seconds),
        db_path=os.getenv("PAYPER_DB_PATH") or None,
        challenges_per_minute=_env_int("PAYPER_CHALLENGES_PER_MINUTE", defaults.challenges_per_minute),
        challenges_per_hour=_env_int("PAYPER_CHALLENGES_PER_HOUR", defaults.challenges_per_hour),
        max_outstanding_usd_per_hour=_env_float(
            "PAYPER_MAX_OUTSTANDING_USD_PER_HOUR", defaults.max_outstanding_usd_per_hour
        ),
        provider_base_url=_env_str("KIE_API_BASE_URL", defaults.provider_base_url),
        provider_api_key=os.getenv("KIE_API_KEY") or None,
        provider_timeout_seconds=_env_float(
            "PAYPER_PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds
        ),
        callback_url=os.getenv("PAYPER_CALLBACK_URL") or None,
        dry_run=_env_bool("PAYPER_DRY_RUN", defaults.dry_run),
        swap_url=_env_str("PUMPPORTAL_API_URL", defaults.swap_url),
        swap_api_key=os.getenv("PUMPPORTAL_API_KEY") or None,
        swap_slippage_percent=_env_int("PAYPER_SWAP_SLIPPAGE_PERCENT", defaults.swap_slippage_percent),
        swap_priority_fee=_env_float("PAYPER_SWAP_PRIORITY_FEE", defaults.swap_priority_fee),
        swap_timeout_seconds=_env_float("PAYPER_SWAP_TIMEOUT_SECONDS", defaults.swap_timeout_seconds),
        buyback_batch_size=_env_int("PAYPER_BUYBACK_BATCH_SIZE", defaults.buyback_batch_size),
        buyback_window_seconds=_env_float("PAYPER_BUYBACK_WINDOW_SECONDS", defaults.buyback_window_seconds),
        buyback_max_attempts=_env_int("PAYPER_BUYBACK_MAX_ATTEMPTS", defaults.buyback_max_attempts),
        buyback_retry_base_delay_seconds=_env_float(
            "PAYPER_BUYBACK_RETRY_BASE_DELAY_SECONDS", defaults.buyback_retry_base_delay_seconds
        ),
        buyback_retry_max_delay_seconds=_env_float(
            "PAYPER_BUYBACK_RETRY_MAX_DELAY_SECONDS", defaults.buyback_retry_max_delay_seconds
        ),
    )


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach a stream handler to the `payper` logger (idempotent)."""
    logger = logging.getLogger("payper")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
