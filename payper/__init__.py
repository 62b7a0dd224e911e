"""
PayPer - pay-per-generation over HTTP 402.

A request without a settlement reference gets a payment challenge; the
same request retried with the transaction signature is verified on-chain,
starts the generation task, and queues the buyback cut.

Quick start:
    from payper import build_service

    service = build_service()
    try:
        service.generate("gpt-image-1", "a lighthouse at dusk", "image")
    except PaymentRequired as e:
        print(e.challenge.amount, e.challenge.currency)

Pricing only:
    from payper import split_fee, PriceQuote, PriceSource

    split = split_fee("0.042", 10, PriceQuote(Decimal("0.0001"), PriceSource.PRIMARY))
    split.total_tokens  # 466
"""

from payper.buyback import BuybackQueue, PumpPortalSwapVenue, SwapVenue
from payper.challenge import PaymentChallengeManager, SettlementResult
from payper.config import (
    PayperSettings,
    configure_logging,
    get_model_prices,
    get_settings,
    set_model_prices,
)
from payper.errors import (
    BuybackFailed,
    InvalidOptions,
    InvalidPrice,
    OracleUnavailable,
    PayperError,
    PaymentExpired,
    PaymentFailed,
    PaymentMismatched,
    PaymentNotFound,
    PaymentRequired,
    ProviderTaskFailed,
    ProviderUnavailable,
    TaskNotFound,
    UnknownModel,
)
from payper.models import ModelInfo, get_model, list_models
from payper.normalizer import normalize
from payper.orchestrator import GenerationOrchestrator
from payper.pricing import FeeSplitCalculator, PlausibilityBound, PriceOracle, split_fee
from payper.providers import MockAdapter, ProviderAdapter, build_adapters
from payper.schemas import (
    FeeSplit,
    MediaType,
    PaymentChallenge,
    PriceQuote,
    PriceSource,
    TaskState,
    TaskStatus,
)
from payper.service import PayperService, build_service
from payper.settlement import SettlementVerifier, SolanaRpcLedger
from payper.store import InMemoryPaymentStore, SQLitePaymentStore
from payper.validation import ValidationError

__version__ = "1.0.0"

__all__ = [
    # Service
    "PayperService",
    "build_service",
    "PayperSettings",
    "get_settings",
    "configure_logging",
    "get_model_prices",
    "set_model_prices",
    # Models
    "ModelInfo",
    "get_model",
    "list_models",
    "MediaType",
    # Pricing
    "PriceOracle",
    "PlausibilityBound",
    "FeeSplitCalculator",
    "split_fee",
    "PriceQuote",
    "PriceSource",
    "FeeSplit",
    # Payments
    "PaymentChallengeManager",
    "PaymentChallenge",
    "SettlementResult",
    "SettlementVerifier",
    "SolanaRpcLedger",
    "InMemoryPaymentStore",
    "SQLitePaymentStore",
    # Generation
    "GenerationOrchestrator",
    "ProviderAdapter",
    "MockAdapter",
    "build_adapters",
    "normalize",
    "TaskState",
    "TaskStatus",
    # Buyback
    "BuybackQueue",
    "SwapVenue",
    "PumpPortalSwapVenue",
    # Errors
    "PayperError",
    "PaymentRequired",
    "PaymentNotFound",
    "PaymentMismatched",
    "PaymentFailed",
    "PaymentExpired",
    "OracleUnavailable",
    "InvalidPrice",
    "UnknownModel",
    "ProviderUnavailable",
    "InvalidOptions",
    "ProviderTaskFailed",
    "TaskNotFound",
    "BuybackFailed",
    "ValidationError",
]
