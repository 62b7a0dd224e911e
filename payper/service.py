"""
PayPer service facade.

Wires pricing, settlement, challenges, providers and buyback from settings
and exposes the operations the API and CLI need.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from payper.buyback import BuybackQueue, PumpPortalSwapVenue
from payper.challenge import PaymentChallengeManager, SettlementResult
from payper.config import NATIVE_MINT_ADDRESS, PayperSettings, get_settings
from payper.errors import PaymentRequired
from payper.models import ModelInfo, get_model, list_models
from payper.orchestrator import GenerationOrchestrator
from payper.pricing import (
    DexScreenerFeed,
    FeeSplitCalculator,
    JupiterFeed,
    PlausibilityBound,
    PriceOracle,
)
from payper.providers import MockAdapter, build_adapters
from payper.rate_limiter import ChallengeRateLimiter, RateLimitConfig
from payper.schemas import FeeSplit, MediaType, PriceQuote, ProviderId, TaskStatus
from payper.settlement import SettlementVerifier, SolanaRpcLedger
from payper.store import InMemoryPaymentStore, PaymentStore, SQLitePaymentStore

logger = logging.getLogger("payper.service")


class PayperService:
    """Entry point for pay-per-generation requests."""

    def __init__(
        self,
        settings: PayperSettings,
        oracle: PriceOracle,
        calculator: FeeSplitCalculator,
        payments: PaymentChallengeManager,
        orchestrator: GenerationOrchestrator,
        buyback: BuybackQueue,
        store: PaymentStore,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        self.oracle = oracle
        self.calculator = calculator
        self.payments = payments
        self.orchestrator = orchestrator
        self.buyback = buyback
        self.store = store
        self._http_client = http_client

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self.buyback.start()

    def stop(self) -> None:
        self.buyback.stop(drain=True)

    def close(self) -> None:
        self.stop()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        if self._http_client is not None:
            self._http_client.close()

    # -- pricing -------------------------------------------------------------

    def models(self, media_type: Optional[MediaType] = None) -> list[ModelInfo]:
        return list_models(media_type)

    def price(self) -> PriceQuote:
        return self.oracle.get_price()

    def quote(self, model_id: str) -> FeeSplit:
        return self.calculator.quote(get_model(model_id).price_usd)

    # -- generation ----------------------------------------------------------

    def generate(
        self,
        model_id: str,
        prompt: str,
        media_type: Any,
        options: Optional[dict] = None,
        reference: Optional[str] = None,
        generation_id: Optional[str] = None,
        client_id: str = "default",
    ) -> SettlementResult:
        """
        Start a paid generation.

        Without a reference a challenge is issued and PaymentRequired raised.
        A reference without a generation id replays the generation it already
        paid for, or is checked against a challenge issued on the spot.
        """
        if not reference:
            challenge = self.payments.issue_challenge(model_id, prompt, media_type, options, client_id)
            raise PaymentRequired(challenge)

        if not generation_id:
            return self.payments.settle_unchallenged(
                reference, model_id, prompt, media_type, options, client_id
            )
        return self.payments.settle(reference, generation_id)

    def status(self, task_id: str, model_id: Optional[str] = None) -> TaskStatus:
        return self.orchestrator.poll(task_id, model_id)

    def wait(self, task_id: str, model_id: Optional[str] = None, timeout: float = 600.0, interval: float = 5.0) -> TaskStatus:
        return self.orchestrator.wait(task_id, model_id, timeout=timeout, interval=interval)

    # -- payments ------------------------------------------------------------

    def verify_payment(
        self, reference: str, generation_id: Optional[str] = None, amount_usd: Any = None
    ) -> bool:
        return self.payments.confirm(reference, generation_id, amount_usd)

    def expire_stale(self) -> list[str]:
        return self.payments.expire_stale()

    def buyback_stats(self) -> dict:
        return self.buyback.get_stats()

    def health(self) -> dict:
        return {
            "status": "ok",
            "dry_run": self.settings.dry_run,
            "buyback_running": self.buyback.running,
            "providers": self.orchestrator.get_stats()["circuits"],
        }


def build_service(
    settings: Optional[PayperSettings] = None,
    http_client: Optional[httpx.Client] = None,
) -> PayperService:
    """Build a fully wired service from settings (environment by default)."""
    settings = settings or get_settings()
    client = http_client or httpx.Client()

    bound = PlausibilityBound(
        reference_charge_usd=settings.reference_charge_usd,
        max_tokens=settings.max_tokens_for_reference,
        fee_percent=settings.fee_percent,
    )
    oracle = PriceOracle(
        [
            DexScreenerFeed(settings.token_mint, settings.dexscreener_url, client, settings.oracle_timeout_seconds),
            JupiterFeed(settings.token_mint, settings.jupiter_url, client, settings.oracle_timeout_seconds),
        ],
        fallback_price_usd=settings.fallback_token_price_usd,
        bound=bound,
        ttl_seconds=settings.price_ttl_seconds,
        name=settings.token_symbol,
    )
    native_oracle = PriceOracle(
        [JupiterFeed(NATIVE_MINT_ADDRESS, settings.jupiter_url, client, settings.oracle_timeout_seconds)],
        fallback_price_usd=settings.fallback_native_price_usd,
        ttl_seconds=settings.price_ttl_seconds,
        name="native",
    )
    calculator = FeeSplitCalculator(oracle, settings.fee_percent)

    store: PaymentStore
    if settings.db_path:
        store = SQLitePaymentStore(settings.db_path)
    else:
        store = InMemoryPaymentStore()

    if settings.dry_run:
        mock = MockAdapter()
        adapters = {provider_id: mock for provider_id in ProviderId if provider_id != ProviderId.MOCK}
        logger.warning("Dry run: every model is served by the mock provider")
    else:
        adapters = build_adapters(
            api_key=settings.provider_api_key,
            base_url=settings.provider_base_url,
            client=client,
            timeout=settings.provider_timeout_seconds,
            callback_url=settings.callback_url,
        )
    orchestrator = GenerationOrchestrator(adapters)

    buyback = BuybackQueue(
        PumpPortalSwapVenue(
            settings.token_mint,
            url=settings.swap_url,
            api_key=settings.swap_api_key,
            client=client,
            slippage_percent=settings.swap_slippage_percent,
            priority_fee=settings.swap_priority_fee,
            timeout=settings.swap_timeout_seconds,
        ),
        native_oracle,
        batch_size=settings.buyback_batch_size,
        window_seconds=settings.buyback_window_seconds,
        max_attempts=settings.buyback_max_attempts,
        retry_base_delay=settings.buyback_retry_base_delay_seconds,
        retry_max_delay=settings.buyback_retry_max_delay_seconds,
    )

    verifier = SettlementVerifier(
        SolanaRpcLedger(settings.rpc_url, client, timeout=settings.ledger_timeout_seconds),
        collection_account=settings.collection_account,
        token_mint=settings.token_mint,
    )
    payments = PaymentChallengeManager(
        store=store,
        calculator=calculator,
        verifier=verifier,
        orchestrator=orchestrator,
        buyback=buyback,
        currency=settings.token_symbol,
        network=settings.network,
        collection_account=settings.collection_account,
        pending_ttl_seconds=settings.pending_ttl_seconds,
        realm=settings.realm,
        rate_limiter=ChallengeRateLimiter(
            RateLimitConfig(
                challenges_per_minute=settings.challenges_per_minute,
                challenges_per_hour=settings.challenges_per_hour,
                max_outstanding_usd_per_hour=settings.max_outstanding_usd_per_hour,
            )
        ),
    )
    return PayperService(
        settings=settings,
        oracle=oracle,
        calculator=calculator,
        payments=payments,
        orchestrator=orchestrator,
        buyback=buyback,
        store=store,
        http_client=client if http_client is None else None,
    )
