"""
Token pricing for PayPer.

Fetches the payment token's USD price from ranked sources, rejects
implausible quotes, caches the last good quote, and converts USD list
prices into token amounts with the buyback fee cut.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Callable, Optional, Sequence

import httpx

from payper.errors import InvalidPrice, OracleUnavailable
from payper.schemas import FeeSplit, PriceQuote, PriceSource
from payper.validation import validate_fee_percent, validate_usd_amount

logger = logging.getLogger("payper.pricing")

HUNDRED = Decimal(100)


def parse_price(raw: Any) -> Optional[Decimal]:
    """Parse a price from a number or a string, tolerating comma decimals."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        price = Decimal(str(raw).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


@dataclass(frozen=True)
class PlausibilityBound:
    """
    Rejects quotes that would make a small reference charge cost an absurd
    number of tokens. Such quotes are treated as parse/unit errors.
    """
    reference_charge_usd: Decimal = Decimal("0.03")
    max_tokens: int = 100_000
    fee_percent: Decimal = Decimal("10")

    def tokens_for_reference(self, price_usd: Decimal) -> Decimal:
        return self.reference_charge_usd / (1 - self.fee_percent / HUNDRED) / price_usd

    def accepts(self, price_usd: Decimal) -> bool:
        try:
            return self.tokens_for_reference(price_usd) <= self.max_tokens
        except ArithmeticError:
            # exponents past the context limits
            return False


class PriceFeed(ABC):
    """A single external price source."""

    name: str = "feed"

    @abstractmethod
    def fetch(self) -> Optional[Decimal]:
        """Return the USD price, or None when the source has no usable answer."""
        pass


class DexScreenerFeed(PriceFeed):
    """DexScreener token pairs endpoint. Uses the first (most liquid) pair."""

    name = "DexScreener"

    def __init__(self, mint: str, base_url: str, client: httpx.Client, timeout: float = 5.0):
        self.mint = mint
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    def fetch(self) -> Optional[Decimal]:
        response = self.client.get(
            f"{self.base_url}/{self.mint}",
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        pairs = response.json().get("pairs") or []
        if not pairs:
            return None
        return parse_price(pairs[0].get("priceUsd"))


class JupiterFeed(PriceFeed):
    """Jupiter price endpoint, keyed by mint address."""

    name = "Jupiter"

    def __init__(self, mint: str, base_url: str, client: httpx.Client, timeout: float = 5.0):
        self.mint = mint
        self.base_url = base_url
        self.client = client
        self.timeout = timeout

    def fetch(self) -> Optional[Decimal]:
        response = self.client.get(
            self.base_url,
            params={"ids": self.mint},
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        entry = (response.json().get("data") or {}).get(self.mint)
        if not entry:
            return None
        return parse_price(entry.get("price"))


class PriceOracle:
    """
    Ranked price lookup with a TTL cache.

    Sources are tried in order (primary, then secondary); the first valid and
    plausible price wins. If none does, the static fallback is used, and if
    even that fails the plausibility bound, OracleUnavailable is raised.
    Concurrent callers inside the TTL get the cached quote; duplicate
    in-flight fetches after expiry are tolerated.
    """

    def __init__(
        self,
        feeds: Sequence[PriceFeed],
        fallback_price_usd: Decimal,
        bound: Optional[PlausibilityBound] = None,
        ttl_seconds: float = 30.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        name: str = "token",
    ):
        if len(feeds) > 2:
            raise ValueError("PriceOracle supports at most a primary and a secondary feed")
        self.feeds = list(feeds)
        self.fallback_price_usd = Decimal(fallback_price_usd)
        self.bound = bound or PlausibilityBound()
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[PriceQuote] = None

    def get_price(self) -> PriceQuote:
        """Return a fresh or cached quote."""
        now = self._clock()
        with self._lock:
            cached = self._cached
        if cached is not None and cached.age_seconds(now) < self.ttl_seconds:
            return cached

        quote = self._fetch(now)
        with self._lock:
            self._cached = quote
        return quote

    def invalidate(self) -> None:
        """Drop the cached quote."""
        with self._lock:
            self._cached = None

    def _fetch(self, now: datetime) -> PriceQuote:
        ranks = (PriceSource.PRIMARY, PriceSource.SECONDARY)
        for rank, feed in zip(ranks, self.feeds):
            try:
                price = feed.fetch()
            except (httpx.HTTPError, ValueError, AttributeError, TypeError) as e:
                # timeouts and bad payloads fall through to the next source
                logger.warning("%s price feed %s failed: %s", self.name, feed.name, e)
                continue
            if price is None:
                logger.warning("%s price feed %s returned no price", self.name, feed.name)
                continue
            if not self.bound.accepts(price):
                logger.error(
                    "%s price %s from %s is implausible (over %d tokens for $%s); skipping",
                    self.name,
                    price,
                    feed.name,
                    self.bound.max_tokens,
                    self.bound.reference_charge_usd,
                )
                continue
            logger.info("%s price from %s: $%s", self.name, feed.name, price)
            return PriceQuote(price_usd=price, source=rank, fetched_at=now, source_name=feed.name)

        fallback = self.fallback_price_usd
        if fallback <= 0 or not fallback.is_finite() or not self.bound.accepts(fallback):
            raise OracleUnavailable(
                f"No usable {self.name} price: all feeds failed and fallback ${fallback} is rejected"
            )
        logger.warning("%s price feeds unavailable, using fallback $%s", self.name, fallback)
        return PriceQuote(price_usd=fallback, source=PriceSource.FALLBACK, fetched_at=now, source_name="Fallback")


def split_fee(usd_amount: Any, fee_percent: Any, quote: PriceQuote) -> FeeSplit:
    """
    Convert a USD list price into token amounts.

    total = floor(usd / (1 - fee%) / price)
    fee   = floor(total * fee%)
    base  = total - fee
    """
    price = quote.price_usd
    if not isinstance(price, Decimal):
        price = parse_price(price) or Decimal(0)
    if not price.is_finite() or price <= 0:
        raise InvalidPrice(f"Token price must be positive and finite, got {quote.price_usd}")

    usd = validate_usd_amount(usd_amount)
    fee_pct = validate_fee_percent(fee_percent)

    total = int((usd / (1 - fee_pct / HUNDRED) / price).to_integral_value(ROUND_FLOOR))
    fee = int((total * fee_pct / HUNDRED).to_integral_value(ROUND_FLOOR))
    return FeeSplit(
        total_tokens=total,
        base_tokens=total - fee,
        fee_tokens=fee,
        unit_price_usd=price,
        usd_amount=usd,
        fee_percent=fee_pct,
        price_source=quote.source,
    )


class FeeSplitCalculator:
    """Prices USD charges in tokens using the live oracle quote."""

    def __init__(self, oracle: PriceOracle, fee_percent: Any = Decimal("10")):
        self.oracle = oracle
        self.fee_percent = validate_fee_percent(fee_percent)

    def quote(self, usd_amount: Any) -> FeeSplit:
        split = split_fee(usd_amount, self.fee_percent, self.oracle.get_price())
        logger.debug(
            "$%s -> %d tokens (base %d, fee %d) at $%s",
            split.usd_amount, split.total_tokens, split.base_tokens, split.fee_tokens, split.unit_price_usd,
        )
        return split

    def fee_usd(self, usd_amount: Any) -> Decimal:
        """USD value of the buyback cut for a charge."""
        return validate_usd_amount(usd_amount) * self.fee_percent / HUNDRED
