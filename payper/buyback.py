"""
Buyback queue and executor.

Settled payments contribute their fee cut here. A single consumer drains
contributions in enqueue order, groups them by size or time window, converts
each batch's USD total into the chain's native unit with an independently
sourced native price, and executes one swap per batch. Swap failures are
retried with backoff and finally recorded as failed; nothing here ever
raises into the payment path.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, UTC
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Callable, List, Optional

import httpx

from payper.errors import BuybackFailed, OracleUnavailable
from payper.pricing import PriceOracle
from payper.schemas import BuybackBatch, BuybackContribution, BuybackStatus

logger = logging.getLogger("payper.buyback")

NATIVE_QUANTUM = Decimal("0.000000001")  # lamport precision


class SwapVenue(ABC):
    """External venue that buys the payment token with the native unit."""

    @abstractmethod
    def buy(self, amount_native: Decimal) -> str:
        """Execute a buy and return the transaction signature. Raises BuybackFailed."""
        pass


class PumpPortalSwapVenue(SwapVenue):
    """PumpPortal trade API (`action=buy`, amount denominated in SOL)."""

    def __init__(
        self,
        mint: str,
        url: str = "https://pumpportal.fun/api/trade",
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        slippage_percent: int = 15,
        priority_fee: float = 0.001,
        timeout: float = 30.0,
        pool: str = "auto",
    ):
        self.mint = mint
        self.url = url
        self.api_key = api_key
        self.client = client or httpx.Client()
        self.slippage_percent = slippage_percent
        self.priority_fee = priority_fee
        self.timeout = timeout
        self.pool = pool

    def buy(self, amount_native: Decimal) -> str:
        if not self.api_key:
            raise BuybackFailed("Swap venue API key is not configured")
        payload = {
            "action": "buy",
            "mint": self.mint,
            "amount": float(amount_native),
            "denominatedInSol": "true",
            "slippage": self.slippage_percent,
            "priorityFee": self.priority_fee,
            "pool": self.pool,
        }
        try:
            response = self.client.post(
                self.url,
                params={"api-key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise BuybackFailed(f"Swap request failed: {e}") from e

        if response.status_code >= 400:
            raise BuybackFailed(f"Swap venue returned {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError:
            raise BuybackFailed("Swap venue returned a non-JSON response")

        signature = body.get("signature") if isinstance(body, dict) else None
        if not signature:
            errors = body.get("errors") if isinstance(body, dict) else None
            raise BuybackFailed(f"Swap venue returned no signature: {errors or body}")
        return signature


class BuybackQueue:
    """
    Serialized consumer for buyback contributions.

    `enqueue` is safe from any request thread and never raises. Batches are
    executed either by the background thread (`start`/`stop`) or
    synchronously by `flush`; an execution lock keeps them serialized.
    """

    def __init__(
        self,
        swap_venue: SwapVenue,
        native_oracle: PriceOracle,
        batch_size: int = 10,
        window_seconds: float = 60.0,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 60.0,
        history_size: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.swap_venue = swap_venue
        self.native_oracle = native_oracle
        self.batch_size = max(1, batch_size)
        self.window_seconds = window_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._clock = clock

        self._cond = threading.Condition()
        self._execute_lock = threading.Lock()
        # (monotonic enqueue time, contribution)
        self._queue: deque[tuple[float, BuybackContribution]] = deque()
        # references queued or in flight; dropped once their batch finishes
        self._seen: set[str] = set()
        self._batches: deque[BuybackBatch] = deque(maxlen=max(1, history_size))
        self._totals = {
            "batches_executed": 0,
            "batches_failed": 0,
            "contributions_executed": 0,
            "usd_executed": Decimal(0),
            "native_spent": Decimal(0),
            "usd_failed": Decimal(0),
        }
        self._last_executed: Optional[BuybackBatch] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    # -- producer side -------------------------------------------------------

    def enqueue(self, source_reference: str, amount_usd: Any) -> Optional[BuybackContribution]:
        """
        Queue a fee contribution. Returns None (and logs) instead of raising
        when the contribution is rejected.
        """
        try:
            amount = Decimal(str(amount_usd))
        except (ArithmeticError, ValueError):
            logger.error("Buyback contribution for %s has invalid amount %r", source_reference, amount_usd)
            return None
        if not amount.is_finite() or amount <= 0:
            logger.info("Skipping buyback for %s: nothing to contribute ($%s)", source_reference, amount)
            return None

        with self._cond:
            if source_reference in self._seen:
                logger.warning("Buyback for %s already queued; ignoring duplicate", source_reference)
                return None
            self._seen.add(source_reference)
            contribution = BuybackContribution(source_reference=source_reference, amount_usd=amount)
            self._queue.append((self._clock(), contribution))
            self._cond.notify()
        logger.info("Queued buyback contribution $%s from %s", amount, source_reference)
        return copy.copy(contribution)

    # -- consumer side -------------------------------------------------------

    def _take_batch(self, force: bool) -> Optional[BuybackBatch]:
        with self._cond:
            if not self._queue:
                return None
            oldest = self._queue[0][0]
            window_elapsed = self._clock() - oldest >= self.window_seconds
            if not (force or window_elapsed or len(self._queue) >= self.batch_size):
                return None
            contributions = []
            while self._queue and len(contributions) < self.batch_size:
                _, contribution = self._queue.popleft()
                contribution.status = BuybackStatus.BATCHED
                contributions.append(contribution)
        total = sum((c.amount_usd for c in contributions), Decimal(0))
        return BuybackBatch(contributions=contributions, amount_usd=total)

    def _execute(self, batch: BuybackBatch) -> BuybackBatch:
        with self._execute_lock:
            try:
                quote = self.native_oracle.get_price()
                batch.native_price_usd = quote.price_usd
                batch.amount_native = (batch.amount_usd / quote.price_usd).quantize(NATIVE_QUANTUM, ROUND_FLOOR)
            except OracleUnavailable as e:
                return self._finish(batch, BuybackStatus.FAILED, error=f"native price unavailable: {e}")
            except Exception as e:
                logger.exception("Could not convert buyback batch %s to native", batch.batch_id)
                return self._finish(batch, BuybackStatus.FAILED, error=f"native conversion failed: {e}")
            if batch.amount_native <= 0:
                return self._finish(batch, BuybackStatus.FAILED, error="batch too small to swap")

            while batch.attempts < self.max_attempts:
                batch.attempts += 1
                try:
                    batch.signature = self.swap_venue.buy(batch.amount_native)
                except Exception as e:
                    # BuybackFailed, or anything unexpected from the venue
                    batch.status = BuybackStatus.FAILED
                    batch.error = str(e)
                    logger.warning(
                        "Buyback batch %s attempt %d/%d failed: %s",
                        batch.batch_id, batch.attempts, self.max_attempts, e,
                    )
                    if batch.attempts < self.max_attempts:
                        delay = min(self.retry_base_delay * (2 ** (batch.attempts - 1)), self.retry_max_delay)
                        self._sleep(delay)
                    continue
                return self._finish(batch, BuybackStatus.EXECUTED)

            return self._finish(batch, BuybackStatus.FAILED, error=batch.error)

    def _finish(self, batch: BuybackBatch, status: BuybackStatus, error: Optional[str] = None) -> BuybackBatch:
        batch.status = status
        batch.error = error
        batch.completed_at = datetime.now(UTC)
        for contribution in batch.contributions:
            contribution.status = status
        with self._cond:
            self._batches.append(batch)
            for contribution in batch.contributions:
                self._seen.discard(contribution.source_reference)
            if status == BuybackStatus.EXECUTED:
                self._totals["batches_executed"] += 1
                self._totals["contributions_executed"] += len(batch.contributions)
                self._totals["usd_executed"] += batch.amount_usd
                self._totals["native_spent"] += batch.amount_native or Decimal(0)
                self._last_executed = batch
            else:
                self._totals["batches_failed"] += 1
                self._totals["usd_failed"] += batch.amount_usd

        if status == BuybackStatus.EXECUTED:
            logger.info(
                "Buyback batch %s executed: $%s = %s native at $%s (%s)",
                batch.batch_id, batch.amount_usd, batch.amount_native, batch.native_price_usd, batch.signature,
            )
        else:
            logger.error(
                "Buyback batch %s failed permanently after %d attempt(s): %s ($%s from %d contributions)",
                batch.batch_id, batch.attempts, error, batch.amount_usd, len(batch.contributions),
            )
        return batch

    def process_due(self) -> List[BuybackBatch]:
        """Execute every batch whose size or time window is reached."""
        done = []
        while True:
            batch = self._take_batch(force=False)
            if batch is None:
                return done
            done.append(self._execute(batch))

    def flush(self) -> List[BuybackBatch]:
        """Execute everything queued, regardless of window."""
        done = []
        while True:
            batch = self._take_batch(force=True)
            if batch is None:
                return done
            done.append(self._execute(batch))

    # -- background thread ---------------------------------------------------

    def _run(self) -> None:
        tick = max(0.05, min(1.0, self.window_seconds))
        while not self._stopping.is_set():
            with self._cond:
                self._cond.wait(timeout=tick)
            try:
                self.process_due()
            except Exception:
                # keep the consumer alive; the failure is already attributed to its batch
                logger.exception("Unexpected error in buyback consumer")

    def start(self) -> None:
        """Start the background consumer thread (no-op if running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="payper-buyback", daemon=True)
        self._thread.start()
        logger.info("Buyback consumer started")

    def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop the consumer thread, optionally draining what is queued."""
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if drain:
            self.flush()
        logger.info("Buyback consumer stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- reporting -----------------------------------------------------------

    def batches(self) -> List[BuybackBatch]:
        """Most recent finished batches, oldest first."""
        with self._cond:
            return list(self._batches)

    def get_stats(self) -> dict:
        """Totals across executed and failed batches."""
        with self._cond:
            totals = dict(self._totals)
            last = self._last_executed
            queued = len(self._queue)
            queued_usd = sum((c.amount_usd for _, c in self._queue), Decimal(0))

        return {
            "queued": queued,
            "queued_usd": float(queued_usd),
            "batches_executed": totals["batches_executed"],
            "batches_failed": totals["batches_failed"],
            "contributions_executed": totals["contributions_executed"],
            "total_usd_executed": float(totals["usd_executed"]),
            "total_native_spent": float(totals["native_spent"]),
            "total_usd_failed": float(totals["usd_failed"]),
            "last_signature": last.signature if last else None,
            "last_executed_at": last.completed_at.isoformat() if last else None,
            "running": self.running,
        }
