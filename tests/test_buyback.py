"""Tests for the buyback queue and swap venue."""

import json
import time
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from payper.buyback import BuybackQueue, PumpPortalSwapVenue
from payper.errors import BuybackFailed
from payper.pricing import PriceOracle
from payper.schemas import BuybackStatus

from conftest import MINT, FakeSwapVenue, StaticFeed, fixed_oracle


class TestEnqueue:
    """Test the producer side."""

    def setup_method(self):
        """Set up test fixtures."""
        self.venue = FakeSwapVenue()
        self.queue = BuybackQueue(self.venue, fixed_oracle("150"), sleep=lambda s: None)

    def test_enqueue(self):
        contribution = self.queue.enqueue("ref-1", "0.0042")
        assert contribution.amount_usd == Decimal("0.0042")
        assert contribution.status == BuybackStatus.QUEUED
        assert self.queue.get_stats()["queued"] == 1

    @pytest.mark.parametrize("amount", [0, "-1", "abc", None, "NaN"])
    def test_rejected_amounts_never_raise(self, amount):
        assert self.queue.enqueue("ref-1", amount) is None
        assert self.queue.get_stats()["queued"] == 0

    def test_duplicate_reference_ignored(self):
        """Each settled reference contributes at most once."""
        assert self.queue.enqueue("ref-1", "0.01") is not None
        assert self.queue.enqueue("ref-1", "0.01") is None
        assert self.queue.get_stats()["queued"] == 1


class TestBatching:
    """Test batch release and execution."""

    def setup_method(self):
        """Set up test fixtures."""
        self.now = [0.0]
        self.venue = FakeSwapVenue()
        self.queue = BuybackQueue(
            self.venue,
            fixed_oracle("150"),
            batch_size=3,
            window_seconds=60,
            sleep=lambda s: None,
            clock=lambda: self.now[0],
        )

    def test_nothing_due_before_window(self):
        self.queue.enqueue("ref-1", "1.5")
        assert self.queue.process_due() == []
        assert self.venue.calls == 0

    def test_batch_released_by_size(self):
        for i in range(4):
            self.queue.enqueue(f"ref-{i}", "1.5")

        batches = self.queue.process_due()

        assert len(batches) == 1
        assert len(batches[0].contributions) == 3
        assert batches[0].amount_usd == Decimal("4.5")
        assert batches[0].amount_native == Decimal("0.03")
        assert self.venue.buys == [Decimal("0.03")]
        assert self.queue.get_stats()["queued"] == 1

    def test_batch_released_by_window(self):
        self.queue.enqueue("ref-1", "0.3")
        self.now[0] = 61.0
        batches = self.queue.process_due()

        assert len(batches) == 1
        assert batches[0].status == BuybackStatus.EXECUTED
        assert batches[0].signature == "swap-signature-1"
        assert batches[0].contributions[0].status == BuybackStatus.EXECUTED

    def test_flush_ignores_window(self):
        self.queue.enqueue("ref-1", "0.3")
        self.queue.enqueue("ref-2", "0.3")
        assert len(self.queue.flush()) == 1
        assert self.queue.get_stats()["queued"] == 0

    def test_native_amount_floors_to_lamports(self):
        self.queue.enqueue("ref-1", "0.0042")
        batch = self.queue.flush()[0]
        assert batch.amount_native == Decimal("0.000028")
        assert batch.native_price_usd == Decimal("150")

    def test_dust_batch_fails(self):
        queue = BuybackQueue(self.venue, fixed_oracle("1000000000"), sleep=lambda s: None)
        queue.enqueue("ref-1", "0.0000001")
        batch = queue.flush()[0]
        assert batch.status == BuybackStatus.FAILED
        assert "too small" in batch.error
        assert self.venue.calls == 0


class TestRetries:
    """Test swap retries and permanent failure."""

    def test_retry_then_success(self):
        venue = FakeSwapVenue(fail_times=2)
        sleeps = []
        queue = BuybackQueue(venue, fixed_oracle("150"), retry_base_delay=2, sleep=sleeps.append)
        queue.enqueue("ref-1", "1.5")

        batch = queue.flush()[0]

        assert batch.status == BuybackStatus.EXECUTED
        assert batch.attempts == 3
        assert batch.error is None
        assert sleeps == [2, 4]

    def test_backoff_is_capped(self):
        venue = FakeSwapVenue(fail_times=10)
        sleeps = []
        queue = BuybackQueue(
            venue, fixed_oracle("150"), max_attempts=5, retry_base_delay=10, retry_max_delay=25, sleep=sleeps.append
        )
        queue.enqueue("ref-1", "1.5")
        queue.flush()
        assert sleeps == [10, 20, 25, 25]

    def test_exhausted_retries_mark_failed_without_raising(self):
        """A buyback that never succeeds is recorded, not propagated."""
        venue = FakeSwapVenue(fail_times=99)
        queue = BuybackQueue(venue, fixed_oracle("150"), max_attempts=3, sleep=lambda s: None)
        queue.enqueue("ref-1", "1.5")

        batch = queue.flush()[0]

        assert batch.status == BuybackStatus.FAILED
        assert batch.attempts == 3
        assert batch.error == "venue unavailable"
        stats = queue.get_stats()
        assert stats["batches_failed"] == 1
        assert stats["total_usd_failed"] == pytest.approx(1.5)

    def test_native_oracle_unavailable(self):
        venue = FakeSwapVenue()
        oracle = PriceOracle([StaticFeed(None)], fallback_price_usd=Decimal("0.000000001"), name="native")
        queue = BuybackQueue(venue, oracle, sleep=lambda s: None)
        queue.enqueue("ref-1", "1.5")

        batch = queue.flush()[0]
        assert batch.status == BuybackStatus.FAILED
        assert "native price unavailable" in batch.error
        assert venue.calls == 0

    def test_unexpected_venue_error_is_retried_then_failed(self):
        """Errors outside BuybackFailed still finish the batch."""
        venue = FakeSwapVenue()
        venue.buy = MagicMock(side_effect=RuntimeError("socket closed"))
        queue = BuybackQueue(venue, fixed_oracle("150"), max_attempts=2, sleep=lambda s: None)
        contribution = queue.enqueue("ref-1", "1.5")

        batch = queue.flush()[0]

        assert batch.status == BuybackStatus.FAILED
        assert batch.attempts == 2
        assert batch.error == "socket closed"
        assert batch.contributions[0].source_reference == contribution.source_reference
        assert batch.contributions[0].status == BuybackStatus.FAILED
        assert queue.get_stats()["batches_failed"] == 1

    def test_unexpected_oracle_error_fails_batch(self):
        oracle = MagicMock()
        oracle.get_price.side_effect = RuntimeError("boom")
        queue = BuybackQueue(FakeSwapVenue(), oracle, sleep=lambda s: None)
        queue.enqueue("ref-1", "1.5")

        batch = queue.flush()[0]
        assert batch.status == BuybackStatus.FAILED
        assert "native conversion failed" in batch.error


class TestStatsAndThread:
    """Test reporting and the background consumer."""

    def test_stats_after_execution(self):
        venue = FakeSwapVenue()
        queue = BuybackQueue(venue, fixed_oracle("150"), sleep=lambda s: None)
        queue.enqueue("ref-1", "1.5")
        queue.enqueue("ref-2", "1.5")
        queue.flush()

        stats = queue.get_stats()
        assert stats["batches_executed"] == 1
        assert stats["contributions_executed"] == 2
        assert stats["total_usd_executed"] == pytest.approx(3.0)
        assert stats["total_native_spent"] == pytest.approx(0.02)
        assert stats["last_signature"] == "swap-signature-1"
        assert stats["running"] is False

    def test_history_is_bounded_but_totals_are_not(self):
        venue = FakeSwapVenue()
        queue = BuybackQueue(venue, fixed_oracle("150"), batch_size=1, history_size=2, sleep=lambda s: None)
        for i in range(5):
            queue.enqueue(f"ref-{i}", "1.5")
        queue.flush()

        assert len(queue.batches()) == 2
        stats = queue.get_stats()
        assert stats["batches_executed"] == 5
        assert stats["total_usd_executed"] == pytest.approx(7.5)
        assert stats["last_signature"] == "swap-signature-5"

    def test_background_consumer_drains_on_stop(self):
        venue = FakeSwapVenue()
        queue = BuybackQueue(venue, fixed_oracle("150"), window_seconds=3600, sleep=lambda s: None)
        queue.start()
        assert queue.running
        queue.enqueue("ref-1", "1.5")

        queue.stop(drain=True, timeout=5)

        assert not queue.running
        assert len(venue.buys) == 1

    def test_background_consumer_executes_full_batch(self):
        venue = FakeSwapVenue()
        queue = BuybackQueue(venue, fixed_oracle("150"), batch_size=2, window_seconds=3600, sleep=lambda s: None)
        queue.start()
        try:
            queue.enqueue("ref-1", "1.5")
            queue.enqueue("ref-2", "1.5")
            deadline = time.monotonic() + 5
            while not venue.buys and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            queue.stop(drain=False)
        assert venue.buys == [Decimal("0.02")]


class TestPumpPortalSwapVenue:
    """Test the trade API client against a mock transport."""

    def test_buy(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"signature": "sig-123", "errors": []})

        venue = PumpPortalSwapVenue(
            MINT, url="https://swap.test/api/trade", api_key="k", client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        assert venue.buy(Decimal("0.25")) == "sig-123"
        assert seen["params"] == {"api-key": "k"}
        assert seen["body"]["action"] == "buy"
        assert seen["body"]["mint"] == MINT
        assert seen["body"]["amount"] == 0.25
        assert seen["body"]["denominatedInSol"] == "true"

    def test_missing_api_key(self):
        with pytest.raises(BuybackFailed, match="API key"):
            PumpPortalSwapVenue(MINT, client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))).buy(
                Decimal("1")
            )

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="oops"),
            httpx.Response(200, json={"errors": ["slippage exceeded"]}),
            httpx.Response(200, text="not json"),
        ],
    )
    def test_failures_raise_buyback_failed(self, response):
        venue = PumpPortalSwapVenue(
            MINT, api_key="k", client=httpx.Client(transport=httpx.MockTransport(lambda r: response))
        )
        with pytest.raises(BuybackFailed):
            venue.buy(Decimal("1"))
