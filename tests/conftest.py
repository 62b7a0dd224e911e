"""Shared fakes and fixtures for PayPer tests."""

from decimal import Decimal
from typing import Optional

import pytest

from payper.buyback import BuybackQueue, SwapVenue
from payper.challenge import PaymentChallengeManager
from payper.config import PayperSettings, reset_model_prices
from payper.errors import BuybackFailed
from payper.orchestrator import GenerationOrchestrator
from payper.pricing import FeeSplitCalculator, PriceFeed, PriceOracle
from payper.providers import MockAdapter
from payper.schemas import ProviderId
from payper.service import PayperService
from payper.settlement import SettlementVerifier
from payper.store import InMemoryPaymentStore

MINT = "PAYPERmintaddress1111111111111111111111111"
COLLECTION = "BXm4a7VzW3GWH2MkUqFTc5uM3XrQDvVbYA3KbXoUvgez"
PAYER = "Payer11111111111111111111111111111111111111"


def reference(char: str = "5") -> str:
    """A well-formed 88 character base58 signature."""
    return char * 88


class StaticFeed(PriceFeed):
    """Price feed returning a fixed answer (or raising)."""

    def __init__(self, price=None, error: Optional[Exception] = None, name: str = "static"):
        self.price = Decimal(str(price)) if price is not None else None
        self.error = error
        self.name = name
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price


class FakeLedger:
    """Ledger keyed by reference; missing references are not found."""

    def __init__(self):
        self.transactions = {}
        self.lookups = []

    def get_transaction(self, reference):
        self.lookups.append(reference)
        return self.transactions.get(reference)


class FakeSwapVenue(SwapVenue):
    """Records buys; fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.buys = []
        self.calls = 0

    def buy(self, amount_native):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise BuybackFailed("venue unavailable")
        self.buys.append(amount_native)
        return f"swap-signature-{self.calls}"


def token_transfer_tx(
    amount_tokens,
    decimals: int = 6,
    owner: str = COLLECTION,
    mint: str = MINT,
    err=None,
    checked: bool = False,
    inner: bool = False,
):
    """Build a jsonParsed transaction paying `amount_tokens` into `owner`'s token account."""
    raw = str(int(Decimal(str(amount_tokens)) * (10 ** decimals)))
    if checked:
        instruction = {
            "program": "spl-token",
            "parsed": {
                "type": "transferChecked",
                "info": {
                    "source": "SourceTokenAccount",
                    "destination": "DestTokenAccount",
                    "mint": mint,
                    "authority": PAYER,
                    "tokenAmount": {"amount": raw, "decimals": decimals},
                },
            },
        }
    else:
        instruction = {
            "program": "spl-token",
            "parsed": {
                "type": "transfer",
                "info": {
                    "source": "SourceTokenAccount",
                    "destination": "DestTokenAccount",
                    "authority": PAYER,
                    "amount": raw,
                },
            },
        }
    balance = {
        "accountIndex": 2,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"decimals": decimals},
    }
    return {
        "meta": {
            "err": err,
            "preTokenBalances": [balance],
            "postTokenBalances": [balance],
            "innerInstructions": [{"index": 0, "instructions": [instruction]}] if inner else [],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": PAYER},
                    {"pubkey": "SourceTokenAccount"},
                    {"pubkey": "DestTokenAccount"},
                ],
                "instructions": [] if inner else [instruction],
            }
        },
    }


def fixed_oracle(price="0.0001", name="token") -> PriceOracle:
    return PriceOracle([StaticFeed(price)], fallback_price_usd=Decimal(str(price)), name=name)


@pytest.fixture(autouse=True)
def _reset_prices():
    reset_model_prices()
    yield
    reset_model_prices()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def swap_venue():
    return FakeSwapVenue()


@pytest.fixture
def buyback(swap_venue):
    return BuybackQueue(swap_venue, fixed_oracle("150", name="native"), sleep=lambda s: None)


@pytest.fixture
def mock_adapter():
    return MockAdapter(polls_until_done=1)


@pytest.fixture
def orchestrator(mock_adapter):
    adapters = {p: mock_adapter for p in ProviderId if p != ProviderId.MOCK}
    return GenerationOrchestrator(adapters)


@pytest.fixture
def manager(ledger, orchestrator, buyback):
    return PaymentChallengeManager(
        store=InMemoryPaymentStore(),
        calculator=FeeSplitCalculator(fixed_oracle(), fee_percent=10),
        verifier=SettlementVerifier(ledger, collection_account=COLLECTION, token_mint=MINT),
        orchestrator=orchestrator,
        buyback=buyback,
        currency="PAYPER",
        network="solana",
        collection_account=COLLECTION,
    )


@pytest.fixture
def service(manager, orchestrator, buyback):
    return PayperService(
        settings=PayperSettings(),
        oracle=fixed_oracle(),
        calculator=manager.calculator,
        payments=manager,
        orchestrator=orchestrator,
        buyback=buyback,
        store=manager.store,
    )
