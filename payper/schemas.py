"""
Data schemas for PayPer.

Price quotes, fee splits, payment records, generation tasks, provider raw
statuses and buyback contributions.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import uuid


class PriceSource(str, Enum):
    """Where a price quote came from."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    FALLBACK = "fallback"


class MediaType(str, Enum):
    """Kind of artifact a model produces."""
    IMAGE = "image"
    VIDEO = "video"


class ProviderId(str, Enum):
    """External generation services."""
    GPT4O_IMAGE = "gpt4o-image"
    IDEOGRAM = "ideogram"
    QWEN = "qwen"
    SORA = "sora"
    VEO = "veo"
    MOCK = "mock"


class PaymentState(str, Enum):
    """Lifecycle of a generation id through the payment handshake."""
    NONE = "none"
    PENDING = "pending"        # 402 issued
    VERIFYING = "verifying"
    SETTLED = "settled"
    EXPIRED = "expired"


class SettlementOutcome(str, Enum):
    """Result of checking a settlement reference against the ledger."""
    VERIFYING = "verifying"  # claim held while the ledger lookup runs
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    MISMATCHED = "mismatched"


class TaskState(str, Enum):
    """Normalized generation task states."""
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


class BuybackStatus(str, Enum):
    """Buyback contribution / batch states."""
    QUEUED = "queued"
    BATCHED = "batched"
    EXECUTED = "executed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PriceQuote:
    """USD price of one token, as fetched from a source."""
    price_usd: Decimal
    source: PriceSource
    fetched_at: datetime = field(default_factory=_now)
    source_name: str = ""

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.fetched_at).total_seconds()


@dataclass(frozen=True)
class FeeSplit:
    """
    Token amounts for one charge.

    total_tokens is what the payer sends; fee_tokens is the buyback cut and
    base_tokens the remainder kept by the collection account.
    """
    total_tokens: int
    base_tokens: int
    fee_tokens: int
    unit_price_usd: Decimal
    usd_amount: Decimal
    fee_percent: Decimal
    price_source: Optional[PriceSource] = None


@dataclass
class PendingPayment:
    """A generation request waiting for its settlement reference."""
    generation_id: str
    model_id: str
    prompt: str
    media_type: str
    amount_usd: Decimal
    total_tokens: int
    options: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    state: PaymentState = PaymentState.PENDING
    client_id: str = "default"

    def is_expired(self, ttl_seconds: float, now: Optional[datetime] = None) -> bool:
        if self.state == PaymentState.EXPIRED:
            return True
        return (now or _now()) - self.created_at > timedelta(seconds=ttl_seconds)


@dataclass
class SettlementRecord:
    """
    Outcome of verifying one settlement reference.

    The reference is the idempotency key: one record per reference, and at
    most one VERIFIED record triggers a buyback and a generation start.
    """
    reference: str
    generation_id: str
    amount_usd: Decimal
    outcome: SettlementOutcome = SettlementOutcome.VERIFYING
    verified_at: Optional[datetime] = None
    transferred_tokens: Optional[Decimal] = None
    task_id: Optional[str] = None
    model_id: Optional[str] = None
    buyback_enqueued: bool = False
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=_now)


def challenge_header(realm: str, amount: int, currency: str, network: str) -> str:
    return (
        f'Bearer realm="{realm}", amount="{amount}", '
        f'currency="{currency}", network="{network}"'
    )


@dataclass
class PaymentChallenge:
    """Body of a 402 Payment Required response."""
    generation_id: str
    amount: int  # total tokens
    amount_usd: Decimal
    currency: str
    network: str
    collection_account: str
    model_id: str
    fee_split: FeeSplit
    expires_at: datetime
    realm: str = "PayPer402"

    def header_value(self) -> str:
        """Machine-readable challenge for the WWW-Authenticate header."""
        return challenge_header(self.realm, self.amount, self.currency, self.network)

    def to_dict(self) -> dict:
        return {
            "error": "Payment Required",
            "paymentRequired": True,
            "generationId": self.generation_id,
            "amount": self.amount,
            "amountUSD": str(self.amount_usd),
            "currency": self.currency,
            "network": self.network,
            "collectionAccount": self.collection_account,
            "model": self.model_id,
            "baseAmount": self.fee_split.base_tokens,
            "feeAmount": self.fee_split.fee_tokens,
            "tokenPriceUSD": str(self.fee_split.unit_price_usd),
            "expiresAt": self.expires_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Provider raw statuses (one variant per response vocabulary)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SuccessFlagStatus:
    """Numeric successFlag vocabulary: 0 running, 1 success, 2/3 failed."""
    provider_id: ProviderId
    task_id: str
    success_flag: Optional[int]
    result_urls: tuple = ()
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Optional[dict] = None


@dataclass(frozen=True)
class StatusFlagStatus:
    """Named status plus successFlag pair (GENERATING / SUCCESS / *_FAILED)."""
    provider_id: ProviderId
    task_id: str
    status: Optional[str]
    success_flag: Optional[int]
    result_urls: tuple = ()
    progress: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Optional[dict] = None


@dataclass(frozen=True)
class JobStateStatus:
    """Named state vocabulary (waiting / generating / success / fail) with a JSON result blob."""
    provider_id: ProviderId
    task_id: str
    state: Optional[str]
    result_json: Optional[str] = None
    fail_code: Optional[str] = None
    fail_msg: Optional[str] = None
    raw: Optional[dict] = None


RawStatus = SuccessFlagStatus | StatusFlagStatus | JobStateStatus


@dataclass(frozen=True)
class TaskStatus:
    """Normalized view of a provider task."""
    task_id: str
    state: TaskState
    result_urls: tuple = ()
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    progress: Optional[str] = None
    model_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.state == TaskState.COMPLETED,
            "taskId": self.task_id,
            "state": self.state.value,
        }
        if self.model_id:
            payload["model"] = self.model_id
        if self.result_urls:
            payload["result"] = self.result_urls[0]
            payload["resultUrls"] = list(self.result_urls)
        if self.state == TaskState.FAILED:
            payload["errorCode"] = self.error_code
            payload["errorMessage"] = self.error_message
        if self.progress is not None:
            payload["progress"] = self.progress
        return payload


@dataclass
class GenerationTask:
    """A task created at an external provider."""
    task_id: str
    provider_id: ProviderId
    model_id: str
    created_at: datetime = field(default_factory=_now)
    last_polled_at: Optional[datetime] = None
    state: TaskState = TaskState.CREATED
    final_status: Optional[TaskStatus] = None
    generation_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Buyback
# ---------------------------------------------------------------------------

@dataclass
class BuybackContribution:
    """Fee cut of one settled payment, waiting to be swapped."""
    source_reference: str
    amount_usd: Decimal
    enqueued_at: datetime = field(default_factory=_now)
    status: BuybackStatus = BuybackStatus.QUEUED
    contribution_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class BuybackBatch:
    """A group of contributions executed as one swap."""
    contributions: list[BuybackContribution]
    amount_usd: Decimal
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    amount_native: Optional[Decimal] = None
    native_price_usd: Optional[Decimal] = None
    status: BuybackStatus = BuybackStatus.BATCHED
    attempts: int = 0
    signature: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
