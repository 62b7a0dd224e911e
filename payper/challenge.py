"""
Payment challenge manager.

Runs the HTTP-402 handshake per generation id:

    none -> pending (402 issued) -> verifying -> settled | expired

The settlement reference is the idempotency key. Claiming it is an atomic
insert-if-absent on the store, so two concurrent settles of one reference
can never both verify, enqueue a buyback or start a generation.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import Any, List, Optional

from payper.buyback import BuybackQueue
from payper.errors import (
    PaymentExpired,
    PaymentFailed,
    PaymentMismatched,
    PaymentNotFound,
)
from payper.models import get_model
from payper.orchestrator import GenerationOrchestrator
from payper.pricing import FeeSplitCalculator
from payper.rate_limiter import ChallengeRateLimiter
from payper.schemas import (
    PaymentChallenge,
    PaymentState,
    PendingPayment,
    SettlementOutcome,
    SettlementRecord,
    challenge_header,
)
from payper.settlement import SettlementVerifier
from payper.store import PaymentStore
from payper.validation import (
    ValidationError,
    validate_generation_request,
    validate_reference,
)

logger = logging.getLogger("payper.challenge")


def new_generation_id() -> str:
    return f"gen_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class SettlementResult:
    """Hand-off produced by a verified settlement."""
    reference: str
    generation_id: str
    model_id: str
    task_id: str
    replayed: bool = False


class PaymentChallengeManager:
    """
    Issues payment challenges and settles them against the ledger.

    Every collaborator is passed in; the manager keeps no module-level state.
    """

    def __init__(
        self,
        store: PaymentStore,
        calculator: FeeSplitCalculator,
        verifier: SettlementVerifier,
        orchestrator: GenerationOrchestrator,
        buyback: BuybackQueue,
        currency: str,
        network: str,
        collection_account: str,
        pending_ttl_seconds: float = 900.0,
        realm: str = "PayPer402",
        rate_limiter: Optional[ChallengeRateLimiter] = None,
    ):
        self.store = store
        self.calculator = calculator
        self.verifier = verifier
        self.orchestrator = orchestrator
        self.buyback = buyback
        self.currency = currency
        self.network = network
        self.collection_account = collection_account
        self.pending_ttl_seconds = pending_ttl_seconds
        self.realm = realm
        self.rate_limiter = rate_limiter

    # -- challenge -----------------------------------------------------------

    def issue_challenge(
        self,
        model_id: str,
        prompt: str,
        media_type: Any,
        options: Optional[dict] = None,
        client_id: str = "default",
    ) -> PaymentChallenge:
        """
        Price the request, store a pending payment and describe what to pay.

        The token amount is locked here; settlement is checked against it.
        """
        kind = validate_generation_request(model_id, prompt, media_type, options)
        model = get_model(model_id)
        if kind != model.media_type:
            raise ValidationError(f"Model '{model_id}' produces {model.media_type.value}, not {kind.value}")
        if self.rate_limiter is not None:
            self.rate_limiter.check_and_record(client_id, float(model.price_usd))

        split = self.calculator.quote(model.price_usd)
        pending = PendingPayment(
            generation_id=new_generation_id(),
            model_id=model_id,
            prompt=prompt,
            media_type=kind.value,
            amount_usd=split.usd_amount,
            total_tokens=split.total_tokens,
            options=dict(options or {}),
            client_id=client_id,
        )
        self.store.add_pending(pending)
        logger.info(
            "Issued challenge %s: %d %s ($%s, %s price) for %s",
            pending.generation_id, split.total_tokens, self.currency,
            split.usd_amount, split.price_source.value if split.price_source else "unknown", model_id,
        )
        return PaymentChallenge(
            generation_id=pending.generation_id,
            amount=split.total_tokens,
            amount_usd=split.usd_amount,
            currency=self.currency,
            network=self.network,
            collection_account=self.collection_account,
            model_id=model_id,
            fee_split=split,
            expires_at=pending.created_at + timedelta(seconds=self.pending_ttl_seconds),
            realm=self.realm,
        )

    def get_pending(self, generation_id: str) -> Optional[PendingPayment]:
        return self.store.get_pending(generation_id)

    def describe_pending(self, generation_id: Optional[str]) -> Optional[tuple[dict, str]]:
        """Re-state an open challenge as (body fields, WWW-Authenticate value)."""
        pending = self.store.get_pending(generation_id) if generation_id else None
        if pending is None or pending.state in (PaymentState.SETTLED, PaymentState.EXPIRED):
            return None
        body = {
            "generationId": pending.generation_id,
            "amount": pending.total_tokens,
            "amountUSD": str(pending.amount_usd),
            "currency": self.currency,
            "network": self.network,
            "collectionAccount": self.collection_account,
            "model": pending.model_id,
        }
        header = challenge_header(self.realm, pending.total_tokens, self.currency, self.network)
        return body, header

    def expire_stale(self) -> List[str]:
        """Mark pending payments past their TTL as expired."""
        expired = self.store.expire_pending(self.pending_ttl_seconds)
        if expired:
            logger.info("Expired %d pending payment(s)", len(expired))
        return expired

    # -- settlement ----------------------------------------------------------

    def settle(self, reference: str, generation_id: str) -> SettlementResult:
        """
        Verify a settlement reference and hand off to the orchestrator.

        Raises:
            PaymentNotFound: not on the ledger yet (or verification in progress); retry
            PaymentFailed / PaymentMismatched: terminal for this reference
            PaymentExpired: unknown or expired generation id
            ProviderUnavailable / InvalidOptions: payment kept, generation not started
        """
        validate_reference(reference)
        pending, existing = self._claim(reference, generation_id)
        if existing is not None:
            return self._replay(existing, generation_id)
        return self._settle_claimed(reference, generation_id, pending, must_follow_challenge=True)

    def settle_unchallenged(
        self,
        reference: str,
        model_id: str,
        prompt: str,
        media_type: Any,
        options: Optional[dict] = None,
        client_id: str = "default",
    ) -> SettlementResult:
        """
        Settle a reference submitted without a generation id.

        A reference that was already claimed replays its own generation; a
        challenge is issued on the spot only for a reference never seen before.
        """
        validate_reference(reference)
        existing = self.store.get_settlement(reference)
        if existing is None:
            challenge = self.issue_challenge(model_id, prompt, media_type, options, client_id)
            generation_id = challenge.generation_id
            logger.info("Reference %s submitted without a challenge; opened %s", reference, generation_id)
            pending, existing = self._claim(reference, generation_id)
            if existing is None:
                try:
                    # the transfer was made before this challenge existed
                    return self._settle_claimed(reference, generation_id, pending, must_follow_challenge=False)
                except PaymentNotFound:
                    # the next submission opens its own challenge
                    self.store.set_pending_state(generation_id, PaymentState.EXPIRED, expected=PaymentState.PENDING)
                    raise
            # a concurrent submission of the same reference claimed it first
            self.store.set_pending_state(generation_id, PaymentState.EXPIRED, expected=PaymentState.PENDING)
        return self._replay(existing, existing.generation_id)

    def _claim(
        self, reference: str, generation_id: str
    ) -> tuple[Optional[PendingPayment], Optional[SettlementRecord]]:
        pending = self.store.get_pending(generation_id)
        claim = SettlementRecord(
            reference=reference,
            generation_id=generation_id,
            amount_usd=pending.amount_usd if pending else Decimal(0),
            model_id=pending.model_id if pending else None,
        )
        return pending, self.store.claim_reference(claim)

    def _settle_claimed(
        self,
        reference: str,
        generation_id: str,
        pending: Optional[PendingPayment],
        must_follow_challenge: bool,
    ) -> SettlementResult:
        if pending is not None and pending.state == PaymentState.SETTLED:
            self.store.release_reference(reference)
            raise PaymentMismatched(
                f"Generation {generation_id} was already paid with another reference",
                generation_id=generation_id,
                reference=reference,
            )
        if pending is None or pending.is_expired(self.pending_ttl_seconds):
            self.store.release_reference(reference)
            if pending is not None and pending.state == PaymentState.PENDING:
                self.store.set_pending_state(generation_id, PaymentState.EXPIRED)
            raise PaymentExpired(
                f"Generation {generation_id} is unknown or expired; request a new challenge",
                generation_id=generation_id,
                reference=reference,
            )

        if not self.store.set_pending_state(
            generation_id, PaymentState.VERIFYING, expected=PaymentState.PENDING
        ):
            self.store.release_reference(reference)
            raise PaymentNotFound(
                f"Another payment for {generation_id} is being verified; retry shortly",
                generation_id=generation_id,
                reference=reference,
            )
        try:
            not_before = pending.created_at if must_follow_challenge else None
            result = self.verifier.verify(reference, pending.total_tokens, not_before=not_before)
        except Exception:
            self.store.release_reference(reference)
            self.store.set_pending_state(generation_id, PaymentState.PENDING)
            raise

        if result.outcome == SettlementOutcome.NOT_FOUND:
            self.store.release_reference(reference)
            self.store.set_pending_state(generation_id, PaymentState.PENDING)
            raise PaymentNotFound(
                f"Transaction {reference} not found yet ({result.detail}); retry shortly",
                generation_id=generation_id,
                reference=reference,
            )

        if result.outcome in (SettlementOutcome.FAILED, SettlementOutcome.MISMATCHED):
            self.store.save_settlement(
                SettlementRecord(
                    reference=reference,
                    generation_id=generation_id,
                    amount_usd=pending.amount_usd,
                    outcome=result.outcome,
                    transferred_tokens=result.transferred_tokens,
                    model_id=pending.model_id,
                    detail=result.detail,
                )
            )
            self.store.set_pending_state(generation_id, PaymentState.PENDING)
            error = PaymentFailed if result.outcome == SettlementOutcome.FAILED else PaymentMismatched
            raise error(result.detail, generation_id=generation_id, reference=reference)

        self.store.set_pending_state(generation_id, PaymentState.SETTLED)
        record = SettlementRecord(
            reference=reference,
            generation_id=generation_id,
            amount_usd=pending.amount_usd,
            outcome=SettlementOutcome.VERIFYING,
            verified_at=datetime.now(UTC),
            transferred_tokens=result.transferred_tokens,
            model_id=pending.model_id,
        )
        record.buyback_enqueued = self._enqueue_buyback(reference, pending.amount_usd)
        # the claim stays VERIFYING until the hand-off records the task
        self.store.save_settlement(record)
        logger.info("Settled %s with %s (%s tokens)", generation_id, reference, result.transferred_tokens)
        return self._hand_off(record, pending)

    def _replay(self, existing: SettlementRecord, generation_id: str) -> SettlementResult:
        reference = existing.reference
        if existing.generation_id != generation_id:
            raise PaymentMismatched(
                f"Reference {reference} was already submitted for another generation",
                generation_id=generation_id,
                reference=reference,
            )

        if existing.outcome == SettlementOutcome.VERIFIED:
            if existing.task_id:
                logger.info("Reference %s already settled; returning task %s", reference, existing.task_id)
                return SettlementResult(
                    reference=reference,
                    generation_id=generation_id,
                    model_id=existing.model_id,
                    task_id=existing.task_id,
                    replayed=True,
                )
            # paid earlier but the task was never created: retry the hand-off only
            claimed = replace(existing, outcome=SettlementOutcome.VERIFYING)
            if not self.store.swap_settlement(reference, SettlementOutcome.VERIFIED, claimed):
                raise PaymentNotFound(
                    f"Settlement of {reference} is in progress; retry shortly",
                    generation_id=generation_id,
                    reference=reference,
                )
            pending = self.store.get_pending(generation_id)
            if pending is None:
                self.store.save_settlement(existing)
                raise PaymentExpired(
                    f"Generation {generation_id} is no longer known",
                    generation_id=generation_id,
                    reference=reference,
                )
            return self._hand_off(existing, pending)

        if existing.outcome == SettlementOutcome.VERIFYING:
            raise PaymentNotFound(
                f"Settlement of {reference} is in progress; retry shortly",
                generation_id=generation_id,
                reference=reference,
            )
        if existing.outcome == SettlementOutcome.FAILED:
            raise PaymentFailed(
                existing.detail or f"Transaction {reference} failed on the ledger",
                generation_id=generation_id,
                reference=reference,
            )
        raise PaymentMismatched(
            existing.detail or f"Transaction {reference} does not match the challenge",
            generation_id=generation_id,
            reference=reference,
        )

    def _hand_off(self, record: SettlementRecord, pending: PendingPayment) -> SettlementResult:
        try:
            task = self.orchestrator.start(
                pending.model_id,
                pending.prompt,
                pending.options,
                media_type=pending.media_type,
                generation_id=pending.generation_id,
            )
        except Exception:
            self.store.save_settlement(replace(record, outcome=SettlementOutcome.VERIFIED, task_id=None))
            logger.warning(
                "Payment %s verified but task creation for %s failed; resubmit the same reference",
                record.reference, pending.generation_id,
            )
            raise
        self.store.save_settlement(replace(record, outcome=SettlementOutcome.VERIFIED, task_id=task.task_id))
        return SettlementResult(
            reference=record.reference,
            generation_id=pending.generation_id,
            model_id=pending.model_id,
            task_id=task.task_id,
        )

    def _enqueue_buyback(self, reference: str, amount_usd: Decimal) -> bool:
        try:
            fee_usd = self.calculator.fee_usd(amount_usd)
            return self.buyback.enqueue(reference, fee_usd) is not None
        except Exception:
            logger.exception("Could not enqueue buyback for %s", reference)
            return False

    # -- read-only check -----------------------------------------------------

    def confirm(
        self,
        reference: str,
        generation_id: Optional[str] = None,
        amount_usd: Any = None,
    ) -> bool:
        """
        Report whether a reference pays for a generation or a USD amount.

        Never consumes a pending payment and never enqueues a buyback.
        """
        validate_reference(reference)
        record = self.store.get_settlement(reference)
        if record is not None and record.outcome == SettlementOutcome.VERIFIED:
            return generation_id is None or record.generation_id == generation_id

        pending = self.store.get_pending(generation_id) if generation_id else None
        if pending is not None:
            return self.verifier.verify(reference, pending.total_tokens, not_before=pending.created_at).verified
        if amount_usd is not None:
            return self.verifier.verify(reference, self.calculator.quote(amount_usd).total_tokens).verified
        raise ValidationError("generationId of a pending payment or amountUSD is required")
