"""Storage backends for pending payments and settlement records."""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone, UTC
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from payper.schemas import (
    PaymentState,
    PendingPayment,
    SettlementOutcome,
    SettlementRecord,
)


class PaymentStore(Protocol):
    """
    Storage backend interface.

    claim_reference and swap_settlement must be atomic: they are the
    check-and-set primitives that make settlement idempotent per reference.
    """

    def add_pending(self, payment: PendingPayment) -> PendingPayment:
        ...

    def get_pending(self, generation_id: str) -> Optional[PendingPayment]:
        ...

    def set_pending_state(
        self, generation_id: str, state: PaymentState, expected: Optional[PaymentState] = None
    ) -> bool:
        ...

    def expire_pending(self, ttl_seconds: float, now: Optional[datetime] = None) -> List[str]:
        ...

    def claim_reference(self, record: SettlementRecord) -> Optional[SettlementRecord]:
        ...

    def swap_settlement(
        self, reference: str, expected: SettlementOutcome, replacement: SettlementRecord
    ) -> bool:
        ...

    def save_settlement(self, record: SettlementRecord) -> SettlementRecord:
        ...

    def release_reference(self, reference: str) -> bool:
        ...

    def get_settlement(self, reference: str) -> Optional[SettlementRecord]:
        ...

    def list_settlements(self) -> List[SettlementRecord]:
        ...


class InMemoryPaymentStore:
    """In-memory storage backend (default). Safe for concurrent threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingPayment] = {}
        self._settlements: Dict[str, SettlementRecord] = {}

    def add_pending(self, payment: PendingPayment) -> PendingPayment:
        with self._lock:
            self._pending[payment.generation_id] = copy.deepcopy(payment)
        return payment

    def get_pending(self, generation_id: str) -> Optional[PendingPayment]:
        with self._lock:
            payment = self._pending.get(generation_id)
            return copy.deepcopy(payment) if payment else None

    def set_pending_state(
        self, generation_id: str, state: PaymentState, expected: Optional[PaymentState] = None
    ) -> bool:
        with self._lock:
            payment = self._pending.get(generation_id)
            if payment is None or (expected is not None and payment.state != expected):
                return False
            payment.state = state
            return True

    def expire_pending(self, ttl_seconds: float, now: Optional[datetime] = None) -> List[str]:
        now = now or datetime.now(UTC)
        expired = []
        with self._lock:
            for payment in self._pending.values():
                if payment.state == PaymentState.PENDING and payment.is_expired(ttl_seconds, now):
                    payment.state = PaymentState.EXPIRED
                    expired.append(payment.generation_id)
        return expired

    def claim_reference(self, record: SettlementRecord) -> Optional[SettlementRecord]:
        with self._lock:
            existing = self._settlements.get(record.reference)
            if existing is not None:
                return copy.copy(existing)
            self._settlements[record.reference] = copy.copy(record)
            return None

    def swap_settlement(
        self, reference: str, expected: SettlementOutcome, replacement: SettlementRecord
    ) -> bool:
        with self._lock:
            current = self._settlements.get(reference)
            if current is None or current.outcome != expected:
                return False
            self._settlements[reference] = copy.copy(replacement)
            return True

    def save_settlement(self, record: SettlementRecord) -> SettlementRecord:
        with self._lock:
            self._settlements[record.reference] = copy.copy(record)
        return record

    def release_reference(self, reference: str) -> bool:
        with self._lock:
            current = self._settlements.get(reference)
            if current is None or current.outcome != SettlementOutcome.VERIFYING:
                return False
            del self._settlements[reference]
            return True

    def get_settlement(self, reference: str) -> Optional[SettlementRecord]:
        with self._lock:
            record = self._settlements.get(reference)
            return copy.copy(record) if record else None

    def list_settlements(self) -> List[SettlementRecord]:
        with self._lock:
            return [copy.copy(r) for r in self._settlements.values()]


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLitePaymentStore:
    """
    SQLite-backed storage backend.

    Several processes can share one database file; claims rely on the
    primary key and conditional UPDATEs, so they stay atomic across processes.
    """

    def __init__(self, db_path: str = "payper.db"):
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA busy_timeout=5000;")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_payments (
                generation_id TEXT PRIMARY KEY,
                model_id TEXT NOT NULL,
                prompt TEXT NOT NULL,
                media_type TEXT NOT NULL,
                amount_usd TEXT NOT NULL,
                total_tokens INTEGER NOT NULL,
                options TEXT NOT NULL,
                created_at TEXT NOT NULL,
                state TEXT NOT NULL,
                client_id TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                reference TEXT PRIMARY KEY,
                generation_id TEXT NOT NULL,
                amount_usd TEXT NOT NULL,
                outcome TEXT NOT NULL,
                verified_at TEXT,
                transferred_tokens TEXT,
                task_id TEXT,
                model_id TEXT,
                buyback_enqueued INTEGER NOT NULL DEFAULT 0,
                detail TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_pending_state ON pending_payments(state)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_settlements_generation ON settlements(generation_id)")

    # -- pending payments ---------------------------------------------------

    def add_pending(self, payment: PendingPayment) -> PendingPayment:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO pending_payments
                    (generation_id, model_id, prompt, media_type, amount_usd, total_tokens,
                     options, created_at, state, client_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(generation_id) DO UPDATE SET
                    state=excluded.state,
                    total_tokens=excluded.total_tokens,
                    amount_usd=excluded.amount_usd
                """,
                (
                    payment.generation_id,
                    payment.model_id,
                    payment.prompt,
                    payment.media_type,
                    str(payment.amount_usd),
                    payment.total_tokens,
                    json.dumps(payment.options or {}),
                    payment.created_at.isoformat(),
                    payment.state.value,
                    payment.client_id,
                ),
            )
        return payment

    def _row_to_pending(self, row: sqlite3.Row) -> PendingPayment:
        return PendingPayment(
            generation_id=row["generation_id"],
            model_id=row["model_id"],
            prompt=row["prompt"],
            media_type=row["media_type"],
            amount_usd=Decimal(row["amount_usd"]),
            total_tokens=row["total_tokens"],
            options=json.loads(row["options"]),
            created_at=_from_iso(row["created_at"]),
            state=PaymentState(row["state"]),
            client_id=row["client_id"],
        )

    def get_pending(self, generation_id: str) -> Optional[PendingPayment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pending_payments WHERE generation_id = ?",
                (generation_id,),
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def set_pending_state(
        self, generation_id: str, state: PaymentState, expected: Optional[PaymentState] = None
    ) -> bool:
        query = "UPDATE pending_payments SET state = ? WHERE generation_id = ?"
        params: tuple = (state.value, generation_id)
        if expected is not None:
            query += " AND state = ?"
            params += (expected.value,)
        with self._lock:
            cur = self._conn.execute(query, params)
        return cur.rowcount > 0

    def expire_pending(self, ttl_seconds: float, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=ttl_seconds)
        with self._lock:
            rows = self._conn.execute(
                "SELECT generation_id, created_at FROM pending_payments WHERE state = ?",
                (PaymentState.PENDING.value,),
            ).fetchall()
            expired = [r["generation_id"] for r in rows if _from_iso(r["created_at"]) < cutoff]
            for generation_id in expired:
                self._conn.execute(
                    "UPDATE pending_payments SET state = ? WHERE generation_id = ? AND state = ?",
                    (PaymentState.EXPIRED.value, generation_id, PaymentState.PENDING.value),
                )
        return expired

    # -- settlements --------------------------------------------------------

    def _settlement_params(self, record: SettlementRecord) -> tuple:
        return (
            record.reference,
            record.generation_id,
            str(record.amount_usd),
            record.outcome.value,
            _to_iso(record.verified_at),
            str(record.transferred_tokens) if record.transferred_tokens is not None else None,
            record.task_id,
            record.model_id,
            1 if record.buyback_enqueued else 0,
            record.detail,
            record.created_at.isoformat(),
        )

    def _row_to_settlement(self, row: sqlite3.Row) -> SettlementRecord:
        return SettlementRecord(
            reference=row["reference"],
            generation_id=row["generation_id"],
            amount_usd=Decimal(row["amount_usd"]),
            outcome=SettlementOutcome(row["outcome"]),
            verified_at=_from_iso(row["verified_at"]),
            transferred_tokens=(
                Decimal(row["transferred_tokens"]) if row["transferred_tokens"] is not None else None
            ),
            task_id=row["task_id"],
            model_id=row["model_id"],
            buyback_enqueued=bool(row["buyback_enqueued"]),
            detail=row["detail"],
            created_at=_from_iso(row["created_at"]),
        )

    def claim_reference(self, record: SettlementRecord) -> Optional[SettlementRecord]:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO settlements
                    (reference, generation_id, amount_usd, outcome, verified_at, transferred_tokens,
                     task_id, model_id, buyback_enqueued, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._settlement_params(record),
            )
            if cur.rowcount > 0:
                return None
            row = self._conn.execute(
                "SELECT * FROM settlements WHERE reference = ?", (record.reference,)
            ).fetchone()
        return self._row_to_settlement(row)

    def swap_settlement(
        self, reference: str, expected: SettlementOutcome, replacement: SettlementRecord
    ) -> bool:
        params = self._settlement_params(replacement)
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE settlements SET
                    generation_id = ?, amount_usd = ?, outcome = ?, verified_at = ?,
                    transferred_tokens = ?, task_id = ?, model_id = ?, buyback_enqueued = ?,
                    detail = ?, created_at = ?
                WHERE reference = ? AND outcome = ?
                """,
                params[1:] + (reference, expected.value),
            )
        return cur.rowcount > 0

    def save_settlement(self, record: SettlementRecord) -> SettlementRecord:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO settlements
                    (reference, generation_id, amount_usd, outcome, verified_at, transferred_tokens,
                     task_id, model_id, buyback_enqueued, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(reference) DO UPDATE SET
                    generation_id=excluded.generation_id,
                    amount_usd=excluded.amount_usd,
                    outcome=excluded.outcome,
                    verified_at=excluded.verified_at,
                    transferred_tokens=excluded.transferred_tokens,
                    task_id=excluded.task_id,
                    model_id=excluded.model_id,
                    buyback_enqueued=excluded.buyback_enqueued,
                    detail=excluded.detail
                """,
                self._settlement_params(record),
            )
        return record

    def release_reference(self, reference: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM settlements WHERE reference = ? AND outcome = ?",
                (reference, SettlementOutcome.VERIFYING.value),
            )
        return cur.rowcount > 0

    def get_settlement(self, reference: str) -> Optional[SettlementRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM settlements WHERE reference = ?", (reference,)
            ).fetchone()
        return self._row_to_settlement(row) if row else None

    def list_settlements(self) -> List[SettlementRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM settlements ORDER BY created_at ASC").fetchall()
        return [self._row_to_settlement(row) for row in rows]

    def close(self) -> None:
        self._conn.close()
