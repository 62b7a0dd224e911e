"""
Settlement verification for PayPer.

Confirms a submitted transaction signature against the ledger. A payment is
only VERIFIED when the transaction exists, succeeded, and its token transfer
instructions move at least the expected amount of the payment mint into a
token account owned by the collection account. Presence of a successful
transaction alone proves nothing about who was paid or how much.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional, Protocol

import httpx

from payper.schemas import SettlementOutcome

logger = logging.getLogger("payper.settlement")

TOKEN_PROGRAMS = ("spl-token", "spl-token-2022")
TRANSFER_TYPES = ("transfer", "transferChecked")
# blockTime is the validator's estimate; allow for drift against our clock
BLOCK_TIME_TOLERANCE = timedelta(seconds=60)


class LedgerError(Exception):
    """The ledger node answered with an RPC error."""
    pass


class Ledger(Protocol):
    """Read access to confirmed transactions."""

    def get_transaction(self, reference: str) -> Optional[dict]:
        ...


class SolanaRpcLedger:
    """JSON-RPC `getTransaction` with jsonParsed encoding."""

    def __init__(
        self,
        rpc_url: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        commitment: str = "confirmed",
    ):
        self.rpc_url = rpc_url
        self.client = client or httpx.Client()
        self.timeout = timeout
        self.commitment = commitment
        self._ids = itertools.count(1)

    def get_transaction(self, reference: str) -> Optional[dict]:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "getTransaction",
            "params": [
                reference,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }
        response = self.client.post(self.rpc_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        error = body.get("error")
        if error:
            raise LedgerError(str(error.get("message", error) if isinstance(error, dict) else error))
        return body.get("result")


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one ledger lookup."""
    reference: str
    outcome: SettlementOutcome
    expected_tokens: int
    transferred_tokens: Decimal = Decimal(0)
    detail: str = ""

    @property
    def verified(self) -> bool:
        return self.outcome == SettlementOutcome.VERIFIED


class SettlementVerifier:
    """Checks a settlement reference against the ledger."""

    def __init__(self, ledger: Ledger, collection_account: str, token_mint: str):
        self.ledger = ledger
        self.collection_account = collection_account
        self.token_mint = token_mint

    def verify(
        self, reference: str, expected_tokens: int, not_before: Optional[datetime] = None
    ) -> VerificationResult:
        """
        Look up a transaction and check what it paid.

        Args:
            reference: Transaction signature.
            expected_tokens: Minimum whole tokens that must reach the collection account.
            not_before: When the challenge was issued; earlier transactions do not answer it.

        Returns:
            VerificationResult. NOT_FOUND is retryable (ledger propagation is
            asynchronous, and an unreachable node is treated the same way).
        """
        try:
            tx = self.ledger.get_transaction(reference)
        except (httpx.HTTPError, LedgerError, ValueError) as e:
            logger.warning("Ledger lookup for %s failed: %s", reference, e)
            return VerificationResult(
                reference, SettlementOutcome.NOT_FOUND, expected_tokens, detail=f"ledger unavailable: {e}"
            )

        if not tx:
            logger.info("Transaction %s not found on ledger", reference)
            return VerificationResult(
                reference, SettlementOutcome.NOT_FOUND, expected_tokens, detail="transaction not found"
            )

        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            logger.warning("Transaction %s failed on ledger: %s", reference, meta["err"])
            return VerificationResult(
                reference, SettlementOutcome.FAILED, expected_tokens, detail=f"transaction error: {meta['err']}"
            )

        block_time = tx.get("blockTime")
        if not_before is not None and isinstance(block_time, (int, float)):
            mined_at = datetime.fromtimestamp(block_time, not_before.tzinfo)
            if mined_at < not_before - BLOCK_TIME_TOLERANCE:
                logger.warning(
                    "Transaction %s was mined at %s, before the challenge at %s",
                    reference, mined_at.isoformat(), not_before.isoformat(),
                )
                return VerificationResult(
                    reference,
                    SettlementOutcome.MISMATCHED,
                    expected_tokens,
                    detail="transaction predates the payment challenge",
                )

        transferred = self.transferred_to_collection(tx)
        if transferred is None:
            logger.warning("Transaction %s has no %s transfer to %s", reference, self.token_mint, self.collection_account)
            return VerificationResult(
                reference,
                SettlementOutcome.MISMATCHED,
                expected_tokens,
                detail="no transfer of the payment token to the collection account",
            )

        if transferred < expected_tokens:
            logger.warning(
                "Transaction %s paid %s tokens, expected %d", reference, transferred, expected_tokens
            )
            return VerificationResult(
                reference,
                SettlementOutcome.MISMATCHED,
                expected_tokens,
                transferred_tokens=transferred,
                detail=f"transferred {transferred} tokens, expected {expected_tokens}",
            )

        logger.info("Transaction %s verified: %s tokens", reference, transferred)
        return VerificationResult(
            reference, SettlementOutcome.VERIFIED, expected_tokens, transferred_tokens=transferred
        )

    def transferred_to_collection(self, tx: dict) -> Optional[Decimal]:
        """
        Sum the payment-mint transfers into collection-owned token accounts.

        Returns None when no instruction pays the collection account at all.
        """
        meta = tx.get("meta") or {}
        message = (tx.get("transaction") or {}).get("message") or {}
        keys = [k.get("pubkey") if isinstance(k, dict) else k for k in message.get("accountKeys") or []]

        # token account -> (owner, mint, decimals)
        accounts: dict[str, tuple] = {}
        balances = (meta.get("postTokenBalances") or []) + (meta.get("preTokenBalances") or [])
        for balance in balances:
            index = balance.get("accountIndex")
            if index is None or index >= len(keys):
                continue
            decimals = (balance.get("uiTokenAmount") or {}).get("decimals", 0)
            accounts.setdefault(keys[index], (balance.get("owner"), balance.get("mint"), decimals))

        total_raw = 0
        decimals = None
        for instruction in self._instructions(message, meta):
            parsed = instruction.get("parsed")
            if instruction.get("program") not in TOKEN_PROGRAMS or not isinstance(parsed, dict):
                continue
            kind = parsed.get("type")
            if kind not in TRANSFER_TYPES:
                continue
            info = parsed.get("info") or {}
            account = accounts.get(info.get("destination"))
            if account is None:
                continue
            owner, mint, account_decimals = account
            if owner != self.collection_account or mint != self.token_mint:
                continue
            if kind == "transferChecked":
                if info.get("mint") != self.token_mint:
                    continue
                raw = (info.get("tokenAmount") or {}).get("amount")
            else:
                raw = info.get("amount")
            try:
                total_raw += int(raw)
            except (TypeError, ValueError):
                continue
            decimals = account_decimals

        if decimals is None:
            return None
        return Decimal(total_raw).scaleb(-int(decimals))

    @staticmethod
    def _instructions(message: dict, meta: dict) -> Iterator[dict]:
        yield from message.get("instructions") or []
        for inner in meta.get("innerInstructions") or []:
            yield from inner.get("instructions") or []
