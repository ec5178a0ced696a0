"""Token transfer boundary.

The voucher core never moves tokens itself. It talks to a trusted external
ledger through ``TransferCollaborator``:

    debit(account, token, amount, reference)   account -> escrow   (registration)
    credit(account, token, amount, reference)  escrow  -> account  (claim, reclaim)
    void(reference)                            undo or pre-empt one reference
    escrow_balance(token)                      tokens currently held in escrow

``void`` gives apply-or-not semantics across a timeout: if the call already
applied, it is reversed; if it arrives late, it becomes a no-op.

``InMemoryTokenLedger`` is the reference collaborator used by tests and
single-process deployments. ``TransferGateway`` wraps any collaborator with a
bounded wait and turns every failure mode into ``TransferFailed``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Protocol, Set, Tuple

from vouchers.errors import TransferFailed
from vouchers.observability import VoucherLayer, get_logger
from vouchers.resilience import OperationTimeout, Timeout

logger = get_logger("gateway", VoucherLayer.TRANSFER)

DEBIT = "debit"
CREDIT = "credit"


@dataclass(frozen=True)
class TransferResult:
    ok: bool
    reference: str
    reason: str = ""


class TransferCollaborator(Protocol):
    """Interface of the external token ledger."""

    def debit(self, account: str, token: str, amount: int, *, reference: str) -> TransferResult:
        ...

    def credit(self, account: str, token: str, amount: int, *, reference: str) -> TransferResult:
        ...

    def void(self, reference: str) -> bool:
        ...

    def escrow_balance(self, token: str) -> int:
        ...


def new_reference(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex}"


class InMemoryTokenLedger:
    """Thread-safe in-process token ledger with an escrow account.

    Test hooks: ``delay_seconds`` sleeps before each debit/credit is applied
    (outside the lock), and ``fail_next`` makes the next call of a kind report
    failure without moving funds.
    """

    def __init__(self, escrow_account: str = "escrow", delay_seconds: float = 0.0):
        self.escrow_account = escrow_account
        self.delay_seconds = delay_seconds
        self._balances: Dict[Tuple[str, str], int] = {}
        self._applied: Dict[str, Tuple[str, str, str, int]] = {}
        self._voided: Set[str] = set()
        self._fail_next: Dict[str, str] = {}
        self._lock = threading.Lock()

    # -- seeding and inspection --------------------------------------------

    def mint(self, account: str, token: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        with self._lock:
            key = (account, token)
            self._balances[key] = self._balances.get(key, 0) + amount

    def balance_of(self, account: str, token: str) -> int:
        with self._lock:
            return self._balances.get((account, token), 0)

    def escrow_balance(self, token: str) -> int:
        return self.balance_of(self.escrow_account, token)

    def fail_next(self, kind: str, reason: str = "injected failure") -> None:
        with self._lock:
            self._fail_next[kind] = reason

    def applied_references(self) -> Set[str]:
        with self._lock:
            return set(self._applied)

    # -- collaborator interface --------------------------------------------

    def debit(self, account: str, token: str, amount: int, *, reference: str) -> TransferResult:
        return self._move(DEBIT, account, self.escrow_account, account, token, amount, reference)

    def credit(self, account: str, token: str, amount: int, *, reference: str) -> TransferResult:
        return self._move(CREDIT, self.escrow_account, account, account, token, amount, reference)

    def void(self, reference: str) -> bool:
        """Void ``reference``; returns True if an applied movement was reversed."""
        with self._lock:
            self._voided.add(reference)
            applied = self._applied.pop(reference, None)
            if applied is None:
                return False
            source, target, token, amount = applied
            self._balances[(target, token)] = self._balances.get((target, token), 0) - amount
            self._balances[(source, token)] = self._balances.get((source, token), 0) + amount
            return True

    def _move(
        self,
        kind: str,
        source: str,
        target: str,
        counterparty: str,
        token: str,
        amount: int,
        reference: str,
    ) -> TransferResult:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        with self._lock:
            if reference in self._voided:
                return TransferResult(False, reference, "reference voided")
            if reference in self._applied:
                return TransferResult(True, reference)
            reason = self._fail_next.pop(kind, None)
            if reason is not None:
                return TransferResult(False, reference, reason)
            if amount <= 0:
                return TransferResult(False, reference, "amount must be positive")
            if not counterparty:
                return TransferResult(False, reference, "missing account")
            available = self._balances.get((source, token), 0)
            if available < amount:
                return TransferResult(False, reference, f"insufficient balance in {source}")

            self._balances[(source, token)] = available - amount
            self._balances[(target, token)] = self._balances.get((target, token), 0) + amount
            self._applied[reference] = (source, target, token, amount)
            return TransferResult(True, reference)


class TransferGateway:
    """Bounded, failure-normalizing access to a ``TransferCollaborator``.

    Every collaborator call, including ``escrow_balance`` and the ``void``
    issued after a failure, runs under a ``Timeout``. A failed call is voided;
    if the void cannot be confirmed the ``TransferFailed`` is marked
    ``in_doubt``.
    """

    def __init__(self, collaborator: TransferCollaborator):
        self._collaborator = collaborator

    @property
    def collaborator(self) -> TransferCollaborator:
        return self._collaborator

    def escrow_balance(self, token: str, *, timeout_seconds: float) -> int:
        timeout = Timeout(seconds=timeout_seconds, name="transfer.escrow_balance")
        try:
            return timeout.execute(lambda: self._collaborator.escrow_balance(token))
        except OperationTimeout as exc:
            logger.warning(
                "Escrow balance timed out",
                error_code=TransferFailed.code,
                token=token,
                timeout_seconds=timeout_seconds,
            )
            raise TransferFailed("escrow_balance timed out", cause=exc, token=token) from exc
        except Exception as exc:
            logger.warning(
                "Escrow balance raised",
                error_code=TransferFailed.code,
                token=token,
                error=str(exc),
            )
            raise TransferFailed(f"escrow_balance raised: {exc}", cause=exc, token=token) from exc

    def debit(self, account: str, token: str, amount: int, *, timeout_seconds: float) -> TransferResult:
        return self._call(DEBIT, account, token, amount, timeout_seconds)

    def credit(self, account: str, token: str, amount: int, *, timeout_seconds: float) -> TransferResult:
        return self._call(CREDIT, account, token, amount, timeout_seconds)

    def _call(
        self,
        kind: str,
        account: str,
        token: str,
        amount: int,
        timeout_seconds: float,
    ) -> TransferResult:
        reference = new_reference(kind)
        call = getattr(self._collaborator, kind)
        timeout = Timeout(seconds=timeout_seconds, name=f"transfer.{kind}")

        try:
            result = timeout.execute(lambda: call(account, token, amount, reference=reference))
        except OperationTimeout as exc:
            logger.warning(
                "Transfer timed out",
                error_code=TransferFailed.code,
                kind=kind,
                reference=reference,
                timeout_seconds=timeout_seconds,
            )
            self._void_after_failure(kind, reference, timeout_seconds)
            raise TransferFailed(f"{kind} timed out", cause=exc, reference=reference) from exc
        except Exception as exc:
            logger.warning(
                "Transfer raised",
                error_code=TransferFailed.code,
                kind=kind,
                reference=reference,
                error=str(exc),
            )
            self._void_after_failure(kind, reference, timeout_seconds)
            raise TransferFailed(f"{kind} raised: {exc}", cause=exc, reference=reference) from exc

        if not isinstance(result, TransferResult) or not result.ok:
            reason = getattr(result, "reason", "") or "rejected"
            logger.warning(
                "Transfer rejected",
                error_code=TransferFailed.code,
                kind=kind,
                reference=reference,
                reason=reason,
            )
            self._void_after_failure(kind, reference, timeout_seconds)
            raise TransferFailed(f"{kind} rejected: {reason}", reference=reference)

        logger.debug("Transfer applied", kind=kind, reference=reference, token=token, amount=amount)
        return result

    def _void_after_failure(self, kind: str, reference: str, timeout_seconds: float) -> None:
        timeout = Timeout(seconds=timeout_seconds, name="transfer.void")
        try:
            timeout.execute(lambda: self._collaborator.void(reference))
        except Exception as exc:
            logger.error(
                "Void failed; transfer outcome unknown",
                error_code="TRANSFER_IN_DOUBT",
                exc_info=True,
                kind=kind,
                reference=reference,
            )
            raise TransferFailed(
                f"{kind} outcome unknown: void of {reference} failed",
                cause=exc,
                in_doubt=True,
                reference=reference,
            ) from exc
