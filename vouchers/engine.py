"""
Claim Engine

Orchestrates one claim. The issuance is resolved first; every other step
runs inside the issuance's critical section:

      1 resolve issuance            IssuanceNotFound
    ┌────────────────────── issuance lock ──────────────────────────────┐
    │ 2 start < now < end                   IssuanceNotActive           │
    │ 3 counter < frequency                 QuotaExceeded               │
    │ 4 claimed + reclaimed + amount <= total  IssuanceExhausted        │
    │ 5 Merkle proof verifies               InvalidProof                │
    │ 6 code unused                         CodeAlreadyUsed             │
    │ 7 escrow covers the payout            InsufficientFunds           │
    │                                                                   │
    │ stage ledger mutations → credit claimant (bounded wait)           │
    │   ok        → CodeClaimed event, ClaimReceipt                     │
    │   failure   → void reference, revert staging, TransferFailed      │
    │   void lost → keep staging, record in-doubt, TransferFailed       │
    └───────────────────────────────────────────────────────────────────┘

Checks run in this order; the first failure is the one reported. A failed
claim leaves no trace in the ledger unless its payout is in doubt.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from vouchers.config import VoucherConfig, get_config
from vouchers.errors import (
    InsufficientFunds,
    InvalidParameter,
    InvalidProof,
    IssuanceNotActive,
    TransferFailed,
    VoucherError,
)
from vouchers.events import CodeClaimed
from vouchers.ledger import ClaimLedger
from vouchers.merkle import code_leaf, verify
from vouchers.observability import VoucherLayer, get_correlation_id, get_logger, timed_operation
from vouchers.registry import Clock, IssuancePhase, IssuanceRecord, IssuanceRegistry, system_clock
from vouchers.state import VoucherState
from vouchers.transfer import TransferGateway

logger = get_logger("claims", VoucherLayer.ENGINE)


@dataclass(frozen=True)
class ClaimReceipt:
    """Proof of a committed claim."""
    issuance_id: str
    code: Union[str, bytes]
    claimant: str
    amount: int
    transfer_reference: str
    claimed_at: int


def _display_code(code: Union[str, bytes]) -> str:
    if isinstance(code, str):
        return code
    return bytes(code).hex()


class ClaimEngine:
    """Applies claims against registered issuances."""

    def __init__(
        self,
        state: VoucherState,
        registry: IssuanceRegistry,
        ledger: ClaimLedger,
        gateway: TransferGateway,
        config: Optional[VoucherConfig] = None,
        clock: Clock = system_clock,
    ):
        self._state = state
        self._registry = registry
        self._ledger = ledger
        self._gateway = gateway
        self._config = config or get_config()
        self._clock = clock

    def phase(self, issuance_id: str) -> IssuancePhase:
        return self._registry.get(issuance_id).phase(self._clock())

    @timed_operation(logger, "claim")
    def claim(
        self,
        issuance_id: str,
        code: Union[str, bytes],
        proof: Iterable[Any],
        claimant: str,
    ) -> ClaimReceipt:
        """Redeem ``code`` for ``claimant``.

        Args:
            issuance_id: Issuance to claim against.
            code: Raw voucher code (its leaf is ``sha256(code)``).
            proof: Sibling digests from the leaf up to the root.
            claimant: Identity receiving the payout.

        Raises:
            VoucherError: The claim was rejected and nothing changed.
            TransferFailed: The payout failed. Nothing changed unless
                ``in_doubt`` is set, in which case the claim stays recorded.
        """
        if not isinstance(claimant, str) or not claimant.strip():
            raise self._reject(InvalidParameter("claimant must be a non-empty string",
                                                issuance_id=issuance_id))

        try:
            record = self._registry.get(issuance_id)
        except VoucherError as exc:
            self._reject(exc, claimant=claimant)
            raise

        # Registration created this lock; unknown ids never reach it.
        with self._state.issuance_locks.hold(issuance_id):
            try:
                now = self._clock()
                self._check(record, code, proof, claimant, now)
            except VoucherError as exc:
                self._reject(exc, claimant=claimant)
                raise

            staged = self._ledger.stage(record, claimant, code)
            try:
                result = self._gateway.credit(
                    claimant,
                    record.token,
                    record.claim_amount_per_code,
                    timeout_seconds=self._config.claims.transfer_timeout_seconds.get(),
                )
            except TransferFailed as exc:
                if exc.in_doubt:
                    self._ledger.hold_in_doubt(staged, exc.context.get("reference", ""))
                else:
                    self._ledger.revert(staged)
                self._reject(exc, claimant=claimant)
                raise
            except BaseException:
                self._ledger.revert(staged)
                raise

            self._state.events.append(
                issuance_id,
                CodeClaimed(
                    issuance_id=issuance_id,
                    code=_display_code(code),
                    claimant=claimant,
                    amount=record.claim_amount_per_code,
                    transfer_reference=result.reference,
                    correlation_id=get_correlation_id(),
                ),
            )

        logger.info(
            "Code claimed",
            operation="claim",
            issuance_id=issuance_id,
            claimant=claimant,
            amount=record.claim_amount_per_code,
            reference=result.reference,
        )
        return ClaimReceipt(
            issuance_id=issuance_id,
            code=code,
            claimant=claimant,
            amount=record.claim_amount_per_code,
            transfer_reference=result.reference,
            claimed_at=now,
        )

    def _check(
        self,
        record: IssuanceRecord,
        code: Union[str, bytes],
        proof: Iterable[Any],
        claimant: str,
        now: int,
    ) -> None:
        if not record.is_active(now):
            raise IssuanceNotActive(
                f"issuance is {record.phase(now).value} at {now}",
                issuance_id=record.issuance_id,
                now=now,
            )
        self._ledger.check_quota(record, claimant)
        self._ledger.check_capacity(record)
        self._check_proof(record, code, proof)
        self._ledger.check_code_unused(record, code)

        available = self._gateway.escrow_balance(
            record.token,
            timeout_seconds=self._config.claims.transfer_timeout_seconds.get(),
        )
        if available < record.claim_amount_per_code:
            raise InsufficientFunds(
                f"escrow holds {available} {record.token}, "
                f"payout needs {record.claim_amount_per_code}",
                issuance_id=record.issuance_id,
            )

    def _check_proof(self, record: IssuanceRecord, code: Union[str, bytes], proof: Iterable[Any]) -> None:
        max_length = self._config.claims.max_proof_length.get()
        try:
            # Materialized at most once, one element past the bound.
            steps = list(itertools.islice(proof, max_length + 1))
        except TypeError as exc:
            raise InvalidProof("proof must be a sequence of digests", issuance_id=record.issuance_id) from exc
        if len(steps) > max_length:
            raise InvalidProof(
                f"proof longer than max {max_length} elements",
                issuance_id=record.issuance_id,
            )
        try:
            leaf = code_leaf(code)
        except TypeError as exc:
            raise InvalidProof(str(exc), issuance_id=record.issuance_id) from exc
        if not verify(record.merkle_root, leaf, steps):
            raise InvalidProof("code is not in the issuance allow-list", issuance_id=record.issuance_id)

    @staticmethod
    def _reject(error: VoucherError, **context: Any) -> VoucherError:
        logger.warning(
            "Claim rejected",
            error_code=error.code,
            operation="claim",
            reason=error.message,
            **{**error.context, **context},
        )
        return error
