"""Claim ledger.

Per-issuance claim bookkeeping on top of ``VoucherState``:

- claim counters per (issuance, claimant)
- used codes per issuance
- claimed amount per issuance
- payouts whose outcome is unknown (in doubt)

Checks raise the claim error for the rule they guard. Mutations are staged as a
``StagedClaim`` that the engine reverts if the payout does not commit, so a
failed claim leaves every table exactly as it found it. A payout whose void
could not be confirmed is never reverted: the claim stays counted and its
reference is parked in ``in_doubt`` for reconciliation.

Callers that mutate must hold the issuance lock; reads take it themselves,
and only for registered issuances.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Union

from vouchers.errors import CodeAlreadyUsed, IssuanceExhausted, IssuanceNotFound, QuotaExceeded
from vouchers.hardening import InvariantChecker
from vouchers.observability import VoucherLayer, get_logger
from vouchers.registry import IssuanceRecord
from vouchers.state import VoucherState, code_key

logger = get_logger("ledger", VoucherLayer.LEDGER)


@dataclass(frozen=True)
class StagedClaim:
    """Mutations applied for one in-flight claim."""
    issuance_id: str
    claimant: str
    code: bytes
    amount: int
    code_added: bool


class ClaimLedger:
    """Counters, used-code sets and claimed totals for every issuance."""

    def __init__(self, state: VoucherState):
        self._state = state

    # -- reads -------------------------------------------------------------

    def claim_count(self, issuance_id: str, claimant: str) -> int:
        if issuance_id not in self._state.issuance_locks:
            return 0
        with self._state.issuance_locks.hold(issuance_id):
            return self._state.claim_counters.get((issuance_id, claimant), 0)

    def claimed_amount(self, issuance_id: str) -> int:
        if issuance_id not in self._state.issuance_locks:
            return 0
        with self._state.issuance_locks.hold(issuance_id):
            return self._state.claimed_amounts.get(issuance_id, 0)

    def is_code_used(self, issuance_id: str, code: Union[str, bytes]) -> bool:
        key = code_key(code)
        if issuance_id not in self._state.issuance_locks:
            return False
        with self._state.issuance_locks.hold(issuance_id):
            return key in self._state.used_codes.get(issuance_id, ())

    def remaining(self, issuance_id: str) -> int:
        """Escrow still held for the issuance: neither claimed nor reclaimed."""
        with self._state.registry_lock:
            record = self._state.issuances.get(issuance_id)
        if record is None:
            raise IssuanceNotFound(f"issuance {issuance_id!r} not found", issuance_id=issuance_id)
        with self._state.issuance_locks.hold(issuance_id):
            claimed = self._state.claimed_amounts.get(issuance_id, 0)
            reclaimed = self._state.reclaimed.get(issuance_id, 0)
        return record.total_issued_amount - claimed - reclaimed

    def in_doubt(self, issuance_id: str) -> Dict[str, Any]:
        """Payouts (staged claims or reclaim receipts) whose outcome is unknown, by reference."""
        if issuance_id not in self._state.issuance_locks:
            return {}
        with self._state.issuance_locks.hold(issuance_id):
            return dict(self._state.in_doubt.get(issuance_id, {}))

    # -- checks ------------------------------------------------------------

    def check_quota(self, record: IssuanceRecord, claimant: str) -> None:
        count = self._state.claim_counters.get((record.issuance_id, claimant), 0)
        InvariantChecker.check_counter_within_quota(
            record.issuance_id, claimant, count, record.claim_frequency
        )
        if count >= record.claim_frequency:
            raise QuotaExceeded(
                f"{claimant} has used all {record.claim_frequency} claims",
                issuance_id=record.issuance_id,
                claimant=claimant,
            )

    def check_capacity(self, record: IssuanceRecord) -> None:
        claimed = self._state.claimed_amounts.get(record.issuance_id, 0)
        reclaimed = self._state.reclaimed.get(record.issuance_id, 0)
        InvariantChecker.check_claimed_within_issued(
            record.issuance_id, claimed + reclaimed, record.total_issued_amount
        )
        if claimed + reclaimed + record.claim_amount_per_code > record.total_issued_amount:
            raise IssuanceExhausted(
                f"{claimed} claimed and {reclaimed} reclaimed of {record.total_issued_amount}",
                issuance_id=record.issuance_id,
            )

    def check_code_unused(self, record: IssuanceRecord, code: Union[str, bytes]) -> None:
        if record.reusable_code:
            return
        if code_key(code) in self._state.used_codes.get(record.issuance_id, ()):
            raise CodeAlreadyUsed("code already claimed", issuance_id=record.issuance_id)

    # -- staging -----------------------------------------------------------

    def stage(self, record: IssuanceRecord, claimant: str, code: Union[str, bytes]) -> StagedClaim:
        """Apply the three claim mutations; returns what to revert on failure."""
        state = self._state
        issuance_id = record.issuance_id
        key = code_key(code)
        amount = record.claim_amount_per_code

        count = state.claim_counters.get((issuance_id, claimant), 0) + 1
        claimed = state.claimed_amounts.get(issuance_id, 0) + amount
        InvariantChecker.check_counter_within_quota(issuance_id, claimant, count, record.claim_frequency)
        InvariantChecker.check_claimed_within_issued(issuance_id, claimed, record.total_issued_amount)

        used = state.used_codes.setdefault(issuance_id, set())
        code_added = key not in used

        state.claim_counters[(issuance_id, claimant)] = count
        state.claimed_amounts[issuance_id] = claimed
        used.add(key)

        return StagedClaim(
            issuance_id=issuance_id,
            claimant=claimant,
            code=key,
            amount=amount,
            code_added=code_added,
        )

    def revert(self, staged: StagedClaim) -> None:
        """Undo a staged claim whose payout did not commit."""
        state = self._state
        counter_key = (staged.issuance_id, staged.claimant)

        count = state.claim_counters.get(counter_key, 0) - 1
        claimed = state.claimed_amounts.get(staged.issuance_id, 0) - staged.amount
        InvariantChecker.check_non_negative("claim counter", count)
        InvariantChecker.check_non_negative("claimed amount", claimed)

        if count:
            state.claim_counters[counter_key] = count
        else:
            state.claim_counters.pop(counter_key, None)
        if claimed:
            state.claimed_amounts[staged.issuance_id] = claimed
        else:
            state.claimed_amounts.pop(staged.issuance_id, None)

        if staged.code_added:
            used = state.used_codes.get(staged.issuance_id)
            if used is not None:
                used.discard(staged.code)
                if not used:
                    del state.used_codes[staged.issuance_id]

        logger.debug(
            "Staged claim reverted",
            operation="revert",
            issuance_id=staged.issuance_id,
            claimant=staged.claimant,
        )

    def hold_in_doubt(self, staged: StagedClaim, reference: str) -> None:
        """Keep a staged claim whose payout may have landed.

        The code stays used and the amount stays claimed, so it can neither be
        paid twice nor reclaimed by the creator.
        """
        self._state.in_doubt.setdefault(staged.issuance_id, {})[reference] = staged
        logger.error(
            "Claim payout in doubt; staged claim kept",
            error_code="CLAIM_IN_DOUBT",
            operation="hold_in_doubt",
            issuance_id=staged.issuance_id,
            claimant=staged.claimant,
            amount=staged.amount,
            reference=reference,
        )
