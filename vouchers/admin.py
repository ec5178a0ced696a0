"""Escrow administration.

After an issuance closes, whatever the claimants did not take is still held
in escrow. ``EscrowAdmin.reclaim`` returns that remainder to the creator,
once, for callers the ``Authorizer`` approves. Every attempt, granted or not,
lands in the hash-chained audit trail.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Tuple

from vouchers.config import VoucherConfig, get_config
from vouchers.errors import (
    AlreadyReclaimed,
    IssuanceNotClosed,
    IssuanceNotFound,
    TransferFailed,
    Unauthorized,
    VoucherError,
)
from vouchers.events import EscrowReclaimed
from vouchers.hardening import InvariantChecker
from vouchers.ledger import ClaimLedger
from vouchers.observability import AuditLogger, VoucherLayer, get_correlation_id, get_logger
from vouchers.registry import Clock, IssuancePhase, IssuanceRecord, IssuanceRegistry, system_clock
from vouchers.state import VoucherState
from vouchers.transfer import TransferGateway

logger = get_logger("escrow", VoucherLayer.ADMIN)

RECLAIM = "reclaim"

Action = Tuple[str, str]


class Authorizer(Protocol):
    """Decides whether ``caller`` may perform ``(verb, issuance_id)``."""

    def is_authorized(self, caller: str, action: Action) -> bool:
        ...


class CreatorAuthorizer:
    """Allows an issuance's creator, plus any explicitly listed operators."""

    def __init__(self, registry: IssuanceRegistry, operators: Iterable[str] = ()):
        self._registry = registry
        self._operators = frozenset(operators)

    def is_authorized(self, caller: str, action: Action) -> bool:
        verb, issuance_id = action
        if caller in self._operators:
            return True
        if verb != RECLAIM:
            return False
        try:
            record = self._registry.get(issuance_id)
        except IssuanceNotFound:
            return False
        return record.creator == caller


@dataclass(frozen=True)
class ReclaimReceipt:
    issuance_id: str
    creator: str
    amount: int
    transfer_reference: Optional[str]
    reclaimed_at: int


class EscrowAdmin:
    """Authorized reclaim of unclaimed escrow after an issuance closes."""

    def __init__(
        self,
        state: VoucherState,
        registry: IssuanceRegistry,
        ledger: ClaimLedger,
        gateway: TransferGateway,
        authorizer: Authorizer,
        audit: Optional[AuditLogger] = None,
        config: Optional[VoucherConfig] = None,
        clock: Clock = system_clock,
    ):
        self._state = state
        self._registry = registry
        self._ledger = ledger
        self._gateway = gateway
        self._authorizer = authorizer
        self._audit = audit or AuditLogger(logger)
        self._config = config or get_config()
        self._clock = clock

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    def reclaimed_amount(self, issuance_id: str) -> Optional[int]:
        """Amount returned to the creator, or None if not reclaimed yet."""
        if issuance_id not in self._state.issuance_locks:
            return None
        with self._state.issuance_locks.hold(issuance_id):
            return self._state.reclaimed.get(issuance_id)

    def reclaim(self, issuance_id: str, caller: str) -> ReclaimReceipt:
        """Return the unclaimed remainder of a closed issuance to its creator.

        Raises:
            Unauthorized: ``caller`` may not reclaim this issuance
            IssuanceNotFound: no such issuance
            IssuanceNotClosed: the issuance window has not ended
            AlreadyReclaimed: the remainder was already returned
            TransferFailed: the payout failed; nothing was recorded unless the
                failure is ``in_doubt``, in which case the reclaim stands
        """
        if not self._authorizer.is_authorized(caller, (RECLAIM, issuance_id)):
            self._audit.log(caller, RECLAIM, "issuance", issuance_id, "denied")
            logger.warning(
                "Reclaim denied",
                error_code=Unauthorized.code,
                operation=RECLAIM,
                issuance_id=issuance_id,
                caller=caller,
            )
            raise Unauthorized(f"{caller} may not reclaim {issuance_id}", issuance_id=issuance_id)

        try:
            record = self._registry.get(issuance_id)
            with self._state.issuance_locks.hold(issuance_id):
                receipt = self._reclaim_locked(record)
        except VoucherError as exc:
            self._audit.log(caller, RECLAIM, "issuance", issuance_id, "failure", error=exc.code)
            logger.warning(
                "Reclaim failed",
                error_code=exc.code,
                operation=RECLAIM,
                issuance_id=issuance_id,
                reason=exc.message,
            )
            raise

        self._audit.log(
            caller,
            RECLAIM,
            "issuance",
            issuance_id,
            "success",
            amount=receipt.amount,
            transfer_reference=receipt.transfer_reference,
        )
        logger.info(
            "Escrow reclaimed",
            operation=RECLAIM,
            issuance_id=issuance_id,
            creator=receipt.creator,
            amount=receipt.amount,
        )
        return receipt

    def _reclaim_locked(self, record: IssuanceRecord) -> ReclaimReceipt:
        issuance_id = record.issuance_id
        now = self._clock()

        phase = record.phase(now)
        if phase is not IssuancePhase.CLOSED:
            raise IssuanceNotClosed(
                f"issuance is {phase.value} until {record.end_time}", issuance_id=issuance_id
            )
        if issuance_id in self._state.reclaimed:
            raise AlreadyReclaimed(f"issuance {issuance_id!r} already reclaimed", issuance_id=issuance_id)

        claimed = self._ledger.claimed_amount(issuance_id)
        InvariantChecker.check_claimed_within_issued(issuance_id, claimed, record.total_issued_amount)
        amount = record.total_issued_amount - claimed

        reference = None
        if amount > 0:
            try:
                result = self._gateway.credit(
                    record.creator,
                    record.token,
                    amount,
                    timeout_seconds=self._config.claims.transfer_timeout_seconds.get(),
                )
            except TransferFailed as exc:
                if exc.in_doubt:
                    self._hold_in_doubt(record, amount, exc.context.get("reference", ""), now)
                raise
            reference = result.reference

        self._state.reclaimed[issuance_id] = amount
        self._state.events.append(
            issuance_id,
            EscrowReclaimed(
                issuance_id=issuance_id,
                creator=record.creator,
                amount=amount,
                transfer_reference=reference or "",
                correlation_id=get_correlation_id(),
            ),
        )
        return ReclaimReceipt(
            issuance_id=issuance_id,
            creator=record.creator,
            amount=amount,
            transfer_reference=reference,
            reclaimed_at=now,
        )

    def _hold_in_doubt(self, record: IssuanceRecord, amount: int, reference: str, now: int) -> None:
        # The remainder may already be with the creator; never pay it twice.
        self._state.reclaimed[record.issuance_id] = amount
        self._state.in_doubt.setdefault(record.issuance_id, {})[reference] = ReclaimReceipt(
            issuance_id=record.issuance_id,
            creator=record.creator,
            amount=amount,
            transfer_reference=reference,
            reclaimed_at=now,
        )
        logger.error(
            "Reclaim payout in doubt; reclaim recorded",
            error_code="RECLAIM_IN_DOUBT",
            operation=RECLAIM,
            issuance_id=record.issuance_id,
            amount=amount,
            reference=reference,
        )
