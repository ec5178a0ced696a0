"""Owned voucher state.

All mutable tables live in one ``VoucherState`` created at system
initialization and handed to the registry, ledger, engine and escrow admin.
Nothing else writes to it.

    issuances        issuance_id -> IssuanceRecord       (append-only)
    token_index      token -> [issuance_id, ...]         (append-only)
    claim_counters   (issuance_id, claimant) -> int
    used_codes       issuance_id -> {code, ...}
    claimed_amounts  issuance_id -> int
    reclaimed        issuance_id -> int                  (escrow returned)
    in_doubt         issuance_id -> {reference: payout}  (void unconfirmed)

Locking: ``registry_lock`` guards the catalog and id reservations;
``issuance_locks`` serializes every read-check-mutate on one issuance.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Set, Tuple

from vouchers.events import EventLog
from vouchers.hardening import KeyedLock

if TYPE_CHECKING:
    from vouchers.registry import IssuanceRecord


def code_key(code: Any) -> bytes:
    """Canonical used-set key for a code (text is UTF-8 encoded)."""
    if isinstance(code, str):
        return code.encode("utf-8")
    if isinstance(code, (bytes, bytearray)):
        return bytes(code)
    raise TypeError(f"code must be str or bytes, got {type(code).__name__}")


@dataclass
class VoucherState:
    issuances: Dict[str, "IssuanceRecord"] = field(default_factory=dict)
    token_index: Dict[str, List[str]] = field(default_factory=dict)
    claim_counters: Dict[Tuple[str, str], int] = field(default_factory=dict)
    used_codes: Dict[str, Set[bytes]] = field(default_factory=dict)
    claimed_amounts: Dict[str, int] = field(default_factory=dict)
    reclaimed: Dict[str, int] = field(default_factory=dict)
    in_doubt: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    pending_ids: Set[str] = field(default_factory=set)
    registry_lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    issuance_locks: KeyedLock = field(default_factory=KeyedLock, repr=False)
    events: EventLog = field(default_factory=EventLog, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of every table, for audits and tests."""
        with self.registry_lock:
            return {
                "issuances": dict(self.issuances),
                "token_index": copy.deepcopy(self.token_index),
                "claim_counters": dict(self.claim_counters),
                "used_codes": copy.deepcopy(self.used_codes),
                "claimed_amounts": dict(self.claimed_amounts),
                "reclaimed": dict(self.reclaimed),
                "in_doubt": {k: dict(v) for k, v in self.in_doubt.items()},
            }
