"""
Validation and Hardening

Defensive utilities shared by the registry, ledger and claim engine:

1. Input validation for registration parameters
2. Per-key locking for issuance-scoped critical sections
3. State invariant enforcement

Security Model:
    - All inputs are untrusted until validated
    - All state mutations for one issuance happen under that issuance's lock
    - Invariant breaches abort the operation instead of proceeding

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from vouchers.errors import InvariantViolation


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Accumulated validation errors for one input object."""
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, field_name: str, message: str) -> None:
        self.errors.append(f"{field_name}: {message}")


# =============================================================================
# TIMESTAMP UTILITIES
# =============================================================================

def parse_iso_timestamp(timestamp: str) -> datetime:
    """
    Parse an ISO 8601 timestamp.

    Handles "Z" suffixes and explicit offsets; timezone-naive strings are
    taken as UTC.

    Raises:
        ValueError: If the timestamp cannot be parsed
    """
    if not timestamp or not timestamp.strip():
        raise ValueError("Empty timestamp")

    dt = datetime.fromisoformat(timestamp.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_unix_seconds(value: Any) -> int:
    """Normalize an int, datetime or ISO 8601 string to unix seconds."""
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    if isinstance(value, str):
        return int(parse_iso_timestamp(value).timestamp())
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/-]*$")

    # Token amounts are uint256 in the systems vouchers are funded from.
    MAX_AMOUNT = (1 << 256) - 1

    @classmethod
    def check_text(
        cls,
        result: ValidationResult,
        value: Any,
        field_name: str,
        max_length: int,
        pattern: Optional[re.Pattern] = None,
    ) -> None:
        if not isinstance(value, str):
            result.add(field_name, f"expected string, got {type(value).__name__}")
            return
        if not value.strip():
            result.add(field_name, "must not be empty")
            return
        if "\x00" in value:
            result.add(field_name, "must not contain NUL bytes")
        if len(value) > max_length:
            result.add(field_name, f"too long (max {max_length} chars)")
        if pattern is not None and not pattern.match(value):
            result.add(field_name, "does not match required pattern")

    @classmethod
    def check_uint(
        cls,
        result: ValidationResult,
        value: Any,
        field_name: str,
        minimum: int = 0,
    ) -> None:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            result.add(field_name, f"expected integer, got {type(value).__name__}")
            return
        if value < minimum:
            result.add(field_name, f"must be >= {minimum}")
        if value > cls.MAX_AMOUNT:
            result.add(field_name, "exceeds uint256 range")


# =============================================================================
# THREAD SAFETY
# =============================================================================

class KeyedLock:
    """One re-entrant lock per key, created on first use.

    Holding the lock for key ``a`` never blocks work on key ``b``. Locks are
    never dropped, so only keys from a bounded set (registered ids) should
    create one; use ``in`` to test for a lock without creating it.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# =============================================================================
# STATE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces ledger invariants."""

    @staticmethod
    def check_claimed_within_issued(issuance_id: str, claimed: int, issued: int) -> None:
        if claimed > issued:
            raise InvariantViolation(
                f"claimed amount {claimed} exceeds issued amount {issued} "
                f"for issuance {issuance_id}"
            )

    @staticmethod
    def check_counter_within_quota(issuance_id: str, claimant: str, count: int, quota: int) -> None:
        if count > quota:
            raise InvariantViolation(
                f"claim counter {count} exceeds quota {quota} "
                f"for {claimant} on issuance {issuance_id}"
            )

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")
