"""Issuance registry.

An issuance is a voucher campaign: a Merkle commitment to its eligible codes,
a per-code reward in one funding token, a per-user claim quota and an open
time window. Records are validated once, funded from the creator into escrow,
stored verbatim and never modified or removed.

Registration checks, in order, each with its own error:

1. ``end_time > start_time``                      InvalidTimeWindow
2. identifier not registered or being registered  DuplicateIssuance
3. 32-byte, non-zero Merkle root                   InvalidCommitment
4. parameter shapes                                InvalidParameter

The identifier is reserved under the registry lock before the escrow debit and
released if the debit fails, so duplicate detection is atomic with insertion
and a failed registration leaves no trace.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from vouchers.config import VoucherConfig, get_config
from vouchers.core import coerce_digest, is_zero_digest, load_yaml
from vouchers.errors import (
    DuplicateIssuance,
    InvalidCommitment,
    InvalidParameter,
    InvalidTimeWindow,
    IssuanceNotFound,
    TransferFailed,
)
from vouchers.events import IssuanceRegistered
from vouchers.hardening import ValidationResult, Validators, to_unix_seconds
from vouchers.observability import VoucherLayer, get_correlation_id, get_logger, timed_operation
from vouchers.schema import MANIFEST_SCHEMA, validate_against_schema
from vouchers.state import VoucherState
from vouchers.transfer import TransferGateway

logger = get_logger("issuances", VoucherLayer.REGISTRY)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class IssuancePhase(Enum):
    """Derived from the clock and the immutable window; never stored."""
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class IssuanceRecord:
    issuance_id: str
    creator: str
    token: str
    name: str
    total_code_count: int
    claim_amount_per_code: int
    claim_frequency: int
    total_issued_amount: int
    start_time: int
    end_time: int
    merkle_root: bytes
    reusable_code: bool = False
    registered_at: int = 0
    funding_reference: str = ""

    def phase(self, now: int) -> IssuancePhase:
        if now >= self.end_time:
            return IssuancePhase.CLOSED
        if now > self.start_time:
            return IssuancePhase.ACTIVE
        return IssuancePhase.PENDING

    def is_active(self, now: int) -> bool:
        return self.start_time < now < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issuance_id": self.issuance_id,
            "creator": self.creator,
            "token": self.token,
            "name": self.name,
            "total_code_count": self.total_code_count,
            "claim_amount_per_code": self.claim_amount_per_code,
            "claim_frequency": self.claim_frequency,
            "total_issued_amount": self.total_issued_amount,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "merkle_root": self.merkle_root.hex(),
            "reusable_code": self.reusable_code,
            "registered_at": self.registered_at,
            "funding_reference": self.funding_reference,
        }


@dataclass(frozen=True)
class RegistrationRequest:
    """Registration parameters, e.g. as read from an issuance manifest."""
    issuance_id: str
    name: str
    token: str
    total_code_count: int
    claim_amount_per_code: int
    claim_frequency: int
    total_issued_amount: int
    start_time: int
    end_time: int
    merkle_root: Union[bytes, str]
    reusable_code: bool = False
    creator: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RegistrationRequest":
        """Build from a manifest mapping, validated against the manifest schema."""
        if isinstance(data, dict):
            # YAML turns unquoted ISO timestamps into datetimes
            data = {
                key: to_unix_seconds(value) if isinstance(value, datetime) else value
                for key, value in data.items()
            }
        errors = validate_against_schema(data, MANIFEST_SCHEMA)
        if errors:
            raise InvalidParameter("invalid issuance manifest", errors=errors)
        try:
            start_time = to_unix_seconds(data["start_time"])
            end_time = to_unix_seconds(data["end_time"])
        except ValueError as exc:
            raise InvalidParameter(f"invalid issuance manifest: {exc}") from exc
        return cls(
            issuance_id=data["issuance_id"],
            name=data["name"],
            token=data["token"],
            total_code_count=data["total_code_count"],
            claim_amount_per_code=data["claim_amount_per_code"],
            claim_frequency=data["claim_frequency"],
            total_issued_amount=data["total_issued_amount"],
            start_time=start_time,
            end_time=end_time,
            merkle_root=data["merkle_root"],
            reusable_code=bool(data.get("reusable_code", False)),
            creator=data.get("creator"),
        )

    @classmethod
    def from_manifest(cls, path: Union[str, Path]) -> "RegistrationRequest":
        """Load a YAML issuance manifest."""
        path = Path(path)
        if not path.is_file():
            raise InvalidParameter(f"manifest not found: {path}")
        return cls.from_dict(load_yaml(path))


class IssuanceRegistry:
    """Append-only catalog of issuances, indexed by funding token."""

    def __init__(
        self,
        state: VoucherState,
        gateway: TransferGateway,
        config: Optional[VoucherConfig] = None,
        clock: Clock = system_clock,
    ):
        self._state = state
        self._gateway = gateway
        self._config = config or get_config()
        self._clock = clock

    # -- registration ------------------------------------------------------

    def register(self, request: RegistrationRequest, creator: Optional[str] = None) -> IssuanceRecord:
        """Register from a ``RegistrationRequest``; ``creator`` overrides the manifest."""
        creator = creator if creator is not None else request.creator
        if creator is None:
            raise InvalidParameter("creator is required", issuance_id=request.issuance_id)
        return self.register_issuance(
            issuance_id=request.issuance_id,
            name=request.name,
            token=request.token,
            total_code_count=request.total_code_count,
            claim_amount_per_code=request.claim_amount_per_code,
            claim_frequency=request.claim_frequency,
            total_issued_amount=request.total_issued_amount,
            start_time=request.start_time,
            end_time=request.end_time,
            merkle_root=request.merkle_root,
            creator=creator,
            reusable_code=request.reusable_code,
        )

    @timed_operation(logger, "register_issuance")
    def register_issuance(
        self,
        issuance_id: str,
        name: str,
        token: str,
        total_code_count: int,
        claim_amount_per_code: int,
        claim_frequency: int,
        total_issued_amount: int,
        start_time: int,
        end_time: int,
        merkle_root: Union[bytes, str],
        creator: str,
        reusable_code: bool = False,
    ) -> IssuanceRecord:
        """Validate, fund and store a new issuance."""
        state = self._state

        try:
            start_time = to_unix_seconds(start_time)
            end_time = to_unix_seconds(end_time)
        except ValueError as exc:
            raise self._reject(InvalidParameter(str(exc), issuance_id=issuance_id))

        if end_time <= start_time:
            raise self._reject(InvalidTimeWindow(
                f"end_time {end_time} must be after start_time {start_time}",
                issuance_id=issuance_id,
            ))

        with state.registry_lock:
            if issuance_id in state.issuances or issuance_id in state.pending_ids:
                raise self._reject(DuplicateIssuance(
                    f"issuance {issuance_id!r} already registered", issuance_id=issuance_id
                ))

            root = coerce_digest(merkle_root)
            if root is None or is_zero_digest(root):
                raise self._reject(InvalidCommitment(
                    "merkle_root must be a non-zero 32-byte digest", issuance_id=issuance_id
                ))

            result = self._validate_parameters(
                issuance_id, name, token, creator, total_code_count,
                claim_amount_per_code, claim_frequency, total_issued_amount, reusable_code,
            )
            if not result.is_valid:
                raise self._reject(InvalidParameter(errors=result.errors, issuance_id=issuance_id))

            state.pending_ids.add(issuance_id)

        try:
            funding = self._gateway.debit(
                creator,
                token,
                total_issued_amount,
                timeout_seconds=self._config.registry.registration_timeout_seconds.get(),
            )
        except BaseException as exc:
            with state.registry_lock:
                state.pending_ids.discard(issuance_id)
            if isinstance(exc, TransferFailed):
                self._reject(exc)
            raise

        record = IssuanceRecord(
            issuance_id=issuance_id,
            creator=creator,
            token=token,
            name=name,
            total_code_count=total_code_count,
            claim_amount_per_code=claim_amount_per_code,
            claim_frequency=claim_frequency,
            total_issued_amount=total_issued_amount,
            start_time=start_time,
            end_time=end_time,
            merkle_root=root,
            reusable_code=reusable_code,
            registered_at=self._clock(),
            funding_reference=funding.reference,
        )

        with state.issuance_locks.hold(issuance_id):
            with state.registry_lock:
                state.issuances[issuance_id] = record
                state.token_index.setdefault(token, []).append(issuance_id)
                state.pending_ids.discard(issuance_id)
            state.events.append(
                issuance_id,
                IssuanceRegistered(
                    issuance_id=issuance_id,
                    record=record.to_dict(),
                    correlation_id=get_correlation_id(),
                ),
            )

        logger.info(
            "Issuance registered",
            operation="register_issuance",
            issuance_id=issuance_id,
            token=token,
            creator=creator,
            total_issued_amount=total_issued_amount,
        )
        return record

    def _validate_parameters(
        self,
        issuance_id: Any,
        name: Any,
        token: Any,
        creator: Any,
        total_code_count: Any,
        claim_amount_per_code: Any,
        claim_frequency: Any,
        total_issued_amount: Any,
        reusable_code: Any,
    ) -> ValidationResult:
        max_length = self._config.registry.max_name_length.get()
        result = ValidationResult()
        Validators.check_text(result, issuance_id, "issuance_id", max_length, Validators.IDENTIFIER_PATTERN)
        Validators.check_text(result, name, "name", max_length)
        Validators.check_text(result, token, "token", max_length, Validators.IDENTIFIER_PATTERN)
        Validators.check_text(result, creator, "creator", max_length, Validators.IDENTIFIER_PATTERN)
        Validators.check_uint(result, total_code_count, "total_code_count", minimum=1)
        Validators.check_uint(result, claim_amount_per_code, "claim_amount_per_code", minimum=1)
        Validators.check_uint(result, claim_frequency, "claim_frequency", minimum=1)
        Validators.check_uint(result, total_issued_amount, "total_issued_amount", minimum=1)
        if not isinstance(reusable_code, bool):
            result.add("reusable_code", "expected boolean")
        if result.is_valid and claim_amount_per_code > total_issued_amount:
            result.add("claim_amount_per_code", "exceeds total_issued_amount")
        return result

    @staticmethod
    def _reject(error: Exception) -> Exception:
        logger.warning(
            "Registration rejected",
            error_code=getattr(error, "code", type(error).__name__),
            operation="register_issuance",
            reason=str(error),
            **getattr(error, "context", {}),
        )
        return error

    # -- queries -----------------------------------------------------------

    def get(self, issuance_id: str) -> IssuanceRecord:
        with self._state.registry_lock:
            record = self._state.issuances.get(issuance_id)
        if record is None:
            raise IssuanceNotFound(f"issuance {issuance_id!r} not found", issuance_id=issuance_id)
        return record

    def list_by_token(self, token: str) -> Tuple[str, ...]:
        with self._state.registry_lock:
            return tuple(self._state.token_index.get(token, ()))

    def __contains__(self, issuance_id: object) -> bool:
        with self._state.registry_lock:
            return issuance_id in self._state.issuances

    def __len__(self) -> int:
        with self._state.registry_lock:
            return len(self._state.issuances)
