"""
Voucher error taxonomy.

Every caller-visible failure is a ``VoucherError`` subclass carrying a stable
``code`` string. Each one is terminal: the operation that raised it left no
state behind and nothing retries it. The one exception is an in-doubt
``TransferFailed``: the payout may have landed, so the claim or reclaim stays
recorded and the reference is kept for reconciliation.

``InvariantViolation`` is deliberately outside the hierarchy. It signals that
stored state broke one of its own invariants, which is a programming defect
rather than something a caller can act on.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class VoucherError(Exception):
    """Base class for caller-actionable voucher failures."""

    code: str = "VOUCHER_ERROR"

    def __init__(self, message: str = "", **context: Any):
        self.message = message or self.code
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


# Registration

class InvalidTimeWindow(VoucherError):
    """end_time is not strictly after start_time."""
    code = "INVALID_TIME_WINDOW"


class DuplicateIssuance(VoucherError):
    """An issuance with this identifier exists or is being registered."""
    code = "DUPLICATE_ISSUANCE"


class InvalidCommitment(VoucherError):
    """Merkle root is zero or not a 32-byte digest."""
    code = "INVALID_COMMITMENT"


class InvalidParameter(VoucherError):
    """A registration or manifest parameter has the wrong shape."""
    code = "INVALID_PARAMETER"

    def __init__(self, message: str = "", errors: Optional[List[str]] = None, **context: Any):
        self.errors = list(errors or [])
        if not message and self.errors:
            message = "; ".join(self.errors)
        super().__init__(message, **context)


# Lookup

class IssuanceNotFound(VoucherError):
    code = "ISSUANCE_NOT_FOUND"


# Claims

class IssuanceNotActive(VoucherError):
    """Claim submitted outside the open (start_time, end_time) window."""
    code = "ISSUANCE_NOT_ACTIVE"


class QuotaExceeded(VoucherError):
    code = "QUOTA_EXCEEDED"


class IssuanceExhausted(VoucherError):
    code = "ISSUANCE_EXHAUSTED"


class InvalidProof(VoucherError):
    code = "INVALID_PROOF"


class CodeAlreadyUsed(VoucherError):
    code = "CODE_ALREADY_USED"


class InsufficientFunds(VoucherError):
    code = "INSUFFICIENT_FUNDS"


class TransferFailed(VoucherError):
    """The transfer collaborator rejected, failed or timed out.

    ``cause`` holds the underlying exception when there was one. ``in_doubt``
    is set when the reference could not be voided, so whether the tokens moved
    is unknown.
    """
    code = "TRANSFER_FAILED"

    def __init__(
        self,
        message: str = "",
        cause: Optional[BaseException] = None,
        in_doubt: bool = False,
        **context: Any,
    ):
        self.cause = cause
        self.in_doubt = in_doubt
        super().__init__(message, **context)


# Escrow administration

class Unauthorized(VoucherError):
    code = "UNAUTHORIZED"


class IssuanceNotClosed(VoucherError):
    code = "ISSUANCE_NOT_CLOSED"


class AlreadyReclaimed(VoucherError):
    code = "ALREADY_RECLAIMED"


class InvariantViolation(Exception):
    """State invariant violated; the operation is aborted."""
    pass
