"""
Merkle Vouchers — escrow-backed voucher issuances redeemed by Merkle proof

An issuer commits to an allow-list of secret codes as a Merkle root and
escrows the total reward in one fungible token. A holder redeems a code by
presenting it with an inclusion proof; each successful claim pays a fixed
amount out of escrow, subject to anti-replay, per-claimant quota and
funds-sufficiency rules, under concurrent submission.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  caller                                                                 │
    │    │                                                                    │
    │    ▼                                                                    │
    │  engine.py     ClaimEngine: ordered checks + staged claim, per-issuance │
    │    │           critical section                                         │
    │    ├──► registry.py   IssuanceRegistry: append-only issuance catalog    │
    │    ├──► merkle.py     sorted-pair SHA-256 membership verification        │
    │    ├──► ledger.py     ClaimLedger: counters, used codes, claimed totals  │
    │    ├──► transfer.py   TransferCollaborator: debit / credit / void        │
    │    └──► events.py     EventLog: IssuanceRegistered, CodeClaimed, ...     │
    │                                                                         │
    │  admin.py      EscrowAdmin: authorized reclaim after close             │
    │  state.py      VoucherState: the owned tables and their locks          │
    │                                                                         │
    │  config.py  observability.py  resilience.py  hardening.py  schema.py   │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Issuance: A voucher campaign. Fixed at registration: funding token,
    per-code reward, per-claimant quota, total escrow, open time window
    (start_time, end_time) and Merkle root. Never modified or removed.

    Leaf: sha256(code). Proof elements are hashed as a sorted pair, so a
    proof carries no left/right flags.

    Claim: Succeeds only if all seven checks pass and the payout commits.
    A failed claim changes nothing.

Usage
─────

    from vouchers import create_in_memory_system, build_code_tree

    system, tokens = create_in_memory_system()
    tokens.mint("issuer", "USDC", 1_000)
    tree = build_code_tree(["alpha", "bravo", "charlie"])
    system.registry.register_issuance(
        issuance_id="drop-001", name="Launch", token="USDC",
        total_code_count=3, claim_amount_per_code=100, claim_frequency=1,
        total_issued_amount=300, start_time=1_700_000_000,
        end_time=1_800_000_000, merkle_root=tree.root, creator="issuer",
    )
    system.engine.claim("drop-001", "alpha", tree.proof_for_code("alpha"), "alice")

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import voucher modules on first access."""

    # Merkle exports
    if name in ("MerkleTree", "build_tree", "build_code_tree", "build_proof",
                "merkle_root", "code_leaf", "verify", "verify_code"):
        from vouchers import merkle
        return getattr(merkle, name)

    # Registry exports
    if name in ("IssuanceRecord", "IssuancePhase", "IssuanceRegistry",
                "RegistrationRequest"):
        from vouchers import registry
        return getattr(registry, name)

    # Claim exports
    if name in ("ClaimLedger", "StagedClaim"):
        from vouchers import ledger
        return getattr(ledger, name)
    if name in ("ClaimEngine", "ClaimReceipt"):
        from vouchers import engine
        return getattr(engine, name)

    # Escrow admin exports
    if name in ("Authorizer", "CreatorAuthorizer", "EscrowAdmin", "ReclaimReceipt"):
        from vouchers import admin
        return getattr(admin, name)

    # Transfer exports
    if name in ("TransferCollaborator", "TransferResult", "TransferGateway",
                "InMemoryTokenLedger"):
        from vouchers import transfer
        return getattr(transfer, name)

    # Wiring
    if name in ("VoucherState",):
        from vouchers import state
        return getattr(state, name)
    if name in ("VoucherSystem", "create_voucher_system", "create_in_memory_system"):
        from vouchers import system
        return getattr(system, name)

    # Event exports
    if name in ("Event", "EventLog", "EventRecord", "IssuanceRegistered",
                "CodeClaimed", "EscrowReclaimed"):
        from vouchers import events
        return getattr(events, name)

    # Error exports
    if name in ("VoucherError", "InvalidTimeWindow", "DuplicateIssuance",
                "InvalidCommitment", "InvalidParameter", "IssuanceNotFound",
                "IssuanceNotActive", "QuotaExceeded", "IssuanceExhausted",
                "InvalidProof", "CodeAlreadyUsed", "InsufficientFunds",
                "TransferFailed", "Unauthorized", "IssuanceNotClosed",
                "AlreadyReclaimed", "InvariantViolation"):
        from vouchers import errors
        return getattr(errors, name)

    # Config exports
    if name in ("VoucherConfig", "ConfigManager", "get_config", "get_config_manager"):
        from vouchers import config
        return getattr(config, name)

    raise AttributeError(f"module 'vouchers' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Merkle
    "MerkleTree",
    "build_tree",
    "build_code_tree",
    "build_proof",
    "merkle_root",
    "code_leaf",
    "verify",
    "verify_code",
    # Registry
    "IssuanceRecord",
    "IssuancePhase",
    "IssuanceRegistry",
    "RegistrationRequest",
    # Claims
    "ClaimLedger",
    "StagedClaim",
    "ClaimEngine",
    "ClaimReceipt",
    # Escrow admin
    "Authorizer",
    "CreatorAuthorizer",
    "EscrowAdmin",
    "ReclaimReceipt",
    # Transfer
    "TransferCollaborator",
    "TransferResult",
    "TransferGateway",
    "InMemoryTokenLedger",
    # Wiring
    "VoucherState",
    "VoucherSystem",
    "create_voucher_system",
    "create_in_memory_system",
    # Events
    "Event",
    "EventLog",
    "EventRecord",
    "IssuanceRegistered",
    "CodeClaimed",
    "EscrowReclaimed",
    # Errors
    "VoucherError",
    "InvalidTimeWindow",
    "DuplicateIssuance",
    "InvalidCommitment",
    "InvalidParameter",
    "IssuanceNotFound",
    "IssuanceNotActive",
    "QuotaExceeded",
    "IssuanceExhausted",
    "InvalidProof",
    "CodeAlreadyUsed",
    "InsufficientFunds",
    "TransferFailed",
    "Unauthorized",
    "IssuanceNotClosed",
    "AlreadyReclaimed",
    "InvariantViolation",
    # Config
    "VoucherConfig",
    "ConfigManager",
    "get_config",
    "get_config_manager",
]
