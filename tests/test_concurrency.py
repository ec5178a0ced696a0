"""
Concurrency tests.

Many threads race the same issuance; the per-issuance lock must admit
exactly the claims a serial execution would.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import CODES, TOKEN
from vouchers.errors import (
    CodeAlreadyUsed,
    DuplicateIssuance,
    IssuanceExhausted,
    QuotaExceeded,
    VoucherError,
)


def _race(n, fn):
    barrier = threading.Barrier(n)

    def run(i):
        barrier.wait()
        try:
            return fn(i)
        except VoucherError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        return list(pool.map(run, range(n)))


def test_same_code_many_claimants_exactly_one_wins(system, tokens, register, tree):
    register()
    proof = tree.proof_for_code(CODES[0])

    results = _race(16, lambda i: system.engine.claim("drop-001", CODES[0], proof, f"user-{i}"))

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, CodeAlreadyUsed) for r in results if isinstance(r, Exception))
    assert system.ledger.claimed_amount("drop-001") == 10
    assert tokens.escrow_balance(TOKEN) == 90


def test_same_claimant_many_codes_respects_quota(system, register, tree):
    register(claim_frequency=3)

    results = _race(
        12,
        lambda i: system.engine.claim("drop-001", CODES[i], tree.proof_for_code(CODES[i]), "alice"),
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 3
    assert all(isinstance(r, QuotaExceeded) for r in results if isinstance(r, Exception))
    assert system.ledger.claim_count("drop-001", "alice") == 3


def test_cap_holds_under_contention(system, tokens, register, tree):
    register(total_issued_amount=50, claim_amount_per_code=10)

    results = _race(
        16,
        lambda i: system.engine.claim("drop-001", CODES[i], tree.proof_for_code(CODES[i]), f"user-{i}"),
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 5
    assert all(isinstance(r, IssuanceExhausted) for r in results if isinstance(r, Exception))
    assert system.ledger.claimed_amount("drop-001") == 50
    assert tokens.escrow_balance(TOKEN) == 0


def test_concurrent_duplicate_registration_exactly_one_wins(system, tokens, register):
    results = _race(8, lambda i: register(name=f"attempt-{i}"))

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, DuplicateIssuance) for r in results if isinstance(r, Exception))
    assert system.registry.list_by_token(TOKEN) == ("drop-001",)
    assert tokens.escrow_balance(TOKEN) == 100


def test_independent_issuances_do_not_interfere(system, tokens, register, tree):
    for n in range(4):
        register(f"drop-{n}")

    results = _race(
        16,
        lambda i: system.engine.claim(
            f"drop-{i % 4}", CODES[i], tree.proof_for_code(CODES[i]), f"user-{i}"
        ),
    )

    assert not any(isinstance(r, Exception) for r in results)
    for n in range(4):
        assert system.ledger.claimed_amount(f"drop-{n}") == 40
    assert tokens.escrow_balance(TOKEN) == 4 * 100 - 16 * 10


@pytest.mark.slow
def test_slow_payouts_serialize_per_issuance(system, tokens, register, tree):
    register(total_issued_amount=30, claim_amount_per_code=10)
    tokens.delay_seconds = 0.05

    results = _race(
        12,
        lambda i: system.engine.claim("drop-001", CODES[i], tree.proof_for_code(CODES[i]), f"user-{i}"),
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 3
    assert system.ledger.claimed_amount("drop-001") == 30

    stream = system.events.read_stream("drop-001")
    assert [r.version for r in stream] == list(range(1, 5))
