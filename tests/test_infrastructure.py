"""
Tests for the shared infrastructure: structured logging, audit chain,
timeouts, the transfer gateway, validators and digest helpers.
"""

import io
import json
import logging
import re
import threading
import time
from datetime import datetime, timezone

import pytest

from vouchers.core import canonical_json_bytes, coerce_digest, sha256_hex
from vouchers.errors import InvariantViolation, TransferFailed
from vouchers.hardening import (
    InvariantChecker,
    KeyedLock,
    ValidationResult,
    Validators,
    to_unix_seconds,
)
from vouchers.observability import (
    AuditLogger,
    StructuredHandler,
    VoucherLayer,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)
from vouchers.resilience import OperationTimeout, Timeout
from vouchers.transfer import InMemoryTokenLedger, TransferGateway


# =============================================================================
# OBSERVABILITY
# =============================================================================

class TestStructuredLogging:

    def test_records_are_json_with_layer_and_context(self):
        logger = get_logger("json-test", VoucherLayer.ENGINE)
        stream = io.StringIO()
        handler = StructuredHandler(stream=stream)
        logger.stdlib.addHandler(handler)
        logger.stdlib.setLevel(logging.DEBUG)
        try:
            set_correlation_id("corr-test")
            logger.warning("Claim rejected", error_code="QUOTA_EXCEEDED", issuance_id="drop-001")
        finally:
            logger.stdlib.removeHandler(handler)

        line = json.loads(stream.getvalue().splitlines()[-1])
        assert line["message"] == "Claim rejected"
        assert line["layer"] == "engine"
        assert line["error_code"] == "QUOTA_EXCEEDED"
        assert line["correlation_id"] == "corr-test"
        assert line["context"]["issuance_id"] == "drop-001"

    def test_text_format(self):
        logger = get_logger("text-test", VoucherLayer.ADMIN)
        stream = io.StringIO()
        handler = StructuredHandler(stream=stream)
        logger.stdlib.addHandler(handler)
        try:
            configure_logging("info", "text")
            logger.warning("Reclaim denied", error_code="UNAUTHORIZED", caller="mallory")
        finally:
            configure_logging("info", "json")
            logger.stdlib.removeHandler(handler)

        line = stream.getvalue().splitlines()[-1]
        assert "WARNING [admin] Reclaim denied" in line
        assert "error_code=UNAUTHORIZED" in line
        assert line.endswith("caller=mallory")

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError):
            configure_logging("info", "xml")

    def test_get_logger_is_cached_per_layer(self):
        assert get_logger("same", VoucherLayer.LEDGER) is get_logger("same", VoucherLayer.LEDGER)
        assert get_logger("same", VoucherLayer.LEDGER) is not get_logger("same", VoucherLayer.ADMIN)

    def test_correlation_id_is_generated_once(self):
        set_correlation_id("")
        cid = get_correlation_id()
        assert cid.startswith("corr-")
        assert get_correlation_id() == cid

    def test_timed_operation_logs_failures(self, caplog):
        logger = get_logger("timed-test", VoucherLayer.REGISTRY)

        @timed_operation(logger, "explode")
        def explode():
            raise ValueError("boom")

        with caplog.at_level(logging.DEBUG, logger=logger.stdlib.name):
            with pytest.raises(ValueError):
                explode()
        assert "Operation explode failed" in caplog.text


class TestAuditLogger:

    def test_chain_detects_tampering(self):
        audit = AuditLogger(get_logger("audit-test", VoucherLayer.ADMIN))
        audit.log("issuer", "reclaim", "issuance", "drop-001", "success", amount=80)
        audit.log("mallory", "reclaim", "issuance", "drop-001", "denied")
        assert audit.verify_chain()

        events = audit.events()
        assert events[1].previous_hash == events[0].event_hash
        events[0].actor = "someone-else"
        assert not audit.verify_chain()


# =============================================================================
# RESILIENCE
# =============================================================================

class TestTimeout:

    def test_returns_result_within_bound(self):
        timeout = Timeout(seconds=1.0, name="fast")
        assert timeout.execute(lambda: 42) == 42
        assert timeout.metrics.successful_calls == 1

    def test_raises_without_waiting_for_straggler(self):
        timeout = Timeout(seconds=0.05, name="slow")
        started = time.monotonic()
        with pytest.raises(OperationTimeout):
            timeout.execute(lambda: time.sleep(0.5))
        assert time.monotonic() - started < 0.4
        assert timeout.metrics.timed_out_calls == 1

    def test_propagates_errors(self):
        timeout = Timeout(seconds=1.0)

        @timeout
        def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            broken()
        assert timeout.metrics.failed_calls == 1

    def test_rejects_non_positive_bound(self):
        with pytest.raises(ValueError):
            Timeout(seconds=0)


# =============================================================================
# TRANSFER BOUNDARY
# =============================================================================

class TestTransfer:

    def test_debit_and_credit_move_through_escrow(self):
        tokens = InMemoryTokenLedger()
        tokens.mint("issuer", "USDC", 100)
        gateway = TransferGateway(tokens)

        gateway.debit("issuer", "USDC", 60, timeout_seconds=1.0)
        gateway.credit("alice", "USDC", 25, timeout_seconds=1.0)

        assert tokens.balance_of("issuer", "USDC") == 40
        assert tokens.balance_of("alice", "USDC") == 25
        assert gateway.escrow_balance("USDC", timeout_seconds=1.0) == 35

    def test_applied_reference_is_idempotent(self):
        tokens = InMemoryTokenLedger()
        tokens.mint("issuer", "USDC", 100)
        assert tokens.debit("issuer", "USDC", 10, reference="r1").ok
        assert tokens.debit("issuer", "USDC", 10, reference="r1").ok
        assert tokens.escrow_balance("USDC") == 10

    def test_void_reverses_and_blocks_late_application(self):
        tokens = InMemoryTokenLedger()
        tokens.mint("issuer", "USDC", 100)
        tokens.debit("issuer", "USDC", 10, reference="r1")
        assert tokens.void("r1") is True
        assert tokens.escrow_balance("USDC") == 0

        assert tokens.void("r2") is False
        late = tokens.debit("issuer", "USDC", 10, reference="r2")
        assert not late.ok
        assert tokens.balance_of("issuer", "USDC") == 100

    def test_rejection_becomes_transfer_failed(self):
        tokens = InMemoryTokenLedger()
        gateway = TransferGateway(tokens)
        with pytest.raises(TransferFailed, match="insufficient"):
            gateway.credit("alice", "USDC", 5, timeout_seconds=1.0)

    def test_void_failure_is_in_doubt(self):
        class Unreachable(InMemoryTokenLedger):
            def void(self, reference):
                raise ConnectionError("ledger unreachable")

        tokens = Unreachable()
        tokens.fail_next("credit")
        gateway = TransferGateway(tokens)
        with pytest.raises(TransferFailed, match="outcome unknown") as excinfo:
            gateway.credit("alice", "USDC", 5, timeout_seconds=1.0)
        assert excinfo.value.in_doubt
        assert isinstance(excinfo.value.cause, ConnectionError)

    def test_confirmed_void_is_not_in_doubt(self):
        tokens = InMemoryTokenLedger()
        gateway = TransferGateway(tokens)
        with pytest.raises(TransferFailed) as excinfo:
            gateway.credit("alice", "USDC", 5, timeout_seconds=1.0)
        assert not excinfo.value.in_doubt

    def test_hung_void_is_bounded(self):
        class Hanging(InMemoryTokenLedger):
            def void(self, reference):
                time.sleep(0.5)
                return super().void(reference)

        tokens = Hanging()
        tokens.fail_next("credit")
        gateway = TransferGateway(tokens)
        started = time.monotonic()
        with pytest.raises(TransferFailed) as excinfo:
            gateway.credit("alice", "USDC", 5, timeout_seconds=0.05)
        assert excinfo.value.in_doubt
        assert time.monotonic() - started < 0.4

    def test_escrow_balance_failures_become_transfer_failed(self):
        class Broken(InMemoryTokenLedger):
            def escrow_balance(self, token):
                raise ConnectionError("ledger unreachable")

        gateway = TransferGateway(Broken())
        with pytest.raises(TransferFailed, match="escrow_balance raised"):
            gateway.escrow_balance("USDC", timeout_seconds=1.0)


# =============================================================================
# HARDENING
# =============================================================================

class TestHardening:

    def test_validators_accumulate_errors(self):
        result = ValidationResult()
        Validators.check_text(result, "", "name", 10)
        Validators.check_text(result, "a\x00b", "token", 10, Validators.IDENTIFIER_PATTERN)
        Validators.check_uint(result, True, "amount")
        Validators.check_uint(result, 1 << 256, "total")
        assert not result.is_valid
        assert len(result.errors) == 5

    def test_to_unix_seconds(self):
        assert to_unix_seconds(1_700_000_000) == 1_700_000_000
        assert to_unix_seconds("2023-11-14T22:13:20Z") == 1_700_000_000
        assert to_unix_seconds(datetime(2023, 11, 14, 22, 13, 20)) == 1_700_000_000
        assert to_unix_seconds(datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)) == 1_700_000_000
        for bad in (True, 1.5, None, "", "yesterday"):
            with pytest.raises(ValueError):
                to_unix_seconds(bad)

    def test_keyed_lock_isolates_keys(self):
        locks = KeyedLock()
        entered = threading.Event()

        def hold_other():
            with locks.hold("b"):
                entered.set()

        with locks.hold("a"):
            worker = threading.Thread(target=hold_other)
            worker.start()
            assert entered.wait(timeout=1.0)
            worker.join()
        assert len(locks) == 2
        assert "a" in locks
        assert "c" not in locks
        assert len(locks) == 2
        assert locks.lock_for("a") is locks.lock_for("a")

    def test_invariant_checker(self):
        InvariantChecker.check_claimed_within_issued("d", 100, 100)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_claimed_within_issued("d", 101, 100)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_counter_within_quota("d", "alice", 3, 2)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_non_negative("counter", -1)


# =============================================================================
# CORE
# =============================================================================

class TestCore:

    def test_coerce_digest(self):
        raw = bytes(range(32))
        assert coerce_digest(raw) == raw
        assert coerce_digest(raw.hex()) == raw
        assert coerce_digest("0X" + raw.hex().upper()) == raw
        assert coerce_digest(raw[:31]) is None
        assert coerce_digest("g" * 64) is None
        assert coerce_digest(12) is None

    def test_canonical_json_is_stable_and_rejects_floats(self):
        assert canonical_json_bytes({"b": 1, "a": [2, "x"]}) == b'{"a":[2,"x"],"b":1}'
        with pytest.raises(ValueError):
            canonical_json_bytes({"amount": 1.5})

    def test_sha256_hex(self):
        assert sha256_hex("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


# =============================================================================
# PACKAGE
# =============================================================================

class TestPackage:

    def test_every_module_carries_the_copyright_header(self):
        import importlib
        import pkgutil

        import vouchers

        missing = []
        for info in pkgutil.iter_modules(vouchers.__path__):
            module = importlib.import_module(f"vouchers.{info.name}")
            doc = (module.__doc__ or "").rstrip()
            if not re.search(r"Copyright \(c\) 20\d\d Momentum\. All rights reserved\.$", doc):
                missing.append(info.name)
        doc = vouchers.__doc__.rstrip()
        assert doc.endswith("Momentum. All rights reserved.")
        assert missing == []
