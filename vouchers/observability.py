"""
Voucher Observability Framework

Structured logging and audit trails for registry, ledger and claim engine.
Provides correlation IDs, layer tagging and JSON log records.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", issuance_id=x)  audit.log(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                     VoucherLogger                        │
    │      Context propagation, correlation IDs, layers       │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                   StructuredHandler                      │
    │            one JSON object per log record               │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variable for request-scoped correlation
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

# "json" or "text"; set by configure_logging
_log_format = "json"


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class VoucherLayer(Enum):
    """Components, for log categorization."""
    REGISTRY = "registry"
    LEDGER = "ledger"
    ENGINE = "engine"
    TRANSFER = "transfer"
    ADMIN = "admin"
    EVENTS = "events"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), f"[{self.layer or self.logger}]", self.message]
        if self.error_code:
            parts.append(f"error_code={self.error_code}")
        parts.extend(f"{k}={v}" for k, v in self.context.items())
        text = " ".join(parts)
        if self.exception:
            text += "\n" + self.exception.rstrip()
        return text


class StructuredHandler(logging.Handler):
    """Logging handler writing one JSON (or text) line per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_json() if _log_format == "json" else event.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class VoucherLogger:
    """
    Structured logger for voucher components.

    Every record carries the correlation ID of the current context and the
    component layer, plus arbitrary keyword context.
    """

    def __init__(
        self,
        name: str,
        layer: VoucherLayer,
        level: Optional[LogLevel] = None,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"vouchers.{layer.value}.{name}")
        if level is not None:
            self._logger.setLevel(getattr(logging, level.value.upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    @property
    def stdlib(self) -> logging.Logger:
        """Underlying ``logging.Logger`` (for handlers and caplog)."""
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


_loggers: Dict[str, VoucherLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str, layer: VoucherLayer) -> VoucherLogger:
    """Get (or create) the logger for a component."""
    key = f"{layer.value}.{name}"
    with _loggers_lock:
        logger = _loggers.get(key)
        if logger is None:
            logger = VoucherLogger(name, layer)
            _loggers[key] = logger
        return logger


def configure_logging(level: str = "info", fmt: Optional[str] = None) -> None:
    """Apply a level (and optionally a line format) to every ``vouchers.*`` logger."""
    global _log_format
    logging.getLogger("vouchers").setLevel(getattr(logging, level.upper()))
    if fmt is not None:
        if fmt not in ("json", "text"):
            raise ValueError(f"unknown log format: {fmt}")
        _log_format = fmt


T = TypeVar("T")


def timed_operation(
    logger: VoucherLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# Audit logging for escrow administration
@dataclass
class AuditEvent:
    """Audit event for administrative actions."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    previous_hash: str = ""
    event_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail.

    Each event hashes its content together with the previous event's hash.
    """

    GENESIS = "genesis"

    def __init__(self, logger: VoucherLogger):
        self._logger = logger
        self._events: List[AuditEvent] = []
        self._last_hash: str = self.GENESIS
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent, previous_hash: str) -> str:
        body = event.to_dict()
        body.pop("event_hash", None)
        data = json.dumps(body, sort_keys=True, default=str) + previous_hash
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Record an audit event."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event.previous_hash = self._last_hash
            event.event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event.event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            actor=actor,
            outcome=outcome,
            event_hash=event.event_hash,
        )
        return event

    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def verify_chain(self) -> bool:
        """Recompute every hash link; False if any event was altered."""
        with self._lock:
            previous = self.GENESIS
            for event in self._events:
                if event.previous_hash != previous:
                    return False
                if self._compute_hash(event, previous) != event.event_hash:
                    return False
                previous = event.event_hash
            return True
