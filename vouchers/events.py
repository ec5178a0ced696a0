"""
Voucher Event Log

Append-only, externally observable record of committed state transitions.

    IssuanceRegistered   full issuance record, for downstream indexers
    CodeClaimed          (issuance_id, code) plus claimant and payout
    EscrowReclaimed      unclaimed escrow returned to the creator

Events are appended only after the transition they describe has committed.
Each issuance is its own stream; registry and engine append while holding
the issuance's lock, so per-stream order equals commit order.

Usage
─────

    log = EventLog()

    @log.subscribe(CodeClaimed)
    def index_claim(record):
        print(record.event.issuance_id, record.event.code)

    log.read_stream("drop-001")

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from vouchers.core import canonical_json_bytes
from vouchers.observability import VoucherLayer, get_logger

logger = get_logger("log", VoucherLayer.EVENTS)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events.

    Events are immutable facts. Each has a unique ID, a timestamp and the
    correlation ID of the request that produced it.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize for display/transport (not for digest computation)."""
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """Deterministic digest of the event content."""
        return hashlib.sha256(canonical_json_bytes(self.to_dict())).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class IssuanceRegistered(Event):
    """Emitted once per issuance, carrying the full stored record."""
    issuance_id: str = ""
    record: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CodeClaimed(Event):
    """Emitted when a claim commits."""
    issuance_id: str = ""
    code: str = ""
    claimant: str = ""
    amount: int = 0
    transfer_reference: str = ""


@dataclass
class EscrowReclaimed(Event):
    """Emitted when unclaimed escrow is returned to the creator."""
    issuance_id: str = ""
    creator: str = ""
    amount: int = 0
    transfer_reference: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EventRecord:
    """An appended event with its global position and stream version."""
    position: int
    stream_id: str
    version: int
    event: Event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "stream_id": self.stream_id,
            "version": self.version,
            "event": self.event.to_dict(),
        }


EventHandler = Callable[[EventRecord], None]


@dataclass
class _Subscription:
    handler: EventHandler
    event_types: Set[Type[Event]]


class EventLog:
    """
    Thread-safe append-only event log.

    Subscribers are called synchronously after each append. A failing
    subscriber is logged and counted; it never undoes the committed
    transition the event describes.
    """

    def __init__(self):
        self._records: List[EventRecord] = []
        self._streams: Dict[str, List[EventRecord]] = {}
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.RLock()
        self._handler_errors = 0

    def subscribe(self, *event_types: Type[Event]) -> Callable[[EventHandler], EventHandler]:
        """Decorator subscribing a handler to the given event types (all if none)."""
        def decorator(handler: EventHandler) -> EventHandler:
            with self._lock:
                self._subscriptions.append(
                    _Subscription(handler=handler, event_types=set(event_types) or {Event})
                )
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            before = len(self._subscriptions)
            self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]
            return len(self._subscriptions) < before

    def append(self, stream_id: str, event: Event) -> EventRecord:
        with self._lock:
            stream = self._streams.setdefault(stream_id, [])
            record = EventRecord(
                position=len(self._records) + 1,
                stream_id=stream_id,
                version=len(stream) + 1,
                event=event,
            )
            self._records.append(record)
            stream.append(record)
            targets = [
                s.handler for s in self._subscriptions
                if any(isinstance(event, t) for t in s.event_types)
            ]

        for handler in targets:
            try:
                handler(record)
            except Exception:
                with self._lock:
                    self._handler_errors += 1
                logger.error(
                    "Event handler failed",
                    error_code="EVENT_HANDLER_FAILED",
                    exc_info=True,
                    handler=getattr(handler, "__name__", repr(handler)),
                    event_type=event.event_type,
                    position=record.position,
                )
        return record

    def read_stream(self, stream_id: str, from_version: int = 0) -> List[EventRecord]:
        with self._lock:
            return list(self._streams.get(stream_id, [])[from_version:])

    def read_all(self, from_position: int = 0, max_count: Optional[int] = None) -> List[EventRecord]:
        with self._lock:
            end = None if max_count is None else from_position + max_count
            return list(self._records[from_position:end])

    def stream_version(self, stream_id: str) -> int:
        with self._lock:
            return len(self._streams.get(stream_id, []))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def handler_errors(self) -> int:
        with self._lock:
            return self._handler_errors
