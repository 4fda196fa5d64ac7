"""
Settlement Event Infrastructure

Typed events emitted by the controller and the remote agent for off-chain
indexers, plus an in-memory event bus to publish them.

Event fields are part of the indexer contract and must not change:

    DepositInitiated      transfer_id, amount, timestamp
    DepositConfirmed      transfer_id, amount, remote_shares
    WithdrawalInitiated   transfer_id, amount, timestamp
    WithdrawalCompleted   transfer_id, amount
    RemoteValueUpdated    old_value, new_value, timestamp

Usage
─────

    bus = EventBus()

    @bus.subscribe(DepositConfirmed)
    def on_confirmed(event: DepositConfirmed):
        print(event.transfer_id, event.amount)

    bus.publish(DepositConfirmed(transfer_id="ab" * 32, amount=100, remote_shares=100))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Event:
    """
    Base class for all settlement events.

    Events are immutable facts. ``event_id`` and ``source`` are envelope
    metadata; ``payload()`` returns only the indexer-visible fields.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: str = ""

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def payload(self) -> Dict[str, Any]:
        """Indexer-visible fields, excluding envelope metadata."""
        envelope = {f.name for f in fields(Event)}
        return {k: v for k, v in asdict(self).items() if k not in envelope}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """Deterministic digest of the event payload."""
        canonical = json.dumps(
            {"event_type": self.event_type, **self.payload()},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# CONTROLLER EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DepositInitiated(Event):
    """Capital left the home domain towards the remote agent."""
    transfer_id: str = ""
    amount: int = 0
    timestamp: int = 0


@dataclass(frozen=True)
class DepositConfirmed(Event):
    """Keeper confirmed the remote agent deployed a deposit."""
    transfer_id: str = ""
    amount: int = 0
    remote_shares: int = 0


@dataclass(frozen=True)
class WithdrawalInitiated(Event):
    """Withdrawal requested from the remote position."""
    transfer_id: str = ""
    amount: int = 0
    timestamp: int = 0


@dataclass(frozen=True)
class WithdrawalCompleted(Event):
    """Returned funds were forwarded to the treasury manager."""
    transfer_id: str = ""
    amount: int = 0


@dataclass(frozen=True)
class RemoteValueUpdated(Event):
    """Mark-to-market of the remote position."""
    old_value: int = 0
    new_value: int = 0
    timestamp: int = 0


@dataclass(frozen=True)
class KeeperUpdated(Event):
    keeper: str = ""
    allowed: bool = False


@dataclass(frozen=True)
class StrategyActivated(Event):
    pass


@dataclass(frozen=True)
class StrategyDeactivated(Event):
    pass


@dataclass(frozen=True)
class EmergencyWithdrawal(Event):
    recipient: str = ""
    amount: int = 0


# ════════════════════════════════════════════════════════════════════════════
# REMOTE AGENT EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RemoteDepositProcessed(Event):
    transfer_id: str = ""
    amount: int = 0
    shares: int = 0


@dataclass(frozen=True)
class RemoteWithdrawalSent(Event):
    transfer_id: str = ""
    amount: int = 0
    shares_redeemed: int = 0
    return_transfer_id: str = ""


@dataclass(frozen=True)
class RemoteValueReported(Event):
    value: int = 0
    shares: int = 0
    timestamp: int = 0


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Keeps an append-only history so indexers can replay everything emitted
    since start. Handler failures are reported to ``on_error`` and logged;
    they never roll back the state change that produced the event.
    """

    def __init__(
        self,
        on_error: Optional[Callable[[EventHandlerError], None]] = None,
        max_history: int = 100_000,
    ):
        self._handlers: List[EventHandlerRegistration] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published = 0
        self._handler_errors = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for the given event types (all if none)."""
        def decorator(handler: EventHandler) -> EventHandler:
            with self._lock:
                self._handlers.append(EventHandlerRegistration(
                    handler=handler,
                    event_types=set(event_types) or {Event},
                    filter_func=filter_func,
                ))
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            before = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler is not handler]
            return len(self._handlers) < before

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published += 1
            self._history.append(event)
            if len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]
            registrations = list(self._handlers)

        for registration in registrations:
            if not any(isinstance(event, t) for t in registration.event_types):
                continue
            if registration.filter_func and not registration.filter_func(event):
                continue
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
        except Exception as e:
            with self._lock:
                self._handler_errors += 1
            error = EventHandlerError(event, handler, e)
            logger.error(str(error))
            if self._on_error:
                self._on_error(error)

    def history(self, event_type: Optional[Type[Event]] = None) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is None:
            return events
        return [e for e in events if isinstance(e, event_type)]

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published": self._published,
                "handler_errors": self._handler_errors,
                "subscribers": len(self._handlers),
            }
