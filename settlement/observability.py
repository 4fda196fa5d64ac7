"""
Settlement Observability Framework

Structured logging, correlation ids and a tamper-evident audit trail for
every privileged action (keeper confirmations, owner administration).

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", transfer_id=x)   audit.log(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │             SettlementLogger / AuditLogger               │
    │  Correlation ids, layer tagging, hash-chained records    │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │              JSON (default) or plain text                │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
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
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from settlement.config import get_config

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class SettlementLayer(Enum):
    """Engine components for log categorization."""
    CONTROLLER = "controller"
    AGENT = "agent"
    TRANSPORT = "transport"
    KEEPER = "keeper"
    TREASURY = "treasury"
    LEDGER = "ledger"
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
        ctx = " ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        head = f"{self.timestamp} {self.level.upper():8s} [{self.layer or self.logger}] {self.message}"
        return f"{head} {ctx}".rstrip()


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON (or text)."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream
        self.fmt = fmt

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

            line = event.to_text() if self.fmt == "text" else event.to_json()
            stream = self.stream or sys.stderr
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class SettlementLogger:
    """
    Structured logger for settlement components.

    Automatically includes correlation ids and layer information
    in all log events.
    """

    def __init__(self, name: str, layer: SettlementLayer, level: Optional[str] = None, fmt: Optional[str] = None):
        observability = get_config().observability
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"settlement.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, (level or observability.log_level.get()).upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler(fmt=fmt or observability.log_format.get()))

    @property
    def stdlib_logger(self) -> logging.Logger:
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

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

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


def get_logger(name: str, layer: SettlementLayer) -> SettlementLogger:
    """Get a logger for a settlement component."""
    return SettlementLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: SettlementLogger,
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


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """Audit record for a privileged action."""
    sequence: int
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_digest: str = ""
    digest: str = ""

    def compute_digest(self) -> str:
        body = {k: v for k, v in asdict(self).items() if k != "digest"}
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit logger.

    Each event includes the digest of the previous event, making it possible
    to detect log tampering.
    """

    GENESIS = "genesis"

    def __init__(self, logger: Optional[SettlementLogger] = None):
        self._logger = logger
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event."""
        with self._lock:
            event = AuditEvent(
                sequence=len(self._events) + 1,
                timestamp=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                details={k: str(v) for k, v in details.items()},
                previous_digest=self._events[-1].digest if self._events else self.GENESIS,
            )
            event.digest = event.compute_digest()
            self._events.append(event)

        if self._logger:
            self._logger.info(
                f"AUDIT: {action} on {resource_type}/{resource_id}",
                operation="audit",
                actor=actor,
                outcome=outcome,
                event_digest=event.digest,
            )
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            previous = self.GENESIS
            for i, event in enumerate(self._events):
                if event.previous_digest != previous or event.compute_digest() != event.digest:
                    return (False, i)
                previous = event.digest
            return (True, None)

    def get_events(
        self,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        if actor:
            events = [e for e in events if e.actor == actor]
        if action:
            events = [e for e in events if e.action == action]
        if resource_id:
            events = [e for e in events if e.resource_id == resource_id]
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
