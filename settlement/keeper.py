"""
Keeper Relay

The keeper is the only actor that advances asynchronous transitions. It
watches the transport for in-flight messages, completes their delivery and
relays the outcome to the side that is waiting for it:

    DEPOSIT             deliver → agent.process_deposit → controller.confirm_deposit
    WITHDRAWAL_REQUEST  deliver → agent.initiate_withdrawal (queues the RETURN leg)
                        or agent.withdraw_all when the controller flagged it full
    RETURN              deliver → controller.receive_withdrawal(delivered amount)

Delivery is at-least-once. Every command the keeper issues is journaled and
can be replayed; the state guards on the controller and the agent turn a
duplicate into an explicit InvalidTransferState, which the relay treats as
"already applied".

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

from settlement.agent import RemoteAgent, ValueReport
from settlement.config import get_config
from settlement.controller import StrategyController, TransferState
from settlement.errors import (
    AttestationInvalid,
    AuthorizationError,
    InvalidTransferState,
    SettlementError,
    SettlementValidationError,
    StateViolation,
    TransferNotFound,
    ZeroAmount,
)
from settlement.hardening import require_address
from settlement.observability import (
    SettlementLayer,
    correlation_id_var,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)
from settlement.transport import MessageKind, MessageStatus, TransferId, TransferMessage, TransportAdapter

T = TypeVar("T")

_log = get_logger("keeper_relay", SettlementLayer.KEEPER)


# =============================================================================
# RETRY
# =============================================================================

class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


# Deterministic failures: retrying cannot change the outcome.
NON_RETRYABLE = (StateViolation, AuthorizationError, SettlementValidationError, AttestationInvalid)


class RetryPolicy:
    """
    Retry with backoff for transient relay failures.

    ``sleep`` is injectable so tests and simulations never block.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
        max_delay_seconds: float = 30.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
        jitter_factor: float = 0.5,
        non_retryable_exceptions: tuple = NON_RETRYABLE,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ):
        keeper_config = get_config().keeper
        if max_attempts is None:
            max_attempts = keeper_config.retry_attempts.get()
        if base_delay_seconds is None:
            base_delay_seconds = keeper_config.retry_base_delay_ms.get() / 1000
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_strategy = backoff_strategy
        self.jitter_factor = jitter_factor
        self.non_retryable_exceptions = non_retryable_exceptions
        self._sleep = sleep
        self._on_retry = on_retry
        self.total_retries = 0

    def _calculate_delay(self, attempt: int) -> float:
        base = self.base_delay_seconds
        if self.backoff_strategy == BackoffStrategy.FIXED:
            delay = base
        elif self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        else:
            exp_delay = base * (2 ** (attempt - 1))
            delay = exp_delay + random.uniform(0, self.jitter_factor * exp_delay)
        return min(delay, self.max_delay_seconds)

    def execute(self, func: Callable[[], T]) -> T:
        last_exception: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except Exception as e:
                if isinstance(e, self.non_retryable_exceptions):
                    raise
                last_exception = e
                if attempt < self.max_attempts:
                    delay = self._calculate_delay(attempt)
                    self.total_retries += 1
                    if self._on_retry:
                        self._on_retry(attempt, e, delay)
                    self._sleep(delay)
        raise RetryExhaustedError(self.max_attempts, last_exception)


# =============================================================================
# COMMANDS
# =============================================================================

class CommandKind(Enum):
    DELIVER = "deliver"
    PROCESS_DEPOSIT = "process_deposit"
    CONFIRM_DEPOSIT = "confirm_deposit"
    INITIATE_WITHDRAWAL = "initiate_withdrawal"
    WITHDRAW_ALL = "withdraw_all"
    RECEIVE_WITHDRAWAL = "receive_withdrawal"
    UPDATE_REMOTE_VALUE = "update_remote_value"


@dataclass
class KeeperCommand:
    """One keeper call, recorded so it can be replayed."""
    kind: CommandKind
    transfer_id: Optional[str] = None
    amount: int = 0
    timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "transfer_id": self.transfer_id,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


@dataclass
class RelayFailure:
    transfer_id: str
    kind: str
    code: str
    message: str


@dataclass
class RelayReport:
    """Outcome of one ``relay_pending`` run."""
    correlation_id: str = ""
    rounds: int = 0
    delivered: int = 0
    deposits_confirmed: int = 0
    withdrawals_sent: int = 0
    withdrawals_completed: int = 0
    failures: List[RelayFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "rounds": self.rounds,
            "delivered": self.delivered,
            "deposits_confirmed": self.deposits_confirmed,
            "withdrawals_sent": self.withdrawals_sent,
            "withdrawals_completed": self.withdrawals_completed,
            "failures": [f.__dict__ for f in self.failures],
        }


# =============================================================================
# RELAY
# =============================================================================

class KeeperRelay:
    """Single-writer relay between the home controller and the remote agent."""

    def __init__(
        self,
        keeper_address: str,
        controller: StrategyController,
        agent: RemoteAgent,
        transport: TransportAdapter,
        retry: Optional[RetryPolicy] = None,
        max_rounds: int = 8,
    ):
        self.address = require_address(keeper_address)
        self.controller = controller
        self.agent = agent
        self.transport = transport
        self.retry = retry or RetryPolicy(sleep=lambda _: None)
        self.max_rounds = max_rounds
        self.journal: List[KeeperCommand] = []
        self._lock = threading.RLock()
        self._log = _log

    def _run(self, command: KeeperCommand) -> Any:
        """Execute one command with retry and journal it."""
        result = self.retry.execute(lambda: self._dispatch(command))
        self.journal.append(command)
        return result

    def _dispatch(self, command: KeeperCommand) -> Any:
        kind = command.kind
        if kind == CommandKind.DELIVER:
            return self.transport.deliver(command.transfer_id)
        if kind == CommandKind.PROCESS_DEPOSIT:
            return self.agent.process_deposit(self.address, command.transfer_id)
        if kind == CommandKind.CONFIRM_DEPOSIT:
            return self.controller.confirm_deposit(self.address, command.transfer_id, command.amount)
        if kind == CommandKind.INITIATE_WITHDRAWAL:
            return self.agent.initiate_withdrawal(self.address, command.transfer_id, command.amount)
        if kind == CommandKind.WITHDRAW_ALL:
            return self.agent.withdraw_all(self.address, command.transfer_id)
        if kind == CommandKind.RECEIVE_WITHDRAWAL:
            return self.controller.receive_withdrawal(self.address, command.transfer_id, command.amount)
        if kind == CommandKind.UPDATE_REMOTE_VALUE:
            return self.controller.update_remote_value(self.address, command.amount)
        raise SettlementValidationError(f"Unknown keeper command: {kind}")

    # -------------------------------------------------------------------------
    # Message handlers
    # -------------------------------------------------------------------------

    def _needs_completion(self, message: TransferMessage) -> bool:
        """Whether a delivered message still has to be relayed to its waiting side."""
        if message.kind == MessageKind.RETURN:
            return self.controller.transfer_state(message.correlates_with) == TransferState.PENDING
        if self.controller.transfer_state(message.transfer_id) != TransferState.PENDING:
            return False
        if message.kind == MessageKind.WITHDRAWAL_REQUEST:
            return not self.agent.has_served(message.transfer_id)
        return True

    def _swept_earlier(self, message: TransferMessage) -> bool:
        """Whether an earlier coalesced process_deposit already staked this arrival."""
        arrived = self.transport.delivered_through(MessageKind.DEPOSIT, message.delivery_seq)
        return arrived <= self.agent.total_swept

    def _complete_deposit(self, message: TransferMessage, report: RelayReport) -> None:
        tid = str(message.transfer_id)
        shares = self.agent.processed_shares(tid)
        if shares is None:
            try:
                shares = self._run(KeeperCommand(CommandKind.PROCESS_DEPOSIT, tid))
            except ZeroAmount:
                if not self._swept_earlier(message):
                    raise
                shares = 0
        self._run(KeeperCommand(CommandKind.CONFIRM_DEPOSIT, tid, amount=shares))
        report.deposits_confirmed += 1

    def _complete_withdrawal_request(self, message: TransferMessage, report: RelayReport) -> None:
        record = self.controller.get_transfer(message.transfer_id)
        full = record is not None and record.full
        self._run(KeeperCommand(
            CommandKind.WITHDRAW_ALL if full else CommandKind.INITIATE_WITHDRAWAL,
            str(message.transfer_id),
            amount=message.amount,
        ))
        report.withdrawals_sent += 1

    def _complete_return(self, message: TransferMessage, report: RelayReport) -> None:
        self._run(KeeperCommand(
            CommandKind.RECEIVE_WITHDRAWAL,
            str(message.correlates_with),
            amount=message.delivered_amount,
        ))
        report.withdrawals_completed += 1

    def _relay(self, message: TransferMessage, report: RelayReport) -> None:
        if message.status == MessageStatus.IN_FLIGHT:
            message = self._run(KeeperCommand(CommandKind.DELIVER, str(message.transfer_id)))
            report.delivered += 1
        if not self._needs_completion(message):
            return
        handlers = {
            MessageKind.DEPOSIT: self._complete_deposit,
            MessageKind.WITHDRAWAL_REQUEST: self._complete_withdrawal_request,
            MessageKind.RETURN: self._complete_return,
        }
        handlers[message.kind](message, report)

    @timed_operation(_log, "relay_pending")
    def relay_pending(self) -> RelayReport:
        """
        Drain every in-flight message, including return legs queued while
        draining, and finish any delivered message whose outcome never
        reached the waiting side. A failed message is reported and the relay
        moves on; it is retried on the next call.
        """
        correlation_id = generate_correlation_id()
        token = set_correlation_id(correlation_id)
        report = RelayReport(correlation_id=correlation_id)
        attempted: Set[TransferId] = set()
        try:
            with self._lock:
                while report.rounds < self.max_rounds:
                    batch = [
                        m for m in self.transport.messages()
                        if m.transfer_id not in attempted
                        and (m.status == MessageStatus.IN_FLIGHT or self._needs_completion(m))
                    ]
                    if not batch:
                        break
                    report.rounds += 1
                    for message in batch:
                        attempted.add(message.transfer_id)
                        try:
                            self._relay(message, report)
                        except (SettlementError, RetryExhaustedError) as e:
                            self._record_failure(message, e, report)
        finally:
            correlation_id_var.reset(token)

        self._log.info("Relay pass complete", operation="relay_pending", **report.to_dict())
        return report

    def _record_failure(self, message: TransferMessage, error: Exception, report: RelayReport) -> None:
        code = getattr(error, "code", type(error).__name__)
        report.failures.append(RelayFailure(
            transfer_id=str(message.transfer_id),
            kind=message.kind.value,
            code=code,
            message=str(error),
        ))
        self._log.error(
            "Relay failed for message",
            error_code=code,
            operation="relay_pending",
            transfer_id=str(message.transfer_id),
            kind=message.kind.value,
            error=str(error),
        )

    # -------------------------------------------------------------------------
    # Valuation
    # -------------------------------------------------------------------------

    @timed_operation(_log, "report_value")
    def report_value(self, force: bool = False) -> Optional[ValueReport]:
        """Relay the agent's valuation when the controller's view is stale."""
        if not force and not self.controller.is_value_stale():
            return None
        report = self.agent.report_value()
        self._run(KeeperCommand(
            CommandKind.UPDATE_REMOTE_VALUE,
            amount=report.value,
            timestamp=self.controller.home.now(),
        ))
        self._log.info("Remote value relayed", operation="report_value", value=report.value, forced=force)
        return report

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def replay(self, command: KeeperCommand) -> bool:
        """
        Re-execute a recorded command.

        Returns True if it changed state, False if it had already been
        applied. A value report no newer than the controller's latest update
        counts as already applied.
        """
        if (
            command.kind == CommandKind.UPDATE_REMOTE_VALUE
            and command.timestamp <= self.controller.state.last_value_update
        ):
            self._log.info("Stale value report skipped", operation="replay", **command.to_dict())
            return False
        try:
            self._run(command)
        except (InvalidTransferState, TransferNotFound) as e:
            self._log.info(
                "Command already applied",
                operation="replay",
                error_code=e.code,
                **command.to_dict(),
            )
            return False
        return True

    def replay_journal(self) -> int:
        """Replay every journaled command; returns how many changed state."""
        return sum(1 for command in list(self.journal) if self.replay(command))
