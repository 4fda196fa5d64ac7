"""
Strategy Controller

Runs on the home domain and owns the asynchronous state machine that tracks
capital deployed to the remote domain.

Transfer lifecycle:

    (unknown) ──initiate──▶ PENDING ──confirm_deposit────▶ DEPLOYED   (deposit, kept for audit)
                                    └─receive_withdrawal─▶ (deleted)  (withdrawal, id remembered)

No other transitions exist. A keeper call against a record that is not in
the expected prior state fails closed with InvalidTransferState.

Valuation is optimistic: capital in flight towards the remote domain still
counts, capital requested back no longer does.

    total_value = max(0, last_reported_value + pending_deposits - pending_withdrawals)

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from settlement.config import get_config
from settlement.domain import Domain
from settlement.errors import (
    InsufficientBalance,
    InvalidTransferState,
    OnlyKeeper,
    OnlyOwner,
    OnlyTreasuryManager,
    SettlementValidationError,
    StrategyNotActive,
    TransferNotFound,
)
from settlement.events import (
    DepositConfirmed,
    DepositInitiated,
    EmergencyWithdrawal,
    EventBus,
    KeeperUpdated,
    RemoteValueUpdated,
    StrategyActivated,
    StrategyDeactivated,
    WithdrawalCompleted,
    WithdrawalInitiated,
)
from settlement.hardening import InvariantChecker, non_reentrant, require_address, require_amount
from settlement.observability import AuditLogger, SettlementLayer, get_logger
from settlement.transport import TransferId, TransportAdapter
from settlement.treasury import Strategy


# =============================================================================
# STATE
# =============================================================================

class TransferKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransferState(Enum):
    """State of a transfer record. NONE is never stored."""
    NONE = "none"
    PENDING = "pending"
    DEPLOYED = "deployed"


VALID_TRANSITIONS: Dict[TransferState, Set[TransferState]] = {
    TransferState.NONE: {TransferState.PENDING},
    TransferState.PENDING: {TransferState.DEPLOYED},
    TransferState.DEPLOYED: set(),
}


@dataclass
class TransferRecord:
    """One in-flight cross-domain operation."""
    transfer_id: TransferId
    amount: int
    created_at: int
    kind: TransferKind
    state: TransferState = TransferState.PENDING
    remote_shares: Optional[int] = None
    full: bool = False

    def transition_to(self, new_state: TransferState) -> None:
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransferState(expected=self.state, actual=new_state, transfer_id=self.transfer_id)
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": str(self.transfer_id),
            "amount": self.amount,
            "created_at": self.created_at,
            "kind": self.kind.value,
            "state": self.state.value,
            "remote_shares": self.remote_shares,
            "full": self.full,
        }


@dataclass
class StrategyState:
    """Controller counters. All amounts are base units."""
    is_active: bool = True
    total_deposited: int = 0
    pending_deposits: int = 0
    pending_withdrawals: int = 0
    last_reported_value: int = 0
    last_value_update: int = 0
    max_value_staleness: int = 3600
    realized_shortfall: int = 0

    def check_invariants(self) -> None:
        for name in ("total_deposited", "pending_deposits", "pending_withdrawals",
                     "last_reported_value", "realized_shortfall"):
            InvariantChecker.check_non_negative(name, getattr(self, name))


# =============================================================================
# CONTROLLER
# =============================================================================

class StrategyController(Strategy):
    """
    Home-domain controller for a cross-domain yield position.

    Callers:
        treasury manager   deposit, withdraw, withdraw_all
        keeper             confirm_deposit, receive_withdrawal, update_remote_value
        owner              administration and the emergency sweep
    """

    def __init__(
        self,
        home: Domain,
        address: str,
        owner: str,
        treasury_manager: str,
        transport: TransportAdapter,
        event_bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
        name: Optional[str] = None,
        max_value_staleness: Optional[int] = None,
        estimated_apy_bps: Optional[int] = None,
        remote_domain_id: Optional[int] = None,
    ):
        config = get_config()
        self.home = home
        self.address = require_address(address)
        self.owner = require_address(owner)
        self.treasury_manager = require_address(treasury_manager)
        self.transport = transport
        self.event_bus = event_bus or EventBus()
        self._log = get_logger("strategy_controller", SettlementLayer.CONTROLLER)
        self.audit = audit or AuditLogger(self._log)

        self._name = name or config.strategy.name.get()
        self.estimated_apy_bps = (
            estimated_apy_bps if estimated_apy_bps is not None else config.strategy.estimated_apy_bps.get()
        )
        self.remote_domain_id = (
            remote_domain_id if remote_domain_id is not None else transport.remote.domain_id
        )

        staleness = max_value_staleness if max_value_staleness is not None else (
            config.strategy.max_value_staleness_seconds.get()
        )
        if staleness <= 0:
            raise SettlementValidationError(f"max_value_staleness must be positive: {staleness}")
        self._state = StrategyState(max_value_staleness=staleness, last_value_update=home.now())

        self._keepers: Set[str] = set()
        self._transfers: Dict[TransferId, TransferRecord] = {}
        self._completed_withdrawals: Set[TransferId] = set()
        self._lock = threading.RLock()
        self._entered = False

    # -------------------------------------------------------------------------
    # Access control
    # -------------------------------------------------------------------------

    def _only_treasury_manager(self, caller: str) -> None:
        if caller.lower() != self.treasury_manager:
            raise OnlyTreasuryManager(caller)

    def _only_keeper(self, caller: str) -> None:
        if caller.lower() not in self._keepers:
            self.audit.log(caller, "keeper_call", "controller", self.address, "denied")
            raise OnlyKeeper(caller)

    def _only_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise OnlyOwner(caller)

    def is_keeper(self, address: str) -> bool:
        return address.lower() in self._keepers

    # -------------------------------------------------------------------------
    # Treasury interface
    # -------------------------------------------------------------------------

    def asset_id(self) -> str:
        return self.home.ledger.asset_id

    def name(self) -> str:
        return self._name

    def supports_instant_withdraw(self) -> bool:
        return False

    def max_instant_withdraw(self) -> int:
        return 0

    def deposit(self, caller: str, amount: int) -> int:
        """
        Pull ``amount`` from the treasury manager and send it to the remote agent.

        Returns 0: nothing is deployed synchronously.
        """
        self._only_treasury_manager(caller)
        amount = require_amount(amount)
        with self._lock:
            if not self._state.is_active:
                raise StrategyNotActive("Strategy is not active")

            with self.home.ledger.atomic():
                self.home.ledger.transfer(caller.lower(), self.address, amount)
                transfer_id = self.transport.initiate_deposit(self.address, amount)

            now = self.home.now()
            self._transfers[transfer_id] = TransferRecord(
                transfer_id=transfer_id,
                amount=amount,
                created_at=now,
                kind=TransferKind.DEPOSIT,
            )
            self._state.pending_deposits += amount
            self._state.total_deposited += amount

        self._log.info(
            "Deposit initiated",
            operation="deposit",
            transfer_id=str(transfer_id),
            amount=amount,
        )
        self.event_bus.publish(DepositInitiated(
            source=self.address, transfer_id=str(transfer_id), amount=amount, timestamp=now,
        ))
        return 0

    def withdraw(self, caller: str, amount: int) -> int:
        """
        Request ``amount`` back from the remote position.

        Allowed while deactivated so capital can always be drained.
        """
        self._only_treasury_manager(caller)
        return self._request_withdrawal(require_amount(amount), full=False)

    def _request_withdrawal(self, amount: int, full: bool) -> int:
        with self._lock:
            available = self.total_value()
            if amount > available:
                raise InsufficientBalance(requested=amount, available=available)

            transfer_id = self.transport.initiate_withdrawal(amount)
            now = self.home.now()
            self._transfers[transfer_id] = TransferRecord(
                transfer_id=transfer_id,
                amount=amount,
                created_at=now,
                kind=TransferKind.WITHDRAWAL,
                full=full,
            )
            self._state.pending_withdrawals += amount

        self._log.info(
            "Withdrawal initiated",
            operation="withdraw",
            transfer_id=str(transfer_id),
            amount=amount,
            full=full,
        )
        self.event_bus.publish(WithdrawalInitiated(
            source=self.address, transfer_id=str(transfer_id), amount=amount, timestamp=now,
        ))
        return 0

    def withdraw_all(self, caller: str) -> int:
        """
        Request the whole position back.

        The record is flagged so the keeper redeems every remote share
        instead of converting the value back to a floored share count.
        """
        self._only_treasury_manager(caller)
        with self._lock:
            value = self.total_value()
            if value == 0:
                return 0
            return self._request_withdrawal(value, full=True)

    # -------------------------------------------------------------------------
    # Keeper confirmations
    # -------------------------------------------------------------------------

    def _pending_record(self, transfer_id: TransferId, kind: TransferKind) -> TransferRecord:
        record = self._transfers.get(transfer_id)
        if record is None:
            if transfer_id in self._completed_withdrawals:
                raise InvalidTransferState(
                    expected=TransferState.PENDING,
                    actual=TransferState.DEPLOYED,
                    transfer_id=transfer_id,
                )
            raise TransferNotFound(transfer_id)
        if record.kind != kind:
            raise InvalidTransferState(expected=kind, actual=record.kind, transfer_id=transfer_id)
        if record.state != TransferState.PENDING:
            raise InvalidTransferState(
                expected=TransferState.PENDING,
                actual=record.state,
                transfer_id=transfer_id,
            )
        return record

    def confirm_deposit(
        self,
        caller: str,
        transfer_id: Union[TransferId, str],
        remote_shares_received: int,
    ) -> None:
        """
        Mark a deposit as deployed on the remote domain.

        The reported value grows by the deposited amount, not by a live
        remote read, so a concurrent value report cannot double count it.
        """
        self._only_keeper(caller)
        transfer_id = TransferId.coerce(transfer_id)
        remote_shares = require_amount(remote_shares_received, allow_zero=True)
        with self._lock:
            record = self._pending_record(transfer_id, TransferKind.DEPOSIT)
            record.transition_to(TransferState.DEPLOYED)
            record.remote_shares = remote_shares
            self._state.pending_deposits -= record.amount
            self._state.last_reported_value += record.amount
            self._state.last_value_update = self.home.now()
            self._state.check_invariants()

        self.audit.log(
            caller, "confirm_deposit", "transfer", str(transfer_id), "success",
            amount=record.amount, remote_shares=remote_shares,
        )
        self.event_bus.publish(DepositConfirmed(
            source=self.address,
            transfer_id=str(transfer_id),
            amount=record.amount,
            remote_shares=remote_shares,
        ))

    @non_reentrant
    def receive_withdrawal(
        self,
        caller: str,
        transfer_id: Union[TransferId, str],
        amount_returned: int,
    ) -> None:
        """
        Forward returned funds to the treasury manager and close the withdrawal.

        Requires the return leg to have landed in the controller's balance.
        A return below the requested amount is recorded as realized shortfall
        until the next value report.
        """
        self._only_keeper(caller)
        transfer_id = TransferId.coerce(transfer_id)
        amount_returned = require_amount(amount_returned, allow_zero=True)
        with self._lock:
            record = self._pending_record(transfer_id, TransferKind.WITHDRAWAL)

            if amount_returned:
                with self.home.ledger.atomic():
                    self.home.ledger.transfer(self.address, self.treasury_manager, amount_returned)

            state = self._state
            del self._transfers[transfer_id]
            self._completed_withdrawals.add(transfer_id)
            state.pending_withdrawals -= record.amount
            state.total_deposited -= min(amount_returned, state.total_deposited)
            state.last_reported_value -= min(record.amount, state.last_reported_value)
            state.last_value_update = self.home.now()
            shortfall = InvariantChecker.saturating_sub(record.amount, amount_returned)
            state.realized_shortfall += shortfall
            state.check_invariants()

        if shortfall:
            self._log.warning(
                "Withdrawal returned less than requested",
                operation="receive_withdrawal",
                transfer_id=str(transfer_id),
                requested=record.amount,
                returned=amount_returned,
                shortfall=shortfall,
            )
        self.audit.log(
            caller, "receive_withdrawal", "transfer", str(transfer_id), "success",
            requested=record.amount, returned=amount_returned,
        )
        self.event_bus.publish(WithdrawalCompleted(
            source=self.address, transfer_id=str(transfer_id), amount=amount_returned,
        ))

    def update_remote_value(self, caller: str, value: int) -> None:
        """Mark the remote position to market."""
        self._only_keeper(caller)
        value = require_amount(value, allow_zero=True)
        with self._lock:
            old_value = self._state.last_reported_value
            now = self.home.now()
            self._state.last_reported_value = value
            self._state.last_value_update = now
            self._state.realized_shortfall = 0

        self.audit.log(caller, "update_remote_value", "strategy", self.address, "success",
                       old_value=old_value, new_value=value)
        self.event_bus.publish(RemoteValueUpdated(
            source=self.address, old_value=old_value, new_value=value, timestamp=now,
        ))

    # -------------------------------------------------------------------------
    # Valuation
    # -------------------------------------------------------------------------

    def total_value(self) -> int:
        state = self._state
        value = state.last_reported_value + state.pending_deposits - state.pending_withdrawals
        return value if value > 0 else 0

    def is_value_stale(self) -> bool:
        return self.home.now() - self._state.last_value_update > self._state.max_value_staleness

    def yield_earned(self) -> int:
        return InvariantChecker.saturating_sub(self.total_value(), self._state.total_deposited)

    @property
    def state(self) -> StrategyState:
        """Copy of the current counters."""
        with self._lock:
            return StrategyState(**asdict(self._state))

    def get_transfer(self, transfer_id: Union[TransferId, str]) -> Optional[TransferRecord]:
        return self._transfers.get(TransferId.coerce(transfer_id))

    def transfer_state(self, transfer_id: Union[TransferId, str]) -> TransferState:
        transfer_id = TransferId.coerce(transfer_id)
        record = self._transfers.get(transfer_id)
        if record is not None:
            return record.state
        if transfer_id in self._completed_withdrawals:
            return TransferState.DEPLOYED
        return TransferState.NONE

    def pending_transfers(self, kind: Optional[TransferKind] = None) -> List[TransferRecord]:
        with self._lock:
            records = [r for r in self._transfers.values() if r.state == TransferState.PENDING]
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        return sorted(records, key=lambda r: r.created_at)

    def strategy_info(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "name": self._name,
                "asset": self.asset_id(),
                "total_value": self.total_value(),
                "total_deposited": state.total_deposited,
                "pending_deposits": state.pending_deposits,
                "pending_withdrawals": state.pending_withdrawals,
                "last_reported_value": state.last_reported_value,
                "last_value_update": state.last_value_update,
                "is_value_stale": self.is_value_stale(),
                "yield_earned": self.yield_earned(),
                "realized_shortfall": state.realized_shortfall,
                "destination_domain": self.remote_domain_id,
                "transport": self.transport.kind.value,
                "estimated_apy_bps": self.estimated_apy_bps,
                "is_active": state.is_active,
            }

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def set_keeper(self, caller: str, keeper: str, allowed: bool) -> None:
        self._only_owner(caller)
        keeper = require_address(keeper)
        with self._lock:
            if allowed:
                self._keepers.add(keeper)
            else:
                self._keepers.discard(keeper)
        self.audit.log(caller, "set_keeper", "controller", self.address, "success",
                       keeper=keeper, allowed=allowed)
        self.event_bus.publish(KeeperUpdated(source=self.address, keeper=keeper, allowed=allowed))

    def set_max_staleness(self, caller: str, seconds: int) -> None:
        self._only_owner(caller)
        seconds = require_amount(seconds)
        with self._lock:
            self._state.max_value_staleness = seconds
        self.audit.log(caller, "set_max_staleness", "controller", self.address, "success", seconds=seconds)

    def set_treasury_manager(self, caller: str, treasury_manager: str) -> None:
        self._only_owner(caller)
        treasury_manager = require_address(treasury_manager)
        with self._lock:
            previous = self.treasury_manager
            self.treasury_manager = treasury_manager
        self.audit.log(caller, "set_treasury_manager", "controller", self.address, "success",
                       previous=previous, current=treasury_manager)

    def set_estimated_apy(self, caller: str, apy_bps: int) -> None:
        self._only_owner(caller)
        apy_bps = require_amount(apy_bps, allow_zero=True)
        self.estimated_apy_bps = apy_bps
        self.audit.log(caller, "set_estimated_apy", "controller", self.address, "success", apy_bps=apy_bps)

    def activate(self, caller: str) -> None:
        self._only_owner(caller)
        with self._lock:
            self._state.is_active = True
        self.audit.log(caller, "activate", "controller", self.address, "success")
        self.event_bus.publish(StrategyActivated(source=self.address))

    def deactivate(self, caller: str) -> None:
        self._only_owner(caller)
        with self._lock:
            self._state.is_active = False
        self.audit.log(caller, "deactivate", "controller", self.address, "success")
        self.event_bus.publish(StrategyDeactivated(source=self.address))

    def emergency_withdraw(self, caller: str) -> int:
        """
        Sweep the controller's own home balance to the owner and deactivate.

        Remote funds and in-flight transfers are not touched.
        """
        self._only_owner(caller)
        with self._lock:
            balance = self.home.ledger.balance_of(self.address)
            if balance:
                self.home.ledger.transfer(self.address, self.owner, balance)
            self._state.is_active = False

        self._log.warning("Emergency withdrawal executed", operation="emergency_withdraw", amount=balance)
        self.audit.log(caller, "emergency_withdraw", "controller", self.address, "success", amount=balance)
        self.event_bus.publish(EmergencyWithdrawal(source=self.address, recipient=self.owner, amount=balance))
        self.event_bus.publish(StrategyDeactivated(source=self.address))
        return balance
