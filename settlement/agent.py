"""
Remote Agent

Runs on the remote domain. Capital that lands here from the home domain is
deposited into the yield source; withdrawal requests are served by redeeming
shares and handing the assets to the transport for the return leg.

The agent only knows local truth (shares held, deposits processed). It never
touches home-domain state; the keeper relays its results to the controller.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple, Union

from settlement.domain import Domain
from settlement.errors import InvalidTransferState, OnlyKeeper, OnlyOwner, ZeroAmount
from settlement.events import (
    EmergencyWithdrawal,
    EventBus,
    KeeperUpdated,
    RemoteDepositProcessed,
    RemoteValueReported,
    RemoteWithdrawalSent,
)
from settlement.hardening import InvariantChecker, require_address, require_amount
from settlement.observability import AuditLogger, SettlementLayer, get_logger
from settlement.transport import TransferId, TransportAdapter
from settlement.yield_source import YieldSource


@dataclass
class ValueReport:
    """Snapshot of the remote position, relayed to the controller by the keeper."""
    value: int
    shares: int
    total_deposited: int
    timestamp: int

    @property
    def unrealized_yield(self) -> int:
        return InvariantChecker.saturating_sub(self.value, self.total_deposited)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "shares": self.shares,
            "total_deposited": self.total_deposited,
            "timestamp": self.timestamp,
        }


class RemoteAgent:
    """Manages the yield position on the remote domain."""

    def __init__(
        self,
        domain: Domain,
        address: str,
        owner: str,
        yield_source: YieldSource,
        transport: TransportAdapter,
        event_bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.domain = domain
        self.address = require_address(address)
        self.owner = require_address(owner)
        self.yield_source = yield_source
        self.transport = transport
        self.event_bus = event_bus or EventBus()
        self._log = get_logger("remote_agent", SettlementLayer.AGENT)
        self.audit = audit or AuditLogger(self._log)

        self.shares_held = 0
        self.total_deposited = 0
        self.total_swept = 0
        self._keepers: Set[str] = set()
        self._processed_deposits: Dict[TransferId, int] = {}
        self._served_withdrawals: Set[TransferId] = set()
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Access control
    # -------------------------------------------------------------------------

    def _only_keeper(self, caller: str) -> None:
        if caller.lower() not in self._keepers:
            self.audit.log(caller, "keeper_call", "agent", self.address, "denied")
            raise OnlyKeeper(caller)

    def _only_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise OnlyOwner(caller)

    def is_keeper(self, address: str) -> bool:
        return address.lower() in self._keepers

    def set_keeper(self, caller: str, keeper: str, allowed: bool) -> None:
        self._only_owner(caller)
        keeper = require_address(keeper)
        with self._lock:
            if allowed:
                self._keepers.add(keeper)
            else:
                self._keepers.discard(keeper)
        self.audit.log(caller, "set_keeper", "agent", self.address, "success", keeper=keeper, allowed=allowed)
        self.event_bus.publish(KeeperUpdated(source=self.address, keeper=keeper, allowed=allowed))

    # -------------------------------------------------------------------------
    # Keeper operations
    # -------------------------------------------------------------------------

    def process_deposit(self, caller: str, transfer_id: Union[TransferId, str]) -> int:
        """
        Deposit everything the agent holds into the yield source.

        Several arrivals may be coalesced into one call; a later call for an
        already-swept arrival sees nothing and raises ZeroAmount.
        """
        self._only_keeper(caller)
        transfer_id = TransferId.coerce(transfer_id)
        with self._lock:
            if transfer_id in self._processed_deposits:
                raise InvalidTransferState(expected="NONE", actual="PROCESSED", transfer_id=transfer_id)

            balance = self.domain.ledger.balance_of(self.address)
            if balance == 0:
                raise ZeroAmount(f"Nothing to deposit for {transfer_id}")

            shares = self.yield_source.deposit(self.address, balance)
            self.shares_held += shares
            self.total_deposited += balance
            self.total_swept += balance
            self._processed_deposits[transfer_id] = shares

        self.audit.log(
            caller, "process_deposit", "transfer", str(transfer_id), "success",
            amount=balance, shares=shares,
        )
        self.event_bus.publish(RemoteDepositProcessed(
            source=self.address, transfer_id=str(transfer_id), amount=balance, shares=shares,
        ))
        return shares

    def initiate_withdrawal(self, caller: str, transfer_id: Union[TransferId, str], amount: int) -> int:
        """
        Redeem up to ``amount`` of value and send it home.

        The amount is capped to the position's current value and the share
        count to the shares held. Returns the amount handed to the transport.
        """
        self._only_keeper(caller)
        transfer_id = TransferId.coerce(transfer_id)
        amount = require_amount(amount)
        with self._lock:
            if transfer_id in self._served_withdrawals:
                raise InvalidTransferState(expected="NONE", actual="SENT", transfer_id=transfer_id)

            capped = min(amount, self.current_value())
            shares = min(self.yield_source.convert_to_shares(capped), self.shares_held)
            if shares == 0:
                raise ZeroAmount(f"No position to redeem for {transfer_id}")
            sent, return_id = self._redeem_and_send(shares, transfer_id)
            self._served_withdrawals.add(transfer_id)

        if sent < amount:
            self._log.warning(
                "Withdrawal capped by remote position",
                operation="initiate_withdrawal",
                transfer_id=str(transfer_id),
                requested=amount,
                sent=sent,
            )
        self.audit.log(
            caller, "initiate_withdrawal", "transfer", str(transfer_id), "success",
            requested=amount, sent=sent, shares=shares,
        )
        self.event_bus.publish(RemoteWithdrawalSent(
            source=self.address,
            transfer_id=str(transfer_id),
            amount=sent,
            shares_redeemed=shares,
            return_transfer_id=str(return_id),
        ))
        return sent

    def withdraw_all(self, caller: str, transfer_id: Union[TransferId, str]) -> int:
        """Redeem the whole position and send it home against ``transfer_id``."""
        self._only_keeper(caller)
        transfer_id = TransferId.coerce(transfer_id)
        with self._lock:
            if transfer_id in self._served_withdrawals:
                raise InvalidTransferState(expected="NONE", actual="SENT", transfer_id=transfer_id)
            if self.shares_held == 0:
                raise ZeroAmount("No position to redeem")
            shares = self.shares_held
            sent, return_id = self._redeem_and_send(shares, transfer_id)
            self._served_withdrawals.add(transfer_id)

        self.audit.log(caller, "withdraw_all", "transfer", str(transfer_id), "success", sent=sent, shares=shares)
        self.event_bus.publish(RemoteWithdrawalSent(
            source=self.address,
            transfer_id=str(transfer_id),
            amount=sent,
            shares_redeemed=shares,
            return_transfer_id=str(return_id),
        ))
        return sent

    def _redeem_and_send(self, shares: int, transfer_id: TransferId) -> Tuple[int, TransferId]:
        """
        Redeem ``shares`` and queue the proceeds for the return leg.

        If the transport rejects the return leg the proceeds go back into the
        yield source, so the agent's share count keeps matching the vault.
        """
        assets = self.yield_source.redeem(self.address, shares, self.address)
        try:
            with self.domain.ledger.atomic():
                return_id = self.transport.send_to_home(self.address, assets, transfer_id)
        except Exception:
            restored = self.yield_source.deposit(self.address, assets) if assets else 0
            self.shares_held += restored - shares
            self._log.warning(
                "Return leg rejected, proceeds redeposited",
                operation="redeem_and_send",
                transfer_id=str(transfer_id),
                assets=assets,
                shares=restored,
            )
            raise
        self.shares_held -= shares
        self.total_deposited = InvariantChecker.saturating_sub(self.total_deposited, assets)
        return assets, return_id

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def current_value(self) -> int:
        with self._lock:
            if self.shares_held == 0:
                return 0
            return self.yield_source.convert_to_assets(self.shares_held)

    def report_value(self) -> ValueReport:
        """Informational snapshot; does not change state."""
        with self._lock:
            report = ValueReport(
                value=self.current_value(),
                shares=self.shares_held,
                total_deposited=self.total_deposited,
                timestamp=self.domain.now(),
            )
        self.event_bus.publish(RemoteValueReported(
            source=self.address, value=report.value, shares=report.shares, timestamp=report.timestamp,
        ))
        return report

    def has_processed(self, transfer_id: Union[TransferId, str]) -> bool:
        return TransferId.coerce(transfer_id) in self._processed_deposits

    def processed_shares(self, transfer_id: Union[TransferId, str]) -> Optional[int]:
        """Shares minted when ``transfer_id`` was processed, if it was."""
        return self._processed_deposits.get(TransferId.coerce(transfer_id))

    def has_served(self, transfer_id: Union[TransferId, str]) -> bool:
        return TransferId.coerce(transfer_id) in self._served_withdrawals

    # -------------------------------------------------------------------------
    # Circuit breaker
    # -------------------------------------------------------------------------

    def emergency_withdraw(self, caller: str) -> int:
        """Redeem everything to the owner's remote balance."""
        self._only_owner(caller)
        with self._lock:
            shares = self.shares_held
            assets = 0
            if shares:
                assets = self.yield_source.redeem(self.address, shares, self.owner)
            stray = self.domain.ledger.balance_of(self.address)
            if stray:
                self.domain.ledger.transfer(self.address, self.owner, stray)
            self.shares_held = 0
            self.total_deposited = 0
            total = assets + stray

        self._log.warning("Emergency withdrawal executed", operation="emergency_withdraw", amount=total)
        self.audit.log(caller, "emergency_withdraw", "agent", self.address, "success", amount=total)
        self.event_bus.publish(EmergencyWithdrawal(source=self.address, recipient=self.owner, amount=total))
        return total
