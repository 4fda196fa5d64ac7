"""
Treasury Manager

Owns the pooled capital on the home domain and allocates it across yield
strategies. It is the only caller allowed into a strategy's deposit and
withdraw entry points.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from settlement.domain import Domain
from settlement.errors import InsufficientBalance, SettlementValidationError, StateViolation
from settlement.hardening import require_address, require_amount
from settlement.observability import SettlementLayer, get_logger


class Strategy(ABC):
    """Interface a yield strategy exposes to the treasury manager."""

    @abstractmethod
    def asset_id(self) -> str:
        ...

    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def deposit(self, caller: str, amount: int) -> int:
        """Deploy ``amount``; returns the amount deployed synchronously."""

    @abstractmethod
    def withdraw(self, caller: str, amount: int) -> int:
        """Request ``amount`` back; returns the amount returned synchronously."""

    @abstractmethod
    def withdraw_all(self, caller: str) -> int:
        ...

    @abstractmethod
    def total_value(self) -> int:
        ...

    @abstractmethod
    def supports_instant_withdraw(self) -> bool:
        ...

    @abstractmethod
    def max_instant_withdraw(self) -> int:
        ...


class TreasuryManager:
    """Pooled capital holder on the home domain."""

    def __init__(self, address: str, home: Domain):
        self.address = require_address(address)
        self.home = home
        self._strategies: Dict[str, Strategy] = {}
        self._lock = threading.RLock()
        self._log = get_logger("treasury_manager", SettlementLayer.TREASURY)

    def add_strategy(self, strategy: Strategy) -> None:
        if strategy.asset_id() != self.home.ledger.asset_id:
            raise SettlementValidationError(
                f"Strategy asset {strategy.asset_id()} does not match treasury asset {self.home.ledger.asset_id}"
            )
        with self._lock:
            if strategy.name() in self._strategies:
                raise SettlementValidationError(f"Strategy already registered: {strategy.name()}")
            self._strategies[strategy.name()] = strategy
        self._log.info("Strategy added", operation="add_strategy", strategy=strategy.name())

    def remove_strategy(self, strategy: Strategy) -> None:
        self._require_registered(strategy)
        if strategy.total_value() > 0:
            raise StateViolation(f"Strategy {strategy.name()} still holds value")
        with self._lock:
            del self._strategies[strategy.name()]
        self._log.info("Strategy removed", operation="remove_strategy", strategy=strategy.name())

    def _require_registered(self, strategy: Strategy) -> None:
        if self._strategies.get(strategy.name()) is not strategy:
            raise SettlementValidationError(f"Unknown strategy: {strategy.name()}")

    @property
    def strategies(self) -> List[Strategy]:
        with self._lock:
            return list(self._strategies.values())

    def idle_balance(self) -> int:
        return self.home.ledger.balance_of(self.address)

    def total_value(self) -> int:
        return self.idle_balance() + sum(s.total_value() for s in self.strategies)

    def allocate_to_strategy(self, strategy: Strategy, amount: int) -> int:
        self._require_registered(strategy)
        amount = require_amount(amount)
        with self._lock:
            idle = self.idle_balance()
            if amount > idle:
                raise InsufficientBalance(requested=amount, available=idle)
            deployed = strategy.deposit(self.address, amount)
        self._log.info(
            "Capital allocated",
            operation="allocate_to_strategy",
            strategy=strategy.name(),
            amount=amount,
        )
        return deployed

    def withdraw_from_strategy(self, strategy: Strategy, amount: int) -> int:
        self._require_registered(strategy)
        amount = require_amount(amount)
        with self._lock:
            returned = strategy.withdraw(self.address, amount)
        self._log.info(
            "Withdrawal requested",
            operation="withdraw_from_strategy",
            strategy=strategy.name(),
            amount=amount,
            instant=strategy.supports_instant_withdraw(),
        )
        return returned

    def withdraw_all_from_strategy(self, strategy: Strategy) -> int:
        self._require_registered(strategy)
        with self._lock:
            returned = strategy.withdraw_all(self.address)
        self._log.info("Full withdrawal requested", operation="withdraw_all_from_strategy", strategy=strategy.name())
        return returned
