"""
Execution Domains

An execution domain is an independently-clocked ledger. The home domain hosts
the Treasury Manager and the Strategy Controller; the remote domain hosts the
Remote Agent and the yield source. The two never share an atomic transaction:
value only crosses between them through a transport.

Each domain processes one state-changing call at a time. ``AssetLedger.atomic``
gives a call all-or-nothing semantics: balances are snapshotted on entry and
restored if the block raises.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from settlement.errors import InsufficientBalance
from settlement.hardening import require_address, require_amount


# =============================================================================
# CLOCKS
# =============================================================================

class Clock(ABC):
    """Source of domain time in whole seconds."""

    @abstractmethod
    def now(self) -> int:
        ...


class SystemClock(Clock):
    """Wall-clock seconds since the Unix epoch."""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """
    Clock advanced explicitly, used for local simulation and tests.

    Time never moves backwards.
    """

    def __init__(self, start: int = 1_700_000_000):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            if timestamp < self._now:
                raise ValueError("Clock cannot move backwards")
            self._now = timestamp


# =============================================================================
# ASSET LEDGER
# =============================================================================

class AssetLedger:
    """
    Balances of a single bridged asset on one domain.

    Amounts are integer base units (6 decimals for USD-stable assets).
    """

    def __init__(self, asset_id: str, decimals: int = 6):
        self.asset_id = asset_id
        self.decimals = decimals
        self._balances: Dict[str, int] = {}
        self._total_supply = 0
        self._lock = threading.RLock()

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(address.lower(), 0)

    @property
    def total_supply(self) -> int:
        with self._lock:
            return self._total_supply

    def mint(self, to: str, amount: int) -> None:
        to = require_address(to)
        amount = require_amount(amount, allow_zero=True)
        with self._lock:
            self._balances[to] = self._balances.get(to, 0) + amount
            self._total_supply += amount

    def burn(self, owner: str, amount: int) -> None:
        owner = require_address(owner)
        amount = require_amount(amount, allow_zero=True)
        with self._lock:
            available = self._balances.get(owner, 0)
            if available < amount:
                raise InsufficientBalance(requested=amount, available=available)
            self._balances[owner] = available - amount
            self._total_supply -= amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        sender = require_address(sender)
        recipient = require_address(recipient)
        amount = require_amount(amount, allow_zero=True)
        with self._lock:
            available = self._balances.get(sender, 0)
            if available < amount:
                raise InsufficientBalance(requested=amount, available=available)
            self._balances[sender] = available - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount

    @contextmanager
    def atomic(self) -> Iterator["AssetLedger"]:
        """Restore every balance if the enclosed block raises."""
        with self._lock:
            snapshot = dict(self._balances)
            supply = self._total_supply
            try:
                yield self
            except BaseException:
                self._balances = snapshot
                self._total_supply = supply
                raise


# =============================================================================
# DOMAIN
# =============================================================================

@dataclass
class Domain:
    """An execution domain: a ledger plus its own clock."""
    name: str
    domain_id: int
    ledger: AssetLedger
    clock: Clock = field(default_factory=SystemClock)

    def now(self) -> int:
        return self.clock.now()


def create_domain(
    name: str,
    domain_id: int,
    asset_id: str = "USDC",
    clock: Optional[Clock] = None,
) -> Domain:
    """Create a domain with a fresh ledger for ``asset_id``."""
    return Domain(
        name=name,
        domain_id=domain_id,
        ledger=AssetLedger(asset_id),
        clock=clock or SystemClock(),
    )
