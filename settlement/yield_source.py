"""
Remote Yield Source

Share-vault interface used by the remote agent. Depositors receive shares;
the asset value of a share grows as yield accrues to the vault.

Only the interface matters to the settlement engine. ``SimulatedYieldVault``
keeps real balances on the remote domain's ledger so tests and local runs see
value actually move.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict

from settlement.domain import Domain
from settlement.errors import InsufficientBalance
from settlement.hardening import require_address, require_amount
from settlement.observability import SettlementLayer, get_logger


class YieldSource(ABC):
    """Share vault on the remote domain."""

    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def deposit(self, sender: str, assets: int) -> int:
        """Pull ``assets`` from ``sender`` and mint shares to it."""

    @abstractmethod
    def redeem(self, owner: str, shares: int, receiver: str) -> int:
        """Burn ``shares`` of ``owner`` and send the assets to ``receiver``."""

    @abstractmethod
    def convert_to_shares(self, assets: int) -> int:
        ...

    @abstractmethod
    def convert_to_assets(self, shares: int) -> int:
        ...

    @abstractmethod
    def balance_of(self, owner: str) -> int:
        """Shares held by ``owner``."""


class SimulatedYieldVault(YieldSource):
    """
    In-process share vault.

    Share price is ``total_assets / total_shares``; the first deposit mints
    shares one-to-one. Conversions round down, so redeeming never pays out
    more than the vault holds.
    """

    def __init__(self, domain: Domain, address: str):
        self.domain = domain
        self._address = require_address(address)
        self._shares: Dict[str, int] = {}
        self._total_shares = 0
        self._lock = threading.RLock()
        self._log = get_logger("vault", SettlementLayer.AGENT)

    @property
    def address(self) -> str:
        return self._address

    @property
    def total_assets(self) -> int:
        return self.domain.ledger.balance_of(self._address)

    @property
    def total_shares(self) -> int:
        with self._lock:
            return self._total_shares

    def convert_to_shares(self, assets: int) -> int:
        with self._lock:
            total_assets = self.total_assets
            if self._total_shares == 0 or total_assets == 0:
                return assets
            return assets * self._total_shares // total_assets

    def convert_to_assets(self, shares: int) -> int:
        with self._lock:
            if self._total_shares == 0:
                return shares
            return shares * self.total_assets // self._total_shares

    def balance_of(self, owner: str) -> int:
        with self._lock:
            return self._shares.get(owner.lower(), 0)

    def deposit(self, sender: str, assets: int) -> int:
        sender = require_address(sender)
        assets = require_amount(assets)
        with self._lock:
            shares = self.convert_to_shares(assets)
            self.domain.ledger.transfer(sender, self._address, assets)
            self._shares[sender] = self._shares.get(sender, 0) + shares
            self._total_shares += shares
        self._log.debug("Vault deposit", operation="deposit", assets=assets, shares=shares)
        return shares

    def redeem(self, owner: str, shares: int, receiver: str) -> int:
        owner = require_address(owner)
        receiver = require_address(receiver)
        shares = require_amount(shares)
        with self._lock:
            held = self._shares.get(owner, 0)
            if held < shares:
                raise InsufficientBalance(requested=shares, available=held)
            assets = self.convert_to_assets(shares)
            self.domain.ledger.transfer(self._address, receiver, assets)
            self._shares[owner] = held - shares
            self._total_shares -= shares
        self._log.debug("Vault redeem", operation="redeem", assets=assets, shares=shares)
        return assets

    def accrue(self, amount: int) -> None:
        """Simulate yield by minting ``amount`` of the asset into the vault."""
        amount = require_amount(amount)
        self.domain.ledger.mint(self._address, amount)
        self._log.info("Yield accrued", operation="accrue", amount=amount)
