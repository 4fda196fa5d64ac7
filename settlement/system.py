"""
System Assembly

Wires a complete two-domain deployment: home and remote domains, transport,
yield vault, remote agent, strategy controller, treasury manager and keeper
relay, all sharing one event bus and one audit trail.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from settlement.agent import RemoteAgent
from settlement.config import get_config
from settlement.controller import StrategyController
from settlement.domain import Clock, Domain, create_domain
from settlement.events import EventBus
from settlement.keeper import KeeperRelay, RetryPolicy
from settlement.observability import AuditLogger, SettlementLayer, get_logger
from settlement.transport import TransportAdapter, TransportKind, create_transport
from settlement.treasury import TreasuryManager
from settlement.yield_source import SimulatedYieldVault


@dataclass
class SystemAddresses:
    """Principal addresses of a deployment."""
    owner: str = "0x" + "0a" * 20
    treasury_manager: str = "0x" + "0b" * 20
    controller: str = "0x" + "0c" * 20
    agent: str = "0x" + "0d" * 20
    keeper: str = "0x" + "0e" * 20
    vault: str = "0x" + "0f" * 20


@dataclass
class SettlementSystem:
    home: Domain
    remote: Domain
    transport: TransportAdapter
    vault: SimulatedYieldVault
    agent: RemoteAgent
    controller: StrategyController
    treasury: TreasuryManager
    keeper: KeeperRelay
    addresses: SystemAddresses
    event_bus: EventBus = field(default_factory=EventBus)
    audit: Optional[AuditLogger] = None

    def fund_treasury(self, amount: int) -> None:
        """Mint ``amount`` into the treasury manager's idle balance."""
        self.home.ledger.mint(self.treasury.address, amount)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "treasury_idle": self.treasury.idle_balance(),
            "treasury_total": self.treasury.total_value(),
            "strategy": self.controller.strategy_info(),
            "remote_value": self.agent.current_value(),
            "in_flight": len(self.transport.pending_messages()),
        }


def build_system(
    transport_kind: TransportKind = TransportKind.BURN_MINT,
    home_clock: Optional[Clock] = None,
    remote_clock: Optional[Clock] = None,
    addresses: Optional[SystemAddresses] = None,
    asset_id: str = "USDC",
    retry: Optional[RetryPolicy] = None,
    **transport_options: Any,
) -> SettlementSystem:
    """
    Assemble and wire a full deployment.

    Keepers are registered on both the controller and the agent, and the
    controller is registered with the treasury manager.
    """
    config = get_config()
    addresses = addresses or SystemAddresses()
    log = get_logger("system", SettlementLayer.CONFIG)

    home = create_domain("home", config.transport.home_domain_id.get(), asset_id, home_clock)
    remote = create_domain("remote", config.transport.remote_domain_id.get(), asset_id, remote_clock)

    event_bus = EventBus()
    audit = AuditLogger(get_logger("audit", SettlementLayer.CONTROLLER))

    transport = create_transport(transport_kind, home, remote, **transport_options)
    transport.bind(addresses.controller, addresses.agent)

    vault = SimulatedYieldVault(remote, addresses.vault)
    agent = RemoteAgent(
        remote, addresses.agent, addresses.owner, vault, transport,
        event_bus=event_bus, audit=audit,
    )
    controller = StrategyController(
        home, addresses.controller, addresses.owner, addresses.treasury_manager, transport,
        event_bus=event_bus, audit=audit,
    )
    controller.set_keeper(addresses.owner, addresses.keeper, True)
    agent.set_keeper(addresses.owner, addresses.keeper, True)

    treasury = TreasuryManager(addresses.treasury_manager, home)
    treasury.add_strategy(controller)

    keeper = KeeperRelay(addresses.keeper, controller, agent, transport, retry=retry)

    log.info(
        "Settlement system assembled",
        operation="build_system",
        transport=transport.kind.value,
        home_domain=home.domain_id,
        remote_domain=remote.domain_id,
    )
    return SettlementSystem(
        home=home,
        remote=remote,
        transport=transport,
        vault=vault,
        agent=agent,
        controller=controller,
        treasury=treasury,
        keeper=keeper,
        addresses=addresses,
        event_bus=event_bus,
        audit=audit,
    )
