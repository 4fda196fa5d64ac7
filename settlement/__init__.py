"""
Cross-Domain Treasury Settlement Engine

Deploys a treasury pool's capital into a yield position on a separate,
independently-clocked execution domain, and keeps an always-available,
optimistic valuation of that capital while transfers are in flight.

Architecture
────────────

    ┌────────────────────────── HOME DOMAIN ──────────────────────────┐
    │  treasury.py     TreasuryManager: pooled capital, allocation     │
    │  controller.py   StrategyController: pending bookkeeping,        │
    │                  optimistic valuation, staleness, confirmations  │
    └───────────────────────────────┬─────────────────────────────────┘
                                    │  transport.py  (burn/mint, swap route)
    ┌───────────────────────────────▼─────────────────────────────────┐
    │  agent.py        RemoteAgent: deposits into the yield source,    │
    │                  redeems and sends value home                    │
    │  yield_source.py Share vault interface                           │
    └──────────────────────────── REMOTE DOMAIN ──────────────────────┘

    keeper.py        KeeperRelay: the only actor that advances async state
    domain.py        Ledgers and clocks
    config.py        YAML/env configuration
    observability.py Structured logging and audit trail

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):

    if name in ("StrategyController", "StrategyState", "TransferRecord",
                "TransferKind", "TransferState"):
        from settlement import controller
        return getattr(controller, name)

    if name in ("RemoteAgent", "ValueReport"):
        from settlement import agent
        return getattr(agent, name)

    if name in ("TransportAdapter", "BurnMintTransport", "SwapRouteTransport",
                "TransportKind", "TransferId", "TransferMessage", "MessageKind",
                "create_transport"):
        from settlement import transport
        return getattr(transport, name)

    if name in ("KeeperRelay", "KeeperCommand", "CommandKind", "RelayReport", "RetryPolicy"):
        from settlement import keeper
        return getattr(keeper, name)

    if name in ("TreasuryManager", "Strategy"):
        from settlement import treasury
        return getattr(treasury, name)

    if name in ("YieldSource", "SimulatedYieldVault"):
        from settlement import yield_source
        return getattr(yield_source, name)

    if name in ("Domain", "AssetLedger", "Clock", "ManualClock", "SystemClock", "create_domain"):
        from settlement import domain
        return getattr(domain, name)

    if name in ("SettlementSystem", "SystemAddresses", "build_system"):
        from settlement import system
        return getattr(system, name)

    if name in ("EventBus",):
        from settlement import events
        return getattr(events, name)

    raise AttributeError(f"module 'settlement' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Controller
    "StrategyController", "StrategyState", "TransferRecord", "TransferKind", "TransferState",
    # Agent
    "RemoteAgent", "ValueReport",
    # Transport
    "TransportAdapter", "BurnMintTransport", "SwapRouteTransport", "TransportKind",
    "TransferId", "TransferMessage", "MessageKind", "create_transport",
    # Keeper
    "KeeperRelay", "KeeperCommand", "CommandKind", "RelayReport", "RetryPolicy",
    # Treasury
    "TreasuryManager", "Strategy",
    # Yield source
    "YieldSource", "SimulatedYieldVault",
    # Domains
    "Domain", "AssetLedger", "Clock", "ManualClock", "SystemClock", "create_domain",
    # Assembly
    "SettlementSystem", "SystemAddresses", "build_system",
    "EventBus",
]
