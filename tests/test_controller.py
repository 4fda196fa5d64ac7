"""
Tests for the Strategy Controller state machine.

Covers:
1. Optimistic valuation and counter arithmetic
2. Confirmation protocol guards (exactly-once, kind, state)
3. Staleness and yield reporting
4. Authorization on every entry point
5. Atomic failure when the transport rejects a deposit
6. Administration and the emergency sweep
"""

import threading
import time

import pytest

from settlement.controller import TransferKind, TransferState
from settlement.errors import (
    AmountBelowMinimum,
    InsufficientBalance,
    InvalidTransferState,
    OnlyKeeper,
    OnlyOwner,
    OnlyTreasuryManager,
    ReentrantCall,
    StrategyNotActive,
    TransferNotFound,
    ZeroAddress,
    ZeroAmount,
)
from settlement.events import (
    DepositConfirmed,
    DepositInitiated,
    RemoteValueUpdated,
    WithdrawalCompleted,
    WithdrawalInitiated,
)

UNKNOWN_ID = "ff" * 32


def _deposit(controller, tm, amount):
    controller.deposit(tm, amount)
    return controller.pending_transfers(TransferKind.DEPOSIT)[-1].transfer_id


def _withdraw(controller, tm, amount):
    controller.withdraw(tm, amount)
    return controller.pending_transfers(TransferKind.WITHDRAWAL)[-1].transfer_id


def _land_return(system, amount):
    """Simulate the return leg arriving in the controller's home balance."""
    system.home.ledger.mint(system.controller.address, amount)


# =============================================================================
# DEPOSIT / CONFIRM
# =============================================================================

class TestDeposit:
    """Deposits pull capital and count optimistically while in flight."""

    def test_deposit_pulls_funds_and_tracks_pending(self, system, controller, tm):
        result = controller.deposit(tm, 100_000)

        assert result == 0
        state = controller.state
        assert state.pending_deposits == 100_000
        assert state.total_deposited == 100_000
        assert controller.total_value() == 100_000
        assert system.treasury.idle_balance() == 900_000

    def test_deposit_creates_pending_record(self, system, controller, tm, home_clock):
        tid = _deposit(controller, tm, 100_000)

        record = controller.get_transfer(tid)
        assert record is not None
        assert record.kind == TransferKind.DEPOSIT
        assert record.state == TransferState.PENDING
        assert record.amount == 100_000
        assert record.created_at == home_clock.now()

    def test_deposit_emits_initiated_event(self, system, controller, tm, home_clock):
        tid = _deposit(controller, tm, 100_000)

        events = system.event_bus.history(DepositInitiated)
        assert len(events) == 1
        assert events[0].payload() == {
            "transfer_id": str(tid),
            "amount": 100_000,
            "timestamp": home_clock.now(),
        }

    def test_deposit_then_confirm_yields_amount(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 250_000)
        controller.confirm_deposit(keeper, tid, 250_000)

        state = controller.state
        assert controller.total_value() == 250_000
        assert state.pending_deposits == 0
        assert state.last_reported_value == 250_000
        assert controller.transfer_state(tid) == TransferState.DEPLOYED

    def test_confirm_uses_deposited_amount_not_shares(self, system, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 97_000)

        assert controller.state.last_reported_value == 100_000
        event = system.event_bus.history(DepositConfirmed)[-1]
        assert event.amount == 100_000
        assert event.remote_shares == 97_000

    def test_confirm_sets_last_value_update(self, controller, tm, keeper, home_clock):
        tid = _deposit(controller, tm, 100_000)
        home_clock.advance(120)
        controller.confirm_deposit(keeper, tid, 100_000)

        assert controller.state.last_value_update == home_clock.now()

    def test_zero_deposit_rejected(self, controller, tm):
        with pytest.raises(ZeroAmount):
            controller.deposit(tm, 0)

    def test_deposit_over_idle_balance_rejected(self, system, controller, tm):
        with pytest.raises(InsufficientBalance):
            controller.deposit(tm, 2_000_000)
        assert controller.state.pending_deposits == 0
        assert system.treasury.idle_balance() == 1_000_000


class TestDepositAtomicity:
    """A transport rejection leaves no trace."""

    def test_below_minimum_aborts_without_side_effects(self, system, controller, tm):
        before_supply = system.home.ledger.total_supply

        with pytest.raises(AmountBelowMinimum) as exc:
            controller.deposit(tm, 999)

        assert exc.value.amount == 999
        assert exc.value.minimum == 1_000
        assert system.treasury.idle_balance() == 1_000_000
        assert system.home.ledger.balance_of(controller.address) == 0
        assert system.home.ledger.total_supply == before_supply
        assert controller.state.pending_deposits == 0
        assert controller.state.total_deposited == 0
        assert controller.pending_transfers() == []
        assert system.transport.pending_messages() == []
        assert system.event_bus.history(DepositInitiated) == []


class TestConfirmGuards:
    """Keeper confirmations succeed exactly once and fail closed otherwise."""

    def test_double_confirm_fails(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)

        with pytest.raises(InvalidTransferState) as exc:
            controller.confirm_deposit(keeper, tid, 100_000)
        assert exc.value.details["expected"] == "PENDING"
        assert exc.value.details["actual"] == "DEPLOYED"
        assert controller.total_value() == 100_000

    def test_confirm_unknown_id(self, controller, keeper):
        with pytest.raises(TransferNotFound):
            controller.confirm_deposit(keeper, UNKNOWN_ID, 1)

    def test_confirm_withdrawal_record_rejected(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        wid = _withdraw(controller, tm, 10_000)

        with pytest.raises(InvalidTransferState):
            controller.confirm_deposit(keeper, wid, 10_000)

    def test_receive_on_deposit_record_rejected(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)

        with pytest.raises(InvalidTransferState):
            controller.receive_withdrawal(keeper, tid, 100_000)

    def test_unknown_id_state_is_none(self, controller):
        assert controller.get_transfer(UNKNOWN_ID) is None
        assert controller.transfer_state(UNKNOWN_ID) == TransferState.NONE


# =============================================================================
# WITHDRAW / RECEIVE
# =============================================================================

class TestWithdraw:
    """Withdrawals reduce the optimistic value immediately."""

    @pytest.fixture
    def deployed(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        return controller

    def test_withdraw_tracks_pending(self, system, deployed, tm, home_clock):
        wid = _withdraw(deployed, tm, 40_000)

        assert deployed.state.pending_withdrawals == 40_000
        assert deployed.total_value() == 60_000
        event = system.event_bus.history(WithdrawalInitiated)[-1]
        assert event.payload() == {"transfer_id": str(wid), "amount": 40_000, "timestamp": home_clock.now()}

    def test_over_withdraw_rejected_and_counters_unchanged(self, deployed, tm):
        before = deployed.state

        with pytest.raises(InsufficientBalance) as exc:
            deployed.withdraw(tm, 100_001)

        assert exc.value.requested == 100_001
        assert exc.value.available == 100_000
        assert deployed.state == before

    def test_zero_withdraw_rejected(self, deployed, tm):
        with pytest.raises(ZeroAmount):
            deployed.withdraw(tm, 0)

    def test_withdraw_all_requests_full_value(self, deployed, tm):
        assert deployed.withdraw_all(tm) == 0
        record = deployed.pending_transfers(TransferKind.WITHDRAWAL)[0]
        assert record.full
        assert deployed.state.pending_withdrawals == 100_000
        assert deployed.total_value() == 0

    def test_withdraw_all_noop_when_empty(self, controller, tm):
        assert controller.withdraw_all(tm) == 0
        assert controller.pending_transfers() == []

    def test_receive_forwards_funds_and_closes_record(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        _land_return(system, 40_000)

        deployed.receive_withdrawal(keeper, wid, 40_000)

        state = deployed.state
        assert state.pending_withdrawals == 0
        assert state.total_deposited == 60_000
        assert state.last_reported_value == 60_000
        assert deployed.get_transfer(wid) is None
        assert deployed.transfer_state(wid) == TransferState.DEPLOYED
        assert system.treasury.idle_balance() == 940_000
        assert system.event_bus.history(WithdrawalCompleted)[-1].payload() == {
            "transfer_id": str(wid), "amount": 40_000,
        }

    def test_replayed_receive_fails_with_state_error(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        _land_return(system, 80_000)
        deployed.receive_withdrawal(keeper, wid, 40_000)

        with pytest.raises(InvalidTransferState) as exc:
            deployed.receive_withdrawal(keeper, wid, 40_000)
        assert exc.value.details["actual"] == "DEPLOYED"
        assert system.treasury.idle_balance() == 940_000

    def test_receive_before_return_lands_fails_cleanly(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        before = deployed.state

        with pytest.raises(InsufficientBalance):
            deployed.receive_withdrawal(keeper, wid, 40_000)

        assert deployed.state == before
        assert deployed.transfer_state(wid) == TransferState.PENDING

    def test_short_return_records_shortfall(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        _land_return(system, 39_960)

        deployed.receive_withdrawal(keeper, wid, 39_960)

        state = deployed.state
        assert state.realized_shortfall == 40
        assert state.last_reported_value == 60_000
        assert state.total_deposited == 100_000 - 39_960

    def test_update_folds_shortfall(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        _land_return(system, 39_960)
        deployed.receive_withdrawal(keeper, wid, 39_960)

        deployed.update_remote_value(keeper, 59_990)
        assert deployed.state.realized_shortfall == 0
        assert deployed.total_value() == 59_990

    def test_receive_is_reentrancy_guarded(self, system, deployed, tm, keeper):
        wid = _withdraw(deployed, tm, 40_000)
        _land_return(system, 40_000)
        deployed._entered = True
        try:
            with pytest.raises(ReentrantCall):
                deployed.receive_withdrawal(keeper, wid, 40_000)
        finally:
            deployed._entered = False
        deployed.receive_withdrawal(keeper, wid, 40_000)

    def test_concurrent_receives_on_distinct_ids(self, system, deployed, tm, keeper, monkeypatch):
        first = _withdraw(deployed, tm, 30_000)
        second = _withdraw(deployed, tm, 20_000)
        _land_return(system, 50_000)

        transfer = system.home.ledger.transfer

        def slow_transfer(*args, **kwargs):
            time.sleep(0.05)
            return transfer(*args, **kwargs)

        monkeypatch.setattr(system.home.ledger, "transfer", slow_transfer)
        errors = []

        def complete(wid, amount):
            try:
                deployed.receive_withdrawal(keeper, wid, amount)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=complete, args=(first, 30_000)),
            threading.Thread(target=complete, args=(second, 20_000)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert deployed.state.pending_withdrawals == 0
        assert deployed.state.last_reported_value == 50_000
        assert system.treasury.idle_balance() == 950_000


# =============================================================================
# VALUATION
# =============================================================================

class TestValuation:
    """Staleness and yield reporting."""

    def test_total_value_never_negative(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        _withdraw(controller, tm, 100_000)
        controller.update_remote_value(keeper, 0)

        assert controller.total_value() == 0
        assert controller.yield_earned() == 0

    def test_staleness_cycle(self, controller, keeper, home_clock):
        controller.update_remote_value(keeper, 0)
        assert not controller.is_value_stale()

        home_clock.advance(3601)
        assert controller.is_value_stale()

        controller.update_remote_value(keeper, 0)
        assert not controller.is_value_stale()

    def test_staleness_boundary_is_exclusive(self, controller, keeper, home_clock):
        controller.update_remote_value(keeper, 0)
        home_clock.advance(3600)
        assert not controller.is_value_stale()

    def test_yield_zero_until_report_exceeds_deposits(self, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        assert controller.yield_earned() == 0

        controller.update_remote_value(keeper, 99_000)
        assert controller.yield_earned() == 0

        controller.update_remote_value(keeper, 103_500)
        assert controller.yield_earned() == 3_500

    def test_update_emits_old_and_new(self, system, controller, keeper, home_clock):
        controller.update_remote_value(keeper, 5)
        controller.update_remote_value(keeper, 9)

        event = system.event_bus.history(RemoteValueUpdated)[-1]
        assert event.payload() == {"old_value": 5, "new_value": 9, "timestamp": home_clock.now()}

    def test_reference_scenario(self, system, controller, tm, keeper):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        assert controller.total_value() == 100_000

        controller.update_remote_value(keeper, 104_000)
        assert controller.yield_earned() == 4_000

        wid = _withdraw(controller, tm, 50_000)
        assert controller.state.pending_withdrawals == 50_000
        assert controller.total_value() == 54_000

        _land_return(system, 50_000)
        idle_before = system.treasury.idle_balance()
        controller.receive_withdrawal(keeper, wid, 50_000)

        assert controller.state.pending_withdrawals == 0
        assert system.treasury.idle_balance() == idle_before + 50_000
        assert controller.state.total_deposited == 50_000
        assert controller.total_value() == 54_000


# =============================================================================
# ACCESS CONTROL AND ADMINISTRATION
# =============================================================================

class TestAuthorization:
    """Each entry point admits only its principal."""

    def test_only_treasury_manager_deposits(self, controller, keeper):
        with pytest.raises(OnlyTreasuryManager):
            controller.deposit(keeper, 100_000)

    def test_only_treasury_manager_withdraws(self, controller, owner):
        with pytest.raises(OnlyTreasuryManager):
            controller.withdraw(owner, 1)
        with pytest.raises(OnlyTreasuryManager):
            controller.withdraw_all(owner)

    def test_only_keeper_confirms(self, system, controller, tm):
        tid = _deposit(controller, tm, 100_000)
        with pytest.raises(OnlyKeeper):
            controller.confirm_deposit(tm, tid, 100_000)
        denied = system.audit.get_events(actor=tm, action="keeper_call")
        assert denied and denied[-1].outcome == "denied"

    def test_only_keeper_updates_value(self, controller, owner):
        with pytest.raises(OnlyKeeper):
            controller.update_remote_value(owner, 1)

    def test_revoked_keeper_rejected(self, controller, owner, keeper):
        controller.set_keeper(owner, keeper, False)
        with pytest.raises(OnlyKeeper):
            controller.update_remote_value(keeper, 1)

    def test_only_owner_administers(self, controller, keeper):
        with pytest.raises(OnlyOwner):
            controller.set_keeper(keeper, keeper, True)
        with pytest.raises(OnlyOwner):
            controller.deactivate(keeper)
        with pytest.raises(OnlyOwner):
            controller.emergency_withdraw(keeper)

    def test_set_keeper_rejects_zero_address(self, controller, owner):
        with pytest.raises(ZeroAddress):
            controller.set_keeper(owner, "0x" + "0" * 40, True)


class TestAdministration:
    """Owner controls and the circuit breaker."""

    def test_deactivated_rejects_deposits_but_drains(self, system, controller, tm, keeper, owner):
        tid = _deposit(controller, tm, 100_000)
        controller.confirm_deposit(keeper, tid, 100_000)
        controller.deactivate(owner)

        with pytest.raises(StrategyNotActive):
            controller.deposit(tm, 10_000)

        wid = _withdraw(controller, tm, 100_000)
        _land_return(system, 100_000)
        controller.receive_withdrawal(keeper, wid, 100_000)
        assert controller.total_value() == 0

    def test_reactivate(self, controller, tm, owner):
        controller.deactivate(owner)
        controller.activate(owner)
        controller.deposit(tm, 10_000)
        assert controller.state.pending_deposits == 10_000

    def test_set_max_staleness(self, controller, keeper, owner, home_clock):
        controller.set_max_staleness(owner, 60)
        controller.update_remote_value(keeper, 0)
        home_clock.advance(61)
        assert controller.is_value_stale()

    def test_set_max_staleness_rejects_zero(self, controller, owner):
        with pytest.raises(ZeroAmount):
            controller.set_max_staleness(owner, 0)

    def test_emergency_withdraw_sweeps_home_balance_only(self, system, controller, tm, owner):
        system.home.ledger.mint(controller.address, 7_500)
        controller.deposit(tm, 100_000)

        swept = controller.emergency_withdraw(owner)

        assert swept == 7_500
        assert system.home.ledger.balance_of(owner) == 7_500
        assert not controller.state.is_active
        assert controller.state.pending_deposits == 100_000

    def test_treasury_interface(self, controller):
        assert controller.asset_id() == "USDC"
        assert controller.name() == "Cross-Domain Yield Strategy"
        assert controller.supports_instant_withdraw() is False
        assert controller.max_instant_withdraw() == 0

    def test_strategy_info(self, system, controller, tm, owner):
        controller.deposit(tm, 100_000)
        controller.set_estimated_apy(owner, 520)

        info = controller.strategy_info()
        assert info["total_value"] == 100_000
        assert info["pending_deposits"] == 100_000
        assert info["destination_domain"] == system.remote.domain_id
        assert info["estimated_apy_bps"] == 520
        assert info["is_active"] is True
        assert info["is_value_stale"] is False

    def test_set_treasury_manager(self, controller, owner, keeper):
        controller.set_treasury_manager(owner, keeper)
        with pytest.raises(OnlyTreasuryManager):
            controller.withdraw_all(owner)
        assert controller.withdraw_all(keeper) == 0

    def test_admin_actions_are_audited(self, system, controller, owner):
        controller.deactivate(owner)
        controller.activate(owner)

        actions = [e.action for e in system.audit.get_events(actor=owner)]
        assert "deactivate" in actions
        assert "activate" in actions
        valid, bad_index = system.audit.verify_chain()
        assert valid and bad_index is None
