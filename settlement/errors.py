"""
Settlement Error Taxonomy

Every failure in the settlement engine aborts the whole call with no partial
state change. Failures are grouped so callers can decide how to react:

    Authorization      caller is not the permitted principal
    StateViolation     well-formed call, wrong record/strategy state
    Validation         malformed input
    Insufficiency      economic precondition failed

Each error carries a stable ``code`` used as ``error_code`` in structured logs.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for all settlement failures."""

    code: str = "settlement_error"

    def __init__(self, message: str = "", **details: Any):
        self.details: Dict[str, Any] = details
        super().__init__(message or self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "details": {k: str(v) for k, v in self.details.items()},
        }


# =============================================================================
# AUTHORIZATION
# =============================================================================

class AuthorizationError(SettlementError):
    """Caller is not the permitted principal."""
    code = "unauthorized"

    def __init__(self, caller: str, message: str = ""):
        self.caller = caller
        super().__init__(message or f"{self.code}: {caller}", caller=caller)


class OnlyTreasuryManager(AuthorizationError):
    code = "only_treasury_manager"


class OnlyKeeper(AuthorizationError):
    code = "only_keeper"


class OnlyOwner(AuthorizationError):
    code = "only_owner"


# =============================================================================
# STATE VIOLATION
# =============================================================================

class StateViolation(SettlementError):
    """Operation is well-formed but the current state does not permit it."""
    code = "state_violation"


class StrategyNotActive(StateViolation):
    code = "strategy_not_active"


class TransferNotFound(StateViolation):
    code = "transfer_not_found"

    def __init__(self, transfer_id: Any):
        self.transfer_id = transfer_id
        super().__init__(f"Transfer not found: {transfer_id}", transfer_id=transfer_id)


class InvalidTransferState(StateViolation):
    code = "invalid_transfer_state"

    def __init__(self, expected: Any, actual: Any, transfer_id: Optional[Any] = None):
        self.expected = expected
        self.actual = actual
        self.transfer_id = transfer_id
        expected_name = getattr(expected, "name", expected)
        actual_name = getattr(actual, "name", actual)
        super().__init__(
            f"Invalid transfer state: expected {expected_name}, got {actual_name}",
            expected=expected_name,
            actual=actual_name,
            transfer_id=transfer_id,
        )


class ReentrantCall(StateViolation):
    code = "reentrant_call"


# =============================================================================
# VALIDATION
# =============================================================================

class SettlementValidationError(SettlementError):
    """Malformed input, rejected before side effects."""
    code = "validation_error"


class ZeroAmount(SettlementValidationError):
    code = "zero_amount"


class ZeroAddress(SettlementValidationError):
    code = "zero_address"


class InvalidAmount(SettlementValidationError):
    code = "invalid_amount"


class InvalidAddress(SettlementValidationError):
    code = "invalid_address"


class InvalidTransferId(SettlementValidationError):
    code = "invalid_transfer_id"


class AmountBelowMinimum(SettlementValidationError):
    code = "amount_below_minimum"

    def __init__(self, amount: int, minimum: int):
        self.amount = amount
        self.minimum = minimum
        super().__init__(
            f"Amount {amount} below minimum {minimum}",
            amount=amount,
            minimum=minimum,
        )


# =============================================================================
# INSUFFICIENCY
# =============================================================================

class InsufficientBalance(SettlementError):
    code = "insufficient_balance"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance: requested {requested}, available {available}",
            requested=requested,
            available=available,
        )


# =============================================================================
# TRANSPORT INTEGRITY
# =============================================================================

class AttestationInvalid(SettlementError):
    """A transport message failed attestation verification."""
    code = "attestation_invalid"
