"""
Settlement Validation and Hardening Module

Input validation and defensive utilities shared by the controller, the
remote agent and the transports:

1. Amount validation (unsigned 64-bit, 6-decimal base units)
2. Address and transfer identifier validation
3. Thread-safety primitives
4. Invariant enforcement for ledger counters
5. Re-entrancy protection

Security Model:
    - All inputs are untrusted until validated
    - Validation happens before any state mutation
    - Counters never go negative

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from functools import wraps
from typing import Any, Callable, List, Union

from settlement.errors import (
    InvalidAddress,
    InvalidAmount,
    InvalidTransferId,
    ReentrantCall,
    SettlementValidationError,
    ZeroAddress,
    ZeroAmount,
)


# USD-stable assets use 6 decimal places
ASSET_DECIMALS = 6
MAX_U64 = 2**64 - 1
ZERO_ADDRESS = "0x" + "0" * 40


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[SettlementValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first validation error if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, error: SettlementValidationError) -> 'ValidationResult':
        return cls(is_valid=False, errors=[error])


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')

    @classmethod
    def validate_amount(cls, value: Any, allow_zero: bool = False) -> ValidationResult:
        """Validate an amount in base units (u64)."""
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure(
                InvalidAmount(f"Expected integer base units, got {type(value).__name__}", value=value)
            )
        if value < 0:
            return ValidationResult.failure(InvalidAmount(f"Amount cannot be negative: {value}", value=value))
        if value > MAX_U64:
            return ValidationResult.failure(InvalidAmount(f"Amount exceeds u64: {value}", value=value))
        if value == 0 and not allow_zero:
            return ValidationResult.failure(ZeroAmount("Amount must be greater than zero"))
        return ValidationResult.success(value)

    @classmethod
    def validate_address(cls, value: Any, allow_zero: bool = False) -> ValidationResult:
        """Validate a 0x-prefixed 20-byte address, returning it lowercased."""
        if not isinstance(value, str):
            return ValidationResult.failure(
                InvalidAddress(f"Expected string address, got {type(value).__name__}", value=value)
            )
        lower = value.strip().lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure(
                InvalidAddress("Must be valid address (0x + 40 hex)", value=value)
            )
        if lower == ZERO_ADDRESS and not allow_zero:
            return ValidationResult.failure(ZeroAddress("Zero address not allowed"))
        return ValidationResult.success(lower)

    @classmethod
    def validate_transfer_id(cls, value: Any) -> ValidationResult:
        """Validate a 256-bit transfer identifier (64 lowercase hex chars)."""
        if isinstance(value, bytes):
            if len(value) != 32:
                return ValidationResult.failure(
                    InvalidTransferId(f"Transfer id must be 32 bytes, got {len(value)}")
                )
            return ValidationResult.success(value.hex())
        if not isinstance(value, str):
            return ValidationResult.failure(
                InvalidTransferId(f"Expected hex string, got {type(value).__name__}")
            )
        lower = value.strip().lower()
        if lower.startswith("0x"):
            lower = lower[2:]
        if not cls.HEX64_PATTERN.match(lower):
            return ValidationResult.failure(
                InvalidTransferId("Must be 64 lowercase hex characters", value=value)
            )
        return ValidationResult.success(lower)


def require_amount(value: Any, allow_zero: bool = False) -> int:
    result = Validators.validate_amount(value, allow_zero=allow_zero)
    result.raise_if_invalid()
    return result.sanitized_value


def require_address(value: Any, allow_zero: bool = False) -> str:
    result = Validators.validate_address(value, allow_zero=allow_zero)
    result.raise_if_invalid()
    return result.sanitized_value


# =============================================================================
# UNIT CONVERSION
# =============================================================================

def to_base_units(value: Union[str, int, Decimal], decimals: int = ASSET_DECIMALS) -> int:
    """
    Convert a human amount ("12.5") to integer base units (12_500_000).

    Amounts with more precision than the asset supports are rejected rather
    than rounded.
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(f"Not a valid decimal number: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Must be a finite number: {value!r}")
    exponent = amount.as_tuple().exponent
    if isinstance(exponent, int) and exponent < -decimals:
        raise InvalidAmount(f"At most {decimals} decimal places supported, got {value!r}")
    units = int(amount.scaleb(decimals))
    return require_amount(units, allow_zero=True)


def format_units(units: int, decimals: int = ASSET_DECIMALS) -> str:
    """Render base units as a fixed-point string."""
    quantum = Decimal(1).scaleb(-decimals)
    return str((Decimal(units).scaleb(-decimals)).quantize(quantum, rounding=ROUND_DOWN))


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value


# =============================================================================
# INVARIANTS
# =============================================================================

class InvariantViolation(Exception):
    """Ledger invariant violated."""
    pass


class InvariantChecker:
    """Enforces counter invariants."""

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def saturating_sub(a: int, b: int) -> int:
        """a - b floored at zero."""
        return a - b if a > b else 0


# =============================================================================
# DECORATOR UTILITIES
# =============================================================================

def non_reentrant(func: Callable) -> Callable:
    """
    Reject nested calls into any ``non_reentrant`` method of the same instance.

    The guard flag lives on the instance as ``_entered`` and is read and set
    under the instance's ``_lock`` when it has one, so callers on other
    threads wait instead of being rejected.
    """
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        with getattr(self, "_lock", None) or nullcontext():
            return _guarded(self, *args, **kwargs)

    def _guarded(self, *args, **kwargs):
        if getattr(self, "_entered", False):
            raise ReentrantCall(f"Re-entrant call into {func.__name__}")
        self._entered = True
        try:
            return func(self, *args, **kwargs)
        finally:
            self._entered = False
    return wrapper
