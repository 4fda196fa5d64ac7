"""
Cross-Domain Transport

A transport moves value (or a value request) between the home and remote
domains. Every call returns an opaque, caller-unforgeable ``TransferId`` that
later correlates with exactly one delivery.

Message flow:

    home ─── DEPOSIT ──────────────▶ remote     value burned on home, minted on remote
    home ─── WITHDRAWAL_REQUEST ───▶ remote     intent only, no value moves
    home ◀── RETURN ─────────────── remote      value burned on remote, minted on home

Messages stay IN_FLIGHT until a keeper calls ``deliver``. Delivery happens at
most once per message.

Two flavours share the ``TransportAdapter`` interface:

    BurnMintTransport    nonce-derived ids, Ed25519 attestation checked on delivery
    SwapRouteTransport   salted counter ids, route fee deducted from delivered value

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import json
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from settlement.config import get_config
from settlement.domain import Domain
from settlement.errors import (
    AmountBelowMinimum,
    AttestationInvalid,
    InvalidTransferState,
    SettlementValidationError,
    TransferNotFound,
)
from settlement.hardening import AtomicCounter, Validators, require_address, require_amount
from settlement.observability import SettlementLayer, get_logger


# =============================================================================
# IDENTIFIERS
# =============================================================================

@dataclass(frozen=True, order=True)
class TransferId:
    """256-bit transfer identifier, stored as 64 lowercase hex characters."""
    value: str

    def __post_init__(self):
        result = Validators.validate_transfer_id(self.value)
        result.raise_if_invalid()
        object.__setattr__(self, "value", result.sanitized_value)

    @classmethod
    def from_digest(cls, digest: bytes) -> "TransferId":
        return cls(digest.hex())

    @classmethod
    def coerce(cls, value: Union["TransferId", str, bytes]) -> "TransferId":
        return value if isinstance(value, TransferId) else cls(value)

    def __str__(self) -> str:
        return self.value


def _digest(parts: Dict[str, Any]) -> bytes:
    canonical = json.dumps(parts, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).digest()


# =============================================================================
# MESSAGES
# =============================================================================

class TransportKind(Enum):
    """Concrete transport flavours."""
    BURN_MINT = "burn_mint"
    SWAP_ROUTE = "swap_route"


class MessageKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL_REQUEST = "withdrawal_request"
    RETURN = "return"

    @property
    def carries_value(self) -> bool:
        return self is not MessageKind.WITHDRAWAL_REQUEST


class MessageStatus(Enum):
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"


@dataclass
class TransferMessage:
    """One cross-domain message."""
    transfer_id: TransferId
    kind: MessageKind
    amount: int
    sender: str
    recipient: str
    source_domain: int
    destination_domain: int
    nonce: int
    created_at: int
    correlates_with: Optional[TransferId] = None
    status: MessageStatus = MessageStatus.IN_FLIGHT
    delivered_amount: int = 0
    delivered_at: Optional[int] = None
    delivery_seq: Optional[int] = None
    attestation: bytes = field(default=b"", repr=False)

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the attestation."""
        body = {
            "transfer_id": str(self.transfer_id),
            "kind": self.kind.value,
            "amount": self.amount,
            "sender": self.sender,
            "recipient": self.recipient,
            "source_domain": self.source_domain,
            "destination_domain": self.destination_domain,
            "nonce": self.nonce,
            "correlates_with": str(self.correlates_with) if self.correlates_with else None,
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": str(self.transfer_id),
            "kind": self.kind.value,
            "amount": self.amount,
            "sender": self.sender,
            "recipient": self.recipient,
            "source_domain": self.source_domain,
            "destination_domain": self.destination_domain,
            "nonce": self.nonce,
            "created_at": self.created_at,
            "correlates_with": str(self.correlates_with) if self.correlates_with else None,
            "status": self.status.value,
            "delivered_amount": self.delivered_amount,
            "delivered_at": self.delivered_at,
            "delivery_seq": self.delivery_seq,
        }


# =============================================================================
# TRANSPORT ADAPTER
# =============================================================================

class TransportAdapter(ABC):
    """
    Moves value between the home and the remote domain.

    The adapter must be bound to its two endpoints (the controller address on
    the home domain, the agent address on the remote domain) before use.
    """

    def __init__(
        self,
        home: Domain,
        remote: Domain,
        min_amount: Optional[int] = None,
        name: str = "",
    ):
        self.home = home
        self.remote = remote
        self.name = name or self.kind.value
        if min_amount is None:
            min_amount = get_config().transport.min_bridge_amount.get()
        self.min_amount = require_amount(min_amount, allow_zero=True)
        self.home_endpoint: Optional[str] = None
        self.remote_endpoint: Optional[str] = None
        self._messages: Dict[TransferId, TransferMessage] = {}
        self._nonce = AtomicCounter(0)
        self._deliveries = AtomicCounter(0)
        self._lock = threading.RLock()
        self._log = get_logger(self.name, SettlementLayer.TRANSPORT)

    @property
    @abstractmethod
    def kind(self) -> TransportKind:
        ...

    @abstractmethod
    def _new_transfer_id(self, kind: MessageKind, sender: str, recipient: str, amount: int, nonce: int) -> TransferId:
        ...

    def _seal(self, message: TransferMessage) -> None:
        """Attach any integrity material before the message leaves."""

    def _verify(self, message: TransferMessage) -> None:
        """Check integrity material on delivery."""

    def _delivered_amount(self, message: TransferMessage) -> int:
        return message.amount

    def bind(self, home_endpoint: str, remote_endpoint: str) -> None:
        self.home_endpoint = require_address(home_endpoint)
        self.remote_endpoint = require_address(remote_endpoint)

    def _require_bound(self) -> None:
        if not self.home_endpoint or not self.remote_endpoint:
            raise SettlementValidationError(f"Transport {self.name} is not bound to endpoints")

    # -------------------------------------------------------------------------
    # Home-side primitives
    # -------------------------------------------------------------------------

    def initiate_deposit(self, sender: str, amount: int) -> TransferId:
        """
        Burn ``amount`` from ``sender`` on the home ledger and queue it for the
        remote agent.

        Raises AmountBelowMinimum before touching any balance.
        """
        self._require_bound()
        sender = require_address(sender)
        amount = require_amount(amount)
        if amount < self.min_amount:
            raise AmountBelowMinimum(amount=amount, minimum=self.min_amount)

        with self._lock:
            self.home.ledger.burn(sender, amount)
            message = self._enqueue(
                MessageKind.DEPOSIT, amount, sender, self.remote_endpoint,
                self.home, self.remote,
            )
        self._log.info(
            "Deposit initiated",
            operation="initiate_deposit",
            transfer_id=str(message.transfer_id),
            amount=amount,
        )
        return message.transfer_id

    def initiate_withdrawal(self, amount: int) -> TransferId:
        """Record a withdrawal intent; no value moves."""
        self._require_bound()
        amount = require_amount(amount)
        with self._lock:
            message = self._enqueue(
                MessageKind.WITHDRAWAL_REQUEST, amount, self.home_endpoint, self.remote_endpoint,
                self.home, self.remote,
            )
        self._log.info(
            "Withdrawal request queued",
            operation="initiate_withdrawal",
            transfer_id=str(message.transfer_id),
            amount=amount,
        )
        return message.transfer_id

    # -------------------------------------------------------------------------
    # Remote-side primitive
    # -------------------------------------------------------------------------

    def send_to_home(self, sender: str, amount: int, withdrawal_id: Union[TransferId, str]) -> TransferId:
        """Burn ``amount`` from ``sender`` on the remote ledger and queue the return leg."""
        self._require_bound()
        sender = require_address(sender)
        amount = require_amount(amount)
        withdrawal_id = TransferId.coerce(withdrawal_id)
        with self._lock:
            self.remote.ledger.burn(sender, amount)
            message = self._enqueue(
                MessageKind.RETURN, amount, sender, self.home_endpoint,
                self.remote, self.home, correlates_with=withdrawal_id,
            )
        self._log.info(
            "Return leg queued",
            operation="send_to_home",
            transfer_id=str(message.transfer_id),
            withdrawal_id=str(withdrawal_id),
            amount=amount,
        )
        return message.transfer_id

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _enqueue(
        self,
        kind: MessageKind,
        amount: int,
        sender: str,
        recipient: str,
        source: Domain,
        destination: Domain,
        correlates_with: Optional[TransferId] = None,
    ) -> TransferMessage:
        nonce = self._nonce.increment()
        transfer_id = self._new_transfer_id(kind, sender, recipient, amount, nonce)
        if transfer_id in self._messages:
            raise InvalidTransferState(expected="NONE", actual="IN_FLIGHT", transfer_id=transfer_id)
        message = TransferMessage(
            transfer_id=transfer_id,
            kind=kind,
            amount=amount,
            sender=sender,
            recipient=recipient,
            source_domain=source.domain_id,
            destination_domain=destination.domain_id,
            nonce=nonce,
            created_at=source.now(),
            correlates_with=correlates_with,
        )
        self._seal(message)
        self._messages[transfer_id] = message
        return message

    def get_message(self, transfer_id: Union[TransferId, str]) -> Optional[TransferMessage]:
        with self._lock:
            return self._messages.get(TransferId.coerce(transfer_id))

    def messages(
        self,
        kind: Optional[MessageKind] = None,
        status: Optional[MessageStatus] = None,
    ) -> List[TransferMessage]:
        """All messages in creation order, optionally filtered."""
        with self._lock:
            messages = list(self._messages.values())
        if kind is not None:
            messages = [m for m in messages if m.kind == kind]
        if status is not None:
            messages = [m for m in messages if m.status == status]
        return sorted(messages, key=lambda m: m.nonce)

    def pending_messages(self, kind: Optional[MessageKind] = None) -> List[TransferMessage]:
        """In-flight messages in creation order."""
        return self.messages(kind=kind, status=MessageStatus.IN_FLIGHT)

    def delivered_through(self, kind: MessageKind, delivery_seq: int) -> int:
        """Total amount delivered by ``kind`` messages up to and including ``delivery_seq``."""
        return sum(
            m.delivered_amount for m in self.messages(kind=kind, status=MessageStatus.DELIVERED)
            if m.delivery_seq <= delivery_seq
        )

    def deliver(self, transfer_id: Union[TransferId, str]) -> TransferMessage:
        """
        Complete delivery of one message.

        Value-carrying messages mint the delivered amount to the recipient on
        the destination ledger. A message is delivered at most once.
        """
        transfer_id = TransferId.coerce(transfer_id)
        with self._lock:
            message = self._messages.get(transfer_id)
            if message is None:
                raise TransferNotFound(transfer_id)
            if message.status != MessageStatus.IN_FLIGHT:
                raise InvalidTransferState(
                    expected=MessageStatus.IN_FLIGHT,
                    actual=message.status,
                    transfer_id=transfer_id,
                )
            self._verify(message)

            destination = self.remote if message.destination_domain == self.remote.domain_id else self.home
            delivered = self._delivered_amount(message) if message.kind.carries_value else 0
            if delivered:
                destination.ledger.mint(message.recipient, delivered)

            message.delivered_amount = delivered
            message.delivered_at = destination.now()
            message.delivery_seq = self._deliveries.increment()
            message.status = MessageStatus.DELIVERED

        self._log.info(
            "Message delivered",
            operation="deliver",
            transfer_id=str(transfer_id),
            kind=message.kind.value,
            delivered_amount=delivered,
        )
        return message

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            messages = list(self._messages.values())
        by_kind: Dict[str, int] = {}
        for m in messages:
            by_kind[m.kind.value] = by_kind.get(m.kind.value, 0) + 1
        return {
            "transport": self.name,
            "kind": self.kind.value,
            "total": len(messages),
            "in_flight": sum(1 for m in messages if m.status == MessageStatus.IN_FLIGHT),
            "by_kind": by_kind,
        }


# =============================================================================
# BURN / MINT
# =============================================================================

class BurnMintTransport(TransportAdapter):
    """
    Burn on the source ledger, mint on the destination after attestation.

    Transfer ids are content-addressed over (source domain, destination
    domain, nonce, sender, recipient, amount). Every message is signed by
    the attester key; ``deliver`` refuses messages whose attestation does
    not verify.
    """

    def __init__(
        self,
        home: Domain,
        remote: Domain,
        min_amount: Optional[int] = None,
        attester_key: Optional[Ed25519PrivateKey] = None,
        name: str = "",
    ):
        self._attester_key = attester_key or Ed25519PrivateKey.generate()
        super().__init__(home, remote, min_amount=min_amount, name=name)

    @property
    def kind(self) -> TransportKind:
        return TransportKind.BURN_MINT

    @property
    def attester_public_key(self) -> Ed25519PublicKey:
        return self._attester_key.public_key()

    def _new_transfer_id(self, kind: MessageKind, sender: str, recipient: str, amount: int, nonce: int) -> TransferId:
        source, destination = (
            (self.remote, self.home) if kind == MessageKind.RETURN else (self.home, self.remote)
        )
        return TransferId.from_digest(_digest({
            "transport": self.kind.value,
            "kind": kind.value,
            "source_domain": source.domain_id,
            "destination_domain": destination.domain_id,
            "nonce": nonce,
            "sender": sender,
            "recipient": recipient,
            "amount": amount,
        }))

    def _seal(self, message: TransferMessage) -> None:
        message.attestation = self._attester_key.sign(message.signing_payload())

    def _verify(self, message: TransferMessage) -> None:
        try:
            self.attester_public_key.verify(message.attestation, message.signing_payload())
        except InvalidSignature:
            raise AttestationInvalid(
                f"Attestation does not verify for {message.transfer_id}",
                transfer_id=str(message.transfer_id),
            )


# =============================================================================
# SWAP / ROUTE
# =============================================================================

class SwapRouteTransport(TransportAdapter):
    """
    Route-quoted swap between domains.

    A route fee (basis points) is deducted from every value-carrying
    delivery, so the amount that lands can be below the amount sent.
    """

    def __init__(
        self,
        home: Domain,
        remote: Domain,
        min_amount: Optional[int] = None,
        fee_bps: Optional[int] = None,
        route_id: str = "",
        name: str = "",
    ):
        if fee_bps is None:
            fee_bps = get_config().transport.route_fee_bps.get()
        if not 0 <= fee_bps < 10_000:
            raise SettlementValidationError(f"fee_bps out of range: {fee_bps}")
        self.fee_bps = fee_bps
        self.route_id = route_id or f"route-{home.domain_id}-{remote.domain_id}"
        self._salt = secrets.token_hex(16)
        super().__init__(home, remote, min_amount=min_amount, name=name)

    @property
    def kind(self) -> TransportKind:
        return TransportKind.SWAP_ROUTE

    def _new_transfer_id(self, kind: MessageKind, sender: str, recipient: str, amount: int, nonce: int) -> TransferId:
        return TransferId.from_digest(_digest({
            "route_id": self.route_id,
            "counter": nonce,
            "salt": self._salt,
        }))

    def quote(self, amount: int) -> int:
        """Amount that lands after the route fee."""
        return amount - (amount * self.fee_bps) // 10_000

    def _delivered_amount(self, message: TransferMessage) -> int:
        return self.quote(message.amount)


def create_transport(kind: TransportKind, home: Domain, remote: Domain, **kwargs: Any) -> TransportAdapter:
    """Build a transport of the given flavour."""
    if kind == TransportKind.BURN_MINT:
        return BurnMintTransport(home, remote, **kwargs)
    if kind == TransportKind.SWAP_ROUTE:
        return SwapRouteTransport(home, remote, **kwargs)
    raise SettlementValidationError(f"Unknown transport kind: {kind}")
