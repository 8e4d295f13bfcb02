"""
Event System Module

Publish/subscribe dispatcher for domain events. Events are published only
after the member's critical section has committed and released its lock,
so subscribers never observe rolled-back state and cannot stall other
commands on the same member.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Member events
    MEMBER_REGISTERED = "member.registered"

    # Savings events
    DEPOSIT_RECEIVED = "savings.deposit"
    WITHDRAWAL_COMPLETED = "savings.withdrawal"
    WITHDRAWAL_REQUESTED = "savings.withdrawal_requested"
    WITHDRAWAL_CANCELLED = "savings.withdrawal_cancelled"

    # Loan events
    LOAN_APPLIED = "loan.applied"
    LOAN_APPROVED = "loan.approved"
    LOAN_ACTIVATED = "loan.activated"
    LOAN_REJECTED = "loan.rejected"
    LOAN_PAYMENT = "loan.payment"
    LOAN_PAID_OFF = "loan.paid_off"

    # Interest events
    INTEREST_POSTED = "interest.posted"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("sacco.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers

        Handler failures are logged and never propagate to the publisher.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_transaction_event(event_type: DomainEvent, transaction) -> EventPayload:
    """Create a ledger-transaction event"""
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id=transaction.id,
        timestamp=transaction.timestamp,
        data={
            "member_id": transaction.member_id,
            "transaction_type": transaction.transaction_type.value,
            "amount": str(transaction.amount.amount),
            "currency": transaction.amount.currency.code,
            "status": transaction.status.value,
            "balance_after": str(transaction.balance_after.amount) if transaction.balance_after else None,
            "loan_id": transaction.loan_id,
        }
    )


def create_loan_event(event_type: DomainEvent, loan, transaction_id: Optional[str] = None) -> EventPayload:
    """Create a loan-related event, naming the ledger transaction when there is one"""
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        timestamp=loan.updated_at,
        data={
            "member_id": loan.member_id,
            "status": loan.status.value,
            "principal": str(loan.principal.amount),
            "remaining_balance": str(loan.remaining_balance.amount),
            "currency": loan.principal.currency.code,
            "transaction_id": transaction_id,
        }
    )


def create_member_event(event_type: DomainEvent, member) -> EventPayload:
    """Create a member-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="member",
        entity_id=member.id,
        timestamp=member.updated_at,
        data={
            "member_number": member.member_number,
            "status": member.status.value,
            "savings_balance": str(member.savings_balance.amount),
            "loan_balance": str(member.loan_balance.amount),
        }
    )
