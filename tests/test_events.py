"""
Tests for the event dispatcher
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

from sacco_ledger.currency import Currency, Money
from sacco_ledger.events import (
    DomainEvent, EventDispatcher, EventPayload, create_transaction_event
)
from sacco_ledger.ids import FixedClock
from sacco_ledger.transactions import (
    Transaction, TransactionCategory, TransactionType
)


def make_payload(event_type=DomainEvent.DEPOSIT_RECEIVED):
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id="txn-000001",
        data={"amount": "5000", "currency": "UGX"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = make_payload()
        assert event.event_type == DomainEvent.DEPOSIT_RECEIVED
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = make_payload(DomainEvent.LOAN_APPROVED)
        event_dict = original.to_dict()
        assert event_dict["event_type"] == "loan.approved"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id

    def test_create_transaction_event(self):
        now = FixedClock().now()
        transaction = Transaction(
            id="txn-000001",
            created_at=now,
            updated_at=now,
            member_id="mem-000001",
            transaction_type=TransactionType.DEPOSIT,
            category=TransactionCategory.SAVINGS,
            amount=Money(Decimal("5000"), Currency.UGX),
            timestamp=now,
            reference="TXN00000001",
            receipt_number="RCPT00000001",
            description="Savings deposit",
            balance_after=Money(Decimal("5000"), Currency.UGX)
        )

        event = create_transaction_event(DomainEvent.DEPOSIT_RECEIVED, transaction)
        assert event.entity_id == "txn-000001"
        assert event.timestamp == now
        assert event.data["amount"] == "5000"
        assert event.data["balance_after"] == "5000"
        assert event.data["transaction_type"] == "deposit"


class TestEventDispatcher:
    """Test subscribe/publish behaviour"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_publish_to_specific_subscribers(self):
        handler = Mock()
        other = Mock()
        self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, handler)
        self.dispatcher.subscribe(DomainEvent.LOAN_APPLIED, other)

        event = make_payload()
        self.dispatcher.publish(event)

        handler.assert_called_once_with(event)
        other.assert_not_called()

    def test_global_handlers_receive_everything(self):
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.publish(make_payload(DomainEvent.DEPOSIT_RECEIVED))
        self.dispatcher.publish(make_payload(DomainEvent.INTEREST_POSTED))

        assert handler.call_count == 2

    def test_failing_handler_does_not_stop_others(self):
        failing = Mock(side_effect=RuntimeError("handler down"))
        healthy = Mock()
        self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, failing)
        self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, healthy)

        self.dispatcher.publish(make_payload())

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_handler_may_subscribe_during_publish(self):
        late = Mock()

        def subscribing_handler(event):
            self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, late)

        self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, subscribing_handler)
        self.dispatcher.publish(make_payload())

        late.assert_not_called()
        self.dispatcher.publish(make_payload())
        late.assert_called_once()

    def test_unsubscribe_and_counts(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.DEPOSIT_RECEIVED, handler)
        self.dispatcher.subscribe_all(Mock())
        assert self.dispatcher.get_handler_count(DomainEvent.DEPOSIT_RECEIVED) == 1
        assert self.dispatcher.get_handler_count() == 2

        self.dispatcher.unsubscribe(DomainEvent.DEPOSIT_RECEIVED, handler)
        self.dispatcher.unsubscribe(DomainEvent.DEPOSIT_RECEIVED, handler)
        assert self.dispatcher.get_handler_count(DomainEvent.DEPOSIT_RECEIVED) == 0

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0
