"""
Tests for the savings account ledger

Balances never go negative and a rejected command leaves no trace.
"""

import pytest
from decimal import Decimal

from sacco_ledger.audit import AuditEventType
from sacco_ledger.config import SaccoConfig
from sacco_ledger.currency import Currency, Money
from sacco_ledger.engine import SaccoEngine
from sacco_ledger.errors import ConflictError, InsufficientFunds, NotFound, ValidationError
from sacco_ledger.events import DomainEvent
from sacco_ledger.ids import FixedClock, SequentialIdGenerator
from sacco_ledger.members import MemberStatus
from sacco_ledger.storage import InMemoryStorage
from sacco_ledger.transactions import PaymentMethod, TransactionStatus, TransactionType


def ugx(amount):
    return Money(Decimal(amount), Currency.UGX)


class TestSavingsLedger:
    """Test deposits and immediate withdrawals"""

    def setup_method(self):
        self.clock = FixedClock()
        self.engine = SaccoEngine(
            config=SaccoConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            id_generator=SequentialIdGenerator(),
            clock=self.clock
        )
        self.savings = self.engine.savings
        self.member = self.engine.register_member("Grace", "Nakato")

    def test_deposit(self):
        member, transaction = self.savings.deposit(self.member.id, ugx(5000), PaymentMethod.MOBILE_MONEY)

        assert member.savings_balance == ugx(5000)
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.amount == ugx(5000)
        assert transaction.balance_after == ugx(5000)
        assert transaction.payment_method == PaymentMethod.MOBILE_MONEY
        assert self.savings.get_balance(self.member.id) == ugx(5000)

    def test_withdraw(self):
        self.savings.deposit(self.member.id, ugx(5000))
        member, transaction = self.savings.withdraw(self.member.id, ugx(1500))

        assert member.savings_balance == ugx(3500)
        assert transaction.transaction_type == TransactionType.WITHDRAWAL
        assert transaction.balance_after == ugx(3500)

    def test_overdraw_rejected_and_balance_unchanged(self):
        """Balance 5,000; withdrawing 6,000 fails"""
        self.savings.deposit(self.member.id, ugx(5000))

        with pytest.raises(InsufficientFunds) as exc_info:
            self.savings.withdraw(self.member.id, ugx(6000))

        assert exc_info.value.available == ugx(5000)
        assert exc_info.value.requested == ugx(6000)
        assert self.savings.get_balance(self.member.id) == ugx(5000)
        assert len(self.engine.get_transactions(self.member.id)) == 1

    def test_withdraw_entire_balance(self):
        self.savings.deposit(self.member.id, ugx(5000))
        member, _ = self.savings.withdraw(self.member.id, ugx(5000))
        assert member.savings_balance.is_zero()

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amounts_rejected(self, amount):
        with pytest.raises(ValidationError):
            self.savings.deposit(self.member.id, ugx(amount))
        with pytest.raises(ValidationError):
            self.savings.withdraw(self.member.id, ugx(amount))

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            self.savings.deposit(self.member.id, Money(Decimal("10.00"), Currency.KES))

    def test_unknown_member(self):
        with pytest.raises(NotFound):
            self.savings.deposit("mem-404", ugx(100))

    def test_inactive_member_cannot_transact(self):
        self.engine.members.set_status(self.member.id, MemberStatus.SUSPENDED)
        with pytest.raises(ConflictError):
            self.savings.deposit(self.member.id, ugx(100))

    def test_committed_changes_are_audited_and_published(self):
        received = []
        self.engine.events.subscribe(DomainEvent.DEPOSIT_RECEIVED, received.append)

        _, transaction = self.savings.deposit(self.member.id, ugx(5000), processed_by="teller-1")

        audit = self.engine.audit_trail.get_events_by_type(AuditEventType.DEPOSIT_MADE)
        assert len(audit) == 1
        assert audit[0].entity_id == transaction.id
        assert audit[0].user_id == "teller-1"
        assert audit[0].metadata["balance_after"] == "5000"
        assert received[0].data["amount"] == "5000"

    def test_rejected_command_is_not_audited(self):
        with pytest.raises(InsufficientFunds):
            self.savings.withdraw(self.member.id, ugx(100))
        assert self.engine.audit_trail.get_events_by_type(AuditEventType.WITHDRAWAL_MADE) == []

    def test_balance_never_negative_across_mixed_operations(self):
        operations = [("deposit", 3000), ("withdraw", 2000), ("withdraw", 1500),
                      ("deposit", 700), ("withdraw", 1700), ("withdraw", 1)]
        for kind, amount in operations:
            try:
                getattr(self.savings, kind)(self.member.id, ugx(amount))
            except InsufficientFunds:
                pass
            assert not self.savings.get_balance(self.member.id).is_negative()
        assert self.savings.get_balance(self.member.id) == ugx(0)


class TestTwoStepWithdrawal:
    """Test request, approval and cancellation of withdrawals"""

    def setup_method(self):
        self.clock = FixedClock()
        self.engine = SaccoEngine(
            config=SaccoConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            id_generator=SequentialIdGenerator(),
            clock=self.clock
        )
        self.savings = self.engine.savings
        self.member = self.engine.register_member("Grace", "Nakato")
        self.savings.deposit(self.member.id, ugx(10000))

    def test_request_leaves_balance_untouched(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))

        assert request.status == TransactionStatus.PENDING
        assert request.payment_method == PaymentMethod.MOBILE_MONEY
        assert request.balance_after is None
        assert self.savings.get_balance(self.member.id) == ugx(10000)

    def test_request_checks_sufficiency(self):
        with pytest.raises(InsufficientFunds):
            self.savings.request_withdrawal(self.member.id, ugx(10001))

    def test_approve_debits_balance(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))
        self.clock.advance(hours=1)

        member, transaction = self.savings.approve_withdrawal(request.id, "officer-1", notes="Sent via MoMo")

        assert member.savings_balance == ugx(6000)
        assert transaction.id == request.id
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.balance_after == ugx(6000)
        assert transaction.processed_by == "officer-1"
        assert transaction.notes == "Sent via MoMo"

    def test_approve_rechecks_balance(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(8000))
        self.savings.withdraw(self.member.id, ugx(5000))

        with pytest.raises(InsufficientFunds):
            self.savings.approve_withdrawal(request.id, "officer-1")

        assert self.engine.transactions.require(request.id).is_pending
        assert self.savings.get_balance(self.member.id) == ugx(5000)

    def test_cancel(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))

        cancelled = self.savings.cancel_withdrawal(request.id, "Member changed their mind", "officer-2")

        assert cancelled.status == TransactionStatus.CANCELLED
        assert cancelled.notes == "Member changed their mind"
        assert self.savings.get_balance(self.member.id) == ugx(10000)

    def test_cancel_requires_reason(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))
        with pytest.raises(ValidationError):
            self.savings.cancel_withdrawal(request.id, "   ")

    def test_decided_request_cannot_be_decided_again(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))
        self.savings.cancel_withdrawal(request.id, "duplicate request")

        with pytest.raises(ConflictError):
            self.savings.approve_withdrawal(request.id, "officer-1")
        with pytest.raises(ConflictError):
            self.savings.cancel_withdrawal(request.id, "again")

    def test_only_withdrawals_can_be_approved(self):
        _, deposit = self.savings.deposit(self.member.id, ugx(100))
        with pytest.raises(ConflictError):
            self.savings.approve_withdrawal(deposit.id, "officer-1")

    def test_audit_trail_records_each_step(self):
        request = self.savings.request_withdrawal(self.member.id, ugx(4000))
        self.savings.approve_withdrawal(request.id, "officer-1")

        types = [e.event_type for e in self.engine.audit_trail.get_events_for_entity("transaction", request.id)]
        assert types == [AuditEventType.WITHDRAWAL_REQUESTED, AuditEventType.WITHDRAWAL_APPROVED]
