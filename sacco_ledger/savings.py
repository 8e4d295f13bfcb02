"""
Savings Account Ledger

Deposits, withdrawals and the savings side of loan payments and interest
postings. Every balance change happens inside the member's critical section
and writes exactly one ledger entry carrying the resulting balance.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from .currency import Money
from .members import Member, MemberRegistry
from .transactions import (
    Transaction, TransactionLog, TransactionType, TransactionStatus, PaymentMethod
)
from .coordinator import AccountCoordinator
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, create_transaction_event
from .errors import ConflictError, InsufficientFunds, ValidationError
from .ids import Clock, SystemClock
from .logging_config import log_action


class SavingsLedger:
    """
    Balance-affecting operations on a member's savings account
    """

    def __init__(
        self,
        members: MemberRegistry,
        transactions: TransactionLog,
        coordinator: AccountCoordinator,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None
    ):
        self.members = members
        self.transactions = transactions
        self.coordinator = coordinator
        self.audit_trail = audit_trail
        self.events = events
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger("sacco.savings")

    def deposit(
        self,
        member_id: str,
        amount: Money,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        processed_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        """
        Credit a member's savings

        Returns:
            Updated Member and the deposit Transaction
        """
        with self.coordinator.exclusive(member_id):
            member = self._require_transactable(member_id, amount)
            member.savings_balance = member.savings_balance + amount
            member.updated_at = self.clock.now()
            self.members.update_member(member)

            transaction = self.transactions.append(
                member_id=member.id,
                transaction_type=TransactionType.DEPOSIT,
                amount=amount,
                description=description or f"Savings deposit - {amount.to_string()}",
                payment_method=payment_method,
                balance_after=member.savings_balance,
                processed_by=processed_by
            )
            self._after_commit(AuditEventType.DEPOSIT_MADE, DomainEvent.DEPOSIT_RECEIVED,
                               "deposit", transaction)

        return member, transaction

    def withdraw(
        self,
        member_id: str,
        amount: Money,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        processed_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        """
        Debit a member's savings immediately

        Raises:
            InsufficientFunds: If amount exceeds the savings balance
        """
        with self.coordinator.exclusive(member_id):
            member = self._require_transactable(member_id, amount)
            self._check_sufficient(member, amount)
            member.savings_balance = member.savings_balance - amount
            member.updated_at = self.clock.now()
            self.members.update_member(member)

            transaction = self.transactions.append(
                member_id=member.id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=amount,
                description=description or f"Savings withdrawal - {amount.to_string()}",
                payment_method=payment_method,
                balance_after=member.savings_balance,
                processed_by=processed_by
            )
            self._after_commit(AuditEventType.WITHDRAWAL_MADE, DomainEvent.WITHDRAWAL_COMPLETED,
                               "withdraw", transaction)

        return member, transaction

    def request_withdrawal(
        self,
        member_id: str,
        amount: Money,
        payment_method: PaymentMethod = PaymentMethod.MOBILE_MONEY,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Record a pending withdrawal awaiting approval

        The balance is checked but not touched until approval.
        """
        with self.coordinator.exclusive(member_id):
            member = self._require_transactable(member_id, amount)
            self._check_sufficient(member, amount)

            transaction = self.transactions.append(
                member_id=member.id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=amount,
                description=description or "Withdrawal request - pending approval",
                payment_method=payment_method,
                status=TransactionStatus.PENDING
            )
            self._after_commit(AuditEventType.WITHDRAWAL_REQUESTED, DomainEvent.WITHDRAWAL_REQUESTED,
                               "request_withdrawal", transaction)

        return transaction

    def approve_withdrawal(
        self,
        transaction_id: str,
        approved_by: str,
        notes: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        """
        Complete a pending withdrawal, debiting the balance as of now

        Raises:
            ConflictError: If the request is no longer pending
            InsufficientFunds: If the balance no longer covers the request
        """
        request = self._require_pending_withdrawal(transaction_id)

        with self.coordinator.exclusive(request.member_id):
            request = self._require_pending_withdrawal(transaction_id)
            member = self._require_transactable(request.member_id, request.amount)
            self._check_sufficient(member, request.amount)

            member.savings_balance = member.savings_balance - request.amount
            member.updated_at = self.clock.now()
            self.members.update_member(member)

            transaction = self.transactions.transition_status(
                transaction_id,
                TransactionStatus.COMPLETED,
                processed_by=approved_by,
                notes=notes,
                balance_after=member.savings_balance
            )
            self._after_commit(AuditEventType.WITHDRAWAL_APPROVED, DomainEvent.WITHDRAWAL_COMPLETED,
                               "approve_withdrawal", transaction, user_id=approved_by)

        return member, transaction

    def cancel_withdrawal(
        self,
        transaction_id: str,
        reason: str,
        cancelled_by: Optional[str] = None
    ) -> Transaction:
        """Cancel a pending withdrawal; the balance is untouched"""
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")
        request = self._require_pending_withdrawal(transaction_id)

        with self.coordinator.exclusive(request.member_id):
            self._require_pending_withdrawal(transaction_id)
            transaction = self.transactions.transition_status(
                transaction_id,
                TransactionStatus.CANCELLED,
                processed_by=cancelled_by,
                notes=reason.strip()
            )
            self._after_commit(AuditEventType.WITHDRAWAL_CANCELLED, DomainEvent.WITHDRAWAL_CANCELLED,
                               "cancel_withdrawal", transaction, user_id=cancelled_by)

        return transaction

    def debit_for_loan_payment(
        self,
        member: Member,
        amount: Money,
        loan_id: str,
        payment_method: PaymentMethod = PaymentMethod.SAVINGS_DEDUCTION,
        processed_by: Optional[str] = None
    ) -> Transaction:
        """
        Move funds from savings to a loan

        The caller must hold the member's critical section and pass the
        member record it loaded inside it; ``member`` is updated in place.
        """
        self._check_amount(amount)
        if not member.is_active:
            raise ConflictError(f"Member {member.member_number} is {member.status.value}")
        self._check_sufficient(member, amount)

        member.savings_balance = member.savings_balance - amount
        member.updated_at = self.clock.now()
        self.members.update_member(member)

        return self.transactions.append(
            member_id=member.id,
            transaction_type=TransactionType.LOAN_PAYMENT,
            amount=amount,
            description=f"Loan payment - {amount.to_string()}",
            payment_method=payment_method,
            balance_after=member.savings_balance,
            loan_id=loan_id,
            processed_by=processed_by
        )

    def credit_interest(
        self,
        member: Member,
        amount: Money,
        period_start: datetime,
        period_end: datetime,
        description: str,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        Post interest to savings

        The caller must hold the member's critical section; ``member`` is
        updated in place.
        """
        self._check_amount(amount)

        member.savings_balance = member.savings_balance + amount
        member.updated_at = self.clock.now()
        self.members.update_member(member)

        return self.transactions.append(
            member_id=member.id,
            transaction_type=TransactionType.INTEREST_EARNED,
            amount=amount,
            description=description,
            payment_method=PaymentMethod.SYSTEM,
            balance_after=member.savings_balance,
            period_start=period_start,
            period_end=period_end,
            notes=notes
        )

    def get_balance(self, member_id: str) -> Money:
        """Current savings balance"""
        return self.members.require_member(member_id).savings_balance

    def _check_amount(self, amount: Money) -> None:
        if not isinstance(amount, Money):
            raise ValidationError("Amount must be a Money value")
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")

    def _check_sufficient(self, member: Member, amount: Money) -> None:
        if amount > member.savings_balance:
            log_action(self.logger, "warning", "Insufficient savings balance",
                       member_id=member.id, action="balance_check",
                       extra={"requested": str(amount.amount),
                              "available": str(member.savings_balance.amount)})
            raise InsufficientFunds(
                f"Insufficient savings balance: available {member.savings_balance.to_string()}, "
                f"requested {amount.to_string()}",
                available=member.savings_balance,
                requested=amount
            )

    def _require_transactable(self, member_id: str, amount: Money) -> Member:
        self._check_amount(amount)
        member = self.members.require_member(member_id)
        if not member.is_active:
            raise ConflictError(f"Member {member.member_number} is {member.status.value}")
        if amount.currency != member.currency:
            raise ValidationError(
                f"Amount currency {amount.currency.code} does not match account currency {member.currency.code}"
            )
        return member

    def _require_pending_withdrawal(self, transaction_id: str) -> Transaction:
        transaction = self.transactions.require(transaction_id)
        if transaction.transaction_type != TransactionType.WITHDRAWAL:
            raise ConflictError(f"Transaction {transaction.reference} is not a withdrawal")
        if not transaction.is_pending:
            raise ConflictError(
                f"Withdrawal {transaction.reference} is {transaction.status.value}, not pending"
            )
        return transaction

    def _after_commit(
        self,
        audit_type: AuditEventType,
        event_type: DomainEvent,
        action: str,
        transaction: Transaction,
        user_id: Optional[str] = None
    ) -> None:
        def committed():
            log_action(self.logger, "info", f"{action} {transaction.amount.to_string()}",
                       member_id=transaction.member_id, action=action, resource=transaction.id,
                       extra={"reference": transaction.reference,
                              "status": transaction.status.value})
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=audit_type,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={
                        "member_id": transaction.member_id,
                        "amount": transaction.amount.amount,
                        "reference": transaction.reference,
                        "balance_after": transaction.balance_after.amount if transaction.balance_after else None
                    },
                    user_id=user_id or transaction.processed_by
                )
            if self.events:
                self.events.publish(create_transaction_event(event_type, transaction))

        self.coordinator.after_commit(committed)
