"""
Transaction Log Module

Append-only record of every movement on a member's savings and loans:
deposits, withdrawals, loan payments, loan disbursements and interest
postings. Entries are immutable once written; only a pending entry may
change status, to completed, failed or cancelled.
"""

import logging
import threading
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .errors import ConflictError, NotFound, ValidationError
from .ids import Clock, IdGenerator, SystemClock, UuidIdGenerator


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_PAYMENT = "loan_payment"            # Savings debited to repay a loan
    LOAN_DISBURSEMENT = "loan_disbursement"  # Loan principal released to the member
    INTEREST_EARNED = "interest_earned"      # Savings interest credited


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionCategory(Enum):
    """Book a transaction belongs to"""
    SAVINGS = "savings"
    LOAN = "loan"
    INTEREST = "interest"


class PaymentMethod(Enum):
    """How money moved"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    AIRTEL_MONEY = "airtel_money"
    CARD = "card"
    CHEQUE = "cheque"
    SAVINGS_DEDUCTION = "savings_deduction"
    SYSTEM = "system"  # Interest postings and other engine-generated entries


TRANSACTION_CATEGORIES = {
    TransactionType.DEPOSIT: TransactionCategory.SAVINGS,
    TransactionType.WITHDRAWAL: TransactionCategory.SAVINGS,
    TransactionType.LOAN_PAYMENT: TransactionCategory.LOAN,
    TransactionType.LOAN_DISBURSEMENT: TransactionCategory.LOAN,
    TransactionType.INTEREST_EARNED: TransactionCategory.INTEREST,
}

# Types that move the savings balance, with their sign
SAVINGS_CREDIT_TYPES = (TransactionType.DEPOSIT, TransactionType.INTEREST_EARNED)
SAVINGS_DEBIT_TYPES = (TransactionType.WITHDRAWAL, TransactionType.LOAN_PAYMENT)


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger entry
    """
    member_id: str
    transaction_type: TransactionType
    category: TransactionCategory
    amount: Money
    timestamp: datetime
    reference: str
    receipt_number: str
    description: str
    payment_method: PaymentMethod = PaymentMethod.CASH
    status: TransactionStatus = TransactionStatus.COMPLETED
    balance_after: Optional[Money] = None
    loan_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING


class TransactionLog:
    """
    Append-only transaction store

    Reference and receipt numbers are allocated from one counter per log,
    seeded from the number of stored entries.
    """

    def __init__(
        self,
        storage: StorageInterface,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.id_generator = id_generator or UuidIdGenerator()
        self.clock = clock or SystemClock()
        self.table_name = "ledger_transactions"
        self.logger = logging.getLogger("sacco.transactions")
        self._sequence_lock = threading.Lock()
        self._sequence: Optional[int] = None

    def _next_sequence(self) -> int:
        with self._sequence_lock:
            if self._sequence is None:
                self._sequence = self.storage.count(self.table_name)
            self._sequence += 1
            return self._sequence

    def append(
        self,
        member_id: str,
        transaction_type: TransactionType,
        amount: Money,
        description: str,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        balance_after: Optional[Money] = None,
        loan_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        Write a new ledger entry

        Returns:
            The stored Transaction
        """
        now = self.clock.now()
        sequence = self._next_sequence()
        transaction = Transaction(
            id=self.id_generator.next_id("txn"),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            transaction_type=transaction_type,
            category=TRANSACTION_CATEGORIES[transaction_type],
            amount=amount,
            timestamp=now,
            reference=f"TXN{sequence:08d}",
            receipt_number=f"RCPT{sequence:08d}",
            description=description,
            payment_method=payment_method,
            status=status,
            balance_after=balance_after,
            loan_id=loan_id,
            period_start=period_start,
            period_end=period_end,
            processed_by=processed_by,
            processed_at=now if status != TransactionStatus.PENDING else None,
            notes=notes
        )
        self._save_transaction(transaction)
        return transaction

    def transition_status(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None,
        balance_after: Optional[Money] = None
    ) -> Transaction:
        """
        Move a pending entry to a terminal status

        Raises:
            NotFound: If the transaction does not exist
            ConflictError: If the entry is not pending or the target is pending
        """
        transaction = self.require(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            raise ConflictError(
                f"Transaction {transaction.reference} is {transaction.status.value}, not pending"
            )
        if new_status == TransactionStatus.PENDING:
            raise ConflictError("A pending transaction can only move to a terminal status")

        now = self.clock.now()
        transaction.status = new_status
        transaction.processed_by = processed_by
        transaction.processed_at = now
        transaction.updated_at = now
        if notes is not None:
            transaction.notes = notes
        if balance_after is not None:
            transaction.balance_after = balance_after

        self._save_transaction(transaction)
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def require(self, transaction_id: str) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        return transaction

    def list_for_member(
        self,
        member_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """
        Get a member's transactions in posting order

        Args:
            member_id: Member ID
            transaction_type: Only this type when given
            status: Only this status when given
            start: Timestamp lower bound (inclusive)
            end: Timestamp upper bound (exclusive)
        """
        filters = {'member_id': member_id}
        if transaction_type is not None:
            filters['transaction_type'] = transaction_type.value
        if status is not None:
            filters['status'] = status.value

        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, filters)
        ]
        if start is not None:
            transactions = [t for t in transactions if t.timestamp >= start]
        if end is not None:
            transactions = [t for t in transactions if t.timestamp < end]

        transactions.sort(key=lambda t: (t.timestamp, t.reference))
        return transactions

    def list_for_loan(self, loan_id: str) -> List[Transaction]:
        """Get all transactions linked to a loan in posting order"""
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, {'loan_id': loan_id})
        ]
        transactions.sort(key=lambda t: (t.timestamp, t.reference))
        return transactions

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'member_id': transaction.member_id,
            'transaction_type': transaction.transaction_type.value,
            'category': transaction.category.value,
            'amount': str(transaction.amount.amount),
            'currency': transaction.amount.currency.code,
            'timestamp': transaction.timestamp.isoformat(),
            'reference': transaction.reference,
            'receipt_number': transaction.receipt_number,
            'description': transaction.description,
            'payment_method': transaction.payment_method.value,
            'status': transaction.status.value,
            'balance_after': str(transaction.balance_after.amount) if transaction.balance_after else None,
            'loan_id': transaction.loan_id,
            'period_start': iso(transaction.period_start),
            'period_end': iso(transaction.period_end),
            'processed_by': transaction.processed_by,
            'processed_at': iso(transaction.processed_at),
            'notes': transaction.notes
        }

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        currency = Currency[data['currency']]
        balance_after = None
        if data.get('balance_after') is not None:
            balance_after = Money(data['balance_after'], currency)

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            transaction_type=TransactionType(data['transaction_type']),
            category=TransactionCategory(data['category']),
            amount=Money(data['amount'], currency),
            timestamp=datetime.fromisoformat(data['timestamp']),
            reference=data['reference'],
            receipt_number=data['receipt_number'],
            description=data['description'],
            payment_method=PaymentMethod(data['payment_method']),
            status=TransactionStatus(data['status']),
            balance_after=balance_after,
            loan_id=data.get('loan_id'),
            period_start=parse(data.get('period_start')),
            period_end=parse(data.get('period_end')),
            processed_by=data.get('processed_by'),
            processed_at=parse(data.get('processed_at')),
            notes=data.get('notes')
        )
