"""
Loan Module

Handles loan application, approval, activation (disbursement), rejection
and repayment from savings. Running totals on a loan are never updated
incrementally: they are recomputed from the full payment history by
``summarize_payments`` before every save.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from enum import Enum
import logging

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .amortization import (
    InterestBasis, Installment, LoanQuote, add_months, build_repayment_schedule, calculate_loan
)
from .config import SaccoConfig
from .coordinator import AccountCoordinator
from .errors import ConflictError, NotFound, ValidationError
from .events import DomainEvent, EventDispatcher, create_loan_event
from .ids import Clock, IdGenerator, SystemClock, UuidIdGenerator
from .logging_config import log_action
from .members import Member, MemberRegistry
from .savings import SavingsLedger
from .transactions import Transaction, TransactionLog, TransactionType, PaymentMethod


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Applied, awaiting a decision
    APPROVED = "approved"    # Approved, not yet disbursed
    REJECTED = "rejected"    # Terminal
    ACTIVE = "active"        # Disbursed, accepting payments
    PAID = "paid"            # Terminal, remaining balance is zero


OPEN_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE)

PROGRESS_QUANTUM = Decimal("0.0001")


class PaymentType(Enum):
    PARTIAL = "partial"
    FULL = "full"


@dataclass
class LoanPayment:
    """Entry in a loan's payment history"""
    amount: Money
    paid_at: datetime
    remaining_balance_after_payment: Money
    payment_type: PaymentType
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentSummary:
    """Totals derived from a payment history"""
    total_paid: Money
    remaining_balance: Money
    payment_progress: Decimal

    @property
    def is_settled(self) -> bool:
        return self.remaining_balance.is_zero()


def summarize_payments(total_payable: Money, payments: Sequence[LoanPayment]) -> PaymentSummary:
    """
    Recompute paid total, remaining balance and progress from a history

    ``remaining = max(0, total_payable - sum(payments))`` and progress is
    ``total_paid / total_payable`` capped at 1 and truncated to four places,
    so it reads 1 only when nothing remains.
    """
    total_paid = Money.zero(total_payable.currency)
    for payment in payments:
        total_paid = total_paid + payment.amount

    zero = Money.zero(total_payable.currency)
    remaining = max(total_payable - total_paid, zero)

    if total_payable.is_zero():
        progress = Decimal("1")
    else:
        progress = min(Decimal("1"), total_paid.amount / total_payable.amount)
        progress = progress.quantize(PROGRESS_QUANTUM, rounding=ROUND_DOWN)

    return PaymentSummary(total_paid=total_paid, remaining_balance=remaining, payment_progress=progress)


@dataclass
class Loan(StorageRecord):
    """
    Member loan with simple-interest terms and its payment history
    """
    member_id: str
    principal: Money
    purpose: str
    interest_rate_percent: Decimal
    term_months: int
    interest_basis: InterestBasis
    total_interest: Money
    total_payable: Money
    monthly_payment: Money
    remaining_balance: Money
    total_paid_amount: Money
    payment_progress: Decimal = Decimal("0")
    status: LoanStatus = LoanStatus.PENDING
    collateral: Optional[str] = None
    guarantor_ids: List[str] = field(default_factory=list)
    payment_history: List[LoanPayment] = field(default_factory=list)

    # Lifecycle
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    disbursement_transaction_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def expected_end_date(self) -> Optional[datetime]:
        """Activation date plus the loan term"""
        if not self.activated_at:
            return None
        end = add_months(self.activated_at.date(), self.term_months)
        return self.activated_at.replace(year=end.year, month=end.month, day=end.day)

    def quote(self) -> LoanQuote:
        return LoanQuote(
            principal=self.principal,
            annual_rate_percent=self.interest_rate_percent,
            term_months=self.term_months,
            interest_basis=self.interest_basis,
            total_interest=self.total_interest,
            total_payable=self.total_payable,
            monthly_payment=self.monthly_payment
        )

    def apply_summary(self, summary: PaymentSummary) -> None:
        self.total_paid_amount = summary.total_paid
        self.remaining_balance = summary.remaining_balance
        self.payment_progress = summary.payment_progress


class LoanLedger:
    """
    Manages the loan lifecycle pending -> approved -> active -> paid,
    with pending -> rejected as the alternative outcome
    """

    def __init__(
        self,
        storage: StorageInterface,
        members: MemberRegistry,
        savings: SavingsLedger,
        transactions: TransactionLog,
        coordinator: AccountCoordinator,
        config: Optional[SaccoConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.members = members
        self.savings = savings
        self.transactions = transactions
        self.coordinator = coordinator
        self.config = config or SaccoConfig()
        self.audit_trail = audit_trail
        self.events = events
        self.id_generator = id_generator or UuidIdGenerator()
        self.clock = clock or SystemClock()
        self.table_name = "loans"
        self.logger = logging.getLogger("sacco.loans")

    def quote(
        self,
        principal: Money,
        term_months: int,
        interest_rate_percent: Optional[Decimal] = None
    ) -> LoanQuote:
        """Loan figures under the configured product rules"""
        rate = self.config.default_loan_interest_rate if interest_rate_percent is None else interest_rate_percent
        return calculate_loan(
            principal,
            rate,
            term_months,
            minimum_principal=self.config.minimum_loan_amount,
            min_term_months=self.config.min_term_months,
            max_term_months=self.config.max_term_months,
            interest_basis=InterestBasis(self.config.loan_interest_basis)
        )

    def apply(
        self,
        member_id: str,
        principal: Money,
        purpose: str,
        term_months: int,
        collateral: Optional[str] = None,
        guarantor_ids: Optional[List[str]] = None,
        interest_rate_percent: Optional[Decimal] = None
    ) -> Loan:
        """
        Create a loan application in ``pending``

        Raises:
            ValidationError: On bad terms, blank purpose, invalid guarantors,
                or when savings do not support the requested principal
            ConflictError: If the member already has an open loan, is not
                active, or has borrowing suspended
            NotFound: If the member does not exist
        """
        if not purpose or not purpose.strip():
            raise ValidationError("Loan purpose is required")
        quote = self.quote(principal, term_months, interest_rate_percent)
        guarantor_ids = list(dict.fromkeys(guarantor_ids or []))

        with self.coordinator.exclusive(member_id):
            member = self.members.require_member(member_id)
            if principal.currency != member.currency:
                raise ValidationError(
                    f"Loan currency {principal.currency.code} does not match account currency {member.currency.code}"
                )
            self._check_eligibility(member, principal)
            self._check_guarantors(member, guarantor_ids)

            open_loan = self.get_open_loan(member_id)
            if open_loan:
                raise ConflictError(
                    f"Member already has an open loan ({open_loan.id}, {open_loan.status.value})"
                )

            now = self.clock.now()
            loan = Loan(
                id=self.id_generator.next_id("loan"),
                created_at=now,
                updated_at=now,
                member_id=member_id,
                principal=quote.principal,
                purpose=purpose.strip(),
                interest_rate_percent=quote.annual_rate_percent,
                term_months=quote.term_months,
                interest_basis=quote.interest_basis,
                total_interest=quote.total_interest,
                total_payable=quote.total_payable,
                monthly_payment=quote.monthly_payment,
                remaining_balance=quote.total_payable,
                total_paid_amount=Money.zero(principal.currency),
                collateral=collateral,
                guarantor_ids=guarantor_ids
            )
            loan.apply_summary(summarize_payments(loan.total_payable, loan.payment_history))
            self._save_loan(loan)
            self._after_commit(AuditEventType.LOAN_APPLIED, DomainEvent.LOAN_APPLIED, "apply_loan", loan,
                               metadata={"principal": loan.principal.amount,
                                         "term_months": loan.term_months,
                                         "total_payable": loan.total_payable.amount})

        return loan

    def approve(self, loan_id: str, approver_id: str) -> Loan:
        """
        Approve a pending loan and add its principal to the member's loan balance

        Raises:
            ConflictError: If the loan is not pending
        """
        if not approver_id:
            raise ValidationError("Approver is required")
        member_id = self.require_loan(loan_id).member_id

        with self.coordinator.exclusive(member_id):
            loan = self._require_status(loan_id, LoanStatus.PENDING, "approve")
            member = self.members.require_member(member_id)

            now = self.clock.now()
            loan.status = LoanStatus.APPROVED
            loan.approved_by = approver_id
            loan.approved_at = now
            loan.updated_at = now
            self._save_loan(loan)

            member.loan_balance = member.loan_balance + loan.principal
            member.updated_at = now
            self.members.update_member(member)

            self._after_commit(AuditEventType.LOAN_APPROVED, DomainEvent.LOAN_APPROVED, "approve_loan", loan,
                               user_id=approver_id,
                               metadata={"loan_balance": member.loan_balance.amount})

        return loan

    def activate(
        self,
        loan_id: str,
        activated_by: str,
        payment_method: PaymentMethod = PaymentMethod.CASH
    ) -> Tuple[Loan, Transaction]:
        """
        Disburse an approved loan

        Returns:
            Active Loan and its loan_disbursement Transaction

        Raises:
            ConflictError: If the loan is not approved
        """
        if not activated_by:
            raise ValidationError("Activating officer is required")
        member_id = self.require_loan(loan_id).member_id

        with self.coordinator.exclusive(member_id):
            loan = self._require_status(loan_id, LoanStatus.APPROVED, "activate")

            transaction = self.transactions.append(
                member_id=member_id,
                transaction_type=TransactionType.LOAN_DISBURSEMENT,
                amount=loan.principal,
                description=f"Loan disbursement - {loan.principal.to_string()}",
                payment_method=payment_method,
                loan_id=loan.id,
                processed_by=activated_by
            )

            now = self.clock.now()
            loan.status = LoanStatus.ACTIVE
            loan.activated_by = activated_by
            loan.activated_at = now
            loan.disbursement_transaction_id = transaction.id
            loan.updated_at = now
            self._save_loan(loan)

            self._after_commit(AuditEventType.LOAN_ACTIVATED, DomainEvent.LOAN_ACTIVATED, "activate_loan", loan,
                               user_id=activated_by,
                               metadata={"transaction_id": transaction.id,
                                         "expected_end_date": loan.expected_end_date})

        return loan, transaction

    def reject(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        """
        Reject a pending loan

        Raises:
            ValidationError: If the reason is blank
            ConflictError: If the loan is not pending
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        member_id = self.require_loan(loan_id).member_id

        with self.coordinator.exclusive(member_id):
            loan = self._require_status(loan_id, LoanStatus.PENDING, "reject")

            now = self.clock.now()
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason.strip()
            loan.rejected_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self._after_commit(AuditEventType.LOAN_REJECTED, DomainEvent.LOAN_REJECTED, "reject_loan", loan,
                               user_id=rejected_by,
                               metadata={"reason": loan.rejection_reason})

        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: Money,
        payment_method: PaymentMethod = PaymentMethod.SAVINGS_DEDUCTION,
        processed_by: Optional[str] = None
    ) -> Tuple[Loan, Transaction]:
        """
        Repay part or all of an active loan from the member's savings

        The savings debit and the payment entry commit together or not at all.

        Returns:
            Updated Loan and the loan_payment Transaction

        Raises:
            ValidationError: If amount is not positive or exceeds the remaining balance
            ConflictError: If the loan or the member is not active
            InsufficientFunds: If savings do not cover the amount
        """
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError("Payment amount must be a positive Money value")
        member_id = self.require_loan(loan_id).member_id

        with self.coordinator.exclusive(member_id):
            loan = self._require_status(loan_id, LoanStatus.ACTIVE, "pay")
            if amount.currency != loan.currency:
                raise ValidationError(
                    f"Payment currency {amount.currency.code} does not match loan currency {loan.currency.code}"
                )
            if amount > loan.remaining_balance:
                log_action(self.logger, "warning", "Payment exceeds remaining balance",
                           member_id=member_id, action="pay_loan", resource=loan_id,
                           extra={"amount": str(amount.amount),
                                  "remaining_balance": str(loan.remaining_balance.amount)})
                raise ValidationError(
                    f"Payment {amount.to_string()} exceeds remaining balance {loan.remaining_balance.to_string()}"
                )

            member = self.members.require_member(member_id)
            transaction = self.savings.debit_for_loan_payment(
                member, amount, loan.id, payment_method, processed_by
            )

            now = self.clock.now()
            history = loan.payment_history + [LoanPayment(
                amount=amount,
                paid_at=now,
                remaining_balance_after_payment=loan.remaining_balance,  # Replaced below
                payment_type=PaymentType.PARTIAL,
                payment_method=payment_method,
                transaction_id=transaction.id
            )]
            summary = summarize_payments(loan.total_payable, history)
            history[-1].remaining_balance_after_payment = summary.remaining_balance
            history[-1].payment_type = PaymentType.FULL if summary.is_settled else PaymentType.PARTIAL

            loan.payment_history = history
            loan.apply_summary(summary)
            loan.updated_at = now

            zero = Money.zero(member.currency)
            member.loan_balance = max(member.loan_balance - amount, zero)

            paid_off = summary.is_settled
            overdue = False
            if paid_off:
                loan.status = LoanStatus.PAID
                loan.paid_at = now
                expected_end = loan.expected_end_date
                overdue = expected_end is not None and now > expected_end
                if overdue:
                    member.loan_privilege_suspended_until = now + timedelta(
                        days=self.config.loan_privilege_suspension_days
                    )

            member.updated_at = now
            self.members.update_member(member)
            self._save_loan(loan)

            self._after_commit(AuditEventType.LOAN_PAYMENT_MADE, DomainEvent.LOAN_PAYMENT, "pay_loan", loan,
                               user_id=processed_by,
                               metadata={"amount": amount.amount,
                                         "transaction_id": transaction.id,
                                         "remaining_balance": loan.remaining_balance.amount,
                                         "payment_type": history[-1].payment_type})
            if paid_off:
                self._after_commit(AuditEventType.LOAN_PAID_OFF, DomainEvent.LOAN_PAID_OFF, "loan_paid_off", loan,
                                   metadata={"overdue": overdue, "transaction_id": transaction.id})
            if overdue:
                self._after_commit_suspension(member)

        return loan, transaction

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.table_name, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFound"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def get_member_loans(self, member_id: str) -> List[Loan]:
        """All loans of a member, oldest first"""
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.table_name, {"member_id": member_id})]
        loans.sort(key=lambda l: (l.created_at, l.id))
        return loans

    def get_open_loan(self, member_id: str) -> Optional[Loan]:
        """The member's pending, approved or active loan, if any"""
        for loan in self.get_member_loans(member_id):
            if loan.is_open:
                return loan
        return None

    def get_repayment_schedule(self, loan_id: str) -> List[Installment]:
        """
        Monthly installments, the first due one month after disbursement

        Loans not yet disbursed are scheduled from their application date.
        """
        loan = self.require_loan(loan_id)
        start = loan.activated_at or loan.created_at
        return build_repayment_schedule(loan.quote(), add_months(start.date(), 1))

    def _check_eligibility(self, member: Member, principal: Money) -> None:
        now = self.clock.now()
        if not member.is_active:
            raise ConflictError(f"Member {member.member_number} is {member.status.value}")
        if member.loan_privilege_suspended(now):
            raise ConflictError(
                f"Loan privileges suspended until {member.loan_privilege_suspended_until.isoformat()}"
            )

        minimum_savings = Money(self.config.min_savings_for_loan, member.currency)
        if member.savings_balance < minimum_savings:
            raise ValidationError(
                f"Savings of at least {minimum_savings.to_string()} are required to borrow"
            )
        ceiling = member.savings_balance.multiply_by_rate(self.config.max_loan_to_savings_multiple, 1)
        if principal > ceiling:
            raise ValidationError(
                f"Requested {principal.to_string()} exceeds {self.config.max_loan_to_savings_multiple}x "
                f"savings ({ceiling.to_string()})"
            )

    def _check_guarantors(self, member: Member, guarantor_ids: List[str]) -> None:
        for guarantor_id in guarantor_ids:
            if guarantor_id == member.id:
                raise ValidationError("A member cannot guarantee their own loan")
            if self.members.get_member(guarantor_id) is None:
                raise ValidationError(f"Guarantor {guarantor_id} is not a member")

    def _require_status(self, loan_id: str, expected: LoanStatus, verb: str) -> Loan:
        loan = self.require_loan(loan_id)
        if loan.status != expected:
            log_action(self.logger, "warning", f"Cannot {verb} loan in status {loan.status.value}",
                       member_id=loan.member_id, action=f"{verb}_loan", resource=loan_id)
            raise ConflictError(
                f"Cannot {verb} loan {loan_id}: status is {loan.status.value}, expected {expected.value}"
            )
        return loan

    def _after_commit(
        self,
        audit_type: AuditEventType,
        event_type: DomainEvent,
        action: str,
        loan: Loan,
        user_id: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> None:
        status = loan.status.value
        transaction_id = (metadata or {}).get("transaction_id")

        def committed():
            log_action(self.logger, "info", f"Loan {action}: status {status}",
                       member_id=loan.member_id, action=action, resource=loan.id)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=audit_type,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=dict(metadata or {}, member_id=loan.member_id, status=status),
                    user_id=user_id
                )
            if self.events:
                self.events.publish(create_loan_event(event_type, loan, transaction_id))

        self.coordinator.after_commit(committed)

    def _after_commit_suspension(self, member: Member) -> None:
        until = member.loan_privilege_suspended_until

        def committed():
            log_action(self.logger, "warning", "Loan repaid after term; borrowing suspended",
                       member_id=member.id, action="suspend_loan_privilege", resource=member.id,
                       extra={"until": until.isoformat()})
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PRIVILEGE_SUSPENDED,
                    entity_type="member",
                    entity_id=member.id,
                    metadata={"suspended_until": until}
                )

        self.coordinator.after_commit(committed)

    def _save_loan(self, loan: Loan) -> None:
        """Save loan to storage"""
        self.storage.save(self.table_name, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert Loan to dictionary for storage"""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'member_id': loan.member_id,
            'currency': loan.currency.code,
            'principal_amount': str(loan.principal.amount),
            'purpose': loan.purpose,
            'interest_rate_percent': str(loan.interest_rate_percent),
            'term_months': loan.term_months,
            'interest_basis': loan.interest_basis.value,
            'total_interest_amount': str(loan.total_interest.amount),
            'total_payable_amount': str(loan.total_payable.amount),
            'monthly_payment_amount': str(loan.monthly_payment.amount),
            'remaining_balance_amount': str(loan.remaining_balance.amount),
            'total_paid_amount': str(loan.total_paid_amount.amount),
            'payment_progress': str(loan.payment_progress),
            'status': loan.status.value,
            'collateral': loan.collateral,
            'guarantor_ids': list(loan.guarantor_ids),
            'payment_history': [
                {
                    'amount': str(p.amount.amount),
                    'paid_at': p.paid_at.isoformat(),
                    'remaining_balance_after_payment': str(p.remaining_balance_after_payment.amount),
                    'payment_type': p.payment_type.value,
                    'payment_method': p.payment_method.value,
                    'transaction_id': p.transaction_id
                } for p in loan.payment_history
            ],
            'approved_by': loan.approved_by,
            'approved_at': iso(loan.approved_at),
            'activated_by': loan.activated_by,
            'activated_at': iso(loan.activated_at),
            'disbursement_transaction_id': loan.disbursement_transaction_id,
            'rejection_reason': loan.rejection_reason,
            'rejected_at': iso(loan.rejected_at),
            'paid_at': iso(loan.paid_at)
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to Loan"""
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        history = [
            LoanPayment(
                amount=Money(Decimal(p['amount']), currency),
                paid_at=datetime.fromisoformat(p['paid_at']),
                remaining_balance_after_payment=Money(Decimal(p['remaining_balance_after_payment']), currency),
                payment_type=PaymentType(p['payment_type']),
                payment_method=PaymentMethod(p['payment_method']),
                transaction_id=p.get('transaction_id')
            ) for p in data.get('payment_history', [])
        ]

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            principal=get_money('principal_amount'),
            purpose=data['purpose'],
            interest_rate_percent=Decimal(data['interest_rate_percent']),
            term_months=data['term_months'],
            interest_basis=InterestBasis(data['interest_basis']),
            total_interest=get_money('total_interest_amount'),
            total_payable=get_money('total_payable_amount'),
            monthly_payment=get_money('monthly_payment_amount'),
            remaining_balance=get_money('remaining_balance_amount'),
            total_paid_amount=get_money('total_paid_amount'),
            payment_progress=Decimal(data['payment_progress']),
            status=LoanStatus(data['status']),
            collateral=data.get('collateral'),
            guarantor_ids=data.get('guarantor_ids', []),
            payment_history=history,
            approved_by=data.get('approved_by'),
            approved_at=get_datetime('approved_at'),
            activated_by=data.get('activated_by'),
            activated_at=get_datetime('activated_at'),
            disbursement_transaction_id=data.get('disbursement_transaction_id'),
            rejection_reason=data.get('rejection_reason'),
            rejected_at=get_datetime('rejected_at'),
            paid_at=get_datetime('paid_at')
        )
