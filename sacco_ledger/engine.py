"""
SACCO Engine Facade

Wires storage, audit trail, events and the ledger components into one
object and exposes the commands external callers use. Every command is
validated through its schema before any member lock is taken.
"""

from datetime import date, datetime
from typing import List, Optional, Tuple, Union
import logging

from .amortization import Installment, LoanQuote
from .audit import AuditTrail
from .config import SaccoConfig, get_config
from .coordinator import AccountCoordinator
from .currency import AmountLike, Money
from .events import EventDispatcher
from .ids import Clock, IdGenerator, SystemClock, UuidIdGenerator
from .interest import BulkInterestResult, InterestEngine, InterestResult, InterestSummary, to_utc_datetime
from .loans import Loan, LoanLedger
from .members import Member, MemberRegistry
from .savings import SavingsLedger
from .schemas import (
    ActivateLoanCommand, ApproveLoanCommand, ApproveWithdrawalCommand, CancelWithdrawalCommand,
    InterestAccrualCommand, LoanApplicationCommand, LoanPaymentCommand, LoanQuoteCommand,
    RegisterMemberCommand, RejectLoanCommand, SavingsCommand, parse_command
)
from .storage import StorageInterface, create_storage
from .transactions import (
    PaymentMethod, Transaction, TransactionLog, TransactionStatus, TransactionType
)

DateLike = Union[date, datetime]


class SaccoEngine:
    """SACCO ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[SaccoConfig] = None,
        storage: Optional[StorageInterface] = None,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.currency = self.config.currency_enum
        self.id_generator = id_generator or UuidIdGenerator()
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger("sacco.engine")

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize cross-cutting components
        self.audit_trail = (
            AuditTrail(self.storage, clock=self.clock, id_generator=self.id_generator)
            if self.config.enable_audit_logging else None
        )
        self.events = EventDispatcher()
        self.coordinator = AccountCoordinator(self.storage, self.config.lock_timeout_seconds)

        # Initialize ledger components
        self.members = MemberRegistry(
            self.storage, self.coordinator, self.currency,
            self.audit_trail, self.events, self.id_generator, self.clock
        )
        self.transactions = TransactionLog(self.storage, self.id_generator, self.clock)
        self.savings = SavingsLedger(
            self.members, self.transactions, self.coordinator,
            self.audit_trail, self.events, self.clock
        )
        self.loans = LoanLedger(
            self.storage, self.members, self.savings, self.transactions, self.coordinator,
            self.config, self.audit_trail, self.events, self.id_generator, self.clock
        )
        self.interest = InterestEngine(
            self.members, self.savings, self.transactions, self.coordinator,
            self.config, self.audit_trail, self.events, self.clock
        )

    def _money(self, amount: AmountLike) -> Money:
        return Money(amount, self.currency)

    # Members

    def register_member(
        self,
        first_name: str,
        last_name: str,
        member_number: Optional[str] = None
    ) -> Member:
        command = parse_command(RegisterMemberCommand, first_name=first_name,
                                last_name=last_name, member_number=member_number)
        return self.members.register_member(command.first_name, command.last_name, command.member_number)

    def get_member(self, member_id: str) -> Member:
        """Get a member or raise NotFound"""
        return self.members.require_member(member_id)

    # Loans

    def quote_loan(
        self,
        principal: AmountLike,
        term_months: int,
        interest_rate_percent: Optional[AmountLike] = None
    ) -> LoanQuote:
        """Loan figures without creating an application"""
        command = parse_command(LoanQuoteCommand, principal=principal, term_months=term_months,
                                interest_rate_percent=interest_rate_percent)
        return self.loans.quote(self._money(command.principal), command.term_months,
                                command.interest_rate_percent)

    def apply_for_loan(
        self,
        member_id: str,
        principal: AmountLike,
        purpose: str,
        term_months: int,
        collateral: Optional[str] = None,
        guarantor_ids: Optional[List[str]] = None,
        interest_rate_percent: Optional[AmountLike] = None
    ) -> Loan:
        command = parse_command(
            LoanApplicationCommand,
            member_id=member_id,
            principal=principal,
            purpose=purpose,
            term_months=term_months,
            collateral=collateral,
            guarantor_ids=guarantor_ids or [],
            interest_rate_percent=interest_rate_percent
        )
        return self.loans.apply(
            command.member_id,
            self._money(command.principal),
            command.purpose,
            command.term_months,
            collateral=command.collateral,
            guarantor_ids=list(command.guarantor_ids),
            interest_rate_percent=command.interest_rate_percent
        )

    def approve_loan(self, loan_id: str, approver_id: str) -> Loan:
        command = parse_command(ApproveLoanCommand, loan_id=loan_id, approver_id=approver_id)
        return self.loans.approve(command.loan_id, command.approver_id)

    def activate_loan(
        self,
        loan_id: str,
        activated_by: str,
        payment_method: PaymentMethod = PaymentMethod.CASH
    ) -> Tuple[Loan, Transaction]:
        command = parse_command(ActivateLoanCommand, loan_id=loan_id, activated_by=activated_by,
                                payment_method=payment_method)
        return self.loans.activate(command.loan_id, command.activated_by, command.payment_method)

    def reject_loan(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        command = parse_command(RejectLoanCommand, loan_id=loan_id, reason=reason, rejected_by=rejected_by)
        return self.loans.reject(command.loan_id, command.reason, command.rejected_by)

    def record_loan_payment(
        self,
        loan_id: str,
        amount: AmountLike,
        payment_method: PaymentMethod = PaymentMethod.SAVINGS_DEDUCTION,
        processed_by: Optional[str] = None
    ) -> Tuple[Loan, Transaction]:
        command = parse_command(LoanPaymentCommand, loan_id=loan_id, amount=amount,
                                payment_method=payment_method, processed_by=processed_by)
        return self.loans.record_payment(command.loan_id, self._money(command.amount),
                                         command.payment_method, command.processed_by)

    def get_loan(self, loan_id: str) -> Loan:
        """Get a loan or raise NotFound"""
        return self.loans.require_loan(loan_id)

    def get_member_loans(self, member_id: str) -> List[Loan]:
        self.members.require_member(member_id)
        return self.loans.get_member_loans(member_id)

    def get_repayment_schedule(self, loan_id: str) -> List[Installment]:
        return self.loans.get_repayment_schedule(loan_id)

    # Savings

    def deposit(
        self,
        member_id: str,
        amount: AmountLike,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        processed_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        command = parse_command(SavingsCommand, member_id=member_id, amount=amount,
                                payment_method=payment_method, processed_by=processed_by,
                                description=description)
        return self.savings.deposit(command.member_id, self._money(command.amount),
                                    command.payment_method, command.processed_by, command.description)

    def withdraw(
        self,
        member_id: str,
        amount: AmountLike,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        processed_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        command = parse_command(SavingsCommand, member_id=member_id, amount=amount,
                                payment_method=payment_method, processed_by=processed_by,
                                description=description)
        return self.savings.withdraw(command.member_id, self._money(command.amount),
                                     command.payment_method, command.processed_by, command.description)

    def request_withdrawal(
        self,
        member_id: str,
        amount: AmountLike,
        payment_method: PaymentMethod = PaymentMethod.MOBILE_MONEY,
        description: Optional[str] = None
    ) -> Transaction:
        command = parse_command(SavingsCommand, member_id=member_id, amount=amount,
                                payment_method=payment_method, description=description)
        return self.savings.request_withdrawal(command.member_id, self._money(command.amount),
                                               command.payment_method, command.description)

    def approve_withdrawal(
        self,
        transaction_id: str,
        approved_by: str,
        notes: Optional[str] = None
    ) -> Tuple[Member, Transaction]:
        command = parse_command(ApproveWithdrawalCommand, transaction_id=transaction_id,
                                approved_by=approved_by, notes=notes)
        return self.savings.approve_withdrawal(command.transaction_id, command.approved_by, command.notes)

    def cancel_withdrawal(
        self,
        transaction_id: str,
        reason: str,
        cancelled_by: Optional[str] = None
    ) -> Transaction:
        command = parse_command(CancelWithdrawalCommand, transaction_id=transaction_id,
                                reason=reason, cancelled_by=cancelled_by)
        return self.savings.cancel_withdrawal(command.transaction_id, command.reason, command.cancelled_by)

    def get_balance(self, member_id: str) -> Money:
        return self.savings.get_balance(member_id)

    def get_transactions(
        self,
        member_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None
    ) -> List[Transaction]:
        """A member's ledger entries in posting order, optionally filtered"""
        self.members.require_member(member_id)
        return self.transactions.list_for_member(
            member_id,
            transaction_type=transaction_type,
            status=status,
            start=to_utc_datetime(start) if start is not None else None,
            end=to_utc_datetime(end) if end is not None else None
        )

    # Interest

    def accrue_interest(
        self,
        member_id: Optional[str],
        from_date: DateLike,
        to_date: DateLike,
        rate_percent: Optional[AmountLike] = None
    ) -> Union[InterestResult, BulkInterestResult]:
        """
        Accrue savings interest for one member, or every active member when
        ``member_id`` is None
        """
        command = parse_command(InterestAccrualCommand, member_id=member_id, from_date=from_date,
                                to_date=to_date, annual_rate_percent=rate_percent)
        if command.member_id is None:
            return self.interest.accrue_for_all(command.from_date, command.to_date,
                                                command.annual_rate_percent)
        return self.interest.accrue_for_member(command.member_id, command.from_date, command.to_date,
                                               command.annual_rate_percent)

    def get_interest_summary(self, member_id: str, start: DateLike, end: DateLike) -> InterestSummary:
        return self.interest.get_interest_summary(member_id, start, end)

    def calculate_average_balance(self, member_id: str, start: DateLike, end: DateLike) -> Money:
        return self.interest.calculate_average_balance(member_id, start, end)

    # Audit

    def verify_audit_trail(self) -> dict:
        """Verify the audit hash chain; reports valid when auditing is disabled"""
        if self.audit_trail is None:
            return {"valid": True, "total_events": 0, "hash_errors": [], "chain_breaks": [], "details": {}}
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()


def create_engine(
    config: Optional[SaccoConfig] = None,
    storage: Optional[StorageInterface] = None,
    id_generator: Optional[IdGenerator] = None,
    clock: Optional[Clock] = None
) -> SaccoEngine:
    """Build an engine from configuration"""
    engine = SaccoEngine(config=config, storage=storage, id_generator=id_generator, clock=clock)
    engine.logger.info(f"SACCO engine ready on {type(engine.storage).__name__} "
                       f"({engine.currency.code})")
    return engine
