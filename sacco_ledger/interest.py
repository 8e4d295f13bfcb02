"""
Interest Engine Module

Simple daily interest on savings balances, posted as ``interest_earned``
ledger entries that record the period they cover. A posting whose period
overlaps one already recorded for the member is skipped, so re-running a
period never pays interest twice. Compounding arises only because later
periods accrue on the balance after earlier postings.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from enum import Enum
import calendar
import logging

from .currency import Money, AmountLike, to_decimal
from .audit import AuditTrail, AuditEventType
from .config import SaccoConfig
from .coordinator import AccountCoordinator
from .errors import ValidationError
from .events import DomainEvent, EventDispatcher, create_transaction_event
from .ids import Clock, SystemClock
from .logging_config import log_action
from .members import Member, MemberRegistry, MemberStatus
from .savings import SavingsLedger
from .transactions import (
    Transaction, TransactionLog, TransactionType, TransactionStatus,
    SAVINGS_CREDIT_TYPES, SAVINGS_DEBIT_TYPES
)

DateLike = Union[date, datetime]

MICROSECONDS_PER_DAY = 86400 * 1000000
DAYS_PER_YEAR = 365


def to_utc_datetime(value: DateLike) -> datetime:
    """Dates become midnight UTC; naive datetimes are taken as UTC"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise ValidationError(f"Expected a date or datetime, got {value!r}")


def days_between(from_date: DateLike, to_date: DateLike) -> int:
    """Whole days from ``from_date`` to ``to_date``, any part-day counting as one"""
    delta = to_utc_datetime(to_date) - to_utc_datetime(from_date)
    microseconds = (delta.days * 86400 + delta.seconds) * 1000000 + delta.microseconds
    return -(-microseconds // MICROSECONDS_PER_DAY)


def calculate_interest(
    balance: Money,
    from_date: DateLike,
    to_date: DateLike,
    annual_rate_percent: AmountLike
) -> Money:
    """
    Simple interest on ``balance`` for the days between two dates

    ``round(balance * rate * days / (365 * 100))`` to the minor unit, half
    up; zero when the balance or the day count is not positive.
    """
    zero = Money.zero(balance.currency)
    days = days_between(from_date, to_date)
    if not balance.is_positive() or days <= 0:
        return zero
    rate = to_decimal(annual_rate_percent)
    if rate <= 0:
        return zero
    return Money(balance.amount * rate * days / Decimal(DAYS_PER_YEAR * 100), balance.currency)


@dataclass(frozen=True)
class MonthlyPeriod:
    """Calendar month as the half-open interval [start, end)"""
    year: int
    month: int
    start: date
    end: date

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)


def monthly_period(year: int, month: int) -> MonthlyPeriod:
    """Period covering one calendar month"""
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    if year < 1:
        raise ValidationError("Year must be positive")
    start = date(year, month, 1)
    end = start + timedelta(days=calendar.monthrange(year, month)[1])
    return MonthlyPeriod(year=year, month=month, start=start, end=end)


class InterestOutcome(Enum):
    POSTED = "posted"
    NO_INTEREST = "no_interest"              # Computed amount was zero
    SKIPPED_DUPLICATE = "skipped_duplicate"  # Period already covered


@dataclass
class InterestResult:
    """Outcome of accruing one member's interest for one period"""
    member_id: str
    outcome: InterestOutcome
    amount: Money
    balance: Money
    period_start: datetime
    period_end: datetime
    annual_rate_percent: Decimal
    transaction: Optional[Transaction] = None

    @property
    def posted(self) -> bool:
        return self.outcome == InterestOutcome.POSTED


@dataclass
class InterestFailure:
    member_id: str
    member_number: Optional[str]
    error: str
    error_type: str


@dataclass
class BulkInterestResult:
    """Per-member results of a bulk accrual plus summary totals"""
    period_start: datetime
    period_end: datetime
    annual_rate_percent: Decimal
    results: List[InterestResult] = field(default_factory=list)
    failures: List[InterestFailure] = field(default_factory=list)

    @property
    def total_members(self) -> int:
        return len(self.results) + len(self.failures)

    @property
    def posted_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == InterestOutcome.POSTED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == InterestOutcome.SKIPPED_DUPLICATE)

    @property
    def no_interest_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == InterestOutcome.NO_INTEREST)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    def total_interest_applied(self) -> Optional[Money]:
        """Sum of posted interest, None when nothing was posted"""
        posted = [r.amount for r in self.results if r.posted]
        if not posted:
            return None
        total = posted[0]
        for amount in posted[1:]:
            total = total + amount
        return total

    def summary(self) -> Dict[str, object]:
        total = self.total_interest_applied()
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "annual_rate_percent": str(self.annual_rate_percent),
            "total_members": self.total_members,
            "posted": self.posted_count,
            "skipped_duplicate": self.skipped_count,
            "no_interest": self.no_interest_count,
            "failed": self.failed_count,
            "total_interest_applied": str(total.amount) if total else "0"
        }


@dataclass
class InterestSummary:
    """Interest posted to one member over a date range"""
    member_id: str
    start: date
    end: date
    total_interest: Money
    posting_count: int
    average_balance: Money
    postings: List[Transaction] = field(default_factory=list)


class InterestEngine:
    """
    Accrues and posts savings interest
    """

    def __init__(
        self,
        members: MemberRegistry,
        savings: SavingsLedger,
        transactions: TransactionLog,
        coordinator: AccountCoordinator,
        config: Optional[SaccoConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None
    ):
        self.members = members
        self.savings = savings
        self.transactions = transactions
        self.coordinator = coordinator
        self.config = config or SaccoConfig()
        self.audit_trail = audit_trail
        self.events = events
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger("sacco.interest")

    def resolve_rate(self, annual_rate_percent: Optional[AmountLike]) -> Decimal:
        """Default the rate from config and check it lies within bounds"""
        if annual_rate_percent is None:
            return Decimal(self.config.default_savings_interest_rate)
        try:
            rate = to_decimal(annual_rate_percent)
        except ValueError as e:
            raise ValidationError(str(e))
        if rate < 0 or rate > self.config.max_interest_rate_percent:
            raise ValidationError(
                f"Interest rate must be between 0 and {self.config.max_interest_rate_percent}%"
            )
        return rate

    def apply_interest(
        self,
        member: Member,
        amount: Money,
        period_start: datetime,
        period_end: datetime
    ) -> Optional[Transaction]:
        """
        Post ``amount`` to the member's savings as interest for the period

        The caller must hold the member's critical section. Returns None when
        the amount is not positive.
        """
        if not amount.is_positive():
            return None
        description = (
            f"Interest for {period_start.date().isoformat()} to {period_end.date().isoformat()}"
            f" - {amount.to_string()}"
        )
        return self.savings.credit_interest(
            member,
            amount,
            period_start,
            period_end,
            description=description,
            notes=f"Interest applied for period ending {period_end.date().isoformat()}"
        )

    def find_overlapping_posting(
        self,
        member_id: str,
        period_start: datetime,
        period_end: datetime
    ) -> Optional[Transaction]:
        """An existing interest posting whose period intersects [start, end)"""
        if period_end <= period_start:
            return None
        postings = self.transactions.list_for_member(
            member_id,
            transaction_type=TransactionType.INTEREST_EARNED,
            status=TransactionStatus.COMPLETED
        )
        for posting in postings:
            if posting.period_start is None or posting.period_end is None:
                continue
            if posting.period_start < period_end and period_start < posting.period_end:
                return posting
        return None

    def accrue_for_member(
        self,
        member_id: str,
        from_date: DateLike,
        to_date: DateLike,
        annual_rate_percent: Optional[AmountLike] = None
    ) -> InterestResult:
        """
        Compute and post one member's interest for a period

        The duplicate check, the computation on the current balance and the
        posting run as one critical section.
        """
        rate = self.resolve_rate(annual_rate_percent)
        period_start = to_utc_datetime(from_date)
        period_end = to_utc_datetime(to_date)

        with self.coordinator.exclusive(member_id):
            member = self.members.require_member(member_id)
            zero = Money.zero(member.currency)

            existing = self.find_overlapping_posting(member_id, period_start, period_end)
            if existing:
                log_action(self.logger, "warning", "Interest period already posted",
                           member_id=member_id, action="accrue_interest", resource=existing.id,
                           extra={"period_start": period_start.isoformat(),
                                  "period_end": period_end.isoformat()})
                return InterestResult(
                    member_id=member_id,
                    outcome=InterestOutcome.SKIPPED_DUPLICATE,
                    amount=zero,
                    balance=member.savings_balance,
                    period_start=period_start,
                    period_end=period_end,
                    annual_rate_percent=rate,
                    transaction=existing
                )

            balance = member.savings_balance
            amount = calculate_interest(balance, period_start, period_end, rate)
            transaction = self.apply_interest(member, amount, period_start, period_end)
            if transaction is None:
                return InterestResult(
                    member_id=member_id,
                    outcome=InterestOutcome.NO_INTEREST,
                    amount=zero,
                    balance=balance,
                    period_start=period_start,
                    period_end=period_end,
                    annual_rate_percent=rate
                )

            self.coordinator.after_commit(lambda: self._posted(transaction, rate))

        return InterestResult(
            member_id=member_id,
            outcome=InterestOutcome.POSTED,
            amount=amount,
            balance=balance,
            period_start=period_start,
            period_end=period_end,
            annual_rate_percent=rate,
            transaction=transaction
        )

    def accrue_for_all(
        self,
        from_date: DateLike,
        to_date: DateLike,
        annual_rate_percent: Optional[AmountLike] = None
    ) -> BulkInterestResult:
        """
        Accrue interest for every active member

        Each member is its own critical section; a failure is recorded and
        the run continues with the next member.
        """
        rate = self.resolve_rate(annual_rate_percent)
        bulk = BulkInterestResult(
            period_start=to_utc_datetime(from_date),
            period_end=to_utc_datetime(to_date),
            annual_rate_percent=rate
        )

        for member in self.members.list_members(status=MemberStatus.ACTIVE):
            try:
                bulk.results.append(self.accrue_for_member(member.id, from_date, to_date, rate))
            except Exception as e:
                self.logger.error(
                    f"Interest accrual failed for member {member.member_number}: {e}",
                    exc_info=True
                )
                bulk.failures.append(InterestFailure(
                    member_id=member.id,
                    member_number=member.member_number,
                    error=str(e),
                    error_type=type(e).__name__
                ))

        log_action(self.logger, "info", "Bulk interest accrual finished",
                   action="accrue_interest_all", extra=bulk.summary())
        return bulk

    def calculate_average_balance(self, member_id: str, start: DateLike, end: DateLike) -> Money:
        """
        Mean end-of-day savings balance over the days ``start`` to ``end`` inclusive

        The opening balance is rebuilt from all completed savings-affecting
        entries before ``start``. Entries land on the day they were processed,
        so an approved withdrawal counts from its approval.
        """
        member = self.members.require_member(member_id)
        first_day = to_utc_datetime(start).date()
        last_day = to_utc_datetime(end).date()
        if last_day < first_day:
            return Money.zero(member.currency)

        balance = Decimal("0")
        by_day: Dict[date, Decimal] = {}
        for transaction in self.transactions.list_for_member(member_id, status=TransactionStatus.COMPLETED):
            signed = self._signed_amount(transaction)
            if signed is None:
                continue
            day = (transaction.processed_at or transaction.timestamp).astimezone(timezone.utc).date()
            if day < first_day:
                balance += signed
            elif day <= last_day:
                by_day[day] = by_day.get(day, Decimal("0")) + signed

        total = Decimal("0")
        days = 0
        current = first_day
        while current <= last_day:
            balance += by_day.get(current, Decimal("0"))
            total += balance
            days += 1
            current += timedelta(days=1)

        return Money(total / days, member.currency)

    def get_interest_summary(self, member_id: str, start: DateLike, end: DateLike) -> InterestSummary:
        """Interest posted between ``start`` and ``end`` (inclusive days)"""
        member = self.members.require_member(member_id)
        first_day = to_utc_datetime(start).date()
        last_day = to_utc_datetime(end).date()

        postings = [
            t for t in self.transactions.list_for_member(
                member_id,
                transaction_type=TransactionType.INTEREST_EARNED,
                status=TransactionStatus.COMPLETED
            )
            if first_day <= t.timestamp.astimezone(timezone.utc).date() <= last_day
        ]
        total = Money.zero(member.currency)
        for posting in postings:
            total = total + posting.amount

        return InterestSummary(
            member_id=member_id,
            start=first_day,
            end=last_day,
            total_interest=total,
            posting_count=len(postings),
            average_balance=self.calculate_average_balance(member_id, first_day, last_day),
            postings=postings
        )

    def _signed_amount(self, transaction: Transaction) -> Optional[Decimal]:
        if transaction.transaction_type in SAVINGS_CREDIT_TYPES:
            return transaction.amount.amount
        if transaction.transaction_type in SAVINGS_DEBIT_TYPES:
            return -transaction.amount.amount
        return None

    def _posted(self, transaction: Transaction, rate: Decimal) -> None:
        log_action(self.logger, "info", f"Interest posted {transaction.amount.to_string()}",
                   member_id=transaction.member_id, action="accrue_interest", resource=transaction.id,
                   extra={"period_start": transaction.period_start.isoformat(),
                          "period_end": transaction.period_end.isoformat(),
                          "rate": str(rate)})
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_POSTED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "member_id": transaction.member_id,
                    "amount": transaction.amount.amount,
                    "period_start": transaction.period_start,
                    "period_end": transaction.period_end,
                    "annual_rate_percent": rate
                }
            )
        if self.events:
            self.events.publish(create_transaction_event(DomainEvent.INTEREST_POSTED, transaction))
