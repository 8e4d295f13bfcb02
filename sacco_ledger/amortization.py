"""
Loan Amortization Module

Pure simple-interest loan calculator and repayment schedule builder.
Nothing here touches storage.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List
from enum import Enum
import calendar

from .currency import Money, AmountLike, to_decimal
from .errors import ValidationError


class InterestBasis(Enum):
    """How the loan rate is applied over a term given in months"""
    PER_MONTH = "per_month"  # rate * term_months
    ANNUAL = "annual"        # rate * (term_months / 12)

    @property
    def divisor(self) -> Decimal:
        return Decimal("1200") if self is InterestBasis.ANNUAL else Decimal("100")


@dataclass(frozen=True)
class LoanQuote:
    """Derived figures of a loan at creation"""
    principal: Money
    annual_rate_percent: Decimal
    term_months: int
    interest_basis: InterestBasis
    total_interest: Money
    total_payable: Money
    monthly_payment: Money


@dataclass(frozen=True)
class Installment:
    """Single entry in a repayment schedule"""
    number: int
    due_date: date
    amount: Money
    remaining_after: Money


def calculate_loan(
    principal: Money,
    annual_rate_percent: AmountLike,
    term_months: int,
    *,
    minimum_principal: AmountLike = 1000,
    min_term_months: int = 1,
    max_term_months: int = 36,
    interest_basis: InterestBasis = InterestBasis.PER_MONTH
) -> LoanQuote:
    """
    Compute total interest, total payable and monthly payment

    Each figure is rounded once to the currency's minor unit, half up.

    Raises:
        ValidationError: On non-positive or too-small principal, negative
            rate or a term outside the allowed range
    """
    if not isinstance(principal, Money):
        raise ValidationError("Principal must be a Money amount")
    if not principal.is_positive():
        raise ValidationError("Principal must be positive")
    minimum = Money(to_decimal(minimum_principal), principal.currency)
    if principal < minimum:
        raise ValidationError(f"Minimum loan amount is {minimum.to_string()}")

    try:
        rate = to_decimal(annual_rate_percent)
    except ValueError as e:
        raise ValidationError(str(e))
    if rate < 0:
        raise ValidationError("Interest rate cannot be negative")

    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise ValidationError("Term must be a whole number of months")
    if not min_term_months <= term_months <= max_term_months:
        raise ValidationError(
            f"Loan term must be between {min_term_months} and {max_term_months} months"
        )

    total_interest = Money(principal.amount * rate * term_months / interest_basis.divisor,
                           principal.currency)
    total_payable = principal + total_interest
    monthly_payment = Money(total_payable.amount / term_months, principal.currency)

    return LoanQuote(
        principal=principal,
        annual_rate_percent=rate,
        term_months=term_months,
        interest_basis=interest_basis,
        total_interest=total_interest,
        total_payable=total_payable,
        monthly_payment=monthly_payment
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_repayment_schedule(quote: LoanQuote, first_due_date: date) -> List[Installment]:
    """
    One installment per month starting at ``first_due_date``

    Every installment is ``monthly_payment`` except the last, which takes
    whatever remains so the schedule sums exactly to ``total_payable``.
    """
    schedule = []
    remaining = quote.total_payable
    zero = Money.zero(remaining.currency)

    for number in range(1, quote.term_months + 1):
        if number == quote.term_months:
            amount = remaining
        else:
            amount = min(quote.monthly_payment, remaining)
        remaining = remaining - amount
        schedule.append(Installment(
            number=number,
            due_date=add_months(first_due_date, number - 1),
            amount=amount,
            remaining_after=max(remaining, zero)
        ))

    return schedule
