"""
SACCO Ledger Engine

Loan amortization, loan payment tracking, savings deposits and withdrawals,
and savings interest accrual for a savings and credit cooperative. All
financial math uses Decimal with a single half-up rounding per quantity.
"""

__version__ = "1.0.0"
