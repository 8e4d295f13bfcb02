"""
Pydantic schemas for engine commands

Every facade call validates its inputs through one of these models before
any member lock is taken. Pydantic failures are re-raised as the ledger's
own ValidationError.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import List, Optional, Type, TypeVar, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .interest import to_utc_datetime
from .transactions import PaymentMethod

ModelT = TypeVar("ModelT", bound=BaseModel)


def _reject_float(value):
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("monetary values must be given as int, str or Decimal, not float")
    return value


class CommandModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)


class RegisterMemberCommand(CommandModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    member_number: Optional[str] = Field(None, min_length=1)


class LoanApplicationCommand(CommandModel):
    member_id: str = Field(..., min_length=1)
    principal: Decimal = Field(..., gt=0)
    purpose: str = Field(..., min_length=1)
    term_months: int
    collateral: Optional[str] = None
    guarantor_ids: List[str] = Field(default_factory=list)
    interest_rate_percent: Optional[Decimal] = Field(None, ge=0)

    @field_validator("principal", "interest_rate_percent", mode="before")
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


class LoanQuoteCommand(CommandModel):
    principal: Decimal = Field(..., gt=0)
    term_months: int
    interest_rate_percent: Optional[Decimal] = Field(None, ge=0)

    @field_validator("principal", "interest_rate_percent", mode="before")
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


class ApproveLoanCommand(CommandModel):
    loan_id: str = Field(..., min_length=1)
    approver_id: str = Field(..., min_length=1)


class ActivateLoanCommand(CommandModel):
    loan_id: str = Field(..., min_length=1)
    activated_by: str = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.CASH


class RejectLoanCommand(CommandModel):
    loan_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    rejected_by: Optional[str] = None


class LoanPaymentCommand(CommandModel):
    loan_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.SAVINGS_DEDUCTION
    processed_by: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


class SavingsCommand(CommandModel):
    member_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    processed_by: Optional[str] = None
    description: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


class ApproveWithdrawalCommand(CommandModel):
    transaction_id: str = Field(..., min_length=1)
    approved_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


class CancelWithdrawalCommand(CommandModel):
    transaction_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    cancelled_by: Optional[str] = None


class InterestAccrualCommand(CommandModel):
    member_id: Optional[str] = None  # None accrues for every active member
    from_date: Union[datetime, date]
    to_date: Union[datetime, date]
    annual_rate_percent: Optional[Decimal] = Field(None, ge=0)

    @field_validator("annual_rate_percent", mode="before")
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)

    @model_validator(mode="after")
    def check_period(self) -> "InterestAccrualCommand":
        if to_utc_datetime(self.to_date) < to_utc_datetime(self.from_date):
            raise ValueError("to_date must not be before from_date")
        return self


def parse_command(model: Type[ModelT], **data) -> ModelT:
    """
    Build a command model, converting pydantic errors to ValidationError
    """
    try:
        return model(**data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'command'}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}") from e
