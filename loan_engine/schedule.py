"""
Loan Schedule Value Objects

Immutable inputs and results shared by the calculation strategies and the
calculation service: calculation inputs, installments, schedules, penalty,
early settlement, restructure and affordability results.
"""

from dataclasses import dataclass, field, replace, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .currency import ZERO, HUNDRED, to_decimal
from .errors import LoanValidationError, UnsupportedMethodError
from .periods import RepaymentFrequency


class LoanCalculationMethod(Enum):
    """Interest calculation conventions"""
    REDUCING_BALANCE = "REDUCING_BALANCE"
    FLAT_RATE = "FLAT_RATE"
    SIMPLE_INTEREST = "SIMPLE_INTEREST"
    COMPOUND_INTEREST = "COMPOUND_INTEREST"
    ANNUITY = "ANNUITY"
    BALLOON_PAYMENT = "BALLOON_PAYMENT"
    CUSTOM_FORMULA = "CUSTOM_FORMULA"


class PenaltyType(Enum):
    """How a late-payment penalty is derived"""
    FIXED_AMOUNT = "FIXED_AMOUNT"
    PERCENTAGE_OF_OVERDUE = "PERCENTAGE_OF_OVERDUE"
    PERCENTAGE_OF_INSTALLMENT = "PERCENTAGE_OF_INSTALLMENT"
    COMPOUNDING_DAILY = "COMPOUNDING_DAILY"


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    return value


class _Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


def _coerce_decimal(obj: Any, name: str) -> None:
    value = getattr(obj, name)
    if value is None:
        return
    try:
        object.__setattr__(obj, name, to_decimal(value))
    except ValueError:
        raise LoanValidationError(f"{name} must be numeric, got {value!r}")


def coerce_method(value: Any) -> LoanCalculationMethod:
    """Accept a LoanCalculationMethod or its string value"""
    if isinstance(value, LoanCalculationMethod):
        return value
    try:
        return LoanCalculationMethod(str(value).upper())
    except ValueError:
        raise UnsupportedMethodError(f"Calculation method {value} is not supported")


def coerce_frequency(value: Any) -> RepaymentFrequency:
    """Accept a RepaymentFrequency or its string value"""
    if isinstance(value, RepaymentFrequency):
        return value
    try:
        return RepaymentFrequency(str(value).upper())
    except ValueError:
        raise LoanValidationError(f"Unsupported repayment frequency: {value}")


@dataclass(frozen=True)
class LoanCalculationInput(_Serializable):
    """
    Parameters of one calculation request

    Rates and fee percentages are percents (12 means 12%).
    """
    principal: Decimal
    annual_interest_rate: Decimal
    term_months: int
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    calculation_method: LoanCalculationMethod = LoanCalculationMethod.REDUCING_BALANCE
    grace_period_days: int = 0
    processing_fee_amount: Decimal = ZERO
    processing_fee_percentage: Decimal = ZERO
    insurance_fee_amount: Decimal = ZERO
    insurance_fee_percentage: Decimal = ZERO
    balloon_amount: Optional[Decimal] = None
    custom_formula: Optional[str] = None
    disbursement_date: date = field(default_factory=date.today)

    def __post_init__(self):
        for name in ('principal', 'annual_interest_rate', 'processing_fee_amount',
                     'processing_fee_percentage', 'insurance_fee_amount',
                     'insurance_fee_percentage', 'balloon_amount'):
            _coerce_decimal(self, name)
        object.__setattr__(self, 'repayment_frequency', coerce_frequency(self.repayment_frequency))
        object.__setattr__(self, 'calculation_method', coerce_method(self.calculation_method))
        object.__setattr__(self, 'grace_period_days', int(self.grace_period_days or 0))
        object.__setattr__(self, 'term_months', int(self.term_months))

    def with_method(self, method: LoanCalculationMethod) -> 'LoanCalculationInput':
        """Copy of this input using another calculation method"""
        return replace(self, calculation_method=method)

    def total_fees(self) -> Decimal:
        """Fixed fees plus percentage fees on the principal, full precision"""
        processing = self.processing_fee_amount + self.principal * self.processing_fee_percentage / HUNDRED
        insurance = self.insurance_fee_amount + self.principal * self.insurance_fee_percentage / HUNDRED
        return processing + insurance


@dataclass(frozen=True)
class Installment(_Serializable):
    """One scheduled repayment period"""
    number: int
    due_date: date
    principal: Decimal
    interest: Decimal
    fees: Decimal
    total: Decimal
    remaining_balance: Decimal
    cumulative_principal: Decimal
    cumulative_interest: Decimal


@dataclass(frozen=True)
class ScheduleSummary(_Serializable):
    number_of_installments: int
    first_payment_date: date
    last_payment_date: date
    total_interest: Decimal
    total_fees: Decimal
    average_payment: Decimal


@dataclass(frozen=True)
class LoanCalculationResult(_Serializable):
    """Outcome of a schedule calculation"""
    principal: Decimal
    total_interest: Decimal
    total_fees: Decimal
    total_amount: Decimal
    installment_amount: Decimal
    effective_interest_rate: Decimal
    apr: Decimal
    schedule: Tuple[Installment, ...]
    calculation_method: LoanCalculationMethod
    summary: ScheduleSummary

    @property
    def number_of_installments(self) -> int:
        return len(self.schedule)


@dataclass(frozen=True)
class PenaltyResult(_Serializable):
    penalty_amount: Decimal
    penalty_days: int
    penalty_rate: Decimal
    penalty_type: PenaltyType
    calculated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class EarlySettlementResult(_Serializable):
    """
    Amount needed to close a loan before its final installment

    For Simple Interest loans ``remaining_interest`` is the time-proportional
    interest still owed rather than the scheduled interest tail.
    """
    settlement_date: date
    remaining_principal: Decimal
    remaining_interest: Decimal
    rebate_amount: Decimal
    penalty_amount: Decimal
    total_settlement_amount: Decimal
    savings: Decimal


@dataclass(frozen=True)
class RestructureOptions(_Serializable):
    """Requested changes for a restructure; unset fields keep defaults"""
    new_term_months: Optional[int] = None
    new_interest_rate: Optional[Decimal] = None
    new_repayment_frequency: Optional[RepaymentFrequency] = None
    additional_amount: Decimal = ZERO
    moratorium_months: int = 0
    new_calculation_method: Optional[LoanCalculationMethod] = None

    def __post_init__(self):
        _coerce_decimal(self, 'new_interest_rate')
        _coerce_decimal(self, 'additional_amount')
        if self.new_repayment_frequency is not None:
            object.__setattr__(self, 'new_repayment_frequency', coerce_frequency(self.new_repayment_frequency))
        if self.new_calculation_method is not None:
            object.__setattr__(self, 'new_calculation_method', coerce_method(self.new_calculation_method))


@dataclass(frozen=True)
class RestructureResult(_Serializable):
    original: LoanCalculationResult
    restructured: LoanCalculationResult
    restructure_cost: Decimal
    total_savings: Decimal
    new_installment_amount: Decimal
    extension_months: int


@dataclass(frozen=True)
class ActualPayment(_Serializable):
    """A payment actually received against a calculated schedule"""
    payment_date: date
    amount: Decimal
    principal: Decimal = ZERO
    interest: Decimal = ZERO

    def __post_init__(self):
        for name in ('amount', 'principal', 'interest'):
            _coerce_decimal(self, name)


@dataclass(frozen=True)
class AmortizationStatus(_Serializable):
    """Position of a schedule after applying actual payments"""
    original: LoanCalculationResult
    payments_applied: int
    total_paid: Decimal
    principal_paid: Decimal
    interest_paid: Decimal
    outstanding_principal: Decimal
    installments_covered: int


@dataclass(frozen=True)
class AffordabilityResult(_Serializable):
    current_debt_to_income_ratio: Decimal
    new_debt_to_income_ratio: Decimal
    is_affordable: bool
    available_capacity: Decimal
    max_debt_to_income_ratio: Decimal
