"""
Pydantic schemas for API requests
"""

from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from .schedule import LoanCalculationInput, PenaltyType, RestructureOptions


class CalculationRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field(..., description="Annual rate in percent, e.g. 12")
    term_months: int
    repayment_frequency: str = "MONTHLY"
    calculation_method: Optional[str] = None  # Configured default when omitted
    grace_period_days: int = 0
    processing_fee_amount: str = "0"
    processing_fee_percentage: str = "0"
    insurance_fee_amount: str = "0"
    insurance_fee_percentage: str = "0"
    balloon_amount: Optional[str] = None
    custom_formula: Optional[str] = None
    disbursement_date: Optional[date] = None

    def to_input(self, default_method: str) -> LoanCalculationInput:
        return LoanCalculationInput(
            principal=self.principal,
            annual_interest_rate=self.annual_interest_rate,
            term_months=self.term_months,
            repayment_frequency=self.repayment_frequency,
            calculation_method=self.calculation_method or default_method,
            grace_period_days=self.grace_period_days,
            processing_fee_amount=self.processing_fee_amount,
            processing_fee_percentage=self.processing_fee_percentage,
            insurance_fee_amount=self.insurance_fee_amount,
            insurance_fee_percentage=self.insurance_fee_percentage,
            balloon_amount=self.balloon_amount,
            custom_formula=self.custom_formula,
            disbursement_date=self.disbursement_date or date.today(),
        )


class CompareRequest(BaseModel):
    loan: CalculationRequest
    methods: List[str] = Field(..., min_length=1)


class PenaltyRequest(BaseModel):
    calculation_method: str = "REDUCING_BALANCE"
    overdue_days: int
    overdue_amount: str
    penalty_rate: str
    penalty_type: PenaltyType = PenaltyType.PERCENTAGE_OF_OVERDUE


class EarlySettlementRequest(BaseModel):
    loan: CalculationRequest
    settlement_date: date
    installments_paid: int


class RestructureOptionsModel(BaseModel):
    new_term_months: Optional[int] = None
    new_interest_rate: Optional[str] = None
    new_repayment_frequency: Optional[str] = None
    additional_amount: str = "0"
    moratorium_months: int = 0
    new_calculation_method: Optional[str] = None

    def to_options(self) -> RestructureOptions:
        return RestructureOptions(**self.model_dump())


class RestructureRequest(BaseModel):
    loan: CalculationRequest
    options: RestructureOptionsModel = Field(default_factory=RestructureOptionsModel)
    installments_paid: int
    restructure_date: Optional[date] = None


class AffordabilityRequest(BaseModel):
    monthly_income: str
    existing_debts: str = "0"
    proposed_payment: str
    max_ratio: Optional[str] = None  # Configured default when omitted


class EngineRunRequest(BaseModel):
    organization_id: Optional[str] = None
    now: Optional[datetime] = None
