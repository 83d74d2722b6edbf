"""
Loan Calculation Service

Validates calculation inputs, dispatches to the strategy registered for the
requested convention, and offers comparison, restructuring, amortization
tracking, effective-rate and affordability utilities.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from .currency import ZERO, ONE, HUNDRED, DecimalLike, to_decimal, round_money, decimal_power
from .errors import LoanEngineError, LoanValidationError, UnsupportedMethodError
from .periods import RepaymentFrequency
from .schedule import (
    ActualPayment, AffordabilityResult, AmortizationStatus, EarlySettlementResult,
    LoanCalculationInput, LoanCalculationMethod, LoanCalculationResult, PenaltyResult,
    PenaltyType, RestructureOptions, RestructureResult, coerce_method,
)
from .strategies import (
    CalculationStrategy, FlatRateStrategy, ReducingBalanceStrategy,
    SimpleInterestStrategy, split_schedule, sum_field,
)

logger = logging.getLogger(__name__)

DEFAULT_RESTRUCTURE_RATE = Decimal('12')
DEFAULT_MAX_DEBT_TO_INCOME_RATIO = Decimal('40')
MORATORIUM_DAYS_PER_MONTH = 30


class StrategyRegistry:
    """Explicit mapping from calculation method to strategy instance"""

    def __init__(self):
        self._strategies: Dict[LoanCalculationMethod, CalculationStrategy] = {}

    def register(self, strategy: CalculationStrategy) -> None:
        self._strategies[strategy.method] = strategy

    def get(self, method: LoanCalculationMethod) -> CalculationStrategy:
        method = coerce_method(method)
        strategy = self._strategies.get(method)
        if strategy is None:
            raise UnsupportedMethodError(f"Calculation method {method.value} is not supported")
        return strategy

    def methods(self) -> List[LoanCalculationMethod]:
        return list(self._strategies.keys())


def default_registry() -> StrategyRegistry:
    """Registry with every built-in convention"""
    registry = StrategyRegistry()
    registry.register(ReducingBalanceStrategy())
    registry.register(FlatRateStrategy())
    registry.register(SimpleInterestStrategy())
    return registry


def validate_calculation_input(calc_input: LoanCalculationInput) -> None:
    """
    Reject inputs no strategy can compute

    Raises:
        LoanValidationError: On the first invalid parameter found
    """
    if calc_input.principal <= ZERO:
        raise LoanValidationError("Principal amount must be greater than 0")
    if calc_input.annual_interest_rate < ZERO:
        raise LoanValidationError("Interest rate cannot be negative")
    if calc_input.term_months <= 0:
        raise LoanValidationError("Loan term must be greater than 0")
    if calc_input.grace_period_days < 0:
        raise LoanValidationError("Grace period cannot be negative")

    for name in ('processing_fee_amount', 'processing_fee_percentage',
                 'insurance_fee_amount', 'insurance_fee_percentage'):
        if getattr(calc_input, name) < ZERO:
            raise LoanValidationError(f"{name} cannot be negative")

    if calc_input.calculation_method == LoanCalculationMethod.BALLOON_PAYMENT:
        if calc_input.balloon_amount is None or calc_input.balloon_amount <= ZERO:
            raise LoanValidationError("Balloon amount is required for balloon payment loans")

    if calc_input.calculation_method == LoanCalculationMethod.CUSTOM_FORMULA:
        if not calc_input.custom_formula or not calc_input.custom_formula.strip():
            raise LoanValidationError("Custom formula is required for custom calculation method")


class LoanCalculationService:
    """
    Entry point for loan calculations

    Settlement and restructuring always use the convention the loan was
    originated under, taken from the original result.
    """

    def __init__(self, registry: Optional[StrategyRegistry] = None,
                 default_restructure_rate: DecimalLike = DEFAULT_RESTRUCTURE_RATE):
        self.registry = registry or default_registry()
        self.default_restructure_rate = to_decimal(default_restructure_rate)

    def calculate_loan(self, calc_input: LoanCalculationInput) -> LoanCalculationResult:
        """Validate an input and compute its schedule"""
        validate_calculation_input(calc_input)
        strategy = self.registry.get(calc_input.calculation_method)
        return strategy.compute_schedule(calc_input)

    def compare_loan_methods(
        self,
        base_input: LoanCalculationInput,
        methods: Iterable[LoanCalculationMethod]
    ) -> Dict[LoanCalculationMethod, LoanCalculationResult]:
        """
        Calculate the same loan under several conventions

        A method that fails is logged and left out of the result.
        """
        results = {}
        for method in methods:
            try:
                method = coerce_method(method)
                results[method] = self.calculate_loan(base_input.with_method(method))
            except LoanEngineError as e:
                logger.warning(f"Comparison skipped {method}: {e.message}",
                               extra={'extra': {'code': e.code.value}})
        return results

    def calculate_penalty(
        self,
        method: LoanCalculationMethod,
        overdue_days: int,
        overdue_amount: DecimalLike,
        penalty_rate: DecimalLike,
        penalty_type: PenaltyType = PenaltyType.PERCENTAGE_OF_OVERDUE
    ) -> PenaltyResult:
        """Penalty under the convention of the loan's calculation method"""
        return self.registry.get(method).compute_penalty(
            overdue_days, overdue_amount, penalty_rate, penalty_type
        )

    def calculate_early_settlement(
        self,
        original: LoanCalculationResult,
        settlement_date: date,
        installments_paid: int
    ) -> EarlySettlementResult:
        strategy = self.registry.get(original.calculation_method)
        return strategy.compute_early_settlement(original, settlement_date, installments_paid)

    def calculate_loan_restructure(
        self,
        original: LoanCalculationResult,
        options: RestructureOptions,
        installments_paid: int,
        restructure_date: Optional[date] = None
    ) -> RestructureResult:
        """
        Re-schedule the unpaid principal of a loan under new terms

        Args:
            original: Schedule the loan currently follows
            options: Requested term, rate, frequency, method, top-up and moratorium
            installments_paid: Installments already settled on the original schedule
            restructure_date: Disbursement date of the new schedule (today if omitted)

        Returns:
            RestructureResult comparing the remaining original payments to the new schedule
        """
        _, remaining = split_schedule(original, installments_paid)
        outstanding_principal = sum_field(remaining, 'principal') + options.additional_amount

        new_input = LoanCalculationInput(
            principal=outstanding_principal,
            annual_interest_rate=(options.new_interest_rate
                                  if options.new_interest_rate is not None
                                  else self.default_restructure_rate),
            term_months=options.new_term_months or len(remaining),
            repayment_frequency=options.new_repayment_frequency or RepaymentFrequency.MONTHLY,
            calculation_method=options.new_calculation_method or original.calculation_method,
            grace_period_days=options.moratorium_months * MORATORIUM_DAYS_PER_MONTH,
            disbursement_date=restructure_date or date.today(),
        )
        restructured = self.calculate_loan(new_input)

        original_remaining_payments = sum_field(remaining, 'total')
        new_total_payments = sum_field(restructured.schedule, 'total')
        restructure_cost = round_money(ZERO)

        return RestructureResult(
            original=original,
            restructured=restructured,
            restructure_cost=restructure_cost,
            total_savings=round_money(original_remaining_payments - new_total_payments - restructure_cost),
            new_installment_amount=restructured.installment_amount,
            extension_months=restructured.number_of_installments - len(remaining),
        )

    def calculate_amortization_with_payments(
        self,
        original: LoanCalculationResult,
        payments: Sequence[ActualPayment]
    ) -> AmortizationStatus:
        """
        Apply actual payments to a schedule

        Payments without an explicit principal/interest split are allocated
        interest first: the n-th payment covers the scheduled interest up to
        installment n that is still unpaid, the rest goes to principal.
        """
        principal_paid = ZERO
        interest_paid = ZERO
        total_paid = ZERO
        last_index = len(original.schedule) - 1

        for index, payment in enumerate(sorted(payments, key=lambda p: p.payment_date)):
            total_paid += payment.amount
            if payment.principal > ZERO or payment.interest > ZERO:
                principal_paid += payment.principal
                interest_paid += payment.interest
                continue

            available = payment.amount
            interest_due = original.schedule[min(index, last_index)].cumulative_interest - interest_paid
            interest_part = min(available, max(interest_due, ZERO))
            interest_paid += interest_part
            principal_paid += available - interest_part

        outstanding = max(original.principal - principal_paid, ZERO)

        covered = 0
        for installment in original.schedule:
            if installment.cumulative_principal <= principal_paid:
                covered = installment.number
            else:
                break

        return AmortizationStatus(
            original=original,
            payments_applied=len(payments),
            total_paid=round_money(total_paid),
            principal_paid=round_money(principal_paid),
            interest_paid=round_money(interest_paid),
            outstanding_principal=round_money(outstanding),
            installments_covered=covered,
        )

    def calculate_effective_annual_rate(self, apr_percent: DecimalLike,
                                        compounding_periods_per_year: int) -> Decimal:
        """EAR in percent: ((1 + apr/100/n)^n - 1) x 100"""
        if compounding_periods_per_year <= 0:
            raise LoanValidationError("Compounding periods per year must be positive")
        apr = to_decimal(apr_percent)
        periods = compounding_periods_per_year
        growth = decimal_power(ONE + apr / HUNDRED / Decimal(periods), periods)
        return (growth - ONE) * HUNDRED

    def calculate_affordability(
        self,
        monthly_income: DecimalLike,
        existing_debts: DecimalLike,
        proposed_payment: DecimalLike,
        max_ratio: DecimalLike = DEFAULT_MAX_DEBT_TO_INCOME_RATIO
    ) -> AffordabilityResult:
        """Debt-to-income check; ratios are percents"""
        income = to_decimal(monthly_income)
        debts = to_decimal(existing_debts)
        payment = to_decimal(proposed_payment)
        max_ratio = to_decimal(max_ratio)

        if income <= ZERO:
            raise LoanValidationError("Monthly income must be greater than 0")

        current_ratio = debts / income * HUNDRED
        new_ratio = (debts + payment) / income * HUNDRED
        capacity = income * max_ratio / HUNDRED - debts

        return AffordabilityResult(
            current_debt_to_income_ratio=round_money(current_ratio),
            new_debt_to_income_ratio=round_money(new_ratio),
            is_affordable=new_ratio <= max_ratio,
            available_capacity=round_money(max(capacity, ZERO)),
            max_debt_to_income_ratio=max_ratio,
        )

    def get_available_methods(self) -> List[LoanCalculationMethod]:
        return self.registry.methods()
