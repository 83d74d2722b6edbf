"""
Test suite for the loan calculation service

Tests input validation, method dispatch and comparison, restructuring,
amortization tracking against actual payments, and the rate and
affordability utilities.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from loan_engine.calculator import LoanCalculationService, StrategyRegistry, validate_calculation_input
from loan_engine.currency import round_money
from loan_engine.errors import LoanValidationError, UnsupportedMethodError
from loan_engine.schedule import (
    ActualPayment, LoanCalculationInput, LoanCalculationMethod, RestructureOptions
)
from loan_engine.strategies import FlatRateStrategy


def make_input(method=LoanCalculationMethod.REDUCING_BALANCE, principal="1000", rate="12", term=12, **kwargs):
    return LoanCalculationInput(
        principal=principal,
        annual_interest_rate=rate,
        term_months=term,
        calculation_method=method,
        disbursement_date=date(2024, 1, 1),
        **kwargs
    )


class TestValidation:
    """Test calculation input validation"""

    def test_principal_must_be_positive(self):
        with pytest.raises(LoanValidationError, match="Principal amount must be greater than 0"):
            validate_calculation_input(make_input(principal="0"))

    def test_negative_rate_rejected(self):
        with pytest.raises(LoanValidationError, match="Interest rate cannot be negative"):
            validate_calculation_input(make_input(rate="-1"))

    def test_term_must_be_positive(self):
        with pytest.raises(LoanValidationError, match="Loan term must be greater than 0"):
            validate_calculation_input(make_input(term=0))

    def test_negative_grace_rejected(self):
        with pytest.raises(LoanValidationError, match="Grace period cannot be negative"):
            validate_calculation_input(make_input(grace_period_days=-5))

    def test_negative_fee_rejected(self):
        with pytest.raises(LoanValidationError, match="processing_fee_amount cannot be negative"):
            validate_calculation_input(make_input(processing_fee_amount="-1"))

    def test_balloon_requires_amount(self):
        with pytest.raises(LoanValidationError, match="Balloon amount is required"):
            validate_calculation_input(make_input(LoanCalculationMethod.BALLOON_PAYMENT))

    def test_custom_formula_requires_formula(self):
        with pytest.raises(LoanValidationError, match="Custom formula is required"):
            validate_calculation_input(make_input(LoanCalculationMethod.CUSTOM_FORMULA, custom_formula="  "))

    def test_non_numeric_input_rejected(self):
        with pytest.raises(LoanValidationError, match="principal must be numeric"):
            make_input(principal="lots")


class TestCalculationService:
    """Test dispatch to registered strategies"""

    def setup_method(self):
        self.service = LoanCalculationService()

    def test_available_methods(self):
        methods = self.service.get_available_methods()
        assert set(methods) == {
            LoanCalculationMethod.REDUCING_BALANCE,
            LoanCalculationMethod.FLAT_RATE,
            LoanCalculationMethod.SIMPLE_INTEREST,
        }

    def test_valid_but_unregistered_method_unsupported(self):
        with pytest.raises(UnsupportedMethodError, match="BALLOON_PAYMENT is not supported"):
            self.service.calculate_loan(make_input(LoanCalculationMethod.BALLOON_PAYMENT, balloon_amount="200"))

    def test_unknown_method_string_unsupported(self):
        with pytest.raises(UnsupportedMethodError):
            make_input("WEEKLY_MAGIC")

    def test_custom_registry(self):
        registry = StrategyRegistry()
        registry.register(FlatRateStrategy())
        service = LoanCalculationService(registry=registry)

        assert service.calculate_loan(make_input(LoanCalculationMethod.FLAT_RATE)).total_interest == Decimal('120.00')
        with pytest.raises(UnsupportedMethodError):
            service.calculate_loan(make_input())

    def test_compare_omits_failing_methods(self):
        results = self.service.compare_loan_methods(make_input(), [
            LoanCalculationMethod.REDUCING_BALANCE,
            LoanCalculationMethod.FLAT_RATE,
            LoanCalculationMethod.BALLOON_PAYMENT,
        ])

        assert set(results) == {LoanCalculationMethod.REDUCING_BALANCE, LoanCalculationMethod.FLAT_RATE}
        assert results[LoanCalculationMethod.FLAT_RATE].total_interest > \
            results[LoanCalculationMethod.REDUCING_BALANCE].total_interest

    def test_penalty_uses_loan_method(self):
        penalty = self.service.calculate_penalty(LoanCalculationMethod.FLAT_RATE, 10, "500", "2")
        assert penalty.penalty_amount == Decimal('10.00')

    def test_early_settlement_uses_original_method(self):
        original = self.service.calculate_loan(make_input(LoanCalculationMethod.FLAT_RATE, principal="1200"))
        settlement = self.service.calculate_early_settlement(original, date(2024, 7, 1), 6)
        assert settlement.rebate_amount == Decimal('19.38')

    def test_result_serializes_to_strings(self):
        data = self.service.calculate_loan(make_input()).to_dict()
        assert data['installment_amount'] == "88.85"
        assert data['calculation_method'] == "REDUCING_BALANCE"
        assert data['schedule'][0]['due_date'] == "2024-01-01"
        assert len(data['schedule']) == 12


class TestRestructure:
    """Test rescheduling of unpaid principal"""

    def setup_method(self):
        self.service = LoanCalculationService()
        self.original = self.service.calculate_loan(make_input())

    def test_longer_term_extends_loan(self):
        result = self.service.calculate_loan_restructure(
            self.original, RestructureOptions(new_term_months=12), 6, date(2024, 7, 1)
        )
        remaining_principal = sum(i.principal for i in self.original.schedule[6:])

        assert result.restructured.principal == remaining_principal
        assert result.extension_months == 6
        assert result.new_installment_amount == result.restructured.installment_amount
        assert result.new_installment_amount < self.original.installment_amount
        assert result.restructure_cost == Decimal('0.00')

    def test_defaults_to_remaining_term_and_default_rate(self):
        service = LoanCalculationService(default_restructure_rate="6")
        result = service.calculate_loan_restructure(self.original, RestructureOptions(), 6, date(2024, 7, 1))

        assert result.extension_months == 0
        assert result.restructured.calculation_method == LoanCalculationMethod.REDUCING_BALANCE
        # Lower rate on the same tail saves interest
        assert result.total_savings > Decimal('0')

    def test_moratorium_delays_first_installment(self):
        restructure_date = date(2024, 7, 1)
        result = self.service.calculate_loan_restructure(
            self.original, RestructureOptions(moratorium_months=2), 6, restructure_date
        )
        assert result.restructured.schedule[0].due_date == restructure_date + timedelta(days=60)

    def test_top_up_added_to_principal(self):
        result = self.service.calculate_loan_restructure(
            self.original, RestructureOptions(additional_amount="500"), 6, date(2024, 7, 1)
        )
        remaining_principal = sum(i.principal for i in self.original.schedule[6:])
        assert result.restructured.principal == remaining_principal + Decimal('500')

    def test_method_change(self):
        result = self.service.calculate_loan_restructure(
            self.original,
            RestructureOptions(new_calculation_method="FLAT_RATE"),
            6, date(2024, 7, 1)
        )
        assert result.restructured.calculation_method == LoanCalculationMethod.FLAT_RATE

    def test_installments_paid_out_of_range(self):
        with pytest.raises(LoanValidationError, match="installments_paid must be between"):
            self.service.calculate_loan_restructure(self.original, RestructureOptions(), 13)


class TestAmortization:
    """Test applying actual payments to a schedule"""

    def setup_method(self):
        self.service = LoanCalculationService()
        self.original = self.service.calculate_loan(
            make_input(LoanCalculationMethod.FLAT_RATE, principal="1200")
        )

    def test_unsplit_payments_allocated_interest_first(self):
        payments = [
            ActualPayment(payment_date=date(2024, 1, 1), amount="112"),
            ActualPayment(payment_date=date(2024, 2, 1), amount="112"),
        ]
        status = self.service.calculate_amortization_with_payments(self.original, payments)

        assert status.payments_applied == 2
        assert status.total_paid == Decimal('224.00')
        assert status.interest_paid == Decimal('24.00')
        assert status.principal_paid == Decimal('200.00')
        assert status.outstanding_principal == Decimal('1000.00')
        assert status.installments_covered == 2

    def test_explicit_split_used_as_given(self):
        payments = [ActualPayment(payment_date=date(2024, 1, 1), amount="300", principal="290", interest="10")]
        status = self.service.calculate_amortization_with_payments(self.original, payments)

        assert status.principal_paid == Decimal('290.00')
        assert status.interest_paid == Decimal('10.00')
        assert status.installments_covered == 2

    def test_overpayment_floors_outstanding_at_zero(self):
        payments = [ActualPayment(payment_date=date(2024, 1, 1), amount="5000")]
        status = self.service.calculate_amortization_with_payments(self.original, payments)

        assert status.outstanding_principal == Decimal('0.00')
        assert status.installments_covered == 12


class TestRateUtilities:
    """Test effective annual rate and affordability"""

    def setup_method(self):
        self.service = LoanCalculationService()

    def test_effective_annual_rate(self):
        assert round_money(self.service.calculate_effective_annual_rate("12", 12)) == Decimal('12.68')
        assert round_money(self.service.calculate_effective_annual_rate("12", 1)) == Decimal('12.00')

    def test_effective_annual_rate_needs_periods(self):
        with pytest.raises(LoanValidationError, match="Compounding periods per year must be positive"):
            self.service.calculate_effective_annual_rate("12", 0)

    def test_affordability(self):
        result = self.service.calculate_affordability("5000", "1000", "500")

        assert result.current_debt_to_income_ratio == Decimal('20.00')
        assert result.new_debt_to_income_ratio == Decimal('30.00')
        assert result.available_capacity == Decimal('1000.00')
        assert result.is_affordable is True

    def test_unaffordable_payment(self):
        result = self.service.calculate_affordability("5000", "1800", "500", max_ratio="40")

        assert result.is_affordable is False
        assert result.available_capacity == Decimal('200.00')

    def test_zero_income_rejected(self):
        with pytest.raises(LoanValidationError, match="Monthly income must be greater than 0"):
            self.service.calculate_affordability("0", "100", "50")
