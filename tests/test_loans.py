"""
Test suite for loans module

Tests loan products, loan creation and approval, disbursement values,
repayment recording and the shared balance calculation. All balance math
must be exact to the cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.charges import ChargeAppliesAt, ChargeCalculationType, ChargeManager, ChargeMode
from loan_engine.config import LoanEngineConfig
from loan_engine.errors import InvalidStateError, LoanValidationError, NotFoundError
from loan_engine.loans import (
    LoanManager, LoanPaymentStatus, LoanStatus, calculate_loan_balance
)
from loan_engine.periods import DurationUnit
from loan_engine.schedule import LoanCalculationMethod
from loan_engine.settings import SettingsManager, LOAN_APPROVAL_REQUIRED, LOAN_ENGINE_TYPE
from loan_engine.storage import InMemoryStorage


class TestLoanManager:
    """Test loan origination and repayment"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = LoanEngineConfig(database_url="memory://")
        self.settings = SettingsManager(self.storage, self.audit_trail, self.config)
        self.charge_manager = ChargeManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.charge_manager, self.settings)

        self.product = self.loan_manager.create_product(
            "ORG1", "Salary Advance", currency="USD",
            duration_unit=DurationUnit.WEEKS, min_period=2, max_period=8, grace_period_days=3
        )

    def active_loan(self, amount="1000", rate="10"):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, amount, rate)
        self.loan_manager.approve_loan(loan.id, "manager")
        return self.loan_manager.disburse_loan(loan.id, "officer", disbursement_date=date(2024, 1, 1)).loan

    # Products

    def test_product_defaults_to_organization_engine_type(self):
        assert self.product.calculation_method == LoanCalculationMethod.REDUCING_BALANCE

        self.settings.set("ORG2", LOAN_ENGINE_TYPE, "FLAT_RATE")
        product = self.loan_manager.create_product("ORG2", "Group Loan")
        assert product.calculation_method == LoanCalculationMethod.FLAT_RATE

    def test_product_validation(self):
        with pytest.raises(LoanValidationError, match="Product name is required"):
            self.loan_manager.create_product("ORG1", " ")
        with pytest.raises(LoanValidationError, match="Maximum period cannot be shorter"):
            self.loan_manager.create_product("ORG1", "Bad", min_period=3, max_period=2)
        with pytest.raises(LoanValidationError, match="Unsupported currency"):
            self.loan_manager.create_product("ORG1", "Bad", currency="XYZ")

    def test_update_product(self):
        updated = self.loan_manager.update_product(self.product.id, allow_auto_calculations=False)
        assert updated.allow_auto_calculations is False
        assert self.loan_manager.get_product(self.product.id).allow_auto_calculations is False

        with pytest.raises(LoanValidationError, match="Unknown product field: organization_id"):
            self.loan_manager.update_product(self.product.id, organization_id="ORG2")
        with pytest.raises(NotFoundError):
            self.loan_manager.update_product("missing", is_active=False)

    # Creation and approval

    def test_create_loan_pending_approval(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10", created_by="officer")

        assert loan.status == LoanStatus.PENDING_APPROVAL
        assert loan.loan_number.startswith("LN-")
        assert loan.principal_balance == Decimal('1000')
        assert loan.grace_period_days == 3
        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED

    def test_create_loan_approved_when_approval_not_required(self):
        self.settings.set("ORG1", LOAN_APPROVAL_REQUIRED, False)
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        assert loan.status == LoanStatus.APPROVED

    def test_create_loan_validation(self):
        with pytest.raises(LoanValidationError, match="Loan amount must be greater than 0"):
            self.loan_manager.create_loan("ORG1", self.product.id, "0", "10")
        with pytest.raises(LoanValidationError, match="Interest rate cannot be negative"):
            self.loan_manager.create_loan("ORG1", self.product.id, "100", "-1")
        with pytest.raises(NotFoundError):
            self.loan_manager.create_loan("ORG2", self.product.id, "100", "10")

    def test_inactive_product_rejected(self):
        self.loan_manager.update_product(self.product.id, is_active=False)
        with pytest.raises(InvalidStateError, match="is not active"):
            self.loan_manager.create_loan("ORG1", self.product.id, "100", "10")

    def test_approve_only_pending_loans(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        approved = self.loan_manager.approve_loan(loan.id, "manager")
        assert approved.status == LoanStatus.APPROVED

        with pytest.raises(InvalidStateError, match="not pending approval"):
            self.loan_manager.approve_loan(loan.id, "manager")

    # Disbursement

    def test_disbursement_values(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        values = self.loan_manager.calculate_disbursement_values(loan.id, date(2024, 1, 1))

        # Two weeks, the product's minimum period
        assert values.expected_repayment_date == date(2024, 1, 15)
        assert values.next_due_date == date(2024, 1, 15)
        assert values.interest_amount == Decimal('100.00')
        assert values.outstanding_balance == Decimal('1100.00')
        assert values.grace_period_days == 3

    def test_loan_term_overrides_minimum_period(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10", term=4)
        values = self.loan_manager.calculate_disbursement_values(loan.id, date(2024, 1, 1))
        assert values.expected_repayment_date == date(2024, 1, 29)

    def test_disburse_requires_approval(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        with pytest.raises(InvalidStateError, match="must be approved before disbursement"):
            self.loan_manager.disburse_loan(loan.id, "officer")

    def test_disburse_pending_loan_when_approval_not_required(self):
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        self.settings.set("ORG1", LOAN_APPROVAL_REQUIRED, False)

        result = self.loan_manager.disburse_loan(loan.id, "officer", disbursement_date=date(2024, 1, 1))
        assert result.loan.status == LoanStatus.ACTIVE

    def test_disburse_active_loan_rejected(self):
        loan = self.active_loan()
        with pytest.raises(InvalidStateError, match="cannot be disbursed from status ACTIVE"):
            self.loan_manager.disburse_loan(loan.id, "officer")

    def test_disburse_sets_dates_and_balances(self):
        loan = self.active_loan()

        assert loan.status == LoanStatus.ACTIVE
        assert loan.start_date == date(2024, 1, 1)
        assert loan.disbursed_date == date(2024, 1, 1)
        assert loan.next_due_date == date(2024, 1, 15)
        assert loan.interest_amount == Decimal('100.00')
        assert loan.outstanding_balance == Decimal('1100.00')
        assert loan.outstanding.to_string() == "USD 1,100.00"

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.outstanding_balance == Decimal('1100.00')
        assert stored.due_date == date(2024, 1, 15)

    def test_disbursement_applies_active_auto_charges(self):
        self.charge_manager.create_charge(
            "ORG1", "Activation", "ACT", ChargeCalculationType.FIXED, default_amount="12",
            charge_mode=ChargeMode.AUTO, trigger_status="ACTIVE"
        )
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        self.loan_manager.approve_loan(loan.id, "manager")

        result = self.loan_manager.disburse_loan(loan.id, "officer")
        assert [c.amount for c in result.auto_charges] == [Decimal('12.00')]
        assert result.loan.outstanding_balance == Decimal('1112.00')

    def test_failed_disbursement_rolls_back(self):
        self.charge_manager.create_charge(
            "ORG1", "Admin", "ADMIN", ChargeCalculationType.FIXED, default_amount="10",
            applies_at=ChargeAppliesAt.DISBURSEMENT, is_mandatory=True
        )
        loan = self.loan_manager.create_loan("ORG1", self.product.id, "1000", "10")
        self.loan_manager.approve_loan(loan.id, "manager")

        # No ledger is configured for the payment method
        with pytest.raises(InvalidStateError):
            self.loan_manager.disburse_loan(loan.id, "officer", payment_method_id="CASH")

        assert self.loan_manager.get_loan(loan.id).status == LoanStatus.APPROVED
        assert self.charge_manager.get_loan_charges(loan.id) == []

    # Payments and balance

    def test_record_payment_reduces_balance(self):
        loan = self.active_loan()
        payment = self.loan_manager.record_payment(loan.id, principal="400", interest="50", recorded_by="teller")

        assert payment.total == Decimal('450.00')
        stored = self.loan_manager.get_loan(loan.id)
        assert stored.outstanding_balance == Decimal('650.00')
        assert stored.principal_balance == Decimal('600.00')
        assert stored.interest_balance == Decimal('50.00')

    def test_pending_payment_does_not_count(self):
        loan = self.active_loan()
        self.loan_manager.record_payment(loan.id, principal="400", status=LoanPaymentStatus.PENDING)

        assert self.loan_manager.get_balance(loan.id) == Decimal('1100.00')
        assert len(self.loan_manager.get_payments(loan.id)) == 1

    def test_full_repayment_completes_loan(self):
        loan = self.active_loan()
        self.loan_manager.record_payment(loan.id, principal="1000", interest="100")

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETED
        assert stored.outstanding_balance == Decimal('0.00')

        with pytest.raises(InvalidStateError, match="Cannot record a payment on a COMPLETED loan"):
            self.loan_manager.record_payment(loan.id, principal="1")

    def test_penalty_payment_counts_toward_balance(self):
        loan = self.active_loan()
        self.loan_manager.record_payment(loan.id, penalty="25")
        assert self.loan_manager.get_balance(loan.id) == Decimal('1075.00')

    def test_invalid_payments_rejected(self):
        loan = self.active_loan()
        with pytest.raises(LoanValidationError, match="Payment amount must be greater than 0"):
            self.loan_manager.record_payment(loan.id)
        with pytest.raises(LoanValidationError, match="cannot be negative"):
            self.loan_manager.record_payment(loan.id, principal="10", interest="-1")

    def test_balance_of_missing_loan(self):
        with pytest.raises(NotFoundError, match="Loan missing not found"):
            calculate_loan_balance(self.storage, "missing")

    def test_find_and_processing_selection(self):
        active = self.active_loan()
        self.loan_manager.create_loan("ORG1", self.product.id, "300", "5")

        assert [l.id for l in self.loan_manager.find_loans("ORG1", [LoanStatus.ACTIVE])] == [active.id]
        assert len(self.loan_manager.find_loans("ORG1")) == 2
        assert [l.id for l in self.loan_manager.get_loans_for_processing("ORG1")] == [active.id]
