"""
Test suite for charges module

Tests charge definitions, amount evaluation with per-currency rates,
disbursement and automatic charges, waivers, and income recording through
a financial ledger.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.charges import (
    Charge, ChargeApplication, ChargeAppliesAt, ChargeCalculationType, ChargeEvaluator,
    ChargeManager, ChargeMode, ChargeRate, FinancialLedger, LoanChargeStatus, DEFAULT_CHARGES,
)
from loan_engine.config import LoanEngineConfig
from loan_engine.errors import InvalidStateError, LoanValidationError, NotFoundError
from loan_engine.loans import LoanManager, LoanStatus
from loan_engine.settings import SettingsManager
from loan_engine.storage import InMemoryStorage


class RecordingLedger(FinancialLedger):
    """Ledger double that remembers every income entry"""

    def __init__(self):
        self.entries = []

    def record_income(self, organization_id, amount, currency, payment_method_id,
                      related_loan_id, description, reference, processed_by=None):
        self.entries.append({
            'organization_id': organization_id,
            'amount': amount,
            'currency': currency,
            'payment_method_id': payment_method_id,
            'related_loan_id': related_loan_id,
            'reference': reference,
        })
        return f"TXN-{len(self.entries)}"


@pytest.fixture
def storage():
    """In-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def charge_manager(storage, audit_trail, ledger):
    return ChargeManager(storage, audit_trail, ledger=ledger)


@pytest.fixture
def loan_manager(storage, audit_trail, charge_manager):
    config = LoanEngineConfig(database_url="memory://", loan_approval_required=False)
    settings = SettingsManager(storage, audit_trail, config)
    return LoanManager(storage, audit_trail, charge_manager, settings)


@pytest.fixture
def loan(loan_manager):
    """Approved 1000 USD loan at 10%"""
    product = loan_manager.create_product("ORG1", "Payday", currency="USD")
    return loan_manager.create_loan("ORG1", product.id, "1000", "10")


def make_charge(calculation_type, **kwargs):
    return Charge(
        id="C1", created_at=None, updated_at=None, organization_id="ORG1",
        name="Fee", code="FEE", calculation_type=calculation_type, **kwargs
    )


class TestChargeEvaluator:
    """Test charge amount evaluation"""

    def setup_method(self):
        self.evaluator = ChargeEvaluator()

    def test_fixed_default_amount(self):
        charge = make_charge(ChargeCalculationType.FIXED, default_amount=Decimal('25'))
        assert self.evaluator.evaluate(charge, "1000", "USD") == Decimal('25.00')

    def test_percentage_is_fraction_of_base(self):
        charge = make_charge(ChargeCalculationType.PERCENTAGE, default_percentage=Decimal('0.05'))
        assert self.evaluator.evaluate(charge, "1000", "USD") == Decimal('50.00')

    def test_currency_rate_overrides_default(self):
        charge = make_charge(
            ChargeCalculationType.FIXED,
            default_amount=Decimal('25'),
            rates=[ChargeRate(currency="kes", amount="3000")]
        )
        assert self.evaluator.evaluate(charge, "1000", "KES") == Decimal('3000.00')
        assert self.evaluator.evaluate(charge, "1000", "USD") == Decimal('25.00')

    def test_inactive_rate_ignored(self):
        charge = make_charge(
            ChargeCalculationType.FIXED,
            default_amount=Decimal('25'),
            rates=[ChargeRate(currency="USD", amount="40", is_active=False)]
        )
        assert self.evaluator.evaluate(charge, "1000", "USD") == Decimal('25.00')

    def test_zero_currency_rate_is_respected(self):
        fixed = make_charge(
            ChargeCalculationType.FIXED,
            default_amount=Decimal('25'),
            rates=[ChargeRate(currency="USD", amount="0")]
        )
        percentage = make_charge(
            ChargeCalculationType.PERCENTAGE,
            default_percentage=Decimal('0.05'),
            rates=[ChargeRate(currency="USD", percentage="0")]
        )
        assert self.evaluator.evaluate(fixed, "1000", "USD") == Decimal('0.00')
        assert self.evaluator.evaluate(percentage, "1000", "USD") == Decimal('0.00')

    def test_percentage_clamped_to_rate_bounds(self):
        charge = make_charge(
            ChargeCalculationType.PERCENTAGE,
            default_percentage=Decimal('0.01'),
            rates=[ChargeRate(currency="USD", min_amount="15", max_amount="100")]
        )
        assert self.evaluator.evaluate(charge, "1000", "USD") == Decimal('15.00')
        assert self.evaluator.evaluate(charge, "50000", "USD") == Decimal('100.00')
        assert self.evaluator.evaluate(charge, "5000", "USD") == Decimal('50.00')

    def test_missing_values_evaluate_to_zero(self):
        assert self.evaluator.evaluate(make_charge(ChargeCalculationType.FIXED), "1000", "USD") == Decimal('0.00')
        assert self.evaluator.evaluate(make_charge(ChargeCalculationType.PERCENTAGE), "1000", "USD") == Decimal('0.00')


class TestChargeDefinitions:
    """Test creating and maintaining charge definitions"""

    def test_create_charge(self, charge_manager, audit_trail):
        charge = charge_manager.create_charge(
            "ORG1", "Late Fee", "late_fee", ChargeCalculationType.FIXED,
            created_by="admin", default_amount="10", applies_at=ChargeAppliesAt.LATE_PAYMENT
        )

        assert charge.code == "LATE_FEE"
        assert charge.default_amount == Decimal('10')
        assert charge_manager.get_charge(charge.id).applies_at == ChargeAppliesAt.LATE_PAYMENT
        assert audit_trail.get_events_for_entity("charge", charge.id)[0].event_type == AuditEventType.CHARGE_CREATED

    def test_duplicate_code_rejected(self, charge_manager):
        charge_manager.create_charge("ORG1", "Fee", "FEE", ChargeCalculationType.FIXED)
        with pytest.raises(LoanValidationError, match="Charge code FEE already exists"):
            charge_manager.create_charge("ORG1", "Other", "fee", ChargeCalculationType.FIXED)
        # Codes are unique per organization only
        charge_manager.create_charge("ORG2", "Fee", "FEE", ChargeCalculationType.FIXED)

    def test_auto_charge_needs_trigger(self, charge_manager):
        with pytest.raises(LoanValidationError, match="AUTO charges need a trigger status"):
            charge_manager.create_charge("ORG1", "Penalty", "PEN", ChargeCalculationType.FIXED,
                                         charge_mode=ChargeMode.AUTO)

    def test_negative_amount_rejected(self, charge_manager):
        with pytest.raises(LoanValidationError, match="default_amount cannot be negative"):
            charge_manager.create_charge("ORG1", "Fee", "FEE", ChargeCalculationType.FIXED, default_amount="-1")

    def test_unknown_field_rejected(self, charge_manager):
        with pytest.raises(LoanValidationError, match="Unknown charge fields: colour"):
            charge_manager.create_charge("ORG1", "Fee", "FEE", ChargeCalculationType.FIXED, colour="red")

    def test_update_and_deactivate(self, charge_manager):
        charge = charge_manager.create_charge("ORG1", "Fee", "FEE", ChargeCalculationType.FIXED, default_amount="5")

        updated = charge_manager.update_charge(charge.id, default_amount="7.50",
                                               rates=[{'currency': 'EUR', 'amount': '6'}])
        assert updated.default_amount == Decimal('7.50')
        assert charge_manager.get_charge(charge.id).rates[0].amount == Decimal('6')

        charge_manager.deactivate_charge(charge.id)
        assert charge_manager.list_charges("ORG1") == []
        assert len(charge_manager.list_charges("ORG1", active_only=False)) == 1

    def test_update_missing_charge(self, charge_manager):
        with pytest.raises(NotFoundError):
            charge_manager.update_charge("missing", name="x")

    def test_seed_default_charges_is_repeatable(self, charge_manager):
        created = charge_manager.seed_default_charges("ORG1")
        assert len(created) == len(DEFAULT_CHARGES)
        assert charge_manager.seed_default_charges("ORG1") == []

        disbursement = charge_manager.get_disbursement_charges("ORG1")
        assert "LATE_FEE" not in [c.code for c in disbursement]

    def test_auto_charges_filtered_by_trigger(self, charge_manager):
        charge_manager.create_charge("ORG1", "Default Fee", "DEF", ChargeCalculationType.FIXED,
                                     default_amount="10", charge_mode=ChargeMode.AUTO,
                                     trigger_status=LoanStatus.DEFAULTED)
        charge_manager.create_charge("ORG1", "Overdue Fee", "OVD", ChargeCalculationType.FIXED,
                                     default_amount="20", charge_mode=ChargeMode.AUTO,
                                     trigger_status="OVERDUE")

        assert [c.code for c in charge_manager.get_auto_charges("ORG1", "DEFAULTED")] == ["DEF"]
        assert [c.code for c in charge_manager.get_auto_charges("ORG1", "OVERDUE")] == ["OVD"]
        assert charge_manager.get_auto_charges("ORG2", "OVERDUE") == []


class TestLoanCharges:
    """Test applying charges to loans"""

    def test_disbursement_charges(self, charge_manager, loan_manager, loan):
        charge_manager.create_charge("ORG1", "Admin", "ADMIN", ChargeCalculationType.PERCENTAGE,
                                     default_percentage="0.02", applies_at=ChargeAppliesAt.DISBURSEMENT,
                                     is_deducted_from_principal=True, is_mandatory=True)
        charge_manager.create_charge("ORG1", "Service", "SVC", ChargeCalculationType.FIXED,
                                     default_amount="5", applies_at=ChargeAppliesAt.DISBURSEMENT,
                                     is_mandatory=True)
        charge_manager.create_charge("ORG1", "Optional", "OPT", ChargeCalculationType.FIXED,
                                     default_amount="99", applies_at=ChargeAppliesAt.DISBURSEMENT)

        result = loan_manager.disburse_loan(loan.id, "officer", disbursement_date=date(2024, 1, 1))

        assert result.charges.total_charges == Decimal('25.00')
        assert result.charges.deducted_from_principal == Decimal('20.00')
        assert result.charges.added_to_loan == Decimal('5.00')
        assert result.charges.net_disbursement == Decimal('980.00')
        assert all(c.status == LoanChargeStatus.COMPLETED for c in result.charges.loan_charges)
        # Only the non-deducted charge is added to the balance
        assert result.loan.outstanding_balance == Decimal('1105.00')

    def test_selected_disbursement_charges(self, charge_manager, loan_manager, loan):
        optional = charge_manager.create_charge("ORG1", "Optional", "OPT", ChargeCalculationType.FIXED,
                                                default_amount="15", applies_at=ChargeAppliesAt.DISBURSEMENT)

        result = loan_manager.disburse_loan(loan.id, "officer", charge_ids=[optional.id, "missing"])
        assert [c.charge_id for c in result.charges.loan_charges] == [optional.id]

    def test_preview_does_not_persist(self, charge_manager, loan):
        charge_manager.create_charge("ORG1", "Admin", "ADMIN", ChargeCalculationType.PERCENTAGE,
                                     default_percentage="0.02", applies_at=ChargeAppliesAt.DISBURSEMENT)
        previews = charge_manager.preview_charges_for_loan(loan)

        assert previews[0].calculated_amount == Decimal('20.00')
        assert charge_manager.get_loan_charges(loan.id) == []

    def test_manual_charge_pending_without_payment_method(self, charge_manager, loan):
        charge = charge_manager.create_charge("ORG1", "Statement", "STMT", ChargeCalculationType.FIXED,
                                              default_amount="3")
        loan_charge = charge_manager.apply_charge(loan, charge.id, "officer")

        assert loan_charge.status == LoanChargeStatus.PENDING
        assert loan_charge.paid_amount == Decimal('0')

    def test_manual_charge_with_payment_method_records_income(self, charge_manager, ledger, loan):
        charge = charge_manager.create_charge("ORG1", "Statement", "STMT", ChargeCalculationType.FIXED,
                                              default_amount="3")
        loan_charge = charge_manager.apply_charge(loan, charge.id, "officer", amount="4.5",
                                                  payment_method_id="CASH")

        assert loan_charge.status == LoanChargeStatus.COMPLETED
        assert loan_charge.financial_transaction_id == "TXN-1"
        assert ledger.entries[0]['amount'] == Decimal('4.50')
        assert ledger.entries[0]['related_loan_id'] == loan.id

    def test_payment_method_without_ledger(self, storage, audit_trail, loan):
        manager = ChargeManager(storage, audit_trail)
        charge = manager.create_charge("ORG1", "Statement", "STMT", ChargeCalculationType.FIXED,
                                       default_amount="3")
        with pytest.raises(InvalidStateError, match="no financial ledger is configured"):
            manager.apply_charge(loan, charge.id, "officer", payment_method_id="CASH")
        # The failed application left nothing behind
        assert manager.get_loan_charges(loan.id) == []

    def test_charge_from_other_organization(self, charge_manager, loan):
        charge = charge_manager.create_charge("ORG2", "Fee", "FEE", ChargeCalculationType.FIXED,
                                              default_amount="3")
        with pytest.raises(NotFoundError):
            charge_manager.apply_charge(loan, charge.id, "officer")

    def test_zero_charge_not_applied(self, charge_manager, loan):
        charge = charge_manager.create_charge("ORG1", "Free", "FREE", ChargeCalculationType.FIXED)
        with pytest.raises(LoanValidationError, match="nothing to apply"):
            charge_manager.apply_charge(loan, charge.id, "officer")

    def test_auto_charges_use_application_base(self, charge_manager, storage, loan):
        charge_manager.create_charge("ORG1", "On Principal", "PRIN", ChargeCalculationType.PERCENTAGE,
                                     default_percentage="0.1", charge_mode=ChargeMode.AUTO,
                                     trigger_status="DEFAULTED")
        charge_manager.create_charge("ORG1", "On Balance", "BAL", ChargeCalculationType.PERCENTAGE,
                                     default_percentage="0.1", charge_mode=ChargeMode.AUTO,
                                     trigger_status="DEFAULTED",
                                     charge_application=ChargeApplication.BALANCE)

        with storage.atomic() as tx:
            applied = charge_manager.apply_auto_charges(loan, "DEFAULTED", Decimal('1500'), tx)

        amounts = {c.charge_name: c.amount for c in applied}
        assert amounts == {"On Principal": Decimal('100.00'), "On Balance": Decimal('150.00')}
        assert all(c.status == LoanChargeStatus.PENDING for c in applied)
        assert all(c.trigger_status == "DEFAULTED" for c in applied)

    def test_waive_charge(self, charge_manager, loan_manager, loan):
        charge = charge_manager.create_charge("ORG1", "Statement", "STMT", ChargeCalculationType.FIXED,
                                              default_amount="30")
        loan_manager.disburse_loan(loan.id, "officer")
        loan_charge = charge_manager.apply_charge(loan_manager.get_loan(loan.id), charge.id, "officer")
        assert loan_manager.get_balance(loan.id) == Decimal('1130.00')
        assert loan_manager.get_loan(loan.id).outstanding_balance == Decimal('1130.00')

        waived = charge_manager.waive_charge(loan_charge.id, "manager", "Goodwill")
        assert waived.status == LoanChargeStatus.WAIVED
        assert waived.waiver_reason == "Goodwill"
        assert loan_manager.get_balance(loan.id) == Decimal('1100.00')
        assert loan_manager.get_loan(loan.id).outstanding_balance == Decimal('1100.00')

        with pytest.raises(InvalidStateError, match="already waived"):
            charge_manager.waive_charge(loan_charge.id, "manager", "Again")

    def test_charge_on_undisbursed_loan_keeps_stored_balance(self, charge_manager, loan_manager, loan):
        charge = charge_manager.create_charge("ORG1", "Statement", "STMT", ChargeCalculationType.FIXED,
                                              default_amount="30")
        before = loan_manager.get_loan(loan.id).outstanding_balance

        charge_manager.apply_charge(loan, charge.id, "officer")

        assert loan_manager.get_loan(loan.id).outstanding_balance == before
