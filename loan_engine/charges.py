"""
Charges Module

Charge definitions (fixed or percentage fees, optionally per currency),
the evaluator that turns a definition into an amount, and the manager that
applies charges to loans at disbursement, manually, or automatically when
the lifecycle engine moves a loan into a trigger status.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .audit import AuditTrail, AuditEventType
from .currency import ZERO, DecimalLike, to_decimal, round_money
from .errors import LoanValidationError, NotFoundError, InvalidStateError
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .loans import Loan

logger = logging.getLogger(__name__)

CHARGES_TABLE = "charges"
LOAN_CHARGES_TABLE = "loan_charges"


class ChargeCalculationType(Enum):
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"  # base amount x fraction (0.05 = 5%)


class ChargeMode(Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class ChargeApplication(Enum):
    """Base amount a percentage charge is computed on"""
    PRINCIPAL = "PRINCIPAL"
    BALANCE = "BALANCE"


class ChargeAppliesAt(Enum):
    DISBURSEMENT = "DISBURSEMENT"
    LATE_PAYMENT = "LATE_PAYMENT"
    STATUS_CHANGE = "STATUS_CHANGE"
    MANUAL = "MANUAL"


class LoanChargeStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    WAIVED = "WAIVED"


def _opt_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _opt_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ChargeRate:
    """Currency-specific override of a charge's default amount or percentage"""
    currency: str
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool = True

    def __post_init__(self):
        self.currency = self.currency.upper()
        for name in ('amount', 'percentage', 'min_amount', 'max_amount'):
            setattr(self, name, _opt_decimal(getattr(self, name)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currency': self.currency,
            'amount': _opt_str(self.amount),
            'percentage': _opt_str(self.percentage),
            'min_amount': _opt_str(self.min_amount),
            'max_amount': _opt_str(self.max_amount),
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChargeRate':
        return cls(**data)


@dataclass
class Charge(StorageRecord):
    """Charge definition owned by an organization"""
    organization_id: str
    name: str
    code: str
    calculation_type: ChargeCalculationType
    charge_type: str = "OTHER"
    default_amount: Optional[Decimal] = None
    default_percentage: Optional[Decimal] = None
    applies_at: ChargeAppliesAt = ChargeAppliesAt.MANUAL
    charge_mode: ChargeMode = ChargeMode.MANUAL
    trigger_status: Optional[str] = None
    charge_application: ChargeApplication = ChargeApplication.PRINCIPAL
    is_deducted_from_principal: bool = False
    is_mandatory: bool = False
    is_active: bool = True
    description: Optional[str] = None
    rates: List[ChargeRate] = field(default_factory=list)

    def rate_for(self, currency: str) -> Optional[ChargeRate]:
        """Active rate for a currency, if one is configured"""
        for rate in self.rates:
            if rate.currency == currency.upper() and rate.is_active:
                return rate
        return None


@dataclass
class LoanCharge(StorageRecord):
    """
    A charge applied to one loan

    Name, type and amounts are snapshotted from the definition at the time
    of application. Only waiving changes a loan charge afterwards.
    """
    loan_id: str
    charge_id: str
    charge_name: str
    charge_type: str
    calculation_type: ChargeCalculationType
    charge_application: ChargeApplication
    currency: str
    base_amount: Decimal
    amount: Decimal
    is_deducted_from_principal: bool
    status: LoanChargeStatus
    applied_by: Optional[str] = None
    trigger_status: Optional[str] = None
    paid_amount: Decimal = ZERO
    paid_at: Optional[datetime] = None
    financial_transaction_id: Optional[str] = None
    is_waived: bool = False
    waived_by: Optional[str] = None
    waived_at: Optional[datetime] = None
    waiver_reason: Optional[str] = None


@dataclass
class ChargePreview:
    """Evaluated amount of a charge for a loan, before it is applied"""
    charge_id: str
    charge_name: str
    charge_code: str
    charge_type: str
    calculation_type: ChargeCalculationType
    is_deducted_from_principal: bool
    is_mandatory: bool
    base_amount: Decimal
    calculated_amount: Decimal
    currency: str


@dataclass
class DisbursementChargesResult:
    """Charges applied at disbursement and their effect on the payout"""
    loan_charges: List[LoanCharge]
    total_charges: Decimal
    deducted_from_principal: Decimal
    added_to_loan: Decimal
    net_disbursement: Decimal


class FinancialLedger(ABC):
    """Income bookkeeping collaborator; this package never moves money itself"""

    @abstractmethod
    def record_income(
        self,
        organization_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        related_loan_id: str,
        description: str,
        reference: str,
        processed_by: Optional[str] = None
    ) -> str:
        """Record an income entry and return its transaction id"""


class ChargeEvaluator:
    """Computes the monetary amount of a single charge"""

    def evaluate(self, charge: Charge, base_amount: DecimalLike, currency: str) -> Decimal:
        """
        Amount of a charge for a base amount in a currency

        FIXED charges use the currency rate amount, else the default amount.
        A rate value of zero is an explicit zero, not a missing value.
        PERCENTAGE charges multiply the base by the currency rate percentage,
        else the default percentage, then clamp to the currency rate's
        min/max. Missing values evaluate to zero.
        """
        rate = charge.rate_for(currency)
        base = to_decimal(base_amount)

        if charge.calculation_type == ChargeCalculationType.FIXED:
            if rate is not None and rate.amount is not None:
                amount = rate.amount
            else:
                amount = charge.default_amount or ZERO
        else:
            if rate is not None and rate.percentage is not None:
                percentage = rate.percentage
            else:
                percentage = charge.default_percentage
            amount = base * percentage if percentage else ZERO

            if rate is not None and rate.min_amount is not None:
                amount = max(amount, rate.min_amount)
            if rate is not None and rate.max_amount is not None:
                amount = min(amount, rate.max_amount)

        return round_money(amount)


DEFAULT_CHARGES = [
    dict(name="Administration Fee", code="ADMIN_FEE", charge_type="ADMIN_FEE",
         calculation_type=ChargeCalculationType.PERCENTAGE, default_percentage=Decimal('0.02'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=True,
         description="Administrative processing fee"),
    dict(name="Application Fee", code="APP_FEE", charge_type="APPLICATION_FEE",
         calculation_type=ChargeCalculationType.FIXED, default_amount=Decimal('10'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=True,
         description="Loan application processing fee"),
    dict(name="Processing Fee", code="PROC_FEE", charge_type="PROCESSING_FEE",
         calculation_type=ChargeCalculationType.PERCENTAGE, default_percentage=Decimal('0.01'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=True,
         description="Loan processing fee"),
    dict(name="Service Fee", code="SVC_FEE", charge_type="SERVICE_FEE",
         calculation_type=ChargeCalculationType.FIXED, default_amount=Decimal('5'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=False,
         description="General service fee"),
    dict(name="Legal Fee", code="LEGAL_FEE", charge_type="LEGAL_FEE",
         calculation_type=ChargeCalculationType.FIXED, default_amount=Decimal('25'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=True,
         description="Legal documentation fee"),
    dict(name="Insurance Fee", code="INS_FEE", charge_type="INSURANCE_FEE",
         calculation_type=ChargeCalculationType.PERCENTAGE, default_percentage=Decimal('0.005'),
         applies_at=ChargeAppliesAt.DISBURSEMENT, is_deducted_from_principal=True,
         description="Loan insurance premium"),
    dict(name="Late Payment Fee", code="LATE_FEE", charge_type="LATE_FEE",
         calculation_type=ChargeCalculationType.FIXED, default_amount=Decimal('10'),
         applies_at=ChargeAppliesAt.LATE_PAYMENT, is_deducted_from_principal=False,
         description="Fee for late payment"),
]

_UPDATABLE_FIELDS = {
    'name', 'code', 'charge_type', 'calculation_type', 'default_amount',
    'default_percentage', 'applies_at', 'charge_mode', 'trigger_status',
    'charge_application', 'is_deducted_from_principal', 'is_mandatory',
    'is_active', 'description', 'rates',
}


class ChargeManager:
    """
    Manages charge definitions and their application to loans

    Methods that take a ``storage`` argument run against that transaction
    handle when given, so callers can fold charge creation into their own
    atomic block.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        evaluator: Optional[ChargeEvaluator] = None,
        ledger: Optional[FinancialLedger] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.evaluator = evaluator or ChargeEvaluator()
        self.ledger = ledger

        self.charges_table = CHARGES_TABLE
        self.loan_charges_table = LOAN_CHARGES_TABLE

    # Charge definitions

    def create_charge(
        self,
        organization_id: str,
        name: str,
        code: str,
        calculation_type: ChargeCalculationType,
        created_by: Optional[str] = None,
        **options: Any
    ) -> Charge:
        """
        Create a charge definition

        Args:
            organization_id: Owning organization
            name: Display name
            code: Short code, unique per organization (stored upper-cased)
            calculation_type: FIXED or PERCENTAGE
            created_by: User creating the charge, for the audit trail
            **options: Any other Charge field (default_amount, charge_mode, rates, ...)

        Returns:
            Created Charge
        """
        unknown = set(options) - _UPDATABLE_FIELDS
        if unknown:
            raise LoanValidationError(f"Unknown charge fields: {', '.join(sorted(unknown))}")

        now = datetime.now(timezone.utc)
        charge = Charge(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=name,
            code=code,
            calculation_type=calculation_type,
        )
        self._apply_fields(charge, options)
        charge.code = charge.code.upper()
        self._validate_charge(charge)

        if self._find_by_code(organization_id, charge.code) is not None:
            raise LoanValidationError(f"Charge code {charge.code} already exists")

        self._save_charge(charge)

        self.audit_trail.log_event(
            event_type=AuditEventType.CHARGE_CREATED,
            entity_type="charge",
            entity_id=charge.id,
            metadata={
                "organization_id": organization_id,
                "code": charge.code,
                "calculation_type": charge.calculation_type.value,
                "charge_mode": charge.charge_mode.value,
                "trigger_status": charge.trigger_status,
            },
            user_id=created_by
        )
        return charge

    def update_charge(self, charge_id: str, updated_by: Optional[str] = None, **changes: Any) -> Charge:
        """Update fields of a charge definition; applied loan charges keep their snapshot"""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise LoanValidationError(f"Unknown charge fields: {', '.join(sorted(unknown))}")

        charge = self._require_charge(charge_id)
        self._apply_fields(charge, changes)
        charge.code = charge.code.upper()
        self._validate_charge(charge)

        duplicate = self._find_by_code(charge.organization_id, charge.code)
        if duplicate is not None and duplicate.id != charge.id:
            raise LoanValidationError(f"Charge code {charge.code} already exists")

        charge.updated_at = datetime.now(timezone.utc)
        self._save_charge(charge)

        self.audit_trail.log_event(
            event_type=AuditEventType.CHARGE_UPDATED,
            entity_type="charge",
            entity_id=charge.id,
            metadata={"fields": sorted(changes.keys())},
            user_id=updated_by
        )
        return charge

    def deactivate_charge(self, charge_id: str, deactivated_by: Optional[str] = None) -> Charge:
        charge = self._require_charge(charge_id)
        charge.is_active = False
        charge.updated_at = datetime.now(timezone.utc)
        self._save_charge(charge)

        self.audit_trail.log_event(
            event_type=AuditEventType.CHARGE_DEACTIVATED,
            entity_type="charge",
            entity_id=charge.id,
            metadata={"code": charge.code},
            user_id=deactivated_by
        )
        return charge

    def get_charge(self, charge_id: str, storage: Optional[StorageInterface] = None) -> Optional[Charge]:
        data = (storage or self.storage).load(self.charges_table, charge_id)
        return self._charge_from_dict(data) if data else None

    def list_charges(
        self,
        organization_id: str,
        applies_at: Optional[ChargeAppliesAt] = None,
        active_only: bool = True,
        storage: Optional[StorageInterface] = None
    ) -> List[Charge]:
        """Charges of an organization ordered by name"""
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if applies_at is not None:
            filters['applies_at'] = applies_at.value
        if active_only:
            filters['is_active'] = True

        rows = (storage or self.storage).find(self.charges_table, filters)
        charges = [self._charge_from_dict(row) for row in rows]
        charges.sort(key=lambda c: c.name)
        return charges

    def get_auto_charges(
        self,
        organization_id: str,
        trigger_status: str,
        storage: Optional[StorageInterface] = None
    ) -> List[Charge]:
        """Active AUTO charges that fire when a loan enters trigger_status"""
        rows = (storage or self.storage).find(self.charges_table, {
            'organization_id': organization_id,
            'charge_mode': ChargeMode.AUTO.value,
            'trigger_status': trigger_status,
            'is_active': True,
        })
        charges = [self._charge_from_dict(row) for row in rows]
        charges.sort(key=lambda c: c.code)
        return charges

    def get_disbursement_charges(self, organization_id: str,
                                 storage: Optional[StorageInterface] = None) -> List[Charge]:
        return self.list_charges(organization_id, applies_at=ChargeAppliesAt.DISBURSEMENT,
                                 storage=storage)

    def seed_default_charges(self, organization_id: str, created_by: Optional[str] = None) -> List[Charge]:
        """Create the standard fee catalogue; codes that already exist are skipped"""
        created = []
        for template in DEFAULT_CHARGES:
            options = dict(template)
            name = options.pop('name')
            code = options.pop('code')
            calculation_type = options.pop('calculation_type')
            if self._find_by_code(organization_id, code) is not None:
                logger.info(f"Charge {code} already exists for organization {organization_id}, skipping")
                continue
            created.append(self.create_charge(organization_id, name, code, calculation_type,
                                              created_by=created_by, **options))
        return created

    # Loan charges

    def preview_charges_for_loan(self, loan: 'Loan',
                                 charge_ids: Optional[List[str]] = None) -> List[ChargePreview]:
        """Evaluate the disbursement charges (or the selected ones) for a loan"""
        charges = self._select_charges(loan, charge_ids, self.storage, mandatory_only=False)
        return [
            ChargePreview(
                charge_id=charge.id,
                charge_name=charge.name,
                charge_code=charge.code,
                charge_type=charge.charge_type,
                calculation_type=charge.calculation_type,
                is_deducted_from_principal=charge.is_deducted_from_principal,
                is_mandatory=charge.is_mandatory,
                base_amount=loan.amount,
                calculated_amount=self.evaluator.evaluate(charge, loan.amount, loan.currency),
                currency=loan.currency,
            )
            for charge in charges
        ]

    def apply_charge(
        self,
        loan: 'Loan',
        charge_id: str,
        applied_by: str,
        amount: Optional[DecimalLike] = None,
        payment_method_id: Optional[str] = None
    ) -> LoanCharge:
        """
        Manually apply a charge to a loan

        The charge stays PENDING unless a payment method is supplied, in which
        case income is recorded in the ledger and the charge is COMPLETED.
        """
        charge = self._require_charge(charge_id)
        if charge.organization_id != loan.organization_id:
            raise NotFoundError(f"Charge {charge_id} not found for organization {loan.organization_id}")

        if amount is not None:
            charge_amount = round_money(to_decimal(amount))
        else:
            charge_amount = self.evaluator.evaluate(charge, loan.amount, loan.currency)
        if charge_amount <= ZERO:
            raise LoanValidationError(f"Charge {charge.code} evaluates to {charge_amount}; nothing to apply")

        with self.storage.atomic() as tx:
            loan_charge = self._create_loan_charge(
                tx, loan, charge, loan.amount, charge_amount, LoanChargeStatus.PENDING, applied_by
            )
            if payment_method_id:
                self._record_income(tx, loan, charge, loan_charge, payment_method_id, applied_by)
            balance = self._refresh_outstanding_balance(tx, loan.id)
        if balance is not None:
            loan.outstanding_balance = balance
        return loan_charge

    def apply_disbursement_charges(
        self,
        loan: 'Loan',
        applied_by: str,
        charge_ids: Optional[List[str]] = None,
        payment_method_id: Optional[str] = None,
        storage: Optional[StorageInterface] = None
    ) -> DisbursementChargesResult:
        """
        Apply mandatory disbursement charges, or exactly the selected ones

        Disbursement charges are settled at payout and recorded COMPLETED.
        """
        tx = storage or self.storage
        charges = self._select_charges(loan, charge_ids, tx, mandatory_only=True)

        loan_charges = []
        total = ZERO
        deducted = ZERO
        added = ZERO

        with tx.atomic():
            for charge in charges:
                charge_amount = self.evaluator.evaluate(charge, loan.amount, loan.currency)
                if charge_amount <= ZERO:
                    continue

                loan_charge = self._create_loan_charge(
                    tx, loan, charge, loan.amount, charge_amount, LoanChargeStatus.COMPLETED, applied_by
                )
                if payment_method_id:
                    self._record_income(tx, loan, charge, loan_charge, payment_method_id, applied_by)

                loan_charges.append(loan_charge)
                total += charge_amount
                if charge.is_deducted_from_principal:
                    deducted += charge_amount
                else:
                    added += charge_amount

        return DisbursementChargesResult(
            loan_charges=loan_charges,
            total_charges=total,
            deducted_from_principal=deducted,
            added_to_loan=added,
            net_disbursement=loan.amount - deducted,
        )

    def apply_auto_charges(
        self,
        loan: 'Loan',
        status: str,
        balance: Decimal,
        storage: StorageInterface,
        applied_by: Optional[str] = None
    ) -> List[LoanCharge]:
        """
        Apply every AUTO charge triggered by status to a loan

        Runs on the caller's transaction handle. PRINCIPAL charges are based
        on the loan amount, BALANCE charges on the balance passed in.
        Charges evaluating to zero or less are skipped.
        """
        applied = []
        for charge in self.get_auto_charges(loan.organization_id, status, storage=storage):
            base = loan.amount if charge.charge_application == ChargeApplication.PRINCIPAL else balance
            charge_amount = self.evaluator.evaluate(charge, base, loan.currency)
            if charge_amount <= ZERO:
                continue
            applied.append(self._create_loan_charge(
                storage, loan, charge, base, charge_amount, LoanChargeStatus.PENDING,
                applied_by, trigger_status=status
            ))
        return applied

    def waive_charge(self, loan_charge_id: str, waived_by: str, reason: str) -> LoanCharge:
        """Waive a loan charge; the record is kept but no longer counts toward the balance"""
        data = self.storage.load(self.loan_charges_table, loan_charge_id)
        if not data:
            raise NotFoundError(f"Loan charge {loan_charge_id} not found")
        loan_charge = self._loan_charge_from_dict(data)
        if loan_charge.is_waived:
            raise InvalidStateError(f"Loan charge {loan_charge_id} is already waived")

        now = datetime.now(timezone.utc)
        loan_charge.is_waived = True
        loan_charge.waived_by = waived_by
        loan_charge.waived_at = now
        loan_charge.waiver_reason = reason
        loan_charge.status = LoanChargeStatus.WAIVED
        loan_charge.updated_at = now

        with self.storage.atomic() as tx:
            tx.save(self.loan_charges_table, loan_charge.id, self._loan_charge_to_dict(loan_charge))
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CHARGE_WAIVED,
                entity_type="loan",
                entity_id=loan_charge.loan_id,
                metadata={
                    "loan_charge_id": loan_charge.id,
                    "amount": loan_charge.amount,
                    "reason": reason,
                },
                user_id=waived_by
            )
            self._refresh_outstanding_balance(tx, loan_charge.loan_id)
        return loan_charge

    def get_loan_charges(self, loan_id: str, storage: Optional[StorageInterface] = None) -> List[LoanCharge]:
        rows = (storage or self.storage).find(self.loan_charges_table, {'loan_id': loan_id})
        charges = [self._loan_charge_from_dict(row) for row in rows]
        charges.sort(key=lambda c: c.created_at)
        return charges

    # Helpers

    def _refresh_outstanding_balance(self, tx: StorageInterface, loan_id: str) -> Optional[Decimal]:
        """Store the recomputed outstanding balance of a disbursed loan; None for other loans"""
        # Imported here: loans imports this module
        from .loans import LOANS_TABLE, OUTSTANDING_STATUSES, calculate_loan_balance

        data = tx.load(LOANS_TABLE, loan_id)
        if data is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        if data['status'] not in {status.value for status in OUTSTANDING_STATUSES}:
            return None

        balance = calculate_loan_balance(tx, loan_id)
        data['outstanding_balance'] = str(balance)
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        tx.save(LOANS_TABLE, loan_id, data)
        return balance

    def _select_charges(self, loan: 'Loan', charge_ids: Optional[List[str]],
                        storage: StorageInterface, mandatory_only: bool) -> List[Charge]:
        if charge_ids:
            charges = []
            for charge_id in charge_ids:
                charge = self.get_charge(charge_id, storage)
                if charge and charge.is_active and charge.organization_id == loan.organization_id:
                    charges.append(charge)
            return charges

        charges = self.get_disbursement_charges(loan.organization_id, storage)
        if mandatory_only:
            charges = [c for c in charges if c.is_mandatory]
        return charges

    def _create_loan_charge(
        self,
        storage: StorageInterface,
        loan: 'Loan',
        charge: Charge,
        base_amount: Decimal,
        amount: Decimal,
        status: LoanChargeStatus,
        applied_by: Optional[str],
        trigger_status: Optional[str] = None
    ) -> LoanCharge:
        now = datetime.now(timezone.utc)
        completed = status == LoanChargeStatus.COMPLETED
        loan_charge = LoanCharge(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            charge_id=charge.id,
            charge_name=charge.name,
            charge_type=charge.charge_type,
            calculation_type=charge.calculation_type,
            charge_application=charge.charge_application,
            currency=loan.currency,
            base_amount=base_amount,
            amount=amount,
            is_deducted_from_principal=charge.is_deducted_from_principal,
            status=status,
            applied_by=applied_by,
            trigger_status=trigger_status,
            paid_amount=amount if completed else ZERO,
            paid_at=now if completed else None,
        )
        storage.save(self.loan_charges_table, loan_charge.id, self._loan_charge_to_dict(loan_charge))

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CHARGE_APPLIED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "loan_charge_id": loan_charge.id,
                "charge_code": charge.code,
                "amount": amount,
                "base_amount": base_amount,
                "status": status.value,
                "trigger_status": trigger_status,
            },
            user_id=applied_by
        )
        return loan_charge

    def _record_income(self, storage: StorageInterface, loan: 'Loan', charge: Charge,
                       loan_charge: LoanCharge, payment_method_id: str,
                       processed_by: Optional[str]) -> None:
        if self.ledger is None:
            raise InvalidStateError("A payment method was given but no financial ledger is configured")

        transaction_id = self.ledger.record_income(
            organization_id=loan.organization_id,
            amount=loan_charge.amount,
            currency=loan_charge.currency,
            payment_method_id=payment_method_id,
            related_loan_id=loan.id,
            description=f"{charge.name} for loan {loan.loan_number}",
            reference=f"CHG-{loan_charge.id[-8:].upper()}",
            processed_by=processed_by,
        )
        loan_charge.financial_transaction_id = transaction_id
        if loan_charge.status != LoanChargeStatus.COMPLETED:
            loan_charge.status = LoanChargeStatus.COMPLETED
            loan_charge.paid_amount = loan_charge.amount
            loan_charge.paid_at = datetime.now(timezone.utc)
        storage.save(self.loan_charges_table, loan_charge.id, self._loan_charge_to_dict(loan_charge))

    def _require_charge(self, charge_id: str) -> Charge:
        charge = self.get_charge(charge_id)
        if charge is None:
            raise NotFoundError(f"Charge {charge_id} not found")
        return charge

    def _find_by_code(self, organization_id: str, code: str) -> Optional[Charge]:
        rows = self.storage.find(self.charges_table, {
            'organization_id': organization_id,
            'code': code.upper(),
        })
        return self._charge_from_dict(rows[0]) if rows else None

    @staticmethod
    def _apply_fields(charge: Charge, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            if name in ('default_amount', 'default_percentage'):
                value = _opt_decimal(value)
            elif name == 'calculation_type':
                value = ChargeCalculationType(value)
            elif name == 'applies_at':
                value = ChargeAppliesAt(value)
            elif name == 'charge_mode':
                value = ChargeMode(value)
            elif name == 'charge_application':
                value = ChargeApplication(value)
            elif name == 'trigger_status' and isinstance(value, Enum):
                value = value.value
            elif name == 'rates':
                value = [r if isinstance(r, ChargeRate) else ChargeRate(**r) for r in (value or [])]
            setattr(charge, name, value)

    @staticmethod
    def _validate_charge(charge: Charge) -> None:
        if not charge.name or not charge.name.strip():
            raise LoanValidationError("Charge name is required")
        if not charge.code or not charge.code.strip():
            raise LoanValidationError("Charge code is required")
        if charge.charge_mode == ChargeMode.AUTO and not charge.trigger_status:
            raise LoanValidationError("AUTO charges need a trigger status")
        for name in ('default_amount', 'default_percentage'):
            value = getattr(charge, name)
            if value is not None and value < ZERO:
                raise LoanValidationError(f"{name} cannot be negative")
        for rate in charge.rates:
            for value in (rate.amount, rate.percentage, rate.min_amount, rate.max_amount):
                if value is not None and value < ZERO:
                    raise LoanValidationError(f"Rate values for {rate.currency} cannot be negative")

    def _save_charge(self, charge: Charge) -> None:
        self.storage.save(self.charges_table, charge.id, self._charge_to_dict(charge))

    @staticmethod
    def _charge_to_dict(charge: Charge) -> Dict[str, Any]:
        result = charge.to_dict()
        result['default_amount'] = _opt_str(charge.default_amount)
        result['default_percentage'] = _opt_str(charge.default_percentage)
        result['rates'] = [rate.to_dict() for rate in charge.rates]
        return result

    @staticmethod
    def _charge_from_dict(data: Dict[str, Any]) -> Charge:
        return Charge(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            code=data['code'],
            calculation_type=ChargeCalculationType(data['calculation_type']),
            charge_type=data.get('charge_type', "OTHER"),
            default_amount=_opt_decimal(data.get('default_amount')),
            default_percentage=_opt_decimal(data.get('default_percentage')),
            applies_at=ChargeAppliesAt(data['applies_at']),
            charge_mode=ChargeMode(data['charge_mode']),
            trigger_status=data.get('trigger_status'),
            charge_application=ChargeApplication(data['charge_application']),
            is_deducted_from_principal=data['is_deducted_from_principal'],
            is_mandatory=data['is_mandatory'],
            is_active=data['is_active'],
            description=data.get('description'),
            rates=[ChargeRate.from_dict(r) for r in data.get('rates', [])],
        )

    @staticmethod
    def _loan_charge_to_dict(loan_charge: LoanCharge) -> Dict[str, Any]:
        return loan_charge.to_dict()

    @staticmethod
    def _loan_charge_from_dict(data: Dict[str, Any]) -> LoanCharge:
        return LoanCharge(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            charge_id=data['charge_id'],
            charge_name=data['charge_name'],
            charge_type=data['charge_type'],
            calculation_type=ChargeCalculationType(data['calculation_type']),
            charge_application=ChargeApplication(data['charge_application']),
            currency=data['currency'],
            base_amount=Decimal(data['base_amount']),
            amount=Decimal(data['amount']),
            is_deducted_from_principal=data['is_deducted_from_principal'],
            status=LoanChargeStatus(data['status']),
            applied_by=data.get('applied_by'),
            trigger_status=data.get('trigger_status'),
            paid_amount=Decimal(data.get('paid_amount', '0')),
            paid_at=_opt_datetime(data.get('paid_at')),
            financial_transaction_id=data.get('financial_transaction_id'),
            is_waived=data.get('is_waived', False),
            waived_by=data.get('waived_by'),
            waived_at=_opt_datetime(data.get('waived_at')),
            waiver_reason=data.get('waiver_reason'),
        )
