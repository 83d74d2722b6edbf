"""
Loan Module

Loan products, loans as seen by the lifecycle engine, repayments, and the
single balance function every component uses. Handles creation, approval,
disbursement (with disbursement charges) and payment recording.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .charges import (
    ChargeManager, DisbursementChargesResult, LoanCharge, LoanChargeStatus, LOAN_CHARGES_TABLE,
)
from .currency import ZERO, HUNDRED, DecimalLike, Money, to_decimal, round_money, currency_from_code
from .errors import LoanValidationError, NotFoundError, InvalidStateError
from .periods import DurationUnit, add_duration
from .schedule import LoanCalculationMethod, coerce_method
from .settings import SettingsManager
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)

PRODUCTS_TABLE = "loan_products"
LOANS_TABLE = "loans"
PAYMENTS_TABLE = "loan_payments"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PENDING_DISBURSEMENT = "PENDING_DISBURSEMENT"
    ACTIVE = "ACTIVE"            # Disbursed, within its repayment period
    DEFAULTED = "DEFAULTED"      # Missed at least one due date
    OVERDUE = "OVERDUE"          # Past the product's maximum period
    COMPLETED = "COMPLETED"
    WRITTEN_OFF = "WRITTEN_OFF"
    REJECTED = "REJECTED"


class LoanPaymentStatus(Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    REVERSED = "REVERSED"


PROCESSABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DEFAULTED)
OUTSTANDING_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DEFAULTED, LoanStatus.OVERDUE)
DISBURSABLE_STATUSES = (LoanStatus.APPROVED, LoanStatus.PENDING_DISBURSEMENT)


def _opt_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _opt_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


@dataclass
class LoanProduct(StorageRecord):
    """Product a loan is written under; drives periods and engine eligibility"""
    organization_id: str
    name: str
    currency: str = "USD"
    duration_unit: DurationUnit = DurationUnit.MONTHS
    min_period: int = 1          # One repayment period, in duration_unit
    max_period: int = 12         # Longest allowed term, in duration_unit
    grace_period_days: int = 0
    allow_auto_calculations: bool = True
    is_active: bool = True
    calculation_method: LoanCalculationMethod = LoanCalculationMethod.REDUCING_BALANCE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            currency=data['currency'],
            duration_unit=DurationUnit(data['duration_unit']),
            min_period=data['min_period'],
            max_period=data['max_period'],
            grace_period_days=data['grace_period_days'],
            allow_auto_calculations=data['allow_auto_calculations'],
            is_active=data['is_active'],
            calculation_method=LoanCalculationMethod(data['calculation_method']),
        )


@dataclass
class Loan(StorageRecord):
    """Loan with the balances and dates the lifecycle engine advances"""
    organization_id: str
    product_id: str
    loan_number: str
    amount: Decimal                      # Principal
    interest_rate: Decimal               # Percent, 10 for 10%
    currency: str = "USD"
    term: Optional[int] = None           # In the product's duration unit
    status: LoanStatus = LoanStatus.PENDING_APPROVAL

    principal_balance: Decimal = ZERO
    interest_amount: Decimal = ZERO
    interest_balance: Decimal = ZERO
    outstanding_balance: Decimal = ZERO

    start_date: Optional[date] = None
    disbursed_date: Optional[date] = None
    expected_repayment_date: Optional[date] = None
    next_due_date: Optional[date] = None
    grace_period_days: int = 0
    last_engine_run_at: Optional[datetime] = None

    @property
    def outstanding(self) -> Money:
        """Outstanding balance in the loan's currency"""
        return Money(self.outstanding_balance, currency_from_code(self.currency))

    @property
    def due_date(self) -> Optional[date]:
        """Date the next repayment falls due"""
        return self.next_due_date or self.expected_repayment_date

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            product_id=data['product_id'],
            loan_number=data['loan_number'],
            amount=Decimal(data['amount']),
            interest_rate=Decimal(data['interest_rate']),
            currency=data['currency'],
            term=data.get('term'),
            status=LoanStatus(data['status']),
            principal_balance=Decimal(data['principal_balance']),
            interest_amount=Decimal(data['interest_amount']),
            interest_balance=Decimal(data['interest_balance']),
            outstanding_balance=Decimal(data['outstanding_balance']),
            start_date=_opt_date(data.get('start_date')),
            disbursed_date=_opt_date(data.get('disbursed_date')),
            expected_repayment_date=_opt_date(data.get('expected_repayment_date')),
            next_due_date=_opt_date(data.get('next_due_date')),
            grace_period_days=data.get('grace_period_days', 0),
            last_engine_run_at=_opt_datetime(data.get('last_engine_run_at')),
        )


@dataclass
class LoanPayment(StorageRecord):
    """Repayment against a loan, split into principal, interest and penalty"""
    loan_id: str
    payment_date: date
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    penalty: Decimal = ZERO
    status: LoanPaymentStatus = LoanPaymentStatus.COMPLETED
    reference: Optional[str] = None
    recorded_by: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.principal + self.interest + self.penalty

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            payment_date=date.fromisoformat(data['payment_date']),
            principal=Decimal(data['principal']),
            interest=Decimal(data['interest']),
            penalty=Decimal(data['penalty']),
            status=LoanPaymentStatus(data['status']),
            reference=data.get('reference'),
            recorded_by=data.get('recorded_by'),
        )


@dataclass
class DisbursementValues:
    """Dates and balances a loan receives when it is disbursed"""
    start_date: date
    expected_repayment_date: date
    next_due_date: date
    interest_amount: Decimal
    principal_balance: Decimal
    outstanding_balance: Decimal
    grace_period_days: int


@dataclass
class DisbursementResult:
    loan: Loan
    charges: DisbursementChargesResult
    auto_charges: List[LoanCharge] = field(default_factory=list)


def calculate_loan_balance(storage: StorageInterface, loan_id: str) -> Decimal:
    """
    Outstanding balance of a loan as seen through a storage handle

    balance = (principal + interest_amount + non-waived charges not deducted
    from principal) - completed payments (principal + interest + penalty)

    Pass the transaction handle when called inside an atomic block so that
    uncommitted charges and interest are included.

    Raises:
        NotFoundError: If the loan does not exist
    """
    data = storage.load(LOANS_TABLE, loan_id)
    if data is None:
        raise NotFoundError(f"Loan {loan_id} not found")

    balance = Decimal(data['amount']) + Decimal(data['interest_amount'])

    for row in storage.find(LOAN_CHARGES_TABLE, {'loan_id': loan_id}):
        if row['is_deducted_from_principal'] or row['status'] == LoanChargeStatus.WAIVED.value:
            continue
        balance += Decimal(row['amount'])

    for row in storage.find(PAYMENTS_TABLE, {'loan_id': loan_id}):
        if row['status'] != LoanPaymentStatus.COMPLETED.value:
            continue
        balance -= Decimal(row['principal']) + Decimal(row['interest']) + Decimal(row['penalty'])

    return round_money(balance)


class LoanManager:
    """
    Manages loan products, loans and repayments

    Methods accepting ``storage`` run against that transaction handle when
    given; the lifecycle engine passes its per-loan transaction.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        charge_manager: ChargeManager,
        settings_manager: SettingsManager
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.charge_manager = charge_manager
        self.settings_manager = settings_manager

    # Products

    def create_product(
        self,
        organization_id: str,
        name: str,
        currency: Optional[str] = None,
        duration_unit: DurationUnit = DurationUnit.MONTHS,
        min_period: int = 1,
        max_period: int = 12,
        grace_period_days: int = 0,
        allow_auto_calculations: bool = True,
        calculation_method: Optional[LoanCalculationMethod] = None
    ) -> LoanProduct:
        """
        Create a loan product

        When no calculation method is given the organization's configured
        engine type is used; a missing currency falls back to the configured
        default currency.
        """
        currency = currency or self.settings_manager.config.default_currency
        if not name or not name.strip():
            raise LoanValidationError("Product name is required")
        if min_period <= 0:
            raise LoanValidationError("Minimum period must be greater than 0")
        if max_period < min_period:
            raise LoanValidationError("Maximum period cannot be shorter than the minimum period")
        if grace_period_days < 0:
            raise LoanValidationError("Grace period cannot be negative")
        try:
            currency_from_code(currency)
        except ValueError as e:
            raise LoanValidationError(str(e))

        if calculation_method is None:
            calculation_method = self.settings_manager.get_engine_settings(organization_id).engine_type

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=name,
            currency=currency.upper(),
            duration_unit=DurationUnit(duration_unit),
            min_period=min_period,
            max_period=max_period,
            grace_period_days=grace_period_days,
            allow_auto_calculations=allow_auto_calculations,
            calculation_method=coerce_method(calculation_method),
        )
        self.storage.save(PRODUCTS_TABLE, product.id, product.to_dict())
        return product

    def get_product(self, product_id: str,
                    storage: Optional[StorageInterface] = None) -> Optional[LoanProduct]:
        data = (storage or self.storage).load(PRODUCTS_TABLE, product_id)
        return LoanProduct.from_dict(data) if data else None

    def update_product(self, product_id: str, **changes: Any) -> LoanProduct:
        """Change product flags such as allow_auto_calculations or is_active"""
        product = self.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Loan product {product_id} not found")
        for name, value in changes.items():
            if not hasattr(product, name) or name in ('id', 'created_at', 'organization_id'):
                raise LoanValidationError(f"Unknown product field: {name}")
            setattr(product, name, value)
        product.updated_at = datetime.now(timezone.utc)
        self.storage.save(PRODUCTS_TABLE, product.id, product.to_dict())
        return product

    # Loans

    def create_loan(
        self,
        organization_id: str,
        product_id: str,
        amount: DecimalLike,
        interest_rate: DecimalLike,
        term: Optional[int] = None,
        loan_number: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Create a loan application

        The loan starts PENDING_APPROVAL when the organization requires
        approval and APPROVED otherwise.
        """
        product = self.get_product(product_id)
        if product is None or product.organization_id != organization_id:
            raise NotFoundError(f"Loan product {product_id} not found")
        if not product.is_active:
            raise InvalidStateError(f"Loan product {product.name} is not active")

        amount = to_decimal(amount)
        interest_rate = to_decimal(interest_rate)
        if amount <= ZERO:
            raise LoanValidationError("Loan amount must be greater than 0")
        if interest_rate < ZERO:
            raise LoanValidationError("Interest rate cannot be negative")
        if term is not None and term <= 0:
            raise LoanValidationError("Loan term must be greater than 0")

        engine_settings = self.settings_manager.get_engine_settings(organization_id)
        status = LoanStatus.PENDING_APPROVAL if engine_settings.loan_approval_required else LoanStatus.APPROVED

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            product_id=product_id,
            loan_number=loan_number or f"LN-{uuid.uuid4().hex[:8].upper()}",
            amount=amount,
            interest_rate=interest_rate,
            currency=product.currency,
            term=term,
            status=status,
            principal_balance=amount,
            grace_period_days=product.grace_period_days,
        )

        with self.storage.atomic() as tx:
            tx.save(LOANS_TABLE, loan.id, loan.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "amount": amount,
                    "interest_rate": interest_rate,
                    "status": status.value,
                },
                user_id=created_by
            )

        logger.info(f"Loan {loan.loan_number} created with status {status.value}")
        return loan

    def approve_loan(self, loan_id: str, approved_by: str) -> Loan:
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.PENDING_APPROVAL:
            raise InvalidStateError(f"Loan {loan.loan_number} is {loan.status.value}, not pending approval")

        with self.storage.atomic() as tx:
            self._change_status(tx, loan, LoanStatus.APPROVED, approved_by)
        return loan

    def get_loan(self, loan_id: str, storage: Optional[StorageInterface] = None) -> Optional[Loan]:
        data = (storage or self.storage).load(LOANS_TABLE, loan_id)
        return Loan.from_dict(data) if data else None

    def save_loan(self, loan: Loan, storage: Optional[StorageInterface] = None) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        (storage or self.storage).save(LOANS_TABLE, loan.id, loan.to_dict())

    def find_loans(
        self,
        organization_id: Optional[str] = None,
        statuses: Optional[Iterable[LoanStatus]] = None,
        storage: Optional[StorageInterface] = None
    ) -> List[Loan]:
        """Loans filtered by organization and status, oldest first"""
        filters: Dict[str, Any] = {}
        if organization_id is not None:
            filters['organization_id'] = organization_id
        rows = (storage or self.storage).find(LOANS_TABLE, filters)

        loans = [Loan.from_dict(row) for row in rows]
        if statuses is not None:
            wanted = set(statuses)
            loans = [loan for loan in loans if loan.status in wanted]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def get_loans_for_processing(self, organization_id: Optional[str] = None,
                                 storage: Optional[StorageInterface] = None) -> List[Loan]:
        """
        ACTIVE and DEFAULTED loans whose product is active and allows
        automatic calculations, ordered by next due date
        """
        storage = storage or self.storage
        products: Dict[str, Optional[LoanProduct]] = {}
        eligible = []

        for loan in self.find_loans(organization_id, PROCESSABLE_STATUSES, storage):
            if loan.product_id not in products:
                products[loan.product_id] = self.get_product(loan.product_id, storage)
            product = products[loan.product_id]
            if product is None or not product.is_active or not product.allow_auto_calculations:
                continue
            eligible.append(loan)

        eligible.sort(key=lambda l: (l.next_due_date is None, l.next_due_date or date.min))
        return eligible

    # Disbursement

    def calculate_disbursement_values(self, loan_id: str,
                                      disbursement_date: Optional[date] = None) -> DisbursementValues:
        """
        Dates and balances for disbursing a loan on a given date

        The repayment period is the loan term, else the product's minimum
        period. Interest is charged once on the principal at the loan rate.
        """
        loan = self._require_loan(loan_id)
        product = self._require_product(loan.product_id)
        return self._disbursement_values(loan, product, disbursement_date)

    @staticmethod
    def _disbursement_values(loan: Loan, product: LoanProduct,
                             disbursement_date: Optional[date]) -> DisbursementValues:
        start = _as_date(disbursement_date or loan.disbursed_date or date.today())
        period = loan.term or product.min_period or 1
        expected_repayment = add_duration(start, period, product.duration_unit)
        interest = round_money(loan.amount * loan.interest_rate / HUNDRED)

        return DisbursementValues(
            start_date=start,
            expected_repayment_date=expected_repayment,
            next_due_date=expected_repayment,
            interest_amount=interest,
            principal_balance=loan.amount,
            outstanding_balance=loan.amount + interest,
            grace_period_days=product.grace_period_days,
        )

    def disburse_loan(
        self,
        loan_id: str,
        disbursed_by: str,
        disbursement_date: Optional[date] = None,
        charge_ids: Optional[List[str]] = None,
        payment_method_id: Optional[str] = None
    ) -> DisbursementResult:
        """
        Disburse a loan and make it ACTIVE

        Args:
            loan_id: Loan to disburse
            disbursed_by: User performing the disbursement
            disbursement_date: Start date of the loan (today if omitted)
            charge_ids: Disbursement charges to apply instead of the mandatory ones
            payment_method_id: When given, charge income is recorded in the ledger

        Returns:
            DisbursementResult with the updated loan and the charges applied

        Raises:
            InvalidStateError: If approval is required and the loan is not approved,
                or the loan is not awaiting disbursement
        """
        loan = self._require_loan(loan_id)
        product = self._require_product(loan.product_id)

        if loan.status == LoanStatus.PENDING_APPROVAL:
            if self.settings_manager.get_engine_settings(loan.organization_id).loan_approval_required:
                raise InvalidStateError(f"Loan {loan.loan_number} must be approved before disbursement")
        elif loan.status not in DISBURSABLE_STATUSES:
            raise InvalidStateError(f"Loan {loan.loan_number} cannot be disbursed from status {loan.status.value}")

        values = self._disbursement_values(loan, product, disbursement_date)
        previous_status = loan.status

        with self.storage.atomic() as tx:
            loan.status = LoanStatus.ACTIVE
            loan.start_date = values.start_date
            loan.disbursed_date = values.start_date
            loan.expected_repayment_date = values.expected_repayment_date
            loan.next_due_date = values.next_due_date
            loan.interest_amount = values.interest_amount
            loan.interest_balance = values.interest_amount
            loan.principal_balance = values.principal_balance
            loan.outstanding_balance = values.outstanding_balance
            loan.grace_period_days = values.grace_period_days
            self.save_loan(loan, tx)

            charges = self.charge_manager.apply_disbursement_charges(
                loan, disbursed_by, charge_ids=charge_ids,
                payment_method_id=payment_method_id, storage=tx
            )
            auto_charges = self.charge_manager.apply_auto_charges(
                loan, LoanStatus.ACTIVE.value, calculate_loan_balance(tx, loan.id), tx, disbursed_by
            )

            loan.outstanding_balance = calculate_loan_balance(tx, loan.id)
            self.save_loan(loan, tx)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "previous_status": previous_status.value,
                    "start_date": loan.start_date,
                    "expected_repayment_date": loan.expected_repayment_date,
                    "interest_amount": loan.interest_amount,
                    "total_charges": charges.total_charges,
                    "net_disbursement": charges.net_disbursement,
                    "outstanding": loan.outstanding.to_string(),
                },
                user_id=disbursed_by
            )

        logger.info(f"Loan {loan.loan_number} disbursed, outstanding {loan.outstanding.to_string()}")
        return DisbursementResult(loan=loan, charges=charges, auto_charges=auto_charges)

    # Payments

    def record_payment(
        self,
        loan_id: str,
        principal: DecimalLike = ZERO,
        interest: DecimalLike = ZERO,
        penalty: DecimalLike = ZERO,
        payment_date: Optional[date] = None,
        status: LoanPaymentStatus = LoanPaymentStatus.COMPLETED,
        reference: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> LoanPayment:
        """
        Record a repayment

        Only COMPLETED payments reduce balances. A loan whose balance
        reaches zero is marked COMPLETED.
        """
        loan = self._require_loan(loan_id)
        if loan.status not in OUTSTANDING_STATUSES:
            raise InvalidStateError(f"Cannot record a payment on a {loan.status.value} loan")

        principal = round_money(to_decimal(principal))
        interest = round_money(to_decimal(interest))
        penalty = round_money(to_decimal(penalty))
        if min(principal, interest, penalty) < ZERO:
            raise LoanValidationError("Payment components cannot be negative")
        if principal + interest + penalty <= ZERO:
            raise LoanValidationError("Payment amount must be greater than 0")

        now = datetime.now(timezone.utc)
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            payment_date=payment_date or date.today(),
            principal=principal,
            interest=interest,
            penalty=penalty,
            status=LoanPaymentStatus(status),
            reference=reference,
            recorded_by=recorded_by,
        )

        with self.storage.atomic() as tx:
            tx.save(PAYMENTS_TABLE, payment.id, payment.to_dict())

            if payment.status == LoanPaymentStatus.COMPLETED:
                loan.principal_balance = max(loan.principal_balance - principal, ZERO)
                loan.interest_balance = max(loan.interest_balance - interest, ZERO)
            loan.outstanding_balance = calculate_loan_balance(tx, loan.id)
            self.save_loan(loan, tx)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_id": payment.id,
                    "principal": principal,
                    "interest": interest,
                    "penalty": penalty,
                    "status": payment.status.value,
                    "outstanding_balance": loan.outstanding_balance,
                },
                user_id=recorded_by
            )

            if loan.outstanding_balance <= ZERO:
                self._change_status(tx, loan, LoanStatus.COMPLETED, recorded_by)

        return payment

    def get_payments(self, loan_id: str, storage: Optional[StorageInterface] = None) -> List[LoanPayment]:
        rows = (storage or self.storage).find(PAYMENTS_TABLE, {'loan_id': loan_id})
        payments = [LoanPayment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def get_balance(self, loan_id: str) -> Decimal:
        return calculate_loan_balance(self.storage, loan_id)

    # Helpers

    def _change_status(self, storage: StorageInterface, loan: Loan,
                       new_status: LoanStatus, changed_by: Optional[str]) -> None:
        previous = loan.status
        loan.status = new_status
        self.save_loan(loan, storage)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"from": previous.value, "to": new_status.value},
            user_id=changed_by
        )

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def _require_product(self, product_id: str) -> LoanProduct:
        product = self.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Loan product {product_id} not found")
        return product
