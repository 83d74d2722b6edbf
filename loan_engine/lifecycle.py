"""
Loan Lifecycle Engine

Batch job that advances disbursed loans past their due dates:

    ACTIVE --missed due date--> DEFAULTED --missed again--> DEFAULTED
       \\                            |
        `--past final due date------+--> OVERDUE

Each missed period accrues interest on the outstanding balance; reaching
OVERDUE applies the organization's OVERDUE auto charges instead. All
writes for one loan happen in one transaction together with a processing
watermark, so a repeated run never applies the same transition twice.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .charges import ChargeManager
from .config import LoanEngineConfig, get_config
from .currency import ZERO, HUNDRED, round_money
from .errors import EngineBusyError, NotFoundError
from .loans import (
    Loan, LoanManager, LoanStatus, PROCESSABLE_STATUSES, OUTSTANDING_STATUSES,
    calculate_loan_balance,
)
from .periods import DurationUnit, add_duration
from .settings import SettingsManager
from .storage import StorageInterface

logger = logging.getLogger(__name__)

WATERMARK_TABLE = "engine_watermarks"
SYSTEM_ERROR_ID = "system"


class TransitionDecision(Enum):
    NONE = "NONE"
    DEFAULT = "DEFAULT"                  # ACTIVE -> DEFAULTED
    EXTEND_DEFAULT = "EXTEND_DEFAULT"    # DEFAULTED stays DEFAULTED, due date moves on
    OVERDUE = "OVERDUE"


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def decide_transition(
    status: LoanStatus,
    next_due_date: Optional[date],
    expected_repayment_date: Optional[date],
    grace_period_days: int,
    start_date: Optional[date],
    max_period: int,
    duration_unit: DurationUnit,
    now: Union[date, datetime]
) -> TransitionDecision:
    """
    Decide what the engine does with a loan on a given day

    The loan is due at next_due_date (else expected_repayment_date) plus
    the grace period. Once that has passed, a loan beyond its final due
    date (start + max_period + grace) becomes OVERDUE; otherwise it
    defaults, or stays defaulted for another period.
    """
    if status not in PROCESSABLE_STATUSES:
        return TransitionDecision.NONE

    due_date = next_due_date or expected_repayment_date
    if due_date is None:
        return TransitionDecision.NONE

    today = _as_date(now)
    grace = timedelta(days=grace_period_days)
    if today <= due_date + grace:
        return TransitionDecision.NONE

    if start_date is None:
        return TransitionDecision.NONE

    final_due_date = add_duration(start_date, max_period, duration_unit) + grace
    if today > final_due_date:
        return TransitionDecision.OVERDUE

    if status == LoanStatus.ACTIVE:
        return TransitionDecision.DEFAULT
    return TransitionDecision.EXTEND_DEFAULT


@dataclass
class LoanProcessingResult:
    """Outcome of one loan's transition"""
    loan_id: str
    loan_number: str
    previous_status: LoanStatus
    new_status: LoanStatus
    decision: TransitionDecision
    interest_added: Decimal
    charges_added: Decimal
    next_due_date: Optional[date]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'previous_status': self.previous_status.value,
            'new_status': self.new_status.value,
            'decision': self.decision.value,
            'interest_added': str(self.interest_added),
            'charges_added': str(self.charges_added),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'message': self.message,
        }


@dataclass
class EngineRunResult:
    """Summary of one engine run; errors are never dropped"""
    timestamp: datetime
    processed_count: int = 0
    skipped_count: int = 0
    results: List[LoanProcessingResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def add_error(self, loan_id: str, error: str) -> None:
        self.errors.append({'loan_id': loan_id, 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'processed_count': self.processed_count,
            'skipped_count': self.skipped_count,
            'results': [r.to_dict() for r in self.results],
            'errors': list(self.errors),
        }


@dataclass
class EngineStatistics:
    total_active_loans: int
    total_defaulted_loans: int
    total_overdue_loans: int
    total_outstanding_balance: Decimal
    loans_to_process: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_active_loans': self.total_active_loans,
            'total_defaulted_loans': self.total_defaulted_loans,
            'total_overdue_loans': self.total_overdue_loans,
            'total_outstanding_balance': str(self.total_outstanding_balance),
            'loans_to_process': self.loans_to_process,
        }


class LoanLifecycleEngine:
    """
    Processes ACTIVE and DEFAULTED loans whose due dates have passed

    Loans are processed sequentially. A failure on one loan rolls back
    that loan's transaction, is recorded against its id, and the run
    continues with the next loan.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        charge_manager: ChargeManager,
        settings_manager: SettingsManager,
        audit_trail: AuditTrail,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.charge_manager = charge_manager
        self.settings_manager = settings_manager
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self._run_lock = threading.Lock()

    def process_loans(self, organization_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> EngineRunResult:
        """
        Run the engine over every eligible loan

        Args:
            organization_id: Restrict the run to one organization
            now: Reference time for due-date checks (current UTC time if omitted)

        Returns:
            EngineRunResult; skipped_count counts eligible loans that needed no
            action, belonged to an organization with auto processing disabled,
            or were already processed for their current due date

        Raises:
            EngineBusyError: If another run is in progress in this process
        """
        now = now or datetime.now(timezone.utc)
        result = EngineRunResult(timestamp=now)

        if not self.config.engine_enabled:
            logger.info("Loan engine is disabled, nothing processed")
            return result

        if self.config.engine_lock_enabled and not self._run_lock.acquire(blocking=False):
            raise EngineBusyError("Loan engine run already in progress")

        try:
            self._run(organization_id, now, result)
        finally:
            if self.config.engine_lock_enabled:
                self._run_lock.release()

        logger.info(
            f"Loan engine run completed: processed {result.processed_count}, "
            f"skipped {result.skipped_count}, errors {len(result.errors)}",
            extra={'extra': {'organization_id': organization_id}}
        )
        return result

    def _run(self, organization_id: Optional[str], now: datetime, result: EngineRunResult) -> None:
        self._audit_run(AuditEventType.ENGINE_RUN_STARTED, organization_id, {"now": now})

        try:
            loans = self.loan_manager.get_loans_for_processing(organization_id)
        except Exception as e:
            logger.exception(f"Loan engine could not enumerate loans: {e}")
            result.add_error(SYSTEM_ERROR_ID, str(e))
            return

        auto_process: Dict[str, bool] = {}
        for loan in loans:
            try:
                if loan.organization_id not in auto_process:
                    settings = self.settings_manager.get_engine_settings(loan.organization_id)
                    auto_process[loan.organization_id] = settings.auto_process_enabled
                if not auto_process[loan.organization_id]:
                    result.skipped_count += 1
                    continue

                loan_result = self.process_loan(loan, now)
            except Exception as e:
                logger.error(f"Loan {loan.loan_number} failed: {e}",
                             extra={'extra': {'loan_id': loan.id}})
                result.add_error(loan.id, str(e))
                self._audit_loan_failure(loan, e)
                continue

            if loan_result is None:
                result.skipped_count += 1
            else:
                result.results.append(loan_result)
                result.processed_count += 1

        self._audit_run(AuditEventType.ENGINE_RUN_COMPLETED, organization_id, {
            "processed_count": result.processed_count,
            "skipped_count": result.skipped_count,
            "error_count": len(result.errors),
        })

    def process_loan(self, loan: Loan, now: Union[date, datetime]) -> Optional[LoanProcessingResult]:
        """
        Apply the due transition to a single loan

        The loan is re-read inside the transaction, so a stale copy never
        overwrites newer state. Returns None when no transition is due or
        the transition was already applied.
        """
        today = _as_date(now)
        run_at = now if isinstance(now, datetime) else datetime.now(timezone.utc)

        with self.storage.atomic() as tx:
            current = self.loan_manager.get_loan(loan.id, storage=tx)
            if current is None:
                raise NotFoundError(f"Loan {loan.id} not found")
            product = self.loan_manager.get_product(current.product_id, storage=tx)
            if product is None:
                raise NotFoundError(f"Loan product {current.product_id} not found")
            if not product.is_active or not product.allow_auto_calculations:
                return None

            decision = decide_transition(
                current.status,
                current.next_due_date,
                current.expected_repayment_date,
                product.grace_period_days,
                current.start_date or current.disbursed_date,
                product.max_period,
                product.duration_unit,
                today,
            )
            if decision == TransitionDecision.NONE:
                return None

            crossed_due_date = current.due_date
            watermark_id = f"{current.id}:{crossed_due_date.isoformat()}:{decision.value}"
            if tx.exists(WATERMARK_TABLE, watermark_id):
                logger.info(f"Loan {current.loan_number} already processed for {crossed_due_date}")
                return None

            previous_status = current.status
            interest = ZERO

            if decision == TransitionDecision.OVERDUE:
                current.status = LoanStatus.OVERDUE
                balance = calculate_loan_balance(tx, current.id)
                message = "Loan is past its final due date"
            else:
                if decision == TransitionDecision.DEFAULT:
                    current.status = LoanStatus.DEFAULTED
                    advance_from = current.expected_repayment_date or crossed_due_date
                    message = "Loan defaulted"
                else:
                    advance_from = current.next_due_date or crossed_due_date
                    message = "Loan remains in default"
                current.next_due_date = add_duration(advance_from, product.min_period, product.duration_unit)

                balance = calculate_loan_balance(tx, current.id)
                interest = round_money(balance * current.interest_rate / HUNDRED)
                current.interest_amount += interest
                current.interest_balance += interest

            current.last_engine_run_at = run_at
            self.loan_manager.save_loan(current, tx)

            charges = self.charge_manager.apply_auto_charges(current, current.status.value, balance, tx)
            charges_added = sum((c.amount for c in charges), ZERO)

            current.outstanding_balance = calculate_loan_balance(tx, current.id)
            self.loan_manager.save_loan(current, tx)

            tx.save(WATERMARK_TABLE, watermark_id, {
                'loan_id': current.id,
                'due_date': crossed_due_date.isoformat(),
                'decision': decision.value,
                'processed_at': run_at.isoformat(),
            })

            if current.status != previous_status:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=current.id,
                    metadata={"from": previous_status.value, "to": current.status.value,
                              "due_date": crossed_due_date}
                )
            if interest > ZERO:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_INTEREST_ACCRUED,
                    entity_type="loan",
                    entity_id=current.id,
                    metadata={"interest": interest, "balance": balance,
                              "next_due_date": current.next_due_date}
                )

        logger.info(
            f"Loan {current.loan_number}: {previous_status.value} -> {current.status.value} "
            f"(interest: {interest}, charges: {charges_added})"
        )
        return LoanProcessingResult(
            loan_id=current.id,
            loan_number=current.loan_number,
            previous_status=previous_status,
            new_status=current.status,
            decision=decision,
            interest_added=interest,
            charges_added=charges_added,
            next_due_date=current.next_due_date,
            message=message,
        )

    def get_overdue_loans(self, organization_id: str, now: Optional[datetime] = None) -> List[Loan]:
        """ACTIVE or DEFAULTED loans whose due date has passed, earliest first"""
        today = _as_date(now or datetime.now(timezone.utc))
        loans = self.loan_manager.find_loans(organization_id, PROCESSABLE_STATUSES)
        overdue = [loan for loan in loans if loan.due_date is not None and loan.due_date < today]
        overdue.sort(key=lambda l: l.due_date)
        return overdue

    def get_engine_statistics(self, organization_id: str,
                              now: Optional[datetime] = None) -> EngineStatistics:
        loans = self.loan_manager.find_loans(organization_id)
        outstanding = sum(
            (loan.outstanding_balance for loan in loans if loan.status in OUTSTANDING_STATUSES),
            ZERO
        )
        eligible = {loan.id for loan in self.loan_manager.get_loans_for_processing(organization_id)}
        due = self.get_overdue_loans(organization_id, now)

        return EngineStatistics(
            total_active_loans=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
            total_defaulted_loans=sum(1 for loan in loans if loan.status == LoanStatus.DEFAULTED),
            total_overdue_loans=sum(1 for loan in loans if loan.status == LoanStatus.OVERDUE),
            total_outstanding_balance=round_money(outstanding),
            loans_to_process=sum(1 for loan in due if loan.id in eligible),
        )

    def _audit_run(self, event_type: AuditEventType, organization_id: Optional[str],
                   metadata: Dict[str, Any]) -> None:
        if not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="engine_run",
            entity_id=organization_id or "all",
            metadata=metadata
        )

    def _audit_loan_failure(self, loan: Loan, error: Exception) -> None:
        if not self.config.enable_audit_logging:
            return
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.ENGINE_LOAN_FAILED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"error": str(error)}
            )
        except Exception as e:
            logger.error(f"Could not audit failure of loan {loan.loan_number}: {e}",
                         extra={'extra': {'loan_id': loan.id}})
