"""
Loan Engine

Loan schedule calculations under several interest conventions, charges,
and a lifecycle engine that moves disbursed loans through default and
overdue states. All money is Decimal; rounding happens only on output.
"""

__version__ = "1.0.0"

from .errors import (
    ErrorCode, LoanEngineError, LoanValidationError, UnsupportedMethodError,
    NotFoundError, InvalidStateError, EngineBusyError,
)
from .schedule import (
    LoanCalculationInput, LoanCalculationMethod, LoanCalculationResult, PenaltyType,
    RestructureOptions, ActualPayment,
)
from .calculator import LoanCalculationService, StrategyRegistry, default_registry
from .storage import InMemoryStorage, SQLiteStorage, create_storage
from .audit import AuditTrail, AuditEventType
from .charges import ChargeManager, ChargeEvaluator, FinancialLedger
from .settings import SettingsManager, EngineSettings
from .organizations import OrganizationManager
from .loans import LoanManager, LoanStatus, calculate_loan_balance
from .lifecycle import LoanLifecycleEngine, TransitionDecision, decide_transition
from .jobs import run_loan_engine_job, run_loan_engine_for_organization
