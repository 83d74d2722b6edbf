"""
FastAPI REST API Module

Thin HTTP surface over the calculation service and the lifecycle engine.
Domain errors are translated to HTTP status codes by their error code.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .audit import AuditTrail
from .calculator import LoanCalculationService
from .charges import ChargeManager, FinancialLedger
from .config import LoanEngineConfig, get_config
from .errors import ErrorCode, LoanEngineError
from .lifecycle import LoanLifecycleEngine
from .loans import LoanManager
from .organizations import OrganizationManager
from .schemas import (
    AffordabilityRequest, CalculationRequest, CompareRequest, EarlySettlementRequest,
    EngineRunRequest, PenaltyRequest, RestructureRequest,
)
from .settings import SettingsManager
from .storage import StorageInterface, create_storage

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNSUPPORTED_METHOD: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.ENGINE_BUSY: status.HTTP_409_CONFLICT,
}


class LoanEngineSystem:
    """All engine components wired to one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LoanEngineConfig] = None,
                 ledger: Optional[FinancialLedger] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage)
        self.settings_manager = SettingsManager(self.storage, self.audit_trail, self.config)
        self.settings_manager.seed_system_defaults()
        self.organization_manager = OrganizationManager(self.storage, self.audit_trail)
        self.charge_manager = ChargeManager(self.storage, self.audit_trail, ledger=ledger)
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.charge_manager, self.settings_manager
        )
        self.engine = LoanLifecycleEngine(
            self.storage, self.loan_manager, self.charge_manager,
            self.settings_manager, self.audit_trail, self.config
        )
        self.calculator = LoanCalculationService(
            default_restructure_rate=self.config.default_restructure_rate
        )


def get_system(request: Request) -> LoanEngineSystem:
    return request.app.state.system


calculations_router = APIRouter()
engine_router = APIRouter()


@calculations_router.post("")
async def calculate(request: CalculationRequest, system: LoanEngineSystem = Depends(get_system)):
    """Calculate a repayment schedule"""
    calc_input = request.to_input(system.config.default_calculation_method)
    return system.calculator.calculate_loan(calc_input).to_dict()


@calculations_router.post("/compare")
async def compare_methods(request: CompareRequest, system: LoanEngineSystem = Depends(get_system)):
    """Calculate the same loan under several methods; failing methods are omitted"""
    base_input = request.loan.to_input(system.config.default_calculation_method)
    results = system.calculator.compare_loan_methods(base_input, request.methods)
    return {method.value: result.to_dict() for method, result in results.items()}


@calculations_router.post("/penalty")
async def calculate_penalty(request: PenaltyRequest, system: LoanEngineSystem = Depends(get_system)):
    result = system.calculator.calculate_penalty(
        request.calculation_method,
        request.overdue_days,
        request.overdue_amount,
        request.penalty_rate,
        request.penalty_type,
    )
    return result.to_dict()


@calculations_router.post("/early-settlement")
async def calculate_early_settlement(request: EarlySettlementRequest,
                                     system: LoanEngineSystem = Depends(get_system)):
    original = system.calculator.calculate_loan(
        request.loan.to_input(system.config.default_calculation_method)
    )
    result = system.calculator.calculate_early_settlement(
        original, request.settlement_date, request.installments_paid
    )
    return result.to_dict()


@calculations_router.post("/restructure")
async def calculate_restructure(request: RestructureRequest,
                                system: LoanEngineSystem = Depends(get_system)):
    original = system.calculator.calculate_loan(
        request.loan.to_input(system.config.default_calculation_method)
    )
    result = system.calculator.calculate_loan_restructure(
        original, request.options.to_options(), request.installments_paid, request.restructure_date
    )
    return result.to_dict()


@calculations_router.post("/affordability")
async def calculate_affordability(request: AffordabilityRequest,
                                  system: LoanEngineSystem = Depends(get_system)):
    result = system.calculator.calculate_affordability(
        request.monthly_income,
        request.existing_debts,
        request.proposed_payment,
        request.max_ratio or system.config.default_max_debt_to_income_ratio,
    )
    return result.to_dict()


@calculations_router.get("/methods")
async def get_methods(system: LoanEngineSystem = Depends(get_system)):
    return {"methods": [method.value for method in system.calculator.get_available_methods()]}


@engine_router.post("/run")
async def run_engine(request: EngineRunRequest, system: LoanEngineSystem = Depends(get_system)):
    """Process due loans for one organization, or for all when none is given"""
    result = system.engine.process_loans(request.organization_id, now=request.now)
    return result.to_dict()


@engine_router.get("/statistics/{organization_id}")
async def get_statistics(organization_id: str, system: LoanEngineSystem = Depends(get_system)):
    return system.engine.get_engine_statistics(organization_id).to_dict()


@engine_router.get("/overdue/{organization_id}")
async def get_overdue(organization_id: str, system: LoanEngineSystem = Depends(get_system)):
    loans = system.engine.get_overdue_loans(organization_id)
    return {
        "count": len(loans),
        "loans": [
            {
                "loan_id": loan.id,
                "loan_number": loan.loan_number,
                "status": loan.status.value,
                "due_date": loan.due_date.isoformat(),
                "outstanding_balance": str(loan.outstanding_balance),
            }
            for loan in loans
        ],
    }


def create_app(storage: Optional[StorageInterface] = None,
               config: Optional[LoanEngineConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Engine API",
        description="Loan schedule calculations and loan lifecycle processing",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = LoanEngineSystem(storage=storage, config=config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanEngineError)
    async def loan_engine_error_handler(request: Request, exc: LoanEngineError):
        status_code = ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error(f"Unhandled engine error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"code": ErrorCode.VALIDATION_ERROR.value, "message": str(exc)},
        )

    app.include_router(calculations_router, prefix="/calculations", tags=["Calculations"])
    app.include_router(engine_router, prefix="/engine", tags=["Engine"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with uvicorn"""
    config = get_config()
    uvicorn.run(
        "loan_engine.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
