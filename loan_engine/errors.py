"""Exception hierarchy for the loan engine."""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Machine-readable error kinds"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNSUPPORTED_METHOD = "UNSUPPORTED_METHOD"
    NOT_FOUND = "NOT_FOUND"
    CALCULATION_INCONSISTENT = "CALCULATION_INCONSISTENT"  # logged, never raised
    INVALID_STATE = "INVALID_STATE"
    ENGINE_BUSY = "ENGINE_BUSY"


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class LoanValidationError(LoanEngineError, ValueError):
    """Raised when calculation or domain input is invalid."""

    code = ErrorCode.VALIDATION_ERROR


class UnsupportedMethodError(LoanEngineError):
    """Raised when no strategy is registered for a calculation method."""

    code = ErrorCode.UNSUPPORTED_METHOD


class NotFoundError(LoanEngineError):
    """Raised when a loan, product, charge or organization does not exist."""

    code = ErrorCode.NOT_FOUND


class InvalidStateError(LoanEngineError):
    """Raised when an entity is in an invalid state for the operation."""

    code = ErrorCode.INVALID_STATE


class EngineBusyError(LoanEngineError):
    """Raised when a lifecycle run is already in progress."""

    code = ErrorCode.ENGINE_BUSY
