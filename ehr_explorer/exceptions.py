from typing import Optional, Dict, Any
from fastapi import HTTPException

class EHRBaseException(Exception):
    """Base exception for EHR application"""
    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

class ParseError(EHRBaseException):
    """Raised when bundle content is malformed or structurally invalid"""
    pass

class ValidationError(EHRBaseException):
    """Raised when an uploaded file is not an acceptable patient bundle"""
    pass

class DatabaseError(EHRBaseException):
    """Raised when there's a database operation error"""
    pass

class StoreBusyError(DatabaseError):
    """Raised when a statement stays busy/locked for every allowed attempt"""
    def __init__(self, message: str, attempts: int, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "STORE_BUSY", details)
        self.attempts = attempts
        self.details.setdefault("attempts", attempts)

class RowInsertError(DatabaseError):
    """Raised when a single child row cannot be inserted"""
    pass

class TransactionError(DatabaseError):
    """Raised when begin, commit, a child delete or the patient upsert fails"""
    pass

class NotifyError(EHRBaseException):
    """Raised when a change notification cannot be delivered"""
    pass

def handle_ehr_exception(exc: EHRBaseException) -> HTTPException:
    """Convert EHR exceptions to HTTP exceptions"""
    status_code = 500
    error_code = exc.error_code or "INTERNAL_ERROR"

    if isinstance(exc, (ValidationError, ParseError)):
        status_code = 400  # Bad Request
        error_code = exc.error_code or "VALIDATION_ERROR"
    elif isinstance(exc, StoreBusyError):
        status_code = 503  # Service Unavailable
        error_code = "STORE_BUSY"
    elif isinstance(exc, DatabaseError):
        status_code = 500  # Internal Server Error
        error_code = exc.error_code or "DATABASE_ERROR"
    elif isinstance(exc, NotifyError):
        status_code = 502  # Bad Gateway
        error_code = "NOTIFY_ERROR"

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.message,
            "error_code": error_code,
            "details": exc.details
        }
    )
