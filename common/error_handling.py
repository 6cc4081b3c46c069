"""
Error taxonomy and standardized FastAPI error responses

Two families: BusinessLogicError for bad data (never fixed by retrying the
same input) and ServiceError for transient upstream failures (retried on the
next poll or manual trigger). Domain errors subclass one of them.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    retryable: bool = False

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Inbound data
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_WEBHOOK = "INVALID_WEBHOOK"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    NOT_FOUND = "NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"

    # Data integrity
    INVALID_CREDENTIAL_INPUT = "INVALID_CREDENTIAL_INPUT"
    PAYMENT_INTEGRITY = "PAYMENT_INTEGRITY"
    DEVICE_NOT_CONFIGURED = "DEVICE_NOT_CONFIGURED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    # Ledger
    LEDGER_WRITE_FAILED = "LEDGER_WRITE_FAILED"
    LEDGER_PARTIAL_FAILURE = "LEDGER_PARTIAL_FAILURE"

    # Upstream
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    PROVISIONING_UNAVAILABLE = "PROVISIONING_UNAVAILABLE"
    PROVISIONING_REJECTED = "PROVISIONING_REJECTED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    DATABASE_ERROR = "DATABASE_ERROR"

    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

# HTTP status per code; codes not listed fall back to the family default
HTTP_STATUS = {
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.INVALID_SIGNATURE: 401,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.PAYMENT_NOT_FOUND: 404,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.DUPLICATE_PAYMENT: 409,
    ErrorCodes.GATEWAY_UNAVAILABLE: 502,
    ErrorCodes.PROVISIONING_UNAVAILABLE: 502,
    ErrorCodes.PROVISIONING_REJECTED: 502,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.DATABASE_ERROR: 503,
}

class BusinessLogicError(Exception):
    """Data-integrity failures; never fixed by retrying the same input"""
    retryable = False
    default_status = 400

    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Transient upstream failures; retried on the next trigger"""
    retryable = True
    default_status = 500

    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

def create_error_response(request: Request, code: str, message: str, status_code: int,
                          field: str = None, context: Dict[str, Any] = None,
                          retryable: bool = False) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or None, retryable=retryable),
        timestamp=time.time(),
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "field": exc.field,
        "trace_id": getattr(request.state, "trace_id", None),
    })
    return create_error_response(request, exc.code, exc.message, HTTP_STATUS.get(exc.code, exc.default_status),
                                 field=exc.field, context=exc.context)

async def service_exception_handler(request: Request, exc: ServiceError):
    logger.error(f"Upstream failure on {request.url.path}: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": getattr(request.state, "trace_id", None),
        "original_error": str(exc.original_error) if exc.original_error else None,
    })
    return create_error_response(request, exc.code, exc.message, HTTP_STATUS.get(exc.code, exc.default_status),
                                 retryable=True)

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", []))
    message = first.get("msg", "Validation error")
    logger.warning(f"Validation error on {field}: {message}")
    return create_error_response(request, ErrorCodes.VALIDATION_ERROR,
                                 f"Validation error on field '{field}': {message}", 400, field=field)

async def http_exception_handler(request: Request, exc: HTTPException):
    code = {
        400: ErrorCodes.VALIDATION_ERROR,
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
    }.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}")
    return create_error_response(request, code, str(exc.detail), exc.status_code)

async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
    return create_error_response(request, ErrorCodes.INTERNAL_SERVER_ERROR,
                                 "An unexpected error occurred. Please try again later.", 500)

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
