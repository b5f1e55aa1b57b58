"""
Error taxonomy of the game service and its HTTP error envelope.

Business errors are expected outcomes (a bet racing a close, a stale admin
console) and are answered with 4xx. Service errors mean money may not have
moved as asked and are answered with 503 and logged loudly.
"""
import logging
import time
import traceback
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Body of every error response"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    # Authentication & authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    ACCOUNT_NOT_APPROVED = "ACCOUNT_NOT_APPROVED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BET_OUT_OF_RANGE = "BET_OUT_OF_RANGE"

    # Rounds, bets and ledger
    ROUND_CLOSED = "ROUND_CLOSED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE_BET = "DUPLICATE_BET"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    ACCOUNT_EXISTS = "ACCOUNT_EXISTS"
    ROOM_EXISTS = "ROOM_EXISTS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    REQUEST_ID_REUSED = "REQUEST_ID_REUSED"

    # System
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SETTLEMENT_INCOMPLETE = "SETTLEMENT_INCOMPLETE"
    TRANSIENT_STORE_ERROR = "TRANSIENT_STORE_ERROR"

class BusinessLogicError(Exception):
    """A request the rules refuse. Nothing was written."""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, code: str = None, field: str = None, context: Dict[str, Any] = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class RoundClosed(BusinessLogicError):
    """The round closed or advanced before the bet committed."""
    code = ErrorCodes.ROUND_CLOSED

class InsufficientBalance(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_BALANCE

class InvalidTransition(BusinessLogicError):
    """Admin action out of sequence (stale console or a second admin session)."""
    code = ErrorCodes.INVALID_TRANSITION

class BetOutOfRange(BusinessLogicError):
    code = ErrorCodes.BET_OUT_OF_RANGE

class DuplicateBet(BusinessLogicError):
    code = ErrorCodes.DUPLICATE_BET

class AccountNotFound(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_NOT_FOUND

class AccountNotApproved(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_NOT_APPROVED

class RoomNotFound(BusinessLogicError):
    code = ErrorCodes.ROOM_NOT_FOUND

class AlreadyExists(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_EXISTS

class RateLimited(BusinessLogicError):
    code = ErrorCodes.RATE_LIMIT_EXCEEDED

class RequestIdReused(BusinessLogicError):
    """A request id already answered a different request."""
    code = ErrorCodes.REQUEST_ID_REUSED

class ServiceError(Exception):
    """The service could not complete the request; the caller may retry."""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str = None, original_error: Exception = None, context: Dict[str, Any] = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(message)

class TransientStoreError(ServiceError):
    code = ErrorCodes.TRANSIENT_STORE_ERROR

class SettlementIncomplete(ServiceError):
    """Payout could not be applied all-or-nothing; the round must not advance."""
    code = ErrorCodes.SETTLEMENT_INCOMPLETE

HTTP_STATUS = {
    ErrorCodes.ROUND_CLOSED: 409,
    ErrorCodes.INVALID_TRANSITION: 409,
    ErrorCodes.DUPLICATE_BET: 409,
    ErrorCodes.ACCOUNT_EXISTS: 409,
    ErrorCodes.ROOM_EXISTS: 409,
    ErrorCodes.REQUEST_ID_REUSED: 409,
    ErrorCodes.INSUFFICIENT_BALANCE: 400,
    ErrorCodes.BET_OUT_OF_RANGE: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.ACCOUNT_NOT_APPROVED: 403,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.ROOM_NOT_FOUND: 404,
    ErrorCodes.RATE_LIMIT_EXCEEDED: 429,
    ErrorCodes.TRANSIENT_STORE_ERROR: 503,
    ErrorCodes.SETTLEMENT_INCOMPLETE: 503,
}

HTTP_EXCEPTION_CODES = {
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    429: ErrorCodes.RATE_LIMIT_EXCEEDED,
}

# What players and the admin console are shown; the code stays machine-readable
PLAYER_MESSAGES = {
    ErrorCodes.ROUND_CLOSED: "Betting is closed for this round",
    ErrorCodes.INSUFFICIENT_BALANCE: "Insufficient balance",
    ErrorCodes.INVALID_TRANSITION: "Action failed, refresh and retry",
}

# Expected under concurrency: control flow, not warnings
QUIET_CODES = {ErrorCodes.ROUND_CLOSED, ErrorCodes.INVALID_TRANSITION, ErrorCodes.DUPLICATE_BET}

def _request_ids(request: Request) -> Tuple[Optional[str], Optional[str]]:
    return getattr(request.state, "trace_id", None), getattr(request.state, "request_id", None)

def create_error_response(
    request: Request,
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    trace_id, request_id = _request_ids(request)
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    level = logging.INFO if exc.code in QUIET_CODES else logging.WARNING
    logger.log(level, f"{exc.code}: {exc.message}", extra={
        "error_code": exc.code,
        "request_id": _request_ids(request)[1],
        "context": exc.context,
    })
    return create_error_response(
        request,
        exc.code,
        PLAYER_MESSAGES.get(exc.code, exc.message),
        status_code=HTTP_STATUS.get(exc.code, 400),
        field=exc.field,
        context=exc.context,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    level = logging.CRITICAL if exc.code == ErrorCodes.SETTLEMENT_INCOMPLETE else logging.ERROR
    logger.log(level, f"🚨 {exc.code}: {exc.message} (cause: {exc.original_error})", extra={
        "error_code": exc.code,
        "request_id": _request_ids(request)[1],
    })
    return create_error_response(
        request, exc.code, exc.message, status_code=HTTP_STATUS.get(exc.code, 500), context=exc.context
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", []))
    message = first.get("msg", "Validation error")
    logger.warning(f"Validation error on {field}: {message}")
    return create_error_response(
        request,
        ErrorCodes.VALIDATION_ERROR,
        f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
    return create_error_response(
        request,
        HTTP_EXCEPTION_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR),
        str(exc.detail),
        status_code=exc.status_code,
    )

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}\n{traceback.format_exc()}")
    # Internal details stay in the log
    return create_error_response(
        request,
        ErrorCodes.INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        status_code=500,
    )

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
