"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent error responses with proper status codes
HOW: FastAPI exception handlers for custom exceptions
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..utils.exceptions import (
    BusinessException,
    SessionNotFoundException,
    TradeNotFoundException,
    InvalidSessionStateException,
    ItemNotOwnedException,
    ItemNotTradeableException,
    InsufficientQuantityException,
    SettlementException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


def status_code_for(exc: BusinessException) -> int:
    """Map a business exception to its HTTP status code."""
    if isinstance(exc, (SessionNotFoundException, TradeNotFoundException)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidSessionStateException, SettlementException)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ItemNotOwnedException, ItemNotTradeableException, InsufficientQuantityException)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input")
        }
        # Convert ctx errors to strings
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle BusinessException and subclasses.

    WHAT: Domain error raised by a service
    WHY: Clients switch on the error code
    HOW: Return the mapped status code with code, message and details
    """
    logger.warning(f"API exception: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code_for(exc),
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)

    logger.info("Exception handlers registered")
