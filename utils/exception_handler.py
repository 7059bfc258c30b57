"""
Exception Handler Module
Defines the consultation/billing error taxonomy and maps it to HTTP responses
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ConsultationError(Exception):
    """Base class for errors surfaced to callers with a machine-readable reason"""

    reason = "error"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "reason": self.reason, "message": self.message}
        if self.context:
            payload["details"] = self.context
        return payload


# ===== Preconditions: rejected synchronously, no side effects =====

class PreconditionError(ConsultationError):
    http_status = 409


class DoctorUnavailable(PreconditionError):
    reason = "doctor_unavailable"
    http_status = 409
    default_message = "Doctor is not available"


class DoctorBusy(PreconditionError):
    reason = "doctor_busy"
    default_message = "Doctor is currently in another session"


class PatientBusy(PreconditionError):
    reason = "patient_busy"
    default_message = "You already have an active or waiting session"


class QuotaExhausted(PreconditionError):
    reason = "quota_exhausted"
    http_status = 403
    default_message = "No remaining sessions for this session type"


class NoActiveSubscription(QuotaExhausted):
    reason = "no_active_subscription"
    default_message = "no active subscription"


class SubscriptionInactive(NoActiveSubscription):
    reason = "subscription_inactive"
    default_message = "subscription inactive"


class InsufficientBalance(PreconditionError):
    reason = "insufficient_balance"
    http_status = 400
    default_message = "Insufficient wallet balance"


class InvalidWithdrawal(PreconditionError):
    reason = "invalid_withdrawal"
    http_status = 422
    default_message = "Invalid withdrawal request"


class InvalidSchedule(PreconditionError):
    reason = "invalid_schedule"
    http_status = 422
    default_message = "Scheduled time must be in the future"


# ===== State errors =====

class InvalidTransition(ConsultationError):
    reason = "invalid_transition"
    http_status = 409
    default_message = "Transition not allowed from the current state"


class InvalidRequest(ConsultationError):
    reason = "invalid_request"
    http_status = 422
    default_message = "Invalid request"


class ResponseWindowClosed(InvalidTransition):
    reason = "response_window_closed"
    default_message = "The response window for this session has closed"


class NotFound(ConsultationError):
    reason = "not_found"
    http_status = 404
    default_message = "Resource not found"


class PermissionDenied(ConsultationError):
    reason = "forbidden"
    http_status = 403
    default_message = "You are not allowed to perform this action"


class Unauthenticated(ConsultationError):
    reason = "unauthenticated"
    http_status = 401
    default_message = "Missing caller identity"


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto JSON responses"""

    @app.exception_handler(ConsultationError)
    async def _consultation_error_handler(request: Request, exc: ConsultationError):
        logger.info(f"⚠️ REQUEST_REJECTED: {request.method} {request.url.path} reason={exc.reason} - {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def _database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"❌ DATABASE_ERROR: {request.method} {request.url.path} - {exc}")
        return JSONResponse(
            status_code=503,
            content={"success": False, "reason": "storage_unavailable", "message": "Please retry shortly"},
        )
