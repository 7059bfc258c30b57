"""
Admin Withdrawal Routes
Review queue for doctor withdrawal requests
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import sessionmaker

from handlers.dependencies import get_current_user_id, get_session_factory, get_withdrawal_service
from models import User
from services.withdrawal_service import WithdrawalService
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import PermissionDenied

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/withdrawal-requests", tags=["admin-withdrawals"])


class RejectWithdrawalRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class MarkPaidRequest(BaseModel):
    payment_details: Optional[Dict[str, Any]] = None


def require_admin(
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> int:
    with atomic_transaction(session_factory=session_factory) as db:
        user = db.get(User, user_id)
        if user is None or not user.is_admin:
            raise PermissionDenied("Admin access required")
    return user_id


@router.get("")
def list_withdrawal_requests(
    status: Optional[str] = Query(None),
    doctor_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    admin_id: int = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    data = withdrawals.list_requests(doctor_id=doctor_id, status=status, page=page, per_page=per_page)
    return {"success": True, "data": data}


@router.get("/stats")
def withdrawal_statistics(
    admin_id: int = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return {"success": True, "data": withdrawals.statistics()}


@router.post("/{request_id}/approve")
def approve_withdrawal(
    request_id: int,
    admin_id: int = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return {"success": True, "data": withdrawals.approve(request_id, admin_id)}


@router.post("/{request_id}/reject")
def reject_withdrawal(
    request_id: int,
    body: RejectWithdrawalRequest,
    admin_id: int = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    return {"success": True, "data": withdrawals.reject(request_id, admin_id, body.reason)}


@router.post("/{request_id}/mark-as-paid")
def mark_withdrawal_paid(
    request_id: int,
    body: Optional[MarkPaidRequest] = None,
    admin_id: int = Depends(require_admin),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    details = body.payment_details if body else None
    return {"success": True, "data": withdrawals.mark_as_paid(request_id, admin_id, details)}
