"""
Doctor Wallet Routes
Balance, transaction history, earnings and withdrawal requests for the calling doctor
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from handlers.dependencies import get_clock, get_current_user_id, get_session_factory, get_withdrawal_service
from models import User
from services.wallet_ledger import WalletLedger
from services.withdrawal_service import WithdrawalService
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock
from utils.exception_handler import NotFound, PermissionDenied

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctor/wallet", tags=["doctor-wallet"])


class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount in the wallet currency")
    payment_method: str = Field(..., description="bank_transfer or mobile_money")
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_branch: Optional[str] = None
    account_holder_name: Optional[str] = None
    mobile_provider: Optional[str] = None
    mobile_number: Optional[str] = None


def _require_doctor(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if not user.is_doctor:
        raise PermissionDenied("Doctor access required")
    return user


@router.get("")
def get_wallet(
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
):
    with atomic_transaction(session_factory=session_factory) as db:
        doctor = _require_doctor(db, user_id)
        return {"success": True, "data": WalletLedger(db, clock=clock).wallet_summary(doctor)}


@router.get("/transactions")
def get_transactions(
    type: Optional[str] = Query(None, description="credit or debit"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
):
    with atomic_transaction(session_factory=session_factory) as db:
        _require_doctor(db, user_id)
        data = WalletLedger(db, clock=clock).list_transactions(user_id, tx_type=type, page=page, per_page=per_page)
        return {"success": True, "data": data}


@router.get("/earnings-summary")
def get_earnings_summary(
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
):
    with atomic_transaction(session_factory=session_factory) as db:
        doctor = _require_doctor(db, user_id)
        return {"success": True, "data": WalletLedger(db, clock=clock).earnings_summary(doctor)}


@router.get("/payment-rates")
def get_payment_rates(
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    with atomic_transaction(session_factory=session_factory) as db:
        doctor = _require_doctor(db, user_id)
        wallet = WalletLedger(db).get_wallet(doctor.id)
        currency = wallet.currency if wallet else WalletLedger.currency_for_doctor(doctor)
        return {"success": True, "data": WalletLedger.payment_rates(currency)}


@router.get("/withdrawal-requests")
def get_withdrawal_requests(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    data = withdrawals.list_requests(doctor_id=user_id, status=status, page=page, per_page=per_page)
    return {"success": True, "data": data}


@router.post("/withdraw")
def request_withdrawal(
    body: WithdrawRequest,
    user_id: int = Depends(get_current_user_id),
    withdrawals: WithdrawalService = Depends(get_withdrawal_service),
):
    details = body.model_dump(exclude={"amount", "payment_method"}, exclude_none=True)
    data = withdrawals.request_withdrawal(user_id, body.amount, body.payment_method, details)
    logger.info(f"🏦 WITHDRAWAL_API: Doctor {user_id} requested {body.amount} via {body.payment_method}")
    return {"success": True, "data": data}
