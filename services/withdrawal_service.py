"""
Withdrawal Workflow

Doctors request payouts from their wallet; admins approve, reject or mark them paid.

The requested amount leaves the wallet as soon as the request is created
(an optimistic hold), so a doctor can never request the same money twice.
Rejecting a request reverses the hold; approving and paying only move the
request through its states.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import SessionLocal
from models import PaymentMethod, User, WithdrawalRequest, WithdrawalStatus
from services.wallet_ledger import WalletLedger, to_money
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.clock import Clock, system_clock
from utils.datetime_helpers import to_iso
from utils.exception_handler import (
    InsufficientBalance, InvalidRequest, InvalidWithdrawal, NotFound, PermissionDenied,
)
from utils.state_transition_validator import WithdrawalStateValidator

logger = logging.getLogger(__name__)

BANK_FIELDS = ("bank_name", "account_number", "bank_branch", "account_holder_name")


def serialize_withdrawal(request: WithdrawalRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "doctor_id": request.doctor_id,
        "amount": str(to_money(request.amount)),
        "currency": request.currency,
        "status": request.status,
        "payment_method": request.payment_method,
        "bank_name": request.bank_name,
        "account_number": request.account_number,
        "bank_branch": request.bank_branch,
        "account_holder_name": request.account_holder_name,
        "mobile_provider": request.mobile_provider,
        "mobile_number": request.mobile_number,
        "approved_by": request.approved_by,
        "approved_at": to_iso(request.approved_at),
        "rejected_by": request.rejected_by,
        "rejected_at": to_iso(request.rejected_at),
        "rejection_reason": request.rejection_reason,
        "paid_by": request.paid_by,
        "paid_at": to_iso(request.paid_at),
        "payment_details": request.payment_details,
        "created_at": to_iso(request.created_at),
    }


class WithdrawalService:
    """Doctor withdrawal requests and their admin lifecycle"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock

    @staticmethod
    def _require_user(db: Session, user_id: int, admin: bool = False) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise NotFound("User not found", user_id=user_id)
        if admin and not user.is_admin:
            raise PermissionDenied("Admin access required")
        if not admin and not user.is_doctor:
            raise PermissionDenied("Only doctors can request withdrawals")
        return user

    @staticmethod
    def _parse_amount(amount) -> Decimal:
        try:
            value = to_money(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidWithdrawal("Amount must be a number")
        if not value.is_finite() or value <= 0:
            raise InvalidWithdrawal("Amount must be greater than zero")
        return value

    @staticmethod
    def _payment_fields(payment_method: str, details: Dict[str, Any], currency: str) -> Dict[str, Any]:
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise InvalidWithdrawal(f"Unsupported payment method '{payment_method}'")

        if method == PaymentMethod.BANK_TRANSFER:
            missing = [name for name in BANK_FIELDS if not (details.get(name) or "").strip()]
            if missing:
                raise InvalidWithdrawal("Missing bank details", missing=missing)
            return {name: details[name].strip() for name in BANK_FIELDS}

        if currency != "MWK":
            raise InvalidWithdrawal("Mobile money withdrawals are only available for MWK wallets")
        provider = (details.get("mobile_provider") or "").strip().lower()
        if provider not in Config.MOBILE_MONEY_PROVIDERS:
            raise InvalidWithdrawal(
                f"Unsupported mobile money provider '{provider}'",
                allowed=list(Config.MOBILE_MONEY_PROVIDERS),
            )
        number = (details.get("mobile_number") or "").strip()
        if not number:
            raise InvalidWithdrawal("Missing mobile number", missing=["mobile_number"])
        return {"mobile_provider": provider, "mobile_number": number}

    def request_withdrawal(
        self,
        doctor_id: int,
        amount,
        payment_method: str,
        payment_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending request and hold the amount.

        Raises InsufficientBalance when amount > balance (nothing changes) and
        InvalidWithdrawal for limits and payment details.
        """
        value = self._parse_amount(amount)
        with atomic_transaction(session_factory=self.session_factory) as db:
            doctor = self._require_user(db, doctor_id)
            ledger = WalletLedger(db, clock=self.clock)
            wallet = ledger.get_wallet(doctor_id)
            balance = to_money(wallet.balance) if wallet else Decimal("0.00")
            currency = wallet.currency if wallet else ledger.currency_for_doctor(doctor)

            if value > balance:
                raise InsufficientBalance(balance=str(balance), requested=str(value))

            limits = Config.get_withdrawal_limits(currency)
            if value < limits["min"]:
                raise InvalidWithdrawal(f"Minimum withdrawal is {limits['min']} {currency}")
            if value > limits["max"]:
                raise InvalidWithdrawal(f"Maximum withdrawal is {limits['max']} {currency}")

            fields = self._payment_fields(payment_method, payment_details or {}, currency)
            request = WithdrawalRequest(
                doctor_id=doctor_id,
                amount=value,
                currency=currency,
                status=WithdrawalStatus.PENDING,
                payment_method=payment_method,
                created_at=self.clock.now(),
                **fields,
            )
            db.add(request)
            db.flush()

            ledger.debit(
                doctor_id,
                value,
                description=f"Withdrawal request #{request.id}",
                withdrawal_request_id=request.id,
                metadata={"payment_method": payment_method},
            )
            payload = serialize_withdrawal(request)

        logger.info(f"🏦 WITHDRAWAL_REQUESTED: Request {payload['id']} doctor={doctor_id} {value} {currency}")
        return payload

    def _load_locked(self, db: Session, request_id: int) -> WithdrawalRequest:
        request = lock_row(db, WithdrawalRequest, request_id)
        if request is None:
            raise NotFound(f"Withdrawal request {request_id} not found", request_id=request_id)
        return request

    def approve(self, request_id: int, admin_id: int) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            self._require_user(db, admin_id, admin=True)
            request = self._load_locked(db, request_id)
            WithdrawalStateValidator.ensure_transition(request, WithdrawalStatus.APPROVED)
            request.status = WithdrawalStatus.APPROVED
            request.approved_by = admin_id
            request.approved_at = self.clock.now()
            db.flush()
            payload = serialize_withdrawal(request)

        logger.info(f"✅ WITHDRAWAL_APPROVED: Request {request_id} by admin {admin_id}")
        return payload

    def reject(self, request_id: int, admin_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """Reject a pending request and return the held amount to the wallet"""
        if not reason or not reason.strip():
            raise InvalidRequest("A rejection reason is required")
        with atomic_transaction(session_factory=self.session_factory) as db:
            self._require_user(db, admin_id, admin=True)
            request = self._load_locked(db, request_id)
            WithdrawalStateValidator.ensure_transition(request, WithdrawalStatus.REJECTED)
            request.status = WithdrawalStatus.REJECTED
            request.rejected_by = admin_id
            request.rejected_at = self.clock.now()
            request.rejection_reason = reason.strip()

            WalletLedger(db, clock=self.clock).reverse_debit(
                request.doctor_id,
                request.amount,
                description=f"Withdrawal request #{request.id} rejected - funds returned",
                withdrawal_request_id=request.id,
                metadata={"rejection_reason": request.rejection_reason, "rejected_by": admin_id},
            )
            db.flush()
            payload = serialize_withdrawal(request)

        logger.info(f"↩️ WITHDRAWAL_REJECTED: Request {request_id} by admin {admin_id} ({reason})")
        return payload

    def mark_as_paid(self, request_id: int, admin_id: int, payment_details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            self._require_user(db, admin_id, admin=True)
            request = self._load_locked(db, request_id)
            WithdrawalStateValidator.ensure_transition(request, WithdrawalStatus.PAID)
            request.status = WithdrawalStatus.PAID
            request.paid_by = admin_id
            request.paid_at = self.clock.now()
            request.payment_details = payment_details or None
            db.flush()
            payload = serialize_withdrawal(request)

        logger.info(f"💵 WITHDRAWAL_PAID: Request {request_id} by admin {admin_id}")
        return payload

    # ===== listings =====

    def list_requests(
        self,
        doctor_id: Optional[int] = None,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        per_page = min(max(per_page, 1), 100)
        with atomic_transaction(session_factory=self.session_factory) as db:
            stmt = select(WithdrawalRequest)
            count_stmt = select(func.count(WithdrawalRequest.id))
            if doctor_id is not None:
                stmt = stmt.where(WithdrawalRequest.doctor_id == doctor_id)
                count_stmt = count_stmt.where(WithdrawalRequest.doctor_id == doctor_id)
            if status:
                try:
                    status = WithdrawalStatus(status).value
                except ValueError:
                    raise InvalidRequest(f"Unknown withdrawal status '{status}'")
                stmt = stmt.where(WithdrawalRequest.status == status)
                count_stmt = count_stmt.where(WithdrawalRequest.status == status)

            total = db.execute(count_stmt).scalar_one()
            rows = db.execute(
                stmt.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            ).scalars().all()
            return {
                "withdrawal_requests": [serialize_withdrawal(row) for row in rows],
                "pagination": {
                    "page": page,
                    "per_page": per_page,
                    "total": total,
                    "last_page": max((total + per_page - 1) // per_page, 1),
                },
            }

    def statistics(self) -> Dict[str, Any]:
        """Request counts and amount totals per status"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            rows = db.execute(
                select(
                    WithdrawalRequest.status,
                    func.count(WithdrawalRequest.id),
                    func.sum(WithdrawalRequest.amount),
                ).group_by(WithdrawalRequest.status)
            ).all()

        stats: Dict[str, Any] = {"total_requests": 0, "total_amount": Decimal("0.00")}
        for status in WithdrawalStatus:
            stats[f"{status.value}_requests"] = 0
            stats[f"{status.value}_amount"] = Decimal("0.00")
        for status, count, amount in rows:
            stats[f"{status}_requests"] = count
            stats[f"{status}_amount"] = to_money(amount or 0)
            stats["total_requests"] += count
            stats["total_amount"] += to_money(amount or 0)
        return {key: str(value) if isinstance(value, Decimal) else value for key, value in stats.items()}
