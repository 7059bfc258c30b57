"""
Session Payment Service

Runs on every session termination and on every auto-deduction tick:
BillingCalculator decides what the session costs, QuotaLedger takes the
units from the patient's subscription and WalletLedger pays the doctor.

Termination is one database transaction per session. Patient billing and
doctor payment each run in their own savepoint, so a patient-side failure
(no subscription, subscription inactive) is recorded in the result while the
doctor still gets paid. Storage errors roll back the whole transaction and
leave the session non-terminal for the scheduler to retry.
"""

import logging
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError

from database import SessionLocal
from models import ConsultationSession, SessionStatus, User
from services.billing_calculator import BillingCalculator, SessionSnapshot
from services.quota_ledger import QuotaLedger
from services.wallet_ledger import WalletLedger, LedgerInvariantError
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.clock import Clock, system_clock
from utils.exception_handler import NoActiveSubscription, NotFound
from utils.state_transition_validator import transition_session

logger = logging.getLogger(__name__)

PATIENT_DEDUCTION_FAILED = "Failed to deduct from patient subscription"
DOCTOR_PAYMENT_FAILED = "Failed to process doctor payment"


@dataclass
class SessionEndResult:
    session_id: int
    status: str
    already_processed: bool = False
    billable: bool = False
    doctor_payment_success: bool = False
    patient_deduction_success: bool = False
    doctor_payment_amount: Decimal = Decimal("0.00")
    currency: Optional[str] = None
    elapsed_minutes: int = 0
    auto_units: int = 0
    manual_unit: int = 0
    total_units: int = 0
    units_deducted: int = 0
    sessions_used: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["doctor_payment_amount"] = str(self.doctor_payment_amount)
        return data


@dataclass
class AutoDeductionResult:
    session_id: int
    units_deducted: int = 0
    auto_deductions_processed: int = 0
    should_auto_end: bool = False
    subscription_usable: bool = True
    skipped: bool = False


class _DeductionConflict(Exception):
    """auto_deductions_processed moved under us; roll back this tick"""
    pass


class PaymentService:
    """Orchestrates billing against the quota and wallet ledgers"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        calculator: Optional[BillingCalculator] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.calculator = calculator or BillingCalculator()

    def process_session_end(
        self,
        session_id: int,
        is_manual_end: bool,
        terminal_status: SessionStatus = SessionStatus.ENDED,
        end_reason: Optional[str] = None,
    ) -> SessionEndResult:
        """
        Terminate a session and settle it.

        Re-invoking on a session that is already terminal changes nothing and
        returns a result with already_processed=True.
        """
        with atomic_transaction(session_factory=self.session_factory) as db:
            consultation = lock_row(db, ConsultationSession, session_id)
            if consultation is None:
                raise NotFound(f"Session {session_id} not found", session_id=session_id)
            return self.settle_locked(db, consultation, is_manual_end, terminal_status, end_reason)

    def settle_locked(
        self,
        db: Session,
        consultation: ConsultationSession,
        is_manual_end: bool,
        terminal_status: SessionStatus,
        end_reason: Optional[str],
    ) -> SessionEndResult:
        """
        Terminate and bill a session whose row the caller already holds locked.

        Runs in the caller's transaction and does not commit.
        """
        session_id = consultation.id
        if consultation.is_terminal:
            logger.info(f"🔁 SESSION_END_NOOP: Session {session_id} already {consultation.status}")
            return SessionEndResult(session_id=session_id, status=consultation.status, already_processed=True,
                                    sessions_used=consultation.sessions_used)

        now = self.clock.now()
        if not transition_session(db, consultation, terminal_status, ended_at=now, end_reason=end_reason):
            db.refresh(consultation)
            return SessionEndResult(session_id=session_id, status=consultation.status, already_processed=True,
                                    sessions_used=consultation.sessions_used)

        result = SessionEndResult(session_id=session_id, status=consultation.status,
                                  sessions_used=consultation.sessions_used)

        # Never accepted by a doctor: no elapsed time, no charge, no fee
        if consultation.activated_at is None:
            logger.info(f"🚫 SESSION_CLOSED_UNBILLED: Session {session_id} -> {consultation.status} ({end_reason})")
            return result

        doctor = db.get(User, consultation.doctor_id) if consultation.doctor_id else None
        patient = db.get(User, consultation.patient_id)
        currency = WalletLedger.currency_for_doctor(doctor)
        quote = self.calculator.quote(SessionSnapshot.from_model(consultation), now, is_manual_end, currency)

        result.billable = True
        result.currency = quote.currency
        result.elapsed_minutes = quote.elapsed_minutes
        result.auto_units = quote.auto_units
        result.manual_unit = quote.manual_unit
        result.total_units = quote.units_to_deduct

        quota = QuotaLedger(db, clock=self.clock)
        subscription = quota.subscription_for(consultation.patient_id)
        self._deduct_patient(db, quota, consultation, subscription, quote.units_outstanding, result)

        consultation.sessions_used = max(
            consultation.sessions_used,
            consultation.auto_deductions_processed + result.units_deducted,
        )
        result.sessions_used = consultation.sessions_used

        self._pay_doctor(db, consultation, doctor, patient, subscription, quote, result)
        db.flush()

        logger.info(
            f"✅ SESSION_END: Session {session_id} -> {consultation.status} elapsed={quote.elapsed_minutes}m "
            f"units={quote.units_to_deduct} (outstanding {quote.units_outstanding}) "
            f"fee={result.doctor_payment_amount} {quote.currency}"
        )
        if result.errors:
            logger.warning(
                f"⚠️ SESSION_END_PARTIAL_FAILURE: session_id={session_id} "
                f"doctor_paid={result.doctor_payment_success} patient_billed={result.patient_deduction_success} "
                f"units={result.total_units} errors={result.errors}"
            )
        return result

    def _deduct_patient(self, db, quota, consultation, subscription, units, result: SessionEndResult) -> None:
        if subscription is None:
            result.errors.append(f"{PATIENT_DEDUCTION_FAILED}: no active subscription")
            return
        try:
            with db.begin_nested():
                quota.debit(subscription.id, consultation.media, units)
            result.patient_deduction_success = True
            result.units_deducted = units
        except NoActiveSubscription as e:
            result.errors.append(f"{PATIENT_DEDUCTION_FAILED}: {e.message}")

    def _pay_doctor(self, db, consultation, doctor, patient, subscription, quote, result: SessionEndResult) -> None:
        if doctor is None:
            result.errors.append(f"{DOCTOR_PAYMENT_FAILED}: session has no doctor")
            return
        metadata = {
            "patient_name": patient.full_name if patient else None,
            "session_duration": quote.elapsed_minutes,
            "sessions_used": quote.units_to_deduct,
            "payment_transaction_id": subscription.payment_transaction_id if subscription else None,
            "payment_gateway": subscription.payment_gateway if subscription else None,
            "currency": quote.currency,
        }
        try:
            with db.begin_nested():
                WalletLedger(db, clock=self.clock).credit_session_fee(
                    doctor_id=doctor.id,
                    amount=quote.doctor_fee,
                    currency=quote.currency,
                    description=f"Payment for {consultation.media} session #{consultation.id}",
                    session_type=consultation.media,
                    session_id=consultation.id,
                    session_table=consultation.session_table,
                    payment_transaction_id=metadata["payment_transaction_id"],
                    metadata=metadata,
                )
            result.doctor_payment_success = True
            result.doctor_payment_amount = quote.doctor_fee
        except IntegrityError:
            result.errors.append(f"{DOCTOR_PAYMENT_FAILED}: session fee already recorded")
        except (ValueError, LedgerInvariantError) as e:
            result.errors.append(f"{DOCTOR_PAYMENT_FAILED}: {e}")

    def apply_auto_deduction(self, session_id: int) -> AutoDeductionResult:
        """
        Charge an active session for the units it has accrued since the last tick.

        Only the delta auto_units - auto_deductions_processed is debited, and the
        counter is advanced with a compare-and-swap in the same transaction, so
        running this twice without new elapsed time charges nothing.
        """
        try:
            with atomic_transaction(session_factory=self.session_factory) as db:
                return self._auto_deduct(db, session_id)
        except _DeductionConflict:
            logger.info(f"🔁 AUTO_DEDUCTION_CONFLICT: Session {session_id} changed concurrently, retrying next tick")
            return AutoDeductionResult(session_id=session_id, skipped=True)

    def _auto_deduct(self, db: Session, session_id: int) -> AutoDeductionResult:
        consultation = lock_row(db, ConsultationSession, session_id)
        if consultation is None or consultation.status != SessionStatus.ACTIVE.value:
            return AutoDeductionResult(session_id=session_id, skipped=True)

        now = self.clock.now()
        snapshot = SessionSnapshot.from_model(consultation)
        quote = self.calculator.quote(snapshot, now, is_manual_end=False)
        result = AutoDeductionResult(
            session_id=session_id,
            auto_deductions_processed=consultation.auto_deductions_processed,
            should_auto_end=quote.should_auto_end,
        )

        quota = QuotaLedger(db, clock=self.clock)
        subscription = quota.subscription_for(consultation.patient_id)
        if not quota.is_usable(subscription, now):
            result.subscription_usable = False
            return result

        delta = quote.auto_units - consultation.auto_deductions_processed
        if delta <= 0:
            return result

        quota.debit(subscription.id, consultation.media, delta)
        previous = consultation.auto_deductions_processed
        updated = db.execute(
            update(ConsultationSession)
            .where(
                ConsultationSession.id == session_id,
                ConsultationSession.status == SessionStatus.ACTIVE.value,
                ConsultationSession.auto_deductions_processed == previous,
            )
            .values(
                auto_deductions_processed=previous + delta,
                sessions_used=ConsultationSession.sessions_used + delta,
            )
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            raise _DeductionConflict(session_id)

        db.refresh(consultation)
        result.units_deducted = delta
        result.auto_deductions_processed = consultation.auto_deductions_processed
        logger.info(
            f"⏱️ AUTO_DEDUCTION: Session {session_id} charged {delta} unit(s) "
            f"(elapsed {quote.elapsed_minutes}m, total auto {consultation.auto_deductions_processed})"
        )
        return result
