"""
Session State Machine

Lifecycle of instant, scheduled and appointment-backed consultations:

    scheduled -> waiting_for_doctor -> active -> ended
                         |               \\-> expired (inactivity)
                         |-> expired (doctor never answered)
    scheduled | waiting_for_doctor -> cancelled (patient)

Creation holds in-process locks on both participants and checks the
one-live-session rule inside the creating transaction; the partial unique
indexes on consultation_sessions turn a cross-process race into DoctorBusy or
PatientBusy. Termination is delegated to PaymentService.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError

from config import Config
from database import SessionLocal
from models import (
    ConsultationSession, SessionMedia, SessionStatus, User, UserType,
    LIVE_SESSION_STATUSES, coerce_enum_value, session_class_for_media,
)
from services.billing_calculator import BillingCalculator, SessionSnapshot, should_auto_end
from services.payment_service import PaymentService, SessionEndResult
from services.quota_ledger import QuotaLedger
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.clock import Clock, system_clock
from utils.datetime_helpers import ensure_naive_datetime, to_iso
from utils.exception_handler import (
    ConsultationError, DoctorBusy, DoctorUnavailable, InvalidRequest, InvalidSchedule, InvalidTransition,
    NoActiveSubscription, NotFound, PatientBusy, PermissionDenied, QuotaExhausted,
    ResponseWindowClosed,
)
from utils.keyed_locks import KeyedLockRegistry, participant_keys, participant_locks
from utils.state_transition_validator import transition_session

logger = logging.getLogger(__name__)


def parse_media(session_type: str) -> str:
    try:
        return coerce_enum_value(SessionMedia, session_type, "session_type")
    except ValueError as e:
        raise InvalidRequest(str(e))


def serialize_session(consultation: ConsultationSession) -> Dict[str, Any]:
    return {
        "id": consultation.id,
        "kind": consultation.kind,
        "session_type": consultation.media,
        "status": consultation.status,
        "patient_id": consultation.patient_id,
        "doctor_id": consultation.doctor_id,
        "appointment_id": consultation.appointment_id,
        "reason": consultation.reason,
        "started_at": to_iso(consultation.started_at),
        "activated_at": to_iso(consultation.activated_at),
        "ended_at": to_iso(consultation.ended_at),
        "last_activity_at": to_iso(consultation.last_activity_at),
        "scheduled_at": to_iso(consultation.scheduled_at),
        "doctor_response_deadline": to_iso(consultation.doctor_response_deadline),
        "sessions_remaining_before_start": consultation.sessions_remaining_before_start,
        "sessions_used": consultation.sessions_used,
        "auto_deductions_processed": consultation.auto_deductions_processed,
        "text_enabled": consultation.text_enabled,
        "call_enabled": consultation.call_enabled,
        "end_reason": consultation.end_reason,
    }


class SessionStateMachine:
    """Session lifecycle operations for request handlers and scheduler jobs"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        payment_service: Optional[PaymentService] = None,
        calculator: Optional[BillingCalculator] = None,
        locks: Optional[KeyedLockRegistry] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.calculator = calculator or BillingCalculator()
        self.payment_service = payment_service or PaymentService(
            session_factory=self.session_factory, clock=self.clock, calculator=self.calculator
        )
        self.locks = locks or participant_locks

    # ===== helpers =====

    @staticmethod
    def _live_session_exists(db: Session, doctor_id: Optional[int] = None, patient_id: Optional[int] = None) -> bool:
        stmt = select(func.count(ConsultationSession.id)).where(
            ConsultationSession.status.in_(LIVE_SESSION_STATUSES)
        )
        if doctor_id is not None:
            stmt = stmt.where(ConsultationSession.doctor_id == doctor_id)
        if patient_id is not None:
            stmt = stmt.where(ConsultationSession.patient_id == patient_id)
        return db.execute(stmt).scalar_one() > 0

    @staticmethod
    def _busy_error_from(exc: IntegrityError) -> ConsultationError:
        """Map a partial unique index violation back onto the participant it protects"""
        message = str(getattr(exc, "orig", exc)).lower()
        if "doctor" in message:
            return DoctorBusy()
        return PatientBusy()

    @staticmethod
    def _load_patient(db: Session, patient_id: int) -> User:
        patient = db.get(User, patient_id)
        if patient is None:
            raise NotFound("Patient not found", patient_id=patient_id)
        if patient.user_type != UserType.PATIENT.value:
            raise PermissionDenied("Only patients can book consultations")
        return patient

    @staticmethod
    def _load_doctor(db: Session, doctor_id: int) -> User:
        doctor = db.get(User, doctor_id)
        if doctor is None or not doctor.is_doctor:
            raise NotFound("Doctor not found", doctor_id=doctor_id)
        return doctor

    @staticmethod
    def _doctor_payload(doctor: User) -> Dict[str, Any]:
        return {
            "id": doctor.id,
            "name": doctor.full_name,
            "specialization": doctor.specialization,
            "is_online": doctor.is_online,
        }

    def _load_session(self, db: Session, session_id: int, for_update: bool = False) -> ConsultationSession:
        if for_update:
            consultation = lock_row(db, ConsultationSession, session_id)
        else:
            consultation = db.get(ConsultationSession, session_id)
        if consultation is None:
            raise NotFound(f"Session {session_id} not found", session_id=session_id)
        return consultation

    def _create_session(
        self,
        db: Session,
        patient_id: int,
        doctor: User,
        media: str,
        status: SessionStatus,
        now: datetime,
        reason: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        response_window: Optional[timedelta] = None,
        appointment_id: Optional[int] = None,
        quota_error=QuotaExhausted,
    ) -> ConsultationSession:
        quota = QuotaLedger(db, clock=self.clock)
        try:
            subscription = quota.require_usable(patient_id, media)
        except QuotaExhausted as e:
            if quota_error is QuotaExhausted:
                raise
            raise quota_error(f"No active subscription with remaining {media} sessions", media=media) from e

        if Config.BLOCK_START_ON_OVERAGE_DEBT and quota.has_overage_debt(subscription):
            raise QuotaExhausted("Outstanding overage must be settled before starting a new session")

        remaining = quota.remaining(subscription, media)
        is_live = status == SessionStatus.WAITING_FOR_DOCTOR
        session_cls = session_class_for_media(media)
        consultation = session_cls(
            media=media,
            status=status,
            patient_id=patient_id,
            doctor_id=doctor.id,
            appointment_id=appointment_id,
            reason=reason,
            created_at=now,
            started_at=now if is_live else None,
            last_activity_at=now if is_live else None,
            scheduled_at=scheduled_at,
            doctor_response_deadline=(now + response_window) if is_live and response_window else None,
            sessions_remaining_before_start=remaining,
            sessions_used=0,
            auto_deductions_processed=0,
            text_enabled=media == SessionMedia.TEXT.value,
            call_enabled=media in (SessionMedia.VOICE.value, SessionMedia.VIDEO.value),
        )
        db.add(consultation)
        db.flush()
        return consultation

    # ===== creation =====

    def start(self, patient_id: int, doctor_id: int, session_type: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Start an instant session with an online doctor.

        Checks run in order: DoctorUnavailable, DoctorBusy, PatientBusy,
        QuotaExhausted (NoActiveSubscription when there is no usable subscription).
        """
        media = parse_media(session_type)
        with self.locks.hold(participant_keys(patient_id, doctor_id)):
            try:
                with atomic_transaction(session_factory=self.session_factory) as db:
                    now = self.clock.now()
                    self._load_patient(db, patient_id)
                    doctor = self._load_doctor(db, doctor_id)
                    if not doctor.is_available_doctor:
                        raise DoctorUnavailable(doctor_id=doctor_id)
                    if self._live_session_exists(db, doctor_id=doctor_id):
                        raise DoctorBusy(doctor_id=doctor_id)
                    if self._live_session_exists(db, patient_id=patient_id):
                        raise PatientBusy(patient_id=patient_id)

                    consultation = self._create_session(
                        db, patient_id, doctor, media, SessionStatus.WAITING_FOR_DOCTOR, now,
                        reason=reason,
                        response_window=timedelta(seconds=Config.DOCTOR_RESPONSE_WINDOW_SECONDS),
                    )
                    payload = {
                        "session_id": consultation.id,
                        "doctor": self._doctor_payload(doctor),
                        "session_info": {
                            "started_at": to_iso(consultation.started_at),
                            "total_duration_minutes": consultation.sessions_remaining_before_start * self.calculator.unit_minutes,
                            "sessions_used": consultation.sessions_used,
                            "sessions_remaining": consultation.sessions_remaining_before_start,
                            "session_type": media,
                            "doctor_response_deadline": to_iso(consultation.doctor_response_deadline),
                        },
                    }
            except IntegrityError as e:
                raise self._busy_error_from(e) from e

        logger.info(
            f"🩺 SESSION_STARTED: Session {payload['session_id']} ({media}) patient={patient_id} doctor={doctor_id}"
        )
        return payload

    def schedule(
        self,
        patient_id: int,
        doctor_id: int,
        scheduled_at: datetime,
        session_type: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Book a session that the scheduler will open at scheduled_at"""
        media = parse_media(session_type)
        scheduled_at = ensure_naive_datetime(scheduled_at)
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            if scheduled_at is None or scheduled_at <= now:
                raise InvalidSchedule(scheduled_at=to_iso(scheduled_at))
            self._load_patient(db, patient_id)
            doctor = self._load_doctor(db, doctor_id)
            consultation = self._create_session(
                db, patient_id, doctor, media, SessionStatus.SCHEDULED, now,
                reason=reason, scheduled_at=scheduled_at, quota_error=NoActiveSubscription,
            )
            payload = serialize_session(consultation)

        logger.info(
            f"📅 SESSION_SCHEDULED: Session {payload['id']} ({media}) patient={patient_id} "
            f"doctor={doctor_id} at {payload['scheduled_at']}"
        )
        return payload

    def open_for_appointment(
        self,
        appointment_id: int,
        patient_id: int,
        doctor_id: int,
        session_type: str,
        reason: Optional[str] = None,
        on_created: Optional[Callable[[Session, ConsultationSession], None]] = None,
    ) -> int:
        """
        Open a waiting session for a booked appointment that has come due.

        A booked appointment implies the doctor committed to the slot, so the
        online flag is not checked. Busy and quota errors propagate to the caller.
        on_created runs inside the creating transaction; if it raises, the
        session is not created.
        """
        media = parse_media(session_type)
        with self.locks.hold(participant_keys(patient_id, doctor_id)):
            try:
                with atomic_transaction(session_factory=self.session_factory) as db:
                    now = self.clock.now()
                    doctor = self._load_doctor(db, doctor_id)
                    if self._live_session_exists(db, doctor_id=doctor_id):
                        raise DoctorBusy(doctor_id=doctor_id)
                    if self._live_session_exists(db, patient_id=patient_id):
                        raise PatientBusy(patient_id=patient_id)
                    consultation = self._create_session(
                        db, patient_id, doctor, media, SessionStatus.WAITING_FOR_DOCTOR, now,
                        reason=reason,
                        response_window=timedelta(minutes=Config.APPOINTMENT_RESPONSE_WINDOW_MINUTES),
                        appointment_id=appointment_id,
                    )
                    if on_created is not None:
                        on_created(db, consultation)
                    session_id = consultation.id
            except IntegrityError as e:
                raise self._busy_error_from(e) from e

        logger.info(f"📅 APPOINTMENT_SESSION_OPENED: Appointment {appointment_id} -> session {session_id}")
        return session_id

    # ===== transitions =====

    def accept(self, session_id: int, doctor_id: int) -> Dict[str, Any]:
        """
        Doctor accepts a waiting session.

        After the response deadline the session is expired (no charge) and
        ResponseWindowClosed is raised.
        """
        window_closed = False
        try:
            with atomic_transaction(session_factory=self.session_factory) as db:
                now = self.clock.now()
                consultation = self._load_session(db, session_id, for_update=True)
                if consultation.doctor_id is not None and consultation.doctor_id != doctor_id:
                    raise PermissionDenied("This session is assigned to another doctor")
                if consultation.status != SessionStatus.WAITING_FOR_DOCTOR.value:
                    raise InvalidTransition(
                        f"Session {session_id} is {consultation.status} and cannot be accepted",
                        current_status=consultation.status,
                    )

                if consultation.doctor_response_deadline is not None and now > consultation.doctor_response_deadline:
                    transition_session(
                        db, consultation, SessionStatus.EXPIRED,
                        ended_at=now, end_reason="doctor_response_timeout",
                    )
                    window_closed = True
                else:
                    if consultation.doctor_id is None:
                        self._load_doctor(db, doctor_id)
                        if self._live_session_exists(db, doctor_id=doctor_id):
                            raise DoctorBusy(doctor_id=doctor_id)
                    moved = transition_session(
                        db, consultation, SessionStatus.ACTIVE,
                        doctor_id=doctor_id, activated_at=now, last_activity_at=now,
                    )
                    if not moved:
                        raise InvalidTransition(f"Session {session_id} changed before it could be accepted")
                    payload = serialize_session(consultation)
        except IntegrityError as e:
            raise DoctorBusy(doctor_id=doctor_id) from e

        if window_closed:
            logger.info(f"⌛ ACCEPT_TOO_LATE: Doctor {doctor_id} missed the response window for session {session_id}")
            raise ResponseWindowClosed(session_id=session_id)

        logger.info(f"✅ SESSION_ACCEPTED: Session {session_id} by doctor {doctor_id}")
        return payload

    def record_activity(self, session_id: int, user_id: int) -> Dict[str, Any]:
        """Stamp last_activity_at; keeps an active session from expiring for inactivity"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            consultation = self._load_session(db, session_id)
            if not consultation.is_participant(user_id):
                raise PermissionDenied("Not a participant of this session")
            result = db.execute(
                update(ConsultationSession)
                .where(
                    ConsultationSession.id == session_id,
                    ConsultationSession.status.in_(LIVE_SESSION_STATUSES),
                )
                .values(last_activity_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransition(
                    f"Session {session_id} is {consultation.status}; activity is not recorded",
                    current_status=consultation.status,
                )
        return {"session_id": session_id, "last_activity_at": to_iso(now)}

    def cancel(self, session_id: int, patient_id: int) -> Dict[str, Any]:
        """Patient withdraws a session before the doctor accepts; nothing is billed"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            consultation = self._load_session(db, session_id, for_update=True)
            if consultation.patient_id != patient_id:
                raise PermissionDenied("Only the patient can cancel this session")
            if consultation.status == SessionStatus.CANCELLED.value:
                return serialize_session(consultation)
            if consultation.status not in (SessionStatus.SCHEDULED.value, SessionStatus.WAITING_FOR_DOCTOR.value):
                raise InvalidTransition(
                    f"Session {session_id} is {consultation.status} and can no longer be cancelled",
                    current_status=consultation.status,
                )
            if not transition_session(
                db, consultation, SessionStatus.CANCELLED, ended_at=now, end_reason="cancelled_by_patient"
            ):
                raise InvalidTransition(f"Session {session_id} changed before it could be cancelled")
            payload = serialize_session(consultation)

        logger.info(f"🚫 SESSION_CANCELLED: Session {session_id} by patient {patient_id}")
        return payload

    def end(self, session_id: int, user_id: int) -> SessionEndResult:
        """Manual end by either participant; charges one extra unit for the manual end"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            consultation = self._load_session(db, session_id)
            if not consultation.is_participant(user_id):
                raise PermissionDenied("Not a participant of this session")
            status = consultation.status
            ended_by = "patient" if user_id == consultation.patient_id else "doctor"

        if status in (SessionStatus.SCHEDULED.value, SessionStatus.WAITING_FOR_DOCTOR.value):
            raise InvalidTransition(
                f"Session {session_id} has not started; cancel it instead",
                current_status=status,
            )
        return self.payment_service.process_session_end(
            session_id, is_manual_end=True, terminal_status=SessionStatus.ENDED,
            end_reason=f"manual_end_by_{ended_by}",
        )

    def get_status(self, session_id: int, user_id: int) -> Dict[str, Any]:
        """Session state plus live billing figures for clients"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            consultation = self._load_session(db, session_id)
            if not consultation.is_participant(user_id):
                raise PermissionDenied("Not a participant of this session")
            now = self.clock.now()
            snapshot = SessionSnapshot.from_model(consultation)
            payload = serialize_session(consultation)

        elapsed = self.calculator.elapsed_minutes(snapshot, now)
        payload["billing"] = {
            "elapsed_minutes": elapsed,
            "total_allowed_minutes": snapshot.sessions_remaining_before_start * self.calculator.unit_minutes,
            "remaining_minutes": self.calculator.remaining_minutes(snapshot, now),
            "remaining_sessions": self.calculator.remaining_units(snapshot, now),
            "next_deduction_at": to_iso(self.calculator.next_deduction_at(snapshot, now)),
            "minutes_until_next_deduction": self.calculator.minutes_until_next_deduction(snapshot, now),
            "should_auto_end": snapshot.activated_at is not None and should_auto_end(
                elapsed, snapshot.sessions_remaining_before_start, self.calculator.unit_minutes
            ),
        }
        return payload

    # ===== scheduler-driven transitions =====

    def activate_due_scheduled(self, session_id: int) -> bool:
        """
        scheduled -> waiting_for_doctor once scheduled_at has passed.

        Returns False (retry next tick) when the session is not due or either
        participant is still busy with another session.
        """
        with atomic_transaction(session_factory=self.session_factory) as db:
            consultation = self._load_session(db, session_id)
            keys = participant_keys(consultation.patient_id, consultation.doctor_id)

        with self.locks.hold(keys):
            try:
                with atomic_transaction(session_factory=self.session_factory) as db:
                    now = self.clock.now()
                    consultation = self._load_session(db, session_id, for_update=True)
                    if consultation.status != SessionStatus.SCHEDULED.value:
                        return False
                    if consultation.scheduled_at is not None and consultation.scheduled_at > now:
                        return False
                    if consultation.doctor_id is not None and self._live_session_exists(db, doctor_id=consultation.doctor_id):
                        logger.info(f"⏸️ SCHEDULED_ACTIVATION_DEFERRED: Session {session_id} doctor busy")
                        return False
                    if self._live_session_exists(db, patient_id=consultation.patient_id):
                        logger.info(f"⏸️ SCHEDULED_ACTIVATION_DEFERRED: Session {session_id} patient busy")
                        return False
                    return transition_session(
                        db, consultation, SessionStatus.WAITING_FOR_DOCTOR,
                        started_at=now, last_activity_at=now,
                        doctor_response_deadline=now + timedelta(seconds=Config.DOCTOR_RESPONSE_WINDOW_SECONDS),
                    )
            except IntegrityError:
                logger.info(f"⏸️ SCHEDULED_ACTIVATION_DEFERRED: Session {session_id} lost a participant race")
                return False

    def expire_if_unanswered(self, session_id: int) -> Optional[SessionEndResult]:
        """Expire a waiting session whose response deadline has passed; None when it no longer qualifies"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            consultation = self._load_session(db, session_id, for_update=True)
            if consultation.status != SessionStatus.WAITING_FOR_DOCTOR.value:
                return None
            if consultation.doctor_response_deadline is None or consultation.doctor_response_deadline >= now:
                return None
            return self.payment_service.settle_locked(
                db, consultation, is_manual_end=False,
                terminal_status=SessionStatus.EXPIRED, end_reason="doctor_response_timeout",
            )

    def expire_if_idle(self, session_id: int) -> Optional[SessionEndResult]:
        """Expire an active session with no activity inside the inactivity window, billing elapsed time"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            consultation = self._load_session(db, session_id, for_update=True)
            if consultation.status != SessionStatus.ACTIVE.value:
                return None
            last_seen = consultation.last_activity_at or consultation.activated_at
            if last_seen is None or now - last_seen < timedelta(minutes=Config.SESSION_INACTIVITY_MINUTES):
                return None
            return self.payment_service.settle_locked(
                db, consultation, is_manual_end=False,
                terminal_status=SessionStatus.EXPIRED, end_reason="inactivity_timeout",
            )
