"""
Appointment Service

Calendar bookings with a doctor. When an appointment comes due the scheduler
opens a consultation session for it through SessionStateMachine, and keeps the
appointment's status in step with that session until it finishes.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import Appointment, AppointmentStatus, ConsultationSession, SessionStatus, User, UserType
from services.quota_ledger import QuotaLedger
from services.session_state_machine import SessionStateMachine, parse_media
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.clock import Clock, system_clock
from utils.datetime_helpers import ensure_naive_datetime, to_iso
from utils.exception_handler import (
    DoctorBusy, InvalidSchedule, InvalidTransition, NoActiveSubscription, NotFound, PatientBusy,
    PermissionDenied, QuotaExhausted,
)

logger = logging.getLogger(__name__)


def serialize_appointment(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "appointment_type": appointment.appointment_type,
        "scheduled_at": to_iso(appointment.scheduled_at),
        "status": appointment.status,
        "reason": appointment.reason,
        "session_id": appointment.session_id,
        "cancellation_reason": appointment.cancellation_reason,
        "completed_at": to_iso(appointment.completed_at),
    }


class AppointmentService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        state_machine: Optional[SessionStateMachine] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.state_machine = state_machine or SessionStateMachine(
            session_factory=self.session_factory, clock=self.clock
        )

    def book(
        self,
        patient_id: int,
        doctor_id: int,
        appointment_type: str,
        scheduled_at: datetime,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        media = parse_media(appointment_type)
        scheduled_at = ensure_naive_datetime(scheduled_at)
        with atomic_transaction(session_factory=self.session_factory) as db:
            now = self.clock.now()
            if scheduled_at is None or scheduled_at <= now:
                raise InvalidSchedule(scheduled_at=to_iso(scheduled_at))
            patient = db.get(User, patient_id)
            if patient is None or patient.user_type != UserType.PATIENT.value:
                raise PermissionDenied("Only patients can book appointments")
            doctor = db.get(User, doctor_id)
            if doctor is None or not doctor.is_doctor:
                raise NotFound("Doctor not found", doctor_id=doctor_id)
            try:
                QuotaLedger(db, clock=self.clock).require_usable(patient_id, media)
            except QuotaExhausted as e:
                raise NoActiveSubscription(f"No active subscription with remaining {media} sessions") from e

            appointment = Appointment(
                patient_id=patient_id,
                doctor_id=doctor_id,
                appointment_type=media,
                scheduled_at=scheduled_at,
                status=AppointmentStatus.CONFIRMED,
                reason=reason,
                created_at=now,
            )
            db.add(appointment)
            db.flush()
            payload = serialize_appointment(appointment)

        logger.info(f"📅 APPOINTMENT_BOOKED: {payload['id']} patient={patient_id} doctor={doctor_id} at {payload['scheduled_at']}")
        return payload

    def cancel(self, appointment_id: int, user_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            appointment = lock_row(db, Appointment, appointment_id)
            if appointment is None:
                raise NotFound(f"Appointment {appointment_id} not found")
            if user_id not in (appointment.patient_id, appointment.doctor_id):
                raise PermissionDenied("Not a participant of this appointment")
            if appointment.status != AppointmentStatus.CONFIRMED.value:
                raise InvalidTransition(
                    f"Appointment {appointment_id} is {appointment.status} and cannot be cancelled",
                    current_status=appointment.status,
                )
            appointment.status = AppointmentStatus.CANCELLED
            appointment.cancellation_reason = reason or "cancelled_by_user"
            db.flush()
            return serialize_appointment(appointment)

    # ===== scheduler side =====

    def due_appointment_ids(self, limit: int) -> List[int]:
        now = self.clock.now()
        with atomic_transaction(session_factory=self.session_factory) as db:
            return list(db.execute(
                select(Appointment.id)
                .where(
                    Appointment.status == AppointmentStatus.CONFIRMED.value,
                    Appointment.session_id.is_(None),
                    Appointment.scheduled_at <= now,
                )
                .order_by(Appointment.scheduled_at)
                .limit(limit)
            ).scalars())

    def in_progress_appointment_ids(self, limit: int) -> List[int]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            return list(db.execute(
                select(Appointment.id)
                .where(Appointment.status == AppointmentStatus.IN_PROGRESS.value)
                .order_by(Appointment.scheduled_at)
                .limit(limit)
            ).scalars())

    def activate_due(self, appointment_id: int) -> str:
        """
        Open the session for a due appointment.

        Returns what happened: "opened", "missed" (past the join grace period),
        "cancelled" (no usable quota), "deferred" (a participant is busy) or "skipped".
        A session already carrying this appointment's id is linked rather than
        opened again.
        """
        with atomic_transaction(session_factory=self.session_factory) as db:
            appointment = lock_row(db, Appointment, appointment_id)
            if appointment is None or appointment.status != AppointmentStatus.CONFIRMED.value or appointment.session_id:
                return "skipped"
            now = self.clock.now()
            if appointment.scheduled_at > now:
                return "skipped"
            existing = db.execute(
                select(ConsultationSession)
                .where(ConsultationSession.appointment_id == appointment_id)
                .order_by(ConsultationSession.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if existing is not None:
                self._link(appointment, existing)
                logger.warning(f"🔗 APPOINTMENT_RELINKED: {appointment_id} -> existing session {existing.id}")
                return "opened"
            if now > appointment.scheduled_at + timedelta(minutes=Config.APPOINTMENT_JOIN_GRACE_MINUTES):
                appointment.status = AppointmentStatus.MISSED
                appointment.cancellation_reason = "session_not_opened_within_grace_period"
                logger.info(f"⌛ APPOINTMENT_MISSED: {appointment_id} could not be opened within the grace period")
                return "missed"
            patient_id = appointment.patient_id
            doctor_id = appointment.doctor_id
            media = appointment.appointment_type
            reason = appointment.reason

        def link_in_creating_transaction(db, consultation):
            appointment = lock_row(db, Appointment, appointment_id)
            if appointment.status != AppointmentStatus.CONFIRMED.value or appointment.session_id:
                raise InvalidTransition(
                    f"Appointment {appointment_id} changed while its session was opening",
                    current_status=appointment.status,
                )
            self._link(appointment, consultation)

        try:
            self.state_machine.open_for_appointment(
                appointment_id, patient_id, doctor_id, media, reason,
                on_created=link_in_creating_transaction,
            )
        except (DoctorBusy, PatientBusy) as e:
            logger.info(f"⏸️ APPOINTMENT_DEFERRED: {appointment_id} ({e.reason})")
            return "deferred"
        except QuotaExhausted as e:
            with atomic_transaction(session_factory=self.session_factory) as db:
                appointment = lock_row(db, Appointment, appointment_id)
                appointment.status = AppointmentStatus.CANCELLED
                appointment.cancellation_reason = e.reason
            logger.warning(f"🚫 APPOINTMENT_CANCELLED: {appointment_id} patient quota unavailable ({e.reason})")
            return "cancelled"
        except InvalidTransition as e:
            logger.info(f"⏭️ APPOINTMENT_SKIPPED: {e}")
            return "skipped"
        return "opened"

    @staticmethod
    def _link(appointment: Appointment, consultation: ConsultationSession) -> None:
        appointment.session_id = consultation.id
        appointment.status = AppointmentStatus.IN_PROGRESS

    def sync_from_session(self, appointment_id: int) -> Optional[str]:
        """Copy a finished session's outcome onto its appointment; None while the session is still open"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            appointment = lock_row(db, Appointment, appointment_id)
            if appointment is None or appointment.status != AppointmentStatus.IN_PROGRESS.value:
                return None
            consultation = db.get(ConsultationSession, appointment.session_id) if appointment.session_id else None
            if consultation is None or not consultation.is_terminal:
                return None

            if consultation.status == SessionStatus.CANCELLED.value:
                appointment.status = AppointmentStatus.CANCELLED
                appointment.cancellation_reason = consultation.end_reason
            elif consultation.activated_at is None:
                appointment.status = AppointmentStatus.MISSED
                appointment.cancellation_reason = consultation.end_reason
            else:
                appointment.status = AppointmentStatus.COMPLETED
                appointment.completed_at = consultation.ended_at
            logger.info(f"🔄 APPOINTMENT_SYNCED: {appointment_id} -> {appointment.status} (session {consultation.id})")
            return appointment.status
