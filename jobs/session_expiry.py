"""
Session Expiry Job

Runs every minute:
- waiting_for_doctor sessions past their response deadline expire unbilled
- active sessions with no activity inside the inactivity window expire and are
  billed for the time they ran
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import ConsultationSession, SessionStatus
from services.session_state_machine import SessionStateMachine
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class SessionExpiryJob:
    """Expire unanswered and idle sessions"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        state_machine: Optional[SessionStateMachine] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.state_machine = state_machine or SessionStateMachine(
            session_factory=self.session_factory, clock=self.clock
        )
        self.batch_size = batch_size or Config.SCHEDULER_BATCH_SIZE

    def _candidates(self):
        now = self.clock.now()
        idle_cutoff = now - timedelta(minutes=Config.SESSION_INACTIVITY_MINUTES)
        with atomic_transaction(session_factory=self.session_factory) as db:
            unanswered = list(db.execute(
                select(ConsultationSession.id)
                .where(
                    ConsultationSession.status == SessionStatus.WAITING_FOR_DOCTOR.value,
                    ConsultationSession.doctor_response_deadline < now,
                )
                .order_by(ConsultationSession.doctor_response_deadline)
                .limit(self.batch_size)
            ).scalars())
            idle = list(db.execute(
                select(ConsultationSession.id)
                .where(
                    ConsultationSession.status == SessionStatus.ACTIVE.value,
                    or_(
                        ConsultationSession.last_activity_at <= idle_cutoff,
                        ConsultationSession.last_activity_at.is_(None),
                    ),
                )
                .order_by(ConsultationSession.id)
                .limit(self.batch_size)
            ).scalars())
        return unanswered, idle

    def run(self) -> Dict[str, Any]:
        results = {"unanswered_expired": 0, "idle_expired": 0, "errors": 0}
        unanswered, idle = self._candidates()

        for session_id in unanswered:
            try:
                outcome = self.state_machine.expire_if_unanswered(session_id)
                if outcome is not None and not outcome.already_processed:
                    results["unanswered_expired"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ SESSION_EXPIRY: Failed to expire unanswered session {session_id}: {e}")

        for session_id in idle:
            try:
                outcome = self.state_machine.expire_if_idle(session_id)
                if outcome is not None and not outcome.already_processed:
                    results["idle_expired"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ SESSION_EXPIRY: Failed to expire idle session {session_id}: {e}")

        if results["unanswered_expired"] or results["idle_expired"] or results["errors"]:
            logger.info(
                f"⌛ SESSION_EXPIRY: {results['unanswered_expired']} unanswered, "
                f"{results['idle_expired']} idle, {results['errors']} errors"
            )
        return results


def run_session_expiry() -> Dict[str, Any]:
    """Scheduler entry point"""
    return SessionExpiryJob().run()
