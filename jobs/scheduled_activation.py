"""
Scheduled Session Activation Job
Moves scheduled sessions whose time has come into waiting_for_doctor
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import ConsultationSession, SessionStatus
from services.session_state_machine import SessionStateMachine
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class ScheduledActivationJob:
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

    def run(self) -> Dict[str, Any]:
        results = {"activated": 0, "deferred": 0, "errors": 0}
        now = self.clock.now()
        with atomic_transaction(session_factory=self.session_factory) as db:
            due = list(db.execute(
                select(ConsultationSession.id)
                .where(
                    ConsultationSession.status == SessionStatus.SCHEDULED.value,
                    ConsultationSession.scheduled_at <= now,
                )
                .order_by(ConsultationSession.scheduled_at)
                .limit(self.batch_size)
            ).scalars())

        for session_id in due:
            try:
                if self.state_machine.activate_due_scheduled(session_id):
                    results["activated"] += 1
                else:
                    results["deferred"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ SCHEDULED_ACTIVATION: Session {session_id} failed: {e}")

        if due:
            logger.info(
                f"📅 SCHEDULED_ACTIVATION: {results['activated']} activated, "
                f"{results['deferred']} deferred, {results['errors']} errors"
            )
        return results


def run_scheduled_activation() -> Dict[str, Any]:
    return ScheduledActivationJob().run()
