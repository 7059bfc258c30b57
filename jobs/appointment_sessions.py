"""
Appointment Session Processing
Opens sessions for appointments that have come due and syncs in-progress
appointments with the outcome of their session
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from services.appointment_service import AppointmentService
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class AppointmentSessionJob:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        appointment_service: Optional[AppointmentService] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.appointments = appointment_service or AppointmentService(
            session_factory=self.session_factory, clock=self.clock
        )
        self.batch_size = batch_size or Config.SCHEDULER_BATCH_SIZE

    def run(self) -> Dict[str, Any]:
        results = {
            "opened": 0, "missed": 0, "cancelled": 0, "deferred": 0,
            "completed": 0, "synced": 0, "errors": 0,
        }

        for appointment_id in self.appointments.due_appointment_ids(self.batch_size):
            try:
                outcome = self.appointments.activate_due(appointment_id)
                if outcome in results:
                    results[outcome] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ APPOINTMENT_PROCESSING: Appointment {appointment_id} failed to open: {e}")

        for appointment_id in self.appointments.in_progress_appointment_ids(self.batch_size):
            try:
                status = self.appointments.sync_from_session(appointment_id)
                if status is not None:
                    results["synced"] += 1
                    if status == "completed":
                        results["completed"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ APPOINTMENT_PROCESSING: Appointment {appointment_id} failed to sync: {e}")

        logger.debug(f"APPOINTMENT_PROCESSING: {results}")
        return results


def run_appointment_sessions() -> Dict[str, Any]:
    return AppointmentSessionJob().run()
