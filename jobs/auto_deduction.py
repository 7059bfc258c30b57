"""
Auto-Deduction Sweep

Every 10 minutes each active session is charged for the whole billing units it
has accrued since the previous sweep. Sessions that have run past the minutes
their quota covered, or whose subscription is no longer usable, are ended and
settled through PaymentService.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import ConsultationSession, SessionStatus
from services.payment_service import PaymentService
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

QUOTA_EXHAUSTED_REASON = "auto_end_quota_exhausted"
SUBSCRIPTION_INACTIVE_REASON = "auto_end_subscription_inactive"


class AutoDeductionJob:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        payment_service: Optional[PaymentService] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.payment_service = payment_service or PaymentService(
            session_factory=self.session_factory, clock=self.clock
        )
        self.batch_size = batch_size or Config.SCHEDULER_BATCH_SIZE

    def _active_session_ids(self):
        with atomic_transaction(session_factory=self.session_factory) as db:
            return list(db.execute(
                select(ConsultationSession.id)
                .where(
                    ConsultationSession.status == SessionStatus.ACTIVE.value,
                    ConsultationSession.activated_at.is_not(None),
                )
                .order_by(ConsultationSession.activated_at)
                .limit(self.batch_size)
            ).scalars())

    def run(self) -> Dict[str, Any]:
        results = {"checked": 0, "units_deducted": 0, "auto_ended": 0, "skipped": 0, "errors": 0}

        for session_id in self._active_session_ids():
            results["checked"] += 1
            try:
                outcome = self.payment_service.apply_auto_deduction(session_id)
                if outcome.skipped:
                    results["skipped"] += 1
                    continue
                results["units_deducted"] += outcome.units_deducted

                end_reason = None
                if not outcome.subscription_usable:
                    end_reason = SUBSCRIPTION_INACTIVE_REASON
                elif outcome.should_auto_end:
                    end_reason = QUOTA_EXHAUSTED_REASON
                if end_reason is None:
                    continue

                ended = self.payment_service.process_session_end(
                    session_id, is_manual_end=False,
                    terminal_status=SessionStatus.ENDED, end_reason=end_reason,
                )
                if not ended.already_processed:
                    results["auto_ended"] += 1
                    logger.info(f"🛑 AUTO_END: Session {session_id} ended ({end_reason})")
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ AUTO_DEDUCTION: Session {session_id} failed: {e}")

        if results["checked"]:
            logger.info(
                f"⏱️ AUTO_DEDUCTION_SWEEP: checked={results['checked']} units={results['units_deducted']} "
                f"auto_ended={results['auto_ended']} errors={results['errors']}"
            )
        return results


def run_auto_deduction() -> Dict[str, Any]:
    return AutoDeductionJob().run()
