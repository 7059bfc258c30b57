"""
Session Message Cleanup

Chat messages are kept for MESSAGE_RETENTION_HOURS after a session reaches a
terminal state, then cleared through the configured MessageStore. The session
row is stamped with messages_cleared_at so each session is cleared once.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import ConsultationSession, TERMINAL_SESSION_STATUSES
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    def clear_messages(self, session_id: int, session_table: str) -> int:
        """Delete stored messages for a session; returns how many were removed"""
        ...


class LoggingMessageStore:
    """Default store for deployments where chat storage lives in another service"""

    def clear_messages(self, session_id: int, session_table: str) -> int:
        logger.info(f"🧹 MESSAGE_CLEANUP: Requested clear for {session_table} #{session_id}")
        return 0


class MessageCleanupJob:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        message_store: Optional[MessageStore] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.message_store = message_store or LoggingMessageStore()
        self.batch_size = batch_size or Config.SCHEDULER_BATCH_SIZE

    def run(self) -> Dict[str, Any]:
        results = {"sessions_cleared": 0, "messages_removed": 0, "errors": 0}
        now = self.clock.now()
        cutoff = now - timedelta(hours=Config.MESSAGE_RETENTION_HOURS)

        with atomic_transaction(session_factory=self.session_factory) as db:
            rows = db.execute(
                select(ConsultationSession)
                .where(
                    ConsultationSession.status.in_(TERMINAL_SESSION_STATUSES),
                    ConsultationSession.ended_at.is_not(None),
                    ConsultationSession.ended_at <= cutoff,
                    ConsultationSession.messages_cleared_at.is_(None),
                )
                .order_by(ConsultationSession.ended_at)
                .limit(self.batch_size)
            ).scalars().all()
            targets = [(row.id, row.session_table) for row in rows]

        for session_id, session_table in targets:
            try:
                removed = self.message_store.clear_messages(session_id, session_table)
                with atomic_transaction(session_factory=self.session_factory) as db:
                    db.execute(
                        update(ConsultationSession)
                        .where(
                            ConsultationSession.id == session_id,
                            ConsultationSession.messages_cleared_at.is_(None),
                        )
                        .values(messages_cleared_at=now)
                        .execution_options(synchronize_session=False)
                    )
                results["sessions_cleared"] += 1
                results["messages_removed"] += removed or 0
            except Exception as e:
                results["errors"] += 1
                logger.error(f"❌ MESSAGE_CLEANUP: Session {session_id} failed: {e}")

        if targets:
            logger.info(
                f"✅ MESSAGE_CLEANUP: Cleared {results['sessions_cleared']} sessions "
                f"({results['messages_removed']} messages)"
            )
        return results


def run_message_cleanup() -> Dict[str, Any]:
    return MessageCleanupJob().run()
