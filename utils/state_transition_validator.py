"""
State Transition Validators
===========================

Transition tables for consultation sessions and withdrawal requests, plus the
compare-and-swap status update every session transition goes through.

Terminal states map to an empty set: nothing leaves them.
"""

import logging
from typing import Any, Dict, Set, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import ConsultationSession, SessionStatus, WithdrawalStatus, WithdrawalRequest
from utils.exception_handler import InvalidTransition

logger = logging.getLogger(__name__)


class SessionStateValidator:
    """
    Validates consultation session transitions.

    Prevents invalid transitions like:
    - ENDED -> ACTIVE (resurrection)
    - ACTIVE -> CANCELLED (cancelling after the doctor accepted)
    - SCHEDULED -> ACTIVE (skipping the doctor's acceptance)
    """

    VALID_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
        SessionStatus.SCHEDULED: {
            SessionStatus.WAITING_FOR_DOCTOR,
            SessionStatus.CANCELLED,
        },
        SessionStatus.WAITING_FOR_DOCTOR: {
            SessionStatus.ACTIVE,
            SessionStatus.EXPIRED,
            SessionStatus.CANCELLED,
        },
        SessionStatus.ACTIVE: {
            SessionStatus.ENDED,
            SessionStatus.EXPIRED,
        },
        SessionStatus.ENDED: set(),
        SessionStatus.EXPIRED: set(),
        SessionStatus.CANCELLED: set(),
    }

    @classmethod
    def validate_transition(cls, from_status: SessionStatus, to_status: SessionStatus) -> Tuple[bool, str]:
        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            return True, "Valid state transition"
        return False, (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: {sorted(s.value for s in valid_next_states)}"
        )


class WithdrawalStateValidator:
    """pending -> approved -> paid, pending -> rejected"""

    VALID_TRANSITIONS: Dict[WithdrawalStatus, Set[WithdrawalStatus]] = {
        WithdrawalStatus.PENDING: {WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED},
        WithdrawalStatus.APPROVED: {WithdrawalStatus.PAID},
        WithdrawalStatus.REJECTED: set(),
        WithdrawalStatus.PAID: set(),
    }

    @classmethod
    def ensure_transition(cls, request: WithdrawalRequest, to_status: WithdrawalStatus) -> None:
        current = WithdrawalStatus(request.status)
        if to_status not in cls.VALID_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Withdrawal request {request.id} is {current.value} and cannot become {to_status.value}",
                current_status=current.value,
            )


def transition_session(
    db: Session,
    consultation: ConsultationSession,
    to_status: SessionStatus,
    **values: Any,
) -> bool:
    """
    Move a session to a new status with a compare-and-swap UPDATE.

    The UPDATE only matches while the row still holds the status this caller
    observed, so two concurrent callers can never both move the same session
    out of a non-terminal state. Returns False when another writer won; raises
    InvalidTransition when the table forbids the move outright.
    """
    from_status = SessionStatus(consultation.status)
    is_valid, reason = SessionStateValidator.validate_transition(from_status, to_status)
    if not is_valid:
        logger.warning(f"❌ INVALID_TRANSITION: Session {consultation.id} {reason}")
        raise InvalidTransition(reason, session_id=consultation.id, current_status=from_status.value)

    result = db.execute(
        update(ConsultationSession)
        .where(
            ConsultationSession.id == consultation.id,
            ConsultationSession.status == from_status.value,
        )
        .values(status=to_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            f"🔁 TRANSITION_LOST_RACE: Session {consultation.id} {from_status.value} -> {to_status.value} "
            f"already changed by another writer"
        )
        return False

    db.refresh(consultation)
    logger.info(f"✅ SESSION_TRANSITION: Session {consultation.id} {from_status.value} -> {to_status.value}")
    return True
