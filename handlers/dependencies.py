"""
Request dependencies shared by the API routers.

The session factory and clock are dependencies of their own so the whole
service graph can be pointed at another database or a frozen clock through
app.dependency_overrides.
"""

import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import sessionmaker

from database import SessionLocal
from services.appointment_service import AppointmentService
from services.session_state_machine import SessionStateMachine
from services.withdrawal_service import WithdrawalService
from utils.clock import Clock, system_clock
from utils.exception_handler import Unauthenticated

logger = logging.getLogger(__name__)


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_clock() -> Clock:
    return system_clock


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Caller identity as resolved by the upstream auth gateway"""
    if not x_user_id:
        raise Unauthenticated()
    try:
        return int(x_user_id)
    except ValueError:
        raise Unauthenticated("Malformed caller identity")


def get_state_machine(
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> SessionStateMachine:
    return SessionStateMachine(session_factory=session_factory, clock=clock)


def get_appointment_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> AppointmentService:
    return AppointmentService(session_factory=session_factory, clock=clock)


def get_withdrawal_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> WithdrawalService:
    return WithdrawalService(session_factory=session_factory, clock=clock)
