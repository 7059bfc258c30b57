"""
Consultation Session Routes
Start, schedule, accept, cancel and end sessions; live status for clients
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from handlers.dependencies import get_current_user_id, get_state_machine
from services.session_state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class StartSessionRequest(BaseModel):
    doctor_id: int
    session_type: str = Field(..., description="text, voice or video")
    reason: Optional[str] = Field(None, max_length=1000)


class ScheduleSessionRequest(StartSessionRequest):
    scheduled_at: datetime


@router.post("/start")
def start_session(
    body: StartSessionRequest,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    data = state_machine.start(user_id, body.doctor_id, body.session_type, body.reason)
    return {"success": True, "data": data}


@router.post("/schedule")
def schedule_session(
    body: ScheduleSessionRequest,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    data = state_machine.schedule(user_id, body.doctor_id, body.scheduled_at, body.session_type, body.reason)
    return {"success": True, "data": data}


@router.post("/{session_id}/accept")
def accept_session(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    return {"success": True, "data": state_machine.accept(session_id, user_id)}


@router.post("/{session_id}/activity")
def record_activity(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    return {"success": True, "data": state_machine.record_activity(session_id, user_id)}


@router.post("/{session_id}/cancel")
def cancel_session(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    return {"success": True, "data": state_machine.cancel(session_id, user_id)}


@router.post("/{session_id}/end")
def end_session(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    """
    End a session manually.

    Billing failures on one side do not fail the request: they are returned
    as warnings next to the settled result.
    """
    result = state_machine.end(session_id, user_id)
    response = {"success": True, "data": result.to_dict()}
    if result.has_warnings:
        response["warnings"] = list(result.errors)
    return response


@router.get("/{session_id}")
def get_session_status(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    return {"success": True, "data": state_machine.get_status(session_id, user_id)}
