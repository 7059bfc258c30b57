"""
Appointment Routes
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from handlers.dependencies import get_appointment_service, get_current_user_id
from services.appointment_service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


class BookAppointmentRequest(BaseModel):
    doctor_id: int
    appointment_type: str = Field(..., description="text, voice or video")
    scheduled_at: datetime
    reason: Optional[str] = Field(None, max_length=1000)


class CancelAppointmentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.post("")
def book_appointment(
    body: BookAppointmentRequest,
    user_id: int = Depends(get_current_user_id),
    appointments: AppointmentService = Depends(get_appointment_service),
):
    data = appointments.book(user_id, body.doctor_id, body.appointment_type, body.scheduled_at, body.reason)
    return {"success": True, "data": data}


@router.post("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: int,
    body: Optional[CancelAppointmentRequest] = None,
    user_id: int = Depends(get_current_user_id),
    appointments: AppointmentService = Depends(get_appointment_service),
):
    reason = body.reason if body else None
    return {"success": True, "data": appointments.cancel(appointment_id, user_id, reason)}
