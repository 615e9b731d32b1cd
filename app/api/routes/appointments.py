"""
Appointment Modification Endpoints.

Reschedule, cancel and change the type of existing appointments.
"""

import logging
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Body, Depends
from pydantic import Field

from app.api.dependencies import get_engine
from app.api.routes.scheduling import AppointmentTypeName, ClosedModel, TimeOfDayName
from app.core.scheduling.engine import SchedulingEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


class AppointmentRef(ClosedModel):
    appointment_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)


class RescheduleModification(AppointmentRef):
    modification_type: Literal["reschedule"]
    new_datetime: Optional[datetime] = None


class CancelModification(AppointmentRef):
    modification_type: Literal["cancel"]
    reason: Optional[str] = Field(default=None, max_length=500)
    emergency: bool = False


class ChangeTypeModification(AppointmentRef):
    modification_type: Literal["change_type"]
    new_appointment_type: AppointmentTypeName
    reason: Optional[str] = Field(default=None, max_length=500)


ModificationRequest = Annotated[
    Union[RescheduleModification, CancelModification, ChangeTypeModification],
    Body(discriminator="modification_type"),
]


class CancelRequest(AppointmentRef):
    reason: Optional[str] = Field(default=None, max_length=500)
    emergency: bool = False


class RescheduleRequest(AppointmentRef):
    preferred_datetime: Optional[datetime] = None
    date_text: Optional[str] = Field(default=None, max_length=200)
    time_of_day: Optional[TimeOfDayName] = None


class ConfirmRescheduleRequest(AppointmentRef):
    slot_id: str = Field(..., min_length=1)


@router.post("/modify", summary="Reschedule, cancel or change an appointment")
async def modify(
    request: ModificationRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    if isinstance(request, CancelModification):
        outcome = await engine.cancel(
            request.appointment_id,
            request.patient_id,
            request.conversation_id,
            reason=request.reason,
            emergency=request.emergency,
        )
        return outcome.to_dict()

    if isinstance(request, RescheduleModification):
        result = await engine.modify(
            "reschedule",
            request.appointment_id,
            request.patient_id,
            request.conversation_id,
            new_datetime=request.new_datetime,
        )
    else:
        result = await engine.modify(
            "change_type",
            request.appointment_id,
            request.patient_id,
            request.conversation_id,
            new_appointment_type=request.new_appointment_type,
            reason=request.reason,
        )
    return result.to_dict()


@router.post("/cancel", summary="Cancel an appointment and offer the slot to the waitlist")
async def cancel(
    request: CancelRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    outcome = await engine.cancel(
        request.appointment_id,
        request.patient_id,
        request.conversation_id,
        reason=request.reason,
        emergency=request.emergency,
    )
    return outcome.to_dict()


@router.post("/reschedule", summary="Offer new times for an appointment")
async def reschedule(
    request: RescheduleRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.reschedule(
        appointment_id=request.appointment_id,
        patient_id=request.patient_id,
        conversation_id=request.conversation_id,
        preferred_datetime=request.preferred_datetime,
        date_text=request.date_text,
        time_of_day=request.time_of_day,
    )
    return result.to_dict()


@router.post("/reschedule/confirm", summary="Move an appointment to an offered time")
async def confirm_reschedule(
    request: ConfirmRescheduleRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.confirm_reschedule(
        appointment_id=request.appointment_id,
        patient_id=request.patient_id,
        slot_id=request.slot_id,
        conversation_id=request.conversation_id,
    )
    return result.to_dict()
