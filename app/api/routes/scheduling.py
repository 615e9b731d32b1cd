"""
Scheduling API Endpoints.

Availability, booking, the confirmation dialogue and appointment lookup.
"""

import logging
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies import get_engine
from app.core.scheduling.engine import SchedulingEngine
from app.core.scheduling.types import BookingRequest, SpecialRequirements, TimeSlot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling", tags=["Scheduling"])

AppointmentTypeName = Literal["routine", "follow-up", "urgent"]
TimeOfDayName = Literal["morning", "afternoon", "evening"]


class ClosedModel(BaseModel):
    """Request bodies reject unknown fields."""

    model_config = ConfigDict(extra="forbid")


class SpecialRequirementsModel(ClosedModel):
    dilation_needed: bool = False
    interpreter_required: bool = False
    preferred_language: Optional[str] = None
    accessibility_needs: Optional[str] = None


class SlotModel(ClosedModel):
    """An offer previously returned by the availability endpoint."""

    slot_id: str = Field(..., min_length=1)
    datetime: datetime
    practitioner: str = ""
    practitioner_id: str = ""
    duration: int = Field(..., gt=0)
    appointment_type: AppointmentTypeName

    def to_time_slot(self) -> TimeSlot:
        return TimeSlot(**self.model_dump())


class AvailabilityRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    date_text: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Spoken date reference",
        examples=["next tuesday morning"],
    )
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    appointment_type: Optional[AppointmentTypeName] = None
    practitioner_id: Optional[str] = None
    time_of_day: Optional[TimeOfDayName] = None


class BookRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    slot_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    appointment_type: AppointmentTypeName
    practitioner_id: Optional[str] = None
    requested_datetime: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    special_requirements: SpecialRequirementsModel = Field(default_factory=SpecialRequirementsModel)


class CollectedFields(ClosedModel):
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    appointment_type: Optional[AppointmentTypeName] = None
    preferred_date: Optional[str] = None
    time_of_day: Optional[TimeOfDayName] = None
    practitioner_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    special_requirements: Optional[SpecialRequirementsModel] = None


class ConversationCreateRequest(ClosedModel):
    session_id: Optional[str] = None
    collected: Optional[CollectedFields] = None


class ConversationUpdateRequest(ClosedModel):
    collected: Optional[CollectedFields] = None
    selected_slot: Optional[SlotModel] = None


class ConfirmRequest(ClosedModel):
    utterance: str = Field(..., max_length=1000, examples=["yes, that's right"])


class LookupRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    confirmation_number: Optional[str] = None
    patient_id: Optional[str] = None
    phone_number: Optional[str] = None


class VerifyRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    date_of_birth: Optional[str] = None
    phone_number: Optional[str] = None


def _collected(fields: Optional[CollectedFields]) -> Optional[dict]:
    return fields.model_dump(exclude_none=True) if fields else None


@router.post("/availability", summary="Query available appointment times")
async def query_availability(
    request: AvailabilityRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.query_availability(
        date_text=request.date_text,
        appointment_type=request.appointment_type,
        practitioner_id=request.practitioner_id,
        time_of_day=request.time_of_day,
        start_date=request.start_date,
        end_date=request.end_date,
    )
    return result.to_dict()


@router.delete("/availability/cache", summary="Invalidate all cached availability")
async def invalidate_availability(engine: SchedulingEngine = Depends(get_engine)) -> dict:
    removed = await engine.invalidate_availability()
    logger.info(f"Availability cache invalidated ({removed} entries)")
    return {"success": True, "removed": removed}


@router.post("/book", summary="Book a slot")
async def book(
    request: BookRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    booking = BookingRequest(
        slot_id=request.slot_id,
        patient_id=request.patient_id,
        appointment_type=request.appointment_type,
        conversation_id=request.conversation_id,
        practitioner_id=request.practitioner_id,
        requested_datetime=request.requested_datetime,
        reason=request.reason,
        special_requirements=SpecialRequirements(**request.special_requirements.model_dump()),
    )
    result = await engine.book(booking)
    return result.to_dict()


@router.post("/conversations", status_code=status.HTTP_201_CREATED, summary="Start a booking dialogue")
async def start_conversation(
    request: ConversationCreateRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    state = await engine.start_conversation(request.session_id, _collected(request.collected))
    return {
        "success": True,
        "session_id": state.session_id,
        "stage": state.stage.value,
        "collected": state.collected.to_dict(),
    }


@router.patch("/conversations/{session_id}", summary="Update a booking dialogue")
async def update_conversation(
    session_id: str,
    request: ConversationUpdateRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.update_conversation(
        session_id,
        collected=_collected(request.collected),
        selected_slot=request.selected_slot.to_time_slot() if request.selected_slot else None,
    )
    if result.error == "Session not found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return result.to_dict()


@router.post("/conversations/{session_id}/confirm", summary="Answer the appointment read-back")
async def confirm(
    session_id: str,
    request: ConfirmRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.confirm(session_id, request.utterance)
    return result.to_dict()


@router.get("/confirmations/{confirmation_number}", summary="Look up a confirmation")
async def get_confirmation(
    confirmation_number: str,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    record = await engine.get_confirmation(confirmation_number)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Confirmation not found")
    return {"success": True, "confirmation": record.to_dict()}


@router.post("/lookup", summary="Find a caller's appointments")
async def lookup(
    request: LookupRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.lookup(
        request.conversation_id,
        confirmation_number=request.confirmation_number,
        patient_id=request.patient_id,
        phone_number=request.phone_number,
    )
    return result.to_dict()


@router.post("/verify", summary="Verify the caller's identity")
async def verify(
    request: VerifyRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.verify(
        request.conversation_id,
        date_of_birth=request.date_of_birth,
        phone_number=request.phone_number,
    )
    return result.to_dict()


@router.get("/metrics", summary="Scheduling metrics snapshot")
async def metrics(engine: SchedulingEngine = Depends(get_engine)) -> dict:
    return {
        "success": True,
        "metrics": engine.metrics.snapshot(),
        "circuit_state": engine.emr.circuit_breaker.state.value,
        "pending_jobs": await engine.scheduler.pending_count(),
    }
