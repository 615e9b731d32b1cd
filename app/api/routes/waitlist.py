"""
Waitlist Endpoints.

Add patients to the waitlist and record their answers to slot offers.
"""

import logging
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import Field

from app.api.dependencies import get_engine
from app.api.routes.scheduling import AppointmentTypeName, ClosedModel, TimeOfDayName
from app.config import settings
from app.core.scheduling.engine import SchedulingEngine
from app.core.scheduling.types import NotificationPreferences, Priority, WaitlistEntry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])


class NotificationPreferencesModel(ClosedModel):
    methods: list[Literal["voice", "sms", "email"]] = Field(default_factory=lambda: ["voice"], min_length=1)
    immediate_notify: bool = True
    business_hours_only: bool = False


class WaitlistRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    patient_name: str = ""
    phone_number: str = Field(..., min_length=7, max_length=20)
    appointment_type: AppointmentTypeName
    preferred_dates: list[date] = Field(default_factory=list)
    preferred_time_of_day: Optional[TimeOfDayName] = None
    preferred_provider: Optional[str] = None
    priority: Literal["urgent", "high", "normal", "low"] = "normal"
    notification_preferences: NotificationPreferencesModel = Field(
        default_factory=NotificationPreferencesModel
    )
    max_wait_days: int = Field(default=settings.waitlist_default_max_wait_days, ge=1, le=365)
    special_requirements: list[str] = Field(default_factory=list)


class OfferResponseRequest(ClosedModel):
    conversation_id: str = Field(..., min_length=1)
    response: Literal["accepted", "declined"]


@router.post("", status_code=status.HTTP_201_CREATED, summary="Add a patient to the waitlist")
async def add_to_waitlist(
    request: WaitlistRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    entry = WaitlistEntry(
        patient_id=request.patient_id,
        patient_name=request.patient_name,
        phone_number=request.phone_number,
        appointment_type=request.appointment_type,
        preferred_dates=[d.isoformat() for d in request.preferred_dates],
        preferred_time_of_day=request.preferred_time_of_day,
        preferred_provider=request.preferred_provider,
        priority=Priority(request.priority),
        notification_preferences=NotificationPreferences(
            **request.notification_preferences.model_dump()
        ),
        max_wait_days=request.max_wait_days,
        special_requirements=request.special_requirements,
    )
    entry = await engine.add_to_waitlist(entry)
    return {
        "success": True,
        "message": "You're on the waitlist. We'll contact you as soon as a matching time opens up.",
        "entry": entry.to_dict(),
    }


@router.post("/notifications/{notification_id}/response", summary="Accept or decline a slot offer")
async def respond_to_offer(
    notification_id: str,
    request: OfferResponseRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    result = await engine.respond_to_offer(notification_id, request.response)
    return {
        "success": result.success,
        "message": result.message,
        "notification": result.notification.to_dict() if result.notification else None,
        "error": result.error,
    }
