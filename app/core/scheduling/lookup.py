"""
Appointment Lookup & Verification.

Callers find their appointments by confirmation number, patient id or
phone number. A confirmation number is proof enough; the other two
require the caller to confirm a second identifier before anything is
disclosed (date of birth after a phone lookup, phone after a patient id
lookup).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis

from app.config import settings
from app.infra.redis import key
from .booking import BookingManager, normalize_confirmation_number
from .emr_client import EMRClient
from .errors import CircuitOpenError, EMRError
from .messages import SERVICE_UNAVAILABLE, MessageBuilder
from .types import AppointmentDetails, AppointmentStatus

logger = logging.getLogger(__name__)

LOOKUP_WINDOW_DAYS = 30

NEED_IDENTIFIER = (
    "I need either your confirmation number, phone number, or patient ID to find "
    "your appointment. Which would you prefer to use?"
)
LOOKUP_FAILED = (
    "I'm having trouble accessing appointment information right now. "
    "Please try again in a moment or speak with our staff."
)
NO_UPCOMING = (
    "I found some past appointments but no upcoming ones. "
    "Would you like to schedule a new appointment instead?"
)
VERIFICATION_EXPIRED = (
    "I couldn't find the appointment information. Let's start over with your "
    "confirmation number or phone number."
)
VERIFICATION_EXHAUSTED = (
    "I wasn't able to verify your identity after several attempts. For your security, "
    "I'll need to transfer you to our staff who can help you access your appointment information."
)
NOT_FOUND_MESSAGES = {
    "confirmation_number": (
        "I couldn't find an appointment with that confirmation number. Please check the "
        "number and try again, or I can look up your appointment using your phone number instead."
    ),
    "phone": (
        "I couldn't find any appointments for that phone number. "
        "Would you like to schedule a new appointment?"
    ),
    "patient_id": (
        "I couldn't find any appointments for that patient ID. "
        "Would you like to try with your confirmation number or phone number instead?"
    ),
}


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def normalize_phone(value: Optional[str]) -> str:
    """Digits only, last ten kept (drops a leading country code)."""
    return re.sub(r"\D", "", value or "")[-10:]


def parse_birth_date(value: Optional[str]) -> Optional[date]:
    """Accepts ISO (1980-04-12) and US (04/12/1980) forms."""
    if not value:
        return None
    text = value.strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


@dataclass
class LookupResponse:
    success: bool
    message: str
    appointments: list[AppointmentDetails] = field(default_factory=list)
    requires_verification: bool = False
    verification_method: Optional[str] = None
    remaining_attempts: Optional[int] = None
    handoff: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "appointments": [a.to_dict() for a in self.appointments],
            "requires_verification": self.requires_verification,
            "verification_method": self.verification_method,
            "remaining_attempts": self.remaining_attempts,
            "handoff": self.handoff,
            "error": self.error,
        }


class AppointmentLookupService:
    """Finds a caller's upcoming appointments and gates access behind verification."""

    def __init__(
        self,
        emr_client: EMRClient,
        redis_client: Redis,
        booking: BookingManager,
        messages: Optional[MessageBuilder] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.emr = emr_client
        self.redis = redis_client
        self.booking = booking
        self.messages = messages or MessageBuilder()
        self._clock = clock
        self.max_attempts = settings.verification_max_attempts
        self.session_ttl = settings.verification_ttl

    @staticmethod
    def _session_key(conversation_id: str) -> str:
        return key("verification", conversation_id)

    # === Lookup ===

    async def lookup(
        self,
        conversation_id: str,
        confirmation_number: Optional[str] = None,
        patient_id: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> LookupResponse:
        """Find upcoming appointments by the first identifier given."""
        if confirmation_number:
            method = "confirmation_number"
        elif patient_id:
            method = "patient_id"
        elif phone_number:
            method = "phone"
        else:
            return LookupResponse(success=False, message=NEED_IDENTIFIER, error="Insufficient lookup criteria")

        try:
            if method == "confirmation_number":
                appointments = await self.by_confirmation_number(confirmation_number)
            elif method == "patient_id":
                appointments = await self.by_patient_id(patient_id)
            else:
                appointments = await self.by_phone(phone_number)
        except CircuitOpenError:
            return LookupResponse(
                success=False, message=SERVICE_UNAVAILABLE, handoff=True, error="EMR unavailable"
            )
        except EMRError as e:
            logger.error(f"Appointment lookup by {method} failed: {e}")
            return LookupResponse(success=False, message=LOOKUP_FAILED, error="Lookup failed")

        if not appointments:
            return LookupResponse(
                success=False,
                message=NOT_FOUND_MESSAGES[method],
                error=f"No appointments found by {method}",
            )

        upcoming = self.upcoming(appointments)
        if not upcoming:
            return LookupResponse(success=True, message=NO_UPCOMING)

        if method == "confirmation_number":
            return LookupResponse(success=True, message=self.summary(upcoming), appointments=upcoming)

        verification_method = "dob" if method == "phone" else "phone"
        await self._start_verification(conversation_id, upcoming, verification_method)
        logger.info(
            f"Lookup by {method} found {len(upcoming)} appointments for conversation "
            f"{conversation_id}; verification by {verification_method} required"
        )
        return LookupResponse(
            success=True,
            message=self.verification_prompt(method, len(upcoming)),
            requires_verification=True,
            verification_method=verification_method,
            remaining_attempts=self.max_attempts,
        )

    async def by_confirmation_number(self, confirmation_number: str) -> list[AppointmentDetails]:
        number = normalize_confirmation_number(confirmation_number)
        if number is None:
            return []

        record = await self.booking.get_confirmation(number)
        if record is not None:
            appointment = await self.booking.get_appointment(record.appointment_id)
            if appointment is not None:
                return [appointment]

        return await self.emr.search_appointments(confirmation_number=number)

    async def by_patient_id(self, patient_id: str) -> list[AppointmentDetails]:
        now = self._clock()
        return await self.emr.search_appointments(
            patient_id=patient_id,
            start=now,
            end=now + timedelta(days=LOOKUP_WINDOW_DAYS),
        )

    async def by_phone(self, phone_number: str) -> list[AppointmentDetails]:
        appointments = []
        for patient in await self.emr.search_patients_by_phone(phone_number):
            appointments.extend(await self.by_patient_id(patient.id))
        return appointments

    def upcoming(self, appointments: list[AppointmentDetails]) -> list[AppointmentDetails]:
        now = self._clock()
        return sorted(
            (
                a
                for a in appointments
                if a.datetime > now and a.status == AppointmentStatus.BOOKED
            ),
            key=lambda a: a.datetime,
        )

    # === Verification ===

    async def _start_verification(
        self,
        conversation_id: str,
        appointments: list[AppointmentDetails],
        method: str,
    ) -> None:
        session = {
            "method": method,
            "attempts": 0,
            "appointments": [a.to_dict() for a in appointments],
        }
        await self.redis.setex(self._session_key(conversation_id), self.session_ttl, json.dumps(session))

    async def verify(
        self,
        conversation_id: str,
        date_of_birth: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> LookupResponse:
        """Check the second identifier; disclose appointments on a match."""
        raw = await self.redis.get(self._session_key(conversation_id))
        if not raw:
            return LookupResponse(
                success=False, message=VERIFICATION_EXPIRED, error="Verification session expired"
            )

        session = json.loads(raw)
        appointments = [AppointmentDetails.from_dict(a) for a in session["appointments"]]
        session["attempts"] += 1

        try:
            verified = await self._matches(appointments[0].patient_id, session["method"], date_of_birth, phone_number)
        except CircuitOpenError:
            return LookupResponse(
                success=False, message=SERVICE_UNAVAILABLE, handoff=True, error="EMR unavailable"
            )
        except EMRError as e:
            logger.error(f"Verification lookup failed for conversation {conversation_id}: {e}")
            return LookupResponse(success=False, message=LOOKUP_FAILED, error="Verification failed")

        if verified:
            await self.redis.delete(self._session_key(conversation_id))
            logger.info(f"Conversation {conversation_id} verified by {session['method']}")
            return LookupResponse(success=True, message=self.summary(appointments), appointments=appointments)

        if session["attempts"] >= self.max_attempts:
            await self.redis.delete(self._session_key(conversation_id))
            logger.warning(f"Verification attempts exhausted for conversation {conversation_id}")
            return LookupResponse(
                success=False,
                message=VERIFICATION_EXHAUSTED,
                handoff=True,
                error="Max verification attempts exceeded",
            )

        await self.redis.setex(self._session_key(conversation_id), self.session_ttl, json.dumps(session))
        remaining = self.max_attempts - session["attempts"]
        plural = "s" if remaining != 1 else ""
        prompt = "date of birth" if session["method"] == "dob" else "phone number"
        return LookupResponse(
            success=False,
            message=(
                f"The information doesn't match our records. You have {remaining} more "
                f"attempt{plural}. Could you please tell me your {prompt} again?"
            ),
            requires_verification=True,
            verification_method=session["method"],
            remaining_attempts=remaining,
            error="Verification mismatch",
        )

    async def _matches(
        self,
        patient_id: str,
        method: str,
        date_of_birth: Optional[str],
        phone_number: Optional[str],
    ) -> bool:
        patient = await self.emr.get_patient(patient_id)
        if patient is None:
            return False
        if method == "dob":
            provided = parse_birth_date(date_of_birth)
            return provided is not None and provided == parse_birth_date(patient.birth_date)
        provided_phone = normalize_phone(phone_number)
        return bool(provided_phone) and provided_phone == normalize_phone(patient.phone)

    # === Messages ===

    @staticmethod
    def verification_prompt(method: str, count: int) -> str:
        found = "an appointment" if count == 1 else f"{count} appointments"
        if method == "phone":
            return (
                f"I found {found} for that phone number. For security, I need to verify "
                "your date of birth. Could you please tell me your date of birth?"
            )
        return (
            f"I found {found} for that patient ID. For security, I need to verify "
            "your phone number. Could you please tell me your phone number?"
        )

    def summary(self, appointments: list[AppointmentDetails]) -> str:
        first = appointments[0]
        if len(appointments) == 1:
            message = f"I found {self.messages.appointment_summary(first)}."
            if first.confirmation_number:
                message += f" Your confirmation number is {first.confirmation_number}."
            return message + " What would you like to do with this appointment?"
        return (
            f"I found {len(appointments)} upcoming appointments for you. "
            f"Your next one is {self.messages.appointment_summary(first)}. "
            "Would you like help with this appointment or hear about all of them?"
        )
