"""Scheduling data types.

Records are dataclasses serialised to JSON for Redis storage. Datetimes are
timezone-aware and stored as ISO-8601 strings.
"""

import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) as an aware datetime.

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


class AppointmentType(str, Enum):
    """Kinds of visit the practice books."""

    ROUTINE = "routine"
    FOLLOW_UP = "follow-up"
    URGENT = "urgent"


class AppointmentStatus(str, Enum):
    BOOKED = "booked"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "noshow"


class SlotStatus(str, Enum):
    FREE = "free"
    BUSY = "busy"
    BUSY_TENTATIVE = "busy-tentative"
    BUSY_UNAVAILABLE = "busy-unavailable"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class Priority(str, Enum):
    """Waitlist priority tiers."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class NotificationMethod(str, Enum):
    VOICE = "voice"
    SMS = "sms"
    EMAIL = "email"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ChangeType(str, Enum):
    CREATED = "created"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    TYPE_CHANGED = "type_changed"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


_PRACTITIONER_REF = re.compile(r"Practitioner/([^/]+)")

# HL7 v2-0276 style codes used on the wire
APPOINTMENT_TYPE_CODES = {
    AppointmentType.ROUTINE.value: "ROUTINE",
    AppointmentType.FOLLOW_UP.value: "FOLLOWUP",
    AppointmentType.URGENT.value: "URGENT",
}
_CODE_TO_TYPE = {code: name for name, code in APPOINTMENT_TYPE_CODES.items()}


def appointment_type_from_coding(coding: Optional[dict]) -> Optional[str]:
    """Map a FHIR coding back to a local appointment type name."""
    if not coding:
        return None
    code = (coding.get("code") or "").upper()
    if code in _CODE_TO_TYPE:
        return _CODE_TO_TYPE[code]
    display = (coding.get("display") or "").lower()
    if display in APPOINTMENT_TYPE_CODES:
        return display
    return display or None


@dataclass
class Slot:
    """A free/busy interval published by the practice-management system."""

    id: str
    start: datetime
    end: datetime
    status: SlotStatus = SlotStatus.FREE
    practitioner_id: Optional[str] = None
    appointment_type: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @classmethod
    def from_fhir(cls, resource: dict) -> "Slot":
        """Build from a FHIR Slot resource.

        The practitioner is read from the schedule reference, e.g.
        ``Schedule/12/Practitioner/7`` or ``Practitioner/7``.
        """
        practitioner_id = None
        schedule_ref = (resource.get("schedule") or {}).get("reference", "")
        match = _PRACTITIONER_REF.search(schedule_ref)
        if match:
            practitioner_id = match.group(1)

        codings = (resource.get("appointmentType") or {}).get("coding") or []
        appointment_type = appointment_type_from_coding(codings[0] if codings else None)

        return cls(
            id=str(resource.get("id", "")),
            start=parse_datetime(resource.get("start")),
            end=parse_datetime(resource.get("end")),
            status=SlotStatus(resource.get("status", "free")),
            practitioner_id=practitioner_id,
            appointment_type=appointment_type,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start": format_datetime(self.start),
            "end": format_datetime(self.end),
            "status": self.status.value,
            "practitioner_id": self.practitioner_id,
            "appointment_type": self.appointment_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        return cls(
            id=data["id"],
            start=parse_datetime(data["start"]),
            end=parse_datetime(data["end"]),
            status=SlotStatus(data.get("status", "free")),
            practitioner_id=data.get("practitioner_id"),
            appointment_type=data.get("appointment_type"),
        )


@dataclass
class Practitioner:
    """Provider in the practice directory."""

    id: str
    name: str
    specialty: Optional[str] = None
    appointment_types: list[str] = field(default_factory=list)

    def handles(self, appointment_type: str) -> bool:
        """Whether this provider services the given type. Empty means all."""
        return not self.appointment_types or appointment_type in self.appointment_types

    @classmethod
    def from_fhir(cls, resource: dict) -> "Practitioner":
        names = resource.get("name") or [{}]
        name = names[0]
        display = name.get("text")
        if not display:
            given = " ".join(name.get("given", []))
            family = name.get("family", "")
            display = f"Dr. {given} {family}".replace("  ", " ").strip()
        specialty = None
        qualifications = resource.get("qualification") or []
        if qualifications:
            specialty = (qualifications[0].get("code") or {}).get("text")
        return cls(id=str(resource.get("id", "")), name=display, specialty=specialty)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Practitioner":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            specialty=data.get("specialty"),
            appointment_types=list(data.get("appointment_types", [])),
        )


@dataclass
class TimeSlot:
    """An offer presented to the patient."""

    slot_id: str
    datetime: datetime
    practitioner: str
    practitioner_id: str
    duration: int
    appointment_type: str
    available: bool = True

    def to_dict(self) -> dict:
        return {
            "slot_id": self.slot_id,
            "datetime": format_datetime(self.datetime),
            "practitioner": self.practitioner,
            "practitioner_id": self.practitioner_id,
            "duration": self.duration,
            "appointment_type": self.appointment_type,
            "available": self.available,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimeSlot":
        return cls(
            slot_id=data.get("slot_id", ""),
            datetime=parse_datetime(data["datetime"]),
            practitioner=data.get("practitioner", ""),
            practitioner_id=data.get("practitioner_id", ""),
            duration=int(data.get("duration", 0)),
            appointment_type=data.get("appointment_type", ""),
            available=data.get("available", True),
        )


@dataclass
class AppointmentDetails:
    """A booked appointment as the scheduling core sees it."""

    id: str
    patient_id: str
    practitioner_id: str
    datetime: datetime
    duration: int
    type: str
    status: AppointmentStatus = AppointmentStatus.BOOKED
    patient_name: str = ""
    practitioner_name: str = ""
    reason: Optional[str] = None
    special_requirements: list[str] = field(default_factory=list)
    confirmation_number: str = ""

    @property
    def end(self) -> datetime:
        return self.datetime + timedelta(minutes=self.duration)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["datetime"] = format_datetime(self.datetime)
        data["status"] = _enum_value(self.status)
        data["special_requirements"] = list(self.special_requirements)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AppointmentDetails":
        return cls(
            id=data["id"],
            patient_id=data.get("patient_id", ""),
            practitioner_id=data.get("practitioner_id", ""),
            datetime=parse_datetime(data["datetime"]),
            duration=int(data.get("duration", 0)),
            type=data.get("type", AppointmentType.ROUTINE.value),
            status=AppointmentStatus(data.get("status", "booked")),
            patient_name=data.get("patient_name", ""),
            practitioner_name=data.get("practitioner_name", ""),
            reason=data.get("reason"),
            special_requirements=list(data.get("special_requirements") or []),
            confirmation_number=data.get("confirmation_number", ""),
        )


@dataclass
class SpecialRequirements:
    dilation_needed: bool = False
    interpreter_required: bool = False
    preferred_language: Optional[str] = None
    accessibility_needs: Optional[str] = None

    def instructions(self) -> list[str]:
        """Patient-facing preparation instructions."""
        lines = []
        if self.dilation_needed:
            lines.append(
                "Please arrange for someone to drive you home as your eyes will be dilated"
            )
        if self.interpreter_required:
            language = self.preferred_language or "your preferred language"
            lines.append(f"An interpreter for {language} will be available")
        if self.accessibility_needs:
            lines.append(f"Accessibility arrangements: {self.accessibility_needs}")
        return lines

    def labels(self) -> list[str]:
        """Short labels stored on the appointment."""
        labels = []
        if self.dilation_needed:
            labels.append("dilation")
        if self.interpreter_required:
            labels.append(f"interpreter:{self.preferred_language or 'unspecified'}")
        if self.accessibility_needs:
            labels.append(f"accessibility:{self.accessibility_needs}")
        return labels

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SpecialRequirements":
        data = data or {}
        return cls(
            dilation_needed=bool(data.get("dilation_needed", False)),
            interpreter_required=bool(data.get("interpreter_required", False)),
            preferred_language=data.get("preferred_language"),
            accessibility_needs=data.get("accessibility_needs"),
        )


@dataclass
class BookingRequest:
    slot_id: str
    patient_id: str
    appointment_type: str
    conversation_id: str
    practitioner_id: Optional[str] = None
    requested_datetime: Optional[datetime] = None
    reason: Optional[str] = None
    special_requirements: SpecialRequirements = field(default_factory=SpecialRequirements)

    def to_dict(self) -> dict:
        return {
            "slot_id": self.slot_id,
            "patient_id": self.patient_id,
            "appointment_type": self.appointment_type,
            "conversation_id": self.conversation_id,
            "practitioner_id": self.practitioner_id,
            "requested_datetime": format_datetime(self.requested_datetime),
            "reason": self.reason,
            "special_requirements": self.special_requirements.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BookingRequest":
        return cls(
            slot_id=data["slot_id"],
            patient_id=data["patient_id"],
            appointment_type=data["appointment_type"],
            conversation_id=data.get("conversation_id", ""),
            practitioner_id=data.get("practitioner_id"),
            requested_datetime=parse_datetime(data.get("requested_datetime")),
            reason=data.get("reason"),
            special_requirements=SpecialRequirements.from_dict(data.get("special_requirements")),
        )


@dataclass
class BookingTransaction:
    """Short-lived record of a booking attempt."""

    transaction_id: str
    request: BookingRequest
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    confirmed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    appointment_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "request": self.request.to_dict(),
            "status": self.status.value,
            "created_at": format_datetime(self.created_at),
            "confirmed_at": format_datetime(self.confirmed_at),
            "expires_at": format_datetime(self.expires_at),
            "appointment_id": self.appointment_id,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BookingTransaction":
        return cls(
            transaction_id=data["transaction_id"],
            request=BookingRequest.from_dict(data["request"]),
            status=TransactionStatus(data.get("status", "pending")),
            created_at=parse_datetime(data.get("created_at")) or _utcnow(),
            confirmed_at=parse_datetime(data.get("confirmed_at")),
            expires_at=parse_datetime(data.get("expires_at")),
            appointment_id=data.get("appointment_id"),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
        )


@dataclass
class ConfirmationRecord:
    """Patient-facing confirmation, retained for 90 days."""

    confirmation_number: str
    appointment_id: str
    patient_id: str
    datetime: datetime
    practitioner: str
    appointment_type: str
    duration: int
    patient_name: str = ""
    location: str = ""
    special_instructions: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["datetime"] = format_datetime(self.datetime)
        data["created_at"] = format_datetime(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ConfirmationRecord":
        return cls(
            confirmation_number=data["confirmation_number"],
            appointment_id=data["appointment_id"],
            patient_id=data.get("patient_id", ""),
            datetime=parse_datetime(data["datetime"]),
            practitioner=data.get("practitioner", ""),
            appointment_type=data.get("appointment_type", ""),
            duration=int(data.get("duration", 0)),
            patient_name=data.get("patient_name", ""),
            location=data.get("location", ""),
            special_instructions=list(data.get("special_instructions") or []),
            created_at=parse_datetime(data.get("created_at")) or _utcnow(),
        )


@dataclass
class BookingResponse:
    """Outcome of a booking attempt."""

    success: bool
    message: str
    appointment_id: Optional[str] = None
    confirmation_number: Optional[str] = None
    alternatives: list[TimeSlot] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "appointment_id": self.appointment_id,
            "confirmation_number": self.confirmation_number,
            "alternatives": [s.to_dict() for s in self.alternatives],
            "error": self.error,
        }


@dataclass
class AvailabilityResponse:
    """Outcome of an availability query."""

    success: bool
    message: str
    slots: list[TimeSlot] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "slots": [s.to_dict() for s in self.slots],
            "error": self.error,
        }


@dataclass
class NotificationPreferences:
    methods: list[str] = field(default_factory=lambda: [NotificationMethod.VOICE.value])
    immediate_notify: bool = True
    business_hours_only: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NotificationPreferences":
        data = data or {}
        return cls(
            methods=list(data.get("methods") or [NotificationMethod.VOICE.value]),
            immediate_notify=data.get("immediate_notify", True),
            business_hours_only=data.get("business_hours_only", False),
        )


@dataclass
class WaitlistEntry:
    """A patient waiting for an earlier or preferred opening."""

    patient_id: str
    patient_name: str
    phone_number: str
    appointment_type: str
    id: str = field(default_factory=lambda: str(uuid4()))
    preferred_dates: list[str] = field(default_factory=list)
    preferred_time_of_day: Optional[str] = None
    preferred_provider: Optional[str] = None
    priority: Priority = Priority.NORMAL
    notification_preferences: NotificationPreferences = field(
        default_factory=NotificationPreferences
    )
    max_wait_days: int = 30
    special_requirements: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["priority"] = _enum_value(self.priority)
        data["created_at"] = format_datetime(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WaitlistEntry":
        return cls(
            id=data["id"],
            patient_id=data["patient_id"],
            patient_name=data.get("patient_name", ""),
            phone_number=data.get("phone_number", ""),
            appointment_type=data["appointment_type"],
            preferred_dates=list(data.get("preferred_dates") or []),
            preferred_time_of_day=data.get("preferred_time_of_day"),
            preferred_provider=data.get("preferred_provider"),
            priority=Priority(data.get("priority", "normal")),
            notification_preferences=NotificationPreferences.from_dict(
                data.get("notification_preferences")
            ),
            max_wait_days=int(data.get("max_wait_days", 30)),
            special_requirements=list(data.get("special_requirements") or []),
            created_at=parse_datetime(data.get("created_at")) or _utcnow(),
        )


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    RESPONDED = "responded"
    EXPIRED = "expired"


@dataclass
class WaitlistNotification:
    """Offer of a freed slot to a waitlisted patient."""

    waitlist_entry_id: str
    available_slot: TimeSlot
    notification_method: str
    response_deadline: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    sent_at: Optional[datetime] = None
    status: NotificationStatus = NotificationStatus.PENDING
    response: Optional[str] = None
    response_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "waitlist_entry_id": self.waitlist_entry_id,
            "available_slot": self.available_slot.to_dict(),
            "notification_method": self.notification_method,
            "sent_at": format_datetime(self.sent_at),
            "response_deadline": format_datetime(self.response_deadline),
            "status": self.status.value,
            "response": self.response,
            "response_at": format_datetime(self.response_at),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WaitlistNotification":
        return cls(
            id=data["id"],
            waitlist_entry_id=data["waitlist_entry_id"],
            available_slot=TimeSlot.from_dict(data["available_slot"]),
            notification_method=data.get("notification_method", "voice"),
            sent_at=parse_datetime(data.get("sent_at")),
            response_deadline=parse_datetime(data["response_deadline"]),
            status=NotificationStatus(data.get("status", "pending")),
            response=data.get("response"),
            response_at=parse_datetime(data.get("response_at")),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
        )


@dataclass
class ModificationResponse:
    """Outcome of a reschedule, cancellation or type change."""

    success: bool
    message: str
    updated_appointment: Optional[AppointmentDetails] = None
    new_confirmation_number: Optional[str] = None
    cancellation_fee: Optional[float] = None
    available_slots: list[TimeSlot] = field(default_factory=list)
    requires_confirmation: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "updated_appointment": (
                self.updated_appointment.to_dict() if self.updated_appointment else None
            ),
            "new_confirmation_number": self.new_confirmation_number,
            "cancellation_fee": self.cancellation_fee,
            "available_slots": [s.to_dict() for s in self.available_slots],
            "requires_confirmation": self.requires_confirmation,
            "error": self.error,
        }


@dataclass
class PatientRecord:
    """Demographics used for lookup and identity verification."""

    id: str
    first_name: str = ""
    last_name: str = ""
    birth_date: Optional[str] = None
    phone: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_fhir(cls, resource: dict) -> "PatientRecord":
        names = resource.get("name") or [{}]
        phone = None
        for telecom in resource.get("telecom") or []:
            if telecom.get("system") == "phone":
                phone = telecom.get("value")
                break
        return cls(
            id=str(resource.get("id", "")),
            first_name=" ".join(names[0].get("given", [])),
            last_name=names[0].get("family", ""),
            birth_date=resource.get("birthDate"),
            phone=phone,
        )


@dataclass
class ChangeHistory:
    """Audit record of one modification."""

    appointment_id: str
    change_type: ChangeType
    previous_details: dict
    new_details: dict
    changed_by: str
    id: str = field(default_factory=lambda: str(uuid4()))
    patient_id: Optional[str] = None
    reason: Optional[str] = None
    cancellation_fee: Optional[float] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "patient_id": self.patient_id,
            "change_type": _enum_value(self.change_type),
            "previous_details": self.previous_details,
            "new_details": self.new_details,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "cancellation_fee": self.cancellation_fee,
            "timestamp": format_datetime(self.timestamp),
        }
