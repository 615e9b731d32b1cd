"""
Patient-facing message templates.

Messages are short, plain and read well over the phone: spelled-out
dates, 12-hour times, and confirmation numbers repeated slowly.
"""

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from app.config import settings
from .types import AppointmentDetails, ConfirmationRecord, TimeSlot

APPOINTMENT_TYPE_NAMES = {
    "routine": "Routine Eye Exam",
    "follow-up": "Follow-up Appointment",
    "urgent": "Urgent Care Visit",
}

BOOKING_FAILED = (
    "I'm sorry, I couldn't complete your booking. Would you like me to try again "
    "or would you prefer to call the office?"
)
SLOT_TAKEN = "I'm sorry, that time slot was just taken. Here are some similar available times."
SLOT_TAKEN_NO_ALTERNATIVES = (
    "I'm sorry, that time slot was just taken, and I don't see anything close to it. "
    "Would you like me to check different days?"
)
SERVICE_UNAVAILABLE = (
    "I'm having trouble reaching our scheduling system right now. "
    "Let me transfer you to our office staff so they can help you."
)
NEED_MORE_INFO = "I need a bit more information to book your appointment."
SESSION_NOT_FOUND = "I couldn't find your booking session. Let's start over."
CHANGE_REQUESTED = "No problem. What would you like to change about the appointment?"
CONFIRMATION_UNCLEAR = (
    "I didn't quite catch that. Please say 'yes' if the appointment details are correct, "
    "or 'no' if you'd like to make changes."
)
CONFIRMATION_EXHAUSTED = (
    "I'm having trouble understanding your response. "
    "Would you like me to transfer you to our office staff for help?"
)
APPOINTMENT_NOT_FOUND = (
    "I couldn't find that appointment. Could you double-check the details, "
    "or would you like me to transfer you to our office staff?"
)
NOT_YOUR_APPOINTMENT = (
    "I'm not able to make changes to that appointment. "
    "Let me transfer you to our office staff to help."
)
PAST_APPOINTMENT = (
    "That appointment has already passed, so I can't change it. "
    "Would you like to schedule a new appointment instead?"
)
ALREADY_CANCELLED = "That appointment has already been cancelled. Would you like to book a new one?"
NO_SLOTS = (
    "I'm sorry, but I don't see any available appointments for your requested time. "
    "Would you like me to check different days?"
)
MODIFICATION_FAILED = (
    "I'm having trouble making that change right now. "
    "Please try again in a moment or speak with our staff."
)
RESCHEDULE_SLOT_GONE = "That time slot is no longer available. Here are some other options."
NO_RESCHEDULE_OPTIONS = (
    "I don't see any available appointments that match your preferences. "
    "Would you like me to check different dates, or transfer you to our staff for more options?"
)
RESCHEDULE_SESSION_EXPIRED = (
    "I've lost track of the times I offered you. Let me look up the available times again."
)


class MessageBuilder:
    """Builds messages with dates rendered in the practice timezone."""

    def __init__(self, timezone: Optional[str] = None, location: Optional[str] = None):
        self.tz = ZoneInfo(timezone or settings.practice_timezone)
        self.location = location or settings.practice_location

    def format_date(self, moment: datetime) -> str:
        """e.g. 'Tuesday, March 4, 2025'."""
        local = moment.astimezone(self.tz)
        return f"{local.strftime('%A')}, {local.strftime('%B')} {local.day}, {local.year}"

    def format_time(self, moment: datetime) -> str:
        """12-hour clock, e.g. '2:30 PM'."""
        local = moment.astimezone(self.tz)
        hour = local.hour % 12 or 12
        suffix = "PM" if local.hour >= 12 else "AM"
        return f"{hour}:{local.minute:02d} {suffix}"

    @staticmethod
    def format_type(appointment_type: str) -> str:
        return APPOINTMENT_TYPE_NAMES.get(appointment_type, appointment_type)

    @staticmethod
    def spell_out(confirmation_number: str) -> str:
        """'AB2C-XY9Z' -> 'A B 2 C - X Y 9 Z'."""
        return " ".join(confirmation_number)

    def confirmation_protocol(
        self,
        slot: TimeSlot,
        appointment_type: str,
        duration: int,
        instructions: list[str],
    ) -> str:
        lines = [
            "Let me confirm your appointment details:",
            f"- {self.format_type(appointment_type)}",
            f"- Date: {self.format_date(slot.datetime)}",
            f"- Time: {self.format_time(slot.datetime)}",
            f"- Duration: About {duration} minutes",
        ]
        if slot.practitioner:
            lines.append(f"- With: {slot.practitioner}")
        lines.extend(f"- {line}" for line in instructions)
        lines.append("")
        lines.append('Is this correct? Please say "yes" to confirm or "no" to make changes.')
        return "\n".join(lines)

    def booking_success(self, record: ConfirmationRecord) -> str:
        parts = [
            f"Perfect! I've booked your appointment for {self.format_date(record.datetime)} "
            f"at {self.format_time(record.datetime)}.",
            f"Your confirmation number is {record.confirmation_number}.",
            f"I'll repeat that slowly: {self.spell_out(record.confirmation_number)}.",
        ]
        if record.special_instructions:
            parts.append(". ".join(record.special_instructions) + ".")
        parts.append(
            f"We'll see you at {record.location or self.location}. "
            "Is there anything else I can help you with?"
        )
        return "\n".join(parts)

    def slot_list(self, slots: list[TimeSlot], intro: Optional[str] = None) -> str:
        if not slots:
            return NO_SLOTS
        options = []
        for index, slot in enumerate(slots, start=1):
            options.append(
                f"Option {index}: {self.format_date(slot.datetime)} at "
                f"{self.format_time(slot.datetime)} with {slot.practitioner}"
            )
        intro = intro or "I found these available times."
        return f"{intro} " + ". ".join(options) + ". Which one works best for you?"

    def appointment_summary(self, appointment: AppointmentDetails) -> str:
        with_whom = f" with {appointment.practitioner_name}" if appointment.practitioner_name else ""
        return (
            f"your {self.format_type(appointment.type)} on {self.format_date(appointment.datetime)} "
            f"at {self.format_time(appointment.datetime)}{with_whom}"
        )

    def cancellation_success(self, appointment: AppointmentDetails, fee: float) -> str:
        message = f"I've cancelled {self.appointment_summary(appointment)}."
        if fee > 0:
            message += (
                f" Because this is within our cancellation window, "
                f"a ${fee:.0f} cancellation fee applies."
            )
        return message + " Would you like to schedule a new appointment?"

    def reschedule_success(self, appointment: AppointmentDetails, confirmation_number: str) -> str:
        return (
            f"All set! I've moved your appointment to {self.format_date(appointment.datetime)} "
            f"at {self.format_time(appointment.datetime)}. "
            f"Your new confirmation number is {confirmation_number}. "
            f"I'll repeat that slowly: {self.spell_out(confirmation_number)}."
        )

    @staticmethod
    def insufficient_notice(minimum_hours: int, hours_until: float) -> str:
        return (
            f"Appointments need at least {minimum_hours} hours notice to reschedule, "
            f"and yours is in about {max(int(round(hours_until)), 0)} hours. "
            "Let me transfer you to our office staff, who can help with short-notice changes."
        )

    def reschedule_options(self, appointment: AppointmentDetails, slots: list[TimeSlot]) -> str:
        intro = (
            f"I can help you reschedule {self.appointment_summary(appointment)}. "
            "Here are some available options."
        )
        return self.slot_list(slots, intro=intro)

    def same_type(self, appointment_type: str) -> str:
        return (
            f"Your appointment is already a {self.format_type(appointment_type)}. "
            "Would you like to make a different change?"
        )

    def provider_cannot_handle(self, practitioner_name: str, appointment_type: str) -> str:
        who = practitioner_name or "Your provider"
        return (
            f"{who} doesn't see patients for a {self.format_type(appointment_type)}. "
            "Would you like me to find a different provider, or keep your current appointment?"
        )

    def duration_does_not_fit(self, appointment_type: str, minutes: int) -> str:
        return (
            f"A {self.format_type(appointment_type)} needs about {minutes} minutes, "
            "and your current time doesn't have that much room. "
            "Would you like me to help you find a longer time?"
        )

    def type_change_success(self, appointment: AppointmentDetails) -> str:
        return (
            f"I've changed your appointment to a {self.format_type(appointment.type)}. "
            f"It's still on {self.format_date(appointment.datetime)} "
            f"at {self.format_time(appointment.datetime)}."
        )

    def waitlist_offer(self, patient_name: str, slot: TimeSlot, deadline: datetime) -> str:
        greeting = f"Hello {patient_name}! " if patient_name else "Hello! "
        return (
            f"{greeting}Good news: an appointment opened up on {self.format_date(slot.datetime)} "
            f"at {self.format_time(slot.datetime)} with {slot.practitioner}. "
            f"Please reply by {self.format_time(deadline)} if you'd like it."
        )

    def reminder(self, appointment: AppointmentDetails) -> str:
        return (
            f"Hello! This is a friendly reminder that you have an appointment on "
            f"{self.format_date(appointment.datetime)} at {self.format_time(appointment.datetime)}"
            f"{' with ' + appointment.practitioner_name if appointment.practitioner_name else ''} "
            f"at {self.location}. Please call us if you need to make changes."
        )
