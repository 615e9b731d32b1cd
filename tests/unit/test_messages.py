"""Tests for patient-facing message formatting."""

from datetime import datetime, timedelta, timezone

from app.core.scheduling.messages import NO_SLOTS, MessageBuilder
from app.core.scheduling.types import ConfirmationRecord
from tests.conftest import NOW
from tests.factories import make_appointment, make_offer


class TestFormatting:
    def test_date_and_time(self, messages):
        moment = datetime(2030, 3, 5, 9, 5, tzinfo=timezone.utc)

        assert messages.format_date(moment) == "Tuesday, March 5, 2030"
        assert messages.format_time(moment) == "9:05 AM"
        assert messages.format_time(moment.replace(hour=0)) == "12:05 AM"
        assert messages.format_time(moment.replace(hour=12)) == "12:05 PM"

    def test_practice_timezone(self):
        builder = MessageBuilder(timezone="America/New_York", location="Main Office")

        assert builder.format_time(NOW) == "9:00 AM"

    def test_type_names(self, messages):
        assert messages.format_type("follow-up") == "Follow-up Appointment"
        assert messages.format_type("consult") == "consult"

    def test_spell_out(self, messages):
        assert messages.spell_out("AB2C-XY9Z") == "A B 2 C - X Y 9 Z"


class TestMessages:
    """Test MessageBuilder templates."""

    def test_booking_success(self, messages):
        record = ConfirmationRecord(
            confirmation_number="ABCD-2345",
            appointment_id="appt-1",
            patient_id="patient-1",
            datetime=NOW,
            practitioner="Dr. Jane Smith",
            appointment_type="routine",
            duration=60,
            special_instructions=["Please arrive 15 minutes early"],
        )

        message = messages.booking_success(record)

        assert "Monday, March 4, 2030 at 2:00 PM" in message
        assert "Your confirmation number is ABCD-2345." in message
        assert "A B C D - 2 3 4 5" in message
        assert "Please arrive 15 minutes early." in message
        assert "We'll see you at Main Office." in message

    def test_slot_list(self, messages):
        slots = [make_offer("s-1", NOW), make_offer("s-2", NOW + timedelta(days=1))]

        message = messages.slot_list(slots)

        assert message.startswith("I found these available times. Option 1: Monday, March 4, 2030")
        assert "Option 2: Tuesday, March 5, 2030 at 2:00 PM with Dr. Jane Smith" in message
        assert message.endswith("Which one works best for you?")

    def test_empty_slot_list(self, messages):
        assert messages.slot_list([]) == NO_SLOTS

    def test_cancellation_with_fee(self, messages):
        message = messages.cancellation_success(make_appointment(NOW), 25.0)

        assert message.startswith("I've cancelled your Routine Eye Exam on Monday, March 4, 2030")
        assert "a $25 cancellation fee applies" in message

    def test_cancellation_without_fee(self, messages):
        assert "fee" not in messages.cancellation_success(make_appointment(NOW), 0)

    def test_insufficient_notice_never_negative(self, messages):
        assert "yours is in about 0 hours" in messages.insufficient_notice(24, -3.2)
        assert "yours is in about 5 hours" in messages.insufficient_notice(24, 4.6)

    def test_provider_cannot_handle_without_name(self, messages):
        message = messages.provider_cannot_handle("", "urgent")

        assert message.startswith("Your provider doesn't see patients for a Urgent Care Visit")

    def test_waitlist_offer(self, messages):
        message = messages.waitlist_offer("Pat", make_offer("s-1", NOW), NOW + timedelta(hours=2))

        assert message.startswith("Hello Pat! Good news")
        assert "Please reply by 4:00 PM" in message

    def test_reminder(self, messages):
        message = messages.reminder(make_appointment(NOW))

        assert "Monday, March 4, 2030 at 2:00 PM with Dr. Jane Smith at Main Office." in message
