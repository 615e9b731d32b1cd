"""
Tests for the booking transaction manager.

Covers the happy path, slot conflicts, the exclusive slot lease,
rollback after partial failure and confirmation numbers.
"""

import asyncio
import json
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.core.scheduling.availability import AvailabilityEngine, AvailabilityQuery
from app.core.scheduling.booking import (
    CONFIRMATION_ALPHABET,
    CONFIRMATION_PATTERN,
    BookingManager,
    generate_confirmation_number,
    normalize_confirmation_number,
)
from app.core.scheduling.errors import AppointmentConflictError, CircuitOpenError
from app.core.scheduling.messages import (
    BOOKING_FAILED,
    SERVICE_UNAVAILABLE,
    SLOT_TAKEN,
    SLOT_TAKEN_NO_ALTERNATIVES,
)
from app.core.scheduling.types import (
    BookingRequest,
    PatientRecord,
    SlotStatus,
    SpecialRequirements,
    TransactionStatus,
)
from app.infra.redis import key
from app.infra.scheduler import JobScheduler
from tests.factories import FakeEMR, make_slot

THU_9 = datetime(2030, 3, 7, 9, 0, tzinfo=timezone.utc)
THU_10 = datetime(2030, 3, 7, 10, 0, tzinfo=timezone.utc)
THU_11 = datetime(2030, 3, 7, 11, 0, tzinfo=timezone.utc)
TUE_9 = datetime(2030, 3, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def emr():
    return FakeEMR(
        slots=[
            make_slot("slot-1", THU_10),
            make_slot("slot-2", THU_11),
            make_slot("slot-3", THU_9),
            make_slot("slot-tue", TUE_9),
        ],
        patients=[PatientRecord(id="patient-1", first_name="Pat", last_name="Doe")],
    )


@pytest.fixture
def scheduler(fake_redis, clock, metrics):
    return JobScheduler(fake_redis, clock=clock, metrics=metrics)


@pytest.fixture
def manager(emr, fake_redis, rules, messages, metrics, clock, scheduler):
    availability = AvailabilityEngine(emr, fake_redis, rules=rules, metrics=metrics, clock=clock)
    return BookingManager(
        emr,
        fake_redis,
        availability,
        scheduler=scheduler,
        messages=messages,
        metrics=metrics,
        clock=clock,
    )


def booking_request(slot_id: str = "slot-1", patient_id: str = "patient-1", **kwargs) -> BookingRequest:
    kwargs.setdefault("requested_datetime", THU_10)
    return BookingRequest(
        slot_id=slot_id,
        patient_id=patient_id,
        appointment_type="routine",
        conversation_id="conv-1",
        **kwargs,
    )


def stored_transactions(fake_redis) -> list[dict]:
    prefix = key("booking", "transaction", "")
    return [json.loads(v) for k, v in fake_redis.strings.items() if k.startswith(prefix)]


class TestSuccessfulBooking:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_books_and_stores_confirmation(self, manager, emr, metrics):
        response = await manager.book(booking_request())

        assert response.success is True
        assert response.appointment_id == "appt-100"
        assert CONFIRMATION_PATTERN.match(response.confirmation_number)
        assert emr.slots["slot-1"].status == SlotStatus.BUSY
        assert metrics.counter("booking.successes") == 1

        record = await manager.get_confirmation(response.confirmation_number)
        assert record.appointment_id == "appt-100"
        assert record.patient_name == "Pat Doe"
        assert record.practitioner == "Dr. Jane Smith"
        assert record.location == "Main Office"
        assert record.duration == 60

    @pytest.mark.asyncio
    async def test_booked_slot_leaves_availability(self, manager):
        query = AvailabilityQuery(start_date=date(2030, 3, 7), end_date=date(2030, 3, 7), appointment_type="routine")
        before = await manager.availability.get_available_slots(query)

        await manager.book(booking_request())
        after = await manager.availability.get_available_slots(query)

        assert "slot-1" in [s.slot_id for s in before]
        assert "slot-1" not in [s.slot_id for s in after]

    @pytest.mark.asyncio
    async def test_success_message_spells_confirmation(self, manager):
        response = await manager.book(booking_request())

        number = response.confirmation_number
        assert number in response.message
        assert " ".join(number) in response.message
        assert "Thursday, March 7, 2030" in response.message
        assert "10:00 AM" in response.message

    @pytest.mark.asyncio
    async def test_transaction_confirmed_with_ttl(self, manager, fake_redis):
        await manager.book(booking_request())

        [transaction] = stored_transactions(fake_redis)
        assert transaction["status"] == TransactionStatus.CONFIRMED.value
        assert transaction["appointment_id"] == "appt-100"
        assert transaction["attempts"] == 1
        stored_key = key("booking", "transaction", transaction["transaction_id"])
        assert fake_redis.ttls[stored_key] == 300

    @pytest.mark.asyncio
    async def test_special_requirements_recorded(self, manager):
        requirements = SpecialRequirements(dilation_needed=True)
        response = await manager.book(booking_request(special_requirements=requirements))

        record = await manager.get_confirmation(response.confirmation_number)
        appointment = await manager.get_appointment(response.appointment_id)
        assert record.special_instructions == requirements.instructions()
        assert appointment.special_requirements == ["dilation"]
        assert "drive you home" in response.message

    @pytest.mark.asyncio
    async def test_reminder_scheduled_a_day_ahead(self, manager, scheduler):
        response = await manager.book(booking_request())

        job = await scheduler.get(f"reminder:{response.appointment_id}")
        assert job.kind == "appointment_reminder"
        assert job.due_at == THU_10 - timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_no_reminder_inside_reminder_window(self, manager, scheduler):
        response = await manager.book(booking_request("slot-tue", requested_datetime=TUE_9))

        assert response.success is True
        assert await scheduler.get(f"reminder:{response.appointment_id}") is None

    @pytest.mark.asyncio
    async def test_winner_keeps_lease_after_booking(self, manager, fake_redis):
        await manager.book(booking_request())

        lease_key = key("slot", "lease", "slot-1")
        assert lease_key in fake_redis.strings
        assert fake_redis.ttls[lease_key] == 30
        assert await manager.acquire_lease("slot-1") is None


class TestConflicts:
    """Test slot conflicts and alternatives."""

    @pytest.mark.asyncio
    async def test_busy_slot_returns_alternatives(self, manager, emr, metrics):
        emr.slots["slot-1"].status = SlotStatus.BUSY

        response = await manager.book(booking_request())

        assert response.success is False
        assert response.message == SLOT_TAKEN
        assert [a.slot_id for a in response.alternatives] == ["slot-3", "slot-2", "slot-tue"]
        assert emr.created == []
        assert metrics.counter("booking.conflicts") == 1

    @pytest.mark.asyncio
    async def test_missing_slot_is_a_conflict(self, manager):
        response = await manager.book(booking_request("gone"))

        assert response.success is False
        assert response.error == "Slot conflict detected"
        assert "gone" not in [a.slot_id for a in response.alternatives]

    @pytest.mark.asyncio
    async def test_no_alternatives_without_requested_time(self, manager, emr):
        emr.slots["slot-1"].status = SlotStatus.BUSY

        response = await manager.book(booking_request(requested_datetime=None))

        assert response.message == SLOT_TAKEN_NO_ALTERNATIVES
        assert response.alternatives == []

    @pytest.mark.asyncio
    async def test_held_lease_blocks_second_caller(self, manager, emr):
        token = await manager.acquire_lease("slot-1")
        assert token is not None

        response = await manager.book(booking_request())

        assert response.success is False
        assert emr.created == []

    @pytest.mark.asyncio
    async def test_concurrent_bookings_at_most_one_wins(self, manager, emr):
        """Two callers racing for the same slot produce exactly one appointment."""
        results = await asyncio.gather(
            manager.book(booking_request(patient_id="patient-1")),
            manager.book(booking_request(patient_id="patient-2")),
        )

        assert sum(1 for r in results if r.success) == 1
        assert len(emr.created) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error == "Slot conflict detected"

    @pytest.mark.asyncio
    async def test_stale_slot_check_cannot_double_book(self, manager, emr):
        """A caller whose slot read lags behind the winner still loses."""
        emr.enforce_slot_conflicts = False
        winner_done = asyncio.Event()
        reads = []
        original_get_slot = emr.get_slot

        async def slow_second_read(slot_id):
            snapshot = replace(await original_get_slot(slot_id))
            reads.append(slot_id)
            if len(reads) == 2:
                await winner_done.wait()
            return snapshot

        emr.get_slot = slow_second_read

        async def first_caller():
            try:
                return await manager.book(booking_request(patient_id="patient-1"))
            finally:
                winner_done.set()

        results = await asyncio.gather(
            first_caller(),
            manager.book(booking_request(patient_id="patient-2")),
        )

        assert [r.success for r in results] == [True, False]
        assert len(emr.created) == 1

    @pytest.mark.asyncio
    async def test_late_caller_after_booking_is_refused(self, manager, emr):
        emr.enforce_slot_conflicts = False
        await manager.book(booking_request(patient_id="patient-1"))

        response = await manager.book(booking_request(patient_id="patient-2"))

        assert response.success is False
        assert response.error == "Slot conflict detected"
        assert len(emr.created) == 1

    @pytest.mark.asyncio
    async def test_conflict_from_create_releases_lease(self, manager, emr, fake_redis):
        emr.create_appointment = AsyncMock(side_effect=AppointmentConflictError("taken", 409))

        response = await manager.book(booking_request())

        assert response.success is False
        assert response.message == SLOT_TAKEN
        assert "slot-1" not in [a.slot_id for a in response.alternatives]
        assert key("slot", "lease", "slot-1") not in fake_redis.strings


class TestFailures:
    """Test EMR failures and rollback."""

    @pytest.mark.asyncio
    async def test_circuit_open_on_slot_check(self, manager, emr, metrics, fake_redis):
        emr.get_slot = AsyncMock(side_effect=CircuitOpenError("emr"))

        response = await manager.book(booking_request())

        assert response.success is False
        assert response.message == SERVICE_UNAVAILABLE
        assert metrics.counter("booking.failures", reason="circuit_open") == 1
        [transaction] = stored_transactions(fake_redis)
        assert transaction["status"] == TransactionStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_circuit_open_during_create(self, manager, emr, fake_redis):
        emr.create_appointment = AsyncMock(side_effect=CircuitOpenError("emr"))

        response = await manager.book(booking_request())

        assert response.message == SERVICE_UNAVAILABLE
        assert emr.cancelled == []
        assert key("slot", "lease", "slot-1") not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_rollback_after_partial_failure(self, manager, emr, fake_redis, metrics):
        """A failure after creation cancels the appointment and drops the confirmation."""
        manager.save_appointment = AsyncMock(side_effect=RuntimeError("disk full"))

        response = await manager.book(booking_request())

        assert response.success is False
        assert response.message == BOOKING_FAILED
        assert emr.cancelled == ["appt-100"]
        assert not any(k.startswith(key("booking", "confirmation")) for k in fake_redis.strings)
        [transaction] = stored_transactions(fake_redis)
        assert transaction["status"] == TransactionStatus.ROLLED_BACK.value
        assert metrics.counter("booking.failures", reason="exception") == 1

    @pytest.mark.asyncio
    async def test_failed_rollback_is_counted(self, manager, emr, metrics):
        manager.save_appointment = AsyncMock(side_effect=RuntimeError("disk full"))
        emr.cancel_appointment = AsyncMock(side_effect=CircuitOpenError("emr"))

        response = await manager.book(booking_request())

        assert response.success is False
        assert metrics.counter("booking.rollback_failures") == 1


class TestConfirmationNumbers:
    """Test confirmation number generation and lookup."""

    def test_format(self):
        for _ in range(50):
            number = generate_confirmation_number()
            assert CONFIRMATION_PATTERN.match(number)
            assert all(ch in CONFIRMATION_ALPHABET for ch in number.replace("-", ""))

    @pytest.mark.parametrize(
        "spoken, expected",
        [
            ("ab2c-xy9z", "AB2C-XY9Z"),
            ("AB2C XY9Z", "AB2C-XY9Z"),
            ("ab2cxy9z", "AB2C-XY9Z"),
            ("ab2c", None),
            ("", None),
        ],
    )
    def test_normalize(self, spoken, expected):
        assert normalize_confirmation_number(spoken) == expected

    @pytest.mark.asyncio
    async def test_collision_regenerates(self, manager, fake_redis):
        fake_redis.strings[key("booking", "confirmation", "AAAA-AAAA")] = "{}"

        with patch(
            "app.core.scheduling.booking.generate_confirmation_number",
            side_effect=["AAAA-AAAA", "BBBB-BBBB"],
        ):
            number = await manager.new_confirmation_number()

        assert number == "BBBB-BBBB"

    @pytest.mark.asyncio
    async def test_lookup_accepts_spoken_form(self, manager):
        response = await manager.book(booking_request())

        spoken = response.confirmation_number.replace("-", " ").lower()
        record = await manager.get_confirmation(spoken)

        assert record.confirmation_number == response.confirmation_number

    @pytest.mark.asyncio
    async def test_unknown_or_malformed(self, manager):
        assert await manager.get_confirmation("ZZZZ-ZZZZ") is None
        assert await manager.get_confirmation("nope") is None

    @pytest.mark.asyncio
    async def test_patient_confirmations_sorted(self, manager):
        later = await manager.book(booking_request("slot-2"))
        earlier = await manager.book(booking_request("slot-3"))

        records = await manager.get_patient_confirmations("patient-1")

        assert [r.confirmation_number for r in records] == [
            earlier.confirmation_number,
            later.confirmation_number,
        ]


class TestLease:
    """Test the slot lease with and without Redis."""

    @pytest.mark.asyncio
    async def test_lease_has_short_ttl(self, manager, fake_redis):
        await manager.acquire_lease("slot-1")

        assert fake_redis.ttls[key("slot", "lease", "slot-1")] == 30

    @pytest.mark.asyncio
    async def test_release_requires_owner_token(self, manager, fake_redis):
        token = await manager.acquire_lease("slot-1")

        await manager.release_lease("slot-1", "someone-else")
        assert await manager.acquire_lease("slot-1") is None

        await manager.release_lease("slot-1", token)
        assert await manager.acquire_lease("slot-1") is not None

    @pytest.mark.asyncio
    async def test_in_process_lease_without_redis(self, emr, rules, metrics, clock):
        availability = AvailabilityEngine(emr, None, rules=rules, metrics=metrics, clock=clock)
        manager = BookingManager(emr, None, availability, metrics=metrics, clock=clock)

        token = await manager.acquire_lease("slot-1")
        assert await manager.acquire_lease("slot-1") is None
        await manager.release_lease("slot-1", token)

        response = await manager.book(booking_request())
        assert response.success is True
        assert await manager.acquire_lease("slot-1") is None

        clock.advance(seconds=31)
        assert await manager.acquire_lease("slot-1") is not None
