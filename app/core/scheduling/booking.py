"""
Booking Transaction Manager.

One booking attempt runs as an auditable unit:

1. persist a pending transaction (5 minute TTL)
2. take a short exclusive lease on the slot
3. re-read the slot under the lease and confirm it is still free
4. create the appointment, issue a confirmation number, store the
   confirmation, invalidate availability for the date
5. on failure after creation started, cancel whatever was created

A successful booking keeps its lease until the TTL runs out, so a caller
reading a stale copy of the slot cannot take it straight back.

Keys:
- booking:transaction:{id}
- booking:confirmation:{number} (90 days)
- patient:{id}:confirmations (set, 90 days)
- appointment:{id} (30 days)
- slot:lease:{slot_id} (30 seconds)
"""

import json
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.redis import key
from app.infra.scheduler import JobScheduler
from .availability import AvailabilityEngine
from .conflicts import ConflictDetector
from .emr_client import EMRClient
from .errors import AppointmentConflictError, CircuitOpenError, EMRError
from .messages import (
    BOOKING_FAILED,
    SERVICE_UNAVAILABLE,
    SLOT_TAKEN,
    SLOT_TAKEN_NO_ALTERNATIVES,
    MessageBuilder,
)
from .types import (
    AppointmentDetails,
    BookingRequest,
    BookingResponse,
    BookingTransaction,
    ConfirmationRecord,
    Slot,
    SlotStatus,
    TimeSlot,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

CONFIRMATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CONFIRMATION_LENGTH = 8
CONFIRMATION_PATTERN = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$")
REMINDER_JOB = "appointment_reminder"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def generate_confirmation_number() -> str:
    """Random ``XXXX-XXXX`` code without 0/O/1/I look-alikes."""
    chars = "".join(secrets.choice(CONFIRMATION_ALPHABET) for _ in range(CONFIRMATION_LENGTH))
    return f"{chars[:4]}-{chars[4:]}"


def normalize_confirmation_number(value: str) -> Optional[str]:
    """Uppercase and re-hyphenate spoken input; None if it cannot be valid."""
    compact = re.sub(r"[^A-Za-z0-9]", "", value or "").upper()
    if len(compact) != CONFIRMATION_LENGTH:
        return None
    formatted = f"{compact[:4]}-{compact[4:]}"
    return formatted if CONFIRMATION_PATTERN.match(formatted) else None


class BookingManager:
    """Runs booking attempts and owns confirmation records."""

    def __init__(
        self,
        emr_client: EMRClient,
        redis_client: Optional[Redis],
        availability: AvailabilityEngine,
        conflicts: Optional[ConflictDetector] = None,
        scheduler: Optional[JobScheduler] = None,
        messages: Optional[MessageBuilder] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.emr = emr_client
        self.redis = redis_client
        self.availability = availability
        self.conflicts = conflicts or ConflictDetector(availability)
        self.scheduler = scheduler
        self.messages = messages or MessageBuilder()
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._local_leases: dict[str, tuple[str, datetime]] = {}

        self.transaction_ttl = settings.booking_transaction_ttl
        self.confirmation_ttl = settings.confirmation_ttl_days * 86400
        self.appointment_ttl = settings.appointment_record_ttl_days * 86400
        self.lease_ttl = settings.slot_lease_ttl

    # === Booking ===

    async def book(self, request: BookingRequest) -> BookingResponse:
        """Run one booking attempt. Never raises for EMR failures."""
        transaction = await self._begin_transaction(request)
        self._metrics.increment("booking.attempts")

        lease = await self.acquire_lease(request.slot_id)
        if lease is None:
            return await self._conflict(transaction, request, "Slot is being booked by another caller")

        booked = False
        try:
            try:
                slot = await self.emr.get_slot(request.slot_id)
            except CircuitOpenError as e:
                await self._finish_transaction(transaction, TransactionStatus.FAILED, error=str(e))
                self._metrics.increment("booking.failures", reason="circuit_open")
                return BookingResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
            except EMRError as e:
                logger.error(f"Slot check failed for {request.slot_id}: {e}")
                await self._finish_transaction(transaction, TransactionStatus.FAILED, error=str(e))
                self._metrics.increment("booking.failures", reason="emr_error")
                return BookingResponse(success=False, message=BOOKING_FAILED, error=str(e))

            if slot is None or slot.status != SlotStatus.FREE:
                return await self._conflict(transaction, request, "Slot no longer available")

            response = await self._create(transaction, request, slot)
            booked = response.success
            return response

        finally:
            # The winner holds the slot until the lease expires
            if not booked:
                await self.release_lease(request.slot_id, lease)

    async def _create(
        self,
        transaction: BookingTransaction,
        request: BookingRequest,
        slot: Slot,
    ) -> BookingResponse:
        appointment: Optional[AppointmentDetails] = None
        record: Optional[ConfirmationRecord] = None
        try:
            transaction.attempts += 1
            confirmation_number = await self.new_confirmation_number()
            duration = self.availability.rules.duration_for(request.appointment_type)
            practitioner_id = slot.practitioner_id or request.practitioner_id or ""

            try:
                appointment = await self.emr.create_appointment(
                    start=slot.start,
                    end=slot.start + timedelta(minutes=duration),
                    patient_id=request.patient_id,
                    practitioner_id=practitioner_id,
                    appointment_type=request.appointment_type,
                    confirmation_number=confirmation_number,
                    slot_id=request.slot_id,
                    description=request.reason,
                )
            except AppointmentConflictError as e:
                logger.info(f"Appointment creation rejected as conflict for slot {request.slot_id}")
                return await self._conflict(transaction, request, str(e), requested=slot.start)

            appointment.confirmation_number = confirmation_number
            appointment.duration = duration
            appointment.special_requirements = request.special_requirements.labels()
            appointment.reason = request.reason
            appointment.practitioner_name = await self._practitioner_name(practitioner_id)
            appointment.patient_name = await self._patient_name(request.patient_id)

            record = ConfirmationRecord(
                confirmation_number=confirmation_number,
                appointment_id=appointment.id,
                patient_id=request.patient_id,
                patient_name=appointment.patient_name,
                datetime=appointment.datetime,
                practitioner=appointment.practitioner_name or "Available Provider",
                appointment_type=request.appointment_type,
                duration=duration,
                location=self.messages.location,
                special_instructions=request.special_requirements.instructions(),
                created_at=self._clock(),
            )
            await self.save_confirmation(record)
            await self.save_appointment(appointment)
            await self.availability.invalidate_datetime(appointment.datetime)

            transaction.appointment_id = appointment.id
            await self._finish_transaction(transaction, TransactionStatus.CONFIRMED)
            await self.schedule_reminder(appointment)

            self._metrics.increment("booking.successes")
            logger.info(
                f"Appointment booked: {appointment.id} confirmation={confirmation_number} "
                f"patient={request.patient_id}"
            )
            return BookingResponse(
                success=True,
                message=self.messages.booking_success(record),
                appointment_id=appointment.id,
                confirmation_number=confirmation_number,
            )

        except Exception as e:
            logger.error(f"Booking failed for slot {request.slot_id}: {e}")
            if appointment is not None:
                await self._rollback(appointment.id, record)
                await self._finish_transaction(transaction, TransactionStatus.ROLLED_BACK, error=str(e))
            else:
                await self._finish_transaction(transaction, TransactionStatus.FAILED, error=str(e))
            self._metrics.increment("booking.failures", reason="exception")
            message = SERVICE_UNAVAILABLE if isinstance(e, CircuitOpenError) else BOOKING_FAILED
            return BookingResponse(success=False, message=message, error=str(e))

    async def _conflict(
        self,
        transaction: BookingTransaction,
        request: BookingRequest,
        reason: str,
        requested: Optional[datetime] = None,
    ) -> BookingResponse:
        await self._finish_transaction(transaction, TransactionStatus.FAILED, error=reason)
        self._metrics.increment("booking.conflicts")

        alternatives: list[TimeSlot] = []
        requested = requested or request.requested_datetime
        if requested is not None:
            try:
                alternatives = await self.conflicts.find_alternatives(
                    requested,
                    request.appointment_type,
                    practitioner_id=request.practitioner_id,
                    exclude_slot_id=request.slot_id,
                )
            except (EMRError, CircuitOpenError) as e:
                logger.warning(f"Could not load alternatives for slot {request.slot_id}: {e}")

        return BookingResponse(
            success=False,
            message=SLOT_TAKEN if alternatives else SLOT_TAKEN_NO_ALTERNATIVES,
            alternatives=alternatives,
            error="Slot conflict detected",
        )

    async def _rollback(self, appointment_id: str, record: Optional[ConfirmationRecord]) -> None:
        try:
            await self.emr.cancel_appointment(appointment_id, reason="Booking rolled back")
            logger.info(f"Rolled back appointment {appointment_id}")
        except Exception as e:
            self._metrics.increment("booking.rollback_failures")
            logger.error(f"Rollback failed for appointment {appointment_id}: {e}")

        if record is not None:
            try:
                await self.delete_confirmation(record)
            except RedisError as e:
                logger.warning(f"Could not remove confirmation {record.confirmation_number}: {e}")

    async def _practitioner_name(self, practitioner_id: str) -> str:
        if not practitioner_id:
            return ""
        try:
            practitioner = await self.availability.get_practitioner(practitioner_id)
        except (EMRError, CircuitOpenError) as e:
            logger.warning(f"Practitioner lookup failed for {practitioner_id}: {e}")
            return ""
        return practitioner.name if practitioner else ""

    async def _patient_name(self, patient_id: str) -> str:
        try:
            patient = await self.emr.get_patient(patient_id)
        except (EMRError, CircuitOpenError) as e:
            logger.warning(f"Patient lookup failed for {patient_id}: {e}")
            return ""
        return patient.name if patient else ""

    # === Transactions ===

    async def _begin_transaction(self, request: BookingRequest) -> BookingTransaction:
        now = self._clock()
        transaction = BookingTransaction(
            transaction_id=str(uuid4()),
            request=request,
            created_at=now,
            expires_at=now + timedelta(seconds=self.transaction_ttl),
        )
        await self._save_transaction(transaction)
        return transaction

    async def _finish_transaction(
        self,
        transaction: BookingTransaction,
        status: TransactionStatus,
        error: Optional[str] = None,
    ) -> None:
        transaction.status = status
        transaction.error = error
        if status == TransactionStatus.CONFIRMED:
            transaction.confirmed_at = self._clock()
        await self._save_transaction(transaction)

    async def _save_transaction(self, transaction: BookingTransaction) -> None:
        if self.redis is None:
            return
        # Keep the original expiry; a transaction never outlives its window
        remaining = int((transaction.expires_at - self._clock()).total_seconds())
        try:
            await self.redis.setex(
                key("booking", "transaction", transaction.transaction_id),
                max(remaining, 1),
                json.dumps(transaction.to_dict()),
            )
        except RedisError as e:
            logger.warning(f"Could not persist transaction {transaction.transaction_id}: {e}")

    async def get_transaction(self, transaction_id: str) -> Optional[BookingTransaction]:
        if self.redis is None:
            return None
        raw = await self.redis.get(key("booking", "transaction", transaction_id))
        return BookingTransaction.from_dict(json.loads(raw)) if raw else None

    # === Slot lease ===

    async def acquire_lease(self, slot_id: str) -> Optional[str]:
        """Reserve ``slot_id`` for the duration of one booking. None if already held."""
        token = secrets.token_hex(16)
        if self.redis is None:
            now = self._clock()
            held = self._local_leases.get(slot_id)
            if held is not None and held[1] > now:
                return None
            self._local_leases[slot_id] = (token, now + timedelta(seconds=self.lease_ttl))
            return token
        acquired = await self.redis.set(
            key("slot", "lease", slot_id), token, nx=True, ex=self.lease_ttl
        )
        return token if acquired else None

    async def release_lease(self, slot_id: str, token: Optional[str]) -> None:
        """Release a lease if ``token`` still owns it."""
        if token is None:
            return
        if self.redis is None:
            held = self._local_leases.get(slot_id)
            if held is not None and held[0] == token:
                del self._local_leases[slot_id]
            return
        lease_key = key("slot", "lease", slot_id)
        try:
            if await self.redis.get(lease_key) == token:
                await self.redis.delete(lease_key)
        except RedisError as e:
            logger.warning(f"Could not release lease on slot {slot_id}: {e}")

    # === Confirmations ===

    async def new_confirmation_number(self, max_tries: int = 10) -> str:
        """Generate a number not already in the confirmation store."""
        number = generate_confirmation_number()
        if self.redis is None:
            return number
        for _ in range(max_tries):
            if not await self.redis.exists(key("booking", "confirmation", number)):
                return number
            logger.debug(f"Confirmation number collision: {number}")
            number = generate_confirmation_number()
        return number

    async def save_confirmation(self, record: ConfirmationRecord) -> None:
        if self.redis is None:
            return
        patient_key = key("patient", record.patient_id, "confirmations")
        await self.redis.setex(
            key("booking", "confirmation", record.confirmation_number),
            self.confirmation_ttl,
            json.dumps(record.to_dict()),
        )
        await self.redis.sadd(patient_key, record.confirmation_number)
        await self.redis.expire(patient_key, self.confirmation_ttl)

    async def get_confirmation(self, confirmation_number: str) -> Optional[ConfirmationRecord]:
        """Look up a confirmation. Malformed or unknown numbers return None."""
        number = normalize_confirmation_number(confirmation_number)
        if number is None or self.redis is None:
            return None
        raw = await self.redis.get(key("booking", "confirmation", number))
        return ConfirmationRecord.from_dict(json.loads(raw)) if raw else None

    async def get_patient_confirmations(self, patient_id: str) -> list[ConfirmationRecord]:
        if self.redis is None:
            return []
        numbers = await self.redis.smembers(key("patient", patient_id, "confirmations"))
        records = []
        for number in sorted(numbers):
            record = await self.get_confirmation(number)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.datetime)
        return records

    async def delete_confirmation(self, record: ConfirmationRecord) -> None:
        if self.redis is None:
            return
        await self.redis.delete(key("booking", "confirmation", record.confirmation_number))
        await self.redis.srem(
            key("patient", record.patient_id, "confirmations"), record.confirmation_number
        )

    # === Appointment records ===

    async def save_appointment(self, appointment: AppointmentDetails) -> None:
        if self.redis is None:
            return
        await self.redis.setex(
            key("appointment", appointment.id),
            self.appointment_ttl,
            json.dumps(appointment.to_dict()),
        )

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentDetails]:
        """Appointment from the local record, falling back to the EMR."""
        if self.redis is not None:
            raw = await self.redis.get(key("appointment", appointment_id))
            if raw:
                return AppointmentDetails.from_dict(json.loads(raw))
        return await self.emr.get_appointment(appointment_id)

    # === Reminders ===

    @staticmethod
    def reminder_job_id(appointment_id: str) -> str:
        return f"reminder:{appointment_id}"

    async def schedule_reminder(self, appointment: AppointmentDetails) -> Optional[str]:
        """Schedule (or move) the reminder sent ahead of the appointment."""
        if self.scheduler is None:
            return None
        due = appointment.datetime - timedelta(hours=settings.reminder_hours_before)
        if due <= self._clock():
            return None
        return await self.scheduler.schedule(
            REMINDER_JOB,
            due,
            {"appointment_id": appointment.id},
            job_id=self.reminder_job_id(appointment.id),
        )

    async def cancel_reminder(self, appointment_id: str) -> bool:
        if self.scheduler is None:
            return False
        return await self.scheduler.cancel(self.reminder_job_id(appointment_id))
