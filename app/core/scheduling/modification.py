"""
Modification Orchestrator.

Reschedule, cancel or change the type of an existing appointment. Every
operation first checks that the appointment exists, belongs to the
caller, is still booked and has not started. Every successful change is
written to the change history and invalidates cached availability for
the dates involved.
"""

import json
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.redis import key
from .availability import AvailabilityEngine, AvailabilityQuery
from .booking import BookingManager
from .conflicts import ConflictDetector
from .emr_client import EMRClient
from .errors import AppointmentConflictError, CircuitOpenError, EMRError
from .history import ChangeHistoryRepository
from .messages import (
    ALREADY_CANCELLED,
    APPOINTMENT_NOT_FOUND,
    MODIFICATION_FAILED,
    NO_RESCHEDULE_OPTIONS,
    NOT_YOUR_APPOINTMENT,
    PAST_APPOINTMENT,
    RESCHEDULE_SESSION_EXPIRED,
    RESCHEDULE_SLOT_GONE,
    SERVICE_UNAVAILABLE,
    MessageBuilder,
)
from .types import (
    AppointmentDetails,
    AppointmentStatus,
    ChangeHistory,
    ChangeType,
    ConfirmationRecord,
    ModificationResponse,
    SlotStatus,
    TimeSlot,
)

logger = logging.getLogger(__name__)

RESCHEDULE_LOOKAHEAD_DAYS = 30
MAX_OPTIONS = 3


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class CancellationPolicy:
    """Fee tiers by hours of notice."""

    minimum_notice_hours: int = 24
    less_than_24_hours: float = 25.0
    less_than_48_hours: float = 0.0
    more_than_48_hours: float = 0.0
    no_show_fee: float = 75.0

    @classmethod
    def from_settings(cls) -> "CancellationPolicy":
        return cls(
            minimum_notice_hours=settings.cancellation_minimum_notice_hours,
            less_than_24_hours=settings.fee_less_than_24_hours,
            less_than_48_hours=settings.fee_less_than_48_hours,
            more_than_48_hours=settings.fee_more_than_48_hours,
            no_show_fee=settings.no_show_fee,
        )

    def fee_for(self, hours_until: float) -> float:
        """Fee for cancelling ``hours_until`` hours ahead (negative means past)."""
        if hours_until < 0:
            return self.no_show_fee
        if hours_until < 24:
            return self.less_than_24_hours
        if hours_until < 48:
            return self.less_than_48_hours
        return self.more_than_48_hours


class ModificationOrchestrator:
    """Policy-checked changes to booked appointments."""

    def __init__(
        self,
        emr_client: EMRClient,
        redis_client: Optional[Redis],
        availability: AvailabilityEngine,
        booking: BookingManager,
        history: Optional[ChangeHistoryRepository] = None,
        policy: Optional[CancellationPolicy] = None,
        messages: Optional[MessageBuilder] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.emr = emr_client
        self.redis = redis_client
        self.availability = availability
        self.rules = availability.rules
        self.booking = booking
        self.conflicts = ConflictDetector(availability)
        self.history = history
        self.policy = policy or CancellationPolicy.from_settings()
        self.messages = messages or MessageBuilder()
        self._metrics = metrics or get_metrics()
        self._clock = clock

    # === Preconditions ===

    def hours_until(self, appointment: AppointmentDetails) -> float:
        return (appointment.datetime - self._clock()).total_seconds() / 3600

    async def load_owned(
        self,
        appointment_id: str,
        patient_id: str,
    ) -> tuple[Optional[AppointmentDetails], Optional[ModificationResponse]]:
        """Return the appointment, or a rejection explaining why it can't be changed."""
        appointment = await self.booking.get_appointment(appointment_id)
        if appointment is None:
            return None, ModificationResponse(
                success=False, message=APPOINTMENT_NOT_FOUND, error="Appointment not found"
            )
        if appointment.patient_id != patient_id:
            logger.warning(
                f"Patient {patient_id} attempted to modify appointment {appointment_id} "
                f"owned by another patient"
            )
            return None, ModificationResponse(
                success=False,
                message=NOT_YOUR_APPOINTMENT,
                error="Appointment ownership verification failed",
            )
        if appointment.status != AppointmentStatus.BOOKED:
            return None, ModificationResponse(
                success=False,
                message=ALREADY_CANCELLED,
                error=f"Appointment is {appointment.status.value}",
            )
        if appointment.datetime <= self._clock():
            return None, ModificationResponse(
                success=False, message=PAST_APPOINTMENT, error="Cannot modify past appointment"
            )
        return appointment, None

    # === Dispatch ===

    async def modify(
        self,
        modification_type: str,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        new_datetime: Optional[datetime] = None,
        new_appointment_type: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ModificationResponse:
        if modification_type == "reschedule":
            return await self.reschedule(
                appointment_id, patient_id, conversation_id, preferred_datetime=new_datetime
            )
        if modification_type == "cancel":
            return await self.cancel(appointment_id, patient_id, conversation_id, reason=reason)
        if modification_type == "change_type" and new_appointment_type:
            return await self.change_type(
                appointment_id, patient_id, conversation_id, new_appointment_type, reason=reason
            )
        return ModificationResponse(
            success=False,
            message=(
                "I'm not sure what change you'd like to make. Would you like to "
                "reschedule, cancel, or change the type of your appointment?"
            ),
            error="Unknown modification type",
        )

    # === Reschedule ===

    async def reschedule(
        self,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        preferred_datetime: Optional[datetime] = None,
        date_text: Optional[str] = None,
        time_of_day: Optional[str] = None,
    ) -> ModificationResponse:
        """Offer up to three new times for an appointment."""
        try:
            appointment, rejection = await self.load_owned(appointment_id, patient_id)
            if rejection:
                return rejection

            hours_until = self.hours_until(appointment)
            if hours_until < self.policy.minimum_notice_hours:
                return ModificationResponse(
                    success=False,
                    message=self.messages.insufficient_notice(
                        self.policy.minimum_notice_hours, hours_until
                    ),
                    error="Insufficient notice for rescheduling",
                )

            if date_text:
                start, end = self.availability.resolve_date_range(
                    date_text, RESCHEDULE_LOOKAHEAD_DAYS
                )
            else:
                today = self.availability.today()
                start, end = today + timedelta(days=1), today + timedelta(days=RESCHEDULE_LOOKAHEAD_DAYS)

            offers = await self.availability.get_available_slots(AvailabilityQuery(
                start_date=start,
                end_date=end,
                appointment_type=appointment.type,
                practitioner_id=appointment.practitioner_id or None,
                time_of_day=time_of_day,
            ))
            offers = [o for o in offers if o.datetime != appointment.datetime]
            if preferred_datetime is not None:
                offers.sort(
                    key=lambda o: abs((o.datetime - preferred_datetime).total_seconds())
                )
            options = offers[:MAX_OPTIONS]

            if not options:
                return ModificationResponse(
                    success=False, message=NO_RESCHEDULE_OPTIONS, error="No available slots"
                )

            await self._store_options(conversation_id, appointment.id, options)

            if preferred_datetime is not None:
                free = await self.emr.check_time_available(
                    preferred_datetime,
                    appointment.practitioner_id,
                    appointment.duration,
                    exclude_appointment_id=appointment.id,
                )
                if not free:
                    return ModificationResponse(
                        success=False,
                        message=RESCHEDULE_SLOT_GONE,
                        available_slots=options,
                        requires_confirmation=True,
                        error="Requested time unavailable",
                    )

            return ModificationResponse(
                success=True,
                message=self.messages.reschedule_options(appointment, options),
                updated_appointment=appointment,
                available_slots=options,
                requires_confirmation=True,
            )

        except CircuitOpenError as e:
            return ModificationResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
        except EMRError as e:
            logger.error(f"Failed to find reschedule options for {appointment_id}: {e}")
            return ModificationResponse(success=False, message=MODIFICATION_FAILED, error=str(e))

    async def confirm_reschedule(
        self,
        appointment_id: str,
        patient_id: str,
        slot_id: str,
        conversation_id: str,
    ) -> ModificationResponse:
        """Move the appointment to a previously offered slot."""
        try:
            appointment, rejection = await self.load_owned(appointment_id, patient_id)
            if rejection:
                return rejection

            hours_until = self.hours_until(appointment)
            if hours_until < self.policy.minimum_notice_hours:
                return ModificationResponse(
                    success=False,
                    message=self.messages.insufficient_notice(
                        self.policy.minimum_notice_hours, hours_until
                    ),
                    error="Insufficient notice for rescheduling",
                )

            option = await self._find_option(conversation_id, appointment.id, slot_id)
            if option is None:
                logger.warning(
                    f"Slot {slot_id} was not offered for appointment {appointment.id} "
                    f"in conversation {conversation_id}"
                )
                return ModificationResponse(
                    success=False,
                    message=RESCHEDULE_SESSION_EXPIRED,
                    error="Slot was not offered",
                )

            lease = await self.booking.acquire_lease(slot_id)
            if lease is None:
                return await self._slot_gone(appointment, slot_id, option)

            moved = False
            try:
                slot = await self.emr.get_slot(slot_id)
                if slot is None or slot.status != SlotStatus.FREE:
                    return await self._slot_gone(appointment, slot_id, option)

                rejection_reason = self.rules.rejection_reason(slot.start, appointment.type)
                if rejection_reason is not None:
                    logger.info(f"Slot {slot_id} is not bookable: {rejection_reason}")
                    return await self._slot_gone(appointment, slot_id, option)

                new_start = slot.start
                practitioner_id = slot.practitioner_id or appointment.practitioner_id
                duration = self.rules.duration_for(appointment.type)

                if not await self.emr.check_time_available(
                    new_start, practitioner_id, duration, exclude_appointment_id=appointment.id
                ):
                    return await self._slot_gone(appointment, slot_id, option)

                confirmation_number = await self.booking.new_confirmation_number()
                try:
                    await self.emr.update_appointment(
                        appointment.id,
                        start=new_start,
                        end=new_start + timedelta(minutes=duration),
                        practitioner_id=practitioner_id,
                        confirmation_number=confirmation_number,
                    )
                except AppointmentConflictError:
                    return await self._slot_gone(appointment, slot_id, option)
                moved = True
            finally:
                # A moved appointment holds its new slot until the lease expires
                if not moved:
                    await self.booking.release_lease(slot_id, lease)

            updated = replace(
                appointment,
                datetime=new_start,
                duration=duration,
                practitioner_id=practitioner_id,
                practitioner_name=option.practitioner,
                confirmation_number=confirmation_number,
            )
            await self._replace_confirmation(appointment, updated)
            await self.booking.save_appointment(updated)
            await self.booking.schedule_reminder(updated)
            await self._record(
                appointment,
                ChangeType.RESCHEDULED,
                previous={
                    "datetime": appointment.datetime.isoformat(),
                    "practitioner_id": appointment.practitioner_id,
                    "practitioner_name": appointment.practitioner_name,
                    "confirmation_number": appointment.confirmation_number,
                },
                new={
                    "datetime": updated.datetime.isoformat(),
                    "practitioner_id": updated.practitioner_id,
                    "practitioner_name": updated.practitioner_name,
                    "confirmation_number": confirmation_number,
                },
                reason="Patient requested reschedule",
            )
            await self._invalidate(appointment.datetime, updated.datetime)
            await self._clear_options(conversation_id)

            self._metrics.increment("modification.rescheduled")
            logger.info(
                f"Rescheduled appointment {appointment.id} from "
                f"{appointment.datetime.isoformat()} to {updated.datetime.isoformat()}"
            )
            return ModificationResponse(
                success=True,
                message=self.messages.reschedule_success(updated, confirmation_number),
                updated_appointment=updated,
                new_confirmation_number=confirmation_number,
            )

        except CircuitOpenError as e:
            return ModificationResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
        except EMRError as e:
            logger.error(f"Failed to confirm reschedule of {appointment_id} to {slot_id}: {e}")
            return ModificationResponse(success=False, message=MODIFICATION_FAILED, error=str(e))

    async def _slot_gone(
        self,
        appointment: AppointmentDetails,
        slot_id: str,
        option: TimeSlot,
    ) -> ModificationResponse:
        alternatives = await self.conflicts.find_alternatives(
            option.datetime,
            appointment.type,
            practitioner_id=appointment.practitioner_id or None,
            exclude_slot_id=slot_id,
        )
        return ModificationResponse(
            success=False,
            message=RESCHEDULE_SLOT_GONE if alternatives else NO_RESCHEDULE_OPTIONS,
            available_slots=alternatives,
            requires_confirmation=bool(alternatives),
            error="New slot not available",
        )

    async def _replace_confirmation(
        self,
        previous: AppointmentDetails,
        updated: AppointmentDetails,
    ) -> None:
        old = None
        if previous.confirmation_number:
            old = await self.booking.get_confirmation(previous.confirmation_number)
            if old is not None:
                await self.booking.delete_confirmation(old)

        await self.booking.save_confirmation(ConfirmationRecord(
            confirmation_number=updated.confirmation_number,
            appointment_id=updated.id,
            patient_id=updated.patient_id,
            patient_name=updated.patient_name,
            datetime=updated.datetime,
            practitioner=updated.practitioner_name or "Available Provider",
            appointment_type=updated.type,
            duration=updated.duration,
            location=old.location if old else self.messages.location,
            special_instructions=old.special_instructions if old else [],
            created_at=self._clock(),
        ))

    # === Cancellation ===

    async def cancel(
        self,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        reason: Optional[str] = None,
        emergency: bool = False,
    ) -> ModificationResponse:
        """Cancel an appointment and compute the fee. Emergencies waive the fee."""
        try:
            appointment, rejection = await self.load_owned(appointment_id, patient_id)
            if rejection:
                return rejection

            fee = 0.0 if emergency else self.policy.fee_for(self.hours_until(appointment))
            reason = reason or ("Emergency" if emergency else "Patient requested cancellation")

            await self.emr.cancel_appointment(appointment.id, reason)

            cancelled = replace(appointment, status=AppointmentStatus.CANCELLED)
            await self.booking.save_appointment(cancelled)
            await self.booking.cancel_reminder(appointment.id)
            await self._record(
                appointment,
                ChangeType.CANCELLED,
                previous={"status": appointment.status.value},
                new={"status": AppointmentStatus.CANCELLED.value, "emergency": emergency},
                reason=reason,
                fee=fee,
            )
            await self._invalidate(appointment.datetime)

            self._metrics.increment("modification.cancelled", emergency=str(emergency).lower())
            logger.info(
                f"Cancelled appointment {appointment.id} (fee={fee}, emergency={emergency}, "
                f"conversation={conversation_id})"
            )
            return ModificationResponse(
                success=True,
                message=self.messages.cancellation_success(appointment, fee),
                updated_appointment=cancelled,
                cancellation_fee=fee if fee > 0 else None,
            )

        except CircuitOpenError as e:
            return ModificationResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
        except EMRError as e:
            logger.error(f"Failed to cancel appointment {appointment_id}: {e}")
            return ModificationResponse(success=False, message=MODIFICATION_FAILED, error=str(e))

    # === Type change ===

    async def change_type(
        self,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        new_type: str,
        reason: Optional[str] = None,
    ) -> ModificationResponse:
        """Change the appointment type when the provider and schedule allow it."""
        try:
            appointment, rejection = await self.load_owned(appointment_id, patient_id)
            if rejection:
                return rejection

            if appointment.type == new_type:
                return ModificationResponse(
                    success=False,
                    message=self.messages.same_type(new_type),
                    error="Same appointment type",
                )

            practitioner = await self.availability.get_practitioner(appointment.practitioner_id)
            if practitioner is not None and not practitioner.handles(new_type):
                return ModificationResponse(
                    success=False,
                    message=self.messages.provider_cannot_handle(practitioner.name, new_type),
                    error="Provider cannot handle appointment type",
                )

            new_duration = self.rules.duration_for(new_type)
            if new_duration > appointment.duration and not await self.duration_fits(
                appointment, new_duration
            ):
                return ModificationResponse(
                    success=False,
                    message=self.messages.duration_does_not_fit(new_type, new_duration),
                    requires_confirmation=True,
                    error="Duration adjustment needed",
                )

            await self.emr.update_appointment(
                appointment.id,
                start=appointment.datetime,
                end=appointment.datetime + timedelta(minutes=new_duration),
                appointment_type=new_type,
            )

            updated = replace(appointment, type=new_type, duration=new_duration)
            await self.booking.save_appointment(updated)
            await self._record(
                appointment,
                ChangeType.TYPE_CHANGED,
                previous={"type": appointment.type, "duration": appointment.duration},
                new={"type": new_type, "duration": new_duration},
                reason=reason,
            )
            await self._invalidate(appointment.datetime)

            self._metrics.increment("modification.type_changed")
            logger.info(
                f"Changed appointment {appointment.id} type {appointment.type} -> {new_type} "
                f"(conversation={conversation_id})"
            )
            return ModificationResponse(
                success=True,
                message=self.messages.type_change_success(updated),
                updated_appointment=updated,
            )

        except CircuitOpenError as e:
            return ModificationResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
        except EMRError as e:
            logger.error(f"Failed to change type of appointment {appointment_id}: {e}")
            return ModificationResponse(success=False, message=MODIFICATION_FAILED, error=str(e))

    async def duration_fits(self, appointment: AppointmentDetails, new_duration: int) -> bool:
        """Whether ``new_duration`` plus buffer ends before closing and the next booking."""
        if not self.rules.fits_before_close(appointment.datetime, new_duration):
            return False

        new_end = appointment.datetime + timedelta(
            minutes=new_duration + self.rules.standard_buffer
        )
        nearby = await self.emr.get_practitioner_appointments(
            appointment.practitioner_id, appointment.datetime, new_end
        )
        for other in nearby:
            if other.id == appointment.id or other.status == AppointmentStatus.CANCELLED:
                continue
            if appointment.datetime <= other.datetime < new_end:
                logger.info(
                    f"Appointment {appointment.id} cannot grow to {new_duration} min: "
                    f"next booking {other.id} starts {other.datetime.isoformat()}"
                )
                return False
        return True

    # === Helpers ===

    async def _record(
        self,
        appointment: AppointmentDetails,
        change_type: ChangeType,
        previous: dict,
        new: dict,
        reason: Optional[str] = None,
        fee: Optional[float] = None,
    ) -> None:
        entry = ChangeHistory(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            change_type=change_type,
            previous_details=previous,
            new_details=new,
            changed_by=appointment.patient_id,
            reason=reason,
            cancellation_fee=fee,
            timestamp=self._clock(),
        )
        if self.history is None:
            logger.warning(f"No change history store; {change_type.value} not persisted")
            return
        await self.history.record(entry)

    async def _invalidate(self, *moments: datetime) -> None:
        days: set[date] = {self.rules.to_local(m).date() for m in moments}
        for day in sorted(days):
            await self.availability.invalidate_date(day)

    def _options_key(self, conversation_id: str) -> str:
        return key("reschedule", "options", conversation_id)

    async def _store_options(
        self,
        conversation_id: str,
        appointment_id: str,
        options: list[TimeSlot],
    ) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(
                self._options_key(conversation_id),
                settings.redis_session_ttl,
                json.dumps({
                    "appointment_id": appointment_id,
                    "options": [o.to_dict() for o in options],
                }),
            )
        except RedisError as e:
            logger.warning(f"Could not store reschedule options for {conversation_id}: {e}")

    async def _find_option(
        self,
        conversation_id: str,
        appointment_id: str,
        slot_id: str,
    ) -> Optional[TimeSlot]:
        if self.redis is None:
            return None
        raw = await self.redis.get(self._options_key(conversation_id))
        if not raw:
            return None
        data = json.loads(raw)
        if data.get("appointment_id") != appointment_id:
            return None
        for option in data.get("options", []):
            if option.get("slot_id") == slot_id:
                return TimeSlot.from_dict(option)
        return None

    async def _clear_options(self, conversation_id: str) -> None:
        if self.redis is not None:
            await self.redis.delete(self._options_key(conversation_id))
