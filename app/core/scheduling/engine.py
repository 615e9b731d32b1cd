"""
Scheduling Engine - Main Orchestrator.

Wires the EMR client, availability, booking, modification, waitlist,
lookup and staff-notification services together and implements the
flows that span more than one of them:

- the confirmation dialogue ending in a booking attempt
- cancellation -> waitlist offers -> staff notification
- background jobs (reminders, deferred waitlist offers, response deadlines)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.infra.metrics import MetricsSink, get_metrics
from app.infra.notifications import NotificationService
from app.infra.scheduler import JobScheduler
from .availability import AvailabilityEngine, AvailabilityQuery
from .booking import REMINDER_JOB, BookingManager
from .business_rules import BusinessRules, default_business_rules
from .conflicts import ConflictDetector
from .conversation import ConversationStage, ConversationState, ConversationStore
from .emr_client import EMRClient
from .errors import CircuitOpenError, EMRError
from .flow import ConversationFlow
from .history import ChangeHistoryRepository
from .lookup import AppointmentLookupService, LookupResponse
from .messages import BOOKING_FAILED, NEED_MORE_INFO, SERVICE_UNAVAILABLE, MessageBuilder
from .modification import ModificationOrchestrator
from .staff_notifications import StaffNotificationService
from .types import (
    AppointmentDetails,
    AppointmentStatus,
    AvailabilityResponse,
    BookingRequest,
    BookingResponse,
    ConfirmationRecord,
    ModificationResponse,
    TimeSlot,
    WaitlistEntry,
)
from .waitlist import (
    DEFERRED_NOTIFICATION_JOB,
    RESPONSE_DEADLINE_JOB,
    WaitlistManager,
    WaitlistResponseResult,
)

logger = logging.getLogger(__name__)

WAITLIST_CLEANUP_JOB = "waitlist_cleanup"
WAITLIST_CLEANUP_INTERVAL = timedelta(hours=1)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class DialogueResponse:
    """Result of one turn of the booking conversation."""

    success: bool
    message: str
    session_id: str
    stage: Optional[ConversationStage] = None
    action: Optional[str] = None
    booking: Optional[BookingResponse] = None
    alternatives: list[TimeSlot] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "success": self.success,
            "message": self.message,
            "session_id": self.session_id,
            "stage": self.stage.value if self.stage else None,
            "action": self.action,
            "alternatives": [s.to_dict() for s in self.alternatives],
            "error": self.error,
        }
        if self.booking is not None:
            result["appointment_id"] = self.booking.appointment_id
            result["confirmation_number"] = self.booking.confirmation_number
        return result


@dataclass
class CancellationOutcome:
    """Cancellation plus what it triggered downstream."""

    result: ModificationResponse
    waitlist_notified: int = 0
    staff_notification_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = self.result.to_dict()
        data["waitlist_notified"] = self.waitlist_notified
        data["staff_notification_id"] = self.staff_notification_id
        return data


class SchedulingEngine:
    """Facade over the scheduling services."""

    def __init__(
        self,
        emr_client: EMRClient,
        redis_client: Redis,
        notifier: NotificationService,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        rules: Optional[BusinessRules] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.emr = emr_client
        self.redis = redis_client
        self.notifier = notifier
        self.rules = rules or default_business_rules()
        self.metrics = metrics or get_metrics()
        self._clock = clock
        self.messages = MessageBuilder(timezone=self.rules.timezone)

        self.scheduler = JobScheduler(redis_client, clock=clock, metrics=self.metrics)
        self.availability = AvailabilityEngine(
            emr_client, redis_client, rules=self.rules, metrics=self.metrics, clock=clock
        )
        self.conflicts = ConflictDetector(self.availability)
        self.booking = BookingManager(
            emr_client,
            redis_client,
            self.availability,
            conflicts=self.conflicts,
            scheduler=self.scheduler,
            messages=self.messages,
            metrics=self.metrics,
            clock=clock,
        )
        self.history = (
            ChangeHistoryRepository(session_factory, metrics=self.metrics)
            if session_factory is not None
            else None
        )
        if self.history is None:
            logger.warning("No database configured, appointment change history will not be kept")
        self.modifications = ModificationOrchestrator(
            emr_client,
            redis_client,
            self.availability,
            self.booking,
            history=self.history,
            messages=self.messages,
            metrics=self.metrics,
            clock=clock,
        )
        self.waitlist = WaitlistManager(
            redis_client,
            notifier,
            scheduler=self.scheduler,
            rules=self.rules,
            messages=self.messages,
            metrics=self.metrics,
            clock=clock,
        )
        self.staff = StaffNotificationService(
            redis_client, messages=self.messages, metrics=self.metrics, clock=clock
        )
        self.lookup_service = AppointmentLookupService(
            emr_client, redis_client, self.booking, messages=self.messages, clock=clock
        )
        self.conversations = ConversationStore(redis_client)
        self.flow = ConversationFlow(self.conversations, messages=self.messages, rules=self.rules)

        self.scheduler.register(REMINDER_JOB, self._send_reminder)
        self.scheduler.register(DEFERRED_NOTIFICATION_JOB, self._send_deferred_offer)
        self.scheduler.register(RESPONSE_DEADLINE_JOB, self._expire_offer)
        self.scheduler.register(WAITLIST_CLEANUP_JOB, self._run_waitlist_cleanup)

    # === Availability ===

    async def query_availability(
        self,
        date_text: Optional[str] = None,
        appointment_type: Optional[str] = None,
        practitioner_id: Optional[str] = None,
        time_of_day: Optional[str] = None,
        start_date=None,
        end_date=None,
    ) -> AvailabilityResponse:
        """Find open times. EMR failures come back as a patient-facing message."""
        try:
            if start_date is not None:
                slots = await self.availability.get_available_slots(AvailabilityQuery(
                    start_date=start_date,
                    end_date=end_date or start_date,
                    appointment_type=appointment_type,
                    practitioner_id=practitioner_id,
                    time_of_day=time_of_day,
                ))
            else:
                slots = await self.availability.find_slots(
                    date_text,
                    appointment_type=appointment_type,
                    practitioner_id=practitioner_id,
                    time_of_day=time_of_day,
                )
        except CircuitOpenError as e:
            self.metrics.increment("availability.failures", reason="circuit_open")
            return AvailabilityResponse(success=False, message=SERVICE_UNAVAILABLE, error=str(e))
        except EMRError as e:
            logger.error(f"Availability query failed: {e}")
            self.metrics.increment("availability.failures", reason="emr_error")
            return AvailabilityResponse(success=False, message=BOOKING_FAILED, error=str(e))

        return AvailabilityResponse(
            success=True,
            message=self.messages.slot_list(slots[:3]),
            slots=slots,
        )

    async def invalidate_availability(self) -> int:
        return await self.availability.invalidate_all()

    # === Booking ===

    async def book(self, request: BookingRequest) -> BookingResponse:
        return await self.booking.book(request)

    async def get_confirmation(self, confirmation_number: str) -> Optional[ConfirmationRecord]:
        return await self.booking.get_confirmation(confirmation_number)

    # === Conversation ===

    async def start_conversation(
        self,
        session_id: str,
        collected: Optional[dict] = None,
    ) -> ConversationState:
        return await self.conversations.create(session_id, collected)

    async def update_conversation(
        self,
        session_id: str,
        collected: Optional[dict] = None,
        stage: Optional[ConversationStage] = None,
        selected_slot: Optional[TimeSlot] = None,
    ) -> DialogueResponse:
        """Merge collected fields; selecting a slot starts the read-back."""
        state = await self.conversations.update(session_id, collected=collected, stage=stage)
        if state is None:
            return DialogueResponse(
                success=False,
                message="I couldn't find your booking session. Let's start over.",
                session_id=session_id,
                error="Session not found",
            )

        if selected_slot is None:
            return DialogueResponse(
                success=True, message="", session_id=session_id, stage=state.stage, action="collect"
            )

        if state.collected.missing():
            return DialogueResponse(
                success=False,
                message=NEED_MORE_INFO,
                session_id=session_id,
                stage=state.stage,
                action="collect",
                error=f"Missing fields: {', '.join(state.collected.missing())}",
            )

        message = await self.flow.begin_confirmation(state, selected_slot)
        return DialogueResponse(
            success=True, message=message, session_id=session_id, stage=state.stage, action="confirm"
        )

    async def confirm(self, session_id: str, utterance: str) -> DialogueResponse:
        """Handle the caller's answer to the read-back and book on a clear yes."""
        outcome = await self.flow.handle_response(session_id, utterance)
        stage = outcome.state.stage if outcome.state else None
        if not outcome.should_book:
            return DialogueResponse(
                success=outcome.action not in ("restart", "handoff"),
                message=outcome.message,
                session_id=session_id,
                stage=stage,
                action=outcome.action,
            )

        state = outcome.state
        request = self.flow.build_booking_request(state)
        if request is None:
            return DialogueResponse(
                success=False,
                message=NEED_MORE_INFO,
                session_id=session_id,
                stage=state.stage,
                action="collect",
                error="Incomplete booking details",
            )

        booking = await self.booking.book(request)
        if booking.success:
            await self.flow.complete(state)
            return DialogueResponse(
                success=True,
                message=booking.message,
                session_id=session_id,
                stage=state.stage,
                action="booked",
                booking=booking,
            )

        if booking.alternatives or booking.error == "Slot conflict detected":
            await self.flow.return_to_selection(state)
            message = booking.message
            if booking.alternatives:
                message = self.messages.slot_list(booking.alternatives, intro=booking.message)
            return DialogueResponse(
                success=False,
                message=message,
                session_id=session_id,
                stage=state.stage,
                action="reselect",
                booking=booking,
                alternatives=booking.alternatives,
                error=booking.error,
            )

        return DialogueResponse(
            success=False,
            message=booking.message or BOOKING_FAILED,
            session_id=session_id,
            stage=state.stage,
            action="failed",
            booking=booking,
            error=booking.error,
        )

    # === Lookup ===

    async def lookup(
        self,
        conversation_id: str,
        confirmation_number: Optional[str] = None,
        patient_id: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> LookupResponse:
        return await self.lookup_service.lookup(
            conversation_id,
            confirmation_number=confirmation_number,
            patient_id=patient_id,
            phone_number=phone_number,
        )

    async def verify(
        self,
        conversation_id: str,
        date_of_birth: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> LookupResponse:
        return await self.lookup_service.verify(
            conversation_id, date_of_birth=date_of_birth, phone_number=phone_number
        )

    # === Modifications ===

    async def reschedule(self, **kwargs) -> ModificationResponse:
        return await self.modifications.reschedule(**kwargs)

    async def confirm_reschedule(self, **kwargs) -> ModificationResponse:
        return await self.modifications.confirm_reschedule(**kwargs)

    async def change_type(self, **kwargs) -> ModificationResponse:
        return await self.modifications.change_type(**kwargs)

    async def modify(
        self,
        modification_type: str,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        new_datetime: Optional[datetime] = None,
        new_appointment_type: Optional[str] = None,
        reason: Optional[str] = None,
        emergency: bool = False,
    ) -> ModificationResponse:
        """Dispatch a modification; cancellations run the full pipeline."""
        if modification_type == "cancel":
            outcome = await self.cancel(
                appointment_id, patient_id, conversation_id, reason=reason, emergency=emergency
            )
            return outcome.result
        return await self.modifications.modify(
            modification_type,
            appointment_id,
            patient_id,
            conversation_id,
            new_datetime=new_datetime,
            new_appointment_type=new_appointment_type,
            reason=reason,
        )

    async def cancel(
        self,
        appointment_id: str,
        patient_id: str,
        conversation_id: str,
        reason: Optional[str] = None,
        emergency: bool = False,
    ) -> CancellationOutcome:
        """Cancel, offer the freed slot to the waitlist, then tell staff."""
        result = await self.modifications.cancel(
            appointment_id=appointment_id,
            patient_id=patient_id,
            conversation_id=conversation_id,
            reason=reason,
            emergency=emergency,
        )
        if not result.success or result.updated_appointment is None:
            return CancellationOutcome(result=result)

        appointment = result.updated_appointment
        freed = self.freed_slot(appointment)
        offers = await self.waitlist.notify_for_slot(freed)

        late = self.modifications.hours_until(appointment) < self.modifications.policy.minimum_notice_hours
        staff_notification = await self.staff.notify_cancellation(
            appointment,
            emergency=emergency,
            late=late,
            fee=result.cancellation_fee or 0.0,
            reason=reason,
            waitlist_notified=len(offers),
        )
        return CancellationOutcome(
            result=result,
            waitlist_notified=len(offers),
            staff_notification_id=staff_notification.id,
        )

    @staticmethod
    def freed_slot(appointment: AppointmentDetails) -> TimeSlot:
        return TimeSlot(
            slot_id=appointment.id,
            datetime=appointment.datetime,
            practitioner=appointment.practitioner_name,
            practitioner_id=appointment.practitioner_id,
            duration=appointment.duration,
            appointment_type=appointment.type,
        )

    # === Waitlist ===

    async def add_to_waitlist(self, entry: WaitlistEntry) -> WaitlistEntry:
        return await self.waitlist.add(entry)

    async def respond_to_offer(self, notification_id: str, response: str) -> WaitlistResponseResult:
        """Record an accept/decline; staff book accepted offers."""
        result = await self.waitlist.respond(notification_id, response)
        if result.success and response == "accepted" and result.entry is not None:
            await self.staff.notify_waitlist_response(
                result.entry, "accepted", result.notification.available_slot
            )
        return result

    async def cleanup_waitlist(self) -> int:
        return await self.waitlist.cleanup_expired()

    async def start_maintenance(self) -> None:
        """Ensure the recurring waitlist cleanup job exists."""
        if await self.scheduler.get(WAITLIST_CLEANUP_JOB) is None:
            await self.scheduler.schedule(WAITLIST_CLEANUP_JOB, self._clock(), job_id=WAITLIST_CLEANUP_JOB)

    # === Jobs ===

    async def _send_reminder(self, payload: dict) -> None:
        appointment = await self.booking.get_appointment(payload["appointment_id"])
        if appointment is None or appointment.status != AppointmentStatus.BOOKED:
            logger.info(f"Skipping reminder for appointment {payload['appointment_id']}")
            return
        try:
            patient = await self.emr.get_patient(appointment.patient_id)
        except (EMRError, CircuitOpenError) as e:
            logger.error(f"Could not load patient for reminder {appointment.id}: {e}")
            return
        if patient is None or not patient.phone:
            logger.warning(f"No phone number on file for reminder {appointment.id}")
            return
        await self.notifier.send_sms(patient.phone, self.messages.reminder(appointment))

    async def _send_deferred_offer(self, payload: dict) -> None:
        await self.waitlist.send_deferred(payload["notification_id"])

    async def _expire_offer(self, payload: dict) -> None:
        expired = await self.waitlist.expire_notification(payload["notification_id"])
        if expired is None:
            return
        notification, entry = expired
        if entry is not None:
            await self.staff.notify_waitlist_response(entry, "no_response", notification.available_slot)

    async def _run_waitlist_cleanup(self, payload: dict) -> None:
        try:
            await self.cleanup_waitlist()
        finally:
            await self.scheduler.schedule(
                WAITLIST_CLEANUP_JOB,
                self._clock() + WAITLIST_CLEANUP_INTERVAL,
                job_id=WAITLIST_CLEANUP_JOB,
            )

    async def close(self) -> None:
        await self.notifier.close()
        await self.emr.close()
