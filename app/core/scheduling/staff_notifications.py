"""
Staff Notification Queue.

Cancellations and waitlist outcomes that need front-desk, billing or
clinical follow-up are queued here for the staff dashboard.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.redis import key
from .messages import MessageBuilder
from .types import (
    AppointmentDetails,
    Priority,
    TimeSlot,
    WaitlistEntry,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class StaffNotificationType(str, Enum):
    CANCELLATION = "cancellation"
    EMERGENCY_CANCELLATION = "emergency_cancellation"
    LATE_CANCELLATION = "late_cancellation"
    WAITLIST_RESPONSE = "waitlist_response"


class StaffPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = {
    StaffPriority.CRITICAL: 4,
    StaffPriority.HIGH: 3,
    StaffPriority.NORMAL: 2,
    StaffPriority.LOW: 1,
}

URGENT_PRIORITIES = (StaffPriority.CRITICAL, StaffPriority.HIGH)

TIMEFRAMES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


@dataclass
class StaffNotification:
    type: StaffNotificationType
    priority: StaffPriority
    title: str
    message: str
    department: str
    id: str = field(default_factory=lambda: str(uuid4()))
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    waitlist_entry_id: Optional[str] = None
    requires_action: bool = False
    action_type: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "department": self.department,
            "appointment_id": self.appointment_id,
            "patient_id": self.patient_id,
            "waitlist_entry_id": self.waitlist_entry_id,
            "requires_action": self.requires_action,
            "action_type": self.action_type,
            "created_at": format_datetime(self.created_at),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": format_datetime(self.acknowledged_at),
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": format_datetime(self.resolved_at),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StaffNotification":
        return cls(
            id=data["id"],
            type=StaffNotificationType(data["type"]),
            priority=StaffPriority(data["priority"]),
            title=data.get("title", ""),
            message=data.get("message", ""),
            department=data.get("department", "reception"),
            appointment_id=data.get("appointment_id"),
            patient_id=data.get("patient_id"),
            waitlist_entry_id=data.get("waitlist_entry_id"),
            requires_action=data.get("requires_action", False),
            action_type=data.get("action_type"),
            created_at=parse_datetime(data.get("created_at")) or _utcnow(),
            acknowledged=data.get("acknowledged", False),
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=parse_datetime(data.get("acknowledged_at")),
            resolved=data.get("resolved", False),
            resolved_by=data.get("resolved_by"),
            resolved_at=parse_datetime(data.get("resolved_at")),
            notes=data.get("notes"),
        )


# === Routing rules ===

def cancellation_priority(appointment_type: str, emergency: bool, late: bool) -> StaffPriority:
    if emergency:
        return StaffPriority.CRITICAL
    if late and appointment_type == "urgent":
        return StaffPriority.HIGH
    if late or appointment_type == "urgent":
        return StaffPriority.NORMAL
    return StaffPriority.LOW


def cancellation_department(emergency: bool, late: bool) -> str:
    if emergency:
        return "medical"
    if late:
        return "billing"
    return "reception"


def cancellation_action(appointment_type: str, emergency: bool, late: bool) -> str:
    if emergency:
        return "follow_up"
    if late:
        return "billing_review"
    if appointment_type == "urgent":
        return "reschedule_assistance"
    return "chart_update"


def waitlist_response_priority(response: str, entry_priority: Priority) -> StaffPriority:
    urgent = entry_priority == Priority.URGENT
    if response == "accepted":
        return StaffPriority.HIGH if urgent else StaffPriority.NORMAL
    if response == "no_response" and urgent:
        return StaffPriority.NORMAL
    return StaffPriority.LOW


class StaffNotificationService:
    """Creates, queues and tracks staff notifications in Redis."""

    def __init__(
        self,
        redis_client: Redis,
        messages: Optional[MessageBuilder] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.redis = redis_client
        self.messages = messages or MessageBuilder()
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self.ttl = settings.staff_notification_ttl_days * 86400

    # === Keys ===

    @staticmethod
    def _notification_key(notification_id: str) -> str:
        return key("staff", "notification", notification_id)

    @staticmethod
    def _department_key(department: str) -> str:
        return key("staff", "notifications", department)

    @staticmethod
    def _active_key() -> str:
        return key("staff", "notifications", "active")

    @staticmethod
    def _urgent_key() -> str:
        return key("staff", "notifications", "urgent")

    @staticmethod
    def _timeline_key() -> str:
        return key("staff", "notifications", "timeline")

    # === Creation ===

    async def notify_cancellation(
        self,
        appointment: AppointmentDetails,
        emergency: bool = False,
        late: bool = False,
        fee: float = 0.0,
        reason: Optional[str] = None,
        waitlist_notified: int = 0,
    ) -> StaffNotification:
        """Queue a notification for a cancelled appointment."""
        if emergency:
            notification_type = StaffNotificationType.EMERGENCY_CANCELLATION
            title = f"EMERGENCY: {appointment.type} appointment cancelled"
        elif late:
            notification_type = StaffNotificationType.LATE_CANCELLATION
            title = f"Late cancellation: {appointment.type} appointment"
        else:
            notification_type = StaffNotificationType.CANCELLATION
            title = f"Appointment cancelled: {appointment.type}"

        when = (
            f"{self.messages.format_date(appointment.datetime)} at "
            f"{self.messages.format_time(appointment.datetime)}"
        )
        parts = [
            f"Patient {appointment.patient_name or appointment.patient_id} has cancelled their "
            f"{appointment.type} appointment with {appointment.practitioner_name or 'their provider'} "
            f"on {when}."
        ]
        if emergency:
            parts.append("This was marked as an EMERGENCY cancellation.")
            if reason:
                parts.append(f"Reason: {reason}.")
        elif late and fee > 0:
            parts.append(f"This is a late notice cancellation. Cancellation fee: ${fee:.2f}.")
        elif late:
            parts.append("This is a late notice cancellation.")
        if appointment.confirmation_number:
            parts.append(f"Reference: {appointment.confirmation_number}.")
        if waitlist_notified:
            parts.append(f"{waitlist_notified} waitlisted patients have been notified.")
        else:
            parts.append("No waitlisted patients to notify.")

        notification = StaffNotification(
            type=notification_type,
            priority=cancellation_priority(appointment.type, emergency, late),
            title=title,
            message=" ".join(parts),
            department=cancellation_department(emergency, late),
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            requires_action=emergency or late or appointment.type == "urgent",
            action_type=cancellation_action(appointment.type, emergency, late),
            created_at=self._clock(),
        )
        await self._publish(notification)
        return notification

    async def notify_waitlist_response(
        self,
        entry: WaitlistEntry,
        response: str,
        slot: TimeSlot,
    ) -> StaffNotification:
        """Queue a notification for an accepted, declined or unanswered offer."""
        when = f"{self.messages.format_date(slot.datetime)} at {self.messages.format_time(slot.datetime)}"
        name = entry.patient_name or entry.patient_id
        if response == "accepted":
            title = f"Waitlist accepted: {entry.appointment_type} appointment"
            message = (
                f"Patient {name} has ACCEPTED the waitlist offer for {when}. "
                "Please book the appointment and confirm with the patient."
            )
            action_type = "book_appointment"
        elif response == "declined":
            title = f"Waitlist declined: {entry.appointment_type} appointment"
            message = (
                f"Patient {name} has declined the waitlist offer for {when}. "
                "The slot remains available for other patients."
            )
            action_type = None
        else:
            title = f"No waitlist response: {entry.appointment_type} appointment"
            message = (
                f"Patient {name} has not responded to the waitlist offer for {when}. "
                "The deadline has passed. Consider calling the patient directly."
            )
            action_type = "reschedule_assistance"

        notification = StaffNotification(
            type=StaffNotificationType.WAITLIST_RESPONSE,
            priority=waitlist_response_priority(response, entry.priority),
            title=title,
            message=message,
            department="reception",
            patient_id=entry.patient_id,
            waitlist_entry_id=entry.id,
            requires_action=response in ("accepted", "no_response"),
            action_type=action_type,
            created_at=self._clock(),
        )
        await self._publish(notification)
        return notification

    async def _publish(self, notification: StaffNotification) -> None:
        await self._store(notification)
        await self.redis.zadd(
            self._timeline_key(), {notification.id: notification.created_at.timestamp()}
        )

        queues = [self._active_key(), self._department_key(notification.department)]
        if notification.priority in URGENT_PRIORITIES:
            queues.append(self._urgent_key())
        for queue in queues:
            await self.redis.lpush(queue, notification.id)
            await self.redis.expire(queue, self.ttl)

        self._metrics.increment(
            "staff.notifications",
            type=notification.type.value,
            priority=notification.priority.value,
        )
        logger.info(
            f"Staff notification {notification.id} ({notification.type.value}, "
            f"{notification.priority.value}) queued for {notification.department}"
        )

    async def _store(self, notification: StaffNotification) -> None:
        await self.redis.setex(
            self._notification_key(notification.id),
            self.ttl,
            json.dumps(notification.to_dict()),
        )

    async def get(self, notification_id: str) -> Optional[StaffNotification]:
        raw = await self.redis.get(self._notification_key(notification_id))
        return StaffNotification.from_dict(json.loads(raw)) if raw else None

    # === Dashboard ===

    async def list_active(
        self,
        department: Optional[str] = None,
        limit: int = 50,
    ) -> list[StaffNotification]:
        """Unresolved notifications, highest priority then newest first."""
        queue = self._department_key(department) if department else self._active_key()
        try:
            ids = await self.redis.lrange(queue, 0, limit - 1)
            notifications = []
            for notification_id in ids:
                notification = await self.get(notification_id)
                if notification is not None and not notification.resolved:
                    notifications.append(notification)
        except RedisError as e:
            logger.error(f"Failed to list staff notifications: {e}")
            return []

        notifications.sort(
            key=lambda n: (PRIORITY_ORDER[n.priority], n.created_at.timestamp()),
            reverse=True,
        )
        return notifications

    async def acknowledge(self, notification_id: str, staff_id: str) -> bool:
        notification = await self.get(notification_id)
        if notification is None:
            logger.warning(f"Staff notification not found for acknowledgment: {notification_id}")
            return False

        notification.acknowledged = True
        notification.acknowledged_by = staff_id
        notification.acknowledged_at = self._clock()
        await self._store(notification)
        if notification.priority in URGENT_PRIORITIES:
            await self.redis.lrem(self._urgent_key(), 0, notification_id)

        logger.info(f"Staff notification {notification_id} acknowledged by {staff_id}")
        return True

    async def resolve(self, notification_id: str, staff_id: str, notes: Optional[str] = None) -> bool:
        notification = await self.get(notification_id)
        if notification is None:
            logger.warning(f"Staff notification not found for resolution: {notification_id}")
            return False

        now = self._clock()
        notification.resolved = True
        notification.resolved_by = staff_id
        notification.resolved_at = now
        if not notification.acknowledged:
            notification.acknowledged = True
            notification.acknowledged_by = staff_id
            notification.acknowledged_at = now
        if notes:
            notification.notes = notes
        await self._store(notification)

        for queue in (
            self._active_key(),
            self._department_key(notification.department),
            self._urgent_key(),
        ):
            await self.redis.lrem(queue, 0, notification_id)

        logger.info(f"Staff notification {notification_id} resolved by {staff_id}")
        return True

    async def metrics(self, timeframe: str = "day") -> dict:
        """Counts and average handling times (minutes) over a trailing window."""
        window = TIMEFRAMES.get(timeframe, TIMEFRAMES["day"])
        now = self._clock()
        summary = {
            "timeframe": timeframe,
            "total_notifications": 0,
            "by_type": {},
            "by_priority": {},
            "by_department": {},
            "average_acknowledgment_minutes": 0,
            "average_resolution_minutes": 0,
            "unacknowledged_count": 0,
            "unresolved_count": 0,
        }

        try:
            ids = await self.redis.zrangebyscore(
                self._timeline_key(), (now - window).timestamp(), now.timestamp()
            )
            notifications = [n for n in [await self.get(i) for i in ids] if n is not None]
        except RedisError as e:
            logger.error(f"Failed to compute staff notification metrics: {e}")
            return summary

        ack_seconds = []
        resolve_seconds = []
        for n in notifications:
            summary["total_notifications"] += 1
            for bucket, value in (
                ("by_type", n.type.value),
                ("by_priority", n.priority.value),
                ("by_department", n.department),
            ):
                summary[bucket][value] = summary[bucket].get(value, 0) + 1

            if not n.acknowledged:
                summary["unacknowledged_count"] += 1
            elif n.acknowledged_at:
                ack_seconds.append((n.acknowledged_at - n.created_at).total_seconds())

            if not n.resolved:
                summary["unresolved_count"] += 1
            elif n.resolved_at:
                resolve_seconds.append((n.resolved_at - n.created_at).total_seconds())

        if ack_seconds:
            summary["average_acknowledgment_minutes"] = round(sum(ack_seconds) / len(ack_seconds) / 60)
        if resolve_seconds:
            summary["average_resolution_minutes"] = round(sum(resolve_seconds) / len(resolve_seconds) / 60)
        return summary
