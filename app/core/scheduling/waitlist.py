"""
Waitlist Matcher & Notifier.

When an appointment is cancelled, waitlisted patients are scored against
the freed slot and the best candidates are offered it.

Keys:
- waitlist:{id} -> entry JSON (TTL = max wait days)
- waitlist:priority:{type} -> sorted set of entry ids by creation time
- waitlist:expiry -> sorted set of entry ids by expiry epoch
- waitlist:notification:{id} -> notification JSON (7 days)
- waitlist:declined:{id} -> list of the last 10 declined offers (30 days)
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.notifications import NotificationService
from app.infra.redis import key
from app.infra.scheduler import JobScheduler
from .business_rules import BusinessRules, default_business_rules
from .messages import MessageBuilder
from .types import (
    NotificationStatus,
    Priority,
    TimeSlot,
    WaitlistEntry,
    WaitlistNotification,
)

logger = logging.getLogger(__name__)

DEFERRED_NOTIFICATION_JOB = "waitlist_deferred_notification"
RESPONSE_DEADLINE_JOB = "waitlist_response_deadline"

PRIORITY_BONUS = {
    Priority.URGENT: 0.15,
    Priority.HIGH: 0.12,
    Priority.NORMAL: 0.08,
    Priority.LOW: 0.05,
}
PRIORITY_MULTIPLIER = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def time_of_day_for_hour(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


@dataclass
class WaitlistMatch:
    entry: WaitlistEntry
    score: float
    reasons: list[str] = field(default_factory=list)


@dataclass
class WaitlistResponseResult:
    success: bool
    message: str
    notification: Optional[WaitlistNotification] = None
    entry: Optional[WaitlistEntry] = None
    error: Optional[str] = None


class WaitlistManager:
    """Stores waitlist entries, matches freed slots and tracks offers."""

    def __init__(
        self,
        redis_client: Redis,
        notifier: NotificationService,
        scheduler: Optional[JobScheduler] = None,
        rules: Optional[BusinessRules] = None,
        messages: Optional[MessageBuilder] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.redis = redis_client
        self.notifier = notifier
        self.scheduler = scheduler
        self.rules = rules or default_business_rules()
        self.messages = messages or MessageBuilder()
        self._metrics = metrics or get_metrics()
        self._clock = clock

        self.threshold = settings.waitlist_match_threshold
        self.pool_size = settings.waitlist_candidate_pool
        self.notification_ttl = settings.waitlist_notification_ttl_days * 86400
        self.declined_history = settings.waitlist_declined_history

    # === Keys ===

    @staticmethod
    def _entry_key(entry_id: str) -> str:
        return key("waitlist", entry_id)

    @staticmethod
    def _priority_key(appointment_type: str) -> str:
        return key("waitlist", "priority", appointment_type)

    @staticmethod
    def _expiry_key() -> str:
        return key("waitlist", "expiry")

    @staticmethod
    def _notification_key(notification_id: str) -> str:
        return key("waitlist", "notification", notification_id)

    @staticmethod
    def _declined_key(entry_id: str) -> str:
        return key("waitlist", "declined", entry_id)

    # === Entries ===

    async def add(self, entry: WaitlistEntry) -> WaitlistEntry:
        """Store an entry and index it by type and expiry."""
        entry.created_at = entry.created_at or self._clock()
        ttl = entry.max_wait_days * 86400
        expires_at = entry.created_at + timedelta(seconds=ttl)

        await self.redis.setex(self._entry_key(entry.id), ttl, json.dumps(entry.to_dict()))
        await self.redis.zadd(
            self._priority_key(entry.appointment_type), {entry.id: entry.created_at.timestamp()}
        )
        await self.redis.zadd(self._expiry_key(), {entry.id: expires_at.timestamp()})

        self._metrics.increment("waitlist.added", priority=entry.priority.value)
        logger.info(
            f"Patient {entry.patient_id} added to waitlist {entry.id} "
            f"({entry.appointment_type}, {entry.priority.value})"
        )
        return entry

    async def get_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        raw = await self.redis.get(self._entry_key(entry_id))
        return WaitlistEntry.from_dict(json.loads(raw)) if raw else None

    async def remove(self, entry_id: str) -> bool:
        """Remove an entry from every index. Only the first caller gets True."""
        claimed = await self.redis.zrem(self._expiry_key(), entry_id)
        entry = await self.get_entry(entry_id)
        await self.redis.delete(self._entry_key(entry_id))
        if entry is not None:
            await self.redis.zrem(self._priority_key(entry.appointment_type), entry_id)
        if claimed:
            logger.info(f"Removed waitlist entry {entry_id}")
        return bool(claimed)

    def priority_score(self, entry: WaitlistEntry) -> float:
        """Wait time in milliseconds weighted by tier. Higher ranks first."""
        waited_ms = (self._clock() - entry.created_at).total_seconds() * 1000
        return max(waited_ms, 0.0) * PRIORITY_MULTIPLIER[entry.priority]

    # === Matching ===

    def score(self, entry: WaitlistEntry, slot: TimeSlot) -> tuple[float, list[str]]:
        """Match score in [0, 1] and the reasons behind it."""
        local = self.rules.to_local(slot.datetime)
        slot_day = local.date()
        score = 0.0
        reasons = []

        preferred = [date.fromisoformat(d[:10]) for d in entry.preferred_dates]
        if slot_day in preferred:
            score += 0.4
            reasons.append("Exact date match")
        elif any(abs((slot_day - d).days) <= 3 for d in preferred):
            score += 0.2
            reasons.append("Near preferred date")

        time_of_day = time_of_day_for_hour(local.hour)
        if entry.preferred_time_of_day == time_of_day:
            score += 0.25
            reasons.append(f"Preferred {time_of_day} time")
        elif not entry.preferred_time_of_day:
            score += 0.15

        if entry.preferred_provider and entry.preferred_provider == slot.practitioner_id:
            score += 0.2
            reasons.append("Preferred provider")
        elif not entry.preferred_provider:
            score += 0.1

        score += PRIORITY_BONUS[entry.priority]
        if entry.priority == Priority.URGENT:
            reasons.append("Urgent priority")

        return round(min(score, 1.0), 4), reasons

    async def find_matches(self, slot: TimeSlot) -> list[WaitlistMatch]:
        """Candidates at or above the threshold, best first."""
        entry_ids = await self.redis.zrange(
            self._priority_key(slot.appointment_type), 0, self.pool_size - 1
        )
        matches = []
        for entry_id in entry_ids:
            entry = await self.get_entry(entry_id)
            if entry is None:
                continue
            score, reasons = self.score(entry, slot)
            if score >= self.threshold:
                matches.append(WaitlistMatch(entry=entry, score=score, reasons=reasons))

        matches.sort(key=lambda m: (m.score, self.priority_score(m.entry)), reverse=True)
        return matches

    # === Notifications ===

    def response_deadline(self, entry: WaitlistEntry, sent_at: datetime) -> datetime:
        if entry.notification_preferences.business_hours_only:
            hours = settings.waitlist_business_hours_response_hours
        else:
            hours = settings.waitlist_response_hours
        return sent_at + timedelta(hours=hours)

    async def notify_for_slot(self, slot: TimeSlot) -> list[WaitlistNotification]:
        """Offer a freed slot to the top candidates (3 for urgent slots, else 2).

        Candidates who only accept business-hours contact get a deferred
        notification when the office is closed.
        """
        try:
            matches = await self.find_matches(slot)
        except RedisError as e:
            logger.error(f"Waitlist matching failed for slot {slot.slot_id}: {e}")
            return []

        if not matches:
            logger.info(f"No waitlist matches for slot {slot.slot_id}")
            return []

        count = 3 if slot.appointment_type == "urgent" else 2
        now = self._clock()
        notifications = []

        for match in matches[:count]:
            entry = match.entry
            notification = WaitlistNotification(
                waitlist_entry_id=entry.id,
                available_slot=slot,
                notification_method=entry.notification_preferences.methods[0],
                response_deadline=self.response_deadline(entry, now),
            )

            if entry.notification_preferences.business_hours_only and not self.rules.is_business_hours(now):
                send_at = self.rules.next_business_opening(now)
                notification.response_deadline = self.response_deadline(entry, send_at)
                await self._store_notification(notification)
                if self.scheduler is not None:
                    await self.scheduler.schedule(
                        DEFERRED_NOTIFICATION_JOB,
                        send_at,
                        {"notification_id": notification.id},
                        job_id=f"waitlist-send:{notification.id}",
                    )
                logger.info(
                    f"Deferred waitlist notification {notification.id} for entry {entry.id} "
                    f"until {send_at.isoformat()}"
                )
                notifications.append(notification)
                continue

            await self._deliver(notification, entry)
            notifications.append(notification)

        logger.info(
            f"Waitlist offers for slot {slot.slot_id}: {len(notifications)} of "
            f"{len(matches)} matches"
        )
        return notifications

    async def send_deferred(self, notification_id: str) -> Optional[WaitlistNotification]:
        """Deliver a notification that was held until business hours."""
        notification = await self.get_notification(notification_id)
        if notification is None or notification.status != NotificationStatus.PENDING:
            return None
        entry = await self.get_entry(notification.waitlist_entry_id)
        if entry is None:
            logger.info(f"Waitlist entry for notification {notification_id} no longer exists")
            return None
        notification.response_deadline = self.response_deadline(entry, self._clock())
        await self._deliver(notification, entry)
        return notification

    async def _deliver(self, notification: WaitlistNotification, entry: WaitlistEntry) -> None:
        notification.sent_at = self._clock()
        notification.attempts += 1
        notification.status = NotificationStatus.SENT
        await self._store_notification(notification)

        message = self.messages.waitlist_offer(
            entry.patient_name, notification.available_slot, notification.response_deadline
        )
        delivered = await self.notifier.send(
            notification.notification_method,
            entry.phone_number,
            message,
            metadata={"notification_id": notification.id, "waitlist_entry_id": entry.id},
        )
        if delivered:
            notification.status = NotificationStatus.DELIVERED
            await self._store_notification(notification)
            self._metrics.increment("waitlist.notified", method=notification.notification_method)
        else:
            self._metrics.increment("waitlist.delivery_failures")

        if self.scheduler is not None:
            await self.scheduler.schedule(
                RESPONSE_DEADLINE_JOB,
                notification.response_deadline,
                {"notification_id": notification.id},
                job_id=self._deadline_job_id(notification.id),
            )

    @staticmethod
    def _deadline_job_id(notification_id: str) -> str:
        return f"waitlist-deadline:{notification_id}"

    async def _store_notification(self, notification: WaitlistNotification) -> None:
        await self.redis.setex(
            self._notification_key(notification.id),
            self.notification_ttl,
            json.dumps(notification.to_dict()),
        )

    async def get_notification(self, notification_id: str) -> Optional[WaitlistNotification]:
        raw = await self.redis.get(self._notification_key(notification_id))
        return WaitlistNotification.from_dict(json.loads(raw)) if raw else None

    # === Responses ===

    async def respond(self, notification_id: str, response: str) -> WaitlistResponseResult:
        """Record an accept/decline for an offer."""
        notification = await self.get_notification(notification_id)
        if notification is None:
            logger.warning(f"Waitlist notification not found: {notification_id}")
            return WaitlistResponseResult(
                success=False,
                message="I couldn't find that offer. It may have expired.",
                error="Notification not found",
            )
        if notification.status in (NotificationStatus.RESPONDED, NotificationStatus.EXPIRED):
            return WaitlistResponseResult(
                success=False,
                message="That offer is no longer open.",
                notification=notification,
                error=f"Notification already {notification.status.value}",
            )

        entry = await self.get_entry(notification.waitlist_entry_id)
        notification.response = response
        notification.response_at = self._clock()
        notification.status = NotificationStatus.RESPONDED
        await self._store_notification(notification)
        if self.scheduler is not None:
            await self.scheduler.cancel(self._deadline_job_id(notification.id))

        if response == "accepted":
            if not await self.remove(notification.waitlist_entry_id):
                logger.info(
                    f"Waitlist offer {notification_id} accepted after entry "
                    f"{notification.waitlist_entry_id} left the waitlist"
                )
                self._metrics.increment("waitlist.accepted_inactive")
                return WaitlistResponseResult(
                    success=False,
                    message=(
                        "It looks like you're no longer on our waitlist, so I can't hold "
                        "that time for you. Would you like me to check other available times?"
                    ),
                    notification=notification,
                    entry=entry,
                    error="Waitlist entry no longer active",
                )
            self._metrics.increment("waitlist.accepted")
            logger.info(f"Waitlist offer {notification_id} accepted")
            message = "Wonderful! Our staff will confirm the appointment with you shortly."
        else:
            await self.record_declined(notification.waitlist_entry_id, notification.available_slot)
            self._metrics.increment("waitlist.declined")
            logger.info(f"Waitlist offer {notification_id} declined")
            message = "No problem. You'll stay on the waitlist and we'll let you know about other openings."

        return WaitlistResponseResult(
            success=True, message=message, notification=notification, entry=entry
        )

    async def record_declined(self, entry_id: str, slot: TimeSlot) -> None:
        declined_key = self._declined_key(entry_id)
        await self.redis.rpush(
            declined_key,
            json.dumps({"slot": slot.to_dict(), "declined_at": self._clock().isoformat()}),
        )
        await self.redis.ltrim(declined_key, -self.declined_history, -1)
        await self.redis.expire(declined_key, 30 * 86400)

    async def declined_slots(self, entry_id: str) -> list[dict]:
        return [json.loads(item) for item in await self.redis.lrange(self._declined_key(entry_id), 0, -1)]

    async def expire_notification(
        self,
        notification_id: str,
    ) -> Optional[tuple[WaitlistNotification, Optional[WaitlistEntry]]]:
        """Mark an unanswered offer expired. None if it was answered in time."""
        notification = await self.get_notification(notification_id)
        if notification is None or notification.status in (
            NotificationStatus.RESPONDED,
            NotificationStatus.EXPIRED,
        ):
            return None
        notification.status = NotificationStatus.EXPIRED
        await self._store_notification(notification)
        self._metrics.increment("waitlist.expired")
        logger.info(f"Waitlist offer {notification_id} expired without a response")
        entry = await self.get_entry(notification.waitlist_entry_id)
        return notification, entry

    # === Maintenance ===

    async def cleanup_expired(self) -> int:
        """Remove entries past their max wait."""
        try:
            expired = await self.redis.zrangebyscore(
                self._expiry_key(), "-inf", self._clock().timestamp()
            )
            removed = 0
            for entry_id in expired:
                if await self.remove(entry_id):
                    removed += 1
        except RedisError as e:
            logger.error(f"Waitlist cleanup failed: {e}")
            return 0

        if removed:
            logger.info(f"Cleaned up {removed} expired waitlist entries")
        return removed
