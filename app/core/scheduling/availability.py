"""
Availability Engine.

Turns raw free slots from the EMR into business-rule-filtered offers and
caches query results in Redis.

Keys:
- availability:{start}:{end}:{type}:{provider}:{time_of_day} -> offers (JSON, 5 min)
- availability:index:{date} -> set of query keys whose range covers the date
- practitioners:all -> practitioner directory (JSON, 1 hour)
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.redis import key
from .business_rules import BusinessRules, default_business_rules
from .emr_client import EMRClient
from .types import Practitioner, Slot, TimeSlot

logger = logging.getLogger(__name__)

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_TIME_OF_DAY_PATTERNS = {
    "morning": re.compile(r"\b(morning|before noon|early)\b", re.IGNORECASE),
    "afternoon": re.compile(r"\b(afternoon|after lunch|mid[ -]?day)\b", re.IGNORECASE),
    "evening": re.compile(r"\b(evening|late|after work)\b", re.IGNORECASE),
}


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class AvailabilityQuery:
    """Date range (practice-local, inclusive) plus optional filters."""

    start_date: date
    end_date: date
    appointment_type: Optional[str] = None
    practitioner_id: Optional[str] = None
    time_of_day: Optional[str] = None

    def cache_key(self) -> str:
        return key(
            "availability",
            self.start_date.isoformat(),
            self.end_date.isoformat(),
            self.appointment_type or "any",
            self.practitioner_id or "any",
            self.time_of_day or "any",
        )

    def dates(self) -> list[date]:
        days = (self.end_date - self.start_date).days
        return [self.start_date + timedelta(days=i) for i in range(days + 1)]


def parse_natural_date(text: str, today: date) -> Optional[tuple[date, date]]:
    """Resolve a relative date reference to an inclusive date range.

    Recognized: today, tomorrow, this week, next week, weekday names and
    bare time-of-day words (next 7 days). Returns None otherwise.
    """
    ref = (text or "").lower().strip()

    if "today" in ref:
        return today, today

    if "tomorrow" in ref:
        day = today + timedelta(days=1)
        return day, day

    if "next week" in ref:
        return today + timedelta(days=7), today + timedelta(days=13)

    if "this week" in ref:
        # Week ends on Saturday
        return today, today + timedelta(days=(5 - today.weekday()) % 7)

    for index, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", ref):
            ahead = (index - today.weekday()) % 7
            if ahead == 0:
                ahead = 7
            day = today + timedelta(days=ahead)
            return day, day

    if any(word in ref for word in ("morning", "afternoon", "evening")):
        return today, today + timedelta(days=7)

    return None


def extract_time_of_day(text: str) -> Optional[str]:
    for name, pattern in _TIME_OF_DAY_PATTERNS.items():
        if pattern.search(text or ""):
            return name
    return None


class AvailabilityEngine:
    """
    Business-rule-filtered availability with caching.

    Redis is optional; without it every query goes upstream.
    """

    def __init__(
        self,
        emr_client: EMRClient,
        redis_client: Optional[Redis],
        rules: Optional[BusinessRules] = None,
        cache_enabled: bool = True,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.emr = emr_client
        self.redis = redis_client
        self.rules = rules or default_business_rules()
        self.cache_enabled = cache_enabled and redis_client is not None
        self.cache_ttl = settings.availability_cache_ttl
        self.practitioner_ttl = settings.practitioner_cache_ttl
        self._metrics = metrics or get_metrics()
        self._clock = clock

    def today(self) -> date:
        return self.rules.to_local(self._clock()).date()

    # === Queries ===

    async def get_available_slots(self, query: AvailabilityQuery) -> list[TimeSlot]:
        """Return offers for the query, sorted by start time."""
        cache_key = query.cache_key()

        cached = await self._read_cache(cache_key)
        if cached is not None:
            self._metrics.increment("availability.cache", result="hit")
            logger.debug(f"Availability cache hit: {cache_key}")
            return cached
        self._metrics.increment("availability.cache", result="miss")

        tz = self.rules.tz
        range_start = datetime.combine(query.start_date, time.min, tzinfo=tz)
        range_end = datetime.combine(query.end_date, time(23, 59, 59), tzinfo=tz)

        raw_slots = await self.emr.get_free_slots(
            range_start,
            range_end,
            practitioner_id=query.practitioner_id,
            appointment_type=query.appointment_type,
        )
        practitioners = {p.id: p for p in await self.get_practitioners()}

        offers = self.apply_business_rules(raw_slots, query, practitioners)
        offers.sort(key=lambda s: s.datetime)

        await self._write_cache(cache_key, query, offers)
        logger.info(
            f"Availability {query.start_date}..{query.end_date}: "
            f"{len(offers)} of {len(raw_slots)} slots offerable"
        )
        return offers

    def apply_business_rules(
        self,
        slots: list[Slot],
        query: AvailabilityQuery,
        practitioners: dict[str, Practitioner],
    ) -> list[TimeSlot]:
        appointment_type = query.appointment_type or "routine"
        duration = self.rules.duration_for(appointment_type)
        offers = []

        for slot in slots:
            reason = self.rules.rejection_reason(slot.start, appointment_type, query.time_of_day)
            if reason is not None:
                continue

            practitioner = practitioners.get(slot.practitioner_id or "")
            if practitioner is not None and not practitioner.handles(appointment_type):
                continue

            offers.append(TimeSlot(
                slot_id=slot.id,
                datetime=slot.start,
                practitioner=practitioner.name if practitioner else "Available Provider",
                practitioner_id=slot.practitioner_id or "",
                duration=duration,
                appointment_type=appointment_type,
                available=True,
            ))

        return offers

    async def next_available(
        self,
        appointment_type: str = "routine",
        max_slots: int = 3,
        practitioner_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        """First offers within the next 60 days."""
        today = self.today()
        query = AvailabilityQuery(
            start_date=today,
            end_date=today + timedelta(days=60),
            appointment_type=appointment_type,
            practitioner_id=practitioner_id,
        )
        return (await self.get_available_slots(query))[:max_slots]

    def resolve_date_range(self, text: Optional[str], default_days: int = 14) -> tuple[date, date]:
        """Parse a natural-language reference or fall back to a lookahead window."""
        today = self.today()
        parsed = parse_natural_date(text or "", today) if text else None
        if parsed is not None:
            return parsed
        return today, today + timedelta(days=default_days)

    async def find_slots(
        self,
        text: Optional[str],
        appointment_type: Optional[str] = None,
        practitioner_id: Optional[str] = None,
        time_of_day: Optional[str] = None,
        default_days: int = 14,
    ) -> list[TimeSlot]:
        """Availability for a spoken request such as "next tuesday morning"."""
        start, end = self.resolve_date_range(text, default_days)
        query = AvailabilityQuery(
            start_date=start,
            end_date=end,
            appointment_type=appointment_type,
            practitioner_id=practitioner_id,
            time_of_day=time_of_day or extract_time_of_day(text or ""),
        )
        return await self.get_available_slots(query)

    # === Practitioners ===

    async def get_practitioners(self) -> list[Practitioner]:
        """Practitioner directory, cached for an hour."""
        cache_key = key("practitioners", "all")
        if self.cache_enabled:
            try:
                raw = await self.redis.get(cache_key)
                if raw:
                    return [Practitioner.from_dict(p) for p in json.loads(raw)]
            except RedisError as e:
                logger.warning(f"Practitioner cache read failed: {e}")

        practitioners = await self.emr.get_practitioners()

        if self.cache_enabled:
            try:
                await self.redis.setex(
                    cache_key,
                    self.practitioner_ttl,
                    json.dumps([p.to_dict() for p in practitioners]),
                )
            except RedisError as e:
                logger.warning(f"Practitioner cache write failed: {e}")
        return practitioners

    async def get_practitioner(self, practitioner_id: str) -> Optional[Practitioner]:
        for practitioner in await self.get_practitioners():
            if practitioner.id == practitioner_id:
                return practitioner
        return None

    # === Cache ===

    async def _read_cache(self, cache_key: str) -> Optional[list[TimeSlot]]:
        if not self.cache_enabled:
            return None
        try:
            raw = await self.redis.get(cache_key)
        except RedisError as e:
            logger.warning(f"Availability cache read failed: {e}")
            return None
        if raw is None:
            return None
        return [TimeSlot.from_dict(item) for item in json.loads(raw)]

    async def _write_cache(
        self,
        cache_key: str,
        query: AvailabilityQuery,
        offers: list[TimeSlot],
    ) -> None:
        if not self.cache_enabled:
            return
        try:
            await self.redis.setex(
                cache_key, self.cache_ttl, json.dumps([o.to_dict() for o in offers])
            )
            for day in query.dates():
                index_key = key("availability", "index", day.isoformat())
                await self.redis.sadd(index_key, cache_key)
                await self.redis.expire(index_key, self.cache_ttl)
        except RedisError as e:
            logger.warning(f"Availability cache write failed: {e}")

    async def invalidate_date(self, day: date) -> int:
        """Drop every cached query whose range covers ``day``."""
        if not self.cache_enabled:
            return 0
        index_key = key("availability", "index", day.isoformat())
        try:
            members = await self.redis.smembers(index_key)
            removed = 0
            if members:
                removed = await self.redis.delete(*members)
            await self.redis.delete(index_key)
        except RedisError as e:
            logger.error(f"Availability cache invalidation failed for {day}: {e}")
            return 0

        self._metrics.increment("availability.invalidations")
        logger.info(f"Availability cache invalidated for {day} ({removed} entries)")
        return removed

    async def invalidate_datetime(self, moment: datetime) -> int:
        """Invalidate the practice-local date of ``moment``."""
        return await self.invalidate_date(self.rules.to_local(moment).date())

    async def invalidate_all(self) -> int:
        """Drop the whole availability cache."""
        if not self.cache_enabled:
            return 0
        removed = 0
        try:
            async for name in self.redis.scan_iter(match=key("availability", "*")):
                removed += await self.redis.delete(name)
        except RedisError as e:
            logger.error(f"Availability cache flush failed: {e}")
            return removed
        logger.info(f"Availability cache flushed ({removed} keys)")
        return removed
