"""
Durable job scheduler.

Deferred work (appointment reminders, waitlist response deadlines,
business-hours notification delivery) is persisted in Redis so it
survives restarts:

- jobs:due -> sorted set of job ids scored by due epoch seconds
- jobs:payload:{id} -> job JSON

A job is claimed by removing it from the sorted set; only the poller that
removed it runs it. Cancelling a job that already ran is a no-op. A job
whose handler raises is put back with exponential backoff until it has
failed max_attempts times.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.infra.metrics import MetricsSink, get_metrics
from app.infra.redis import key
from app.infra.resilience import RetryPolicy

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict], Awaitable[Any]]


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ScheduledJob:
    kind: str
    due_at: datetime
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    attempts: int = 0

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "kind": self.kind,
            "due_at": self.due_at.isoformat(),
            "payload": self.payload,
            "attempts": self.attempts,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ScheduledJob":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            kind=data["kind"],
            due_at=datetime.fromisoformat(data["due_at"]),
            payload=data.get("payload") or {},
            attempts=data.get("attempts", 0),
        )


class JobScheduler:
    """Persisted due-time index with registered handlers per job kind."""

    def __init__(
        self,
        redis_client: Optional[Redis],
        clock: Callable[[], datetime] = _utcnow,
        metrics: Optional[MetricsSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.redis = redis_client
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._retry = retry_policy or RetryPolicy(max_attempts=3, base_delay=60.0, max_delay=900.0)
        self._handlers: dict[str, JobHandler] = {}
        self._due_key = key("jobs", "due")

    def _payload_key(self, job_id: str) -> str:
        return key("jobs", "payload", job_id)

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    async def schedule(
        self,
        kind: str,
        due_at: datetime,
        payload: Optional[dict] = None,
        job_id: Optional[str] = None,
    ) -> Optional[str]:
        """Persist a job. Returns its id, or None when Redis is unavailable.

        Scheduling an existing ``job_id`` replaces it.
        """
        if self.redis is None:
            logger.warning(f"Redis unavailable, job '{kind}' due {due_at} not scheduled")
            return None

        job = ScheduledJob(kind=kind, due_at=due_at, payload=payload or {})
        if job_id:
            job.id = job_id
        try:
            await self.redis.set(self._payload_key(job.id), job.to_json())
            await self.redis.zadd(self._due_key, {job.id: due_at.timestamp()})
        except RedisError as e:
            logger.error(f"Failed to schedule job '{kind}': {e}")
            return None

        self._metrics.increment("jobs.scheduled", kind=kind)
        logger.debug(f"Scheduled job {job.id} ({kind}) for {due_at.isoformat()}")
        return job.id

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job. False if it already ran or never existed."""
        if self.redis is None:
            return False
        try:
            removed = await self.redis.zrem(self._due_key, job_id)
            await self.redis.delete(self._payload_key(job_id))
        except RedisError as e:
            logger.error(f"Failed to cancel job {job_id}: {e}")
            return False
        if removed:
            logger.debug(f"Cancelled job {job_id}")
        return bool(removed)

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        if self.redis is None:
            return None
        raw = await self.redis.get(self._payload_key(job_id))
        return ScheduledJob.from_json(raw) if raw else None

    async def pending_count(self) -> int:
        if self.redis is None:
            return 0
        return len(await self.redis.zrangebyscore(self._due_key, "-inf", "+inf"))

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Run every job due at or before ``now``. Returns the number run."""
        if self.redis is None:
            return 0

        now = now or self._clock()
        try:
            due_ids = await self.redis.zrangebyscore(self._due_key, "-inf", now.timestamp())
        except RedisError as e:
            logger.error(f"Failed to read due jobs: {e}")
            return 0

        ran = 0
        for job_id in due_ids:
            # Claim: only the caller that removes the id runs the job
            if not await self.redis.zrem(self._due_key, job_id):
                continue

            raw = await self.redis.get(self._payload_key(job_id))
            await self.redis.delete(self._payload_key(job_id))
            if raw is None:
                continue

            job = ScheduledJob.from_json(raw)
            handler = self._handlers.get(job.kind)
            if handler is None:
                logger.warning(f"No handler registered for job kind '{job.kind}' ({job.id})")
                continue

            try:
                await handler(job.payload)
                ran += 1
                self._metrics.increment("jobs.run", kind=job.kind)
            except Exception as e:
                self._metrics.increment("jobs.failed", kind=job.kind)
                logger.exception(f"Job {job.id} ({job.kind}) failed: {e}")
                await self._retry_later(job, now)
        return ran

    async def _retry_later(self, job: ScheduledJob, now: datetime) -> None:
        job.attempts += 1
        if job.attempts >= self._retry.max_attempts:
            self._metrics.increment("jobs.abandoned", kind=job.kind)
            logger.error(f"Job {job.id} ({job.kind}) abandoned after {job.attempts} attempts")
            return

        try:
            # The handler may already have rescheduled this id
            if await self.redis.exists(self._payload_key(job.id)):
                return
            job.due_at = now + timedelta(seconds=self._retry.delay_for(job.attempts))
            await self.redis.set(self._payload_key(job.id), job.to_json())
            await self.redis.zadd(self._due_key, {job.id: job.due_at.timestamp()})
        except RedisError as e:
            logger.error(f"Failed to requeue job {job.id} ({job.kind}): {e}")
            return

        self._metrics.increment("jobs.retried", kind=job.kind)
        logger.warning(
            f"Job {job.id} ({job.kind}) retry {job.attempts} due {job.due_at.isoformat()}"
        )

    async def recover(self) -> int:
        """Startup pass: run jobs that fell due while the process was down."""
        if self.redis is None:
            return 0
        now = self._clock()
        overdue = await self.redis.zrangebyscore(self._due_key, "-inf", now.timestamp())
        if overdue:
            logger.info(f"Recovering {len(overdue)} overdue scheduled jobs")
        return await self.run_due(now)

    async def run_forever(self, poll_interval: float, stop: asyncio.Event) -> None:
        """Poll for due jobs until ``stop`` is set."""
        logger.info(f"Job scheduler polling every {poll_interval}s")
        while not stop.is_set():
            try:
                await self.run_due()
            except RedisError as e:
                logger.error(f"Job poll failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Job scheduler stopped")
