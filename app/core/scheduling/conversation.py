"""
Conversation state for multi-turn booking.

Tracks a caller's progress through
collecting_type -> selecting_time -> gathering_requirements -> confirming -> completed.

Key pattern: scheduler:v1:booking:conversation:{session_id}
Every write refreshes the 30 minute inactivity TTL.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.redis import key
from .types import SpecialRequirements, TimeSlot, format_datetime, parse_datetime

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ConversationStage(str, Enum):
    """Stages of the booking dialogue."""

    COLLECTING_TYPE = "collecting_type"
    SELECTING_TIME = "selecting_time"
    GATHERING_REQUIREMENTS = "gathering_requirements"
    CONFIRMING = "confirming"
    COMPLETED = "completed"

    # Terminal: caller transferred to staff
    HANDED_OFF = "handed_off"


VALID_TRANSITIONS: dict[ConversationStage, Set[ConversationStage]] = {
    ConversationStage.COLLECTING_TYPE: {
        ConversationStage.SELECTING_TIME,
        ConversationStage.HANDED_OFF,
    },
    ConversationStage.SELECTING_TIME: {
        ConversationStage.COLLECTING_TYPE,
        ConversationStage.GATHERING_REQUIREMENTS,
        ConversationStage.CONFIRMING,
        ConversationStage.HANDED_OFF,
    },
    ConversationStage.GATHERING_REQUIREMENTS: {
        ConversationStage.SELECTING_TIME,
        ConversationStage.CONFIRMING,
        ConversationStage.HANDED_OFF,
    },
    ConversationStage.CONFIRMING: {
        ConversationStage.SELECTING_TIME,
        ConversationStage.GATHERING_REQUIREMENTS,
        ConversationStage.COMPLETED,
        ConversationStage.HANDED_OFF,
    },
    ConversationStage.COMPLETED: set(),
    ConversationStage.HANDED_OFF: set(),
}


def can_transition(from_stage: ConversationStage, to_stage: ConversationStage) -> bool:
    """Check if a stage transition is valid. Staying put is always allowed."""
    return from_stage == to_stage or to_stage in VALID_TRANSITIONS.get(from_stage, set())


def is_terminal_stage(stage: ConversationStage) -> bool:
    return not VALID_TRANSITIONS.get(stage)


@dataclass
class BookingFields:
    """Booking details collected so far."""

    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    appointment_type: Optional[str] = None
    preferred_date: Optional[str] = None
    time_of_day: Optional[str] = None
    practitioner_id: Optional[str] = None
    reason: Optional[str] = None
    special_requirements: SpecialRequirements = field(default_factory=SpecialRequirements)

    def update(self, values: dict) -> None:
        """Merge non-null values into the collected fields."""
        for name, value in values.items():
            if value is None or not hasattr(self, name):
                continue
            if name == "special_requirements":
                merged = {**self.special_requirements.to_dict(), **(value or {})}
                self.special_requirements = SpecialRequirements.from_dict(merged)
            else:
                setattr(self, name, value)

    def missing(self) -> list[str]:
        """Fields required before booking that are still unset."""
        return [name for name in ("patient_id", "appointment_type") if not getattr(self, name)]

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
            "appointment_type": self.appointment_type,
            "preferred_date": self.preferred_date,
            "time_of_day": self.time_of_day,
            "practitioner_id": self.practitioner_id,
            "reason": self.reason,
            "special_requirements": self.special_requirements.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BookingFields":
        data = data or {}
        return cls(
            patient_id=data.get("patient_id"),
            patient_name=data.get("patient_name"),
            appointment_type=data.get("appointment_type"),
            preferred_date=data.get("preferred_date"),
            time_of_day=data.get("time_of_day"),
            practitioner_id=data.get("practitioner_id"),
            reason=data.get("reason"),
            special_requirements=SpecialRequirements.from_dict(data.get("special_requirements")),
        )


@dataclass
class ConversationState:
    session_id: str = field(default_factory=lambda: str(uuid4()))
    stage: ConversationStage = ConversationStage.COLLECTING_TYPE
    collected: BookingFields = field(default_factory=BookingFields)
    selected_slot: Optional[TimeSlot] = None
    confirmation_attempts: int = 0
    last_updated: datetime = field(default_factory=_utcnow)

    def transition_to(self, stage: ConversationStage) -> bool:
        """Move to ``stage`` if allowed. Returns False (and stays put) otherwise."""
        if not can_transition(self.stage, stage):
            logger.warning(
                f"Invalid conversation transition {self.stage.value} -> {stage.value} "
                f"for session {self.session_id}"
            )
            return False
        self.stage = stage
        return True

    def to_json(self) -> str:
        return json.dumps({
            "session_id": self.session_id,
            "stage": self.stage.value,
            "collected": self.collected.to_dict(),
            "selected_slot": self.selected_slot.to_dict() if self.selected_slot else None,
            "confirmation_attempts": self.confirmation_attempts,
            "last_updated": format_datetime(self.last_updated),
        })

    @classmethod
    def from_json(cls, raw: str) -> "ConversationState":
        data = json.loads(raw)
        slot = data.get("selected_slot")
        return cls(
            session_id=data["session_id"],
            stage=ConversationStage(data.get("stage", "collecting_type")),
            collected=BookingFields.from_dict(data.get("collected")),
            selected_slot=TimeSlot.from_dict(slot) if slot else None,
            confirmation_attempts=int(data.get("confirmation_attempts", 0)),
            last_updated=parse_datetime(data.get("last_updated")) or _utcnow(),
        )


class ConversationStore:
    """
    Redis-backed conversation state with an in-memory fallback.

    The fallback keeps single-process development usable without Redis;
    it does not expire entries.
    """

    def __init__(self, redis_client: Optional[Redis], ttl: Optional[int] = None):
        self.redis = redis_client
        self._ttl = ttl or settings.redis_session_ttl
        self._in_memory_fallback: dict[str, str] = {}

    def _key(self, session_id: str) -> str:
        return key("booking", "conversation", session_id)

    async def create(
        self,
        session_id: Optional[str] = None,
        collected: Optional[dict] = None,
    ) -> ConversationState:
        state = ConversationState(session_id=session_id or str(uuid4()))
        if collected:
            state.collected.update(collected)
        await self.save(state)
        logger.debug(f"Conversation created: {state.session_id}")
        return state

    async def get(self, session_id: str) -> Optional[ConversationState]:
        raw = None
        if self.redis is not None:
            try:
                raw = await self.redis.get(self._key(session_id))
            except RedisError as e:
                logger.warning(f"Conversation read failed for {session_id}: {e}")
                raw = self._in_memory_fallback.get(session_id)
        else:
            raw = self._in_memory_fallback.get(session_id)
        return ConversationState.from_json(raw) if raw else None

    async def save(self, state: ConversationState) -> None:
        """Persist state and refresh its TTL."""
        state.last_updated = _utcnow()
        payload = state.to_json()
        if self.redis is not None:
            try:
                await self.redis.setex(self._key(state.session_id), self._ttl, payload)
                return
            except RedisError as e:
                logger.warning(
                    f"Conversation write failed for {state.session_id}, using memory: {e}"
                )
        self._in_memory_fallback[state.session_id] = payload

    async def update(
        self,
        session_id: str,
        collected: Optional[dict] = None,
        stage: Optional[ConversationStage] = None,
        selected_slot: Optional[TimeSlot] = None,
    ) -> Optional[ConversationState]:
        """Merge fields and optionally advance the stage. None if the session is gone."""
        state = await self.get(session_id)
        if state is None:
            return None
        if collected:
            state.collected.update(collected)
        if selected_slot is not None:
            state.selected_slot = selected_slot
        if stage is not None:
            state.transition_to(stage)
        await self.save(state)
        return state

    async def delete(self, session_id: str) -> None:
        self._in_memory_fallback.pop(session_id, None)
        if self.redis is not None:
            try:
                await self.redis.delete(self._key(session_id))
            except RedisError as e:
                logger.warning(f"Conversation delete failed for {session_id}: {e}")
