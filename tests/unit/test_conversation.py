"""Tests for conversation state and its store."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from app.core.scheduling.conversation import (
    BookingFields,
    ConversationStage,
    ConversationState,
    ConversationStore,
    can_transition,
    is_terminal_stage,
)
from app.infra.redis import key
from tests.conftest import NOW
from tests.factories import make_offer


class TestStageTransitions:
    """Test the conversation stage machine."""

    @pytest.mark.parametrize(
        "from_stage, to_stage",
        [
            (ConversationStage.COLLECTING_TYPE, ConversationStage.SELECTING_TIME),
            (ConversationStage.SELECTING_TIME, ConversationStage.CONFIRMING),
            (ConversationStage.SELECTING_TIME, ConversationStage.GATHERING_REQUIREMENTS),
            (ConversationStage.GATHERING_REQUIREMENTS, ConversationStage.CONFIRMING),
            (ConversationStage.CONFIRMING, ConversationStage.SELECTING_TIME),
            (ConversationStage.CONFIRMING, ConversationStage.COMPLETED),
            (ConversationStage.CONFIRMING, ConversationStage.HANDED_OFF),
        ],
    )
    def test_valid(self, from_stage, to_stage):
        assert can_transition(from_stage, to_stage)

    @pytest.mark.parametrize(
        "from_stage, to_stage",
        [
            (ConversationStage.COLLECTING_TYPE, ConversationStage.CONFIRMING),
            (ConversationStage.COLLECTING_TYPE, ConversationStage.COMPLETED),
            (ConversationStage.COMPLETED, ConversationStage.SELECTING_TIME),
            (ConversationStage.HANDED_OFF, ConversationStage.CONFIRMING),
        ],
    )
    def test_invalid(self, from_stage, to_stage):
        assert not can_transition(from_stage, to_stage)

    def test_staying_put_is_allowed(self):
        assert can_transition(ConversationStage.CONFIRMING, ConversationStage.CONFIRMING)

    def test_terminal_stages(self):
        assert is_terminal_stage(ConversationStage.COMPLETED)
        assert is_terminal_stage(ConversationStage.HANDED_OFF)
        assert not is_terminal_stage(ConversationStage.CONFIRMING)

    def test_invalid_transition_keeps_stage(self):
        state = ConversationState()

        assert state.transition_to(ConversationStage.COMPLETED) is False
        assert state.stage == ConversationStage.COLLECTING_TYPE


class TestBookingFields:
    def test_update_ignores_nulls_and_unknown_names(self):
        fields = BookingFields(appointment_type="routine")

        fields.update({"appointment_type": None, "patient_id": "p-1", "shoe_size": 9})

        assert fields.appointment_type == "routine"
        assert fields.patient_id == "p-1"

    def test_special_requirements_merge(self):
        fields = BookingFields()
        fields.update({"special_requirements": {"dilation_needed": True}})
        fields.update({"special_requirements": {"interpreter_required": True, "preferred_language": "es"}})

        assert fields.special_requirements.dilation_needed is True
        assert fields.special_requirements.preferred_language == "es"

    def test_missing(self):
        assert BookingFields().missing() == ["patient_id", "appointment_type"]
        assert BookingFields(patient_id="p", appointment_type="urgent").missing() == []

    def test_state_json_round_trip_keeps_slot(self):
        state = ConversationState(session_id="s-1", stage=ConversationStage.CONFIRMING)
        state.selected_slot = make_offer("slot-1", NOW)
        state.confirmation_attempts = 2

        restored = ConversationState.from_json(state.to_json())

        assert restored.stage == ConversationStage.CONFIRMING
        assert restored.selected_slot == state.selected_slot
        assert restored.confirmation_attempts == 2


class TestConversationStore:
    """Test ConversationStore with Redis and the in-memory fallback."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, fake_redis):
        store = ConversationStore(fake_redis)

        state = await store.create("call-1", collected={"patient_id": "p-1"})
        loaded = await store.get("call-1")

        assert state.session_id == "call-1"
        assert loaded.collected.patient_id == "p-1"
        assert fake_redis.ttls[key("booking", "conversation", "call-1")] == 1800

    @pytest.mark.asyncio
    async def test_update_merges_and_advances(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.create("call-1")

        state = await store.update(
            "call-1",
            collected={"appointment_type": "urgent"},
            stage=ConversationStage.SELECTING_TIME,
        )

        assert state.stage == ConversationStage.SELECTING_TIME
        assert (await store.get("call-1")).collected.appointment_type == "urgent"

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_stage(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.create("call-1")

        state = await store.update("call-1", stage=ConversationStage.COMPLETED)

        assert state.stage == ConversationStage.COLLECTING_TYPE

    @pytest.mark.asyncio
    async def test_update_missing_session(self, fake_redis):
        store = ConversationStore(fake_redis)

        assert await store.update("nope", collected={"patient_id": "p"}) is None

    @pytest.mark.asyncio
    async def test_delete(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.create("call-1")

        await store.delete("call-1")

        assert await store.get("call-1") is None

    @pytest.mark.asyncio
    async def test_in_memory_without_redis(self):
        store = ConversationStore(None)

        await store.create("call-1", collected={"appointment_type": "routine"})
        loaded = await store.get("call-1")

        assert loaded.collected.appointment_type == "routine"

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_on_redis_error(self):
        broken = AsyncMock()
        broken.setex.side_effect = RedisError("down")
        broken.get.side_effect = RedisError("down")
        store = ConversationStore(broken)

        await store.create("call-1", collected={"patient_id": "p-1"})
        loaded = await store.get("call-1")

        assert loaded.collected.patient_id == "p-1"
