"""
Confirmation dialogue.

Before booking, the caller hears the appointment details read back and
must answer with an explicit yes. Replies are classified as affirm, deny
or unclear; three unclear replies end in a transfer to staff.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.config import settings
from .business_rules import BusinessRules, default_business_rules
from .conversation import ConversationStage, ConversationState, ConversationStore
from .messages import (
    CHANGE_REQUESTED,
    CONFIRMATION_EXHAUSTED,
    CONFIRMATION_UNCLEAR,
    NEED_MORE_INFO,
    SESSION_NOT_FOUND,
    MessageBuilder,
)
from .types import BookingRequest, TimeSlot

logger = logging.getLogger(__name__)


class ConfirmationIntent(str, Enum):
    AFFIRM = "affirm"
    DENY = "deny"
    UNCLEAR = "unclear"


AFFIRM_PATTERN = re.compile(
    r"^(yes|yep|yeah|correct|confirm|right|that's right|that is right|sounds good|perfect"
    r"|sure|okay|ok|absolutely)\b"
)
DENY_PATTERN = re.compile(r"^(no|nope|wrong|incorrect|change|different)\b")

# A yes followed by any of these is not an unconditional yes
HEDGE_PATTERN = re.compile(
    r"\b(but|however|although|except|change|different|instead|actually|wait"
    r"|can we|could we|can i|could i|what about|maybe|not sure|don't|no)\b"
)


def classify_confirmation(utterance: Optional[str]) -> ConfirmationIntent:
    """Classify a reply to the read-back.

    Examples:
        "yes" -> AFFIRM
        "that's right, thanks" -> AFFIRM
        "no" / "wrong day" -> DENY
        "yes, but can we do 3pm" -> UNCLEAR
        "hmm" -> UNCLEAR
    """
    text = (utterance or "").strip().lower()
    text = re.sub(r"^[^\w']+|[^\w']+$", "", text)
    if not text:
        return ConfirmationIntent.UNCLEAR

    affirm = AFFIRM_PATTERN.match(text)
    if affirm:
        remainder = text[affirm.end():]
        if HEDGE_PATTERN.search(remainder):
            return ConfirmationIntent.UNCLEAR
        return ConfirmationIntent.AFFIRM

    if DENY_PATTERN.match(text):
        return ConfirmationIntent.DENY

    return ConfirmationIntent.UNCLEAR


@dataclass
class FlowOutcome:
    """What the caller should do after a confirmation reply."""

    action: str  # book, reselect, clarify, handoff, restart, collect
    message: str
    state: Optional[ConversationState] = None
    intent: Optional[ConfirmationIntent] = None

    @property
    def should_book(self) -> bool:
        return self.action == "book"


class ConversationFlow:
    """Drives the confirming stage of a booking conversation."""

    def __init__(
        self,
        store: ConversationStore,
        messages: Optional[MessageBuilder] = None,
        rules: Optional[BusinessRules] = None,
        max_attempts: Optional[int] = None,
    ):
        self.store = store
        self.messages = messages or MessageBuilder()
        self.rules = rules or default_business_rules()
        self.max_attempts = max_attempts or settings.max_confirmation_attempts

    async def begin_confirmation(self, state: ConversationState, slot: TimeSlot) -> str:
        """Select ``slot``, move to confirming and return the read-back."""
        state.selected_slot = slot
        if state.stage == ConversationStage.COLLECTING_TYPE:
            state.transition_to(ConversationStage.SELECTING_TIME)
        state.transition_to(ConversationStage.CONFIRMING)
        state.confirmation_attempts = 0
        await self.store.save(state)

        appointment_type = state.collected.appointment_type or slot.appointment_type
        duration = slot.duration or self.rules.duration_for(appointment_type)
        return self.messages.confirmation_protocol(
            slot,
            appointment_type,
            duration,
            self._read_back_lines(state),
        )

    @staticmethod
    def _read_back_lines(state: ConversationState) -> list[str]:
        requirements = state.collected.special_requirements
        lines = []
        if requirements.dilation_needed:
            lines.append("Eye dilation will be performed")
        if requirements.interpreter_required:
            lines.append("An interpreter will be arranged")
        if requirements.accessibility_needs:
            lines.append(f"Accessibility: {requirements.accessibility_needs}")
        return lines

    async def handle_response(self, session_id: str, utterance: str) -> FlowOutcome:
        """Process the caller's reply to the read-back."""
        state = await self.store.get(session_id)
        if state is None:
            return FlowOutcome(action="restart", message=SESSION_NOT_FOUND)

        if state.stage != ConversationStage.CONFIRMING or state.selected_slot is None:
            return FlowOutcome(action="collect", message=NEED_MORE_INFO, state=state)

        intent = classify_confirmation(utterance)
        logger.info(f"Confirmation reply for {session_id} classified as {intent.value}")

        if intent == ConfirmationIntent.AFFIRM:
            return FlowOutcome(action="book", message="", state=state, intent=intent)

        if intent == ConfirmationIntent.DENY:
            state.transition_to(ConversationStage.SELECTING_TIME)
            state.confirmation_attempts = 0
            await self.store.save(state)
            return FlowOutcome(action="reselect", message=CHANGE_REQUESTED, state=state, intent=intent)

        state.confirmation_attempts += 1
        if state.confirmation_attempts >= self.max_attempts:
            state.transition_to(ConversationStage.HANDED_OFF)
            await self.store.save(state)
            logger.info(f"Confirmation attempts exhausted for {session_id}, handing off")
            return FlowOutcome(
                action="handoff", message=CONFIRMATION_EXHAUSTED, state=state, intent=intent
            )

        await self.store.save(state)
        return FlowOutcome(action="clarify", message=CONFIRMATION_UNCLEAR, state=state, intent=intent)

    def build_booking_request(self, state: ConversationState) -> Optional[BookingRequest]:
        """Booking request from a confirmed conversation, or None if incomplete."""
        slot = state.selected_slot
        if slot is None or state.collected.missing():
            return None
        return BookingRequest(
            slot_id=slot.slot_id,
            patient_id=state.collected.patient_id,
            appointment_type=state.collected.appointment_type or slot.appointment_type,
            conversation_id=state.session_id,
            practitioner_id=slot.practitioner_id or state.collected.practitioner_id,
            requested_datetime=slot.datetime,
            reason=state.collected.reason,
            special_requirements=state.collected.special_requirements,
        )

    async def complete(self, state: ConversationState) -> None:
        state.transition_to(ConversationStage.COMPLETED)
        await self.store.save(state)

    async def return_to_selection(self, state: ConversationState) -> None:
        """After a lost race for the slot, go back to choosing a time."""
        state.selected_slot = None
        state.confirmation_attempts = 0
        state.transition_to(ConversationStage.SELECTING_TIME)
        await self.store.save(state)
