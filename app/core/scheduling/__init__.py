"""
Scheduling Module

Availability, booking, modification, waitlist and lookup services for
the practice scheduler, plus the engine that wires them together.

Usage:
    from app.core.scheduling import SchedulingEngine

    engine = SchedulingEngine(emr_client, redis, notifier)
    result = await engine.query_availability("next tuesday morning", "routine")
    outcome = await engine.cancel(appointment_id, patient_id, conversation_id)
"""

# EMR Client
from app.core.scheduling.emr_client import (
    EMRClient,
    get_emr_client,
    close_emr_client,
)
from app.core.scheduling.errors import (
    EMRError,
    CircuitOpenError,
    AppointmentConflictError,
)

# Services
from app.core.scheduling.availability import AvailabilityEngine, AvailabilityQuery
from app.core.scheduling.booking import BookingManager
from app.core.scheduling.conflicts import ConflictDetector
from app.core.scheduling.modification import CancellationPolicy, ModificationOrchestrator
from app.core.scheduling.waitlist import WaitlistManager
from app.core.scheduling.lookup import AppointmentLookupService, LookupResponse
from app.core.scheduling.staff_notifications import StaffNotificationService

# Conversation
from app.core.scheduling.conversation import ConversationStage, ConversationStore
from app.core.scheduling.flow import ConversationFlow, ConfirmationIntent, classify_confirmation

# Scheduling Engine (main orchestrator)
from app.core.scheduling.engine import (
    SchedulingEngine,
    DialogueResponse,
    CancellationOutcome,
)

__all__ = [
    # EMR Client
    "EMRClient",
    "get_emr_client",
    "close_emr_client",
    "EMRError",
    "CircuitOpenError",
    "AppointmentConflictError",
    # Services
    "AvailabilityEngine",
    "AvailabilityQuery",
    "BookingManager",
    "ConflictDetector",
    "CancellationPolicy",
    "ModificationOrchestrator",
    "WaitlistManager",
    "AppointmentLookupService",
    "LookupResponse",
    "StaffNotificationService",
    # Conversation
    "ConversationStage",
    "ConversationStore",
    "ConversationFlow",
    "ConfirmationIntent",
    "classify_confirmation",
    # Scheduling Engine
    "SchedulingEngine",
    "DialogueResponse",
    "CancellationOutcome",
]
