"""Tests for the staff notification queue."""

from datetime import timedelta

import pytest

from app.core.scheduling.staff_notifications import (
    StaffNotificationService,
    StaffNotificationType,
    StaffPriority,
    cancellation_action,
    cancellation_department,
    cancellation_priority,
    waitlist_response_priority,
)
from app.core.scheduling.types import Priority
from app.infra.redis import key
from tests.conftest import NOW
from tests.factories import make_appointment, make_entry, make_offer


@pytest.fixture
def service(fake_redis, messages, metrics, clock):
    return StaffNotificationService(fake_redis, messages=messages, metrics=metrics, clock=clock)


class TestRoutingRules:
    """Test priority, department and action selection."""

    @pytest.mark.parametrize(
        "appointment_type, emergency, late, expected",
        [
            ("routine", True, False, StaffPriority.CRITICAL),
            ("urgent", False, True, StaffPriority.HIGH),
            ("routine", False, True, StaffPriority.NORMAL),
            ("urgent", False, False, StaffPriority.NORMAL),
            ("routine", False, False, StaffPriority.LOW),
        ],
    )
    def test_cancellation_priority(self, appointment_type, emergency, late, expected):
        assert cancellation_priority(appointment_type, emergency, late) == expected

    def test_cancellation_department(self):
        assert cancellation_department(emergency=True, late=True) == "medical"
        assert cancellation_department(emergency=False, late=True) == "billing"
        assert cancellation_department(emergency=False, late=False) == "reception"

    def test_cancellation_action(self):
        assert cancellation_action("routine", True, False) == "follow_up"
        assert cancellation_action("routine", False, True) == "billing_review"
        assert cancellation_action("urgent", False, False) == "reschedule_assistance"
        assert cancellation_action("routine", False, False) == "chart_update"

    @pytest.mark.parametrize(
        "response, tier, expected",
        [
            ("accepted", Priority.URGENT, StaffPriority.HIGH),
            ("accepted", Priority.NORMAL, StaffPriority.NORMAL),
            ("no_response", Priority.URGENT, StaffPriority.NORMAL),
            ("no_response", Priority.NORMAL, StaffPriority.LOW),
            ("declined", Priority.URGENT, StaffPriority.LOW),
        ],
    )
    def test_waitlist_response_priority(self, response, tier, expected):
        assert waitlist_response_priority(response, tier) == expected


class TestCreation:
    """Test notification creation and queueing."""

    @pytest.mark.asyncio
    async def test_late_cancellation(self, service, fake_redis):
        appointment = make_appointment(NOW + timedelta(hours=5))

        notification = await service.notify_cancellation(appointment, late=True, fee=25.0, waitlist_notified=2)

        assert notification.type == StaffNotificationType.LATE_CANCELLATION
        assert notification.department == "billing"
        assert notification.requires_action is True
        assert "Cancellation fee: $25.00" in notification.message
        assert "Reference: ABCD-2345" in notification.message
        assert "2 waitlisted patients have been notified" in notification.message
        assert await fake_redis.lrange(key("staff", "notifications", "billing"), 0, -1) == [notification.id]
        assert notification.id in await fake_redis.lrange(key("staff", "notifications", "active"), 0, -1)

    @pytest.mark.asyncio
    async def test_emergency_goes_to_urgent_queue(self, service, fake_redis, metrics):
        appointment = make_appointment(NOW + timedelta(days=2))

        notification = await service.notify_cancellation(appointment, emergency=True, reason="Hospitalised")

        assert notification.priority == StaffPriority.CRITICAL
        assert notification.title.startswith("EMERGENCY")
        assert "Reason: Hospitalised." in notification.message
        assert await fake_redis.lrange(key("staff", "notifications", "urgent"), 0, -1) == [notification.id]
        assert metrics.counter(
            "staff.notifications", type="emergency_cancellation", priority="critical"
        ) == 1

    @pytest.mark.asyncio
    async def test_routine_cancellation_needs_no_action(self, service, fake_redis):
        notification = await service.notify_cancellation(make_appointment(NOW + timedelta(days=3)))

        assert notification.priority == StaffPriority.LOW
        assert notification.requires_action is False
        assert "No waitlisted patients to notify." in notification.message
        assert key("staff", "notifications", "urgent") not in fake_redis.lists

    @pytest.mark.asyncio
    async def test_waitlist_accepted(self, service):
        entry = make_entry(NOW, priority=Priority.URGENT)
        slot = make_offer("slot-1", NOW + timedelta(days=1))

        notification = await service.notify_waitlist_response(entry, "accepted", slot)

        assert notification.priority == StaffPriority.HIGH
        assert notification.action_type == "book_appointment"
        assert notification.requires_action is True
        assert "ACCEPTED" in notification.message
        assert notification.waitlist_entry_id == entry.id

    @pytest.mark.asyncio
    async def test_waitlist_no_response(self, service):
        slot = make_offer("slot-1", NOW + timedelta(days=1))

        notification = await service.notify_waitlist_response(make_entry(NOW), "no_response", slot)

        assert notification.action_type == "reschedule_assistance"
        assert "has not responded" in notification.message


class TestDashboard:
    """Test listing, acknowledgment, resolution and metrics."""

    @pytest.mark.asyncio
    async def test_list_active_sorted_by_priority_then_newest(self, service, clock):
        low = await service.notify_cancellation(make_appointment(NOW + timedelta(days=3)))
        clock.advance(minutes=5)
        critical = await service.notify_cancellation(make_appointment(NOW + timedelta(days=3)), emergency=True)
        clock.advance(minutes=5)
        newer_low = await service.notify_cancellation(make_appointment(NOW + timedelta(days=3)))

        active = await service.list_active()

        assert [n.id for n in active] == [critical.id, newer_low.id, low.id]

    @pytest.mark.asyncio
    async def test_list_by_department(self, service):
        await service.notify_cancellation(make_appointment(NOW + timedelta(days=3)))
        billing = await service.notify_cancellation(make_appointment(NOW + timedelta(hours=3)), late=True)

        assert [n.id for n in await service.list_active(department="billing")] == [billing.id]

    @pytest.mark.asyncio
    async def test_acknowledge_leaves_urgent_queue(self, service, fake_redis, clock):
        notification = await service.notify_cancellation(make_appointment(NOW), emergency=True)
        clock.advance(minutes=4)

        assert await service.acknowledge(notification.id, "staff-1") is True

        stored = await service.get(notification.id)
        assert stored.acknowledged_by == "staff-1"
        assert stored.acknowledged_at == clock.now
        assert await fake_redis.lrange(key("staff", "notifications", "urgent"), 0, -1) == []
        assert [n.id for n in await service.list_active()] == [notification.id]

    @pytest.mark.asyncio
    async def test_resolve_removes_from_queues(self, service):
        notification = await service.notify_cancellation(make_appointment(NOW), late=True)

        assert await service.resolve(notification.id, "staff-2", notes="Fee waived") is True

        stored = await service.get(notification.id)
        assert stored.resolved is True
        assert stored.acknowledged_by == "staff-2"
        assert stored.notes == "Fee waived"
        assert await service.list_active() == []

    @pytest.mark.asyncio
    async def test_unknown_notification(self, service):
        assert await service.acknowledge("missing", "staff-1") is False
        assert await service.resolve("missing", "staff-1") is False

    @pytest.mark.asyncio
    async def test_metrics(self, service, clock):
        first = await service.notify_cancellation(make_appointment(NOW), emergency=True)
        await service.notify_cancellation(make_appointment(NOW))
        clock.advance(minutes=10)
        await service.acknowledge(first.id, "staff-1")
        clock.advance(minutes=20)
        await service.resolve(first.id, "staff-1")

        summary = await service.metrics("day")

        assert summary["total_notifications"] == 2
        assert summary["by_priority"] == {"critical": 1, "low": 1}
        assert summary["by_department"] == {"medical": 1, "reception": 1}
        assert summary["average_acknowledgment_minutes"] == 10
        assert summary["average_resolution_minutes"] == 30
        assert summary["unacknowledged_count"] == 1
        assert summary["unresolved_count"] == 1

    @pytest.mark.asyncio
    async def test_metrics_window_excludes_old(self, service, clock):
        await service.notify_cancellation(make_appointment(NOW))
        clock.advance(hours=2)

        summary = await service.metrics("hour")

        assert summary["total_notifications"] == 0
