"""Tests for alternative-slot ranking."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from app.core.scheduling.availability import AvailabilityEngine
from app.core.scheduling.conflicts import ConflictDetector
from tests.factories import make_slot, practitioners


def utc(day: int, hour: int) -> datetime:
    return datetime(2030, 3, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def emr():
    client = AsyncMock()
    client.get_practitioners.return_value = practitioners()
    return client


@pytest.fixture
def detector(emr, rules, metrics, clock):
    availability = AvailabilityEngine(emr, None, rules=rules, metrics=metrics, clock=clock)
    return ConflictDetector(availability)


class TestFindAlternatives:
    """Test ConflictDetector.find_alternatives."""

    @pytest.mark.asyncio
    async def test_closest_three_excluding_requested(self, detector, emr):
        emr.get_free_slots.return_value = [
            make_slot("requested", utc(5, 10)),
            make_slot("thu", utc(7, 10)),
            make_slot("wed", utc(6, 10)),
            make_slot("tue-11", utc(5, 11)),
            make_slot("tue-9", utc(5, 9)),
            make_slot("mon-15", utc(4, 15)),
        ]

        alternatives = await detector.find_alternatives(
            utc(5, 10), "routine", exclude_slot_id="requested"
        )

        assert [a.slot_id for a in alternatives] == ["tue-9", "tue-11", "mon-15"]

    @pytest.mark.asyncio
    async def test_window_clamped_to_today(self, detector, emr):
        """The search never starts before today."""
        emr.get_free_slots.return_value = []

        await detector.find_alternatives(utc(5, 10), "routine")

        start, end = emr.get_free_slots.call_args.args[:2]
        assert start.date() == date(2030, 3, 4)
        assert end.date() == date(2030, 3, 9)

    @pytest.mark.asyncio
    async def test_window_around_later_date(self, detector, emr):
        emr.get_free_slots.return_value = []

        await detector.find_alternatives(utc(20, 10), "routine", practitioner_id="doc-1")

        call = emr.get_free_slots.call_args
        assert call.args[0].date() == date(2030, 3, 17)
        assert call.args[1].date() == date(2030, 3, 24)
        assert call.kwargs["practitioner_id"] == "doc-1"

    @pytest.mark.asyncio
    async def test_alternatives_respect_business_rules(self, detector, emr):
        emr.get_free_slots.return_value = [
            make_slot("lunch", utc(5, 12)),
            make_slot("saturday", utc(9, 10)),
        ]

        assert await detector.find_alternatives(utc(5, 10), "routine") == []

    @pytest.mark.asyncio
    async def test_limit(self, detector, emr):
        emr.get_free_slots.return_value = [make_slot(f"s{h}", utc(5, h)) for h in (8, 9, 10, 11)]

        alternatives = await detector.find_alternatives(utc(5, 10), "routine", limit=1)

        assert [a.slot_id for a in alternatives] == ["s10"]
