"""Tests for change-history persistence and the database health check."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.scheduling.history import ChangeHistoryRepository
from app.core.scheduling.types import ChangeHistory, ChangeType
from app.infra.database import check_db_health
from app.models.database import AppointmentChange
from tests.conftest import NOW


def session_factory(session) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory


def cancellation() -> ChangeHistory:
    return ChangeHistory(
        appointment_id="appt-1",
        patient_id="patient-1",
        change_type=ChangeType.CANCELLED,
        previous_details={"status": "booked"},
        new_details={"status": "cancelled"},
        changed_by="patient",
        reason="Feeling better",
        cancellation_fee=25.0,
        timestamp=NOW,
    )


class TestChangeHistoryRepository:
    @pytest.mark.asyncio
    async def test_record_inserts_row(self, metrics):
        session = MagicMock()
        session.commit = AsyncMock()
        repository = ChangeHistoryRepository(session_factory(session), metrics=metrics)

        assert await repository.record(cancellation()) is True

        [row] = session.add.call_args.args
        assert isinstance(row, AppointmentChange)
        assert row.change_type == "cancelled"
        assert row.cancellation_fee == 25.0
        assert row.changed_at == NOW
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_write_failure_is_counted(self, metrics):
        session = MagicMock()
        session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
        repository = ChangeHistoryRepository(session_factory(session), metrics=metrics)

        assert await repository.record(cancellation()) is False
        assert metrics.counter("history.write_failures") == 1


class TestDatabaseHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        session = AsyncMock()

        assert await check_db_health(session_factory(session)) is True
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        session = AsyncMock()
        session.execute.side_effect = OSError("connection refused")

        assert await check_db_health(session_factory(session)) is False
