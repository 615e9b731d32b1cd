"""Change history persistence (PostgreSQL via SQLAlchemy)."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.infra.metrics import MetricsSink, get_metrics
from app.models.database import AppointmentChange
from .types import ChangeHistory, ChangeType

logger = logging.getLogger(__name__)


class ChangeHistoryRepository:
    """Append-only store for appointment modifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: Optional[MetricsSink] = None,
    ):
        self._session_factory = session_factory
        self._metrics = metrics or get_metrics()

    async def record(self, entry: ChangeHistory) -> bool:
        """Insert ``entry``. Returns False (and logs) if the database rejects it."""
        row = AppointmentChange(
            id=uuid.UUID(entry.id),
            appointment_id=entry.appointment_id,
            patient_id=entry.patient_id,
            change_type=entry.change_type.value,
            previous_details=entry.previous_details,
            new_details=entry.new_details,
            changed_by=entry.changed_by,
            reason=entry.reason,
            cancellation_fee=entry.cancellation_fee,
            changed_at=entry.timestamp,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            self._metrics.increment("history.write_failures")
            logger.error(
                f"Failed to record {entry.change_type.value} for appointment "
                f"{entry.appointment_id}: {e}"
            )
            return False

        logger.info(
            f"Recorded {entry.change_type.value} for appointment {entry.appointment_id}"
        )
        return True

    async def list_for_appointment(self, appointment_id: str) -> list[ChangeHistory]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AppointmentChange)
                .where(AppointmentChange.appointment_id == appointment_id)
                .order_by(AppointmentChange.changed_at)
            )
            rows = result.scalars().all()

        return [
            ChangeHistory(
                id=str(row.id),
                appointment_id=row.appointment_id,
                patient_id=row.patient_id,
                change_type=ChangeType(row.change_type),
                previous_details=row.previous_details or {},
                new_details=row.new_details or {},
                changed_by=row.changed_by,
                reason=row.reason,
                cancellation_fee=row.cancellation_fee,
                timestamp=row.changed_at,
            )
            for row in rows
        ]
