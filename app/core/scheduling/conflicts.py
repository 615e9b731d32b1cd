"""Alternative offers when a requested time is no longer available."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .availability import AvailabilityEngine, AvailabilityQuery
from .types import TimeSlot

logger = logging.getLogger(__name__)

DAYS_BEFORE = 3
DAYS_AFTER = 4
MAX_ALTERNATIVES = 3


class ConflictDetector:
    """Ranks nearby offers by distance from the requested time."""

    def __init__(self, availability: AvailabilityEngine):
        self.availability = availability

    async def find_alternatives(
        self,
        requested: datetime,
        appointment_type: str,
        practitioner_id: Optional[str] = None,
        exclude_slot_id: Optional[str] = None,
        limit: int = MAX_ALTERNATIVES,
    ) -> list[TimeSlot]:
        """Up to ``limit`` offers within -3/+4 days of ``requested``, closest first."""
        local = self.availability.rules.to_local(requested).date()
        today = self.availability.today()
        query = AvailabilityQuery(
            start_date=max(local - timedelta(days=DAYS_BEFORE), today),
            end_date=local + timedelta(days=DAYS_AFTER),
            appointment_type=appointment_type,
            practitioner_id=practitioner_id,
        )
        if query.start_date > query.end_date:
            return []

        offers = await self.availability.get_available_slots(query)
        candidates = [offer for offer in offers if offer.slot_id != exclude_slot_id]
        candidates.sort(key=lambda offer: abs((offer.datetime - requested).total_seconds()))

        logger.info(
            f"Found {len(candidates)} alternatives near {requested.isoformat()}, "
            f"returning {min(limit, len(candidates))}"
        )
        return candidates[:limit]
