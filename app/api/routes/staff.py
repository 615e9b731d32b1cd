"""
Staff Notification Endpoints.

Dashboard queue of cancellations and waitlist outcomes needing follow-up.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field

from app.api.dependencies import get_engine
from app.api.routes.scheduling import ClosedModel
from app.core.scheduling.engine import SchedulingEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/staff", tags=["Staff"])


class AcknowledgeRequest(ClosedModel):
    staff_id: str = Field(..., min_length=1)


class ResolveRequest(ClosedModel):
    staff_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


@router.get("/notifications", summary="List unresolved staff notifications")
async def list_notifications(
    department: Optional[Literal["reception", "medical", "billing", "management"]] = None,
    limit: int = Query(default=50, ge=1, le=200),
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    notifications = await engine.staff.list_active(department=department, limit=limit)
    return {"success": True, "notifications": [n.to_dict() for n in notifications]}


@router.get("/notifications/metrics", summary="Staff notification metrics")
async def notification_metrics(
    timeframe: Literal["hour", "day", "week"] = "day",
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    return {"success": True, "metrics": await engine.staff.metrics(timeframe)}


@router.post("/notifications/{notification_id}/acknowledge", summary="Acknowledge a notification")
async def acknowledge(
    notification_id: str,
    request: AcknowledgeRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    if not await engine.staff.acknowledge(notification_id, request.staff_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}


@router.post("/notifications/{notification_id}/resolve", summary="Resolve a notification")
async def resolve(
    notification_id: str,
    request: ResolveRequest,
    engine: SchedulingEngine = Depends(get_engine),
) -> dict:
    if not await engine.staff.resolve(notification_id, request.staff_id, request.notes):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}
