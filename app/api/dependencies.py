"""FastAPI dependencies."""

from typing import Optional

from fastapi import HTTPException, Request, status

from app.core.scheduling.engine import SchedulingEngine


def get_engine(request: Request) -> SchedulingEngine:
    """The engine built at startup; 503 while it is unavailable."""
    engine: Optional[SchedulingEngine] = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduling service unavailable",
        )
    return engine
