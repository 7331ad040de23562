"""
Recovery statistics and recent error routes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from observability.config import is_valid_time_window
from service.runtime import ResilienceRuntime
from ..dependencies import get_runtime
from ..schemas import LogEntryResponse, RecoveryStatsResponse

router = APIRouter(tags=["recovery"])


@router.get("/recovery/stats", response_model=RecoveryStatsResponse)
async def recovery_stats(
    window: str = Query("24h", description="Trailing window such as 30m, 24h or 7d"),
    correlation_id: Optional[str] = Query(None, description="Restrict to one correlation id"),
    runtime: ResilienceRuntime = Depends(get_runtime)
) -> RecoveryStatsResponse:
    """Recovery attempt counts by outcome and strategy."""
    if not is_valid_time_window(window):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid time window: {window}"
        )
    stats = await runtime.recovery.get_recovery_stats(window, correlation_id=correlation_id)
    return RecoveryStatsResponse(**stats, active_recoveries=runtime.recovery.get_active_recoveries())


@router.get("/errors/recent", response_model=List[LogEntryResponse])
def recent_errors(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of entries to return"),
    runtime: ResilienceRuntime = Depends(get_runtime)
) -> List[LogEntryResponse]:
    """Persisted error and critical events, newest first."""
    runtime.event_logger.flush()
    return [
        LogEntryResponse(**{key: value for key, value in entry.to_row().items() if key in LogEntryResponse.model_fields})
        for entry in runtime.event_logger.get_recent_errors(limit)
    ]
