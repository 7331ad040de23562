"""
Health and Prometheus metrics routes.
"""

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from service.runtime import ResilienceRuntime
from ..dependencies import get_runtime
from ..schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: ResilienceRuntime = Depends(get_runtime)) -> HealthResponse:
    """
    Current health classification.

    Computed from persisted errors over the configured window. When the store
    is unreachable the snapshot reports zero counts, `store_available=false`
    and the configured fail-safe status.
    """
    snapshot = await runtime.monitor.get_health_status()
    return HealthResponse(
        status=snapshot.health_status.value,
        error_rate=snapshot.error_rate,
        error_count=snapshot.error_count,
        critical_error_count=snapshot.critical_error_count,
        window_seconds=snapshot.window_seconds,
        last_update=snapshot.last_update,
        store_available=snapshot.store_available,
        active_alerts=len(runtime.monitor.get_active_alerts()),
        active_recoveries=len(runtime.recovery.get_active_recoveries()),
    )


@router.get("/metrics")
def prometheus_metrics(runtime: ResilienceRuntime = Depends(get_runtime)) -> Response:
    """Prometheus exposition of the runtime's metrics registry."""
    return Response(content=generate_latest(runtime.metrics.registry), media_type=CONTENT_TYPE_LATEST)
