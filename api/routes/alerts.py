"""
Alert and alert rule routes.
"""

from enum import Enum

from fastapi import APIRouter, Depends, HTTPException, Query, status

from observability.alerts import AlertNotFoundError
from service.runtime import ResilienceRuntime
from ..dependencies import get_runtime
from ..schemas import AcknowledgeRequest, AlertListResponse, AlertResponse, AlertRuleResponse

router = APIRouter(prefix="/alerts", tags=["alerts"])


class AlertFilter(str, Enum):
    active = "active"
    resolved = "resolved"
    all = "all"


@router.get("", response_model=AlertListResponse)
def list_alerts(
    status_filter: AlertFilter = Query(AlertFilter.active, alias="status", description="Which alerts to return"),
    runtime: ResilienceRuntime = Depends(get_runtime)
) -> AlertListResponse:
    """Alerts held by the monitoring engine, newest first."""
    alerts = []
    if status_filter in (AlertFilter.active, AlertFilter.all):
        alerts.extend(runtime.monitor.get_active_alerts())
    if status_filter in (AlertFilter.resolved, AlertFilter.all):
        alerts.extend(runtime.monitor.get_resolved_alerts())
    alerts.sort(key=lambda alert: alert.timestamp, reverse=True)

    return AlertListResponse(
        alerts=[AlertResponse(**alert.to_dict()) for alert in alerts],
        total=len(alerts)
    )


@router.get("/rules", response_model=list[AlertRuleResponse])
def list_alert_rules(runtime: ResilienceRuntime = Depends(get_runtime)) -> list[AlertRuleResponse]:
    return [
        AlertRuleResponse(**rule.to_dict(), state=runtime.monitor.get_rule_state(rule.id).value)
        for rule in runtime.monitor.get_alert_rules()
    ]


@router.post("/{alert_id}/acknowledge", response_model=AlertResponse)
def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    runtime: ResilienceRuntime = Depends(get_runtime)
) -> AlertResponse:
    """Acknowledge an open alert. Resolved or unknown alerts return 404."""
    try:
        alert = runtime.monitor.acknowledge_alert(alert_id, request.acknowledged_by)
    except AlertNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert {alert_id} is not active"
        )
    return AlertResponse(**alert.to_dict())
