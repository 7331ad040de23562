"""
Pydantic schemas for the operational API responses and request bodies.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health snapshot derived from persisted errors."""
    status: str = Field(..., description="healthy, degraded or unhealthy")
    error_rate: float = Field(..., description="Errors per minute over the window")
    error_count: int
    critical_error_count: int
    window_seconds: int
    last_update: datetime
    store_available: bool
    active_alerts: int
    active_recoveries: int

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "error_rate": 0.2,
                "error_count": 1,
                "critical_error_count": 0,
                "window_seconds": 300,
                "last_update": "2025-01-10T10:00:00Z",
                "store_available": True,
                "active_alerts": 0,
                "active_recoveries": 0
            }
        }


class AlertResponse(BaseModel):
    id: str
    rule_id: Optional[str] = None
    level: str
    message: str
    value: Optional[float] = None
    threshold: Optional[float] = None
    timestamp: datetime
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    status: str
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class AlertListResponse(BaseModel):
    alerts: List[AlertResponse]
    total: int


class AcknowledgeRequest(BaseModel):
    """Operator acknowledgement of an open alert."""
    acknowledged_by: str = Field(..., min_length=1, max_length=255, description="Who is acknowledging the alert")


class AlertRuleResponse(BaseModel):
    id: str
    name: str
    condition: Dict[str, Any]
    threshold: float
    time_window: str
    severity: str
    enabled: bool
    actions: List[Dict[str, Any]]
    state: str


class StrategyStats(BaseModel):
    total: int
    successful: int
    failed: int


class RecoveryStatsResponse(BaseModel):
    total: int
    successful: int
    failed: int
    success_rate: float
    average_duration_ms: float
    by_strategy: Dict[str, StrategyStats]
    window_seconds: int
    active_recoveries: List[str]


class LogEntryResponse(BaseModel):
    id: str
    timestamp: datetime
    level: str
    message: str
    category: Optional[str] = None
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    error_details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None
    timestamp: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "error": "AlertNotFound",
                "message": "Alert 3f0c... is not active",
                "details": None,
                "correlation_id": "1736503200000-a1b2c3d4e",
                "timestamp": "2025-01-10T10:00:00Z"
            }
        }
