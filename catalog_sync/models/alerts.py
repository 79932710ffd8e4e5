"""
Pydantic models for inventory alerts and fleet metrics kept in Redis.
"""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AlertType(str, Enum):
    SYNC_FAILED = "sync_failed"
    DISCREPANCY = "discrepancy"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    UPDATE_FAILED = "update_failed"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(BaseModel):
    """A raised condition for one SKU (or "*" for fleet-wide conditions)."""

    id: str
    type: AlertType
    severity: AlertSeverity
    sku: str
    product_name: str | None = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    resolved: bool = False
    resolved_at: datetime | None = None
    purge_after: datetime | None = None

    @property
    def condition_key(self) -> tuple[str, str]:
        return (self.type.value, self.sku)


class AlertCounts(BaseModel):
    total: int = 0
    unresolved: int = 0
    by_severity: dict[str, int] = Field(
        default_factory=lambda: {severity.value: 0 for severity in AlertSeverity}
    )


class FleetMetrics(BaseModel):
    """Fleet-wide snapshot published by the monitoring cycle."""

    total_skus: int = 0
    synced_skus: int = 0
    out_of_sync_skus: int = 0
    low_stock_skus: int = 0
    out_of_stock_skus: int = 0
    sync_success_rate: float = 100.0
    last_sync_time: datetime | None = None
    alerts: AlertCounts = Field(default_factory=AlertCounts)
    generated_at: datetime
