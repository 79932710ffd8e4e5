"""
FastAPI router for inventory alerts and fleet metrics.
"""
from fastapi import APIRouter, Depends, Query

from catalog_sync.container import ServiceContainer
from catalog_sync.routers.dependencies import get_container
from catalog_sync.services.alert_service import latest_per_condition

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


@router.get("")
async def list_alerts(
    unresolved_only: bool = Query(False),
    latest_only: bool = Query(False, description="Keep only the newest alert per type and SKU"),
    container: ServiceContainer = Depends(get_container),
):
    alerts = await container.alert_service.list_alerts(unresolved_only=unresolved_only)
    if latest_only:
        alerts = latest_per_condition(alerts)
    return {"alerts": [alert.model_dump(mode="json") for alert in alerts], "count": len(alerts)}


@router.get("/metrics")
async def get_metrics(container: ServiceContainer = Depends(get_container)):
    metrics = await container.monitoring.get_metrics()
    return metrics.model_dump(mode="json")


@router.post("/{alert_id}/resolve")
async def resolve_alert(alert_id: str, container: ServiceContainer = Depends(get_container)):
    resolved = await container.alert_service.resolve_alert(alert_id)
    return {"alert_id": alert_id, "resolved": resolved}
