"""
FastAPI router for the KRW/USD exchange rate.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from catalog_sync.container import ServiceContainer
from catalog_sync.routers.dependencies import get_container

router = APIRouter(prefix="/api/exchange-rate", tags=["exchange-rate"])


class ManualRateRequest(BaseModel):
    rate: float
    reason: str
    valid_days: int | None = None


@router.get("/current")
async def get_current_rate(container: ServiceContainer = Depends(get_container)):
    return await container.exchange_rates.get_current()


@router.post("/manual")
async def set_manual_rate(
    request: ManualRateRequest, container: ServiceContainer = Depends(get_container)
):
    """Replace the active rate. Range and reason are validated by the service."""
    record = await container.exchange_rates.set_manual_rate(
        request.rate, request.reason, request.valid_days
    )
    return record.model_dump(mode="json")
