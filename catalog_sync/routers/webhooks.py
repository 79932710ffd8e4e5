"""
FastAPI router for Shopify webhook endpoints.
Handles orders/paid, orders/cancelled and inventory_levels/update events.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from catalog_sync.container import ServiceContainer
from catalog_sync.errors import SignatureVerificationError
from catalog_sync.routers.dependencies import get_container

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/shopify/{event_type:path}")
async def shopify_webhook(
    event_type: str,
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
    container: ServiceContainer = Depends(get_container),
):
    """
    Handle a Shopify webhook.
    Returns 401 on a bad signature; every other outcome is acknowledged with 200
    so Shopify does not redeliver.
    """
    # Read raw body for signature verification
    body_bytes = await request.body()

    try:
        outcome = await container.webhooks.handle(
            body_bytes, x_shopify_hmac_sha256, x_shopify_webhook_id, event_type
        )
    except SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    return {"success": True, "outcome": outcome.model_dump(mode="json")}
