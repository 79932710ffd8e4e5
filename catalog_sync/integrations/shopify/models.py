"""
Pydantic models for Shopify webhook payloads.
Handles orders/paid, orders/cancelled, and inventory_levels/update events.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from catalog_sync.errors import ValidationError


class WebhookEventType(str, Enum):
    ORDER_PAID = "orders/paid"
    ORDER_CANCELLED = "orders/cancelled"
    INVENTORY_LEVELS_UPDATE = "inventory_levels/update"


class ShopifyLineItem(BaseModel):
    """Shopify order line item model."""

    model_config = ConfigDict(extra="ignore")

    id: int
    sku: str | None = None
    variant_id: int | None = None
    product_id: int | None = None
    quantity: int = Field(ge=0)
    title: str | None = None
    price: str | None = None


class _OrderWebhookBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    order_number: int | None = None
    financial_status: str | None = None
    created_at: datetime | None = None
    line_items: list[ShopifyLineItem] = Field(default_factory=list)


class OrderPaidWebhook(_OrderWebhookBase):
    """Shopify orders/paid webhook payload."""

    event_type: Literal["orders/paid"] = "orders/paid"


class OrderCancelledWebhook(_OrderWebhookBase):
    """Shopify orders/cancelled webhook payload."""

    event_type: Literal["orders/cancelled"] = "orders/cancelled"
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class InventoryLevelsUpdateWebhook(BaseModel):
    """Shopify inventory_levels/update webhook payload."""

    model_config = ConfigDict(extra="ignore")

    event_type: Literal["inventory_levels/update"] = "inventory_levels/update"
    inventory_item_id: int
    location_id: int
    available: int | None = None
    updated_at: datetime | None = None


WebhookPayload = Annotated[
    OrderPaidWebhook | OrderCancelledWebhook | InventoryLevelsUpdateWebhook,
    Field(discriminator="event_type"),
]

_payload_adapter = TypeAdapter(WebhookPayload)


def parse_webhook_payload(event_type: str, payload: dict) -> OrderPaidWebhook | OrderCancelledWebhook | InventoryLevelsUpdateWebhook:
    """
    Validate a raw webhook body into its tagged variant.

    Args:
        event_type: Topic, e.g. "orders/paid"
        payload: Decoded JSON body

    Returns:
        The typed payload

    Raises:
        ValidationError: Unknown topic or malformed body
    """
    try:
        WebhookEventType(event_type)
    except ValueError as e:
        raise ValidationError(f"Unsupported webhook event type: {event_type}") from e

    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    try:
        return _payload_adapter.validate_python({**payload, "event_type": event_type})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {event_type} payload: {e.error_count()} error(s)") from e
