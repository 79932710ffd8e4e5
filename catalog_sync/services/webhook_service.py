"""
Webhook ingestion gateway.

Verifies Shopify webhook signatures, deduplicates deliveries by event id using
a TTL-bound receipt in Redis, and turns order/inventory events into
reconciliation engine calls. Internal failures are captured in the recorded
outcome; only a bad signature is surfaced to the transport.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from catalog_sync.errors import SignatureVerificationError, UnresolvedMappingError, ValidationError, policy_for
from catalog_sync.integrations.shopify.models import (
    InventoryLevelsUpdateWebhook,
    OrderCancelledWebhook,
    OrderPaidWebhook,
    ShopifyLineItem,
    parse_webhook_payload,
)
from catalog_sync.models.database import (
    Initiator,
    OrderItemOutcome,
    OrderItemStatus,
    OrderSyncStatus,
    Platform,
    ProductMapping,
    TransactionType,
)
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.clock import Clock, utc_now

logger = structlog.get_logger()

RECEIPT_KEY_PREFIX = "webhook:receipt:"


class WebhookOutcome(BaseModel):
    """Recorded result of processing one webhook delivery."""

    event_id: str
    event_type: str
    status: str  # processing, processed, partial, failed, no_op, ignored
    items: list[OrderItemOutcome] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    processed_at: datetime
    duplicate: bool = False


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Verify a Shopify webhook signature.

    Args:
        raw_body: Raw request body bytes
        signature: X-Shopify-Hmac-Sha256 header value
        secret: Shared webhook secret; empty disables verification

    Returns:
        True if signature is valid (or verification is disabled), False otherwise
    """
    if not secret:
        logger.warning("Webhook secret not configured, skipping signature verification")
        return True

    if not signature:
        return False

    calculated_hmac = base64.b64encode(
        hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    ).decode("utf-8")

    # Constant-time comparison
    return hmac.compare_digest(calculated_hmac, signature)


class WebhookIngestionService:
    """Idempotent handler for Shopify order and inventory webhooks."""

    def __init__(
        self,
        store,
        engine,
        cache: CacheService,
        webhook_secret: str | None = None,
        receipt_ttl_seconds: int = 86400,
        claim_ttl_seconds: int = 300,
        target_platform: Platform = Platform.NAVER,
        clock: Clock = utc_now,
    ):
        """
        Args:
            store: SupabaseService (or a compatible double)
            engine: ReconciliationService
            cache: Cache holding idempotency receipts
            webhook_secret: Shopify webhook secret
            receipt_ttl_seconds: How long a processed event id is remembered
            claim_ttl_seconds: How long an in-flight claim blocks redelivery of the same event id
            target_platform: Platform whose inventory follows Shopify orders
            clock: Time source
        """
        self.store = store
        self.engine = engine
        self.cache = cache
        self.webhook_secret = webhook_secret
        self.receipt_ttl_seconds = receipt_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.target_platform = target_platform
        self.clock = clock

    @staticmethod
    def receipt_key(event_id: str) -> str:
        return f"{RECEIPT_KEY_PREFIX}{event_id}"

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        return verify_webhook_signature(raw_body, signature, self.webhook_secret)

    async def handle(
        self, raw_body: bytes, signature: str | None, event_id: str | None, event_type: str
    ) -> WebhookOutcome:
        """
        Verify, decode and ingest one delivery.

        Raises:
            SignatureVerificationError: Signature did not match; nothing was processed
        """
        if not self.verify(raw_body, signature):
            logger.warning("Invalid webhook signature", event_type=event_type, event_id=event_id)
            raise SignatureVerificationError("Invalid webhook signature")

        if not event_id:
            event_id = f"body-{hashlib.sha256(raw_body).hexdigest()}"
            logger.warning("Webhook missing event id, using body digest", event_type=event_type)

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            payload = None
            logger.warning("Webhook body is not valid JSON", event_id=event_id, error=str(e))

        return await self.ingest(event_id, event_type, payload)

    async def ingest(self, event_id: str, event_type: str, payload: Any) -> WebhookOutcome:
        """
        Process an event at most once per receipt TTL window.

        The event id is claimed with an atomic set-if-absent before any handling,
        so a concurrent duplicate sees the claim and is not processed again. A
        known event id returns the stored outcome with duplicate=True and does
        nothing else. Otherwise the event is handled and its outcome (including
        failures) replaces the claim with the full receipt TTL.

        Receipt store failures are logged and never surface to the caller; the
        event is then handled without dedup and relies on the per-order record.
        """
        key = self.receipt_key(event_id)
        log = logger.bind(event_id=event_id, event_type=event_type)

        claim = self._outcome(event_id, event_type, "processing")
        try:
            claimed = await self.cache.set_json_if_absent(
                key, claim.model_dump(mode="json"), ttl=self.claim_ttl_seconds
            )
        except Exception as e:
            log.error("Webhook receipt store unavailable, processing without dedup", error=str(e))
            claimed = True

        if not claimed:
            return await self._duplicate(key, claim, log)

        try:
            event = parse_webhook_payload(event_type, payload)
            if isinstance(event, OrderPaidWebhook):
                outcome = await self._handle_order_paid(event_id, event)
            elif isinstance(event, OrderCancelledWebhook):
                outcome = await self._handle_order_cancelled(event_id, event)
            else:
                outcome = await self._handle_inventory_level(event_id, event)
        except Exception as e:
            log.error(
                "Webhook processing failed",
                error=str(e),
                error_type=type(e).__name__,
                action=policy_for(e).value,
            )
            outcome = self._outcome(event_id, event_type, "failed", error=str(e))

        try:
            await self.cache.set_json(key, outcome.model_dump(mode="json"), ttl=self.receipt_ttl_seconds)
        except Exception as e:
            log.error("Failed to record webhook receipt", error=str(e))
        log.info("Webhook processed", status=outcome.status, items=len(outcome.items))
        return outcome

    async def _duplicate(self, key: str, claim: WebhookOutcome, log) -> WebhookOutcome:
        try:
            receipt = await self.cache.get_json(key)
        except Exception as e:
            log.error("Failed to read webhook receipt", error=str(e))
            receipt = None

        # still in flight, or the claim expired between the two calls
        outcome = WebhookOutcome(**receipt) if receipt is not None else claim
        outcome.duplicate = True
        log.info("Duplicate webhook ignored", status=outcome.status)
        return outcome

    def _outcome(self, event_id: str, event_type: str, status: str, **kwargs) -> WebhookOutcome:
        return WebhookOutcome(
            event_id=event_id,
            event_type=event_type,
            status=status,
            processed_at=self.clock(),
            **kwargs,
        )

    async def _resolve_mapping(self, item: ShopifyLineItem) -> ProductMapping:
        mapping = None
        if item.sku:
            mapping = await self.store.get_mapping(item.sku)
        if mapping is None and item.variant_id is not None:
            mapping = await self.store.get_mapping_by_variant_id(str(item.variant_id))
        if mapping is None:
            raise UnresolvedMappingError(item.sku or f"variant:{item.variant_id}")
        return mapping

    @staticmethod
    def _summarize(items: list[OrderItemOutcome], ok: OrderItemStatus) -> str:
        relevant = [entry for entry in items if entry.status != OrderItemStatus.SKIPPED]
        if not relevant:
            return "processed"
        failed = [entry for entry in relevant if entry.status != ok]
        if not failed:
            return "processed"
        if len(failed) == len(relevant):
            return "failed"
        return "partial"

    async def _load_order_status(self, order_id: str) -> OrderSyncStatus | None:
        """
        Stored per-order record, or one rebuilt from ledger entries tagged with
        the order id when the record was never written.
        """
        status = await self.store.get_order_status(order_id)
        if status is not None:
            return status

        entries = await self.store.list_transactions_for_order(order_id)
        items: dict[str, OrderItemOutcome] = {}
        for entry in entries:
            if entry.order_line_item_id is None:
                continue
            if entry.transaction_type == TransactionType.SALE:
                items[entry.order_line_item_id] = OrderItemOutcome(
                    line_item_id=entry.order_line_item_id,
                    sku=entry.sku,
                    quantity=-entry.quantity,
                    status=OrderItemStatus.DECREMENTED,
                )
            elif entry.transaction_type == TransactionType.ADJUSTMENT and entry.order_line_item_id in items:
                items[entry.order_line_item_id].status = OrderItemStatus.COMPENSATED
        if not items:
            return None

        logger.warning("Order record missing, rebuilt from ledger", order_id=order_id, items=len(items))
        return OrderSyncStatus(order_id=order_id, platform=Platform.SHOPIFY, items=list(items.values()))

    async def _save_order_status(self, status: OrderSyncStatus) -> str | None:
        """Persist the per-order record; returns the error message on failure."""
        try:
            await self.store.save_order_status(status)
            return None
        except Exception as e:
            logger.error("Failed to save order status", order_id=status.order_id, error=str(e))
            return str(e)

    async def _handle_order_paid(self, event_id: str, event: OrderPaidWebhook) -> WebhookOutcome:
        """Decrement the target platform for every resolvable line item."""
        order_id = str(event.id)
        order_number = event.name or (str(event.order_number) if event.order_number else None)
        status = await self._load_order_status(order_id) or OrderSyncStatus(
            order_id=order_id, platform=Platform.SHOPIFY
        )
        status.order_number = status.order_number or order_number

        results: list[OrderItemOutcome] = []
        for item in event.line_items:
            line_item_id = str(item.id)
            prior = status.item(line_item_id)
            # (order id, line item) already applied
            if prior is not None and prior.status in (OrderItemStatus.DECREMENTED, OrderItemStatus.COMPENSATED):
                results.append(prior)
                continue

            if item.quantity == 0:
                entry = OrderItemOutcome(
                    line_item_id=line_item_id, sku=item.sku, quantity=0, status=OrderItemStatus.SKIPPED
                )
            else:
                entry = await self._decrement_item(order_id, status.order_number, line_item_id, item)

            results.append(entry)
            self._put_item(status, entry)
            if entry.status == OrderItemStatus.DECREMENTED:
                await self._save_order_status(status)

        status.status = self._summarize(results, OrderItemStatus.DECREMENTED)
        save_error = await self._save_order_status(status)
        return self._outcome(
            event_id,
            "orders/paid",
            status.status,
            items=results,
            detail={"order_id": order_id, "order_status_saved": save_error is None},
            error=f"Order status not saved: {save_error}" if save_error else None,
        )

    async def _decrement_item(
        self, order_id: str, order_number: str | None, line_item_id: str, item: ShopifyLineItem
    ) -> OrderItemOutcome:
        try:
            mapping = await self._resolve_mapping(item)
            await self.engine.adjust(
                mapping.sku,
                self.target_platform,
                -item.quantity,
                reason=f"Shopify order {order_number or order_id} paid",
                transaction_type=TransactionType.SALE,
                performed_by=Initiator.WEBHOOK,
                order_id=order_id,
                order_line_item_id=line_item_id,
            )
            return OrderItemOutcome(
                line_item_id=line_item_id,
                sku=mapping.sku,
                quantity=item.quantity,
                status=OrderItemStatus.DECREMENTED,
            )
        except Exception as e:
            logger.warning(
                "Order line item not applied",
                order_id=order_id,
                line_item_id=line_item_id,
                sku=item.sku,
                error=str(e),
                action=policy_for(e).value,
            )
            return OrderItemOutcome(
                line_item_id=line_item_id,
                sku=item.sku,
                quantity=item.quantity,
                status=OrderItemStatus.FAILED,
                error=str(e),
            )

    @staticmethod
    def _put_item(status: OrderSyncStatus, entry: OrderItemOutcome):
        for index, existing in enumerate(status.items):
            if existing.line_item_id == entry.line_item_id:
                status.items[index] = entry
                return
        status.items.append(entry)

    async def _handle_order_cancelled(
        self, event_id: str, event: OrderCancelledWebhook
    ) -> WebhookOutcome:
        """Compensate every item that was decremented for the order."""
        order_id = str(event.id)
        status = await self._load_order_status(order_id)
        if status is None:
            logger.info("Cancellation for unknown order, nothing to compensate", order_id=order_id)
            return self._outcome(event_id, "orders/cancelled", "no_op", detail={"order_id": order_id})

        results: list[OrderItemOutcome] = []
        for entry in status.items:
            if entry.status not in (OrderItemStatus.DECREMENTED, OrderItemStatus.COMPENSATION_FAILED):
                continue
            try:
                await self.engine.adjust(
                    entry.sku,
                    self.target_platform,
                    entry.quantity,
                    reason=f"Shopify order {status.order_number or order_id} cancelled",
                    transaction_type=TransactionType.ADJUSTMENT,
                    performed_by=Initiator.WEBHOOK,
                    order_id=order_id,
                    order_line_item_id=entry.line_item_id,
                )
                entry.status = OrderItemStatus.COMPENSATED
                entry.error = None
            except Exception as e:
                logger.warning(
                    "Compensation failed",
                    order_id=order_id,
                    line_item_id=entry.line_item_id,
                    sku=entry.sku,
                    error=str(e),
                )
                entry.status = OrderItemStatus.COMPENSATION_FAILED
                entry.error = str(e)
            results.append(entry)
            if entry.status == OrderItemStatus.COMPENSATED:
                await self._save_order_status(status)

        if not results:
            outcome_status = "no_op"
        else:
            outcome_status = self._summarize(results, OrderItemStatus.COMPENSATED)
        status.status = "cancelled" if outcome_status in ("processed", "no_op") else outcome_status
        save_error = await self._save_order_status(status)
        return self._outcome(
            event_id,
            "orders/cancelled",
            outcome_status,
            items=results,
            detail={"order_id": order_id, "order_status_saved": save_error is None},
            error=f"Order status not saved: {save_error}" if save_error else None,
        )

    async def _handle_inventory_level(
        self, event_id: str, event: InventoryLevelsUpdateWebhook
    ) -> WebhookOutcome:
        """Record the reported Shopify level as an authoritative override."""
        if event.available is None:
            return self._outcome(
                event_id,
                "inventory_levels/update",
                "ignored",
                detail={"reason": "inventory not tracked", "inventory_item_id": str(event.inventory_item_id)},
            )
        if event.available < 0:
            raise ValidationError("available must be >= 0")

        mapping = await self.store.get_mapping_by_inventory_item(
            str(event.inventory_item_id), str(event.location_id)
        )
        if mapping is None:
            raise UnresolvedMappingError(f"inventory_item:{event.inventory_item_id}@{event.location_id}")

        transaction = await self.engine.set_quantity(
            mapping.sku,
            Platform.SHOPIFY,
            event.available,
            reason="Shopify inventory level update",
            performed_by=Initiator.WEBHOOK,
            mapping=mapping,
        )
        return self._outcome(
            event_id,
            "inventory_levels/update",
            "processed",
            detail={
                "sku": mapping.sku,
                "previous_quantity": transaction.previous_quantity,
                "new_quantity": transaction.new_quantity,
            },
        )
