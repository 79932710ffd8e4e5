"""
Reconciliation engine.

Compares and corrects inventory and price for one SKU across the two catalogs.
Every quantity change is an append to the inventory ledger plus an update of
the mapping's cached per-platform quantity. Mapping writes are last-write-wins.
"""

import asyncio
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

import structlog

from catalog_sync.errors import UnresolvedMappingError, ValidationError
from catalog_sync.integrations.registry import CatalogRegistry
from catalog_sync.models.alerts import AlertSeverity, AlertType
from catalog_sync.models.database import (
    Initiator,
    InventoryTransaction,
    Platform,
    PlatformInventory,
    PriceHistory,
    PriceRule,
    PriceRuleType,
    ProductMapping,
    RoundingStrategy,
    SyncStatus,
    TransactionType,
)
from catalog_sync.utils.clock import Clock, utc_now
from catalog_sync.utils.retry import ResiliencePolicy, call_with_resilience, is_transient_error

logger = structlog.get_logger()

PRICE_EPSILON = 0.005

RULE_TYPE_ORDER = {
    PriceRuleType.SKU: 0,
    PriceRuleType.CATEGORY: 1,
    PriceRuleType.BRAND: 2,
    PriceRuleType.PRICE_RANGE: 3,
}

_ROUNDING_MODES = {
    RoundingStrategy.UP: ROUND_CEILING,
    RoundingStrategy.DOWN: ROUND_FLOOR,
    RoundingStrategy.NEAREST: ROUND_HALF_UP,
}


@dataclass(frozen=True)
class Thresholds:
    low_stock: int = 10
    critical_stock: int = 5
    tolerance: int = 5
    medium_delta: int = 10
    high_delta: int = 20

    @classmethod
    def from_settings(cls, settings) -> "Thresholds":
        return cls(
            low_stock=settings.low_stock_threshold,
            critical_stock=settings.critical_stock_threshold,
            tolerance=settings.discrepancy_tolerance,
            medium_delta=settings.discrepancy_medium_delta,
            high_delta=settings.discrepancy_high_delta,
        )


@dataclass(frozen=True)
class Discrepancy:
    """Inventory comparison for one SKU. side_a is Naver, side_b is Shopify."""

    field: str
    side_a: int
    side_b: int
    delta: int


@dataclass(frozen=True)
class Condition:
    type: AlertType
    severity: AlertSeverity
    discrepancy: Discrepancy


@dataclass
class PriceSyncResult:
    sku: str
    source_price: float
    old_price: Optional[float]
    new_price: float
    margin: float
    exchange_rate: float
    rule_id: Optional[str]
    updated: bool


def compute_discrepancy(mapping: ProductMapping) -> Discrepancy:
    naver_qty = mapping.quantity(Platform.NAVER)
    shopify_qty = mapping.quantity(Platform.SHOPIFY)
    return Discrepancy(
        field="inventory",
        side_a=naver_qty,
        side_b=shopify_qty,
        delta=abs(naver_qty - shopify_qty),
    )


def classify_discrepancy(d: Discrepancy, thresholds: Thresholds = Thresholds()) -> Optional[Condition]:
    """
    Cross-platform classification: out_of_stock if either side is empty,
    otherwise discrepancy once the delta reaches the tolerance.
    """
    if d.side_a == 0 or d.side_b == 0:
        return Condition(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, d)
    if d.delta >= thresholds.tolerance:
        if d.delta >= thresholds.high_delta:
            severity = AlertSeverity.HIGH
        elif d.delta >= thresholds.medium_delta:
            severity = AlertSeverity.MEDIUM
        else:
            severity = AlertSeverity.LOW
        return Condition(AlertType.DISCREPANCY, severity, d)
    return None


def classify_stock_level(d: Discrepancy, thresholds: Thresholds = Thresholds()) -> Optional[Condition]:
    """Stock-level classification on the smaller of the two quantities."""
    lowest = min(d.side_a, d.side_b)
    if lowest <= 0:
        return Condition(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, d)
    if lowest <= thresholds.critical_stock:
        return Condition(AlertType.LOW_STOCK, AlertSeverity.HIGH, d)
    if lowest <= thresholds.low_stock:
        return Condition(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, d)
    return None


def classify(mapping: ProductMapping, thresholds: Thresholds = Thresholds()) -> Optional[Condition]:
    """Primary condition for a mapping: cross-platform first, then stock level."""
    d = compute_discrepancy(mapping)
    return classify_discrepancy(d, thresholds) or classify_stock_level(d, thresholds)


def evaluate_conditions(mapping: ProductMapping, thresholds: Thresholds = Thresholds()) -> list[Condition]:
    """Every distinct condition type that currently holds for a mapping."""
    d = compute_discrepancy(mapping)
    conditions: list[Condition] = []
    for condition in (classify_discrepancy(d, thresholds), classify_stock_level(d, thresholds)):
        if condition is not None and all(c.type != condition.type for c in conditions):
            conditions.append(condition)
    return conditions


def round_price(value: float | Decimal, strategy: RoundingStrategy) -> float:
    """Round to cents using the given strategy."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return float(value.quantize(Decimal("0.01"), rounding=_ROUNDING_MODES[strategy]))


def convert_price(
    source_price: float, exchange_rate: float, margin: float, strategy: RoundingStrategy
) -> float:
    """source_price * exchange_rate * margin in decimal arithmetic, rounded to cents."""
    raw = Decimal(str(source_price)) * Decimal(str(exchange_rate)) * Decimal(str(margin))
    return round_price(raw, strategy)


def select_price_rule(
    mapping: ProductMapping, rules: list[PriceRule], source_price: float
) -> Optional[PriceRule]:
    """
    Pick the applicable rule: sku > category > brand > price_range, and the
    highest priority within a type.
    """
    matches = [rule for rule in rules if rule.enabled and _rule_matches(rule, mapping, source_price)]
    if not matches:
        return None
    matches.sort(key=lambda rule: (RULE_TYPE_ORDER[rule.type], -rule.priority))
    return matches[0]


def _rule_matches(rule: PriceRule, mapping: ProductMapping, source_price: float) -> bool:
    value = (rule.value or "").strip().lower()
    if rule.type == PriceRuleType.SKU:
        return value == mapping.sku.lower()
    if rule.type == PriceRuleType.CATEGORY:
        return bool(mapping.category) and value == mapping.category.strip().lower()
    if rule.type == PriceRuleType.BRAND:
        brand = mapping.brand or mapping.vendor
        return bool(brand) and value == brand.strip().lower()
    if rule.type == PriceRuleType.PRICE_RANGE:
        if rule.min_price is not None and source_price < rule.min_price:
            return False
        if rule.max_price is not None and source_price > rule.max_price:
            return False
        return True
    return False


class ReconciliationService:
    """Applies inventory adjustments and price writes for single SKUs."""

    def __init__(
        self,
        store,
        catalogs: CatalogRegistry | None = None,
        alert_service=None,
        policy: ResiliencePolicy | None = None,
        thresholds: Thresholds | None = None,
        default_margin: float = 1.15,
        source_platform: Platform = Platform.NAVER,
        clock: Clock = utc_now,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            store: SupabaseService (or a compatible double)
            catalogs: Catalog clients; when None, changes are only recorded locally
            alert_service: AlertService used for update_failed alerts
            policy: Retry/timeout policy for catalog calls
            thresholds: Classification thresholds
            default_margin: Margin used when neither a rule nor the mapping sets one
            source_platform: Platform whose inventory wins during reconciliation
            clock: Time source
            sleep: Sleep coroutine used between retries
        """
        self.store = store
        self.catalogs = catalogs
        self.alert_service = alert_service
        self.policy = policy or ResiliencePolicy()
        self.thresholds = thresholds or Thresholds()
        self.default_margin = default_margin
        self.source_platform = source_platform
        self.clock = clock
        self.sleep = sleep

    async def get_mapping(self, sku: str) -> ProductMapping:
        mapping = await self.store.get_mapping(sku)
        if mapping is None:
            raise UnresolvedMappingError(sku)
        return mapping

    def classify(self, mapping: ProductMapping) -> Optional[Condition]:
        return classify(mapping, self.thresholds)

    def evaluate_conditions(self, mapping: ProductMapping) -> list[Condition]:
        return evaluate_conditions(mapping, self.thresholds)

    async def _call_catalog(self, platform: Platform, operation: str, call):
        client = self.catalogs.get(platform)
        return await call_with_resilience(
            lambda: call(client), self.policy, operation=f"{platform.value}.{operation}", sleep=self.sleep
        )

    def _can_push(self, platform: Platform) -> bool:
        return self.catalogs is not None and self.catalogs.has(platform)

    async def _record(
        self,
        mapping: ProductMapping,
        platform: Platform,
        transaction_type: TransactionType,
        new_quantity: int,
        reason: str,
        performed_by: Initiator,
        order_id: Optional[str] = None,
        order_line_item_id: Optional[str] = None,
    ) -> InventoryTransaction:
        now = self.clock()
        previous = mapping.quantity(platform)
        transaction = await self.store.create_inventory_transaction(
            InventoryTransaction(
                sku=mapping.sku,
                platform=platform,
                transaction_type=transaction_type,
                quantity=new_quantity - previous,
                previous_quantity=previous,
                new_quantity=new_quantity,
                reason=reason,
                performed_by=performed_by,
                order_id=order_id,
                order_line_item_id=order_line_item_id,
                created_at=now,
            )
        )
        mapping.inventory[platform] = PlatformInventory(available_qty=new_quantity, last_update=now)
        await self.store.save_mapping(mapping)
        return transaction

    async def _record_push_failure(
        self,
        mapping: ProductMapping,
        platform: Platform,
        reason: str,
        error: Exception,
        performed_by: Initiator,
        order_id: Optional[str],
    ):
        attempts = self.policy.max_attempts if is_transient_error(error) else 1
        now = self.clock()
        previous = mapping.quantity(platform)
        await self.store.create_inventory_transaction(
            InventoryTransaction(
                sku=mapping.sku,
                platform=platform,
                transaction_type=TransactionType.UPDATE_FAILED,
                quantity=0,
                previous_quantity=previous,
                new_quantity=previous,
                reason=f"{reason} (failed: {error})",
                performed_by=performed_by,
                order_id=order_id,
                created_at=now,
            )
        )
        mapping.sync_status = SyncStatus.ERROR
        mapping.sync_error = str(error)
        await self.store.save_mapping(mapping)
        if self.alert_service is not None:
            await self.alert_service.record_update_failure(
                mapping.sku, platform.value, str(error), attempts, product_name=mapping.product_name
            )

    async def adjust(
        self,
        sku: str,
        platform: Platform,
        delta: int,
        reason: str,
        transaction_type: TransactionType = TransactionType.ADJUSTMENT,
        performed_by: Initiator = Initiator.SYSTEM,
        order_id: Optional[str] = None,
        order_line_item_id: Optional[str] = None,
        push: bool = True,
    ) -> InventoryTransaction:
        """
        Apply a signed quantity change for one SKU on one platform.

        The change is pushed to the platform first (when a client is registered
        and push is set), then appended to the ledger and mirrored into the
        mapping's cached quantity. Not idempotent on its own; callers dedupe.

        Args:
            sku: Product SKU
            platform: Platform whose quantity changes
            delta: Signed change
            reason: Human-readable reason stored on the ledger entry
            transaction_type: Ledger entry type
            performed_by: Initiator recorded on the entry
            order_id: Correlated order id, if any
            order_line_item_id: Correlated order line item id, if any
            push: Whether to write the change to the platform

        Returns:
            The appended ledger entry

        Raises:
            ValidationError: delta is zero or reason is empty
            UnresolvedMappingError: No mapping for the SKU
        """
        if delta == 0:
            raise ValidationError("delta must be non-zero")
        if not reason:
            raise ValidationError("reason is required")

        mapping = await self.get_mapping(sku)

        if push and self._can_push(platform):
            try:
                await self._call_catalog(
                    platform, "adjust_available", lambda client: client.adjust_available(mapping, delta)
                )
            except Exception as e:
                logger.warning(
                    "Platform inventory adjustment failed",
                    sku=mapping.sku,
                    platform=platform.value,
                    delta=delta,
                    error=str(e),
                )
                await self._record_push_failure(mapping, platform, reason, e, performed_by, order_id)
                raise

        transaction = await self._record(
            mapping,
            platform,
            transaction_type,
            mapping.quantity(platform) + delta,
            reason,
            performed_by,
            order_id=order_id,
            order_line_item_id=order_line_item_id,
        )
        logger.info(
            "Inventory adjusted",
            sku=mapping.sku,
            platform=platform.value,
            delta=delta,
            new_quantity=transaction.new_quantity,
            order_id=order_id,
        )
        return transaction

    async def set_quantity(
        self,
        sku: str,
        platform: Platform,
        quantity: int,
        reason: str,
        performed_by: Initiator = Initiator.SYSTEM,
        push: bool = False,
        mapping: Optional[ProductMapping] = None,
    ) -> InventoryTransaction:
        """
        Record an authoritative quantity for a platform as a sync ledger entry.

        The entry's delta is the difference from the cached quantity, which may be 0.
        """
        if quantity < 0:
            raise ValidationError("quantity must be >= 0")
        mapping = mapping or await self.get_mapping(sku)

        if push and self._can_push(platform):
            try:
                await self._call_catalog(
                    platform, "set_available", lambda client: client.set_available(mapping, quantity)
                )
            except Exception as e:
                await self._record_push_failure(mapping, platform, reason, e, performed_by, None)
                raise

        transaction = await self._record(
            mapping, platform, TransactionType.SYNC, quantity, reason, performed_by
        )
        logger.info(
            "Inventory level recorded",
            sku=mapping.sku,
            platform=platform.value,
            quantity=quantity,
            delta=transaction.quantity,
        )
        return transaction

    async def reconcile_inventory(self, sku: str) -> dict:
        """
        Refresh both cached quantities from the live catalogs, then move the
        non-source platform to the source platform's quantity if they differ.

        Returns:
            Summary dict with before/after quantities and whether a correction was applied
        """
        mapping = await self.get_mapping(sku)

        for platform in (Platform.NAVER, Platform.SHOPIFY):
            if not self._can_push(platform):
                continue
            live = await self._call_catalog(
                platform, "get_available", lambda client: client.get_available(mapping)
            )
            if live != mapping.quantity(platform):
                await self.set_quantity(
                    mapping.sku, platform, live, "live inventory refresh", mapping=mapping
                )

        before = compute_discrepancy(mapping)
        corrected = False
        if before.delta != 0:
            target = self.source_platform.counterpart
            source_qty = mapping.quantity(self.source_platform)
            await self.set_quantity(
                mapping.sku,
                target,
                source_qty,
                f"reconcile from {self.source_platform.value}",
                push=True,
                mapping=mapping,
            )
            corrected = True

        mapping.sync_status = SyncStatus.SYNCED
        mapping.sync_error = None
        mapping.last_synced_at = self.clock()
        await self.store.save_mapping(mapping)

        return {
            "sku": mapping.sku,
            "naver_before": before.side_a,
            "shopify_before": before.side_b,
            "delta_before": before.delta,
            "corrected": corrected,
            "naver_after": mapping.quantity(Platform.NAVER),
            "shopify_after": mapping.quantity(Platform.SHOPIFY),
        }

    async def sync_price(
        self,
        sku: str,
        rules: list[PriceRule],
        exchange_rate: float,
        rounding_strategy: RoundingStrategy = RoundingStrategy.NEAREST,
        margin: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> PriceSyncResult:
        """
        Convert the Naver (KRW) price to a Shopify (USD) price and write it if it changed.

        Args:
            sku: Product SKU
            rules: Enabled price rules
            exchange_rate: Active KRW->USD rate
            rounding_strategy: Cent rounding strategy
            margin: Job-level margin used when no rule matches
            job_id: Sync job recorded on the price history row

        Returns:
            PriceSyncResult; updated is False when the change is within a cent epsilon
        """
        if exchange_rate <= 0:
            raise ValidationError("exchange_rate must be positive")
        mapping = await self.get_mapping(sku)

        source_price = mapping.pricing.naver_price
        if self._can_push(Platform.NAVER):
            live_price = await self._call_catalog(
                Platform.NAVER, "get_price", lambda client: client.get_price(mapping)
            )
            if live_price is not None:
                source_price = live_price
        if source_price is None:
            raise ValidationError(f"No source price available for {mapping.sku}")

        rule = select_price_rule(mapping, rules, source_price)
        if rule is not None:
            applied_margin = rule.margin_rate
        else:
            applied_margin = margin or mapping.price_margin or self.default_margin

        new_price = convert_price(source_price, exchange_rate, applied_margin, rounding_strategy)
        old_price = mapping.pricing.shopify_price
        result = PriceSyncResult(
            sku=mapping.sku,
            source_price=source_price,
            old_price=old_price,
            new_price=new_price,
            margin=applied_margin,
            exchange_rate=exchange_rate,
            rule_id=str(rule.id) if rule is not None and rule.id else None,
            updated=False,
        )

        if old_price is not None and abs(new_price - old_price) <= PRICE_EPSILON:
            logger.debug("Price unchanged, skipping write", sku=mapping.sku, price=new_price)
            return result

        if self._can_push(Platform.SHOPIFY):
            await self._call_catalog(
                Platform.SHOPIFY, "update_price", lambda client: client.update_price(mapping, new_price)
            )

        now = self.clock()
        await self.store.create_price_history(
            PriceHistory(
                sku=mapping.sku,
                old_price=old_price,
                new_price=new_price,
                source_price=source_price,
                exchange_rate=exchange_rate,
                margin=applied_margin,
                rule_id=rule.id if rule is not None else None,
                rounding_strategy=rounding_strategy,
                job_id=job_id,
                created_at=now,
            )
        )
        mapping.pricing.naver_price = source_price
        mapping.pricing.shopify_price = new_price
        mapping.pricing.exchange_rate = exchange_rate
        mapping.pricing.margin = applied_margin
        await self.store.save_mapping(mapping)

        result.updated = True
        logger.info(
            "Price synced",
            sku=mapping.sku,
            old_price=old_price,
            new_price=new_price,
            margin=applied_margin,
        )
        return result
