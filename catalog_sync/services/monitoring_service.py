"""
Fleet monitoring: samples every active mapping, raises alerts for new
conditions, and publishes cached fleet metrics.
"""

from datetime import timedelta
from typing import List, Optional

import structlog

from catalog_sync.models.alerts import Alert, AlertSeverity, AlertType, FleetMetrics
from catalog_sync.models.database import ProductMapping, SyncStatus, TransactionType
from catalog_sync.services.reconciliation_service import (
    Thresholds,
    classify_discrepancy,
    classify_stock_level,
    compute_discrepancy,
    evaluate_conditions,
)
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.clock import Clock, ensure_utc, utc_now

logger = structlog.get_logger()

METRICS_CACHE_KEY = "inventory:metrics"


class MonitoringService:
    """Computes fleet metrics and raises alerts for detected conditions."""

    def __init__(
        self,
        store,
        cache: CacheService,
        alert_service,
        thresholds: Optional[Thresholds] = None,
        stale_sync_hours: int = 1,
        stale_sync_high_hours: int = 3,
        metrics_ttl_seconds: int = 60,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.cache = cache
        self.alert_service = alert_service
        self.thresholds = thresholds or Thresholds()
        self.stale_sync = timedelta(hours=stale_sync_hours)
        self.stale_sync_high = timedelta(hours=stale_sync_high_hours)
        self.metrics_ttl_seconds = metrics_ttl_seconds
        self.clock = clock

    async def get_metrics(self) -> FleetMetrics:
        """Cached fleet metrics, recomputed when the cache entry has expired."""
        data = await self.cache.get_or_set(
            METRICS_CACHE_KEY,
            self.metrics_ttl_seconds,
            self._compute_metrics_json,
        )
        return FleetMetrics(**data)

    async def _compute_metrics_json(self) -> dict:
        metrics = await self.compute_metrics()
        return metrics.model_dump(mode="json")

    async def compute_metrics(self, mappings: Optional[List[ProductMapping]] = None) -> FleetMetrics:
        """
        Recompute fleet metrics from the store.

        Args:
            mappings: Active mappings, when the caller already loaded them

        Returns:
            FleetMetrics snapshot
        """
        now = self.clock()
        if mappings is None:
            mappings = await self.store.list_active_mappings()

        metrics = FleetMetrics(generated_at=now, total_skus=len(mappings))
        for mapping in mappings:
            d = compute_discrepancy(mapping)
            if mapping.sync_status == SyncStatus.SYNCED:
                metrics.synced_skus += 1
            cross = classify_discrepancy(d, self.thresholds)
            if mapping.sync_status == SyncStatus.ERROR or (
                cross is not None and cross.type == AlertType.DISCREPANCY
            ):
                metrics.out_of_sync_skus += 1
            level = classify_stock_level(d, self.thresholds)
            if level is not None and level.type == AlertType.OUT_OF_STOCK:
                metrics.out_of_stock_skus += 1
            elif level is not None and level.type == AlertType.LOW_STOCK:
                metrics.low_stock_skus += 1
            if mapping.last_synced_at is not None:
                synced = ensure_utc(mapping.last_synced_at)
                if metrics.last_sync_time is None or synced > metrics.last_sync_time:
                    metrics.last_sync_time = synced

        transactions = await self.store.list_transactions_since(now - timedelta(hours=24))
        if transactions:
            failures = sum(
                1 for entry in transactions if entry.transaction_type == TransactionType.UPDATE_FAILED
            )
            metrics.sync_success_rate = round((len(transactions) - failures) / len(transactions) * 100, 1)

        metrics.alerts = await self.alert_service.counts()
        return metrics

    def _stale_condition(self, mapping: ProductMapping) -> Optional[AlertSeverity]:
        if mapping.last_synced_at is None:
            return None
        age = self.clock() - ensure_utc(mapping.last_synced_at)
        if age > self.stale_sync_high:
            return AlertSeverity.HIGH
        if age > self.stale_sync:
            return AlertSeverity.MEDIUM
        return None

    async def run_cycle(self) -> List[Alert]:
        """
        One sampling pass: evaluate every active mapping and raise alerts for
        conditions that have no unresolved alert yet, then refresh metrics.

        Returns:
            Alerts created in this cycle
        """
        mappings = await self.store.list_active_mappings()
        open_conditions = {
            alert.condition_key for alert in await self.alert_service.list_alerts(unresolved_only=True)
        }

        created: List[Alert] = []

        async def raise_once(alert_type, severity, mapping, message, details):
            key = (alert_type.value, mapping.sku)
            if key in open_conditions:
                return
            alert = await self.alert_service.create_alert(
                alert_type,
                severity,
                mapping.sku,
                message,
                details=details,
                product_name=mapping.product_name,
            )
            open_conditions.add(key)
            created.append(alert)

        for mapping in mappings:
            for condition in evaluate_conditions(mapping, self.thresholds):
                d = condition.discrepancy
                await raise_once(
                    condition.type,
                    condition.severity,
                    mapping,
                    _condition_message(condition.type, mapping.sku, d.side_a, d.side_b, d.delta),
                    {"naver_qty": d.side_a, "shopify_qty": d.side_b, "delta": d.delta},
                )

            stale = self._stale_condition(mapping)
            if stale is not None:
                await raise_once(
                    AlertType.SYNC_FAILED,
                    stale,
                    mapping,
                    f"{mapping.sku} has not been synced since {ensure_utc(mapping.last_synced_at).isoformat()}",
                    {"last_synced_at": ensure_utc(mapping.last_synced_at).isoformat()},
                )

        metrics = await self.compute_metrics(mappings)
        await self.cache.set_json(METRICS_CACHE_KEY, metrics.model_dump(mode="json"), ttl=self.metrics_ttl_seconds)

        logger.info(
            "Monitoring cycle complete",
            mappings=len(mappings),
            alerts_created=len(created),
            success_rate=metrics.sync_success_rate,
        )
        return created


def _condition_message(alert_type: AlertType, sku: str, naver_qty: int, shopify_qty: int, delta: int) -> str:
    if alert_type == AlertType.OUT_OF_STOCK:
        return f"{sku} is out of stock (naver={naver_qty}, shopify={shopify_qty})"
    if alert_type == AlertType.LOW_STOCK:
        return f"{sku} is low on stock ({min(naver_qty, shopify_qty)} left)"
    return f"{sku} inventory differs by {delta} (naver={naver_qty}, shopify={shopify_qty})"
