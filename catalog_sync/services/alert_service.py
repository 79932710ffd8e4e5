"""
Inventory alert store and outbox.

Alerts live in Redis under inventory:alerts:{id}. Every create/resolve is also
put on an asyncio.Queue outbox; AlertNotifier drains it and forwards high and
critical alerts to Slack.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable

import structlog

from catalog_sync.models.alerts import Alert, AlertCounts, AlertSeverity, AlertType
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.clock import Clock, ensure_utc, utc_now

logger = structlog.get_logger()

ALERT_KEY_PREFIX = "inventory:alerts:"

NOTIFY_SEVERITIES = frozenset({AlertSeverity.HIGH, AlertSeverity.CRITICAL})


@dataclass(frozen=True)
class AlertEvent:
    """Outbox entry published when an alert is created or resolved."""

    kind: str  # "created" or "resolved"
    alert: Alert


class AlertService:
    """Creates, lists, resolves and ages alerts."""

    def __init__(
        self,
        cache: CacheService,
        max_age_hours: int = 24,
        purge_grace_seconds: int = 3600,
        outbox: asyncio.Queue | None = None,
        clock: Clock = utc_now,
    ):
        self.cache = cache
        self.max_age = timedelta(hours=max_age_hours)
        self.purge_grace_seconds = purge_grace_seconds
        self.outbox: asyncio.Queue = outbox if outbox is not None else asyncio.Queue()
        self.clock = clock
        # Unresolved alerts are kept long enough for the sweep to age them
        self.retention_seconds = int(self.max_age.total_seconds() + purge_grace_seconds) * 2

    @staticmethod
    def _key(alert_id: str) -> str:
        return f"{ALERT_KEY_PREFIX}{alert_id}"

    async def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        sku: str,
        message: str,
        details: dict[str, Any] | None = None,
        product_name: str | None = None,
    ) -> Alert:
        """
        Create and store a new alert, then publish it to the outbox.

        Alert ids are "{type}_{sku}_{epoch millis}", so a recurring condition
        always produces a new alert.
        """
        now = self.clock()
        millis = int(now.timestamp() * 1000)
        base_id = f"{alert_type.value}_{sku}_{millis}"
        alert_id = base_id
        suffix = 1
        while True:
            alert = Alert(
                id=alert_id,
                type=alert_type,
                severity=severity,
                sku=sku,
                product_name=product_name,
                message=message,
                details=details or {},
                created_at=now,
            )
            stored = await self.cache.set_json_if_absent(
                self._key(alert_id), alert.model_dump(mode="json"), self.retention_seconds
            )
            if stored:
                break
            alert_id = f"{base_id}_{suffix}"
            suffix += 1

        log = logger.warning if severity in NOTIFY_SEVERITIES else logger.info
        log("Alert created", alert_id=alert.id, type=alert_type.value, severity=severity.value, sku=sku)
        self.outbox.put_nowait(AlertEvent("created", alert))
        return alert

    async def get_alert(self, alert_id: str) -> Alert | None:
        data = await self.cache.get_json(self._key(alert_id))
        if data is None:
            return None
        alert = Alert(**data)
        if self._is_purged(alert):
            await self.cache.delete(self._key(alert_id))
            return None
        return alert

    def _is_purged(self, alert: Alert) -> bool:
        return alert.purge_after is not None and ensure_utc(alert.purge_after) <= self.clock()

    async def list_alerts(self, unresolved_only: bool = False) -> list[Alert]:
        """
        List stored alerts, newest first. Alerts past their purge time are
        deleted and never returned.
        """
        alerts: list[Alert] = []
        for key in await self.cache.keys(f"{ALERT_KEY_PREFIX}*"):
            data = await self.cache.get_json(key)
            if data is None:
                continue
            alert = Alert(**data)
            if self._is_purged(alert):
                await self.cache.delete(key)
                continue
            if unresolved_only and alert.resolved:
                continue
            alerts.append(alert)
        alerts.sort(key=lambda a: ensure_utc(a.created_at), reverse=True)
        return alerts

    async def resolve_alert(self, alert_id: str) -> bool:
        """
        Mark an alert resolved and schedule it for removal.

        Returns:
            True if the alert existed and was unresolved, False otherwise
        """
        alert = await self.get_alert(alert_id)
        if alert is None or alert.resolved:
            return False
        await self._mark_resolved(alert)
        logger.info("Alert resolved", alert_id=alert_id)
        return True

    async def _mark_resolved(self, alert: Alert) -> Alert:
        now = self.clock()
        alert.resolved = True
        alert.resolved_at = now
        alert.purge_after = now + timedelta(seconds=self.purge_grace_seconds)
        await self.cache.set_json(
            self._key(alert.id), alert.model_dump(mode="json"), ttl=self.purge_grace_seconds
        )
        self.outbox.put_nowait(AlertEvent("resolved", alert))
        return alert

    async def sweep(self) -> int:
        """
        Auto-resolve every unresolved alert older than the max age.

        Returns:
            Number of alerts resolved
        """
        cutoff = self.clock() - self.max_age
        resolved = 0
        for alert in await self.list_alerts(unresolved_only=True):
            if ensure_utc(alert.created_at) < cutoff:
                await self._mark_resolved(alert)
                resolved += 1
        if resolved:
            logger.info("Auto-resolved aged alerts", count=resolved)
        return resolved

    async def has_open_alert(self, alert_type: AlertType, sku: str) -> bool:
        for alert in await self.list_alerts(unresolved_only=True):
            if alert.type == alert_type and alert.sku == sku:
                return True
        return False

    async def record_update_failure(
        self, sku: str, platform: str, error: str, attempts: int, product_name: str | None = None
    ) -> Alert:
        """Raise an update_failed alert for a platform write that gave up."""
        severity = AlertSeverity.HIGH if attempts >= 3 else AlertSeverity.MEDIUM
        return await self.create_alert(
            AlertType.UPDATE_FAILED,
            severity,
            sku,
            f"Failed to update {platform} inventory for {sku}",
            details={"platform": platform, "error": error, "attempts": attempts},
            product_name=product_name,
        )

    async def counts(self) -> AlertCounts:
        counts = AlertCounts()
        for alert in await self.list_alerts():
            counts.total += 1
            if not alert.resolved:
                counts.unresolved += 1
                counts.by_severity[alert.severity.value] += 1
        return counts


def latest_per_condition(alerts: Iterable[Alert]) -> list[Alert]:
    """Keep only the newest alert for each {type, sku}."""
    latest: dict[tuple[str, str], Alert] = {}
    for alert in alerts:
        current = latest.get(alert.condition_key)
        if current is None or ensure_utc(alert.created_at) > ensure_utc(current.created_at):
            latest[alert.condition_key] = alert
    return sorted(latest.values(), key=lambda a: ensure_utc(a.created_at), reverse=True)


class AlertNotifier:
    """Drains the alert outbox and forwards high/critical alerts to Slack."""

    def __init__(self, outbox: asyncio.Queue, slack_service):
        self.outbox = outbox
        self.slack_service = slack_service
        self.running = False

    async def handle(self, event: AlertEvent) -> bool:
        if event.kind != "created" or event.alert.severity not in NOTIFY_SEVERITIES:
            return False
        return await self.slack_service.send_alert(event.alert)

    async def drain(self) -> int:
        """Handle every event currently queued. Returns the number handled."""
        handled = 0
        while not self.outbox.empty():
            event = self.outbox.get_nowait()
            try:
                await self.handle(event)
            except Exception as e:
                logger.error("Failed to deliver alert notification", alert_id=event.alert.id, error=str(e))
            finally:
                self.outbox.task_done()
            handled += 1
        return handled

    async def start(self):
        """Block on the outbox until stopped."""
        self.running = True
        logger.info("Alert notifier started")
        while self.running:
            event = await self.outbox.get()
            try:
                await self.handle(event)
            except Exception as e:
                logger.error("Failed to deliver alert notification", alert_id=event.alert.id, error=str(e))
            finally:
                self.outbox.task_done()

    async def stop(self):
        self.running = False
        logger.info("Alert notifier stopped")
