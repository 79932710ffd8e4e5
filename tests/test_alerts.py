import pytest

from catalog_sync.models.alerts import AlertSeverity, AlertType
from catalog_sync.services.alert_service import (
    ALERT_KEY_PREFIX,
    AlertEvent,
    AlertNotifier,
    latest_per_condition,
)


class RecordingSlack:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_alert(self, alert):
        if self.fail:
            raise RuntimeError("slack down")
        self.sent.append(alert)
        return True


async def test_create_alert_stores_and_publishes(alert_service, cache, clock):
    alert = await alert_service.create_alert(
        AlertType.DISCREPANCY, AlertSeverity.MEDIUM, "ALB-001", "differs by 12", details={"delta": 12}
    )

    assert alert.id == f"discrepancy_ALB-001_{int(clock().timestamp() * 1000)}"
    assert alert.resolved is False
    assert (await cache.get_json(f"{ALERT_KEY_PREFIX}{alert.id}"))["sku"] == "ALB-001"

    event = alert_service.outbox.get_nowait()
    assert event.kind == "created"
    assert event.alert.id == alert.id


async def test_recurring_condition_gets_a_new_alert(alert_service):
    first = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.HIGH, "ALB-001", "low")
    second = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.HIGH, "ALB-001", "low")

    assert first.id != second.id
    assert len(await alert_service.list_alerts()) == 2


async def test_list_alerts_newest_first(alert_service, clock):
    older = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")
    clock.advance(minutes=5)
    newer = await alert_service.create_alert(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, "ALB-002", "empty")

    assert [a.id for a in await alert_service.list_alerts()] == [newer.id, older.id]


async def test_resolve_alert(alert_service, clock):
    alert = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")

    assert await alert_service.resolve_alert(alert.id) is True
    assert await alert_service.resolve_alert(alert.id) is False
    assert await alert_service.resolve_alert("missing") is False

    stored = await alert_service.get_alert(alert.id)
    assert stored.resolved is True
    assert stored.resolved_at == clock()
    assert await alert_service.list_alerts(unresolved_only=True) == []


async def test_aged_alerts_are_resolved_then_purged(alert_service, clock):
    alert = await alert_service.create_alert(AlertType.DISCREPANCY, AlertSeverity.LOW, "ALB-001", "differs")

    clock.advance(hours=23)
    assert await alert_service.sweep() == 0

    clock.advance(hours=2)
    assert await alert_service.sweep() == 1
    [stored] = await alert_service.list_alerts()
    assert stored.resolved is True

    clock.advance(seconds=3601)
    assert await alert_service.get_alert(alert.id) is None
    assert await alert_service.list_alerts() == []


async def test_has_open_alert(alert_service):
    alert = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")

    assert await alert_service.has_open_alert(AlertType.LOW_STOCK, "ALB-001") is True
    assert await alert_service.has_open_alert(AlertType.LOW_STOCK, "ALB-002") is False

    await alert_service.resolve_alert(alert.id)
    assert await alert_service.has_open_alert(AlertType.LOW_STOCK, "ALB-001") is False


@pytest.mark.parametrize("attempts, severity", [(3, AlertSeverity.HIGH), (1, AlertSeverity.MEDIUM)])
async def test_record_update_failure_severity(alert_service, attempts, severity):
    alert = await alert_service.record_update_failure("ALB-001", "naver", "503", attempts)

    assert alert.type == AlertType.UPDATE_FAILED
    assert alert.severity == severity
    assert alert.details == {"platform": "naver", "error": "503", "attempts": attempts}


async def test_counts(alert_service):
    await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")
    resolved = await alert_service.create_alert(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, "ALB-002", "empty")
    await alert_service.create_alert(AlertType.DISCREPANCY, AlertSeverity.HIGH, "ALB-003", "differs")
    await alert_service.resolve_alert(resolved.id)

    counts = await alert_service.counts()

    assert counts.total == 3
    assert counts.unresolved == 2
    assert counts.by_severity == {"low": 0, "medium": 1, "high": 1, "critical": 0}


async def test_latest_per_condition(alert_service, clock):
    await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")
    clock.advance(minutes=1)
    newest = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.HIGH, "ALB-001", "lower")
    other = await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-002", "low")

    latest = latest_per_condition(await alert_service.list_alerts())

    assert {a.id for a in latest} == {newest.id, other.id}


async def test_notifier_forwards_only_high_and_critical(alert_service):
    slack = RecordingSlack()
    notifier = AlertNotifier(alert_service.outbox, slack)

    await alert_service.create_alert(AlertType.LOW_STOCK, AlertSeverity.MEDIUM, "ALB-001", "low")
    critical = await alert_service.create_alert(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, "ALB-002", "empty")
    await alert_service.resolve_alert(critical.id)

    assert await notifier.drain() == 3
    assert [a.id for a in slack.sent] == [critical.id]
    assert alert_service.outbox.empty()


async def test_notifier_survives_delivery_failure(alert_service):
    notifier = AlertNotifier(alert_service.outbox, RecordingSlack(fail=True))
    alert = await alert_service.create_alert(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, "ALB-002", "empty")

    assert await notifier.drain() == 1
    # the alert itself is unaffected by the failed notification
    assert (await alert_service.get_alert(alert.id)).resolved is False


async def test_notifier_handle_ignores_resolution_events(alert_service):
    slack = RecordingSlack()
    notifier = AlertNotifier(alert_service.outbox, slack)
    alert = await alert_service.create_alert(AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL, "ALB-002", "empty")

    assert await notifier.handle(AlertEvent("resolved", alert)) is False
    assert slack.sent == []
