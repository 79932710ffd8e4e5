import pytest

from catalog_sync.errors import PlatformAPIError, TransientPlatformError, UnresolvedMappingError, ValidationError
from catalog_sync.models.alerts import AlertSeverity, AlertType
from catalog_sync.models.database import (
    Initiator,
    Platform,
    PlatformPricing,
    PriceRule,
    PriceRuleType,
    RoundingStrategy,
    SyncStatus,
    TransactionType,
)
from catalog_sync.services.reconciliation_service import (
    Thresholds,
    classify,
    compute_discrepancy,
    convert_price,
    evaluate_conditions,
    round_price,
    select_price_rule,
)
from tests.mocks.helpers import make_mapping


@pytest.mark.parametrize(
    "naver_qty, shopify_qty, expected_type, expected_severity",
    [
        (0, 5, AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL),
        (5, 0, AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL),
        (12, 3, AlertType.DISCREPANCY, AlertSeverity.LOW),
        (25, 40, AlertType.DISCREPANCY, AlertSeverity.MEDIUM),
        (30, 8, AlertType.DISCREPANCY, AlertSeverity.HIGH),
        (8, 8, AlertType.LOW_STOCK, AlertSeverity.MEDIUM),
        (4, 4, AlertType.LOW_STOCK, AlertSeverity.HIGH),
    ],
)
def test_classify(naver_qty, shopify_qty, expected_type, expected_severity):
    condition = classify(make_mapping(naver_qty=naver_qty, shopify_qty=shopify_qty))

    assert condition is not None
    assert condition.type == expected_type
    assert condition.severity == expected_severity


def test_classify_healthy_mapping_has_no_condition():
    assert classify(make_mapping(naver_qty=20, shopify_qty=22)) is None


def test_compute_discrepancy_sides():
    d = compute_discrepancy(make_mapping(naver_qty=12, shopify_qty=3))

    assert (d.side_a, d.side_b, d.delta) == (12, 3, 9)


def test_evaluate_conditions_reports_both_axes():
    conditions = evaluate_conditions(make_mapping(naver_qty=12, shopify_qty=3))

    assert [c.type for c in conditions] == [AlertType.DISCREPANCY, AlertType.LOW_STOCK]
    assert conditions[1].severity == AlertSeverity.HIGH


def test_evaluate_conditions_deduplicates_out_of_stock():
    conditions = evaluate_conditions(make_mapping(naver_qty=0, shopify_qty=0))

    assert [c.type for c in conditions] == [AlertType.OUT_OF_STOCK]


def test_custom_thresholds():
    thresholds = Thresholds(low_stock=30, critical_stock=2, tolerance=50)
    condition = classify(make_mapping(naver_qty=25, shopify_qty=20), thresholds)

    assert condition.type == AlertType.LOW_STOCK
    assert condition.severity == AlertSeverity.MEDIUM


async def test_adjust_appends_ledger_and_updates_cached_quantity(engine, store):
    store.add_mapping(make_mapping(naver_qty=10))

    entry = await engine.adjust("alb-001", Platform.NAVER, -3, "order 1", transaction_type=TransactionType.SALE)

    assert entry.previous_quantity == 10
    assert entry.new_quantity == 7
    assert entry.quantity == -3
    assert entry.transaction_type == TransactionType.SALE
    assert store.mappings["ALB-001"].quantity(Platform.NAVER) == 7
    assert store.mappings["ALB-001"].quantity(Platform.SHOPIFY) == 20


async def test_adjust_round_trip_restores_quantity(engine, store):
    store.add_mapping(make_mapping(naver_qty=10))

    await engine.adjust("ALB-001", Platform.NAVER, 5, "restock")
    await engine.adjust("ALB-001", Platform.NAVER, -5, "correction")

    ledger = await store.list_transactions("ALB-001", Platform.NAVER)
    assert [t.quantity for t in ledger] == [5, -5]
    assert ledger[-1].new_quantity == 10
    assert store.mappings["ALB-001"].quantity(Platform.NAVER) == 10


async def test_adjust_rejects_zero_delta(engine, store):
    store.add_mapping(make_mapping())

    with pytest.raises(ValidationError):
        await engine.adjust("ALB-001", Platform.NAVER, 0, "nothing")

    assert store.transactions == []


async def test_adjust_unknown_sku(engine):
    with pytest.raises(UnresolvedMappingError):
        await engine.adjust("MISSING", Platform.NAVER, -1, "order")


async def test_adjust_pushes_to_platform(connected_engine, store, naver_client):
    store.add_mapping(make_mapping(naver_qty=10))

    await connected_engine.adjust("ALB-001", Platform.NAVER, -2, "order")

    assert naver_client.calls == [("adjust_available", "ALB-001", -2)]
    assert naver_client.stock_levels["ALB-001"] == 8


async def test_adjust_push_failure_records_update_failed(connected_engine, store, naver_client, alert_service):
    store.add_mapping(make_mapping(naver_qty=10))
    naver_client.error = TransientPlatformError("503 from naver", status_code=503)

    with pytest.raises(TransientPlatformError):
        await connected_engine.adjust("ALB-001", Platform.NAVER, -2, "order", order_id="1001")

    # retried up to the policy limit
    assert len([c for c in naver_client.calls if c[0] == "adjust_available"]) == 3

    [entry] = store.transactions
    assert entry.transaction_type == TransactionType.UPDATE_FAILED
    assert entry.quantity == 0
    assert entry.order_id == "1001"

    mapping = store.mappings["ALB-001"]
    assert mapping.sync_status == SyncStatus.ERROR
    assert mapping.quantity(Platform.NAVER) == 10

    [alert] = await alert_service.list_alerts()
    assert alert.type == AlertType.UPDATE_FAILED
    assert alert.severity == AlertSeverity.HIGH
    assert alert.details["attempts"] == 3


async def test_permanent_push_failure_is_not_retried(connected_engine, store, naver_client, alert_service):
    store.add_mapping(make_mapping(naver_qty=10))
    naver_client.error = PlatformAPIError("invalid product", status_code=400)

    with pytest.raises(PlatformAPIError):
        await connected_engine.adjust("ALB-001", Platform.NAVER, -2, "order")

    assert len(naver_client.calls) == 1
    [alert] = await alert_service.list_alerts()
    assert alert.severity == AlertSeverity.MEDIUM


async def test_set_quantity_records_sync_entry(engine, store):
    store.add_mapping(make_mapping(shopify_qty=20))

    entry = await engine.set_quantity("ALB-001", Platform.SHOPIFY, 14, "inventory level webhook", Initiator.WEBHOOK)

    assert entry.transaction_type == TransactionType.SYNC
    assert entry.quantity == -6
    assert entry.performed_by == Initiator.WEBHOOK
    assert store.mappings["ALB-001"].quantity(Platform.SHOPIFY) == 14


async def test_set_quantity_allows_unchanged_level(engine, store):
    store.add_mapping(make_mapping(shopify_qty=20))

    entry = await engine.set_quantity("ALB-001", Platform.SHOPIFY, 20, "refresh")

    assert entry.quantity == 0


async def test_set_quantity_rejects_negative(engine, store):
    store.add_mapping(make_mapping())

    with pytest.raises(ValidationError):
        await engine.set_quantity("ALB-001", Platform.SHOPIFY, -1, "bad")


async def test_reconcile_inventory_moves_shopify_to_naver(connected_engine, store, naver_client, shopify_client):
    store.add_mapping(make_mapping(naver_qty=12, shopify_qty=12, sync_status=SyncStatus.PENDING))
    naver_client.stock_levels["ALB-001"] = 9
    shopify_client.stock_levels["ALB-001"] = 15

    summary = await connected_engine.reconcile_inventory("ALB-001")

    assert summary["naver_before"] == 9
    assert summary["shopify_before"] == 15
    assert summary["corrected"] is True
    assert summary["shopify_after"] == 9
    assert ("set_available", "ALB-001", 9) in shopify_client.calls

    mapping = store.mappings["ALB-001"]
    assert mapping.sync_status == SyncStatus.SYNCED
    assert mapping.last_synced_at is not None
    assert mapping.quantity(Platform.SHOPIFY) == 9


async def test_reconcile_inventory_without_difference(connected_engine, store, shopify_client):
    store.add_mapping(make_mapping(naver_qty=12, shopify_qty=12))

    summary = await connected_engine.reconcile_inventory("ALB-001")

    assert summary["corrected"] is False
    assert not [c for c in shopify_client.calls if c[0] == "set_available"]


def test_round_price_strategies():
    assert round_price(17.2501, RoundingStrategy.UP) == 17.26
    assert round_price(17.2599, RoundingStrategy.DOWN) == 17.25
    assert round_price(17.255, RoundingStrategy.NEAREST) == 17.26


def test_convert_price_is_exact():
    assert convert_price(20000, 0.00075, 1.15, RoundingStrategy.UP) == 17.25
    assert convert_price(20001, 0.00075, 1.15, RoundingStrategy.UP) == 17.26
    assert convert_price(20001, 0.00075, 1.15, RoundingStrategy.DOWN) == 17.25


async def test_sync_price_default_margin(engine, store):
    store.add_mapping(make_mapping())

    result = await engine.sync_price("ALB-001", [], exchange_rate=0.00075)

    assert result.new_price == 17.25
    assert result.margin == 1.15
    assert result.updated is True
    [history] = store.price_history
    assert history.new_price == 17.25
    assert history.source_price == 20000.0
    assert store.mappings["ALB-001"].pricing.shopify_price == 17.25


async def test_sync_price_rule_precedence(engine, store):
    store.add_mapping(make_mapping(category="kpop", brand="hybe"))
    rules = [
        PriceRule(type=PriceRuleType.CATEGORY, value="kpop", margin_rate=1.2, priority=10),
        PriceRule(type=PriceRuleType.SKU, value="alb-001", margin_rate=1.3, priority=1),
        PriceRule(type=PriceRuleType.BRAND, value="HYBE", margin_rate=1.4, priority=99),
    ]

    result = await engine.sync_price("ALB-001", rules, exchange_rate=0.00075)

    assert result.margin == 1.3
    assert result.new_price == 19.5


async def test_sync_price_skips_write_within_epsilon(connected_engine, store, shopify_client):
    store.add_mapping(make_mapping(pricing=PlatformPricing(naver_price=20000.0, shopify_price=17.25)))

    result = await connected_engine.sync_price("ALB-001", [], exchange_rate=0.00075)

    assert result.updated is False
    assert not [c for c in shopify_client.calls if c[0] == "update_price"]
    assert store.price_history == []


async def test_sync_price_uses_live_naver_price(connected_engine, store, naver_client, shopify_client):
    store.add_mapping(make_mapping())
    naver_client.prices["ALB-001"] = 30000.0

    result = await connected_engine.sync_price("ALB-001", [], exchange_rate=0.00075, margin=1.0)

    assert result.source_price == 30000.0
    assert result.new_price == 22.5
    assert shopify_client.prices["ALB-001"] == 22.5


async def test_sync_price_rejects_bad_rate(engine, store):
    store.add_mapping(make_mapping())

    with pytest.raises(ValidationError):
        await engine.sync_price("ALB-001", [], exchange_rate=0)


def test_price_range_rule_bounds():
    mapping = make_mapping()
    cheap = PriceRule(type=PriceRuleType.PRICE_RANGE, margin_rate=1.5, min_price=0, max_price=15000)
    mid = PriceRule(type=PriceRuleType.PRICE_RANGE, margin_rate=1.25, min_price=15000, max_price=50000)

    assert select_price_rule(mapping, [cheap, mid], 20000.0) is mid
    assert select_price_rule(mapping, [cheap], 20000.0) is None


def test_disabled_rules_are_ignored():
    mapping = make_mapping()
    rule = PriceRule(type=PriceRuleType.SKU, value="ALB-001", margin_rate=1.3, enabled=False)

    assert select_price_rule(mapping, [rule], 20000.0) is None
