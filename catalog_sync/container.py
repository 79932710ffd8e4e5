"""
Service wiring.

Every component receives its store, cache and client handles through its
constructor. build_container() is the only place that reads settings and
opens connections.
"""
import asyncio
from dataclasses import dataclass

import structlog
from redis.asyncio import Redis

from catalog_sync.config import Settings
from catalog_sync.integrations.naver.api_client import NaverCommerceClient
from catalog_sync.integrations.registry import CatalogRegistry
from catalog_sync.integrations.shopify.api_client import ShopifyAPIClient
from catalog_sync.models.database import Platform, RoundingStrategy
from catalog_sync.services.alert_service import AlertNotifier, AlertService
from catalog_sync.services.exchange_rate_service import ExchangeRateService
from catalog_sync.services.monitoring_service import MonitoringService
from catalog_sync.services.reconciliation_service import ReconciliationService, Thresholds
from catalog_sync.services.slack_service import SlackNotificationService
from catalog_sync.services.supabase_service import SupabaseService
from catalog_sync.services.webhook_service import WebhookIngestionService
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.clock import Clock, utc_now
from catalog_sync.utils.retry import ResiliencePolicy
from catalog_sync.workers.monitoring_worker import MonitoringWorker
from catalog_sync.workers.sync_worker import SyncJobOrchestrator

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    store: object
    redis: Redis
    cache: CacheService
    catalogs: CatalogRegistry
    alert_service: AlertService
    exchange_rates: ExchangeRateService
    engine: ReconciliationService
    webhooks: WebhookIngestionService
    orchestrator: SyncJobOrchestrator
    monitoring: MonitoringService
    monitoring_worker: MonitoringWorker
    notifier: AlertNotifier

    async def close(self):
        await self.orchestrator.stop()
        await self.monitoring_worker.stop()
        await self.notifier.stop()
        await self.catalogs.close()
        await self.exchange_rates.close()
        await self.redis.aclose()
        logger.info("Service container closed")


def build_services(
    settings: Settings,
    store,
    redis: Redis,
    catalogs: CatalogRegistry | None = None,
    clock: Clock = utc_now,
    slack_service: SlackNotificationService | None = None,
    exchange_rate_http_client=None,
) -> ServiceContainer:
    """Wire every service around already-open store, Redis and catalog handles."""
    cache = CacheService(redis)
    catalogs = catalogs or CatalogRegistry()
    policy = ResiliencePolicy.from_settings(settings)
    thresholds = Thresholds.from_settings(settings)

    outbox: asyncio.Queue = asyncio.Queue()
    alert_service = AlertService(
        cache,
        max_age_hours=settings.alert_max_age_hours,
        purge_grace_seconds=settings.alert_purge_grace_seconds,
        outbox=outbox,
        clock=clock,
    )
    exchange_rates = ExchangeRateService(
        store,
        cache,
        api_url=settings.exchange_rate_api_url,
        http_client=exchange_rate_http_client,
        cache_ttl=settings.exchange_rate_cache_ttl_seconds,
        default_valid_days=settings.manual_rate_default_valid_days,
        policy=policy,
        clock=clock,
    )
    engine = ReconciliationService(
        store,
        catalogs=catalogs,
        alert_service=alert_service,
        policy=policy,
        thresholds=thresholds,
        default_margin=settings.default_price_margin,
        source_platform=Platform(settings.inventory_source_platform),
        clock=clock,
    )
    webhooks = WebhookIngestionService(
        store,
        engine,
        cache,
        webhook_secret=settings.shopify_webhook_secret,
        receipt_ttl_seconds=settings.webhook_receipt_ttl_seconds,
        claim_ttl_seconds=settings.webhook_claim_ttl_seconds,
        target_platform=Platform(settings.webhook_source_platform).counterpart,
        clock=clock,
    )
    orchestrator = SyncJobOrchestrator(
        store,
        engine,
        exchange_rates,
        alert_service=alert_service,
        batch_size=settings.sync_batch_size,
        concurrency=settings.sync_batch_concurrency,
        pause_seconds=settings.sync_batch_pause_seconds,
        poll_interval_seconds=settings.sync_worker_interval_seconds,
        default_rounding_strategy=RoundingStrategy(settings.default_rounding_strategy),
        clock=clock,
    )
    monitoring = MonitoringService(
        store,
        cache,
        alert_service,
        thresholds=thresholds,
        stale_sync_hours=settings.stale_sync_hours,
        stale_sync_high_hours=settings.stale_sync_high_hours,
        metrics_ttl_seconds=settings.metrics_cache_ttl_seconds,
        clock=clock,
    )
    slack_service = slack_service or SlackNotificationService(
        settings.slack_webhook_url,
        str(settings.slack_alerts_enabled).lower() == "true",
        clock=clock,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        redis=redis,
        cache=cache,
        catalogs=catalogs,
        alert_service=alert_service,
        exchange_rates=exchange_rates,
        engine=engine,
        webhooks=webhooks,
        orchestrator=orchestrator,
        monitoring=monitoring,
        monitoring_worker=MonitoringWorker(
            monitoring,
            alert_service,
            interval_seconds=settings.monitoring_interval_seconds,
            sweep_interval_seconds=settings.alert_sweep_interval_seconds,
        ),
        notifier=AlertNotifier(outbox, slack_service),
    )


async def build_container(settings: Settings) -> ServiceContainer:
    """
    Open connections from settings and wire the services.

    Args:
        settings: Application settings

    Returns:
        Ready-to-use ServiceContainer
    """
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    cache = CacheService(redis)
    store = await SupabaseService.create(settings.supabase_url, settings.supabase_service_key)

    catalogs = CatalogRegistry()
    if settings.shopify_shop_domain and settings.shopify_access_token:
        catalogs.register(
            ShopifyAPIClient(
                settings.shopify_shop_domain,
                settings.shopify_access_token,
                api_version=settings.shopify_api_version,
                default_location_id=settings.shopify_location_id or None,
                timeout=settings.external_call_timeout_seconds,
            )
        )
    else:
        logger.warning("Shopify credentials not configured, Shopify writes disabled")

    if settings.naver_client_id and settings.naver_client_secret:
        catalogs.register(
            NaverCommerceClient(
                settings.naver_api_base_url,
                settings.naver_client_id,
                settings.naver_client_secret,
                cache=cache,
                timeout=settings.external_call_timeout_seconds,
            )
        )
    else:
        logger.warning("Naver credentials not configured, Naver writes disabled")

    return build_services(settings, store, redis, catalogs=catalogs)
