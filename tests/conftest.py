# tests/conftest.py
from datetime import datetime

import fakeredis
import pytest
import pytz

from catalog_sync.config import Settings
from catalog_sync.container import build_services
from catalog_sync.integrations.registry import CatalogRegistry
from catalog_sync.models.database import Platform
from catalog_sync.services.alert_service import AlertService
from catalog_sync.services.reconciliation_service import ReconciliationService
from catalog_sync.utils.cache import CacheService
from tests.mocks.fake_store import InMemoryStore
from tests.mocks.helpers import NO_WAIT, FakeClock, no_sleep
from tests.mocks.mock_catalog import MockCatalogClient


@pytest.fixture
def settings():
    """Provide test settings"""
    return Settings(
        supabase_url="",
        supabase_service_key="",
        shopify_webhook_secret="test_secret",
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
        sync_batch_pause_seconds=0,
        sync_batch_size=2,
        slack_alerts_enabled="false",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=pytz.UTC))


@pytest.fixture
def redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis):
    return CacheService(redis)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def alert_service(cache, clock):
    return AlertService(cache, max_age_hours=24, purge_grace_seconds=3600, clock=clock)


@pytest.fixture
def engine(store, alert_service, clock):
    """Reconciliation engine without catalog clients (local bookkeeping only)."""
    return ReconciliationService(store, alert_service=alert_service, policy=NO_WAIT, clock=clock, sleep=no_sleep)


@pytest.fixture
def naver_client():
    return MockCatalogClient(Platform.NAVER)


@pytest.fixture
def shopify_client():
    return MockCatalogClient(Platform.SHOPIFY)


@pytest.fixture
def catalogs(naver_client, shopify_client):
    return CatalogRegistry([naver_client, shopify_client])


@pytest.fixture
def connected_engine(store, catalogs, alert_service, clock):
    """Reconciliation engine that pushes changes to mock catalog clients."""
    return ReconciliationService(
        store, catalogs=catalogs, alert_service=alert_service, policy=NO_WAIT, clock=clock, sleep=no_sleep
    )


@pytest.fixture
def container(settings, store, redis, clock):
    """All services wired around the in-memory store and fake Redis."""
    return build_services(settings, store, redis, clock=clock)
