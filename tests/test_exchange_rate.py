import httpx
import pytest

from catalog_sync.errors import PlatformAPIError, TransientPlatformError, ValidationError
from catalog_sync.models.database import ExchangeRateSource, SyncJobOptions
from catalog_sync.services.exchange_rate_service import RATE_CACHE_KEY, ExchangeRateService
from tests.mocks.helpers import NO_WAIT


class RatesAPI:
    """httpx.MockTransport handler serving a fixed rates payload."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=body)


def make_service(store, cache, clock, handler) -> ExchangeRateService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExchangeRateService(
        store,
        cache,
        api_url="https://rates.example.com/v4/latest/KRW",
        http_client=client,
        policy=NO_WAIT,
        clock=clock,
    )


async def test_live_rate_used_when_no_record(store, cache, clock):
    api = RatesAPI([(200, {"base": "KRW", "rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)

    current = await service.get_current()

    assert current["rate"] == 0.00074
    assert current["source"] == "api"
    assert (await cache.get_json(RATE_CACHE_KEY))["rate"] == 0.00074


async def test_cached_rate_skips_api(store, cache, clock):
    api = RatesAPI([(200, {"rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)

    await service.get_active_rate()
    await service.get_active_rate()

    assert len(api.requests) == 1


async def test_manual_rate_is_exclusive_and_wins(store, cache, clock):
    api = RatesAPI([(200, {"rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)
    await service.get_active_rate()  # warm the cache with the API rate

    first = await service.set_manual_rate(0.0008, "promo", 3)
    second = await service.set_manual_rate(0.00075, "bank rate", 7)

    active = [r for r in store.exchange_rates if r.is_active]
    assert active == [second]
    assert first.is_active is False
    assert (second.valid_until - second.valid_from).days == 7

    current = await service.get_current()
    assert current["rate"] == 0.00075
    assert current["source"] == "manual"
    assert len(api.requests) == 1


async def test_manual_rate_expires(store, cache, clock):
    api = RatesAPI([(200, {"rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)
    await service.set_manual_rate(0.00075, "bank rate", 1)

    clock.advance(days=2)
    await cache.delete(RATE_CACHE_KEY)

    assert await service.get_active_rate() == 0.00074


@pytest.mark.parametrize(
    "rate, reason, days",
    [(0, "zero", 7), (-0.1, "negative", 7), (1.5, "too high", 7), (0.00075, "", 7), (0.00075, "ok", 0)],
)
async def test_manual_rate_validation(store, cache, clock, rate, reason, days):
    service = make_service(store, cache, clock, RatesAPI([(200, {"rates": {"USD": 0.00074}})]))

    with pytest.raises(ValidationError):
        await service.set_manual_rate(rate, reason, days)

    assert store.exchange_rates == []


async def test_transient_api_errors_are_retried(store, cache, clock):
    api = RatesAPI([(503, {}), (200, {"rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)

    assert await service.fetch_live_rate() == 0.00074
    assert len(api.requests) == 2


async def test_api_error_after_retries(store, cache, clock):
    api = RatesAPI([(503, {})])
    service = make_service(store, cache, clock, api)

    with pytest.raises(TransientPlatformError):
        await service.fetch_live_rate()

    assert len(api.requests) == NO_WAIT.max_attempts


async def test_missing_usd_rate_is_permanent(store, cache, clock):
    api = RatesAPI([(200, {"rates": {"EUR": 0.0007}})])
    service = make_service(store, cache, clock, api)

    with pytest.raises(PlatformAPIError):
        await service.fetch_live_rate()

    assert len(api.requests) == 1


async def test_resolve_rate_honours_job_override(store, cache, clock):
    api = RatesAPI([(200, {"rates": {"USD": 0.00074}})])
    service = make_service(store, cache, clock, api)

    manual = SyncJobOptions(exchange_rate_source=ExchangeRateSource.MANUAL, custom_exchange_rate=0.0009)
    assert await service.resolve_rate(manual) == 0.0009
    assert api.requests == []

    assert await service.resolve_rate(SyncJobOptions()) == 0.00074

    with pytest.raises(ValidationError):
        await service.resolve_rate(SyncJobOptions(exchange_rate_source=ExchangeRateSource.MANUAL))
