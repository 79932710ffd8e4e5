"""
KRW -> USD exchange rate management.
Resolves the active rate (cache, then the active database record, then a live
fetch) and sets manual rates with a validity window.
"""

from datetime import timedelta
from typing import Any

import httpx
import structlog

from catalog_sync.errors import PlatformAPIError, TransientPlatformError, ValidationError
from catalog_sync.models.database import ExchangeRate, ExchangeRateSource, SyncJobOptions
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.clock import Clock, utc_now
from catalog_sync.utils.retry import ResiliencePolicy, call_with_resilience, is_transient_error

logger = structlog.get_logger()

RATE_CACHE_KEY = "exchange:KRW:USD"


class ExchangeRateService:
    """Service owning the single active KRW/USD rate."""

    def __init__(
        self,
        store,
        cache: CacheService,
        api_url: str,
        http_client: httpx.AsyncClient | None = None,
        cache_ttl: int = 3600,
        default_valid_days: int = 7,
        policy: ResiliencePolicy | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.cache = cache
        self.api_url = api_url
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self.cache_ttl = cache_ttl
        self.default_valid_days = default_valid_days
        self.policy = policy or ResiliencePolicy()
        self.clock = clock

    async def get_current(self) -> dict[str, Any]:
        """
        Resolve the active rate with its provenance.

        Returns:
            Dict with rate, source ('manual', 'database' or 'api') and fetched_at
        """
        cached = await self.cache.get_json(RATE_CACHE_KEY)
        if cached is not None:
            return cached

        now = self.clock()
        record = await self.store.get_active_exchange_rate(now)
        if record is not None:
            current = {
                "rate": record.rate,
                "source": "manual" if record.is_manual else "database",
                "valid_until": record.valid_until.isoformat(),
                "fetched_at": now.isoformat(),
            }
        else:
            rate = await self.fetch_live_rate()
            current = {"rate": rate, "source": "api", "fetched_at": now.isoformat()}

        await self.cache.set_json(RATE_CACHE_KEY, current, ttl=self.cache_ttl)
        return current

    async def get_active_rate(self) -> float:
        current = await self.get_current()
        return float(current["rate"])

    async def fetch_live_rate(self) -> float:
        """Fetch the KRW->USD rate from the public rates API."""

        async def _fetch() -> float:
            try:
                response = await self.http_client.get(self.api_url)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                if is_transient_error(e):
                    raise TransientPlatformError("Exchange rate API error", e.response.status_code) from e
                raise PlatformAPIError("Exchange rate API error", e.response.status_code) from e
            except httpx.TransportError as e:
                raise TransientPlatformError(f"Exchange rate API transport error: {e}") from e
            rates = response.json().get("rates") or {}
            if "USD" not in rates:
                raise PlatformAPIError("Exchange rate API response has no USD rate")
            return float(rates["USD"])

        rate = await call_with_resilience(_fetch, self.policy, operation="fetch_exchange_rate")
        logger.info("Fetched live exchange rate", rate=rate)
        return rate

    async def set_manual_rate(
        self, rate: float, reason: str, valid_days: int | None = None
    ) -> ExchangeRate:
        """
        Replace the active rate with a manual one.

        Args:
            rate: KRW->USD rate, 0 < rate <= 1
            reason: Why the rate is being overridden
            valid_days: Validity window in days (default 7)

        Returns:
            The new active ExchangeRate record

        Raises:
            ValidationError: Rate out of range, missing reason or bad window
        """
        valid_days = self.default_valid_days if valid_days is None else valid_days
        if not (0 < rate <= 1):
            raise ValidationError("Exchange rate must be greater than 0 and at most 1")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a manual exchange rate")
        if valid_days < 1:
            raise ValidationError("valid_days must be at least 1")

        now = self.clock()
        record = ExchangeRate(
            rate=rate,
            is_manual=True,
            is_active=True,
            reason=reason.strip(),
            valid_from=now,
            valid_until=now + timedelta(days=valid_days),
            created_at=now,
        )
        saved = await self.store.replace_active_exchange_rate(record)
        await self.cache.delete(RATE_CACHE_KEY)
        logger.info("Manual exchange rate set", rate=rate, valid_days=valid_days, reason=reason)
        return saved

    async def resolve_rate(self, options: SyncJobOptions) -> float:
        """Rate a sync job should use, honouring a manual override in its options."""
        if options.exchange_rate_source == ExchangeRateSource.MANUAL:
            if options.custom_exchange_rate is None:
                raise ValidationError("custom_exchange_rate is required for manual rate source")
            if not (0 < options.custom_exchange_rate <= 1):
                raise ValidationError("Exchange rate must be greater than 0 and at most 1")
            return options.custom_exchange_rate
        return await self.get_active_rate()

    async def close(self):
        await self.http_client.aclose()
