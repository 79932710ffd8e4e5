from datetime import datetime, timedelta

from catalog_sync.models.database import (
    Platform,
    PlatformInventory,
    PlatformPricing,
    ProductMapping,
    SyncStatus,
)
from catalog_sync.utils.retry import ResiliencePolicy

NO_WAIT = ResiliencePolicy(max_attempts=3, initial_delay=0, multiplier=2.0, max_delay=0, timeout=5)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


async def no_sleep(_seconds):
    return None


def make_mapping(sku="ALB-001", naver_qty=20, shopify_qty=20, **kwargs) -> ProductMapping:
    """Build an active mapping with both catalog identifiers filled in."""
    defaults = dict(
        sku=sku,
        naver_product_id=f"N-{sku}",
        shopify_product_id=f"P-{sku}",
        shopify_variant_id=f"V-{sku}",
        shopify_inventory_item_id=f"I-{sku}",
        shopify_location_id="L1",
        product_name=f"Album {sku}",
        sync_status=SyncStatus.SYNCED,
        inventory={
            Platform.NAVER: PlatformInventory(available_qty=naver_qty),
            Platform.SHOPIFY: PlatformInventory(available_qty=shopify_qty),
        },
        pricing=PlatformPricing(naver_price=20000.0),
    )
    defaults.update(kwargs)
    return ProductMapping(**defaults)
