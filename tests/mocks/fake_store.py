"""In-memory stand-in for SupabaseService with the same method names."""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from catalog_sync.models.database import (
    ExchangeRate,
    InventoryTransaction,
    JobStatus,
    OrderSyncStatus,
    Platform,
    PriceHistory,
    PriceRule,
    ProductMapping,
    SyncJob,
    SyncJobError,
    transition_sources,
)


class InMemoryStore:
    def __init__(self):
        self.mappings: Dict[str, ProductMapping] = {}
        self.transactions: List[InventoryTransaction] = []
        self.jobs: Dict[str, SyncJob] = {}
        self.rules: List[PriceRule] = []
        self.price_history: List[PriceHistory] = []
        self.exchange_rates: List[ExchangeRate] = []
        self.orders: Dict[str, OrderSyncStatus] = {}
        # Toggles to simulate store failures
        self.fail_list_mappings = False
        self.fail_list_rules = False
        self.failing_order_saves = 0

    # Product Mappings

    def add_mapping(self, mapping: ProductMapping) -> ProductMapping:
        self.mappings[mapping.sku] = mapping.model_copy(deep=True)
        return mapping

    async def get_mapping(self, sku: str) -> Optional[ProductMapping]:
        mapping = self.mappings.get(sku.strip().upper())
        return mapping.model_copy(deep=True) if mapping else None

    async def get_mapping_by_variant_id(self, variant_id: str) -> Optional[ProductMapping]:
        for mapping in self.mappings.values():
            if mapping.shopify_variant_id == str(variant_id):
                return mapping.model_copy(deep=True)
        return None

    async def get_mapping_by_inventory_item(self, inventory_item_id: str, location_id: str):
        for mapping in self.mappings.values():
            if (
                mapping.shopify_inventory_item_id == str(inventory_item_id)
                and mapping.shopify_location_id == str(location_id)
            ):
                return mapping.model_copy(deep=True)
        return None

    async def list_active_mappings(self) -> List[ProductMapping]:
        if self.fail_list_mappings:
            raise ConnectionError("store unavailable")
        return [m.model_copy(deep=True) for _, m in sorted(self.mappings.items()) if m.is_active]

    async def save_mapping(self, mapping: ProductMapping) -> ProductMapping:
        self.mappings[mapping.sku] = mapping.model_copy(deep=True)
        return mapping

    # Inventory Ledger

    async def create_inventory_transaction(self, transaction: InventoryTransaction):
        self.transactions.append(transaction.model_copy(deep=True))
        return transaction

    async def get_latest_transaction(self, sku: str, platform: Platform):
        entries = [t for t in self.transactions if t.sku == sku and t.platform == platform]
        return entries[-1] if entries else None

    async def list_transactions(self, sku: str, platform: Optional[Platform] = None):
        return [
            t for t in self.transactions if t.sku == sku and (platform is None or t.platform == platform)
        ]

    async def list_transactions_since(self, since: datetime):
        return [t for t in self.transactions if t.created_at >= since]

    async def list_transactions_for_order(self, order_id: str):
        return [t.model_copy(deep=True) for t in self.transactions if t.order_id == str(order_id)]

    # Sync Jobs

    async def create_sync_job(self, job: SyncJob) -> SyncJob:
        self.jobs[job.job_id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_sync_jobs(self, status: Optional[JobStatus] = None, limit: int = 50):
        jobs = [j for j in self.jobs.values() if status is None or j.status == status]
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def update_sync_job_progress(
        self, job_id, total_items, processed_items, success_count, failed_count, errors: List[SyncJobError]
    ):
        job = self.jobs[job_id]
        job.total_items = total_items
        job.processed_items = processed_items
        job.success_count = success_count
        job.failed_count = failed_count
        job.errors = [e.model_copy() for e in errors]

    async def transition_sync_job(
        self,
        job_id: str,
        to_status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        from_statuses: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[SyncJob]:
        from_statuses = transition_sources(to_status, from_statuses)
        job = self.jobs.get(job_id)
        if job is None or job.status not in set(from_statuses):
            return None
        data = job.model_dump()
        data.update(fields or {})
        data["status"] = to_status
        self.jobs[job_id] = SyncJob(**data)
        return self.jobs[job_id].model_copy(deep=True)

    # Pricing

    async def list_price_rules(self, enabled_only: bool = True) -> List[PriceRule]:
        if self.fail_list_rules:
            raise ConnectionError("store unavailable")
        rules = [r for r in self.rules if r.enabled or not enabled_only]
        return sorted(rules, key=lambda r: r.priority, reverse=True)

    async def create_price_history(self, entry: PriceHistory) -> PriceHistory:
        self.price_history.append(entry)
        return entry

    # Exchange Rates

    async def get_active_exchange_rate(self, at: datetime, base_currency="KRW", target_currency="USD"):
        for rate in reversed(self.exchange_rates):
            if rate.is_active and rate.valid_from <= at <= rate.valid_until:
                return rate
        return None

    async def replace_active_exchange_rate(self, rate: ExchangeRate) -> ExchangeRate:
        for existing in self.exchange_rates:
            existing.is_active = False
        rate.is_active = True
        self.exchange_rates.append(rate)
        return rate

    # Order Sync Status

    async def get_order_status(self, order_id: str) -> Optional[OrderSyncStatus]:
        status = self.orders.get(str(order_id))
        return status.model_copy(deep=True) if status else None

    async def save_order_status(self, status: OrderSyncStatus) -> OrderSyncStatus:
        if self.failing_order_saves:
            self.failing_order_saves -= 1
            raise ConnectionError("store unavailable")
        self.orders[status.order_id] = status.model_copy(deep=True)
        return status
