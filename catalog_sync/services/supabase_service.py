"""
Supabase service layer for database operations.
Handles product mappings, the inventory ledger, sync jobs, price rules,
price history, exchange rates, and per-order sync outcomes.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from supabase import AsyncClient, acreate_client

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
from catalog_sync.utils.clock import utc_now

logger = structlog.get_logger()


class SupabaseService:
    """Service for interacting with the Supabase database."""

    def __init__(self, client: AsyncClient):
        """
        Args:
            client: Supabase async client (see create())
        """
        self.client = client

    @classmethod
    async def create(cls, supabase_url: str, supabase_key: str) -> "SupabaseService":
        """Create the async Supabase client and wrap it."""
        client = await acreate_client(supabase_url, supabase_key)
        return cls(client)

    @staticmethod
    def _dump(model, exclude_none: bool = True) -> Dict[str, Any]:
        return model.model_dump(mode="json", exclude_none=exclude_none, exclude={"id"})

    # Product Mappings

    async def get_mapping(self, sku: str) -> Optional[ProductMapping]:
        """
        Get product mapping by SKU.

        Args:
            sku: Product SKU (case-insensitive)

        Returns:
            ProductMapping if found, None otherwise
        """
        return await self._get_mapping_where("sku", sku.strip().upper())

    async def get_mapping_by_variant_id(self, variant_id: str) -> Optional[ProductMapping]:
        """Get product mapping by Shopify variant ID."""
        return await self._get_mapping_where("shopify_variant_id", str(variant_id))

    async def get_mapping_by_inventory_item(
        self, inventory_item_id: str, location_id: str
    ) -> Optional[ProductMapping]:
        """
        Get product mapping by Shopify inventory item and location.

        Args:
            inventory_item_id: Shopify inventory item ID
            location_id: Shopify location ID

        Returns:
            ProductMapping if found, None otherwise
        """
        try:
            result = await (
                self.client.table("product_mappings")
                .select("*")
                .eq("shopify_inventory_item_id", str(inventory_item_id))
                .eq("shopify_location_id", str(location_id))
                .limit(1)
                .execute()
            )
            if result.data:
                return ProductMapping(**result.data[0])
            return None
        except Exception as e:
            logger.error(
                "Failed to get mapping by inventory item",
                inventory_item_id=inventory_item_id,
                location_id=location_id,
                error=str(e),
            )
            raise

    async def _get_mapping_where(self, column: str, value: str) -> Optional[ProductMapping]:
        try:
            # .limit(1) instead of .single(), which throws on 0 rows
            result = await (
                self.client.table("product_mappings")
                .select("*")
                .eq(column, value)
                .limit(1)
                .execute()
            )
            if result.data:
                return ProductMapping(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get product mapping", column=column, value=value, error=str(e))
            raise

    async def list_active_mappings(self) -> List[ProductMapping]:
        """Get all active product mappings ordered by SKU."""
        try:
            result = await (
                self.client.table("product_mappings")
                .select("*")
                .eq("is_active", True)
                .order("sku")
                .execute()
            )
            return [ProductMapping(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list active mappings", error=str(e))
            raise

    async def save_mapping(self, mapping: ProductMapping) -> ProductMapping:
        """
        Insert or replace a product mapping keyed by SKU.
        Last write wins; there is no version check.
        """
        mapping.updated_at = utc_now()
        try:
            result = await (
                self.client.table("product_mappings")
                .upsert(self._dump(mapping, exclude_none=False), on_conflict="sku")
                .execute()
            )
            if result.data:
                return ProductMapping(**result.data[0])
            raise Exception("No data returned from upsert")
        except Exception as e:
            logger.error("Failed to save product mapping", sku=mapping.sku, error=str(e))
            raise

    # Inventory Ledger

    async def create_inventory_transaction(
        self, transaction: InventoryTransaction
    ) -> InventoryTransaction:
        """Append a ledger entry. Entries are never updated."""
        try:
            result = await (
                self.client.table("inventory_transactions")
                .insert(self._dump(transaction))
                .execute()
            )
            if result.data:
                return InventoryTransaction(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error(
                "Failed to create inventory transaction",
                sku=transaction.sku,
                platform=transaction.platform.value,
                error=str(e),
            )
            raise

    async def get_latest_transaction(
        self, sku: str, platform: Platform
    ) -> Optional[InventoryTransaction]:
        """Latest ledger entry for a SKU on one platform."""
        try:
            result = await (
                self.client.table("inventory_transactions")
                .select("*")
                .eq("sku", sku)
                .eq("platform", platform.value)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
            if result.data:
                return InventoryTransaction(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get latest transaction", sku=sku, error=str(e))
            raise

    async def list_transactions(
        self, sku: str, platform: Optional[Platform] = None
    ) -> List[InventoryTransaction]:
        """Ledger entries for a SKU, oldest first."""
        try:
            query = self.client.table("inventory_transactions").select("*").eq("sku", sku)
            if platform is not None:
                query = query.eq("platform", platform.value)
            result = await query.order("created_at").execute()
            return [InventoryTransaction(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list transactions", sku=sku, error=str(e))
            raise

    async def list_transactions_for_order(self, order_id: str) -> List[InventoryTransaction]:
        """Ledger entries correlated with one order, oldest first."""
        try:
            result = await (
                self.client.table("inventory_transactions")
                .select("*")
                .eq("order_id", str(order_id))
                .order("created_at")
                .execute()
            )
            return [InventoryTransaction(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list order transactions", order_id=order_id, error=str(e))
            raise

    async def list_transactions_since(self, since: datetime) -> List[InventoryTransaction]:
        """Ledger entries created at or after `since`."""
        try:
            result = await (
                self.client.table("inventory_transactions")
                .select("*")
                .gte("created_at", since.isoformat())
                .order("created_at")
                .execute()
            )
            return [InventoryTransaction(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list recent transactions", since=since.isoformat(), error=str(e))
            raise

    # Sync Jobs

    async def create_sync_job(self, job: SyncJob) -> SyncJob:
        """Create a new sync job record."""
        job.created_at = job.created_at or utc_now()
        try:
            result = await self.client.table("sync_jobs").insert(self._dump(job)).execute()
            if result.data:
                return SyncJob(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create sync job", job_id=job.job_id, error=str(e))
            raise

    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        """Get sync job by its public job_id."""
        try:
            result = await (
                self.client.table("sync_jobs").select("*").eq("job_id", job_id).limit(1).execute()
            )
            if result.data:
                return SyncJob(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get sync job", job_id=job_id, error=str(e))
            raise

    async def list_sync_jobs(
        self, status: Optional[JobStatus] = None, limit: int = 50
    ) -> List[SyncJob]:
        """Sync jobs, oldest first, optionally filtered by status."""
        try:
            query = self.client.table("sync_jobs").select("*")
            if status is not None:
                query = query.eq("status", status.value)
            result = await query.order("created_at").limit(limit).execute()
            return [SyncJob(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list sync jobs", status=status, error=str(e))
            raise

    async def update_sync_job_progress(
        self,
        job_id: str,
        total_items: int,
        processed_items: int,
        success_count: int,
        failed_count: int,
        errors: List[SyncJobError],
    ) -> None:
        """Persist job counters. Never touches status."""
        try:
            await (
                self.client.table("sync_jobs")
                .update(
                    {
                        "total_items": total_items,
                        "processed_items": processed_items,
                        "success_count": success_count,
                        "failed_count": failed_count,
                        "errors": [error.model_dump(mode="json") for error in errors],
                        "updated_at": utc_now().isoformat(),
                    }
                )
                .eq("job_id", job_id)
                .execute()
            )
        except Exception as e:
            logger.error("Failed to update sync job progress", job_id=job_id, error=str(e))
            raise

    async def transition_sync_job(
        self,
        job_id: str,
        to_status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        from_statuses: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[SyncJob]:
        """
        Move a job to a new status only if it is currently in one of from_statuses.

        Args:
            job_id: Public job id
            to_status: Target status
            fields: Extra columns to write in the same update
            from_statuses: Statuses the job must currently have; defaults to every
                status JOB_TRANSITIONS allows to reach to_status

        Returns:
            The updated job, or None if the job was not in an allowed status

        Raises:
            ValidationError: from_statuses names a transition the table forbids
        """
        from_statuses = transition_sources(to_status, from_statuses)
        payload: Dict[str, Any] = {"status": to_status.value, "updated_at": utc_now().isoformat()}
        for key, value in (fields or {}).items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        try:
            result = await (
                self.client.table("sync_jobs")
                .update(payload)
                .eq("job_id", job_id)
                .in_("status", [status.value for status in from_statuses])
                .execute()
            )
            if result.data:
                return SyncJob(**result.data[0])
            return None
        except Exception as e:
            logger.error(
                "Failed to transition sync job",
                job_id=job_id,
                to_status=to_status.value,
                error=str(e),
            )
            raise

    # Pricing

    async def list_price_rules(self, enabled_only: bool = True) -> List[PriceRule]:
        """Price rules ordered by priority, highest first."""
        try:
            query = self.client.table("price_sync_rules").select("*")
            if enabled_only:
                query = query.eq("enabled", True)
            result = await query.order("priority", desc=True).execute()
            return [PriceRule(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list price rules", error=str(e))
            raise

    async def create_price_history(self, entry: PriceHistory) -> PriceHistory:
        """Append a price history row."""
        try:
            result = await self.client.table("price_history").insert(self._dump(entry)).execute()
            if result.data:
                return PriceHistory(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create price history", sku=entry.sku, error=str(e))
            raise

    # Exchange Rates

    async def get_active_exchange_rate(
        self, at: datetime, base_currency: str = "KRW", target_currency: str = "USD"
    ) -> Optional[ExchangeRate]:
        """Active rate whose validity window contains `at`."""
        try:
            result = await (
                self.client.table("exchange_rates")
                .select("*")
                .eq("base_currency", base_currency)
                .eq("target_currency", target_currency)
                .eq("is_active", True)
                .lte("valid_from", at.isoformat())
                .gte("valid_until", at.isoformat())
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
            if result.data:
                return ExchangeRate(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get active exchange rate", error=str(e))
            raise

    async def replace_active_exchange_rate(self, rate: ExchangeRate) -> ExchangeRate:
        """Deactivate every active rate for the currency pair, then insert `rate` as active."""
        rate.is_active = True
        rate.created_at = rate.created_at or utc_now()
        try:
            await (
                self.client.table("exchange_rates")
                .update({"is_active": False})
                .eq("base_currency", rate.base_currency)
                .eq("target_currency", rate.target_currency)
                .eq("is_active", True)
                .execute()
            )
            result = await self.client.table("exchange_rates").insert(self._dump(rate)).execute()
            if result.data:
                return ExchangeRate(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to replace active exchange rate", rate=rate.rate, error=str(e))
            raise

    # Order Sync Status

    async def get_order_status(self, order_id: str) -> Optional[OrderSyncStatus]:
        """Per-order outcome recorded by the webhook gateway."""
        try:
            result = await (
                self.client.table("order_sync_status")
                .select("*")
                .eq("order_id", str(order_id))
                .limit(1)
                .execute()
            )
            if result.data:
                return OrderSyncStatus(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get order status", order_id=order_id, error=str(e))
            raise

    async def save_order_status(self, status: OrderSyncStatus) -> OrderSyncStatus:
        """Insert or replace the outcome for an order."""
        status.updated_at = utc_now()
        try:
            result = await (
                self.client.table("order_sync_status")
                .upsert(self._dump(status, exclude_none=False), on_conflict="order_id")
                .execute()
            )
            if result.data:
                return OrderSyncStatus(**result.data[0])
            raise Exception("No data returned from upsert")
        except Exception as e:
            logger.error("Failed to save order status", order_id=status.order_id, error=str(e))
            raise
