"""
Pydantic models for Supabase database tables.
These models represent the structure of data stored in Supabase.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from catalog_sync.errors import ValidationError


class Platform(str, Enum):
    NAVER = "naver"
    SHOPIFY = "shopify"

    @property
    def counterpart(self) -> "Platform":
        return Platform.SHOPIFY if self is Platform.NAVER else Platform.NAVER


class MappingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"
    PENDING = "PENDING"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class JobType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Allowed status transitions for sync jobs
JOB_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def transition_sources(
    to_status: JobStatus, from_statuses: Optional[Iterable[JobStatus]] = None
) -> List[JobStatus]:
    """
    Statuses a job may currently have to move to to_status.

    Args:
        to_status: Target status
        from_statuses: Narrower set requested by the caller; every entry must be allowed

    Raises:
        ValidationError: A requested source status cannot move to to_status
    """
    allowed = [status for status, targets in JOB_TRANSITIONS.items() if to_status in targets]
    if from_statuses is None:
        return allowed
    requested = list(from_statuses)
    illegal = [status.value for status in requested if status not in allowed]
    if illegal:
        raise ValidationError(f"Sync job cannot move from {illegal} to {to_status.value}")
    return requested


class TransactionType(str, Enum):
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    SYNC = "sync"
    UPDATE_FAILED = "update_failed"


class Initiator(str, Enum):
    SYSTEM = "system"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class RoundingStrategy(str, Enum):
    UP = "up"
    DOWN = "down"
    NEAREST = "nearest"


class ExchangeRateSource(str, Enum):
    API = "api"
    MANUAL = "manual"


class PriceRuleType(str, Enum):
    SKU = "sku"
    CATEGORY = "category"
    BRAND = "brand"
    PRICE_RANGE = "price_range"


class PlatformInventory(BaseModel):
    """Cached quantity for one platform."""
    available_qty: int = 0
    last_update: Optional[datetime] = None


class PlatformPricing(BaseModel):
    """Current prices and the conversion inputs that produced them."""
    naver_price: Optional[float] = None  # KRW
    shopify_price: Optional[float] = None  # USD
    exchange_rate: Optional[float] = None
    margin: Optional[float] = None


class ProductMapping(BaseModel):
    """Model for product_mappings table."""
    id: Optional[UUID] = None
    sku: str
    naver_product_id: Optional[str] = None
    shopify_product_id: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    shopify_inventory_item_id: Optional[str] = None
    shopify_location_id: Optional[str] = None
    product_name: Optional[str] = None
    vendor: str = "album"
    category: Optional[str] = None
    brand: Optional[str] = None
    price_margin: float = Field(default=1.15, ge=1.0, le=2.0)
    is_active: bool = True
    status: MappingStatus = MappingStatus.ACTIVE
    sync_status: SyncStatus = SyncStatus.PENDING
    inventory: Dict[Platform, PlatformInventory] = Field(
        default_factory=lambda: {
            Platform.NAVER: PlatformInventory(),
            Platform.SHOPIFY: PlatformInventory(),
        }
    )
    pricing: PlatformPricing = Field(default_factory=PlatformPricing)
    last_synced_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("sku")
    @classmethod
    def normalize_sku(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("sku must not be empty")
        return value

    def quantity(self, platform: Platform) -> int:
        entry = self.inventory.get(platform)
        return entry.available_qty if entry else 0


class SyncJobOptions(BaseModel):
    """Options accepted when creating a sync job."""
    skus: Optional[List[str]] = None
    margin: Optional[float] = Field(default=None, ge=1.0, le=2.0)
    exchange_rate_source: ExchangeRateSource = ExchangeRateSource.API
    custom_exchange_rate: Optional[float] = None
    rounding_strategy: RoundingStrategy = RoundingStrategy.NEAREST
    apply_rules: bool = True
    sync_inventory: bool = True
    sync_prices: bool = True
    parent_job_id: Optional[str] = None

    @field_validator("skus")
    @classmethod
    def normalize_skus(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        seen: List[str] = []
        for sku in value:
            sku = sku.strip().upper()
            if sku and sku not in seen:
                seen.append(sku)
        return seen


class SyncJobError(BaseModel):
    """One captured failure inside a sync job."""
    sku: str
    error: str
    error_type: str
    timestamp: datetime


class SyncJob(BaseModel):
    """Model for sync_jobs table."""
    id: Optional[UUID] = None
    job_id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    options: SyncJobOptions = Field(default_factory=SyncJobOptions)
    total_items: int = 0
    processed_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    errors: List[SyncJobError] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def failed_skus(self) -> List[str]:
        skus: List[str] = []
        for error in self.errors:
            if error.sku not in skus and error.sku != "*":
                skus.append(error.sku)
        return skus


class InventoryTransaction(BaseModel):
    """Model for inventory_transactions table (append-only ledger)."""
    id: Optional[UUID] = None
    sku: str
    platform: Platform
    transaction_type: TransactionType
    quantity: int  # signed delta
    previous_quantity: int
    new_quantity: int
    reason: str
    performed_by: Initiator = Initiator.SYSTEM
    order_id: Optional[str] = None
    order_line_item_id: Optional[str] = None
    created_at: datetime


class ExchangeRate(BaseModel):
    """Model for exchange_rates table."""
    id: Optional[UUID] = None
    base_currency: str = "KRW"
    target_currency: str = "USD"
    rate: float
    is_manual: bool = False
    is_active: bool = True
    reason: Optional[str] = None
    valid_from: datetime
    valid_until: datetime
    created_at: Optional[datetime] = None


class PriceRule(BaseModel):
    """Model for price_sync_rules table."""
    id: Optional[UUID] = None
    name: str = ""
    type: PriceRuleType
    value: Optional[str] = None
    margin_rate: float = Field(gt=0)
    priority: int = 0
    enabled: bool = True
    min_price: Optional[float] = None
    max_price: Optional[float] = None


class PriceHistory(BaseModel):
    """Model for price_history table."""
    id: Optional[UUID] = None
    sku: str
    platform: Platform = Platform.SHOPIFY
    old_price: Optional[float] = None
    new_price: float
    source_price: float
    exchange_rate: float
    margin: float
    rule_id: Optional[UUID] = None
    rounding_strategy: RoundingStrategy
    job_id: Optional[str] = None
    created_at: datetime


class OrderItemStatus(str, Enum):
    DECREMENTED = "decremented"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"
    SKIPPED = "skipped"


class OrderItemOutcome(BaseModel):
    line_item_id: str
    sku: Optional[str] = None
    quantity: int
    status: OrderItemStatus
    error: Optional[str] = None


class OrderSyncStatus(BaseModel):
    """Model for order_sync_status table."""
    id: Optional[UUID] = None
    order_id: str
    platform: Platform = Platform.SHOPIFY
    order_number: Optional[str] = None
    status: str = "processed"  # processed, partial, failed, cancelled
    items: List[OrderItemOutcome] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def item(self, line_item_id: str) -> Optional[OrderItemOutcome]:
        for entry in self.items:
            if entry.line_item_id == line_item_id:
                return entry
        return None
