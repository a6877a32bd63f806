"""
Print Batching Pipeline
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety. Table names,
header names, the status vocabulary and every batching threshold live here.
"""

from functools import lru_cache
from typing import Dict, List
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TableSettings(BaseSettings):
    """Names of the tables in the workbook"""

    model_config = SettingsConfigDict(env_prefix="TABLE_")

    order_items: str = Field(default="OrderItems", description="Line items table")
    orders: str = Field(default="Orders", description="Order aggregate table")
    sku_matrix: str = Field(default="SKU_Matrix", description="Product catalog table")
    exceptions: str = Field(default="Exceptions", description="Exception log table")
    batches: str = Field(default="Batches", description="Print batches table")
    batch_orders: str = Field(default="BatchOrders", description="Batch x order join table")
    shipments: str = Field(default="Shipments", description="Carrier shipments table")


class OrderItemColumns(BaseModel):
    created_at: str = "CreatedAt"
    order_name: str = "OrderName"
    product_title: str = "ProductTitle"
    qty: str = "Qty"
    print_category: str = "PrintCategory"
    print_profile_key: str = "PrintProfileKey"
    line_item_id: str = "LineItemID"
    sku: str = "SKU"
    print_units: str = "PrintUnits"
    print_batch_id: str = "PrintBatchID"
    printed_at: str = "PrintedAt"
    printed_by: str = "PrintedBy"
    packed_at: str = "PackedAt"
    packed_by: str = "PackedBy"
    ready_for_orders: str = "ReadyForOrders"


class OrderColumns(BaseModel):
    order_name: str = "OrderName"
    postcode: str = "Postcode"
    created_at: str = "CreatedAt"
    status: str = "OrderStatus"
    packed_at: str = "PackedAt"
    packed_by: str = "PackedBy"
    notes: str = "Notes"
    rm_batch_number: str = "RoyalMailBatchNumber"
    rm_tracking_number: str = "RoyalMailTrackingNumber"
    rm_manifest_no: str = "RoyalMailManifestNo"


class CatalogColumns(BaseModel):
    sku: str = "SKU"
    print_mode: str = "PrintMode"
    print_profile_key: str = "PrintProfileKey"
    print_category: str = "PrintCategory"


class ExceptionColumns(BaseModel):
    logged_at: str = "LoggedAt"
    type: str = "Type"
    order_name: str = "OrderName"
    line_item_id: str = "LineItemID"
    sku: str = "SKU"
    message: str = "Message"


class BatchColumns(BaseModel):
    batch_id: str = "BatchID"
    print_batch_name: str = "PrintBatchName"
    rm_batch_number: str = "RoyalMailBatchNumber"
    batch_date: str = "BatchDate"
    batch_type: str = "BatchType"
    print_profile_key: str = "PrintProfileKey"
    print_category: str = "PrintCategory"
    status: str = "OrderStatus"
    created_at: str = "CreatedAt"
    created_by: str = "CreatedBy"
    total_print_units: str = "TotalPrintUnits"
    line_item_count: str = "LineItemCount"
    order_count: str = "OrderCount"
    notes: str = "Notes"


class BatchOrderColumns(BaseModel):
    batch_order_id: str = "BatchOrderID"
    batch_id: str = "BatchID"
    print_batch_name: str = "PrintBatchName"
    rm_batch_number: str = "RoyalMailBatchNumber"
    order_name: str = "OrderName"
    order_created_at: str = "OrderCreatedAt"
    order_status: str = "OrderStatus"
    order_item_count: str = "OrderItemCount"
    print_units: str = "PrintUnits"
    last_updated_at: str = "LastUpdatedAt"


class ShipmentColumns(BaseModel):
    shipment_id: str = "ShipmentID"
    order_name: str = "OrderName"
    postcode: str = "Postcode"
    rm_tracking_number: str = "RoyalMailTrackingNumber"
    rm_manifest_no: str = "RoyalMailManifestNo"
    rm_batch_number: str = "RoyalMailBatchNumber"
    tracking_status: str = "TrackingStatus"
    despatched_at: str = "DespatchedAt"
    shipping_service: str = "ShippingService"
    package_size: str = "PackageSize"
    weight_kg: str = "WeightKg"
    imported_at: str = "ImportedAt"
    source_file_name: str = "SourceFileName"


class ColumnSettings(BaseModel):
    """Header names per table; columns are always resolved by header, never by position"""

    order_items: OrderItemColumns = Field(default_factory=OrderItemColumns)
    orders: OrderColumns = Field(default_factory=OrderColumns)
    sku_matrix: CatalogColumns = Field(default_factory=CatalogColumns)
    exceptions: ExceptionColumns = Field(default_factory=ExceptionColumns)
    batches: BatchColumns = Field(default_factory=BatchColumns)
    batch_orders: BatchOrderColumns = Field(default_factory=BatchOrderColumns)
    shipments: ShipmentColumns = Field(default_factory=ShipmentColumns)


class StatusSettings(BaseSettings):
    """Order status vocabulary"""

    model_config = SettingsConfigDict(env_prefix="STATUS_")

    hold: str = Field(default="Hold", description="Manual hold")
    new: str = Field(default="New", description="All items ready, nothing started")
    in_production: str = Field(default="In Production", description="Batched or partly printed")
    ready_to_pack: str = Field(default="Ready to Pack", description="All items printed")
    packed: str = Field(default="Packed", description="All items packed")
    despatched: str = Field(default="Despatched", description="Carrier has the parcel")
    delivered: str = Field(default="Delivered", description="Carrier reports delivery")

    @property
    def manual_or_final(self) -> List[str]:
        """Statuses the derivation path must never overwrite"""
        return [self.hold, self.despatched, self.delivered]


class DeriveSettings(BaseSettings):
    """Line item derivation and gating behaviour"""

    model_config = SettingsConfigDict(env_prefix="DERIVE_")

    overwrite_existing: bool = Field(default=False, description="Always overwrite PrintUnits")
    blankish_values: List[str] = Field(
        default=["(blank)", "(blanks)", "blank", "blanks", '""'],
        description="Literal strings treated as empty",
    )
    missing_sku_category: str = Field(default="Unknown", description="Fallback category")
    missing_sku_units: int = Field(default=0, description="Fallback print units")
    log_missing_sku: bool = Field(default=True, description="Append missing SKUs to Exceptions")
    none_category: str = Field(default="NONE", description="Category for PrintMode NONE")
    digital_sku_suffix: str = Field(default="BDD", description="SKU suffix of digital-only products")


class BatchSettings(BaseSettings):
    """Batch assignment controls"""

    model_config = SettingsConfigDict(env_prefix="BATCH_")

    # "ORDER_DATE" buckets by DATE(CreatedAt), "PRINT_DAY" buckets into today
    date_mode: str = Field(default="ORDER_DATE", description="ORDER_DATE or PRINT_DAY")
    full_days_only: bool = Field(default=True, description="Exclude today's bucket")
    lookback_days: int = Field(default=28, description="Ignore items older than this")

    min_lineitems_for_auto: int = Field(default=2, description="Min items for an AUTO batch")
    min_printunits_for_auto: int = Field(default=2, description="Min units for an AUTO batch")
    max_printunits_per_batch: int = Field(default=999, description="Split threshold")

    create_misc_per_date: bool = Field(default=True, description="Collect outliers into MISC batches")
    misc_profile_key: str = Field(default="MISC", description="Reuse key for MISC batches")
    misc_category: str = Field(default="MISC", description="Category of MISC batches")

    type_auto: str = Field(default="AUTO", description="BatchType of qualifying groups")
    type_misc: str = Field(default="MISC", description="BatchType of outlier batches")
    status_open: str = Field(default="Open", description="Status of batches accepting items")

    category_labels: Dict[str, str] = Field(
        default={
            "B108": "10x8",
            "B108F": "10x8F",
            "B1210": "12x10",
            "B125": "12x5",
            "B1612C": "16x12C",
            "B1616C": "16x16C",
            "B1620C": "16x20C",
            "B176": "17x6",
            "B54": "5x4",
            "B64": "6x4",
            "B75": "7x5",
            "B86": "8x6",
            "B86F": "8x6F",
            "B96": "9x6",
            "BDD": "Digital",
            "BKEY": "Keyring",
            "BMAG": "Magnet",
            "BMUG": "Mug",
            "BPP": "Passport",
            "BNONP": "Non-Product",
            "BNB": "Non-Batch",
            "BSTF": "Staff",
            "MISC": "MISC",
        },
        description="Category code to display label used in batch names",
    )

    @field_validator("date_mode")
    @classmethod
    def validate_date_mode(cls, v: str) -> str:
        """Validate date bucketing mode"""
        allowed = ["ORDER_DATE", "PRINT_DAY"]
        if v.upper() not in allowed:
            raise ValueError(f"Date mode must be one of: {allowed}")
        return v.upper()


class RoyalMailSettings(BaseSettings):
    """Carrier manifest import configuration"""

    model_config = SettingsConfigDict(env_prefix="ROYAL_MAIL_")

    watch_dir: str = Field(default="./data/manifests/incoming", description="Pending manifest exports")
    archive_dir: str = Field(default="./data/manifests/archive", description="Imported manifest exports")
    poll_every_minutes: int = Field(default=30, description="Manifest poll interval")
    tracking_status_delivered: str = Field(default="Delivered", description="Delivered token")
    tracking_url_prefix: str = Field(
        default="https://www.royalmail.com/track-your-item#/tracking-results/",
        description="Prefix for tracking links written to Orders",
    )


class PerfSettings(BaseSettings):
    """Performance and concurrency controls"""

    model_config = SettingsConfigDict(env_prefix="PERF_")

    checkpoint_overlap: int = Field(default=200, description="Rows rescanned before the checkpoint")
    lock_timeout_seconds: float = Field(default=30.0, description="Max wait for the pipeline lock")
    sync_every_minutes: int = Field(default=2, description="Order sync interval")


class StorageSettings(BaseSettings):
    """Workbook and durable state locations"""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    workbook_dir: str = Field(default="./data/workbook", description="Directory of <Table>.csv files")
    state_url: str = Field(default="sqlite:///./data/state.db", description="SQLAlchemy URL for checkpoints")
    lock_file: str = Field(default="./data/.pipeline.lock", description="Process-wide lock file")
    echo: bool = Field(default=False, description="Echo SQL queries")


class MonitoringSettings(BaseSettings):
    """Logging configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="printbatch", description="Application name")
    app_env: str = Field(default="development", description="Environment")
    timezone: str = Field(default="Europe/London", description="Timezone for day boundaries")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    tables: TableSettings = Field(default_factory=TableSettings)
    columns: ColumnSettings = Field(default_factory=ColumnSettings)
    status: StatusSettings = Field(default_factory=StatusSettings)
    derive: DeriveSettings = Field(default_factory=DeriveSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    royal_mail: RoyalMailSettings = Field(default_factory=RoyalMailSettings)
    perf: PerfSettings = Field(default_factory=PerfSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
