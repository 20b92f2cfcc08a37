"""
ShelfSync Database Models

13 tables mirroring a merchant's Square account plus sync bookkeeping.
Multi-tenant via merchant_id on all tables. Remote objects are keyed by
(merchant_id, square_id); cross-references between mirrored objects use
Square ids so a sync can tolerate objects arriving out of order.

Tables:
  Tenancy (1):
  1. merchants            - Tenant accounts + encrypted Square token

  Catalog Mirror (2-8):
  2. locations            - Square locations (active flag)
  3. vendors              - Square vendors
  4. categories           - Catalog categories
  5. catalog_images       - Catalog images
  6. catalog_items        - Items (soft-deleted)
  7. catalog_variations   - Variations (soft-deleted)
  8. variation_vendors    - Variation ↔ vendor cost links

  Inventory & Sales (9-11):
  9. inventory_counts     - IN_STOCK (bulk sync) + RESERVED_FOR_SALE (derived)
  10. committed_inventory - Per-invoice committed quantities
  11. sales_velocity      - Multi-period sales aggregates

  Sync Bookkeeping (12-13):
  12. sync_history        - Per (merchant, sync type) run state + delta cursor
  13. webhook_events      - Inbound events with retry scheduling
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from db.session import Base

# ─── Status vocabularies ──────────────────────────────────────────────────

SYNC_RUNNING = "running"
SYNC_SUCCESS = "success"
SYNC_FAILED = "failed"
SYNC_INTERRUPTED = "interrupted"

EVENT_PENDING = "pending"
EVENT_RUNNING = "running"
EVENT_FAILED = "failed"
EVENT_PENDING_RETRY = "pending_retry"
EVENT_COMPLETED = "completed"
EVENT_SKIPPED = "skipped"

STATE_IN_STOCK = "IN_STOCK"
STATE_RESERVED_FOR_SALE = "RESERVED_FOR_SALE"


# ─── 1. Merchants ─────────────────────────────────────────────────────────


class Merchant(Base):
    __tablename__ = "merchants"

    merchant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    square_merchant_id = Column(String(255), unique=True)
    access_token_encrypted = Column(Text)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'trial', 'inactive')", name="ck_merchant_status"),
    )


# ─── 2. Locations ─────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    name = Column(String(255))
    status = Column(String(20))
    active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String(64))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("merchant_id", "square_id", name="uq_location_square_id"),)


# ─── 3. Vendors ───────────────────────────────────────────────────────────


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    name = Column(String(255))
    status = Column(String(20))
    contact_name = Column(String(255))
    contact_email = Column(String(255))
    contact_phone = Column(String(64))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("merchant_id", "square_id", name="uq_vendor_square_id"),)


# ─── 4. Categories ────────────────────────────────────────────────────────


class Category(Base):
    __tablename__ = "categories"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False, default="Uncategorized")
    is_deleted = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("merchant_id", "square_id", name="uq_category_square_id"),)


# ─── 5. Catalog Images ────────────────────────────────────────────────────


class CatalogImage(Base):
    __tablename__ = "catalog_images"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    name = Column(String(255))
    url = Column(Text)
    caption = Column(Text)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("merchant_id", "square_id", name="uq_image_square_id"),)


# ─── 6. Catalog Items ─────────────────────────────────────────────────────


class CatalogItem(Base):
    __tablename__ = "catalog_items"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category_id = Column(String(255))
    category_name = Column(String(255))
    product_type = Column(String(50))
    taxable = Column(Boolean)
    visibility = Column(String(20))
    available_online = Column(Boolean, nullable=False, default=False)
    seo_title = Column(String(255))
    seo_description = Column(Text)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime)
    present_at_all_locations = Column(Boolean, nullable=False, default=True)
    present_at_location_ids = Column(JSON, default=list)
    absent_at_location_ids = Column(JSON, default=list)
    tax_ids = Column(JSON, default=list)
    modifier_list_info = Column(JSON)
    item_options = Column(JSON)
    images = Column(JSON, default=list)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "square_id", name="uq_item_square_id"),
        Index("ix_items_merchant_deleted", "merchant_id", "is_deleted"),
    )


# ─── 7. Catalog Variations ────────────────────────────────────────────────


class CatalogVariation(Base):
    __tablename__ = "catalog_variations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_id = Column(String(255), nullable=False)
    item_id = Column(String(255), nullable=False)  # parent CatalogItem.square_id
    name = Column(String(255))
    sku = Column(String(100))
    upc = Column(String(100))
    price_money = Column(Integer)  # minor units
    currency = Column(String(3), nullable=False, default="CAD")
    pricing_type = Column(String(30), nullable=False, default="FIXED_PRICING")
    track_inventory = Column(Boolean, nullable=False, default=False)
    inventory_alert_type = Column(String(30))
    inventory_alert_threshold = Column(Integer)
    present_at_all_locations = Column(Boolean, nullable=False, default=True)
    present_at_location_ids = Column(JSON, default=list)
    absent_at_location_ids = Column(JSON, default=list)
    custom_attributes = Column(JSON)
    case_pack_quantity = Column(Integer)
    expiration_date = Column(DateTime)
    does_not_expire = Column(Boolean)
    expiry_reviewed_at = Column(DateTime)
    expiry_reviewed_by = Column(String(255))
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "square_id", name="uq_variation_square_id"),
        Index("ix_variations_merchant_item", "merchant_id", "item_id"),
    )


# ─── 8. Variation Vendors ─────────────────────────────────────────────────


class VariationVendor(Base):
    __tablename__ = "variation_vendors"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    variation_id = Column(String(255), nullable=False)
    vendor_id = Column(String(255), nullable=False)
    vendor_code = Column(String(100))
    unit_cost_money = Column(Integer)
    currency = Column(String(3), nullable=False, default="CAD")
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "variation_id", "vendor_id", name="uq_variation_vendor"),
    )


# ─── 9. Inventory Counts ──────────────────────────────────────────────────


class InventoryCount(Base):
    __tablename__ = "inventory_counts"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    catalog_object_id = Column(String(255), nullable=False)
    location_id = Column(String(255), nullable=False)
    state = Column(String(30), nullable=False)
    quantity = Column(Float, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "catalog_object_id", "location_id", "state", name="uq_inventory_count"),
        CheckConstraint("state IN ('IN_STOCK', 'RESERVED_FOR_SALE')", name="ck_inventory_state"),
    )


# ─── 10. Committed Inventory ──────────────────────────────────────────────


class CommittedInventory(Base):
    __tablename__ = "committed_inventory"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_invoice_id = Column(String(255), nullable=False)
    square_order_id = Column(String(255))
    catalog_object_id = Column(String(255), nullable=False)
    location_id = Column(String(255), nullable=False)
    quantity = Column(Float, nullable=False)
    invoice_status = Column(String(30), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "merchant_id", "square_invoice_id", "catalog_object_id", "location_id", name="uq_committed_inventory"
        ),
        Index("ix_committed_inv_variation", "merchant_id", "catalog_object_id"),
    )


# ─── 11. Sales Velocity ───────────────────────────────────────────────────


class SalesVelocity(Base):
    __tablename__ = "sales_velocity"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    variation_id = Column(String(255), nullable=False)
    location_id = Column(String(255), nullable=False)
    period_days = Column(Integer, nullable=False)
    total_quantity_sold = Column(Float, nullable=False, default=0)
    total_revenue_cents = Column(Integer, nullable=False, default=0)
    daily_avg_quantity = Column(Float, nullable=False, default=0)
    weekly_avg_quantity = Column(Float, nullable=False, default=0)
    monthly_avg_quantity = Column(Float, nullable=False, default=0)
    daily_avg_revenue_cents = Column(Float, nullable=False, default=0)
    period_start_date = Column(DateTime)
    period_end_date = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "variation_id", "location_id", "period_days", name="uq_sales_velocity"),
    )


# ─── 12. Sync History ─────────────────────────────────────────────────────


class SyncHistory(Base):
    __tablename__ = "sync_history"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    sync_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration_seconds = Column(Float)
    records_synced = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    last_delta_timestamp = Column(String(64))  # Square's latest_time, opaque cursor
    synced_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("sync_type", "merchant_id", name="uq_sync_history_type_merchant"),
        CheckConstraint(
            "status IN ('running', 'success', 'failed', 'interrupted')", name="ck_sync_history_status"
        ),
    )


# ─── 13. Webhook Events ───────────────────────────────────────────────────


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    square_event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    square_merchant_id = Column(String(255))
    event_data = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=EVENT_PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(DateTime)
    last_retry_at = Column(DateTime)
    error_message = Column(Text)
    sync_results = Column(JSON)
    processing_time_ms = Column(Integer)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'failed', 'pending_retry', 'completed', 'skipped')",
            name="ck_webhook_event_status",
        ),
        Index("ix_webhook_events_retry", "status", "next_retry_at"),
    )
