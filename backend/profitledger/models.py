"""SQLAlchemy ORM models and enums.

This module defines the ledger schema. Raw facts (daily metrics, line items,
unit costs) are written by the sync steps; derived facts (COGS coverage,
profit summary) are fully rebuilt by every recompute pass. Every fact table
carries a named composite unique constraint that the upsert layer targets.
"""

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    shopify = "shopify"
    meta = "meta"
    google = "google"


class AllocationModeEnum(str, enum.Enum):
    actual = "actual"
    hybrid = "hybrid"
    modeled = "modeled"


class ConfidenceEnum(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


# Raw facts -----------------------------------------------------

class DailyMetric(Base):
    """Per-day activity for one client and one source.

    WHAT:
        Storefront rows (source=shopify) carry revenue/orders/units.
        Ad rows (source=meta|google) carry spend/clicks/impressions/conversions.
    WHY:
        One row per (client, date, source) lets each sync step overwrite its
        own slice without touching the others.
    """
    __tablename__ = "daily_metrics"
    __table_args__ = (
        UniqueConstraint("client_id", "date", "source", name="uq_daily_metrics_client_date_source"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    source = Column(String, nullable=False)

    revenue = Column(Numeric(18, 4), nullable=False, default=0, server_default="0")
    orders = Column(Integer, nullable=False, default=0, server_default="0")
    units = Column(Integer, nullable=False, default=0, server_default="0")
    spend = Column(Numeric(18, 4), nullable=False, default=0, server_default="0")
    clicks = Column(Integer, nullable=False, default=0, server_default="0")
    impressions = Column(Integer, nullable=False, default=0, server_default="0")
    conversions = Column(Integer, nullable=False, default=0, server_default="0")

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.client_id} {self.source} {self.date}"


class DailyLineItem(Base):
    """Units and discounted line revenue per (client, day, inventory item).

    No customer data is stored; only product keys and totals.
    """
    __tablename__ = "daily_line_items"
    __table_args__ = (
        UniqueConstraint("client_id", "day", "inventory_item_id", name="uq_daily_line_items_client_day_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    shop_domain = Column(String, nullable=True)
    day = Column(Date, nullable=False)
    inventory_item_id = Column(BigInteger, nullable=False)
    variant_id = Column(BigInteger, nullable=True)
    sku = Column(String, nullable=True)
    units = Column(Integer, nullable=False, default=0)
    line_revenue = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String(8), nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class VariantUnitCost(Base):
    """Latest known unit cost for an inventory item (and its variant)."""
    __tablename__ = "variant_unit_costs"
    __table_args__ = (
        UniqueConstraint("client_id", "inventory_item_id", name="uq_variant_unit_costs_client_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    inventory_item_id = Column(BigInteger, nullable=False)
    variant_id = Column(BigInteger, nullable=True)
    sku = Column(String, nullable=True)
    unit_cost_amount = Column(Numeric(18, 4), nullable=True)
    unit_cost_currency = Column(String(8), nullable=True)
    source = Column(String, nullable=False, default="shopify")

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Configuration -------------------------------------------------

class ClientCostSettings(Base):
    """Per-client cost assumptions consumed by the allocation engine.

    Owned by client configuration; the pipeline only reads it. Percent-like
    values may be stored either as fractions (0.3) or percents (30).
    """
    __tablename__ = "client_cost_settings"

    client_id = Column(String, primary_key=True)

    default_gross_margin_pct = Column(Numeric(9, 4), nullable=True)
    avg_cogs_per_unit = Column(Numeric(18, 4), nullable=True)

    processing_fee_pct = Column(Numeric(9, 4), nullable=True)
    processing_fee_fixed = Column(Numeric(18, 4), nullable=True)
    pick_pack_per_order = Column(Numeric(18, 4), nullable=True)
    shipping_subsidy_per_order = Column(Numeric(18, 4), nullable=True)
    materials_per_order = Column(Numeric(18, 4), nullable=True)
    other_variable_pct_revenue = Column(Numeric(9, 4), nullable=True)
    other_fixed_per_day = Column(Numeric(18, 4), nullable=True)

    cogs_coverage_threshold_actual = Column(Numeric(9, 4), nullable=True)
    cogs_coverage_threshold_hybrid = Column(Numeric(9, 4), nullable=True)
    cost_mode_override = Column(String, nullable=True)

    exclude_pos_orders = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProviderCredential(Base):
    """Encrypted provider credential bundle for one client.

    WHAT:
        account_ref is the provider-side account (shop domain, ad account id,
        Google customer id). Tokens are Fernet ciphertext.
    REFERENCES:
        - profitledger/security.py (TokenCipher)
        - profitledger/services/credential_store.py
    """
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("client_id", "provider", name="uq_provider_credentials_client_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    account_ref = Column(String, nullable=False)
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    extra = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.provider} credential for {self.client_id} ({self.account_ref})"


# Derived facts -------------------------------------------------

class DailyCogsCoverage(Base):
    """Clamped COGS coverage per (client, date)."""
    __tablename__ = "daily_cogs_coverage"
    __table_args__ = (
        UniqueConstraint("client_id", "date", name="uq_daily_cogs_coverage_client_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    product_cogs_known = Column(Numeric(18, 2), nullable=False, default=0)
    revenue_with_cogs = Column(Numeric(18, 2), nullable=False, default=0)
    units_with_cogs = Column(Integer, nullable=False, default=0)
    estimated_cogs_missing = Column(Numeric(18, 2), nullable=False, default=0)


class DailyProfitSummary(Base):
    """Terminal ledger row per (client, date), rewritten whole by each recompute."""
    __tablename__ = "daily_profit_summary"
    __table_args__ = (
        UniqueConstraint("client_id", "date", name="uq_daily_profit_summary_client_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)

    revenue = Column(Numeric(18, 2), nullable=False, default=0)
    orders = Column(Integer, nullable=False, default=0)
    units = Column(Integer, nullable=False, default=0)
    paid_spend = Column(Numeric(18, 2), nullable=False, default=0)

    est_cogs = Column(Numeric(18, 2), nullable=False, default=0)
    est_processing_fees = Column(Numeric(18, 2), nullable=False, default=0)
    est_fulfillment_costs = Column(Numeric(18, 2), nullable=False, default=0)
    est_other_variable_costs = Column(Numeric(18, 2), nullable=False, default=0)
    est_other_fixed_costs = Column(Numeric(18, 2), nullable=False, default=0)
    contribution_profit = Column(Numeric(18, 2), nullable=False, default=0)

    mer = Column(Numeric(18, 4), nullable=False, default=0)
    profit_mer = Column(Numeric(18, 4), nullable=False, default=0)
    cogs_coverage_pct = Column(Numeric(9, 4), nullable=False, default=0)
    cost_mode = Column(String, nullable=False, default=AllocationModeEnum.modeled.value)
    cost_confidence = Column(String, nullable=False, default=ConfidenceEnum.low.value)


# Run history ---------------------------------------------------

class SyncRun(Base):
    """One orchestrator invocation and its per-step outcomes."""
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    ok = Column(Boolean, nullable=False, default=False)
    status = Column(Integer, nullable=False, default=200)
    steps = Column(JSON, nullable=False, default=list)
    trigger = Column(String, nullable=False, default="manual")

    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
