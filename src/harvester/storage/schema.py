"""
Database schema definition for the Harvester SQLite store.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, MetaData, Table, Text
from sqlalchemy.sql import func

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


tasks_table = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", Text, nullable=False),
    Column("url", Text, nullable=False),
    Column("type", Text, nullable=False, default="web"),
    Column("status", Text, nullable=False, default="pending", index=True),
    # Opaque JSON document; crawlers decode it into TaskConfig
    Column("config", Text, nullable=False, default="{}"),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Column("started_at", DateTime),
    Column("completed_at", DateTime),
)


proxies_table = Table(
    "proxies",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("host", Text, nullable=False),
    Column("port", Integer, nullable=False),
    Column("type", Text, nullable=False, default="http"),
    Column("username", Text),
    Column("password", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("failure_count", Integer, nullable=False, default=0),
    Column("last_checked", DateTime),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Index("ix_proxies_active_failures", "is_active", "failure_count"),
)


crawl_results_table = Table(
    "crawl_results",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("task_id", Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("url", Text, nullable=False),
    Column("method", Text, nullable=False, default="GET"),
    Column("status_code", Integer),
    Column("headers", Text),
    Column("body", Text),
    Column("response_time_ms", Integer),
    Column("proxy_used", Text),
    Column("error", Text),
    Column("created_at", DateTime, server_default=func.now()),
)


products_table = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("elastic_id", Text, nullable=False, unique=True),
    Column("product_id", Text),
    Column("item_id", Text),
    Column("name", Text),
    Column("brand", Text),
    Column("catalog", Text),
    Column("artist", Text),
    Column("rating", Float),
    Column("list_price", Float),
    Column("sale_price", Float),
    Column("club_price", Float),
    Column("sale_rank", Integer),
    Column("customer_interest_index", Integer),
    Column("in_stock", Boolean),
    Column("is_active", Boolean),
    Column("is_buyable", Boolean),
    Column("is_licensed", Boolean),
    Column("color_sequence", Text),
    Column("definition_name", Text),
    Column("product_type", Text),
    Column("gtin", Text),
    Column("design_keywords", Text),
    Column("categories", Text),
    # JSON encoded lists
    Column("categories_list", Text),
    Column("keywords", Text),
    Column("sales_list", Text),
    Column("variants", Text),
    Column("sale_end_date", DateTime),
    Column("year_created", DateTime),
    Column("applied_discount_id", Integer),
    Column("raw_data", Text, nullable=False),
    Column("status", Text, nullable=False, default="pending"),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
)


crawler_settings_table = Table(
    "crawler_settings",
    metadata,
    Column("key", Text, primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime, server_default=func.now()),
)
