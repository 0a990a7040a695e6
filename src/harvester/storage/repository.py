"""
SQLite implementation of the engine's repository contract.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite
import structlog
from sqlalchemy import create_engine

from harvester.config.config import StorageConfig
from harvester.exceptions import InvalidProductStatusError, ProductNotFoundError, StorageError, TaskNotFoundError
from harvester.protocols import (
    CrawlResult,
    Product,
    ProductStatus,
    Proxy,
    ProxyType,
    Task,
    TaskStatus,
    TaskType,
    utcnow,
)

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# The current version of the database schema.
# This should be incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

PAYLOAD_OVERRIDES_KEY = "embroidery_payload_overrides"

MAX_PRODUCT_PAGE = 100


_PRODUCT_COLUMNS = (
    "elastic_id",
    "product_id",
    "item_id",
    "name",
    "brand",
    "catalog",
    "artist",
    "rating",
    "list_price",
    "sale_price",
    "club_price",
    "sale_rank",
    "customer_interest_index",
    "in_stock",
    "is_active",
    "is_buyable",
    "is_licensed",
    "color_sequence",
    "definition_name",
    "product_type",
    "gtin",
    "design_keywords",
    "categories",
    "categories_list",
    "keywords",
    "sales_list",
    "variants",
    "sale_end_date",
    "year_created",
    "applied_discount_id",
    "raw_data",
    "status",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _opt_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


def _product_status(value: Any) -> ProductStatus:
    if isinstance(value, ProductStatus):
        return value
    try:
        return ProductStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidProductStatusError(value) from None


class SQLiteRepository:
    """Handles all interactions with the SQLite database."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._connections: List[aiosqlite.Connection] = []
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Creates the schema if needed and fills the connection pool."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await self._create_connection()
        try:
            await self._run_migrations(conn)
        except BaseException:
            await conn.close()
            raise
        self._connections.append(conn)
        await self._pool.put(conn)

        for _ in range(self.config.pool_size - 1):
            conn = await self._create_connection()
            self._connections.append(conn)
            await self._pool.put(conn)
        self._initialized = True
        logger.info("Repository initialized", db_path=str(self.db_path), pool_size=self.config.pool_size)

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and creates tables if necessary."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating database schema", current=current_version, target=CURRENT_SCHEMA_VERSION)
            engine = create_engine(f"sqlite:///{self.db_path}")
            try:
                await asyncio.to_thread(db_metadata.create_all, engine)
            finally:
                engine.dispose()
            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()
            logger.info("Database migration complete")

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        if not self._initialized:
            raise StorageError("repository is not initialized")
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def close(self) -> None:
        """Closes all connections in the pool."""
        if not self._initialized:
            return
        self._initialized = False
        while not self._pool.empty():
            self._pool.get_nowait()
        for conn in self._connections:
            await conn.close()
        self._connections.clear()
        logger.info("Repository closed")

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount

    async def _insert(self, sql: str, params: tuple) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return int(cursor.lastrowid)

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        return Task(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            type=TaskType(row["type"]),
            status=TaskStatus(row["status"]),
            config=row["config"] or "{}",
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    async def create_task(self, task: Task) -> Task:
        now = utcnow()
        task.id = await self._insert(
            "INSERT INTO tasks (name, url, type, status, config, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (task.name, task.url, task.type.value, task.status.value, task.config or "{}", _ts(now), _ts(now)),
        )
        task.created_at = task.updated_at = now
        return task

    async def get_task(self, task_id: int) -> Task:
        row = await self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise TaskNotFoundError(task_id)
        return self._row_to_task(row)

    async def list_tasks(self) -> List[Task]:
        rows = await self._fetchall("SELECT * FROM tasks ORDER BY id DESC")
        return [self._row_to_task(row) for row in rows]

    async def update_task(self, task: Task) -> None:
        if task.id is None:
            raise StorageError("cannot update a task without an id")
        task.updated_at = utcnow()
        updated = await self._execute(
            "UPDATE tasks SET name = ?, url = ?, type = ?, status = ?, config = ?, updated_at = ? WHERE id = ?",
            (task.name, task.url, task.type.value, task.status.value, task.config, _ts(task.updated_at), task.id),
        )
        if updated == 0:
            raise TaskNotFoundError(task.id)

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        updated = await self._execute(
            """
            UPDATE tasks
               SET status = ?,
                   updated_at = ?,
                   started_at = COALESCE(?, started_at),
                   completed_at = COALESCE(?, completed_at)
             WHERE id = ?
            """,
            (status.value, _ts(utcnow()), _ts(started_at), _ts(completed_at), task_id),
        )
        if updated == 0:
            raise TaskNotFoundError(task_id)

    async def update_task_config(self, task_id: int, config: str) -> None:
        json.loads(config)  # refuse to store a blob nobody can decode
        updated = await self._execute(
            "UPDATE tasks SET config = ?, updated_at = ? WHERE id = ?",
            (config, _ts(utcnow()), task_id),
        )
        if updated == 0:
            raise TaskNotFoundError(task_id)

    async def delete_task(self, task_id: int) -> None:
        deleted = await self._execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        if deleted == 0:
            raise TaskNotFoundError(task_id)

    # ------------------------------------------------------------------
    # Proxies
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_proxy(row: aiosqlite.Row) -> Proxy:
        return Proxy(
            id=row["id"],
            host=row["host"],
            port=row["port"],
            type=ProxyType(row["type"]),
            username=row["username"],
            password=row["password"],
            is_active=bool(row["is_active"]),
            failure_count=row["failure_count"],
            last_checked=_parse_ts(row["last_checked"]),
        )

    async def create_proxy(self, proxy: Proxy) -> Proxy:
        now = _ts(utcnow())
        proxy.id = await self._insert(
            """
            INSERT INTO proxies (host, port, type, username, password, is_active, failure_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                proxy.host,
                proxy.port,
                proxy.type.value,
                proxy.username,
                proxy.password,
                int(proxy.is_active),
                proxy.failure_count,
                now,
                now,
            ),
        )
        return proxy

    async def get_proxy(self, proxy_id: int) -> Optional[Proxy]:
        row = await self._fetchone("SELECT * FROM proxies WHERE id = ?", (proxy_id,))
        return self._row_to_proxy(row) if row is not None else None

    async def list_proxies(self) -> List[Proxy]:
        rows = await self._fetchall("SELECT * FROM proxies ORDER BY id")
        return [self._row_to_proxy(row) for row in rows]

    async def get_active_proxies(self) -> List[Proxy]:
        # Fewest failures first, then the proxy checked longest ago (never checked first)
        rows = await self._fetchall(
            """
            SELECT * FROM proxies
             WHERE is_active = 1
             ORDER BY failure_count ASC, last_checked IS NOT NULL, last_checked ASC, id ASC
            """
        )
        return [self._row_to_proxy(row) for row in rows]

    async def update_proxy_health(self, proxy_id: int, healthy: bool, max_failures: int) -> None:
        now = _ts(utcnow())
        if healthy:
            await self._execute(
                """
                UPDATE proxies
                   SET failure_count = 0, is_active = 1, last_checked = ?, updated_at = ?
                 WHERE id = ?
                """,
                (now, now, proxy_id),
            )
            return
        await self._execute(
            """
            UPDATE proxies
               SET failure_count = failure_count + 1,
                   is_active = CASE WHEN failure_count + 1 >= ? THEN 0 ELSE is_active END,
                   last_checked = ?,
                   updated_at = ?
             WHERE id = ?
            """,
            (max_failures, now, now, proxy_id),
        )

    async def delete_proxy(self, proxy_id: int) -> bool:
        return await self._execute("DELETE FROM proxies WHERE id = ?", (proxy_id,)) > 0

    # ------------------------------------------------------------------
    # Crawl results
    # ------------------------------------------------------------------

    async def create_crawl_result(self, result: CrawlResult) -> CrawlResult:
        result.created_at = utcnow()
        result.id = await self._insert(
            """
            INSERT INTO crawl_results
                (task_id, url, method, status_code, headers, body, response_time_ms, proxy_used, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.task_id,
                result.url,
                result.method,
                result.status_code,
                result.headers,
                result.body,
                result.response_time_ms,
                result.proxy_used,
                result.error,
                _ts(result.created_at),
            ),
        )
        return result

    async def list_crawl_results(self, task_id: int, limit: int = 100) -> List[CrawlResult]:
        rows = await self._fetchall(
            "SELECT * FROM crawl_results WHERE task_id = ? ORDER BY id DESC LIMIT ?", (task_id, limit)
        )
        return [
            CrawlResult(
                id=row["id"],
                task_id=row["task_id"],
                url=row["url"],
                method=row["method"],
                status_code=row["status_code"],
                headers=row["headers"] or "{}",
                body=row["body"],
                response_time_ms=row["response_time_ms"] or 0,
                proxy_used=row["proxy_used"],
                error=row["error"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    async def delete_crawl_results(self, task_id: int) -> int:
        """Drop every stored result of one task. Returns how many were removed."""
        return await self._execute("DELETE FROM crawl_results WHERE task_id = ?", (task_id,))

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def upsert_product(self, product: Product) -> None:
        values = []
        for column in _PRODUCT_COLUMNS:
            value = getattr(product, column)
            if isinstance(value, bool):
                value = int(value)
            elif column == "status":
                try:
                    value = _product_status(value).value
                except InvalidProductStatusError:
                    value = ProductStatus.PENDING.value
            elif isinstance(value, datetime):
                value = _ts(value)
            values.append(value)
        now = _ts(utcnow())
        columns = ", ".join(_PRODUCT_COLUMNS)
        placeholders = ", ".join("?" for _ in _PRODUCT_COLUMNS)
        # status and created_at belong to downstream processing, keep them on update
        updates = ", ".join(f"{c} = excluded.{c}" for c in _PRODUCT_COLUMNS if c not in ("elastic_id", "status"))
        sql = (
            f"INSERT INTO products ({columns}, created_at, updated_at) VALUES ({placeholders}, ?, ?) "
            f"ON CONFLICT(elastic_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at"
        )
        await self._execute(sql, (*values, now, now))

    @staticmethod
    def _row_to_product(row: aiosqlite.Row) -> Product:
        data = {column: row[column] for column in _PRODUCT_COLUMNS}
        for column in ("in_stock", "is_active", "is_buyable", "is_licensed"):
            data[column] = _opt_bool(data[column])
        for column in ("sale_end_date", "year_created"):
            data[column] = _parse_ts(data[column])
        return Product(id=row["id"], **data)

    async def get_product(self, elastic_id: str) -> Optional[Product]:
        row = await self._fetchone("SELECT * FROM products WHERE elastic_id = ?", (elastic_id,))
        return self._row_to_product(row) if row is not None else None

    async def get_product_by_id(self, product_id: int) -> Optional[Product]:
        row = await self._fetchone("SELECT * FROM products WHERE id = ?", (product_id,))
        return self._row_to_product(row) if row is not None else None

    async def list_products(
        self,
        limit: int = 20,
        offset: int = 0,
        brand: Optional[str] = None,
        catalog: Optional[str] = None,
        in_stock: Optional[bool] = None,
        search: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> Tuple[List[Product], int]:
        """
        One page of products, best sellers first, and the number of matches.

        ``search`` matches the name or the design keywords, case-insensitively.
        ``limit`` is capped at ``MAX_PRODUCT_PAGE``.

        Raises:
            InvalidProductStatusError: a status filter is not a known status
        """
        clauses: List[str] = []
        params: List[Any] = []
        if brand is not None:
            clauses.append("brand = ?")
            params.append(brand)
        if catalog is not None:
            clauses.append("catalog = ?")
            params.append(catalog)
        if in_stock is not None:
            clauses.append("in_stock = ?")
            params.append(int(in_stock))
        if search:
            clauses.append("(name LIKE ? OR design_keywords LIKE ?)")
            params.extend([f"%{search}%"] * 2)
        if statuses:
            wanted = [_product_status(status).value for status in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        where = " AND ".join(clauses) or "1 = 1"

        row = await self._fetchone(f"SELECT COUNT(*) FROM products WHERE {where}", tuple(params))
        total = int(row[0]) if row is not None else 0

        limit = max(0, min(limit, MAX_PRODUCT_PAGE))
        rows = await self._fetchall(
            f"""
            SELECT * FROM products WHERE {where}
             ORDER BY sale_rank IS NULL, sale_rank DESC, rating IS NULL, rating DESC, created_at DESC, id DESC
             LIMIT ? OFFSET ?
            """,
            (*params, limit, max(0, offset)),
        )
        return [self._row_to_product(r) for r in rows], total

    async def get_product_stats(self) -> Dict[str, Any]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(CASE WHEN in_stock = 1 THEN 1 ELSE 0 END), 0),
                       COUNT(DISTINCT brand)
                  FROM products
                """
            )
            total, in_stock, brands = await cursor.fetchone()
            cursor = await conn.execute("SELECT status, COUNT(*) FROM products GROUP BY status ORDER BY status")
            breakdown = {status: count for status, count in await cursor.fetchall()}
        return {
            "total": total,
            "in_stock": in_stock,
            "brands_count": brands,
            "status_breakdown": breakdown,
        }

    async def update_product_status(self, product_id: int, status: str) -> Product:
        """
        Set the review status of one product and return the updated record.

        Raises:
            InvalidProductStatusError: ``status`` is not a known status
            ProductNotFoundError: no product has that id
        """
        value = _product_status(status)
        updated = await self._execute(
            "UPDATE products SET status = ?, updated_at = ? WHERE id = ?",
            (value.value, _ts(utcnow()), product_id),
        )
        product = await self.get_product_by_id(product_id) if updated else None
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def delete_product(self, product_id: int) -> bool:
        return await self._execute("DELETE FROM products WHERE id = ?", (product_id,)) > 0

    async def count_products(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) FROM products")
        return int(row[0]) if row is not None else 0

    async def list_product_ids(self) -> List[str]:
        rows = await self._fetchall("SELECT elastic_id FROM products ORDER BY id")
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Crawler settings
    # ------------------------------------------------------------------

    async def get_payload_overrides(self) -> Dict[str, Any]:
        row = await self._fetchone("SELECT value FROM crawler_settings WHERE key = ?", (PAYLOAD_OVERRIDES_KEY,))
        if row is None:
            return {}
        overrides = json.loads(row[0])
        if not isinstance(overrides, dict):
            raise StorageError("stored payload overrides are not a JSON object")
        return overrides

    async def update_payload_overrides(self, overrides: Dict[str, Any]) -> None:
        if not isinstance(overrides, dict):
            raise StorageError("payload overrides must be a JSON object")
        await self._execute(
            """
            INSERT INTO crawler_settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (PAYLOAD_OVERRIDES_KEY, json.dumps(overrides), _ts(utcnow())),
        )
