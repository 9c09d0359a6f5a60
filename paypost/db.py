# paypost/db.py
import logging
from contextlib import asynccontextmanager

from psycopg_pool import AsyncConnectionPool
from psycopg.rows import dict_row

log = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                TEXT PRIMARY KEY,
        text              TEXT NOT NULL,
        group_id          BIGINT NOT NULL,
        user_id           BIGINT,
        price             NUMERIC(12, 2) NOT NULL CHECK (price > 0),
        custom_erid       TEXT,
        erid              TEXT,
        status            TEXT NOT NULL DEFAULT 'pending',
        payment_id        TEXT,
        post_id           BIGINT,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        paid_at           TIMESTAMPTZ,
        published_at      TIMESTAMPTZ,
        publishing_at     TIMESTAMPTZ,
        last_error        TEXT,
        publish_failed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_photos (
        id              BIGSERIAL PRIMARY KEY,
        order_id        TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        filename        TEXT NOT NULL,
        mimetype        TEXT NOT NULL,
        storage_locator TEXT NOT NULL
    )
    """,
    "ALTER TABLE orders ADD COLUMN IF NOT EXISTS publishing_at TIMESTAMPTZ",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_group_id ON orders(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_order_photos_order_id ON order_photos(order_id)",
]


async def open_pool(conninfo, min_size=1, max_size=10) -> AsyncConnectionPool:
    pool = AsyncConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        kwargs={"autocommit": False},  # we manage transactions
        open=False,
    )
    await pool.open()
    log.info("database pool opened (min=%s, max=%s)", min_size, max_size)
    return pool


async def init_schema(pool):
    async with get_conn(pool) as conn:
        for stmt in SCHEMA:
            await execute(conn, stmt)
        await conn.commit()
    log.info("database schema ready: orders, order_photos")


@asynccontextmanager
async def get_conn(pool):
    async with pool.connection() as conn:
        yield conn


async def fetch_all(conn, sql, params=None):
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(sql, params or ())
        return await cur.fetchall()


async def fetch_one(conn, sql, params=None):
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(sql, params or ())
        return await cur.fetchone()


async def execute(conn, sql, params=None):
    async with conn.cursor() as cur:
        await cur.execute(sql, params or ())
        return cur.rowcount
