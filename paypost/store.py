# paypost/store.py
"""Order persistence.

`OrderStore` is the contract the order controller depends on;
`PostgresOrderStore` implements it on top of the connection pool in `db`.
"""
import logging
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from psycopg import errors as pg_errors
from psycopg import sql

from .db import get_conn, fetch_all, fetch_one, execute
from .errors import NotFound
from .models import Order, OrderFilters, OrderPhoto, OrderStatus, check_transition

log = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "erid", "status", "payment_id", "post_id",
    "paid_at", "published_at", "last_error", "publish_failed_at",
}


class OrderStore(Protocol):
    async def insert_order(self, order: Order) -> None: ...

    async def insert_photo(self, order_id: str, photo: OrderPhoto) -> None: ...

    async def get_order_with_photos(self, order_id: str) -> Optional[Order]: ...

    async def update_order_fields(self, order_id: str, fields: dict) -> None: ...

    async def transition(self, order_id: str, expected: OrderStatus, new: OrderStatus,
                         fields: Optional[dict] = None) -> Optional[Order]: ...

    async def set_erid_once(self, order_id: str, erid: str) -> bool: ...

    async def claim_publication(self, order_id: str, stale_before: datetime) -> bool: ...

    async def release_publication(self, order_id: str) -> None: ...

    async def list_orders(self, filters: OrderFilters) -> List[Order]: ...

    async def delete_older_than(self, cutoff: datetime) -> Tuple[int, List[str]]: ...


def _assignments(fields):
    """SET clause pieces for the non-None fields, skipping unknown columns."""
    parts, params = [], []
    for key, value in fields.items():
        if value is None:
            continue
        if key not in UPDATABLE_FIELDS:
            raise ValueError(f"field {key!r} is not updatable")
        if isinstance(value, OrderStatus):
            value = value.value
        parts.append(sql.SQL("{} = %s").format(sql.Identifier(key)))
        params.append(value)
    return parts, params


class PostgresOrderStore:
    def __init__(self, pool):
        self.pool = pool

    async def insert_order(self, order: Order) -> None:
        async with get_conn(self.pool) as conn:
            try:
                await execute(conn, """
                    INSERT INTO orders(id, text, group_id, user_id, price, custom_erid, status, created_at)
                    VALUES (%s,%s,%s,%s,%s,%s,%s,%s)
                """, (order.id, order.text, order.group_id, order.user_id, order.price,
                      order.custom_erid, order.status.value, order.created_at))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def insert_photo(self, order_id: str, photo: OrderPhoto) -> None:
        async with get_conn(self.pool) as conn:
            try:
                await execute(conn, """
                    INSERT INTO order_photos(order_id, filename, mimetype, storage_locator)
                    VALUES (%s,%s,%s,%s)
                """, (order_id, photo.filename, photo.mimetype, photo.storage_locator))
                await conn.commit()
            except pg_errors.ForeignKeyViolation:
                await conn.rollback()
                raise NotFound(f"order {order_id} not found")
            except Exception:
                await conn.rollback()
                raise

    async def get_order_with_photos(self, order_id: str) -> Optional[Order]:
        async with get_conn(self.pool) as conn:
            return await self._load(conn, order_id)

    async def _load(self, conn, order_id):
        row = await fetch_one(conn, "SELECT * FROM orders WHERE id=%s", (order_id,))
        if not row:
            return None
        photos = await fetch_all(conn,
            "SELECT filename, mimetype, storage_locator FROM order_photos WHERE order_id=%s ORDER BY id",
            (order_id,)
        )
        return Order(**row, photos=[OrderPhoto(**p) for p in photos])

    async def update_order_fields(self, order_id: str, fields: dict) -> None:
        parts, params = _assignments(fields)
        if not parts:
            return
        query = sql.SQL("UPDATE orders SET {} WHERE id = %s").format(sql.SQL(", ").join(parts))
        async with get_conn(self.pool) as conn:
            try:
                await execute(conn, query, (*params, order_id))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def transition(self, order_id: str, expected: OrderStatus, new: OrderStatus,
                         fields: Optional[dict] = None) -> Optional[Order]:
        check_transition(expected, new)
        parts, params = _assignments({**(fields or {}), "status": new})
        query = sql.SQL("UPDATE orders SET {} WHERE id = %s AND status = %s RETURNING id").format(
            sql.SQL(", ").join(parts)
        )
        async with get_conn(self.pool) as conn:
            try:
                row = await fetch_one(conn, query, (*params, order_id, expected.value))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
            if not row:
                return None
            return await self._load(conn, order_id)

    async def set_erid_once(self, order_id: str, erid: str) -> bool:
        async with get_conn(self.pool) as conn:
            try:
                changed = await execute(conn,
                    "UPDATE orders SET erid = %s WHERE id = %s AND erid IS NULL",
                    (erid, order_id)
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return changed == 1

    async def claim_publication(self, order_id: str, stale_before: datetime) -> bool:
        """Mark a paid order as being published.

        Fails while another publisher holds a claim newer than `stale_before`.
        """
        async with get_conn(self.pool) as conn:
            try:
                changed = await execute(conn, """
                    UPDATE orders SET publishing_at = NOW()
                    WHERE id = %s AND status = %s
                      AND (publishing_at IS NULL OR publishing_at < %s)
                """, (order_id, OrderStatus.PAID.value, stale_before))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return changed == 1

    async def release_publication(self, order_id: str) -> None:
        async with get_conn(self.pool) as conn:
            try:
                await execute(conn,
                    "UPDATE orders SET publishing_at = NULL WHERE id = %s AND status = %s",
                    (order_id, OrderStatus.PAID.value)
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def list_orders(self, filters: OrderFilters) -> List[Order]:
        clauses, params = [sql.SQL("TRUE")], []
        if filters.status is not None:
            clauses.append(sql.SQL("status = %s"))
            params.append(filters.status.value)
        if filters.group_id is not None:
            clauses.append(sql.SQL("group_id = %s"))
            params.append(filters.group_id)
        if filters.user_id is not None:
            clauses.append(sql.SQL("user_id = %s"))
            params.append(filters.user_id)
        query = sql.SQL("SELECT * FROM orders WHERE {} ORDER BY created_at DESC").format(
            sql.SQL(" AND ").join(clauses)
        )
        if filters.limit:
            query = query + sql.SQL(" LIMIT %s")
            params.append(filters.limit)
        async with get_conn(self.pool) as conn:
            rows = await fetch_all(conn, query, params)
        return [Order(**r) for r in rows]

    async def delete_older_than(self, cutoff: datetime) -> Tuple[int, List[str]]:
        """Delete orders created before `cutoff`; photos go with them.

        Returns the number of orders removed and the storage locators of
        their photos so the caller can release the stored bytes.
        """
        async with get_conn(self.pool) as conn:
            try:
                rows = await fetch_all(conn, """
                    SELECT p.storage_locator FROM order_photos p
                    JOIN orders o ON o.id = p.order_id
                    WHERE o.created_at < %s
                """, (cutoff,))
                deleted = await execute(conn, "DELETE FROM orders WHERE created_at < %s", (cutoff,))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        log.info("deleted %s orders created before %s", deleted, cutoff.isoformat())
        return deleted, [r["storage_locator"] for r in rows]
