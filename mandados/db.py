"""
Async Postgres order store. accept/advance/cancel/rate all go through a single
UPDATE ... WHERE <expected> RETURNING * statement, so the row-level check and the
write happen atomically inside Postgres.
"""
import json
from typing import Any, Mapping

import asyncpg

from mandados.config import settings
from mandados.models import Order
from mandados.store import OrderFilter, OrderStore

_pool: asyncpg.Pool | None = None

JSON_COLUMNS = {"pickup", "delivery", "requester_rating", "courier_rating"}

ORDER_COLUMNS = [
    "order_id",
    "requester",
    "description",
    "category",
    "offered_price",
    "notes",
    "pickup",
    "delivery",
    "deadline",
    "state",
    "courier",
    "previous_courier",
    "accepted_at",
    "en_route_at",
    "in_progress_at",
    "completed_at",
    "cancelled_at",
    "requester_rating",
    "courier_rating",
    "created_at",
    "updated_at",
]


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                requester VARCHAR(255) NOT NULL,
                description TEXT NOT NULL,
                category VARCHAR(20) NOT NULL,
                offered_price BIGINT NOT NULL,
                notes TEXT,
                pickup JSONB NOT NULL,
                delivery JSONB NOT NULL,
                deadline TIMESTAMPTZ NOT NULL,
                state VARCHAR(20) NOT NULL DEFAULT 'pending',
                courier VARCHAR(255),
                previous_courier VARCHAR(255),
                accepted_at TIMESTAMPTZ,
                en_route_at TIMESTAMPTZ,
                in_progress_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                requester_rating JSONB,
                courier_rating JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_state_deadline
            ON orders(state, deadline);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_courier_state
            ON orders(courier, state);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_requester
            ON orders(requester);
        """)


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in JSON_COLUMNS:
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return json.dumps(value)
    if hasattr(value, "value"):  # str enums
        return value.value
    return value


def _placeholder(column: str, idx: int) -> str:
    return f"${idx}::jsonb" if column in JSON_COLUMNS else f"${idx}"


def _row_to_order(row: asyncpg.Record) -> Order:
    data = dict(row)
    for column in JSON_COLUMNS:
        if isinstance(data.get(column), str):
            data[column] = json.loads(data[column])
    return Order.model_validate(data)


def _check_columns(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(ORDER_COLUMNS)
    if unknown:
        raise KeyError(f"unknown order columns: {sorted(unknown)}")


class PostgresOrderStore(OrderStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def insert(self, order: Order) -> Order:
        placeholders = ", ".join(_placeholder(c, i) for i, c in enumerate(ORDER_COLUMNS, start=1))
        values = [_encode(c, getattr(order, c)) for c in ORDER_COLUMNS]
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO orders ({', '.join(ORDER_COLUMNS)}) VALUES ({placeholders});",
                *values,
            )
        return order

    async def find_by_id(self, order_id: str) -> Order | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1;", order_id)
        return _row_to_order(row) if row else None

    async def conditional_update(
        self,
        order_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> Order | None:
        _check_columns(expected)
        _check_columns(new_fields)
        values: list[Any] = [order_id]
        assignments = []
        for column, value in new_fields.items():
            values.append(_encode(column, value))
            assignments.append(f"{column} = {_placeholder(column, len(values))}")
        conditions = ["order_id = $1"]
        for column, value in expected.items():
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                values.append(_encode(column, value))
                conditions.append(f"{column} = {_placeholder(column, len(values))}")
        sql = (
            f"UPDATE orders SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(conditions)} RETURNING *;"
        )
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(sql, *values)
        return _row_to_order(row) if row else None

    async def find(self, flt: OrderFilter) -> list[Order]:
        values: list[Any] = []
        conditions = []

        def add(clause: str, value: Any) -> None:
            values.append(value)
            conditions.append(clause.format(f"${len(values)}"))

        if flt.state is not None:
            add("state = {}", flt.state.value)
        if flt.state_in is not None:
            add("state = ANY({}::text[])", [s.value for s in flt.state_in])
        if flt.requester is not None:
            add("requester = {}", flt.requester)
        if flt.courier is not None:
            add("courier = {}", flt.courier)
        if flt.courier_or_previous is not None:
            values.append(flt.courier_or_previous)
            p = f"${len(values)}"
            conditions.append(f"(courier = {p} OR previous_courier = {p})")
        if flt.deadline_after is not None:
            add("deadline > {}", flt.deadline_after)

        sql = "SELECT * FROM orders"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        _check_columns({flt.order_by: None})
        sql += f" ORDER BY {flt.order_by} DESC"
        if flt.limit is not None:
            values.append(flt.limit)
            sql += f" LIMIT ${len(values)}"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql + ";", *values)
        return [_row_to_order(r) for r in rows]

