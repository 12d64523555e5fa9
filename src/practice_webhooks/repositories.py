"""Data access for the business records that webhook handlers keep in sync.

Every table is keyed by the Stripe object id, so handlers can look a record
up or upsert it without ever inserting a second copy. None of these methods
commit: the dispatcher owns the transaction.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Any

import aiosqlite


def _now() -> str:
    return datetime.now(UTC).isoformat()


def from_timestamp(value: int | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).isoformat()


def _decode(row: aiosqlite.Row | None, json_columns: tuple[str, ...]) -> dict[str, Any] | None:
    if row is None:
        return None
    data = dict(row)
    for column in json_columns:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    return data


def _encode(fields: dict[str, Any], json_columns: tuple[str, ...]) -> dict[str, Any]:
    return {
        key: json.dumps(value) if key in json_columns and value is not None else value
        for key, value in fields.items()
    }


class _Repository:
    table: str
    key_column: str
    json_columns: tuple[str, ...] = ()

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._conn.execute(
            f"SELECT * FROM {self.table} WHERE {self.key_column}=?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return _decode(row, self.json_columns)

    async def update(self, key: str, **fields: Any) -> bool:
        fields = _encode({**fields, "updated_at": _now()}, self.json_columns)
        assignments = ", ".join(f"{column}=?" for column in fields)
        cursor = await self._conn.execute(
            f"UPDATE {self.table} SET {assignments} WHERE {self.key_column}=?",
            (*fields.values(), key),
        )
        return cursor.rowcount > 0

    async def _insert(self, **fields: Any) -> str:
        row_id = str(uuid.uuid4())
        now = _now()
        fields = _encode({"id": row_id, **fields, "created_at": now, "updated_at": now}, self.json_columns)
        columns = ",".join(fields)
        placeholders = ",".join("?" for _ in fields)
        await self._conn.execute(
            f"INSERT INTO {self.table}({columns}) VALUES({placeholders})",
            tuple(fields.values()),
        )
        return row_id


class ConnectedAccountRepository(_Repository):
    table = "connected_accounts"
    key_column = "stripe_account_id"
    json_columns = ("requirements", "capabilities", "external_accounts", "metadata")

    async def create(self, organization_id: str, stripe_account_id: str, email: str | None = None) -> str:
        return await self._insert(
            organization_id=organization_id,
            stripe_account_id=stripe_account_id,
            email=email,
            capabilities={},
            external_accounts={},
        )


class PaymentIntentRepository(_Repository):
    table = "payment_intents"
    key_column = "stripe_payment_intent_id"

    async def create(
        self,
        organization_id: str,
        stripe_payment_intent_id: str,
        amount: int,
        currency: str,
        connected_account_id: str | None = None,
        customer_id: str | None = None,
        status: str = "requires_payment_method",
    ) -> str:
        return await self._insert(
            organization_id=organization_id,
            connected_account_id=connected_account_id,
            stripe_payment_intent_id=stripe_payment_intent_id,
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            status=status,
        )


class SubscriptionRepository(_Repository):
    table = "subscriptions"
    key_column = "stripe_subscription_id"

    async def create_if_absent(
        self,
        organization_id: str,
        stripe_subscription_id: str,
        stripe_customer_id: str,
        status: str,
        **fields: Any,
    ) -> bool:
        now = _now()
        columns = {
            "id": str(uuid.uuid4()),
            "organization_id": organization_id,
            "stripe_subscription_id": stripe_subscription_id,
            "stripe_customer_id": stripe_customer_id,
            "status": status,
            **fields,
            "created_at": now,
            "updated_at": now,
        }
        cursor = await self._conn.execute(
            f"INSERT INTO subscriptions({','.join(columns)}) VALUES({','.join('?' for _ in columns)})"
            " ON CONFLICT(stripe_subscription_id) DO NOTHING",
            tuple(columns.values()),
        )
        return cursor.rowcount > 0

    async def add_event(
        self,
        subscription_id: str,
        stripe_event_id: str,
        event_type: str,
        to_status: str | None,
        from_status: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._conn.execute(
            "INSERT INTO subscription_events(id,subscription_id,stripe_event_id,event_type,from_status,"
            "to_status,error_message,metadata,created_at) VALUES(?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(stripe_event_id, event_type) DO NOTHING",
            (
                str(uuid.uuid4()),
                subscription_id,
                stripe_event_id,
                event_type,
                from_status,
                to_status,
                error_message,
                json.dumps(metadata or {}, default=str),
                _now(),
            ),
        )

    async def events(self, subscription_id: str) -> list[dict[str, Any]]:
        async with self._conn.execute(
            "SELECT * FROM subscription_events WHERE subscription_id=? ORDER BY created_at",
            (subscription_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_decode(row, ("metadata",)) for row in rows]


class PlanRepository(_Repository):
    table = "subscription_plans"
    key_column = "stripe_product_id"
    json_columns = ("metered_items",)

    async def upsert_product(self, stripe_product_id: str, name: str, description: str | None, active: bool) -> None:
        now = _now()
        await self._conn.execute(
            "INSERT INTO subscription_plans(id,stripe_product_id,name,description,is_active,created_at,updated_at)"
            " VALUES(?,?,?,?,?,?,?)"
            " ON CONFLICT(stripe_product_id) DO UPDATE SET"
            " name=excluded.name, description=excluded.description,"
            " is_active=excluded.is_active, updated_at=excluded.updated_at",
            (str(uuid.uuid4()), stripe_product_id, name, description, int(active), now, now),
        )

    async def deactivate(self, stripe_product_id: str) -> bool:
        return await self.update(stripe_product_id, is_active=0)
