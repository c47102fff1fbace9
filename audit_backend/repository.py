"""
Record storage with authorship stamping.

RecordStore is the storage capability (one table); AuditedRepository
wraps any RecordStore and stamps created_by / updated_by from the
caller's RequestContext on every write.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from audit_backend.database import Database
from audit_backend.models import RequestContext

logger = logging.getLogger(__name__)

# (column, operator, value)
Condition = Tuple[str, str, Any]

OPERATORS = ("=", ">=", "<=")


class RecordNotFound(LookupError):
    """Raised when a record required to exist does not."""
    pass


class RecordStore(Protocol):
    """Storage operations for a single table."""

    async def insert(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        ...

    async def find(
        self,
        conditions: Sequence[Condition] = (),
        order_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def count(self, conditions: Sequence[Condition] = ()) -> int:
        ...

    async def update(self, record_id: Any, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    async def upsert(
        self,
        values: Mapping[str, Any],
        conflict_columns: Sequence[str]
    ) -> Dict[str, Any]:
        ...

    async def delete(self, record_id: Any) -> bool:
        ...

    async def soft_delete(self, record_id: Any) -> bool:
        ...


class PostgresRecordStore:
    """
    RecordStore over one PostgreSQL table.

    Column names are checked against the declared columns before they
    reach SQL; values always travel as bind parameters. Soft-deleted
    rows are invisible to find/count/update.
    """

    def __init__(self, db: Database, table: str, columns: Sequence[str]):
        self.db = db
        self.table = table
        self.columns = frozenset(columns) | {"id", "created_at", "updated_at", "deleted_at"}

    def _check(self, columns: Sequence[str]) -> None:
        unknown = [c for c in columns if c not in self.columns]
        if unknown:
            raise ValueError(f"Unknown columns for {self.table}: {', '.join(unknown)}")

    def _where(self, conditions: Sequence[Condition], start: int = 1) -> Tuple[str, list]:
        clauses = ["deleted_at IS NULL"]
        params: list = []
        for column, operator, value in conditions:
            self._check([column])
            if operator not in OPERATORS:
                raise ValueError(f"Unsupported operator: {operator}")
            params.append(value)
            clauses.append(f"{column} {operator} ${start + len(params) - 1}")
        return " AND ".join(clauses), params

    async def insert(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        columns = list(values)
        self._check(columns)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        row = await self.db.fetchrow(
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *",
            *values.values()
        )
        return dict(row)

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        inserted = []
        async with self.db.transaction() as conn:
            for values in rows:
                columns = list(values)
                self._check(columns)
                placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
                row = await conn.fetchrow(
                    f"INSERT INTO {self.table} ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *values.values()
                )
                inserted.append(dict(row))
        return inserted

    async def find(
        self,
        conditions: Sequence[Condition] = (),
        order_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._check([order_by])
        where, params = self._where(conditions)
        query = (
            f"SELECT * FROM {self.table} WHERE {where} "
            f"ORDER BY {order_by} {'DESC' if descending else 'ASC'} "
            f"OFFSET ${len(params) + 1}"
        )
        params.append(offset)
        if limit is not None:
            query += f" LIMIT ${len(params) + 1}"
            params.append(limit)
        return [dict(row) for row in await self.db.fetch(query, *params)]

    async def count(self, conditions: Sequence[Condition] = ()) -> int:
        where, params = self._where(conditions)
        return await self.db.fetchval(f"SELECT COUNT(*) FROM {self.table} WHERE {where}", *params)

    async def update(self, record_id: Any, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        columns = list(values)
        self._check(columns)
        assignments = [f"{column} = ${i}" for i, column in enumerate(columns, start=1)]
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        row = await self.db.fetchrow(
            f"UPDATE {self.table} SET {', '.join(assignments)} "
            f"WHERE id = ${len(columns) + 1} AND deleted_at IS NULL RETURNING *",
            *values.values(), record_id
        )
        return dict(row) if row else None

    async def upsert(
        self,
        values: Mapping[str, Any],
        conflict_columns: Sequence[str]
    ) -> Dict[str, Any]:
        columns = list(values)
        self._check(columns)
        self._check(conflict_columns)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = [f"{c} = EXCLUDED.{c}" for c in columns if c not in conflict_columns and c != "created_by"]
        updates.append("updated_at = CURRENT_TIMESTAMP")
        row = await self.db.fetchrow(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {', '.join(updates)} "
            f"RETURNING *",
            *values.values()
        )
        return dict(row)

    async def delete(self, record_id: Any) -> bool:
        status = await self.db.execute(f"DELETE FROM {self.table} WHERE id = $1", record_id)
        return status != "DELETE 0"

    async def soft_delete(self, record_id: Any) -> bool:
        status = await self.db.execute(
            f"UPDATE {self.table} SET deleted_at = CURRENT_TIMESTAMP "
            f"WHERE id = $1 AND deleted_at IS NULL",
            record_id
        )
        return status != "UPDATE 0"


class AuditedRepository:
    """
    Repository that records who created and last updated each row.

    create/create_many set created_by, update_by_id sets updated_by and
    upsert sets both, all from the caller's actor id. Reads and deletes
    pass straight through to the store.
    """

    def __init__(self, store: RecordStore, context: RequestContext):
        self.store = store
        self.context = context

    async def create(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.store.insert({**data, "created_by": self.context.actor_id})

    async def create_many(self, items: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return await self.store.insert_many(
            [{**item, "created_by": self.context.actor_id} for item in items]
        )

    async def find_all(
        self,
        conditions: Sequence[Condition] = (),
        order_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Page of records plus the total count matching the conditions."""
        items = await self.store.find(conditions, order_by, descending, offset, limit)
        total = await self.store.count(conditions)
        return items, total

    async def find_one(self, conditions: Sequence[Condition]) -> Optional[Dict[str, Any]]:
        rows = await self.store.find(conditions, limit=1)
        return rows[0] if rows else None

    async def find_by_id(self, record_id: Any) -> Optional[Dict[str, Any]]:
        return await self.find_one([("id", "=", record_id)])

    async def find_by_id_or_fail(self, record_id: Any) -> Dict[str, Any]:
        record = await self.find_by_id(record_id)
        if record is None:
            raise RecordNotFound(f"Record {record_id} not found")
        return record

    async def update_by_id(self, record_id: Any, data: Mapping[str, Any]) -> Dict[str, Any]:
        record = await self.store.update(
            record_id, {**data, "updated_by": self.context.actor_id}
        )
        if record is None:
            raise RecordNotFound(f"Record {record_id} not found")
        return record

    async def upsert(
        self,
        data: Mapping[str, Any],
        conflict_columns: Sequence[str]
    ) -> Dict[str, Any]:
        return await self.store.upsert(
            {
                **data,
                "created_by": self.context.actor_id,
                "updated_by": self.context.actor_id,
            },
            conflict_columns,
        )

    async def delete(self, record_id: Any) -> bool:
        return await self.store.delete(record_id)

    async def soft_delete(self, record_id: Any) -> bool:
        deleted = await self.store.soft_delete(record_id)
        if deleted:
            logger.info(f"Record {record_id} soft-deleted by {self.context.actor_id}")
        return deleted
