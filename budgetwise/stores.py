"""Record stores over SQLAlchemy Core tables.

Each store exposes the small document-style surface the engines rely on:
``find``, ``find_one``, ``insert``, ``update`` and ``aggregate_sum``. Filters
are plain dicts mapping a column name either to a value (equality, ``None``
meaning IS NULL) or to an operator dict such as ``{"$gte": start}``.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import Table, func, insert, select, update
from sqlalchemy.engine import Connection

from budgetwise import tables

Filter = Mapping[str, Any]


def _not_equal(column, value):
    if value is None:
        return column.is_not(None)
    return column != value


OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "$eq": lambda column, value: column.is_(None) if value is None else column == value,
    "$ne": _not_equal,
    "$gt": lambda column, value: column > value,
    "$gte": lambda column, value: column >= value,
    "$lt": lambda column, value: column < value,
    "$lte": lambda column, value: column <= value,
    "$in": lambda column, value: column.in_(list(value)),
}


class DocumentStore:
    def __init__(self, conn: Connection, table: Table) -> None:
        self.conn = conn
        self.table = table

    def find(
        self,
        filters: Filter | None = None,
        order_by: Iterable[str] = (),
        limit: int | None = None,
    ) -> list[dict]:
        stmt = select(self.table).where(*self._conditions(filters))
        for name in order_by:
            if name.startswith("-"):
                stmt = stmt.order_by(self._column(name[1:]).desc())
            else:
                stmt = stmt.order_by(self._column(name).asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [dict(row) for row in self.conn.execute(stmt).mappings().all()]

    def find_one(self, filters: Filter) -> dict | None:
        stmt = select(self.table).where(*self._conditions(filters)).limit(1)
        row = self.conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def insert(self, record: Mapping[str, Any]) -> dict:
        stmt = insert(self.table).values(**record).returning(*self.table.c)
        row = self.conn.execute(stmt).mappings().first()
        return dict(row)

    def update(self, record_id: int, patch: Mapping[str, Any]) -> dict | None:
        if not patch:
            return self.find_one({"id": record_id})
        stmt = (
            update(self.table)
            .where(self.table.c.id == record_id)
            .values(**patch)
            .returning(*self.table.c)
        )
        row = self.conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def delete(self, filters: Filter) -> int:
        stmt = self.table.delete().where(*self._conditions(filters))
        return self.conn.execute(stmt).rowcount

    def aggregate_sum(self, filters: Filter, field: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(self._column(field)), 0)).where(
            *self._conditions(filters)
        )
        total = self.conn.execute(stmt).scalar_one()
        if isinstance(total, Decimal):
            return total
        return Decimal(str(total))

    def _conditions(self, filters: Filter | None) -> list:
        conditions = []
        for name, expected in (filters or {}).items():
            column = self._column(name)
            if isinstance(expected, Mapping):
                for operator, value in expected.items():
                    if operator not in OPERATORS:
                        raise ValueError(f"Unsupported filter operator: {operator}")
                    conditions.append(OPERATORS[operator](column, value))
            elif expected is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == expected)
        return conditions

    def _column(self, name: str):
        if name not in self.table.c:
            raise ValueError(f"Unknown field {name!r} for {self.table.name}.")
        return self.table.c[name]


@dataclass(frozen=True)
class Stores:
    users: DocumentStore
    categories: DocumentStore
    transactions: DocumentStore
    recurring: DocumentStore
    budgets: DocumentStore
    goals: DocumentStore
    contributions: DocumentStore
    reminders: DocumentStore

    @classmethod
    def bind(cls, conn: Connection) -> "Stores":
        return cls(
            users=DocumentStore(conn, tables.users),
            categories=DocumentStore(conn, tables.categories),
            transactions=DocumentStore(conn, tables.transactions),
            recurring=DocumentStore(conn, tables.recurring_transactions),
            budgets=DocumentStore(conn, tables.budgets),
            goals=DocumentStore(conn, tables.goals),
            contributions=DocumentStore(conn, tables.goal_contributions),
            reminders=DocumentStore(conn, tables.goal_reminders),
        )
