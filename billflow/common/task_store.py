"""Reusable helpers for the per-type task tables.

These utilities are model-agnostic: every task table shares the bookkeeping
columns `retry_count`, `execution_time_ms` and `created_time_ms`, and is keyed
by its primary key columns. A row's existence is the signal that work is
pending.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, delete, func, insert, select, update

TASK_BOOKKEEPING_COLUMNS = ("retry_count", "execution_time_ms", "created_time_ms")

INSERT = "insert"
REPLACE = "replace"
IF_ABSENT = "if_absent"


@dataclass(frozen=True)
class NewTask:
    """A task row to create, usually as a follow-on of a state transition.

    `mode` decides what happens when a row with the same key exists:
    `insert` fails, `replace` deletes it first, `if_absent` keeps the old one.
    """

    model: Any
    values: dict = field(default_factory=dict)
    execution_time_ms: int = 0
    mode: str = INSERT


def key_columns(model) -> list:
    return list(model.__table__.primary_key.columns)


def task_key(model, values: dict) -> dict:
    """Extract the primary key of `model` from a payload or row dict."""

    key = {}
    for column in key_columns(model):
        if values.get(column.name) is None:
            raise ValueError(f"missing task key column {column.name} for {model.__tablename__}")
        key[column.name] = values[column.name]
    return key


def _key_clause(table, key: dict):
    return and_(*[table.c[name] == value for name, value in key.items()])


def task_payload(model, row: dict) -> dict:
    """Strip bookkeeping columns, leaving the key plus any extra payload."""

    return {name: value for name, value in row.items() if name not in TASK_BOOKKEEPING_COLUMNS}


def get_task(db, model, key: dict) -> dict | None:
    table = model.__table__
    row = db.execute(select(table).where(_key_clause(table, key))).mappings().first()
    return dict(row) if row is not None else None


def list_pending_tasks(db, model, now_ms: int, limit: int = 100) -> list[dict]:
    """Rows whose eligible time has passed, oldest first."""

    table = model.__table__
    rows = db.execute(
        select(table)
        .where(table.c.execution_time_ms <= now_ms)
        .order_by(table.c.execution_time_ms)
        .limit(limit)
    ).mappings()
    return [dict(row) for row in rows]


def count_pending_tasks(db, model, now_ms: int) -> int:
    table = model.__table__
    return db.execute(
        select(func.count()).select_from(table).where(table.c.execution_time_ms <= now_ms)
    ).scalar_one()


def insert_task(db, model, values: dict, execution_time_ms: int, now_ms: int) -> None:
    db.execute(
        insert(model.__table__).values(
            **values,
            retry_count=0,
            execution_time_ms=execution_time_ms,
            created_time_ms=now_ms,
        )
    )


def put_task(db, task: NewTask, now_ms: int) -> bool:
    """Write one `NewTask` honoring its mode. Returns False when it was skipped."""

    key = task_key(task.model, task.values)
    if task.mode == REPLACE:
        delete_task(db, task.model, key)
    elif task.mode == IF_ABSENT and get_task(db, task.model, key) is not None:
        return False
    insert_task(db, task.model, task.values, task.execution_time_ms, now_ms)
    return True


def update_retry_and_eligibility(db, model, key: dict, retry_count: int, execution_time_ms: int) -> int:
    table = model.__table__
    result = db.execute(
        update(table)
        .where(_key_clause(table, key))
        .values(retry_count=retry_count, execution_time_ms=execution_time_ms)
    )
    return result.rowcount


def delete_task(db, model, key: dict) -> int:
    table = model.__table__
    return db.execute(delete(table).where(_key_clause(table, key))).rowcount


def delete_tasks_where(db, model, **filters) -> int:
    """Delete every row matching column equality filters, e.g. `statement_id=...`."""

    if not filters:
        raise ValueError("delete_tasks_where requires at least one filter")
    table = model.__table__
    return db.execute(delete(table).where(_key_clause(table, filters))).rowcount
