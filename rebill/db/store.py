"""Storage seam between the recurrence projector and the ``expenses`` table.

The projector only ever talks to an ``ExpenseStore``. ``SQLiteExpenseStore``
is the production adapter; tests substitute scripted fakes.
"""

import asyncio
import logging
import sqlite3
from datetime import date
from typing import Protocol

import aiosqlite

from rebill.db.models import (
    ExpenseInstance,
    RecurringTemplate,
    instance_from_row,
    template_from_row,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Any failure talking to the expense store."""


class StoreUnavailableError(StoreError):
    """The store could not be reached at all."""


class TransientStoreError(StoreError):
    """A failure worth retrying (lock contention, busy database)."""


class DuplicateInstanceError(StoreError):
    """The store rejected an instance for a (template, month) pair that already has one."""


class ExpenseStore(Protocol):
    async def list_active_recurring_templates(self, reference_date: date) -> list[RecurringTemplate]: ...

    async def find_instance_for_template_in_month(
        self, template_id: int, month_start: date, month_end: date
    ) -> ExpenseInstance | None: ...

    async def insert_expense_instance(self, instance: ExpenseInstance) -> int: ...


def translate_error(exc: Exception) -> StoreError:
    msg = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE constraint failed" in msg:
            return DuplicateInstanceError(msg)
        return StoreError(msg)
    if isinstance(exc, sqlite3.OperationalError):
        lowered = msg.lower()
        if "locked" in lowered or "busy" in lowered:
            return TransientStoreError(msg)
        if "unable to open" in lowered:
            return StoreUnavailableError(msg)
        return StoreError(msg)
    if isinstance(exc, (sqlite3.ProgrammingError, ValueError)):
        # closed connection
        return StoreUnavailableError(msg)
    return StoreError(msg)


class SQLiteExpenseStore:
    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._write_lock = asyncio.Lock()

    async def list_active_recurring_templates(self, reference_date: date) -> list[RecurringTemplate]:
        try:
            cursor = await self._db.execute(
                """SELECT * FROM expenses
                WHERE is_recurring = 1
                AND (recurring_end_date IS NULL OR recurring_end_date >= ?)
                ORDER BY id""",
                (reference_date.isoformat(),),
            )
            rows = await cursor.fetchall()
        except (sqlite3.Error, ValueError) as e:
            raise translate_error(e) from e
        return [template_from_row(row) for row in rows]

    async def find_instance_for_template_in_month(
        self, template_id: int, month_start: date, month_end: date
    ) -> ExpenseInstance | None:
        try:
            cursor = await self._db.execute(
                """SELECT * FROM expenses
                WHERE parent_template_id = ? AND due_date >= ? AND due_date <= ?
                ORDER BY due_date LIMIT 1""",
                (template_id, month_start.isoformat(), month_end.isoformat()),
            )
            row = await cursor.fetchone()
        except (sqlite3.Error, ValueError) as e:
            raise translate_error(e) from e
        return instance_from_row(row) if row else None

    async def _rollback(self) -> None:
        try:
            await self._db.rollback()
        except (sqlite3.Error, ValueError):
            logger.warning("Rollback failed", exc_info=True)

    async def insert_expense_instance(self, instance: ExpenseInstance) -> int:
        # insert and commit as one unit; a failed or cancelled attempt leaves no pending row behind
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    """INSERT INTO expenses
                    (owner_id, description, category, amount, expense_type,
                     due_date, status, is_recurring, parent_template_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)""",
                    (
                        instance.owner_id,
                        instance.description,
                        instance.category,
                        str(instance.amount),
                        instance.expense_type,
                        instance.due_date.isoformat(),
                        instance.status,
                        instance.parent_template_id,
                    ),
                )
                await self._db.commit()
            except (sqlite3.Error, ValueError) as e:
                await self._rollback()
                raise translate_error(e) from e
            except BaseException:
                await self._rollback()
                raise
        assert cursor.lastrowid is not None
        return cursor.lastrowid
