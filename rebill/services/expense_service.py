from datetime import date
from decimal import Decimal

from rebill.db.database import get_db
from rebill.db.models import (
    EXPENSE_TYPES,
    STATUS_PAID,
    STATUS_PENDING,
    ExpenseInstance,
    RecurringTemplate,
    instance_from_row,
    template_from_row,
)


def _check_type(expense_type: str) -> None:
    if expense_type not in EXPENSE_TYPES:
        raise ValueError(f"Unknown expense type: {expense_type}")


async def add_template(
    owner_id: str,
    description: str,
    amount: Decimal,
    category: str | None = None,
    expense_type: str = "fixed",
    recurring_day: int | None = 1,
    start_date: date | None = None,
    end_date: date | None = None,
) -> int:
    _check_type(expense_type)
    db = await get_db()
    cursor = await db.execute(
        """INSERT INTO expenses
        (owner_id, description, category, amount, expense_type, is_recurring,
         recurring_day, recurring_start_date, recurring_end_date)
        VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)""",
        (
            owner_id,
            description,
            category,
            str(amount),
            expense_type,
            recurring_day,
            start_date.isoformat() if start_date else None,
            end_date.isoformat() if end_date else None,
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def end_template(template_id: int, end_date: date) -> bool:
    """Archive a template by end-dating it; existing instances are kept."""
    db = await get_db()
    cursor = await db.execute(
        """UPDATE expenses SET recurring_end_date = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND is_recurring = 1""",
        (end_date.isoformat(), template_id),
    )
    await db.commit()
    return cursor.rowcount > 0


async def get_templates(owner_id: str) -> list[RecurringTemplate]:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM expenses WHERE owner_id = ? AND is_recurring = 1 ORDER BY description",
        (owner_id,),
    )
    rows = await cursor.fetchall()
    return [template_from_row(row) for row in rows]


async def add_expense(
    owner_id: str,
    description: str,
    amount: Decimal,
    due_date: date,
    category: str | None = None,
    expense_type: str = "variable",
    status: str = STATUS_PENDING,
) -> int:
    _check_type(expense_type)
    db = await get_db()
    cursor = await db.execute(
        """INSERT INTO expenses
        (owner_id, description, category, amount, expense_type, due_date, status, is_recurring)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0)""",
        (owner_id, description, category, str(amount), expense_type, due_date.isoformat(), status),
    )
    await db.commit()
    return cursor.lastrowid


async def get_expenses(
    owner_id: str,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[ExpenseInstance]:
    db = await get_db()
    query = "SELECT * FROM expenses WHERE owner_id = ? AND is_recurring = 0"
    params: list[str] = [owner_id]
    if start_date:
        query += " AND due_date >= ?"
        params.append(start_date.isoformat())
    if end_date:
        query += " AND due_date <= ?"
        params.append(end_date.isoformat())
    query += " ORDER BY due_date"
    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()
    return [instance_from_row(row) for row in rows]


async def toggle_status(expense_id: int) -> str | None:
    """Flip an expense between pending and paid. Returns the new status."""
    db = await get_db()
    cursor = await db.execute(
        "SELECT status FROM expenses WHERE id = ? AND is_recurring = 0",
        (expense_id,),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    new_status = STATUS_PENDING if row["status"] == STATUS_PAID else STATUS_PAID
    await db.execute(
        "UPDATE expenses SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (new_status, expense_id),
    )
    await db.commit()
    return new_status


async def delete_expense(expense_id: int) -> bool:
    db = await get_db()
    cursor = await db.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))
    await db.commit()
    return cursor.rowcount > 0


async def status_totals(owner_id: str, start_date: date, end_date: date) -> dict[str, Decimal]:
    expenses = await get_expenses(owner_id, start_date, end_date)
    pending = sum((e.amount for e in expenses if e.status == STATUS_PENDING), Decimal("0"))
    paid = sum((e.amount for e in expenses if e.status == STATUS_PAID), Decimal("0"))
    return {"pending": pending, "paid": paid, "total": pending + paid}
