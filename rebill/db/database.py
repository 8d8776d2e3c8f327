import aiosqlite

from rebill.config import settings

SCHEMA = """
CREATE TABLE IF NOT EXISTS expenses (
    id INTEGER PRIMARY KEY,
    owner_id TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT,
    amount TEXT NOT NULL CHECK(CAST(amount AS REAL) > 0),
    expense_type TEXT NOT NULL DEFAULT 'fixed' CHECK(expense_type IN ('fixed', 'variable')),
    due_date DATE,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'paid')),
    is_recurring BOOLEAN NOT NULL DEFAULT 0,
    recurring_day INTEGER CHECK(recurring_day IS NULL OR (recurring_day >= 1 AND recurring_day <= 31)),
    recurring_start_date DATE,
    recurring_end_date DATE,
    parent_template_id INTEGER REFERENCES expenses(id) ON DELETE SET NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    CHECK(is_recurring = 0 OR parent_template_id IS NULL),
    CHECK(is_recurring = 1 OR due_date IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_expenses_owner_due ON expenses(owner_id, due_date);
CREATE INDEX IF NOT EXISTS idx_expenses_recurring ON expenses(is_recurring, recurring_end_date);
CREATE UNIQUE INDEX IF NOT EXISTS idx_expenses_template_month
    ON expenses(parent_template_id, substr(due_date, 1, 7))
    WHERE parent_template_id IS NOT NULL;
"""

_db: aiosqlite.Connection | None = None


async def connect(path: str) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    return db


async def get_db() -> aiosqlite.Connection:
    global _db
    if _db is None:
        _db = await connect(settings.db_path)
    return _db


async def close_db():
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def init_db():
    db = await get_db()
    await db.executescript(SCHEMA)
    await db.commit()
