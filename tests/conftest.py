import asyncio
import sqlite3

import aiosqlite
import pytest

import rebill.db.database as db_mod
from rebill.db.store import SQLiteExpenseStore


class FlakyConnection:
    """Wraps a real connection; ``commit`` can fail as locked or stall first."""

    def __init__(self, conn: aiosqlite.Connection, commit_errors: int = 0, commit_delay: float = 0):
        self._conn = conn
        self.commit_errors = commit_errors
        self.commit_delay = commit_delay

    def __getattr__(self, name):
        return getattr(self._conn, name)

    async def commit(self):
        if self.commit_delay:
            await asyncio.sleep(self.commit_delay)
        if self.commit_errors:
            self.commit_errors -= 1
            raise sqlite3.OperationalError("database is locked")
        await self._conn.commit()


@pytest.fixture(autouse=True)
async def test_db(monkeypatch):
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.executescript(db_mod.SCHEMA)
    await conn.commit()

    async def _get_db():
        return conn

    monkeypatch.setattr(db_mod, "get_db", _get_db)
    monkeypatch.setattr(db_mod, "_db", conn)

    yield conn

    await conn.close()


@pytest.fixture
def store(test_db):
    return SQLiteExpenseStore(test_db)


@pytest.fixture
def flaky_store(test_db):
    def _make(**kwargs):
        return SQLiteExpenseStore(FlakyConnection(test_db, **kwargs))

    return _make
