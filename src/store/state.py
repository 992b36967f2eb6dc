"""SQLite state database for orders, batches, balances and the catalog."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite

from src.config import STATE_DB, config
from src.errors import InvalidTransition, TaskNotFound
from src.parse.models import StockSite
from src.store.models import (
    ACTIVE_STATUSES,
    Batch,
    Task,
    TaskStatus,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        points INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger (
        entry_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        order_id TEXT,
        type TEXT NOT NULL,
        amount INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        note TEXT,
        voided INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    # One live SPEND and one live REFUND per order; NULL order ids (credits) never collide
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_order_type_live ON ledger(order_id, type) WHERE voided = 0",
    "CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger(user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS tasks (
        task_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        site TEXT NOT NULL,
        asset_id TEXT NOT NULL,
        source_url TEXT,
        status TEXT NOT NULL,
        external_task_id TEXT,
        batch_id TEXT,
        cost_points INTEGER,
        cost_amount REAL,
        cost_currency TEXT,
        title TEXT,
        preview_url TEXT,
        download_url TEXT,
        file_name TEXT,
        latest_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        response_type TEXT NOT NULL DEFAULT 'any',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_batch ON tasks(batch_id)",
    """
    CREATE TABLE IF NOT EXISTS batches (
        batch_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        total_orders INTEGER NOT NULL,
        completed_orders INTEGER NOT NULL DEFAULT 0,
        failed_orders INTEGER NOT NULL DEFAULT 0,
        total_cost INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_sites (
        site TEXT PRIMARY KEY,
        display_name TEXT,
        price REAL,
        min_price REAL,
        currency TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        value BLOB NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
)

TASK_COLUMNS = tuple(Task.model_fields)
BATCH_COLUMNS = tuple(Batch.model_fields)


def to_db(value: Any) -> Any:
    """Python value -> SQLite value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class StateDB:
    """SQLite database holding all persistent order state.

    Every public method accepts an optional open connection ``db`` so several
    calls can share one transaction; without it a short-lived autocommit
    connection is used.
    """

    def __init__(self, db_path: Path = STATE_DB, lock_timeout: Optional[float] = None):
        self.db_path = db_path
        self.lock_timeout = lock_timeout if lock_timeout is not None else config.DB_LOCK_TIMEOUT

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with self.connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await db.execute(statement)
        logger.info(f"State database initialized at {self.db_path}")

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Autocommit connection; transactions are opened explicitly."""
        async with aiosqlite.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def transaction(self, db: Optional[aiosqlite.Connection] = None) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction taken with BEGIN IMMEDIATE.

        When ``db`` is given the caller already owns a transaction and it is
        joined as is.
        """
        if db is not None:
            yield db
            return
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    @asynccontextmanager
    async def session(self, db: Optional[aiosqlite.Connection]) -> AsyncIterator[aiosqlite.Connection]:
        """Reuse the caller's connection, or open an autocommit one."""
        if db is not None:
            yield db
        else:
            async with self.connect() as conn:
                yield conn

    # Tasks

    async def insert_task(self, task: Task, db: Optional[aiosqlite.Connection] = None) -> Task:
        row = task.model_dump()
        placeholders = ", ".join("?" for _ in TASK_COLUMNS)
        async with self.session(db) as conn:
            await conn.execute(
                f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) VALUES ({placeholders})",
                tuple(to_db(row[column]) for column in TASK_COLUMNS),
            )
        return task

    async def get_task(self, task_id: str, db: Optional[aiosqlite.Connection] = None) -> Optional[Task]:
        async with self.session(db) as conn:
            cursor = await conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
            row = await cursor.fetchone()
        return Task(**dict(row)) if row else None

    async def update_task(self, task_id: str, db: Optional[aiosqlite.Connection] = None, **fields: Any) -> Task:
        """Apply field changes to a task, enforcing the status state machine."""
        async with self.session(db) as conn:
            current = await self.get_task(task_id, db=conn)
            if current is None:
                raise TaskNotFound(task_id)
            if "status" in fields:
                target = TaskStatus(fields["status"])
                if not can_transition(current.status, target):
                    raise InvalidTransition(task_id, current.status.value, target.value)
            fields["updated_at"] = utcnow()
            unknown = set(fields) - set(TASK_COLUMNS)
            if unknown:
                raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
            assignments = ", ".join(f"{column} = ?" for column in fields)
            await conn.execute(
                f"UPDATE tasks SET {assignments} WHERE task_id = ?",
                (*(to_db(value) for value in fields.values()), task_id),
            )
            updated = await self.get_task(task_id, db=conn)
        if "status" in fields and current.status != updated.status:
            logger.info(f"Order {task_id}: {current.status.value} -> {updated.status.value}")
        return updated

    async def list_active_tasks(self, limit: Optional[int] = None) -> list[Task]:
        """Orders the vendor is still working on, oldest first."""
        statuses = [status.value for status in ACTIVE_STATUSES]
        query = (
            f"SELECT * FROM tasks WHERE status IN ({', '.join('?' for _ in statuses)}) "
            "ORDER BY updated_at ASC"
        )
        params: list[Any] = list(statuses)
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        async with self.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [Task(**dict(row)) for row in rows]

    async def list_user_tasks(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[Task], int]:
        """Page through a user's orders, newest first. Returns (tasks, total)."""
        offset = (max(page, 1) - 1) * limit
        async with self.connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM tasks WHERE user_id = ?", (user_id,))
            total = (await cursor.fetchone())[0]
            cursor = await db.execute(
                "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at DESC, task_id LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            )
            rows = await cursor.fetchall()
        return [Task(**dict(row)) for row in rows], total

    async def list_batch_tasks(self, batch_id: str, db: Optional[aiosqlite.Connection] = None) -> list[Task]:
        async with self.session(db) as conn:
            cursor = await conn.execute(
                "SELECT * FROM tasks WHERE batch_id = ? ORDER BY created_at, task_id", (batch_id,)
            )
            rows = await cursor.fetchall()
        return [Task(**dict(row)) for row in rows]

    # Batches

    async def insert_batch(self, batch: Batch, db: Optional[aiosqlite.Connection] = None) -> Batch:
        row = batch.model_dump()
        placeholders = ", ".join("?" for _ in BATCH_COLUMNS)
        async with self.session(db) as conn:
            await conn.execute(
                f"INSERT INTO batches ({', '.join(BATCH_COLUMNS)}) VALUES ({placeholders})",
                tuple(to_db(row[column]) for column in BATCH_COLUMNS),
            )
        return batch

    async def get_batch(self, batch_id: str, db: Optional[aiosqlite.Connection] = None) -> Optional[Batch]:
        async with self.session(db) as conn:
            cursor = await conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,))
            row = await cursor.fetchone()
        return Batch(**dict(row)) if row else None

    async def update_batch(self, batch_id: str, db: Optional[aiosqlite.Connection] = None, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        async with self.session(db) as conn:
            await conn.execute(
                f"UPDATE batches SET {assignments} WHERE batch_id = ?",
                (*(to_db(value) for value in fields.values()), batch_id),
            )

    # Catalog

    async def upsert_sites(self, sites: Iterable[StockSite], db: Optional[aiosqlite.Connection] = None) -> None:
        """Upsert catalog rows; sites absent from this refresh are marked inactive."""
        sites = list(sites)
        now = utcnow().isoformat()
        async with self.session(db) as conn:
            for site in sites:
                await conn.execute(
                    """
                    INSERT INTO stock_sites (site, display_name, price, min_price, currency, active, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(site) DO UPDATE SET
                        display_name = excluded.display_name,
                        price = excluded.price,
                        min_price = excluded.min_price,
                        currency = excluded.currency,
                        active = excluded.active,
                        updated_at = excluded.updated_at
                    """,
                    (site.site, site.display_name, site.price, site.min_price, site.currency, int(site.active), now),
                )
            if sites:
                keys = [site.site for site in sites]
                await conn.execute(
                    f"UPDATE stock_sites SET active = 0, updated_at = ? "
                    f"WHERE site NOT IN ({', '.join('?' for _ in keys)})",
                    (now, *keys),
                )

    async def list_sites(self, active_only: bool = True) -> list[StockSite]:
        query = "SELECT site, display_name, price, min_price, currency, active FROM stock_sites"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY site"
        async with self.connect() as db:
            cursor = await db.execute(query)
            rows = await cursor.fetchall()
        return [StockSite(**{**dict(row), "active": bool(row["active"])}) for row in rows]

    async def get_stats(self) -> dict:
        """Order counts grouped by status."""
        async with self.connect() as db:
            cursor = await db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status")
            stats = {row[0]: row[1] for row in await cursor.fetchall()}
            return stats
