"""Balance ledger: the only writer of user point balances.

Each mutation updates ``users.points`` and appends a ledger entry in the same
transaction. A unique ``(order_id, type)`` index over live entries guarantees
an order is charged at most once and refunded at most once, whatever the
callers do. Entries are never deleted: a charge for an order the vendor never
accepted is marked ``voided`` and its points are returned.
"""
import logging
import sqlite3
import uuid
from typing import Optional

import aiosqlite

from src.errors import DuplicateCharge, InsufficientBalance
from src.store.models import LedgerEntry, LedgerType, utcnow
from src.store.state import StateDB, to_db

logger = logging.getLogger(__name__)


class BalanceLedger:
    """Point balances with an append-only audit trail."""

    def __init__(self, state: StateDB):
        self.state = state

    async def get_balance(self, user_id: str, db: Optional[aiosqlite.Connection] = None) -> int:
        """Current points; users without a row have 0."""
        async with self.state.session(db) as conn:
            cursor = await conn.execute("SELECT points FROM users WHERE user_id = ?", (user_id,))
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def _has_entry(self, conn: aiosqlite.Connection, order_id: str, entry_type: LedgerType) -> bool:
        cursor = await conn.execute(
            "SELECT 1 FROM ledger WHERE order_id = ? AND type = ? AND voided = 0", (order_id, entry_type.value)
        )
        return await cursor.fetchone() is not None

    async def _append(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        entry_type: LedgerType,
        amount: int,
        order_id: Optional[str],
        note: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=str(uuid.uuid4()),
            user_id=user_id,
            order_id=order_id,
            type=entry_type,
            amount=amount,
            balance_after=await self.get_balance(user_id, db=conn),
            note=note,
        )
        await conn.execute(
            """
            INSERT INTO ledger (entry_id, user_id, order_id, type, amount, balance_after, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.user_id,
                entry.order_id,
                entry.type.value,
                entry.amount,
                entry.balance_after,
                entry.note,
                to_db(entry.created_at),
            ),
        )
        return entry

    async def _ensure_user(self, conn: aiosqlite.Connection, user_id: str) -> None:
        await conn.execute(
            "INSERT OR IGNORE INTO users (user_id, points, updated_at) VALUES (?, 0, ?)",
            (user_id, to_db(utcnow())),
        )

    async def debit(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        note: Optional[str] = None,
        db: Optional[aiosqlite.Connection] = None,
    ) -> LedgerEntry:
        """Charge an order. Raises InsufficientBalance or DuplicateCharge."""
        if amount < 0:
            raise ValueError("Debit amount must be >= 0")
        async with self.state.transaction(db) as conn:
            if await self._has_entry(conn, order_id, LedgerType.SPEND):
                raise DuplicateCharge(order_id)
            await self._ensure_user(conn, user_id)
            cursor = await conn.execute(
                "UPDATE users SET points = points - ?, updated_at = ? WHERE user_id = ? AND points >= ?",
                (amount, to_db(utcnow()), user_id, amount),
            )
            if cursor.rowcount == 0:
                available = await self.get_balance(user_id, db=conn)
                raise InsufficientBalance(user_id, amount, available)
            try:
                entry = await self._append(conn, user_id, LedgerType.SPEND, -amount, order_id, note)
            except sqlite3.IntegrityError as e:
                raise DuplicateCharge(order_id) from e
        logger.info(f"Debited {amount} pts from {user_id} for order {order_id} (balance {entry.balance_after})")
        return entry

    async def credit(
        self,
        user_id: str,
        amount: int,
        note: Optional[str] = None,
        db: Optional[aiosqlite.Connection] = None,
    ) -> LedgerEntry:
        """Add points (purchases, grants)."""
        if amount <= 0:
            raise ValueError("Credit amount must be > 0")
        async with self.state.transaction(db) as conn:
            await self._ensure_user(conn, user_id)
            await conn.execute(
                "UPDATE users SET points = points + ?, updated_at = ? WHERE user_id = ?",
                (amount, to_db(utcnow()), user_id),
            )
            entry = await self._append(conn, user_id, LedgerType.CREDIT, amount, None, note)
        logger.info(f"Credited {amount} pts to {user_id} (balance {entry.balance_after})")
        return entry

    async def refund(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        note: Optional[str] = None,
        db: Optional[aiosqlite.Connection] = None,
    ) -> Optional[LedgerEntry]:
        """Return an order's points once. Returns None if already refunded or never charged."""
        if amount <= 0:
            return None
        async with self.state.transaction(db) as conn:
            if not await self._has_entry(conn, order_id, LedgerType.SPEND):
                return None
            if await self._has_entry(conn, order_id, LedgerType.REFUND):
                return None
            await self._ensure_user(conn, user_id)
            await conn.execute(
                "UPDATE users SET points = points + ?, updated_at = ? WHERE user_id = ?",
                (amount, to_db(utcnow()), user_id),
            )
            entry = await self._append(conn, user_id, LedgerType.REFUND, amount, order_id, note)
        logger.info(f"Refunded {amount} pts to {user_id} for order {order_id}")
        return entry

    async def release(
        self,
        user_id: str,
        order_id: str,
        db: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """Void the live charge of an order that was never placed. Returns the points returned."""
        async with self.state.transaction(db) as conn:
            cursor = await conn.execute(
                "SELECT entry_id, amount FROM ledger WHERE order_id = ? AND user_id = ? AND type = ? AND voided = 0",
                (order_id, user_id, LedgerType.SPEND.value),
            )
            row = await cursor.fetchone()
            if row is None:
                return 0
            points = -row["amount"]
            await conn.execute("UPDATE ledger SET voided = 1 WHERE entry_id = ?", (row["entry_id"],))
            await conn.execute(
                "UPDATE users SET points = points + ?, updated_at = ? WHERE user_id = ?",
                (points, to_db(utcnow()), user_id),
            )
        logger.info(f"Released {points} pts to {user_id}; order {order_id} was not placed")
        return points

    async def history(self, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        """Most recent ledger entries first."""
        async with self.state.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM ledger WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )
            rows = await cursor.fetchall()
        return [LedgerEntry(**dict(row)) for row in rows]
