# dcaladder/persistence/bot_store.py
from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Dict, List, Optional

from dcaladder.bots.models import (
    BotConfig,
    CycleRecord,
    Entry,
    can_transition,
    validate_bot_params,
)
from dcaladder.core.errors import InvalidTransition, NotFound
from dcaladder.persistence.db import DB, from_iso, to_iso, utc_now

_DELETE_BATCH = 500


def _bot_from_row(r: sqlite3.Row) -> BotConfig:
    return BotConfig(
        id=r["id"],
        user_id=r["user_id"],
        symbol=r["symbol"],
        status=r["status"],
        initial_order_amount=float(r["initial_order_amount"]),
        trade_multiplier=float(r["trade_multiplier"]),
        max_entries=int(r["max_entries"]),
        step_percent=float(r["step_percent"]),
        step_multiplier=float(r["step_multiplier"]),
        take_profit_percent=float(r["take_profit_percent"]),
        exit_percentage=float(r["exit_percentage"]),
        re_entry_delay_minutes=float(r["re_entry_delay_minutes"] or 0.0),
        current_entry_count=int(r["current_entry_count"] or 0),
        average_entry_price=float(r["average_entry_price"] or 0.0),
        total_invested=float(r["total_invested"] or 0.0),
        total_volume=float(r["total_volume"] or 0.0),
        last_entry_price=r["last_entry_price"],
        last_entry_time=from_iso(r["last_entry_time"]),
        current_take_profit_price=r["current_take_profit_price"],
        realized_pnl=float(r["realized_pnl"] or 0.0),
        cycle_realized_pnl=float(r["cycle_realized_pnl"] or 0.0),
        retained_volume=float(r["retained_volume"] or 0.0),
        cycle_id=r["cycle_id"],
        cycle_number=int(r["cycle_number"] or 1),
        created_at=from_iso(r["created_at"]),
        updated_at=from_iso(r["updated_at"]),
        status_changed_at=from_iso(r["status_changed_at"]),
    )


def _entry_from_row(r: sqlite3.Row) -> Entry:
    return Entry(
        bot_id=r["bot_id"],
        entry_number=int(r["entry_number"]),
        price=float(r["price"]),
        quantity=float(r["quantity"]),
        order_amount=float(r["order_amount"]),
        timestamp=from_iso(r["timestamp_utc"]),
        cycle_id=r["cycle_id"],
        cycle_number=int(r["cycle_number"]),
        status=r["status"],
        exchange_order_id=r["exchange_order_id"],
        pending_order_id=r["pending_order_id"],
    )


def _cycle_from_row(r: sqlite3.Row) -> CycleRecord:
    return CycleRecord(
        bot_id=r["bot_id"],
        cycle_id=r["cycle_id"],
        cycle_number=int(r["cycle_number"]),
        entries=int(r["entries"]),
        total_invested=float(r["total_invested"]),
        total_volume=float(r["total_volume"]),
        average_entry_price=float(r["average_entry_price"]),
        exit_price=float(r["exit_price"]),
        realized_pnl=float(r["realized_pnl"]),
        retained_volume=float(r["retained_volume"] or 0.0),
        started_at=from_iso(r["started_at"]),
        completed_at=from_iso(r["completed_at"]),
    )


class BotStore:
    """
    Bots, their append-only entries ledger and archived cycles.

    Status only changes through cas_status(); aggregates only through
    save_position(). Methods accepting `conn` join the caller's transaction.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---------- BOTS ----------
    def create(self, bot: BotConfig) -> BotConfig:
        validate_bot_params(bot)
        now = utc_now()
        bot = bot.copy(
            symbol=bot.symbol.strip().upper(),
            created_at=bot.created_at or now,
            updated_at=now,
            status_changed_at=now,
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO bots(
                    id, user_id, symbol, status,
                    initial_order_amount, trade_multiplier, max_entries,
                    step_percent, step_multiplier, take_profit_percent,
                    exit_percentage, re_entry_delay_minutes,
                    current_entry_count, average_entry_price, total_invested, total_volume,
                    last_entry_price, last_entry_time, current_take_profit_price,
                    realized_pnl, cycle_realized_pnl, retained_volume,
                    cycle_id, cycle_number, created_at, updated_at, status_changed_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    bot.id,
                    bot.user_id,
                    bot.symbol,
                    bot.status,
                    float(bot.initial_order_amount),
                    float(bot.trade_multiplier),
                    int(bot.max_entries),
                    float(bot.step_percent),
                    float(bot.step_multiplier),
                    float(bot.take_profit_percent),
                    float(bot.exit_percentage),
                    float(bot.re_entry_delay_minutes),
                    int(bot.current_entry_count),
                    float(bot.average_entry_price),
                    float(bot.total_invested),
                    float(bot.total_volume),
                    bot.last_entry_price,
                    to_iso(bot.last_entry_time),
                    bot.current_take_profit_price,
                    float(bot.realized_pnl),
                    float(bot.cycle_realized_pnl),
                    float(bot.retained_volume),
                    bot.cycle_id,
                    int(bot.cycle_number),
                    to_iso(bot.created_at),
                    to_iso(bot.updated_at),
                    to_iso(bot.status_changed_at),
                ),
            )
        return bot

    def get(self, bot_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[BotConfig]:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
        return _bot_from_row(row) if row else None

    def require(self, bot_id: str, conn: Optional[sqlite3.Connection] = None) -> BotConfig:
        bot = self.get(bot_id, conn=conn)
        if bot is None:
            raise NotFound(f"bot not found: {bot_id}")
        return bot

    def list_by_status(self, status: str) -> List[BotConfig]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bots WHERE status = ? ORDER BY created_at", (status,)
            ).fetchall()
        return [_bot_from_row(r) for r in rows]

    def list_all(self, user_id: Optional[str] = None) -> List[BotConfig]:
        with self.db.connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM bots WHERE user_id = ? ORDER BY created_at", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM bots ORDER BY created_at").fetchall()
        return [_bot_from_row(r) for r in rows]

    def status_counts(self) -> Dict[str, int]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM bots GROUP BY status"
            ).fetchall()
        return {r["status"]: int(r["n"]) for r in rows}

    def save_position(
        self,
        bot: BotConfig,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Persist running aggregates and cycle bookkeeping. Never touches status.
        updated_at follows the caller's clock when one is given.
        """
        stamp = now or utc_now()
        with self.db.use(conn) as c:
            c.execute(
                """
                UPDATE bots SET
                    current_entry_count = ?,
                    average_entry_price = ?,
                    total_invested = ?,
                    total_volume = ?,
                    last_entry_price = ?,
                    last_entry_time = ?,
                    current_take_profit_price = ?,
                    realized_pnl = ?,
                    cycle_realized_pnl = ?,
                    retained_volume = ?,
                    cycle_id = ?,
                    cycle_number = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    int(bot.current_entry_count),
                    float(bot.average_entry_price),
                    float(bot.total_invested),
                    float(bot.total_volume),
                    bot.last_entry_price,
                    to_iso(bot.last_entry_time),
                    bot.current_take_profit_price,
                    float(bot.realized_pnl),
                    float(bot.cycle_realized_pnl),
                    float(bot.retained_volume),
                    bot.cycle_id,
                    int(bot.cycle_number),
                    to_iso(stamp),
                    bot.id,
                ),
            )

    def cas_status(
        self,
        bot_id: str,
        expected: str,
        target: str,
        now: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Compare-and-swap status. Returns False when the bot was no longer in
        `expected` (someone else moved it first).
        Raises InvalidTransition for edges the state machine does not allow.
        """
        if not can_transition(expected, target):
            raise InvalidTransition(bot_id, expected, target)

        ts = to_iso(now or utc_now())
        with self.db.use(conn) as c:
            cur = c.execute(
                """
                UPDATE bots SET status = ?, status_changed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (target, ts, ts, bot_id, expected),
            )
            return cur.rowcount == 1

    # ---------- ENTRIES (append-only) ----------
    def append_entry(self, entry: Entry, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.use(conn) as c:
            c.execute(
                """
                INSERT INTO entries(
                    id, bot_id, entry_number, price, quantity, order_amount, status,
                    timestamp_utc, exchange_order_id, pending_order_id, cycle_id, cycle_number
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    entry.id,
                    entry.bot_id,
                    int(entry.entry_number),
                    float(entry.price),
                    float(entry.quantity),
                    float(entry.order_amount),
                    entry.status,
                    to_iso(entry.timestamp),
                    entry.exchange_order_id,
                    entry.pending_order_id,
                    entry.cycle_id,
                    int(entry.cycle_number),
                ),
            )

    def list_entries(self, bot_id: str, cycle_number: Optional[int] = None) -> List[Entry]:
        with self.db.connect() as conn:
            if cycle_number is None:
                rows = conn.execute(
                    "SELECT * FROM entries WHERE bot_id = ? ORDER BY cycle_number, entry_number",
                    (bot_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM entries WHERE bot_id = ? AND cycle_number = ?
                    ORDER BY entry_number
                    """,
                    (bot_id, int(cycle_number)),
                ).fetchall()
        return [_entry_from_row(r) for r in rows]

    # ---------- CYCLES ----------
    def archive_cycle(self, record: CycleRecord, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.use(conn) as c:
            c.execute(
                """
                INSERT OR REPLACE INTO cycles(
                    cycle_id, bot_id, cycle_number, entries, total_invested, total_volume,
                    average_entry_price, exit_price, realized_pnl, retained_volume, started_at, completed_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    record.cycle_id,
                    record.bot_id,
                    int(record.cycle_number),
                    int(record.entries),
                    float(record.total_invested),
                    float(record.total_volume),
                    float(record.average_entry_price),
                    float(record.exit_price),
                    float(record.realized_pnl),
                    float(record.retained_volume),
                    to_iso(record.started_at),
                    to_iso(record.completed_at),
                ),
            )

    def list_cycles(self, bot_id: str) -> List[CycleRecord]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM cycles WHERE bot_id = ? ORDER BY cycle_number", (bot_id,)
            ).fetchall()
        return [_cycle_from_row(r) for r in rows]

    def cycle_started_at(self, bot_id: str, cycle_number: int, conn: Optional[sqlite3.Connection] = None) -> Optional[datetime]:
        with self.db.use(conn) as c:
            row = c.execute(
                "SELECT MIN(timestamp_utc) AS ts FROM entries WHERE bot_id = ? AND cycle_number = ?",
                (bot_id, int(cycle_number)),
            ).fetchone()
        return from_iso(row["ts"]) if row else None

    # ---------- DELETE ----------
    def delete(self, bot_id: str, batch_size: int = _DELETE_BATCH) -> Dict[str, int]:
        """
        Removes the bot with its entries, cycles and queued orders.
        Child rows go in batches so a long ledger never holds the write lock
        for one huge statement.
        """
        if self.get(bot_id) is None:
            raise NotFound(f"bot not found: {bot_id}")

        removed = {"entries": 0, "cycles": 0, "pending_orders": 0, "bots": 0}
        for table, key in (("entries", "id"), ("cycles", "cycle_id"), ("pending_orders", "id")):
            while True:
                with self.db.connect() as conn:
                    cur = conn.execute(
                        f"""
                        DELETE FROM {table} WHERE {key} IN (
                            SELECT {key} FROM {table} WHERE bot_id = ? LIMIT ?
                        )
                        """,
                        (bot_id, int(batch_size)),
                    )
                    n = cur.rowcount
                removed[table] += n
                if n < batch_size:
                    break

        with self.db.connect() as conn:
            removed["bots"] = conn.execute("DELETE FROM bots WHERE id = ?", (bot_id,)).rowcount
        return removed


