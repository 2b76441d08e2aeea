# dcaladder/persistence/db.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional


# =========================
# Time helpers
# =========================
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """
    Fixed-width UTC ISO string so stored timestamps compare correctly as text
    (next_retry_at <= ?, updated_at < ?).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now_iso() -> str:
    return to_iso(utc_now())


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/dcaladder.db
    """

    def __init__(self, path: str = "data/dcaladder.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Explicit write transaction (BEGIN IMMEDIATE): takes the write lock up
        front so read-check-write sequences cannot interleave across workers.
        Rolls back on any exception.
        """
        conn = sqlite3.connect(
            self.path, timeout=30, check_same_thread=False, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def use(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Reuse the caller's connection (inside transaction()) or open a fresh one."""
        if conn is not None:
            yield conn
            return
        with self.connect() as c:
            yield c

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")

            # =========================
            # Bots (ladder config + running aggregates)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bots (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    status TEXT NOT NULL,
                    initial_order_amount REAL NOT NULL,
                    trade_multiplier REAL NOT NULL,
                    max_entries INTEGER NOT NULL,
                    step_percent REAL NOT NULL,
                    step_multiplier REAL NOT NULL,
                    take_profit_percent REAL NOT NULL,
                    exit_percentage REAL NOT NULL DEFAULT 100,
                    re_entry_delay_minutes REAL NOT NULL DEFAULT 0,
                    current_entry_count INTEGER NOT NULL DEFAULT 0,
                    average_entry_price REAL NOT NULL DEFAULT 0,
                    total_invested REAL NOT NULL DEFAULT 0,
                    total_volume REAL NOT NULL DEFAULT 0,
                    last_entry_price REAL,
                    last_entry_time TEXT,
                    current_take_profit_price REAL,
                    realized_pnl REAL NOT NULL DEFAULT 0,
                    cycle_realized_pnl REAL NOT NULL DEFAULT 0,
                    retained_volume REAL NOT NULL DEFAULT 0,
                    cycle_id TEXT NOT NULL,
                    cycle_number INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    status_changed_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Entries (append-only fill ledger)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    entry_number INTEGER NOT NULL,
                    price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    order_amount REAL NOT NULL,
                    status TEXT NOT NULL,
                    timestamp_utc TEXT NOT NULL,
                    exchange_order_id TEXT,
                    placement_uncertain INTEGER NOT NULL DEFAULT 0,
                    confirm_checks INTEGER NOT NULL DEFAULT 0,
                    pending_order_id TEXT,
                    cycle_id TEXT NOT NULL,
                    cycle_number INTEGER NOT NULL
                )
                """
            )

            # =========================
            # Cycles (archived ladders)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cycles (
                    cycle_id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    cycle_number INTEGER NOT NULL,
                    entries INTEGER NOT NULL,
                    total_invested REAL NOT NULL,
                    total_volume REAL NOT NULL,
                    average_entry_price REAL NOT NULL,
                    exit_price REAL NOT NULL,
                    realized_pnl REAL NOT NULL,
                    retained_volume REAL NOT NULL DEFAULT 0,
                    started_at TEXT,
                    completed_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Pending orders (durable retry queue)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_orders (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    bot_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- buy/sell
                    order_type TEXT NOT NULL,           -- market/limit
                    volume REAL NOT NULL,
                    price REAL,
                    amount REAL,
                    client_order_id TEXT NOT NULL,
                    userref INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    failed_credentials_json TEXT NOT NULL DEFAULT '[]',
                    credential_id TEXT,
                    next_retry_at TEXT,
                    last_error TEXT,
                    errors_json TEXT NOT NULL DEFAULT '[]',
                    exchange_order_id TEXT,
                    placement_uncertain INTEGER NOT NULL DEFAULT 0,
                    confirm_checks INTEGER NOT NULL DEFAULT 0,
                    executed_price REAL,
                    executed_volume REAL,
                    reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )

            # =========================
            # Credentials (per-user API keys)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    api_key TEXT NOT NULL,
                    api_secret TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    run_id TEXT,
                    cycle_id TEXT,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            # one outstanding order per bot and side
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_pending_orders_outstanding
                ON pending_orders(bot_id, side)
                WHERE status IN ('pending', 'processing', 'retry')
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_orders_status ON pending_orders(status, next_retry_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_orders_bot ON pending_orders(bot_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bots_status ON bots(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_bot ON entries(bot_id, cycle_number, entry_number)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cycles_bot ON cycles(bot_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_credentials_user ON credentials(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_symbol ON events(symbol)"
            )

            conn.commit()

        finally:
            conn.close()
