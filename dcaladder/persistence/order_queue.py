# dcaladder/persistence/order_queue.py
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from dcaladder.core.config import QueueSettings
from dcaladder.core.errors import ConfigurationError
from dcaladder.execution.backoff import retry_delay_seconds
from dcaladder.persistence.db import DB, from_iso, to_iso, utc_now

log = logging.getLogger("dcaladder.queue")


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


OUTSTANDING = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value, OrderStatus.RETRY.value)
TERMINAL = (OrderStatus.COMPLETED.value, OrderStatus.FAILED.value)


@dataclass
class PendingOrder:
    id: str
    user_id: str
    bot_id: str
    symbol: str
    side: str
    order_type: str
    volume: float
    client_order_id: str
    userref: int
    status: str
    max_attempts: int
    price: Optional[float] = None
    amount: Optional[float] = None
    attempts: int = 0
    failed_credentials: List[str] = field(default_factory=list)
    credential_id: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    exchange_order_id: Optional[str] = None
    placement_uncertain: bool = False
    confirm_checks: int = 0
    executed_price: Optional[float] = None
    executed_volume: Optional[float] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "symbol": self.symbol,
            "side": self.side,
            "order_type": self.order_type,
            "volume": self.volume,
            "price": self.price,
            "amount": self.amount,
            "client_order_id": self.client_order_id,
            "userref": self.userref,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "failed_credentials": list(self.failed_credentials),
            "credential_id": self.credential_id,
            "next_retry_at": to_iso(self.next_retry_at),
            "last_error": self.last_error,
            "errors": list(self.errors),
            "exchange_order_id": self.exchange_order_id,
            "placement_uncertain": self.placement_uncertain,
            "confirm_checks": self.confirm_checks,
            "executed_price": self.executed_price,
            "executed_volume": self.executed_volume,
            "reason": self.reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
        }


def client_order_ref(
    user_id: str, bot_id: str, symbol: str, side: str, volume: float, ts: datetime
) -> tuple:
    """
    Deterministic idempotency reference for one enqueued order:
    (32-hex client order id, positive 31-bit userref for the exchange).
    """
    raw = f"{user_id}|{bot_id}|{symbol}|{side}|{volume}|{to_iso(ts)}"
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
    userref = abs(int(digest[:8], 16)) % 2147483647
    return digest, userref


def _order_from_row(r: sqlite3.Row) -> PendingOrder:
    return PendingOrder(
        id=r["id"],
        user_id=r["user_id"],
        bot_id=r["bot_id"],
        symbol=r["symbol"],
        side=r["side"],
        order_type=r["order_type"],
        volume=float(r["volume"]),
        price=r["price"],
        amount=r["amount"],
        client_order_id=r["client_order_id"],
        userref=int(r["userref"]),
        status=r["status"],
        attempts=int(r["attempts"] or 0),
        max_attempts=int(r["max_attempts"]),
        failed_credentials=list(json.loads(r["failed_credentials_json"] or "[]")),
        credential_id=r["credential_id"],
        next_retry_at=from_iso(r["next_retry_at"]),
        last_error=r["last_error"],
        errors=list(json.loads(r["errors_json"] or "[]")),
        exchange_order_id=r["exchange_order_id"],
        placement_uncertain=bool(r["placement_uncertain"]),
        confirm_checks=int(r["confirm_checks"] or 0),
        executed_price=r["executed_price"],
        executed_volume=r["executed_volume"],
        reason=r["reason"],
        created_at=from_iso(r["created_at"]),
        updated_at=from_iso(r["updated_at"]),
        completed_at=from_iso(r["completed_at"]),
    )


class OrderQueue:
    """
    Durable retrying order queue on SQLite.

    pending -> processing (claim, CAS) -> completed
                          -> retry (backoff) -> processing ...
                          -> failed (permanent error / attempts exhausted)
    processing older than the stuck timeout -> retry (reset_stuck)

    At most one outstanding (pending/processing/retry) order per bot and side,
    enforced by the partial unique index uq_pending_orders_outstanding.
    """

    def __init__(self, db: DB, cfg: Optional[QueueSettings] = None):
        self.db = db
        self.cfg = cfg or QueueSettings()

    # ---------- ENQUEUE ----------
    def enqueue(
        self,
        user_id: str,
        bot_id: str,
        symbol: str,
        side: str,
        volume: float,
        order_type: str = OrderType.MARKET.value,
        price: Optional[float] = None,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[PendingOrder]:
        """
        Conditional insert. Returns None when an order for this bot/side is
        already outstanding.
        """
        side = OrderSide(str(side).lower()).value
        order_type = OrderType(str(order_type).lower()).value
        if volume is None or not (float(volume) > 0):
            raise ConfigurationError(f"order volume must be > 0 (got {volume})")
        if order_type == OrderType.LIMIT.value and not price:
            raise ConfigurationError("limit orders need a price")

        now = now or utc_now()
        client_order_id, userref = client_order_ref(user_id, bot_id, symbol, side, volume, now)
        order = PendingOrder(
            id=uuid.uuid4().hex,
            user_id=user_id,
            bot_id=bot_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            volume=float(volume),
            price=price,
            amount=amount,
            client_order_id=client_order_id,
            userref=userref,
            status=OrderStatus.PENDING.value,
            max_attempts=int(self.cfg.max_attempts),
            reason=reason,
            created_at=now,
            updated_at=now,
        )

        try:
            with self.db.use(conn) as c:
                c.execute(
                    """
                    INSERT INTO pending_orders(
                        id, user_id, bot_id, symbol, side, order_type, volume, price, amount,
                        client_order_id, userref, status, attempts, max_attempts,
                        failed_credentials_json, errors_json, reason, created_at, updated_at
                    )
                    VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        order.id,
                        order.user_id,
                        order.bot_id,
                        order.symbol,
                        order.side,
                        order.order_type,
                        order.volume,
                        order.price,
                        order.amount,
                        order.client_order_id,
                        order.userref,
                        order.status,
                        0,
                        order.max_attempts,
                        "[]",
                        "[]",
                        order.reason,
                        to_iso(now),
                        to_iso(now),
                    ),
                )
        except sqlite3.IntegrityError:
            log.info("enqueue skipped: %s order already outstanding for bot %s", side, bot_id)
            return None

        return order

    # ---------- READ ----------
    def get(self, order_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[PendingOrder]:
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
        return _order_from_row(row) if row else None

    def list_by_bot(self, bot_id: str, status: Optional[str] = None) -> List[PendingOrder]:
        return self._list("bot_id", bot_id, status)

    def list_by_user(self, user_id: str, status: Optional[str] = None) -> List[PendingOrder]:
        return self._list("user_id", user_id, status)

    def list_recent(self, limit: int = 100, status: Optional[str] = None) -> List[PendingOrder]:
        with self.db.connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM pending_orders WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM pending_orders ORDER BY created_at DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
        return [_order_from_row(r) for r in rows]

    def _list(self, column: str, value: str, status: Optional[str]) -> List[PendingOrder]:
        sql = f"SELECT * FROM pending_orders WHERE {column} = ?"
        params: List[Any] = [value]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at"
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_order_from_row(r) for r in rows]

    def outstanding_sides(self, bot_id: str) -> FrozenSet[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT side FROM pending_orders
                WHERE bot_id = ? AND status IN ({",".join("?" * len(OUTSTANDING))})
                """,
                (bot_id, *OUTSTANDING),
            ).fetchall()
        return frozenset(r["side"] for r in rows)

    def due_orders(self, now: datetime, limit: Optional[int] = None) -> List[PendingOrder]:
        """pending, or retry whose next_retry_at has passed. Oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pending_orders
                WHERE status = 'pending'
                   OR (status = 'retry' AND (next_retry_at IS NULL OR next_retry_at <= ?))
                ORDER BY created_at
                LIMIT ?
                """,
                (to_iso(now), int(limit or self.cfg.batch_size)),
            ).fetchall()
        return [_order_from_row(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in OrderStatus}
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM pending_orders GROUP BY status"
            ).fetchall()
        for r in rows:
            out[r["status"]] = int(r["n"])
        return out

    # ---------- STATE TRANSITIONS ----------
    def claim(self, order_id: str, expected_status: str, now: datetime) -> Optional[PendingOrder]:
        """
        CAS pending/retry -> processing. Returns the claimed order, or None if
        another worker got there first.
        """
        if expected_status not in (OrderStatus.PENDING.value, OrderStatus.RETRY.value):
            return None
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE pending_orders SET status = 'processing', updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (to_iso(now), order_id, expected_status),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
        return _order_from_row(row)

    def attach_exchange_order(
        self,
        order_id: str,
        exchange_order_id: str,
        credential_id: Optional[str],
        now: datetime,
    ) -> None:
        """Remember the exchange reference as soon as the exchange accepted it."""
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE pending_orders
                SET exchange_order_id = ?, credential_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (exchange_order_id, credential_id, to_iso(now), order_id),
            )

    def mark_completed(
        self,
        order_id: str,
        executed_price: float,
        executed_volume: float,
        now: datetime,
        exchange_order_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """CAS processing -> completed. False if the order is no longer ours."""
        with self.db.use(conn) as c:
            cur = c.execute(
                """
                UPDATE pending_orders
                SET status = 'completed',
                    executed_price = ?,
                    executed_volume = ?,
                    exchange_order_id = COALESCE(?, exchange_order_id),
                    next_retry_at = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (
                    float(executed_price),
                    float(executed_volume),
                    exchange_order_id,
                    to_iso(now),
                    to_iso(now),
                    order_id,
                ),
            )
            return cur.rowcount == 1

    def record_failure(
        self,
        order_id: str,
        error: str,
        now: datetime,
        credential_id: Optional[str] = None,
        permanent: bool = False,
        placement_uncertain: bool = False,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[PendingOrder]:
        """
        Count a failed attempt. Moves processing -> retry (with backoff) or
        -> failed when the error is permanent or attempts are exhausted.

        placement_uncertain marks a submit whose outcome is unknown (the
        exchange may have accepted it); the credential that sent it is kept so
        the next attempt can look the order up by userref before placing.
        Returns the updated order, or None if it was not processing.
        """
        with self.db.use(conn) as c:
            row = c.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
            if not row or row["status"] != OrderStatus.PROCESSING.value:
                return None
            order = _order_from_row(row)

            attempts = order.attempts + 1
            errors = order.errors + [
                {"timestamp": to_iso(now), "error": error, "credential_id": credential_id, "attempt": attempts}
            ]
            uncertain = placement_uncertain or order.placement_uncertain
            owner = credential_id if placement_uncertain else order.credential_id

            if permanent or attempts >= order.max_attempts:
                status = OrderStatus.FAILED.value
                next_retry_at = None
                completed_at = to_iso(now)
            else:
                status = OrderStatus.RETRY.value
                delay = retry_delay_seconds(
                    attempts,
                    initial=self.cfg.initial_retry_delay_seconds,
                    multiplier=self.cfg.retry_backoff_multiplier,
                    cap=self.cfg.max_retry_delay_seconds,
                    jitter_ratio=self.cfg.retry_jitter_ratio,
                )
                next_retry_at = to_iso(now + timedelta(seconds=delay))
                completed_at = None

            cur = c.execute(
                """
                UPDATE pending_orders
                SET status = ?, attempts = ?, next_retry_at = ?, last_error = ?,
                    errors_json = ?, placement_uncertain = ?, credential_id = ?,
                    completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (
                    status,
                    attempts,
                    next_retry_at,
                    error,
                    json.dumps(errors, ensure_ascii=False),
                    int(uncertain),
                    owner,
                    completed_at,
                    to_iso(now),
                    order_id,
                ),
            )
            if cur.rowcount != 1:
                return None
            row = c.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
        return _order_from_row(row)

    def clear_placement_uncertain(self, order_id: str, now: datetime) -> bool:
        """The userref lookup found nothing on the exchange; placing again is safe."""
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE pending_orders SET placement_uncertain = 0, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (to_iso(now), order_id),
            )
            return cur.rowcount == 1

    def record_submitted(
        self,
        order_id: str,
        exchange_order_id: str,
        credential_id: Optional[str],
        now: datetime,
    ) -> Optional[PendingOrder]:
        """
        Exchange accepted the order but the fill is not confirmed yet.
        processing -> retry; the next pass only re-queries the exchange.

        Unconfirmed checks are counted apart from failed attempts and back off
        the same way. Once max_confirm_checks is reached the order is failed,
        which releases the bot's side for operator action.
        Returns the updated order, or None if it was not processing.
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
            if not row or row["status"] != OrderStatus.PROCESSING.value:
                return None
            order = _order_from_row(row)

            checks = order.confirm_checks + 1
            if checks >= self.cfg.max_confirm_checks:
                error = (
                    f"fill not confirmed for exchange order {exchange_order_id} "
                    f"after {checks} check(s)"
                )
                errors = order.errors + [
                    {"timestamp": to_iso(now), "error": error, "credential_id": credential_id}
                ]
                conn.execute(
                    """
                    UPDATE pending_orders
                    SET status = 'failed', exchange_order_id = ?, credential_id = ?,
                        confirm_checks = ?, placement_uncertain = 0, next_retry_at = NULL,
                        last_error = ?, errors_json = ?, completed_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (
                        exchange_order_id,
                        credential_id,
                        checks,
                        error,
                        json.dumps(errors, ensure_ascii=False),
                        to_iso(now),
                        to_iso(now),
                        order_id,
                    ),
                )
            else:
                delay = retry_delay_seconds(
                    checks,
                    initial=self.cfg.initial_retry_delay_seconds,
                    multiplier=self.cfg.retry_backoff_multiplier,
                    cap=self.cfg.max_retry_delay_seconds,
                    jitter_ratio=self.cfg.retry_jitter_ratio,
                )
                conn.execute(
                    """
                    UPDATE pending_orders
                    SET status = 'retry', exchange_order_id = ?, credential_id = ?,
                        confirm_checks = ?, placement_uncertain = 0, next_retry_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (
                        exchange_order_id,
                        credential_id,
                        checks,
                        to_iso(now + timedelta(seconds=delay)),
                        to_iso(now),
                        order_id,
                    ),
                )
            row = conn.execute("SELECT * FROM pending_orders WHERE id = ?", (order_id,)).fetchone()
        return _order_from_row(row)

    def add_failed_credential(self, order_id: str, credential_id: str, error: str, now: datetime) -> None:
        """Exclude one credential for this order. Status is left untouched."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT failed_credentials_json, errors_json FROM pending_orders WHERE id = ?",
                (order_id,),
            ).fetchone()
            if not row:
                return
            failed = list(json.loads(row["failed_credentials_json"] or "[]"))
            if credential_id not in failed:
                failed.append(credential_id)
            errors = list(json.loads(row["errors_json"] or "[]"))
            errors.append({"timestamp": to_iso(now), "error": error, "credential_id": credential_id})
            conn.execute(
                """
                UPDATE pending_orders
                SET failed_credentials_json = ?, errors_json = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (json.dumps(failed), json.dumps(errors, ensure_ascii=False), error, to_iso(now), order_id),
            )

    def reset_stuck(self, now: datetime) -> int:
        """processing for longer than the stuck timeout -> retry, due immediately."""
        cutoff = now - timedelta(seconds=self.cfg.stuck_order_timeout_seconds)
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE pending_orders
                SET status = 'retry', next_retry_at = ?, last_error = ?, updated_at = ?
                WHERE status = 'processing' AND updated_at < ?
                """,
                (
                    to_iso(now),
                    "reset after stuck in processing",
                    to_iso(now),
                    to_iso(cutoff),
                ),
            )
            n = cur.rowcount
        if n:
            log.warning("reset %d stuck order(s) to retry", n)
        return n

    def clear_failed_credentials(self, order_id: str) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE pending_orders SET failed_credentials_json = '[]', updated_at = ? WHERE id = ?",
                (to_iso(utc_now()), order_id),
            )
            return cur.rowcount == 1

    def clear_all_failed_credentials(self) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE pending_orders SET failed_credentials_json = '[]', updated_at = ?
                WHERE failed_credentials_json != '[]'
                """,
                (to_iso(utc_now()),),
            )
            return cur.rowcount

    def cleanup_old(self, now: datetime, days: int = 30) -> int:
        """Delete completed/failed orders last touched more than `days` ago."""
        cutoff = now - timedelta(days=int(days))
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM pending_orders
                WHERE status IN ('completed', 'failed') AND updated_at < ?
                """,
                (to_iso(cutoff),),
            )
            return cur.rowcount
