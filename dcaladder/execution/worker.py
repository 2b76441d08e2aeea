# dcaladder/execution/worker.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from dcaladder.bots.models import BotStatus
from dcaladder.core.config import QueueSettings
from dcaladder.core.errors import (
    CredentialError,
    ExchangeError,
    PermanentOrderError,
    SubmitOutcomeUnknown,
    TransientExchangeError,
)
from dcaladder.exchange.gateway import CANCELED, ExchangeGateway, OrderStatusReport
from dcaladder.exchange.kraken.filters import meets_minimum, round_price, round_volume
from dcaladder.execution.backoff import RateLimiter
from dcaladder.execution.cost_basis import apply_buy_fill, apply_sell_fill
from dcaladder.ops.context import scheduler_cycle
from dcaladder.persistence.audit import Audit
from dcaladder.persistence.bot_store import BotStore
from dcaladder.persistence.credentials import Credential, CredentialStore
from dcaladder.persistence.db import DB, utc_now
from dcaladder.persistence.order_queue import OrderQueue, OrderSide, OrderStatus, PendingOrder

log = logging.getLogger("dcaladder.worker")

GatewayFactory = Callable[[Credential], ExchangeGateway]


@dataclass
class OrderResult:
    order_id: str
    outcome: str  # completed / submitted / retry / failed / lost_claim
    detail: Dict = field(default_factory=dict)


@dataclass
class QueuePassSummary:
    skipped: bool = False
    reset_stuck: int = 0
    due: int = 0
    claimed: int = 0
    results: List[OrderResult] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "skipped": self.skipped,
            "reset_stuck": self.reset_stuck,
            "due": self.due,
            "claimed": self.claimed,
            "results": [{"order_id": r.order_id, "outcome": r.outcome, **r.detail} for r in self.results],
        }


class ExecutionWorker:
    """
    Drains the order queue.

    Each pass: reset stuck orders, take due orders oldest first, claim each by
    compare-and-swap, then submit / confirm / apply fills. Orders are isolated
    from each other: one order's failure only moves that order to retry/failed.
    """

    def __init__(
        self,
        db: DB,
        queue: OrderQueue,
        bots: BotStore,
        credentials: CredentialStore,
        gateway_factory: GatewayFactory,
        audit: Audit,
        cfg: Optional[QueueSettings] = None,
        dust_threshold: float = 1e-8,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.queue = queue
        self.bots = bots
        self.credentials = credentials
        self.gateway_factory = gateway_factory
        self.audit = audit
        self.cfg = cfg or queue.cfg
        self.dust_threshold = float(dust_threshold)
        self._sleep = sleep
        self._clock = clock

        self.rate_limiter = RateLimiter(self.cfg.max_orders_per_second, clock=clock, sleep=sleep)
        self._cycle_lock = threading.Lock()

    # =========================
    # Entry point
    # =========================
    def process_order_queue(self, now: Optional[datetime] = None) -> QueuePassSummary:
        if not self._cycle_lock.acquire(blocking=False):
            self.audit.event("QUEUE_PASS_SKIPPED", details={"reason": "previous pass still running"})
            return QueuePassSummary(skipped=True)

        try:
            with scheduler_cycle():
                now = now or utc_now()
                summary = QueuePassSummary()
                summary.reset_stuck = self.queue.reset_stuck(now)
                if summary.reset_stuck:
                    self.audit.event("ORDERS_RESET_STUCK", details={"count": summary.reset_stuck})

                due = self.queue.due_orders(now, limit=self.cfg.batch_size)
                summary.due = len(due)

                for order in due:
                    claimed = self.queue.claim(order.id, order.status, now)
                    if claimed is None:
                        # another worker took it
                        continue
                    summary.claimed += 1
                    summary.results.append(self._process_isolated(claimed, now))

                if summary.due:
                    log.info(
                        "queue pass: due=%d claimed=%d reset_stuck=%d",
                        summary.due,
                        summary.claimed,
                        summary.reset_stuck,
                    )
                return summary
        finally:
            self._cycle_lock.release()

    def _process_isolated(self, order: PendingOrder, now: datetime) -> OrderResult:
        try:
            return self._process(order, now)
        except PermanentOrderError as e:
            return self._fail(order, str(e), now, permanent=True)
        except ExchangeError as e:
            return self._fail(order, str(e), now, permanent=False)
        except Exception as e:
            log.exception("order %s crashed", order.id)
            return self._fail(order, f"{type(e).__name__}: {e}", now, permanent=False)

    # =========================
    # One order
    # =========================
    def _process(self, order: PendingOrder, now: datetime) -> OrderResult:
        if order.exchange_order_id:
            return self._requery(order, now)

        if order.placement_uncertain:
            recovered = self._recover_placement(order, now)
            if recovered is not None:
                return recovered

        creds = self.credentials.available_for(order.user_id, exclude=order.failed_credentials)
        if not creds:
            return self._fail(order, "no available credentials for user", now, permanent=True)

        info = self.gateway_factory(creds[0]).get_instrument_info(order.symbol)
        volume = round_volume(order.volume, info)
        price = round_price(order.price, info)
        if not meets_minimum(volume, price or order.price, info):
            raise PermanentOrderError(
                f"order volume {volume} below minimum {info.min_order_size} for {order.symbol}"
            )

        for cred in creds:
            gateway = self.gateway_factory(cred)
            self.rate_limiter.wait()
            try:
                exchange_order_id = gateway.place_order(
                    symbol=order.symbol,
                    side=order.side,
                    order_type=order.order_type,
                    volume=volume,
                    price=price,
                    userref=order.userref,
                )
            except CredentialError as e:
                self.queue.add_failed_credential(order.id, cred.id, str(e), now)
                self.audit.event(
                    "ORDER_CREDENTIAL_FAILED",
                    bot_id=order.bot_id,
                    symbol=order.symbol,
                    action=order.side,
                    details={"order_id": order.id, "credential_id": cred.id, "error": str(e)},
                )
                log.warning("order %s: credential %s rejected: %s", order.id, cred.id, e)
                continue
            except SubmitOutcomeUnknown as e:
                return self._fail(
                    order, str(e), now, permanent=False, credential_id=cred.id, placement_uncertain=True
                )
            except TransientExchangeError as e:
                return self._fail(order, str(e), now, permanent=False, credential_id=cred.id)
            except PermanentOrderError as e:
                return self._fail(order, str(e), now, permanent=True, credential_id=cred.id)

            self.queue.attach_exchange_order(order.id, exchange_order_id, cred.id, now)
            self.audit.event(
                "ORDER_PLACED",
                bot_id=order.bot_id,
                symbol=order.symbol,
                action=order.side,
                details={
                    "order_id": order.id,
                    "exchange_order_id": exchange_order_id,
                    "credential_id": cred.id,
                    "volume": volume,
                    "price": price,
                    "attempt": order.attempts + 1,
                },
            )
            report = self._confirm_fill(gateway, exchange_order_id)
            return self._on_report(order, report, exchange_order_id, cred.id, gateway, now)

        return self._fail(order, "all credentials failed", now, permanent=True)

    def _owning_credential(self, order: PendingOrder) -> Optional[Credential]:
        cred = self.credentials.get(order.credential_id) if order.credential_id else None
        if cred is None or not cred.is_active:
            available = self.credentials.available_for(order.user_id)
            cred = available[0] if available else None
        return cred

    def _requery(self, order: PendingOrder, now: datetime) -> OrderResult:
        cred = self._owning_credential(order)
        if cred is None:
            return self._fail(order, "no credential available to query submitted order", now, permanent=False)

        gateway = self.gateway_factory(cred)
        report = gateway.query_order(order.exchange_order_id)
        return self._on_report(order, report, order.exchange_order_id, cred.id, gateway, now)

    def _recover_placement(self, order: PendingOrder, now: datetime) -> Optional[OrderResult]:
        """
        The last submit ended without an answer. Look the order up by userref:
        if the exchange has it, adopt it instead of placing a second one.
        Returns None when nothing was found and placing again is safe.
        """
        cred = self._owning_credential(order)
        if cred is None:
            return self._fail(order, "no credential available to look up uncertain order", now, permanent=False)

        gateway = self.gateway_factory(cred)
        exchange_order_id = gateway.find_order(order.userref)
        if exchange_order_id is None:
            self.queue.clear_placement_uncertain(order.id, now)
            log.info("order %s: userref %s not found on exchange, placing again", order.id, order.userref)
            return None

        self.queue.attach_exchange_order(order.id, exchange_order_id, cred.id, now)
        self.audit.event(
            "ORDER_RECOVERED",
            bot_id=order.bot_id,
            symbol=order.symbol,
            action=order.side,
            details={
                "order_id": order.id,
                "exchange_order_id": exchange_order_id,
                "credential_id": cred.id,
                "userref": order.userref,
            },
        )
        report = self._confirm_fill(gateway, exchange_order_id)
        return self._on_report(order, report, exchange_order_id, cred.id, gateway, now)

    def _confirm_fill(self, gateway: ExchangeGateway, exchange_order_id: str) -> OrderStatusReport:
        """Poll until filled/canceled or the confirmation window closes."""
        deadline = self._clock() + float(self.cfg.fill_confirm_timeout_seconds)
        while True:
            report = gateway.query_order(exchange_order_id)
            if report.is_filled or report.status == CANCELED:
                return report
            if self._clock() >= deadline:
                return report
            self._sleep(self.cfg.fill_confirm_poll_seconds)

    def _on_report(
        self,
        order: PendingOrder,
        report: OrderStatusReport,
        exchange_order_id: str,
        credential_id: str,
        gateway: ExchangeGateway,
        now: datetime,
    ) -> OrderResult:
        if report.is_filled:
            return self._complete(order, report, exchange_order_id, gateway, now)

        if report.status == CANCELED:
            return self._fail(
                order,
                f"exchange order {exchange_order_id} canceled without fill",
                now,
                permanent=True,
                credential_id=credential_id,
            )

        updated = self.queue.record_submitted(order.id, exchange_order_id, credential_id, now)
        if updated is None:
            return OrderResult(order.id, "lost_claim", {"exchange_order_id": exchange_order_id})

        if updated.status == OrderStatus.FAILED.value:
            self.audit.event(
                "ORDER_FAILED",
                bot_id=order.bot_id,
                symbol=order.symbol,
                action=order.side,
                details={
                    "order_id": order.id,
                    "exchange_order_id": exchange_order_id,
                    "error": updated.last_error,
                    "confirm_checks": updated.confirm_checks,
                },
            )
            log.error("order %s: %s", order.id, updated.last_error)
            if order.side == OrderSide.SELL.value:
                self._mark_exit_failed(order, updated.last_error or "fill not confirmed", now)
            return OrderResult(
                order.id,
                "failed",
                {"exchange_order_id": exchange_order_id, "error": updated.last_error},
            )

        self.audit.event(
            "ORDER_AWAITING_FILL",
            bot_id=order.bot_id,
            symbol=order.symbol,
            action=order.side,
            details={
                "order_id": order.id,
                "exchange_order_id": exchange_order_id,
                "confirm_checks": updated.confirm_checks,
                "next_retry_at": updated.next_retry_at.isoformat() if updated.next_retry_at else None,
            },
        )
        return OrderResult(order.id, "submitted", {"exchange_order_id": exchange_order_id})

    # =========================
    # Side effects
    # =========================
    def _sell_bounds(self, gateway: ExchangeGateway, order: PendingOrder) -> Tuple[float, float]:
        """(instrument minimum, volume actually sent) for a sell order."""
        try:
            info = gateway.get_instrument_info(order.symbol)
        except ExchangeError as e:
            log.warning("instrument info unavailable for %s (%s); using dust threshold only", order.symbol, e)
            return 0.0, float(order.volume)
        return float(info.min_order_size), round_volume(order.volume, info)

    def _complete(
        self,
        order: PendingOrder,
        report: OrderStatusReport,
        exchange_order_id: str,
        gateway: ExchangeGateway,
        now: datetime,
    ) -> OrderResult:
        price = report.executed_price or order.price
        if not price:
            raise TransientExchangeError(f"fill price unknown for exchange order {exchange_order_id}")
        volume = float(report.executed_volume)

        dust = self.dust_threshold
        intended = float(order.volume)
        if order.side == OrderSide.SELL.value:
            min_size, intended = self._sell_bounds(gateway, order)
            dust = max(dust, min_size)

        detail: Dict = {
            "exchange_order_id": exchange_order_id,
            "executed_price": price,
            "executed_volume": volume,
        }
        events: List[tuple] = []

        # fill application and order completion commit together or not at all
        with self.db.transaction() as conn:
            if not self.queue.mark_completed(order.id, price, volume, now, exchange_order_id, conn=conn):
                return OrderResult(order.id, "lost_claim", detail)

            bot = self.bots.get(order.bot_id, conn=conn)
            if bot is None:
                events.append(("ORDER_COMPLETED_ORPHAN", {"order_id": order.id}))
            elif order.side == OrderSide.BUY.value:
                updated, entry = apply_buy_fill(
                    bot,
                    price,
                    volume,
                    now,
                    order_amount=order.amount if order.amount is not None else price * volume,
                    exchange_order_id=exchange_order_id,
                    pending_order_id=order.id,
                )
                self.bots.save_position(updated, conn=conn, now=now)
                self.bots.append_entry(entry, conn=conn)
                detail.update(
                    entry_number=entry.entry_number,
                    average_entry_price=updated.average_entry_price,
                    take_profit_price=updated.current_take_profit_price,
                )
                events.append(("BUY_FILLED", detail))
            else:
                started = self.bots.cycle_started_at(bot.id, bot.cycle_number, conn=conn)
                outcome = apply_sell_fill(
                    bot, price, volume, now, dust, started, intended_quantity=intended
                )
                self.bots.save_position(outcome.bot, conn=conn, now=now)
                if outcome.cycle is not None:
                    self.bots.archive_cycle(outcome.cycle, conn=conn)
                if bot.status == BotStatus.EXITING.value:
                    self.bots.cas_status(
                        bot.id, BotStatus.EXITING.value, outcome.bot.status, now=now, conn=conn
                    )
                detail.update(
                    realized_pnl=outcome.realized_pnl,
                    remaining_volume=outcome.bot.total_volume if not outcome.completed else 0.0,
                    retained_volume=outcome.cycle.retained_volume if outcome.cycle else 0.0,
                    cycle_completed=outcome.completed,
                )
                events.append(("SELL_FILLED", detail))
                if outcome.completed:
                    events.append(
                        ("CYCLE_COMPLETED", {"cycle_id": bot.cycle_id, "cycle_number": bot.cycle_number})
                    )

        for event_type, details in events:
            self.audit.event(
                event_type,
                bot_id=order.bot_id,
                symbol=order.symbol,
                action=order.side,
                details={"order_id": order.id, **details},
            )
        log.info("order %s %s filled: %.8f @ %.8f", order.id, order.side, volume, price)
        return OrderResult(order.id, "completed", detail)

    def _fail(
        self,
        order: PendingOrder,
        error: str,
        now: datetime,
        permanent: bool,
        credential_id: Optional[str] = None,
        placement_uncertain: bool = False,
    ) -> OrderResult:
        updated = self.queue.record_failure(
            order.id,
            error,
            now,
            credential_id=credential_id,
            permanent=permanent,
            placement_uncertain=placement_uncertain,
        )
        if updated is None:
            return OrderResult(order.id, "lost_claim", {"error": error})

        failed = updated.status == OrderStatus.FAILED.value
        self.audit.event(
            "ORDER_FAILED" if failed else "ORDER_RETRY",
            bot_id=order.bot_id,
            symbol=order.symbol,
            action=order.side,
            details={
                "order_id": order.id,
                "error": error,
                "attempts": updated.attempts,
                "max_attempts": updated.max_attempts,
                "next_retry_at": updated.next_retry_at.isoformat() if updated.next_retry_at else None,
                "permanent": permanent,
            },
        )

        if failed:
            log.error("order %s failed after %d attempt(s): %s", order.id, updated.attempts, error)
            if order.side == OrderSide.SELL.value:
                self._mark_exit_failed(order, error, now)
        else:
            log.warning("order %s will retry (%d/%d): %s", order.id, updated.attempts, updated.max_attempts, error)

        return OrderResult(
            order.id,
            "failed" if failed else "retry",
            {"error": error, "attempts": updated.attempts},
        )

    def _mark_exit_failed(self, order: PendingOrder, error: str, now: datetime) -> None:
        bot = self.bots.get(order.bot_id)
        if bot is None or bot.status != BotStatus.EXITING.value:
            return
        if self.bots.cas_status(bot.id, BotStatus.EXITING.value, BotStatus.EXIT_FAILED.value, now=now):
            self.audit.event(
                "BOT_EXIT_FAILED",
                bot_id=bot.id,
                symbol=bot.symbol,
                details={"order_id": order.id, "error": error},
            )
