# dcaladder/runner/runner.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dcaladder.bots.models import BotConfig, BotStatus
from dcaladder.exchange.gateway import PriceFeed
from dcaladder.ops.context import scheduler_cycle
from dcaladder.persistence.audit import Audit
from dcaladder.persistence.bot_store import BotStore
from dcaladder.persistence.order_queue import OrderQueue, OrderSide
from dcaladder.persistence.db import utc_now
from dcaladder.strategy.dca_engine import Action, decide

log = logging.getLogger("dcaladder.runner")


class BotRunner:
    """
    Evaluation side of the system: runs the DCA engine for every active bot
    and turns decisions into queued orders. Never talks to the exchange's
    order endpoints; that is the worker's job.
    """

    def __init__(
        self,
        bots: BotStore,
        queue: OrderQueue,
        price_feed: PriceFeed,
        audit: Audit,
        exit_failed_policy: str = "manual",
        exit_failed_retry_minutes: float = 30.0,
    ):
        self.bots = bots
        self.queue = queue
        self.price_feed = price_feed
        self.audit = audit
        self.exit_failed_policy = (exit_failed_policy or "manual").lower()
        self.exit_failed_retry_minutes = float(exit_failed_retry_minutes)

        self._cycle_lock = threading.Lock()

    # =========================
    # Entry point
    # =========================
    def evaluate_all_active_bots(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        # one cycle at a time; an overlapping tick is skipped
        if not self._cycle_lock.acquire(blocking=False):
            self.audit.event(
                "CYCLE_SKIPPED",
                action="CYCLE_ALREADY_RUNNING",
                details={"note": "Previous evaluation still running"},
            )
            return {"skipped": True, "reason": "CYCLE_ALREADY_RUNNING"}

        try:
            with scheduler_cycle() as cycle_id:
                now = now or utc_now()

                retried = self._auto_retry_exit_failed(now) if self.exit_failed_policy == "auto" else []

                bots = self.bots.list_by_status(BotStatus.ACTIVE.value)
                self.audit.event("CYCLE_START", details={"active_bots": len(bots), "auto_retried": retried})

                prices: Dict[str, Optional[float]] = {}
                results: List[Dict[str, Any]] = []

                for bot in bots:
                    try:
                        if bot.symbol not in prices:
                            prices[bot.symbol] = self.price_feed.get_current_price(bot.symbol)
                        results.append(self.step_bot(bot, prices[bot.symbol], now))
                    except Exception as e:
                        # never kill the whole cycle for one bot
                        log.exception("bot %s evaluation failed", bot.id)
                        self.audit.event(
                            "ERROR",
                            bot_id=bot.id,
                            symbol=bot.symbol,
                            action="EVALUATE_BOT_FAILED",
                            details={"error": f"{type(e).__name__}: {e}"},
                        )
                        results.append({"bot_id": bot.id, "ok": False, "error": repr(e)})

                enqueued = sum(1 for r in results if r.get("order_id"))
                self.audit.event("CYCLE_END", details={"evaluated": len(results), "enqueued": enqueued})

                return {
                    "cycle_id": cycle_id,
                    "evaluated": len(results),
                    "enqueued": enqueued,
                    "auto_retried": retried,
                    "results": results,
                }
        finally:
            self._cycle_lock.release()

    # =========================
    # One bot
    # =========================
    def step_bot(self, bot: BotConfig, price: float, now: datetime) -> Dict[str, Any]:
        open_sides = self.queue.outstanding_sides(bot.id)
        decision = decide(bot, price, now, open_sides)
        out: Dict[str, Any] = {
            "bot_id": bot.id,
            "symbol": bot.symbol,
            "price": price,
            "action": decision.action.value,
            "reason": decision.reason,
            "ok": True,
        }

        if decision.action == Action.ENTER:
            volume = decision.amount / price
            order = self.queue.enqueue(
                user_id=bot.user_id,
                bot_id=bot.id,
                symbol=bot.symbol,
                side=OrderSide.BUY.value,
                volume=volume,
                price=price,
                amount=decision.amount,
                reason=f"entry {bot.current_entry_count + 1}/{bot.max_entries}: {decision.reason}",
                now=now,
            )
            if order is None:
                out.update(action=Action.NONE.value, reason="buy_order_outstanding")
                return out

            self.audit.event(
                "ENTRY_ENQUEUED",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="buy",
                details={
                    "order_id": order.id,
                    "entry_number": bot.current_entry_count + 1,
                    "amount": decision.amount,
                    "volume": volume,
                    "price": price,
                    "target_price": decision.target_price,
                },
            )
            out.update(order_id=order.id, amount=decision.amount, volume=volume)
            return out

        if decision.action == Action.EXIT:
            return self._start_exit(bot, price, decision.quantity, decision.reason, now, out)

        return out

    def _start_exit(
        self,
        bot: BotConfig,
        price: float,
        quantity: float,
        reason: str,
        now: datetime,
        out: Dict[str, Any],
    ) -> Dict[str, Any]:
        # claim the exit first so a second evaluation cannot enqueue another sell
        if not self.bots.cas_status(bot.id, BotStatus.ACTIVE.value, BotStatus.EXITING.value, now=now):
            out.update(action=Action.NONE.value, reason="status_changed")
            return out

        try:
            order = self.queue.enqueue(
                user_id=bot.user_id,
                bot_id=bot.id,
                symbol=bot.symbol,
                side=OrderSide.SELL.value,
                volume=quantity,
                price=price,
                reason=f"take profit: {reason}",
                now=now,
            )
        except Exception:
            self.bots.cas_status(bot.id, BotStatus.EXITING.value, BotStatus.ACTIVE.value, now=now)
            raise

        if order is None:
            # a sell is already outstanding; it owns the exit
            self.bots.cas_status(bot.id, BotStatus.EXITING.value, BotStatus.ACTIVE.value, now=now)
            out.update(action=Action.NONE.value, reason="sell_order_outstanding")
            return out

        self.audit.event(
            "EXIT_ENQUEUED",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="sell",
            details={
                "order_id": order.id,
                "quantity": quantity,
                "price": price,
                "average_entry_price": bot.average_entry_price,
                "take_profit_price": bot.current_take_profit_price,
            },
        )
        out.update(order_id=order.id, quantity=quantity)
        return out

    # =========================
    # exit_failed policy
    # =========================
    def _auto_retry_exit_failed(self, now: datetime) -> List[str]:
        cutoff = now - timedelta(minutes=self.exit_failed_retry_minutes)
        retried: List[str] = []
        for bot in self.bots.list_by_status(BotStatus.EXIT_FAILED.value):
            if bot.status_changed_at and bot.status_changed_at > cutoff:
                continue
            if self.bots.cas_status(bot.id, BotStatus.EXIT_FAILED.value, BotStatus.ACTIVE.value, now=now):
                retried.append(bot.id)
                self.audit.event(
                    "EXIT_AUTO_RETRY",
                    bot_id=bot.id,
                    symbol=bot.symbol,
                    details={"after_minutes": self.exit_failed_retry_minutes},
                )
        return retried
