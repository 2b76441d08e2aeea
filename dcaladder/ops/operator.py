# dcaladder/ops/operator.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from dcaladder.bots.models import BotConfig, BotStatus
from dcaladder.core.errors import InvalidTransition, NotFound
from dcaladder.persistence.audit import Audit
from dcaladder.persistence.bot_store import BotStore
from dcaladder.persistence.db import utc_now
from dcaladder.persistence.order_queue import OrderQueue, OrderSide

log = logging.getLogger("dcaladder.operator")


class Operator:
    """
    Explicit operator actions. Each one is a single state mutation and
    leaves an OPERATOR_* audit event.
    """

    def __init__(self, bots: BotStore, queue: OrderQueue, audit: Audit):
        self.bots = bots
        self.queue = queue
        self.audit = audit

    def _move(self, bot_id: str, expected: str, target: str, action: str, now: Optional[datetime] = None) -> BotConfig:
        bot = self.bots.require(bot_id)
        if bot.status != expected or not self.bots.cas_status(bot_id, expected, target, now=now or utc_now()):
            raise InvalidTransition(bot_id, bot.status, target)
        self.audit.event(
            f"OPERATOR_{action}",
            bot_id=bot_id,
            symbol=bot.symbol,
            action=action,
            details={"from": expected, "to": target},
        )
        log.info("operator %s bot %s: %s -> %s", action.lower(), bot_id, expected, target)
        return self.bots.require(bot_id)

    # ---------- BOTS ----------
    def create_bot(self, bot: BotConfig) -> BotConfig:
        created = self.bots.create(bot)
        self.audit.event(
            "OPERATOR_CREATE",
            bot_id=created.id,
            symbol=created.symbol,
            action="CREATE",
            details={
                "initial_order_amount": created.initial_order_amount,
                "max_entries": created.max_entries,
                "step_percent": created.step_percent,
                "step_multiplier": created.step_multiplier,
                "take_profit_percent": created.take_profit_percent,
            },
        )
        return created

    def pause(self, bot_id: str) -> BotConfig:
        return self._move(bot_id, BotStatus.ACTIVE.value, BotStatus.PAUSED.value, "PAUSE")

    def resume(self, bot_id: str) -> BotConfig:
        return self._move(bot_id, BotStatus.PAUSED.value, BotStatus.ACTIVE.value, "RESUME")

    def retry_exit(self, bot_id: str) -> BotConfig:
        """exit_failed -> active; the next evaluation re-checks the exit from scratch."""
        return self._move(bot_id, BotStatus.EXIT_FAILED.value, BotStatus.ACTIVE.value, "RETRY_EXIT")

    def restart(self, bot_id: str) -> BotConfig:
        """completed -> active: start a fresh ladder on the next evaluation."""
        return self._move(bot_id, BotStatus.COMPLETED.value, BotStatus.ACTIVE.value, "RESTART")

    def force_exit(self, bot_id: str, price: Optional[float] = None) -> Dict[str, Any]:
        """
        Sell the whole position now regardless of the take-profit price.
        active -> exiting plus one queued sell for total_volume.
        """
        bot = self.bots.require(bot_id)
        if bot.status != BotStatus.ACTIVE.value:
            raise InvalidTransition(bot_id, bot.status, BotStatus.EXITING.value)
        if not bot.has_position:
            raise InvalidTransition(bot_id, bot.status, BotStatus.EXITING.value)

        now = utc_now()
        if not self.bots.cas_status(bot_id, BotStatus.ACTIVE.value, BotStatus.EXITING.value, now=now):
            raise InvalidTransition(bot_id, bot.status, BotStatus.EXITING.value)

        try:
            order = self.queue.enqueue(
                user_id=bot.user_id,
                bot_id=bot.id,
                symbol=bot.symbol,
                side=OrderSide.SELL.value,
                volume=bot.total_volume,
                price=price,
                reason="operator force exit",
                now=now,
            )
        except Exception:
            self.bots.cas_status(bot_id, BotStatus.EXITING.value, BotStatus.ACTIVE.value)
            raise

        if order is None:
            self.bots.cas_status(bot_id, BotStatus.EXITING.value, BotStatus.ACTIVE.value)
            raise InvalidTransition(bot_id, "sell order outstanding", BotStatus.EXITING.value)

        self.audit.event(
            "OPERATOR_FORCE_EXIT",
            bot_id=bot_id,
            symbol=bot.symbol,
            action="FORCE_EXIT",
            details={"order_id": order.id, "quantity": bot.total_volume},
        )
        return {"bot": self.bots.require(bot_id), "order": order}

    def delete_bot(self, bot_id: str) -> Dict[str, int]:
        bot = self.bots.require(bot_id)
        removed = self.bots.delete(bot_id)
        self.audit.event(
            "OPERATOR_DELETE",
            bot_id=bot_id,
            symbol=bot.symbol,
            action="DELETE",
            details=removed,
        )
        return removed

    # ---------- ORDERS ----------
    def clear_failed_credentials(self, order_id: str) -> bool:
        order = self.queue.get(order_id)
        if order is None:
            raise NotFound(f"order not found: {order_id}")
        ok = self.queue.clear_failed_credentials(order_id)
        self.audit.event(
            "OPERATOR_CLEAR_FAILED_CREDENTIALS",
            bot_id=order.bot_id,
            symbol=order.symbol,
            action="CLEAR_FAILED_CREDENTIALS",
            details={"order_id": order_id, "cleared": list(order.failed_credentials)},
        )
        return ok

    def clear_all_failed_credentials(self) -> int:
        n = self.queue.clear_all_failed_credentials()
        self.audit.event(
            "OPERATOR_CLEAR_FAILED_CREDENTIALS",
            action="CLEAR_ALL_FAILED_CREDENTIALS",
            details={"orders": n},
        )
        return n
