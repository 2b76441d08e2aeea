# dcaladder/strategy/dca_engine.py
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import AbstractSet, List, Optional

from dcaladder.bots.models import BotConfig, BotStatus


class Action(str, Enum):
    NONE = "none"
    ENTER = "enter"
    EXIT = "exit"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    amount: float = 0.0  # quote currency to spend (ENTER)
    quantity: float = 0.0  # base volume to sell (EXIT)
    target_price: Optional[float] = None


def _none(reason: str, target_price: Optional[float] = None) -> Decision:
    return Decision(Action.NONE, reason, target_price=target_price)


def _at_or_below(price: float, target: float) -> bool:
    return price <= target or math.isclose(price, target, rel_tol=1e-12)


def _at_or_above(price: float, target: float) -> bool:
    return price >= target or math.isclose(price, target, rel_tol=1e-12)


# =========================
# Ladder math
# =========================
def order_amount_for(entry_index: int, initial_amount: float, trade_multiplier: float) -> float:
    """Quote amount for the entry at 0-based index `entry_index`."""
    return float(initial_amount) * float(trade_multiplier) ** int(entry_index)


def step_percent_for(entry_index: int, step_percent: float, step_multiplier: float) -> float:
    """
    Required drop (percent) below the previous fill for the entry at 0-based
    index `entry_index`. The first re-entry (index 1) drops `step_percent`,
    each following rung multiplies the drop by `step_multiplier`.
    """
    if entry_index <= 1:
        return float(step_percent)
    return float(step_percent) * float(step_multiplier) ** (int(entry_index) - 1)


def target_entry_price(bot: BotConfig) -> Optional[float]:
    """
    Trigger price for the next re-entry, anchored to the last FILLED entry
    price. Returns None while no entry has filled yet.
    """
    n = int(bot.current_entry_count)
    if n <= 0 or not bot.last_entry_price:
        return None
    drop = step_percent_for(n, bot.step_percent, bot.step_multiplier)
    return float(bot.last_entry_price) * (100.0 - drop) / 100.0


def take_profit_price(average_entry_price: float, take_profit_percent: float) -> float:
    return float(average_entry_price) * (100.0 + float(take_profit_percent)) / 100.0


def ladder_targets(bot: BotConfig, from_price: Optional[float] = None) -> List[float]:
    """
    Preview of the remaining rungs, assuming each one fills exactly at its
    trigger. Starts from `from_price` or the last filled entry price.
    """
    anchor = from_price if from_price is not None else bot.last_entry_price
    if not anchor:
        return []
    out: List[float] = []
    price = float(anchor)
    for idx in range(max(1, int(bot.current_entry_count)), int(bot.max_entries)):
        price = price * (100.0 - step_percent_for(idx, bot.step_percent, bot.step_multiplier)) / 100.0
        out.append(price)
    return out


# =========================
# Decision
# =========================
def decide(
    bot: BotConfig,
    current_price: float,
    now: datetime,
    open_sides: AbstractSet[str] = frozenset(),
) -> Decision:
    """
    Pure DCA decision for one bot.

    - only 'active' bots are evaluated
    - exit (take profit) is checked before entry
    - at most one outstanding order per side (`open_sides` holds the sides
      that already have a pending/processing/retry order)

    Caller applies the result (enqueue order, move state machine).
    """
    if bot.status != BotStatus.ACTIVE.value:
        return _none(f"status={bot.status}")

    if current_price is None or not (current_price > 0) or math.isinf(current_price):
        return _none("invalid_price")

    n = int(bot.current_entry_count)

    # --- Exit ---
    if n > 0 and bot.total_volume > 0 and bot.average_entry_price > 0:
        tp = take_profit_price(bot.average_entry_price, bot.take_profit_percent)
        if _at_or_above(current_price, tp):
            if "sell" in open_sides:
                return _none("sell_order_outstanding", tp)
            qty = float(bot.total_volume) * float(bot.exit_percentage) / 100.0
            if qty <= 0:
                return _none("nothing_to_sell", tp)
            return Decision(Action.EXIT, "take_profit_reached", quantity=qty, target_price=tp)

    # --- Entry ---
    if n >= int(bot.max_entries):
        return _none("max_entries_reached")

    if "buy" in open_sides:
        return _none("buy_order_outstanding")

    amount = order_amount_for(n, bot.initial_order_amount, bot.trade_multiplier)

    if n == 0:
        return Decision(Action.ENTER, "first_entry", amount=amount, target_price=current_price)

    if bot.last_entry_time is not None and bot.re_entry_delay_minutes > 0:
        ready_at = bot.last_entry_time + timedelta(minutes=float(bot.re_entry_delay_minutes))
        if now < ready_at:
            remaining = (ready_at - now).total_seconds() / 60.0
            return _none(f"re_entry_delay ({remaining:.1f} min remaining)")

    target = target_entry_price(bot)
    if target is None:
        return _none("no_filled_entry_price")

    if not _at_or_below(current_price, target):
        return _none("price_above_target", target)

    return Decision(Action.ENTER, f"ladder_step_{n + 1}", amount=amount, target_price=target)
