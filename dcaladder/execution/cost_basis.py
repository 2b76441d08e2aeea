# dcaladder/execution/cost_basis.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from dcaladder.bots.models import BotConfig, BotStatus, CycleRecord, Entry, new_cycle_id
from dcaladder.strategy.dca_engine import take_profit_price


@dataclass(frozen=True)
class SellOutcome:
    bot: BotConfig
    sold_volume: float
    realized_pnl: float
    completed: bool
    cycle: Optional[CycleRecord] = None


def apply_buy_fill(
    bot: BotConfig,
    price: float,
    quantity: float,
    now: datetime,
    order_amount: Optional[float] = None,
    exchange_order_id: Optional[str] = None,
    pending_order_id: Optional[str] = None,
) -> Tuple[BotConfig, Entry]:
    """
    Fold one confirmed buy fill into the running aggregates.
    Average comes from the running totals, never from averaging averages.
    """
    price = float(price)
    quantity = float(quantity)
    if price <= 0 or quantity <= 0:
        raise ValueError(f"buy fill needs price > 0 and quantity > 0 (got {price}, {quantity})")
    if bot.current_entry_count >= bot.max_entries:
        raise ValueError(f"bot {bot.id} already has {bot.current_entry_count}/{bot.max_entries} entries")

    entry_number = int(bot.current_entry_count) + 1
    invested = float(bot.total_invested) + price * quantity
    volume = float(bot.total_volume) + quantity
    average = invested / volume

    entry = Entry(
        bot_id=bot.id,
        entry_number=entry_number,
        price=price,
        quantity=quantity,
        order_amount=float(order_amount) if order_amount is not None else price * quantity,
        timestamp=now,
        cycle_id=bot.cycle_id,
        cycle_number=bot.cycle_number,
        exchange_order_id=exchange_order_id,
        pending_order_id=pending_order_id,
    )

    updated = bot.copy(
        current_entry_count=entry_number,
        total_invested=invested,
        total_volume=volume,
        average_entry_price=average,
        last_entry_price=price,
        last_entry_time=now,
        current_take_profit_price=take_profit_price(average, bot.take_profit_percent),
        updated_at=now,
    )
    return updated, entry


def apply_sell_fill(
    bot: BotConfig,
    price: float,
    quantity: float,
    now: datetime,
    dust_threshold: float = 1e-8,
    cycle_started_at: Optional[datetime] = None,
    intended_quantity: Optional[float] = None,
) -> SellOutcome:
    """
    Fold one confirmed sell fill into the aggregates.

    Volume and invested shrink by the sold fraction, so the average entry
    price of what is left is unchanged.

    The ladder is finished when the remainder is below dust or when the fill
    covered the exit order's full `intended_quantity` (within dust). In that
    case the cycle is archived (position as of the final exit, pnl over the
    whole cycle), anything left over moves to retained_volume, aggregates
    reset and a new cycle id starts. A fill short of the intended quantity
    keeps the reduced position and sends the bot back to active.
    """
    price = float(price)
    held = float(bot.total_volume)
    sold = min(float(quantity), held)
    if price <= 0 or sold <= 0:
        raise ValueError(f"sell fill needs price > 0 and a held quantity (got {price}, {quantity}, held {held})")

    dust = max(0.0, float(dust_threshold))
    fraction = sold / held
    cost_of_sold = float(bot.total_invested) * fraction
    pnl = price * sold - cost_of_sold

    remaining_volume = held - sold
    remaining_invested = float(bot.total_invested) - cost_of_sold
    cycle_pnl = float(bot.cycle_realized_pnl) + pnl
    total_pnl = float(bot.realized_pnl) + pnl

    target = min(float(intended_quantity), held) if intended_quantity is not None else sold
    exit_done = remaining_volume < dust or (target - sold) <= dust

    if exit_done:
        retained = remaining_volume if remaining_volume >= dust else 0.0
        record = CycleRecord(
            bot_id=bot.id,
            cycle_id=bot.cycle_id,
            cycle_number=bot.cycle_number,
            entries=bot.current_entry_count,
            total_invested=float(bot.total_invested),
            total_volume=held,
            average_entry_price=float(bot.average_entry_price),
            exit_price=price,
            realized_pnl=cycle_pnl,
            started_at=cycle_started_at,
            completed_at=now,
            retained_volume=retained,
        )
        updated = bot.copy(
            status=BotStatus.COMPLETED.value,
            current_entry_count=0,
            total_invested=0.0,
            total_volume=0.0,
            average_entry_price=0.0,
            last_entry_price=None,
            last_entry_time=None,
            current_take_profit_price=None,
            realized_pnl=total_pnl,
            cycle_realized_pnl=0.0,
            retained_volume=float(bot.retained_volume) + retained,
            cycle_id=new_cycle_id(),
            cycle_number=int(bot.cycle_number) + 1,
            updated_at=now,
        )
        return SellOutcome(updated, sold, pnl, True, record)

    # short fill: keep the ladder position, back to active
    updated = bot.copy(
        status=BotStatus.ACTIVE.value,
        total_volume=remaining_volume,
        total_invested=remaining_invested,
        realized_pnl=total_pnl,
        cycle_realized_pnl=cycle_pnl,
        updated_at=now,
    )
    return SellOutcome(updated, sold, pnl, False, None)
