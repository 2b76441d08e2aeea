from datetime import timedelta

import pytest

from dcaladder.bots.models import BotConfig
from dcaladder.execution.cost_basis import apply_buy_fill, apply_sell_fill


def _bot(**kw) -> BotConfig:
    base = dict(
        symbol="BTC/USD",
        initial_order_amount=100.0,
        trade_multiplier=2.0,
        max_entries=4,
        step_percent=1.0,
        step_multiplier=2.0,
        take_profit_percent=3.0,
        status="active",
    )
    base.update(kw)
    return BotConfig(**base)


def test_average_from_running_totals(now):
    bot = _bot()
    fills = [(100.0, 1.0), (99.0, 2.0), (97.02, 4.0)]
    for i, (px, qty) in enumerate(fills):
        bot, entry = apply_buy_fill(bot, px, qty, now + timedelta(minutes=i))
        assert entry.entry_number == i + 1
        assert bot.average_entry_price * bot.total_volume == pytest.approx(bot.total_invested)

    assert bot.current_entry_count == 3
    assert bot.total_volume == pytest.approx(7.0)
    assert bot.total_invested == pytest.approx(100.0 + 198.0 + 388.08)
    assert bot.last_entry_price == 97.02
    assert bot.last_entry_time == now + timedelta(minutes=2)
    assert bot.current_take_profit_price == pytest.approx(bot.average_entry_price * 1.03)


def test_buy_fill_refused_past_max_entries(now):
    bot = _bot(max_entries=1)
    bot, _ = apply_buy_fill(bot, 100.0, 1.0, now)
    with pytest.raises(ValueError):
        apply_buy_fill(bot, 99.0, 1.0, now)


def test_partial_exit_finishes_cycle_and_retains_remainder(now):
    bot = _bot(
        status="exiting",
        current_entry_count=2,
        total_volume=10.0,
        total_invested=1000.0,
        average_entry_price=100.0,
        current_take_profit_price=103.0,
        retained_volume=0.5,
    )
    out = apply_sell_fill(bot, 103.0, 9.0, now, dust_threshold=1e-8, intended_quantity=9.0)

    assert out.completed
    assert out.bot.status == "completed"
    assert out.realized_pnl == pytest.approx(27.0)
    assert out.bot.current_entry_count == 0
    assert out.bot.total_volume == 0.0
    assert out.bot.current_take_profit_price is None
    assert out.bot.retained_volume == pytest.approx(1.5)
    assert out.cycle.retained_volume == pytest.approx(1.0)
    assert out.cycle.total_volume == 10.0


def test_short_sell_fill_keeps_position_active(now):
    bot = _bot(status="exiting", current_entry_count=2, total_volume=10.0, total_invested=1000.0, average_entry_price=100.0)
    out = apply_sell_fill(bot, 103.0, 6.0, now, dust_threshold=1e-8, intended_quantity=9.0)

    assert not out.completed
    assert out.cycle is None
    assert out.bot.status == "active"
    assert out.bot.total_volume == pytest.approx(4.0)
    assert out.bot.total_invested == pytest.approx(400.0)
    assert out.bot.average_entry_price == pytest.approx(100.0)
    assert out.realized_pnl == pytest.approx(18.0)
    assert out.bot.current_entry_count == 2
    assert out.bot.retained_volume == 0.0


def test_fill_within_dust_of_intended_counts_as_complete(now):
    bot = _bot(status="exiting", current_entry_count=1, total_volume=10.0, total_invested=1000.0, average_entry_price=100.0)
    out = apply_sell_fill(bot, 103.0, 8.99995, now, dust_threshold=0.0001, intended_quantity=9.0)
    assert out.completed
    assert out.bot.retained_volume == pytest.approx(1.00005)


def test_full_sell_completes_and_archives_cycle(now):
    bot = _bot(
        status="exiting",
        current_entry_count=2,
        total_volume=3.0,
        total_invested=298.0,
        average_entry_price=298.0 / 3.0,
        last_entry_price=99.0,
        last_entry_time=now,
        cycle_number=1,
        cycle_realized_pnl=5.0,
        realized_pnl=5.0,
    )
    out = apply_sell_fill(bot, 110.0, 3.0, now, dust_threshold=1e-8, cycle_started_at=now - timedelta(days=1))

    assert out.completed
    assert out.bot.status == "completed"
    assert out.bot.current_entry_count == 0
    assert out.bot.total_volume == 0.0
    assert out.bot.total_invested == 0.0
    assert out.bot.average_entry_price == 0.0
    assert out.bot.last_entry_price is None
    assert out.bot.cycle_number == 2
    assert out.bot.cycle_id != bot.cycle_id

    assert out.cycle.cycle_id == bot.cycle_id
    assert out.cycle.entries == 2
    assert out.cycle.exit_price == 110.0
    assert out.cycle.realized_pnl == pytest.approx(5.0 + 330.0 - 298.0)
    assert out.bot.realized_pnl == pytest.approx(5.0 + 32.0)
    assert out.bot.cycle_realized_pnl == 0.0


def test_remainder_below_dust_completes(now):
    bot = _bot(status="exiting", current_entry_count=1, total_volume=1.0, total_invested=100.0, average_entry_price=100.0)
    out = apply_sell_fill(bot, 105.0, 0.9999, now, dust_threshold=0.001)
    assert out.completed
    assert out.bot.total_volume == 0.0


def test_sell_more_than_held_is_capped(now):
    bot = _bot(status="exiting", current_entry_count=1, total_volume=1.0, total_invested=100.0, average_entry_price=100.0)
    out = apply_sell_fill(bot, 105.0, 2.0, now)
    assert out.sold_volume == 1.0
    assert out.completed
