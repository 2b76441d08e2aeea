from datetime import timedelta

import pytest

from dcaladder.bots.models import BotConfig, Entry
from dcaladder.core.errors import ConfigurationError, InvalidTransition, NotFound
from dcaladder.ops.operator import Operator


def _cfg(**kw) -> BotConfig:
    base = dict(
        symbol="btc/usd",
        initial_order_amount=100.0,
        trade_multiplier=2.0,
        max_entries=5,
        step_percent=1.0,
        step_multiplier=2.0,
        take_profit_percent=3.0,
        user_id="u1",
    )
    base.update(kw)
    return BotConfig(**base)


@pytest.fixture
def operator(bots, queue, audit):
    return Operator(bots, queue, audit)


def test_create_bot_validates_and_normalizes(operator, audit):
    bot = operator.create_bot(_cfg())
    assert bot.symbol == "BTC/USD"
    assert bot.status == "active"
    assert audit.recent(1)[0]["event_type"] == "OPERATOR_CREATE"

    with pytest.raises(ConfigurationError):
        operator.create_bot(_cfg(step_percent=0))
    with pytest.raises(ConfigurationError):
        operator.create_bot(_cfg(step_percent=30.0, step_multiplier=3.0, max_entries=5))


def test_pause_and_resume(operator):
    bot = operator.create_bot(_cfg())
    assert operator.pause(bot.id).status == "paused"
    with pytest.raises(InvalidTransition):
        operator.pause(bot.id)
    assert operator.resume(bot.id).status == "active"


@pytest.mark.parametrize("action", ["retry_exit", "restart", "resume"])
def test_disallowed_transitions_from_active(operator, action):
    bot = operator.create_bot(_cfg())
    with pytest.raises(InvalidTransition):
        getattr(operator, action)(bot.id)


def test_unknown_bot_raises_not_found(operator):
    with pytest.raises(NotFound):
        operator.pause("nope")


def test_retry_exit_from_exit_failed(operator, bots, now):
    bot = operator.create_bot(_cfg())
    bots.cas_status(bot.id, "active", "exiting", now=now)
    bots.cas_status(bot.id, "exiting", "exit_failed", now=now)
    assert operator.retry_exit(bot.id).status == "active"


def test_restart_completed_bot(operator, bots, now):
    bot = operator.create_bot(_cfg())
    bots.cas_status(bot.id, "active", "exiting", now=now)
    bots.cas_status(bot.id, "exiting", "completed", now=now)
    assert operator.restart(bot.id).status == "active"


def test_force_exit_enqueues_full_position(operator, bots, queue, now):
    bot = operator.create_bot(_cfg())
    bots.save_position(
        bot.copy(current_entry_count=2, total_volume=3.0, total_invested=298.0, average_entry_price=298.0 / 3)
    )

    out = operator.force_exit(bot.id, price=95.0)

    assert out["bot"].status == "exiting"
    assert out["order"].side == "sell"
    assert out["order"].volume == 3.0
    assert queue.outstanding_sides(bot.id) == frozenset({"sell"})

    with pytest.raises(InvalidTransition):
        operator.force_exit(bot.id)


def test_force_exit_without_position_refused(operator, bots):
    bot = operator.create_bot(_cfg())
    with pytest.raises(InvalidTransition):
        operator.force_exit(bot.id)
    assert bots.get(bot.id).status == "active"


def test_force_exit_reverts_when_sell_outstanding(operator, bots, queue, now):
    bot = operator.create_bot(_cfg())
    bots.save_position(bot.copy(current_entry_count=1, total_volume=1.0, total_invested=100.0, average_entry_price=100.0))
    queue.enqueue("u1", bot.id, bot.symbol, "sell", 1.0, now=now)

    with pytest.raises(InvalidTransition):
        operator.force_exit(bot.id)
    assert bots.get(bot.id).status == "active"


def test_delete_bot_removes_children_in_batches(operator, bots, queue, now):
    bot = operator.create_bot(_cfg(max_entries=20, step_percent=1.0, step_multiplier=1.0))
    for i in range(1, 8):
        bots.append_entry(
            Entry(
                bot_id=bot.id,
                entry_number=i,
                price=100.0 - i,
                quantity=1.0,
                order_amount=100.0 - i,
                timestamp=now + timedelta(minutes=i),
                cycle_id=bot.cycle_id,
                cycle_number=1,
            )
        )
    queue.enqueue("u1", bot.id, bot.symbol, "buy", 1.0, now=now)

    removed = bots.delete(bot.id, batch_size=3)
    assert removed == {"entries": 7, "cycles": 0, "pending_orders": 1, "bots": 1}
    assert bots.get(bot.id) is None
    assert bots.list_entries(bot.id) == []

    with pytest.raises(NotFound):
        operator.delete_bot(bot.id)


def test_delete_bot_via_operator(operator, bots, audit):
    bot = operator.create_bot(_cfg())
    removed = operator.delete_bot(bot.id)
    assert removed["bots"] == 1
    assert audit.recent(1)[0]["event_type"] == "OPERATOR_DELETE"


def test_clear_failed_credentials(operator, queue, now):
    order = queue.enqueue("u1", "bot-x", "BTC/USD", "buy", 1.0, now=now)
    queue.add_failed_credential(order.id, "k1", "EAPI:Invalid key", now)

    assert operator.clear_failed_credentials(order.id)
    assert queue.get(order.id).failed_credentials == []

    with pytest.raises(NotFound):
        operator.clear_failed_credentials("missing")

    queue.add_failed_credential(order.id, "k2", "EAPI:Invalid key", now)
    assert operator.clear_all_failed_credentials() == 1
