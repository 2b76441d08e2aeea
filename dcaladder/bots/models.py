# dcaladder/bots/models.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from dcaladder.core.errors import ConfigurationError


class BotStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXITING = "exiting"
    EXIT_FAILED = "exit_failed"
    COMPLETED = "completed"


# exiting -> active: partial exit left more than dust behind
# completed -> active: operator restarts a finished ladder
TRANSITIONS: Dict[BotStatus, FrozenSet[BotStatus]] = {
    BotStatus.ACTIVE: frozenset({BotStatus.PAUSED, BotStatus.EXITING}),
    BotStatus.PAUSED: frozenset({BotStatus.ACTIVE}),
    BotStatus.EXITING: frozenset(
        {BotStatus.COMPLETED, BotStatus.EXIT_FAILED, BotStatus.ACTIVE}
    ),
    BotStatus.EXIT_FAILED: frozenset({BotStatus.ACTIVE}),
    BotStatus.COMPLETED: frozenset({BotStatus.ACTIVE}),
}


def can_transition(current: str, target: str) -> bool:
    try:
        cur = BotStatus(current)
        tgt = BotStatus(target)
    except ValueError:
        return False
    return tgt in TRANSITIONS[cur]


def new_cycle_id() -> str:
    return uuid.uuid4().hex


@dataclass
class BotConfig:
    symbol: str
    initial_order_amount: float
    trade_multiplier: float
    max_entries: int
    step_percent: float
    step_multiplier: float
    take_profit_percent: float
    exit_percentage: float = 100.0
    re_entry_delay_minutes: float = 0.0

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = "default"
    status: str = BotStatus.ACTIVE.value

    # running aggregates (owned by the cost basis tracker)
    current_entry_count: int = 0
    average_entry_price: float = 0.0
    total_invested: float = 0.0
    total_volume: float = 0.0
    last_entry_price: Optional[float] = None
    last_entry_time: Optional[datetime] = None
    current_take_profit_price: Optional[float] = None
    realized_pnl: float = 0.0
    cycle_realized_pnl: float = 0.0
    # base asset kept back by partial exits; outside the ladder position
    retained_volume: float = 0.0

    cycle_id: str = field(default_factory=new_cycle_id)
    cycle_number: int = 1

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None

    def copy(self, **changes: Any) -> "BotConfig":
        return replace(self, **changes)

    @property
    def has_position(self) -> bool:
        return self.current_entry_count > 0 and self.total_volume > 0


@dataclass(frozen=True)
class Entry:
    """Immutable fill record. Append-only."""

    bot_id: str
    entry_number: int
    price: float
    quantity: float
    order_amount: float
    timestamp: datetime
    cycle_id: str
    cycle_number: int
    status: str = "filled"
    exchange_order_id: Optional[str] = None
    pending_order_id: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.bot_id}_c{self.cycle_number}_e{self.entry_number}"


@dataclass(frozen=True)
class CycleRecord:
    bot_id: str
    cycle_id: str
    cycle_number: int
    entries: int
    total_invested: float
    total_volume: float
    average_entry_price: float
    exit_price: float
    realized_pnl: float
    started_at: Optional[datetime]
    completed_at: datetime
    retained_volume: float = 0.0


def validate_bot_params(bot: BotConfig) -> None:
    """
    Reject invalid ladder parameters at creation time.
    Raises ConfigurationError listing every problem found.
    """
    errors = []

    if not (bot.symbol or "").strip():
        errors.append("symbol is required")
    if bot.initial_order_amount <= 0:
        errors.append("initial_order_amount must be > 0")
    if bot.trade_multiplier <= 0:
        errors.append("trade_multiplier must be > 0")
    if int(bot.max_entries) < 1:
        errors.append("max_entries must be >= 1")
    if not (0 < bot.step_percent < 100):
        errors.append("step_percent must be in (0, 100)")
    if bot.step_multiplier <= 0:
        errors.append("step_multiplier must be > 0")
    if bot.take_profit_percent <= 0:
        errors.append("take_profit_percent must be > 0")
    if not (0 < bot.exit_percentage <= 100):
        errors.append("exit_percentage must be in (0, 100]")
    if bot.re_entry_delay_minutes < 0:
        errors.append("re_entry_delay_minutes must be >= 0")

    # the deepest rung must still be a positive price
    deepest = bot.step_percent * bot.step_multiplier ** max(0, int(bot.max_entries) - 2)
    if int(bot.max_entries) > 1 and deepest >= 100:
        errors.append(
            f"step ladder reaches a {deepest:.2f}% drop before max_entries; "
            "lower step_percent/step_multiplier or max_entries"
        )

    try:
        BotStatus(bot.status)
    except ValueError:
        errors.append(f"unknown status: {bot.status}")

    if errors:
        raise ConfigurationError("Invalid bot configuration: " + "; ".join(errors))
