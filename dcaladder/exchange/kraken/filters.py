from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional


@dataclass(frozen=True)
class InstrumentInfo:
    symbol: str
    lot_precision: int  # volume decimals (Kraken lot_decimals)
    price_precision: int  # price decimals (Kraken pair_decimals)
    min_order_size: float  # base volume (Kraken ordermin)
    min_cost: float = 0.0  # quote value (Kraken costmin)


def instrument_from_asset_pair(symbol: str, info: dict) -> InstrumentInfo:
    """Build InstrumentInfo from one entry of Kraken's /0/public/AssetPairs result."""
    return InstrumentInfo(
        symbol=symbol,
        lot_precision=int(info.get("lot_decimals", 8)),
        price_precision=int(info.get("pair_decimals", 2)),
        min_order_size=float(info.get("ordermin") or 0.0),
        min_cost=float(info.get("costmin") or 0.0),
    )


def _step(decimals: int) -> Decimal:
    return Decimal("1").scaleb(-int(decimals))


def round_down(value: float, decimals: int) -> Decimal:
    """Round DOWN to `decimals` places (never exceeds what we hold / intend to spend)."""
    step = _step(decimals)
    v = Decimal(str(value))
    return (v / step).to_integral_value(rounding=ROUND_DOWN) * step


def _float_quantize(value: Decimal, decimals: int) -> float:
    """
    Decimal -> float quantized to `decimals` places so float math on the
    result behaves as expected in tests.
    """
    return float(value.quantize(_step(decimals)))


def round_volume(volume: float, info: InstrumentInfo) -> float:
    return _float_quantize(round_down(volume, info.lot_precision), info.lot_precision)


def round_price(price: Optional[float], info: InstrumentInfo) -> Optional[float]:
    if price is None:
        return None
    return _float_quantize(round_down(price, info.price_precision), info.price_precision)


def format_decimal(value: float, decimals: int) -> str:
    """String for the REST payload: fixed decimals, no exponent notation."""
    return format(round_down(value, decimals), "f")


def meets_minimum(volume: float, price: Optional[float], info: InstrumentInfo) -> bool:
    if volume <= 0 or volume < info.min_order_size:
        return False
    if info.min_cost and price:
        return volume * price >= info.min_cost
    return True
