# dcaladder/exchange/gateway.py
from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from dcaladder.core.errors import PermanentOrderError
from dcaladder.exchange.kraken.client import KrakenClient
from dcaladder.exchange.kraken.filters import InstrumentInfo, format_decimal, instrument_from_asset_pair
from dcaladder.exchange.kraken.symbols import normalize_asset, split_pair, to_kraken_pair

log = logging.getLogger("dcaladder.exchange")

FILLED = "filled"
OPEN = "open"
CANCELED = "canceled"


@dataclass(frozen=True)
class OrderStatusReport:
    status: str  # filled / open / canceled
    executed_price: Optional[float] = None
    executed_volume: float = 0.0

    @property
    def is_filled(self) -> bool:
        return self.status == FILLED and self.executed_volume > 0


class PriceFeed(Protocol):
    def get_current_price(self, symbol: str) -> float: ...


class ExchangeGateway(Protocol):
    def get_balance(self) -> Dict[str, float]: ...

    def get_instrument_info(self, symbol: str) -> InstrumentInfo: ...

    def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        volume: float,
        price: Optional[float] = None,
        userref: Optional[int] = None,
    ) -> str: ...

    def query_order(self, order_id: str) -> OrderStatusReport: ...

    def find_order(self, userref: int) -> Optional[str]: ...


# =========================
# Kraken
# =========================
class KrakenPriceFeed:
    """Last trade price from the public ticker, cached for a few seconds."""

    def __init__(self, client: KrakenClient, ttl_seconds: float = 5.0):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def get_current_price(self, symbol: str) -> float:
        now = time.monotonic()
        with self._lock:
            hit = self._cache.get(symbol)
            if hit and (now - hit[1]) < self.ttl_seconds:
                return hit[0]

        px = self.client.last_price(to_kraken_pair(symbol))
        with self._lock:
            self._cache[symbol] = (px, now)
        return px


_INSTRUMENT_CACHE: Dict[str, Tuple[InstrumentInfo, float]] = {}
_INSTRUMENT_LOCK = threading.Lock()


class KrakenGateway:
    """One credential's view of Kraken. The worker builds one per credential."""

    def __init__(self, client: KrakenClient, instrument_ttl_seconds: float = 3600.0):
        self.client = client
        self.instrument_ttl_seconds = instrument_ttl_seconds

    def get_balance(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for code, amount in self.client.balance().items():
            asset = normalize_asset(code)
            out[asset] = out.get(asset, 0.0) + float(amount)
        return out

    def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        now = time.monotonic()
        with _INSTRUMENT_LOCK:
            hit = _INSTRUMENT_CACHE.get(symbol)
            if hit and (now - hit[1]) < self.instrument_ttl_seconds:
                return hit[0]

        info = instrument_from_asset_pair(symbol, self.client.asset_pair(to_kraken_pair(symbol)))
        with _INSTRUMENT_LOCK:
            _INSTRUMENT_CACHE[symbol] = (info, now)
        return info

    def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        volume: float,
        price: Optional[float] = None,
        userref: Optional[int] = None,
    ) -> str:
        info = self.get_instrument_info(symbol)
        return self.client.add_order(
            pair=to_kraken_pair(symbol),
            side=side,
            ordertype=order_type,
            volume=format_decimal(volume, info.lot_precision),
            price=format_decimal(price, info.price_precision) if price else None,
            userref=userref,
        )

    def query_order(self, order_id: str) -> OrderStatusReport:
        result = self.client.query_orders([order_id])
        o = result.get(order_id)
        if not o:
            return OrderStatusReport(OPEN)

        vol_exec = float(o.get("vol_exec") or 0.0)
        avg = float(o.get("price") or 0.0) or None
        if avg is None and vol_exec > 0:
            cost = float(o.get("cost") or 0.0)
            avg = cost / vol_exec if cost else None

        status = (o.get("status") or "").lower()
        if status == "closed":
            return OrderStatusReport(FILLED, executed_price=avg, executed_volume=vol_exec)
        if status in ("canceled", "expired"):
            # a canceled order may still have partially executed
            if vol_exec > 0:
                return OrderStatusReport(FILLED, executed_price=avg, executed_volume=vol_exec)
            return OrderStatusReport(CANCELED)
        return OrderStatusReport(OPEN, executed_price=avg, executed_volume=vol_exec)

    def find_order(self, userref: int) -> Optional[str]:
        """Exchange id of an order placed with this userref, if Kraken has one."""
        txids = self.client.find_orders_by_userref(userref)
        if len(txids) > 1:
            log.warning("userref %s matches %d orders: %s", userref, len(txids), txids)
        return txids[0] if txids else None


# =========================
# Paper
# =========================
class PaperGateway:
    """
    In-process simulated exchange: market orders fill immediately at the feed
    price, limit orders at their limit. Tracks balances so insufficient funds
    behaves like the real thing.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        starting_balances: Optional[Dict[str, float]] = None,
        instruments: Optional[Dict[str, InstrumentInfo]] = None,
    ):
        self.price_feed = price_feed
        self.balances: Dict[str, float] = dict(starting_balances or {"USD": 100_000.0})
        self.instruments = dict(instruments or {})
        self.orders: Dict[str, OrderStatusReport] = {}
        self.userrefs: Dict[int, str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def get_balance(self) -> Dict[str, float]:
        with self._lock:
            return dict(self.balances)

    def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        return self.instruments.get(symbol) or InstrumentInfo(
            symbol=symbol, lot_precision=8, price_precision=2, min_order_size=0.0
        )

    def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        volume: float,
        price: Optional[float] = None,
        userref: Optional[int] = None,
    ) -> str:
        base, quote = split_pair(symbol)
        fill_px = float(price) if (order_type == "limit" and price) else self.price_feed.get_current_price(symbol)
        cost = fill_px * float(volume)

        with self._lock:
            if side == "buy":
                if self.balances.get(quote, 0.0) < cost:
                    raise PermanentOrderError(
                        f"EOrder:Insufficient funds ({quote} {self.balances.get(quote, 0.0):.2f} < {cost:.2f})"
                    )
                self.balances[quote] = self.balances.get(quote, 0.0) - cost
                self.balances[base] = self.balances.get(base, 0.0) + float(volume)
            else:
                if self.balances.get(base, 0.0) + 1e-12 < float(volume):
                    raise PermanentOrderError(f"EOrder:Insufficient funds ({base})")
                self.balances[base] = self.balances.get(base, 0.0) - float(volume)
                self.balances[quote] = self.balances.get(quote, 0.0) + cost

            order_id = f"PAPER-{next(self._ids)}"
            self.orders[order_id] = OrderStatusReport(FILLED, executed_price=fill_px, executed_volume=float(volume))
            if userref is not None:
                self.userrefs[int(userref)] = order_id

        log.info("paper %s %s %.8f @ %.8f -> %s", side, symbol, volume, fill_px, order_id)
        return order_id

    def query_order(self, order_id: str) -> OrderStatusReport:
        with self._lock:
            report = self.orders.get(order_id)
        if report is None:
            raise PermanentOrderError(f"EOrder:Unknown order {order_id}")
        return report

    def find_order(self, userref: int) -> Optional[str]:
        with self._lock:
            return self.userrefs.get(int(userref))
