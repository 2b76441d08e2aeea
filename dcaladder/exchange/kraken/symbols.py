# dcaladder/exchange/kraken/symbols.py
from __future__ import annotations

from typing import Tuple

# Kraken asset code -> canonical
_ASSET_ALIASES = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XSTR": "XLM",
    "STR": "XLM",
    "XETH": "ETH",
    "XXRP": "XRP",
    "XLTC": "LTC",
    "XETC": "ETC",
    "XXMR": "XMR",
    "XZEC": "ZEC",
    "XREP": "REP",
    "XMLN": "MLN",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "ZGBP": "GBP",
    "ZCAD": "CAD",
    "ZJPY": "JPY",
}

# canonical -> what Kraken's REST API accepts in `pair=`
_KRAKEN_CODES = {
    "BTC": "XBT",
    "DOGE": "XDG",
}

QUOTES = ("USDT", "USDC", "USD", "EUR", "GBP", "CAD", "JPY")


def normalize_asset(code: str) -> str:
    c = (code or "").strip().upper()
    # staking / earn balances: ETH.F, DOT.S ...
    if "." in c:
        c = c.split(".", 1)[0]
    return _ASSET_ALIASES.get(c, c)


def split_pair(symbol: str) -> Tuple[str, str]:
    """
    "BTC/USD", "XBTUSD", "XXBTZUSD", "btc-usd" -> ("BTC", "USD")
    Raises ValueError if no known quote currency is found.
    """
    s = (symbol or "").strip().upper().replace("-", "/")
    if "/" in s:
        base, quote = s.split("/", 1)
        return normalize_asset(base), normalize_asset(quote)

    # legacy Z-prefixed quotes first: XXBTZUSD must not split as XXBTZ/USD
    for q in tuple(k for k in _ASSET_ALIASES if k.startswith("Z")) + QUOTES:
        if s.endswith(q) and len(s) > len(q):
            return normalize_asset(s[: -len(q)]), normalize_asset(q)

    raise ValueError(f"cannot split trading pair: {symbol!r}")


def canonical_pair(symbol: str) -> str:
    base, quote = split_pair(symbol)
    return f"{base}/{quote}"


def to_kraken_pair(symbol: str) -> str:
    """Canonical -> Kraken REST `pair` parameter (BTC/USD -> XBTUSD)."""
    base, quote = split_pair(symbol)
    return f"{_KRAKEN_CODES.get(base, base)}{_KRAKEN_CODES.get(quote, quote)}"
