from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from dcaladder.core.errors import (
    CredentialError,
    SubmitOutcomeUnknown,
    TransientExchangeError,
    classify_exchange_error,
)
from dcaladder.exchange.kraken.signing import build_postdata, new_nonce, sign

log = logging.getLogger("dcaladder.kraken")


class KrakenClient:
    """
    Thin Kraken spot REST client.

    Transport problems (429, 5xx, timeouts) are retried in-call and then
    surfaced as TransientExchangeError. AddOrder is sent exactly once: a
    timeout or 5xx on it raises SubmitOutcomeUnknown because Kraken may have
    accepted the order. Errors returned in the body's `error` list are mapped
    through classify_exchange_error().
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = "https://api.kraken.com",
        timeout: float = 15.0,
        max_retries: int = 3,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries

        self._nonce_lock = threading.Lock()
        self._last_nonce = 0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        data: Optional[str] = None,
        headers: Optional[dict] = None,
        retry: bool = True,
    ) -> Any:
        url = f"{self.base_url}{path}"
        params = dict(params or {})
        headers = dict(headers or {})

        last_err: Optional[str] = None
        # the request may have reached Kraken even though no answer came back
        maybe_sent = False
        for attempt in range(self.max_retries + 1 if retry else 1):
            if attempt:
                time.sleep(min(0.4 * (2**attempt) + random.uniform(0, 0.2), 8.0))
            try:
                r = requests.request(
                    method, url, params=params, data=data, headers=headers, timeout=self.timeout
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = f"{type(e).__name__}: {e}"
                maybe_sent = True
                continue

            # Rate limit / temp ban
            if r.status_code in (420, 429):
                last_err = f"HTTP {r.status_code}"
                maybe_sent = False
                ra = r.headers.get("Retry-After")
                if ra and retry:
                    time.sleep(min(float(ra), 10.0))
                continue

            # Server errors
            if r.status_code >= 500:
                last_err = f"HTTP {r.status_code}"
                maybe_sent = True
                continue

            if r.status_code >= 400:
                err = classify_exchange_error([f"HTTP {r.status_code}: {r.text[:200]}"])
                if r.status_code in (401, 403):
                    raise CredentialError(str(err), codes=err.codes)
                raise err

            body = r.json() if r.content else {}
            errors = [e for e in (body.get("error") or []) if e]
            if errors:
                raise classify_exchange_error(errors)
            return body.get("result")

        if not retry and maybe_sent:
            raise SubmitOutcomeUnknown(f"Kraken outcome unknown: {method} {path} ({last_err})")
        raise TransientExchangeError(
            f"Kraken request failed after retries: {method} {path} ({last_err})"
        )

    def _public(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return self._request("GET", f"/0/public/{endpoint}", params=params)

    def _next_nonce(self) -> str:
        with self._nonce_lock:
            n = int(new_nonce())
            if n <= self._last_nonce:
                n = self._last_nonce + 1
            self._last_nonce = n
            return str(n)

    def _private(self, endpoint: str, params: Optional[dict] = None, retry: bool = True) -> Any:
        """
        Signed POST. Every attempt gets a fresh nonce; Kraken rejects a
        replayed one. With retry=False the call is sent exactly once.
        """
        if not self.api_key or not self.api_secret:
            raise CredentialError("Missing Kraken API key/secret for private endpoint")

        path = f"/0/private/{endpoint}"
        last_err: Optional[TransientExchangeError] = None
        for attempt in range(self.max_retries + 1 if retry else 1):
            if attempt:
                time.sleep(min(0.4 * (2**attempt) + random.uniform(0, 0.2), 8.0))

            payload = dict(params or {})
            payload["nonce"] = self._next_nonce()
            postdata = build_postdata(payload)
            try:
                signature = sign(self.api_secret, path, payload["nonce"], postdata)
            except ValueError as e:
                # secret is not valid base64
                raise CredentialError(f"Invalid API secret: {e}") from e

            headers = {
                "API-Key": self.api_key,
                "API-Sign": signature,
                "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
            }
            try:
                return self._request("POST", path, data=postdata, headers=headers, retry=False)
            except TransientExchangeError as e:
                if not retry:
                    raise
                last_err = e
                log.warning("Kraken %s attempt %d failed: %s", endpoint, attempt + 1, e)

        raise TransientExchangeError(f"Kraken request failed after retries: POST {path} ({last_err})")

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------
    def ticker(self, pair: str) -> Dict[str, Any]:
        result = self._public("Ticker", {"pair": pair}) or {}
        if not result:
            raise classify_exchange_error([f"EQuery:Unknown asset pair {pair}"])
        return next(iter(result.values()))

    def last_price(self, pair: str) -> float:
        data = self.ticker(pair)
        return float(data["c"][0])

    def asset_pair(self, pair: str) -> Dict[str, Any]:
        result = self._public("AssetPairs", {"pair": pair}) or {}
        if not result:
            raise classify_exchange_error([f"EQuery:Unknown asset pair {pair}"])
        return next(iter(result.values()))

    # ------------------------------------------------------------------
    # Account / trading
    # ------------------------------------------------------------------
    def balance(self) -> Dict[str, float]:
        result = self._private("Balance") or {}
        return {k: float(v) for k, v in result.items()}

    def add_order(
        self,
        pair: str,
        side: str,
        ordertype: str,
        volume: str,
        price: Optional[str] = None,
        userref: Optional[int] = None,
    ) -> str:
        params: Dict[str, Any] = {
            "pair": pair,
            "type": side,
            "ordertype": ordertype,
            "volume": volume,
        }
        if ordertype == "limit" and price:
            params["price"] = price
        if userref is not None:
            params["userref"] = int(userref)

        # never retried: a resend could place the order twice
        result = self._private("AddOrder", params, retry=False) or {}
        txids: List[str] = list(result.get("txid") or [])
        if not txids:
            raise TransientExchangeError(f"AddOrder returned no txid: {result}")
        return txids[0]

    def query_orders(self, txids: List[str]) -> Dict[str, Any]:
        return self._private("QueryOrders", {"txid": ",".join(txids)}) or {}

    def find_orders_by_userref(self, userref: int) -> List[str]:
        """txids of open and recently closed orders tagged with this userref."""
        ref = {"userref": int(userref)}
        open_orders = (self._private("OpenOrders", ref) or {}).get("open") or {}
        closed_orders = (self._private("ClosedOrders", ref) or {}).get("closed") or {}
        return list(open_orders) + list(closed_orders)
