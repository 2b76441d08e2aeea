import base64

import pytest

import dcaladder.exchange.kraken.client as client_mod
from dcaladder.core.errors import (
    CredentialError,
    PermanentOrderError,
    SubmitOutcomeUnknown,
    TransientExchangeError,
    classify_exchange_error,
)
from dcaladder.exchange.kraken.client import KrakenClient
from dcaladder.exchange.kraken.signing import sign
from dcaladder.exchange.kraken.symbols import canonical_pair, normalize_asset, split_pair, to_kraken_pair


# ---------- error classification ----------
@pytest.mark.parametrize(
    "messages,expected",
    [
        (["EAPI:Invalid key"], CredentialError),
        (["EAPI:Invalid signature"], CredentialError),
        (["EGeneral:Permission denied"], CredentialError),
        (["EAPI:Rate limit exceeded"], TransientExchangeError),
        (["EService:Unavailable"], TransientExchangeError),
        (["EService:Busy"], TransientExchangeError),
        (["EOrder:Insufficient funds"], PermanentOrderError),
        (["EQuery:Unknown asset pair"], PermanentOrderError),
        (["EOrder:Order minimum not met"], PermanentOrderError),
        (["ESomething:Never seen before"], TransientExchangeError),
        ([], TransientExchangeError),
    ],
)
def test_classify_exchange_error(messages, expected):
    err = classify_exchange_error(messages)
    assert type(err) is expected
    assert err.codes == messages


# ---------- symbols ----------
@pytest.mark.parametrize(
    "symbol,expected",
    [
        ("BTC/USD", ("BTC", "USD")),
        ("btc-usd", ("BTC", "USD")),
        ("XBTUSD", ("BTC", "USD")),
        ("XXBTZUSD", ("BTC", "USD")),
        ("XETHZEUR", ("ETH", "EUR")),
        ("ETHUSDT", ("ETH", "USDT")),
        ("XDG/USD", ("DOGE", "USD")),
    ],
)
def test_split_pair(symbol, expected):
    assert split_pair(symbol) == expected


def test_split_pair_rejects_unknown_quote():
    with pytest.raises(ValueError):
        split_pair("FOOBAR")


def test_kraken_pair_codes():
    assert to_kraken_pair("BTC/USD") == "XBTUSD"
    assert to_kraken_pair("DOGE/EUR") == "XDGEUR"
    assert to_kraken_pair("ETH/USD") == "ETHUSD"
    assert canonical_pair("XXBTZUSD") == "BTC/USD"
    assert normalize_asset("ETH.F") == "ETH"


# ---------- signing ----------
def test_sign_matches_documented_example():
    secret = "kQH5HW/8p1uGOVjbgWA7FunAmGO8lsSUXNsu3eow76sz84Q18fWxnyRzBHCd3pd5nE9qa99HAZtuZuj6F1huXg=="
    nonce = "1616492376594"
    postdata = "nonce=1616492376594&ordertype=limit&pair=XBTUSD&price=37500&type=buy&volume=1.25"
    out = sign(secret, "/0/private/AddOrder", nonce, postdata)
    assert out == "4/dpxb3iT4tp/ZCVEwSnEsLxx0bqyhLpdfOpc6fn7OR8+UClSV5n9E6aSS8MPtnRfp32bAb0nmbRn6H8ndwLUQ=="
    assert len(base64.b64decode(out)) == 64


# ---------- client transport ----------
class _FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self._body = body if body is not None else {"error": [], "result": {}}
        self.headers = headers or {}
        self.content = b"x"
        self.text = str(self._body)

    def json(self):
        return self._body


class _Script:
    """Returns queued responses in order and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(client_mod.time, "sleep", lambda s: None)


def test_last_price_parses_ticker(monkeypatch, no_sleep):
    script = _Script(_FakeResponse(body={"error": [], "result": {"XXBTZUSD": {"c": ["43210.5", "0.1"]}}}))
    monkeypatch.setattr(client_mod.requests, "request", script)

    assert KrakenClient().last_price("XBTUSD") == 43210.5
    method, url, kwargs = script.calls[0]
    assert method == "GET"
    assert url.endswith("/0/public/Ticker")
    assert kwargs["params"] == {"pair": "XBTUSD"}


def test_retries_rate_limit_then_succeeds(monkeypatch, no_sleep):
    script = _Script(
        _FakeResponse(status_code=429),
        client_mod.requests.Timeout("slow"),
        _FakeResponse(body={"error": [], "result": {"XXBTZUSD": {"c": ["1.0", "1"]}}}),
    )
    monkeypatch.setattr(client_mod.requests, "request", script)

    assert KrakenClient(max_retries=3).last_price("XBTUSD") == 1.0
    assert len(script.calls) == 3


def test_exhausted_retries_are_transient(monkeypatch, no_sleep):
    script = _Script(*[_FakeResponse(status_code=503) for _ in range(3)])
    monkeypatch.setattr(client_mod.requests, "request", script)

    with pytest.raises(TransientExchangeError):
        KrakenClient(max_retries=2).last_price("XBTUSD")


def test_body_errors_are_classified(monkeypatch, no_sleep):
    script = _Script(_FakeResponse(body={"error": ["EOrder:Insufficient funds"]}))
    monkeypatch.setattr(client_mod.requests, "request", script)

    client = KrakenClient("key", base64.b64encode(b"secret").decode())
    with pytest.raises(PermanentOrderError):
        client.add_order("XBTUSD", "buy", "market", "0.01")


def test_private_call_is_signed(monkeypatch, no_sleep):
    script = _Script(_FakeResponse(body={"error": [], "result": {"txid": ["OABC-DEF"]}}))
    monkeypatch.setattr(client_mod.requests, "request", script)

    client = KrakenClient("key", base64.b64encode(b"secret").decode())
    txid = client.add_order("XBTUSD", "buy", "limit", "0.01", price="100.0", userref=42)

    assert txid == "OABC-DEF"
    method, url, kwargs = script.calls[0]
    assert method == "POST"
    assert url.endswith("/0/private/AddOrder")
    assert kwargs["headers"]["API-Key"] == "key"
    assert kwargs["headers"]["API-Sign"]
    assert "userref=42" in kwargs["data"]
    assert "price=100.0" in kwargs["data"]


def test_private_call_without_keys_is_credential_error():
    with pytest.raises(CredentialError):
        KrakenClient().balance()


def test_nonce_strictly_increasing():
    client = KrakenClient("k", "s")
    nonces = [int(client._next_nonce()) for _ in range(50)]
    assert nonces == sorted(set(nonces))


def _secret():
    return base64.b64encode(b"secret").decode()


def test_add_order_timeout_is_sent_once_and_flagged_unknown(monkeypatch, no_sleep):
    script = _Script(
        client_mod.requests.Timeout("read timed out"),
        _FakeResponse(body={"error": [], "result": {"txid": ["OABC"]}}),
    )
    monkeypatch.setattr(client_mod.requests, "request", script)

    with pytest.raises(SubmitOutcomeUnknown):
        KrakenClient("key", _secret(), max_retries=3).add_order("XBTUSD", "buy", "market", "0.01", userref=7)
    assert len(script.calls) == 1


def test_add_order_server_error_is_flagged_unknown(monkeypatch, no_sleep):
    script = _Script(_FakeResponse(status_code=502))
    monkeypatch.setattr(client_mod.requests, "request", script)

    with pytest.raises(SubmitOutcomeUnknown):
        KrakenClient("key", _secret()).add_order("XBTUSD", "buy", "market", "0.01")
    assert len(script.calls) == 1


def test_add_order_rate_limit_is_plain_transient(monkeypatch, no_sleep):
    script = _Script(_FakeResponse(status_code=429))
    monkeypatch.setattr(client_mod.requests, "request", script)

    with pytest.raises(TransientExchangeError) as exc:
        KrakenClient("key", _secret()).add_order("XBTUSD", "buy", "market", "0.01")
    assert not isinstance(exc.value, SubmitOutcomeUnknown)
    assert len(script.calls) == 1


def test_private_read_retries_with_fresh_nonce(monkeypatch, no_sleep):
    script = _Script(
        client_mod.requests.Timeout("slow"),
        _FakeResponse(body={"error": [], "result": {"ZUSD": "12.5"}}),
    )
    monkeypatch.setattr(client_mod.requests, "request", script)

    assert KrakenClient("key", _secret()).balance() == {"ZUSD": 12.5}
    assert len(script.calls) == 2
    first, second = (kwargs["data"] for _, _, kwargs in script.calls)
    assert first != second


def test_find_orders_by_userref_checks_open_and_closed(monkeypatch, no_sleep):
    script = _Script(
        _FakeResponse(body={"error": [], "result": {"open": {"OOPEN-1": {"userref": 7}}}}),
        _FakeResponse(body={"error": [], "result": {"closed": {"OCLOSED-1": {"userref": 7}}, "count": 1}}),
    )
    monkeypatch.setattr(client_mod.requests, "request", script)

    assert KrakenClient("key", _secret()).find_orders_by_userref(7) == ["OOPEN-1", "OCLOSED-1"]
    assert [url.rsplit("/", 1)[-1] for _, url, _ in script.calls] == ["OpenOrders", "ClosedOrders"]
    assert all("userref=7" in kwargs["data"] for _, _, kwargs in script.calls)
