# dcaladder/core/errors.py
from __future__ import annotations

from typing import Iterable, List, Optional


class DcaLadderError(Exception):
    pass


class ConfigurationError(DcaLadderError, ValueError):
    """Invalid bot parameters or settings. Rejected before reaching the engine."""


class InvalidTransition(DcaLadderError):
    def __init__(self, bot_id: str, current: str, target: str):
        super().__init__(f"bot {bot_id}: cannot move from {current} to {target}")
        self.bot_id = bot_id
        self.current = current
        self.target = target


class NotFound(DcaLadderError, LookupError):
    pass


# =========================
# Exchange errors
# =========================
class ExchangeError(DcaLadderError):
    def __init__(self, message: str, *, codes: Optional[List[str]] = None):
        super().__init__(message)
        self.codes = list(codes or [])


class TransientExchangeError(ExchangeError):
    """Timeout, rate limit, exchange busy. Retried with backoff."""


class SubmitOutcomeUnknown(TransientExchangeError):
    """
    A non-idempotent call timed out or hit a 5xx: the exchange may or may
    not have acted on it. Look the order up before sending it again.
    """


class CredentialError(ExchangeError):
    """Auth/permission failure tied to one credential set."""


class PermanentOrderError(ExchangeError):
    """Invalid instrument, below minimum, insufficient funds. Never retried."""


# Kraken error prefixes / messages -> taxonomy
_CREDENTIAL_MARKERS = (
    "invalid key",
    "invalid signature",
    "invalid nonce",
    "permission denied",
    "invalid api key",
    "egeneral:permission",
)

_PERMANENT_MARKERS = (
    "insufficient funds",
    "unknown asset pair",
    "invalid arguments",
    "order minimum not met",
    "cost minimum not met",
    "invalid volume",
    "invalid price",
    "invalid pair",
    "unknown order",
    "eorder:",
    "equery:",
)

_TRANSIENT_MARKERS = (
    "rate limit",
    "temporary lockout",
    "unavailable",
    "busy",
    "timeout",
    "internal error",
    "market in cancel_only",
    "market in post_only",
    "too many requests",
)


def classify_exchange_error(messages: Iterable[str]) -> ExchangeError:
    """
    Map exchange error strings (e.g. Kraken's ["EOrder:Insufficient funds"])
    to the error taxonomy. Unknown errors are treated as transient.
    """
    codes = [str(m) for m in messages if str(m).strip()]
    text = "; ".join(codes) or "unknown exchange error"
    lower = text.lower()

    if any(m in lower for m in _CREDENTIAL_MARKERS):
        return CredentialError(text, codes=codes)
    if any(m in lower for m in _TRANSIENT_MARKERS):
        return TransientExchangeError(text, codes=codes)
    if any(m in lower for m in _PERMANENT_MARKERS):
        return PermanentOrderError(text, codes=codes)
    return TransientExchangeError(text, codes=codes)
