from datetime import datetime, timezone

import pytest

from dcaladder.core.config import QueueSettings
from dcaladder.persistence.audit import Audit
from dcaladder.persistence.bot_store import BotStore
from dcaladder.persistence.credentials import CredentialStore
from dcaladder.persistence.db import DB
from dcaladder.persistence.order_queue import OrderQueue


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit live trading accidentally.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("KRAKEN_API_KEY", "")
    monkeypatch.setenv("KRAKEN_API_SECRET", "")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("RETRY_JITTER_RATIO", "0")


@pytest.fixture
def now():
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def queue_cfg():
    # no jitter, no waiting: deterministic backoff and instant fill confirmation
    return QueueSettings(
        max_attempts=5,
        initial_retry_delay_seconds=10.0,
        max_retry_delay_seconds=3600.0,
        retry_backoff_multiplier=2.0,
        retry_jitter_ratio=0.0,
        stuck_order_timeout_seconds=300.0,
        batch_size=10,
        max_orders_per_second=0.0,
        fill_confirm_timeout_seconds=0.0,
        fill_confirm_poll_seconds=0.0,
        max_confirm_checks=3,
    )


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "test.db"))


@pytest.fixture
def audit(db, tmp_path):
    return Audit(db, str(tmp_path / "audit.jsonl"))


@pytest.fixture
def bots(db):
    return BotStore(db)


@pytest.fixture
def queue(db, queue_cfg):
    return OrderQueue(db, queue_cfg)


@pytest.fixture
def credentials(db):
    return CredentialStore(db)
