from datetime import timedelta

import pytest

from dcaladder.core.errors import ConfigurationError
from dcaladder.execution.backoff import RateLimiter, retry_delay_seconds


def _enqueue(queue, now, bot_id="bot-1", side="buy", volume=1.0):
    return queue.enqueue(
        user_id="u1",
        bot_id=bot_id,
        symbol="BTC/USD",
        side=side,
        volume=volume,
        price=100.0,
        now=now,
    )


def test_one_outstanding_order_per_bot_and_side(queue, now):
    first = _enqueue(queue, now)
    assert first is not None
    assert first.status == "pending"
    assert len(first.client_order_id) == 32
    assert 0 <= first.userref < 2147483647

    assert _enqueue(queue, now + timedelta(seconds=1)) is None
    # other side and other bot are independent
    assert _enqueue(queue, now, side="sell") is not None
    assert _enqueue(queue, now, bot_id="bot-2") is not None

    assert queue.outstanding_sides("bot-1") == frozenset({"buy", "sell"})


def test_new_order_allowed_once_previous_is_terminal(queue, now):
    o = _enqueue(queue, now)
    assert queue.claim(o.id, "pending", now) is not None
    assert queue.mark_completed(o.id, 100.0, 1.0, now)
    assert _enqueue(queue, now + timedelta(seconds=1)) is not None


@pytest.mark.parametrize("volume", [0, -1.0])
def test_non_positive_volume_rejected(queue, now, volume):
    with pytest.raises(ConfigurationError):
        _enqueue(queue, now, volume=volume)


def test_due_orders_oldest_first_and_respects_next_retry(queue, now):
    a = _enqueue(queue, now, bot_id="a")
    b = _enqueue(queue, now + timedelta(seconds=1), bot_id="b")
    assert [o.id for o in queue.due_orders(now + timedelta(seconds=2))] == [a.id, b.id]

    queue.claim(a.id, "pending", now)
    queue.record_failure(a.id, "EAPI:Rate limit exceeded", now)
    due = queue.due_orders(now + timedelta(seconds=5))
    assert [o.id for o in due] == [b.id]

    due = queue.due_orders(now + timedelta(seconds=10))
    assert {o.id for o in due} == {a.id, b.id}


def test_claim_is_compare_and_swap(queue, now):
    o = _enqueue(queue, now)
    assert queue.claim(o.id, "pending", now) is not None
    assert queue.claim(o.id, "pending", now) is None
    assert queue.get(o.id).status == "processing"


def test_backoff_grows_and_caps():
    delays = [retry_delay_seconds(n, 10, 2, 3600) for n in range(1, 12)]
    assert delays[:4] == [10, 20, 40, 80]
    assert max(delays) == 3600


def test_backoff_jitter_stays_in_band():
    for _ in range(50):
        d = retry_delay_seconds(3, 10, 2, 3600, jitter_ratio=0.2)
        assert 32.0 <= d <= 48.0


def test_attempts_exhausted_marks_failed_and_never_processes_again(queue, now):
    o = _enqueue(queue, now)
    t = now
    for i in range(1, 6):
        claimed = queue.claim(o.id, queue.get(o.id).status, t)
        assert claimed is not None
        updated = queue.record_failure(o.id, "EGeneral:Temporary lockout", t)
        assert updated.attempts == i
        t = t + timedelta(hours=2)

    final = queue.get(o.id)
    assert final.status == "failed"
    assert final.attempts == final.max_attempts == 5
    assert len(final.errors) == 5
    assert queue.claim(o.id, "failed", t) is None
    assert queue.claim(o.id, "retry", t) is None
    assert all(x.id != o.id for x in queue.due_orders(t + timedelta(days=1)))


def test_permanent_failure_skips_retry(queue, now):
    o = _enqueue(queue, now)
    queue.claim(o.id, "pending", now)
    updated = queue.record_failure(o.id, "EOrder:Insufficient funds", now, permanent=True)
    assert updated.status == "failed"
    assert updated.attempts == 1


def test_stuck_processing_reset_to_retry(queue, now):
    o = _enqueue(queue, now)
    queue.claim(o.id, "pending", now)

    assert queue.reset_stuck(now + timedelta(seconds=299)) == 0
    later = now + timedelta(seconds=301)
    assert queue.reset_stuck(later) == 1

    stuck = queue.get(o.id)
    assert stuck.status == "retry"
    assert stuck.next_retry_at == later
    assert [x.id for x in queue.due_orders(later)] == [o.id]


def test_record_submitted_keeps_exchange_reference(queue, now):
    o = _enqueue(queue, now)
    queue.claim(o.id, "pending", now)
    assert queue.record_submitted(o.id, "OABC-123", "cred-1", now)

    got = queue.get(o.id)
    assert got.status == "retry"
    assert got.exchange_order_id == "OABC-123"
    assert got.credential_id == "cred-1"
    assert got.attempts == 0


def test_record_submitted_backs_off_then_fails_at_confirm_limit(queue, queue_cfg, now):
    o = _enqueue(queue, now)
    t = now
    for check in range(1, queue_cfg.max_confirm_checks):
        queue.claim(o.id, queue.get(o.id).status, t)
        got = queue.record_submitted(o.id, "OABC-123", "cred-1", t)
        assert got.status == "retry"
        assert got.confirm_checks == check
        assert got.next_retry_at == t + timedelta(seconds=retry_delay_seconds(check, initial=10.0))
        t = got.next_retry_at

    queue.claim(o.id, "retry", t)
    failed = queue.record_submitted(o.id, "OABC-123", "cred-1", t)
    assert failed.status == "failed"
    assert failed.attempts == 0
    assert "OABC-123" in failed.last_error
    assert failed.completed_at == t
    assert queue.outstanding_sides("bot-1") == frozenset()


def test_uncertain_submit_is_flagged_until_cleared(queue, now):
    o = _enqueue(queue, now)
    queue.claim(o.id, "pending", now)
    got = queue.record_failure(o.id, "outcome unknown", now, credential_id="k2", placement_uncertain=True)
    assert got.status == "retry"
    assert got.placement_uncertain
    assert got.credential_id == "k2"

    # a later ordinary failure keeps the flag and the owning credential
    queue.claim(o.id, "retry", now)
    got = queue.record_failure(o.id, "EService:Busy", now, credential_id="k1")
    assert got.placement_uncertain
    assert got.credential_id == "k2"

    queue.claim(o.id, "retry", now)
    assert queue.clear_placement_uncertain(o.id, now)
    assert not queue.get(o.id).placement_uncertain


def test_clear_failed_credentials(queue, now):
    o = _enqueue(queue, now)
    queue.add_failed_credential(o.id, "k1", "EAPI:Invalid key", now)
    queue.add_failed_credential(o.id, "k2", "EAPI:Invalid key", now)
    assert queue.get(o.id).failed_credentials == ["k1", "k2"]

    assert queue.clear_failed_credentials(o.id)
    assert queue.get(o.id).failed_credentials == []

    queue.add_failed_credential(o.id, "k1", "EAPI:Invalid key", now)
    assert queue.clear_all_failed_credentials() == 1


def test_counts_and_cleanup(queue, now):
    a = _enqueue(queue, now, bot_id="a")
    _enqueue(queue, now, bot_id="b")
    queue.claim(a.id, "pending", now)
    queue.mark_completed(a.id, 100.0, 1.0, now)

    counts = queue.counts()
    assert counts["completed"] == 1
    assert counts["pending"] == 1

    assert queue.cleanup_old(now + timedelta(days=29), days=30) == 0
    assert queue.cleanup_old(now + timedelta(days=31), days=30) == 1
    assert queue.get(a.id) is None


def test_rate_limiter_spaces_calls():
    clock = [0.0]
    slept = []

    def sleep(s):
        slept.append(s)
        clock[0] += s

    limiter = RateLimiter(2.0, clock=lambda: clock[0], sleep=sleep)
    for _ in range(3):
        limiter.wait()
    assert slept == [0.5, 0.5]
