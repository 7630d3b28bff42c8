from __future__ import annotations


def test_backoff_is_bounded_and_non_decreasing():
    from app.outbox.retry import ABANDONED, ATTEMPTING, RetryPolicy

    policy = RetryPolicy(max_attempts=3, base_delay_seconds=5, max_delay_seconds=30)

    decisions = [policy.decide(i) for i in range(3)]
    assert [d.state for d in decisions] == [ATTEMPTING] * 3
    delays = [d.delay_seconds for d in decisions]
    assert delays == [5, 10, 20]
    assert delays == sorted(delays)

    last = policy.decide(3)
    assert last.state == ABANDONED
    assert last.abandoned


def test_delay_is_capped():
    from app.outbox.retry import LID_LOOKUP_RETRY, TRANSPORT_RETRY

    assert TRANSPORT_RETRY.schedule() == [30, 60, 120, 240, 480]
    assert TRANSPORT_RETRY.delay(10) == 15 * 60
    # 1, 2, 4, 8, 16 minutes
    assert LID_LOOKUP_RETRY.schedule() == [60, 120, 240, 480, 960]
    assert max(LID_LOOKUP_RETRY.delay(i) for i in range(20)) == 32 * 60


def test_session_restart_policy():
    from app.outbox.retry import SESSION_RESTART_RETRY

    assert SESSION_RESTART_RETRY.schedule() == [5, 10, 20]
    assert SESSION_RESTART_RETRY.decide(3).abandoned
