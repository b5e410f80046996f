from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.services.retry import RetryPolicy, retry_or_escalate


class RetryScheduled(Exception):
    pass


def _task(retries):
    task = MagicMock()
    task.request = SimpleNamespace(retries=retries)
    task.retry.side_effect = lambda **kwargs: RetryScheduled(kwargs)
    return task


def test_policy_countdown_and_exhaustion():
    policy = RetryPolicy("job", (60, 300, 900))

    assert policy.attempts == 3
    assert policy.max_retries == 2
    assert [policy.countdown(n) for n in range(4)] == [60, 300, 900, 900]
    assert not policy.exhausted(1)
    assert policy.exhausted(2)


def test_policy_explicit_attempts():
    policy = RetryPolicy("job", (30,), max_attempts=5)

    assert policy.attempts == 5
    assert policy.countdown(3) == 30


def test_retry_uses_backoff_for_current_attempt():
    task = _task(retries=1)
    policy = RetryPolicy("job", (60, 300, 900))
    error = RuntimeError("router down")

    with pytest.raises(RetryScheduled):
        retry_or_escalate(task, policy, error, retry_args=("a", "b"))

    task.retry.assert_called_once_with(exc=error, countdown=300, max_retries=2, args=("a", "b"))


def test_final_attempt_runs_hook_and_reraises(caplog):
    task = _task(retries=2)
    hook = MagicMock()
    error = RuntimeError("router down")

    with pytest.raises(RuntimeError, match="router down"):
        retry_or_escalate(task, RetryPolicy("job", (60, 300, 900)), error, {"service_id": "s1"}, on_failure=hook)

    task.retry.assert_not_called()
    hook.assert_called_once_with()
    assert any(record.levelname == "CRITICAL" for record in caplog.records)


def test_failing_hook_does_not_mask_original_error():
    task = _task(retries=0)
    hook = MagicMock(side_effect=ValueError("hook"))

    with pytest.raises(RuntimeError):
        retry_or_escalate(task, RetryPolicy("once", (10,)), RuntimeError("boom"), on_failure=hook)
