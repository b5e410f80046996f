"""Retry policy shared by the Celery jobs.

Each retryable job declares a ``RetryPolicy`` and routes failures through
``retry_or_escalate``: retry with the policy's backoff while attempts
remain, otherwise log at critical severity, run the terminal-failure
hook and re-raise.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    backoff: tuple[int, ...]
    max_attempts: int | None = None

    @property
    def attempts(self) -> int:
        return self.max_attempts or max(len(self.backoff), 1)

    @property
    def max_retries(self) -> int:
        return self.attempts - 1

    def countdown(self, retries_done: int) -> int:
        if not self.backoff:
            return 0
        return self.backoff[min(retries_done, len(self.backoff) - 1)]

    def exhausted(self, retries_done: int) -> bool:
        return retries_done + 1 >= self.attempts


ISOLATION_POLICY = RetryPolicy("process_isolation", settings.isolation_retry_backoff)
RESTORATION_POLICY = RetryPolicy("restore_service", settings.restoration_retry_backoff)
NOTIFICATION_POLICY = RetryPolicy("notification", settings.notification_retry_backoff)


def retry_or_escalate(
    task,
    policy: RetryPolicy,
    exc: Exception,
    context: dict[str, Any] | None = None,
    on_failure: Callable[[], None] | None = None,
    retry_args: tuple | list | None = None,
):
    """Schedule the next attempt of a bound task, or give up.

    Always raises: ``celery.exceptions.Retry`` when retrying, the original
    exception once attempts are exhausted.
    """
    context = context or {}
    retries_done = task.request.retries or 0
    attempt = retries_done + 1
    if not policy.exhausted(retries_done):
        countdown = policy.countdown(retries_done)
        logger.warning(
            "%s attempt %s/%s failed, retrying in %ss: %s %s",
            policy.name,
            attempt,
            policy.attempts,
            countdown,
            exc,
            context,
        )
        retry_kwargs: dict[str, Any] = {
            "exc": exc,
            "countdown": countdown,
            "max_retries": policy.max_retries,
        }
        if retry_args is not None:
            retry_kwargs["args"] = retry_args
        raise task.retry(**retry_kwargs)

    logger.critical(
        "%s failed after %s attempts; needs manual intervention: %s %s",
        policy.name,
        attempt,
        exc,
        context,
    )
    if on_failure is not None:
        try:
            on_failure()
        except Exception:
            logger.exception("%s terminal-failure hook raised", policy.name)
    raise exc
