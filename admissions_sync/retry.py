import logging
import time
from collections.abc import Callable
from typing import TypeVar


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    reason_code = "retries_exhausted"


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    """Call ``fn`` until it succeeds, sleeping ``backoff_seconds * 2**(attempt-1)`` between tries.

    Exceptions rejected by ``should_retry`` propagate unchanged so callers can
    handle non-transient failures themselves.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)
            if attempt > max_retries:
                break
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "transient failure, retrying",
                extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
            )
            time.sleep(delay)

    raise RetryExhaustedError(str(last_error)) from last_error
