import time
from collections.abc import Callable
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def run_with_retries(
    fn: Callable[[int], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    # Sleeps backoff_seconds * attempt between attempts.
    last_error: Exception | None = None
    attempt = 0

    for attempt in range(1, max_retries + 2):
        try:
            return fn(attempt)
        except Exception as exc:
            last_error = exc
            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error), attempt) from last_error
