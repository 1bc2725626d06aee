import logging
import time
from typing import Callable, TypeVar

from wayfare.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int) -> float:
    delay = settings.EXTERNAL_CALL_BACKOFF_SECONDS * (2 ** max(0, attempt - 1))
    return min(delay, settings.EXTERNAL_CALL_BACKOFF_MAX_SECONDS)


def call_with_retries(
    fn: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    operation: str,
    attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or raises something other than ``retry_on``.

    Only transient failures belong in ``retry_on``. Timeouts with an unknown
    remote outcome and explicit business rejections must propagate on the
    first occurrence. The last transient error is re-raised once attempts are
    exhausted.
    """
    max_attempts = max(1, attempts or settings.EXTERNAL_CALL_MAX_ATTEMPTS)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "external_call_retries_exhausted",
                    extra={"operation": operation, "attempts": attempt, "error": type(exc).__name__},
                )
                raise
            delay = backoff_delay(attempt)
            logger.info(
                "external_call_retry",
                extra={"operation": operation, "attempt": attempt, "delay_seconds": delay, "error": type(exc).__name__},
            )
            if delay > 0:
                sleep(delay)
