"""
Retry with exponential backoff for collaborator calls.

Collaborators (GitHub, model providers) retry their own transient failures.
The decision engine never retries; it turns a final failure into a reject.
"""

import logging
import time
from typing import Callable, TypeVar

from .deadline import Deadline
from .errors import EvaluationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY = 0.25
MAX_DELAY = 120.0

RETRYABLE_MESSAGES = (
    "connection refused",
    "timeout",
    "timed out",
    "temporary failure",
    "too many requests",
    "rate limit",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "network is unreachable",
    "name or service not known",
    "connection reset",
    "connection aborted",
    "broken pipe",
    "resource temporarily unavailable",
)
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def status_of(exc: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable(exc: BaseException | None) -> bool:
    """Decide whether a failure is transient and worth another attempt."""
    if exc is None or isinstance(exc, (EvaluationCancelled, KeyboardInterrupt)):
        return False
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True

    message = str(exc).lower()
    status = status_of(exc)
    if status in RETRYABLE_STATUS:
        return True
    if status == 403 and "rate limit" in message:
        return True
    if status is not None:
        return False

    if any(m in message for m in RETRYABLE_MESSAGES):
        return True
    # Status codes embedded in the message by clients that do not expose them.
    if any(str(code) in message for code in RETRYABLE_STATUS):
        return True
    return "403" in message and "rate limit" in message


def backoff_delay(attempt: int, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return min(cap, base * (2 ** attempt))


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    describe: str = "operation",
    retryable: Callable[[BaseException], bool] = is_retryable,
    deadline: Deadline | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, fails permanently, or attempts run out.

    The last exception is re-raised unchanged so callers can wrap it in a
    typed error. An expired deadline stops retrying immediately.
    """
    attempts = max(1, min(attempts, 100))
    for attempt in range(attempts):
        if deadline is not None:
            deadline.check(describe)
        try:
            return fn()
        except Exception as exc:
            if attempt == attempts - 1 or not retryable(exc):
                if attempt:
                    logger.warning("%s failed after %d attempts: %s", describe, attempt + 1, exc)
                raise
            delay = backoff_delay(attempt)
            if deadline is not None:
                delay = deadline.bound(delay)
            logger.warning(
                "%s error (attempt %d/%d): %s. Retrying in %.2fs",
                describe, attempt + 1, attempts, exc, delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")
