"""
Bounded retry with exponential backoff.

Used where a transient failure (a stale incident version, a busy store) is
expected to clear on its own.
"""

import time
from typing import Callable, Tuple, Type, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 0.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    Call ``func`` until it succeeds or ``attempts`` is exhausted.

    The last exception is re-raised unchanged once attempts run out.
    """
    _attempt = 0
    _delay = delay
    while True:
        try:
            return func()
        except exceptions as exc:
            _attempt += 1
            if _attempt >= attempts:
                raise
            logger.debug(
                "retrying_after_failure",
                attempt=_attempt,
                attempts=attempts,
                error=str(exc),
            )
            if _delay > 0:
                time.sleep(_delay)
                _delay *= backoff

