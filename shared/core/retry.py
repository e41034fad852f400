"""
Retry with exponential backoff.

Used wherever the platform polls something that may not be ready yet:
payment verification against the gateway, stale-payment reconciliation and
the database readiness wait at startup.
"""

import logging
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Every attempt either raised or returned an unacceptable result."""

    def __init__(
        self,
        attempts: int,
        last_result: Any = None,
        last_error: Optional[BaseException] = None,
    ):
        self.attempts = attempts
        self.last_result = last_result
        self.last_error = last_error
        reason = f"{type(last_error).__name__}: {last_error}" if last_error else "result not accepted"
        super().__init__(f"Gave up after {attempts} attempt(s) ({reason})")


def backoff_delays(
    attempts: int,
    base_delay: float,
    multiplier: float = 2.0,
    max_delay: Optional[float] = None,
) -> list:
    """Delays slept between consecutive attempts (one fewer than attempts)."""
    delays = []
    delay = base_delay
    for _ in range(max(attempts - 1, 0)):
        delays.append(min(delay, max_delay) if max_delay is not None else delay)
        delay *= multiplier
    return delays


def retry_with_backoff(
    operation: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 2.0,
    multiplier: float = 2.0,
    max_delay: Optional[float] = None,
    accept: Callable[[T], bool] = lambda _result: True,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Call ``operation`` until ``accept`` approves its result.

    Args:
        operation: zero-argument callable performing one attempt
        attempts: total number of attempts, at least 1
        base_delay: seconds slept after the first failed attempt
        multiplier: growth factor applied to the delay after each failure
        max_delay: optional ceiling for a single delay
        accept: predicate deciding whether a result ends the loop
        retry_on: exception types that count as a failed attempt
        sleep: injectable sleep function
        description: label used in log messages

    Returns:
        The first accepted result.

    Raises:
        RetryExhausted: when no attempt produced an accepted result. The last
            result and the last exception are attached.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delays = backoff_delays(attempts, base_delay, multiplier, max_delay)
    last_result: Any = None
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
        except retry_on as exc:
            last_error = exc
            logger.warning(
                f"{description} attempt {attempt}/{attempts} raised {type(exc).__name__}: {exc}"
            )
        else:
            if accept(result):
                if attempt > 1:
                    logger.info(f"{description} succeeded on attempt {attempt}/{attempts}")
                return result
            last_result = result
            last_error = None
            logger.debug(f"{description} attempt {attempt}/{attempts} returned an unaccepted result")

        if attempt < attempts:
            sleep(delays[attempt - 1])

    raise RetryExhausted(attempts, last_result=last_result, last_error=last_error)
