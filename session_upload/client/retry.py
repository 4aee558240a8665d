"""Retry with exponential backoff and jitter.

Every retrying caller in session_upload goes through the primitives here:

- ``jitter`` spreads a delay by up to +/-25% using an injected random source
- ``RetryState`` is the per-operation ``(retry_count, current_backoff)`` pair
- ``call_with_retry`` runs an operation, honouring rate limits and giving up on
  permanent errors right away
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from session_upload.exceptions import (
    PermanentApiError,
    RateLimitedError,
    RetriesExhaustedError,
    TransientApiError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOpts:
    """Retry configuration.

    Attributes:
        max: Number of failed attempts after which the operation is abandoned
        initial_backoff: First delay between attempts, in seconds
        max_backoff: The delay doubles after each failure but never grows past this
    """

    max: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 2.0

    def __post_init__(self):
        if self.max < 1:
            raise ValueError(f"max must be at least 1, got {self.max}")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff times must not be negative")


def jitter(duration: float, rng: random.Random) -> float:
    """Shift ``duration`` by a uniformly random amount in ``[-duration/4, duration/4]``."""
    spread = duration / 4
    return duration + rng.uniform(-spread, spread)


def next_backoff(current: float, max_backoff: float) -> float:
    """Double ``current``, capped at ``max_backoff``."""
    return min(current * 2, max_backoff)


def backoff_schedule(opts: RetryOpts) -> Iterator[float]:
    """Yield the unjittered backoff sequence: ``min(initial * 2**k, max_backoff)``."""
    backoff = min(opts.initial_backoff, opts.max_backoff)
    while True:
        yield backoff
        backoff = next_backoff(backoff, opts.max_backoff)


class RetryState:
    """Mutable state of one retry loop. Create a fresh one for every operation."""

    def __init__(self, opts: RetryOpts):
        self.opts = opts
        self.retry_count = 0
        self.current_backoff = min(opts.initial_backoff, opts.max_backoff)

    def do_retry(
        self,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
    ) -> bool:
        """Record a failed attempt and wait before the next one.

        Returns:
            False if the retry budget is used up (no sleep happens), True otherwise
        """
        self.retry_count += 1
        if self.retry_count >= self.opts.max:
            return False
        (sleep or time.sleep)(jitter(self.current_backoff, rng or random.SystemRandom()))
        self.current_backoff = next_backoff(self.current_backoff, self.opts.max_backoff)
        return True


def wait_for_rate_limit(
    error: RateLimitedError, sleep: Optional[Callable[[float], None]] = None
) -> None:
    """Sleep exactly as long as the remote asked for."""
    logger.warning(f"Rate-limited ({error.reason}), waiting {error.retry_after_seconds} seconds")
    if error.retry_after_seconds > 0:
        (sleep or time.sleep)(error.retry_after_seconds)


def call_with_retry(
    operation: Callable[[], T],
    opts: RetryOpts,
    description: str = "request",
    sleep: Optional[Callable[[float], None]] = None,
    rng: Optional[random.Random] = None,
    state: Optional[RetryState] = None,
) -> T:
    """Call ``operation`` until it succeeds or the retry budget is used up.

    Args:
        operation: Zero-argument callable performing one attempt
        opts: Retry configuration
        description: Name of the operation, for log messages
        sleep: Sleep function (injectable for tests)
        rng: Random source for jitter (defaults to ``random.SystemRandom``)
        state: Retry state to use, for callers that want to inspect it afterwards

    Returns:
        Whatever ``operation`` returns

    Raises:
        PermanentApiError: As soon as one is raised by ``operation``
        RetriesExhaustedError: After ``opts.max`` failed attempts
    """
    state = state or RetryState(opts)
    while True:
        try:
            return operation()
        except RateLimitedError as e:
            wait_for_rate_limit(e, sleep)
        except PermanentApiError as e:
            logger.error(f"Error calling {description}: {e}, not retrying.")
            raise
        except (TransientApiError, OSError) as e:
            if not state.do_retry(sleep, rng):
                logger.error(f"Error calling {description}: {e}, failing.")
                raise RetriesExhaustedError(
                    f"{description} failed after {state.retry_count} attempts: {e}",
                    attempts=state.retry_count,
                    last_error=e,
                ) from e
            logger.warning(
                f"Error calling {description} "
                f"(attempt {state.retry_count}/{opts.max}): {e}, retrying."
            )
