"""Fixed-interval polling with a hard attempt ceiling and a run-wide deadline."""
import logging
import time as time_module
from collections.abc import Callable
from typing import TypeVar

from utils.errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """Wall-clock budget for one pipeline run.

    Created once by the orchestrator and handed to every stage. A budget of
    `None` never expires (useful in tests and for ad-hoc stage calls).
    `cancel()` expires it early so in-flight polls stop after a fatal error.
    """

    def __init__(self, budget_s: float | None, clock: Callable[[], float] = time_module.monotonic):
        self._clock = clock
        self._expires_at = None if budget_s is None else clock() + budget_s
        self._cancelled = False

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        if self._cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, what: str) -> None:
        if self._cancelled:
            raise PollTimeoutError(f"Run cancelled before {what}")
        if self.expired:
            raise PollTimeoutError(f"Run deadline reached before {what}")


def poll_until(
    fetch: Callable[[], T],
    is_terminal: Callable[[T], bool],
    *,
    interval_s: float,
    max_attempts: int,
    deadline: Deadline,
    what: str,
) -> T:
    """Call `fetch` until `is_terminal` accepts its result.

    Sleeps `interval_s` between checks. Raises PollTimeoutError once
    `max_attempts` checks are spent or the deadline expires.
    """
    for attempt in range(1, max_attempts + 1):
        deadline.check(what)
        state = fetch()
        if is_terminal(state):
            return state
        logger.debug("%s not finished (check %d/%d).", what, attempt, max_attempts)
        if attempt < max_attempts:
            time_module.sleep(interval_s)

    raise PollTimeoutError(f"{what} did not finish after {max_attempts} checks")
