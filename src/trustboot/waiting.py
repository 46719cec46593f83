"""Bounded backoff polling on explicit readiness predicates."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import RemoteUnready

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Backoff:
    """Exponential backoff schedule for readiness polling."""

    initial: float = 0.25
    factor: float = 2.0
    maximum: float = 5.0

    def delays(self) -> Callable[[], float]:
        """Return a callable producing successive delays."""
        state = {"next": self.initial}

        def _next() -> float:
            current = state["next"]
            state["next"] = min(current * self.factor, self.maximum)
            return current

        return _next


DEFAULT_BACKOFF = Backoff()


def wait_for(
    predicate: Callable[[], T | None],
    *,
    timeout: float,
    description: str,
    backoff: Backoff = DEFAULT_BACKOFF,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Poll *predicate* until it returns a truthy value or *timeout* expires.

    The truthy value is returned. Expiry raises :class:`RemoteUnready`; there
    is no unbounded retry. Exceptions raised by *predicate* propagate so
    that fatal conditions (for example a crashed tunnel process) end the wait
    immediately.
    """
    deadline = clock() + timeout
    next_delay = backoff.delays()
    attempts = 0
    while True:
        attempts += 1
        value = predicate()
        if value:
            LOGGER.debug("%s ready after %d attempt(s)", description, attempts)
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise RemoteUnready(description, timeout)
        sleep(min(next_delay(), remaining))


def remaining(deadline: float, *, clock: Callable[[], float] = time.monotonic) -> float:
    """Return the seconds left before *deadline* (never negative)."""
    return max(0.0, deadline - clock())


__all__ = ["Backoff", "DEFAULT_BACKOFF", "remaining", "wait_for"]
