"""
Backoff helpers shared by the agent poll loop, report retries and the
fleet restart policy.
"""

import random
from typing import Callable, Optional


def compute_delay(
    attempt: int,
    base: float,
    cap: float,
    factor: float = 2.0,
    jitter: float = 0.0,
    rng: Optional[Callable[[], float]] = None,
) -> float:
    """
    Exponential delay for the given attempt number (1-based).

    Args:
        attempt: How many attempts have already failed
        base: Delay after the first failure
        cap: Upper bound for the delay, jitter included
        factor: Growth factor per attempt
        jitter: Fraction of the delay randomly added or removed (0.2 = +/-20%)
        rng: Random source returning floats in [0, 1)

    Returns:
        Delay in seconds, never above cap
    """
    if attempt <= 0:
        return 0.0
    delay = min(cap, base * (factor ** (attempt - 1)))
    if jitter > 0:
        rng = rng or random.random
        delay = delay * (1.0 + jitter * (2.0 * rng() - 1.0))
    return max(0.0, min(cap, delay))


class Backoff:
    """
    Stateful exponential backoff.

    ``current`` starts at ``base``; every ``increase()`` multiplies it by
    ``factor`` until ``cap`` is reached; ``reset()`` brings it back to
    ``base``.
    """

    def __init__(
        self,
        base: float,
        cap: float,
        factor: float = 2.0,
        jitter: float = 0.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        if base <= 0 or cap < base:
            raise ValueError(f"Invalid backoff bounds base={base} cap={cap}")
        self.base = base
        self.cap = cap
        self.factor = factor
        self.jitter = jitter
        self._rng = rng or random.random
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def current(self) -> float:
        """Delay before the next attempt, without jitter."""
        return min(self.cap, self.base * (self.factor ** self._failures))

    def increase(self) -> float:
        """Record one more failure and return the new delay."""
        if self.current < self.cap:
            self._failures += 1
        return self.current

    def next_delay(self) -> float:
        """Delay before the next attempt with jitter applied."""
        return compute_delay(
            self._failures + 1, self.base, self.cap, self.factor, self.jitter, self._rng
        )

    def reset(self) -> None:
        self._failures = 0
