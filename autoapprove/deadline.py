"""
Caller-supplied evaluation deadline.
"""

import time
from typing import Callable

from .errors import EvaluationCancelled


class Deadline:
    """A point in monotonic time after which an evaluation must stop."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires = clock() + seconds

    @classmethod
    def never(cls) -> "Deadline":
        return cls(float("inf"))

    def remaining(self) -> float:
        return max(0.0, self._expires - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires

    def bound(self, timeout: float) -> float:
        """Clamp a per-call timeout to what is left of the deadline."""
        return min(timeout, self.remaining())

    def check(self, stage: str) -> None:
        if self.expired:
            raise EvaluationCancelled(stage)
