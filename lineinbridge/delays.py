"""Exponential retry delays."""

from __future__ import annotations

INITIAL_DELAY = 1.0
MAX_DELAY = 30.0


class Backoff:
    """Doubling delay, starting at one second and capped at thirty."""

    def __init__(self, initial: float = INITIAL_DELAY, maximum: float = MAX_DELAY) -> None:
        if initial <= 0 or maximum < initial:
            raise ValueError("backoff needs 0 < initial <= maximum")
        self._initial = initial
        self._maximum = maximum
        self._current = initial

    def reset(self) -> None:
        """Start over from the initial delay."""
        self._current = self._initial

    def next_delay(self) -> float:
        """Return the delay to wait now, in seconds, and double the next one."""
        delay = self._current
        self._current = min(self._current * 2, self._maximum)
        return delay