"""
Simulated progress for a running generation job.

The generator does not report reliable progress, so the visible value follows
a decelerating heuristic and stops short of 100 until completion is confirmed:

    below 50  -> +1.5 per tick
    below 80  -> +0.8 per tick
    below 99  -> +0.3 per tick
    clamped at 99
"""

CEILING = 99
COMPLETE = 100


class ProgressSimulator:
    """Monotonic progress value in [0, 100]."""

    def __init__(self, start: float = 1.0):
        self._value = max(0.0, min(float(start), float(CEILING)))
        self._completed = False

    @property
    def value(self) -> int:
        return COMPLETE if self._completed else int(self._value)

    @property
    def completed(self) -> bool:
        return self._completed

    def step(self) -> int:
        """Advance one tick."""
        if self._completed:
            return COMPLETE
        if self._value < 50:
            self._value += 1.5
        elif self._value < 80:
            self._value += 0.8
        elif self._value < CEILING:
            self._value += 0.3
        self._value = min(self._value, float(CEILING))
        return self.value

    def raise_to(self, value: float) -> int:
        """Raise to at least `value` (still capped at 99). Never lowers."""
        if not self._completed:
            self._value = max(self._value, min(float(value), float(CEILING)))
        return self.value

    def complete(self) -> int:
        self._completed = True
        return COMPLETE
