"""Detect a model stuck repeating the same tool call."""

from collections import deque

DOOM_LOOP_THRESHOLD = 3


class DoomLoopDetector:
    """Sliding window over the last attempted ``(name, arguments)`` pairs.

    The window only ever holds a run of identical entries: recording a pair
    that differs from the latest one starts a fresh run.
    """

    def __init__(self, threshold: int = DOOM_LOOP_THRESHOLD):
        if threshold < 2:
            raise ValueError("threshold must be at least 2")
        self.threshold = threshold
        self._window: deque[tuple[str, str]] = deque(maxlen=threshold)

    def record(self, name: str, arguments: str) -> None:
        entry = (name, arguments)
        if self._window and self._window[-1] != entry:
            self._window.clear()
        self._window.append(entry)

    def check(self) -> bool:
        """True when the last ``threshold`` recorded calls are identical."""
        return len(self._window) == self.threshold and len(set(self._window)) == 1

    def would_trip(self, name: str, arguments: str) -> bool:
        """True if recording this candidate would make check() true."""
        needed = self.threshold - 1
        if len(self._window) < needed:
            return False
        recent = list(self._window)[-needed:]
        return all(entry == (name, arguments) for entry in recent)

    def reset(self) -> None:
        self._window.clear()

    def snapshot(self) -> list[tuple[str, str]]:
        return list(self._window)
