from collections import Counter
from threading import Lock


class Metrics:
    """Process-local run counters; the CLI logs them when a command finishes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def inc_outcome(self, scope: str, outcome: str) -> None:
        self.inc(f"{scope}_{outcome.lower()}_total")

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def render(self) -> str:
        counters = self.snapshot()
        return " ".join(f"{key}={counters[key]}" for key in sorted(counters))

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


metrics = Metrics()
