"""Per-request stage timing for the recommendation and search pipelines."""
import time
from contextlib import contextmanager
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


def now_ms() -> float:
    """Return current time in milliseconds using high-resolution timer."""
    return time.perf_counter() * 1000


class StageTimer:
    """
    Records how long each named pipeline stage took.

    Example:
        timer = StageTimer("req_id=abc")
        with timer.stage("aggregate"):
            ...
        timer.log_summary()
    """

    def __init__(self, label: str):
        self.label = label
        self.started_ms = now_ms()
        self.stages: Dict[str, float] = {}

    @contextmanager
    def stage(self, name: str):
        start = now_ms()
        try:
            yield
        finally:
            self.stages[name] = self.stages.get(name, 0.0) + (now_ms() - start)

    @property
    def total_ms(self) -> float:
        return now_ms() - self.started_ms

    def log_summary(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG) -> None:
        parts = " ".join(f"{name}={elapsed:.2f}ms" for name, elapsed in self.stages.items())
        (log or logger).log(level, "%s %s total=%.2fms", self.label, parts, self.total_ms)
