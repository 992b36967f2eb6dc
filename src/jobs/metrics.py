"""Counters for the poll worker."""
import time
import logging
from collections import defaultdict
from typing import Dict

from src.store.models import TaskStatus

logger = logging.getLogger(__name__)


class Metrics:
    """Track polls and the outcomes they produced."""

    def __init__(self):
        self.start_time = time.time()
        self.counters: Dict[str, int] = defaultdict(int)
        self.last_report_time = time.time()
        self.last_report_count = 0

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] += amount

    def record_outcome(self, status: TaskStatus) -> None:
        """Count one poll and, if it finished the order, how it ended."""
        self.increment("polled")
        if status == TaskStatus.COMPLETED:
            self.increment("completed")
        elif status == TaskStatus.ERROR:
            self.increment("failed")
        elif status == TaskStatus.TIMEOUT:
            self.increment("timeout")

    def get_rate(self) -> float:
        """Polls per second since start."""
        elapsed = time.time() - self.start_time
        polled = self.counters.get("polled", 0)
        if elapsed > 0:
            return polled / elapsed
        return 0.0

    def report(self) -> None:
        """Log current metrics."""
        now = time.time()
        polled = self.counters.get("polled", 0)
        recent_elapsed = now - self.last_report_time
        recent_rate = (polled - self.last_report_count) / recent_elapsed if recent_elapsed > 0 else 0

        logger.info(
            f"Polled: {polled} | "
            f"Rate: {self.get_rate():.2f}/s (recent: {recent_rate:.2f}/s) | "
            f"Completed: {self.counters.get('completed', 0)} | "
            f"Failed: {self.counters.get('failed', 0)} | "
            f"Timeout: {self.counters.get('timeout', 0)} | "
            f"Errors: {self.counters.get('errors', 0)}"
        )

        self.last_report_time = now
        self.last_report_count = polled

    def get_summary(self) -> Dict:
        """Get summary statistics."""
        return {
            "polled": self.counters.get("polled", 0),
            "completed": self.counters.get("completed", 0),
            "failed": self.counters.get("failed", 0),
            "timeout": self.counters.get("timeout", 0),
            "errors": self.counters.get("errors", 0),
            "sweeps": self.counters.get("sweeps", 0),
            "rate": self.get_rate(),
            "elapsed_seconds": time.time() - self.start_time,
        }
