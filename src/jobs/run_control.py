"""Run control: stop conditions for the poll worker."""
import time
import logging
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RunControl:
    """Controls run stopping conditions."""

    stop_after_minutes: Optional[float] = None
    max_errors: Optional[int] = None
    max_consecutive_errors: Optional[int] = None

    # Internal state
    start_time: float = field(default_factory=time.time)
    error_count: int = 0
    consecutive_errors: int = 0
    last_error_time: Optional[float] = None

    def should_stop(self) -> tuple[bool, Optional[str]]:
        """Check if run should stop. Returns (should_stop, reason)."""
        elapsed_minutes = (time.time() - self.start_time) / 60

        if self.stop_after_minutes and elapsed_minutes >= self.stop_after_minutes:
            return True, f"Reached stop_after_minutes={self.stop_after_minutes}"

        if self.max_errors and self.error_count >= self.max_errors:
            return True, f"Reached max_errors={self.max_errors}"

        if self.max_consecutive_errors and self.consecutive_errors >= self.max_consecutive_errors:
            return True, f"Reached max_consecutive_errors={self.max_consecutive_errors}"

        return False, None

    def record_error(self) -> None:
        """Record an unexpected failure while polling an order."""
        self.error_count += 1
        self.consecutive_errors += 1
        self.last_error_time = time.time()

    def record_success(self) -> None:
        self.consecutive_errors = 0

    def get_summary(self) -> dict:
        """Get summary statistics."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        return {
            "elapsed_minutes": round(elapsed_minutes, 2),
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
        }
