"""Metrics exporter for observability."""
import time
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import orjson

from src.config import DATA_DIR

METRICS_FILE = DATA_DIR / "metrics.jsonl"


class MetricsExporter:
    """Appends worker metrics snapshots to a JSONL file."""

    def __init__(self, run_id: str, metrics_file: Optional[Path] = None):
        self.run_id = run_id
        self.metrics_file = metrics_file or METRICS_FILE

    async def export_metrics(self, summary: Dict, active: int) -> None:
        """Write one snapshot line."""
        metrics = {
            "ts": time.time(),
            "run_id": self.run_id,
            "active": active,
            "polled": summary["polled"],
            "completed": summary["completed"],
            "failed": summary["failed"],
            "timeout": summary["timeout"],
            "errors": summary["errors"],
            "rate": round(summary["rate"], 2),
        }

        line = orjson.dumps(metrics).decode() + "\n"
        async with aiofiles.open(self.metrics_file, "a") as f:
            await f.write(line)
