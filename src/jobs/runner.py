"""Poll worker driving in-flight orders to a terminal state."""
import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from src.config import config
from src.jobs.metrics import Metrics
from src.jobs.metrics_exporter import MetricsExporter
from src.jobs.orchestrator import OrderOrchestrator
from src.jobs.run_control import RunControl
from src.store.models import Task

logger = logging.getLogger(__name__)


class PollRunner:
    """Sweeps active orders and polls each once per sweep."""

    def __init__(
        self,
        orchestrator: OrderOrchestrator,
        concurrency: Optional[int] = None,
        once: bool = False,
        stop_after_minutes: Optional[float] = None,
        max_errors: Optional[int] = None,
        max_consecutive_errors: Optional[int] = None,
        metrics_file: Optional[Path] = None,
        export_interval: float = 30.0,
    ):
        self.orchestrator = orchestrator
        self.concurrency = concurrency or config.CONCURRENCY
        self.once = once
        self.export_interval = export_interval

        self.run_id = str(uuid.uuid4())
        logger.info(f"Run ID: {self.run_id}")

        self.run_control = RunControl(
            stop_after_minutes=stop_after_minutes,
            max_errors=max_errors,
            max_consecutive_errors=max_consecutive_errors,
        )
        self.metrics = Metrics()
        self.metrics_exporter = MetricsExporter(self.run_id, metrics_file=metrics_file)
        self.last_metrics_export = time.time()
        self.last_active = 0

    async def _poll_task(self, task: Task, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            should_stop, _ = self.run_control.should_stop()
            if should_stop:
                return
            try:
                updated = await self.orchestrator.poll_once(task.task_id)
            except Exception as e:
                logger.error(f"Failed to poll order {task.task_id}: {e}", exc_info=True)
                self.metrics.increment("errors")
                self.run_control.record_error()
                return
            self.metrics.record_outcome(updated.status)
            self.run_control.record_success()

    async def sweep(self) -> int:
        """Poll every active order once. Returns how many were polled."""
        tasks = await self.orchestrator.state.list_active_tasks()
        self.last_active = len(tasks)
        if not tasks:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)
        await asyncio.gather(*(self._poll_task(task, semaphore) for task in tasks))
        self.metrics.increment("sweeps")
        return len(tasks)

    async def run(self) -> None:
        """Sweep until stopped, or once with ``once=True``."""
        try:
            while True:
                should_stop, reason = self.run_control.should_stop()
                if should_stop:
                    logger.warning(f"Stop condition met: {reason}")
                    break

                polled = await self.sweep()
                if polled:
                    self.metrics.report()

                if time.time() - self.last_metrics_export > self.export_interval:
                    await self._export_metrics()
                    self.last_metrics_export = time.time()

                if self.once:
                    break
                await asyncio.sleep(self.orchestrator.poll_interval)
        finally:
            await self._final_report()

    async def run_task(self, task_id: str) -> Task:
        """Poll a single order until it reaches a terminal state."""
        task = await self.orchestrator.poll_until_terminal(task_id)
        self.metrics.record_outcome(task.status)
        logger.info(f"Order {task_id} finished as {task.status.value} after {task.retry_count} checks")
        return task

    async def _export_metrics(self) -> None:
        await self.metrics_exporter.export_metrics(self.metrics.get_summary(), active=self.last_active)

    async def _final_report(self) -> None:
        """Generate final report."""
        summary = self.metrics.get_summary()
        run_summary = self.run_control.get_summary()

        logger.info("=" * 60)
        logger.info("FINAL REPORT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Elapsed: {run_summary['elapsed_minutes']:.2f} minutes")
        logger.info(f"Sweeps: {summary['sweeps']}")
        logger.info(f"Polled: {summary['polled']}")
        logger.info(f"Completed: {summary['completed']}")
        logger.info(f"Failed: {summary['failed']}")
        logger.info(f"Timeout: {summary['timeout']}")
        logger.info(f"Errors: {summary['errors']}")
        logger.info("=" * 60)

        await self._export_metrics()
