"""Progress tracking for batch processing pipelines."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Tracks processing progress and calculates metrics.

    The total may grow while the run is in progress: discovery-driven sweeps
    only learn about the next batch after the current one has been scanned.

    Example:
        tracker = ProgressTracker(stage="process")
        tracker.add_total(len(batch))

        for item in batch:
            tracker.increment(success=run(item))
            if tracker.should_log():
                tracker.log_progress()

        tracker.log_summary()
    """

    def __init__(
        self,
        stage: str,
        total_items: int = 0,
        *,
        log_interval: int = 10,
        log_time_interval: int = 30,
        unit: str = "items",
    ):
        """Initialize progress tracker.

        Args:
            stage: Current stage name
            total_items: Number of items known up front
            log_interval: Number of items between logs
            log_time_interval: Seconds between time-based logs
            unit: Label used in log lines
        """
        self.stage = stage
        self.total_items = total_items
        self.log_interval = log_interval
        self.log_time_interval = log_time_interval
        self.unit = unit

        self.start_time = time.time()
        self.processed_count = 0
        self.success_count = 0
        self.error_count = 0
        self.lock = threading.Lock()
        self.last_log_time = self.start_time
        self.last_log_count = 0

    def add_total(self, count: int) -> None:
        """Extend the expected total with a newly discovered batch."""
        if count <= 0:
            return
        with self.lock:
            self.total_items += count

    def increment(self, success: bool = True) -> None:
        """Increment counters.

        Args:
            success: Whether processing succeeded
        """
        with self.lock:
            self.processed_count += 1
            if success:
                self.success_count += 1
            else:
                self.error_count += 1

    def should_log(self) -> bool:
        """Check if progress should be logged.

        Returns:
            True if should log now
        """
        with self.lock:
            count_trigger = self.processed_count - self.last_log_count >= self.log_interval
            time_trigger = time.time() - self.last_log_time >= self.log_time_interval
            return count_trigger or time_trigger

    def log_progress(
        self,
        extra_stats: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log current progress with all metrics.

        Args:
            extra_stats: Optional additional stats to include in log
        """
        with self.lock:
            stats = self._compute()

            parts = [
                f"Progress: {self.processed_count:,}/{self.total_items:,} ({stats['percent']:.1f}%)",
                f"Rate: {stats['rate_per_hour']:.0f} {self.unit}/h",
            ]

            memory = psutil.virtual_memory()
            parts.append(
                f"Memory: {memory.percent:.0f}% ({memory.used / (1024**3):.1f}/{memory.total / (1024**3):.1f}GB)"
            )

            if extra_stats:
                for key, value in extra_stats.items():
                    if isinstance(value, float):
                        parts.append(f"{key}: {value:.1f}")
                    else:
                        parts.append(f"{key}: {value}")

            parts.extend([
                f"Errors: {self.error_count}",
                f"ETA: {stats['eta_hours']:.1f}h",
                f"Stage: {self.stage}",
            ])

            logger.info(" | ".join(parts))

            self.last_log_time = time.time()
            self.last_log_count = self.processed_count

    def log_summary(self) -> None:
        """Log final summary."""
        with self.lock:
            stats = self._compute()

        summary_parts = [
            f"Total processed: {self.processed_count:,}",
            f"Successful: {self.success_count:,}",
            f"Errors: {self.error_count:,}",
            f"Time: {stats['elapsed_hours'] * 60:.1f}min",
            f"Avg rate: {stats['rate_per_hour']:.0f} {self.unit}/h",
            f"Stage: {self.stage}",
            f"Final memory: {psutil.virtual_memory().percent:.0f}%",
        ]

        logger.info("Batch Processing Complete:\n  " + "\n  ".join(summary_parts))

    def get_stats(self) -> Dict[str, Any]:
        """Get current progress statistics.

        Returns:
            Dict with progress metrics
        """
        with self.lock:
            stats = self._compute()
            return {
                "processed": self.processed_count,
                "successful": self.success_count,
                "errors": self.error_count,
                "total": self.total_items,
                **stats,
                "stage": self.stage,
            }

    def _compute(self) -> Dict[str, float]:
        elapsed_hours = (time.time() - self.start_time) / 3600
        rate = self.processed_count / elapsed_hours if elapsed_hours > 0 else 0
        remaining = max(self.total_items - self.processed_count, 0)
        return {
            "percent": (
                self.processed_count / self.total_items * 100
                if self.total_items > 0
                else 0
            ),
            "rate_per_hour": rate,
            "elapsed_hours": elapsed_hours,
            "eta_hours": remaining / rate if rate > 0 else 0,
        }
