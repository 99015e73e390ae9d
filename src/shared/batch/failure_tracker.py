"""Failure tracking for batch processing runs."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class FailureTracker:
    """Records failed items with full context for later analysis or re-runs.

    Failures are grouped by stage (e.g. ``process`` and ``repair``) and keep
    the attempt number, so a file saved at the end of one sweep can seed the
    next one.

    Example:
        tracker = FailureTracker()

        try:
            await run(item)
        except PipelineError as exc:
            tracker.record_failure(
                stage="process",
                item_id=item.id,
                url=item.url,
                error=str(exc),
                tb=traceback.format_exc(),
            )

        tracker.save(Path("./failures.json"))
    """

    def __init__(self) -> None:
        self.failures: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.lock = threading.Lock()
        self.attempt_counts: Dict[str, Dict[str, int]] = defaultdict(dict)

    def record_failure(
        self,
        stage: str,
        item_id: str,
        url: Optional[str],
        error: str,
        tb: str = "",
    ) -> int:
        """Record a processing failure.

        Args:
            stage: Stage name
            item_id: Work item id
            url: Source URL of the item, if known
            error: Error message
            tb: Traceback string

        Returns:
            Number of attempts for this item/stage
        """
        with self.lock:
            stage_attempts = self.attempt_counts[stage]
            stage_attempts[item_id] = stage_attempts.get(item_id, 0) + 1
            attempt_count = stage_attempts[item_id]
            self.failures[stage].append(
                {
                    "item_id": item_id,
                    "url": url,
                    "error": str(error),
                    "traceback": tb,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "attempt": attempt_count,
                }
            )
            return attempt_count

    def failed_ids(self, stage: Optional[str] = None) -> List[str]:
        """Return distinct failed item ids, optionally for one stage."""
        with self.lock:
            stages = [stage] if stage else list(self.failures)
            seen: Dict[str, None] = {}
            for name in stages:
                for entry in self.failures.get(name, []):
                    seen.setdefault(entry["item_id"], None)
            return list(seen)

    def save(self, filepath: Path) -> None:
        """Atomically save failures to JSON file.

        Args:
            filepath: Path to save failures
        """
        with self.lock:
            if not self.failures:
                logger.info("No failures to save")
                return

            try:
                temp_path = filepath.with_suffix(".tmp")
                with open(temp_path, "w") as f:
                    json.dump(dict(self.failures), f, indent=2)
                temp_path.replace(filepath)

                total_failures = sum(len(v) for v in self.failures.values())
                logger.info("Saved %d failures to %s", total_failures, filepath)
            except OSError as e:
                logger.error("Failed to save failures: %s", e)

    def load(self, filepath: Path) -> Dict[str, List[str]]:
        """Load failures from JSON file and extract item ids by stage.

        Args:
            filepath: Path to failures file

        Returns:
            Dict mapping stage to list of item ids
        """
        if not filepath.exists():
            logger.warning("Failures file not found: %s", filepath)
            return {}

        try:
            with open(filepath, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load failures: %s", e)
            return {}

        item_ids_by_stage = {
            stage: [entry["item_id"] for entry in entries if isinstance(entry, dict) and "item_id" in entry]
            for stage, entries in data.items()
        }
        total_failures = sum(len(v) for v in item_ids_by_stage.values())
        logger.info("Loaded %d failures from %s", total_failures, filepath)
        return item_ids_by_stage

    def get_summary(self) -> Dict[str, int]:
        """Get failure counts by stage.

        Returns:
            Dict mapping stage to failure count
        """
        with self.lock:
            return {stage: len(failures) for stage, failures in self.failures.items()}

    def as_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        """Serialise recorded failures for JSON responses."""
        with self.lock:
            return {stage: [dict(entry) for entry in entries] for stage, entries in self.failures.items()}

    def clear(self) -> None:
        """Clear all failure data."""
        with self.lock:
            self.failures.clear()
            self.attempt_counts.clear()
            logger.info("Failure tracker cleared")
