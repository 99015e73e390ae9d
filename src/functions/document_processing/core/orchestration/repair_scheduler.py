"""Bounded, staggered pool that repairs items reported as broken."""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Iterable, List, Optional, Set

from src.shared.batch import FailureTracker, ProgressTracker

from ..contracts.config import RepairConfig
from ..contracts.errors import PipelineError, RunCancelled, TransportError
from ..contracts.run_result import RepairSweepResult, RunState
from ..contracts.state_events import SchedulerStatusChanged
from ..contracts.work_item import build_source_url, infer_kind
from ..integration.backend_client import ProcessingBackend
from .cancellation import CancellationController
from .event_bus import StateEventBus
from .repair import ItemRepairer

logger = logging.getLogger(__name__)


class RepairScheduler:
    """Repairs a list of broken ids with its own concurrency limit.

    Independent of the processing scheduler: running both at once may exceed
    either limit alone.
    """

    name = "repair"

    def __init__(
        self,
        *,
        backend: ProcessingBackend,
        repairer: ItemRepairer,
        controller: CancellationController,
        bus: StateEventBus,
        config: RepairConfig,
        failures: Optional[FailureTracker] = None,
    ) -> None:
        self._backend = backend
        self._repairer = repairer
        self._controller = controller
        self._bus = bus
        self.config = config
        self.failures = failures or FailureTracker()
        self.active = 0
        self.status_text = ""
        self.running = False
        self._finding = False
        self._generation = 0
        self._stop_requested = False
        self._tasks: Set[asyncio.Task] = set()
        controller.add_stop_hook(self._on_stop)

    async def repair_all_broken(self) -> Optional[RepairSweepResult]:
        """Fetch the broken-id list and repair every entry; None if already running."""

        if self.running or self._finding:
            logger.info("Repair sweep already running, ignoring request")
            return None
        self._finding = True
        self._set_status("Finding documents that need repair...")
        try:
            broken_ids = await self._controller.track(self._backend.find_broken())
        except TransportError as exc:
            self._set_status(f"Error finding broken documents: {exc}")
            result = RepairSweepResult(config_snapshot=self.config.snapshot())
            result.errors.append({"stage": "find_broken", "message": str(exc)})
            result.finish()
            return result
        except RunCancelled:
            result = RepairSweepResult(config_snapshot=self.config.snapshot(), stopped=True)
            result.finish()
            return result
        finally:
            self._finding = False
        if not broken_ids:
            self._set_status("No broken documents found.")
            result = RepairSweepResult(config_snapshot=self.config.snapshot())
            result.finish()
            return result
        return await self.repair_ids(broken_ids)

    async def repair_ids(self, item_ids: Iterable[str]) -> Optional[RepairSweepResult]:
        if self.running:
            logger.info("Repair sweep already running, ignoring request")
            return None
        self.running = True
        self._stop_requested = False
        queue: List[str] = list(dict.fromkeys(item_id for item_id in item_ids if item_id))
        result = RepairSweepResult(found=len(queue), config_snapshot=self.config.snapshot())
        progress = ProgressTracker(stage="repair", total_items=len(queue), unit="documents")
        self._set_status(f"Found {len(queue)} documents that need repair. Starting repair process...")
        try:
            while (queue or self.active > 0) and not self._stop_requested:
                while self.active < self.config.max_concurrent and queue and not self._stop_requested:
                    item_id = queue.pop(0)
                    self.active += 1
                    result.max_active = max(result.max_active, self.active)
                    task = asyncio.create_task(self._repair_one(item_id, self._generation, result, progress))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    if self.config.stagger_seconds and queue:
                        await asyncio.sleep(self.config.stagger_seconds)
                await asyncio.sleep(self.config.poll_interval_seconds)
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            self.running = False
            result.stopped = self._stop_requested
            result.cancelled += len(queue) if self._stop_requested else 0
            result.errors = self.failures.as_dict().get("repair", [])
            result.finish()
            progress.log_summary()
        self._set_status(
            f"Repair complete. {result.repaired} documents repaired, {result.failed} failures."
            if not result.stopped
            else f"Repair stopped. {result.repaired} documents repaired, {result.failed} failures."
        )
        return result

    async def _repair_one(
        self,
        item_id: str,
        generation: int,
        result: RepairSweepResult,
        progress: ProgressTracker,
    ) -> None:
        try:
            if self._stop_requested or self._controller.cancelled:
                result.cancelled += 1
                return
            self._set_status(
                f"Repairing {result.repaired + result.failed + 1}/{result.found} documents. "
                f"Completed: {result.repaired}, Failed: {result.failed}, Active: {self.active}"
            )
            outcome = await self._repairer.repair(item_id)
            if outcome.state is RunState.REPAIRED:
                result.repaired += 1
                progress.increment(success=True)
            else:
                result.skipped += 1
                progress.increment(success=True)
        except RunCancelled:
            result.cancelled += 1
        except PipelineError as exc:
            self._record_failure(item_id, exc, result, progress)
        except Exception as exc:
            logger.exception("[%s] Unexpected error in repair sweep", item_id)
            self._record_failure(item_id, exc, result, progress)
        finally:
            if generation == self._generation:
                self.active -= 1
            if progress.should_log():
                progress.log_progress({"active": self.active})

    def _record_failure(
        self, item_id: str, exc: Exception, result: RepairSweepResult, progress: ProgressTracker
    ) -> None:
        result.failed += 1
        progress.increment(success=False)
        self.failures.record_failure(
            "repair", item_id, build_source_url(item_id, infer_kind(item_id)), str(exc), traceback.format_exc()
        )

    def _on_stop(self) -> None:
        self._stop_requested = True
        self._generation += 1
        self.active = 0
        self._publish()

    def _set_status(self, text: str) -> None:
        self.status_text = text
        logger.info(text)
        self._publish()

    def _publish(self) -> None:
        self._bus.publish(
            SchedulerStatusChanged(
                scheduler=self.name,
                status_text=self.status_text,
                active=self.active,
                running=self.running,
            )
        )
