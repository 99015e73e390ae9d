"""Discovery-and-processing sweep with a bounded pool of item runs."""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from src.shared.batch import FailureTracker, ProgressTracker, retry_on_network_error

from ..contracts.config import OrchestratorConfig
from ..contracts.errors import PipelineError, RunCancelled, TransportError
from ..contracts.processing_update import ProcessingUpdate
from ..contracts.run_result import RunOutcome, RunState, SweepResult
from ..contracts.state_events import ProcessingUpdateChanged, ProcessingUpdateCleared, SchedulerStatusChanged
from ..contracts.work_item import LifecycleStatus, TransientStatus, WorkItem
from ..integration.backend_client import ProcessingBackend
from ..monitoring.metrics_collector import MetricsCollector
from .cancellation import CancellationController
from .event_bus import StateEventBus
from .item_processor import ItemProcessor
from .repair import ItemRepairer
from .status_probe import StatusProbe

logger = logging.getLogger(__name__)

STALE_COMPLETION_PHRASE = "published to database"


@dataclass(slots=True, frozen=True)
class Candidate:
    item: WorkItem
    repair: bool = False


class ConcurrentScheduler:
    """Runs discovery rounds until one finds nothing actionable.

    Each round scans catalog pages (resuming where the previous round
    stopped) until the batch target is met, then drains the batch through at
    most ``concurrency_limit`` concurrent runs. Items are handled at most once
    per scheduler lifetime.
    """

    name = "process"

    def __init__(
        self,
        *,
        backend: ProcessingBackend,
        probe: StatusProbe,
        processor: ItemProcessor,
        repairer: ItemRepairer,
        controller: CancellationController,
        bus: StateEventBus,
        config: OrchestratorConfig,
        failures: Optional[FailureTracker] = None,
    ) -> None:
        self._backend = backend
        self._probe = probe
        self._processor = processor
        self._repairer = repairer
        self._controller = controller
        self._bus = bus
        self.config = config
        self.failures = failures or FailureTracker()

        self.handled: Set[str] = set()
        self.next_page = 1
        self.active = 0
        self.processed = 0
        self.total_to_process = 0
        self.status_text = ""
        self.running = False
        self._generation = 0
        self._stop_requested = False
        self._tasks: Set[asyncio.Task] = set()
        controller.add_stop_hook(self._on_stop)

    async def run(self) -> Optional[SweepResult]:
        """Run a full sweep; returns None if one is already running."""

        if self.running:
            logger.info("Sweep already running, ignoring request")
            return None
        self.running = True
        self._stop_requested = False
        self.processed = 0
        self.total_to_process = 0
        result = SweepResult(config_snapshot=self.config.snapshot())
        metrics = MetricsCollector()
        progress = ProgressTracker(stage="process", unit="documents")
        try:
            while not self._stop_requested:
                self._set_status(f"Scanning for pending documents starting from page {self.next_page}...")
                batch = await self._discover(result)
                if self._stop_requested:
                    break
                if not batch:
                    self._set_status("No more documents found that need processing. Batch processing complete.")
                    break
                result.rounds += 1
                result.discovered += len(batch)
                self.total_to_process += len(batch)
                progress.add_total(len(batch))
                self._set_status(f"Found {len(batch)} documents to process. Starting batch processing...")
                await self._execute(batch, result, metrics, progress)
                if not self._stop_requested:
                    self._set_status(f"Batch complete. Total documents processed: {self.processed}")
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            self.running = False
            result.stopped = self._stop_requested
            if self._stop_requested:
                self._set_status(f"Processing stopped manually after processing {self.processed} documents")
            result.max_active = metrics.peak_active
            result.metrics = metrics.build_snapshot()
            recorded = self.failures.as_dict()
            result.errors = recorded.get("process", []) + recorded.get("repair", [])
            result.finish()
            progress.log_summary()
        logger.info(
            "Sweep finished: %d processed, %d failed, %d unresolved, %d cancelled",
            result.processed,
            result.failed,
            result.unresolved,
            result.cancelled,
        )
        return result

    async def _discover(self, result: SweepResult) -> List[Candidate]:
        config = self.config
        batch: List[Candidate] = []
        queued: Set[str] = set()
        consecutive_failures = 0
        while len(batch) < config.discovery_batch_target and not self._stop_requested:
            page_number = self.next_page
            try:
                page = await retry_on_network_error(
                    lambda: self._controller.track(self._backend.catalog_page(page_number, config.catalog_page_size)),
                    max_retries=config.catalog_retry_attempts + 1,
                    initial_delay=config.scan_error_delay_seconds,
                    retry_on=(TransportError,),
                    label=f"catalog page {page_number}",
                )
            except TransportError as exc:
                result.skipped_pages += 1
                consecutive_failures += 1
                logger.warning("Skipping catalog page %d: %s", page_number, exc)
                if consecutive_failures >= config.max_consecutive_scan_failures:
                    logger.error("Giving up discovery after %d failed pages", consecutive_failures)
                    break
                await asyncio.sleep(config.scan_error_delay_seconds)
                self.next_page += 1
                continue
            except RunCancelled:
                break

            consecutive_failures = 0
            classified = await asyncio.gather(*(self._classify(row) for row in page.rows))
            for candidate in classified:
                if candidate is not None and candidate.item.id not in queued:
                    queued.add(candidate.item.id)
                    batch.append(candidate)
            self.next_page += 1
            self._set_status(
                f"Scanning page {page_number}/{page.total_pages}... "
                f"Found {len(batch)} documents that need processing"
            )
            if not page.has_more:
                break
        return batch

    async def _classify(self, row: Dict[str, object]) -> Optional[Candidate]:
        try:
            return await self._classify_row(row)
        except RunCancelled:
            return None

    async def _classify_row(self, row: Dict[str, object]) -> Optional[Candidate]:
        item = WorkItem.from_catalog(row)
        if item is None or item.id in self.handled:
            return None
        if item.status is LifecycleStatus.PROCESSING or item.processing_status is TransientStatus.PROCESSING:
            return None

        if self._looks_stale(item):
            self._bus.publish(
                ProcessingUpdateChanged(
                    item.id,
                    ProcessingUpdate(status="checking", message="Checking if document needs repair..."),
                )
            )
            try:
                broken = await self._probe.is_broken(item.id)
            finally:
                self._bus.publish(ProcessingUpdateCleared(item.id, None))
            if broken:
                return Candidate(item, repair=True)

        if item.status is LifecycleStatus.PENDING or len(item.stages) < self.config.required_stage_count:
            status = await self._probe.probe(item.id, item.kind)
            if status.needed_stages(self.config.limit_to_core_analysis):
                return Candidate(item)
        return None

    @staticmethod
    def _looks_stale(item: WorkItem) -> bool:
        if item.status is LifecycleStatus.READY and item.page_count == 0:
            return True
        return any(
            STALE_COMPLETION_PHRASE in (text or "")
            for text in (item.raw_status, item.raw_processing_status)
        )

    async def _execute(
        self,
        batch: List[Candidate],
        result: SweepResult,
        metrics: MetricsCollector,
        progress: ProgressTracker,
    ) -> None:
        queue = list(batch)
        while (queue or self.active > 0) and not self._stop_requested:
            while self.active < self.config.concurrency_limit and queue and not self._stop_requested:
                candidate = queue.pop(0)
                if candidate.item.id in self.handled:
                    continue
                self.handled.add(candidate.item.id)
                self.active += 1
                metrics.observe_active(self.active)
                task = asyncio.create_task(self._launch(candidate, self._generation, result, metrics, progress))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            self._publish_counts()
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _launch(
        self,
        candidate: Candidate,
        generation: int,
        result: SweepResult,
        metrics: MetricsCollector,
        progress: ProgressTracker,
    ) -> None:
        item = candidate.item
        stage = "repair" if candidate.repair else "process"
        try:
            if self._stop_requested or self._controller.cancelled:
                logger.info("[%s] Skipping due to stop request", item.id)
                result.cancelled += 1
                return
            if candidate.repair:
                outcome = await self._repairer.repair(item.id)
            else:
                outcome = await self._processor.process(item)
            self._record_outcome(outcome, result, metrics)
            progress.increment(success=outcome.succeeded)
        except RunCancelled:
            result.cancelled += 1
        except PipelineError as exc:
            result.failed += 1
            result.processed += 1
            metrics.record_failure(exc.stage)
            progress.increment(success=False)
            self.failures.record_failure(stage, item.id, item.source_url, str(exc), traceback.format_exc())
        except Exception as exc:
            logger.exception("[%s] Unexpected error in sweep", item.id)
            result.failed += 1
            result.processed += 1
            metrics.record_failure(stage)
            progress.increment(success=False)
            self.failures.record_failure(stage, item.id, item.source_url, str(exc), traceback.format_exc())
        finally:
            if generation == self._generation:
                self.active -= 1
            if progress.should_log():
                progress.log_progress({"active": self.active})

    def _record_outcome(self, outcome: RunOutcome, result: SweepResult, metrics: MetricsCollector) -> None:
        metrics.record_outcome(outcome)
        if outcome.state is RunState.ALREADY_RUNNING:
            return
        result.processed += 1
        self.processed += 1
        if outcome.state is RunState.TIMED_OUT:
            result.unresolved += 1
        elif outcome.state is RunState.REPAIRED:
            result.repaired += 1
        else:
            result.succeeded += 1
        self._set_status(f"Processed {self.processed}/{self.total_to_process}. Active: {max(self.active - 1, 0)}")

    def _on_stop(self) -> None:
        self._stop_requested = True
        self._generation += 1
        self.active = 0
        self._publish_counts()

    def _set_status(self, text: str) -> None:
        self.status_text = text
        logger.info(text)
        self._publish_counts()

    def _publish_counts(self) -> None:
        self._bus.publish(
            SchedulerStatusChanged(
                scheduler=self.name,
                status_text=self.status_text,
                processed=self.processed,
                total=self.total_to_process,
                active=self.active,
                running=self.running,
            )
        )
