"""Facade wiring the backend, schedulers and state bus together."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Union

from src.shared.batch import FailureTracker

from ..contracts.config import BackendSettings, OrchestratorConfig, RepairConfig
from ..contracts.run_result import RepairSweepResult, RunOutcome, SweepResult
from ..contracts.state_events import StateEvent
from ..contracts.work_item import WorkItem, infer_kind
from ..integration.backend_client import BackendClient, ProcessingBackend
from .cancellation import CancellationController
from .event_bus import StateEventBus
from .item_processor import ItemProcessor
from .repair import ItemRepairer
from .repair_scheduler import RepairScheduler
from .scheduler import ConcurrentScheduler
from .status_probe import StatusProbe

logger = logging.getLogger(__name__)


class DocumentOrchestrator:
    """Single owner of every piece of orchestrator state.

    Hosts subscribe to state events, then call ``process``, ``repair``,
    ``process_all`` or ``repair_all_broken``. ``stop`` tears down all live
    runs; ``shutdown`` also closes the HTTP client.
    """

    def __init__(
        self,
        backend: ProcessingBackend,
        *,
        config: Optional[OrchestratorConfig] = None,
        repair_config: Optional[RepairConfig] = None,
        failures: Optional[FailureTracker] = None,
        bus: Optional[StateEventBus] = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.repair_config = repair_config or RepairConfig()
        self.backend = backend
        self.bus = bus or StateEventBus()
        self.failures = failures or FailureTracker()
        self.controller = CancellationController(self.config.stop_reset_delay_seconds)
        self.probe = StatusProbe(backend, self.controller)
        self.processor = ItemProcessor(
            backend=backend,
            probe=self.probe,
            controller=self.controller,
            bus=self.bus,
            config=self.config,
        )
        self.repairer = ItemRepairer(
            backend=backend,
            controller=self.controller,
            bus=self.bus,
            config=self.repair_config,
        )
        self.scheduler = ConcurrentScheduler(
            backend=backend,
            probe=self.probe,
            processor=self.processor,
            repairer=self.repairer,
            controller=self.controller,
            bus=self.bus,
            config=self.config,
            failures=self.failures,
        )
        self.repair_scheduler = RepairScheduler(
            backend=backend,
            repairer=self.repairer,
            controller=self.controller,
            bus=self.bus,
            config=self.repair_config,
            failures=self.failures,
        )

    @classmethod
    def from_settings(
        cls,
        settings: BackendSettings,
        **kwargs,
    ) -> "DocumentOrchestrator":
        return cls(BackendClient(settings), **kwargs)

    def subscribe(self, callback: Callable[[StateEvent], None]) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    async def process(self, item: Union[str, WorkItem]) -> RunOutcome:
        """Run one item; raises PipelineFailure or RunCancelled on failure."""

        if isinstance(item, str):
            item = WorkItem(id=item, kind=infer_kind(item))
        return await self.processor.process(item)

    async def repair(self, item_id: str) -> RunOutcome:
        return await self.repairer.repair(item_id)

    async def process_all(self) -> Optional[SweepResult]:
        return await self.scheduler.run()

    async def repair_all_broken(self) -> Optional[RepairSweepResult]:
        return await self.repair_scheduler.repair_all_broken()

    async def repair_many(self, item_ids: Iterable[str]) -> Optional[RepairSweepResult]:
        return await self.repair_scheduler.repair_ids(item_ids)

    def stop(self) -> None:
        self.controller.stop()

    async def shutdown(self) -> None:
        """Stop everything and release the HTTP client."""

        self.stop()
        aclose = getattr(self.backend, "aclose", None)
        if aclose is not None:
            await aclose()

    def set_concurrency_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("concurrency limit must be at least 1")
        self.config.concurrency_limit = limit
        logger.info("Concurrency limit set to %d", limit)

    def set_limit_to_core_analysis(self, enabled: bool) -> None:
        self.config.limit_to_core_analysis = bool(enabled)

    @property
    def processed_count(self) -> int:
        return self.scheduler.processed

    @property
    def total_to_process(self) -> int:
        return self.scheduler.total_to_process

    @property
    def active_count(self) -> int:
        return self.scheduler.active + self.repair_scheduler.active

    @property
    def status_text(self) -> str:
        if self.repair_scheduler.running:
            return self.repair_scheduler.status_text
        return self.scheduler.status_text or self.repair_scheduler.status_text

    @property
    def is_running(self) -> bool:
        return self.scheduler.running or self.repair_scheduler.running

    @property
    def running_items(self) -> List[str]:
        return sorted(self.controller.connections)
