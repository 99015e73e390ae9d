"""One-shot repair of an item whose stored output is malformed."""

from __future__ import annotations

import logging
import time
from typing import Set

from ..contracts.config import RepairConfig
from ..contracts.errors import PipelineFailure, RunCancelled, TransportError
from ..contracts.processing_update import ProcessingUpdate, UpdateType
from ..contracts.run_result import RunOutcome, RunState
from ..contracts.state_events import (
    IdentifierAssigned,
    ItemChanged,
    ProcessingUpdateChanged,
    ProcessingUpdateCleared,
)
from ..contracts.work_item import LifecycleStatus, TransientStatus, utcnow
from ..integration.backend_client import ProcessingBackend
from .cancellation import CancellationController
from .event_bus import StateEventBus

logger = logging.getLogger(__name__)


class ItemRepairer:
    """Asks the backend to rebuild an item's stored data.

    Success requires ``status == "success"`` in the response. Failures mark
    the item ``repairFailed`` and raise PipelineFailure.
    """

    def __init__(
        self,
        *,
        backend: ProcessingBackend,
        controller: CancellationController,
        bus: StateEventBus,
        config: RepairConfig,
    ) -> None:
        self._backend = backend
        self._controller = controller
        self._bus = bus
        self.config = config
        self._in_flight: Set[str] = set()

    def is_repairing(self, item_id: str) -> bool:
        return item_id in self._in_flight

    async def repair(self, item_id: str) -> RunOutcome:
        if item_id in self._in_flight:
            logger.info("[%s] Repair already in flight, ignoring duplicate", item_id)
            return RunOutcome(item_id=item_id, state=RunState.ALREADY_RUNNING)

        self._in_flight.add(item_id)
        started = time.monotonic()
        self._bus.publish(
            ProcessingUpdateChanged(item_id, ProcessingUpdate(status="repairing", message="Repairing document data..."))
        )
        try:
            try:
                data = await self._controller.track(self._backend.repair(item_id, self.config.force_update))
            except TransportError as exc:
                raise PipelineFailure("repair", str(exc), item_id=item_id, retryable=exc.retryable) from exc
            if data.get("status") != "success":
                reason = data.get("message") or data.get("error") or "Repair failed"
                raise PipelineFailure("repair", str(reason), item_id=item_id)
        except RunCancelled:
            self._bus.publish(ProcessingUpdateCleared(item_id, None))
            raise
        except PipelineFailure as exc:
            logger.error("[%s] Repair failed: %s", item_id, exc)
            self._mark_failed(item_id, exc)
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error while repairing", item_id)
            self._mark_failed(item_id, exc)
            raise PipelineFailure("repair", str(exc), item_id=item_id) from exc
        finally:
            self._in_flight.discard(item_id)

        persistent_id = data.get("dbId") if isinstance(data.get("dbId"), str) else None
        message = str(data.get("message") or "Document repaired successfully")
        changes = {
            "status": LifecycleStatus.READY,
            "processing_status": None,
            "analysis_complete": True,
            "last_updated": utcnow(),
        }
        if persistent_id:
            changes["persistent_id"] = persistent_id
        self._bus.publish(ItemChanged(item_id, changes))
        if persistent_id:
            self._bus.publish(IdentifierAssigned(item_id, persistent_id))
        self._bus.publish(
            ProcessingUpdateCleared(item_id, ProcessingUpdate(status="completed", message=message, type=UpdateType.COMPLETE))
        )
        logger.info("[%s] Repaired", item_id)
        return RunOutcome(
            item_id=item_id,
            state=RunState.REPAIRED,
            persistent_id=persistent_id,
            message=message,
            duration_seconds=round(time.monotonic() - started, 4),
        )

    def _mark_failed(self, item_id: str, exc: BaseException) -> None:
        self._bus.publish(
            ItemChanged(item_id, {"processing_status": TransientStatus.REPAIR_FAILED, "last_updated": utcnow()})
        )
        self._bus.publish(
            ProcessingUpdateCleared(
                item_id, ProcessingUpdate(status="error", message=f"Repair failed: {exc}", type=UpdateType.ERROR)
            )
        )
