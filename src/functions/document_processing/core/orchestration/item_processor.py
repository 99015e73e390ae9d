"""Drives one work item through status check, initiation and the push stream."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

from ..contracts.config import OrchestratorConfig
from ..contracts.errors import (
    PipelineError,
    PipelineFailure,
    RunCancelled,
    RunTimeout,
    StreamError,
    TransportError,
)
from ..contracts.processing_update import PUBLISH_PENDING_STATUS, ProcessingUpdate, UpdateType
from ..contracts.run_result import RunOutcome, RunState
from ..contracts.signals import Completed, Failed, Ignored, Progress, StreamSignal, TimedOut
from ..contracts.state_events import (
    IdentifierAssigned,
    ItemChanged,
    ProcessingUpdateChanged,
    ProcessingUpdateCleared,
)
from ..contracts.work_item import LifecycleStatus, TransientStatus, WorkItem, utcnow
from ..integration.backend_client import ProcessingBackend
from .cancellation import CancellationController, ConnectionHandle
from .event_bus import StateEventBus
from .event_normalizer import normalize_event
from .status_probe import StatusProbe

logger = logging.getLogger(__name__)

COMPLETE_STAGE = "complete"
IMMEDIATE_COMPLETE_STATUSES = ("completed", "ready")
ASSUMED_PUBLISH_MESSAGE = (
    "Document likely published successfully (connection error after publishing started)"
)
FORCED_COMPLETION_MESSAGE = "Document processing complete (timeout forced)"


class ItemProcessor:
    """Runs the per-item state machine.

    ``process`` resolves with a RunOutcome (already complete, completed, timed
    out, or already running) and raises PipelineFailure / RunCancelled
    otherwise. State changes are published on the event bus; the processor
    never reads host state.
    """

    def __init__(
        self,
        *,
        backend: ProcessingBackend,
        probe: StatusProbe,
        controller: CancellationController,
        bus: StateEventBus,
        config: OrchestratorConfig,
    ) -> None:
        self._backend = backend
        self._probe = probe
        self._controller = controller
        self._bus = bus
        self.config = config
        self._updates: Dict[str, ProcessingUpdate] = {}

    @property
    def active_updates(self) -> Dict[str, ProcessingUpdate]:
        """Updates of runs still in flight; terminal ones are evicted."""

        return dict(self._updates)

    async def process(self, item: WorkItem) -> RunOutcome:
        handle = self._controller.open_connection(item.id)
        if handle is None:
            logger.info("[%s] Already processing, ignoring duplicate start", item.id)
            return RunOutcome(item_id=item.id, state=RunState.ALREADY_RUNNING)

        started = time.monotonic()
        run = handle.spawn(self._run(item, handle, started))
        try:
            return await run
        except asyncio.CancelledError:
            if handle.stopped:
                logger.info("[%s] Processing stopped", item.id)
                self._clear_update(item.id, None)
                raise RunCancelled(item.id) from None
            raise
        except RunCancelled:
            logger.info("[%s] Processing stopped", item.id)
            self._clear_update(item.id, None)
            raise
        except PipelineError as exc:
            exc.item_id = exc.item_id or item.id
            self._mark_failed(item, handle, exc)
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error while processing", item.id)
            self._mark_failed(item, handle, exc)
            raise PipelineFailure("process", str(exc), item_id=item.id) from exc
        finally:
            self._controller.release(handle)
            handle.close()

    async def _run(self, item: WorkItem, handle: ConnectionHandle, started: float) -> RunOutcome:
        self._set_update(item.id, ProcessingUpdate(status="starting", message="Checking document status..."))
        status = await self._probe.probe(item.id, item.kind)
        steps = [stage.value for stage in status.needed_stages(self.config.limit_to_core_analysis)]

        if not steps:
            logger.info("[%s] Already fully processed", item.id)
            self._bus.publish(
                ItemChanged(
                    item.id,
                    {"status": LifecycleStatus.COMPLETED, "last_updated": utcnow()},
                    add_stages=() if item.stages else (COMPLETE_STAGE,),
                )
            )
            self._clear_update(
                item.id,
                ProcessingUpdate(status="completed", message="Document already fully processed", type=UpdateType.COMPLETE),
            )
            return RunOutcome(
                item_id=item.id,
                state=RunState.ALREADY_COMPLETE,
                message="Document already fully processed",
                duration_seconds=_elapsed(started),
            )

        logger.info("[%s] Starting processing with steps: %s", item.id, ", ".join(steps))
        self._set_update(
            item.id,
            ProcessingUpdate(status="starting", message=f"Starting processing with steps: {', '.join(steps)}"),
        )
        self._ensure_not_stopped(item.id)
        try:
            response = await self._controller.track(
                self._backend.initiate_processing(item.id, item.source_url, steps, item.kind)
            )
        except TransportError as exc:
            raise PipelineFailure(
                "initiate", f"Failed to start processing: {exc}", item_id=item.id, retryable=exc.retryable
            ) from exc

        initial_status = str(response.get("status") or "processing")
        response_steps = response.get("steps")
        self._set_update(
            item.id,
            ProcessingUpdate(
                status=initial_status,
                message=str(response.get("message") or "Processing started"),
                steps=[str(step) for step in response_steps] if isinstance(response_steps, list) else [],
            ),
        )

        if initial_status in IMMEDIATE_COMPLETE_STATUSES:
            analysis_complete = response.get("analysisComplete") is True
            logger.info("[%s] Backend reported %s on initiation", item.id, initial_status)
            self._bus.publish(
                ItemChanged(
                    item.id,
                    {
                        "status": LifecycleStatus.READY if analysis_complete else LifecycleStatus.WAITING_FOR_ANALYSIS,
                        "processing_status": None,
                        "analysis_complete": analysis_complete,
                        "last_updated": utcnow(),
                    },
                    add_stages=(COMPLETE_STAGE,),
                )
            )
            message = str(response.get("message") or "Document processed")
            self._clear_update(item.id, ProcessingUpdate(status="completed", message=message, type=UpdateType.COMPLETE))
            return RunOutcome(
                item_id=item.id,
                state=RunState.COMPLETED,
                steps=steps,
                message=message,
                duration_seconds=_elapsed(started),
            )

        # No stream may open once stop() has been requested
        self._ensure_not_stopped(item.id)
        result = await self._watch_stream(item, handle)

        if isinstance(result, TimedOut):
            return self._mark_timed_out(item, steps, started, result.seconds)
        if isinstance(result, Failed):
            raise PipelineFailure("stream", result.reason, item_id=item.id, retryable=result.transport)
        return self._mark_completed(item, steps, started, result)

    async def _watch_stream(self, item: WorkItem, handle: ConnectionHandle) -> StreamSignal:
        config = self.config
        handle.call_later(config.hard_timeout_seconds, lambda: self._on_hard_timeout(handle))
        handle.call_later(config.fallback_timeout_seconds, lambda: self._on_fallback(handle))
        handle.spawn(self._consume_stream(item, handle))
        return await handle.done

    async def _consume_stream(self, item: WorkItem, handle: ConnectionHandle) -> None:
        try:
            async with self._backend.stream_processing(item.id, item.kind) as events:
                logger.debug("[%s] Stream connected", item.id)
                async for raw in events:
                    signal = normalize_event(raw.event, raw.data)
                    if isinstance(signal, Ignored):
                        continue
                    if isinstance(signal, Progress):
                        self._on_progress(item, handle, raw.event, signal)
                        continue
                    if isinstance(signal, Failed):
                        logger.warning("[%s] Server reported error: %s", item.id, signal.reason)
                        handle.settle(self._classify_stream_error(item.id, handle, signal.reason))
                    else:
                        logger.info("[%s] Completion detected from %s event", item.id, raw.event)
                        handle.settle(signal)
                    return
            handle.settle(self._classify_stream_error(item.id, handle, "Stream ended without a terminal event"))
        except StreamError as exc:
            logger.warning("[%s] Stream error: %s", item.id, exc)
            handle.settle(self._classify_stream_error(item.id, handle, str(exc)))
        except Exception as exc:
            logger.exception("[%s] Stream consumer crashed", item.id)
            handle.settle(Failed(reason=f"Stream consumer error: {exc}"))

    def _classify_stream_error(self, item_id: str, handle: ConnectionHandle, reason: str):
        if handle.last_status == PUBLISH_PENDING_STATUS:
            logger.info("[%s] Stream failed while publishing from disk, assuming success", item_id)
            return Completed(message=ASSUMED_PUBLISH_MESSAGE, assumed=True)
        return Failed(reason=reason or "Error during processing", transport=True)

    def _on_progress(self, item: WorkItem, handle: ConnectionHandle, event_type: str, signal: Progress) -> None:
        handle.last_status = signal.status
        current = self._updates.get(item.id) or ProcessingUpdate(status=signal.status)
        self._set_update(
            item.id,
            current.merged(
                status=signal.status,
                message=signal.message,
                stage=signal.stage,
                progress=signal.progress,
                txid=signal.txid,
                type=UpdateType.PROCESSING,
            ),
        )
        if event_type != "processing":
            return

        if signal.status == PUBLISH_PENDING_STATUS and not handle.publish_probe_scheduled:
            handle.publish_probe_scheduled = True
            logger.info("[%s] Publishing from disk, re-probing in %.0fs", item.id, self.config.publish_probe_delay_seconds)
            handle.spawn(self._publish_probe(item.id, handle))

        handle.marked_processing = True
        self._bus.publish(
            ItemChanged(
                item.id,
                {
                    "status": LifecycleStatus.PROCESSING,
                    "processing_status": TransientStatus.PROCESSING,
                    "processing_progress": signal.progress or 0.0,
                },
            )
        )

    async def _publish_probe(self, item_id: str, handle: ConnectionHandle) -> None:
        await asyncio.sleep(self.config.publish_probe_delay_seconds)
        if handle.done.done():
            return
        logger.info("[%s] Checking persisted copy after publishing from disk", item_id)
        persistent_id = await self._probe.find_persisted(item_id)
        if persistent_id:
            logger.info("[%s] Document found in database, completing", item_id)
            handle.settle(Completed(message="Document published to database", persistent_id=persistent_id))

    def _on_hard_timeout(self, handle: ConnectionHandle) -> None:
        seconds = self.config.hard_timeout_seconds
        if handle.fail(
            RunTimeout("stream", f"Processing timed out after {seconds:g} seconds", item_id=handle.item_id)
        ):
            logger.warning("[%s] Hard timeout reached after %gs", handle.item_id, seconds)

    def _on_fallback(self, handle: ConnectionHandle) -> None:
        if self.config.fallback_forces_success:
            settled = handle.settle(Completed(message=FORCED_COMPLETION_MESSAGE, assumed=True))
        else:
            settled = handle.settle(TimedOut(self.config.fallback_timeout_seconds))
        if settled:
            logger.warning(
                "[%s] No terminal event after %gs (last status %s)",
                handle.item_id,
                self.config.fallback_timeout_seconds,
                handle.last_status,
            )

    def _mark_completed(self, item: WorkItem, steps: List[str], started: float, signal: Completed) -> RunOutcome:
        persistent_id = signal.persistent_id
        changes: Dict[str, object] = {
            "status": LifecycleStatus.READY if persistent_id else LifecycleStatus.WAITING_FOR_ANALYSIS,
            "processing_status": None,
            "analysis_complete": bool(persistent_id),
            "last_updated": utcnow(),
        }
        if persistent_id:
            changes["persistent_id"] = persistent_id
        self._bus.publish(ItemChanged(item.id, changes, add_stages=(COMPLETE_STAGE,)))
        if persistent_id:
            self._bus.publish(IdentifierAssigned(item.id, persistent_id))
        self._clear_update(
            item.id,
            ProcessingUpdate(status="completed", message=signal.message, type=UpdateType.COMPLETE, steps=steps),
        )
        logger.info("[%s] Completed%s", item.id, " (assumed)" if signal.assumed else "")
        return RunOutcome(
            item_id=item.id,
            state=RunState.COMPLETED,
            steps=steps,
            persistent_id=persistent_id,
            message=signal.message,
            assumed=signal.assumed,
            duration_seconds=_elapsed(started),
        )

    def _mark_timed_out(self, item: WorkItem, steps: List[str], started: float, seconds: float) -> RunOutcome:
        message = f"No terminal event within {seconds:g} seconds; outcome unknown"
        self._bus.publish(
            ItemChanged(item.id, {"processing_status": TransientStatus.TIMED_OUT, "last_updated": utcnow()})
        )
        self._clear_update(item.id, ProcessingUpdate(status="timed_out", message=message, type=UpdateType.ERROR, steps=steps))
        return RunOutcome(
            item_id=item.id,
            state=RunState.TIMED_OUT,
            steps=steps,
            message=message,
            duration_seconds=_elapsed(started),
        )

    def _mark_failed(self, item: WorkItem, handle: ConnectionHandle, exc: BaseException) -> None:
        logger.error("[%s] Processing failed: %s", item.id, exc)
        changes: Dict[str, object] = {"processing_status": TransientStatus.FAILED, "last_updated": utcnow()}
        if handle.marked_processing:
            changes["status"] = LifecycleStatus.ERROR
        self._bus.publish(ItemChanged(item.id, changes))
        self._clear_update(item.id, ProcessingUpdate(status="error", message=f"Error: {exc}", type=UpdateType.ERROR))

    def _ensure_not_stopped(self, item_id: str) -> None:
        if self._controller.cancelled:
            raise RunCancelled(item_id)

    def _set_update(self, item_id: str, update: ProcessingUpdate) -> None:
        self._updates[item_id] = update
        self._bus.publish(ProcessingUpdateChanged(item_id, update))

    def _clear_update(self, item_id: str, final: Optional[ProcessingUpdate]) -> None:
        self._updates.pop(item_id, None)
        self._bus.publish(ProcessingUpdateCleared(item_id, final))


def _elapsed(started: float) -> float:
    return round(time.monotonic() - started, 4)
