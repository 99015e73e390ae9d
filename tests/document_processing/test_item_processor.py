import asyncio

import pytest

from src.functions.document_processing.core.contracts.errors import (
    PipelineFailure,
    RunCancelled,
    RunTimeout,
    TransportError,
)
from src.functions.document_processing.core.contracts.processing_update import UpdateType
from src.functions.document_processing.core.contracts.run_result import RunState
from src.functions.document_processing.core.contracts.stage_status import StageStatus
from src.functions.document_processing.core.contracts.work_item import (
    LifecycleStatus,
    TransientStatus,
    WorkItem,
)
from src.functions.document_processing.core.orchestration.cancellation import CancellationController
from src.functions.document_processing.core.orchestration.event_bus import StateEventBus
from src.functions.document_processing.core.orchestration.item_processor import (
    ASSUMED_PUBLISH_MESSAGE,
    FORCED_COMPLETION_MESSAGE,
    ItemProcessor,
)
from src.functions.document_processing.core.orchestration.status_probe import StatusProbe
from src.functions.document_processing.core.state.work_item_store import WorkItemStore
from tests.document_processing.fakes import ALL_DONE, FakeBackend, completing_script, fast_config


def _build(backend, **config_overrides):
    config = fast_config(**config_overrides)
    controller = CancellationController(reset_delay_seconds=config.stop_reset_delay_seconds)
    bus = StateEventBus()
    store = WorkItemStore()
    bus.subscribe(store)
    processor = ItemProcessor(
        backend=backend,
        probe=StatusProbe(backend, controller),
        controller=controller,
        bus=bus,
        config=config,
    )
    return processor, controller, store


@pytest.mark.asyncio
async def test_partial_item_runs_remaining_core_stages_and_becomes_ready():
    backend = FakeBackend()
    backend.statuses["A"] = StageStatus(exists=True, hasFolder=True, hasPdf=True)
    backend.scripts["A"] = completing_script("did:X")
    processor, controller, store = _build(backend)

    outcome = await processor.process(WorkItem(id="A"))

    assert outcome.state is RunState.COMPLETED
    assert outcome.steps == ["createPngs", "analyzeImages"]
    assert backend.calls["initiate"][0]["steps"] == ["createPngs", "analyzeImages"]
    item = store.get("A")
    assert item.status is LifecycleStatus.READY
    assert item.persistent_id == "did:X"
    assert item.analysis_complete is True
    assert "complete" in item.stages
    assert store.identifier_map == {"A": "did:X"}
    assert store.final_updates["A"].type is UpdateType.COMPLETE
    assert processor.active_updates == {}
    assert controller.is_running("A") is False


@pytest.mark.asyncio
async def test_new_item_requests_all_core_stages_and_takes_streamed_identifier():
    backend = FakeBackend()
    backend.scripts["X1"] = [
        (0.0, "processing", {"status": "processing", "progress": 50}),
        (0.0, "complete", {"persistentId": "X"}),
    ]
    processor, _, store = _build(backend)

    outcome = await processor.process(WorkItem(id="X1"))

    assert outcome.steps == ["createFolder", "downloadPdf", "createPngs", "analyzeImages"]
    item = store.get("X1")
    assert (item.status, item.analysis_complete, item.persistent_id) == (LifecycleStatus.READY, True, "X")


@pytest.mark.asyncio
async def test_fully_processed_item_completes_without_initiating():
    backend = FakeBackend()
    backend.statuses["B"] = ALL_DONE
    processor, _, store = _build(backend, limit_to_core_analysis=False)

    outcome = await processor.process(WorkItem(id="B"))

    assert outcome.state is RunState.ALREADY_COMPLETE
    assert backend.calls["initiate"] == []
    assert backend.calls["stream"] == []
    assert store.get("B").status is LifecycleStatus.COMPLETED
    assert store.get("B").stages == ["complete"]


@pytest.mark.asyncio
async def test_already_complete_keeps_existing_stages():
    backend = FakeBackend()
    backend.statuses["B"] = ALL_DONE
    processor, _, store = _build(backend)
    store.upsert(WorkItem(id="B", stages=["analyzeImages"]))

    await processor.process(WorkItem(id="B", stages=["analyzeImages"]))

    assert store.get("B").stages == ["analyzeImages"]


@pytest.mark.asyncio
async def test_immediate_completion_from_initiation_skips_stream():
    backend = FakeBackend()
    backend.initiate_responses["C"] = {"status": "ready", "analysisComplete": True, "message": "Done"}
    processor, _, store = _build(backend)

    outcome = await processor.process(WorkItem(id="C"))

    assert outcome.state is RunState.COMPLETED
    assert backend.calls["stream"] == []
    assert store.get("C").status is LifecycleStatus.READY
    assert "complete" in store.get("C").stages


@pytest.mark.asyncio
async def test_immediate_completion_without_analysis_waits_for_analysis():
    backend = FakeBackend()
    backend.initiate_responses["C"] = {"status": "completed"}
    processor, _, store = _build(backend)

    await processor.process(WorkItem(id="C"))

    assert store.get("C").status is LifecycleStatus.WAITING_FOR_ANALYSIS
    assert store.get("C").analysis_complete is False


@pytest.mark.asyncio
async def test_completion_without_persistent_id_waits_for_analysis():
    backend = FakeBackend()
    backend.scripts["D"] = completing_script(None)
    processor, _, store = _build(backend)

    outcome = await processor.process(WorkItem(id="D"))

    assert outcome.persistent_id is None
    assert store.get("D").status is LifecycleStatus.WAITING_FOR_ANALYSIS
    assert store.identifier_map == {}


@pytest.mark.asyncio
async def test_duplicate_start_is_ignored_while_running():
    backend = FakeBackend()
    backend.scripts["E"] = completing_script("did:E", delay=0.1)
    processor, _, _ = _build(backend)

    first, second = await asyncio.gather(
        processor.process(WorkItem(id="E")),
        processor.process(WorkItem(id="E")),
    )

    assert first.state is RunState.COMPLETED
    assert second.state is RunState.ALREADY_RUNNING
    assert len(backend.calls["stream"]) == 1
    assert len(backend.calls["initiate"]) == 1


@pytest.mark.asyncio
async def test_progress_events_mark_item_processing():
    backend = FakeBackend()
    backend.scripts["F"] = [(0.0, "processing", {"status": "processing", "stage": "createPngs", "progress": 40})]
    backend.stream_end["F"] = "hang"
    processor, controller, store = _build(backend)

    task = asyncio.create_task(processor.process(WorkItem(id="F")))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if store.get("F") is not None:
            break

    item = store.get("F")
    assert item.status is LifecycleStatus.PROCESSING
    assert item.processing_status is TransientStatus.PROCESSING
    assert item.processing_progress == 40.0
    assert processor.active_updates["F"].stage == "createPngs"

    controller.stop()
    with pytest.raises(RunCancelled):
        await task


@pytest.mark.asyncio
async def test_publish_reprobe_completes_once_when_copy_is_persisted():
    backend = FakeBackend()
    backend.persisted["G"] = "db-G"
    backend.scripts["G"] = [
        (0.0, "processing", {"status": "publishing_from_disk"}),
        (0.0, "processing", {"status": "publishing_from_disk", "message": "still publishing"}),
    ]
    backend.stream_end["G"] = "hang"
    processor, _, store = _build(backend)

    outcome = await processor.process(WorkItem(id="G"))

    assert outcome.state is RunState.COMPLETED
    assert outcome.persistent_id == "db-G"
    assert backend.calls["lookup_persisted"] == ["G"]
    assert store.get("G").status is LifecycleStatus.READY


@pytest.mark.asyncio
async def test_stream_drop_while_publishing_is_assumed_success():
    backend = FakeBackend()
    backend.scripts["H"] = [(0.0, "processing", {"status": "publishing_from_disk"})]
    backend.stream_end["H"] = "drop"
    processor, _, store = _build(backend, publish_probe_delay_seconds=5.0)

    outcome = await processor.process(WorkItem(id="H"))

    assert outcome.state is RunState.COMPLETED
    assert outcome.assumed is True
    assert outcome.message == ASSUMED_PUBLISH_MESSAGE
    assert store.get("H").status is LifecycleStatus.WAITING_FOR_ANALYSIS


@pytest.mark.asyncio
async def test_stream_drop_during_processing_fails_and_marks_error():
    backend = FakeBackend()
    backend.scripts["I"] = [(0.0, "processing", {"status": "processing", "progress": 10})]
    backend.stream_end["I"] = "drop"
    processor, controller, store = _build(backend)

    with pytest.raises(PipelineFailure) as excinfo:
        await processor.process(WorkItem(id="I"))

    assert excinfo.value.stage == "stream"
    assert excinfo.value.item_id == "I"
    item = store.get("I")
    assert item.status is LifecycleStatus.ERROR
    assert item.processing_status is TransientStatus.FAILED
    assert store.final_updates["I"].type is UpdateType.ERROR
    assert controller.is_running("I") is False


@pytest.mark.asyncio
async def test_server_error_event_fails_without_progress():
    backend = FakeBackend()
    backend.scripts["J"] = [(0.0, "error", {"message": "bad pdf"})]
    processor, _, store = _build(backend)

    with pytest.raises(PipelineFailure, match="bad pdf"):
        await processor.process(WorkItem(id="J"))

    assert store.get("J").processing_status is TransientStatus.FAILED
    assert store.get("J").status is LifecycleStatus.PENDING


@pytest.mark.asyncio
async def test_fallback_timer_reports_timed_out_by_default():
    backend = FakeBackend()
    backend.stream_end["K"] = "hang"
    processor, controller, store = _build(backend, fallback_timeout_seconds=0.05)

    outcome = await processor.process(WorkItem(id="K"))

    assert outcome.state is RunState.TIMED_OUT
    assert outcome.succeeded is False
    assert store.get("K").processing_status is TransientStatus.TIMED_OUT
    assert controller.scheduled_timers == 0


@pytest.mark.asyncio
async def test_fallback_timer_can_force_success():
    backend = FakeBackend()
    backend.stream_end["L"] = "hang"
    processor, _, store = _build(backend, fallback_timeout_seconds=0.05, fallback_forces_success=True)

    outcome = await processor.process(WorkItem(id="L"))

    assert outcome.state is RunState.COMPLETED
    assert outcome.assumed is True
    assert outcome.message == FORCED_COMPLETION_MESSAGE
    assert store.get("L").status is LifecycleStatus.WAITING_FOR_ANALYSIS


@pytest.mark.asyncio
async def test_hard_timeout_fails_the_run():
    backend = FakeBackend()
    backend.stream_end["M"] = "hang"
    processor, controller, store = _build(backend, hard_timeout_seconds=0.05)

    with pytest.raises(RunTimeout):
        await processor.process(WorkItem(id="M"))

    assert store.get("M").processing_status is TransientStatus.FAILED
    assert controller.is_running("M") is False


@pytest.mark.asyncio
async def test_initiation_transport_error_fails_run():
    backend = FakeBackend()
    backend.initiate_errors["N"] = TransportError("initiate", "HTTP 503", status_code=503)
    processor, _, store = _build(backend)

    with pytest.raises(PipelineFailure) as excinfo:
        await processor.process(WorkItem(id="N"))

    assert excinfo.value.stage == "initiate"
    assert excinfo.value.retryable is True
    assert backend.calls["stream"] == []
    assert store.get("N").processing_status is TransientStatus.FAILED


@pytest.mark.asyncio
async def test_unreachable_status_check_requests_every_core_stage():
    backend = FakeBackend()
    backend.status_errors.add("O")
    backend.scripts["O"] = completing_script("did:O")
    processor, _, _ = _build(backend)

    outcome = await processor.process(WorkItem(id="O"))

    assert outcome.steps == ["createFolder", "downloadPdf", "createPngs", "analyzeImages"]


@pytest.mark.asyncio
async def test_stop_during_initiation_cancels_and_opens_no_stream():
    backend = FakeBackend()
    backend.initiate_delay = 0.5
    processor, controller, store = _build(backend)

    task = asyncio.create_task(processor.process(WorkItem(id="P")))
    await asyncio.sleep(0.05)
    controller.stop()

    with pytest.raises(RunCancelled):
        await task
    await asyncio.sleep(0.01)
    assert backend.calls["stream"] == []
    assert processor.active_updates == {}
    assert "P" not in store.updates
    assert controller.outstanding_requests == 0


@pytest.mark.asyncio
async def test_start_while_stop_flag_is_set_is_cancelled():
    backend = FakeBackend()
    processor, controller, _ = _build(backend, stop_reset_delay_seconds=5.0)
    controller.stop()

    with pytest.raises(RunCancelled):
        await processor.process(WorkItem(id="Q"))

    assert backend.calls["initiate"] == []
