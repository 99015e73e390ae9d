import asyncio

import pytest

from src.functions.document_processing.core.contracts.errors import TransportError
from src.functions.document_processing.core.contracts.stage_status import StageStatus
from src.functions.document_processing.core.orchestration.orchestrator import DocumentOrchestrator
from src.functions.document_processing.core.state.work_item_store import WorkItemStore
from tests.document_processing.fakes import (
    ALL_DONE,
    FakeBackend,
    completing_script,
    fast_config,
    fast_repair_config,
)


def _pending(*ids):
    return [{"id": item_id, "status": "pending"} for item_id in ids]


def _orchestrator(backend, **config_overrides):
    orchestrator = DocumentOrchestrator(
        backend,
        config=fast_config(**config_overrides),
        repair_config=fast_repair_config(),
    )
    store = WorkItemStore()
    orchestrator.subscribe(store)
    return orchestrator, store


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_sweep_respects_concurrency_limit_and_processes_everything():
    backend = FakeBackend()
    backend.catalog = _pending("A1", "A2", "A3", "A4", "A5")
    backend.default_script = completing_script("did:X", delay=0.05)
    orchestrator, store = _orchestrator(backend, concurrency_limit=2)

    result = await orchestrator.process_all()

    assert backend.max_open_streams <= 2
    assert result.max_active <= 2
    assert result.rounds == 1
    assert result.discovered == 5
    assert result.processed == 5
    assert result.succeeded == 5
    assert result.failed == 0
    assert result.stopped is False
    assert orchestrator.processed_count == 5
    assert orchestrator.scheduler.active == 0
    assert orchestrator.is_running is False
    assert orchestrator.status_text.startswith("No more documents found")
    assert all(store.get(item_id).persistent_id == "did:X" for item_id in ("A1", "A2", "A3", "A4", "A5"))
    assert result.metrics["runs"] == 5


@pytest.mark.asyncio
async def test_discovery_resumes_from_next_page_each_round():
    backend = FakeBackend()
    backend.catalog = _pending("B1", "B2", "B3")
    backend.default_script = completing_script()
    orchestrator, _ = _orchestrator(backend, catalog_page_size=2, discovery_batch_target=2)

    result = await orchestrator.process_all()

    assert result.rounds == 2
    assert result.processed == 3
    assert backend.calls["catalog"] == [1, 2, 3]


@pytest.mark.asyncio
async def test_items_are_handled_once_per_scheduler_lifetime():
    backend = FakeBackend()
    backend.catalog = _pending("C1", "C2")
    backend.default_script = completing_script()
    orchestrator, _ = _orchestrator(backend)

    first = await orchestrator.process_all()
    orchestrator.scheduler.next_page = 1
    second = await orchestrator.process_all()

    assert first.processed == 2
    assert second.rounds == 0
    assert second.processed == 0
    assert len(backend.calls["initiate"]) == 2


@pytest.mark.asyncio
async def test_discovery_classifies_rows():
    backend = FakeBackend()
    backend.catalog = [
        {"id": "busy", "status": "processing"},
        {"id": "busy2", "status": "ready", "processingStatus": "processing"},
        {"id": "done", "status": "ready", "pageCount": 4, "stages": ["a", "b", "c", "d", "e"]},
        {"id": "probed-done", "status": "completed", "stages": ["a"]},
        {"id": "needs-work", "status": "ready", "pageCount": 4, "stages": ["a"]},
        {"id": "broken", "status": "ready", "pageCount": 0, "stages": ["a", "b", "c", "d", "e"]},
        {"status": "pending"},
    ]
    backend.statuses["probed-done"] = ALL_DONE
    backend.statuses["needs-work"] = StageStatus(exists=True, hasFolder=True)
    backend.statuses["broken"] = StageStatus(exists=True, dbId="did:broken")
    backend.document_infos["did:broken"] = {"document": {"id": "did:broken"}, "pageCount": 0, "pages": []}
    backend.default_script = completing_script()
    orchestrator, store = _orchestrator(backend)

    result = await orchestrator.process_all()

    assert result.discovered == 2
    assert [call["id"] for call in backend.calls["initiate"]] == ["needs-work"]
    assert backend.calls["repair"] == [("broken", True)]
    assert result.repaired == 1
    assert result.succeeded == 1
    assert store.identifier_map["broken"] == "db-broken"
    assert "broken" not in store.updates


@pytest.mark.asyncio
async def test_published_message_status_triggers_broken_check():
    backend = FakeBackend()
    backend.catalog = [{"id": "legacy", "status": "Document published to database", "stages": ["a", "b", "c", "d", "e"]}]
    backend.statuses["legacy"] = StageStatus(exists=True, dbId="did:legacy")
    backend.document_infos["did:legacy"] = {
        "document": {"id": "did:legacy"},
        "pageCount": 2,
        "pages": [{"n": 1}, {"n": 2}],
    }
    backend.default_script = completing_script()
    orchestrator, _ = _orchestrator(backend)

    result = await orchestrator.process_all()

    assert backend.calls["document_info"] == ["did:legacy"]
    assert backend.calls["repair"] == []
    assert result.rounds == 1
    assert result.discovered == 1


@pytest.mark.asyncio
async def test_failed_page_is_skipped():
    backend = FakeBackend()
    backend.catalog = _pending("D1")
    backend.page_failures = {1: 1}
    orchestrator, _ = _orchestrator(backend)

    result = await orchestrator.process_all()

    assert result.skipped_pages == 1
    assert result.rounds == 0
    assert backend.calls["catalog"] == [1, 2]


@pytest.mark.asyncio
async def test_failed_page_is_retried_when_configured():
    backend = FakeBackend()
    backend.catalog = _pending("D1")
    backend.page_failures = {1: 1}
    backend.default_script = completing_script()
    orchestrator, _ = _orchestrator(backend, catalog_retry_attempts=1)

    result = await orchestrator.process_all()

    assert result.skipped_pages == 0
    assert result.processed == 1
    assert backend.calls["catalog"][:2] == [1, 1]


@pytest.mark.asyncio
async def test_discovery_gives_up_after_consecutive_page_failures():
    backend = FakeBackend()
    backend.catalog = _pending("E1")
    backend.page_failures = {1: 1, 2: 1, 3: 1}
    orchestrator, _ = _orchestrator(backend, max_consecutive_scan_failures=2)

    result = await orchestrator.process_all()

    assert result.skipped_pages == 2
    assert backend.calls["catalog"] == [1, 2]


@pytest.mark.asyncio
async def test_failures_are_counted_and_recorded():
    backend = FakeBackend()
    backend.catalog = _pending("F1", "F2")
    backend.default_script = completing_script()
    backend.initiate_errors["F2"] = TransportError("initiate", "HTTP 500", status_code=500)
    orchestrator, _ = _orchestrator(backend)

    result = await orchestrator.process_all()

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert result.has_failures is True
    assert orchestrator.failures.failed_ids("process") == ["F2"]
    assert result.errors[0]["item_id"] == "F2"
    assert result.metrics["failures_by_stage"] == {"initiate": 1}


@pytest.mark.asyncio
async def test_timed_out_runs_are_unresolved():
    backend = FakeBackend()
    backend.catalog = _pending("G1")
    backend.default_stream_end = "hang"
    orchestrator, _ = _orchestrator(backend, fallback_timeout_seconds=0.05)

    result = await orchestrator.process_all()

    assert result.unresolved == 1
    assert result.succeeded == 0
    assert result.failed == 0


@pytest.mark.asyncio
async def test_stop_mid_sweep_zeroes_active_and_opens_no_new_streams():
    backend = FakeBackend()
    backend.catalog = _pending("H1", "H2", "H3", "H4")
    backend.default_stream_end = "hang"
    orchestrator, store = _orchestrator(backend, concurrency_limit=2)

    sweep = asyncio.create_task(orchestrator.process_all())
    await _wait_for(lambda: backend.open_streams == 2)

    orchestrator.stop()
    assert orchestrator.scheduler.active == 0
    result = await sweep

    assert result.stopped is True
    assert result.cancelled == 2
    assert len(backend.calls["stream"]) == 2
    assert backend.open_streams == 0
    assert orchestrator.scheduler.active == 0
    assert orchestrator.running_items == []
    assert store.updates == {}
    assert orchestrator.status_text.startswith("Processing stopped manually")


@pytest.mark.asyncio
async def test_second_sweep_request_while_running_is_ignored():
    backend = FakeBackend()
    backend.catalog = _pending("J1")
    backend.default_stream_end = "hang"
    orchestrator, _ = _orchestrator(backend)

    sweep = asyncio.create_task(orchestrator.process_all())
    await _wait_for(lambda: backend.open_streams == 1)

    assert await orchestrator.process_all() is None

    orchestrator.stop()
    result = await sweep
    assert result.stopped is True


@pytest.mark.asyncio
async def test_stop_during_broken_check_clears_checking_update():
    backend = FakeBackend()
    backend.catalog = [{"id": "slow", "status": "ready", "pageCount": 0, "stages": ["a", "b", "c", "d", "e"]}]
    backend.statuses["slow"] = StageStatus(exists=True, dbId="did:slow")
    backend.document_info_delay = 1.0
    orchestrator, store = _orchestrator(backend)

    sweep = asyncio.create_task(orchestrator.process_all())
    await _wait_for(lambda: backend.calls["document_info"] == ["did:slow"])
    assert store.updates["slow"].status == "checking"

    orchestrator.stop()
    result = await sweep

    assert result.stopped is True
    assert store.updates == {}
    assert backend.calls["repair"] == []
