import pytest

from src.functions.document_processing.core.contracts.config import BackendSettings
from src.functions.document_processing.core.contracts.run_result import RunState
from src.functions.document_processing.core.contracts.work_item import ItemKind
from src.functions.document_processing.core.integration.backend_client import BackendClient
from src.functions.document_processing.core.orchestration.orchestrator import DocumentOrchestrator
from tests.document_processing.fakes import FakeBackend, completing_script, fast_config, fast_repair_config


def _orchestrator(backend):
    return DocumentOrchestrator(backend, config=fast_config(), repair_config=fast_repair_config())


@pytest.mark.asyncio
async def test_process_by_id_infers_collection():
    backend = FakeBackend()
    backend.default_script = completing_script("did:R")
    orchestrator = _orchestrator(backend)

    outcome = await orchestrator.process("RFK-001")

    assert outcome.state is RunState.COMPLETED
    assert backend.calls["status_check"][0] == ("RFK-001", ItemKind.RFK)
    assert "/rfk/releases/" in backend.calls["initiate"][0]["url"]


@pytest.mark.asyncio
async def test_full_pipeline_toggle_requests_downstream_stages():
    backend = FakeBackend()
    backend.default_script = completing_script()
    orchestrator = _orchestrator(backend)

    orchestrator.set_limit_to_core_analysis(False)
    await orchestrator.process("104-1")

    assert backend.calls["initiate"][0]["steps"][-3:] == ["publishArweave", "updateSummary", "indexDatabase"]


def test_concurrency_limit_must_be_positive():
    orchestrator = _orchestrator(FakeBackend())

    orchestrator.set_concurrency_limit(7)
    assert orchestrator.scheduler.config.concurrency_limit == 7
    with pytest.raises(ValueError):
        orchestrator.set_concurrency_limit(0)


@pytest.mark.asyncio
async def test_shutdown_stops_and_closes_backend():
    backend = FakeBackend()
    orchestrator = _orchestrator(backend)

    await orchestrator.shutdown()

    assert backend.closed is True
    assert orchestrator.controller.stop_count == 1
    assert orchestrator.is_running is False


@pytest.mark.asyncio
async def test_from_settings_builds_http_backend():
    orchestrator = DocumentOrchestrator.from_settings(BackendSettings(base_url="https://api.example.org"))

    assert isinstance(orchestrator.backend, BackendClient)
    await orchestrator.shutdown()
