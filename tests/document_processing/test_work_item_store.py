from src.functions.document_processing.core.contracts.processing_update import ProcessingUpdate, UpdateType
from src.functions.document_processing.core.contracts.state_events import (
    IdentifierAssigned,
    ItemChanged,
    ProcessingUpdateChanged,
    ProcessingUpdateCleared,
    SchedulerStatusChanged,
)
from src.functions.document_processing.core.contracts.work_item import LifecycleStatus, WorkItem
from src.functions.document_processing.core.orchestration.event_bus import StateEventBus
from src.functions.document_processing.core.state.work_item_store import WorkItemStore


def test_store_applies_events_in_order():
    bus = StateEventBus()
    store = WorkItemStore([WorkItem(id="A", stages=["createFolder"])])
    bus.subscribe(store)

    bus.publish(ProcessingUpdateChanged("A", ProcessingUpdate(status="starting")))
    bus.publish(ItemChanged("A", {"status": "processing", "processing_progress": 25}))
    bus.publish(ItemChanged("A", {"status": "ready"}, add_stages=("complete",)))
    bus.publish(IdentifierAssigned("A", "did:A"))
    bus.publish(ProcessingUpdateCleared("A", ProcessingUpdate(status="completed", type=UpdateType.COMPLETE)))
    bus.publish(SchedulerStatusChanged("process", "Batch complete."))

    item = store.get("A")
    assert item.status is LifecycleStatus.READY
    assert item.processing_progress == 25.0
    assert item.stages == ["createFolder", "complete"]
    assert store.identifier_map == {"A": "did:A"}
    assert store.updates == {}
    assert store.final_updates["A"].is_terminal is True
    assert store.status_text == {"process": "Batch complete."}
    assert [i.id for i in store.in_status("ready")] == ["A"]


def test_store_creates_unknown_items_and_ignores_invalid_changes():
    store = WorkItemStore()

    store(ItemChanged("B", {"status": "waitingForAnalysis"}))
    store(ItemChanged("B", {"status": "exploded"}))

    assert store.get("B").status is LifecycleStatus.WAITING_FOR_ANALYSIS


def test_bus_isolates_failing_subscribers_and_unsubscribes():
    bus = StateEventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(received.append)

    bus.publish(IdentifierAssigned("A", "did:A"))
    unsubscribe()
    bus.publish(IdentifierAssigned("B", "did:B"))

    assert received == [IdentifierAssigned("A", "did:A")]
    assert bus.subscriber_count == 1


def test_store_keeps_only_recent_final_updates():
    store = WorkItemStore(final_update_limit=2)

    for item_id in ("A", "B", "C"):
        store(ProcessingUpdateCleared(item_id, ProcessingUpdate(status="completed", type=UpdateType.COMPLETE)))
    store(ProcessingUpdateCleared("B", ProcessingUpdate(status="error", type=UpdateType.ERROR)))
    store(ProcessingUpdateCleared("D", ProcessingUpdate(status="completed", type=UpdateType.COMPLETE)))

    assert list(store.final_updates) == ["B", "D"]
    assert store.final_updates["B"].type is UpdateType.ERROR
