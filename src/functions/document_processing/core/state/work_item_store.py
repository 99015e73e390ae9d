"""In-memory host-side mirror of work item state."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from ..contracts.processing_update import ProcessingUpdate
from ..contracts.state_events import (
    IdentifierAssigned,
    ItemChanged,
    ProcessingUpdateChanged,
    ProcessingUpdateCleared,
    SchedulerStatusChanged,
    StateEvent,
)
from ..contracts.work_item import WorkItem

logger = logging.getLogger(__name__)

DEFAULT_FINAL_UPDATE_LIMIT = 500


class WorkItemStore:
    """Subscriber that applies state events to a dict of work items.

    Items the store has never seen are created on first change so that hosts
    which only process ad-hoc ids still get a full picture. Only the most
    recent ``final_update_limit`` terminal updates are kept.
    """

    def __init__(
        self,
        items: Optional[Iterable[WorkItem]] = None,
        final_update_limit: int = DEFAULT_FINAL_UPDATE_LIMIT,
    ) -> None:
        self.items: Dict[str, WorkItem] = {item.id: item for item in items or []}
        self.identifier_map: Dict[str, str] = {}
        self.updates: Dict[str, ProcessingUpdate] = {}
        self.final_updates: "OrderedDict[str, ProcessingUpdate]" = OrderedDict()
        self.final_update_limit = final_update_limit
        self.status_text: Dict[str, str] = {}

    def __call__(self, event: StateEvent) -> None:
        if isinstance(event, ItemChanged):
            self._apply_item_change(event)
        elif isinstance(event, IdentifierAssigned):
            self.identifier_map[event.item_id] = event.persistent_id
        elif isinstance(event, ProcessingUpdateChanged):
            self.updates[event.item_id] = event.update
        elif isinstance(event, ProcessingUpdateCleared):
            self.updates.pop(event.item_id, None)
            if event.final is not None:
                self._remember_final(event.item_id, event.final)
        elif isinstance(event, SchedulerStatusChanged):
            self.status_text[event.scheduler] = event.status_text

    def get(self, item_id: str) -> Optional[WorkItem]:
        return self.items.get(item_id)

    def upsert(self, item: WorkItem) -> None:
        self.items[item.id] = item

    def in_status(self, status: str) -> List[WorkItem]:
        return [item for item in self.items.values() if item.status.value == status]

    def _apply_item_change(self, event: ItemChanged) -> None:
        current = self.items.get(event.item_id)
        if current is None:
            current = WorkItem(id=event.item_id)
        try:
            self.items[event.item_id] = current.apply(event.changes, event.add_stages)
        except ValueError:
            logger.warning("[%s] Ignoring invalid item change %s", event.item_id, event.changes)

    def _remember_final(self, item_id: str, update: ProcessingUpdate) -> None:
        self.final_updates.pop(item_id, None)
        self.final_updates[item_id] = update
        while len(self.final_updates) > self.final_update_limit:
            self.final_updates.popitem(last=False)
