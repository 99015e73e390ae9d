"""Typed state-change events published by the orchestrator.

Hosts subscribe to these instead of handing the orchestrator setter callbacks;
the orchestrator never reads host state back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from .processing_update import ProcessingUpdate


@dataclass(frozen=True)
class ItemChanged:
    """Apply *changes* (WorkItem field names) to the item and append *add_stages*."""

    item_id: str
    changes: Dict[str, object] = field(default_factory=dict)
    add_stages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IdentifierAssigned:
    item_id: str
    persistent_id: str


@dataclass(frozen=True)
class ProcessingUpdateChanged:
    item_id: str
    update: ProcessingUpdate


@dataclass(frozen=True)
class ProcessingUpdateCleared:
    """The run ended; *final* is the terminal update, if one was produced."""

    item_id: str
    final: Optional[ProcessingUpdate] = None


@dataclass(frozen=True)
class SchedulerStatusChanged:
    scheduler: str
    status_text: str
    processed: int = 0
    total: int = 0
    active: int = 0
    running: bool = False


StateEvent = Union[
    ItemChanged,
    IdentifierAssigned,
    ProcessingUpdateChanged,
    ProcessingUpdateCleared,
    SchedulerStatusChanged,
]
