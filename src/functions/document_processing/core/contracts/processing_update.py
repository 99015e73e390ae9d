"""Transient per-run progress record mirrored to the host."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class UpdateType(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


# Intermediate status meaning "publishing the local copy"; see ItemProcessor.
PUBLISH_PENDING_STATUS = "publishing_from_disk"


class ProcessingUpdate(BaseModel):
    """Latest known state of one in-flight run."""

    status: str = Field(..., description="Backend status string, e.g. starting or publishing_from_disk")
    message: str = Field(default="")
    type: UpdateType = Field(default=UpdateType.PROCESSING)
    steps: List[str] = Field(default_factory=list)
    stage: Optional[str] = Field(default=None)
    progress: Optional[float] = Field(default=None)
    txid: Optional[str] = Field(default=None, description="Publish transaction id, if one was reported")

    @property
    def is_terminal(self) -> bool:
        return self.type is not UpdateType.PROCESSING

    def merged(self, **changes: object) -> "ProcessingUpdate":
        """Return a copy with the non-None *changes* applied."""

        return self.model_copy(update={key: value for key, value in changes.items() if value is not None})
