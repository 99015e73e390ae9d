"""Result models for single runs and sweeps."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RunState(str, Enum):
    """Terminal state of one item run."""

    ALREADY_COMPLETE = "already_complete"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ALREADY_RUNNING = "already_running"
    REPAIRED = "repaired"


class RunOutcome(BaseModel):
    """Outcome of a run that resolved; failures are raised instead."""

    item_id: str
    state: RunState
    steps: List[str] = Field(default_factory=list)
    persistent_id: Optional[str] = Field(default=None)
    message: str = Field(default="")
    assumed: bool = Field(
        default=False,
        description="True when completion was inferred rather than reported by the backend",
    )
    duration_seconds: float = Field(default=0.0, ge=0)

    @property
    def succeeded(self) -> bool:
        return self.state is not RunState.TIMED_OUT


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepResult(BaseModel):
    """Aggregate outcome of a discovery-and-processing sweep."""

    rounds: int = Field(default=0, ge=0)
    discovered: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    repaired: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    unresolved: int = Field(default=0, ge=0, description="Runs that ended in the timed-out state")
    cancelled: int = Field(default=0, ge=0)
    skipped_pages: int = Field(default=0, ge=0)
    max_active: int = Field(default=0, ge=0)
    stopped: bool = Field(default=False, description="True when the sweep ended because of a stop request")
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = Field(default=None)
    config_snapshot: Dict[str, object] = Field(default_factory=dict)
    metrics: Dict[str, object] = Field(default_factory=dict)
    errors: List[Dict[str, object]] = Field(default_factory=list)

    def finish(self) -> None:
        self.finished_at = _utcnow()

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return round((self.finished_at - self.started_at).total_seconds(), 4)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> Dict[str, object]:
        """Return a JSON-serialisable representation."""

        payload = self.model_dump(exclude={"started_at", "finished_at", "config_snapshot"})
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        payload["duration_seconds"] = self.duration_seconds
        payload["config"] = self.config_snapshot
        return payload


class RepairSweepResult(BaseModel):
    """Aggregate outcome of a repair sweep."""

    found: int = Field(default=0, ge=0)
    repaired: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    cancelled: int = Field(default=0, ge=0)
    # Ids whose repair was already in flight elsewhere
    skipped: int = Field(default=0, ge=0)
    max_active: int = Field(default=0, ge=0)
    stopped: bool = Field(default=False)
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = Field(default=None)
    config_snapshot: Dict[str, object] = Field(default_factory=dict)
    errors: List[Dict[str, object]] = Field(default_factory=list)

    def finish(self) -> None:
        self.finished_at = _utcnow()

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> Dict[str, object]:
        payload = self.model_dump(exclude={"started_at", "finished_at", "config_snapshot"})
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        payload["config"] = self.config_snapshot
        return payload
