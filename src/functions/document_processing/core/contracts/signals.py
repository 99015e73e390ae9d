"""Normalised stream signals.

Every raw push-stream event is reduced to exactly one of these, whatever its
declared event type. TimedOut is only produced by the fallback timer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Union


@dataclass(slots=True, frozen=True)
class Progress:
    status: str
    message: Optional[str] = None
    stage: Optional[str] = None
    progress: Optional[float] = None
    txid: Optional[str] = None


@dataclass(slots=True, frozen=True)
class Completed:
    message: str = "Document published successfully"
    persistent_id: Optional[str] = None
    # Set when success was inferred (dropped stream, fallback timer) rather than reported
    assumed: bool = False
    raw: Dict[str, object] = field(default_factory=dict, compare=False)


@dataclass(slots=True, frozen=True)
class Failed:
    reason: str
    # True for client-side observation failures (dropped connection, EOF)
    transport: bool = False


@dataclass(slots=True, frozen=True)
class Ignored:
    reason: str = ""


@dataclass(slots=True, frozen=True)
class TimedOut:
    """No terminal event arrived before the fallback timer."""

    seconds: float


StreamSignal = Union[Progress, Completed, Failed, Ignored, TimedOut]
