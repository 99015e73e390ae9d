"""Error taxonomy for the document processing orchestrator."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for errors raised while driving a work item."""

    def __init__(self, stage: str, message: str, *, item_id: Optional[str] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.stage = stage
        self.item_id = item_id
        self.retryable = retryable


class TransportError(PipelineError):
    """A one-shot request to the backend failed."""

    def __init__(self, stage: str, message: str, *, status_code: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(stage, message, retryable=retryable)
        self.status_code = status_code


class StreamError(PipelineError):
    """The push stream failed or ended without a terminal event."""


class PipelineFailure(PipelineError):
    """A run reached the failed terminal state."""


class RunTimeout(PipelineFailure):
    """No terminal event arrived before the hard per-run timeout."""


class RunCancelled(PipelineError):
    """The run was torn down by a stop request."""

    def __init__(self, item_id: Optional[str] = None, message: str = "Processing stopped") -> None:
        super().__init__("cancelled", message, item_id=item_id)


class EventValidationError(ValueError):
    """A stream event payload could not be interpreted."""
