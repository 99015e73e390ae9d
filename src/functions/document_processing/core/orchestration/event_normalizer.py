"""Reduce raw push-stream events to a single signal type.

The backend reports completion in several overlapping ways (status fields,
transaction ids, free-text messages, dedicated event types). All of them are
checked here, for every event type, so the processor only sees
Progress / Completed / Failed / Ignored.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from ..contracts.errors import EventValidationError
from ..contracts.processing_update import PUBLISH_PENDING_STATUS
from ..contracts.signals import Completed, Failed, Ignored, Progress, StreamSignal

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"complete", "success", "completed"})
SUCCESS_PHRASES = (
    "published successfully",
    "Process complete",
    "Document published",
    "already exists",
)
PERSISTENT_ID_KEYS = ("dbId", "documentDidTx", "persistentId", "didTx")
DEFAULT_ERROR_REASON = "Error during processing"


def parse_payload(data: str) -> Dict[str, object]:
    """Decode an event payload; raises EventValidationError unless it is a JSON object."""

    try:
        payload = json.loads(data)
    except (TypeError, json.JSONDecodeError) as exc:
        raise EventValidationError(f"Event payload is not JSON: {data[:120]!r}") from exc
    if not isinstance(payload, dict):
        raise EventValidationError(f"Event payload is not an object: {type(payload).__name__}")
    return payload


def is_completion(payload: Dict[str, object]) -> bool:
    status = payload.get("status")
    if isinstance(status, str) and status in SUCCESS_STATUSES:
        return True
    if payload.get("documentDidTx") or payload.get("txid"):
        return True
    if status == PUBLISH_PENDING_STATUS and payload.get("arweaveTx"):
        return True
    message = payload.get("message")
    return isinstance(message, str) and any(phrase in message for phrase in SUCCESS_PHRASES)


def extract_persistent_id(payload: Dict[str, object]) -> Optional[str]:
    for key in PERSISTENT_ID_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def normalize_event(event_type: str, data: str) -> StreamSignal:
    """Map one raw event to a signal, whatever its declared type."""

    event_type = (event_type or "message").strip() or "message"
    try:
        payload = parse_payload(data)
    except EventValidationError as exc:
        if event_type == "error":
            return Failed(reason=(data or "").strip() or DEFAULT_ERROR_REASON)
        logger.debug("Ignoring malformed %s event: %s", event_type, exc)
        return Ignored(reason=str(exc))

    if event_type == "error":
        reason = payload.get("message") or payload.get("error") or DEFAULT_ERROR_REASON
        return Failed(reason=str(reason))

    if event_type == "complete" or is_completion(payload):
        message = payload.get("message")
        return Completed(
            message=message if isinstance(message, str) and message else "Document published successfully",
            persistent_id=extract_persistent_id(payload),
            raw=payload,
        )

    status = payload.get("status") if isinstance(payload.get("status"), str) else None
    message = payload.get("message") if isinstance(payload.get("message"), str) else None

    if event_type == "processing":
        return Progress(
            status=status or "processing",
            message=message,
            stage=payload.get("stage") if isinstance(payload.get("stage"), str) else None,
            progress=_as_progress(payload.get("progress")),
            txid=payload.get("arweaveTx") if isinstance(payload.get("arweaveTx"), str) else None,
        )
    if event_type == "publishing":
        txid = payload.get("documentTxid")
        return Progress(
            status=f"publishing_{status or 'unknown'}",
            message=message or "Publishing document",
            txid=txid if isinstance(txid, str) else None,
        )
    return Ignored(reason=f"{event_type} event without completion signal")


def _as_progress(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
