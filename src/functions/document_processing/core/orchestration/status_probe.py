"""Stage-status and broken-output checks against the backend."""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from ..contracts.errors import TransportError
from ..contracts.stage_status import StageStatus
from ..contracts.work_item import ItemKind, infer_kind
from ..integration.backend_client import ProcessingBackend
from .cancellation import CancellationController

logger = logging.getLogger(__name__)

MALFORMED_PAYLOAD_PREFIX = '{"archiveId":'


class StatusProbe:
    """Read-only probes; transport failures degrade instead of raising.

    ``probe`` reports nothing done, ``is_broken`` reports not broken and
    ``find_persisted`` reports not found when the backend cannot be reached.
    """

    def __init__(self, backend: ProcessingBackend, controller: Optional[CancellationController] = None) -> None:
        self._backend = backend
        self._controller = controller

    async def probe(self, item_id: str, kind: ItemKind) -> StageStatus:
        try:
            return await self._call(self._backend.status_check(item_id, kind))
        except TransportError as exc:
            logger.warning("[%s] Status check failed, assuming nothing done: %s", item_id, exc)
            return StageStatus.nothing_done()
        except ValueError as exc:
            logger.warning("[%s] Unreadable status payload, assuming nothing done: %s", item_id, exc)
            return StageStatus.nothing_done()

    async def is_broken(self, item_id: str) -> bool:
        """Return True when a previously finished item has malformed stored output."""

        try:
            status = await self._call(self._backend.status_check(item_id, infer_kind(item_id)))
            if not status.exists or not status.persistent_id:
                return False
            info = await self._call(self._backend.document_info(status.persistent_id))
        except (TransportError, ValueError) as exc:
            logger.warning("[%s] Broken check failed, assuming not broken: %s", item_id, exc)
            return False
        if info is None:
            return False
        broken = document_info_is_broken(info)
        if broken:
            logger.info("[%s] Stored document %s needs repair", item_id, status.persistent_id)
        return broken

    async def find_persisted(self, item_id: str) -> Optional[str]:
        try:
            return await self._call(self._backend.lookup_persisted(item_id))
        except TransportError as exc:
            logger.warning("[%s] Persisted lookup failed: %s", item_id, exc)
            return None

    async def _call(self, awaitable):
        if self._controller is None:
            return await awaitable
        return await self._controller.track(awaitable)


def document_info_is_broken(info: Dict[str, object]) -> bool:
    document = info.get("document")
    pages = info.get("pages")
    missing_pages = not isinstance(pages, list) or len(pages) == 0
    zero_pages = info.get("pageCount") == 0

    malformed = False
    analysed_without_pages = False
    if isinstance(document, dict):
        malformed = json.dumps(document, separators=(",", ":")).startswith(MALFORMED_PAYLOAD_PREFIX)
        analysed_without_pages = document.get("analysisComplete") is True and (missing_pages or zero_pages)
    return malformed or zero_pages or missing_pages or analysed_without_pages
