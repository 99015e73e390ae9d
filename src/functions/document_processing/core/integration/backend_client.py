"""Async HTTP client for the document archive backend."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..contracts.config import BackendSettings
from ..contracts.errors import StreamError, TransportError
from ..contracts.stage_status import StageStatus
from ..contracts.work_item import ItemKind

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/jfk/document-status"
DOCUMENT_INFO_PATH = "/api/jfk/document-info"
PROCESS_PATH = "/api/jfk/process"
STREAM_PATH = "/api/jfk/process/status"


@dataclass(slots=True)
class RawStreamEvent:
    """One server-sent event as received, before normalisation."""

    event: str
    data: str


@dataclass(slots=True)
class CatalogPage:
    """One page of the work-item catalog."""

    page: int
    rows: List[Dict[str, object]] = field(default_factory=list)
    total_pages: int = 0
    total_count: int = 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


class ProcessingBackend(Protocol):
    """Collaborator contract used by the orchestrator; BackendClient implements it over HTTP."""

    async def status_check(self, item_id: str, kind: ItemKind) -> StageStatus: ...

    async def lookup_persisted(self, item_id: str) -> Optional[str]: ...

    async def document_info(self, persistent_id: str) -> Optional[Dict[str, object]]: ...

    async def initiate_processing(
        self,
        item_id: str,
        source_url: str,
        steps: Sequence[str],
        kind: ItemKind,
    ) -> Dict[str, object]: ...

    def stream_processing(self, item_id: str, kind: ItemKind): ...

    async def repair(self, item_id: str, force_update: bool = True) -> Dict[str, object]: ...

    async def find_broken(self) -> List[str]: ...

    async def catalog_page(self, page: int, page_size: int) -> CatalogPage: ...


class BackendClient:
    """Encapsulates outbound calls to the archive processing endpoints."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._headers = settings.build_headers()
        timeout = httpx.Timeout(settings.request_timeout_seconds, connect=settings.connect_timeout_seconds)
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def settings(self) -> BackendSettings:
        return self._settings

    async def aclose(self) -> None:
        await self._http.aclose()

    async def status_check(self, item_id: str, kind: ItemKind) -> StageStatus:
        """Return stage flags for an item; an unknown item reports nothing done."""

        data = await self._request_json(
            "status_check",
            "GET",
            f"{self._settings.api_root}{STATUS_PATH}",
            params={"documentId": item_id, "documentType": kind.value},
            not_found_ok=True,
        )
        if data is None:
            return StageStatus.nothing_done()
        return StageStatus.model_validate(data)

    async def lookup_persisted(self, item_id: str) -> Optional[str]:
        """Return the persisted identifier for an item if the backend stored it."""

        data = await self._request_json(
            "lookup_persisted",
            "GET",
            f"{self._settings.api_root}{STATUS_PATH}",
            params={"documentId": item_id},
            not_found_ok=True,
        )
        if not data or data.get("status") != "success":
            return None
        document = data.get("document")
        if not isinstance(document, dict):
            return None
        oip = document.get("oip")
        did_tx = oip.get("didTx") if isinstance(oip, dict) else None
        persisted = did_tx or document.get("id")
        return str(persisted) if persisted else None

    async def document_info(self, persistent_id: str) -> Optional[Dict[str, object]]:
        return await self._request_json(
            "document_info",
            "GET",
            f"{self._settings.api_root}{DOCUMENT_INFO_PATH}",
            params={"id": persistent_id},
            not_found_ok=True,
        )

    async def initiate_processing(
        self,
        item_id: str,
        source_url: str,
        steps: Sequence[str],
        kind: ItemKind,
    ) -> Dict[str, object]:
        payload = {
            "documentId": f"/{item_id}",
            "documentUrl": source_url,
            "archiveId": item_id,
            "steps": list(steps),
            "documentType": kind.value,
            "documentGroup": kind.value,
        }
        data = await self._request_json(
            "initiate",
            "POST",
            f"{self._settings.api_root}{PROCESS_PATH}",
            json_body=payload,
            extra_headers={"X-Archive-ID": item_id},
        )
        return data or {}

    @asynccontextmanager
    async def stream_processing(self, item_id: str, kind: ItemKind) -> AsyncIterator[AsyncIterator[RawStreamEvent]]:
        """Open the status push stream for one item.

        Yields an async iterator of raw events; leaving the context closes the
        connection. Connection failures surface as StreamError.
        """

        url = f"{self._settings.stream_root}{STREAM_PATH}"
        params = {"documentId": item_id, "collection": kind.value}
        headers = {**self._headers, "Accept": "text/event-stream"}
        headers.pop("Content-Type", None)
        # Stream reads can idle for minutes between events
        timeout = httpx.Timeout(None, connect=self._settings.connect_timeout_seconds)
        try:
            async with self._http.stream("GET", url, params=params, headers=headers, timeout=timeout) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise StreamError(
                        "stream",
                        f"{url} returned status {response.status_code}: {response.text}",
                        item_id=item_id,
                        retryable=response.status_code >= 500,
                    )
                yield self._iter_events(response, item_id)
        except httpx.HTTPError as exc:
            raise StreamError("stream", f"Stream for {item_id} failed: {exc}", item_id=item_id, retryable=True) from exc

    async def repair(self, item_id: str, force_update: bool = True) -> Dict[str, object]:
        data = await self._request_json(
            "repair",
            "POST",
            f"{self._settings.api_root}{PROCESS_PATH}",
            json_body={"documentId": item_id, "processType": "repair", "forceDataUpdate": force_update},
        )
        return data or {}

    async def find_broken(self) -> List[str]:
        data = await self._request_json(
            "find_broken",
            "POST",
            f"{self._settings.api_root}{PROCESS_PATH}",
            json_body={"findBrokenOnly": True},
        )
        ids = (data or {}).get("brokenDocIds") or []
        if not isinstance(ids, list):
            raise TransportError("find_broken", "brokenDocIds is not a list", retryable=False)
        return [str(item_id) for item_id in ids if item_id]

    async def catalog_page(self, page: int, page_size: int) -> CatalogPage:
        data = await self._request_json(
            "catalog",
            "GET",
            f"{self._settings.api_root}{STATUS_PATH}",
            params={"page": page, "size": page_size},
        )
        data = data or {}
        rows = [row for row in data.get("documents") or [] if isinstance(row, dict)]
        total_count = _as_int(data.get("totalCount"))
        total_pages = _as_int(data.get("totalPages"))
        if not total_pages and total_count:
            total_pages = -(-total_count // page_size)
        return CatalogPage(page=page, rows=rows, total_pages=total_pages, total_count=total_count)

    async def _request_json(
        self,
        stage: str,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, object]] = None,
        json_body: Optional[Dict[str, object]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        not_found_ok: bool = False,
    ) -> Optional[Dict[str, object]]:
        headers = {**self._headers, **(extra_headers or {})}
        try:
            response = await self._http.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(stage, f"Request to {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(stage, f"HTTP error calling {url}: {exc}") from exc
        if response.status_code == 404 and not_found_ok:
            return None
        if response.status_code >= 400:
            raise TransportError(
                stage,
                f"{url} returned status {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise TransportError(stage, f"Invalid JSON response from {url}", retryable=False) from exc
        if isinstance(data, dict):
            return data
        raise TransportError(stage, "Unexpected response payload type", retryable=False)

    @staticmethod
    async def _iter_events(response: httpx.Response, item_id: str) -> AsyncIterator[RawStreamEvent]:
        event_type = "message"
        data_lines: List[str] = []
        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if not line:
                if data_lines:
                    yield RawStreamEvent(event=event_type, data="\n".join(data_lines))
                event_type = "message"
                data_lines = []
                continue
            if line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                event_type = value or "message"
            elif name == "data":
                data_lines.append(value)
            # id and retry fields are not used
        if data_lines:
            yield RawStreamEvent(event=event_type, data="\n".join(data_lines))
        logger.debug("[%s] Stream closed by server", item_id)


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or payload)
    return str(payload)[:200]


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0
