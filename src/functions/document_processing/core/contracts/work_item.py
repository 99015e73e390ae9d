"""Work item model shared by the catalog scanner, the processors and the hosts."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ARCHIVES_BASE_URL = "https://www.archives.gov/files/research"
RFK_RELEASE_PATH = "2025/0418"
DEFAULT_JFK_RELEASE = "0318"
APRIL_JFK_RELEASE = "0403"
APRIL_RELEASE_PREFIXES = ("2021", "2023")


class ItemKind(str, Enum):
    """The two document collections served by the archive backend."""

    JFK = "jfk"
    RFK = "rfk"


class LifecycleStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    WAITING_FOR_ANALYSIS = "waitingForAnalysis"
    COMPLETED = "completed"
    ERROR = "error"


class TransientStatus(str, Enum):
    PROCESSING = "processing"
    FAILED = "failed"
    REPAIR_FAILED = "repairFailed"
    TIMED_OUT = "timedOut"


def infer_kind(item_id: str, *, group: Optional[str] = None, explicit: Optional[str] = None) -> ItemKind:
    """Return the collection for *item_id*.

    An explicit group/type flag of ``rfk`` wins; otherwise ids containing
    ``rfk`` belong to the RFK collection and everything else is JFK.
    """

    for flag in (explicit, group):
        if isinstance(flag, str) and flag.strip().lower() == ItemKind.RFK.value:
            return ItemKind.RFK
    if ItemKind.RFK.value in item_id.lower():
        return ItemKind.RFK
    return ItemKind.JFK


def build_source_url(item_id: str, kind: ItemKind, release_date: Optional[str] = None) -> str:
    """Return the public archive URL of the source PDF for an item."""

    if kind is ItemKind.RFK:
        return f"{ARCHIVES_BASE_URL}/rfk/releases/{RFK_RELEASE_PATH}/{item_id}.pdf"

    release = DEFAULT_JFK_RELEASE
    if release_date:
        try:
            parsed = datetime.fromisoformat(release_date.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            release = f"{parsed.month:02d}{parsed.day:02d}"
    elif item_id.startswith(APRIL_RELEASE_PREFIXES):
        release = APRIL_JFK_RELEASE
    return f"{ARCHIVES_BASE_URL}/jfk/releases/2025/{release}/{item_id}.pdf"


class WorkItem(BaseModel):
    """One document as listed by the catalog and mirrored by the host store."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    id: str = Field(..., min_length=1)
    kind: ItemKind = Field(default=ItemKind.JFK)
    status: LifecycleStatus = Field(default=LifecycleStatus.PENDING)
    processing_status: Optional[TransientStatus] = Field(default=None, alias="processingStatus")
    processing_progress: Optional[float] = Field(default=None, alias="processingProgress")
    stages: List[str] = Field(default_factory=list)
    analysis_complete: bool = Field(default=False, alias="analysisComplete")
    persistent_id: Optional[str] = Field(default=None, alias="dbId")
    page_count: Optional[int] = Field(default=None, alias="pageCount")
    release_date: Optional[str] = Field(default=None, alias="releaseDate")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    raw_status: Optional[str] = Field(
        default=None,
        description="Status string exactly as the catalog reported it",
    )
    raw_processing_status: Optional[str] = Field(default=None)

    @field_validator("stages", mode="before")
    @classmethod
    def _coerce_stages(cls, value: object) -> List[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [str(stage) for stage in value if stage]

    @property
    def source_url(self) -> str:
        return build_source_url(self.id, self.kind, self.release_date)

    @classmethod
    def from_catalog(cls, row: Mapping[str, object]) -> Optional["WorkItem"]:
        """Build a work item from a catalog row, or None if the row has no id.

        Catalog status strings are free-form (older rows carry messages such as
        "Document published to database"), so unknown values are kept in
        ``raw_status`` and the lifecycle status falls back to ``pending``.
        """

        item_id = row.get("id") or row.get("archiveId")
        if not isinstance(item_id, str) or not item_id.strip():
            return None
        item_id = item_id.strip()

        raw_status = row.get("status") if isinstance(row.get("status"), str) else None
        raw_processing = (
            row.get("processingStatus") if isinstance(row.get("processingStatus"), str) else None
        )
        page_count = row.get("pageCount")
        if isinstance(page_count, bool) or not isinstance(page_count, int):
            page_count = None

        return cls(
            id=item_id,
            kind=infer_kind(
                item_id,
                group=row.get("documentGroup") if isinstance(row.get("documentGroup"), str) else None,
                explicit=row.get("documentType") if isinstance(row.get("documentType"), str) else None,
            ),
            status=_parse_enum(LifecycleStatus, raw_status, LifecycleStatus.PENDING),
            processing_status=_parse_enum(TransientStatus, raw_processing, None),
            stages=row.get("stages") or [],
            analysis_complete=bool(row.get("analysisComplete")),
            persistent_id=row.get("dbId") if isinstance(row.get("dbId"), str) else None,
            page_count=page_count,
            release_date=row.get("releaseDate") if isinstance(row.get("releaseDate"), str) else None,
            raw_status=raw_status,
            raw_processing_status=raw_processing,
        )

    def apply(self, changes: Mapping[str, object], add_stages: tuple = ()) -> "WorkItem":
        """Return a validated copy with *changes* applied and *add_stages* appended once.

        Raises pydantic's ValidationError (a ValueError) for unknown status values.
        """

        update: Dict[str, object] = dict(changes)
        if add_stages:
            stages = list(update.get("stages") or self.stages)
            for stage in add_stages:
                if stage not in stages:
                    stages.append(stage)
            update["stages"] = stages
        return type(self).model_validate({**self.model_dump(), **update})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls, value, default):
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default
