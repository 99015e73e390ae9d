"""Per-item stage completion snapshot and the stage list derived from it."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Stage(str, Enum):
    """Pipeline stages, valued by the names the backend expects."""

    CREATE_FOLDER = "createFolder"
    DOWNLOAD_SOURCE = "downloadPdf"
    RENDER_PAGES = "createPngs"
    ANALYZE = "analyzeImages"
    PUBLISH = "publishArweave"
    UPDATE_SUMMARY = "updateSummary"
    INDEX = "indexDatabase"


# Order matters: the backend runs the requested steps in list order.
CORE_STAGES: Tuple[Tuple[Stage, str], ...] = (
    (Stage.CREATE_FOLDER, "has_folder"),
    (Stage.DOWNLOAD_SOURCE, "has_source"),
    (Stage.RENDER_PAGES, "has_pages"),
    (Stage.ANALYZE, "has_analysis"),
)
DOWNSTREAM_STAGES: Tuple[Tuple[Stage, str], ...] = (
    (Stage.PUBLISH, "has_published_copy"),
    (Stage.UPDATE_SUMMARY, "has_latest_summary"),
    (Stage.INDEX, "is_indexed"),
)


class StageStatus(BaseModel):
    """Snapshot returned by the status endpoint; recomputed on every probe."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    exists: bool = Field(default=False)
    has_folder: bool = Field(default=False, alias="hasFolder")
    has_source: bool = Field(default=False, alias="hasPdf")
    has_pages: bool = Field(default=False, alias="hasPngs")
    has_analysis: bool = Field(default=False, alias="hasAnalysis")
    has_published_copy: bool = Field(default=False, alias="hasArweave")
    has_latest_summary: bool = Field(default=False, alias="hasLatestSummary")
    is_indexed: bool = Field(default=False, alias="isIndexed")
    persistent_id: Optional[str] = Field(default=None, alias="dbId")

    @classmethod
    def nothing_done(cls) -> "StageStatus":
        """All-false snapshot used when the backend cannot be asked."""

        return cls()

    def needed_stages(self, limit_to_core_analysis: bool) -> List[Stage]:
        """Return the stages still outstanding, in execution order.

        Core stages are always considered; publish, summary and indexing only
        when the run is not limited to core analysis.
        """

        considered = CORE_STAGES if limit_to_core_analysis else CORE_STAGES + DOWNSTREAM_STAGES
        return [stage for stage, flag in considered if not getattr(self, flag)]
