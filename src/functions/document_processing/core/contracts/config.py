"""Configuration models for the document processing orchestrator."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator


class BackendSettings(BaseModel):
    """Connection settings for the document archive backend."""

    base_url: HttpUrl = Field(..., description="Base URL serving the /api/jfk endpoints")
    stream_base_url: Optional[HttpUrl] = Field(
        default=None,
        description="Base URL for the status push stream; defaults to base_url",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    connect_timeout_seconds: float = Field(default=5.0, gt=0, le=120)
    api_key: Optional[str] = Field(
        default=None,
        description="Optional API key sent via X-API-Key header",
    )
    authorization: Optional[str] = Field(
        default=None,
        description="Optional Authorization header value",
    )
    additional_headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_key", "authorization", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def api_root(self) -> str:
        return str(self.base_url).rstrip("/")

    @property
    def stream_root(self) -> str:
        return str(self.stream_base_url or self.base_url).rstrip("/")

    def build_headers(self) -> Dict[str, str]:
        """Return headers that should be attached to every request."""

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.authorization:
            headers["Authorization"] = self.authorization
        headers.update(self.additional_headers)
        return headers

    def snapshot(self) -> Dict[str, object]:
        # Credentials stay out of reports
        return {
            "base_url": self.api_root,
            "stream_base_url": self.stream_root,
            "request_timeout_seconds": self.request_timeout_seconds,
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "has_api_key": bool(self.api_key),
            "extra_headers": sorted(self.additional_headers),
        }


class OrchestratorConfig(BaseModel):
    """Operational configuration for discovery and processing sweeps."""

    concurrency_limit: int = Field(default=5, ge=1, le=64)
    limit_to_core_analysis: bool = Field(
        default=True,
        description="If true, publish, summary and indexing stages are never requested",
    )
    catalog_page_size: int = Field(default=50, ge=1, le=500)
    discovery_batch_target: int = Field(default=500, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    scan_error_delay_seconds: float = Field(default=2.0, ge=0)
    max_consecutive_scan_failures: int = Field(default=5, ge=1)
    required_stage_count: int = Field(
        default=5,
        ge=0,
        description="Items recording fewer stages than this are probed during discovery",
    )
    hard_timeout_seconds: float = Field(default=900.0, gt=0)
    fallback_timeout_seconds: float = Field(default=120.0, gt=0)
    fallback_forces_success: bool = Field(
        default=False,
        description="If true, the fallback timer reports success instead of a timed-out state",
    )
    publish_probe_delay_seconds: float = Field(default=15.0, gt=0)
    stop_reset_delay_seconds: float = Field(default=1.0, ge=0)
    catalog_retry_attempts: int = Field(default=2, ge=0, le=10)

    def snapshot(self) -> Dict[str, object]:
        """Return a serialisable snapshot for reporting."""

        return self.model_dump()


class RepairConfig(BaseModel):
    """Settings for the broken-item repair pool."""

    max_concurrent: int = Field(default=5, ge=1, le=32)
    stagger_seconds: float = Field(default=2.0, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    force_update: bool = Field(default=True)

    def snapshot(self) -> Dict[str, object]:
        return self.model_dump()
