"""Build orchestrator configuration from overrides and the environment."""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from pydantic import ValidationError

from src.shared.utils.config_validator import (
    ConfigurationError,
    require_env,
    validate_bool_env,
    validate_float_env,
    validate_int_env,
)
from src.shared.utils.env import get_env

from ..contracts.config import BackendSettings, OrchestratorConfig, RepairConfig

logger = logging.getLogger(__name__)

HEADER_PREFIX = "DOCUMENT_API_HEADER_"

# override key -> (environment variable, kind)
_ORCHESTRATOR_ENV: Dict[str, tuple] = {
    "concurrency_limit": ("ORCHESTRATOR_CONCURRENCY", "int"),
    "limit_to_core_analysis": ("ORCHESTRATOR_CORE_ONLY", "bool"),
    "catalog_page_size": ("ORCHESTRATOR_PAGE_SIZE", "int"),
    "discovery_batch_target": ("ORCHESTRATOR_BATCH_TARGET", "int"),
    "poll_interval_seconds": ("ORCHESTRATOR_POLL_INTERVAL", "float"),
    "scan_error_delay_seconds": ("ORCHESTRATOR_SCAN_ERROR_DELAY", "float"),
    "max_consecutive_scan_failures": ("ORCHESTRATOR_MAX_SCAN_FAILURES", "int"),
    "required_stage_count": ("ORCHESTRATOR_REQUIRED_STAGES", "int"),
    "hard_timeout_seconds": ("ORCHESTRATOR_HARD_TIMEOUT", "float"),
    "fallback_timeout_seconds": ("ORCHESTRATOR_FALLBACK_TIMEOUT", "float"),
    "fallback_forces_success": ("ORCHESTRATOR_FALLBACK_FORCES_SUCCESS", "bool"),
    "publish_probe_delay_seconds": ("ORCHESTRATOR_PUBLISH_PROBE_DELAY", "float"),
    "stop_reset_delay_seconds": ("ORCHESTRATOR_STOP_RESET_DELAY", "float"),
    "catalog_retry_attempts": ("ORCHESTRATOR_CATALOG_RETRIES", "int"),
}

_REPAIR_ENV: Dict[str, tuple] = {
    "max_concurrent": ("REPAIR_MAX_CONCURRENT", "int"),
    "stagger_seconds": ("REPAIR_STAGGER_SECONDS", "float"),
    "poll_interval_seconds": ("REPAIR_POLL_INTERVAL", "float"),
    "force_update": ("REPAIR_FORCE_UPDATE", "bool"),
}


def build_backend_settings(overrides: Optional[Dict[str, object]] = None) -> BackendSettings:
    """Build backend settings; DOCUMENT_API_URL is required unless overridden."""

    overrides = overrides or {}
    try:
        base_url = overrides.get("base_url") or get_env("DOCUMENT_API_URL") or require_env(
            "DOCUMENT_API_URL", "Document archive backend base URL"
        )
    except ConfigurationError as exc:
        raise ConfigurationError(
            f"{exc}\nRequired for the document processing orchestrator. "
            "See .env.example for configuration template."
        )

    request_timeout = overrides.get("request_timeout_seconds")
    if request_timeout is None:
        request_timeout = validate_float_env("DOCUMENT_API_TIMEOUT", 30.0, min_value=1.0, max_value=600.0)
    connect_timeout = overrides.get("connect_timeout_seconds")
    if connect_timeout is None:
        connect_timeout = validate_float_env("DOCUMENT_API_CONNECT_TIMEOUT", 5.0, min_value=0.5, max_value=120.0)

    additional_headers = {
        key[len(HEADER_PREFIX):].replace("_", "-"): value
        for key, value in os.environ.items()
        if key.startswith(HEADER_PREFIX) and value
    }
    additional_headers.update(overrides.get("additional_headers") or {})

    try:
        return BackendSettings(
            base_url=base_url,
            stream_base_url=overrides.get("stream_base_url") or get_env("DOCUMENT_STREAM_URL"),
            request_timeout_seconds=float(request_timeout),
            connect_timeout_seconds=float(connect_timeout),
            api_key=overrides.get("api_key") or get_env("DOCUMENT_API_KEY"),
            authorization=overrides.get("authorization") or get_env("DOCUMENT_API_AUTHORIZATION"),
            additional_headers=additional_headers,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid backend settings: {exc}") from exc


def build_orchestrator_config(overrides: Optional[Dict[str, object]] = None) -> OrchestratorConfig:
    return _build(OrchestratorConfig, _ORCHESTRATOR_ENV, overrides)


def build_repair_config(overrides: Optional[Dict[str, object]] = None) -> RepairConfig:
    return _build(RepairConfig, _REPAIR_ENV, overrides)


def _build(model, env_map: Dict[str, tuple], overrides: Optional[Dict[str, object]]):
    overrides = overrides or {}
    values: Dict[str, object] = {}
    for field_name, (env_name, kind) in env_map.items():
        override = overrides.get(field_name)
        if override is not None:
            values[field_name] = override
            continue
        if not os.getenv(env_name):
            continue
        if kind == "int":
            values[field_name] = validate_int_env(env_name)
        elif kind == "float":
            values[field_name] = validate_float_env(env_name)
        else:
            values[field_name] = validate_bool_env(env_name)
    unknown = set(overrides) - set(env_map)
    if unknown:
        logger.warning("Ignoring unknown %s overrides: %s", model.__name__, ", ".join(sorted(unknown)))
    try:
        return model(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {model.__name__}: {exc}") from exc
