"""Cloud Function entry point for the document processing orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

import flask
import functions_framework

# Ensure project root is available on import path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.document_processing.core.contracts.errors import PipelineError, RunCancelled
from src.functions.document_processing.core.orchestration.config_loader import (
    build_backend_settings,
    build_orchestrator_config,
    build_repair_config,
)
from src.functions.document_processing.core.orchestration.orchestrator import DocumentOrchestrator
from src.functions.document_processing.core.state.work_item_store import WorkItemStore

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

MODES = ("process", "repair", "repair_broken")


def orchestrator_handler(request: flask.Request) -> flask.Response:
    """HTTP handler running one processing or repair sweep to completion."""

    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        return _error_response("Method not allowed. Use POST.", status=405)

    payload = request.get_json(silent=True) or {}
    logger.info("Received orchestrator invocation with payload keys: %s", list(payload.keys()))

    mode = payload.get("mode") or "process"
    if mode not in MODES:
        return _error_response(f"'mode' must be one of: {', '.join(MODES)}", status=400)

    documents = payload.get("documents")
    if documents is not None and (
        not isinstance(documents, (list, tuple)) or not all(isinstance(doc, str) and doc for doc in documents)
    ):
        return _error_response("'documents' must be an array of document ids", status=400)
    if mode == "repair" and not documents:
        return _error_response("'documents' is required for repair mode", status=400)

    try:
        settings = build_backend_settings()
        config = build_orchestrator_config(
            {
                "concurrency_limit": payload.get("concurrency"),
                "limit_to_core_analysis": payload.get("limit_to_core_analysis"),
            }
        )
        repair_config = build_repair_config()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return _error_response(f"Configuration error: {exc}", status=500)

    response_body = asyncio.run(_run(mode, list(documents or []), settings, config, repair_config))
    logger.info(
        "Orchestrator finished: mode=%s failed=%s",
        mode,
        response_body.get("failed"),
    )
    return _cors_response(response_body)


async def _run(mode: str, documents: List[str], settings, config, repair_config) -> Dict[str, object]:
    orchestrator = DocumentOrchestrator.from_settings(settings, config=config, repair_config=repair_config)
    store = WorkItemStore()
    orchestrator.subscribe(store)
    try:
        if mode == "repair":
            result = await orchestrator.repair_many(documents)
            body = result.to_dict() if result else {}
        elif mode == "repair_broken":
            result = await orchestrator.repair_all_broken()
            body = result.to_dict() if result else {}
        elif documents:
            body = await _process_documents(orchestrator, documents)
        else:
            result = await orchestrator.process_all()
            body = result.to_dict() if result else {}
    finally:
        await orchestrator.shutdown()
    body["mode"] = mode
    body["identifiers"] = dict(store.identifier_map)
    body["items"] = {item_id: item.model_dump(mode="json") for item_id, item in store.items.items()}
    return body


async def _process_documents(orchestrator: DocumentOrchestrator, documents: List[str]) -> Dict[str, object]:
    outcomes = await asyncio.gather(*(orchestrator.process(doc) for doc in documents), return_exceptions=True)
    results: List[Dict[str, object]] = []
    failed = 0
    for doc_id, outcome in zip(documents, outcomes):
        if isinstance(outcome, RunCancelled):
            results.append({"id": doc_id, "state": "cancelled"})
        elif isinstance(outcome, PipelineError):
            failed += 1
            results.append({"id": doc_id, "state": "failed", "stage": outcome.stage, "message": str(outcome)})
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append({"id": doc_id, **outcome.model_dump(mode="json")})
    return {"requested": len(documents), "failed": failed, "results": results}


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint returning module status."""

    return _cors_response({"status": "healthy", "module": "document_processing"})


def _cors_response(body: dict[str, Any] | Iterable[Any], status: int = 200) -> flask.Response:
    response = flask.make_response(json.dumps(body, ensure_ascii=False, default=str), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization,X-API-Key"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    return _cors_response({"status": "error", "message": message}, status=status)


@functions_framework.http
def run_orchestrator(request: flask.Request):
    return orchestrator_handler(request)


@functions_framework.http
def health_check(request: flask.Request):
    return health_check_handler(request)
