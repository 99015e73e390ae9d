"""CLI entry point for the document processing orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[4]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

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

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process or repair archive documents through the remote pipeline.")
    parser.add_argument("--document", "-d", action="append", help="Document id to process (can be repeated)")
    parser.add_argument("--repair", "-r", action="append", help="Document id to repair (can be repeated)")
    parser.add_argument("--repair-broken", action="store_true", help="Find and repair every broken document")
    parser.add_argument("--concurrency", type=int, help="Maximum concurrent document runs")
    parser.add_argument(
        "--full-pipeline",
        action="store_true",
        help="Also request publish, summary and indexing stages",
    )
    parser.add_argument(
        "--force-fallback-success",
        action="store_true",
        help="Treat runs without a terminal event after the fallback timeout as successful",
    )
    parser.add_argument("--failures-file", type=Path, help="Write failed documents to this JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--output",
        choices=("text", "json"),
        default="text",
        help="Output format for results (default: text)",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_env()
    setup_logging(level="DEBUG" if args.verbose else None)

    try:
        settings = build_backend_settings()
        config = build_orchestrator_config(
            {
                "concurrency_limit": args.concurrency,
                "limit_to_core_analysis": False if args.full_pipeline else None,
                "fallback_forces_success": True if args.force_fallback_success else None,
            }
        )
        repair_config = build_repair_config()
    except ConfigurationError as exc:
        LOG.error("%s", exc)
        return 1

    output = asyncio.run(_execute(args, settings, config, repair_config))

    if args.output == "json":
        json.dump(output, sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")
    else:
        _print_summary(output)

    return 0 if output.get("failed", 0) == 0 else 2


async def _execute(args: argparse.Namespace, settings, config, repair_config) -> Dict[str, object]:
    orchestrator = DocumentOrchestrator.from_settings(settings, config=config, repair_config=repair_config)
    store = WorkItemStore()
    orchestrator.subscribe(store)
    _install_signal_handlers(orchestrator)
    try:
        if args.document or args.repair:
            output = await _run_selected(orchestrator, args.document or [], args.repair or [])
        elif args.repair_broken:
            result = await orchestrator.repair_all_broken()
            output = result.to_dict() if result else {}
        else:
            result = await orchestrator.process_all()
            output = result.to_dict() if result else {}
    finally:
        await orchestrator.shutdown()

    output["identifiers"] = dict(store.identifier_map)
    if args.failures_file and orchestrator.failures.get_summary():
        orchestrator.failures.save(args.failures_file)
        output["failures_file"] = str(args.failures_file)
    return output


async def _run_selected(
    orchestrator: DocumentOrchestrator,
    documents: List[str],
    repairs: List[str],
) -> Dict[str, object]:
    coroutines = [orchestrator.process(doc_id) for doc_id in documents]
    coroutines += [orchestrator.repair(doc_id) for doc_id in repairs]
    outcomes = await asyncio.gather(*coroutines, return_exceptions=True)

    results: List[Dict[str, object]] = []
    failed = 0
    for index, (doc_id, outcome) in enumerate(zip([*documents, *repairs], outcomes)):
        stage = "process" if index < len(documents) else "repair"
        if isinstance(outcome, RunCancelled):
            results.append({"id": doc_id, "stage": stage, "state": "cancelled", "message": str(outcome)})
        elif isinstance(outcome, PipelineError):
            failed += 1
            orchestrator.failures.record_failure(stage, doc_id, None, str(outcome))
            results.append({"id": doc_id, "stage": stage, "state": "failed", "message": str(outcome)})
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append({"id": doc_id, "stage": stage, **outcome.model_dump(mode="json")})
    return {"requested": len(results), "failed": failed, "results": results}


def _install_signal_handlers(orchestrator: DocumentOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_stop, orchestrator, signum)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows event loops
            LOG.debug("Signal handlers unavailable on this platform")
            return


def _request_stop(orchestrator: DocumentOrchestrator, signum: int) -> None:
    LOG.warning("Received %s, stopping", signal.Signals(signum).name)
    orchestrator.stop()


def _print_summary(output: Dict[str, object]) -> None:
    if "results" in output:
        LOG.info("Run complete: %s requested, %s failed", output.get("requested"), output.get("failed"))
        for entry in output.get("results") or []:
            LOG.info("[%s] %s %s", entry.get("id"), entry.get("stage"), entry.get("state"))
        return
    if "found" in output:
        LOG.info(
            "Repair complete: %s found, %s repaired, %s failed, %s skipped",
            output.get("found"),
            output.get("repaired"),
            output.get("failed"),
            output.get("skipped"),
        )
    else:
        LOG.info(
            "Sweep complete: %s rounds, %s processed, %s succeeded, %s repaired, %s failed, %s unresolved",
            output.get("rounds"),
            output.get("processed"),
            output.get("succeeded"),
            output.get("repaired"),
            output.get("failed"),
            output.get("unresolved"),
        )
    errors = output.get("errors") or []
    if errors:
        LOG.warning("Encountered %s errors", len(errors))
        for entry in errors:
            LOG.warning("[%s] %s", entry.get("item_id"), entry.get("error"))


if __name__ == "__main__":  # pragma: no cover - manual execution entry
    sys.exit(run())
