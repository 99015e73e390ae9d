"""Metrics collection for processing and repair sweeps."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List

from ..contracts.run_result import RunOutcome, RunState


@dataclass
class _MutableMetrics:
    runs: int = 0
    assumed_completions: int = 0
    total_run_seconds: float = 0.0
    longest_run_seconds: float = 0.0
    peak_active: int = 0


class MetricsCollector:
    """Aggregates per-run counters for a sweep.

    All mutation happens on the event loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        self._metrics = _MutableMetrics()
        self._states: Counter = Counter()
        self._failure_stages: Counter = Counter()
        self._steps: Counter = Counter()

    def record_outcome(self, outcome: RunOutcome) -> None:
        self._metrics.runs += 1
        self._states[outcome.state.value] += 1
        if outcome.assumed:
            self._metrics.assumed_completions += 1
        for step in outcome.steps:
            self._steps[step] += 1
        if outcome.state is not RunState.ALREADY_RUNNING:
            self._metrics.total_run_seconds = round(self._metrics.total_run_seconds + outcome.duration_seconds, 4)
            self._metrics.longest_run_seconds = max(self._metrics.longest_run_seconds, outcome.duration_seconds)

    def record_failure(self, stage: str) -> None:
        self._metrics.runs += 1
        self._failure_stages[stage] += 1

    def observe_active(self, active: int) -> None:
        if active > self._metrics.peak_active:
            self._metrics.peak_active = active

    @property
    def peak_active(self) -> int:
        return self._metrics.peak_active

    def build_snapshot(self) -> Dict[str, object]:
        """Produce a serialisable snapshot for reporting."""

        completed_runs = self._metrics.runs - sum(self._failure_stages.values())
        average = (
            round(self._metrics.total_run_seconds / completed_runs, 4) if completed_runs else 0.0
        )
        requested_steps: List[Dict[str, object]] = [
            {"step": step, "count": count} for step, count in self._steps.most_common()
        ]
        return {
            "runs": self._metrics.runs,
            "outcomes": dict(self._states),
            "failures_by_stage": dict(self._failure_stages),
            "assumed_completions": self._metrics.assumed_completions,
            "average_run_seconds": average,
            "longest_run_seconds": round(self._metrics.longest_run_seconds, 4),
            "peak_active": self._metrics.peak_active,
            "requested_steps": requested_steps,
        }
