"""Shared batch processing infrastructure.

Provides generic utilities for batch processing pipelines:
- ProgressTracker: Processing progress and metrics, with a growable total
- FailureTracker: Tracks failed items for re-runs and analysis
- retry_on_network_error: Async retry with exponential backoff

Usage:
    from src.shared.batch import FailureTracker, ProgressTracker
    from src.shared.batch import retry_on_network_error
"""

from .failure_tracker import FailureTracker
from .progress import ProgressTracker
from .retry import NETWORK_ERRORS, retry_on_network_error

__all__ = [
    "FailureTracker",
    "ProgressTracker",
    "NETWORK_ERRORS",
    "retry_on_network_error",
]
