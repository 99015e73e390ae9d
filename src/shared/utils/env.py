"""Environment variable loading utilities.

Hosts call :func:`load_env` once at start-up so that the config loaders can
read everything through ``os.getenv``.
"""

from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _candidate_env_files(env_file: Optional[str]) -> List[Path]:
    if env_file:
        env_path = Path(env_file)
        return [env_path] if env_path.exists() else []

    # Parents first so the working directory's .env wins when override=True
    current = Path.cwd()
    paths: List[Path] = []
    for directory in [*reversed(current.parents), current]:
        candidate = directory / ".env"
        if candidate.exists() and candidate not in paths:
            paths.append(candidate)
    return paths


def load_env(env_file: Optional[str] = None, override: bool = False) -> List[Path]:
    """Load environment variables from .env files.

    Args:
        env_file: Path to .env file. If None, searches for .env in current
                 directory and parent directories.
        override: Whether to override existing environment variables.

    Returns:
        The files that were loaded, in load order.
    """
    env_paths = _candidate_env_files(env_file)
    if not env_paths:
        logger.debug("No .env file found, using system environment")
        return []

    for path in env_paths:
        load_dotenv(path, override=override)
        logger.debug("Loaded environment from %s", path)
    return env_paths


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable with surrounding quotes stripped.

    Deployment consoles frequently store values as ``"value"``; the quotes
    are never part of a URL or key.
    """
    value = os.getenv(key)
    if value is None:
        return default
    cleaned = value.strip().strip('"').strip("'")
    return cleaned or default
