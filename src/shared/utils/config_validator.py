"""
Environment variable validation.

Config loaders read numeric and boolean settings through these helpers so a
bad value is reported with the variable name at start-up.
"""

import os
from typing import Callable, Optional, TypeVar, Union

T = TypeVar("T")
Number = Union[int, float]

TRUE_VALUES = ("true", "yes", "on", "1")
FALSE_VALUES = ("false", "no", "off", "0")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def require_env(name: str, description: Optional[str] = None) -> str:
    """
    Return a required environment variable.

    Raises:
        ConfigurationError: If the variable is unset or empty
    """
    value = os.getenv(name)
    if value:
        return value

    desc_msg = f" ({description})" if description else ""
    raise ConfigurationError(
        f"Missing required environment variable: {name}{desc_msg}\n"
        f"Please set {name} in your .env file or environment."
    )


def validate_int_env(name: str, default: Optional[int] = None, min_value: Optional[int] = None,
                     max_value: Optional[int] = None) -> int:
    """
    Read an integer environment variable, e.g. a concurrency limit.

    Args:
        name: Environment variable name
        default: Value used when unset; None makes the variable required
        min_value: Inclusive lower bound
        max_value: Inclusive upper bound

    Raises:
        ConfigurationError: If the value is missing, not an integer or out of bounds
    """
    return _read_number(name, int, "integer", default, min_value, max_value)


def validate_float_env(name: str, default: Optional[float] = None, min_value: Optional[float] = None,
                       max_value: Optional[float] = None) -> float:
    """Read a numeric environment variable; durations are given in seconds."""
    return _read_number(name, float, "numeric", default, min_value, max_value)


def validate_bool_env(name: str, default: bool = False) -> bool:
    """
    Read a boolean environment variable.

    Accepts true/false, yes/no, on/off and 1/0 in any case.
    """
    raw = os.getenv(name)
    if not raw:
        return default

    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ConfigurationError(
        f"Invalid boolean value for {name}: '{raw}'\n"
        f"Expected one of: {', '.join(TRUE_VALUES + FALSE_VALUES)}"
    )


def _read_number(
    name: str,
    parse: Callable[[str], T],
    kind: str,
    default: Optional[T],
    min_value: Optional[Number],
    max_value: Optional[Number],
) -> T:
    raw = os.getenv(name)
    if not raw:
        if default is None:
            raise ConfigurationError(f"Missing required {kind} environment variable: {name}")
        return default

    try:
        value = parse(raw.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid {kind} value for {name}: '{raw}'")

    if min_value is not None and value < min_value:
        raise ConfigurationError(f"Value for {name} ({value}) is below minimum allowed value ({min_value})")
    if max_value is not None and value > max_value:
        raise ConfigurationError(f"Value for {name} ({value}) exceeds maximum allowed value ({max_value})")
    return value
