"""
Utility functions for the Handoff Broker.

This module provides:
- Environment variable validation and loading
- Logging configuration with structured JSON output
- UTC time helpers used as the default clock
- A guarded-call combinator for fallible async operations
"""

import os
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def setup_logging(level: str = "INFO", serialize: bool = True) -> None:
    """
    Configure structured logging with Loguru.

    Args:
        level: Minimum log level for the stdout sink
        serialize: Emit JSON records instead of the plain text format
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=serialize
    )

    logger.info("Logging configuration complete", level=level)


_INT_VARS = ["REQUEST_TIMEOUT_MINUTES", "EXPIRY_SWEEP_INTERVAL_SECONDS"]
_BOOL_VARS = ["REQUIRE_AGGREGATION_CHANNEL", "LOG_SERIALIZE"]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate the broker's environment variables.

    Every variable is optional. Values that cannot be parsed fall back to
    their default with a warning.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If a duration is zero or negative
    """
    # Load environment variables
    load_dotenv()

    optional_vars = {
        "REQUEST_TIMEOUT_MINUTES": 30,
        "EXPIRY_SWEEP_INTERVAL_SECONDS": 60,
        "REQUIRE_AGGREGATION_CHANNEL": False,
        "LOG_LEVEL": "INFO",
        "LOG_SERIALIZE": True,
        "ROUTING_SNAPSHOT_PATH": None
    }

    config = {}

    for var, default in optional_vars.items():
        value = os.getenv(var)
        if value is None or value == "":
            config[var] = default
            continue

        if var in _INT_VARS:
            try:
                config[var] = int(value)
            except ValueError:
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        elif var in _BOOL_VARS:
            try:
                config[var] = _parse_bool(value)
            except ValueError:
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        elif var == "LOG_LEVEL":
            config[var] = value.upper()
        else:
            config[var] = value

    for var in _INT_VARS:
        if config[var] <= 0:
            raise ConfigurationError(f"{var} must be a positive integer, got {config[var]}")

    logger.info("Environment configuration loaded and validated")
    return config


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


# Default clock for the stores and the routing engine
utc_now = get_utc_datetime


def get_current_timestamp() -> str:
    """Current timestamp in ISO format with UTC timezone."""
    return get_utc_datetime().isoformat()


async def guarded(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    return_default: bool = True,
    default: Any = None,
    handler: Optional[Callable[[Exception], None]] = None,
    name: Optional[str] = None,
    **kwargs: Any
) -> Any:
    """
    Await a fallible coroutine function and deal with any exception it raises.

    Args:
        func: The async callable to run
        *args: Positional arguments for ``func``
        return_default: When True the exception is absorbed and ``default``
            is returned; when False it is re-raised after handling
        default: Value returned when the call fails and ``return_default`` is set
        handler: Called with the exception instead of the default logging
        name: Label used in the log line, defaults to the callable's name
        **kwargs: Keyword arguments for ``func``

    Returns:
        The awaited result of ``func``, or ``default`` on failure
    """
    try:
        return await func(*args, **kwargs)
    except Exception as e:
        if handler is not None:
            handler(e)
        else:
            label = name or getattr(func, "__name__", "operation")
            logger.error(f"{label}() : {e}")

        if not return_default:
            raise

    return default


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None


def initialize_app() -> Dict[str, Any]:
    """
    Initialize logging and configuration.
    Call this at app startup.
    """
    config = get_config()
    setup_logging(config["LOG_LEVEL"], config["LOG_SERIALIZE"])

    logger.info(
        "Application initialization complete",
        request_timeout_minutes=config["REQUEST_TIMEOUT_MINUTES"],
        sweep_interval_seconds=config["EXPIRY_SWEEP_INTERVAL_SECONDS"],
        require_aggregation_channel=config["REQUIRE_AGGREGATION_CHANNEL"]
    )
    return config
