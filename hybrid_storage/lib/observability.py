"""Tracing for storage operations via Pydantic Logfire.

Manager operations run inside ``storage.<operation>`` spans. Span and event
attributes are flattened to plain values (enums to their value, references
to their string form) so they render cleanly. Nothing is emitted unless
logfire is installed and enabled in configuration.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hybrid_storage.config import LogfireConfig

logger = logging.getLogger(__name__)

_logfire = None


def is_available() -> bool:
    return _logfire is not None


def configure(config: LogfireConfig) -> bool:
    """Set up logfire for this process. Returns True if tracing is active."""
    global _logfire

    if not config.enabled:
        return False

    try:
        import logfire
    except ImportError:
        logger.warning("Logfire is enabled but not installed; install the 'logfire' extra")
        return False

    options: dict[str, Any] = {
        "service_name": config.service_name,
        "send_to_logfire": "if-token-present",
    }
    if config.environment:
        options["environment"] = config.environment
    if config.console:
        options["console"] = logfire.ConsoleOptions()

    logfire.configure(**options)
    _logfire = logfire
    return True


def forward_logging(logger_name: str = "hybrid_storage") -> None:
    """Send this package's log records to logfire as well."""
    if is_available():
        logging.getLogger(logger_name).addHandler(_logfire.LogfireLoggingHandler())


def _flatten(attrs: dict[str, Any]) -> dict[str, Any]:
    flat = {}
    for key, value in attrs.items():
        if isinstance(value, Enum):
            value = value.value
        elif value is not None and not isinstance(value, (str, int, float, bool)):
            value = str(value)
        flat[key] = value
    return flat


@contextmanager
def span(name: str, **attrs: Any):
    """Yield a logfire span, or None when tracing is off."""
    if _logfire is None:
        yield None
        return
    with _logfire.span(name, **_flatten(attrs)) as current:
        yield current


def warning(message: str, **attrs: Any) -> None:
    if _logfire is not None:
        _logfire.warn(message, **_flatten(attrs))
