"""Structured logging for tenantctl.

Library modules log through ``logging.getLogger(__name__)`` with %-style
arguments. ``configure_logging`` installs a structlog ``ProcessorFormatter``
on the root logger, so every record, ours or a library's, goes through the
same processor chain and picks up whatever was bound with structlog's
contextvars: the pass ID and tenant key of the reconcile pass currently
running on this task.

Example usage:
    from tenantctl.core.logging import configure_logging, reconcile_context

    configure_logging(level="DEBUG")

    with reconcile_context("candidate"):
        logger.info("Reconciling tenant")
"""

import logging
import os
import re
import socket
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars
from structlog.types import EventDict, Processor, WrappedLogger

from tenantctl import __version__

PASS_ID_KEY = "pass_id"

# Client libraries that are chatty at INFO
QUIET_LOGGERS = ("kubernetes", "urllib3")

SENSITIVE_KEY_PATTERNS = frozenset(
    {
        "password",
        "secret",
        "token",
        "bearer",
        "authorization",
        "credential",
        "private_key",
        "client_key",
        "client_certificate",
    }
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_MAX_EVENT_LENGTH = 4096

# Logger name prefix -> minimum level
_module_log_levels: dict[str, int] = {}


def new_pass_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def bind_context(**values: Any) -> Iterator[None]:
    """Bind key/value pairs to every log line emitted inside the block."""
    with bound_contextvars(**values):
        yield


@contextmanager
def reconcile_context(key: str, pass_id: str | None = None) -> Iterator[str]:
    """Tag the log lines of one reconcile pass with its tenant and pass ID.

    Yields:
        The pass ID.
    """
    pass_id = pass_id or new_pass_id()
    with bound_contextvars(tenant=key, **{PASS_ID_KEY: pass_id}):
        yield pass_id


def get_pass_id() -> str | None:
    return get_contextvars().get(PASS_ID_KEY)


def get_bound_context() -> dict[str, Any]:
    return get_contextvars()


# ----- Processors -----


@lru_cache(maxsize=1)
def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def add_process_fields(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Identify the controller replica that wrote the line."""
    event_dict.setdefault("version", __version__)
    event_dict.setdefault("host", _hostname())
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    return any(pattern in key for pattern in SENSITIVE_KEY_PATTERNS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if _is_sensitive(str(k)) else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def redact_sensitive_data(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask credential-looking keys, e.g. from a logged kubeconfig."""
    return _redact(event_dict)


def sanitize_log_message(message: str) -> str:
    """Strip control characters, escape newlines and clamp long messages."""
    cleaned = _CONTROL_CHARS.sub("", message).replace("\n", "\\n")
    if len(cleaned) > _MAX_EVENT_LENGTH:
        cleaned = cleaned[:_MAX_EVENT_LENGTH] + "...[truncated]"
    return cleaned


def sanitize_event(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    # Tenant specs are user input and end up in error messages
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = sanitize_log_message(event)
    return event_dict


def _method_level(method_name: str) -> int:
    if method_name == "exception":
        return logging.ERROR
    return logging.getLevelNamesMapping().get(method_name.upper(), logging.INFO)


def filter_by_module_level(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Drop events below the override of the most specific matching prefix."""
    name = event_dict.get("logger")
    if not _module_log_levels or not name:
        return event_dict

    matches = [
        prefix
        for prefix in _module_log_levels
        if name == prefix or name.startswith(prefix + ".")
    ]
    if matches:
        threshold = _module_log_levels[max(matches, key=len)]
        if _method_level(method_name) < threshold:
            raise structlog.DropEvent
    return event_dict


# ----- Configuration -----


def _to_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(level.upper(), logging.INFO)


def set_module_log_level(module: str, level: int | str) -> None:
    """Override the level for a logger prefix such as ``tenantctl.store``."""
    _module_log_levels[module] = _to_level(level)


def get_module_log_level(module: str) -> int | None:
    return _module_log_levels.get(module)


def clear_module_log_levels() -> None:
    _module_log_levels.clear()


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        filter_by_module_level,
        add_process_fields,
        redact_sensitive_data,
        sanitize_event,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    level: str | int = logging.INFO,
    json_output: bool | None = None,
    log_file: str | None = None,
    module_levels: dict[str, str | int] | None = None,
) -> None:
    """Route all logging through structlog.

    Args:
        level: Root log level.
        json_output: JSON lines instead of the console renderer. Defaults to
            JSON when stderr is not a TTY.
        log_file: Also write to this file.
        module_levels: Per-logger-prefix level overrides.
    """
    if json_output is None:
        json_output = not sys.stderr.isatty()
    level = _to_level(level)

    for module, module_level in (module_levels or {}).items():
        set_module_log_level(module, module_level)

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer, foreign_pre_chain=shared
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger for call sites that log key/value events."""
    return structlog.get_logger(name)


def reset_logging() -> None:
    """Undo ``configure_logging``; used between tests."""
    clear_module_log_levels()
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
