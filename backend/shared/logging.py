"""structlog setup shared by the scoresync client and the remote record server.

Each process calls setup_logging once with its component name ("client" or
"remote"). The name is stamped on every event and prefixes the log file, so
client and server logs written to one directory stay apart.

Environment variables:
- LOG_FORMAT: "json" for machine-readable lines, "console" or unset for
  human-readable output.
- LOG_LEVEL: "DEBUG", "INFO" (default), "WARNING", "ERROR", or "CRITICAL".
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, MutableMapping
    from typing import Any

    Processor = Callable[[object, str, MutableMapping[str, Any]], MutableMapping[str, Any]]

LOG_FILE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
REDACTED = "[redacted]"

_LOG_FORMATS = {"": False, "console": False, "json": True}
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
# Event keys that may carry the remote store's bearer token
_SECRET_KEYS = frozenset({"api_token", "authorization", "token"})


def _plain(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_plain(v) for v in value]
    return value


def _serialize_enums(
    _logger: object,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Log sync statuses, outcome kinds and lifecycle events by their values, also inside containers."""
    for key, value in event_dict.items():
        event_dict[key] = _plain(value)
    return event_dict


def _redact_secrets(
    _logger: object,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    for key in event_dict:
        if key.lower() in _SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _component_stamper(component: str) -> Processor:
    def stamp(
        _logger: object,
        _method_name: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("component", component)
        return event_dict

    return stamp


def _is_test() -> bool:
    return "pytest" in sys.modules


def _env_choice(name: str, default: str, choices: Iterable[str]) -> str:
    value = os.environ.get(name, default).strip()
    if value.upper() in {c.upper() for c in choices}:
        return value
    msg = f"Invalid {name}={value!r}. Expected one of: {', '.join(c or '<unset>' for c in choices)}."
    raise ValueError(msg)


def _renderer(*, json_mode: bool, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    final = structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer(colors=colors)
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            final,
        ],
    )


def bind_record_context(**values: str | None) -> None:
    """Bind record identifiers to the logging context of the current task.

    Keys with None values are unbound instead, so a sync pass can clear
    ``remote_id`` once it moves on to the next record.
    """
    bound = {k: v for k, v in values.items() if v is not None}
    cleared = [k for k, v in values.items() if v is None]
    if cleared:
        structlog.contextvars.unbind_contextvars(*cleared)
    if bound:
        structlog.contextvars.bind_contextvars(**bound)


def setup_logging(
    component: str,
    log_dir: Path | str | None = None,
    level: int | None = None,
) -> Path | None:
    """Route structlog through stdlib handlers for one scoresync process.

    Output goes to stdout, and also to ``<log_dir>/<component>-<timestamp>.log``
    when log_dir is given (never under pytest). Returns the log file path,
    or None when no file was opened. Raises ValueError for unknown
    LOG_FORMAT or LOG_LEVEL values.
    """
    json_mode = _LOG_FORMATS[_env_choice("LOG_FORMAT", "", _LOG_FORMATS).lower()]
    if level is None:
        level = getattr(logging, _env_choice("LOG_LEVEL", "INFO", _LOG_LEVELS).upper())

    # format_exc_info runs in the handler formatters so file output does not render tracebacks twice.
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _component_stamper(component),
            structlog.processors.TimeStamper(fmt="iso"),
            _serialize_enums,
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # The remote client logs every request through httpx/httpcore.
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(_renderer(json_mode=json_mode, colors=sys.stdout.isatty()))
    root_logger.addHandler(stdout_handler)

    if log_dir is None or _is_test():
        return None

    dir_path = Path(log_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(tz=UTC).strftime(LOG_FILE_TIMESTAMP_FORMAT)
    file_path = dir_path / f"{component}-{timestamp}.log"
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(_renderer(json_mode=json_mode, colors=False))
    root_logger.addHandler(file_handler)
    return file_path
