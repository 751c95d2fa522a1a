"""Deployment-aware logging for vizbox.

Each record can carry the deployment it belongs to: ``tracking_id``,
``sandbox_id`` and the tracker ``stage``.  Values come from an explicit
``extra=`` on the call or from the enclosing ``LogContext``, which the
orchestrator and poller open around every deployment.  One deployment can
then be followed through the tracker, prober, orchestrator and poller, in
either output format.

Modules log through ``logging.getLogger(__name__)``; nothing is configured
at import.  Entry points call ``configure_logging`` with the level and format
from ``SandboxConfig``::

    config = SandboxConfig.from_env()
    configure_logging(config.log_level, config.log_format)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, Any

ROOT_LOGGER = "vizbox"
DEPLOYMENT_FIELDS = ("tracking_id", "sandbox_id", "stage")

_HANDLER_NAME = "vizbox-console"

_deployment: ContextVar[dict[str, str] | None] = ContextVar("vizbox_deployment", default=None)

_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG: "\033[90m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[41;97m",
}
_RESET = "\033[0m"


def current_context() -> dict[str, str]:
    """Deployment fields bound by the enclosing ``LogContext`` scopes."""
    return dict(_deployment.get() or {})


def deployment_fields(record: logging.LogRecord) -> dict[str, str]:
    """Deployment fields of *record*; ``extra=`` values win over the bound context."""
    bound = _deployment.get() or {}
    fields: dict[str, str] = {}
    for name in DEPLOYMENT_FIELDS:
        value = getattr(record, name, None) or bound.get(name)
        if value:
            fields[name] = str(value)
    return fields


class TextFormatter(logging.Formatter):
    """``14:02:11 INFO    orchestrator [viz-1 sb=3f2a9c0d1e2b] Created sandbox ...``.

    The bracketed tag appears only for records tied to a deployment.
    """

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        clock = self.formatTime(record, "%H:%M:%S")
        level = f"{record.levelname:<7}"
        if self._color:
            level = f"{_LEVEL_COLORS.get(record.levelno, '')}{level}{_RESET}"
        source = record.name.removeprefix(f"{ROOT_LOGGER}.")

        fields = deployment_fields(record)
        tag = ""
        if "tracking_id" in fields or "sandbox_id" in fields:
            parts = [fields.get("tracking_id", "-")]
            if "sandbox_id" in fields:
                parts.append(f"sb={fields['sandbox_id']}")
            tag = f" [{' '.join(parts)}]"

        line = f"{clock} {level} {source}{tag} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record with deployment fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **deployment_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    level: str | int = "WARNING",
    fmt: str = "text",
    *,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install the vizbox console handler, replacing one installed earlier.

    Args:
        level: Level name or number for the ``vizbox`` logger.
        fmt: ``"text"`` or ``"json"``.
        stream: Output stream; defaults to stderr.  Text output is colored
            when the stream is a terminal.

    Returns:
        The installed handler.
    """
    root = logging.getLogger(ROOT_LOGGER)
    _remove_console_handler(root)

    out = stream if stream is not None else sys.stderr
    handler = logging.StreamHandler(out)
    handler.set_name(_HANDLER_NAME)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        isatty = getattr(out, "isatty", None)
        handler.setFormatter(TextFormatter(color=bool(isatty and isatty())))
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    return handler


def reset_logging() -> None:
    """Remove the vizbox console handler and restore the WARNING level."""
    root = logging.getLogger(ROOT_LOGGER)
    _remove_console_handler(root)
    root.setLevel(logging.WARNING)


def _remove_console_handler(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()


class LogContext:
    """Tie every record emitted inside the ``with`` block to one deployment.

    ``None`` arguments leave an outer binding in place, so a poller scope
    can add the sandbox id to the tracking id bound further out.
    """

    def __init__(
        self,
        *,
        tracking_id: str | None = None,
        sandbox_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        given = {"tracking_id": tracking_id, "sandbox_id": sandbox_id, "stage": stage}
        self._fields = {k: v for k, v in given.items() if v is not None}
        self._token: Any = None

    def __enter__(self) -> LogContext:
        self._token = _deployment.set({**current_context(), **self._fields})
        return self

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _deployment.reset(self._token)
            self._token = None
