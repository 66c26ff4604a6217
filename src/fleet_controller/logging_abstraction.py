"""Structured logging for Fleet Controller.

Each module calls ``get_logger(__name__)`` and logs with an ``extra`` mapping:

    logger.info("%s Device registered", lp, extra={"device_id": device_id})

The mapping is rendered as ``| key=value`` pairs on console lines and as a
``context`` object in JSON lines. Both formats carry the correlation ID bound by
:func:`fleet_controller.correlation.correlation_context`.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import override

from fleet_controller.correlation import get_correlation_id

__all__ = [
    "FleetLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
    "set_package_log_level",
]

LOG_FORMATS = ("json", "human", "both")
NO_CORRELATION = "[------------]"
CORRELATION_WIDTH = 12

# JSON key -> LogRecord attribute
_RECORD_FIELDS = {
    "level": "levelname",
    "logger": "name",
    "module": "module",
    "function": "funcName",
    "line": "lineno",
}


def _record_context(record: logging.LogRecord) -> dict[str, object]:
    context = getattr(record, "extra_data", None)
    if isinstance(context, Mapping):
        return {str(key): value for key, value in context.items()}
    return {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
        }
        for key, attribute in _RECORD_FIELDS.items():
            entry[key] = getattr(record, attribute)
        entry["message"] = record.getMessage()
        entry["correlation_id"] = get_correlation_id()

        context = _record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Console lines: ``10/19/26 13:05:01.123 INFO [registry:168] [req_17290000] > msg | k=v``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_tag)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        record.correlation_tag = f"[{correlation_id[:CORRELATION_WIDTH]}]" if correlation_id else NO_CORRELATION
        line = super().format(record)
        context = _record_context(record)
        if not context:
            return line
        pairs = " | ".join(f"{key}={value}" for key, value in context.items())
        return f"{line} | {pairs}"


def _file_handler(path: str | Path) -> logging.Handler | None:
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(target, mode="a")
    except OSError as e:
        sys.stderr.write(f"fleet_controller: cannot open log file {target}: {e}\n")
        return None


def _console_handler(destination: str | None) -> logging.Handler:
    """``stdout`` (default), ``stderr`` or a file path; an unusable path falls back to stdout."""
    if destination in (None, "", "stdout"):
        return logging.StreamHandler(sys.stdout)
    if destination == "stderr":
        return logging.StreamHandler(sys.stderr)
    return _file_handler(destination) or logging.StreamHandler(sys.stdout)


class FleetLogger:
    """Thin wrapper over :class:`logging.Logger` that takes an ``extra`` mapping.

    Handlers are attached only the first time a name is seen, so calling
    ``get_logger`` repeatedly for one module never doubles its output.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
    ) -> None:
        """Initialize FleetLogger.

        Args:
            name: Logger name, normally the module's ``__name__``
            log_format: "json", "human" or "both"; anything else means "human"
            json_file: Destination of JSON lines; JSON output is off without one
            human_output: "stdout", "stderr" or a file path for console lines

        """
        from fleet_controller.const import FLEET_DEBUG

        self.name: str = name
        self.log_format: str = log_format if log_format in LOG_FORMATS else "human"
        self.logger: logging.Logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if FLEET_DEBUG else logging.INFO)
        if not self.logger.handlers:
            for handler in self._build_handlers(json_file, human_output):
                handler.setLevel(self.logger.level)
                self.logger.addHandler(handler)

    def _build_handlers(self, json_file: str | Path | None, human_output: str | None) -> list[logging.Handler]:
        handlers: list[logging.Handler] = []
        if self.log_format in ("json", "both") and json_file:
            json_handler = _file_handler(json_file)
            if json_handler is not None:
                json_handler.setFormatter(JSONFormatter())
                handlers.append(json_handler)
        if self.log_format in ("human", "both"):
            console = _console_handler(human_output)
            console.setFormatter(HumanReadableFormatter())
            handlers.append(console)
        return handlers

    def _log(
        self,
        level: int,
        msg: str,
        args: tuple[object, ...],
        extra: Mapping[str, object] | None,
        exc_info: bool = False,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        # stacklevel 3 points module/lineno at the caller of debug()/info()/...
        self.logger.log(
            level,
            msg,
            *args,
            extra={"extra_data": dict(extra)} if extra else None,
            exc_info=exc_info,
            stacklevel=3,
        )

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, args, extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, args, extra)

    def warning(
        self,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        self._log(logging.WARNING, msg, args, extra, exc_info)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, args, extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """ERROR with the traceback of the exception being handled."""
        self._log(logging.ERROR, msg, args, extra, exc_info=True)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> FleetLogger:
    """FleetLogger for ``name``; unset arguments come from the FLEET_LOG_* settings."""
    from fleet_controller import const

    return FleetLogger(
        name=name,
        log_format=log_format or const.FLEET_LOG_FORMAT,
        json_file=json_file or const.FLEET_LOG_JSON_FILE,
        human_output=human_output or const.FLEET_LOG_HUMAN_OUTPUT,
    )


def set_package_log_level(level: int) -> None:
    """Apply ``level`` to every fleet_controller logger created so far, handlers included."""
    from fleet_controller.const import FLEET_LOG_NAME

    package_prefix = f"{FLEET_LOG_NAME}."
    for name, candidate in list(logging.root.manager.loggerDict.items()):
        if isinstance(candidate, logging.Logger) and (name == FLEET_LOG_NAME or name.startswith(package_prefix)):
            candidate.setLevel(level)
            for handler in candidate.handlers:
                handler.setLevel(level)
