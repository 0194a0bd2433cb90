"""Structured logging.

Every logger in the engine is a ``ContextLogger``: keyword arguments passed to
a log call (``wallet_id=..., hour=...``) travel on the record as
``extra_data`` and are rendered by the formatter, either as one JSON object
per line or as ``key=value`` pairs after the message.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio", "alembic.runtime.migration")


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "extra_data", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": utcnow().isoformat(timespec="milliseconds") + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        fields = _record_fields(record)
        if fields:
            payload["data"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain text line followed by ``| key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if not fields:
            return line
        return line + " | " + " ".join(f"{key}={value}" for key, value in fields.items())


class ContextLogger:
    """Stdlib logger wrapper; keyword arguments become structured fields.

    ``bind`` returns a child whose fields ride along on every call::

        log = cost_basis_logger.bind(wallet_id=7)
        log.info("Oversell corrected", oversell_amount=5.0)
    """

    def __init__(self, name: str, context: Optional[dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context: dict[str, Any] = dict(context or {})

    def bind(self, **fields: Any) -> "ContextLogger":
        return ContextLogger(self.logger.name, {**self._context, **fields})

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: Any = None,
        **fields: Any,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return

        data = dict(self._context)
        if isinstance(extra, dict):
            data.update(extra)
        data.update(fields)

        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=max(1, int(stacklevel)) + 2,  # past _log and the level method
            extra={"extra_data": data or None},
        )

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.WARNING, msg, *args, **fields)

    def error(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.ERROR, msg, *args, **fields)

    def exception(self, msg: str, *args: Any, **fields: Any) -> None:
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: str = None):
    """Install console (and optional JSON file) handlers on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_format else KeyValueFormatter(PLAIN_FORMAT))
    handlers: list[logging.Handler] = [console]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root_logger.handlers = handlers

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)


# Pre-configured loggers
cost_basis_logger = get_logger("cost_basis")
price_logger = get_logger("price_resolver")
cache_logger = get_logger("cache")
queue_logger = get_logger("recalc_queue")
