"""
Centralized logging configuration.

Structured logging for the ingestion pipeline. Every record carries the
fields passed as keyword arguments plus whatever is bound in the current
log context (``request_id`` for API calls; ``queue`` / ``job_id`` /
``job_type`` while a worker runs a job), so a single job can be followed
across the manager, processors, collectors and the content store.
"""
import contextvars
import json
import logging
import logging.config
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

LOGGER_NAMESPACE = "creator_ingest"

# Third-party loggers routed through our handlers, with their floor level
QUIET_LOGGERS = {
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "aiohttp.client": "WARNING",
    "redis": "WARNING",
}

SLOW_OPERATION_MS = 30_000

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("creator_ingest_log_context", default={})


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Attach ``fields`` to every record logged inside the block (nested binds merge)."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound context onto the record so any formatter can use it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = current_log_context()
        if not hasattr(record, "extra_data"):
            record.extra_data = {}
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "thread": record.threadName,
        }
        entry.update(getattr(record, "context", None) or {})
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable line with structured fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s", "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {**(getattr(record, "context", None) or {}), **(getattr(record, "extra_data", None) or {})}
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class StructuredLogger:
    """
    Thin wrapper that turns keyword arguments into structured fields.

    ``None`` values are dropped; ``exc_info`` is forwarded to the
    underlying logger instead of becoming a field.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, **fields):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        data = {k: v for k, v in fields.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": data}, stacklevel=3)

    def debug(self, message: str, **fields):
        self._emit(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self._emit(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._emit(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self._emit(logging.ERROR, message, **fields)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the package logger and the quiet third-party loggers.

    Args:
        log_level: Level for the ``creator_ingest`` namespace and the root logger
        log_file: Optional path for a rotating JSON log file
        enable_console: Whether to log human-readable lines to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
            "filters": ["context"],
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "filters": ["context"],
            "level": log_level,
        }
    names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        LOGGER_NAMESPACE: {"level": log_level, "handlers": names, "propagate": False},
    }
    for name, level in QUIET_LOGGERS.items():
        loggers[name] = {"level": level, "handlers": names, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": ContextFilter}},
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {"()": ConsoleFormatter},
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``creator_ingest`` namespace (pass ``__name__``)."""
    if name == LOGGER_NAMESPACE or name.startswith(f"{LOGGER_NAMESPACE}."):
        return StructuredLogger(name)
    return StructuredLogger(f"{LOGGER_NAMESPACE}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    creator_id: Optional[str] = None,
    job_id: Optional[str] = None
) -> None:
    """
    Audit-trail record for pipeline milestones.

    Args:
        event_type: e.g. ``creator_collection_completed``, ``snapshot_processed``, ``queue_cleanup``
        details: Event-specific fields
        creator_id: Creator the event concerns, if any
        job_id: Queue job id; defaults to the job bound in the log context
    """
    job_id = job_id or _log_context.get().get("job_id")
    get_logger("audit").info(
        f"Pipeline event: {event_type}",
        event_type=event_type,
        creator_id=creator_id,
        job_id=job_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Timing record for jobs, provider calls and API operations; slow ones log at WARNING."""
    perf_logger = get_logger("performance")
    data = dict(additional_data or {})
    data["duration_ms"] = round(duration_ms, 2)
    if duration_ms >= SLOW_OPERATION_MS:
        perf_logger.warning(f"Slow operation: {operation}", operation=operation, **data)
    else:
        perf_logger.info(f"Performance: {operation}", operation=operation, **data)
