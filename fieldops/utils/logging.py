"""
Structured logging with correlation IDs.

Production output is one JSON object per line:
  {"ts", "level", "logger", "msg", "cid", "worker", ...extra}

HTTP requests get their correlation id from CorrelationIdMiddleware; each
worker cycle opens its own with worker_cycle(). Both live in contextvars, so
concurrent requests and the in-process workers never see each other's ids.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
worker_ctx: ContextVar[Optional[str]] = ContextVar("worker", default=None)

# Fields lifted from logger.x(..., extra={...}) into the JSON line
_EXTRA_KEYS = ("tenant_id", "lead_id", "job_id", "task_key", "provider", "error_code")

_NOISY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpcore",
    "httpx",
    "twilio.http_client",
    "stripe",
)

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(cid)s] %(name)s: %(message)s"


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def worker_cycle(worker_name: str) -> Iterator[str]:
    """
    Tag every log line inside one worker cycle with the worker name and a
    fresh correlation id. Restores the previous values on exit.
    """
    cid = generate_correlation_id()
    cid_token = correlation_id_ctx.set(cid)
    worker_token = worker_ctx.set(worker_name)
    try:
        yield cid
    finally:
        worker_ctx.reset(worker_token)
        correlation_id_ctx.reset(cid_token)


class _ContextFilter(logging.Filter):
    """Stamps the current correlation id and worker onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = get_correlation_id() or "-"
        record.worker = worker_ctx.get()
        return True


class StructuredJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "cid": getattr(record, "cid", None),
        }
        worker = getattr(record, "worker", None)
        if worker:
            entry["worker"] = worker

        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """
    Install a single stream handler on the root logger.
    Call once at startup; json_output=False gives readable lines for local runs.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(_ContextFilter())
    handler.setFormatter(StructuredJsonFormatter() if json_output else logging.Formatter(PLAIN_FORMAT))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
