from __future__ import annotations

import contextvars
import json
import logging
import logging.config
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from prometheus_client import Counter, REGISTRY

from .core.config import Settings

_DEFAULT_CONTEXT = "-"
_REQUEST_ID = contextvars.ContextVar("request_id", default=_DEFAULT_CONTEXT)
_TENANT_ID = contextvars.ContextVar("tenant_id", default=_DEFAULT_CONTEXT)


def _register_error_counter() -> Counter:
    try:
        return Counter(
            "knowledge_log_errors_total",
            "Total log statements at error level or above",
            ["module", "level"],
            registry=REGISTRY,
        )
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get("knowledge_log_errors_total")
        if existing:
            return existing  # type: ignore[return-value]
        raise


LOG_ERROR_COUNTER = _register_error_counter()


def bind_request_context(request_id: Optional[str] = None) -> None:
    if request_id:
        _REQUEST_ID.set(request_id)


def bind_tenant_context(tenant_id: Optional[str]) -> None:
    if tenant_id:
        _TENANT_ID.set(str(tenant_id))


def clear_context() -> None:
    _REQUEST_ID.set(_DEFAULT_CONTEXT)
    _TENANT_ID.set(_DEFAULT_CONTEXT)


def current_context() -> Dict[str, str]:
    return {
        "request_id": _REQUEST_ID.get(),
        "tenant_id": _TENANT_ID.get(),
    }


class ContextFilter(logging.Filter):
    """Inject contextvars into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = _REQUEST_ID.get()
        if not hasattr(record, "tenant_id"):
            record.tenant_id = _TENANT_ID.get()
        return True


class PIIRedactingFilter(logging.Filter):
    """Scrub credentials and email addresses from messages and error fields."""

    _PATTERNS: Iterable[re.Pattern[str]] = (
        re.compile(r"sk-[a-zA-Z0-9_\-]{10,}", re.IGNORECASE),
        re.compile(r"bearer [a-z0-9\._\-]{10,}", re.IGNORECASE),
        re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    )
    _REPLACEMENT = "[REDACTED]"
    _SCRUBBED_FIELDS = ("error", "vector_error", "keyword_error", "query")

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.msg = self._scrub(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)
        for name in self._SCRUBBED_FIELDS:
            if hasattr(record, name):
                setattr(record, name, self._scrub(getattr(record, name)))
        return True

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            redacted = value
            for pattern in self._PATTERNS:
                redacted = pattern.sub(self._REPLACEMENT, redacted)
            return redacted
        if isinstance(value, dict):
            return {k: self._scrub(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._scrub(item) for item in value]
        return value


class PrometheusErrorHandler(logging.Handler):
    """A logging handler that increments a Prometheus counter on errors."""

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            LOG_ERROR_COUNTER.labels(module=record.name, level=record.levelname).inc()
        except Exception:  # pragma: no cover - never raise from logging
            pass


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id", "tenant_id"}


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        return serialize_log_record(record)


def serialize_log_record(record: logging.LogRecord) -> str:
    payload: Dict[str, Any] = {
        "timestamp": record.created,
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "context": {
            "request_id": getattr(record, "request_id", _REQUEST_ID.get()),
            "tenant_id": getattr(record, "tenant_id", _TENANT_ID.get()),
        },
    }
    fields = {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }
    if fields:
        payload["fields"] = fields
    if record.exc_info:
        payload["exception"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(settings: Settings) -> None:
    """Load logging.yaml and configure handlers per environment."""

    config_path = settings.log_config_path or Path(__file__).with_name("logging.yaml")
    if not config_path.exists():
        raise FileNotFoundError(f"Logging configuration not found at {config_path}")

    with config_path.open("r", encoding="utf-8") as fp:
        config: Dict[str, Any] = yaml.safe_load(fp)

    env = settings.environment.lower()

    app_handlers: list[str]
    if env == "development" or not settings.enable_json_logs:
        app_handlers = ["console", "error_metrics"]
        config["root"]["handlers"] = ["console"]
    else:
        app_handlers = ["json", "error_metrics"]
        config["root"]["handlers"] = ["json"]

    file_handler = config.get("handlers", {}).get("file")
    if file_handler:
        if settings.enable_file_logging and env != "development":
            log_dir = settings.log_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler["filename"] = str(log_dir / "knowledge.log")
            app_handlers.append("file")
        else:
            # dictConfig opens every declared handler, so drop the unused one
            config["handlers"].pop("file")

    config.setdefault("loggers", {})
    config["loggers"]["knowledge"] = {
        "handlers": app_handlers,
        "level": settings.log_level.upper(),
        "propagate": False,
    }

    for handler_name in ("console", "json"):
        handler = config.get("handlers", {}).get(handler_name)
        if handler:
            handler["level"] = settings.log_level.upper()

    logging.config.dictConfig(config)


__all__ = [
    "bind_request_context",
    "bind_tenant_context",
    "clear_context",
    "ContextFilter",
    "JsonFormatter",
    "PIIRedactingFilter",
    "PrometheusErrorHandler",
    "serialize_log_record",
    "setup_logging",
    "current_context",
]
