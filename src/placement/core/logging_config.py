from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict

import orjson

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_RESERVED_ATTRS = {
    "msg",
    "args",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcname",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "created",
    "msecs",
    "relativecreated",
    "thread",
    "threadname",
    "processname",
    "process",
    "name",
    "taskname",
}


def configure_logging(service_name: str, level: str | int = logging.INFO, *, json_logs: bool = True) -> None:
    """Install a single stdout handler on the root logger."""

    handler = logging.StreamHandler(stream=sys.stdout)
    if json_logs:
        handler.setFormatter(JSONLogFormatter(service_name=service_name))
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    root.setLevel(level)
    root.addHandler(handler)


class JSONLogFormatter(logging.Formatter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get() or None,
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key.lower() in _RESERVED_ATTRS:
                continue
            if isinstance(value, (str, int, float, bool)) or value is None:
                payload[key] = value
            else:
                payload[key] = str(value)
        return orjson.dumps(payload).decode("utf-8")


__all__ = ["configure_logging", "correlation_id_var", "JSONLogFormatter"]
