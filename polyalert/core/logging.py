"""JSON line logging shared by the alerting runner and the API process."""

import json
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, TextIO

_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

# Third-party loggers that are chatty at INFO; uvicorn's own loggers are re-routed instead.
_QUIET_LOGGERS = ("websockets", "urllib3", "asyncio")
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _json_default(value: Any) -> str:
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


class JsonFormatter(logging.Formatter):
    """One compact JSON object per record; ``extra=`` fields go under ``context``."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self._service:
            payload["service"] = self._service

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=_json_default)


def configure_logging(level: str = "INFO", service: str | None = None, stream: TextIO | None = None) -> None:
    """Install the JSON handler on the root logger; later calls are no-ops."""

    root = logging.getLogger()
    if getattr(root, "_polyalert_configured", False):
        return

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter(service=service))
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    root._polyalert_configured = True  # type: ignore[attr-defined]
