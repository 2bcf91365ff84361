"""Structured JSON logging.

- One JSON object per record for log aggregation
- request_id, tenant_id, user_id and auth_plane are read from context vars
- Every extra={...} field is sanitized before rendering
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from lurus_api.context import auth_plane_var, request_id_var, tenant_id_var, user_id_var
from lurus_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

# Attributes every LogRecord carries; anything else came in through extra={...}
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {"message", "asctime"}

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("tenant_id", tenant_id_var),
    ("user_id", user_id_var),
    ("auth_plane", auth_plane_var),
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request context.

    Standard fields: timestamp (ISO 8601 UTC), level, message, module, func,
    line. Context fields are emitted only when set, so reaper threads log
    without request noise.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field_name, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field_name] = value

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
