"""
ComplyBook Reconciliation - Structured Logging

JSON log lines for production (one object per line, ready for Datadog or
CloudWatch), plain text for local development.

Reconciliation code logs through module loggers and passes identifiers with
``extra=``. The formatter lifts the well-known ones (organization, session,
event, actor) into a ``reconciliation`` block so log queries can filter on
them without digging through free-form extras.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else came from `extra=`
STANDARD_RECORD_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
])

RECONCILIATION_FIELDS = ("organization_id", "reconciliation_id", "event", "actor")
REQUEST_FIELDS = ("request_id", "user_id")

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio")

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def __init__(self, service_name: str = "complybook-reconciliation"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        extras = {
            key: value for key, value in record.__dict__.items()
            if key not in STANDARD_RECORD_ATTRS
        }

        request = {key: extras.pop(key) for key in REQUEST_FIELDS if extras.get(key) is not None}
        extras = {key: value for key, value in extras.items() if key not in REQUEST_FIELDS}
        if request:
            payload["request"] = request

        reconciliation = {key: extras.pop(key) for key in RECONCILIATION_FIELDS if key in extras}
        if reconciliation:
            payload["reconciliation"] = reconciliation

        if extras:
            payload["extra"] = extras

        if record.exc_info and record.exc_info[0]:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(payload, default=str)


class RequestContextFilter(logging.Filter):
    """
    Stamp records with the current request id and acting user.

    Values live in context variables, so concurrent requests served by the
    same event loop never see each other's ids.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.user_id = _user_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "complybook-reconciliation"
) -> logging.Logger:
    """
    Configure the root logger with a single stdout handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Emit JSON lines (production) instead of plain text
        service_name: Value of the ``service`` field in JSON output

    Returns:
        The configured root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
        ))
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_context(request_id: Optional[str] = None, user_id: Optional[str] = None):
    """Bind request id and acting user for the current task."""
    _request_id.set(request_id)
    _user_id.set(user_id)


def clear_request_context():
    _request_id.set(None)
    _user_id.set(None)
