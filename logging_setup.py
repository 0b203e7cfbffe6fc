"""Logging configuration shared by the scoring engine and the admin app."""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

# Assessment currently being scored, stamped on every log record
_ASSESSMENT_ID = ContextVar("assessment_id", default=None)

_RESERVED = {
    "msg", "args", "levelname", "levelno", "name", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "assessment_id", "message",
}


@contextmanager
def assessment_context(assessment_id):
    token = _ASSESSMENT_ID.set(assessment_id)
    try:
        yield
    finally:
        _ASSESSMENT_ID.reset(token)


def current_assessment_id():
    return _ASSESSMENT_ID.get()


class AssessmentContextFilter(logging.Filter):
    def filter(self, record):
        record.assessment_id = _ASSESSMENT_ID.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra={}`` fields."""

    def format(self, record):
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).replace(microsecond=0).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "assessment_id": getattr(record, "assessment_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except TypeError:
                payload[key] = str(value)

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level="INFO", json_logs=False):
    """Configure the root logger once with a stdout handler."""
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(AssessmentContextFilter())

    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s assessment=%(assessment_id)s %(message)s"
        ))

    root.addHandler(handler)
