"""
Logging Configuration
Custom JSON Logger implementation for bridge services.

Provides:
- CustomJsonFormatter: JSON-lines formatter carrying invocation context
- JsonLinesHttpHandler: Direct HTTP logging with stderr fallback
- configure_queue_logging: Async logging for long-lived processes
"""

import atexit
import json
import logging
import logging.config
import logging.handlers
import os
import queue
import string
import sys
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timezone

import yaml

from .request_context import get_function_id, get_invocation_id

_STANDARD_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}


class CustomJsonFormatter(logging.Formatter):
    """
    JSON-lines formatter.

    Fields:
      - _time: ISO8601 timestamp (millisecond precision)
      - level: Log level
      - logger: Logger name (e.g. dispatcher.local_dispatcher, relay.hub)
      - message: Log message
      - invocation_id: Forwarded request id, when bound to the context
      - function_id: Target function id, when bound to the context
    """

    def format(self, record: logging.LogRecord) -> str:
        invocation_id = getattr(record, "invocation_id", None) or get_invocation_id()
        function_id = getattr(record, "function_id", None) or get_function_id()

        log_data = {
            "_time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if invocation_id:
            log_data["invocation_id"] = invocation_id
        if function_id:
            log_data["function_id"] = function_id

        # Include extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_") and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(config_path: str = "logging.yml"):
    """
    Load the YAML config, substitute environment variables, and initialize logging.
    """
    if not os.path.exists(config_path):
        logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
        return

    with open(config_path, "r", encoding="utf-8") as f:
        # Supports ${LOG_LEVEL} and ${LOG_FORMAT} (json | console).
        template = string.Template(f.read())

        mapping = os.environ.copy()
        if "LOG_LEVEL" not in mapping:
            mapping["LOG_LEVEL"] = "INFO"
        mapping.setdefault("LOG_FORMAT", "json")

        content = template.safe_substitute(mapping)
        config = yaml.safe_load(content)
        logging.config.dictConfig(config)


class JsonLinesHttpHandler(logging.Handler):
    """
    Handler that posts JSON log lines to an HTTP sink.
    On failure, fall back to stderr.
    """

    def __init__(self, url: str, stream_fields: dict = None, timeout: float = 0.5):
        super().__init__()
        self.url = url
        self.stream_fields = stream_fields or {}
        self.timeout = timeout

    def emit(self, record: logging.LogRecord):
        try:
            if self.formatter:
                msg = self.formatter.format(record)
            else:
                msg = record.getMessage()

            try:
                log_entry = json.loads(msg)
            except json.JSONDecodeError:
                log_entry = {"message": msg, "level": record.levelname}

            for k, v in self.stream_fields.items():
                log_entry.setdefault(k, v)

            params = [
                ("_stream_fields", ",".join(self.stream_fields.keys())),
                ("_msg_field", "message"),
                ("_time_field", "_time"),
            ]
            query_string = urllib.parse.urlencode(params)
            full_url = f"{self.url}?{query_string}"

            data = json.dumps(log_entry, ensure_ascii=False).encode("utf-8")
            req = urllib.request.Request(
                full_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )

            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as res:
                    res.read()
            except (OSError, urllib.error.URLError) as e:
                # Use sys.__stderr__ so a redirected stderr cannot loop back into logging.
                fallback_msg = json.dumps(
                    {
                        "fallback": "log_sink_failed",
                        "error": str(e),
                        "original_log": log_entry,
                    },
                    ensure_ascii=False,
                )
                stream = getattr(sys, "__stderr__", None) or sys.stderr
                stream.write(fallback_msg + "\n")

        except Exception:
            self.handleError(record)

    def flush(self):
        pass


def configure_queue_logging(service_name: str, sink_url: str = None):
    """
    Configure async QueueLogging towards an HTTP sink.
    Used for long-running processes like the relay and the dispatcher.
    """
    if not sink_url:
        return None

    real_handler = JsonLinesHttpHandler(
        url=sink_url, stream_fields={"service": service_name, "job": "livebridge"}
    )
    real_handler.setFormatter(CustomJsonFormatter())

    log_queue = queue.Queue(-1)
    queue_handler = logging.handlers.QueueHandler(log_queue)

    listener = logging.handlers.QueueListener(log_queue, real_handler)
    listener.start()
    atexit.register(listener.stop)

    root = logging.getLogger()
    root.addHandler(queue_handler)
    return listener
