"""
Lambda Logging Utilities

Ships stub logs to the HTTP sink when one is configured and flushes them
before the execution context freezes.
"""

import functools
import logging

from livebridge.common.core.logging_config import CustomJsonFormatter, JsonLinesHttpHandler


def robust_lambda_logger(sink_url: str, service_name: str = "livebridge-stub"):
    """
    Decorator for Lambda handlers.

    - Adds JsonLinesHttpHandler if `sink_url` is set (once per container)
    - Flushes all handlers in a finally block
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(event, context):
            logger = logging.getLogger()

            if sink_url and not any(isinstance(h, JsonLinesHttpHandler) for h in logger.handlers):
                handler = JsonLinesHttpHandler(
                    url=sink_url,
                    stream_fields={"container_name": service_name, "job": "lambda"},
                )
                handler.setFormatter(CustomJsonFormatter())
                logger.addHandler(handler)
                if logger.getEffectiveLevel() > logging.INFO:
                    logger.setLevel(logging.INFO)

            try:
                return func(event, context)
            finally:
                for h in logger.handlers:
                    h.flush()

        return wrapper

    return decorator
