"""
Python worker bootstrap.

Run as a script by the dispatcher (never imported by it):

    python python_bootstrap.py --artifact DIR --entry pkg.module --export handler

Reads invocation messages from stdin until EOF and answers each on a private
copy of the original stdout. The handler's own prints are redirected to stderr.
This file must stay free of third-party imports.
"""

import argparse
import asyncio
import importlib
import inspect
import json
import os
import sys
import time
import traceback


class LambdaContext:
    """Subset of the platform context object handlers commonly use."""

    def __init__(self, function_id, request_id, deadline_ms, memory_limit_in_mb=128):
        self.function_name = function_id
        self.function_version = "$LATEST"
        self.invoked_function_arn = f"arn:aws:lambda:local:000000000000:function:{function_id}"
        self.memory_limit_in_mb = memory_limit_in_mb
        self.aws_request_id = request_id
        self.log_group_name = f"/aws/lambda/{function_id}"
        self.log_stream_name = "livebridge"
        self._deadline_ms = deadline_ms

    def get_remaining_time_in_millis(self):
        return max(0, int(self._deadline_ms - time.time() * 1000))


def _error(error_type, message, tb=None):
    stack = traceback.format_tb(tb) if tb is not None else []
    return {"ok": False, "errorType": error_type, "errorMessage": message, "stackTrace": stack}


def load_handler(artifact, entry, export):
    """Import the handler; returns (handler, None) or (None, error document)."""
    sys.path.insert(0, artifact)
    os.chdir(artifact)
    try:
        module = importlib.import_module(entry)
    except SyntaxError as e:
        return None, _error("Runtime.UserCodeSyntaxError", f"{e.msg} ({e.filename}, line {e.lineno})")
    except Exception as e:
        return None, _error(
            "Runtime.ImportModuleError",
            f"Unable to import module '{entry}': {e}",
            e.__traceback__,
        )
    handler = getattr(module, export, None)
    if handler is None or not callable(handler):
        return None, _error(
            "Runtime.HandlerNotFound", f"Handler '{export}' missing on module '{entry}'"
        )
    return handler, None


def invoke(handler, message):
    request_id = message.get("requestId", "")
    os.environ["LIVEBRIDGE_INVOCATION_ID"] = request_id
    context = LambdaContext(
        message.get("functionId", ""), request_id, float(message.get("deadlineMs") or 0)
    )
    try:
        result = handler(message.get("event"), context)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
    except Exception as e:
        return _error(type(e).__name__, str(e), e.__traceback__)

    try:
        json.dumps(result)
    except (TypeError, ValueError) as e:
        return _error("Runtime.MarshalError", f"Unable to marshal response: {e}")
    return {"ok": True, "payload": result}


async def _await(awaitable):
    return await awaitable


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--artifact", required=True)
    parser.add_argument("--entry", required=True)
    parser.add_argument("--export", required=True)
    args = parser.parse_args(argv)

    # Keep the real stdout for results; everything else written to fd 1 lands on stderr.
    results = os.fdopen(os.dup(1), "w", encoding="utf-8", buffering=1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    handler, load_error = load_handler(args.artifact, args.entry, args.export)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = None
        try:
            message = json.loads(line)
        except ValueError as e:
            response = _error("Runtime.InvalidMessage", str(e))
        else:
            if not isinstance(message, dict):
                response = _error("Runtime.InvalidMessage", "Expected a JSON object")
            elif handler is None:
                response = dict(load_error)
            else:
                response = invoke(handler, message)
        response["requestId"] = message.get("requestId") if isinstance(message, dict) else None
        sys.stderr.flush()
        results.write(json.dumps(response) + "\n")
        results.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
