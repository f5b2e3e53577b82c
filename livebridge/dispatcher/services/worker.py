"""
Where: livebridge/dispatcher/services/worker.py
What: Isolated worker processes that execute a handler from a build artifact.
Why: Handlers run outside the dispatcher so a crash, hang or leaked global
     state never affects other invocations.
"""

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from livebridge.common.models.internal import InvocationRequest

from ..config import DispatcherConfig
from ..core.exceptions import HandlerError, WorkerCrashError, WorkerTimeoutError
from ..models.artifact import BuildArtifact
from ..models.function import FunctionDefinition
from ..runtimes import NODE_BOOTSTRAP, PYTHON_BOOTSTRAP

logger = logging.getLogger("dispatcher.worker")

STDERR_TAIL_LINES = 20
# Result lines can carry large payloads.
STREAM_LIMIT = 64 * 1024 * 1024


def decode_event(payload: bytes) -> Any:
    """Payloads are opaque; hand JSON through as a value and anything else as text."""
    text = payload.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


def handler_result(response: Dict[str, Any]) -> bytes:
    """
    Turn a worker result document into the success payload.

    Raises:
        HandlerError: The handler raised or returned an error
    """
    if response.get("ok"):
        return json.dumps(response.get("payload")).encode("utf-8")
    raise HandlerError(
        str(response.get("errorType") or "Error"),
        str(response.get("errorMessage") or ""),
        list(response.get("stackTrace") or []),
    )


class WorkerProcess:
    """A running worker speaking the JSON-lines protocol."""

    def __init__(
        self,
        function_id: str,
        fingerprint: str,
        proc: asyncio.subprocess.Process,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.function_id = function_id
        self.fingerprint = fingerprint
        self.proc = proc
        self.last_used_at = time.time()
        self.current_invocation_id: Optional[str] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._pump_stderr())

    @property
    def alive(self) -> bool:
        return self.proc.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def _pump_stderr(self) -> None:
        assert self.proc.stderr is not None
        while True:
            line = await self.proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.info(
                f"[{self.function_id}] {text}",
                extra={
                    "function_id": self.function_id,
                    "invocation_id": self.current_invocation_id,
                },
            )

    async def invoke(self, request: InvocationRequest, timeout: float) -> Dict[str, Any]:
        """
        Send one invocation and wait for its result line.

        Raises:
            WorkerTimeoutError: No result before `timeout`; the worker is killed
            WorkerCrashError: The worker exited or wrote garbage
        """
        assert self.proc.stdin is not None and self.proc.stdout is not None
        self.current_invocation_id = request.request_id
        message = {
            "requestId": request.request_id,
            "functionId": request.function_id,
            "event": decode_event(request.payload),
            "deadlineMs": int(request.deadline * 1000),
        }
        try:
            self.proc.stdin.write(json.dumps(message).encode("utf-8") + b"\n")
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            await self._reap()
            raise WorkerCrashError(self.function_id, self.proc.returncode, self.stderr_tail)

        try:
            line = await asyncio.wait_for(self.proc.stdout.readline(), timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            await self.kill()
            raise WorkerTimeoutError(self.function_id, timeout)

        if not line:
            await self._reap()
            raise WorkerCrashError(self.function_id, self.proc.returncode, self.stderr_tail)
        try:
            response = json.loads(line)
        except ValueError:
            await self.kill()
            raise WorkerCrashError(self.function_id, None, f"malformed result line: {line[:200]!r}")

        self.last_used_at = time.time()
        return response

    async def close(self, grace: float = 2.0) -> None:
        """Close stdin and let the worker exit; kill it if it lingers."""
        if self.alive and self.proc.stdin is not None and not self.proc.stdin.is_closing():
            self.proc.stdin.close()
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            await self.kill()
        await self._finish_stderr()

    async def kill(self) -> None:
        if self.alive:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass
        await self._reap()

    async def _reap(self) -> None:
        await self.proc.wait()
        await self._finish_stderr()

    async def _finish_stderr(self) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()


class WorkerExecutor:
    """
    Starts workers for an artifact and runs invocations in them.

    `run()` is the per-invocation mode: a fresh process for every call.
    """

    def __init__(self, config: DispatcherConfig):
        self.python_command = config.PYTHON_COMMAND or sys.executable
        self.node_command = config.NODE_COMMAND

    def command_for(self, artifact: BuildArtifact) -> List[str]:
        if artifact.runtime.startswith("python"):
            return [
                self.python_command,
                "-u",
                str(PYTHON_BOOTSTRAP),
                "--artifact",
                artifact.location,
                "--entry",
                artifact.entry,
                "--export",
                artifact.export,
            ]
        if artifact.runtime.startswith("nodejs"):
            return [
                self.node_command,
                str(NODE_BOOTSTRAP),
                "--artifact",
                artifact.location,
                "--entry",
                artifact.entry,
                "--export",
                artifact.export,
            ]
        return [os.path.join(artifact.location, artifact.entry)]

    @staticmethod
    def build_env(
        definition: FunctionDefinition, invocation_id: Optional[str] = None
    ) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(definition.environment)
        env["LIVEBRIDGE_FUNCTION_ID"] = definition.id
        env["LIVEBRIDGE_LIVE"] = "1"
        env["AWS_LAMBDA_FUNCTION_NAME"] = definition.id
        env["AWS_LAMBDA_FUNCTION_TIMEOUT"] = str(definition.timeout)
        if invocation_id:
            env["LIVEBRIDGE_INVOCATION_ID"] = invocation_id
        return env

    async def spawn(
        self,
        definition: FunctionDefinition,
        artifact: BuildArtifact,
        invocation_id: Optional[str] = None,
    ) -> WorkerProcess:
        """Start a protocol worker (node/python) for the artifact."""
        command = self.command_for(artifact)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(definition, invocation_id),
                cwd=artifact.location,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise WorkerCrashError(definition.id, None, f"failed to start {command[0]}: {e}")
        worker = WorkerProcess(definition.id, artifact.fingerprint, proc)
        logger.debug(f"Started worker {worker.id} (pid={proc.pid}) for {definition.id}")
        return worker

    async def run(
        self,
        definition: FunctionDefinition,
        artifact: BuildArtifact,
        request: InvocationRequest,
    ) -> bytes:
        """
        Execute one invocation in a fresh worker.

        Raises:
            HandlerError, WorkerTimeoutError, WorkerCrashError
        """
        timeout = request.remaining()
        if timeout <= 0:
            raise WorkerTimeoutError(definition.id, 0.0)
        if artifact.kind == "asset":
            return await self._run_executable(definition, artifact, request, timeout)

        worker = await self.spawn(definition, artifact, request.request_id)
        try:
            response = await worker.invoke(request, timeout)
        except BaseException:
            await worker.kill()
            raise
        await worker.close()
        return handler_result(response)

    async def _run_executable(
        self,
        definition: FunctionDefinition,
        artifact: BuildArtifact,
        request: InvocationRequest,
        timeout: float,
    ) -> bytes:
        """Custom runtimes: event on stdin, response on stdout, logs on stderr."""
        command = self.command_for(artifact)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(definition, request.request_id),
                cwd=artifact.location,
            )
        except OSError as e:
            raise WorkerCrashError(definition.id, None, f"failed to start {command[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(request.payload), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise WorkerTimeoutError(definition.id, timeout)
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        stderr_text = stderr.decode("utf-8", errors="replace").rstrip()
        for line in stderr_text.splitlines():
            logger.info(f"[{definition.id}] {line}", extra={"function_id": definition.id})
        if proc.returncode != 0:
            tail = "\n".join(stderr_text.splitlines()[-STDERR_TAIL_LINES:])
            raise HandlerError(
                "Runtime.ExitError",
                f"{artifact.entry} exited with code {proc.returncode}",
                tail.splitlines(),
            )
        return stdout
