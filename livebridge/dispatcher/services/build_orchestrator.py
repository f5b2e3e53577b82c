"""
Where: livebridge/dispatcher/services/build_orchestrator.py
What: Fingerprint-keyed artifact cache in front of the runtime builders.
Why: Rebuild only when sources or build options changed, build each
     fingerprint at most once at a time, and remember failures.

Artifacts live under BUILD_ROOT/<function-id>/<fingerprint-prefix>. A build
writes into a staging directory that is renamed into place on success, so a
directory at the final path is always complete. When a newer artifact for a
function is produced the previous one is retired and deleted from disk as
soon as no worker holds a lease on it.
"""

import asyncio
import logging
import os
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple, Union

from cachetools import TTLCache

from ..core.copy_files import apply_copy_files
from ..core.exceptions import BuildError
from ..core.fingerprint import compute_fingerprint
from ..models.artifact import BuildArtifact
from ..models.function import FunctionDefinition
from .builders import Builder

logger = logging.getLogger("dispatcher.build_orchestrator")

FINGERPRINT_PREFIX = 16


class BuildOrchestrator:
    def __init__(
        self,
        build_root: Union[str, Path],
        builders: Dict[str, Builder],
        project_root: Union[str, Path, None] = None,
        build_timeout: float = 300.0,
        error_cache_ttl: float = 3600.0,
        cache_max_entries: int = 256,
    ):
        self.build_root = Path(build_root).resolve()
        self.project_root = Path(project_root or os.getcwd()).resolve()
        self.build_timeout = build_timeout
        self._builders = builders

        self._lock = asyncio.Lock()
        # fingerprint -> artifact
        self._artifacts: Dict[str, BuildArtifact] = {}
        # function id -> fingerprint of the newest artifact
        self._latest: Dict[str, str] = {}
        # Builds are numbered when started; only the newest started build of a
        # function may replace its latest artifact.
        self._next_sequence = 0
        self._latest_sequence: Dict[str, int] = {}
        # fingerprint -> (function id, diagnostics)
        self._failures: TTLCache = TTLCache(maxsize=cache_max_entries, ttl=error_cache_ttl)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._leases: Dict[str, int] = {}
        # Retired artifacts waiting for their last lease to be released.
        self._retired: Dict[str, BuildArtifact] = {}

        self._hits = 0
        self._misses = 0
        self._builds = 0
        self._failures_total = 0

    async def fingerprint(self, definition: FunctionDefinition) -> str:
        # Hashing walks the whole source tree; keep it off the event loop.
        return await asyncio.to_thread(compute_fingerprint, definition, self.project_root)

    async def ensure_artifact(self, definition: FunctionDefinition) -> BuildArtifact:
        """
        Return an artifact for the definition's current sources.

        Cache hit returns immediately. Otherwise the build for this fingerprint
        is started, or joined if one is already running; every waiter gets the
        same artifact or the same failure.

        Raises:
            BuildError: The build failed now or within BUILD_ERROR_CACHE_TTL
        """
        fingerprint = await self.fingerprint(definition)

        async with self._lock:
            artifact = self._artifacts.get(fingerprint)
            if artifact is not None:
                self._hits += 1
                return artifact

            failure: Optional[Tuple[str, str]] = self._failures.get(fingerprint)
            if failure is not None:
                self._hits += 1
                logger.debug(f"Serving cached build failure for {definition.id}")
                raise BuildError(definition.id, failure[1], fingerprint)

            task = self._in_flight.get(fingerprint)
            if task is None:
                self._misses += 1
                sequence = self._next_sequence
                self._next_sequence += 1
                task = asyncio.create_task(self._build(definition, fingerprint, sequence))
                task.add_done_callback(_consume_result)
                self._in_flight[fingerprint] = task
            else:
                logger.debug(f"Joining in-flight build of {definition.id}")

        # A waiter abandoning its request must not cancel the shared build.
        return await asyncio.shield(task)

    async def _build(
        self, definition: FunctionDefinition, fingerprint: str, sequence: int
    ) -> BuildArtifact:
        src_root = (self.project_root / definition.src_path).resolve()
        out_dir = self.build_root / definition.id / fingerprint[:FINGERPRINT_PREFIX]
        staging = out_dir.with_name(f"{out_dir.name}.staging-{uuid.uuid4().hex[:8]}")
        started = time.monotonic()
        logger.info(
            f"Building {definition.id} ({definition.runtime}) fingerprint={fingerprint[:12]}"
        )

        try:
            try:
                builder = self._builders.get(definition.family)
                if builder is None:
                    raise BuildError(
                        definition.id, f"No builder available for runtime {definition.runtime}"
                    )
                if not src_root.is_dir():
                    raise BuildError(definition.id, f'Source path "{src_root}" does not exist')

                try:
                    output = await asyncio.wait_for(
                        builder.build(definition, src_root, staging), timeout=self.build_timeout
                    )
                except asyncio.TimeoutError:
                    raise BuildError(
                        definition.id, f"Build timed out after {self.build_timeout:.0f}s"
                    )

                location = output.location
                if output.kind == "directory":
                    await asyncio.to_thread(apply_copy_files, definition, src_root, staging)
                    await asyncio.to_thread(_promote, staging, out_dir)
                    location = out_dir
            except BuildError as e:
                e.fingerprint = fingerprint
                raise
            except OSError as e:
                raise BuildError(definition.id, f"{type(e).__name__}: {e}", fingerprint)
        except BuildError as e:
            await asyncio.to_thread(shutil.rmtree, staging, True)
            async with self._lock:
                self._failures[fingerprint] = (definition.id, e.diagnostics)
                self._failures_total += 1
                self._in_flight.pop(fingerprint, None)
            logger.error(
                f"Build failed for {definition.id} ({time.monotonic() - started:.2f}s): "
                f"{e.diagnostics}",
                extra={"function_id": definition.id},
            )
            raise
        except BaseException:
            await asyncio.to_thread(shutil.rmtree, staging, True)
            async with self._lock:
                self._in_flight.pop(fingerprint, None)
            raise

        artifact = BuildArtifact(
            fingerprint=fingerprint,
            function_id=definition.id,
            runtime=definition.runtime,
            location=str(location),
            kind=output.kind,
            entry=output.entry,
            export=output.export,
        )

        superseded: List[BuildArtifact] = []
        async with self._lock:
            self._artifacts[fingerprint] = artifact
            self._builds += 1
            if sequence > self._latest_sequence.get(definition.id, -1):
                self._latest_sequence[definition.id] = sequence
                self._latest[definition.id] = fingerprint
                superseded = [
                    a
                    for a in self._artifacts.values()
                    if a.function_id == definition.id and a.fingerprint != fingerprint
                ]
                for old in superseded:
                    self._artifacts.pop(old.fingerprint, None)
            else:
                # A newer build of this function already finished; keep it as latest.
                logger.debug(f"Build of {definition.id} finished after a newer one; not latest")
            self._in_flight.pop(fingerprint, None)

        logger.info(
            f"Built {definition.id} in {time.monotonic() - started:.2f}s -> {artifact.location}"
        )
        for old in superseded:
            await self._retire(old)
        return artifact

    async def invalidate(self, function_id: str) -> None:
        """Forget cached artifacts and cached failures of one function."""
        async with self._lock:
            dropped = [a for a in self._artifacts.values() if a.function_id == function_id]
            for artifact in dropped:
                self._artifacts.pop(artifact.fingerprint, None)
            for fingerprint, (owner, _) in list(self._failures.items()):
                if owner == function_id:
                    self._failures.pop(fingerprint, None)
            self._latest.pop(function_id, None)

        for artifact in dropped:
            await self._retire(artifact)
        logger.info(f"Invalidated build cache for {function_id}")

    async def rebuild(self, definition: FunctionDefinition) -> BuildArtifact:
        """
        Force a fresh build of the definition's current sources.

        A build of the same fingerprint that is already running is allowed to
        finish first, so the forced build never just joins it.
        """
        fingerprint = await self.fingerprint(definition)
        async with self._lock:
            running = self._in_flight.get(fingerprint)
        if running is not None:
            await asyncio.wait([running])
        await self.invalidate(definition.id)
        return await self.ensure_artifact(definition)

    async def prewarm(self, definitions: Iterable[FunctionDefinition]) -> Dict[str, bool]:
        """
        Build every definition eagerly.

        Failures are logged and reported, never raised.
        """
        definitions = list(definitions)
        results = await asyncio.gather(
            *(self.ensure_artifact(d) for d in definitions), return_exceptions=True
        )
        report: Dict[str, bool] = {}
        for definition, result in zip(definitions, results):
            if isinstance(result, BaseException):
                if not isinstance(result, BuildError):
                    logger.error(f"Prewarm of {definition.id} failed unexpectedly: {result}")
                report[definition.id] = False
            else:
                report[definition.id] = True
        logger.info(f"Prewarmed {sum(report.values())}/{len(report)} functions")
        return report

    # ---- leases -------------------------------------------------------

    def acquire(self, artifact: BuildArtifact) -> None:
        self._leases[artifact.fingerprint] = self._leases.get(artifact.fingerprint, 0) + 1

    async def release(self, artifact: BuildArtifact) -> None:
        count = self._leases.get(artifact.fingerprint, 0) - 1
        if count > 0:
            self._leases[artifact.fingerprint] = count
            return
        self._leases.pop(artifact.fingerprint, None)
        retired = self._retired.pop(artifact.fingerprint, None)
        if retired is not None:
            await self._delete(retired)

    @asynccontextmanager
    async def lease(self, definition: FunctionDefinition) -> AsyncIterator[BuildArtifact]:
        """Ensure the artifact and hold it for the duration of the block."""
        artifact = await self.ensure_artifact(definition)
        self.acquire(artifact)
        try:
            yield artifact
        finally:
            await self.release(artifact)

    async def _retire(self, artifact: BuildArtifact) -> None:
        if self._leases.get(artifact.fingerprint, 0) > 0:
            self._retired[artifact.fingerprint] = artifact
            logger.debug(f"Retired artifact {artifact.location} (still leased)")
            return
        await self._delete(artifact)

    async def _delete(self, artifact: BuildArtifact) -> None:
        if artifact.kind != "directory":
            return
        # The same fingerprint may have been rebuilt into this path since.
        async with self._lock:
            if self._artifacts.get(artifact.fingerprint) is not None:
                return
        await asyncio.to_thread(shutil.rmtree, artifact.location, True)
        logger.info(f"Evicted artifact {artifact.location}")

    # ---- introspection ------------------------------------------------

    def latest(self, function_id: str) -> Optional[BuildArtifact]:
        fingerprint = self._latest.get(function_id)
        return self._artifacts.get(fingerprint) if fingerprint else None

    @property
    def stats(self) -> dict:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "builds": self._builds,
            "failures": self._failures_total,
            "in_flight": len(self._in_flight),
            "cached_artifacts": len(self._artifacts),
            "cached_failures": len(self._failures),
            "leased": sum(self._leases.values()),
        }

    def in_flight_fingerprints(self) -> Set[str]:
        return set(self._in_flight)

    async def shutdown(self) -> None:
        """Cancel running builds."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _promote(staging: Path, out_dir: Path) -> None:
    if out_dir.exists():
        shutil.rmtree(out_dir)
    out_dir.parent.mkdir(parents=True, exist_ok=True)
    os.replace(staging, out_dir)


def _consume_result(task: asyncio.Task) -> None:
    # Every waiter may have gone away; don't log "exception never retrieved".
    if not task.cancelled():
        task.exception()
