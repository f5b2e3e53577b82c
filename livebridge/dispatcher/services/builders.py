"""
Where: livebridge/dispatcher/services/builders.py
What: Runtime builders, one per runtime family.
Why: The orchestrator only knows "build this definition into that directory";
     each family decides how (bundle, install dependencies, or reference as-is).
"""

import asyncio
import json
import logging
import os
import shlex
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional, Protocol, Sequence

from ..config import DispatcherConfig
from ..core.exceptions import BuildError
from ..core.fingerprint import IGNORED_DIRS
from ..models.function import FunctionDefinition

logger = logging.getLogger("dispatcher.builders")

NODE_SOURCE_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")
DIAGNOSTICS_TAIL = 8000


@dataclass(frozen=True)
class BuildOutput:
    """What a builder produced, before copy rules and promotion."""

    location: Path
    entry: str
    export: str = ""
    kind: Literal["directory", "asset"] = "directory"


class Builder(Protocol):
    family: str

    async def build(self, definition: FunctionDefinition, src_root: Path, out_dir: Path) -> BuildOutput:
        ...


async def run_command(
    function_id: str,
    args: Sequence[str],
    cwd: Path,
    env: Optional[Dict[str, str]] = None,
    shell: bool = False,
) -> str:
    """
    Run a build command and return its combined output.

    Raises:
        BuildError: The command is missing or exits non-zero (output attached)
    """
    display = args[0] if shell else shlex.join(args)
    logger.debug(f"Running build command for {function_id}: {display} (cwd={cwd})")
    try:
        if shell:
            proc = await asyncio.create_subprocess_shell(
                args[0],
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
    except FileNotFoundError:
        raise BuildError(function_id, f"Build command not found: {args[0]}")

    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    output = stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise BuildError(
            function_id,
            f"`{display}` exited with code {proc.returncode}\n{output[-DIAGNOSTICS_TAIL:]}",
        )
    return output


def _copy_tree(src_root: Path, out_dir: Path, keep: Sequence[str] = ()) -> None:
    ignored = set(IGNORED_DIRS) - set(keep)

    def ignore(_directory: str, names: List[str]) -> List[str]:
        return [n for n in names if n in ignored]

    shutil.copytree(src_root, out_dir, ignore=ignore, dirs_exist_ok=True)


class NodeBuilder:
    """
    Bundles node handlers with esbuild.

    With bundling disabled the source tree (including node_modules) is copied
    as-is and must already be plain JavaScript.
    """

    family = "nodejs"

    def __init__(self, config: DispatcherConfig):
        self.esbuild_command = shlex.split(config.ESBUILD_COMMAND)
        self.npm_command = shlex.split(config.NPM_COMMAND)

    async def build(self, definition: FunctionDefinition, src_root: Path, out_dir: Path) -> BuildOutput:
        entry_source = self._resolve_entry(definition, src_root)
        out_dir.mkdir(parents=True, exist_ok=True)

        if not definition.bundle.enabled:
            if entry_source.suffix in (".ts", ".tsx", ".mts", ".cts"):
                raise BuildError(
                    definition.id,
                    f'Handler "{definition.handler}" is TypeScript; enable bundling to run it',
                )
            await asyncio.to_thread(_copy_tree, src_root, out_dir, ("node_modules",))
            return BuildOutput(
                location=out_dir, entry=definition.handler_file, export=definition.handler_export
            )

        bundle = definition.bundle
        extension = ".mjs" if bundle.format == "esm" else ".js"
        outfile = out_dir / f"{definition.handler_file}{extension}"
        args = [
            *self.esbuild_command,
            str(entry_source),
            "--bundle",
            "--platform=node",
            f"--format={bundle.format}",
            f"--target={self._node_target(definition.runtime)}",
            f"--outfile={outfile}",
            "--sourcemap",
            "--log-level=warning",
        ]
        for module in [*bundle.external_modules, *bundle.node_modules]:
            args.append(f"--external:{module}")
        for ext, loader in sorted(bundle.loader.items()):
            args.append(f"--loader:{ext}={loader}")
        if bundle.minify:
            args.append("--minify")

        output = await run_command(definition.id, args, cwd=src_root)
        if output.strip():
            logger.info(f"esbuild output for {definition.id}:\n{output.strip()}")

        if bundle.node_modules:
            await self._install_node_modules(definition, src_root, out_dir)

        return BuildOutput(
            location=out_dir, entry=definition.handler_file, export=definition.handler_export
        )

    def _resolve_entry(self, definition: FunctionDefinition, src_root: Path) -> Path:
        base = src_root / definition.handler_file
        for ext in NODE_SOURCE_EXTENSIONS:
            candidate = base.with_name(base.name + ext)
            if candidate.is_file():
                return candidate
        raise BuildError(
            definition.id,
            f'Could not find handler file "{definition.handler_file}" in "{src_root}" '
            f"(tried {', '.join(NODE_SOURCE_EXTENSIONS)})",
        )

    @staticmethod
    def _node_target(runtime: str) -> str:
        # nodejs18.x -> node18
        version = runtime[len("nodejs"):].split(".")[0]
        return f"node{version}" if version.isdigit() else "node18"

    async def _install_node_modules(
        self, definition: FunctionDefinition, src_root: Path, out_dir: Path
    ) -> None:
        # Pin the versions the project already declares; fall back to "*".
        declared: Dict[str, str] = {}
        package_json = src_root / "package.json"
        if package_json.is_file():
            try:
                data = json.loads(package_json.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise BuildError(definition.id, f"Could not read {package_json}: {e}")
            for section in ("dependencies", "devDependencies"):
                declared.update(data.get(section) or {})

        dependencies = {name: declared.get(name, "*") for name in definition.bundle.node_modules}
        manifest = {"name": definition.id.lower(), "private": True, "dependencies": dependencies}
        (out_dir / "package.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        args = [*self.npm_command, "install", "--no-audit", "--no-fund", "--no-package-lock"]
        await run_command(definition.id, args, cwd=out_dir)
        logger.info(f"Installed node modules for {definition.id}: {', '.join(dependencies)}")


class PythonBuilder:
    """
    Copies the source tree, syntax-checks it and installs dependencies into it.
    """

    family = "python"

    def __init__(self, config: DispatcherConfig):
        self.python = config.PYTHON_COMMAND or sys.executable
        self.pip_command = (
            shlex.split(config.PIP_COMMAND) if config.PIP_COMMAND else [self.python, "-m", "pip"]
        )

    async def build(self, definition: FunctionDefinition, src_root: Path, out_dir: Path) -> BuildOutput:
        handler_module = src_root / f"{definition.handler_file}.py"
        if not handler_module.is_file():
            raise BuildError(
                definition.id,
                f'Could not find handler module "{definition.handler_file}.py" in "{src_root}"',
            )

        await asyncio.to_thread(_copy_tree, src_root, out_dir)

        diagnostics = await asyncio.to_thread(self._compile_sources, out_dir)
        if diagnostics:
            raise BuildError(definition.id, "\n".join(diagnostics))

        install_commands = definition.bundle.install_commands
        if install_commands is not None:
            env = {**os.environ, "LIVEBRIDGE_ARTIFACT_DIR": str(out_dir)}
            for command in install_commands:
                await run_command(definition.id, [command], cwd=out_dir, env=env, shell=True)
        elif (out_dir / "requirements.txt").is_file():
            args = [
                *self.pip_command,
                "install",
                "--quiet",
                "--disable-pip-version-check",
                "--target",
                str(out_dir),
                "-r",
                "requirements.txt",
            ]
            await run_command(definition.id, args, cwd=out_dir)
            logger.info(f"Installed requirements.txt for {definition.id}")

        return BuildOutput(
            location=out_dir,
            entry=definition.handler_file.replace("/", "."),
            export=definition.handler_export,
        )

    @staticmethod
    def _compile_sources(root: Path) -> List[str]:
        """Return one diagnostic per source file that does not compile."""
        diagnostics = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for name in sorted(filenames):
                if not name.endswith(".py"):
                    continue
                path = Path(dirpath) / name
                try:
                    compile(path.read_bytes(), str(path.relative_to(root)), "exec")
                except SyntaxError as e:
                    detail = f'File "{e.filename}", line {e.lineno}: {e.msg}'
                    if e.text:
                        detail = f"{detail}\n    {e.text.strip()}"
                    diagnostics.append(f"SyntaxError: {detail}")
                except ValueError as e:
                    diagnostics.append(f"{path.relative_to(root)}: {e}")
        return diagnostics


class PassthroughBuilder:
    """
    Custom runtimes ship a pre-assembled executable; nothing is built.

    The artifact references the handler inside the source directory.
    """

    family = "provided"

    async def build(self, definition: FunctionDefinition, src_root: Path, out_dir: Path) -> BuildOutput:
        executable = src_root / definition.handler
        if not executable.is_file():
            raise BuildError(
                definition.id, f'Handler executable "{executable}" does not exist'
            )
        if not os.access(executable, os.X_OK):
            raise BuildError(definition.id, f'Handler "{executable}" is not executable')
        return BuildOutput(location=src_root, entry=definition.handler, kind="asset")


def default_builders(config: DispatcherConfig) -> Dict[str, Builder]:
    """Builders keyed by runtime family."""
    builders: List[Builder] = [NodeBuilder(config), PythonBuilder(config), PassthroughBuilder()]
    return {b.family: b for b in builders}
