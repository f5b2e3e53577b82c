"""
Where: livebridge/dispatcher/core/fingerprint.py
What: Content fingerprint over a function's sources and build inputs.
Why: The build cache is keyed by this value; any input change must change it.

This is the only change-detection used for builds. It is unrelated to any
hashing the deploy step does for infrastructure templates.
"""

import hashlib
import json
import os
from pathlib import Path
from typing import Iterator

from ..models.function import FunctionDefinition

IGNORED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".livebridge",
        ".mypy_cache",
        ".pytest_cache",
        ".venv",
        "__pycache__",
        "node_modules",
    }
)

_CHUNK = 1024 * 1024


def iter_source_files(root: Path) -> Iterator[Path]:
    """Yield files under root in a stable order, skipping tool/cache dirs."""
    if root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _hash_file(digest, path: Path) -> None:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(_CHUNK)
            if not chunk:
                break
            digest.update(chunk)


def compute_fingerprint(definition: FunctionDefinition, project_root: Path) -> str:
    """
    sha256 over build options, runtime tag, handler and every source byte.

    Files are hashed with their path relative to the source root so that
    renames change the fingerprint too.
    """
    digest = hashlib.sha256()
    inputs = {
        "id": definition.id,
        "runtime": definition.runtime,
        "handler": definition.handler,
        "bundle": definition.bundle.model_dump(mode="json", by_alias=True),
    }
    digest.update(json.dumps(inputs, sort_keys=True).encode("utf-8"))

    src_root = (project_root / definition.src_path).resolve()
    for path in iter_source_files(src_root):
        rel = path.relative_to(src_root).as_posix() if path != src_root else path.name
        digest.update(b"\0file\0" + rel.encode("utf-8") + b"\0")
        try:
            _hash_file(digest, path)
        except OSError:
            # Vanished or unreadable mid-walk; the path alone still enters the hash.
            digest.update(b"\0unreadable\0")

    # copyFiles sources may live outside the source root.
    for rule in definition.bundle.copy_files:
        source = (src_root / rule.from_).resolve()
        if source == src_root or src_root in source.parents:
            continue
        digest.update(b"\0copy\0" + rule.from_.encode("utf-8") + b"\0")
        if source.exists():
            for path in iter_source_files(source):
                _hash_file(digest, path)

    return digest.hexdigest()
