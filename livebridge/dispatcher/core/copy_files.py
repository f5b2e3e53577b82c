"""
Copy declared auxiliary files into a build artifact.
"""

import logging
import os
import shutil
from pathlib import Path

from ..models.function import FunctionDefinition
from .exceptions import BuildError

logger = logging.getLogger("dispatcher.copy_files")


def apply_copy_files(definition: FunctionDefinition, src_root: Path, artifact_root: Path) -> None:
    """
    Copy every copyFiles rule from the source root into the artifact root.

    Raises:
        BuildError: A source does not exist, or a destination is absolute or
            escapes the artifact root
    """
    root = artifact_root.resolve()
    for rule in definition.bundle.copy_files:
        source = src_root / rule.from_
        if not source.exists():
            raise BuildError(
                definition.id,
                f'Tried to copy nonexistent file from "{source.resolve()}" - '
                f'check copyFiles entry "{rule.from_}"',
            )

        destination = rule.destination
        if os.path.isabs(destination):
            raise BuildError(definition.id, f'Copy destination path "{destination}" must be relative')

        target = (root / destination).resolve()
        if target != root and root not in target.parents:
            raise BuildError(
                definition.id,
                f'Copy destination path "{destination}" escapes the artifact root',
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)
        logger.debug(f"Copied {source} -> {target}")
