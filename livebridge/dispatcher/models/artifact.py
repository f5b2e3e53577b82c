"""
Build artifact model.
"""

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class BuildArtifact(BaseModel):
    """
    Runnable output of a build, keyed by the content fingerprint.

    `location` is a directory produced by the builder, or, for packaged
    runtimes, the already-assembled asset the builder points at.
    `entry` is the handler path relative to `location` (no extension for
    interpreted runtimes) and `export` the entry point name.
    """

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    function_id: str
    runtime: str
    location: str
    kind: Literal["directory", "asset"] = "directory"
    entry: str
    export: str = ""
    produced_at: float = Field(default_factory=time.time)
