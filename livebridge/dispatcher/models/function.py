"""
Function domain models.

Defines the structure of a registered function definition as a Pydantic model
and normalizes it the same way the deploy step does (runtime, timeout, srcPath).
"""

import posixpath
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_RUNTIME = "nodejs18.x"
DEFAULT_TIMEOUT = 10

SUPPORTED_RUNTIMES = (
    "nodejs12.x",
    "nodejs14.x",
    "nodejs16.x",
    "nodejs18.x",
    "nodejs20.x",
    "python3.7",
    "python3.8",
    "python3.9",
    "python3.10",
    "python3.11",
    "python3.12",
    "provided",
    "provided.al2",
    "provided.al2023",
)

RUNTIME_ALIASES = {
    "node": "nodejs18.x",
    "nodejs": "nodejs18.x",
    "python": "python3.11",
    "python3": "python3.11",
}

RuntimeFamily = Literal["nodejs", "python", "provided"]

_ID_UNSAFE = re.compile(r"[$/.]")


def derive_function_id(scope_path: str, construct_id: str) -> str:
    """
    Derive the stable function id from the construct path.

    "dev-app/Api/Lambda_GET_/$default" + "fn.v2" -> "dev-app-Api-Lambda_GET_--default-fn-v2"
    """
    return _ID_UNSAFE.sub("-", posixpath.join(scope_path, construct_id))


def normalize_runtime(runtime: Optional[str]) -> str:
    runtime = (runtime or DEFAULT_RUNTIME).strip()
    runtime = RUNTIME_ALIASES.get(runtime, runtime)
    if runtime not in SUPPORTED_RUNTIMES:
        raise ValueError(
            f'The runtime "{runtime}" is not supported. Only NodeJS, Python and custom '
            f"(provided) runtimes can be run locally."
        )
    return runtime


def runtime_family(runtime: str) -> RuntimeFamily:
    if runtime.startswith("nodejs"):
        return "nodejs"
    if runtime.startswith("python"):
        return "python"
    return "provided"


def normalize_src_path(src_path: Optional[str]) -> str:
    src_path = src_path or "."
    stripped = src_path.rstrip("/")
    return stripped or "/"


class CopyFileRule(BaseModel):
    """Auxiliary file copied into the artifact after the build."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1, description="Path relative to srcPath")
    to: Optional[str] = Field(None, description="Destination relative to the artifact root")

    @property
    def destination(self) -> str:
        return self.to or self.from_


class BundleOptions(BaseModel):
    """Bundling options handed to the runtime builder."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    copy_files: List[CopyFileRule] = Field(default_factory=list)
    external_modules: List[str] = Field(default_factory=list)
    node_modules: List[str] = Field(default_factory=list)
    minify: bool = False
    format: Literal["cjs", "esm"] = "cjs"
    loader: Dict[str, str] = Field(default_factory=dict)
    install_commands: Optional[List[str]] = None


class FunctionDefinition(BaseModel):
    """
    Core domain entity for a registered function.

    Immutable after construction; re-registering an id replaces the entry.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    handler: str = Field(..., description="Source file + exported entry, e.g. src/a.handler")
    runtime: str = DEFAULT_RUNTIME
    src_path: str = "."
    bundle: BundleOptions = Field(default_factory=BundleOptions)
    environment: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=DEFAULT_TIMEOUT, gt=0)
    enable_live_dev: bool = True

    @field_validator("runtime", mode="before")
    @classmethod
    def _normalize_runtime(cls, value: Optional[str]) -> str:
        return normalize_runtime(value)

    @field_validator("src_path", mode="before")
    @classmethod
    def _normalize_src_path(cls, value: Optional[str]) -> str:
        return normalize_src_path(value)

    @model_validator(mode="after")
    def _validate(self) -> "FunctionDefinition":
        if not self.handler:
            raise ValueError(f'No handler defined for the "{self.id}" function')
        if self.family != "provided" and "." not in self.handler:
            raise ValueError(
                f'Handler "{self.handler}" for "{self.id}" must be "<file>.<export>"'
            )
        if self.family == "python" and self.src_path == ".":
            raise ValueError(f'Cannot set the "srcPath" to the project root for the "{self.id}" function.')
        if self.family == "nodejs" and not self.bundle.enabled and self.src_path == ".":
            raise ValueError(
                f'Bundle cannot be disabled for the "{self.id}" function since the "srcPath" '
                f"is set to the project root."
            )
        return self

    @property
    def family(self) -> RuntimeFamily:
        return runtime_family(self.runtime)

    @property
    def handler_file(self) -> str:
        """Source path of the handler without extension (relative to src_path)."""
        if self.family == "provided":
            return self.handler
        return self.handler.rsplit(".", 1)[0]

    @property
    def handler_export(self) -> str:
        if self.family == "provided":
            return ""
        return self.handler.rsplit(".", 1)[1]

    @classmethod
    def from_dict(cls, function_id: str, data: Dict[str, Any]) -> "FunctionDefinition":
        """Factory to create from an intake-file entry."""
        bundle_data = data.get("bundle")
        if isinstance(bundle_data, bool):
            bundle = BundleOptions(enabled=bundle_data)
        elif isinstance(bundle_data, dict):
            bundle = BundleOptions(**_snake_keys(bundle_data))
        elif bundle_data is None:
            bundle = BundleOptions()
        else:
            bundle = bundle_data

        environment = {k: str(v) for k, v in (data.get("environment") or {}).items()}

        return cls(
            id=function_id,
            handler=data.get("handler") or "",
            runtime=data.get("runtime"),
            src_path=data.get("srcPath", data.get("src_path")),
            bundle=bundle,
            environment=environment,
            timeout=data.get("timeout") or DEFAULT_TIMEOUT,
            enable_live_dev=data.get("enableLiveDev", data.get("enable_live_dev", True)),
        )


_BUNDLE_KEYS = {
    "copyFiles": "copy_files",
    "externalModules": "external_modules",
    "nodeModules": "node_modules",
    "installCommands": "install_commands",
}


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_BUNDLE_KEYS.get(k, k): v for k, v in data.items()}
