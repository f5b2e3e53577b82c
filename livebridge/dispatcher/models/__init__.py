"""
Data model definitions package.

Aggregates Pydantic models for use in other modules.
"""

from .artifact import BuildArtifact
from .function import BundleOptions, CopyFileRule, FunctionDefinition, derive_function_id

__all__ = [
    "BuildArtifact",
    "BundleOptions",
    "CopyFileRule",
    "FunctionDefinition",
    "derive_function_id",
]
