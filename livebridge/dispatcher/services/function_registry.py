"""
Function registry.

Process-wide table mapping a function id to its definition. Populated from the
deploy step's intake file (functions.yml) or by direct registration, strictly
before the bridge session starts; re-registration replaces the entry.
"""

import logging
import os
import string
import threading
from typing import Any, Dict, List, Optional, Set

import yaml
from pydantic import ValidationError

from ..core.exceptions import FunctionNotFoundError
from ..models.function import FunctionDefinition

logger = logging.getLogger("dispatcher.function_registry")


class FunctionRegistry:
    def __init__(self, config_path: Optional[str] = None):
        self._registry: Dict[str, FunctionDefinition] = {}
        self._file_ids: Set[str] = set()
        self._lock = threading.RLock()
        self.config_path = config_path

    def register(self, definition: FunctionDefinition) -> None:
        """
        Insert or replace the entry for `definition.id`.

        Pure in-memory mutation; never triggers a build.
        """
        with self._lock:
            previous = self._registry.get(definition.id)
            self._registry[definition.id] = definition
        if previous is None:
            logger.info(f"Registered {definition.id} ({definition.runtime}, {definition.handler})")
        elif previous != definition:
            logger.info(f"Replaced definition for {definition.id}")

    def unregister(self, function_id: str) -> bool:
        with self._lock:
            self._file_ids.discard(function_id)
            return self._registry.pop(function_id, None) is not None

    def get(self, function_id: str) -> Optional[FunctionDefinition]:
        with self._lock:
            return self._registry.get(function_id)

    def lookup(self, function_id: str) -> FunctionDefinition:
        """
        Return the current definition.

        Raises:
            FunctionNotFoundError: Unknown function id
        """
        definition = self.get(function_id)
        if definition is None:
            raise FunctionNotFoundError(function_id)
        return definition

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._registry)

    def list_definitions(self) -> List[FunctionDefinition]:
        with self._lock:
            return sorted(self._registry.values(), key=lambda d: d.id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._registry)

    def load_functions_config(self) -> Dict[str, FunctionDefinition]:
        """
        Load the intake file and register every live-enabled function.

        Functions dropped from the file since the previous load are unregistered.

        Returns:
            Dict of function id -> definition loaded from the file
        """
        if not self.config_path:
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                # Substitute environment variables using string.Template.
                template = string.Template(f.read())
                content = template.safe_substitute(os.environ.copy())
                cfg = yaml.safe_load(content) or {}
        except FileNotFoundError:
            logger.warning(f"Functions config not found at {self.config_path}")
            self._drop_file_entries(set())
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing functions config: {e}")
            return {}

        defaults: Dict[str, Any] = cfg.get("defaults") or {}
        loaded: Dict[str, FunctionDefinition] = {}

        for function_id, entry in (cfg.get("functions") or {}).items():
            data = self._merge_defaults(defaults, entry or {})
            try:
                definition = FunctionDefinition.from_dict(str(function_id), data)
            except (ValidationError, ValueError) as e:
                logger.error(f"Skipping invalid function definition {function_id}: {e}")
                continue
            if not definition.enable_live_dev:
                logger.debug(f"Live development disabled for {function_id}; not registered")
                continue
            loaded[definition.id] = definition

        with self._lock:
            self._drop_file_entries(set(loaded))
            for definition in loaded.values():
                self.register(definition)
            self._file_ids = set(loaded)

        logger.info(f"Loaded {len(loaded)} functions from {self.config_path}")
        return loaded

    def reload(self) -> None:
        """Re-read the intake file (redeploy without restarting)."""
        self.load_functions_config()

    def _drop_file_entries(self, keep: Set[str]) -> None:
        with self._lock:
            for function_id in self._file_ids - keep:
                self._registry.pop(function_id, None)
                logger.info(f"Unregistered {function_id} (removed from intake file)")
            self._file_ids &= keep

    @staticmethod
    def _merge_defaults(defaults: Dict[str, Any], entry: Dict[str, Any]) -> Dict[str, Any]:
        # Merge defaults first, then function-specific (function wins).
        merged = {k: v for k, v in defaults.items() if k != "environment"}
        merged.update(entry)
        environment: Dict[str, Any] = {}
        environment.update(defaults.get("environment") or {})
        environment.update(entry.get("environment") or {})
        merged["environment"] = environment
        return merged
