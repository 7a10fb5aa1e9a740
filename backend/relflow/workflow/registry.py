"""Explicit registry of workflow definitions.

A registry is an ordinary value handed to whatever assembles or serves
definitions; there is no module-level registry.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Union

from .definition import Definition
from .exceptions import DefinitionError

logger = logging.getLogger(__name__)

DefinitionFactory = Callable[[], Definition]


class DefinitionRegistry:
    """Maps workflow names to definitions, building factories lazily once."""

    def __init__(self) -> None:
        self._entries: dict[str, Union[Definition, DefinitionFactory]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, definition: Union[Definition, DefinitionFactory]) -> None:
        """Register a definition (or a zero-argument factory) under `name`."""
        if not isinstance(definition, Definition) and not callable(definition):
            raise DefinitionError(f"{name!r} must be a Definition or a factory")
        with self._lock:
            if name in self._entries:
                raise DefinitionError(f"workflow {name!r} is already registered")
            self._entries[name] = definition
        logger.info("workflow registered name=%s", name)

    def get(self, name: str) -> Definition:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise DefinitionError(f"workflow {name!r} is not registered")
            if isinstance(entry, Definition):
                return entry
            definition = entry()
            if not isinstance(definition, Definition):
                raise DefinitionError(f"factory for {name!r} did not return a Definition")
            self._entries[name] = definition
            return definition

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._entries.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
