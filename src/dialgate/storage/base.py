"""
State store interface.
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

Records = dict[str, dict[str, Any]]


class StateStore(ABC):
    """Persists named collections of JSON-compatible records.

    ``save`` replaces the whole collection; readers never observe a partially
    written collection.
    """

    @abstractmethod
    async def load(self, collection: str) -> Records:
        """Return every record of ``collection`` keyed by record key.

        Raises:
            PersistenceError: If the collection exists but cannot be read.
        """

    @abstractmethod
    async def save(self, collection: str, records: Mapping[str, dict[str, Any]]) -> None:
        """Atomically replace ``collection`` with ``records``.

        Raises:
            PersistenceError: If the write failed. The previous content stays intact.
        """

    async def close(self) -> None:
        return None


class MemoryStateStore(StateStore):
    """In-process store for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._collections: dict[str, Records] = {}

    async def load(self, collection: str) -> Records:
        return copy.deepcopy(self._collections.get(collection, {}))

    async def save(self, collection: str, records: Mapping[str, dict[str, Any]]) -> None:
        self._collections[collection] = copy.deepcopy(dict(records))

    @property
    def collections(self) -> dict[str, Records]:
        return copy.deepcopy(self._collections)
