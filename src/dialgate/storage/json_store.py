"""
JSON file state store.

One file per collection under ``data_dir``. Writes go to a temporary file in
the same directory which then replaces the target with ``os.replace``.
"""

import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import anyio

from dialgate.shared.errors import PersistenceError
from dialgate.shared.logging import get_logger
from dialgate.storage.base import Records, StateStore

logger = get_logger(__name__)


class JsonFileStateStore(StateStore):
    """Atomic write-replace JSON snapshots on the local filesystem."""

    def __init__(self, data_dir: str | Path) -> None:
        self._data_dir = Path(data_dir)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def path_for(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    async def load(self, collection: str) -> Records:
        return await anyio.to_thread.run_sync(self._load_sync, collection)

    async def save(self, collection: str, records: Mapping[str, dict[str, Any]]) -> None:
        payload = dict(records)
        await anyio.to_thread.run_sync(self._save_sync, collection, payload)

    def _load_sync(self, collection: str) -> Records:
        path = self.path_for(collection)
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}", collection=collection) from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Snapshot {path} is not a JSON object", collection=collection)
        return data

    def _save_sync(self, collection: str, records: Records) -> None:
        path = self.path_for(collection)
        tmp_name: str | None = None
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._data_dir,
                prefix=f".{collection}.",
                suffix=".tmp",
                delete=False,
            ) as fh:
                tmp_name = fh.name
                json.dump(records, fh, indent=2, default=str)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}", collection=collection) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.debug("Snapshot written", extra={"collection": collection, "records": len(records)})
