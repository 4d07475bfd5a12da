"""
SQL state store on async SQLAlchemy.

All collections share one table keyed by ``(collection, key)``. A save
deletes and re-inserts the collection inside a single transaction.
"""

from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import JSON, DateTime, String, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from dialgate.shared.clock import utc_now
from dialgate.shared.database import Base, DatabaseManager
from dialgate.shared.errors import PersistenceError
from dialgate.shared.logging import get_logger
from dialgate.storage.base import Records, StateStore

logger = get_logger(__name__)


class StateRow(Base):
    """One persisted record of one collection."""

    __tablename__ = "dialgate_state"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


class SqlAlchemyStateStore(StateStore):
    """State store backed by any async SQLAlchemy database."""

    def __init__(self, database: DatabaseManager | str) -> None:
        if isinstance(database, str):
            database = DatabaseManager(database)
        self._db = database
        self._schema_ready = False

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        _ensure_sqlite_directory(self._db.database_url)
        await self._db.create_all()
        self._schema_ready = True

    async def load(self, collection: str) -> Records:
        try:
            await self._ensure_schema()
            async with self._db.session() as session:
                result = await session.execute(select(StateRow).where(StateRow.collection == collection))
                return {row.key: row.payload for row in result.scalars()}
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Failed to load {collection}: {exc}", collection=collection) from exc

    async def save(self, collection: str, records: Mapping[str, dict[str, Any]]) -> None:
        now = utc_now()
        try:
            await self._ensure_schema()
            async with self._db.session() as session:
                await session.execute(delete(StateRow).where(StateRow.collection == collection))
                session.add_all(
                    StateRow(collection=collection, key=key, payload=payload, updated_at=now)
                    for key, payload in records.items()
                )
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Failed to save {collection}: {exc}", collection=collection) from exc
        logger.debug("Snapshot written", extra={"collection": collection, "records": len(records)})

    async def close(self) -> None:
        await self._db.close()
