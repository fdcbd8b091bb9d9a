"""Key-value namespaces persisted in SQLite."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ge_tracker.errors import QuotaExceededError, StorageError
from ge_tracker.logging_config import get_logger

from .models_sql import KeyValueEntry

LOGGER = get_logger(__name__)

QUOTA_BYTES = 102_400
SYNCED_NAMESPACE = "sync"
LOCAL_NAMESPACE = "local"

Keys = str | Iterable[str] | None

def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

def estimate_bytes(items: Mapping[str, Any]) -> int:
    """Approximate stored size of *items*: key length plus compact JSON length."""

    return sum(len(key.encode("utf-8")) + len(_dumps(value).encode("utf-8")) for key, value in items.items())

def _normalize_keys(keys: Keys) -> list[str] | None:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return [str(key) for key in keys]

class KeyValueStore(ABC):
    """Async key-value namespace: whole values only, no partial patches."""

    namespace: str

    @abstractmethod
    async def get(self, keys: Keys = None) -> dict[str, Any]:
        """Return stored values for *keys* (every key when ``None``); absent keys are omitted."""

    @abstractmethod
    async def set(self, items: Mapping[str, Any]) -> None:
        """Store every entry of *items*, replacing previous values."""

    @abstractmethod
    async def remove(self, keys: Keys) -> None:
        """Delete *keys*; unknown keys are ignored."""

class SqlKeyValueStore(KeyValueStore):
    """Namespace stored as rows of the ``kv_entries`` table.

    Each ``set`` and ``remove`` runs in a single transaction, so readers never
    see half of a multi-key write.
    """

    def __init__(self, session_factory: sessionmaker[Session], namespace: str) -> None:
        self._session_factory = session_factory
        self.namespace = namespace

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        # Storage calls are suspension points for other tasks on the loop.
        await asyncio.sleep(0)
        wanted = _normalize_keys(keys)
        if wanted is not None and not wanted:
            return {}
        stmt = select(KeyValueEntry).where(KeyValueEntry.namespace == self.namespace)
        if wanted is not None:
            stmt = stmt.where(KeyValueEntry.key.in_(wanted))
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return {row.key: json.loads(row.value) for row in rows}
        except (SQLAlchemyError, ValueError) as exc:
            raise StorageError(
                f"Failed to read from namespace {self.namespace}: {exc}",
                namespace=self.namespace,
            ) from exc

    async def set(self, items: Mapping[str, Any]) -> None:
        await asyncio.sleep(0)
        if not items:
            return
        stamp = datetime.now(timezone.utc)
        try:
            with self._session_factory() as session:
                for key, value in items.items():
                    entry = session.get(KeyValueEntry, (self.namespace, key))
                    if entry is None:
                        session.add(
                            KeyValueEntry(
                                namespace=self.namespace,
                                key=key,
                                value=_dumps(value),
                                updated_at=stamp,
                            )
                        )
                    else:
                        entry.value = _dumps(value)
                        entry.updated_at = stamp
                session.commit()
        except (SQLAlchemyError, TypeError) as exc:
            raise StorageError(
                f"Failed to write to namespace {self.namespace}: {exc}",
                namespace=self.namespace,
            ) from exc
        LOGGER.debug("kv set | namespace=%s keys=%s", self.namespace, sorted(items))

    async def remove(self, keys: Keys) -> None:
        await asyncio.sleep(0)
        wanted = _normalize_keys(keys) or []
        if not wanted:
            return
        stmt = delete(KeyValueEntry).where(
            KeyValueEntry.namespace == self.namespace,
            KeyValueEntry.key.in_(wanted),
        )
        try:
            with self._session_factory() as session:
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to remove keys from namespace {self.namespace}: {exc}",
                namespace=self.namespace,
            ) from exc

class LocalStore(SqlKeyValueStore):
    """Unbounded namespace private to this device."""

    def __init__(self, session_factory: sessionmaker[Session], namespace: str = LOCAL_NAMESPACE) -> None:
        super().__init__(session_factory, namespace)

class SyncedStore(SqlKeyValueStore):
    """Replicated namespace with a hard total-size quota."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        namespace: str = SYNCED_NAMESPACE,
        *,
        quota_bytes: int = QUOTA_BYTES,
    ) -> None:
        super().__init__(session_factory, namespace)
        self.quota_bytes = quota_bytes

    async def set(self, items: Mapping[str, Any]) -> None:
        current = await self.get()
        projected = {**current, **items}
        size = estimate_bytes(projected)
        if size > self.quota_bytes:
            raise QuotaExceededError(size, self.quota_bytes, namespace=self.namespace)
        await super().set(items)
