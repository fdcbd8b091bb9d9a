"""Repository helpers for the watchlist collections.

Both collections are single keys holding an ``id -> record`` map. The
namespaces offer no field-level patch, so every change rewrites the whole
collection (read, modify, write back).
"""

from __future__ import annotations

from typing import Any, Generic, Iterable, Mapping, TypeVar

from ge_tracker.logging_config import get_logger
from ge_tracker.models import ItemMetadata, PricePoint, PriceRecord

from .kv import KeyValueStore

LOGGER = get_logger(__name__)

METADATA_KEY = "itemMetadata"
PRICE_DATA_KEY = "priceData"
HISTORY_KEY_PREFIX = "priceHistory_"

RecordT = TypeVar("RecordT", ItemMetadata, PriceRecord)


def history_key(item_id: str) -> str:
    return f"{HISTORY_KEY_PREFIX}{item_id}"


class _CollectionStore(Generic[RecordT]):
    collection_key: str

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def _decode(self, item_id: str, data: Mapping[str, Any]) -> RecordT | None:
        raise NotImplementedError

    async def get_raw(self) -> dict[str, dict[str, Any]]:
        result = await self.store.get(self.collection_key)
        collection = result.get(self.collection_key)
        return dict(collection) if isinstance(collection, Mapping) else {}

    async def get_all(self) -> dict[str, RecordT]:
        records: dict[str, RecordT] = {}
        for item_id, data in (await self.get_raw()).items():
            record = self._decode(item_id, data)
            if record is not None:
                records[item_id] = record
        return records

    async def get(self, item_id: str) -> RecordT | None:
        data = (await self.get_raw()).get(item_id)
        return self._decode(item_id, data) if data is not None else None

    async def save(self, item_id: str, record: RecordT) -> None:
        await self.save_many({item_id: record})

    async def save_many(self, records: Mapping[str, RecordT]) -> None:
        if not records:
            return
        collection = await self.get_raw()
        for item_id, record in records.items():
            collection[item_id] = record.to_dict()
        await self.store.set({self.collection_key: collection})

    async def replace_all(self, records: Mapping[str, RecordT]) -> None:
        await self.store.set(
            {self.collection_key: {item_id: record.to_dict() for item_id, record in records.items()}}
        )

    async def remove(self, item_id: str) -> bool:
        return bool(await self.remove_many([item_id]))

    async def remove_many(self, item_ids: Iterable[str]) -> list[str]:
        collection = await self.get_raw()
        removed = [item_id for item_id in item_ids if collection.pop(item_id, None) is not None]
        if removed:
            await self.store.set({self.collection_key: collection})
        return removed


class MetadataStore(_CollectionStore[ItemMetadata]):
    """Item identity and thresholds, kept in the synced namespace."""

    collection_key = METADATA_KEY

    def _decode(self, item_id: str, data: Mapping[str, Any]) -> ItemMetadata | None:
        merged = {**data, "id": data.get("id") or item_id}
        if not ItemMetadata.is_complete(merged):
            LOGGER.warning("Skipping incomplete metadata record", extra={"item_id": item_id})
            return None
        return ItemMetadata.from_dict(merged)


class PriceStore(_CollectionStore[PriceRecord]):
    """Price records and history series, kept in the local namespace."""

    collection_key = PRICE_DATA_KEY

    def _decode(self, item_id: str, data: Mapping[str, Any]) -> PriceRecord:
        return PriceRecord.from_dict(data)

    async def store_history(self, item_id: str, series: Iterable[PricePoint]) -> None:
        await self.store.set({history_key(item_id): [point.to_dict() for point in series]})

    async def store_histories(self, histories: Mapping[str, Iterable[PricePoint]]) -> None:
        if not histories:
            return
        await self.store.set(
            {history_key(item_id): [point.to_dict() for point in series] for item_id, series in histories.items()}
        )

    async def get_history(self, item_id: str) -> list[PricePoint]:
        key = history_key(item_id)
        raw = (await self.store.get(key)).get(key) or []
        return [PricePoint.from_dict(point) for point in raw if isinstance(point, Mapping)]

    async def remove_history(self, item_id: str) -> None:
        await self.store.remove(history_key(item_id))

    async def remove_histories(self, item_ids: Iterable[str]) -> None:
        keys = [history_key(item_id) for item_id in item_ids]
        if keys:
            await self.store.remove(keys)
