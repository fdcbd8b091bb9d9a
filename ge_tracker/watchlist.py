"""Merged watchlist view and migration of the pre-split storage format."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from ge_tracker.errors import StorageError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import (
    ItemMetadata,
    PriceRecord,
    WatchlistItem,
    canonical_image_url,
    canonical_item_url,
    now_ms,
    split_legacy_item,
)
from ge_tracker.storage.kv import KeyValueStore
from ge_tracker.storage.repo import MetadataStore, PriceStore

LOGGER = get_logger(__name__)

LEGACY_WATCHLIST_KEY = "watchlist"


class LegacyMigrator:
    """Split a single-record ``watchlist`` into the metadata and price stores.

    ``lock`` is the watchlist mutation lock. Migration rewrites both
    collections, so it holds the lock for the whole read-modify-write;
    :class:`~ge_tracker.coordinator.MutationCoordinator` takes the same lock.
    """

    def __init__(
        self,
        synced: KeyValueStore,
        metadata_store: MetadataStore,
        price_store: PriceStore,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self.synced = synced
        self.metadata_store = metadata_store
        self.price_store = price_store
        self.lock = lock or asyncio.Lock()

    async def read_legacy(self) -> dict[str, Any]:
        raw = (await self.synced.get(LEGACY_WATCHLIST_KEY)).get(LEGACY_WATCHLIST_KEY)
        return dict(raw) if isinstance(raw, Mapping) else {}

    async def migrate_if_needed(self) -> int:
        if not await self.read_legacy():
            return 0
        async with self.lock:
            # Another reader may have migrated while we waited.
            return await self._migrate_locked(await self.read_legacy())

    async def migrate(self, legacy: Mapping[str, Any] | None) -> int:
        """Write every legacy item into both stores, then drop the legacy key.

        Records are written by id with overwrite semantics, so repeating the
        migration with the same input leaves the stores unchanged.
        """

        async with self.lock:
            return await self._migrate_locked(legacy)

    async def _migrate_locked(self, legacy: Mapping[str, Any] | None) -> int:
        if not legacy:
            return 0

        existing = await self.metadata_store.get_raw()
        metadata: dict[str, ItemMetadata] = {}
        prices: dict[str, PriceRecord] = {}
        for item_id, data in legacy.items():
            if not isinstance(data, Mapping):
                LOGGER.warning("Skipping malformed legacy entry", extra={"item_id": item_id})
                continue
            meta_fields, price_fields = split_legacy_item(str(item_id), data)
            key = meta_fields["id"]
            meta_fields["name"] = meta_fields.get("name") or f"Item {key}"
            if meta_fields.get("addedAt") is None:
                meta_fields["addedAt"] = (
                    (existing.get(key) or {}).get("addedAt")
                    or price_fields.get("lastChecked")
                    or now_ms()
                )
            meta_fields["url"] = meta_fields.get("url") or canonical_item_url(key)
            meta_fields["imageUrl"] = canonical_image_url(key)
            metadata[key] = ItemMetadata.from_dict(meta_fields)
            if price_fields:
                prices[key] = PriceRecord.from_dict(price_fields)

        await self.metadata_store.save_many(metadata)
        await self.price_store.save_many(prices)
        await self.synced.remove(LEGACY_WATCHLIST_KEY)
        LOGGER.info(
            "Migrated legacy watchlist | items=%d price_records=%d",
            len(metadata),
            len(prices),
        )
        return len(metadata)


class WatchlistMerger:
    """Join metadata (authoritative key set) with price records by item id."""

    def __init__(self, metadata_store: MetadataStore, price_store: PriceStore, migrator: LegacyMigrator) -> None:
        self.metadata_store = metadata_store
        self.price_store = price_store
        self.migrator = migrator

    async def get_watchlist(self) -> dict[str, WatchlistItem]:
        try:
            await self.migrator.migrate_if_needed()
        except StorageError as exc:
            LOGGER.error("Legacy watchlist migration failed; will retry on next read: %s", exc)

        try:
            metadata = await self.metadata_store.get_all()
            prices = await self.price_store.get_all()
        except StorageError as exc:
            LOGGER.error("Failed to read watchlist collections; returning empty watchlist: %s", exc)
            return {}

        orphaned = set(prices) - set(metadata)
        if orphaned:
            LOGGER.debug("Ignoring %d orphaned price records", len(orphaned))

        return {
            item_id: WatchlistItem.from_parts(meta, prices.get(item_id))
            for item_id, meta in metadata.items()
        }

    async def get_item(self, item_id: str) -> WatchlistItem | None:
        return (await self.get_watchlist()).get(item_id)
