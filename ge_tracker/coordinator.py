"""Serialized watchlist mutations.

Every write to the watchlist goes through :class:`MutationCoordinator`, which
holds a single ``asyncio.Lock`` for the whole read-modify-write of the
collections. The lock is shared with the legacy migrator, which rewrites the
same collections. It only orders writers inside this process; edits from
another device are detected by the threshold confirmation step instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Iterable, Mapping
from urllib.parse import unquote_plus, urlparse

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_incrementing

from ge_tracker.analysis import analyze
from ge_tracker.errors import ConflictError, NotFoundError, ValidationError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import (
    METADATA_FIELDS,
    PRICE_FIELDS,
    THRESHOLD_FIELDS,
    ItemMetadata,
    PricePoint,
    PriceRecord,
    WatchlistItem,
    canonical_image_url,
    canonical_item_url,
    now_ms,
)
from ge_tracker.settings import SettingsProvider, derive_thresholds
from ge_tracker.watchlist import WatchlistMerger

LOGGER = get_logger(__name__)

_NAME_PATH_RE = re.compile(r"/m=itemdb_rs/([^/]+)/")
_IMMUTABLE_FIELDS = frozenset({"id", "added_at"})
_GUARDED_FIELDS = THRESHOLD_FIELDS | {"last_threshold_update"}


class _ThresholdClobbered(Exception):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Thresholds for item {item_id} changed before confirmation")
        self.item_id = item_id


def name_from_url(url: str | None) -> str | None:
    """Decode the item name segment of a Grand Exchange page URL."""

    if not url:
        return None
    match = _NAME_PATH_RE.search(urlparse(url).path)
    if not match:
        return None
    return unquote_plus(match.group(1)).strip() or None


def _coerce_price(value: Any, field_name: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number", field=field_name) from exc
    if number < 0:
        raise ValidationError(f"{field_name} must not be negative", field=field_name)
    return int(number) if number.is_integer() else number


class MutationCoordinator:
    """Add, remove, re-threshold and bulk-update watchlist items one at a time."""

    def __init__(
        self,
        merger: WatchlistMerger,
        settings: SettingsProvider,
        source: Any | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        confirm_delay: float = 0.05,
        retry_base_delay: float = 0.1,
        max_attempts: int = 3,
    ) -> None:
        self.merger = merger
        self.metadata_store = merger.metadata_store
        self.price_store = merger.price_store
        self.settings = settings
        self.source = source
        self._clock = clock
        self.confirm_delay = confirm_delay
        self.retry_base_delay = retry_base_delay
        self.max_attempts = max(1, max_attempts)
        self._lock = merger.migrator.lock

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        async with self._lock:
            LOGGER.debug("watchlist lock acquired | op=%s", operation)
            try:
                yield
            finally:
                LOGGER.debug("watchlist lock released | op=%s", operation)

    async def add_item(self, item_data: Mapping[str, Any]) -> WatchlistItem:
        item_id = str(item_data.get("id") or "").strip()
        if not item_id:
            raise ValidationError("No item ID provided", field="id")

        source_url = item_data.get("url") or item_data.get("original_url")
        name = str(item_data.get("name") or "").strip() or name_from_url(source_url) or f"Item {item_id}"
        current_price = _coerce_price(item_data.get("current_price"), "current_price")
        settings = await self.settings.get()

        async with self._guard("add_item"):
            now = self._clock()
            existing = await self.metadata_store.get(item_id)
            low, high = derive_thresholds(current_price, settings)
            metadata = ItemMetadata(
                id=item_id,
                name=name,
                added_at=existing.added_at if existing else now,
                url=canonical_item_url(item_id),
                original_url=source_url,
                image_url=canonical_image_url(item_id),
                low_threshold=low,
                high_threshold=high,
            )
            await self.metadata_store.save(item_id, metadata)
            if current_price is not None:
                await self.price_store.save(
                    item_id, PriceRecord(current_price=current_price, last_checked=now)
                )
        LOGGER.info("Item added to watchlist: %s", name, extra={"item_id": item_id})

        if current_price is None and self.source is not None:
            fetched = await self.source.fetch(item_id)
            if fetched is not None:
                await self._store_fetch(item_id, fetched.current_price, fetched.price_history)
            else:
                LOGGER.info("Initial price fetch failed; will retry on next refresh", extra={"item_id": item_id})

        item = await self.merger.get_item(item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    async def _store_fetch(self, item_id: str, price: float, history: list[PricePoint]) -> None:
        async with self._guard("store_fetch"):
            if await self.metadata_store.get(item_id) is None:
                LOGGER.info("Item removed before its first price arrived", extra={"item_id": item_id})
                return
            now = self._clock()
            record = await self.price_store.get(item_id) or PriceRecord()
            if record.current_price is not None and record.current_price != price:
                record.previous_price = record.current_price
            record.current_price = price
            record.last_checked = now
            if history:
                analysis = analyze(history)
                record.price_analysis = analysis.to_dict() if analysis else None
                record.last_history_update = now
                await self.price_store.store_history(item_id, history)
            await self.price_store.save(item_id, record)

    async def remove_item(self, item_id: str) -> bool:
        async with self._guard("remove_item"):
            removed = await self.metadata_store.remove(item_id)
            await self.price_store.remove(item_id)
            await self.price_store.remove_history(item_id)
        if removed:
            LOGGER.info("Item removed from watchlist", extra={"item_id": item_id})
        return removed

    async def update_thresholds(self, item_id: str, low: Any, high: Any) -> WatchlistItem:
        low_value = _coerce_price(low, "low_threshold")
        high_value = _coerce_price(high, "high_threshold")
        if low_value is not None and high_value is not None and low_value >= high_value:
            raise ValidationError(
                "Low threshold must be below high threshold", field="low_threshold"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_base_delay, increment=self.retry_base_delay),
            retry=retry_if_exception_type(_ThresholdClobbered),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    token = await self._write_thresholds(item_id, low_value, high_value)
                    await asyncio.sleep(self.confirm_delay)
                    await self._confirm_thresholds(item_id, low_value, high_value, token)
        except _ThresholdClobbered as exc:
            LOGGER.error(
                "Threshold update lost to a concurrent writer after %d attempts",
                self.max_attempts,
                extra={"item_id": item_id},
            )
            raise ConflictError(item_id, self.max_attempts) from exc

        LOGGER.info(
            "Thresholds updated | low=%s high=%s", low_value, high_value, extra={"item_id": item_id}
        )
        item = await self.merger.get_item(item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    async def _write_thresholds(self, item_id: str, low: float | None, high: float | None) -> int:
        async with self._guard("update_thresholds"):
            metadata = await self.metadata_store.get(item_id)
            if metadata is None:
                raise NotFoundError(item_id)
            record = await self.price_store.get(item_id) or PriceRecord()
            token = max(self._clock(), (record.last_threshold_update or 0) + 1)
            metadata.low_threshold = low
            metadata.high_threshold = high
            record.last_threshold_update = token
            await self.metadata_store.save(item_id, metadata)
            await self.price_store.save(item_id, record)
            return token

    async def _confirm_thresholds(self, item_id: str, low: float | None, high: float | None, token: int) -> None:
        metadata = await self.metadata_store.get(item_id)
        record = await self.price_store.get(item_id)
        if (
            metadata is None
            or record is None
            or record.last_threshold_update != token
            or metadata.low_threshold != low
            or metadata.high_threshold != high
        ):
            raise _ThresholdClobbered(item_id)

    async def apply_bulk_update(
        self,
        updates: Mapping[str, Mapping[str, Any]],
        remove_ids: Iterable[str] = (),
        *,
        histories: Mapping[str, list[PricePoint]] | None = None,
        baseline: Mapping[str, int | None] | None = None,
    ) -> tuple[list[str], list[str]]:
        """Commit many partial updates and removals in one critical section.

        *updates* maps item id to the fields to overwrite (snake_case names of
        :class:`WatchlistItem`); fields not listed are kept. *baseline* holds
        the ``last_threshold_update`` each item had when the caller took its
        snapshot: where the stored token is newer, the batch's threshold
        fields are dropped for that item. Returns (updated ids, removed ids).
        """

        remove_set = set(remove_ids)
        for item_id, fields in updates.items():
            unknown = set(fields) - METADATA_FIELDS - PRICE_FIELDS
            if unknown:
                raise ValidationError(
                    f"Unknown fields for item {item_id}: {', '.join(sorted(unknown))}",
                    field=sorted(unknown)[0],
                )

        async with self._guard("apply_bulk_update"):
            metadata = await self.metadata_store.get_all()
            prices = await self.price_store.get_all()

            updated: list[str] = []
            metadata_dirty = price_dirty = False
            for item_id, fields in updates.items():
                if item_id in remove_set:
                    continue
                meta = metadata.get(item_id)
                if meta is None:
                    LOGGER.debug("Skipping update for item no longer on the watchlist", extra={"item_id": item_id})
                    continue

                changes = {name: value for name, value in fields.items() if name not in _IMMUTABLE_FIELDS}
                record = prices.get(item_id) or PriceRecord()
                if baseline is not None and item_id in baseline:
                    stored_token = record.last_threshold_update
                    seen_token = baseline[item_id]
                    if stored_token is not None and (seen_token is None or stored_token > seen_token):
                        dropped = sorted(_GUARDED_FIELDS & set(changes))
                        for name in dropped:
                            changes.pop(name)
                        if dropped:
                            LOGGER.info(
                                "Keeping newer manual thresholds; dropped batch fields %s",
                                dropped,
                                extra={"item_id": item_id},
                            )

                meta_changes = {name: value for name, value in changes.items() if name in METADATA_FIELDS}
                price_changes = {name: value for name, value in changes.items() if name in PRICE_FIELDS}
                if meta_changes:
                    metadata[item_id] = replace(meta, **meta_changes)
                    metadata_dirty = True
                if price_changes:
                    prices[item_id] = replace(record, **price_changes)
                    price_dirty = True
                updated.append(item_id)

            removed = [item_id for item_id in remove_set if item_id in metadata or item_id in prices]
            for item_id in remove_set:
                if metadata.pop(item_id, None) is not None:
                    metadata_dirty = True
                if prices.pop(item_id, None) is not None:
                    price_dirty = True

            if metadata_dirty:
                await self.metadata_store.replace_all(metadata)
            if price_dirty:
                await self.price_store.replace_all(prices)
            if histories:
                await self.price_store.store_histories(
                    {item_id: series for item_id, series in histories.items() if item_id in updated}
                )
            if remove_set:
                await self.price_store.remove_histories(sorted(remove_set))

        LOGGER.info("Bulk update committed | updated=%d removed=%d", len(updated), len(removed))
        return updated, sorted(removed)

    async def replace_watchlist(self, items: Mapping[str, WatchlistItem]) -> int:
        """Swap the whole watchlist for *items* (used by backup import)."""

        async with self._guard("replace_watchlist"):
            previous = set(await self.metadata_store.get_raw())
            metadata: dict[str, ItemMetadata] = {}
            prices: dict[str, PriceRecord] = {}
            for item_id, item in items.items():
                values = {name: getattr(item, name) for name in METADATA_FIELDS}
                values["id"] = item_id
                values["url"] = canonical_item_url(item_id)
                values["image_url"] = canonical_image_url(item_id)
                metadata[item_id] = ItemMetadata(**values)
                price_values = {name: getattr(item, name) for name in PRICE_FIELDS}
                if any(value is not None for value in price_values.values()):
                    prices[item_id] = PriceRecord(**price_values)
            await self.metadata_store.replace_all(metadata)
            await self.price_store.replace_all(prices)
            stale = sorted(previous - set(metadata))
            if stale:
                await self.price_store.remove_histories(stale)
        LOGGER.info("Watchlist replaced | items=%d", len(metadata))
        return len(metadata)
