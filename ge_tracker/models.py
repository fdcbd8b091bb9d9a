"""Watchlist records and their stored (camelCase) representation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

ITEM_PAGE_URL = "https://secure.runescape.com/m=itemdb_rs/viewitem?obj={item_id}"
ITEM_IMAGE_URL = "https://secure.runescape.com/m=itemdb_rs/obj_big.gif?id={item_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def canonical_item_url(item_id: str) -> str:
    return ITEM_PAGE_URL.format(item_id=item_id)


def canonical_image_url(item_id: str) -> str:
    return ITEM_IMAGE_URL.format(item_id=item_id)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _to_wire(record: Any) -> dict[str, Any]:
    return {_camel(f.name): getattr(record, f.name) for f in fields(record)}


def _from_wire(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        key = _camel(f.name)
        if key in data:
            kwargs[f.name] = data[key]
    return kwargs


@dataclass
class ItemMetadata:
    """Identity and alert configuration of a watched item (synced namespace)."""

    id: str
    name: str
    added_at: int
    url: str = ""
    original_url: str | None = None
    image_url: str | None = None
    low_threshold: float | None = None
    high_threshold: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return _to_wire(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ItemMetadata":
        return cls(**_from_wire(cls, data))

    @staticmethod
    def is_complete(data: Mapping[str, Any]) -> bool:
        """Return True when *data* carries the fields every watchlist item needs."""

        return bool(data.get("id")) and bool(data.get("name")) and data.get("addedAt") is not None


@dataclass
class PriceRecord:
    """Volatile price state of a watched item (local namespace)."""

    current_price: float | None = None
    previous_price: float | None = None
    last_checked: int | None = None
    price_analysis: dict[str, Any] | None = None
    last_history_update: int | None = None
    last_low_alert: int | None = None
    last_high_alert: int | None = None
    last_threshold_update: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _to_wire(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PriceRecord":
        return cls(**_from_wire(cls, data))


@dataclass
class PricePoint:
    """One entry of an item's price history, oldest first in a series."""

    date: str
    price: int
    volume: int | None = None
    timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _to_wire(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PricePoint":
        return cls(**_from_wire(cls, data))


@dataclass
class WatchlistItem:
    """Merged view of one item's metadata and price record."""

    id: str
    name: str
    added_at: int
    url: str = ""
    original_url: str | None = None
    image_url: str | None = None
    low_threshold: float | None = None
    high_threshold: float | None = None
    current_price: float | None = None
    previous_price: float | None = None
    last_checked: int | None = None
    price_analysis: dict[str, Any] | None = None
    last_history_update: int | None = None
    last_low_alert: int | None = None
    last_high_alert: int | None = None
    last_threshold_update: int | None = None

    @classmethod
    def from_parts(cls, metadata: ItemMetadata, price: PriceRecord | None) -> "WatchlistItem":
        item = cls(
            id=metadata.id,
            name=metadata.name,
            added_at=metadata.added_at,
            url=metadata.url or canonical_item_url(metadata.id),
            original_url=metadata.original_url,
            image_url=canonical_image_url(metadata.id),
            low_threshold=metadata.low_threshold,
            high_threshold=metadata.high_threshold,
            last_checked=metadata.added_at,
        )
        if price is None:
            return item
        item.current_price = price.current_price
        item.previous_price = price.previous_price
        if price.last_checked is not None:
            item.last_checked = price.last_checked
        item.price_analysis = price.price_analysis
        item.last_history_update = price.last_history_update
        item.last_low_alert = price.last_low_alert
        item.last_high_alert = price.last_high_alert
        item.last_threshold_update = price.last_threshold_update
        return item

    def to_dict(self) -> dict[str, Any]:
        return _to_wire(self)


METADATA_FIELDS = frozenset(f.name for f in fields(ItemMetadata))
PRICE_FIELDS = frozenset(f.name for f in fields(PriceRecord))
THRESHOLD_FIELDS = frozenset({"low_threshold", "high_threshold"})
METADATA_KEYS = frozenset(_camel(name) for name in METADATA_FIELDS)
PRICE_KEYS = frozenset(_camel(name) for name in PRICE_FIELDS)


def split_legacy_item(item_id: str, data: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a merged (stored) item into its metadata and price dictionaries."""

    metadata = {key: value for key, value in data.items() if key in METADATA_KEYS}
    metadata["id"] = str(metadata.get("id") or item_id)
    price = {key: value for key, value in data.items() if key in PRICE_KEYS}
    return metadata, price


@dataclass
class RefreshSummary:
    """Counters reported at the end of a refresh cycle."""

    checked: int = 0
    updated: int = 0
    failed: int = 0
    alerts: int = 0
    removed: list[str] = field(default_factory=list)
    active_alerts: int = 0
