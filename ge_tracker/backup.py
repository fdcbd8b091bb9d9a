"""JSON backup export and import of the watchlist and settings."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ge_tracker.coordinator import MutationCoordinator
from ge_tracker.errors import ValidationError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import WatchlistItem, now_ms
from ge_tracker.settings import DEFAULT_SETTINGS, SettingsProvider
from ge_tracker.watchlist import WatchlistMerger

LOGGER = get_logger(__name__)

BACKUP_VERSION = "1.0.2"
EXPORT_SOURCE = "GE Tracker"


class BackupItem(BaseModel):
    """One watchlist entry as written to a backup file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str | int | None = None
    name: str | None = None
    added_at: int | None = None
    url: str | None = None
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


class BackupDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    watchlist: dict[str, BackupItem] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    export_date: str = Field(alias="exportDate")
    version: str
    export_source: str = Field(default=EXPORT_SOURCE, alias="exportSource")


async def export_backup(merger: WatchlistMerger, settings: SettingsProvider) -> BackupDocument:
    """Build a backup document; a leftover legacy record is exported as-is."""

    legacy = await merger.migrator.read_legacy()
    if legacy:
        LOGGER.info("Exporting legacy watchlist record | items=%d", len(legacy))
        watchlist = {str(item_id): BackupItem.model_validate(data) for item_id, data in legacy.items()}
    else:
        watchlist = {
            item_id: BackupItem.model_validate(item.to_dict())
            for item_id, item in (await merger.get_watchlist()).items()
        }
    return BackupDocument(
        watchlist=watchlist,
        settings=await settings.get(),
        exportDate=datetime.now(timezone.utc).isoformat(),
        version=BACKUP_VERSION,
    )


def write_backup(document: BackupDocument, path: Path) -> None:
    path.write_text(document.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    LOGGER.info("Backup written to %s | items=%d", path, len(document.watchlist))


def parse_backup(text: str) -> BackupDocument:
    try:
        return BackupDocument.model_validate_json(text)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid backup file format: {exc.error_count()} error(s)") from exc


def read_backup(path: Path) -> BackupDocument:
    return parse_backup(path.read_text(encoding="utf-8"))


async def import_backup(document: BackupDocument, coordinator: MutationCoordinator) -> int:
    """Replace settings and the watchlist with the document's contents."""

    known = {key: value for key, value in document.settings.items() if key in DEFAULT_SETTINGS}
    ignored = sorted(set(document.settings) - set(known))
    if ignored:
        LOGGER.warning("Ignoring unknown settings in backup: %s", ", ".join(ignored))
    if known:
        await coordinator.settings.update(known)

    imported_at = now_ms()
    items: dict[str, WatchlistItem] = {}
    for item_id, entry in document.watchlist.items():
        data = entry.model_dump()
        data["id"] = str(item_id)
        data["url"] = data["url"] or ""
        data["name"] = data["name"] or f"Item {item_id}"
        if data["added_at"] is None:
            data["added_at"] = data["last_checked"] or imported_at
        items[str(item_id)] = WatchlistItem(**data)

    count = await coordinator.replace_watchlist(items)
    LOGGER.info("Backup imported | items=%d settings=%d", count, len(known))
    return count
