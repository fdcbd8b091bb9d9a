import asyncio
import json

import pytest

from ge_tracker.backup import BACKUP_VERSION, export_backup, import_backup, parse_backup, read_backup, write_backup
from ge_tracker.errors import ValidationError
from ge_tracker.storage.repo import history_key
from ge_tracker.watchlist import LEGACY_WATCHLIST_KEY


def test_export_then_import_restores_watchlist_and_settings(tracker, tmp_path) -> None:
    path = tmp_path / "backup.json"

    async def _scenario():
        await tracker.settings.update({"alertThreshold": 7})
        await tracker.coordinator.add_item({"id": "4151", "name": "Abyssal whip", "current_price": 1_000})
        await tracker.coordinator.update_thresholds("4151", 800, 1_300)
        write_backup(await export_backup(tracker.merger, tracker.settings), path)

        await tracker.coordinator.remove_item("4151")
        await tracker.coordinator.add_item({"id": "11840", "name": "Dragon boots", "current_price": 5})
        await tracker.settings.update({"alertThreshold": 50})

        count = await import_backup(read_backup(path), tracker.coordinator)
        return count, await tracker.merger.get_watchlist(), await tracker.settings.get()

    count, watchlist, settings = asyncio.run(_scenario())

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == BACKUP_VERSION
    assert set(document) == {"watchlist", "settings", "exportDate", "version", "exportSource"}
    assert document["watchlist"]["4151"]["lowThreshold"] == 800
    assert count == 1
    assert set(watchlist) == {"4151"}
    whip = watchlist["4151"]
    assert (whip.low_threshold, whip.high_threshold) == (800, 1_300)
    assert whip.current_price == 1_000
    assert settings["alertThreshold"] == 7


def test_legacy_record_is_exported_as_is(tracker) -> None:
    async def _scenario():
        await tracker.synced.set({LEGACY_WATCHLIST_KEY: {"4151": {"name": "Abyssal whip", "currentPrice": 9}}})
        return await export_backup(tracker.merger, tracker.settings)

    document = asyncio.run(_scenario())

    assert document.watchlist["4151"].name == "Abyssal whip"
    assert document.watchlist["4151"].current_price == 9


def test_import_fills_missing_fields_and_drops_stale_histories(tracker, source) -> None:
    source.prices["1"] = 10
    source.histories["1"] = []
    raw = json.dumps(
        {
            "watchlist": {"2": {"currentPrice": 42}},
            "settings": {"unknownKey": True},
            "exportDate": "2024-01-01T00:00:00+00:00",
            "version": "1.0.2",
        }
    )

    async def _scenario():
        await tracker.coordinator.add_item({"id": "1", "name": "Old"})
        await tracker.local.set({history_key("1"): [{"date": "2024/01/01", "price": 10}]})
        await import_backup(parse_backup(raw), tracker.coordinator)
        return await tracker.merger.get_watchlist(), await tracker.local.get()

    watchlist, local = asyncio.run(_scenario())

    assert set(watchlist) == {"2"}
    assert watchlist["2"].name == "Item 2"
    assert watchlist["2"].current_price == 42
    assert history_key("1") not in local


def test_invalid_backup_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_backup('{"watchlist": {}}')
    with pytest.raises(ValidationError):
        parse_backup("not json")
