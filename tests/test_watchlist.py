import asyncio

from ge_tracker.errors import StorageError
from ge_tracker.models import ItemMetadata, PriceRecord, canonical_image_url, canonical_item_url
from ge_tracker.storage.repo import METADATA_KEY, PRICE_DATA_KEY
from ge_tracker.watchlist import LEGACY_WATCHLIST_KEY


LEGACY = {
    "4151": {
        "id": "4151",
        "name": "Abyssal whip",
        "url": "https://secure.runescape.com/m=itemdb_rs/viewitem?obj=4151",
        "addedAt": 1_700_000_000_000,
        "lowThreshold": 1_400_000,
        "highThreshold": 1_700_000,
        "currentPrice": 1_500_000,
        "lastChecked": 1_700_000_100_000,
        "lastLowAlert": 1_700_000_050_000,
    },
    "11840": {"name": "Dragon boots", "currentPrice": 250_000},
}


def test_watchlist_is_keyed_by_metadata_only(tracker) -> None:
    metadata_store = tracker.merger.metadata_store
    price_store = tracker.merger.price_store

    async def _scenario():
        await metadata_store.save_many(
            {
                "4151": ItemMetadata(id="4151", name="Abyssal whip", added_at=1_000, image_url="stale.gif"),
                "11840": ItemMetadata(id="11840", name="Dragon boots", added_at=2_000),
            }
        )
        await price_store.save_many(
            {
                "4151": PriceRecord(current_price=1_500_000, last_checked=5_000),
                "999": PriceRecord(current_price=1),
            }
        )
        return await tracker.merger.get_watchlist()

    watchlist = asyncio.run(_scenario())

    assert set(watchlist) == {"4151", "11840"}
    whip = watchlist["4151"]
    assert whip.current_price == 1_500_000
    assert whip.last_checked == 5_000
    assert whip.image_url == canonical_image_url("4151")
    assert whip.url == canonical_item_url("4151")
    boots = watchlist["11840"]
    assert boots.current_price is None
    assert boots.last_checked == 2_000


def test_incomplete_metadata_records_are_skipped(tracker) -> None:
    async def _scenario():
        await tracker.synced.set(
            {
                METADATA_KEY: {
                    "1": {"id": "1", "name": "Complete", "addedAt": 10},
                    "2": {"id": "2", "addedAt": 10},
                    "3": {"name": "No date"},
                }
            }
        )
        return await tracker.merger.get_watchlist()

    assert set(asyncio.run(_scenario())) == {"1"}


def test_legacy_record_is_split_and_removed(tracker) -> None:
    async def _scenario():
        await tracker.synced.set({LEGACY_WATCHLIST_KEY: LEGACY})
        watchlist = await tracker.merger.get_watchlist()
        synced = await tracker.synced.get()
        local = await tracker.local.get(PRICE_DATA_KEY)
        return watchlist, synced, local[PRICE_DATA_KEY]

    watchlist, synced, prices = asyncio.run(_scenario())

    assert LEGACY_WATCHLIST_KEY not in synced
    assert set(watchlist) == {"4151", "11840"}
    whip_meta = synced[METADATA_KEY]["4151"]
    assert whip_meta["lowThreshold"] == 1_400_000
    assert "currentPrice" not in whip_meta
    assert prices["4151"]["lastLowAlert"] == 1_700_000_050_000
    assert "name" not in prices["4151"]
    assert watchlist["11840"].added_at is not None
    assert watchlist["11840"].current_price == 250_000
    assert synced[METADATA_KEY]["11840"]["imageUrl"] == canonical_image_url("11840")


def test_migration_is_idempotent(tracker) -> None:
    migrator = tracker.merger.migrator

    async def _scenario():
        await migrator.migrate(LEGACY)
        first = (await tracker.synced.get(METADATA_KEY), await tracker.local.get(PRICE_DATA_KEY))
        await migrator.migrate(LEGACY)
        second = (await tracker.synced.get(METADATA_KEY), await tracker.local.get(PRICE_DATA_KEY))
        return first, second

    first, second = asyncio.run(_scenario())

    assert first == second
    assert set(first[0][METADATA_KEY]) == {"4151", "11840"}


def test_read_failure_returns_empty_watchlist(tracker, monkeypatch) -> None:
    async def _broken():
        raise StorageError("disk gone", namespace="local")

    async def _scenario():
        await tracker.merger.metadata_store.save(
            "4151", ItemMetadata(id="4151", name="Abyssal whip", added_at=1)
        )
        monkeypatch.setattr(tracker.merger.price_store, "get_all", _broken)
        return await tracker.merger.get_watchlist()

    assert asyncio.run(_scenario()) == {}
