import asyncio

import pytest

from ge_tracker.errors import ValidationError
from ge_tracker.settings import (
    DAY_MS,
    DEFAULT_SETTINGS,
    derive_thresholds,
    is_expired,
    remove_on_alert,
    update_interval_minutes,
)


def test_defaults_are_merged_with_stored_values(tracker) -> None:
    async def _scenario():
        fresh = await tracker.settings.get()
        await tracker.settings.update({"alertThreshold": 5})
        return fresh, await tracker.settings.get()

    fresh, updated = asyncio.run(_scenario())

    assert fresh == DEFAULT_SETTINGS
    assert updated["alertThreshold"] == 5
    assert updated["snoozeDuration"] == 900_000


def test_update_rejects_unknown_keys_and_alert_types(tracker) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(tracker.settings.update({"theme": "dark"}))
    with pytest.raises(ValidationError):
        asyncio.run(tracker.settings.update({"defaultAlertType": "sideways"}))


@pytest.mark.parametrize(
    ("alert_type", "expected"),
    [("both", (900, 1_100)), ("below", (900, None)), ("above", (None, 1_100)), ("none", (None, None))],
)
def test_derive_thresholds(alert_type, expected) -> None:
    settings = {**DEFAULT_SETTINGS, "defaultAlertType": alert_type}
    assert derive_thresholds(1_000, settings) == expected


def test_derive_thresholds_rounds_outward() -> None:
    settings = {**DEFAULT_SETTINGS, "alertThreshold": 15}
    assert derive_thresholds(333, settings) == (283, 383)
    assert derive_thresholds(None, settings) == (None, None)


def test_auto_remove_days_policies() -> None:
    immediate = {**DEFAULT_SETTINGS}
    by_age = {**DEFAULT_SETTINGS, "autoRemoveDays": 7}

    assert remove_on_alert(immediate) is True
    assert is_expired(0, 100 * DAY_MS, immediate) is False
    assert remove_on_alert(by_age) is False
    assert is_expired(0, 8 * DAY_MS, by_age) is True
    assert is_expired(0, 6 * DAY_MS, by_age) is False


def test_update_interval_falls_back_to_default() -> None:
    assert update_interval_minutes({"updateInterval": 0}) == 5
    assert update_interval_minutes({"updateInterval": "15"}) == 15
