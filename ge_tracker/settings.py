"""User settings stored in the synced namespace."""

from __future__ import annotations

import math
from typing import Any, Mapping

from ge_tracker.errors import StorageError, ValidationError
from ge_tracker.logging_config import get_logger
from ge_tracker.storage.kv import KeyValueStore

LOGGER = get_logger(__name__)

SETTINGS_KEY = "settings"
ALERT_TYPES = ("none", "above", "below", "both")
DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_SETTINGS: dict[str, Any] = {
    "updateInterval": 5,
    "backgroundUpdates": True,
    "desktopNotifications": True,
    "notificationLimit": 10,
    "defaultAlertType": "both",
    "alertThreshold": 10,
    "snoozeDuration": 900_000,
    "autoRemoveDays": 0,
}

class SettingsProvider:
    """Read settings fresh for every operation, with defaults merged in."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def get(self) -> dict[str, Any]:
        try:
            stored = (await self.store.get(SETTINGS_KEY)).get(SETTINGS_KEY)
        except StorageError as exc:
            LOGGER.error("Error reading settings; using defaults: %s", exc)
            return dict(DEFAULT_SETTINGS)
        if not isinstance(stored, Mapping):
            return dict(DEFAULT_SETTINGS)
        return {**DEFAULT_SETTINGS, **stored}

    async def update(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(changes) - set(DEFAULT_SETTINGS))
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(unknown)}", field=unknown[0])
        alert_type = changes.get("defaultAlertType")
        if alert_type is not None and alert_type not in ALERT_TYPES:
            raise ValidationError(
                f"defaultAlertType must be one of {', '.join(ALERT_TYPES)}",
                field="defaultAlertType",
            )
        settings = {**(await self.get()), **changes}
        await self.store.set({SETTINGS_KEY: settings})
        LOGGER.info("Settings updated: %s", ", ".join(sorted(changes)))
        return settings

def _number(settings: Mapping[str, Any], key: str) -> float:
    try:
        return float(settings.get(key, DEFAULT_SETTINGS[key]))
    except (TypeError, ValueError):
        return float(DEFAULT_SETTINGS[key])

def alert_threshold_pct(settings: Mapping[str, Any]) -> float:
    value = _number(settings, "alertThreshold")
    return value if value > 0 else float(DEFAULT_SETTINGS["alertThreshold"])

def snooze_ms(settings: Mapping[str, Any]) -> int:
    return max(0, int(_number(settings, "snoozeDuration")))

def update_interval_minutes(settings: Mapping[str, Any]) -> int:
    value = int(_number(settings, "updateInterval"))
    return value if value > 0 else int(DEFAULT_SETTINGS["updateInterval"])

def notification_limit(settings: Mapping[str, Any]) -> int:
    return max(0, int(_number(settings, "notificationLimit")))

def auto_remove_days(settings: Mapping[str, Any]) -> float:
    return max(0.0, _number(settings, "autoRemoveDays"))

def age_removal_enabled(settings: Mapping[str, Any]) -> bool:
    """Items older than ``autoRemoveDays`` days are dropped when the value is positive."""

    return auto_remove_days(settings) > 0

def remove_on_alert(settings: Mapping[str, Any]) -> bool:
    """``autoRemoveDays == 0`` doubles as "remove an item as soon as it alerts"."""

    return auto_remove_days(settings) == 0

def is_expired(added_at: int, now: int, settings: Mapping[str, Any]) -> bool:
    if not age_removal_enabled(settings):
        return False
    return now - added_at > auto_remove_days(settings) * DAY_MS

def derive_thresholds(
    current_price: float | None, settings: Mapping[str, Any]
) -> tuple[float | None, float | None]:
    """Return default (low, high) thresholds around *current_price*."""

    alert_type = settings.get("defaultAlertType", DEFAULT_SETTINGS["defaultAlertType"])
    if not current_price or alert_type not in ALERT_TYPES or alert_type == "none":
        return None, None
    pct = alert_threshold_pct(settings)
    low = high = None
    if alert_type in ("below", "both"):
        low = math.floor(current_price * (100 - pct) / 100)
    if alert_type in ("above", "both"):
        high = math.ceil(current_price * (100 + pct) / 100)
    return low, high
