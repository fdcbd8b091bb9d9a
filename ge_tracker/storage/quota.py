"""Quota-aware wrapper around the synced namespace."""

from __future__ import annotations

from typing import Any, Mapping

from ge_tracker.errors import QuotaExceededError, StorageError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import now_ms

from .kv import QUOTA_BYTES, KeyValueStore, Keys, SyncedStore, estimate_bytes

LOGGER = get_logger(__name__)

FALLBACK_KEY = "syncFallbackMode"
DEFAULT_SAFETY_MARGIN = 5_120


class QuotaGuard(KeyValueStore):
    """Send synced writes to the local namespace once the quota budget is spent.

    The switch is one-way: after the first overflow every read and write of
    this guard goes to local storage, and the flag persisted under
    ``syncFallbackMode`` keeps later processes in the same mode.
    """

    def __init__(
        self,
        synced: SyncedStore,
        local: KeyValueStore,
        *,
        quota_bytes: int | None = None,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        self._synced = synced
        self._local = local
        self.quota_bytes = quota_bytes if quota_bytes is not None else getattr(synced, "quota_bytes", QUOTA_BYTES)
        self.safety_margin = safety_margin
        self.namespace = synced.namespace
        self._fallback = False
        self._flag_loaded = False

    @property
    def budget_bytes(self) -> int:
        return max(0, self.quota_bytes - self.safety_margin)

    async def in_fallback(self) -> bool:
        if not self._flag_loaded:
            self._flag_loaded = True
            try:
                stored = await self._local.get(FALLBACK_KEY)
            except StorageError as exc:
                LOGGER.warning("Unable to read fallback flag: %s", exc)
                stored = {}
            flag = stored.get(FALLBACK_KEY)
            if isinstance(flag, Mapping) and flag.get("enabled"):
                self._fallback = True
                LOGGER.info(
                    "Synced storage fallback mode restored from local flag (since=%s)",
                    flag.get("since"),
                )
        return self._fallback

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        if await self.in_fallback():
            return await self._local.get(keys)
        try:
            return await self._synced.get(keys)
        except StorageError as exc:
            LOGGER.warning(
                "Synced read failed; reading local copy instead: %s",
                exc,
                extra={"namespace": self.namespace},
            )
            return await self._local.get(keys)

    async def set(self, items: Mapping[str, Any]) -> None:
        if await self.in_fallback():
            await self._local.set(items)
            return

        current = await self._synced.get()
        projected = estimate_bytes({**current, **items})
        if projected >= self.budget_bytes:
            await self._enter_fallback(
                f"projected {projected} bytes >= budget {self.budget_bytes} bytes", current
            )
            await self._local.set(items)
            return

        try:
            await self._synced.set(items)
        except QuotaExceededError as exc:
            await self._enter_fallback(str(exc), current)
            await self._local.set(items)

    async def remove(self, keys: Keys) -> None:
        if await self.in_fallback():
            await self._local.remove(keys)
            return
        await self._synced.remove(keys)

    async def _enter_fallback(self, reason: str, synced_snapshot: Mapping[str, Any]) -> None:
        existing = await self._local.get(list(synced_snapshot))
        seed = {key: value for key, value in synced_snapshot.items() if key not in existing}
        seed[FALLBACK_KEY] = {"enabled": True, "since": now_ms(), "reason": reason}
        await self._local.set(seed)
        self._fallback = True
        self._flag_loaded = True
        LOGGER.warning(
            "Synced storage quota exhausted; switching to local fallback mode: %s",
            reason,
            extra={"namespace": self.namespace},
        )
