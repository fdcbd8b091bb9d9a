"""Periodic price refresh over the whole watchlist."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from ge_tracker.alerts.notifier import (
    Notifier,
    change_alert_message,
    high_alert_message,
    low_alert_message,
)
from ge_tracker.analysis import analyze
from ge_tracker.coordinator import MutationCoordinator
from ge_tracker.errors import StorageError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import PricePoint, RefreshSummary, WatchlistItem, canonical_image_url, now_ms
from ge_tracker.settings import alert_threshold_pct, is_expired, remove_on_alert, snooze_ms

LOGGER = get_logger(__name__)


def count_active_alerts(watchlist: Mapping[str, WatchlistItem]) -> int:
    """Number of items whose current price sits at or beyond a threshold."""

    count = 0
    for item in watchlist.values():
        price = item.current_price
        if price is None:
            continue
        if (item.low_threshold and price <= item.low_threshold) or (
            item.high_threshold and price >= item.high_threshold
        ):
            count += 1
    return count


@dataclass
class _ItemOutcome:
    fields: dict[str, Any] = field(default_factory=dict)
    history: list[PricePoint] | None = None
    fetched: bool = True
    price_changed: bool = False
    alerts: int = 0
    remove: bool = False


class RefreshCycle:
    """Fetch every item once, raise alerts, and commit the results in one batch."""

    def __init__(
        self,
        coordinator: MutationCoordinator,
        source: Any,
        notifier: Notifier,
        *,
        clock: Callable[[], int] = now_ms,
        request_delay: float = 1.0,
    ) -> None:
        self.coordinator = coordinator
        self.merger = coordinator.merger
        self.metadata_store = coordinator.metadata_store
        self.settings = coordinator.settings
        self.source = source
        self.notifier = notifier
        self._clock = clock
        self.request_delay = request_delay

    async def run(self) -> RefreshSummary:
        summary = RefreshSummary()
        settings = await self.settings.get()
        self.notifier.configure(settings)

        watchlist = await self.merger.get_watchlist()
        if not watchlist:
            LOGGER.info("No items to check")
            return summary

        try:
            stored_images = {
                item_id: meta.image_url for item_id, meta in (await self.metadata_store.get_all()).items()
            }
        except StorageError as exc:
            LOGGER.warning("Could not read stored image URLs; skipping self-heal: %s", exc)
            stored_images = {}

        baseline = {item_id: item.last_threshold_update for item_id, item in watchlist.items()}
        cycle_start = self._clock()
        removals = [
            item_id for item_id, item in watchlist.items() if is_expired(item.added_at, cycle_start, settings)
        ]
        for item_id in removals:
            LOGGER.info("Auto-removing item past its age limit", extra={"item_id": item_id})

        LOGGER.info("Starting price check cycle | items=%d", len(watchlist) - len(removals))
        updates: dict[str, dict[str, Any]] = {}
        histories: dict[str, list[PricePoint]] = {}
        remaining = [item for item_id, item in watchlist.items() if item_id not in removals]
        for index, item in enumerate(remaining):
            if index and self.request_delay > 0:
                await asyncio.sleep(self.request_delay)
            summary.checked += 1
            try:
                outcome = await self._process_item(item, settings, stored_images.get(item.id))
            except Exception:
                LOGGER.exception("Unexpected error refreshing item", extra={"item_id": item.id})
                summary.failed += 1
                continue

            if not outcome.fetched:
                summary.failed += 1
            if outcome.price_changed:
                summary.updated += 1
            summary.alerts += outcome.alerts
            if outcome.fields:
                updates[item.id] = outcome.fields
            if outcome.history:
                histories[item.id] = outcome.history
            if outcome.remove:
                removals.append(item.id)

        if updates or removals:
            _updated, summary.removed = await self.coordinator.apply_bulk_update(
                updates, removals, histories=histories, baseline=baseline
            )

        summary.active_alerts = count_active_alerts(await self.merger.get_watchlist())
        LOGGER.info(
            "Price check complete | checked=%d updated=%d failed=%d alerts=%d removed=%d",
            summary.checked,
            summary.updated,
            summary.failed,
            summary.alerts,
            len(summary.removed),
        )
        return summary

    async def _process_item(
        self, item: WatchlistItem, settings: Mapping[str, Any], stored_image: str | None
    ) -> _ItemOutcome:
        outcome = _ItemOutcome()
        canonical_image = canonical_image_url(item.id)
        if stored_image != canonical_image:
            LOGGER.debug("Queueing image URL repair", extra={"item_id": item.id})
            outcome.fields["image_url"] = canonical_image

        fetched = await self.source.fetch(item.id)
        if fetched is None:
            LOGGER.info("Failed to fetch price for %s", item.name, extra={"item_id": item.id})
            outcome.fetched = False
            return outcome

        now = self._clock()
        price = fetched.current_price
        previous = item.current_price
        outcome.price_changed = price != previous
        outcome.fields["last_checked"] = now
        if outcome.price_changed:
            LOGGER.info("Price update for %s: %s -> %s", item.name, previous, price, extra={"item_id": item.id})
            outcome.fields["previous_price"] = previous
            outcome.fields["current_price"] = price

        if fetched.price_history:
            outcome.history = fetched.price_history
            outcome.fields["last_history_update"] = now
            if outcome.price_changed or item.price_analysis is None:
                analysis = analyze(fetched.price_history)
                outcome.fields["price_analysis"] = analysis.to_dict() if analysis else None

        snooze = snooze_ms(settings)
        crossed = False
        if item.low_threshold and price <= item.low_threshold:
            crossed = True
            if item.last_low_alert is not None and now - item.last_low_alert < snooze:
                LOGGER.debug("Low alert snoozed", extra={"item_id": item.id})
            else:
                title, message = low_alert_message(item.name, price, item.low_threshold)
                self.notifier.notify(title, message, "low")
                outcome.fields["last_low_alert"] = now
                outcome.alerts += 1
        if item.high_threshold and price >= item.high_threshold:
            crossed = True
            if item.last_high_alert is not None and now - item.last_high_alert < snooze:
                LOGGER.debug("High alert snoozed", extra={"item_id": item.id})
            else:
                title, message = high_alert_message(item.name, price, item.high_threshold)
                self.notifier.notify(title, message, "high")
                outcome.fields["last_high_alert"] = now
                outcome.alerts += 1

        if outcome.alerts and remove_on_alert(settings):
            LOGGER.info("Auto-removing %s after threshold alert", item.name, extra={"item_id": item.id})
            outcome.remove = True

        # A snoozed crossing also mutes the percentage alert.
        if not crossed and outcome.price_changed and previous:
            change_pct = abs(price - previous) / previous * 100
            if change_pct >= alert_threshold_pct(settings):
                title, message = change_alert_message(item.name, previous, price)
                self.notifier.notify(title, message, "change")

        return outcome
