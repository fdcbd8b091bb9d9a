"""Command-line interface entry point for the GE Tracker."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from ge_tracker.alerts.notifier import Notifier, format_gp
from ge_tracker.backup import export_backup, import_backup, read_backup, write_backup
from ge_tracker.coordinator import MutationCoordinator
from ge_tracker.errors import TrackerError
from ge_tracker.logging_config import get_logger
from ge_tracker.refresh import RefreshCycle, count_active_alerts
from ge_tracker.settings import SettingsProvider, update_interval_minutes
from ge_tracker.sources.grand_exchange import GrandExchangeSource
from ge_tracker.storage.db import get_engine, has_kv_table, init_db, make_session
from ge_tracker.storage.kv import QUOTA_BYTES, LocalStore, SyncedStore
from ge_tracker.storage.quota import DEFAULT_SAFETY_MARGIN, QuotaGuard
from ge_tracker.storage.repo import MetadataStore, PriceStore
from ge_tracker.watchlist import LegacyMigrator, WatchlistMerger

LOGGER = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yml")
PRICE_CHECK_JOB = "price_check"


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the tracker."""

    parser = argparse.ArgumentParser(description="Track Grand Exchange item prices.")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the YAML configuration file.",
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--once",
        action="store_true",
        help="Run a single price check instead of on a schedule.",
    )
    actions.add_argument("--add", metavar="ID", help="Add an item to the watchlist.")
    actions.add_argument("--remove", metavar="ID", help="Remove an item from the watchlist.")
    actions.add_argument(
        "--thresholds",
        nargs=3,
        metavar=("ID", "LOW", "HIGH"),
        help="Set low/high alert thresholds for an item (use '-' to clear one).",
    )
    actions.add_argument("--list", action="store_true", help="Print the watchlist.")
    actions.add_argument("--export", type=Path, metavar="PATH", help="Write a JSON backup.")
    actions.add_argument(
        "--import",
        dest="import_path",
        type=Path,
        metavar="PATH",
        help="Replace the watchlist and settings from a JSON backup.",
    )
    parser.add_argument("--name", help="Item name for --add.")
    parser.add_argument("--url", help="Item page URL for --add.")
    parser.add_argument("--price", type=float, help="Known current price for --add.")

    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.add is None and (args.name or args.url or args.price is not None):
        parser.error("--name, --url and --price are only valid with --add")
    if args.price is not None and args.price < 0:
        parser.error("--price must not be negative")
    return args


def _load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        LOGGER.warning("Config file %s not found; using defaults", path)
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _parse_threshold(value: str) -> str | None:
    text = value.strip()
    return None if text in ("", "-", "none") else text


@dataclass
class Tracker:
    """The wired-up object graph used by the CLI and the scheduler."""

    synced: QuotaGuard
    local: LocalStore
    merger: WatchlistMerger
    settings: SettingsProvider
    coordinator: MutationCoordinator
    notifier: Notifier
    refresh: RefreshCycle


def build_tracker(
    config: dict[str, Any],
    *,
    source: Any | None = None,
    notifier: Notifier | None = None,
) -> Tracker:
    storage_conf = config.get("storage") or {}
    fetch_conf = config.get("fetch") or {}
    threshold_conf = config.get("thresholds") or {}
    busy_timeout = float(storage_conf.get("busy_timeout", 30))

    synced_engine = get_engine(str(storage_conf.get("synced_path", "ge_tracker_sync.sqlite")), busy_timeout=busy_timeout)
    local_engine = get_engine(str(storage_conf.get("local_path", "ge_tracker_local.sqlite")), busy_timeout=busy_timeout)
    for engine in (synced_engine, local_engine):
        if not has_kv_table(engine):
            LOGGER.info("Creating key-value table | url=%s", engine.url)
            init_db(engine)

    local = LocalStore(make_session(local_engine))
    synced = QuotaGuard(
        SyncedStore(make_session(synced_engine), quota_bytes=int(storage_conf.get("quota_bytes", QUOTA_BYTES))),
        local,
        safety_margin=int(storage_conf.get("safety_margin", DEFAULT_SAFETY_MARGIN)),
    )
    metadata_store = MetadataStore(synced)
    price_store = PriceStore(local)
    merger = WatchlistMerger(metadata_store, price_store, LegacyMigrator(synced, metadata_store, price_store))
    settings = SettingsProvider(synced)

    if source is None:
        source = GrandExchangeSource(
            timeout=float(fetch_conf.get("timeout", 10)),
            attempts=int(fetch_conf.get("attempts", 2)),
            backoff_seconds=float(fetch_conf.get("backoff_seconds", 1.0)),
        )
    coordinator = MutationCoordinator(
        merger,
        settings,
        source,
        confirm_delay=float(threshold_conf.get("confirm_delay", 0.05)),
        retry_base_delay=float(threshold_conf.get("retry_base_delay", 0.1)),
        max_attempts=int(threshold_conf.get("max_attempts", 3)),
    )
    notifier = notifier or Notifier()
    refresh = RefreshCycle(
        coordinator,
        source,
        notifier,
        request_delay=float(fetch_conf.get("request_delay", 1.0)),
    )
    return Tracker(synced, local, merger, settings, coordinator, notifier, refresh)


async def _print_watchlist(tracker: Tracker) -> None:
    watchlist = await tracker.merger.get_watchlist()
    if not watchlist:
        print("Watchlist is empty.")
        return
    for item in sorted(watchlist.values(), key=lambda entry: entry.name.lower()):
        print(
            f"{item.id:>8}  {item.name:<32} {format_gp(item.current_price):>16}"
            f"  low={format_gp(item.low_threshold)} high={format_gp(item.high_threshold)}"
        )
    print(f"{len(watchlist)} item(s), {count_active_alerts(watchlist)} at or beyond a threshold")


async def _run_cycle(tracker: Tracker) -> None:
    summary = await tracker.refresh.run()
    LOGGER.info("Active alerts: %d", summary.active_alerts)


def _sync_interval(scheduler: AsyncIOScheduler, settings: Mapping[str, Any]) -> bool:
    """Reschedule the price check job if ``updateInterval`` changed; True when it did."""

    minutes = update_interval_minutes(settings)
    job = scheduler.get_job(PRICE_CHECK_JOB)
    if job is None or job.trigger.interval == timedelta(minutes=minutes):
        return False
    scheduler.reschedule_job(PRICE_CHECK_JOB, trigger="interval", minutes=minutes)
    LOGGER.info("Update interval changed; price check rescheduled every %s minutes", minutes)
    return True


async def _scheduled_cycle(tracker: Tracker, scheduler: AsyncIOScheduler) -> None:
    # Settings are re-read every tick so edits from another process apply.
    try:
        settings = await tracker.settings.get()
        _sync_interval(scheduler, settings)
        if not settings.get("backgroundUpdates", True):
            LOGGER.info("Background updates disabled; skipping scheduled price check")
            return
        await _run_cycle(tracker)
    except Exception:
        LOGGER.exception("Scheduled price check failed")


async def _run_command(args: argparse.Namespace, tracker: Tracker) -> bool:
    """Run a one-shot command; returns False when none was requested."""

    if args.add is not None:
        item = await tracker.coordinator.add_item(
            {"id": args.add, "name": args.name, "url": args.url, "current_price": args.price}
        )
        print(json.dumps(item.to_dict(), indent=2))
    elif args.remove is not None:
        removed = await tracker.coordinator.remove_item(args.remove)
        print("Removed." if removed else "Item was not on the watchlist.")
    elif args.thresholds is not None:
        item_id, low, high = args.thresholds
        item = await tracker.coordinator.update_thresholds(
            item_id, _parse_threshold(low), _parse_threshold(high)
        )
        print(f"{item.name}: low={format_gp(item.low_threshold)} high={format_gp(item.high_threshold)}")
    elif args.list:
        await _print_watchlist(tracker)
    elif args.export is not None:
        write_backup(await export_backup(tracker.merger, tracker.settings), args.export)
    elif args.import_path is not None:
        count = await import_backup(read_backup(args.import_path), tracker.coordinator)
        print(f"Imported {count} item(s).")
    elif args.once:
        await _run_cycle(tracker)
    else:
        return False
    return True


async def _async_main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()

    config = _load_config(args.config)
    tracker = build_tracker(config)

    try:
        if await _run_command(args, tracker):
            return 0
    except TrackerError as exc:
        LOGGER.error("%s", exc)
        return 1

    try:
        await _run_cycle(tracker)
    except Exception:
        LOGGER.exception("Initial price check failed")
        raise

    settings = await tracker.settings.get()
    if not settings.get("backgroundUpdates", True):
        LOGGER.info("Background updates disabled; exiting after the initial check")
        return 0

    interval_minutes = update_interval_minutes(settings)
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        _scheduled_cycle,
        "interval",
        minutes=interval_minutes,
        args=[tracker, scheduler],
        id=PRICE_CHECK_JOB,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    LOGGER.info("Scheduler started with interval=%s minutes", interval_minutes)

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        LOGGER.info("Shutdown signal received; stopping scheduler")
    finally:
        scheduler.shutdown(wait=False)
    return 0


def main() -> None:
    try:
        raise SystemExit(asyncio.run(_async_main()))
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")


if __name__ == "__main__":
    main()
