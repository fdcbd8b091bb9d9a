import asyncio
from datetime import timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ge_tracker.main import (
    DEFAULT_CONFIG_PATH,
    PRICE_CHECK_JOB,
    _load_config,
    _parse_threshold,
    _run_command,
    _scheduled_cycle,
    _sync_interval,
    parse_args,
)


def test_parse_args_add_with_details() -> None:
    args = parse_args(["--add", "4151", "--name", "Abyssal whip", "--price", "1500000"])

    assert args.add == "4151"
    assert args.name == "Abyssal whip"
    assert args.price == 1_500_000


def test_parse_args_rejects_add_options_without_add() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--name", "Abyssal whip"])


def test_parse_args_actions_are_exclusive() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--once", "--list"])


def test_parse_threshold_clears_on_dash() -> None:
    assert _parse_threshold("-") is None
    assert _parse_threshold(" 1200 ") == "1200"


def test_default_config_loads() -> None:
    config = _load_config(DEFAULT_CONFIG_PATH)

    assert config["storage"]["quota_bytes"] == 102_400
    assert config["thresholds"]["max_attempts"] == 3


def test_missing_config_gives_defaults(tmp_path) -> None:
    assert _load_config(tmp_path / "absent.yml") == {}


def test_commands_add_threshold_and_list(tracker, capsys) -> None:
    async def _scenario():
        await _run_command(parse_args(["--add", "4151", "--name", "Abyssal whip", "--price", "1000"]), tracker)
        await _run_command(parse_args(["--thresholds", "4151", "800", "-"]), tracker)
        await _run_command(parse_args(["--list"]), tracker)
        return await _run_command(parse_args([]), tracker)

    handled = asyncio.run(_scenario())
    output = capsys.readouterr().out

    assert handled is False
    assert "Abyssal whip: low=800 gp high=unknown" in output
    assert "1 item(s), 0 at or beyond a threshold" in output


def _scheduler_with_job(minutes: int) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(_scheduled_cycle, "interval", minutes=minutes, args=[None, None], id=PRICE_CHECK_JOB)
    return scheduler


def test_sync_interval_reschedules_only_on_change() -> None:
    scheduler = _scheduler_with_job(5)

    unchanged = _sync_interval(scheduler, {"updateInterval": 5})
    changed = _sync_interval(scheduler, {"updateInterval": 30})

    assert unchanged is False
    assert changed is True
    assert scheduler.get_job(PRICE_CHECK_JOB).trigger.interval == timedelta(minutes=30)


def test_scheduled_cycle_rereads_settings_each_tick(tracker, source) -> None:
    scheduler = _scheduler_with_job(5)

    async def _scenario():
        await tracker.coordinator.add_item({"id": "4151", "name": "Abyssal whip", "current_price": 1_000})
        await tracker.settings.update({"updateInterval": 15, "backgroundUpdates": False})
        await _scheduled_cycle(tracker, scheduler)
        skipped_calls = list(source.calls)
        await tracker.settings.update({"backgroundUpdates": True})
        await _scheduled_cycle(tracker, scheduler)
        return skipped_calls

    skipped_calls = asyncio.run(_scenario())

    assert skipped_calls == []
    assert source.calls == ["4151"]
    assert scheduler.get_job(PRICE_CHECK_JOB).trigger.interval == timedelta(minutes=15)
