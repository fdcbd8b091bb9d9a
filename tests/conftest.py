from __future__ import annotations

from types import SimpleNamespace
from typing import Awaitable, Callable

import pytest

from ge_tracker.alerts.notifier import Notifier
from ge_tracker.main import build_tracker
from ge_tracker.models import PricePoint
from ge_tracker.sources.grand_exchange import PriceFetch
from ge_tracker.storage.db import get_engine, init_db, make_session
from ge_tracker.storage.kv import LocalStore, SyncedStore
from ge_tracker.storage.quota import QuotaGuard

TEST_CONFIG = {
    "storage": {"synced_path": ":memory:", "local_path": ":memory:"},
    "fetch": {"request_delay": 0},
    "thresholds": {"confirm_delay": 0, "retry_base_delay": 0},
}


def make_history(*prices: int) -> list[PricePoint]:
    return [PricePoint(date=f"2024/01/{day:02d}", price=price) for day, price in enumerate(prices, start=1)]


class FakeSource:
    """Price source returning canned prices; ``on_fetch`` runs before each answer."""

    def __init__(self) -> None:
        self.prices: dict[str, int] = {}
        self.histories: dict[str, list[PricePoint]] = {}
        self.calls: list[str] = []
        self.on_fetch: Callable[[str], Awaitable[None]] | None = None

    async def fetch(self, item_id: str) -> PriceFetch | None:
        self.calls.append(item_id)
        if self.on_fetch is not None:
            await self.on_fetch(item_id)
        price = self.prices.get(item_id)
        if price is None:
            return None
        return PriceFetch(current_price=price, price_history=list(self.histories.get(item_id, [])))


class RecordingTransport:
    name = "recording"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, title: str, message: str, kind: str) -> None:
        self.sent.append((kind, title, message))


class RecordingNotifier(Notifier):
    def __init__(self, **kwargs) -> None:
        self.recorder = RecordingTransport()
        super().__init__(transport=self.recorder, **kwargs)

    @property
    def sent(self) -> list[tuple[str, str, str]]:
        return self.recorder.sent

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _subject, _message in self.sent]


@pytest.fixture(autouse=True)
def _no_alert_transport(monkeypatch):
    for name in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "SENDGRID_API_KEY", "SENDGRID_TO", "SENDGRID_FROM"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def tracker(source, notifier):
    return build_tracker(TEST_CONFIG, source=source, notifier=notifier)


@pytest.fixture()
def kv_stores():
    synced_engine = get_engine(":memory:")
    local_engine = get_engine(":memory:")
    init_db(synced_engine)
    init_db(local_engine)
    local = LocalStore(make_session(local_engine))
    synced = SyncedStore(make_session(synced_engine), quota_bytes=2_000)
    try:
        yield SimpleNamespace(
            synced=synced,
            local=local,
            guard=QuotaGuard(synced, local, safety_margin=200),
        )
    finally:
        synced_engine.dispose()
        local_engine.dispose()
