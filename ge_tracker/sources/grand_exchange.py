"""Grand Exchange item page fetcher."""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import requests
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from ge_tracker.errors import FetchError
from ge_tracker.logging_config import get_logger
from ge_tracker.models import PricePoint, canonical_item_url

LOGGER = get_logger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_AVERAGE30_RE = re.compile(
    r"average30\.push\(\[new Date\(['\"]?([^'\")]+)['\"]?\),\s*(\d+),\s*(\d+)\]\)"
)
_TRADE30_RE = re.compile(r"trade30\.push\(\[new Date\(['\"]?([^'\")]+)['\"]?\),\s*(\d+)\]\)")
_GUIDE_PRICE_RE = re.compile(
    r"Current\s+Guide\s+Price[^0-9]*([0-9,]+(?:\.[0-9]+)?)\s*([KMB])?", re.I
)
_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}
_DATE_FORMATS = ("%Y/%m/%d", "%Y-%m-%d", "%m/%d/%Y")


class ServerError(FetchError):
    """A 5xx response; the only failure worth another attempt."""


@dataclass
class PriceFetch:
    current_price: int
    price_history: list[PricePoint] = field(default_factory=list)


def _date_to_ms(text: str) -> int | None:
    cleaned = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            stamp = datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        return int(stamp.timestamp() * 1000)
    return None


def parse_guide_price(html: str) -> int | None:
    match = _GUIDE_PRICE_RE.search(html)
    if not match:
        return None
    try:
        value = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    unit = (match.group(2) or "").upper()
    return int(value * _MULTIPLIERS.get(unit, 1))


def parse_item_page(html: str) -> PriceFetch | None:
    """Extract the 30-day price series (and volumes) from an item page."""

    volumes = {date: int(volume) for date, volume in _TRADE30_RE.findall(html)}
    history = [
        PricePoint(
            date=date,
            price=int(price),
            volume=volumes.get(date),
            timestamp=_date_to_ms(date),
        )
        for date, price, _average in _AVERAGE30_RE.findall(html)
    ]
    if history:
        return PriceFetch(current_price=history[-1].price, price_history=history)

    guide_price = parse_guide_price(html)
    if guide_price is None:
        return None
    return PriceFetch(current_price=guide_price)


class GrandExchangeSource:
    """Fetch current price and history for an item id; never raises."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        attempts: int = 2,
        backoff_seconds: float = 1.0,
        user_agent: str | None = None,
        session: Any | None = None,
    ) -> None:
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self.user_agent = user_agent or os.getenv("USER_AGENT") or DEFAULT_USER_AGENT
        self._session = session or requests.Session()

    async def fetch(self, item_id: str) -> PriceFetch | None:
        url = canonical_item_url(item_id)
        try:
            html = await self._fetch_html(item_id, url)
        except FetchError as exc:
            LOGGER.warning("%s", exc, extra={"item_id": item_id, "url": url})
            return None
        except requests.RequestException as exc:
            LOGGER.warning(
                "Network error fetching item %s: %s",
                item_id,
                exc,
                extra={"item_id": item_id, "url": url},
            )
            return None

        result = parse_item_page(html)
        if result is None:
            LOGGER.warning("No price found on item page %s", item_id, extra={"item_id": item_id, "url": url})
            return None
        LOGGER.debug(
            "Fetched item %s | price=%s history_points=%d",
            item_id,
            result.current_price,
            len(result.price_history),
        )
        return result

    async def _fetch_html(self, item_id: str, url: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type(ServerError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await asyncio.to_thread(
                    self._session.get,
                    url,
                    headers={"User-Agent": self.user_agent},
                    timeout=self.timeout,
                )
                if response.status_code >= 500:
                    raise ServerError(item_id, status=response.status_code, url=url)
                if response.status_code >= 400:
                    raise FetchError(item_id, status=response.status_code, url=url)
                return response.text
        raise FetchError(item_id, url=url)
