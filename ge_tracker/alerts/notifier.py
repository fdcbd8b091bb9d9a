"""Price alert delivery with an hourly cap."""

from __future__ import annotations

import html
import os
import time
from collections import deque
from typing import Any, Callable, Mapping

import requests

from ge_tracker.logging_config import get_logger

LOGGER = get_logger(__name__)

HOUR_SECONDS = 60 * 60
TELEGRAM_LIMIT = 400
SEND_TIMEOUT = 8


class LogTransport:
    name = "log"

    def send(self, title: str, message: str, kind: str) -> None:
        LOGGER.info("Alert [%s] %s | %s", kind, title, message)


class TelegramTransport:
    name = "telegram"

    def __init__(self, token: str, chat_id: str) -> None:
        self.url = f"https://api.telegram.org/bot{token}/sendMessage"
        self.chat_id = chat_id

    def send(self, title: str, message: str, kind: str) -> None:
        text = f"{title}\n{message}"
        if len(text) > TELEGRAM_LIMIT:
            text = f"{text[:TELEGRAM_LIMIT - 3]}..."
        try:
            response = requests.post(
                self.url,
                json={"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True},
                timeout=SEND_TIMEOUT,
            )
        except requests.RequestException as exc:
            LOGGER.error("Telegram alert failed: %s", exc)
            return
        if response.status_code != 200:
            LOGGER.warning("Telegram rejected alert (%s): %s", response.status_code, response.text)


class SendGridTransport:
    name = "sendgrid"
    endpoint = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, sender: str, recipient: str) -> None:
        self.api_key = api_key
        self.sender = sender
        self.recipient = recipient

    def send(self, title: str, message: str, kind: str) -> None:
        payload = {
            "from": {"email": self.sender},
            "personalizations": [{"to": [{"email": self.recipient}], "subject": title}],
            "content": [{"type": "text/html", "value": f"<p>{html.escape(message)}</p>"}],
        }
        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=SEND_TIMEOUT,
            )
        except requests.RequestException as exc:
            LOGGER.error("SendGrid alert failed: %s", exc)
            return
        if not 200 <= response.status_code < 300:
            LOGGER.warning("SendGrid rejected alert (%s): %s", response.status_code, response.text)


def transport_from_env() -> Any:
    """Pick Telegram, then SendGrid, then plain logging from the environment."""

    token = os.getenv("TELEGRAM_BOT_TOKEN")
    chat_id = os.getenv("TELEGRAM_CHAT_ID")
    if token and chat_id:
        return TelegramTransport(token, chat_id)
    api_key = os.getenv("SENDGRID_API_KEY")
    sender = os.getenv("SENDGRID_FROM")
    recipient = os.getenv("SENDGRID_TO")
    if api_key and sender and recipient:
        return SendGridTransport(api_key, sender, recipient)
    return LogTransport()


class Notifier:
    """Send alerts through one transport, at most ``hourly_limit`` per rolling hour."""

    def __init__(
        self,
        *,
        hourly_limit: int = 10,
        enabled: bool = True,
        transport: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport or transport_from_env()
        self.hourly_limit = hourly_limit
        self.enabled = enabled
        self._clock = clock
        self._sent: deque[float] = deque()
        LOGGER.info("Alerts will be delivered via %s", self.transport.name)

    def configure(self, settings: Mapping[str, Any]) -> None:
        self.enabled = bool(settings.get("desktopNotifications", True))
        try:
            self.hourly_limit = max(0, int(settings.get("notificationLimit", self.hourly_limit)))
        except (TypeError, ValueError):
            LOGGER.warning("Ignoring invalid notificationLimit %r", settings.get("notificationLimit"))

    def notify(self, title: str, message: str, kind: str = "change") -> bool:
        """Send one alert; False when notifications are off or the hour's budget is spent."""

        if not self.enabled:
            LOGGER.debug("Notifications disabled; dropping %s", title)
            return False

        now = self._clock()
        while self._sent and now - self._sent[0] >= HOUR_SECONDS:
            self._sent.popleft()
        if len(self._sent) >= self.hourly_limit:
            LOGGER.info("Hourly alert limit (%d) reached; dropping %s", self.hourly_limit, title)
            return False

        self._sent.append(now)
        self.transport.send(title, message, kind)
        return True


def format_gp(value: float | None) -> str:
    if value is None:
        return "unknown"
    return f"{int(value):,} gp"


def low_alert_message(name: str, price: float, threshold: float) -> tuple[str, str]:
    return (
        f"{name} - LOW PRICE ALERT!",
        f"Price dropped to {format_gp(price)} (threshold: {format_gp(threshold)})",
    )


def high_alert_message(name: str, price: float, threshold: float) -> tuple[str, str]:
    return (
        f"{name} - HIGH PRICE ALERT!",
        f"Price rose to {format_gp(price)} (threshold: {format_gp(threshold)})",
    )


def change_alert_message(name: str, previous: float, current: float) -> tuple[str, str]:
    change_pct = abs(current - previous) / previous * 100
    direction = "increased" if current > previous else "decreased"
    return (
        f"{name} - Price Change",
        f"Price {direction} {change_pct:.1f}% to {format_gp(current)}",
    )
