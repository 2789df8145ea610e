"""Chat alerts through the Telegram Bot API."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from html import escape
from typing import Callable, Optional

import requests

from ..errors import NotificationFailure
from ..schemas import NotificationEvent, OrderDetail
from ..site_settings import SettingsProvider, SiteSettings

logger = logging.getLogger(__name__)


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "***"
    if len(token) <= 14:
        return token[:4] + "***"
    return token[:10] + "***" + token[-4:]


def _money(amount) -> str:
    return f"${amount:.2f}"


def item_name(line) -> str:
    if line.product is not None and line.product.name:
        return line.product.name
    return f"Product #{line.product_id}"


def format_order_message(order: OrderDetail) -> str:
    items = "\n".join(
        f"{line.quantity}× {escape(item_name(line))} — {_money(line.line_total)}"
        for line in order.items
    )
    return (
        f"<b>New Order #{order.id}</b>\n"
        f"<i>Status:</i> {escape(order.status.value.capitalize())}\n"
        f"<b>Customer:</b> {escape(order.customer_name or '')}\n"
        f"<b>Phone:</b> {escape(order.phone)}\n"
        f"<b>Address:</b> {escape(order.shipping_address)}\n"
        f"<b>Total:</b> {_money(order.total_amount)}\n"
        f"\n<b>Items:</b>\n{items}"
    )


def format_status_message(order: OrderDetail, old_status, new_status, site_name: str) -> str:
    old = old_status.value if old_status is not None else "-"
    new = new_status.value if new_status is not None else order.status.value
    return (
        f"<b>Order Status Updated</b> - {escape(site_name)}\n\n"
        f"<b>Order #{order.id}</b>\n"
        f"<i>Customer:</i> {escape(order.customer_name or '')}\n"
        f"<i>Status:</i> {old} → {new}\n"
        f"<i>Total:</i> {_money(order.total_amount)}\n"
        f"<i>Updated:</i> {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
    )


class TelegramChannel:
    """Sends order alerts to the configured chat.

    Transient failures are retried ``max_retries`` times, sleeping
    ``2 ** attempt`` seconds in between (2s, then 4s).
    """

    name = "telegram"

    def __init__(
        self,
        settings: SettingsProvider,
        api_base: str = "https://api.telegram.org",
        max_retries: int = 2,
        timeout: float = 10,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.api_base = api_base.rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout
        self.sleep = sleep
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send(self, event: NotificationEvent) -> bool:
        settings = self.settings.get()
        if not settings.telegram_configured:
            logger.info("Telegram not configured, skipping notification for order #%s", event.order.id)
            return True

        if event.kind == "created":
            return self.send_order_notification(event.order, settings)

        ok = self.send_status_update(event.order, event.old_status, event.new_status, settings)
        if event.milestone:
            ok = self.send_order_notification(event.order, settings) and ok
        return ok

    def send_order_notification(self, order: OrderDetail, settings: SiteSettings) -> bool:
        return self._deliver(order.id, format_order_message(order), settings, "order notification")

    def send_status_update(self, order: OrderDetail, old_status, new_status, settings: SiteSettings) -> bool:
        text = format_status_message(order, old_status, new_status, settings.site_name)
        return self._deliver(order.id, text, settings, "status update")

    def test_connection(self) -> bool:
        settings = self.settings.get()
        if not settings.telegram_configured:
            return False
        text = (
            "<b>Test Message</b>\n\nTelegram bot is working correctly!\n"
            f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        try:
            return bool(self.send_message(settings, text).get("ok"))
        except NotificationFailure as exc:
            logger.error("Telegram test failed after %s attempts: %s", exc.attempts, exc.message)
            return False

    def send_message(self, settings: SiteSettings, text: str) -> dict:
        url = f"{self.api_base}/bot{settings.telegram_bot_token}/sendMessage"
        payload = {"chat_id": settings.telegram_chat_id, "text": text, "parse_mode": "HTML"}
        attempt = 0
        while True:
            try:
                response = self.session.post(url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                return response.json()
            except requests.RequestException as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise NotificationFailure(str(exc), channel=self.name, attempts=attempt) from exc
                delay = 2 ** attempt
                logger.warning(
                    "Telegram send attempt %s failed (bot %s), retrying in %ss: %s",
                    attempt, mask_token(settings.telegram_bot_token), delay, exc,
                )
                self.sleep(delay)

    def _deliver(self, order_id: int, text: str, settings: SiteSettings, what: str) -> bool:
        try:
            reply = self.send_message(settings, text)
        except NotificationFailure as exc:
            logger.error(
                "[order=%s] Telegram %s failed after %s attempts: %s",
                order_id, what, exc.attempts, exc.message,
            )
            return False
        if not reply.get("ok"):
            logger.error("[order=%s] Telegram %s rejected: %s", order_id, what, reply.get("description"))
            return False
        logger.info("[order=%s] Telegram %s sent", order_id, what)
        return True
