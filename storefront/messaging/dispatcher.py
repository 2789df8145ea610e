"""Best-effort fan-out of order events to the notification channels."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Protocol

from ..schemas import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    name: str

    def send(self, event: NotificationEvent) -> bool: ...


class Transport(Protocol):
    """Carries events from the request path to whoever calls ``handle``."""

    def submit(self, event: NotificationEvent) -> None: ...


class NotificationDispatcher:
    """``notify`` hands an event off and returns at once; ``handle`` delivers it.

    Neither method raises: a failed channel is logged with the order id and
    the channel name and never reaches the request that produced the event.
    """

    def __init__(self, channels: Iterable[NotificationChannel], transport: Optional[Transport] = None):
        self.channels = list(channels)
        self.transport = transport

    def notify(self, event: NotificationEvent) -> None:
        if self.transport is None:
            logger.warning("[order=%s] no notification transport, dropping %s event", event.order.id, event.kind)
            return
        try:
            self.transport.submit(event)
        except Exception:
            logger.exception("[order=%s] could not hand off %s notification", event.order.id, event.kind)

    def handle(self, event: NotificationEvent) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for channel in self.channels:
            try:
                ok = channel.send(event)
            except Exception:
                logger.exception("[order=%s] %s channel raised on %s event", event.order.id, channel.name, event.kind)
                ok = False
            if not ok:
                logger.warning("[order=%s] %s notification via %s failed", event.order.id, event.kind, channel.name)
            results[channel.name] = ok
        return results
