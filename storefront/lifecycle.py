"""Order status transitions, cancellation and admin notes."""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import Principal
from .errors import AccessDenied, InvalidTransition, NotFound, StoreFailure, StorefrontError, ValidationError
from .inventory import InventoryLedger
from .models import Order, OrderStatus
from .orders import Notifier, OrderRepository
from .schemas import NotificationEvent, OrderDetail

logger = logging.getLogger(__name__)

FLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Forward along FLOW (skipping ahead is allowed); cancel only while pending."""
    if current in TERMINAL:
        return False
    if new is OrderStatus.CANCELLED:
        return current is OrderStatus.PENDING
    return FLOW.index(new) > FLOW.index(current)


class OrderLifecycle:
    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.repo = OrderRepository(db)
        self.ledger = InventoryLedger(db)
        self.notifier = notifier

    def update_status(self, order_id: int, new_status) -> OrderDetail:
        try:
            new = OrderStatus(new_status)
        except ValueError:
            raise ValidationError("Invalid status") from None

        order = self._load(order_id)
        old = OrderStatus(order.status)
        if old is new:
            logger.info("[order=%s] status already %s, nothing to do", order_id, new.value)
            return self.repo.get(order_id)
        if not can_transition(old, new):
            raise InvalidTransition(f"Cannot change order status from {old.value} to {new.value}")
        return self._transition(order, old, new)

    def cancel(self, order_id: int, principal: Principal) -> OrderDetail:
        order = self._load(order_id)
        if order.user_id != principal.id:
            raise AccessDenied("Access denied")
        if order.status != OrderStatus.PENDING.value:
            raise InvalidTransition("Only pending orders can be cancelled")
        return self._transition(order, OrderStatus.PENDING, OrderStatus.CANCELLED)

    def update_admin_notes(self, order_id: int, admin_notes: Optional[str]) -> OrderDetail:
        self._load(order_id)
        try:
            self.repo.set_admin_notes(order_id, admin_notes)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("[order=%s] admin notes update failed", order_id)
            raise StoreFailure("Failed to update admin notes") from exc
        return self.repo.get(order_id)

    def _load(self, order_id: int) -> Order:
        order = self.repo.get_row(order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def _transition(self, order: Order, old: OrderStatus, new: OrderStatus) -> OrderDetail:
        order_id = order.id
        try:
            if new is OrderStatus.CANCELLED:
                # Stock goes back before the flip; both commit together.
                self.ledger.restore(order.items)
            if not self.repo.set_status(order_id, old, new):
                raise InvalidTransition("Order status changed concurrently, try again")
            self.db.commit()
        except StorefrontError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("[order=%s] status change %s -> %s failed", order_id, old.value, new.value)
            raise StoreFailure("Failed to update order status") from exc

        logger.info("[order=%s] status %s -> %s", order_id, old.value, new.value)
        detail = self.repo.get(order_id)
        self.notifier.notify(
            NotificationEvent(
                kind="status_changed",
                order=detail,
                old_status=old,
                new_status=new,
                milestone=new is OrderStatus.CONFIRMED,
            )
        )
        return detail
