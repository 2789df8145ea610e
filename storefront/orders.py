"""Order aggregate store and order placement."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import Principal
from .errors import AccessDenied, NotFound, StoreFailure, StorefrontError
from .inventory import InventoryLedger, ValidatedLine
from .models import Order, OrderItem, OrderStatus, Product, User
from .schemas import (
    ItemPreview,
    NotificationEvent,
    OrderCreate,
    OrderDetail,
    OrderLine,
    OrderSummary,
    ProductSnapshot,
)

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 3
CENT = Decimal("0.01")
OPEN_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
)


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


def order_total(lines: List[ValidatedLine]) -> Decimal:
    return sum((line.line_total for line in lines), Decimal("0")).quantize(CENT)


def month_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime, datetime]:
    """Start of the previous, current and next calendar month (UTC)."""
    now = now or datetime.now(timezone.utc)
    current = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if current.month == 1:
        previous = current.replace(year=current.year - 1, month=12)
    else:
        previous = current.replace(month=current.month - 1)
    if current.month == 12:
        following = current.replace(year=current.year + 1, month=1)
    else:
        following = current.replace(month=current.month + 1)
    return previous, current, following


class OrderRepository:
    """Persists orders with their line items and reads them back as aggregates.

    Row-shaped joins are flattened and reassembled only here; callers get
    :class:`OrderDetail` / :class:`OrderSummary` values.
    """

    def __init__(self, db: Session):
        self.db = db

    # --- writes (no commit) ---

    def add(self, user_id: int, cart: OrderCreate, lines: List[ValidatedLine]) -> Order:
        order = Order(
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            total_amount=order_total(lines),
            shipping_address=cart.shipping_address,
            phone=cart.phone,
            payment_method=cart.payment_method.value,
            notes=cart.notes or None,
        )
        self.db.add(order)
        self.db.flush()
        for line in lines:
            self.db.add(
                OrderItem(
                    order_id=order.id,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    price=line.unit_price,
                )
            )
        self.db.flush()
        return order

    def set_status(self, order_id: int, expected: OrderStatus, new: OrderStatus) -> bool:
        """Compare-and-set on the status column."""
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status == expected.value)
            .update({Order.status: new.value}, synchronize_session=False)
        )
        return updated == 1

    def set_admin_notes(self, order_id: int, admin_notes: Optional[str]) -> bool:
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .update({Order.admin_notes: admin_notes}, synchronize_session=False)
        )
        return updated == 1

    # --- reads ---

    def get_row(self, order_id: int) -> Optional[Order]:
        return self.db.query(Order).filter(Order.id == order_id).first()

    def get(self, order_id: int) -> Optional[OrderDetail]:
        row = (
            self.db.query(Order, User.name, User.email)
            .outerjoin(User, User.id == Order.user_id)
            .filter(Order.id == order_id)
            .first()
        )
        if row is None:
            return None
        order, name, email = row
        return self._detail(order, name, email, self._lines([order.id]).get(order.id, []))

    def list_for_user(self, user_id: int, limit: Optional[int] = None) -> List[OrderSummary]:
        query = (
            self.db.query(Order, User.name, User.email)
            .outerjoin(User, User.id == Order.user_id)
            .filter(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return self._summaries(query.all())

    def list_for_user_expanded(self, user_id: int) -> List[OrderDetail]:
        rows = (
            self.db.query(Order, User.name, User.email)
            .outerjoin(User, User.id == Order.user_id)
            .filter(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )
        lines = self._lines([order.id for order, _, _ in rows])
        return [self._detail(order, name, email, lines.get(order.id, [])) for order, name, email in rows]

    def list_all(
        self,
        status: Optional[OrderStatus] = None,
        payment_method: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[OrderSummary], int]:
        query = self.db.query(Order, User.name, User.email).outerjoin(User, User.id == Order.user_id)
        if status is not None:
            query = query.filter(Order.status == status.value)
        if payment_method is not None:
            query = query.filter(Order.payment_method == payment_method)

        total = query.count()
        rows = (
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return self._summaries(rows), total

    def list_open(self) -> List[OrderSummary]:
        rows = (
            self.db.query(Order, User.name, User.email)
            .outerjoin(User, User.id == Order.user_id)
            .filter(Order.status.in_(OPEN_STATUSES))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )
        return self._summaries(rows)

    def count_between(self, start: datetime, end: datetime) -> int:
        return (
            self.db.query(func.count(Order.id))
            .filter(Order.created_at >= start, Order.created_at < end)
            .scalar()
        )

    def revenue_between(self, start: datetime, end: datetime) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(Order.total_amount), 0))
            .filter(Order.created_at >= start, Order.created_at < end)
            .scalar()
        )
        return Decimal(str(total)).quantize(CENT)

    # --- row reassembly ---

    def _lines(self, order_ids: List[int]) -> Dict[int, List[OrderLine]]:
        lines: Dict[int, List[OrderLine]] = defaultdict(list)
        if not order_ids:
            return lines
        rows = (
            self.db.query(OrderItem, Product.name, Product.sku, Product.image_path)
            .outerjoin(Product, Product.id == OrderItem.product_id)
            .filter(OrderItem.order_id.in_(order_ids))
            .order_by(OrderItem.order_id, OrderItem.id)
            .all()
        )
        for item, name, sku, image_path in rows:
            lines[item.order_id].append(
                OrderLine(
                    id=item.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=Decimal(item.price),
                    product=ProductSnapshot(
                        id=item.product_id, name=name, sku=sku, image_path=image_path
                    ),
                )
            )
        return lines

    def _previews(self, order_ids: List[int]) -> Dict[int, Tuple[List[ItemPreview], int]]:
        if not order_ids:
            return {}
        # Number the items per order so only the first few leave the database.
        ranked = (
            self.db.query(
                OrderItem.order_id.label("order_id"),
                OrderItem.product_id.label("product_id"),
                func.coalesce(Product.name, "").label("name"),
                func.row_number()
                .over(partition_by=OrderItem.order_id, order_by=OrderItem.id)
                .label("rn"),
                func.count(OrderItem.id).over(partition_by=OrderItem.order_id).label("items_count"),
            )
            .outerjoin(Product, Product.id == OrderItem.product_id)
            .filter(OrderItem.order_id.in_(order_ids))
            .subquery()
        )
        rows = (
            self.db.query(ranked.c.order_id, ranked.c.product_id, ranked.c.name, ranked.c.items_count)
            .filter(ranked.c.rn <= PREVIEW_LIMIT)
            .order_by(ranked.c.order_id, ranked.c.rn)
            .all()
        )
        previews: Dict[int, Tuple[List[ItemPreview], int]] = {}
        for order_id, product_id, name, items_count in rows:
            preview, _ = previews.get(order_id, ([], 0))
            preview.append(ItemPreview(product_id=product_id, name=name))
            previews[order_id] = (preview, int(items_count))
        return previews

    def _summaries(self, rows) -> List[OrderSummary]:
        previews = self._previews([order.id for order, _, _ in rows])
        summaries = []
        for order, name, email in rows:
            preview, count = previews.get(order.id, ([], 0))
            summaries.append(
                OrderSummary(
                    id=order.id,
                    user_id=order.user_id,
                    customer_name=name,
                    customer_email=email,
                    status=order.status,
                    total_amount=Decimal(order.total_amount),
                    shipping_address=order.shipping_address,
                    phone=order.phone,
                    payment_method=order.payment_method,
                    notes=order.notes,
                    created_at=order.created_at,
                    items_preview=preview,
                    items_count=count,
                )
            )
        return summaries

    @staticmethod
    def _detail(order: Order, name, email, lines: List[OrderLine]) -> OrderDetail:
        return OrderDetail(
            id=order.id,
            user_id=order.user_id,
            customer_name=name,
            customer_email=email,
            status=order.status,
            total_amount=Decimal(order.total_amount),
            shipping_address=order.shipping_address,
            phone=order.phone,
            payment_method=order.payment_method,
            notes=order.notes,
            admin_notes=order.admin_notes,
            created_at=order.created_at,
            items=lines,
        )


class OrderService:
    """Order placement and order reads with owner-or-admin access checks."""

    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.repo = OrderRepository(db)
        self.ledger = InventoryLedger(db)
        self.notifier = notifier

    def place_order(self, user_id: int, cart: OrderCreate) -> OrderDetail:
        """Validate the cart, then insert order, items and stock decrements in one transaction.

        Nothing survives a failure: no order row, no items, no stock change.
        The ``created`` notification is handed off only after the commit.
        """
        try:
            lines = self.ledger.check_availability(cart.items)
            order = self.repo.add(user_id, cart, lines)
            self.ledger.reserve(lines)
            # commit() expires the row; keep what the response needs.
            order_id, total, created_at = order.id, order.total_amount, order.created_at
            self.db.commit()
        except StorefrontError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("order create failed for user %s", user_id)
            raise StoreFailure("Failed to create order") from exc

        logger.info(
            "[order=%s] placed by user=%s total=%s lines=%s",
            order_id, user_id, total, len(lines),
        )
        try:
            detail = self.repo.get(order_id)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("[order=%s] committed but not readable, created notification skipped", order_id)
            return OrderDetail(
                id=order_id,
                user_id=user_id,
                status=OrderStatus.PENDING,
                total_amount=total,
                shipping_address=cart.shipping_address,
                phone=cart.phone,
                payment_method=cart.payment_method,
                notes=cart.notes or None,
                created_at=created_at,
            )
        self.notifier.notify(NotificationEvent(kind="created", order=detail))
        return detail

    def get_order(self, order_id: int, principal: Principal) -> OrderDetail:
        detail = self.repo.get(order_id)
        if detail is None:
            raise NotFound("Order not found")
        if detail.user_id != principal.id and not principal.is_admin:
            raise AccessDenied("Access denied")
        return detail

    def user_orders(self, principal: Principal, limit: Optional[int] = None) -> List[OrderSummary]:
        return self.repo.list_for_user(principal.id, limit)

    def user_orders_expanded(self, principal: Principal) -> List[OrderDetail]:
        return self.repo.list_for_user_expanded(principal.id)

    def monthly_counts(self) -> Tuple[int, int]:
        previous, current, following = month_bounds()
        return (
            self.repo.count_between(current, following),
            self.repo.count_between(previous, current),
        )

    def monthly_revenue(self) -> Tuple[Decimal, Decimal]:
        previous, current, following = month_bounds()
        return (
            self.repo.revenue_between(current, following),
            self.repo.revenue_between(previous, current),
        )
