"""Per-product stock: availability checks and guarded stock mutations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Protocol

from sqlalchemy.orm import Session

from .errors import InsufficientStock, ProductNotFound, ValidationError
from .models import Product

logger = logging.getLogger(__name__)


class StockLine(Protocol):
    product_id: int
    quantity: int


@dataclass(slots=True)
class ValidatedLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def _combined(lines: Iterable[StockLine]) -> Dict[int, int]:
    totals: Dict[int, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"Quantity must be at least 1 for product {line.product_id}")
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals


class InventoryLedger:
    """Stock operations bound to the caller's session.

    The ledger never commits: ``reserve`` and ``restore`` join whatever unit of
    work the caller has open so that stock moves commit or roll back together
    with the order rows.
    """

    def __init__(self, db: Session):
        self.db = db

    def check_availability(self, lines: Iterable[StockLine]) -> List[ValidatedLine]:
        lines = list(lines)
        requested = _combined(lines)
        products = {
            p.id: p
            for p in self.db.query(Product).filter(Product.id.in_(list(requested))).all()
        }

        validated: List[ValidatedLine] = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(line.product_id)
            if product.stock < requested[line.product_id]:
                raise InsufficientStock(
                    f"Insufficient stock for product {product.name}", product_id=product.id
                )
            validated.append(
                ValidatedLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line.quantity,
                    unit_price=Decimal(product.price),
                )
            )
        return validated

    def reserve(self, lines: Iterable[StockLine]) -> None:
        # Ascending product id keeps lock order stable between concurrent orders.
        for product_id, quantity in sorted(_combined(lines).items()):
            updated = (
                self.db.query(Product)
                .filter(
                    Product.id == product_id,
                    Product.is_active.is_(True),
                    Product.stock >= quantity,
                )
                .update({Product.stock: Product.stock - quantity}, synchronize_session=False)
            )
            if updated != 1:
                raise InsufficientStock(
                    f"Insufficient stock for product {product_id}", product_id=product_id
                )
            logger.debug("reserved product=%s qty=%s", product_id, quantity)

    def restore(self, lines: Iterable[StockLine]) -> None:
        # No upper bound: a product restocked meanwhile simply ends up higher.
        for product_id, quantity in sorted(_combined(lines).items()):
            updated = (
                self.db.query(Product)
                .filter(Product.id == product_id)
                .update({Product.stock: Product.stock + quantity}, synchronize_session=False)
            )
            if updated != 1:
                logger.warning("cannot restore stock, product %s no longer exists", product_id)
            else:
                logger.debug("restored product=%s qty=%s", product_id, quantity)
