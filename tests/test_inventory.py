from decimal import Decimal

import pytest

from storefront.errors import InsufficientStock, ProductNotFound, ValidationError
from storefront.inventory import InventoryLedger
from storefront.schemas import OrderLineIn

from .conftest import stock_of


def lines(*pairs):
    return [OrderLineIn(product_id=pid, quantity=qty) for pid, qty in pairs]


def test_check_availability_captures_current_price(db):
    validated = InventoryLedger(db).check_availability(lines((1, 2), (2, 1)))

    assert [(v.product_id, v.quantity) for v in validated] == [(1, 2), (2, 1)]
    assert validated[0].unit_price == Decimal("8.75")
    assert validated[0].product_name == "Terminal Block 12-Way"
    assert validated[0].line_total == Decimal("17.50")


def test_unknown_product_is_rejected(db):
    with pytest.raises(ProductNotFound) as excinfo:
        InventoryLedger(db).check_availability(lines((999, 1)))
    assert excinfo.value.message == "Product with ID 999 not found"


def test_inactive_product_is_rejected(db):
    with pytest.raises(ProductNotFound):
        InventoryLedger(db).check_availability(lines((4, 1)))


def test_insufficient_stock_names_the_product(db):
    with pytest.raises(InsufficientStock) as excinfo:
        InventoryLedger(db).check_availability(lines((2, 6)))
    assert excinfo.value.message == "Insufficient stock for product 5A Fast Blow Fuse"
    assert excinfo.value.product_id == 2


def test_repeated_lines_are_checked_against_combined_quantity(db):
    # 3 + 3 of a product with stock 5.
    with pytest.raises(InsufficientStock):
        InventoryLedger(db).check_availability(lines((2, 3), (2, 3)))


def test_non_positive_quantity_is_rejected():
    class Line:
        product_id = 1
        quantity = 0

    with pytest.raises(ValidationError):
        InventoryLedger(None).check_availability([Line()])


def test_reserve_and_restore_move_stock(db, session_factory):
    ledger = InventoryLedger(db)
    ledger.reserve(lines((1, 2), (2, 5)))
    db.commit()
    assert stock_of(session_factory, 1) == 8
    assert stock_of(session_factory, 2) == 0

    ledger.restore(lines((1, 2), (2, 5)))
    db.commit()
    assert stock_of(session_factory, 1) == 10
    assert stock_of(session_factory, 2) == 5


def test_reserve_never_drives_stock_negative(db, session_factory):
    with pytest.raises(InsufficientStock):
        InventoryLedger(db).reserve(lines((3, 2)))
    db.rollback()
    assert stock_of(session_factory, 3) == 1


def test_last_unit_goes_to_exactly_one_reservation(session_factory):
    first, second = session_factory(), session_factory()
    try:
        # Both see one unit available.
        a = InventoryLedger(first).check_availability(lines((3, 1)))
        b = InventoryLedger(second).check_availability(lines((3, 1)))

        InventoryLedger(first).reserve(a)
        first.commit()

        with pytest.raises(InsufficientStock):
            InventoryLedger(second).reserve(b)
        second.rollback()
    finally:
        first.close()
        second.close()

    assert stock_of(session_factory, 3) == 0


def test_restore_has_no_upper_bound(db, session_factory):
    InventoryLedger(db).restore(lines((3, 4)))
    db.commit()
    assert stock_of(session_factory, 3) == 5


def test_restore_skips_missing_product(db, session_factory):
    InventoryLedger(db).restore(lines((999, 1), (1, 1)))
    db.commit()
    assert stock_of(session_factory, 1) == 11
