"""Tests for status transitions, cancellation and admin notes."""
import pytest

from storefront.auth import Principal
from storefront.errors import AccessDenied, InvalidTransition, NotFound, ValidationError
from storefront.lifecycle import OrderLifecycle, can_transition
from storefront.models import OrderStatus
from storefront.orders import OrderService

from .conftest import ALICE, BOB, cart, stock_of

S = OrderStatus


@pytest.fixture
def placed(db, notifier, transport):
    order = OrderService(db, notifier).place_order(ALICE, cart((1, 2), (2, 1)))
    transport.events.clear()
    return order


@pytest.fixture
def lifecycle(db, notifier):
    return OrderLifecycle(db, notifier)


@pytest.mark.parametrize(
    "current, new, allowed",
    [
        (S.PENDING, S.CONFIRMED, True),
        (S.PENDING, S.SHIPPED, True),
        (S.CONFIRMED, S.PROCESSING, True),
        (S.SHIPPED, S.DELIVERED, True),
        (S.PENDING, S.CANCELLED, True),
        (S.CONFIRMED, S.CANCELLED, False),
        (S.SHIPPED, S.CONFIRMED, False),
        (S.DELIVERED, S.CANCELLED, False),
        (S.CANCELLED, S.PENDING, False),
        (S.CANCELLED, S.CONFIRMED, False),
    ],
)
def test_can_transition(current, new, allowed):
    assert can_transition(current, new) is allowed


def test_owner_cancel_restores_stock(lifecycle, placed, session_factory, transport):
    order = lifecycle.cancel(placed.id, Principal(ALICE))

    assert order.status is S.CANCELLED
    assert stock_of(session_factory, 1) == 10
    assert stock_of(session_factory, 2) == 5

    (event,) = transport.events
    assert event.kind == "status_changed"
    assert (event.old_status, event.new_status) == (S.PENDING, S.CANCELLED)
    assert event.milestone is False


def test_cancel_twice_fails_without_restoring_again(lifecycle, placed, session_factory):
    lifecycle.cancel(placed.id, Principal(ALICE))

    with pytest.raises(InvalidTransition):
        lifecycle.cancel(placed.id, Principal(ALICE))
    assert stock_of(session_factory, 1) == 10


def test_cancel_after_confirmation_is_rejected(lifecycle, placed, session_factory):
    lifecycle.update_status(placed.id, S.CONFIRMED)

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.cancel(placed.id, Principal(ALICE))
    assert excinfo.value.message == "Only pending orders can be cancelled"
    assert stock_of(session_factory, 1) == 8


def test_only_the_owner_may_cancel(lifecycle, placed, session_factory):
    with pytest.raises(AccessDenied):
        lifecycle.cancel(placed.id, Principal(BOB))
    assert stock_of(session_factory, 1) == 8


def test_cancel_missing_order(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.cancel(404, Principal(ALICE))


def test_confirmation_is_a_milestone(lifecycle, placed, transport):
    order = lifecycle.update_status(placed.id, S.CONFIRMED)

    assert order.status is S.CONFIRMED
    (event,) = transport.events
    assert event.milestone is True
    assert event.routing_key == "order.status_changed"


def test_later_moves_are_not_milestones(lifecycle, placed, transport):
    lifecycle.update_status(placed.id, S.CONFIRMED)
    lifecycle.update_status(placed.id, S.PROCESSING)

    assert [e.milestone for e in transport.events] == [True, False]


def test_same_status_is_a_silent_no_op(lifecycle, placed, transport):
    lifecycle.update_status(placed.id, S.CONFIRMED)
    order = lifecycle.update_status(placed.id, "confirmed")

    assert order.status is S.CONFIRMED
    assert len(transport.events) == 1


def test_admin_may_skip_ahead(lifecycle, placed):
    assert lifecycle.update_status(placed.id, S.SHIPPED).status is S.SHIPPED
    assert lifecycle.update_status(placed.id, S.DELIVERED).status is S.DELIVERED


def test_terminal_and_backward_moves_are_rejected(lifecycle, placed, transport):
    lifecycle.update_status(placed.id, S.SHIPPED)
    with pytest.raises(InvalidTransition):
        lifecycle.update_status(placed.id, S.CONFIRMED)

    lifecycle.update_status(placed.id, S.DELIVERED)
    with pytest.raises(InvalidTransition):
        lifecycle.update_status(placed.id, S.CANCELLED)
    assert len(transport.events) == 2


def test_admin_cancel_of_pending_order_restores_stock(lifecycle, placed, session_factory):
    order = lifecycle.update_status(placed.id, S.CANCELLED)

    assert order.status is S.CANCELLED
    assert stock_of(session_factory, 1) == 10


def test_unknown_status_value(lifecycle, placed):
    with pytest.raises(ValidationError):
        lifecycle.update_status(placed.id, "lost")


def test_update_status_of_missing_order(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.update_status(404, S.CONFIRMED)


def test_admin_notes_do_not_notify(lifecycle, placed, transport):
    order = lifecycle.update_admin_notes(placed.id, "Call before delivery")
    assert order.admin_notes == "Call before delivery"

    order = lifecycle.update_admin_notes(placed.id, None)
    assert order.admin_notes is None
    assert transport.events == []
