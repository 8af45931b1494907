from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from tracking.models import Order
from tracking.services.exceptions import (
    InvalidOperation,
    NotFound,
    ValidationError,
)

pytestmark = pytest.mark.django_db

OS = Order.Status


# ----------------------------------------------------------------------
# Listing
# ----------------------------------------------------------------------
def test_status_counts_include_every_status(store, order_factory):
    order_factory.create_batch(2, status=OS.DRAFT)
    order_factory(status=OS.DELAYED)

    counts = store.status_counts()

    assert set(counts) == set(OS.values)
    assert counts[OS.DRAFT] == 2
    assert counts[OS.DELAYED] == 1
    assert counts[OS.CLOSED] == 0


def test_list_paginates_newest_first(store, order_factory):
    orders = order_factory.create_batch(12)

    first = store.list(page_size=5)
    last = store.list(page=3, page_size=5)

    assert first.total == 12
    assert first.total_pages == 3
    assert first.orders[0] == orders[-1]
    assert len(first.orders) == 5
    assert last.page == 3
    assert len(last.orders) == 2


def test_list_out_of_range_page_returns_last(store, order_factory):
    order_factory.create_batch(3)
    page = store.list(page=9, page_size=2)
    assert page.page == 2


def test_list_empty(store):
    page = store.list()
    assert page.orders == []
    assert page.total == 0
    assert page.total_pages == 0
    assert sum(page.status_counts.values()) == 0


def test_list_counts_cover_the_filtered_set(store, order_factory):
    order_factory.create_batch(3, customer_id="CUST-A", status=OS.PENDING)
    order_factory(customer_id="CUST-A", status=OS.CANCELLED)
    order_factory(customer_id="CUST-B", status=OS.PENDING)

    page = store.list(customer_id="CUST-A", page_size=2)

    assert page.total == 4
    assert len(page.orders) == 2
    assert page.status_counts[OS.PENDING] == 3
    assert page.status_counts[OS.CANCELLED] == 1


def test_list_filters_by_one_or_many_statuses(store, order_factory):
    order_factory(status=OS.DRAFT)
    order_factory(status=OS.IN_TRANSIT)
    order_factory(status=OS.DELAYED)

    assert store.list(status=OS.DRAFT).total == 1
    assert store.list(status=[OS.IN_TRANSIT, OS.DELAYED]).total == 2


def test_list_filters_by_priority_and_carrier(store, order_factory):
    order_factory(priority=Order.Priority.URGENT, carrier_id="CAR-1")
    order_factory(priority=Order.Priority.URGENT, carrier_id="CAR-2")
    order_factory(priority=Order.Priority.LOW, carrier_id="CAR-1")

    assert store.list(priority=Order.Priority.URGENT).total == 2
    assert store.list(priority=["urgent", "low"], carrier_id="CAR-1").total == 2


def test_list_search(store, order_factory):
    order_factory(customer_name="Andes Mining", external_reference="PO-77")
    order_factory(customer_name="Pacific Fresh")

    assert store.list(search="andes").total == 1
    assert store.list(search="PO-77").total == 1
    assert store.list(search="TEST-").total == 2


def test_list_schedule_window(store, order_factory):
    now = timezone.now()
    order_factory(scheduled_start=now - timedelta(days=3))
    inside = order_factory(scheduled_start=now)
    order_factory(scheduled_start=now + timedelta(days=3))

    page = store.list(date_from=now - timedelta(days=1), date_to=now + timedelta(days=1))

    assert page.orders == [inside]


def test_list_rejects_empty_pages(store):
    with pytest.raises(ValidationError, match="page_size"):
        store.list(page_size=0)


# ----------------------------------------------------------------------
# Editing
# ----------------------------------------------------------------------
def test_update_changes_order_fields(store, make_order):
    order = make_order()

    order = store.update(
        order.pk,
        {"customer_name": "Acme Logistics", "cargo_weight_kg": "800.5", "cargo_quantity": "12"},
    )

    order.refresh_from_db()
    assert order.customer_name == "Acme Logistics"
    assert order.cargo_weight_kg == Decimal("800.5")
    assert order.cargo_quantity == 12


def test_update_allowed_until_trip_starts(store, make_order, tracker):
    order = make_order()
    store.assign(order.pk, "VEH-1", "DRV-1", actor=tracker)

    order = store.update(order.pk, {"notes": "Dock 4"})
    assert order.notes == "Dock 4"


def test_update_refused_on_the_road(store, order_on_road):
    with pytest.raises(InvalidOperation, match="can no longer be edited"):
        store.update(order_on_road.pk, {"notes": "too late"})


@pytest.mark.parametrize("field", ["status", "vehicle_id", "order_number", "driver_id"])
def test_update_refuses_fields_with_their_own_operation(store, make_order, field):
    order = make_order()
    with pytest.raises(ValidationError, match=field):
        store.update(order.pk, {field: "x"})


def test_update_validates_values(store, make_order):
    order = make_order()
    with pytest.raises(ValidationError) as exc:
        store.update(
            order.pk,
            {"priority": "asap", "cargo_quantity": "1e30", "customer_id": ""},
        )
    message = str(exc.value)
    assert "asap" in message
    assert "cargo_quantity must be between" in message
    assert "customer_id cannot be empty" in message


def test_update_unknown_order(store):
    with pytest.raises(NotFound):
        store.update(999, {"notes": "?"})
