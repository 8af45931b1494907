import pytest

from tracking.models import Order
from tracking.services.exceptions import ExternalSyncError, InvalidOperation
from tracking.signals import order_sync_updated

pytestmark = pytest.mark.django_db

SS = Order.SyncStatus


class Recorder:
    """Transmitter double: remembers the sync status it was called with."""

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.seen = []

    def __call__(self, order):
        self.seen.append((order.pk, order.sync_status))
        if self.fail_with:
            raise ExternalSyncError(self.fail_with)


def test_successful_send(store, order_on_road):
    transmitter = Recorder()
    before = Order.objects.get(pk=order_on_road.pk).updated_at

    order = store.send_to_external(order_on_road.pk, transmitter)

    assert transmitter.seen == [(order_on_road.pk, SS.SENDING)]
    assert order.sync_status == SS.SENT
    stored = Order.objects.get(pk=order_on_road.pk)
    assert stored.sync_status == SS.SENT
    assert stored.last_sync_attempt is not None
    # sync bookkeeping is not an order update
    assert stored.updated_at == before


def test_failed_send_is_recorded(store, order_on_road):
    order = store.send_to_external(order_on_road.pk, Recorder("Gateway timeout"))

    assert order.sync_status == SS.ERROR
    stored = Order.objects.get(pk=order_on_road.pk)
    assert stored.sync_status == SS.ERROR
    assert stored.sync_error_message == "Gateway timeout"


def test_resend_after_error_goes_through_retry(store, order_on_road, monkeypatch):
    store.send_to_external(order_on_road.pk, Recorder("down"))

    states = []
    original = store._set_sync

    def spy(order, status, message=""):
        states.append(status)
        return original(order, status, message)

    monkeypatch.setattr(store, "_set_sync", spy)
    order = store.send_to_external(order_on_road.pk, Recorder())

    assert states == [SS.RETRY, SS.SENDING, SS.SENT]
    assert order.sync_error_message == ""


@pytest.mark.parametrize("status", [Order.Status.DRAFT, Order.Status.CANCELLED])
def test_unsendable_orders(store, order_factory, status):
    order = order_factory(status=status)
    transmitter = Recorder()
    with pytest.raises(InvalidOperation):
        store.send_to_external(order.pk, transmitter)
    assert transmitter.seen == []


def test_sync_signal_after_commit(store, order_on_road, django_capture_on_commit_callbacks):
    received = []

    def receiver(sender, order, **kwargs):
        received.append(order.sync_status)

    order_sync_updated.connect(receiver)
    try:
        with django_capture_on_commit_callbacks(execute=True):
            store.send_to_external(order_on_road.pk, Recorder())
    finally:
        order_sync_updated.disconnect(receiver)

    assert received == [SS.SENT]


def test_bulk_send(store, order_on_road, make_order):
    draft = make_order()
    results = store.bulk_send_to_external(
        [order_on_road.pk, draft.pk, 999999], Recorder()
    )

    assert [r["status"] for r in results] == ["success", "error", "error"]
    assert [r["order_id"] for r in results] == [order_on_road.pk, draft.pk, 999999]
    assert "draft" in results[1]["message"]
    assert "not found" in results[2]["message"]


def test_bulk_send_reports_transmitter_errors(store, order_on_road):
    results = store.bulk_send_to_external([order_on_road.pk], Recorder("rejected"))
    assert results == [
        {"order_id": order_on_road.pk, "status": "error", "message": "rejected"}
    ]
