import pytest

from tracking.models import Milestone, Order
from tracking.policies.order_actions import actions_for

pytestmark = pytest.mark.django_db


def test_dispatcher_on_draft(dispatcher, order_factory):
    order = order_factory(status=Order.Status.DRAFT)
    assert actions_for(dispatcher, order) == [
        "delete",
        "edit",
        "assign",
        "cancel",
        "add_milestone",
    ]


def test_dispatcher_on_the_road(dispatcher, order_factory):
    order = order_factory(status=Order.Status.IN_TRANSIT)
    assert actions_for(dispatcher, order) == ["add_milestone", "send_to_external"]


def test_tracker_on_assigned(tracker, order_factory):
    order = order_factory(status=Order.Status.ASSIGNED)
    assert actions_for(tracker, order) == ["start_trip", "register_manual_entry"]


def test_tracker_cannot_touch_drafts(tracker, order_factory):
    assert actions_for(tracker, order_factory(status=Order.Status.DRAFT)) == []


def test_supervisor_can_close_completed(supervisor, order_factory, milestone_factory):
    order = order_factory(status=Order.Status.COMPLETED)
    milestone_factory(order=order, status=Milestone.Status.COMPLETED)
    actions = actions_for(supervisor, order)
    assert "close" in actions
    assert "send_to_external" in actions
    assert "add_milestone" not in actions


def test_no_close_with_open_milestones(supervisor, order_factory, milestone_factory):
    order = order_factory(status=Order.Status.COMPLETED)
    milestone_factory(order=order, status=Milestone.Status.PENDING)
    assert "close" not in actions_for(supervisor, order)


def test_admin_counts_as_supervisor(user_factory, order_factory):
    admin = user_factory(username="boss", role="admin")
    order = order_factory(status=Order.Status.ASSIGNED)
    assert "start_trip" in actions_for(admin, order)
    assert "cancel" in actions_for(admin, order)


def test_tracker_reports_incidents_on_the_road(tracker, order_factory):
    order = order_factory(status=Order.Status.DELAYED)
    assert actions_for(tracker, order) == ["register_manual_entry", "report_incident"]


def test_no_edit_once_the_trip_started(dispatcher, order_factory):
    order = order_factory(status=Order.Status.IN_TRANSIT)
    assert "edit" not in actions_for(dispatcher, order)
