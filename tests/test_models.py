import pytest

from tracking.models import Milestone, Order

pytestmark = pytest.mark.django_db


def test_can_close_requires_completed(order_factory):
    order = order_factory(status=Order.Status.IN_TRANSIT)
    assert order.can_close() == (False, "Order must be completed before it can be closed")


def test_can_close_counts_open_milestones(order_factory, milestone_factory):
    order = order_factory(status=Order.Status.COMPLETED)
    milestone_factory(order=order, sequence=1, status=Milestone.Status.COMPLETED)
    milestone_factory(order=order, sequence=2, status=Milestone.Status.DELAYED)
    milestone_factory(order=order, sequence=3, status=Milestone.Status.PENDING)
    assert order.can_close() == (False, "2 milestone(s) pending")


def test_can_close_ignores_skipped(order_factory, milestone_factory):
    order = order_factory(status=Order.Status.COMPLETED)
    milestone_factory(order=order, sequence=1, status=Milestone.Status.COMPLETED)
    milestone_factory(order=order, sequence=2, status=Milestone.Status.SKIPPED)
    assert order.can_close() == (True, "")


def test_closed_order_cannot_close_again(order_factory):
    order = order_factory(status=Order.Status.CLOSED)
    assert order.can_close() == (False, "Order is already closed")
    assert order.is_terminal


def test_milestone_is_done(milestone_factory):
    assert milestone_factory(status=Milestone.Status.SKIPPED).is_done
    assert not milestone_factory(status=Milestone.Status.DELAYED).is_done


def test_transition_writes_history(order_factory, user_factory):
    order = order_factory(status=Order.Status.DRAFT)
    actor = user_factory()

    change = order._transition(Order.Status.PENDING, actor=actor, reason="Ready")

    order.refresh_from_db()
    assert order.status == Order.Status.PENDING
    assert change.from_status == Order.Status.DRAFT
    assert change.changed_by == actor
    assert not change.is_derived


def test_template_matching(workflow_factory):
    template = workflow_factory(
        applicable_cargo_types=["fragile"], applicable_customer_ids=["C1"]
    )
    assert template.matches_cargo_type("fragile")
    assert not template.matches_cargo_type("general")
    assert template.matches_customer("C1")
    assert not template.matches_customer(None)


def test_str(order_factory, milestone_factory):
    order = order_factory(order_number="ORD-2026-00001")
    milestone = milestone_factory(order=order, geofence_name="Callao")
    assert str(order) == "ORD-2026-00001 - Draft"
    assert str(milestone) == "1. Callao (Pending)"
