from datetime import timedelta

import pytest
from django.utils import timezone

from tracking.models import EscalationRule, Order, OrderStatusChange

pytestmark = pytest.mark.django_db


def leave_first_stop(store, order, minutes_ago):
    """Complete the origin ``minutes_ago`` minutes before the returned ``now``."""
    first = order.milestone_list()[0]
    now = timezone.now()
    store.enter_milestone(order.pk, first.pk, at=now - timedelta(minutes=minutes_ago + 20))
    store.exit_milestone(order.pk, first.pk, at=now - timedelta(minutes=minutes_ago))
    return store.get(order.pk), now


def by_name(results):
    return {r.rule_name: r for r in results}


def test_delay_threshold_triggers(store, evaluator, order_on_road):
    EscalationRule.objects.filter(name="Late").update(threshold_minutes=120)
    order, now = leave_first_stop(store, order_on_road, 150)

    results = by_name(evaluator.evaluate(order, now=now))

    late = results["Late"]
    assert late.triggered
    assert late.condition_type == EscalationRule.ConditionType.DELAY_THRESHOLD
    assert late.message == "Delay of 150 minutes (threshold: 120 min)"
    assert late.actions == [{"type": "notify", "config": {}}]


def test_delay_needs_the_step_to_be_late(store, evaluator, order_on_road):
    # 100 minutes is past the rule threshold but inside the step's 120 minutes
    order, now = leave_first_stop(store, order_on_road, 100)
    results = by_name(evaluator.evaluate(order, now=now))
    assert not results["Late"].triggered
    assert results["Late"].message == ""


def test_step_stuck_only_watches_listed_steps(store, evaluator, order_on_road):
    order, now = leave_first_stop(store, order_on_road, 50)
    results = by_name(evaluator.evaluate(order, now=now))
    assert results["Stuck in transit"].message == (
        "Stuck in step 2 for 50 minutes (threshold: 45 min)"
    )

    rule = EscalationRule.objects.get(name="Stuck in transit")
    rule.step_sequences = [1]
    rule.save()
    # the order sits in step 2, which the rule no longer watches
    results = by_name(evaluator.evaluate(store.get(order.pk), now=now))
    assert not results["Stuck in transit"].triggered


def test_no_update_triggers(store, evaluator, order_on_road):
    order = store.get(order_on_road.pk)
    later = order.updated_at + timedelta(minutes=300)

    results = by_name(evaluator.evaluate(order, now=later))

    assert results["Silent"].triggered
    assert results["Silent"].message == "No update for 300 minutes (threshold: 240 min)"
    assert not by_name(evaluator.evaluate(order, now=order.updated_at))["Silent"].triggered


def test_inactive_rules_are_skipped(store, evaluator, order_on_road):
    EscalationRule.objects.filter(name="Silent").update(is_active=False)
    results = evaluator.evaluate(store.get(order_on_road.pk))
    assert sorted(r.rule_name for r in results) == ["Late", "Stuck in transit"]


def test_order_without_workflow_has_nothing_to_check(evaluator, make_order):
    assert evaluator.evaluate(make_order()) == []


def test_evaluate_does_not_write(store, evaluator, order_on_road):
    order, now = leave_first_stop(store, order_on_road, 150)
    history = OrderStatusChange.objects.filter(order=order).count()
    updated_at = order.updated_at

    first = evaluator.evaluate(order, now=now)
    second = evaluator.evaluate(order, now=now)

    assert first == second
    order.refresh_from_db()
    assert order.updated_at == updated_at
    assert OrderStatusChange.objects.filter(order=order).count() == history


def test_scan_covers_orders_on_the_road(store, evaluator, make_order, order_on_road):
    idle = make_order()
    later = store.get(order_on_road.pk).updated_at + timedelta(minutes=300)

    scanned = list(evaluator.scan(now=later))

    assert [order.pk for order, _ in scanned] == [order_on_road.pk]
    assert idle.status == Order.Status.DRAFT
    _, triggered = scanned[0]
    assert all(r.triggered for r in triggered)
    assert "Silent" in {r.rule_name for r in triggered}
