from datetime import timedelta

import pytest
from django.utils import timezone

from tracking.factories import (
    EscalationRuleFactory,
    MilestoneFactory,
    OrderFactory,
    OrderIncidentFactory,
    UserFactory,
    WorkflowStepFactory,
    WorkflowTemplateFactory,
)
from tracking.models import EscalationRule, WorkflowStep
from tracking.services.escalation import EscalationEvaluator
from tracking.services.importer import OrderImporter
from tracking.services.milestones import MilestoneManager
from tracking.services.orders import OrderStore
from tracking.services.workflows import WorkflowRegistry


@pytest.fixture
def user_factory():
    return UserFactory


@pytest.fixture
def order_factory():
    return OrderFactory


@pytest.fixture
def milestone_factory():
    return MilestoneFactory


@pytest.fixture
def incident_factory():
    return OrderIncidentFactory


@pytest.fixture
def workflow_factory():
    return WorkflowTemplateFactory


@pytest.fixture
def step_factory():
    return WorkflowStepFactory


@pytest.fixture
def rule_factory():
    return EscalationRuleFactory


# ----------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------
@pytest.fixture
def registry():
    return WorkflowRegistry()


@pytest.fixture
def store(registry):
    return OrderStore(registry)


@pytest.fixture
def manager(store, registry):
    return MilestoneManager(store, registry)


@pytest.fixture
def evaluator(registry):
    return EscalationEvaluator(registry)


@pytest.fixture
def importer(store):
    return OrderImporter(store)


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------
@pytest.fixture
def dispatcher(user_factory):
    return user_factory(username="dispatcher1", role="dispatcher")


@pytest.fixture
def tracker(user_factory):
    return user_factory(username="tracker1", role="tracking_agent")


@pytest.fixture
def supervisor(user_factory):
    return user_factory(username="supervisor1", role="supervisor")


# ----------------------------------------------------------------------
# Domain data
# ----------------------------------------------------------------------
@pytest.fixture
def default_workflow(registry):
    """
    Three steps matching a three-stop route:
    1. loading (required, max 60 min)
    2. transit check (optional, skippable, max 120 min)
    3. delivery (required, max 60 min)
    """
    return registry.create(
        {
            "name": "Standard",
            "code": "STD",
            "is_default": True,
            "steps": [
                {
                    "name": "Loading",
                    "action": WorkflowStep.Action.MANUAL_CHECK,
                    "max_duration_minutes": 60,
                },
                {
                    "name": "Transit check",
                    "action": WorkflowStep.Action.MANUAL_CHECK,
                    "is_required": False,
                    "can_skip": True,
                    "max_duration_minutes": 120,
                },
                {
                    "name": "Delivery",
                    "action": WorkflowStep.Action.SIGNATURE,
                    "max_duration_minutes": 60,
                },
            ],
            "escalation_rules": [
                {
                    "name": "Late",
                    "condition_type": EscalationRule.ConditionType.DELAY_THRESHOLD,
                    "threshold_minutes": 30,
                    "actions": [{"type": "notify", "config": {}}],
                },
                {
                    "name": "Silent",
                    "condition_type": EscalationRule.ConditionType.NO_UPDATE,
                    "threshold_minutes": 240,
                    "actions": [{"type": "flag", "config": {"flagType": "warning"}}],
                },
                {
                    "name": "Stuck in transit",
                    "condition_type": EscalationRule.ConditionType.STEP_STUCK,
                    "threshold_minutes": 45,
                    "step_sequences": [2],
                    "actions": [{"type": "notify", "config": {}}],
                },
            ],
        }
    )


def route_payload(stops=3, **overrides):
    start = timezone.now() - timedelta(hours=6)
    milestones = [
        {
            "geofence_id": f"GEO-{i}",
            "geofence_name": f"Stop {i}",
            "address": f"{i} Main St",
            "latitude": -12.0 - i / 100,
            "longitude": -77.0,
            "estimated_arrival": start + timedelta(hours=2 * i),
        }
        for i in range(1, stops + 1)
    ]
    payload = {
        "customer_id": "CUST-001",
        "customer_name": "Acme Foods",
        "cargo_description": "Canned goods",
        "cargo_type": "general",
        "priority": "normal",
        "milestones": milestones,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_order(store, dispatcher):
    def _make(stops=3, **overrides):
        return store.create(route_payload(stops, **overrides), actor=dispatcher)

    return _make


@pytest.fixture
def order_on_road(store, make_order, default_workflow, tracker):
    """An assigned, started three-stop order using the default workflow."""
    order = make_order()
    store.assign(order.pk, "VEH-1", "DRV-1", actor=tracker)
    return store.start_trip(order.pk, actor=tracker)


@pytest.fixture
def route():
    return route_payload
