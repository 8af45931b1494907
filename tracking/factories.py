"""Factories for generating demo/test data with factory_boy and Faker.

Use sequences for unique identifiers and Faker for descriptive fields.
"""

import factory
from django.contrib.auth import get_user_model
from django.utils import timezone
from factory import Faker
from factory.django import DjangoModelFactory

from . import models


class UserFactory(DjangoModelFactory):
    class Meta:
        model = get_user_model()
        django_get_or_create = ("username",)

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.LazyAttribute(lambda obj: f"{obj.username}@example.com")
    role = "dispatcher"
    is_staff = True
    is_active = True

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        password = kwargs.pop("password", "password123")
        user = super()._create(model_class, *args, **kwargs)
        user.set_password(password)
        user.save()
        return user


class WorkflowTemplateFactory(DjangoModelFactory):
    class Meta:
        model = models.WorkflowTemplate

    name = Faker("catch_phrase")
    code = factory.Sequence(lambda n: f"WF-{n:03d}")
    status = models.WorkflowTemplate.Status.ACTIVE
    is_default = False


class WorkflowStepFactory(DjangoModelFactory):
    class Meta:
        model = models.WorkflowStep

    workflow = factory.SubFactory(WorkflowTemplateFactory)
    name = Faker("bs")
    sequence = factory.Sequence(lambda n: n + 1)
    action = models.WorkflowStep.Action.MANUAL_CHECK
    is_required = True
    can_skip = False


class EscalationRuleFactory(DjangoModelFactory):
    class Meta:
        model = models.EscalationRule

    workflow = factory.SubFactory(WorkflowTemplateFactory)
    name = Faker("sentence", nb_words=3)
    condition_type = models.EscalationRule.ConditionType.DELAY_THRESHOLD
    threshold_minutes = 60
    actions = factory.LazyFunction(lambda: [{"type": "notify", "config": {}}])
    is_active = True


class OrderFactory(DjangoModelFactory):
    class Meta:
        model = models.Order

    order_number = factory.Sequence(lambda n: f"TEST-{n + 1:05d}")
    customer_id = factory.Sequence(lambda n: f"CUST-{n:03d}")
    customer_name = Faker("company")
    cargo_description = Faker("sentence", nb_words=4)
    cargo_type = models.Order.CargoType.GENERAL
    cargo_quantity = 1
    status = models.Order.Status.DRAFT


class MilestoneFactory(DjangoModelFactory):
    class Meta:
        model = models.Milestone

    order = factory.SubFactory(OrderFactory)
    geofence_id = factory.Sequence(lambda n: f"GEO-{n:04d}")
    geofence_name = Faker("city")
    address = Faker("street_address")
    latitude = Faker("pyfloat", min_value=-60, max_value=60)
    longitude = Faker("pyfloat", min_value=-170, max_value=170)
    milestone_type = models.Milestone.Type.WAYPOINT
    sequence = 1
    status = models.Milestone.Status.PENDING


class OrderIncidentFactory(DjangoModelFactory):
    class Meta:
        model = models.OrderIncident

    order = factory.SubFactory(OrderFactory)
    name = Faker("sentence", nb_words=3)
    description = Faker("paragraph", nb_sentences=2)
    category = models.OrderIncident.Category.VEHICLE
    severity = models.OrderIncident.Severity.MEDIUM
    occurred_at = factory.LazyFunction(timezone.now)
