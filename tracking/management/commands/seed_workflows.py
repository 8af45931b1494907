"""Seed the standard workflow templates (and optionally operator accounts)."""

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from tracking.models import EscalationRule, WorkflowStep, WorkflowTemplate
from tracking.services.workflows import WorkflowRegistry

User = get_user_model()

STANDARD = {
    "name": "Standard delivery",
    "code": "STD",
    "description": "Pickup, transit and delivery for general cargo.",
    "is_default": True,
    "steps": [
        {
            "name": "Loading at origin",
            "action": WorkflowStep.Action.ENTER_GEOFENCE,
            "geofence_id": "origin",
            "estimated_duration_minutes": 60,
            "max_duration_minutes": 120,
            "transition_conditions": [
                {"type": "location_reached", "description": "Vehicle inside origin"}
            ],
        },
        {
            "name": "Unloading at destination",
            "action": WorkflowStep.Action.ENTER_GEOFENCE,
            "geofence_id": "destination",
            "estimated_duration_minutes": 60,
            "max_duration_minutes": 180,
            "transition_conditions": [
                {"type": "location_reached", "description": "Vehicle inside destination"}
            ],
        },
    ],
    "escalation_rules": [
        {
            "name": "Delay over two hours",
            "condition_type": EscalationRule.ConditionType.DELAY_THRESHOLD,
            "threshold_minutes": 120,
            "actions": [{"type": "notify", "config": {"roles": ["supervisor"]}}],
        },
        {
            "name": "No activity for four hours",
            "condition_type": EscalationRule.ConditionType.NO_UPDATE,
            "threshold_minutes": 240,
            "actions": [{"type": "flag", "config": {"flagType": "warning"}}],
        },
    ],
}

REFRIGERATED = {
    "name": "Cold chain",
    "code": "COLD",
    "description": "Refrigerated cargo with temperature checks at every stop.",
    "applicable_cargo_types": ["refrigerated"],
    "status": WorkflowTemplate.Status.ACTIVE,
    "steps": [
        {
            "name": "Pre-cooling and loading",
            "action": WorkflowStep.Action.TEMPERATURE_CHECK,
            "estimated_duration_minutes": 45,
            "max_duration_minutes": 90,
        },
        {
            "name": "Temperature check in transit",
            "action": WorkflowStep.Action.TEMPERATURE_CHECK,
            "is_required": False,
            "can_skip": True,
            "max_duration_minutes": 240,
        },
        {
            "name": "Delivery with signature",
            "action": WorkflowStep.Action.SIGNATURE,
            "estimated_duration_minutes": 30,
            "max_duration_minutes": 60,
        },
    ],
    "escalation_rules": [
        {
            "name": "Stuck while loading",
            "condition_type": EscalationRule.ConditionType.STEP_STUCK,
            "threshold_minutes": 90,
            "step_sequences": [1],
            "actions": [
                {"type": "notify", "config": {"roles": ["supervisor"]}},
                {"type": "flag", "config": {"flagType": "critical"}},
            ],
        },
    ],
}

USERS = (
    ("dispatcher1", "dispatcher"),
    ("tracker1", "tracking_agent"),
    ("supervisor1", "supervisor"),
)


class Command(BaseCommand):
    help = "Seed the standard (default) and cold chain workflow templates"

    def add_arguments(self, parser):
        parser.add_argument(
            "--with-users",
            action="store_true",
            help="Also create dispatcher1 / tracker1 / supervisor1 (password test1234)",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        registry = WorkflowRegistry()

        if options["with_users"]:
            for username, role in USERS:
                user, _ = User.objects.get_or_create(
                    username=username,
                    defaults={"email": f"{username}@test.com", "role": role},
                )
                user.set_password("test1234")
                user.save()
                self.stdout.write(f"  {username} / test1234 ({role})")
            self.stdout.write(self.style.SUCCESS("Users created/updated"))

        for data in (STANDARD, REFRIGERATED):
            if WorkflowTemplate.objects.filter(code=data["code"]).exists():
                self.stdout.write(self.style.WARNING(f"{data['code']} already exists, skipped"))
                continue
            template = registry.create(data)
            self.stdout.write(
                self.style.SUCCESS(
                    f"Created {template.code} ({template.status}, "
                    f"{template.steps.count()} steps)"
                )
            )
