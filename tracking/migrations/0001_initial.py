import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


def _id():
    return (
        "id",
        models.BigAutoField(
            auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
        ),
    )


def _timestamps():
    return [
        ("created_at", models.DateTimeField(auto_now_add=True)),
        ("updated_at", models.DateTimeField(auto_now=True)),
    ]


def _user_fk(related_name, **kwargs):
    return models.ForeignKey(
        blank=True,
        null=True,
        on_delete=django.db.models.deletion.SET_NULL,
        related_name=related_name,
        to=settings.AUTH_USER_MODEL,
        **kwargs,
    )


ORDER_STATUS_CHOICES = [
    ("draft", "Draft"),
    ("pending", "Pending"),
    ("assigned", "Assigned"),
    ("in_transit", "In Transit"),
    ("at_milestone", "At Milestone"),
    ("delayed", "Delayed"),
    ("completed", "Completed"),
    ("closed", "Closed"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="WorkflowTemplate",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("code", models.CharField(max_length=50, unique=True)),
                ("description", models.TextField(blank=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("active", "Active"),
                            ("inactive", "Inactive"),
                        ],
                        default="draft",
                        max_length=10,
                    ),
                ),
                ("version", models.PositiveIntegerField(default=1)),
                (
                    "is_default",
                    models.BooleanField(
                        default=False,
                        help_text="Fallback template when no filter matches",
                    ),
                ),
                ("applicable_cargo_types", models.JSONField(blank=True, default=list)),
                ("applicable_customer_ids", models.JSONField(blank=True, default=list)),
                ("created_by", _user_fk("workflow_templates_created")),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.AddConstraint(
            model_name="workflowtemplate",
            constraint=models.UniqueConstraint(
                condition=models.Q(("is_default", True)),
                fields=("is_default",),
                name="unique_default_workflow",
            ),
        ),
        migrations.CreateModel(
            name="WorkflowStep",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True)),
                ("sequence", models.PositiveIntegerField()),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("enter_geofence", "Enter geofence"),
                            ("exit_geofence", "Exit geofence"),
                            ("manual_check", "Manual check"),
                            ("document_upload", "Document upload"),
                            ("signature", "Signature"),
                            ("photo_capture", "Photo capture"),
                            ("temperature_check", "Temperature check"),
                            ("weight_check", "Weight check"),
                            ("custom", "Custom"),
                        ],
                        max_length=20,
                    ),
                ),
                ("is_required", models.BooleanField(default=True)),
                ("can_skip", models.BooleanField(default=False)),
                ("geofence_id", models.CharField(blank=True, max_length=50)),
                ("geofence_name", models.CharField(blank=True, max_length=200)),
                ("instructions", models.TextField(blank=True)),
                (
                    "estimated_duration_minutes",
                    models.PositiveIntegerField(blank=True, null=True),
                ),
                (
                    "max_duration_minutes",
                    models.PositiveIntegerField(
                        blank=True,
                        null=True,
                        help_text="Time in step after which the order counts as delayed",
                    ),
                ),
                ("transition_conditions", models.JSONField(blank=True, default=list)),
                ("notifications", models.JSONField(blank=True, default=list)),
                (
                    "workflow",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="steps",
                        to="tracking.workflowtemplate",
                    ),
                ),
            ],
            options={"ordering": ["sequence"]},
        ),
        migrations.AddConstraint(
            model_name="workflowstep",
            constraint=models.UniqueConstraint(
                fields=("workflow", "sequence"), name="unique_step_sequence"
            ),
        ),
        migrations.CreateModel(
            name="EscalationRule",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                (
                    "condition_type",
                    models.CharField(
                        choices=[
                            ("delay_threshold", "Delay threshold"),
                            ("no_update", "No update"),
                            ("step_stuck", "Stuck in step"),
                        ],
                        max_length=20,
                    ),
                ),
                ("threshold_minutes", models.PositiveIntegerField()),
                ("step_sequences", models.JSONField(blank=True, default=list)),
                ("actions", models.JSONField(blank=True, default=list)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "workflow",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="escalation_rules",
                        to="tracking.workflowtemplate",
                    ),
                ),
            ],
            options={"ordering": ["id"]},
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "order_number",
                    models.CharField(
                        blank=True, editable=False, max_length=30, null=True, unique=True
                    ),
                ),
                ("external_reference", models.CharField(blank=True, max_length=100)),
                ("customer_id", models.CharField(max_length=50)),
                ("customer_name", models.CharField(blank=True, max_length=200)),
                ("carrier_id", models.CharField(blank=True, max_length=50, null=True)),
                ("vehicle_id", models.CharField(blank=True, max_length=50, null=True)),
                ("driver_id", models.CharField(blank=True, max_length=50, null=True)),
                ("workflow_name", models.CharField(blank=True, max_length=200)),
                (
                    "status",
                    models.CharField(
                        choices=ORDER_STATUS_CHOICES, default="draft", max_length=20
                    ),
                ),
                (
                    "priority",
                    models.CharField(
                        choices=[
                            ("low", "Low"),
                            ("normal", "Normal"),
                            ("high", "High"),
                            ("urgent", "Urgent"),
                        ],
                        default="normal",
                        max_length=10,
                    ),
                ),
                ("cargo_description", models.CharField(max_length=255)),
                (
                    "cargo_type",
                    models.CharField(
                        choices=[
                            ("general", "General"),
                            ("refrigerated", "Refrigerated"),
                            ("hazardous", "Hazardous"),
                            ("fragile", "Fragile"),
                            ("oversized", "Oversized"),
                            ("liquid", "Liquid"),
                            ("bulk", "Bulk"),
                        ],
                        default="general",
                        max_length=20,
                    ),
                ),
                (
                    "cargo_weight_kg",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=12, null=True
                    ),
                ),
                ("cargo_quantity", models.PositiveIntegerField(default=1)),
                (
                    "cargo_declared_value",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=14, null=True
                    ),
                ),
                (
                    "completion_percentage",
                    models.PositiveSmallIntegerField(
                        default=0,
                        editable=False,
                        help_text="Derived from milestone states, never edited directly",
                    ),
                ),
                ("scheduled_start", models.DateTimeField(blank=True, null=True)),
                ("scheduled_end", models.DateTimeField(blank=True, null=True)),
                ("actual_start", models.DateTimeField(blank=True, null=True)),
                ("actual_end", models.DateTimeField(blank=True, null=True)),
                (
                    "sync_status",
                    models.CharField(
                        choices=[
                            ("not_sent", "Not sent"),
                            ("pending", "Pending"),
                            ("sending", "Sending"),
                            ("sent", "Sent"),
                            ("error", "Error"),
                            ("retry", "Retrying"),
                        ],
                        default="not_sent",
                        max_length=10,
                    ),
                ),
                ("sync_error_message", models.TextField(blank=True)),
                ("last_sync_attempt", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True)),
                ("tags", models.JSONField(blank=True, default=list)),
                ("created_by", _user_fk("orders_created")),
                (
                    "workflow",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="orders",
                        to="tracking.workflowtemplate",
                    ),
                ),
            ],
            options={"ordering": ["-created_at", "-id"]},
        ),
        migrations.CreateModel(
            name="Milestone",
            fields=[
                _id(),
                *_timestamps(),
                ("geofence_id", models.CharField(blank=True, max_length=50)),
                ("geofence_name", models.CharField(max_length=200)),
                ("address", models.CharField(blank=True, max_length=255)),
                ("latitude", models.FloatField(blank=True, null=True)),
                ("longitude", models.FloatField(blank=True, null=True)),
                (
                    "milestone_type",
                    models.CharField(
                        choices=[
                            ("origin", "Origin"),
                            ("waypoint", "Waypoint"),
                            ("destination", "Destination"),
                        ],
                        max_length=15,
                    ),
                ),
                (
                    "sequence",
                    models.PositiveIntegerField(help_text="Route order: 1,2,3 .. no gaps"),
                ),
                ("estimated_arrival", models.DateTimeField(blank=True, null=True)),
                ("estimated_departure", models.DateTimeField(blank=True, null=True)),
                ("actual_entry", models.DateTimeField(blank=True, null=True)),
                ("actual_exit", models.DateTimeField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("approaching", "Approaching"),
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("skipped", "Skipped"),
                            ("delayed", "Delayed"),
                        ],
                        default="pending",
                        max_length=15,
                    ),
                ),
                (
                    "delay_minutes",
                    models.IntegerField(
                        blank=True,
                        null=True,
                        help_text="Positive when the vehicle arrived late",
                    ),
                ),
                ("notes", models.TextField(blank=True)),
                ("is_manual", models.BooleanField(default=False)),
                (
                    "manual_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("no_gps_signal", "No GPS signal"),
                            ("equipment_failure", "GPS equipment failure"),
                            ("retroactive_load", "Retroactive load"),
                            ("correction", "Data correction"),
                            ("other", "Other"),
                        ],
                        max_length=20,
                    ),
                ),
                ("manual_observation", models.TextField(blank=True)),
                ("manual_registered_at", models.DateTimeField(blank=True, null=True)),
                ("manual_registered_by", _user_fk("manual_milestone_entries")),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="milestones",
                        to="tracking.order",
                    ),
                ),
            ],
            options={"ordering": ["sequence", "id"]},
        ),
        migrations.CreateModel(
            name="OrderStatusChange",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "from_status",
                    models.CharField(choices=ORDER_STATUS_CHOICES, max_length=20),
                ),
                (
                    "to_status",
                    models.CharField(choices=ORDER_STATUS_CHOICES, max_length=20),
                ),
                ("reason", models.TextField(blank=True)),
                ("is_derived", models.BooleanField(default=False)),
                (
                    "changed_by",
                    _user_fk(
                        "order_status_changes",
                        help_text="Empty for system (derived) changes",
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_history",
                        to="tracking.order",
                    ),
                ),
            ],
            options={"ordering": ["created_at", "id"]},
        ),
        migrations.CreateModel(
            name="OrderClosure",
            fields=[
                _id(),
                *_timestamps(),
                ("observations", models.TextField(blank=True)),
                ("incidents", models.JSONField(blank=True, default=list)),
                ("deviation_reasons", models.JSONField(blank=True, default=list)),
                ("closed_at", models.DateTimeField()),
                ("closed_by", _user_fk("order_closures")),
                (
                    "order",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="closure",
                        to="tracking.order",
                    ),
                ),
            ],
        ),
    ]
