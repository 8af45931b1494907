from django.contrib.auth import get_user_model
from django.db import models
from django.db.models import Q

from tracking.services.exceptions import InvalidOperation
from tracking.signals import order_status_changed, send_on_commit

User = get_user_model()


class BaseModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class WorkflowTemplate(BaseModel):
    """
    Reusable, versioned definition of the stages an order should pass through.

    Templates are shared by many orders and are never mutated from the order
    side. Only WorkflowRegistry changes them.
    """

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"

    # Identification
    name = models.CharField(max_length=200)
    code = models.CharField(max_length=50, unique=True)
    description = models.TextField(blank=True)

    status = models.CharField(
        max_length=10, choices=Status.choices, default=Status.DRAFT
    )
    version = models.PositiveIntegerField(default=1)
    is_default = models.BooleanField(
        default=False, help_text="Fallback template when no filter matches"
    )

    # Applicability filters (empty list = no restriction on that axis)
    applicable_cargo_types = models.JSONField(default=list, blank=True)
    applicable_customer_ids = models.JSONField(default=list, blank=True)

    # Audit
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_templates_created",
    )

    class Meta:
        ordering = ["name"]
        constraints = [
            models.UniqueConstraint(
                fields=["is_default"],
                condition=Q(is_default=True),
                name="unique_default_workflow",
            )
        ]

    def __str__(self):
        return f"{self.name} v{self.version}"

    @property
    def is_active(self):
        return self.status == self.Status.ACTIVE

    def matches_customer(self, customer_id):
        return bool(customer_id) and customer_id in (self.applicable_customer_ids or [])

    def matches_cargo_type(self, cargo_type):
        return bool(cargo_type) and cargo_type in (self.applicable_cargo_types or [])

    def ordered_steps(self):
        return list(self.steps.all())


class WorkflowStep(BaseModel):
    """One stage of a workflow template."""

    class Action(models.TextChoices):
        ENTER_GEOFENCE = "enter_geofence", "Enter geofence"
        EXIT_GEOFENCE = "exit_geofence", "Exit geofence"
        MANUAL_CHECK = "manual_check", "Manual check"
        DOCUMENT_UPLOAD = "document_upload", "Document upload"
        SIGNATURE = "signature", "Signature"
        PHOTO_CAPTURE = "photo_capture", "Photo capture"
        TEMPERATURE_CHECK = "temperature_check", "Temperature check"
        WEIGHT_CHECK = "weight_check", "Weight check"
        CUSTOM = "custom", "Custom"

    class ConditionType(models.TextChoices):
        TIME_ELAPSED = "time_elapsed", "Time elapsed"
        TIME_WINDOW = "time_window", "Inside time window"
        LOCATION_REACHED = "location_reached", "Location reached"
        DOCUMENT_UPLOADED = "document_uploaded", "Document uploaded"
        APPROVAL_RECEIVED = "approval_received", "Approval received"
        MANUAL_TRIGGER = "manual_trigger", "Manual trigger"
        ALWAYS = "always", "Always"

    workflow = models.ForeignKey(
        WorkflowTemplate, on_delete=models.CASCADE, related_name="steps"
    )
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    sequence = models.PositiveIntegerField()
    action = models.CharField(max_length=20, choices=Action.choices)
    is_required = models.BooleanField(default=True)
    can_skip = models.BooleanField(default=False)

    # Action configuration
    geofence_id = models.CharField(max_length=50, blank=True)
    geofence_name = models.CharField(max_length=200, blank=True)
    instructions = models.TextField(blank=True)

    # Timing
    estimated_duration_minutes = models.PositiveIntegerField(null=True, blank=True)
    max_duration_minutes = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Time in step after which the order counts as delayed",
    )

    # [{"type": "location_reached", "params": {...}, "description": "..."}]
    transition_conditions = models.JSONField(default=list, blank=True)
    # [{"type": "email", "trigger": "on_delay", "recipients": [...], "template": {...}}]
    notifications = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["sequence"]
        constraints = [
            models.UniqueConstraint(
                fields=["workflow", "sequence"], name="unique_step_sequence"
            )
        ]

    def __str__(self):
        return f"{self.sequence}. {self.name}"

    @property
    def is_skippable(self):
        return self.can_skip or not self.is_required


class EscalationRule(BaseModel):
    """Time-based condition that flags an order for human attention."""

    class ConditionType(models.TextChoices):
        DELAY_THRESHOLD = "delay_threshold", "Delay threshold"
        NO_UPDATE = "no_update", "No update"
        STEP_STUCK = "step_stuck", "Stuck in step"

    class ActionType(models.TextChoices):
        NOTIFY = "notify", "Notify"
        FLAG = "flag", "Flag"
        REASSIGN = "reassign", "Reassign"
        AUTO_CLOSE = "auto_close", "Auto close"

    workflow = models.ForeignKey(
        WorkflowTemplate, on_delete=models.CASCADE, related_name="escalation_rules"
    )
    name = models.CharField(max_length=200)
    condition_type = models.CharField(max_length=20, choices=ConditionType.choices)
    threshold_minutes = models.PositiveIntegerField()
    # step_stuck only: sequences of the steps this rule watches
    step_sequences = models.JSONField(default=list, blank=True)
    # [{"type": "notify", "config": {...}}, {"type": "flag", "config": {"flagType": "critical"}}]
    actions = models.JSONField(default=list, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.name} ({self.get_condition_type_display()})"  # type: ignore


class Order(BaseModel):
    """
    Transport order - the aggregate root.
    Owns its milestones, status history and closure record.
    """

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        PENDING = "pending", "Pending"
        ASSIGNED = "assigned", "Assigned"
        IN_TRANSIT = "in_transit", "In Transit"
        AT_MILESTONE = "at_milestone", "At Milestone"
        DELAYED = "delayed", "Delayed"
        COMPLETED = "completed", "Completed"
        CLOSED = "closed", "Closed"
        CANCELLED = "cancelled", "Cancelled"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        NORMAL = "normal", "Normal"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    class SyncStatus(models.TextChoices):
        NOT_SENT = "not_sent", "Not sent"
        PENDING = "pending", "Pending"
        SENDING = "sending", "Sending"
        SENT = "sent", "Sent"
        ERROR = "error", "Error"
        RETRY = "retry", "Retrying"

    class CargoType(models.TextChoices):
        GENERAL = "general", "General"
        REFRIGERATED = "refrigerated", "Refrigerated"
        HAZARDOUS = "hazardous", "Hazardous"
        FRAGILE = "fragile", "Fragile"
        OVERSIZED = "oversized", "Oversized"
        LIQUID = "liquid", "Liquid"
        BULK = "bulk", "Bulk"

    TERMINAL_STATUSES = (Status.CLOSED, Status.CANCELLED)

    # Identification (number is assigned right after the first save)
    order_number = models.CharField(
        max_length=30, unique=True, null=True, blank=True, editable=False
    )
    external_reference = models.CharField(max_length=100, blank=True)

    # Parties (owned by other subsystems, referenced by id only)
    customer_id = models.CharField(max_length=50)
    customer_name = models.CharField(max_length=200, blank=True)
    carrier_id = models.CharField(max_length=50, null=True, blank=True)
    vehicle_id = models.CharField(max_length=50, null=True, blank=True)
    driver_id = models.CharField(max_length=50, null=True, blank=True)

    # Workflow (name cached so history survives template deletion)
    workflow = models.ForeignKey(
        WorkflowTemplate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    workflow_name = models.CharField(max_length=200, blank=True)

    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )
    priority = models.CharField(
        max_length=10, choices=Priority.choices, default=Priority.NORMAL
    )

    # Cargo
    cargo_description = models.CharField(max_length=255)
    cargo_type = models.CharField(
        max_length=20, choices=CargoType.choices, default=CargoType.GENERAL
    )
    cargo_weight_kg = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True
    )
    cargo_quantity = models.PositiveIntegerField(default=1)
    cargo_declared_value = models.DecimalField(
        max_digits=14, decimal_places=2, null=True, blank=True
    )

    completion_percentage = models.PositiveSmallIntegerField(
        default=0,
        editable=False,
        help_text="Derived from milestone states, never edited directly",
    )

    # Schedule
    scheduled_start = models.DateTimeField(null=True, blank=True)
    scheduled_end = models.DateTimeField(null=True, blank=True)
    actual_start = models.DateTimeField(null=True, blank=True)
    actual_end = models.DateTimeField(null=True, blank=True)

    # External sync
    sync_status = models.CharField(
        max_length=10, choices=SyncStatus.choices, default=SyncStatus.NOT_SENT
    )
    sync_error_message = models.TextField(blank=True)
    last_sync_attempt = models.DateTimeField(null=True, blank=True)

    # Notes
    notes = models.TextField(blank=True)
    tags = models.JSONField(default=list, blank=True)

    # Audit
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders_created",
    )

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.order_number} - {self.get_status_display()}"  # type: ignore

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def milestone_list(self):
        return list(self.milestones.all())

    def pending_milestone_count(self):
        return self.milestones.exclude(
            status__in=[Milestone.Status.COMPLETED, Milestone.Status.SKIPPED]
        ).count()

    def can_close(self):
        """
        Closure eligibility as (bool, reason). Never raises; the store turns a
        negative answer into CannotClose.
        """
        if self.status == self.Status.CLOSED:
            return False, "Order is already closed"
        if self.status != self.Status.COMPLETED:
            return False, "Order must be completed before it can be closed"
        pending = self.pending_milestone_count()
        if pending:
            return False, f"{pending} milestone(s) pending"
        return True, ""

    def _transition(self, new_status, *, actor=None, reason="", derived=False, **extra_fields):
        """
        Change status and append the matching history entry.

        All status changes go through here, never direct assignment, so the
        history log and the outbound event can't drift from the stored status.
        """
        from_status = self.status
        self.status = new_status

        for key, value in extra_fields.items():
            setattr(self, key, value)
        self.save()

        change = OrderStatusChange.objects.create(
            order=self,
            from_status=from_status,
            to_status=new_status,
            changed_by=actor,
            reason=reason,
            is_derived=derived,
        )
        send_on_commit(
            order_status_changed,
            sender=Order,
            order=self,
            from_status=from_status,
            to_status=new_status,
            actor=actor,
            derived=derived,
        )
        return change


class Milestone(BaseModel):
    """Geographic checkpoint (origin, waypoint or destination) on an order route."""

    class Type(models.TextChoices):
        ORIGIN = "origin", "Origin"
        WAYPOINT = "waypoint", "Waypoint"
        DESTINATION = "destination", "Destination"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROACHING = "approaching", "Approaching"
        IN_PROGRESS = "in_progress", "In Progress"
        COMPLETED = "completed", "Completed"
        SKIPPED = "skipped", "Skipped"
        DELAYED = "delayed", "Delayed"

    class ManualReason(models.TextChoices):
        NO_GPS_SIGNAL = "no_gps_signal", "No GPS signal"
        EQUIPMENT_FAILURE = "equipment_failure", "GPS equipment failure"
        RETROACTIVE_LOAD = "retroactive_load", "Retroactive load"
        CORRECTION = "correction", "Data correction"
        OTHER = "other", "Other"

    DONE_STATUSES = (Status.COMPLETED, Status.SKIPPED)

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="milestones")

    # Geofence (cached so the route reads without the geofence subsystem)
    geofence_id = models.CharField(max_length=50, blank=True)
    geofence_name = models.CharField(max_length=200)
    address = models.CharField(max_length=255, blank=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    milestone_type = models.CharField(max_length=15, choices=Type.choices)
    sequence = models.PositiveIntegerField(help_text="Route order: 1,2,3 .. no gaps")

    # Plan vs actual
    estimated_arrival = models.DateTimeField(null=True, blank=True)
    estimated_departure = models.DateTimeField(null=True, blank=True)
    actual_entry = models.DateTimeField(null=True, blank=True)
    actual_exit = models.DateTimeField(null=True, blank=True)

    status = models.CharField(
        max_length=15, choices=Status.choices, default=Status.PENDING
    )
    delay_minutes = models.IntegerField(
        null=True, blank=True, help_text="Positive when the vehicle arrived late"
    )
    notes = models.TextField(blank=True)

    # Contingency hand-entry audit
    is_manual = models.BooleanField(default=False)
    manual_reason = models.CharField(
        max_length=20, choices=ManualReason.choices, blank=True
    )
    manual_observation = models.TextField(blank=True)
    manual_registered_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="manual_milestone_entries",
    )
    manual_registered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["sequence", "id"]

    def __str__(self):
        return f"{self.sequence}. {self.geofence_name} ({self.get_status_display()})"  # type: ignore

    @property
    def is_done(self):
        return self.status in self.DONE_STATUSES


class OrderStatusChange(BaseModel):
    """Append-only status history entry."""

    order = models.ForeignKey(
        Order, on_delete=models.CASCADE, related_name="status_history"
    )
    from_status = models.CharField(max_length=20, choices=Order.Status.choices)
    to_status = models.CharField(max_length=20, choices=Order.Status.choices)
    changed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_status_changes",
        help_text="Empty for system (derived) changes",
    )
    reason = models.TextField(blank=True)
    is_derived = models.BooleanField(default=False)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.order_id}: {self.from_status} → {self.to_status}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise InvalidOperation("Status history entries are immutable.")
        super().save(*args, **kwargs)


class OrderClosure(BaseModel):
    """Administrative closure record. Written once, when the order is closed."""

    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name="closure")
    observations = models.TextField(blank=True)
    # [{"name": "...", "severity": "low|medium|high|critical", "occurred_at": "...", ...}]
    incidents = models.JSONField(default=list, blank=True)
    # [{"type": "route|time|cargo|other", "description": "...", "impact": {...}}]
    deviation_reasons = models.JSONField(default=list, blank=True)
    closed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_closures",
    )
    closed_at = models.DateTimeField()

    def __str__(self):
        return f"Closure of {self.order.order_number}"


class OrderIncident(BaseModel):
    """
    Incident reported against an order while it is running. Open records can be
    resolved once; the closure record lists them all.
    """

    class Category(models.TextChoices):
        VEHICLE = "vehicle", "Vehicle"
        CARGO = "cargo", "Cargo"
        DRIVER = "driver", "Driver"
        ROUTE = "route", "Route"
        CUSTOMER = "customer", "Customer"
        WEATHER = "weather", "Weather"
        SECURITY = "security", "Security"
        DOCUMENTATION = "documentation", "Documentation"
        OTHER = "other", "Other"

    class Severity(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"
        CRITICAL = "critical", "Critical"

    class Resolution(models.TextChoices):
        PENDING = "pending", "Pending"
        IN_PROGRESS = "in_progress", "In Progress"
        RESOLVED = "resolved", "Resolved"
        UNRESOLVED = "unresolved", "Unresolved"

    OPEN_STATUSES = (Resolution.PENDING, Resolution.IN_PROGRESS)

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="incidents")
    milestone = models.ForeignKey(
        Milestone,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="incidents",
    )

    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=15, choices=Category.choices)
    severity = models.CharField(
        max_length=10, choices=Severity.choices, default=Severity.LOW
    )
    occurred_at = models.DateTimeField()
    action_taken = models.TextField(blank=True)

    # Resolution
    resolution_status = models.CharField(
        max_length=15, choices=Resolution.choices, default=Resolution.PENDING
    )
    resolution_description = models.TextField(blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="incidents_resolved",
    )

    reported_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="incidents_reported",
    )

    class Meta:
        ordering = ["occurred_at", "id"]

    def __str__(self):
        return f"{self.name} ({self.get_severity_display()})"  # type: ignore

    @property
    def is_open(self):
        return self.resolution_status in self.OPEN_STATUSES

    def as_closure_entry(self):
        """Snapshot written into OrderClosure.incidents."""
        return {
            "name": self.name,
            "category": self.category,
            "severity": self.severity,
            "occurred_at": self.occurred_at.isoformat(),
            "description": self.description,
            "milestone_id": self.milestone_id,
            "resolution_status": self.resolution_status,
        }
