from django.contrib import admin

from .models import (
    EscalationRule,
    Milestone,
    Order,
    OrderClosure,
    OrderIncident,
    OrderStatusChange,
    WorkflowStep,
    WorkflowTemplate,
)


class WorkflowStepInline(admin.TabularInline):
    model = WorkflowStep
    extra = 0
    fields = ("sequence", "name", "action", "is_required", "can_skip", "max_duration_minutes")


class EscalationRuleInline(admin.TabularInline):
    model = EscalationRule
    extra = 0
    fields = ("name", "condition_type", "threshold_minutes", "step_sequences", "is_active")


@admin.register(WorkflowTemplate)
class WorkflowTemplateAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "status", "version", "is_default")
    list_filter = ("status", "is_default")
    search_fields = ("code", "name")
    inlines = [WorkflowStepInline, EscalationRuleInline]


class MilestoneInline(admin.TabularInline):
    model = Milestone
    extra = 0
    fields = (
        "sequence",
        "milestone_type",
        "geofence_name",
        "status",
        "estimated_arrival",
        "actual_entry",
        "actual_exit",
        "delay_minutes",
        "is_manual",
    )
    readonly_fields = ("sequence", "milestone_type", "delay_minutes", "is_manual")


class OrderStatusChangeInline(admin.TabularInline):
    model = OrderStatusChange
    extra = 0
    can_delete = False
    readonly_fields = ("from_status", "to_status", "changed_by", "reason", "is_derived", "created_at")

    def has_add_permission(self, request, obj=None):
        return False


class OrderIncidentInline(admin.TabularInline):
    model = OrderIncident
    fk_name = "order"
    extra = 0
    fields = ("name", "category", "severity", "occurred_at", "resolution_status", "resolved_at")
    readonly_fields = ("resolved_at",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = (
        "order_number",
        "customer_name",
        "status",
        "priority",
        "completion_percentage",
        "sync_status",
        "created_at",
    )
    list_filter = ("status", "priority", "cargo_type", "sync_status")
    search_fields = ("order_number", "customer_id", "customer_name", "external_reference")
    readonly_fields = ("order_number", "status", "completion_percentage")
    inlines = [MilestoneInline, OrderIncidentInline, OrderStatusChangeInline]


admin.site.register(OrderClosure)
