# forms.py
from django import forms
from django.core.exceptions import NON_FIELD_ERRORS
from django.utils import timezone

from .models import (
    EscalationRule,
    Milestone,
    Order,
    OrderIncident,
    WorkflowStep,
    WorkflowTemplate,
)

INCIDENT_SEVERITIES = ("low", "medium", "high", "critical")
DEVIATION_TYPES = ("route", "time", "cargo", "other")


def form_error_message(form):
    """Flatten a bound form's errors into one readable line."""
    parts = []
    for field, errors in form.errors.items():
        label = "" if field == NON_FIELD_ERRORS else f"{field}: "
        parts.append(label + " ".join(str(e) for e in errors))
    return "; ".join(parts)


class _JSONListMixin:
    """
    forms.JSONField treats [] as empty and returns None. The model columns are
    NOT NULL lists, so every JSON list field is normalised back to a list.
    """

    json_list_fields: tuple = ()

    def _clean_json_list(self, name):
        value = self.cleaned_data.get(name)  # type: ignore[attr-defined]
        if value in (None, ""):
            return []
        if not isinstance(value, list):
            raise forms.ValidationError("Must be a list.")
        return value

    def clean(self):
        cleaned = super().clean()  # type: ignore[misc]
        for name in self.json_list_fields:
            if name in cleaned and not self.has_error(name):  # type: ignore[attr-defined]
                try:
                    cleaned[name] = self._clean_json_list(name)
                except forms.ValidationError as exc:
                    self.add_error(name, exc)  # type: ignore[attr-defined]
        return cleaned


class ManualMilestoneEntryForm(forms.Form):
    """
    Contingency hand-entry of a checkpoint when no automatic signal arrived.

    Entry time, reason and a written observation are mandatory; the exit time is
    optional but cannot precede the entry.
    """

    actual_entry = forms.DateTimeField()
    actual_exit = forms.DateTimeField(required=False)
    reason = forms.ChoiceField(choices=Milestone.ManualReason.choices)
    observation = forms.CharField(widget=forms.Textarea(attrs={"rows": 3}))

    def clean_actual_entry(self):
        entry = self.cleaned_data["actual_entry"]
        if entry > timezone.now():
            raise forms.ValidationError("Entry time cannot be in the future.")
        return entry

    def clean(self):
        cleaned = super().clean()
        entry = cleaned.get("actual_entry")
        exit_ = cleaned.get("actual_exit")
        if entry and exit_ and exit_ < entry:
            self.add_error("actual_exit", "Exit time cannot be before entry time.")
        return cleaned


class OrderClosureForm(forms.Form):
    observations = forms.CharField(required=False, widget=forms.Textarea)
    incidents = forms.JSONField(required=False)
    deviation_reasons = forms.JSONField(required=False)

    def _list_of_dicts(self, name):
        value = self.cleaned_data.get(name)
        if value in (None, ""):
            return []
        if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
            raise forms.ValidationError("Must be a list of objects.")
        return value

    def clean_incidents(self):
        incidents = self._list_of_dicts("incidents")
        for incident in incidents:
            if not incident.get("name"):
                raise forms.ValidationError("Every incident needs a name.")
            severity = incident.get("severity", "low")
            if severity not in INCIDENT_SEVERITIES:
                raise forms.ValidationError(f"Unknown incident severity '{severity}'.")
        return incidents

    def clean_deviation_reasons(self):
        reasons = self._list_of_dicts("deviation_reasons")
        for reason in reasons:
            if reason.get("type") not in DEVIATION_TYPES:
                raise forms.ValidationError(
                    f"Unknown deviation type '{reason.get('type')}'."
                )
            if not reason.get("description"):
                raise forms.ValidationError("Every deviation needs a description.")
        return reasons


class IncidentRecordForm(forms.ModelForm):
    class Meta:
        model = OrderIncident
        fields = [
            "name",
            "description",
            "category",
            "severity",
            "occurred_at",
            "action_taken",
        ]

    def clean_occurred_at(self):
        occurred = self.cleaned_data["occurred_at"]
        if occurred > timezone.now():
            raise forms.ValidationError("Incidents cannot be reported ahead of time.")
        return occurred


class IncidentResolutionForm(forms.Form):
    status = forms.ChoiceField(
        choices=[
            (OrderIncident.Resolution.RESOLVED, "Resolved"),
            (OrderIncident.Resolution.UNRESOLVED, "Unresolved"),
        ]
    )
    description = forms.CharField(widget=forms.Textarea(attrs={"rows": 3}))


class WorkflowTemplateForm(_JSONListMixin, forms.ModelForm):
    json_list_fields = ("applicable_cargo_types", "applicable_customer_ids")

    class Meta:
        model = WorkflowTemplate
        fields = [
            "name",
            "code",
            "description",
            "is_default",
            "applicable_cargo_types",
            "applicable_customer_ids",
        ]

    def clean_code(self):
        return self.cleaned_data["code"].strip().upper()

    def clean(self):
        cleaned = super().clean()
        unknown = [
            c
            for c in cleaned.get("applicable_cargo_types") or []
            if c not in Order.CargoType.values
        ]
        if unknown:
            self.add_error(
                "applicable_cargo_types", f"Unknown cargo type(s): {', '.join(unknown)}"
            )
        return cleaned


class WorkflowStepForm(_JSONListMixin, forms.ModelForm):
    json_list_fields = ("transition_conditions", "notifications")

    class Meta:
        model = WorkflowStep
        fields = [
            "name",
            "description",
            "sequence",
            "action",
            "is_required",
            "can_skip",
            "geofence_id",
            "geofence_name",
            "instructions",
            "estimated_duration_minutes",
            "max_duration_minutes",
            "transition_conditions",
            "notifications",
        ]

    def clean(self):
        cleaned = super().clean()

        action = cleaned.get("action")
        if action in (
            WorkflowStep.Action.ENTER_GEOFENCE,
            WorkflowStep.Action.EXIT_GEOFENCE,
        ) and not cleaned.get("geofence_id"):
            self.add_error("geofence_id", "Geofence steps need a geofence.")

        estimated = cleaned.get("estimated_duration_minutes")
        maximum = cleaned.get("max_duration_minutes")
        if estimated and maximum and maximum < estimated:
            self.add_error(
                "max_duration_minutes",
                "Maximum duration cannot be shorter than the estimate.",
            )

        for condition in cleaned.get("transition_conditions") or []:
            kind = condition.get("type") if isinstance(condition, dict) else None
            if kind not in WorkflowStep.ConditionType.values:
                self.add_error(
                    "transition_conditions", f"Unknown transition condition '{kind}'."
                )
                break
        return cleaned


class EscalationRuleForm(_JSONListMixin, forms.ModelForm):
    json_list_fields = ("step_sequences", "actions")

    class Meta:
        model = EscalationRule
        fields = [
            "name",
            "condition_type",
            "threshold_minutes",
            "step_sequences",
            "actions",
            "is_active",
        ]

    def clean(self):
        cleaned = super().clean()

        actions = cleaned.get("actions")
        if "actions" in cleaned and not actions:
            self.add_error("actions", "At least one action is required.")
        for action in actions or []:
            kind = action.get("type") if isinstance(action, dict) else None
            if kind not in EscalationRule.ActionType.values:
                self.add_error("actions", f"Unknown escalation action '{kind}'.")
                break

        sequences = cleaned.get("step_sequences") or []
        if any(not isinstance(s, int) or s < 1 for s in sequences):
            self.add_error("step_sequences", "Step sequences must be positive integers.")
        if (
            cleaned.get("condition_type") == EscalationRule.ConditionType.STEP_STUCK
            and "step_sequences" in cleaned
            and not sequences
        ):
            self.add_error("step_sequences", "Stuck-in-step rules must name at least one step.")
        return cleaned
