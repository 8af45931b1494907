"""
Workflow template registry.

Templates are shared read models: orders reference them, only this registry
writes them. At most one template carries the default flag, and that template
is always active.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.forms.models import model_to_dict
from django.utils import timezone

from tracking.forms import (
    EscalationRuleForm,
    WorkflowStepForm,
    WorkflowTemplateForm,
    form_error_message,
)
from tracking.models import EscalationRule, Milestone, WorkflowStep, WorkflowTemplate
from tracking.services.derivation import round_half_up
from tracking.services.exceptions import InvalidOperation, NotFound, ValidationError

logger = logging.getLogger(__name__)

WS = WorkflowTemplate.Status


@dataclass(frozen=True)
class StepHistoryEntry:
    step_id: int
    entered_at: object
    completed_at: object
    status: str = Milestone.Status.COMPLETED


@dataclass(frozen=True)
class WorkflowProgress:
    workflow_id: int
    order_id: int
    current_step_id: int
    current_step_sequence: int
    current_step_index: int
    total_steps: int
    completed_step_ids: tuple
    skipped_step_ids: tuple
    progress_percentage: int
    time_in_current_step: int
    is_delayed: bool
    step_history: tuple


class WorkflowRegistry:
    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, template_id) -> WorkflowTemplate:
        """Look a template up by primary key or by code."""
        qs = WorkflowTemplate.objects.prefetch_related("steps", "escalation_rules")
        try:
            if isinstance(template_id, int) or str(template_id).isdigit():
                return qs.get(pk=int(template_id))
            return qs.get(code=str(template_id).upper())
        except WorkflowTemplate.DoesNotExist:
            raise NotFound(f"Workflow template {template_id} not found.")

    def list(self, *, status=None, is_default=None, cargo_type=None, customer_id=None):
        qs = WorkflowTemplate.objects.all()
        if status:
            qs = qs.filter(status=status)
        if is_default is not None:
            qs = qs.filter(is_default=is_default)

        templates = list(qs)
        # JSON membership is filtered here: not every backend supports __contains
        if cargo_type:
            templates = [t for t in templates if t.matches_cargo_type(cargo_type)]
        if customer_id:
            templates = [t for t in templates if t.matches_customer(customer_id)]
        return templates

    def default(self) -> Optional[WorkflowTemplate]:
        return WorkflowTemplate.objects.filter(is_default=True, status=WS.ACTIVE).first()

    def select_for_order(self, customer_id=None, cargo_type=None):
        """
        Pick the template for a new order:
        1. active template matching customer and cargo type
        2. active template matching customer
        3. active template matching cargo type
        4. the default template
        """
        active = list(WorkflowTemplate.objects.filter(status=WS.ACTIVE).order_by("id"))

        rules = (
            (
                "customer and cargo type",
                lambda t: t.matches_customer(customer_id)
                and t.matches_cargo_type(cargo_type),
            ),
            ("customer", lambda t: t.matches_customer(customer_id)),
            ("cargo type", lambda t: t.matches_cargo_type(cargo_type)),
        )
        for label, matches in rules:
            template = next((t for t in active if matches(t)), None)
            if template:
                logger.info("Workflow %s selected by %s", template.code, label)
                return template

        template = self.default()
        if template:
            logger.info("Workflow %s selected as default", template.code)
        else:
            logger.info("No workflow matched customer=%s cargo=%s", customer_id, cargo_type)
        return template

    def step_for_milestone(self, order, milestone) -> Optional[WorkflowStep]:
        """Steps map onto milestones by position."""
        if not order.workflow_id:
            return None
        steps = order.workflow.ordered_steps()
        index = milestone.sequence - 1
        return steps[index] if 0 <= index < len(steps) else None

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def progress(self, order, workflow=None, now=None) -> Optional[WorkflowProgress]:
        """
        Position of an order inside its template.

        The current step is the one whose index equals the number of completed
        milestones (capped at the last step). Time in step runs from the most
        recent exit of a completed milestone.
        """
        workflow = workflow or order.workflow
        if workflow is None:
            return None
        steps = workflow.ordered_steps()
        if not steps:
            return None
        now = now or timezone.now()
        milestones = order.milestone_list()

        completed = [m for m in milestones if m.status == Milestone.Status.COMPLETED]
        current_index = min(len(completed), len(steps) - 1)
        current = steps[current_index]

        completed_steps = steps[: len(completed)]
        skipped_step_ids = tuple(
            steps[m.sequence - 1].pk
            for m in milestones
            if m.status == Milestone.Status.SKIPPED and m.sequence <= len(steps)
        )

        exits = [m.actual_exit for m in completed if m.actual_exit]
        if exits:
            minutes = round_half_up((now - max(exits)).total_seconds() / 60)
        else:
            minutes = 0

        is_delayed = bool(current.max_duration_minutes) and (
            minutes > current.max_duration_minutes
        )

        history = tuple(
            StepHistoryEntry(
                step_id=step.pk,
                entered_at=milestone.actual_entry,
                completed_at=milestone.actual_exit,
            )
            for step, milestone in zip(completed_steps, completed)
        )

        return WorkflowProgress(
            workflow_id=workflow.pk,
            order_id=order.pk,
            current_step_id=current.pk,
            current_step_sequence=current.sequence,
            current_step_index=current_index,
            total_steps=len(steps),
            completed_step_ids=tuple(s.pk for s in completed_steps),
            skipped_step_ids=skipped_step_ids,
            progress_percentage=round_half_up(100 * len(completed_steps) / len(steps)),
            time_in_current_step=minutes,
            is_delayed=is_delayed,
            step_history=history,
        )

    def next_step(self, order, workflow=None, now=None) -> Optional[WorkflowStep]:
        workflow = workflow or order.workflow
        progress = self.progress(order, workflow, now)
        if progress is None:
            return None
        steps = workflow.ordered_steps()
        index = progress.current_step_index + 1
        return steps[index] if index < len(steps) else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _clear_default(self, keep=None):
        qs = WorkflowTemplate.objects.filter(is_default=True)
        if keep is not None:
            qs = qs.exclude(pk=keep.pk)
        for template in qs:
            logger.info("Workflow %s is no longer the default", template.code)
        qs.update(is_default=False)

    def _save_template_form(self, form):
        if not form.is_valid():
            raise ValidationError(form_error_message(form))
        return form.save()

    def _replace_steps(self, template, steps):
        if not steps:
            raise ValidationError("A workflow template needs at least one step.")

        forms_ = []
        errors = []
        for i, step in enumerate(steps, start=1):
            form = WorkflowStepForm(data={"sequence": i, "is_required": True, **step})
            if form.is_valid():
                forms_.append(form)
            else:
                errors.append(f"Step {i}: {form_error_message(form)}")
        if errors:
            raise ValidationError(" ".join(errors))

        sequences = [f.cleaned_data["sequence"] for f in forms_]
        if len(set(sequences)) != len(sequences):
            raise ValidationError("Step sequences must be unique.")

        template.steps.all().delete()
        for form in sorted(forms_, key=lambda f: f.cleaned_data["sequence"]):
            step = form.save(commit=False)
            step.workflow = template
            step.save()

    def _replace_rules(self, template, rules):
        errors = []
        forms_ = []
        for i, rule in enumerate(rules, start=1):
            form = EscalationRuleForm(data={"is_active": True, **rule})
            if form.is_valid():
                forms_.append(form)
            else:
                errors.append(f"Rule {i}: {form_error_message(form)}")
        if errors:
            raise ValidationError(" ".join(errors))

        template.escalation_rules.all().delete()
        for form in forms_:
            rule = form.save(commit=False)
            rule.workflow = template
            rule.save()

    def _check_rule_steps(self, template):
        sequences = set(template.steps.values_list("sequence", flat=True))
        for rule in template.escalation_rules.all():
            missing = set(rule.step_sequences) - sequences
            if missing:
                raise ValidationError(
                    f"Rule '{rule.name}' watches unknown step(s): "
                    f"{', '.join(str(s) for s in sorted(missing))}."
                )

    @transaction.atomic
    def create(self, data, *, actor=None) -> WorkflowTemplate:
        data = dict(data)
        steps = data.pop("steps", None)
        rules = data.pop("escalation_rules", [])
        status = data.pop("status", WS.DRAFT)
        if status not in (WS.DRAFT, WS.ACTIVE):
            raise ValidationError("New templates start as draft or active.")

        if data.get("is_default"):
            self._clear_default()
            status = WS.ACTIVE

        form = WorkflowTemplateForm(data=data)
        if not form.is_valid():
            raise ValidationError(form_error_message(form))
        template = form.save(commit=False)
        template.status = status
        template.created_by = actor
        template.save()

        self._replace_steps(template, steps)
        self._replace_rules(template, rules)
        self._check_rule_steps(template)

        logger.info("Workflow %s created (%s)", template.code, template.status)
        return template

    @transaction.atomic
    def update(self, template_id, data) -> WorkflowTemplate:
        template = self.get(template_id)
        data = dict(data)
        if "status" in data:
            raise ValidationError("Use activate/deactivate to change template status.")
        steps = data.pop("steps", None)
        rules = data.pop("escalation_rules", None)

        if "is_default" in data and not data["is_default"] and template.is_default:
            raise InvalidOperation(
                "The default template cannot be unset; make another template the default."
            )
        becomes_default = bool(data.get("is_default")) and not template.is_default
        if becomes_default:
            self._clear_default(keep=template)

        current = model_to_dict(template, fields=WorkflowTemplateForm.Meta.fields)
        form = WorkflowTemplateForm(data={**current, **data}, instance=template)
        if not form.is_valid():
            raise ValidationError(form_error_message(form))
        template = form.save(commit=False)
        template.version += 1
        if becomes_default:
            template.status = WS.ACTIVE
        template.save()

        if steps is not None:
            self._replace_steps(template, steps)
        if rules is not None:
            self._replace_rules(template, rules)
        self._check_rule_steps(template)

        logger.info("Workflow %s updated to v%s", template.code, template.version)
        return template

    @transaction.atomic
    def activate(self, template_id, *, make_default=False) -> WorkflowTemplate:
        template = self.get(template_id)
        if make_default and not template.is_default:
            self._clear_default(keep=template)
            template.is_default = True
            logger.info("Workflow %s is now the default", template.code)
        template.status = WS.ACTIVE
        template.save()
        return template

    @transaction.atomic
    def deactivate(self, template_id) -> WorkflowTemplate:
        template = self.get(template_id)
        if template.is_default:
            raise InvalidOperation("The default template cannot be deactivated.")
        template.status = WS.INACTIVE
        template.save()
        logger.info("Workflow %s deactivated", template.code)
        return template

    @transaction.atomic
    def delete(self, template_id) -> None:
        template = self.get(template_id)
        if template.is_default:
            raise InvalidOperation("The default template cannot be deleted.")
        if template.is_active:
            raise InvalidOperation("Deactivate the template before deleting it.")
        code = template.code
        template.delete()
        logger.info("Workflow %s deleted", code)

    @transaction.atomic
    def duplicate(self, template_id, new_name=None, *, actor=None) -> WorkflowTemplate:
        """Copy steps and rules into a new draft; the copy is never the default."""
        source = self.get(template_id)

        code = f"{source.code}-COPY"
        n = 2
        while WorkflowTemplate.objects.filter(code=code).exists():
            code = f"{source.code}-COPY-{n}"
            n += 1

        copy = WorkflowTemplate.objects.create(
            name=new_name or f"{source.name} (copy)",
            code=code,
            description=source.description,
            status=WS.DRAFT,
            is_default=False,
            applicable_cargo_types=list(source.applicable_cargo_types),
            applicable_customer_ids=list(source.applicable_customer_ids),
            created_by=actor,
        )
        WorkflowStep.objects.bulk_create(
            WorkflowStep(
                workflow=copy,
                **model_to_dict(step, exclude=["id", "workflow"]),
            )
            for step in source.ordered_steps()
        )
        EscalationRule.objects.bulk_create(
            EscalationRule(
                workflow=copy,
                **model_to_dict(rule, exclude=["id", "workflow"]),
            )
            for rule in source.escalation_rules.all()
        )
        logger.info("Workflow %s duplicated as %s", source.code, copy.code)
        return copy
