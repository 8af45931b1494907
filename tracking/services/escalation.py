"""
Escalation evaluation.

``evaluate`` reads an order snapshot and returns one result per active rule.
It never writes, so it can run on any schedule next to live mutations; the
``evaluate_escalations`` command decides what to do with triggered results.
"""

import logging
from dataclasses import dataclass, field

from django.utils import timezone

from tracking.models import EscalationRule, Order
from tracking.services.derivation import round_half_up

logger = logging.getLogger(__name__)

CT = EscalationRule.ConditionType

# Orders on the road; everything else is either not started or finished
ACTIVE_ORDER_STATUSES = (
    Order.Status.IN_TRANSIT,
    Order.Status.AT_MILESTONE,
    Order.Status.DELAYED,
)


@dataclass(frozen=True)
class EscalationResult:
    rule_id: int
    rule_name: str
    condition_type: str
    triggered: bool
    message: str = ""
    actions: list = field(default_factory=list, compare=False)


def _delay_threshold(rule, order, progress, now):
    minutes = progress.time_in_current_step
    if progress.is_delayed and minutes > rule.threshold_minutes:
        return f"Delay of {minutes} minutes (threshold: {rule.threshold_minutes} min)"
    return None


def _no_update(rule, order, progress, now):
    elapsed = (now - order.updated_at).total_seconds() / 60
    if elapsed > rule.threshold_minutes:
        return (
            f"No update for {round_half_up(elapsed)} minutes "
            f"(threshold: {rule.threshold_minutes} min)"
        )
    return None


def _step_stuck(rule, order, progress, now):
    minutes = progress.time_in_current_step
    if (
        progress.current_step_sequence in rule.step_sequences
        and minutes > rule.threshold_minutes
    ):
        return (
            f"Stuck in step {progress.current_step_sequence} for {minutes} minutes "
            f"(threshold: {rule.threshold_minutes} min)"
        )
    return None


CONDITIONS = {
    CT.DELAY_THRESHOLD: _delay_threshold,
    CT.NO_UPDATE: _no_update,
    CT.STEP_STUCK: _step_stuck,
}


class EscalationEvaluator:
    def __init__(self, registry):
        self.registry = registry

    def evaluate(self, order, workflow=None, now=None) -> list:
        """
        Evaluate every active rule of the order's template, independently.
        Orders without a template (or with an empty one) have nothing to check.
        """
        workflow = workflow or order.workflow
        now = now or timezone.now()
        progress = self.registry.progress(order, workflow, now)
        if progress is None:
            return []

        results = []
        for rule in workflow.escalation_rules.all():
            if not rule.is_active:
                continue
            message = CONDITIONS[rule.condition_type](rule, order, progress, now)
            results.append(
                EscalationResult(
                    rule_id=rule.pk,
                    rule_name=rule.name,
                    condition_type=rule.condition_type,
                    triggered=message is not None,
                    message=message or "",
                    actions=list(rule.actions),
                )
            )
        return results

    def scan(self, now=None):
        """Yield (order, triggered results) for every order on the road."""
        now = now or timezone.now()
        orders = (
            Order.objects.filter(status__in=ACTIVE_ORDER_STATUSES, workflow__isnull=False)
            .select_related("workflow")
            .prefetch_related(
                "milestones", "workflow__steps", "workflow__escalation_rules"
            )
            .order_by("id")
        )
        for order in orders:
            triggered = [r for r in self.evaluate(order, now=now) if r.triggered]
            if triggered:
                yield order, triggered
