"""
Milestone lifecycle.

The module-level functions move a single Milestone instance through its state
machine without saving it. MilestoneManager combines them with the order store
(locking, persistence, derivation) and the workflow registry (step rules).
"""

import logging
from datetime import timedelta

from django.utils import timezone

from tracking.forms import ManualMilestoneEntryForm, form_error_message
from tracking.models import Milestone, Order
from tracking.services.derivation import round_half_up
from tracking.services.exceptions import (
    InvalidOperation,
    InvalidTransition,
    NotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

S = Milestone.Status

MILESTONE_TRANSITIONS = {
    S.PENDING: {S.APPROACHING, S.IN_PROGRESS, S.SKIPPED},
    S.APPROACHING: {S.IN_PROGRESS, S.DELAYED},
    S.IN_PROGRESS: {S.COMPLETED, S.DELAYED},
    S.DELAYED: {S.IN_PROGRESS, S.COMPLETED},
    S.COMPLETED: set(),
    S.SKIPPED: set(),
}

# an order must keep its origin and destination
MIN_MILESTONES = 2


def check_transition(milestone: Milestone, new_status: str) -> None:
    if new_status not in S.values:
        raise ValidationError(f"Unknown milestone status '{new_status}'.")
    if new_status == milestone.status:
        return
    if new_status not in MILESTONE_TRANSITIONS[milestone.status]:
        raise InvalidTransition(
            f"Milestone {milestone.sequence} cannot move from "
            f"{milestone.status} to {new_status}."
        )


def arrival_delay_minutes(milestone: Milestone):
    """Signed minutes between planned and actual arrival, positive when late."""
    if not milestone.actual_entry or not milestone.estimated_arrival:
        return None
    seconds = (milestone.actual_entry - milestone.estimated_arrival).total_seconds()
    return round_half_up(seconds / 60)


def apply_entry(milestone: Milestone, at=None) -> Milestone:
    check_transition(milestone, S.IN_PROGRESS)
    milestone.status = S.IN_PROGRESS
    milestone.actual_entry = at or timezone.now()
    return milestone


def apply_exit(milestone: Milestone, at=None) -> Milestone:
    check_transition(milestone, S.COMPLETED)
    at = at or timezone.now()
    if milestone.actual_entry and at < milestone.actual_entry:
        raise ValidationError("Exit time cannot be before entry time.")
    milestone.status = S.COMPLETED
    milestone.actual_exit = at
    milestone.delay_minutes = arrival_delay_minutes(milestone)
    return milestone


def resequence(milestones) -> list:
    """
    Renumber to 1..N and retype by position: first origin, last destination,
    everything in between waypoint. Statuses are left alone.
    """
    last = len(milestones) - 1
    for index, milestone in enumerate(milestones):
        milestone.sequence = index + 1
        if index == 0:
            milestone.milestone_type = Milestone.Type.ORIGIN
        elif index == last:
            milestone.milestone_type = Milestone.Type.DESTINATION
        else:
            milestone.milestone_type = Milestone.Type.WAYPOINT
    return milestones


class MilestoneManager:
    def __init__(self, store, registry):
        self.store = store
        self.registry = registry

    # ------------------------------------------------------------------
    # Checkpoint events
    # ------------------------------------------------------------------
    def enter(self, order_id, milestone_id, *, at=None, actor=None) -> Order:
        return self.store.enter_milestone(order_id, milestone_id, at=at, actor=actor)

    def exit(self, order_id, milestone_id, *, at=None, actor=None) -> Order:
        return self.store.exit_milestone(order_id, milestone_id, at=at, actor=actor)

    def mark_approaching(self, order_id, milestone_id, *, actor=None) -> Order:
        """Set by an outside signal (geofence proximity), never inferred here."""

        def _approach(order, milestone):
            check_transition(milestone, S.APPROACHING)
            milestone.status = S.APPROACHING

        return self.store.mutate_milestone(order_id, milestone_id, _approach, actor=actor)

    def skip(
        self, order_id, milestone_id, *, reason="", actor=None, allow_override=False
    ) -> Order:
        """
        Operator override for a checkpoint that will not be visited.

        Milestones mapped to a required, non-skippable workflow step can only be
        skipped with ``allow_override``.
        """

        def _skip(order, milestone):
            check_transition(milestone, S.SKIPPED)
            step = self.registry.step_for_milestone(order, milestone)
            if step is not None and not step.is_skippable and not allow_override:
                raise InvalidTransition(
                    f"Step '{step.name}' is required and cannot be skipped."
                )
            milestone.status = S.SKIPPED
            if reason:
                milestone.notes = reason

        order = self.store.mutate_milestone(order_id, milestone_id, _skip, actor=actor)
        logger.info(
            "Milestone %s of order %s skipped (override=%s)",
            milestone_id,
            order.order_number,
            allow_override,
        )
        return order

    def register_manual(self, order_id, milestone_id, data, *, actor) -> Order:
        """
        Contingency registration of entry (and optionally exit) times.

        Ends in the same status the automatic path would produce, plus the audit
        trail. A completed milestone can only be amended with the ``correction``
        reason, which overwrites its timestamps.
        """
        if actor is None:
            raise ValidationError("Manual registration requires the operator identity.")

        form = ManualMilestoneEntryForm(data=data)
        if not form.is_valid():
            raise ValidationError(form_error_message(form))
        cd = form.cleaned_data

        def _register(order, milestone):
            if milestone.status == S.COMPLETED:
                if cd["reason"] != Milestone.ManualReason.CORRECTION:
                    raise InvalidTransition(
                        "Completed milestones can only be amended as a correction."
                    )
                milestone.actual_entry = cd["actual_entry"]
                if cd["actual_exit"]:
                    milestone.actual_exit = cd["actual_exit"]
                milestone.delay_minutes = arrival_delay_minutes(milestone)
            else:
                if milestone.status != S.IN_PROGRESS:
                    apply_entry(milestone, cd["actual_entry"])
                else:
                    milestone.actual_entry = cd["actual_entry"]
                if cd["actual_exit"]:
                    apply_exit(milestone, cd["actual_exit"])

            milestone.is_manual = True
            milestone.manual_reason = cd["reason"]
            milestone.manual_observation = cd["observation"]
            milestone.manual_registered_by = actor
            milestone.manual_registered_at = timezone.now()

        order = self.store.mutate_milestone(
            order_id, milestone_id, _register, actor=actor
        )
        logger.info(
            "Manual entry on milestone %s of order %s by %s (%s)",
            milestone_id,
            order.order_number,
            actor,
            cd["reason"],
        )
        return order

    # ------------------------------------------------------------------
    # Delay sweep
    # ------------------------------------------------------------------
    def mark_overdue(self, order_id, now=None) -> list:
        """
        Flip approaching/in-progress milestones to delayed once they have been
        open longer than their step's maximum duration. Returns the flipped ones.
        """
        now = now or timezone.now()
        flipped = []

        def _sweep(order, milestones):
            workflow = order.workflow
            steps = workflow.ordered_steps() if workflow else []
            for milestone in milestones:
                if milestone.status not in (S.APPROACHING, S.IN_PROGRESS):
                    continue
                index = milestone.sequence - 1
                step = steps[index] if index < len(steps) else None
                if step is None or not step.max_duration_minutes:
                    continue
                since = milestone.actual_entry or milestone.estimated_arrival
                if since is None:
                    continue
                if now - since > timedelta(minutes=step.max_duration_minutes):
                    milestone.status = S.DELAYED
                    flipped.append(milestone)
            return flipped

        self.store.update_milestones(order_id, _sweep)
        if flipped:
            logger.info(
                "Order %s: %d milestone(s) marked delayed", order_id, len(flipped)
            )
        return flipped

    # ------------------------------------------------------------------
    # Route edits
    # ------------------------------------------------------------------
    def add(self, order_id, data, *, position=None, actor=None) -> Order:
        """
        Insert a checkpoint at 1-based ``position`` (default: just before the
        destination). The route is renumbered afterwards.
        """
        if not data.get("geofence_name"):
            raise ValidationError("Milestone geofence_name is required.")

        def _insert(order, milestones):
            index = len(milestones) - 1 if position is None else position - 1
            if index < 0 or index > len(milestones):
                raise ValidationError(
                    f"Position must be between 1 and {len(milestones) + 1}."
                )
            milestone = Milestone(
                order=order,
                geofence_id=data.get("geofence_id", ""),
                geofence_name=data["geofence_name"],
                address=data.get("address", ""),
                latitude=data.get("latitude"),
                longitude=data.get("longitude"),
                estimated_arrival=data.get("estimated_arrival"),
                estimated_departure=data.get("estimated_departure"),
                notes=data.get("notes", ""),
            )
            milestones.insert(index, milestone)

        return self.store.mutate_route(order_id, _insert, actor=actor)

    def remove(self, order_id, milestone_id, *, actor=None) -> Order:
        def _remove(order, milestones):
            target = next((m for m in milestones if m.pk == milestone_id), None)
            if target is None:
                raise NotFound(f"Milestone {milestone_id} not found on this order.")
            if target.status != S.PENDING:
                raise InvalidOperation("Only pending milestones can be removed.")
            if len(milestones) <= MIN_MILESTONES:
                raise InvalidOperation(
                    f"An order needs at least {MIN_MILESTONES} milestones."
                )
            milestones.remove(target)
            target.delete()

        return self.store.mutate_route(order_id, _remove, actor=actor)
