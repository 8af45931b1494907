"""
Order store.

Owns every write to an Order aggregate (the order, its milestones, incidents,
status history and closure record). Writers lock the order row for the duration of
the read-modify-write so concurrent mutations of one order are serialised;
derivation only ever touches the locked order.
"""

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation as DecimalError

from django.conf import settings
from django.core.paginator import Paginator
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from tracking.forms import (
    IncidentRecordForm,
    IncidentResolutionForm,
    OrderClosureForm,
    form_error_message,
)
from tracking.models import (
    Milestone,
    Order,
    OrderClosure,
    OrderIncident,
    OrderStatusChange,
)
from tracking.services.derivation import derive
from tracking.services.exceptions import (
    CannotClose,
    ExternalSyncError,
    InvalidOperation,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from tracking.services.milestones import (
    apply_entry,
    apply_exit,
    arrival_delay_minutes,
    check_transition,
    resequence,
)
from tracking.signals import (
    incident_recorded,
    milestone_updated,
    order_sync_updated,
    send_on_commit,
)

logger = logging.getLogger(__name__)

OS = Order.Status

ORDER_TRANSITIONS = {
    OS.DRAFT: {OS.PENDING, OS.ASSIGNED, OS.CANCELLED},
    OS.PENDING: {OS.ASSIGNED, OS.CANCELLED},
    OS.ASSIGNED: {OS.IN_TRANSIT, OS.CANCELLED},
    OS.IN_TRANSIT: {OS.AT_MILESTONE, OS.DELAYED, OS.COMPLETED},
    OS.AT_MILESTONE: {OS.DELAYED, OS.COMPLETED},
    OS.DELAYED: {OS.AT_MILESTONE, OS.COMPLETED},
    OS.COMPLETED: {OS.CLOSED},
    OS.CLOSED: set(),
    OS.CANCELLED: set(),
}

# Statuses that normally come out of derivation. A caller may still set them,
# but only with a reason and only when the milestones agree.
DERIVED_STATUSES = (OS.AT_MILESTONE, OS.DELAYED, OS.COMPLETED)

# Route edits are frozen once the order is done
ROUTE_LOCKED_STATUSES = (OS.COMPLETED, OS.CLOSED, OS.CANCELLED)

MILESTONE_PATCH_FIELDS = (
    "status",
    "actual_entry",
    "actual_exit",
    "estimated_arrival",
    "estimated_departure",
    "notes",
    "geofence_name",
    "address",
    "latitude",
    "longitude",
)
_DATETIME_FIELDS = (
    "actual_entry",
    "actual_exit",
    "estimated_arrival",
    "estimated_departure",
)

ORDER_FIELDS = (
    "external_reference",
    "customer_id",
    "customer_name",
    "carrier_id",
    "vehicle_id",
    "driver_id",
    "priority",
    "cargo_description",
    "cargo_type",
    "cargo_weight_kg",
    "cargo_quantity",
    "cargo_declared_value",
    "scheduled_start",
    "scheduled_end",
    "notes",
    "tags",
)

# PositiveIntegerField upper bound on every supported backend
MAX_QUANTITY = 2147483647

# Orders can be edited until the trip starts; vehicle and driver only change
# through assign()
EDITABLE_STATUSES = (OS.DRAFT, OS.PENDING, OS.ASSIGNED)
EDITABLE_FIELDS = tuple(
    f for f in ORDER_FIELDS if f not in ("vehicle_id", "driver_id")
)

# Incidents can no longer be reported on finished orders
INCIDENT_LOCKED_STATUSES = (OS.CLOSED, OS.CANCELLED)

DEFAULT_PAGE_SIZE = 10


@dataclass(frozen=True)
class OrderPage:
    orders: list
    total: int
    page: int
    page_size: int
    total_pages: int
    status_counts: dict


def _to_datetime(value, field):
    if value is None or not isinstance(value, str):
        return value
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"{field}: '{value}' is not a valid ISO-8601 datetime.")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _to_decimal(value, field):
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except DecimalError:
        raise ValidationError(f"{field}: '{value}' is not a number.")


def _to_quantity(value):
    number = _to_decimal(value, "cargo_quantity")
    if (
        number is None
        or not number.is_finite()
        or number != number.to_integral_value()
    ):
        raise ValidationError(f"cargo_quantity: '{value}' is not a whole number.")
    if not 1 <= number <= MAX_QUANTITY:
        raise ValidationError(f"cargo_quantity must be between 1 and {MAX_QUANTITY}.")
    return int(number)


def decimal_fits(name, value) -> bool:
    """True when ``value`` fits the Order DecimalField ``name`` without overflow."""
    field = Order._meta.get_field(name)
    limit = Decimal(10) ** (field.max_digits - field.decimal_places)
    if not value.is_finite() or abs(value) >= limit:
        return False
    # the column rounds to its decimal places, which can carry into a new digit
    return abs(round(value, field.decimal_places)) < limit


def _too_long(model, name, value):
    max_length = model._meta.get_field(name).max_length
    if max_length and value is not None and len(str(value)) > max_length:
        return f"{name} is longer than {max_length} characters."
    return None


def _field_errors(values):
    """Order column checks shared by create and update."""
    errors = []
    for name, value in values.items():
        message = _too_long(Order, name, value)
        if message:
            errors.append(message)

    priority = values.get("priority")
    if priority and priority not in Order.Priority.values:
        errors.append(f"Unknown priority '{priority}'.")

    cargo_type = values.get("cargo_type")
    if cargo_type and cargo_type not in Order.CargoType.values:
        errors.append(f"Unknown cargo type '{cargo_type}'.")

    if values.get("cargo_quantity") not in (None, ""):
        try:
            _to_quantity(values["cargo_quantity"])
        except ValidationError as exc:
            errors.append(str(exc))

    for name in ("cargo_weight_kg", "cargo_declared_value"):
        try:
            value = _to_decimal(values.get(name), name)
        except ValidationError as exc:
            errors.append(str(exc))
            continue
        if value is not None and not decimal_fits(name, value):
            errors.append(f"{name} is out of range.")
    return errors


def _validate_payload(payload):
    """
    Creation sanity checks, collected so the caller sees every problem at once:
    - customer id present
    - at least 2 milestones, origin first and destination last when typed
    - every milestone names its geofence
    - order and milestone values fit their columns
    """
    errors = []

    if not payload.get("customer_id"):
        errors.append("customer_id is required.")

    milestones = payload.get("milestones") or []
    if len(milestones) < 2:
        errors.append("At least 2 milestones (origin and destination) are required.")
    else:
        types = [m.get("milestone_type") for m in milestones]
        if any(types):
            if (
                types.count(Milestone.Type.ORIGIN) != 1
                or types.count(Milestone.Type.DESTINATION) != 1
            ):
                errors.append(
                    "Exactly one origin and one destination milestone are required."
                )
            elif types[0] != Milestone.Type.ORIGIN or types[-1] != Milestone.Type.DESTINATION:
                errors.append(
                    "The origin must be the first milestone and the destination the last."
                )
        for i, m in enumerate(milestones, start=1):
            if not m.get("geofence_name"):
                errors.append(f"Milestone {i}: geofence_name is required.")
            for name in ("geofence_id", "geofence_name", "address"):
                message = _too_long(Milestone, name, m.get(name))
                if message:
                    errors.append(f"Milestone {i}: {message}")

    errors.extend(_field_errors({k: payload.get(k) for k in ORDER_FIELDS}))

    if errors:
        raise ValidationError(" ".join(errors))


class OrderStore:
    def __init__(self, registry):
        self.registry = registry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, order_id) -> Order:
        try:
            return (
                Order.objects.select_related("workflow")
                .prefetch_related("milestones")
                .get(pk=order_id)
            )
        except Order.DoesNotExist:
            raise NotFound(f"Order {order_id} not found.")

    def get_by_number(self, order_number) -> Order:
        try:
            return (
                Order.objects.select_related("workflow")
                .prefetch_related("milestones")
                .get(order_number=order_number)
            )
        except Order.DoesNotExist:
            raise NotFound(f"Order {order_number} not found.")

    def can_close(self, order_id):
        return self.get(order_id).can_close()

    def status_counts(self, queryset=None) -> dict:
        """Orders per status, every status present (zero when none)."""
        queryset = Order.objects.all() if queryset is None else queryset
        counts = dict.fromkeys(OS.values, 0)
        rows = queryset.order_by().values("status").annotate(n=Count("id"))
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def list(
        self,
        *,
        search=None,
        customer_id=None,
        carrier_id=None,
        status=None,
        priority=None,
        sync_status=None,
        date_from=None,
        date_to=None,
        page=1,
        page_size=DEFAULT_PAGE_SIZE,
    ) -> OrderPage:
        """
        Filtered, paginated order listing, newest first.

        ``status`` and ``priority`` take one value or a list. ``search`` matches
        order number, customer name and external reference. Dates bound the
        scheduled start. Status counts cover the whole filtered set, not only
        the requested page.
        """
        if page_size < 1:
            raise ValidationError("page_size must be at least 1.")

        qs = Order.objects.select_related("workflow")
        if search:
            qs = qs.filter(
                Q(order_number__icontains=search)
                | Q(customer_name__icontains=search)
                | Q(external_reference__icontains=search)
            )
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        if carrier_id:
            qs = qs.filter(carrier_id=carrier_id)
        if status:
            qs = qs.filter(status__in=[status] if isinstance(status, str) else status)
        if priority:
            qs = qs.filter(
                priority__in=[priority] if isinstance(priority, str) else priority
            )
        if sync_status:
            qs = qs.filter(sync_status=sync_status)
        if date_from:
            qs = qs.filter(scheduled_start__gte=_to_datetime(date_from, "date_from"))
        if date_to:
            qs = qs.filter(scheduled_start__lte=_to_datetime(date_to, "date_to"))

        total = qs.count()
        current = Paginator(qs, page_size).get_page(page)
        return OrderPage(
            orders=list(current.object_list),
            total=total,
            page=current.number,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
            status_counts=self.status_counts(qs),
        )

    def _get_for_update(self, order_id) -> Order:
        try:
            return Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFound(f"Order {order_id} not found.")

    @contextmanager
    def _locked(self, order_id):
        with transaction.atomic():
            yield self._get_for_update(order_id)

    # ------------------------------------------------------------------
    # Create / edit / delete
    # ------------------------------------------------------------------
    @transaction.atomic
    def create(self, payload, *, actor=None) -> Order:
        _validate_payload(payload)

        workflow_id = payload.get("workflow_id")
        if workflow_id:
            workflow = self.registry.get(workflow_id)
            logger.info("Workflow %s set explicitly", workflow.code)
        else:
            workflow = self.registry.select_for_order(
                payload.get("customer_id"), payload.get("cargo_type")
            )

        fields = {k: payload[k] for k in ORDER_FIELDS if payload.get(k) is not None}
        for key in ("scheduled_start", "scheduled_end"):
            if key in fields:
                fields[key] = _to_datetime(fields[key], key)
        for key in ("cargo_weight_kg", "cargo_declared_value"):
            if key in fields:
                fields[key] = _to_decimal(fields[key], key)
        if "cargo_quantity" in fields:
            fields["cargo_quantity"] = _to_quantity(fields["cargo_quantity"])

        order = Order.objects.create(
            **fields,
            workflow=workflow,
            workflow_name=workflow.name if workflow else "",
            created_by=actor,
        )
        order.order_number = (
            f"{settings.ORDER_NUMBER_PREFIX}-{order.created_at.year}-{order.pk:05d}"
        )
        order.save(update_fields=["order_number"])

        milestones = [
            Milestone(
                order=order,
                geofence_id=m.get("geofence_id", ""),
                geofence_name=m["geofence_name"],
                address=m.get("address", ""),
                latitude=m.get("latitude"),
                longitude=m.get("longitude"),
                estimated_arrival=_to_datetime(
                    m.get("estimated_arrival"), "estimated_arrival"
                ),
                estimated_departure=_to_datetime(
                    m.get("estimated_departure"), "estimated_departure"
                ),
                notes=m.get("notes", ""),
            )
            for m in payload["milestones"]
        ]
        Milestone.objects.bulk_create(resequence(milestones))

        OrderStatusChange.objects.create(
            order=order,
            from_status=OS.DRAFT,
            to_status=OS.DRAFT,
            changed_by=actor,
            reason="Order created",
        )
        logger.info(
            "Order %s created (%d milestones, workflow=%s)",
            order.order_number,
            len(milestones),
            workflow.code if workflow else None,
        )
        return order

    def delete(self, order_id, *, actor=None) -> None:
        with self._locked(order_id) as order:
            if order.status != OS.DRAFT:
                raise InvalidOperation(
                    f"Only draft orders can be deleted (order is {order.status})."
                )
            number = order.order_number
            order.delete()
        logger.info("Order %s deleted by %s", number, actor)

    def update(self, order_id, patch, *, actor=None) -> Order:
        """
        Partial edit of the order's own fields before the trip starts. Status,
        vehicle and driver have dedicated operations and are refused here.
        """
        unknown = sorted(set(patch) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}.")
        errors = [
            f"{key} cannot be empty."
            for key, value in patch.items()
            if (value is None and not Order._meta.get_field(key).null)
            or (value == "" and not Order._meta.get_field(key).blank)
        ]
        errors.extend(_field_errors(patch))
        if errors:
            raise ValidationError(" ".join(errors))

        values = dict(patch)
        for key in ("scheduled_start", "scheduled_end"):
            if key in values:
                values[key] = _to_datetime(values[key], key)
        for key in ("cargo_weight_kg", "cargo_declared_value"):
            if key in values:
                values[key] = _to_decimal(values[key], key)
        if "cargo_quantity" in values:
            values["cargo_quantity"] = _to_quantity(values["cargo_quantity"])

        with self._locked(order_id) as order:
            if order.status not in EDITABLE_STATUSES:
                raise InvalidOperation(
                    f"Order {order.order_number} can no longer be edited "
                    f"(order is {order.status})."
                )
            for key, value in values.items():
                setattr(order, key, value)
            order.save()
        logger.info(
            "Order %s updated by %s (%s)", order.order_number, actor, ", ".join(sorted(values))
        )
        return order

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def update_status(self, order_id, new_status, *, reason="", actor=None) -> Order:
        if new_status not in OS.values:
            raise ValidationError(f"Unknown order status '{new_status}'.")
        if new_status == OS.CLOSED:
            return self.close(order_id, {"observations": reason}, actor=actor)

        with self._locked(order_id) as order:
            current = order.status
            if new_status not in ORDER_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Cannot change order status from {current} to {new_status}."
                )

            extra = {}
            if new_status == OS.IN_TRANSIT:
                if not (order.vehicle_id and order.driver_id):
                    raise InvalidTransition(
                        "A vehicle and a driver must be assigned before the trip starts."
                    )
                extra["actual_start"] = timezone.now()
            elif new_status == OS.ASSIGNED:
                if not (order.vehicle_id and order.driver_id):
                    raise InvalidTransition(
                        "Order needs both a vehicle and a driver to be assigned."
                    )
            elif new_status in DERIVED_STATUSES:
                if not reason:
                    raise ValidationError("A reason is required for manual status changes.")
                statuses = list(order.milestones.values_list("status", flat=True))
                derived = derive(current, statuses).status
                if derived != new_status:
                    raise InvalidTransition(
                        f"Milestones do not support status {new_status} "
                        f"(they derive {derived})."
                    )

            order._transition(new_status, actor=actor, reason=reason, **extra)
        logger.info(
            "Order %s: %s -> %s by %s", order.order_number, current, new_status, actor
        )
        return order

    def assign(
        self, order_id, vehicle_id, driver_id, *, carrier_id=None, actor=None
    ) -> Order:
        with self._locked(order_id) as order:
            if order.status not in (OS.DRAFT, OS.PENDING):
                raise InvalidTransition(
                    f"Only draft or pending orders can be assigned (order is {order.status})."
                )
            if not (vehicle_id and driver_id):
                raise InvalidTransition(
                    "Order needs both a vehicle and a driver to be assigned."
                )
            extra = {"vehicle_id": vehicle_id, "driver_id": driver_id}
            if carrier_id:
                extra["carrier_id"] = carrier_id
            order._transition(
                OS.ASSIGNED,
                actor=actor,
                reason=f"Vehicle {vehicle_id}, driver {driver_id}",
                **extra,
            )
        logger.info("Order %s assigned to vehicle %s", order.order_number, vehicle_id)
        return order

    def start_trip(self, order_id, *, actor=None) -> Order:
        return self.update_status(order_id, OS.IN_TRANSIT, reason="Trip started", actor=actor)

    def cancel(self, order_id, *, reason="", actor=None) -> Order:
        return self.update_status(order_id, OS.CANCELLED, reason=reason, actor=actor)

    def close(self, order_id, closure=None, *, actor=None) -> Order:
        """
        Administrative closure. Irreversible: stamps actual_end and writes the
        closure record alongside the final history entry.
        """
        form = OrderClosureForm(data=closure or {})
        if not form.is_valid():
            raise ValidationError(form_error_message(form))
        cd = form.cleaned_data

        with self._locked(order_id) as order:
            ok, why = order.can_close()
            if not ok:
                raise CannotClose(why)
            now = timezone.now()
            OrderClosure.objects.create(
                order=order,
                observations=cd["observations"],
                incidents=cd["incidents"]
                or [i.as_closure_entry() for i in order.incidents.all()],
                deviation_reasons=cd["deviation_reasons"],
                closed_by=actor,
                closed_at=now,
            )
            order._transition(
                OS.CLOSED,
                actor=actor,
                reason=cd["observations"] or "Order closed",
                actual_end=now,
            )
        logger.info("Order %s closed by %s", order.order_number, actor)
        return order

    def refresh_derived_state(self, order) -> Order:
        """
        Re-run derivation for a locked order and persist the outcome. Always
        saves, so updated_at reflects the latest milestone activity.
        """
        statuses = list(order.milestones.values_list("status", flat=True))
        result = derive(order.status, statuses)
        order.completion_percentage = result.completion_percentage

        if result.status != order.status:
            previous = order.status
            order._transition(
                result.status,
                reason="Derived from milestone states",
                derived=True,
            )
            logger.info(
                "Order %s: %s -> %s (derived)",
                order.order_number,
                previous,
                result.status,
            )
        else:
            order.save()
        return order

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------
    def mutate_milestone(self, order_id, milestone_id, mutate, *, actor=None) -> Order:
        """
        Lock the order, apply ``mutate(order, milestone)``, save the milestone and
        re-derive the order.
        """
        with self._locked(order_id) as order:
            if order.is_terminal:
                raise InvalidOperation(
                    f"Milestones of a {order.status} order cannot change."
                )
            try:
                milestone = order.milestones.get(pk=milestone_id)
            except Milestone.DoesNotExist:
                raise NotFound(f"Milestone {milestone_id} not found on this order.")

            mutate(order, milestone)
            milestone.save()
            send_on_commit(
                milestone_updated,
                sender=Milestone,
                order=order,
                milestone=milestone,
                actor=actor,
            )
            self.refresh_derived_state(order)
        return order

    def update_milestones(self, order_id, mutate, *, actor=None) -> Order:
        """Bulk variant: ``mutate(order, milestones)`` returns the ones to save."""
        with self._locked(order_id) as order:
            if order.is_terminal:
                raise InvalidOperation(
                    f"Milestones of a {order.status} order cannot change."
                )
            changed = mutate(order, order.milestone_list()) or []
            for milestone in changed:
                milestone.save()
                send_on_commit(
                    milestone_updated,
                    sender=Milestone,
                    order=order,
                    milestone=milestone,
                    actor=actor,
                )
            self.refresh_derived_state(order)
        return order

    def mutate_route(self, order_id, mutate, *, actor=None) -> Order:
        """
        Route edit: ``mutate(order, milestones)`` inserts into or removes from
        the list in place; the result is renumbered and saved.
        """
        with self._locked(order_id) as order:
            if order.status in ROUTE_LOCKED_STATUSES:
                raise InvalidOperation(
                    f"The route of a {order.status} order cannot change."
                )
            milestones = order.milestone_list()
            mutate(order, milestones)
            for milestone in resequence(milestones):
                milestone.save()
            self.refresh_derived_state(order)
        logger.info(
            "Order %s route changed by %s (%d milestones)",
            order.order_number,
            actor,
            len(milestones),
        )
        return order

    def update_milestone(self, order_id, milestone_id, patch, *, actor=None) -> Order:
        unknown = set(patch) - set(MILESTONE_PATCH_FIELDS)
        if unknown:
            raise ValidationError(
                f"Milestone fields cannot be updated: {', '.join(sorted(unknown))}."
            )
        values = {
            k: _to_datetime(v, k) if k in _DATETIME_FIELDS else v
            for k, v in patch.items()
        }

        def _patch(order, milestone):
            if "status" in values:
                check_transition(milestone, values["status"])
            for key, value in values.items():
                setattr(milestone, key, value)
            if milestone.actual_entry and milestone.actual_exit:
                if milestone.actual_exit < milestone.actual_entry:
                    raise ValidationError("Exit time cannot be before entry time.")
            if milestone.status == Milestone.Status.COMPLETED:
                milestone.delay_minutes = arrival_delay_minutes(milestone)

        return self.mutate_milestone(order_id, milestone_id, _patch, actor=actor)

    def enter_milestone(self, order_id, milestone_id, *, at=None, actor=None) -> Order:
        return self.mutate_milestone(
            order_id, milestone_id, lambda o, m: apply_entry(m, at), actor=actor
        )

    def exit_milestone(self, order_id, milestone_id, *, at=None, actor=None) -> Order:
        return self.mutate_milestone(
            order_id, milestone_id, lambda o, m: apply_exit(m, at), actor=actor
        )

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------
    def incidents(self, order_id):
        order = self.get(order_id)
        return list(order.incidents.select_related("milestone", "resolved_by"))

    def record_incident(self, order_id, data, *, actor=None) -> OrderIncident:
        """
        Report an incident on a running order. ``milestone_id`` optionally ties
        it to a checkpoint of the same order; severity defaults to low and the
        occurrence time to now.
        """
        data = dict(data)
        milestone_id = data.pop("milestone_id", None)
        form = IncidentRecordForm(
            data={
                "severity": OrderIncident.Severity.LOW,
                "occurred_at": timezone.now(),
                **data,
            }
        )
        if not form.is_valid():
            raise ValidationError(form_error_message(form))

        with self._locked(order_id) as order:
            if order.status in INCIDENT_LOCKED_STATUSES:
                raise InvalidOperation(
                    f"Incidents cannot be reported on a {order.status} order."
                )
            milestone = None
            if milestone_id:
                milestone = order.milestones.filter(pk=milestone_id).first()
                if milestone is None:
                    raise NotFound(
                        f"Milestone {milestone_id} not found on order {order.order_number}."
                    )
            incident = form.save(commit=False)
            incident.order = order
            incident.milestone = milestone
            incident.reported_by = actor
            incident.save()
            send_on_commit(
                incident_recorded,
                sender=OrderIncident,
                order=order,
                incident=incident,
                actor=actor,
            )
        logger.info(
            "Order %s: %s incident '%s' reported by %s",
            order.order_number,
            incident.severity,
            incident.name,
            actor,
        )
        return incident

    def resolve_incident(self, order_id, incident_id, resolution, *, actor=None):
        """Settle an open incident as resolved or unresolved, once."""
        form = IncidentResolutionForm(data=resolution or {})
        if not form.is_valid():
            raise ValidationError(form_error_message(form))

        with self._locked(order_id) as order:
            try:
                incident = order.incidents.get(pk=incident_id)
            except OrderIncident.DoesNotExist:
                raise NotFound(
                    f"Incident {incident_id} not found on order {order.order_number}."
                )
            if not incident.is_open:
                raise InvalidOperation(
                    f"Incident {incident_id} is already {incident.resolution_status}."
                )
            incident.resolution_status = form.cleaned_data["status"]
            incident.resolution_description = form.cleaned_data["description"]
            incident.resolved_at = timezone.now()
            incident.resolved_by = actor
            incident.save()
        logger.info(
            "Order %s: incident %s %s by %s",
            order.order_number,
            incident_id,
            incident.resolution_status,
            actor,
        )
        return incident

    # ------------------------------------------------------------------
    # External sync
    # ------------------------------------------------------------------
    def _set_sync(self, order, status, message=""):
        # queryset update: sync bookkeeping must not count as an order update
        now = timezone.now()
        Order.objects.filter(pk=order.pk).update(
            sync_status=status, sync_error_message=message, last_sync_attempt=now
        )
        order.sync_status = status
        order.sync_error_message = message
        order.last_sync_attempt = now

    def send_to_external(self, order_id, transmitter) -> Order:
        """
        Hand the order to ``transmitter(order)``. A transmitter failure
        (ExternalSyncError) is recorded on the order and not raised.
        """
        order = self.get(order_id)
        if order.status in (OS.DRAFT, OS.CANCELLED):
            raise InvalidOperation(f"A {order.status} order cannot be sent.")

        first = (
            Order.SyncStatus.RETRY
            if order.sync_status == Order.SyncStatus.ERROR
            else Order.SyncStatus.PENDING
        )
        self._set_sync(order, first)
        self._set_sync(order, Order.SyncStatus.SENDING)
        try:
            transmitter(order)
        except ExternalSyncError as exc:
            self._set_sync(order, Order.SyncStatus.ERROR, str(exc))
            logger.warning("Order %s sync failed: %s", order.order_number, exc)
        else:
            self._set_sync(order, Order.SyncStatus.SENT)
            logger.info("Order %s sent to external system", order.order_number)

        send_on_commit(order_sync_updated, sender=Order, order=order)
        return order

    def bulk_send_to_external(self, order_ids, transmitter):
        results = []
        for order_id in order_ids:
            try:
                order = self.send_to_external(order_id, transmitter)
            except (NotFound, InvalidOperation) as exc:
                results.append({"order_id": order_id, "status": "error", "message": str(exc)})
                continue
            if order.sync_status == Order.SyncStatus.SENT:
                results.append({"order_id": order_id, "status": "success", "message": ""})
            else:
                results.append(
                    {
                        "order_id": order_id,
                        "status": "error",
                        "message": order.sync_error_message,
                    }
                )
        return results
