import csv
from datetime import timedelta
from io import StringIO

import pytest
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.utils import timezone

from tracking.models import Milestone, Order, WorkflowTemplate
from tracking.signals import escalation_triggered

pytestmark = pytest.mark.django_db

HEADERS = [
    "cliente_id",
    "carga_descripcion",
    "carga_tipo",
    "origen_nombre",
    "destino_nombre",
    "fecha_inicio",
    "fecha_fin",
]


def write_csv(path, rows, headers=HEADERS):
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(headers)
        writer.writerows(rows)
    return str(path)


def run(*args, **kwargs):
    out = StringIO()
    call_command(*args, stdout=out, **kwargs)
    return out.getvalue()


def test_seed_workflows_is_idempotent():
    output = run("seed_workflows", "--with-users")
    assert "Created STD" in output
    assert WorkflowTemplate.objects.get(code="STD").is_default
    assert WorkflowTemplate.objects.get(code="COLD").status == WorkflowTemplate.Status.ACTIVE
    assert get_user_model().objects.filter(username="supervisor1", role="supervisor").exists()

    output = run("seed_workflows")
    assert "STD already exists" in output
    assert WorkflowTemplate.objects.count() == 2


def test_import_orders(tmp_path, dispatcher):
    path = write_csv(
        tmp_path / "orders.csv",
        [
            ["C-1", "Fruit", "refrigerada", "Callao", "Ica", "2026-03-01", "2026-03-02"],
            ["C-2", "Steel", "mystery", "Callao", "Piura", "2026-03-01", "2026-03-03"],
            ["", "Sand", "granel", "Callao", "Tacna", "2026-03-01", "2026-03-04"],
        ],
    )

    output = run("import_orders", path, "--user", dispatcher.username)

    assert "Row 4: Field customer_id is required" in output
    assert "Row 3: Unknown cargo type: mystery" in output
    assert "created: 2" in output
    assert Order.objects.filter(created_by=dispatcher).count() == 2
    assert Order.objects.get(customer_id="C-1").cargo_type == Order.CargoType.REFRIGERATED


def test_import_orders_dry_run(tmp_path):
    path = write_csv(
        tmp_path / "orders.csv",
        [["C-1", "Fruit", "general", "Callao", "Ica", "2026-03-01", "2026-03-02"]],
    )
    output = run("import_orders", path, "--dry-run")
    assert "valid: 1" in output
    assert Order.objects.count() == 0


def test_import_orders_missing_columns(tmp_path):
    path = write_csv(tmp_path / "orders.csv", [["C-1"]], headers=["cliente_id"])
    with pytest.raises(CommandError, match="Missing required columns"):
        run("import_orders", path)


def test_import_orders_include_invalid(tmp_path):
    path = write_csv(
        tmp_path / "orders.csv",
        [["C-5", "Steel", "general", "Callao", "Ica", "2026-03-05", "2026-03-01"]],
    )

    assert "created: 0" in run("import_orders", path)
    output = run("import_orders", path, "--include-invalid")

    assert "Row 2: Start date cannot be after end date" in output
    assert "created: 1" in output
    assert Order.objects.get().customer_id == "C-5"


def test_import_orders_unknown_user(tmp_path):
    path = write_csv(tmp_path / "orders.csv", [])
    with pytest.raises(CommandError, match="nobody"):
        run("import_orders", path, "--user", "nobody")


def test_evaluate_escalations(store, order_on_road):
    first = order_on_road.milestone_list()[0]
    now = timezone.now()
    store.enter_milestone(order_on_road.pk, first.pk, at=now - timedelta(minutes=80))
    # an hour on step 2 is past the 45 minutes "Stuck in transit" allows
    store.exit_milestone(order_on_road.pk, first.pk, at=now - timedelta(minutes=60))

    received = []

    def receiver(sender, order, result, **kwargs):
        received.append((order.pk, result.rule_name))

    escalation_triggered.connect(receiver)
    try:
        output = run("evaluate_escalations")
    finally:
        escalation_triggered.disconnect(receiver)

    assert "Stuck in transit" in output
    assert (order_on_road.pk, "Stuck in transit") in received


def test_evaluate_escalations_sweeps_overdue(store, order_on_road):
    first = order_on_road.milestone_list()[0]
    store.enter_milestone(
        order_on_road.pk, first.pk, at=timezone.now() - timedelta(hours=3)
    )

    output = run("evaluate_escalations", "--sweep-overdue")

    assert "Milestones marked delayed: 1" in output
    assert Milestone.objects.get(pk=first.pk).status == Milestone.Status.DELAYED
