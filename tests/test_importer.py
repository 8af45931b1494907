from decimal import Decimal

import pytest
from django.db import DatabaseError

from tracking.models import Milestone, Order
from tracking.services.importer import (
    COLUMNS,
    REQUIRED_COLUMNS,
    ImportPolicy,
    RowStatus,
    normalize_header,
)

pytestmark = pytest.mark.django_db


def make_row(**overrides):
    row = {
        "customer_id": "CUST-9",
        "customer_name": "Norte SAC",
        "cargo_description": "Pallets",
        "cargo_type": "general",
        "priority": "normal",
        "origin_name": "Lima warehouse",
        "origin_lat": "-12.05",
        "origin_lng": "-77.04",
        "destination_name": "Trujillo hub",
        "destination_lat": "-8.11",
        "destination_lng": "-79.03",
        "start_date": "2026-03-01T08:00:00",
        "end_date": "2026-03-02T18:00:00",
    }
    row.update(overrides)
    return row


# ----------------------------------------------------------------------
# Headers
# ----------------------------------------------------------------------
def test_normalize_header():
    assert normalize_header("  Cliente_ID ") == "customer_id"
    assert normalize_header("Fecha Inicio") == "start_date"
    assert normalize_header("origin_name") == "origin_name"


def test_header_report(importer):
    report = importer.validate_headers(["cliente_id", "carga_descripcion", "colour"])
    assert not report.is_valid
    assert "customer_id" not in report.missing_columns
    assert "origin_name" in report.missing_columns
    assert report.unknown_columns == ["colour"]

    assert importer.validate_headers(list(REQUIRED_COLUMNS)).is_valid


# ----------------------------------------------------------------------
# Row classification
# ----------------------------------------------------------------------
def test_clean_row_is_valid(importer):
    row = importer.validate_row(make_row(), 2)
    assert row.status == RowStatus.VALID
    assert row.errors == [] and row.warnings == []

    payload = row.payload
    assert payload["priority"] == Order.Priority.NORMAL
    assert payload["cargo_weight_kg"] == Decimal("1000")
    assert payload["cargo_quantity"] == 1
    origin, destination = payload["milestones"]
    assert origin["milestone_type"] == Milestone.Type.ORIGIN
    assert origin["latitude"] == -12.05
    assert destination["estimated_arrival"] == payload["scheduled_end"]


def test_spanish_headers_and_values(importer):
    row = importer.validate_row(
        {
            "cliente_id": "CUST-9",
            "carga_descripcion": "Fruta",
            "carga_tipo": "Refrigerada",
            "prioridad": "Urgente",
            "origen_nombre": "Callao",
            "destino_nombre": "Ica",
            "fecha_inicio": "2026-03-01",
            "fecha_fin": "2026-03-03",
        },
        2,
    )
    assert row.status == RowStatus.VALID
    assert row.payload["cargo_type"] == Order.CargoType.REFRIGERATED
    assert row.payload["priority"] == Order.Priority.URGENT
    assert row.payload["scheduled_start"].day == 1


def test_missing_required_field(importer):
    row = importer.validate_row(make_row(customer_id="  "), 2)
    assert row.status == RowStatus.INVALID
    assert row.errors == ["Field customer_id is required"]


def test_unknown_priority_is_an_error(importer):
    row = importer.validate_row(make_row(priority="asap"), 2)
    assert row.status == RowStatus.INVALID
    assert row.errors[0].startswith("Invalid priority: asap.")


def test_unknown_cargo_type_falls_back_to_general(importer):
    row = importer.validate_row(make_row(cargo_type="desconocido"), 2)
    assert row.status == RowStatus.WARNING
    assert row.warnings == ['Unknown cargo type: desconocido. "general" will be used']
    assert row.payload["cargo_type"] == Order.CargoType.GENERAL


@pytest.mark.parametrize(
    "column,value,message",
    [
        ("origin_lat", "95", "Origin latitude is invalid"),
        ("destination_lng", "-181", "Destination longitude is invalid"),
        ("origin_lng", "west", "Origin longitude is invalid"),
    ],
)
def test_bad_coordinates(importer, column, value, message):
    row = importer.validate_row(make_row(**{column: value}), 2)
    assert row.status == RowStatus.INVALID
    assert message in row.errors


def test_bad_dates(importer):
    row = importer.validate_row(make_row(start_date="next tuesday"), 2)
    assert "Invalid start_date format" in row.errors

    row = importer.validate_row(
        make_row(start_date="2026-03-05T00:00:00", end_date="2026-03-01T00:00:00"), 2
    )
    assert row.errors == ["Start date cannot be after end date"]


def test_bad_weight_and_quantity_are_substituted(importer):
    row = importer.validate_row(
        make_row(cargo_weight_kg="-3", cargo_quantity="2.5"), 2
    )
    assert row.status == RowStatus.WARNING
    assert row.warnings == [
        "Invalid cargo weight, 1000 kg will be used",
        "Invalid cargo quantity, 1 will be used",
    ]
    assert row.payload["cargo_weight_kg"] == Decimal("1000")
    assert row.payload["cargo_quantity"] == 1


def test_oversized_weight_and_quantity_are_substituted(importer):
    row = importer.validate_row(
        make_row(cargo_weight_kg="1e30", cargo_quantity="1e30", cargo_declared_value="1e30"),
        2,
    )
    assert row.status == RowStatus.WARNING
    assert row.payload["cargo_weight_kg"] == Decimal("1000")
    assert row.payload["cargo_quantity"] == 1
    assert row.payload["cargo_declared_value"] is None


def test_text_longer_than_its_column_is_an_error(importer):
    row = importer.validate_row(make_row(customer_id="C" * 51, origin_address="a" * 256), 2)
    assert row.errors == [
        "Field customer_id is too long (max 50 characters)",
        "Field origin_address is too long (max 255 characters)",
    ]


def test_decimal_comma_is_accepted(importer):
    row = importer.validate_row(make_row(cargo_weight_kg="1250,5"), 2)
    assert row.payload["cargo_weight_kg"] == Decimal("1250.5")


def test_unreadable_declared_value_is_dropped(importer):
    row = importer.validate_row(make_row(cargo_declared_value="lots"), 2)
    assert row.status == RowStatus.VALID
    assert row.payload["cargo_declared_value"] is None


def test_validate_counts_partition_rows(importer):
    rows = [make_row(), make_row(cargo_type="??"), make_row(customer_id="")]
    result = importer.validate(rows)

    assert [r.row_number for r in result.rows] == [2, 3, 4]
    assert result.total_rows == 3
    assert (result.valid_rows, result.warning_rows, result.error_rows) == (1, 1, 1)
    assert result.header_report.is_valid
    assert Order.objects.count() == 0


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------
def test_import_batch_creates_valid_and_warning_rows(importer, dispatcher):
    rows = [make_row(), make_row(cargo_type="??"), make_row(origin_lat="200")]

    result = importer.import_batch(rows, actor=dispatcher)

    assert len(result.created_orders) == 2
    assert result.rows[2].order is None
    order = Order.objects.get(pk=result.rows[0].order.pk)
    assert order.created_by == dispatcher
    assert order.customer_id == "CUST-9"
    assert order.milestones.count() == 2


def test_import_batch_can_skip_warnings(importer):
    rows = [make_row(), make_row(cargo_type="??")]
    result = importer.import_batch(rows, ImportPolicy(skip_warnings=True))
    assert [r.order is not None for r in result.rows] == [True, False]


def test_failed_creation_marks_only_that_row(importer, default_workflow):
    rows = [make_row(), make_row(workflow_id="NOPE"), make_row()]

    result = importer.import_batch(rows)

    assert len(result.created_orders) == 2
    failed = result.rows[1]
    assert failed.status == RowStatus.INVALID
    assert failed.errors[0].startswith("Order creation failed:")
    assert result.error_rows == 1
    assert Order.objects.count() == 2


def test_oversized_quantity_does_not_break_the_batch(importer):
    rows = [make_row(cargo_quantity="1e30"), make_row()]

    result = importer.import_batch(rows)

    assert len(result.created_orders) == 2
    assert result.rows[0].warnings == ["Invalid cargo quantity, 1 will be used"]
    assert result.rows[0].order.cargo_quantity == 1


def test_database_error_marks_only_that_row(importer, monkeypatch):
    create = importer.store.create
    calls = []

    def flaky_create(payload, *, actor=None):
        calls.append(payload)
        if len(calls) == 1:
            raise DatabaseError("value too long for type character varying(50)")
        return create(payload, actor=actor)

    monkeypatch.setattr(importer.store, "create", flaky_create)

    result = importer.import_batch([make_row(), make_row()])

    failed, created = result.rows
    assert failed.status == RowStatus.INVALID
    assert failed.errors == [
        "Order creation failed: value too long for type character varying(50)"
    ]
    assert created.order is not None
    assert Order.objects.count() == 1


def test_invalid_rows_are_attempted_when_asked(importer):
    rows = [make_row(origin_lat="200"), make_row(customer_id="")]

    result = importer.import_batch(rows, ImportPolicy(skip_invalid=False))

    attempted, rejected = result.rows
    assert attempted.order is not None
    assert attempted.order.milestone_list()[0].latitude is None
    assert rejected.order is None
    assert rejected.errors[-1].startswith("Order creation failed:")
    assert len(result.created_orders) == 1


def test_template_lists_every_column(importer):
    template = importer.template()
    assert template["headers"] == list(COLUMNS)
    assert set(template["sample"]) == set(COLUMNS)
    sample = importer.validate_row(template["sample"], 2)
    assert sample.status == RowStatus.VALID
