"""
Bulk order import.

Works on rows that were already read from a spreadsheet (one dict per row,
keyed by header). Every row is classified valid / warning / invalid, turned
into an OrderStore.create payload, and created independently of the others:
a failing row is marked invalid and the batch carries on. Values are checked
against the column limits up front so no row reaches the database with a value
it cannot store.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation as DecimalError

from django.conf import settings
from django.db import DatabaseError, models
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from tracking.models import Milestone, Order
from tracking.services.exceptions import ServiceError
from tracking.services.orders import MAX_QUANTITY, decimal_fits

logger = logging.getLogger(__name__)

COLUMNS = (
    "customer_id",
    "customer_name",
    "carrier_id",
    "vehicle_id",
    "driver_id",
    "workflow_id",
    "priority",
    "cargo_description",
    "cargo_type",
    "cargo_weight_kg",
    "cargo_quantity",
    "cargo_declared_value",
    "origin_name",
    "origin_address",
    "origin_lat",
    "origin_lng",
    "destination_name",
    "destination_address",
    "destination_lat",
    "destination_lng",
    "start_date",
    "end_date",
    "external_reference",
    "notes",
)

REQUIRED_COLUMNS = (
    "customer_id",
    "cargo_description",
    "origin_name",
    "destination_name",
    "start_date",
    "end_date",
)

# Spreadsheets exported by Spanish-speaking customers use these headers
COLUMN_ALIASES = {
    "cliente_id": "customer_id",
    "cliente_nombre": "customer_name",
    "transportista_id": "carrier_id",
    "vehiculo_id": "vehicle_id",
    "conductor_id": "driver_id",
    "prioridad": "priority",
    "carga_descripcion": "cargo_description",
    "carga_tipo": "cargo_type",
    "carga_peso_kg": "cargo_weight_kg",
    "carga_cantidad": "cargo_quantity",
    "carga_valor": "cargo_declared_value",
    "origen_nombre": "origin_name",
    "origen_direccion": "origin_address",
    "origen_lat": "origin_lat",
    "origen_lng": "origin_lng",
    "destino_nombre": "destination_name",
    "destino_direccion": "destination_address",
    "destino_lat": "destination_lat",
    "destino_lng": "destination_lng",
    "fecha_inicio": "start_date",
    "fecha_fin": "end_date",
    "referencia_externa": "external_reference",
    "notas": "notes",
}

PRIORITY_MAP = {
    "baja": Order.Priority.LOW,
    "low": Order.Priority.LOW,
    "normal": Order.Priority.NORMAL,
    "alta": Order.Priority.HIGH,
    "high": Order.Priority.HIGH,
    "urgente": Order.Priority.URGENT,
    "urgent": Order.Priority.URGENT,
}

CARGO_TYPE_MAP = {
    "general": Order.CargoType.GENERAL,
    "refrigerada": Order.CargoType.REFRIGERATED,
    "refrigerated": Order.CargoType.REFRIGERATED,
    "peligrosa": Order.CargoType.HAZARDOUS,
    "hazardous": Order.CargoType.HAZARDOUS,
    "fragil": Order.CargoType.FRAGILE,
    "frágil": Order.CargoType.FRAGILE,
    "fragile": Order.CargoType.FRAGILE,
    "sobredimensionada": Order.CargoType.OVERSIZED,
    "oversized": Order.CargoType.OVERSIZED,
    "liquida": Order.CargoType.LIQUID,
    "líquida": Order.CargoType.LIQUID,
    "liquid": Order.CargoType.LIQUID,
    "granel": Order.CargoType.BULK,
    "bulk": Order.CargoType.BULK,
}

COORDINATE_LIMITS = (
    ("origin_lat", "Origin latitude", 90),
    ("origin_lng", "Origin longitude", 180),
    ("destination_lat", "Destination latitude", 90),
    ("destination_lng", "Destination longitude", 180),
)

# Free-text columns and the field whose max_length bounds them
TEXT_COLUMN_FIELDS = {
    "customer_id": (Order, "customer_id"),
    "customer_name": (Order, "customer_name"),
    "carrier_id": (Order, "carrier_id"),
    "vehicle_id": (Order, "vehicle_id"),
    "driver_id": (Order, "driver_id"),
    "cargo_description": (Order, "cargo_description"),
    "external_reference": (Order, "external_reference"),
    "origin_name": (Milestone, "geofence_name"),
    "origin_address": (Milestone, "address"),
    "destination_name": (Milestone, "geofence_name"),
    "destination_address": (Milestone, "address"),
}


class RowStatus(models.TextChoices):
    VALID = "valid", "Valid"
    WARNING = "warning", "Warning"
    INVALID = "invalid", "Invalid"


@dataclass
class ImportPolicy:
    skip_invalid: bool = True
    skip_warnings: bool = False


@dataclass
class ImportRow:
    row_number: int
    payload: dict
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    order: Order = None

    @property
    def status(self):
        if self.errors:
            return RowStatus.INVALID
        if self.warnings:
            return RowStatus.WARNING
        return RowStatus.VALID


@dataclass
class HeaderReport:
    missing_columns: list
    unknown_columns: list

    @property
    def is_valid(self):
        return not self.missing_columns


@dataclass
class ImportResult:
    rows: list
    header_report: HeaderReport = None
    created_orders: list = field(default_factory=list)

    def _count(self, status):
        return sum(1 for r in self.rows if r.status == status)

    @property
    def total_rows(self):
        return len(self.rows)

    @property
    def valid_rows(self):
        return self._count(RowStatus.VALID)

    @property
    def warning_rows(self):
        return self._count(RowStatus.WARNING)

    @property
    def error_rows(self):
        return self._count(RowStatus.INVALID)


def normalize_header(header) -> str:
    key = "_".join(str(header).strip().lower().split())
    return COLUMN_ALIASES.get(key, key)


def _blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _text(value):
    return "" if _blank(value) else str(value).strip()


def _number(value):
    try:
        number = Decimal(str(value).strip().replace(",", "."))
    except DecimalError:
        return None
    return number if number.is_finite() else None


def _datetime(value):
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        try:
            parsed = parse_datetime(text)
            if parsed is None:
                day = parse_date(text)
                parsed = datetime.combine(day, time.min) if day else None
        except ValueError:
            parsed = None
    if parsed is not None and timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


class OrderImporter:
    def __init__(self, store):
        self.store = store

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_headers(self, headers) -> HeaderReport:
        normalized = [normalize_header(h) for h in headers]
        return HeaderReport(
            missing_columns=[c for c in REQUIRED_COLUMNS if c not in normalized],
            unknown_columns=[
                h for h, n in zip(headers, normalized) if n not in COLUMNS
            ],
        )

    def validate_row(self, row, row_number) -> ImportRow:
        """
        Classify one row and build its creation payload. Never raises: every
        problem ends up in ``errors`` (blocking) or ``warnings`` (substituted).
        """
        row = {normalize_header(k): v for k, v in row.items()}
        errors, warnings = [], []

        for column in REQUIRED_COLUMNS:
            if _blank(row.get(column)):
                errors.append(f"Field {column} is required")

        for column, (model, name) in TEXT_COLUMN_FIELDS.items():
            limit = model._meta.get_field(name).max_length
            if len(_text(row.get(column))) > limit:
                errors.append(f"Field {column} is too long (max {limit} characters)")

        priority = Order.Priority.NORMAL
        raw_priority = _text(row.get("priority")).lower()
        if raw_priority:
            if raw_priority in PRIORITY_MAP:
                priority = PRIORITY_MAP[raw_priority]
            else:
                errors.append(
                    f"Invalid priority: {raw_priority}. "
                    "Valid values: low, normal, high, urgent (baja, normal, alta, urgente)"
                )

        cargo_type = Order.CargoType.GENERAL
        raw_cargo = _text(row.get("cargo_type")).lower()
        if raw_cargo:
            if raw_cargo in CARGO_TYPE_MAP:
                cargo_type = CARGO_TYPE_MAP[raw_cargo]
            else:
                warnings.append(f'Unknown cargo type: {raw_cargo}. "general" will be used')

        coordinates = {}
        for column, label, limit in COORDINATE_LIMITS:
            raw = row.get(column)
            if _blank(raw):
                coordinates[column] = None
                continue
            value = _number(raw)
            if value is None or not -limit <= value <= limit:
                errors.append(f"{label} is invalid")
                coordinates[column] = None
            else:
                coordinates[column] = float(value)

        dates = {}
        for column in ("start_date", "end_date"):
            raw = row.get(column)
            dates[column] = None if _blank(raw) else _datetime(raw)
            if not _blank(raw) and dates[column] is None:
                errors.append(f"Invalid {column} format")
        if dates["start_date"] and dates["end_date"]:
            if dates["start_date"] > dates["end_date"]:
                errors.append("Start date cannot be after end date")

        weight = Decimal(settings.IMPORT_DEFAULT_WEIGHT_KG)
        raw_weight = row.get("cargo_weight_kg")
        if not _blank(raw_weight):
            value = _number(raw_weight)
            if value is not None and value > 0 and decimal_fits("cargo_weight_kg", value):
                weight = value
            else:
                warnings.append(
                    f"Invalid cargo weight, {settings.IMPORT_DEFAULT_WEIGHT_KG} kg will be used"
                )

        quantity = settings.IMPORT_DEFAULT_QUANTITY
        raw_quantity = row.get("cargo_quantity")
        if not _blank(raw_quantity):
            value = _number(raw_quantity)
            if (
                value is not None
                and 0 < value <= MAX_QUANTITY
                and value == value.to_integral_value()
            ):
                quantity = int(value)
            else:
                warnings.append(
                    f"Invalid cargo quantity, {settings.IMPORT_DEFAULT_QUANTITY} will be used"
                )

        # an unreadable or oversized declared value is dropped, not reported
        declared = row.get("cargo_declared_value")
        declared = None if _blank(declared) else _number(declared)
        if declared is not None and not decimal_fits("cargo_declared_value", declared):
            declared = None

        payload = {
            "customer_id": _text(row.get("customer_id")),
            "customer_name": _text(row.get("customer_name")),
            "carrier_id": _text(row.get("carrier_id")) or None,
            "vehicle_id": _text(row.get("vehicle_id")) or None,
            "driver_id": _text(row.get("driver_id")) or None,
            "workflow_id": _text(row.get("workflow_id")) or None,
            "priority": priority,
            "cargo_description": _text(row.get("cargo_description")),
            "cargo_type": cargo_type,
            "cargo_weight_kg": weight,
            "cargo_quantity": quantity,
            "cargo_declared_value": declared,
            "scheduled_start": dates["start_date"],
            "scheduled_end": dates["end_date"],
            "external_reference": _text(row.get("external_reference")),
            "notes": _text(row.get("notes")),
            "milestones": [
                {
                    "geofence_name": _text(row.get("origin_name")),
                    "address": _text(row.get("origin_address")),
                    "latitude": coordinates["origin_lat"],
                    "longitude": coordinates["origin_lng"],
                    "milestone_type": Milestone.Type.ORIGIN,
                    "estimated_arrival": dates["start_date"],
                },
                {
                    "geofence_name": _text(row.get("destination_name")),
                    "address": _text(row.get("destination_address")),
                    "latitude": coordinates["destination_lat"],
                    "longitude": coordinates["destination_lng"],
                    "milestone_type": Milestone.Type.DESTINATION,
                    "estimated_arrival": dates["end_date"],
                },
            ],
        }
        return ImportRow(
            row_number=row_number, payload=payload, errors=errors, warnings=warnings
        )

    def _classify(self, rows):
        first = settings.IMPORT_FIRST_DATA_ROW
        return [self.validate_row(row, first + i) for i, row in enumerate(rows)]

    def validate(self, rows, headers=None) -> ImportResult:
        """Preview: classification only, nothing is created."""
        if headers is None:
            headers = list(rows[0].keys()) if rows else []
        return ImportResult(
            rows=self._classify(rows), header_report=self.validate_headers(headers)
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def import_batch(self, rows, policy=None, *, actor=None) -> ImportResult:
        """
        Create one order per eligible row. Rows run one after another, each in
        its own transaction; results keep the input order.

        Invalid rows are skipped unless the policy says otherwise, in which case
        the store has the last word on them. A row the database rejects is
        marked failed like any other.
        """
        policy = policy or ImportPolicy()
        result = ImportResult(rows=self._classify(rows))

        for row in result.rows:
            if policy.skip_invalid and row.status == RowStatus.INVALID:
                continue
            if policy.skip_warnings and row.status == RowStatus.WARNING:
                continue
            try:
                row.order = self.store.create(row.payload, actor=actor)
            except (ServiceError, DatabaseError) as exc:
                row.errors.append(f"Order creation failed: {exc}")
                logger.warning("Import row %s failed: %s", row.row_number, exc)
                continue
            result.created_orders.append(row.order)

        logger.info(
            "Import finished: %d rows, %d created, %d invalid, %d with warnings",
            result.total_rows,
            len(result.created_orders),
            result.error_rows,
            result.warning_rows,
        )
        return result

    def template(self) -> dict:
        return {
            "headers": list(COLUMNS),
            "sample": {
                "customer_id": "CUST-001",
                "customer_name": "Sample Customer",
                "carrier_id": "CAR-001",
                "vehicle_id": "VEH-001",
                "driver_id": "DRV-001",
                "workflow_id": "",
                "priority": "normal",
                "cargo_description": "Sample cargo",
                "cargo_type": "general",
                "cargo_weight_kg": 5000,
                "cargo_quantity": 50,
                "cargo_declared_value": 10000,
                "origin_name": "Central Warehouse",
                "origin_address": "123 Main Ave",
                "origin_lat": -12.0464,
                "origin_lng": -77.0428,
                "destination_name": "Distribution Center",
                "destination_address": "456 Harbour St",
                "destination_lat": -12.1,
                "destination_lng": -77.05,
                "start_date": "2026-02-01T08:00:00",
                "end_date": "2026-02-01T18:00:00",
                "external_reference": "REF-EXT-001",
                "notes": "Sample notes",
            },
            "instructions": [
                "Required columns: " + ", ".join(REQUIRED_COLUMNS),
                "Spanish headers (cliente_id, carga_tipo, fecha_inicio, ...) are accepted",
                "Priorities: low, normal, high, urgent (baja, normal, alta, urgente)",
                "Cargo types: " + ", ".join(Order.CargoType.values),
                "Dates: ISO 8601, YYYY-MM-DDTHH:MM:SS",
                "Latitude between -90 and 90, longitude between -180 and 180",
                "Weight in kilograms, greater than 0",
                "Quantity is a whole number greater than 0",
            ],
        }
