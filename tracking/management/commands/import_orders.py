"""Import orders from a CSV file using the bulk import column schema."""

import csv

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from tracking.services.importer import ImportPolicy, OrderImporter
from tracking.services.orders import OrderStore
from tracking.services.workflows import WorkflowRegistry


class Command(BaseCommand):
    help = "Validate and import orders from a CSV file (one order per row)"

    def add_arguments(self, parser):
        parser.add_argument("path", help="CSV file, first row holds the headers")
        parser.add_argument("--dry-run", action="store_true", help="Only validate")
        parser.add_argument(
            "--skip-warnings",
            action="store_true",
            help="Do not create rows that carry warnings",
        )
        parser.add_argument(
            "--include-invalid",
            action="store_true",
            help="Attempt rows that failed validation as well",
        )
        parser.add_argument("--user", help="Username recorded as the creator")
        parser.add_argument("--delimiter", default=",")

    def handle(self, *args, **options):
        actor = None
        if options["user"]:
            try:
                actor = get_user_model().objects.get(username=options["user"])
            except get_user_model().DoesNotExist:
                raise CommandError(f"User {options['user']} does not exist")

        try:
            with open(options["path"], newline="", encoding="utf-8-sig") as fh:
                reader = csv.DictReader(fh, delimiter=options["delimiter"])
                rows = list(reader)
                headers = reader.fieldnames or []
        except OSError as exc:
            raise CommandError(f"Cannot read {options['path']}: {exc}")

        importer = OrderImporter(OrderStore(WorkflowRegistry()))

        preview = importer.validate(rows, headers)
        report = preview.header_report
        if report.unknown_columns:
            self.stdout.write(
                self.style.WARNING(f"Unknown columns: {', '.join(report.unknown_columns)}")
            )
        if not report.is_valid:
            raise CommandError(
                f"Missing required columns: {', '.join(report.missing_columns)}"
            )

        if options["dry_run"]:
            result = preview
        else:
            policy = ImportPolicy(
                skip_invalid=not options["include_invalid"],
                skip_warnings=options["skip_warnings"],
            )
            result = importer.import_batch(rows, policy, actor=actor)

        for row in result.rows:
            for message in row.errors:
                self.stdout.write(self.style.ERROR(f"Row {row.row_number}: {message}"))
            for message in row.warnings:
                self.stdout.write(self.style.WARNING(f"Row {row.row_number}: {message}"))

        self.stdout.write(
            self.style.SUCCESS(
                f"Rows: {result.total_rows}, valid: {result.valid_rows}, "
                f"warnings: {result.warning_rows}, invalid: {result.error_rows}, "
                f"created: {len(result.created_orders)}"
            )
        )
