"""Evaluate escalation rules for every order on the road."""

import logging

from django.core.management.base import BaseCommand

from tracking.models import Order
from tracking.services.escalation import ACTIVE_ORDER_STATUSES, EscalationEvaluator
from tracking.services.milestones import MilestoneManager
from tracking.services.orders import OrderStore
from tracking.services.workflows import WorkflowRegistry
from tracking.signals import escalation_triggered

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Evaluate escalation rules and signal the ones that trigger"

    def add_arguments(self, parser):
        parser.add_argument(
            "--sweep-overdue",
            action="store_true",
            help="First mark milestones that ran past their step's maximum duration",
        )

    def handle(self, *args, **options):
        registry = WorkflowRegistry()
        store = OrderStore(registry)

        if options["sweep_overdue"]:
            manager = MilestoneManager(store, registry)
            flipped = 0
            order_ids = Order.objects.filter(
                status__in=ACTIVE_ORDER_STATUSES, workflow__isnull=False
            ).values_list("id", flat=True)
            for order_id in order_ids:
                flipped += len(manager.mark_overdue(order_id))
            self.stdout.write(f"Milestones marked delayed: {flipped}")

        evaluator = EscalationEvaluator(registry)
        count = 0
        for order, results in evaluator.scan():
            for result in results:
                count += 1
                logger.warning(
                    "Escalation on %s: %s - %s",
                    order.order_number,
                    result.rule_name,
                    result.message,
                )
                self.stdout.write(
                    self.style.WARNING(
                        f"{order.order_number}: {result.rule_name} ({result.message})"
                    )
                )
                escalation_triggered.send(sender=Order, order=order, result=result)

        self.stdout.write(self.style.SUCCESS(f"Escalations triggered: {count}"))
