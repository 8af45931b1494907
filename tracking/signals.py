"""
Outbound events of the tracking core.

Mutations never call consumers directly. They schedule a signal through
``transaction.on_commit`` so receivers (notification dispatch, UI push, audit
exports) only ever see committed state and cannot break the mutation path.
"""

from django.db import transaction
from django.dispatch import Signal

# kwargs: order, from_status, to_status, actor, derived
order_status_changed = Signal()

# kwargs: order, milestone, actor
milestone_updated = Signal()

# kwargs: order
order_sync_updated = Signal()

# kwargs: order, result
escalation_triggered = Signal()

# kwargs: order, incident, actor
incident_recorded = Signal()


def send_on_commit(signal, sender, **kwargs):
    """Dispatch ``signal`` once the surrounding transaction commits."""
    transaction.on_commit(lambda: signal.send(sender=sender, **kwargs))
