"""
Order status derivation.

Pure functions over milestone statuses. No ORM access, no clock, no hidden
state: the store calls ``derive`` after every milestone mutation and applies
the result.
"""

import math
from typing import Iterable, NamedTuple

from tracking.models import Milestone, Order


class Derivation(NamedTuple):
    status: str
    completion_percentage: int


def round_half_up(value: float) -> int:
    # builtin round() is banker's rounding: 12.5 -> 12
    return int(math.floor(value + 0.5))


def completion_percentage(milestone_statuses: Iterable[str]) -> int:
    statuses = list(milestone_statuses)
    if not statuses:
        return 0
    done = sum(1 for s in statuses if s in Milestone.DONE_STATUSES)
    return round_half_up(100 * done / len(statuses))


def derive_order_status(current_status: str, milestone_statuses: Iterable[str]) -> str:
    """
    Aggregate order status from its milestones.

    1. every milestone completed/skipped -> completed
    2. any milestone delayed             -> delayed
    3. any milestone in progress         -> at_milestone
    4. otherwise the status is kept

    Rule 1 wins over 2 and 3, so a fully done order with a leftover delayed
    record still resolves to completed. Closed and cancelled orders never move.
    """
    statuses = list(milestone_statuses)
    if current_status in Order.TERMINAL_STATUSES or not statuses:
        return current_status

    if all(s in Milestone.DONE_STATUSES for s in statuses):
        return Order.Status.COMPLETED
    if Milestone.Status.DELAYED in statuses:
        return Order.Status.DELAYED
    if Milestone.Status.IN_PROGRESS in statuses:
        return Order.Status.AT_MILESTONE
    return current_status


def derive(current_status: str, milestone_statuses: Iterable[str]) -> Derivation:
    statuses = list(milestone_statuses)
    return Derivation(
        status=derive_order_status(current_status, statuses),
        completion_percentage=completion_percentage(statuses),
    )
