from tracking.models import Order
from tracking.policies.roles import is_dispatcher, is_supervisor, is_tracking_agent

ON_THE_ROAD = [Order.Status.IN_TRANSIT, Order.Status.AT_MILESTONE, Order.Status.DELAYED]


def actions_for(user, order: Order) -> list[str]:
    actions: list[str] = []
    supervisor = is_supervisor(user)

    if is_dispatcher(user) or supervisor:
        if order.status == Order.Status.DRAFT:
            actions.append("delete")
        if order.status in [
            Order.Status.DRAFT,
            Order.Status.PENDING,
            Order.Status.ASSIGNED,
        ]:
            actions.append("edit")
        if order.status in [Order.Status.DRAFT, Order.Status.PENDING]:
            actions.append("assign")
        if order.status in [
            Order.Status.DRAFT,
            Order.Status.PENDING,
            Order.Status.ASSIGNED,
        ]:
            actions.append("cancel")
        if order.status not in [
            Order.Status.COMPLETED,
            Order.Status.CLOSED,
            Order.Status.CANCELLED,
        ]:
            actions.append("add_milestone")
        if order.status not in [Order.Status.DRAFT, Order.Status.CANCELLED]:
            actions.append("send_to_external")

    if is_tracking_agent(user) or supervisor:
        if order.status == Order.Status.ASSIGNED:
            actions.append("start_trip")
        if order.status in ON_THE_ROAD or order.status == Order.Status.ASSIGNED:
            actions.append("register_manual_entry")
        if order.status in ON_THE_ROAD:
            actions.append("report_incident")

    if supervisor and order.can_close()[0]:
        actions.append("close")

    return actions
