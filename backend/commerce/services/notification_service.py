# Overview: Fire-and-forget customer notifications triggered by order events.

from __future__ import annotations

from flask import current_app


EVENT_ORDER_CONFIRMED = "order.confirmed"
EVENT_ORDER_SHIPPED = "order.shipped"
EVENT_ORDER_DELIVERED = "order.delivered"


class Notifier:
    """Delivery backend (email, SMS, queue...). Install via app.extensions["notifier"]."""

    def send(self, event: str, order_id: int, payload: dict) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def send(self, event: str, order_id: int, payload: dict) -> None:
        current_app.logger.info(
            "Notification %s for order %s (%s)", event, order_id, payload.get("order_number")
        )


def get_notifier() -> Notifier:
    return current_app.extensions.get("notifier") or LogNotifier()


def notify_order_event(event: str, order) -> bool:
    """
    Send a notification for an already-committed order. Never raises.

    Returns False when delivery failed; the order is unaffected either way.
    """
    payload = {
        "order_number": order.order_number,
        "status": order.status,
        "email": order.email,
        "customer_name": order.customer_name,
        "total_cents": order.total_cents,
        "currency": order.currency,
    }
    try:
        get_notifier().send(event, order.id, payload)
        return True
    except Exception:
        current_app.logger.exception("Failed to send %s notification for order %s", event, order.id)
        return False
