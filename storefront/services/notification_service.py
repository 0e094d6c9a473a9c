"""
Notification Service

Implements the Publish-Subscribe pattern for order and payment status changes.
Keeps lightweight in-memory notifications for the UI, builds WhatsApp and
email contact links, and optionally forwards events to a webhook.

Everything here is fire-and-forget: a failed notification is logged and
never undoes the workflow step that triggered it.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from urllib.parse import quote, urlencode

import requests

from storefront.config import Config
from storefront.observability import increment_counter, record_event

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """Represents a single notification."""
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert notification to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """
    In-memory notification store keyed by user.

    Singleton so every request sees the same notification state.
    """

    _instance: Optional["NotificationService"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._notification_counter: int = 0
        self._max_notifications_per_user: int = 50
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        """
        Add a new notification for a user.

        Args:
            user_id: The user to notify
            notification_type: Type of notification (order_status, payment_status, ...)
            title: Short title for the notification
            message: Full notification message
            reference_id: Optional ID of related entity (e.g., order ID)
            reference_type: Type of reference (e.g., 'order')

        Returns:
            The created Notification object
        """
        with self._lock:
            self._notification_counter += 1
            notification_id = f"notif_{self._notification_counter}_{int(datetime.now().timestamp())}"

            notification = Notification(
                id=notification_id,
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
            )

            # Most recent first
            self._notifications[user_id].insert(0, notification)
            if len(self._notifications[user_id]) > self._max_notifications_per_user:
                self._notifications[user_id] = self._notifications[user_id][:self._max_notifications_per_user]

            increment_counter(
                "notifications_created_total",
                labels={"type": notification_type},
            )
            self.logger.info("Notification created for user %d: %s", user_id, title)
            return notification

    def get_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        notifications = self._notifications.get(user_id, [])
        return sum(1 for n in notifications if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        """Mark one notification as read; False when the id is unknown."""
        for notification in self._notifications.get(user_id, []):
            if notification.id == notification_id:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        now = datetime.now(timezone.utc)
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                count += 1
        return count

    def clear_notifications(self, user_id: int) -> None:
        """Clear all notifications for a user."""
        self._notifications[user_id] = []


# -----------------------------------------------------------------------------
# Contact links
# -----------------------------------------------------------------------------

def build_whatsapp_link(message: str, phone_number: Optional[str] = None) -> str:
    number = "".join(ch for ch in (phone_number or Config.WHATSAPP_NUMBER) if ch.isdigit())
    return f"https://wa.me/{number}?text={quote(message)}"


def build_mailto_link(to_address: Optional[str] = None, subject: str = "", body: str = "") -> str:
    params = {key: value for key, value in (("subject", subject), ("body", body)) if value}
    query = urlencode(params, quote_via=quote)
    address = to_address or Config.SUPPORT_EMAIL
    return f"mailto:{address}?{query}" if query else f"mailto:{address}"


# -----------------------------------------------------------------------------
# Status change event handlers
# -----------------------------------------------------------------------------

ORDER_STATUS_LABELS = {
    "pending": "Pending",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
}

PAYMENT_STATUS_LABELS = {
    "pending": "Awaiting verification",
    "confirmed": "Confirmed",
    "rejected": "Rejected",
}


def _send_webhook(url: str, event_name: str, payload: Dict[str, Any]) -> None:
    try:
        response = requests.post(
            url,
            json={"event": event_name, "payload": payload},
            timeout=Config.NOTIFICATION_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        increment_counter("notification_webhook_failures_total", labels={"event": event_name})
        logger.warning("Notification webhook failed for %s: %s", event_name, exc)


def _post_webhook(event_name: str, payload: Dict[str, Any]) -> Optional[threading.Thread]:
    """Forward an event to the configured webhook on a daemon thread."""
    url = Config.NOTIFICATION_WEBHOOK_URL
    if not url:
        return None
    worker = threading.Thread(
        target=_send_webhook,
        args=(url, event_name, payload),
        name=f"webhook-{event_name}",
        daemon=True,
    )
    worker.start()
    return worker


def publish_order_status_change(
    order_id: int,
    user_id: int,
    old_status: str,
    new_status: str,
) -> None:
    """
    Publish an order status change and notify the customer.

    Called by the order and payment review services after their transaction
    has committed.
    """
    try:
        old_label = ORDER_STATUS_LABELS.get(old_status, old_status or "New")
        new_label = ORDER_STATUS_LABELS.get(new_status, new_status)
        payload = {
            "order_id": order_id,
            "user_id": user_id,
            "old_status": old_status,
            "new_status": new_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        record_event("order_status_changed", payload)
        increment_counter(
            "order_status_transitions_total",
            labels={"from_status": old_status or "", "to_status": new_status},
        )
        NotificationService().add_notification(
            user_id=user_id,
            notification_type="order_status",
            title=f"Order #{order_id} {new_label}",
            message=f"Your order status changed from {old_label} to {new_label}.",
            reference_id=order_id,
            reference_type="order",
        )
        _post_webhook("order_status_changed", payload)
    except Exception:
        logger.exception("Failed to publish status change for order %s", order_id)


def publish_payment_status_change(
    payment_id: int,
    order_id: int,
    user_id: int,
    new_status: str,
    mpesa_code: Optional[str] = None,
) -> None:
    try:
        label = PAYMENT_STATUS_LABELS.get(new_status, new_status)
        reference = mpesa_code or f"#{payment_id}"
        payload = {
            "payment_id": payment_id,
            "order_id": order_id,
            "user_id": user_id,
            "status": new_status,
            "mpesa_code": mpesa_code,
        }
        record_event("payment_status_changed", payload)
        NotificationService().add_notification(
            user_id=user_id,
            notification_type="payment_status",
            title=f"Payment {reference} {label}",
            message=f"Your M-Pesa payment for order #{order_id} is {label.lower()}.",
            reference_id=payment_id,
            reference_type="payment",
        )
        _post_webhook("payment_status_changed", payload)
    except Exception:
        logger.exception("Failed to publish status change for payment %s", payment_id)
