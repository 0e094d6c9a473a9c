import threading
import time
from unittest import mock

import requests

from storefront.config import Config
from storefront.services.notification_service import (
    NotificationService,
    build_mailto_link,
    build_whatsapp_link,
    publish_order_status_change,
    publish_payment_status_change,
)


def test_whatsapp_link_encodes_message():
    link = build_whatsapp_link("Order #12 total KES 13100", phone_number="+254 700 000 001")
    assert link == "https://wa.me/254700000001?text=Order%20%2312%20total%20KES%2013100"


def test_mailto_link_defaults_to_support_address():
    assert build_mailto_link() == f"mailto:{Config.SUPPORT_EMAIL}"
    link = build_mailto_link("shop@example.com", subject="Order #7", body="Hi there")
    assert link == "mailto:shop@example.com?subject=Order%20%237&body=Hi%20there"


def test_order_status_change_creates_notification():
    publish_order_status_change(7, user_id=3, old_status="pending", new_status="processing")

    service = NotificationService()
    notifications = service.get_notifications(3)
    assert notifications[0]["title"] == "Order #7 Processing"
    assert service.get_unread_count(3) == 1

    assert service.mark_as_read(3, notifications[0]["id"]) is True
    assert service.get_unread_count(3) == 0


def test_payment_status_change_uses_transaction_code():
    publish_payment_status_change(5, order_id=9, user_id=4, new_status="confirmed", mpesa_code="QGH7K2LM9P")

    notification = NotificationService().get_notifications(4)[0]
    assert notification["title"] == "Payment QGH7K2LM9P Confirmed"
    assert notification["reference_type"] == "payment"


def test_webhook_failure_is_swallowed(monkeypatch):
    monkeypatch.setattr(Config, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/orders")
    attempted = threading.Event()

    def failing_post(*args, **kwargs):
        attempted.set()
        raise requests.ConnectionError("down")

    with mock.patch("storefront.services.notification_service.requests.post", side_effect=failing_post) as post:
        publish_order_status_change(1, user_id=1, old_status="", new_status="pending")
        assert attempted.wait(timeout=5)

    post.assert_called_once()
    assert post.call_args.kwargs["json"]["event"] == "order_status_changed"
    assert NotificationService().get_unread_count(1) == 1


def test_webhook_does_not_block_publisher(monkeypatch):
    monkeypatch.setattr(Config, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/orders")
    release = threading.Event()
    delivered = threading.Event()

    def slow_send(url, event_name, payload):
        release.wait(timeout=2)
        delivered.set()

    with mock.patch("storefront.services.notification_service._send_webhook", side_effect=slow_send):
        started = time.monotonic()
        publish_payment_status_change(5, order_id=9, user_id=4, new_status="confirmed", mpesa_code="QGH7K2LM9P")
        elapsed = time.monotonic() - started
        release.set()

    assert elapsed < 1
    assert NotificationService().get_unread_count(4) == 1
    assert delivered.wait(timeout=5)


def test_webhook_skipped_without_url():
    with mock.patch("storefront.services.notification_service.requests.post") as post:
        publish_order_status_change(1, user_id=1, old_status="pending", new_status="cancelled")
    post.assert_not_called()
