from decimal import Decimal
from unittest.mock import Mock

from django.contrib.auth import get_user_model
from django.db import transaction
from django.test import TestCase
from rest_framework.test import APIClient

from notifications.models import Notification
from notifications.services import dispatch_on_commit, notify_low_stock, notify_purchase_completed


class NotificationServiceTests(TestCase):
    def test_low_stock_notification_content(self):
        notification = notify_low_stock("CABLE-4MM", "Copper cable 4mm", Decimal("3.00"), Decimal("10.00"))

        self.assertEqual(notification.type, Notification.Type.LOW_STOCK)
        self.assertEqual(notification.priority, Notification.Priority.HIGH)
        self.assertEqual(
            notification.message,
            'Item "Copper cable 4mm" is running low on stock. Current: 3.00, Minimum: 10.00',
        )
        self.assertEqual(notification.related_entity_type, "inventory_item")
        self.assertEqual(notification.data["minimum_threshold"], "10.00")

    def test_purchase_completed_notification_content(self):
        notification = notify_purchase_completed("c2a4", "Purchase from Fixings Ltd")

        self.assertEqual(notification.type, Notification.Type.PURCHASE_COMPLETED)
        self.assertEqual(notification.priority, Notification.Priority.MEDIUM)
        self.assertEqual(notification.title, "Purchase Request Completed")
        self.assertTrue(notification.message.startswith("Purchase from Fixings Ltd"))
        self.assertEqual(notification.data, {"purchase_request_id": "c2a4"})

    def test_dispatch_runs_after_commit_only(self):
        trigger = Mock()

        with self.captureOnCommitCallbacks(execute=True):
            dispatch_on_commit(trigger, item_code="A")
            trigger.assert_not_called()
        trigger.assert_called_once_with(item_code="A")

    def test_dispatch_is_dropped_on_rollback(self):
        trigger = Mock()

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(RuntimeError):
                with transaction.atomic():
                    dispatch_on_commit(trigger, item_code="A")
                    raise RuntimeError("abort")

        self.assertEqual(callbacks, [])
        trigger.assert_not_called()

    def test_dispatch_failure_is_logged_not_raised(self):
        def broken_trigger(**kwargs):
            raise RuntimeError("smtp unavailable")

        with self.assertLogs("notifications.services", level="ERROR") as cm:
            with self.captureOnCommitCallbacks(execute=True):
                dispatch_on_commit(broken_trigger, purchase_request_id="pr-1")

        self.assertEqual(len(cm.records), 1)
        self.assertEqual(cm.records[0].getMessage(), "notification_trigger_failed")
        self.assertEqual(cm.records[0].trigger, "broken_trigger")


class NotificationApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.manager = user_model.objects.create_user(
            username="stores-notify",
            password="pass1234",
            role="inventory_manager",
        )
        self.technician = user_model.objects.create_user(
            username="tech-notify",
            password="pass1234",
            role="technician",
        )
        self.low_stock = notify_low_stock("LED-100W", "LED street lamp", Decimal("1.00"), Decimal("5.00"))
        self.completed = notify_purchase_completed("pr-9", "Purchase Request PR-20260101-0001")

    def test_list_filters_by_type(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/notifications/", {"type": "low_stock"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.json()["results"]], [str(self.low_stock.id)])

    def test_mark_read_updates_only_unread(self):
        self.client.force_authenticate(user=self.manager)

        first = self.client.post(
            "/api/v1/notifications/mark-read/",
            {"notification_ids": [str(self.low_stock.id)]},
            format="json",
        )
        second = self.client.post(
            "/api/v1/notifications/mark-read/",
            {"notification_ids": [str(self.low_stock.id), str(self.completed.id)]},
            format="json",
        )

        self.assertEqual(first.json()["updated"], [str(self.low_stock.id)])
        self.assertEqual(second.json()["updated"], [str(self.completed.id)])
        self.low_stock.refresh_from_db()
        self.assertTrue(self.low_stock.is_read)
        self.assertIsNotNone(self.low_stock.read_at)

        unread = self.client.get("/api/v1/notifications/unread/")
        self.assertEqual(unread.json(), [])

    def test_technician_cannot_read_notifications(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.get("/api/v1/notifications/")

        self.assertEqual(response.status_code, 403)
