import json
import logging
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import InsufficientStockError, build_error_envelope
from common.logging import JsonFormatter
from common.permissions import get_user_role, user_has_capability
from core.models import AuditLog
from inventory.models import Category
from inventory.services import create_inventory_item


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.technician = self.user_model.objects.create_user(
            username="tech-core",
            password="pass1234",
            role="technician",
        )
        self.admin = self.user_model.objects.create_user(
            username="admin-core",
            password="pass1234",
            role="admin",
        )

    def test_technician_cannot_post_stock_transaction_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.technician)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post(
                "/api/v1/inventory/transactions/",
                {"item_code": "ANY", "quantity": "1", "type": "in"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_capability_matrix_by_role(self):
        self.assertTrue(user_has_capability(self.technician, "material_request.create"))
        self.assertFalse(user_has_capability(self.technician, "material_request.approve"))
        self.assertTrue(user_has_capability(self.admin, "purchase_request.approve"))
        self.assertFalse(user_has_capability(self.admin, "unknown.capability"))

    def test_superuser_and_staff_resolve_to_admin(self):
        superuser = self.user_model.objects.create_superuser(username="root", password="pass1234", role="")
        staff = self.user_model.objects.create_user(username="staff", password="pass1234", is_staff=True, role="")

        self.assertEqual(get_user_role(superuser), "admin")
        self.assertEqual(get_user_role(staff), "admin")
        self.assertTrue(user_has_capability(superuser, "unknown.capability"))

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/inventory/items/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["status"], 401)

    def test_me_returns_role(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "technician")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            role="admin",
        )

    def test_category_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/inventory/categories/",
            {"name": "Lighting", "description": "Lamps and fittings"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        self.assertEqual(res["X-Request-ID"], "req-123")
        log = AuditLog.objects.get(action="category.create", entity="category")
        self.assertEqual(log.request_id, "req-123")
        self.assertEqual(log.actor, self.admin)
        self.assertEqual(log.after_snapshot["name"], "Lighting")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="material_request.approve", entity="material_request", entity_id="mr-1")
        AuditLog.objects.create(action="category.create", entity="category", entity_id="cat-1")

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "material_request"})

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([row["entity_id"] for row in results], ["mr-1"])


class ErrorEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.manager = get_user_model().objects.create_user(
            username="stores",
            password="pass1234",
            role="inventory_manager",
        )
        self.category = Category.objects.create(name="Fixings")
        create_inventory_item(code="BOLT-M12", name="Bolt M12", category=self.category, initial_stock=Decimal("2"))
        self.client.force_authenticate(user=self.manager)

    def test_insufficient_stock_reports_item_details(self):
        response = self.client.post(
            "/api/v1/inventory/transactions/",
            {"item_code": "BOLT-M12", "quantity": "5", "type": "out"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertIn("BOLT-M12", payload["message"])
        self.assertEqual(payload["errors"]["item_code"], "BOLT-M12")
        self.assertEqual(payload["errors"]["available"], "2.00")
        self.assertEqual(payload["errors"]["required"], "5.00")

    def test_unknown_item_is_not_found(self):
        response = self.client.post(
            "/api/v1/inventory/transactions/",
            {"item_code": "NOPE", "quantity": "1", "type": "in"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_validation_errors_keep_field_details(self):
        response = self.client.post(
            "/api/v1/inventory/transactions/",
            {"item_code": "BOLT-M12", "quantity": "1", "type": "teleport"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("type", payload["errors"])

    def test_domain_error_carries_code_and_details(self):
        exc = InsufficientStockError("Not enough bolts.", {"item_code": "BOLT-M12"})

        self.assertEqual(exc.status_code, 409)
        self.assertEqual(exc.message, "Not enough bolts.")
        self.assertEqual(
            build_error_envelope(code=exc.default_code, message=exc.message, errors=exc.details, status_code=exc.status_code),
            {"code": "insufficient_stock", "message": "Not enough bolts.", "errors": {"item_code": "BOLT-M12"}, "status": 409},
        )


class JsonFormatterTests(TestCase):
    def test_structured_extras_and_decimals_are_serialized(self):
        record = logging.LogRecord("inventory.ledger", logging.INFO, __file__, 1, "stock_transaction_applied", None, None)
        record.item_code = "LED-100W"
        record.stock_after = Decimal("4.00")
        record.unrelated = "ignored"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "stock_transaction_applied")
        self.assertEqual(payload["item_code"], "LED-100W")
        self.assertEqual(payload["stock_after"], "4.00")
        self.assertNotIn("unrelated", payload)
