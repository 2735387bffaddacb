import threading
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from rest_framework.test import APIClient

from common.exceptions import InsufficientStockError, InvalidRequestError, InvalidStateError, NotFoundError
from core.models import AuditLog
from inventory import fulfillment
from inventory.fulfillment import FulfillmentKind, build_fulfillment_plan
from inventory.ledger import apply_transaction, verify_ledger
from inventory.models import (
    Category,
    ImmutableRecordError,
    InventoryItem,
    InventoryTransaction,
    LedgerBypassError,
    MaterialRequest,
    MaterialRequestItem,
    PurchaseRequest,
)
from inventory.schedule_status import compute_schedule_status, refresh_schedule_status
from inventory.services import INITIAL_STOCK_REFERENCE, check_availability, create_inventory_item
from maintenance.models import MaintenanceSchedule
from notifications.models import Notification

Status = MaintenanceSchedule.Status


class InventoryFixtureMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(
            username="stores",
            password="pass1234",
            role="inventory_manager",
        )
        self.buyer = self.user_model.objects.create_user(
            username="buyer",
            password="pass1234",
            role="purchase_manager",
        )
        self.technician = self.user_model.objects.create_user(
            username="tech",
            password="pass1234",
            role="technician",
        )
        self.category = Category.objects.create(name="Lighting")
        self.schedule = MaintenanceSchedule.objects.create(asset_reference="POLE-0042", description="Replace lamp head")

    def make_item(self, code, stock="0", threshold="0", unit_cost=None, **extra):
        return create_inventory_item(
            code=code,
            name=extra.pop("name", f"Item {code}"),
            category=self.category,
            minimum_threshold=Decimal(threshold),
            unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
            initial_stock=Decimal(stock),
            user=self.manager,
            **extra,
        )

    def stock_of(self, code):
        return InventoryItem.objects.get(code=code).current_stock


class LedgerTests(InventoryFixtureMixin, TestCase):
    def test_in_out_usage_purchase_and_adjustment_follow_sign_convention(self):
        self.make_item("LED-100W", stock="10")

        cases = [
            (InventoryTransaction.Type.IN, "5", "15.00"),
            (InventoryTransaction.Type.OUT, "3", "12.00"),
            (InventoryTransaction.Type.USAGE, "2", "10.00"),
            (InventoryTransaction.Type.PURCHASE, "4.5", "14.50"),
            (InventoryTransaction.Type.ADJUSTMENT, "7", "7.00"),
        ]
        for transaction_type, quantity, expected in cases:
            entry = apply_transaction("LED-100W", transaction_type, quantity, user=self.manager, reference="ref-1")
            self.assertEqual(entry.stock_after, Decimal(expected))
            self.assertEqual(self.stock_of("LED-100W"), Decimal(expected))

        entry.refresh_from_db()
        self.assertEqual(entry.stock_before, Decimal("14.50"))
        self.assertEqual(entry.quantity, Decimal("7.00"))
        self.assertEqual(entry.user, self.manager)
        self.assertEqual(entry.reference, "ref-1")

    def test_initial_stock_is_booked_as_in_transaction(self):
        item = self.make_item("CABLE-4MM", stock="250")

        entries = list(item.transactions.all())
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].type, InventoryTransaction.Type.IN)
        self.assertEqual(entries[0].reference, INITIAL_STOCK_REFERENCE)
        self.assertEqual(entries[0].stock_before, Decimal("0.00"))
        self.assertEqual(item.current_stock, Decimal("250.00"))

    def test_overdraw_fails_and_leaves_stock_unchanged(self):
        self.make_item("BOLT-M12", stock="3")

        with self.assertRaises(InsufficientStockError) as ctx:
            apply_transaction("BOLT-M12", InventoryTransaction.Type.OUT, "4", user=self.manager)

        self.assertIn("BOLT-M12", ctx.exception.message)
        self.assertEqual(ctx.exception.details["available"], "3.00")
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("3.00"))
        self.assertEqual(InventoryTransaction.objects.filter(item_id="BOLT-M12").count(), 1)

    def test_invalid_quantities_and_types_are_rejected(self):
        self.make_item("PAINT-GRN", stock="8")

        for transaction_type, quantity in [
            (InventoryTransaction.Type.IN, "0"),
            (InventoryTransaction.Type.OUT, "-1"),
            (InventoryTransaction.Type.ADJUSTMENT, "-2"),
            (InventoryTransaction.Type.IN, "abc"),
            ("teleport", "1"),
        ]:
            with self.assertRaises(InvalidRequestError):
                apply_transaction("PAINT-GRN", transaction_type, quantity)

        entry = apply_transaction("PAINT-GRN", InventoryTransaction.Type.ADJUSTMENT, "0")
        self.assertEqual(entry.stock_after, Decimal("0.00"))

    def test_unknown_item_is_not_found(self):
        with self.assertRaises(NotFoundError):
            apply_transaction("MISSING", InventoryTransaction.Type.IN, "1")

    def test_low_stock_notification_fires_once_on_downward_crossing(self):
        self.make_item("LED-100W", stock="10", threshold="5", name="LED street lamp")

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            apply_transaction("LED-100W", InventoryTransaction.Type.OUT, "4")
        self.assertEqual(len(callbacks), 0)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            apply_transaction("LED-100W", InventoryTransaction.Type.USAGE, "2")
        self.assertEqual(len(callbacks), 1)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            apply_transaction("LED-100W", InventoryTransaction.Type.OUT, "1")
        self.assertEqual(len(callbacks), 0)

        notification = Notification.objects.get(type=Notification.Type.LOW_STOCK)
        self.assertEqual(notification.title, "Low Stock Alert")
        self.assertEqual(notification.priority, Notification.Priority.HIGH)
        self.assertEqual(notification.related_entity_id, "LED-100W")
        self.assertIn('Item "LED street lamp" is running low on stock', notification.message)
        self.assertEqual(notification.data["current_stock"], "4.00")
        self.assertEqual(notification.data["minimum_threshold"], "5.00")

    def test_rolled_back_mutation_never_notifies(self):
        self.make_item("LED-100W", stock="10", threshold="5")

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(RuntimeError):
                with transaction.atomic():
                    apply_transaction("LED-100W", InventoryTransaction.Type.OUT, "8")
                    raise RuntimeError("abort")

        self.assertEqual(len(callbacks), 0)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("10.00"))
        self.assertFalse(Notification.objects.exists())

    def test_low_stock_trigger_failure_is_swallowed_and_logged(self):
        self.make_item("LED-100W", stock="10", threshold="5")

        with patch("inventory.ledger.notify_low_stock", side_effect=RuntimeError("mail down")):
            with self.assertLogs("notifications.services", level="ERROR") as cm:
                with self.captureOnCommitCallbacks(execute=True):
                    entry = apply_transaction("LED-100W", InventoryTransaction.Type.OUT, "6")

        self.assertEqual(entry.stock_after, Decimal("4.00"))
        self.assertEqual(self.stock_of("LED-100W"), Decimal("4.00"))
        self.assertTrue(any("notification_trigger_failed" in line for line in cm.output))

    def test_current_stock_cannot_be_written_outside_the_ledger(self):
        item = self.make_item("LED-100W", stock="10")

        item.current_stock = Decimal("99")
        with self.assertRaises(LedgerBypassError):
            item.save()
        with self.assertRaises(LedgerBypassError):
            InventoryItem.objects.filter(code="LED-100W").update(current_stock=Decimal("99"))

        item.refresh_from_db()
        item.name = "Renamed lamp"
        item.save()
        self.assertEqual(self.stock_of("LED-100W"), Decimal("10.00"))

    def test_transactions_are_immutable(self):
        item = self.make_item("LED-100W", stock="10")
        entry = item.transactions.get()

        entry.notes = "tampered"
        with self.assertRaises(ImmutableRecordError):
            entry.save()
        with self.assertRaises(ImmutableRecordError):
            entry.delete()
        with self.assertRaises(ImmutableRecordError):
            InventoryTransaction.objects.filter(pk=entry.pk).update(notes="tampered")
        with self.assertRaises(ImmutableRecordError):
            InventoryTransaction.objects.filter(pk=entry.pk).delete()

    def test_ledger_replays_to_current_stock_after_mixed_sequence(self):
        self.make_item("LED-100W", stock="20")
        self.make_item("CABLE-4MM", stock="5")
        sequence = [
            ("LED-100W", InventoryTransaction.Type.OUT, "7"),
            ("CABLE-4MM", InventoryTransaction.Type.PURCHASE, "10"),
            ("LED-100W", InventoryTransaction.Type.ADJUSTMENT, "18"),
            ("LED-100W", InventoryTransaction.Type.USAGE, "18"),
            ("CABLE-4MM", InventoryTransaction.Type.OUT, "99"),
            ("LED-100W", InventoryTransaction.Type.IN, "3"),
        ]
        for code, transaction_type, quantity in sequence:
            try:
                apply_transaction(code, transaction_type, quantity)
            except InsufficientStockError:
                pass
            self.assertGreaterEqual(self.stock_of(code), Decimal("0"))

        self.assertEqual(verify_ledger(), [])
        self.assertEqual(self.stock_of("LED-100W"), Decimal("3.00"))
        self.assertEqual(self.stock_of("CABLE-4MM"), Decimal("15.00"))

        out = StringIO()
        call_command("verify_ledger", stdout=out)
        self.assertIn("Ledger balanced.", out.getvalue())


class FulfillmentPlanTests(TestCase):
    def _item(self, code, stock, unit_cost=None):
        return InventoryItem(code=code, name=code, current_stock=Decimal(stock), unit_cost=unit_cost)

    def test_shortfall_splits_into_usage_and_purchase(self):
        items = {"A": self._item("A", "7")}

        plan = build_fulfillment_plan(items, {"A": Decimal("10")})

        self.assertEqual(plan.kind, FulfillmentKind.BOTH)
        self.assertEqual(plan.usage_lines[0].usage_quantity, Decimal("7"))
        self.assertEqual(plan.purchase_lines[0].purchase_quantity, Decimal("3"))
        self.assertEqual(plan.purchase_lines[0].purchase_unit_cost, Decimal("0"))

    def test_sufficient_stock_needs_no_purchase(self):
        plan = build_fulfillment_plan({"A": self._item("A", "12")}, {"A": Decimal("10")})

        self.assertEqual(plan.kind, FulfillmentKind.MATERIAL_ONLY)
        self.assertEqual(plan.usage_lines[0].usage_quantity, Decimal("10"))
        self.assertEqual(plan.purchase_lines, [])

    def test_empty_stock_is_purchase_only_and_zero_lines_are_dropped(self):
        items = {"A": self._item("A", "0", unit_cost=Decimal("4.50")), "B": self._item("B", "5")}

        plan = build_fulfillment_plan(items, {"A": Decimal("2"), "B": Decimal("0")})

        self.assertEqual(plan.kind, FulfillmentKind.PURCHASE_ONLY)
        self.assertEqual([line.item.code for line in plan.purchase_lines], ["A"])
        self.assertEqual(plan.purchase_lines[0].purchase_unit_cost, Decimal("4.50"))

    def test_all_zero_plan_is_empty(self):
        plan = build_fulfillment_plan({"A": self._item("A", "5")}, {"A": Decimal("0")})

        self.assertTrue(plan.is_empty)
        self.assertIsNone(plan.kind)


class MaterialRequestWorkflowTests(InventoryFixtureMixin, TestCase):
    def create_request(self, lines, schedule=None, notes=""):
        return fulfillment.create_material_request(
            maintenance_schedule_id=(schedule or self.schedule).id,
            items=[{"item_code": code, "quantity": quantity} for code, quantity in lines],
            notes=notes,
            user=self.technician,
        )

    def test_create_splits_shortfall_into_linked_purchase_request(self):
        self.make_item("LED-100W", stock="7", unit_cost="85.00")

        result = self.create_request([("LED-100W", "10")])

        self.assertEqual(result.kind, FulfillmentKind.BOTH)
        material_request = result.material_request
        self.assertEqual(material_request.status, MaterialRequest.Status.PENDING)
        self.assertTrue(material_request.code.startswith("MR-"))
        usage_item = material_request.items.get()
        self.assertEqual(usage_item.requested_quantity, Decimal("7.00"))
        self.assertEqual(usage_item.available_quantity, Decimal("7.00"))
        self.assertEqual(usage_item.request_type, MaterialRequestItem.RequestType.USAGE)
        self.assertEqual(usage_item.status, MaterialRequestItem.Status.PENDING)

        purchase_request = result.purchase_request
        self.assertEqual(purchase_request.status, PurchaseRequest.Status.PENDING)
        self.assertEqual(purchase_request.material_request, material_request)
        self.assertEqual(purchase_request.maintenance_schedule, self.schedule)
        purchase_item = purchase_request.items.get()
        self.assertEqual(purchase_item.requested_quantity, Decimal("3.00"))
        self.assertEqual(purchase_item.unit_cost, Decimal("85.00"))
        self.assertEqual(purchase_request.total_cost, Decimal("255.00"))
        self.assertEqual(self.stock_of("LED-100W"), Decimal("7.00"))

    def test_create_with_enough_stock_is_material_only(self):
        self.make_item("LED-100W", stock="12")

        result = self.create_request([("LED-100W", "10")])

        self.assertEqual(result.kind, FulfillmentKind.MATERIAL_ONLY)
        self.assertIsNone(result.purchase_request)
        self.assertEqual(result.material_request.items.get().requested_quantity, Decimal("10.00"))
        self.assertFalse(PurchaseRequest.objects.exists())

    def test_create_without_stock_is_purchase_only(self):
        self.make_item("BOLT-M12", stock="0")

        result = self.create_request([("BOLT-M12", "4")])

        self.assertEqual(result.kind, FulfillmentKind.PURCHASE_ONLY)
        self.assertIsNone(result.material_request)
        self.assertIsNone(result.purchase_request.material_request)
        self.assertEqual(result.purchase_request.total_cost, Decimal("0.00"))
        self.assertFalse(MaterialRequest.objects.exists())

    def test_duplicate_lines_are_merged_before_splitting(self):
        self.make_item("LED-100W", stock="7")

        result = self.create_request([("LED-100W", "5"), ("LED-100W", "5")])

        self.assertEqual(result.material_request.items.get().requested_quantity, Decimal("7.00"))
        self.assertEqual(result.purchase_request.items.get().requested_quantity, Decimal("3.00"))

    def test_create_rejects_invalid_input(self):
        self.make_item("LED-100W", stock="7")

        with self.assertRaises(InvalidRequestError):
            self.create_request([("LED-100W", "0")])
        with self.assertRaises(InvalidRequestError):
            self.create_request([("LED-100W", "-2")])
        with self.assertRaises(InvalidRequestError):
            self.create_request([])
        with self.assertRaises(NotFoundError):
            self.create_request([("MISSING", "1")])
        self.assertFalse(MaterialRequest.objects.exists())
        self.assertFalse(PurchaseRequest.objects.exists())

    def test_create_rejects_unknown_schedule_and_inactive_item(self):
        self.make_item("OLD-LAMP", stock="5", is_active=False)

        with self.assertRaises(NotFoundError):
            fulfillment.create_material_request(
                maintenance_schedule_id="00000000-0000-0000-0000-000000000000",
                items=[{"item_code": "OLD-LAMP", "quantity": "1"}],
            )
        with self.assertRaises(InvalidRequestError):
            self.create_request([("OLD-LAMP", "1")])

    def test_only_one_open_material_request_per_schedule(self):
        self.make_item("LED-100W", stock="20")
        self.create_request([("LED-100W", "2")])

        with self.assertRaises(InvalidStateError):
            self.create_request([("LED-100W", "2")])

        with override_settings(MATERIAL_REQUEST_SINGLE_OPEN_PER_SCHEDULE=False):
            self.create_request([("LED-100W", "2")])
        self.assertEqual(MaterialRequest.objects.filter(maintenance_schedule=self.schedule).count(), 2)
        self.assertEqual(len(set(MaterialRequest.objects.values_list("code", flat=True))), 2)

    def test_colliding_document_code_is_retried(self):
        self.make_item("LED-100W", stock="20")
        existing = self.create_request([("LED-100W", "2")]).material_request
        other_schedule = MaintenanceSchedule.objects.create(asset_reference="POLE-0043")

        with patch("common.utils.next_document_code", side_effect=[existing.code, "MR-20260101-0777"]):
            with self.assertLogs("common.utils", level="WARNING") as cm:
                created = self.create_request([("LED-100W", "2")], schedule=other_schedule).material_request

        self.assertEqual(created.code, "MR-20260101-0777")
        self.assertEqual(created.items.get().requested_quantity, Decimal("2.00"))
        self.assertIn("document_code_collision", cm.output[0])

    def test_exhausted_document_codes_raise_invalid_state(self):
        self.make_item("LED-100W", stock="20")
        existing = self.create_request([("LED-100W", "2")]).material_request
        other_schedule = MaintenanceSchedule.objects.create(asset_reference="POLE-0043")

        with patch("common.utils.next_document_code", return_value=existing.code):
            with self.assertLogs("common.utils", level="WARNING"):
                with self.assertRaises(InvalidStateError):
                    self.create_request([("LED-100W", "2")], schedule=other_schedule)

        self.assertEqual(MaterialRequest.objects.count(), 1)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("20.00"))

    def test_request_items_only_carry_usage_lines(self):
        self.assertEqual(MaterialRequestItem.RequestType.values, ["usage"])

    def test_approve_issues_stock_and_starts_schedule(self):
        self.make_item("LED-100W", stock="10")
        self.make_item("CABLE-4MM", stock="50")
        material_request = self.create_request([("LED-100W", "4"), ("CABLE-4MM", "20")]).material_request

        approved = fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)

        self.assertEqual(approved.status, MaterialRequest.Status.AWAITING_DELIVERY)
        self.assertEqual(approved.approved_by, self.manager)
        self.assertIsNotNone(approved.approved_at)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("6.00"))
        self.assertEqual(self.stock_of("CABLE-4MM"), Decimal("30.00"))
        for line in approved.items.all():
            self.assertEqual(line.status, MaterialRequestItem.Status.FULFILLED)
            self.assertEqual(line.actual_quantity_used, line.requested_quantity)
        usage = InventoryTransaction.objects.filter(type=InventoryTransaction.Type.USAGE)
        self.assertEqual(usage.count(), 2)
        self.assertEqual({entry.reference for entry in usage}, {str(self.schedule.id)})

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.STARTED)
        self.assertIsNotNone(self.schedule.started_at)

    def test_approval_is_atomic_across_items(self):
        self.make_item("ITEM-A", stock="10")
        self.make_item("ITEM-B", stock="10")
        self.make_item("ITEM-C", stock="10")
        material_request = self.create_request([("ITEM-A", "5"), ("ITEM-B", "5"), ("ITEM-C", "5")]).material_request
        apply_transaction("ITEM-B", InventoryTransaction.Type.OUT, "8", user=self.manager)

        with self.assertRaises(InsufficientStockError) as ctx:
            fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)

        self.assertIn("ITEM-B", ctx.exception.message)
        self.assertIn(material_request.code, ctx.exception.message)
        self.assertEqual(ctx.exception.details["item_code"], "ITEM-B")
        self.assertEqual(self.stock_of("ITEM-A"), Decimal("10.00"))
        self.assertEqual(self.stock_of("ITEM-B"), Decimal("2.00"))
        self.assertEqual(self.stock_of("ITEM-C"), Decimal("10.00"))
        self.assertFalse(InventoryTransaction.objects.filter(type=InventoryTransaction.Type.USAGE).exists())
        material_request.refresh_from_db()
        self.assertEqual(material_request.status, MaterialRequest.Status.PENDING)
        self.assertFalse(material_request.items.exclude(status=MaterialRequestItem.Status.PENDING).exists())
        self.assertEqual(verify_ledger(), [])

    def test_reject_marks_items_rejected_without_touching_stock(self):
        self.make_item("LED-100W", stock="10")
        material_request = self.create_request([("LED-100W", "4")]).material_request

        rejected = fulfillment.approve_material_request(material_request.id, approve=False, user=self.manager)

        self.assertEqual(rejected.status, MaterialRequest.Status.REJECTED)
        self.assertEqual(rejected.rejection_reason, "Request rejected")
        self.assertEqual(rejected.items.get().status, MaterialRequestItem.Status.REJECTED)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("10.00"))
        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.REQUESTED)

        with self.assertRaises(InvalidStateError):
            fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)

    def test_no_backward_transition_from_delivered(self):
        self.make_item("LED-100W", stock="10")
        material_request = self.create_request([("LED-100W", "4")]).material_request
        fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)
        fulfillment.receive_material_request(material_request.id, notes="Collected by crew 3", user=self.technician)

        with self.assertRaises(InvalidStateError):
            fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)
        with self.assertRaises(InvalidStateError):
            fulfillment.receive_material_request(material_request.id, user=self.technician)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("6.00"))

    def test_receive_marks_delivered_and_merges_notes(self):
        self.make_item("LED-100W", stock="10")
        material_request = self.create_request([("LED-100W", "4")], notes="Urgent").material_request

        with self.assertRaises(InvalidStateError):
            fulfillment.receive_material_request(material_request.id, user=self.technician)

        fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)
        delivered = fulfillment.receive_material_request(material_request.id, notes="Collected", user=self.technician)

        self.assertEqual(delivered.status, MaterialRequest.Status.DELIVERED)
        self.assertEqual(delivered.delivered_by, self.technician)
        self.assertIsNotNone(delivered.delivered_at)
        self.assertEqual(delivered.notes, "Urgent\nCollected")

    def test_legacy_approved_request_is_fast_forwarded_without_stock_effect(self):
        self.make_item("LED-100W", stock="10")
        material_request = MaterialRequest.objects.create(
            code="MR-LEGACY-0001",
            maintenance_schedule=self.schedule,
            status=MaterialRequest.Status.APPROVED,
        )
        self.assertEqual(material_request.canonical_status, MaterialRequest.Status.AWAITING_DELIVERY)

        upgraded = fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)

        self.assertEqual(upgraded.status, MaterialRequest.Status.AWAITING_DELIVERY)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("10.00"))
        self.assertFalse(InventoryTransaction.objects.filter(type=InventoryTransaction.Type.USAGE).exists())

    def test_delete_only_while_pending(self):
        self.make_item("LED-100W", stock="10")
        first = self.create_request([("LED-100W", "1")]).material_request
        fulfillment.delete_material_request(first.id)
        self.assertFalse(MaterialRequest.objects.filter(id=first.id).exists())

        second = self.create_request([("LED-100W", "1")]).material_request
        fulfillment.approve_material_request(second.id, approve=True, user=self.manager)
        with self.assertRaises(InvalidStateError):
            fulfillment.delete_material_request(second.id)

    def test_unknown_request_is_not_found(self):
        with self.assertRaises(NotFoundError):
            fulfillment.approve_material_request("00000000-0000-0000-0000-000000000000", approve=True)
        with self.assertRaises(NotFoundError):
            fulfillment.receive_material_request("not-a-uuid")


class PurchaseRequestWorkflowTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.make_item("BOLT-M12", stock="1", unit_cost="2.50")
        self.purchase_request = fulfillment.create_purchase_request(
            items=[{"item_code": "BOLT-M12", "quantity": "10", "unit_cost": "2.25"}],
            maintenance_schedule_id=self.schedule.id,
            supplier_name="Fixings Ltd",
            supplier_contact="sales@fixings.example",
            user=self.buyer,
        )

    def test_create_computes_totals_and_codes(self):
        self.assertTrue(self.purchase_request.code.startswith("PR-"))
        self.assertEqual(self.purchase_request.status, PurchaseRequest.Status.PENDING)
        self.assertEqual(self.purchase_request.total_cost, Decimal("22.50"))
        line = self.purchase_request.items.get()
        self.assertEqual(line.total_cost, Decimal("22.50"))
        self.assertEqual(self.purchase_request.stage.label, "pending")

    def test_create_validates_lines(self):
        for items in (
            [],
            [{"item_code": "BOLT-M12", "quantity": "0"}],
            [{"item_code": "BOLT-M12", "quantity": "1", "unit_cost": "-1"}],
            [{"item_code": "", "quantity": "1"}],
        ):
            with self.assertRaises(InvalidRequestError):
                fulfillment.create_purchase_request(items=items)
        with self.assertRaises(NotFoundError):
            fulfillment.create_purchase_request(items=[{"item_code": "MISSING", "quantity": "1"}])

    def test_create_derives_schedule_from_material_request(self):
        self.make_item("LED-100W", stock="5")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "2"}],
        ).material_request
        other_schedule = MaintenanceSchedule.objects.create(asset_reference="PARK-7")

        purchase_request = fulfillment.create_purchase_request(
            items=[{"item_code": "LED-100W", "quantity": "1"}],
            material_request_id=material_request.id,
        )
        self.assertEqual(purchase_request.maintenance_schedule, self.schedule)

        with self.assertRaises(InvalidRequestError):
            fulfillment.create_purchase_request(
                items=[{"item_code": "LED-100W", "quantity": "1"}],
                material_request_id=material_request.id,
                maintenance_schedule_id=other_schedule.id,
            )

    def test_full_pipeline_adds_stock_and_notifies_after_commit(self):
        pr_id = self.purchase_request.id
        approved = fulfillment.approve_purchase_request(pr_id, approve=True, user=self.buyer)
        self.assertEqual(approved.status, PurchaseRequest.Status.APPROVED)
        self.assertEqual(approved.stage.label, "approved")

        ordered = fulfillment.mark_purchase_ordered(pr_id, user=self.buyer)
        self.assertEqual(ordered.status, PurchaseRequest.Status.APPROVED)
        self.assertIsNotNone(ordered.ordered_at)
        self.assertTrue(ordered.stage.is_ordered)
        self.assertEqual(ordered.stage.label, "ordered")
        with self.assertRaises(InvalidStateError):
            fulfillment.mark_purchase_ordered(pr_id, user=self.buyer)

        with self.assertRaises(InvalidStateError):
            fulfillment.complete_purchase_request(pr_id, user=self.manager)

        ready = fulfillment.mark_purchase_ready_to_deliver(pr_id, user=self.buyer)
        self.assertEqual(ready.status, PurchaseRequest.Status.READY_TO_DELIVER)
        self.assertEqual(ready.ready_to_deliver_by, self.buyer)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            completed = fulfillment.complete_purchase_request(pr_id, grn_code="GRN-77", user=self.manager)
        self.assertEqual(len(callbacks), 1)

        self.assertEqual(completed.status, PurchaseRequest.Status.COMPLETED)
        self.assertEqual(completed.completed_by, self.manager)
        self.assertEqual(completed.grn_code, "GRN-77")
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("11.00"))
        entry = InventoryTransaction.objects.get(type=InventoryTransaction.Type.PURCHASE)
        self.assertEqual(entry.reference, f"purchase:{pr_id}")
        self.assertEqual(entry.quantity, Decimal("10.00"))

        notification = Notification.objects.get(type=Notification.Type.PURCHASE_COMPLETED)
        self.assertEqual(notification.title, "Purchase Request Completed")
        self.assertIn("Purchase from Fixings Ltd", notification.message)
        self.assertEqual(notification.related_entity_id, str(pr_id))

        delivered = fulfillment.deliver_purchase_request(pr_id, user=self.technician)
        self.assertEqual(delivered.status, PurchaseRequest.Status.DELIVERED)
        self.assertTrue(delivered.receiving_code.startswith("RCV-"))
        self.assertEqual(verify_ledger(), [])

    def test_receive_path_is_allowed_from_approved(self):
        fulfillment.approve_purchase_request(self.purchase_request.id, approve=True, user=self.buyer)

        received = fulfillment.receive_purchase_request(self.purchase_request.id, notes="Dock 2", user=self.manager)

        self.assertEqual(received.status, PurchaseRequest.Status.COMPLETED)
        self.assertTrue(received.grn_code.startswith("GRN-"))
        self.assertIn("Dock 2", received.notes)
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("11.00"))
        with self.assertRaises(InvalidStateError):
            fulfillment.receive_purchase_request(self.purchase_request.id, user=self.manager)
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("11.00"))

    def test_ready_to_deliver_requires_approval(self):
        with self.assertRaises(InvalidStateError):
            fulfillment.mark_purchase_ready_to_deliver(self.purchase_request.id, user=self.buyer)
        with self.assertRaises(InvalidStateError):
            fulfillment.mark_purchase_ordered(self.purchase_request.id, user=self.buyer)
        with self.assertRaises(InvalidStateError):
            fulfillment.deliver_purchase_request(self.purchase_request.id, user=self.buyer)

    def test_reject_is_terminal(self):
        rejected = fulfillment.approve_purchase_request(self.purchase_request.id, approve=False, user=self.buyer)

        self.assertEqual(rejected.status, PurchaseRequest.Status.REJECTED)
        self.assertEqual(rejected.rejection_reason, "Purchase request rejected")
        with self.assertRaises(InvalidStateError):
            fulfillment.approve_purchase_request(self.purchase_request.id, approve=True, user=self.buyer)
        with self.assertRaises(InvalidStateError):
            fulfillment.receive_purchase_request(self.purchase_request.id, user=self.manager)

    def test_legacy_received_status_can_be_delivered(self):
        PurchaseRequest.objects.filter(id=self.purchase_request.id).update(status=PurchaseRequest.Status.RECEIVED)
        self.purchase_request.refresh_from_db()
        self.assertEqual(self.purchase_request.canonical_status, PurchaseRequest.Status.COMPLETED)

        delivered = fulfillment.deliver_purchase_request(self.purchase_request.id, receiving_code="RC-1")

        self.assertEqual(delivered.status, PurchaseRequest.Status.DELIVERED)
        self.assertEqual(delivered.receiving_code, "RC-1")

    def test_notification_failure_does_not_fail_completion(self):
        fulfillment.approve_purchase_request(self.purchase_request.id, approve=True, user=self.buyer)

        with patch("inventory.fulfillment.notify_purchase_completed", side_effect=RuntimeError("queue down")):
            with self.assertLogs("notifications.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    completed = fulfillment.receive_purchase_request(self.purchase_request.id, user=self.manager)

        self.assertEqual(completed.status, PurchaseRequest.Status.COMPLETED)
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("11.00"))


class ScheduleStatusCascadeTests(InventoryFixtureMixin, TestCase):
    def test_compute_schedule_status_rules(self):
        MR = MaterialRequest.Status
        PR = PurchaseRequest.Status
        cases = [
            ([MR.PENDING], [], Status.REQUESTED, Status.REQUESTED),
            ([MR.AWAITING_DELIVERY], [], Status.REQUESTED, Status.STARTED),
            ([MR.DELIVERED], [PR.PENDING], Status.REQUESTED, Status.PARTIALLY_STARTED),
            ([MR.FULFILLED], [PR.COMPLETED], Status.PARTIALLY_STARTED, Status.STARTED),
            ([MR.APPROVED], [PR.RECEIVED, PR.DELIVERED], Status.REQUESTED, Status.STARTED),
            ([MR.DELIVERED, MR.REJECTED], [], Status.REQUESTED, Status.REQUESTED),
            ([], [PR.ARRIVED_IN_STOCK], Status.REQUESTED, Status.STARTED),
            ([MR.DELIVERED], [PR.PENDING], Status.STARTED, Status.STARTED),
            ([MR.DELIVERED], [], Status.PAUSED, Status.PAUSED),
            ([MR.DELIVERED], [PR.COMPLETED], Status.COMPLETED, Status.COMPLETED),
        ]
        for material_statuses, purchase_statuses, current, expected in cases:
            with self.subTest(materials=material_statuses, purchases=purchase_statuses, current=current):
                self.assertEqual(compute_schedule_status(material_statuses, purchase_statuses, current), expected)

    def test_refresh_is_idempotent_and_keeps_start_time(self):
        self.make_item("LED-100W", stock="10")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "2"}],
        ).material_request
        fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)
        self.schedule.refresh_from_db()
        started_at = self.schedule.started_at

        refresh_schedule_status(self.schedule.id)
        refresh_schedule_status(self.schedule.id)

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.STARTED)
        self.assertEqual(self.schedule.started_at, started_at)

    def test_paused_schedule_is_not_overwritten(self):
        self.make_item("LED-100W", stock="10")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "2"}],
        ).material_request
        MaintenanceSchedule.objects.filter(id=self.schedule.id).update(status=Status.PAUSED)

        fulfillment.approve_material_request(material_request.id, approve=True, user=self.manager)

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.PAUSED)
        self.assertIsNone(self.schedule.started_at)

    def test_end_to_end_shortfall_scenario(self):
        self.make_item("ITEM-A", stock="5", unit_cost="10.00")

        result = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "ITEM-A", "quantity": "8"}],
            user=self.technician,
        )
        self.assertEqual(result.kind, FulfillmentKind.BOTH)
        self.assertEqual(result.material_request.items.get().requested_quantity, Decimal("5.00"))
        self.assertEqual(result.purchase_request.items.get().requested_quantity, Decimal("3.00"))

        fulfillment.approve_material_request(result.material_request.id, approve=True, user=self.manager)
        self.assertEqual(self.stock_of("ITEM-A"), Decimal("0.00"))
        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.PARTIALLY_STARTED)
        first_started_at = self.schedule.started_at
        self.assertIsNotNone(first_started_at)

        fulfillment.receive_material_request(result.material_request.id, user=self.technician)
        purchase_id = result.purchase_request.id
        fulfillment.approve_purchase_request(purchase_id, approve=True, user=self.buyer)
        fulfillment.mark_purchase_ordered(purchase_id, user=self.buyer)
        fulfillment.mark_purchase_ready_to_deliver(purchase_id, user=self.buyer)
        fulfillment.complete_purchase_request(purchase_id, user=self.manager)

        self.assertEqual(self.stock_of("ITEM-A"), Decimal("3.00"))
        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.STARTED)
        self.assertEqual(self.schedule.started_at, first_started_at)

        material_request = MaterialRequest.objects.get(id=result.material_request.id)
        self.assertEqual(material_request.status, MaterialRequest.Status.FULFILLED)
        self.assertEqual(verify_ledger(), [])

    def _complete_purchase(self, purchase_id):
        fulfillment.approve_purchase_request(purchase_id, approve=True, user=self.buyer)
        fulfillment.mark_purchase_ready_to_deliver(purchase_id, user=self.buyer)
        fulfillment.complete_purchase_request(purchase_id, user=self.manager)

    def test_purchase_completed_before_receipt_fulfills_material_request(self):
        self.make_item("ITEM-A", stock="5", unit_cost="10.00")
        result = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "ITEM-A", "quantity": "8"}],
            user=self.technician,
        )
        fulfillment.approve_material_request(result.material_request.id, approve=True, user=self.manager)

        self._complete_purchase(result.purchase_request.id)

        material_request = MaterialRequest.objects.get(id=result.material_request.id)
        self.assertEqual(material_request.status, MaterialRequest.Status.FULFILLED)
        self.assertIsNone(material_request.delivered_at)
        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.STARTED)

        received = fulfillment.receive_material_request(material_request.id, notes="On site", user=self.technician)

        self.assertEqual(received.status, MaterialRequest.Status.FULFILLED)
        self.assertEqual(received.delivered_by, self.technician)
        self.assertIsNotNone(received.delivered_at)
        with self.assertRaises(InvalidStateError):
            fulfillment.receive_material_request(material_request.id, user=self.technician)
        self.assertEqual(self.stock_of("ITEM-A"), Decimal("3.00"))

    def test_purchase_completed_before_approval_leaves_material_request_pending(self):
        self.make_item("ITEM-A", stock="5", unit_cost="10.00")
        result = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "ITEM-A", "quantity": "8"}],
            user=self.technician,
        )

        self._complete_purchase(result.purchase_request.id)

        material_request = MaterialRequest.objects.get(id=result.material_request.id)
        self.assertEqual(material_request.status, MaterialRequest.Status.PENDING)
        self.assertTrue(material_request.items.filter(status=MaterialRequestItem.Status.PENDING).exists())


class InventoryApiTests(InventoryFixtureMixin, TestCase):
    def test_create_item_with_initial_stock_books_transaction(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            "/api/v1/inventory/items/",
            {
                "code": "LED-100W",
                "name": "LED street lamp",
                "category": str(self.category.id),
                "unit_of_measure": "pieces",
                "minimum_threshold": "5",
                "unit_cost": "85.00",
                "initial_stock": "12",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["current_stock"], "12.00")
        self.assertEqual(response.json()["stock_level"], "in_stock")
        entry = InventoryTransaction.objects.get(item_id="LED-100W")
        self.assertEqual(entry.reference, INITIAL_STOCK_REFERENCE)
        self.assertEqual(entry.user, self.manager)

    def test_patch_cannot_change_stock(self):
        self.make_item("LED-100W", stock="12")
        self.client.force_authenticate(user=self.manager)

        response = self.client.patch(
            "/api/v1/inventory/items/LED-100W/",
            {"current_stock": "999", "name": "LED lamp 100W"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["current_stock"], "12.00")
        self.assertEqual(response.json()["name"], "LED lamp 100W")

    def test_list_filters_by_stock_level_and_search(self):
        self.make_item("LOW-1", stock="2", threshold="5")
        self.make_item("WARN-1", stock="7", threshold="5")
        self.make_item("OK-1", stock="50", threshold="5", name="Copper cable")
        self.client.force_authenticate(user=self.technician)

        def codes(params):
            response = self.client.get("/api/v1/inventory/items/", params)
            self.assertEqual(response.status_code, 200)
            return [row["code"] for row in response.json()["results"]]

        self.assertEqual(codes({"stock_level": "low"}), ["LOW-1"])
        self.assertEqual(codes({"stock_level": "warning"}), ["WARN-1"])
        self.assertEqual(codes({"stock_level": "in_stock"}), ["OK-1"])
        self.assertEqual(codes({"search": "copper"}), ["OK-1"])

        response = self.client.get("/api/v1/inventory/items/", {"stock_level": "bogus"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_request")

    def test_low_stock_and_availability_endpoints(self):
        self.make_item("LOW-1", stock="2", threshold="5")
        self.make_item("OK-1", stock="50", threshold="5")
        self.make_item("RETIRED", stock="0", threshold="5", is_active=False)
        self.client.force_authenticate(user=self.technician)

        low = self.client.get("/api/v1/inventory/items/low-stock/")
        self.assertEqual(low.status_code, 200)
        self.assertEqual([row["code"] for row in low.json()], ["LOW-1"])

        availability = self.client.post(
            "/api/v1/inventory/items/check-availability/",
            {"items": [{"item_code": "LOW-1", "quantity": "3"}, {"item_code": "OK-1", "quantity": "10"}]},
            format="json",
        )
        self.assertEqual(availability.status_code, 200)
        payload = availability.json()
        self.assertFalse(payload["all_available"])
        self.assertEqual(payload["items"][0]["shortage"], "1.00")
        self.assertTrue(payload["items"][1]["is_available"])

    def test_check_availability_service_reports_shortages(self):
        self.make_item("LOW-1", stock="2")

        report = check_availability([{"item_code": "LOW-1", "quantity": "2"}])

        self.assertTrue(report["all_available"])
        self.assertEqual(report["items"][0]["shortage"], Decimal("0"))

    def test_transaction_endpoint_and_history(self):
        self.make_item("LED-100W", stock="10")
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            "/api/v1/inventory/transactions/",
            {"item_code": "LED-100W", "quantity": "4", "type": "out", "reference": "WO-1", "notes": "Van stock"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["stock_before"], "10.00")
        self.assertEqual(payload["stock_after"], "6.00")
        self.assertEqual(payload["item_code"], "LED-100W")

        history = self.client.get("/api/v1/inventory/items/LED-100W/transactions/", {"limit": "1"})
        self.assertEqual(history.status_code, 200)
        self.assertEqual(len(history.json()), 1)
        self.assertEqual(history.json()[0]["reference"], "WO-1")

        missing = self.client.get("/api/v1/inventory/items/NOPE/transactions/")
        self.assertEqual(missing.status_code, 404)

    def test_material_request_api_flow(self):
        self.make_item("LED-100W", stock="5", unit_cost="85.00")
        self.client.force_authenticate(user=self.technician)

        created = self.client.post(
            "/api/v1/material-requests/",
            {
                "maintenance_schedule_id": str(self.schedule.id),
                "items": [{"item_code": "LED-100W", "quantity": "8"}],
                "notes": "Pole 42",
            },
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertEqual(body["kind"], "both")
        self.assertEqual(body["material_request"]["items"][0]["requested_quantity"], "5.00")
        self.assertEqual(body["purchase_request"]["items"][0]["requested_quantity"], "3.00")
        material_request_id = body["material_request"]["id"]

        denied = self.client.post(f"/api/v1/material-requests/{material_request_id}/approve/", {"approve": True}, format="json")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        approved = self.client.post(f"/api/v1/material-requests/{material_request_id}/approve/", {"approve": True}, format="json")
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["status"], "awaiting_delivery")

        again = self.client.post(f"/api/v1/material-requests/{material_request_id}/approve/", {"approve": True}, format="json")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "invalid_state")

        self.client.force_authenticate(user=self.technician)
        received = self.client.post(f"/api/v1/material-requests/{material_request_id}/receive/", {"notes": "On site"}, format="json")
        self.assertEqual(received.status_code, 200)
        self.assertEqual(received.json()["status"], "delivered")

        schedule = self.client.get(f"/api/v1/maintenance-schedules/{self.schedule.id}/")
        self.assertEqual(schedule.json()["status"], "partially_started")

        listing = self.client.get("/api/v1/material-requests/", {"maintenance_schedule": str(self.schedule.id)})
        self.assertEqual([row["id"] for row in listing.json()["results"]], [material_request_id])

    def test_material_request_api_validation_and_not_found(self):
        self.client.force_authenticate(user=self.technician)

        missing_schedule = self.client.post(
            "/api/v1/material-requests/",
            {"maintenance_schedule_id": "00000000-0000-0000-0000-000000000000", "items": [{"item_code": "X", "quantity": "1"}]},
            format="json",
        )
        self.assertEqual(missing_schedule.status_code, 404)

        empty_items = self.client.post(
            "/api/v1/material-requests/",
            {"maintenance_schedule_id": str(self.schedule.id), "items": []},
            format="json",
        )
        self.assertEqual(empty_items.status_code, 400)

        self.make_item("LED-100W", stock="5")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "1"}],
        ).material_request
        self.client.force_authenticate(user=self.manager)
        missing_approve_flag = self.client.post(
            f"/api/v1/material-requests/{material_request.id}/approve/",
            {},
            format="json",
        )
        self.assertEqual(missing_approve_flag.status_code, 400)
        self.assertIn("approve", missing_approve_flag.json()["errors"])

        unknown = self.client.post(
            "/api/v1/material-requests/00000000-0000-0000-0000-000000000000/approve/",
            {"approve": True},
            format="json",
        )
        self.assertEqual(unknown.status_code, 404)

    def test_material_request_delete_endpoint(self):
        self.make_item("LED-100W", stock="5")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "1"}],
        ).material_request
        self.client.force_authenticate(user=self.technician)

        response = self.client.delete(f"/api/v1/material-requests/{material_request.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(MaterialRequest.objects.filter(id=material_request.id).exists())

    def test_approve_audit_records_prior_status_of_legacy_request(self):
        self.make_item("LED-100W", stock="5")
        material_request = fulfillment.create_material_request(
            maintenance_schedule_id=self.schedule.id,
            items=[{"item_code": "LED-100W", "quantity": "1"}],
        ).material_request
        MaterialRequest.objects.filter(id=material_request.id).update(status=MaterialRequest.Status.APPROVED)
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/material-requests/{material_request.id}/approve/", {"approve": True}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "awaiting_delivery")
        log = AuditLog.objects.get(action="material_request.approve")
        self.assertEqual(log.before_snapshot, {"status": "approved"})
        self.assertEqual(log.after_snapshot["status"], "awaiting_delivery")
        self.assertEqual(self.stock_of("LED-100W"), Decimal("5.00"))

    def test_purchase_request_api_pipeline(self):
        self.make_item("BOLT-M12", stock="0")
        self.client.force_authenticate(user=self.manager)

        created = self.client.post(
            "/api/v1/purchase-requests/",
            {
                "maintenance_schedule_id": str(self.schedule.id),
                "items": [{"item_code": "BOLT-M12", "quantity": "4", "unit_cost": "1.25"}],
                "supplier_name": "Fixings Ltd",
            },
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["total_cost"], "5.00")
        pr_id = created.json()["id"]

        forbidden = self.client.post(f"/api/v1/purchase-requests/{pr_id}/approve/", {"approve": True}, format="json")
        self.assertEqual(forbidden.status_code, 403)

        self.client.force_authenticate(user=self.buyer)
        self.assertEqual(
            self.client.post(f"/api/v1/purchase-requests/{pr_id}/approve/", {"approve": True}, format="json").status_code,
            200,
        )
        ordered = self.client.post(f"/api/v1/purchase-requests/{pr_id}/order/", {}, format="json")
        self.assertEqual(ordered.json()["stage"], "ordered")
        ready = self.client.post(f"/api/v1/purchase-requests/{pr_id}/ready-to-deliver/", {}, format="json")
        self.assertEqual(ready.json()["status"], "ready_to_deliver")

        completed = self.client.post(f"/api/v1/purchase-requests/{pr_id}/complete/", {"grn_code": "GRN-9"}, format="json")
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()["status"], "completed")
        self.assertEqual(completed.json()["grn_code"], "GRN-9")
        self.assertEqual(self.stock_of("BOLT-M12"), Decimal("4.00"))

        delivered = self.client.post(f"/api/v1/purchase-requests/{pr_id}/deliver/", {"receiving_code": "RC-9"}, format="json")
        self.assertEqual(delivered.status_code, 200)
        self.assertEqual(delivered.json()["status"], "delivered")

        too_late = self.client.post(f"/api/v1/purchase-requests/{pr_id}/deliver/", {}, format="json")
        self.assertEqual(too_late.status_code, 409)

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, Status.STARTED)


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentFulfillmentTests(InventoryFixtureMixin, TransactionTestCase):
    def run_concurrently(self, *calls):
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def worker(index, call):
            try:
                barrier.wait()
                outcomes[index] = call()
            except Exception as exc:
                outcomes[index] = exc
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(index, call)) for index, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_racing_approvals_cannot_both_issue_the_same_stock(self):
        self.make_item("LED-100W", stock="10")
        second_schedule = MaintenanceSchedule.objects.create(asset_reference="POLE-0043")
        request_ids = [
            fulfillment.create_material_request(
                maintenance_schedule_id=schedule.id,
                items=[{"item_code": "LED-100W", "quantity": "6"}],
            ).material_request.id
            for schedule in (self.schedule, second_schedule)
        ]

        outcomes = self.run_concurrently(
            *[
                lambda request_id=request_id: fulfillment.approve_material_request(request_id, approve=True, user=self.manager)
                for request_id in request_ids
            ]
        )

        approved = [outcome for outcome in outcomes if isinstance(outcome, MaterialRequest)]
        failed = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
        self.assertEqual(len(approved), 1)
        self.assertEqual(len(failed), 1)
        self.assertIsInstance(failed[0], InsufficientStockError)
        self.assertEqual(self.stock_of("LED-100W"), Decimal("4.00"))
        self.assertEqual(InventoryTransaction.objects.filter(type=InventoryTransaction.Type.USAGE).count(), 1)
        self.assertEqual(
            sorted(MaterialRequest.objects.values_list("status", flat=True)),
            [MaterialRequest.Status.AWAITING_DELIVERY, MaterialRequest.Status.PENDING],
        )
        self.assertEqual(verify_ledger(), [])

    def test_racing_creations_get_distinct_codes(self):
        self.make_item("LED-100W", stock="10")
        self.make_item("CABLE-4MM", stock="10")
        second_schedule = MaintenanceSchedule.objects.create(asset_reference="POLE-0043")

        outcomes = self.run_concurrently(
            *[
                lambda schedule=schedule, code=code: fulfillment.create_material_request(
                    maintenance_schedule_id=schedule.id,
                    items=[{"item_code": code, "quantity": "1"}],
                )
                for schedule, code in ((self.schedule, "LED-100W"), (second_schedule, "CABLE-4MM"))
            ]
        )

        for outcome in outcomes:
            self.assertNotIsInstance(outcome, Exception)
        codes = set(MaterialRequest.objects.values_list("code", flat=True))
        self.assertEqual(len(codes), 2)
