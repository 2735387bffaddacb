import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


def _user_fk():
    return models.ForeignKey(
        blank=True,
        null=True,
        on_delete=django.db.models.deletion.SET_NULL,
        related_name="+",
        to=settings.AUTH_USER_MODEL,
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("maintenance", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Category",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=120, unique=True)),
                ("description", models.TextField(blank=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "verbose_name_plural": "categories",
            },
        ),
        migrations.CreateModel(
            name="InventoryItem",
            fields=[
                ("code", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                (
                    "unit_of_measure",
                    models.CharField(
                        choices=[
                            ("pieces", "Pieces"),
                            ("meters", "Meters"),
                            ("liters", "Liters"),
                            ("kilograms", "Kilograms"),
                            ("boxes", "Boxes"),
                            ("units", "Units"),
                        ],
                        default="pieces",
                        max_length=16,
                    ),
                ),
                ("current_stock", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("minimum_threshold", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("unit_cost", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("supplier_name", models.CharField(blank=True, max_length=255)),
                ("supplier_contact", models.CharField(blank=True, max_length=255)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "category",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="items",
                        to="inventory.category",
                    ),
                ),
            ],
            options={
                "ordering": ["code"],
                "indexes": [
                    models.Index(fields=["category", "is_active"], name="item_category_active_idx"),
                    models.Index(fields=["name"], name="item_name_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("current_stock__gte", 0)),
                        name="item_current_stock_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("minimum_threshold__gte", 0)),
                        name="item_minimum_threshold_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("unit_cost__isnull", True), ("unit_cost__gte", 0), _connector="OR"),
                        name="item_unit_cost_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InventoryTransaction",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("in", "In"),
                            ("out", "Out"),
                            ("adjustment", "Adjustment"),
                            ("usage", "Usage"),
                            ("purchase", "Purchase"),
                        ],
                        max_length=16,
                    ),
                ),
                ("quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("stock_before", models.DecimalField(decimal_places=2, max_digits=12)),
                ("stock_after", models.DecimalField(decimal_places=2, max_digits=12)),
                ("reference", models.CharField(blank=True, default="", max_length=255)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="inventory.inventoryitem",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="inventory_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["item", "id"], name="txn_item_order_idx"),
                    models.Index(fields=["reference"], name="txn_reference_idx"),
                    models.Index(fields=["type", "created_at"], name="txn_type_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("stock_before__gte", 0)),
                        name="txn_stock_before_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("stock_after__gte", 0)),
                        name="txn_stock_after_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("quantity__gt", 0),
                            models.Q(("type", "adjustment"), ("quantity__gte", 0)),
                            _connector="OR",
                        ),
                        name="txn_quantity_sign",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="MaterialRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=32, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("awaiting_delivery", "Awaiting delivery"),
                            ("delivered", "Delivered"),
                            ("rejected", "Rejected"),
                            ("fulfilled", "Fulfilled"),
                            ("approved", "Approved (legacy)"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("notes", models.TextField(blank=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("rejection_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "maintenance_schedule",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="material_requests",
                        to="maintenance.maintenanceschedule",
                    ),
                ),
                ("requested_by", _user_fk()),
                ("approved_by", _user_fk()),
                ("delivered_by", _user_fk()),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["maintenance_schedule", "status"], name="mr_schedule_status_idx"),
                    models.Index(fields=["status", "created_at"], name="mr_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MaterialRequestItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("requested_quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("available_quantity", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    "request_type",
                    models.CharField(
                        choices=[("usage", "Usage")],
                        default="usage",
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("fulfilled", "Fulfilled"),
                        ],
                        default="pending",
                        max_length=16,
                    ),
                ),
                (
                    "actual_quantity_used",
                    models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "material_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="inventory.materialrequest",
                    ),
                ),
                (
                    "inventory_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="material_request_items",
                        to="inventory.inventoryitem",
                    ),
                ),
            ],
            options={
                "ordering": ["inventory_item_id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("requested_quantity__gt", 0)),
                        name="mr_item_quantity_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=32, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("ready_to_deliver", "Ready to deliver"),
                            ("completed", "Completed"),
                            ("delivered", "Delivered"),
                            ("received", "Received (legacy)"),
                            ("arrived_in_stock", "Arrived in stock (legacy)"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("total_cost", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("supplier_name", models.CharField(blank=True, max_length=255)),
                ("supplier_contact", models.CharField(blank=True, max_length=255)),
                ("notes", models.TextField(blank=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("rejection_reason", models.TextField(blank=True)),
                ("ordered_at", models.DateTimeField(blank=True, null=True)),
                ("ready_to_deliver_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("grn_code", models.CharField(blank=True, max_length=64)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("receiving_code", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "material_request",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchase_requests",
                        to="inventory.materialrequest",
                    ),
                ),
                (
                    "maintenance_schedule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_requests",
                        to="maintenance.maintenanceschedule",
                    ),
                ),
                ("requested_by", _user_fk()),
                ("approved_by", _user_fk()),
                ("ordered_by", _user_fk()),
                ("ready_to_deliver_by", _user_fk()),
                ("completed_by", _user_fk()),
                ("delivered_by", _user_fk()),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["maintenance_schedule", "status"], name="pr_schedule_status_idx"),
                    models.Index(fields=["material_request"], name="pr_material_request_idx"),
                    models.Index(fields=["status", "created_at"], name="pr_status_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total_cost__gte", 0)),
                        name="pr_total_cost_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseRequestItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("requested_quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("unit_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_cost", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "purchase_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="inventory.purchaserequest",
                    ),
                ),
                (
                    "inventory_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_request_items",
                        to="inventory.inventoryitem",
                    ),
                ),
            ],
            options={
                "ordering": ["inventory_item_id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("requested_quantity__gt", 0)),
                        name="pr_item_quantity_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("unit_cost__gte", 0)),
                        name="pr_item_unit_cost_non_negative",
                    ),
                ],
            },
        ),
    ]
