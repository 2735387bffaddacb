import uuid
from dataclasses import dataclass
from datetime import datetime

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from maintenance.models import MaintenanceSchedule


class LedgerBypassError(RuntimeError):
    """Raised when stock is written anywhere but the inventory ledger."""


class ImmutableRecordError(RuntimeError):
    """Raised on attempts to change or remove a ledger transaction."""


# Passed to InventoryItem.save() by inventory.ledger; nothing else should hold it.
LEDGER_WRITE = object()


class Category(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120, unique=True)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "categories"

    def __str__(self):
        return self.name


class InventoryItemQuerySet(models.QuerySet):
    def update(self, **kwargs):
        if "current_stock" in kwargs:
            raise LedgerBypassError("current_stock can only change through the inventory ledger.")
        return super().update(**kwargs)

    def active(self):
        return self.filter(is_active=True)

    def low_stock(self):
        return self.active().filter(current_stock__lte=F("minimum_threshold"))


class InventoryItem(models.Model):
    class UnitOfMeasure(models.TextChoices):
        PIECES = "pieces", "Pieces"
        METERS = "meters", "Meters"
        LITERS = "liters", "Liters"
        KILOGRAMS = "kilograms", "Kilograms"
        BOXES = "boxes", "Boxes"
        UNITS = "units", "Units"

    class StockLevel(models.TextChoices):
        LOW = "low", "Low"
        WARNING = "warning", "Warning"
        IN_STOCK = "in_stock", "In stock"

    code = models.CharField(max_length=64, primary_key=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    category = models.ForeignKey(Category, on_delete=models.PROTECT, related_name="items")
    unit_of_measure = models.CharField(max_length=16, choices=UnitOfMeasure, default=UnitOfMeasure.PIECES)
    current_stock = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    minimum_threshold = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    supplier_name = models.CharField(max_length=255, blank=True)
    supplier_contact = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = InventoryItemQuerySet.as_manager()

    class Meta:
        ordering = ["code"]
        indexes = [
            models.Index(fields=["category", "is_active"], name="item_category_active_idx"),
            models.Index(fields=["name"], name="item_name_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(current_stock__gte=0), name="item_current_stock_non_negative"),
            models.CheckConstraint(condition=Q(minimum_threshold__gte=0), name="item_minimum_threshold_non_negative"),
            models.CheckConstraint(
                condition=Q(unit_cost__isnull=True) | Q(unit_cost__gte=0),
                name="item_unit_cost_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._committed_stock = instance.__dict__.get("current_stock")
        return instance

    def refresh_from_db(self, *args, **kwargs):
        super().refresh_from_db(*args, **kwargs)
        self._committed_stock = self.__dict__.get("current_stock")

    def save(self, *args, ledger_write=None, **kwargs):
        update_fields = kwargs.get("update_fields")
        writes_stock = update_fields is None or "current_stock" in update_fields
        committed_stock = getattr(self, "_committed_stock", None)
        if (
            writes_stock
            and not self._state.adding
            and ledger_write is not LEDGER_WRITE
            and committed_stock is not None
            and self.__dict__.get("current_stock") != committed_stock
        ):
            raise LedgerBypassError(f"current_stock of item {self.code} can only change through the inventory ledger.")
        super().save(*args, **kwargs)
        self._committed_stock = self.__dict__.get("current_stock")

    def stock_level(self, warning_ratio):
        if self.current_stock <= self.minimum_threshold:
            return self.StockLevel.LOW
        if self.current_stock <= self.minimum_threshold * warning_ratio:
            return self.StockLevel.WARNING
        return self.StockLevel.IN_STOCK


class InventoryTransactionQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableRecordError("Inventory transactions cannot be updated.")

    def delete(self):
        raise ImmutableRecordError("Inventory transactions cannot be deleted.")


class InventoryTransaction(models.Model):
    class Type(models.TextChoices):
        IN = "in", "In"
        OUT = "out", "Out"
        ADJUSTMENT = "adjustment", "Adjustment"
        USAGE = "usage", "Usage"
        PURCHASE = "purchase", "Purchase"

    INCREASING_TYPES = (Type.IN, Type.PURCHASE)
    DECREASING_TYPES = (Type.OUT, Type.USAGE)

    # Monotonic id gives the per-item replay order.
    id = models.BigAutoField(primary_key=True)
    item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="transactions")
    type = models.CharField(max_length=16, choices=Type)
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    stock_before = models.DecimalField(max_digits=12, decimal_places=2)
    stock_after = models.DecimalField(max_digits=12, decimal_places=2)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="inventory_transactions",
    )
    reference = models.CharField(max_length=255, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    objects = InventoryTransactionQuerySet.as_manager()

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["item", "id"], name="txn_item_order_idx"),
            models.Index(fields=["reference"], name="txn_reference_idx"),
            models.Index(fields=["type", "created_at"], name="txn_type_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(stock_before__gte=0), name="txn_stock_before_non_negative"),
            models.CheckConstraint(condition=Q(stock_after__gte=0), name="txn_stock_after_non_negative"),
            models.CheckConstraint(
                condition=Q(quantity__gt=0) | Q(type="adjustment", quantity__gte=0),
                name="txn_quantity_sign",
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError(f"Inventory transaction {self.pk} is immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(f"Inventory transaction {self.pk} cannot be deleted.")


class MaterialRequest(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        AWAITING_DELIVERY = "awaiting_delivery", "Awaiting delivery"
        DELIVERED = "delivered", "Delivered"
        REJECTED = "rejected", "Rejected"
        FULFILLED = "fulfilled", "Fulfilled"
        APPROVED = "approved", "Approved (legacy)"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    maintenance_schedule = models.ForeignKey(
        MaintenanceSchedule,
        on_delete=models.PROTECT,
        related_name="material_requests",
    )
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    status = models.CharField(max_length=32, choices=Status, default=Status.PENDING)
    notes = models.TextField(blank=True)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    delivered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    delivered_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["maintenance_schedule", "status"], name="mr_schedule_status_idx"),
            models.Index(fields=["status", "created_at"], name="mr_status_created_idx"),
        ]

    def __str__(self):
        return self.code

    @property
    def canonical_status(self):
        if self.status == self.Status.APPROVED:
            return self.Status.AWAITING_DELIVERY
        return self.status


OPEN_MATERIAL_REQUEST_STATUSES = (
    MaterialRequest.Status.PENDING,
    MaterialRequest.Status.AWAITING_DELIVERY,
    MaterialRequest.Status.APPROVED,
)


class MaterialRequestItem(models.Model):
    # Shortfall quantities live on PurchaseRequestItem, never here.
    class RequestType(models.TextChoices):
        USAGE = "usage", "Usage"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        FULFILLED = "fulfilled", "Fulfilled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    material_request = models.ForeignKey(MaterialRequest, on_delete=models.CASCADE, related_name="items")
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="material_request_items")
    requested_quantity = models.DecimalField(max_digits=12, decimal_places=2)
    available_quantity = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    request_type = models.CharField(max_length=16, choices=RequestType, default=RequestType.USAGE)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    actual_quantity_used = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["inventory_item_id"]
        constraints = [
            models.CheckConstraint(condition=Q(requested_quantity__gt=0), name="mr_item_quantity_positive"),
        ]


@dataclass(frozen=True)
class PurchaseStage:
    """Explicit sub-state of a purchase request: approved requests may or may not have been ordered."""

    status: str
    ordered_at: datetime | None = None

    @property
    def is_ordered(self):
        return self.status == PurchaseRequest.Status.APPROVED and self.ordered_at is not None

    @property
    def label(self):
        if self.is_ordered:
            return "ordered"
        return str(self.status)


class PurchaseRequest(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        READY_TO_DELIVER = "ready_to_deliver", "Ready to deliver"
        COMPLETED = "completed", "Completed"
        DELIVERED = "delivered", "Delivered"
        RECEIVED = "received", "Received (legacy)"
        ARRIVED_IN_STOCK = "arrived_in_stock", "Arrived in stock (legacy)"

    LEGACY_COMPLETED_STATUSES = (Status.RECEIVED, Status.ARRIVED_IN_STOCK)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    material_request = models.ForeignKey(
        MaterialRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="purchase_requests",
    )
    maintenance_schedule = models.ForeignKey(
        MaintenanceSchedule,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="purchase_requests",
    )
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    status = models.CharField(max_length=32, choices=Status, default=Status.PENDING)
    total_cost = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    supplier_name = models.CharField(max_length=255, blank=True)
    supplier_contact = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True)
    ordered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    ordered_at = models.DateTimeField(null=True, blank=True)
    ready_to_deliver_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    ready_to_deliver_at = models.DateTimeField(null=True, blank=True)
    completed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    grn_code = models.CharField(max_length=64, blank=True)
    delivered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    delivered_at = models.DateTimeField(null=True, blank=True)
    receiving_code = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["maintenance_schedule", "status"], name="pr_schedule_status_idx"),
            models.Index(fields=["material_request"], name="pr_material_request_idx"),
            models.Index(fields=["status", "created_at"], name="pr_status_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(total_cost__gte=0), name="pr_total_cost_non_negative"),
        ]

    def __str__(self):
        return self.code

    @property
    def canonical_status(self):
        if self.status in self.LEGACY_COMPLETED_STATUSES:
            return self.Status.COMPLETED
        return self.status

    @property
    def stage(self):
        return PurchaseStage(status=self.canonical_status, ordered_at=self.ordered_at)


class PurchaseRequestItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_request = models.ForeignKey(PurchaseRequest, on_delete=models.CASCADE, related_name="items")
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="purchase_request_items")
    requested_quantity = models.DecimalField(max_digits=12, decimal_places=2)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_cost = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["inventory_item_id"]
        constraints = [
            models.CheckConstraint(condition=Q(requested_quantity__gt=0), name="pr_item_quantity_positive"),
            models.CheckConstraint(condition=Q(unit_cost__gte=0), name="pr_item_unit_cost_non_negative"),
        ]
