"""Material and purchase request workflows.

A maintenance schedule's material needs are split against current stock: the
part stock can cover becomes a material request (issued from stock on
approval), the shortfall becomes a purchase request (added to stock when
received). Every transition runs in one database transaction together with
its ledger writes and the schedule status refresh.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models, transaction
from django.utils import timezone

from common.exceptions import InsufficientStockError, InvalidRequestError, InvalidStateError, NotFoundError
from common.utils import create_with_document_code, next_document_code, to_decimal
from inventory.ledger import apply_transaction, lock_items
from inventory.models import (
    OPEN_MATERIAL_REQUEST_STATUSES,
    InventoryItem,
    InventoryTransaction,
    MaterialRequest,
    MaterialRequestItem,
    PurchaseRequest,
    PurchaseRequestItem,
)
from inventory.schedule_status import PURCHASE_DONE_STATUSES, refresh_schedule_status
from inventory.services import _to_money
from maintenance.services import get_schedule
from notifications.services import dispatch_on_commit, notify_purchase_completed

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_MATERIAL_REJECTION_REASON = "Request rejected"
DEFAULT_PURCHASE_REJECTION_REASON = "Purchase request rejected"

# Statuses in which a material request has issued its stock.
RECONCILABLE_MATERIAL_REQUEST_STATUSES = (
    MaterialRequest.Status.AWAITING_DELIVERY,
    MaterialRequest.Status.APPROVED,
    MaterialRequest.Status.DELIVERED,
)


class FulfillmentKind(models.TextChoices):
    MATERIAL_ONLY = "material_only", "Material only"
    PURCHASE_ONLY = "purchase_only", "Purchase only"
    BOTH = "both", "Material and purchase"


@dataclass(frozen=True)
class PlanLine:
    item: InventoryItem
    requested_quantity: Decimal
    usage_quantity: Decimal
    purchase_quantity: Decimal

    @property
    def available_quantity(self):
        return self.item.current_stock

    @property
    def purchase_unit_cost(self):
        return self.item.unit_cost or ZERO


@dataclass
class FulfillmentPlan:
    usage_lines: list[PlanLine] = field(default_factory=list)
    purchase_lines: list[PlanLine] = field(default_factory=list)

    @property
    def is_empty(self):
        return not self.usage_lines and not self.purchase_lines

    @property
    def kind(self):
        if self.usage_lines and self.purchase_lines:
            return FulfillmentKind.BOTH
        if self.usage_lines:
            return FulfillmentKind.MATERIAL_ONLY
        if self.purchase_lines:
            return FulfillmentKind.PURCHASE_ONLY
        return None


@dataclass
class FulfillmentResult:
    kind: str
    material_request: MaterialRequest | None = None
    purchase_request: PurchaseRequest | None = None


def build_fulfillment_plan(items, requested):
    """Split requested quantities into usage (from stock) and purchase (shortfall) lines.

    ``items`` maps item code to InventoryItem, ``requested`` maps item code to
    the requested Decimal quantity.
    """
    plan = FulfillmentPlan()
    for code, quantity in requested.items():
        item = items[code]
        stock = max(item.current_stock, ZERO)
        line = PlanLine(
            item=item,
            requested_quantity=quantity,
            usage_quantity=min(quantity, stock),
            purchase_quantity=max(quantity - stock, ZERO),
        )
        if line.usage_quantity > 0:
            plan.usage_lines.append(line)
        if line.purchase_quantity > 0:
            plan.purchase_lines.append(line)
    return plan


def _merge_request_lines(lines, *, allow_zero):
    merged = {}
    for line in lines or []:
        item_code = str(line.get("item_code") or "").strip()
        if not item_code:
            raise InvalidRequestError("Each line needs an item_code.")
        quantity = to_decimal(line.get("quantity"))
        if quantity < 0 or (quantity == 0 and not allow_zero):
            raise InvalidRequestError(
                f"Quantity for item {item_code} must be greater than zero.",
                {"item_code": item_code, "quantity": str(quantity)},
            )
        merged[item_code] = merged.get(item_code, ZERO) + quantity
    if not merged:
        raise InvalidRequestError("At least one item is required.")
    return merged


def _ensure_items_active(items):
    inactive = [code for code, item in items.items() if not item.is_active]
    if inactive:
        raise InvalidRequestError(
            f"Inventory item {inactive[0]} is inactive.",
            {"item_code": inactive[0], "inactive_item_codes": inactive},
        )


def _ensure_no_open_material_request(schedule):
    if not getattr(settings, "MATERIAL_REQUEST_SINGLE_OPEN_PER_SCHEDULE", True):
        return
    open_request = (
        MaterialRequest.objects.filter(maintenance_schedule=schedule, status__in=OPEN_MATERIAL_REQUEST_STATUSES)
        .order_by("created_at")
        .first()
    )
    if open_request is not None:
        raise InvalidStateError(
            f"Maintenance schedule {schedule.id} already has open material request {open_request.code}.",
            {"maintenance_schedule_id": str(schedule.id), "material_request_id": str(open_request.id)},
        )


def _lookup(model, request_id, *, label, for_update=False):
    queryset = model.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    try:
        instance = queryset.filter(id=request_id).first()
    except (ValueError, TypeError, DjangoValidationError):
        instance = None
    if instance is None:
        raise NotFoundError(f"{label} {request_id} was not found.", {"id": str(request_id)})
    return instance


def get_material_request(request_id, *, for_update=False):
    return _lookup(MaterialRequest, request_id, label="Material request", for_update=for_update)


def get_purchase_request(request_id, *, for_update=False):
    return _lookup(PurchaseRequest, request_id, label="Purchase request", for_update=for_update)


def _invalid_state(instance, operation, allowed):
    return InvalidStateError(
        f"Cannot {operation} {instance.code}: status is {instance.status}.",
        {
            "id": str(instance.id),
            "code": instance.code,
            "status": instance.status,
            "allowed_statuses": [str(status) for status in allowed],
        },
    )


def _log_transition(event, instance, from_status):
    key = "material_request_id" if isinstance(instance, MaterialRequest) else "purchase_request_id"
    logger.info(event, extra={key: str(instance.id), "from_status": from_status, "to_status": instance.status})


def _append_notes(existing, notes):
    notes = (notes or "").strip()
    if not notes:
        return existing
    return f"{existing}\n{notes}".strip() if existing else notes


# Material requests


def create_material_request(*, maintenance_schedule_id, items, notes="", user=None):
    requested = _merge_request_lines(items, allow_zero=True)

    with transaction.atomic():
        schedule = get_schedule(maintenance_schedule_id)
        _ensure_no_open_material_request(schedule)
        stock_items = lock_items(requested.keys())
        _ensure_items_active(stock_items)

        plan = build_fulfillment_plan(stock_items, requested)
        if plan.is_empty:
            raise InvalidRequestError(
                "All requested quantities are zero.",
                {"maintenance_schedule_id": str(schedule.id)},
            )

        material_request = None
        if plan.usage_lines:
            material_request = create_with_document_code(
                MaterialRequest,
                "MR",
                maintenance_schedule=schedule,
                requested_by=user,
                notes=notes or "",
            )
            MaterialRequestItem.objects.bulk_create(
                [
                    MaterialRequestItem(
                        material_request=material_request,
                        inventory_item=line.item,
                        requested_quantity=line.usage_quantity,
                        available_quantity=line.available_quantity,
                        request_type=MaterialRequestItem.RequestType.USAGE,
                    )
                    for line in plan.usage_lines
                ]
            )

        purchase_request = None
        if plan.purchase_lines:
            shortfall_note = "Shortfall for maintenance schedule"
            if material_request is not None:
                shortfall_note = f"Shortfall for material request {material_request.code}"
            purchase_request = _create_purchase_request(
                lines=[(line.item, line.purchase_quantity, line.purchase_unit_cost) for line in plan.purchase_lines],
                schedule=schedule,
                material_request=material_request,
                user=user,
                notes=_append_notes(shortfall_note, notes),
            )

    logger.info(
        "material_request_created",
        extra={
            "schedule_id": str(schedule.id),
            "fulfillment_kind": plan.kind,
            "material_request_id": str(material_request.id) if material_request else None,
            "purchase_request_id": str(purchase_request.id) if purchase_request else None,
        },
    )
    return FulfillmentResult(kind=plan.kind, material_request=material_request, purchase_request=purchase_request)


def approve_material_request(request_id, *, approve, rejection_reason=None, user=None):
    with transaction.atomic():
        material_request = get_material_request(request_id, for_update=True)
        from_status = material_request.status

        if material_request.status == MaterialRequest.Status.APPROVED:
            # Legacy approvals already issued their stock.
            material_request.status = MaterialRequest.Status.AWAITING_DELIVERY
            material_request.save(update_fields=["status", "updated_at"])
            refresh_schedule_status(material_request.maintenance_schedule_id)
            _log_transition("material_request_upgraded", material_request, from_status)
            return material_request

        if material_request.status != MaterialRequest.Status.PENDING:
            raise _invalid_state(material_request, "approve", [MaterialRequest.Status.PENDING])

        now = timezone.now()
        if not approve:
            material_request.status = MaterialRequest.Status.REJECTED
            material_request.approved_by = user
            material_request.approved_at = now
            material_request.rejection_reason = rejection_reason or DEFAULT_MATERIAL_REJECTION_REASON
            material_request.save(update_fields=["status", "approved_by", "approved_at", "rejection_reason", "updated_at"])
            material_request.items.update(status=MaterialRequestItem.Status.REJECTED, updated_at=now)
            _log_transition("material_request_rejected", material_request, from_status)
            return material_request

        request_items = list(material_request.items.select_related("inventory_item").order_by("inventory_item_id"))
        lock_items([line.inventory_item_id for line in request_items])
        for line in request_items:
            try:
                apply_transaction(
                    line.inventory_item_id,
                    InventoryTransaction.Type.USAGE,
                    line.requested_quantity,
                    user=user,
                    reference=str(material_request.maintenance_schedule_id),
                    notes=f"Issued for material request {material_request.code}",
                )
            except InsufficientStockError as exc:
                raise InsufficientStockError(
                    f"Cannot approve {material_request.code}: {exc.message}",
                    {**exc.details, "material_request_id": str(material_request.id), "code": material_request.code},
                ) from exc
            line.status = MaterialRequestItem.Status.FULFILLED
            line.actual_quantity_used = line.requested_quantity
            line.save(update_fields=["status", "actual_quantity_used", "updated_at"])

        material_request.status = MaterialRequest.Status.AWAITING_DELIVERY
        material_request.approved_by = user
        material_request.approved_at = now
        material_request.save(update_fields=["status", "approved_by", "approved_at", "updated_at"])
        refresh_schedule_status(material_request.maintenance_schedule_id)

    _log_transition("material_request_approved", material_request, from_status)
    return material_request


def receive_material_request(request_id, *, notes=None, user=None):
    with transaction.atomic():
        material_request = get_material_request(request_id, for_update=True)
        from_status = material_request.status
        fulfilled_before_delivery = (
            material_request.status == MaterialRequest.Status.FULFILLED and material_request.delivered_at is None
        )
        if material_request.canonical_status != MaterialRequest.Status.AWAITING_DELIVERY and not fulfilled_before_delivery:
            raise _invalid_state(material_request, "receive", [MaterialRequest.Status.AWAITING_DELIVERY])

        if not fulfilled_before_delivery:
            material_request.status = MaterialRequest.Status.DELIVERED
        material_request.delivered_by = user
        material_request.delivered_at = timezone.now()
        material_request.notes = _append_notes(material_request.notes, notes)
        material_request.save(update_fields=["status", "delivered_by", "delivered_at", "notes", "updated_at"])
        _reconcile_material_request(material_request)
        refresh_schedule_status(material_request.maintenance_schedule_id)

    _log_transition("material_request_received", material_request, from_status)
    return material_request


def delete_material_request(request_id):
    with transaction.atomic():
        material_request = get_material_request(request_id, for_update=True)
        if material_request.status != MaterialRequest.Status.PENDING:
            raise _invalid_state(material_request, "delete", [MaterialRequest.Status.PENDING])
        material_request.delete()
    logger.info("material_request_deleted", extra={"material_request_id": str(request_id)})


def _reconcile_material_request(material_request):
    """Mark an issued material request fulfilled once its shortfall purchases are in stock.

    Applies before or after physical delivery; a request fulfilled early can
    still be received afterwards.
    """
    if material_request.status not in RECONCILABLE_MATERIAL_REQUEST_STATUSES:
        return
    from_status = material_request.status
    purchase_statuses = list(material_request.purchase_requests.values_list("status", flat=True))
    if not purchase_statuses:
        return
    if not all(status in PURCHASE_DONE_STATUSES for status in purchase_statuses):
        return
    if material_request.items.exclude(status=MaterialRequestItem.Status.FULFILLED).exists():
        return
    material_request.status = MaterialRequest.Status.FULFILLED
    material_request.save(update_fields=["status", "updated_at"])
    _log_transition("material_request_fulfilled", material_request, from_status)


# Purchase requests


def _create_purchase_request(*, lines, schedule, material_request, user, supplier_name="", supplier_contact="", notes=""):
    purchase_request = create_with_document_code(
        PurchaseRequest,
        "PR",
        material_request=material_request,
        maintenance_schedule=schedule,
        requested_by=user,
        supplier_name=supplier_name or "",
        supplier_contact=supplier_contact or "",
        notes=notes or "",
    )
    total_cost = ZERO
    request_items = []
    for item, quantity, unit_cost in lines:
        line_total = _to_money(quantity * unit_cost)
        total_cost += line_total
        request_items.append(
            PurchaseRequestItem(
                purchase_request=purchase_request,
                inventory_item=item,
                requested_quantity=quantity,
                unit_cost=_to_money(unit_cost),
                total_cost=line_total,
            )
        )
    PurchaseRequestItem.objects.bulk_create(request_items)
    purchase_request.total_cost = _to_money(total_cost)
    purchase_request.save(update_fields=["total_cost", "updated_at"])
    logger.info(
        "purchase_request_created",
        extra={
            "purchase_request_id": str(purchase_request.id),
            "material_request_id": str(material_request.id) if material_request else None,
            "schedule_id": str(schedule.id) if schedule else None,
        },
    )
    return purchase_request


def create_purchase_request(
    *,
    items,
    material_request_id=None,
    maintenance_schedule_id=None,
    supplier_name="",
    supplier_contact="",
    notes="",
    user=None,
):
    if not items:
        raise InvalidRequestError("At least one item is required.")

    parsed_lines = []
    for line in items:
        item_code = str(line.get("item_code") or "").strip()
        if not item_code:
            raise InvalidRequestError("Each line needs an item_code.")
        quantity = to_decimal(line.get("quantity"))
        if quantity <= 0:
            raise InvalidRequestError(
                f"Quantity for item {item_code} must be greater than zero.",
                {"item_code": item_code, "quantity": str(quantity)},
            )
        unit_cost = line.get("unit_cost")
        unit_cost = ZERO if unit_cost in (None, "") else to_decimal(unit_cost, field="unit_cost")
        if unit_cost < 0:
            raise InvalidRequestError(
                f"Unit cost for item {item_code} cannot be negative.",
                {"item_code": item_code, "unit_cost": str(unit_cost)},
            )
        parsed_lines.append((item_code, quantity, unit_cost))

    with transaction.atomic():
        material_request = None
        schedule = None
        if material_request_id:
            material_request = get_material_request(material_request_id)
            schedule = material_request.maintenance_schedule
        if maintenance_schedule_id:
            if schedule is not None and str(schedule.id) != str(maintenance_schedule_id):
                raise InvalidRequestError(
                    f"Material request {material_request.code} belongs to a different maintenance schedule.",
                    {
                        "material_request_id": str(material_request.id),
                        "maintenance_schedule_id": str(maintenance_schedule_id),
                    },
                )
            schedule = get_schedule(maintenance_schedule_id)

        known_items = {
            item.code: item
            for item in InventoryItem.objects.filter(code__in=[code for code, _, _ in parsed_lines])
        }
        for code, _, _ in parsed_lines:
            if code not in known_items:
                raise NotFoundError(f"Inventory item {code} was not found.", {"item_code": code})

        purchase_request = _create_purchase_request(
            lines=[(known_items[code], quantity, unit_cost) for code, quantity, unit_cost in parsed_lines],
            schedule=schedule,
            material_request=material_request,
            user=user,
            supplier_name=supplier_name,
            supplier_contact=supplier_contact,
            notes=notes,
        )
    return purchase_request


def approve_purchase_request(request_id, *, approve, rejection_reason=None, user=None):
    with transaction.atomic():
        purchase_request = get_purchase_request(request_id, for_update=True)
        from_status = purchase_request.status
        if purchase_request.status != PurchaseRequest.Status.PENDING:
            raise _invalid_state(purchase_request, "approve", [PurchaseRequest.Status.PENDING])

        purchase_request.approved_by = user
        purchase_request.approved_at = timezone.now()
        if approve:
            purchase_request.status = PurchaseRequest.Status.APPROVED
        else:
            purchase_request.status = PurchaseRequest.Status.REJECTED
            purchase_request.rejection_reason = rejection_reason or DEFAULT_PURCHASE_REJECTION_REASON
        purchase_request.save(update_fields=["status", "approved_by", "approved_at", "rejection_reason", "updated_at"])

    _log_transition("purchase_request_approved" if approve else "purchase_request_rejected", purchase_request, from_status)
    return purchase_request


def mark_purchase_ordered(request_id, *, user=None):
    with transaction.atomic():
        purchase_request = get_purchase_request(request_id, for_update=True)
        stage = purchase_request.stage
        if stage.status != PurchaseRequest.Status.APPROVED:
            raise _invalid_state(purchase_request, "order", [PurchaseRequest.Status.APPROVED])
        if stage.is_ordered:
            raise InvalidStateError(
                f"Cannot order {purchase_request.code}: already ordered at {purchase_request.ordered_at.isoformat()}.",
                {"id": str(purchase_request.id), "code": purchase_request.code, "stage": stage.label},
            )
        purchase_request.ordered_by = user
        purchase_request.ordered_at = timezone.now()
        purchase_request.save(update_fields=["ordered_by", "ordered_at", "updated_at"])

    _log_transition("purchase_request_ordered", purchase_request, PurchaseRequest.Status.APPROVED)
    return purchase_request


def mark_purchase_ready_to_deliver(request_id, *, user=None):
    with transaction.atomic():
        purchase_request = get_purchase_request(request_id, for_update=True)
        from_status = purchase_request.status
        if purchase_request.status != PurchaseRequest.Status.APPROVED:
            raise _invalid_state(purchase_request, "mark ready to deliver", [PurchaseRequest.Status.APPROVED])
        purchase_request.status = PurchaseRequest.Status.READY_TO_DELIVER
        purchase_request.ready_to_deliver_by = user
        purchase_request.ready_to_deliver_at = timezone.now()
        purchase_request.save(update_fields=["status", "ready_to_deliver_by", "ready_to_deliver_at", "updated_at"])

    _log_transition("purchase_request_ready_to_deliver", purchase_request, from_status)
    return purchase_request


def complete_purchase_request(request_id, *, notes=None, grn_code=None, user=None):
    return _receive_into_stock(
        request_id,
        operation="complete",
        allowed=(PurchaseRequest.Status.READY_TO_DELIVER,),
        notes=notes,
        grn_code=grn_code,
        user=user,
    )


def receive_purchase_request(request_id, *, notes=None, grn_code=None, user=None):
    return _receive_into_stock(
        request_id,
        operation="receive",
        allowed=(PurchaseRequest.Status.READY_TO_DELIVER, PurchaseRequest.Status.APPROVED),
        notes=notes,
        grn_code=grn_code,
        user=user,
    )


def _receive_into_stock(request_id, *, operation, allowed, notes, grn_code, user):
    with transaction.atomic():
        purchase_request = get_purchase_request(request_id, for_update=True)
        from_status = purchase_request.status
        if purchase_request.status not in allowed:
            raise _invalid_state(purchase_request, operation, allowed)

        material_request = None
        if purchase_request.material_request_id is not None:
            material_request = get_material_request(purchase_request.material_request_id, for_update=True)

        request_items = list(purchase_request.items.order_by("inventory_item_id"))
        lock_items([line.inventory_item_id for line in request_items])
        for line in request_items:
            apply_transaction(
                line.inventory_item_id,
                InventoryTransaction.Type.PURCHASE,
                line.requested_quantity,
                user=user,
                reference=f"purchase:{purchase_request.id}",
                notes=notes or f"Received from purchase request {purchase_request.code}",
            )

        purchase_request.status = PurchaseRequest.Status.COMPLETED
        purchase_request.completed_by = user
        purchase_request.completed_at = timezone.now()
        purchase_request.grn_code = grn_code or purchase_request.grn_code or next_document_code(
            PurchaseRequest.objects.all(), "GRN", field="grn_code"
        )
        purchase_request.notes = _append_notes(purchase_request.notes, notes)
        purchase_request.save(
            update_fields=["status", "completed_by", "completed_at", "grn_code", "notes", "updated_at"]
        )

        if material_request is not None:
            _reconcile_material_request(material_request)

        title = (
            f"Purchase from {purchase_request.supplier_name}"
            if purchase_request.supplier_name
            else f"Purchase Request {purchase_request.code}"
        )
        dispatch_on_commit(notify_purchase_completed, purchase_request_id=purchase_request.id, title=title)

        schedule_id = purchase_request.maintenance_schedule_id
        if schedule_id is None and material_request is not None:
            schedule_id = material_request.maintenance_schedule_id
        if schedule_id is not None:
            refresh_schedule_status(schedule_id)

    _log_transition(f"purchase_request_{operation}d", purchase_request, from_status)
    return purchase_request


def deliver_purchase_request(request_id, *, receiving_code=None, user=None):
    with transaction.atomic():
        purchase_request = get_purchase_request(request_id, for_update=True)
        from_status = purchase_request.status
        if purchase_request.canonical_status != PurchaseRequest.Status.COMPLETED:
            raise _invalid_state(purchase_request, "deliver", [PurchaseRequest.Status.COMPLETED])
        material_request = None
        if purchase_request.material_request_id is not None:
            material_request = get_material_request(purchase_request.material_request_id, for_update=True)
        purchase_request.status = PurchaseRequest.Status.DELIVERED
        purchase_request.delivered_by = user
        purchase_request.delivered_at = timezone.now()
        purchase_request.receiving_code = receiving_code or next_document_code(
            PurchaseRequest.objects.all(), "RCV", field="receiving_code"
        )
        purchase_request.save(update_fields=["status", "delivered_by", "delivered_at", "receiving_code", "updated_at"])

        if material_request is not None:
            _reconcile_material_request(material_request)
        schedule_id = purchase_request.maintenance_schedule_id
        if schedule_id is None and material_request is not None:
            schedule_id = material_request.maintenance_schedule_id
        if schedule_id is not None:
            refresh_schedule_status(schedule_id)

    _log_transition("purchase_request_delivered", purchase_request, from_status)
    return purchase_request
