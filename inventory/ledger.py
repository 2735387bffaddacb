"""Inventory ledger: the only code path that changes ``InventoryItem.current_stock``.

Every stock change is an ``InventoryTransaction`` row written in the same
database transaction as the new stock value, under a row lock on the item.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import transaction

from common.exceptions import InsufficientStockError, InvalidRequestError, NotFoundError
from common.utils import to_decimal
from inventory.models import LEDGER_WRITE, InventoryItem, InventoryTransaction
from notifications.services import dispatch_on_commit, notify_low_stock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def compute_stock_after(transaction_type, stock_before, quantity, *, item_code=None):
    if transaction_type in InventoryTransaction.INCREASING_TYPES:
        return stock_before + quantity
    if transaction_type in InventoryTransaction.DECREASING_TYPES:
        if quantity > stock_before:
            raise InsufficientStockError(
                f"Insufficient stock for item {item_code}: available {stock_before}, required {quantity}.",
                {"item_code": item_code, "available": str(stock_before), "required": str(quantity)},
            )
        return stock_before - quantity
    if transaction_type == InventoryTransaction.Type.ADJUSTMENT:
        return quantity
    raise InvalidRequestError(
        f"Unknown transaction type: {transaction_type}.",
        {"type": transaction_type, "allowed": list(InventoryTransaction.Type.values)},
    )


def lock_items(item_codes):
    """Lock the given items in code order and return them keyed by code."""
    codes = sorted({str(code) for code in item_codes})
    items = {item.code: item for item in InventoryItem.objects.select_for_update().filter(code__in=codes).order_by("code")}
    missing = [code for code in codes if code not in items]
    if missing:
        raise NotFoundError(
            f"Inventory item {missing[0]} was not found.",
            {"item_code": missing[0], "missing_item_codes": missing},
        )
    return items


def apply_transaction(item_code, transaction_type, quantity, *, user=None, reference=None, notes=None):
    if transaction_type not in InventoryTransaction.Type.values:
        raise InvalidRequestError(
            f"Unknown transaction type: {transaction_type}.",
            {"type": transaction_type, "allowed": list(InventoryTransaction.Type.values)},
        )
    quantity = to_decimal(quantity)
    if transaction_type == InventoryTransaction.Type.ADJUSTMENT:
        if quantity < 0:
            raise InvalidRequestError(
                f"Adjusted stock for item {item_code} cannot be negative.",
                {"item_code": item_code, "quantity": str(quantity)},
            )
    elif quantity <= 0:
        raise InvalidRequestError(
            f"Quantity for item {item_code} must be greater than zero.",
            {"item_code": item_code, "quantity": str(quantity)},
        )

    with transaction.atomic():
        item = lock_items([item_code])[str(item_code)]
        stock_before = item.current_stock
        stock_after = compute_stock_after(transaction_type, stock_before, quantity, item_code=item.code)

        item.current_stock = stock_after
        item.save(update_fields=["current_stock", "updated_at"], ledger_write=LEDGER_WRITE)
        entry = InventoryTransaction.objects.create(
            item=item,
            type=transaction_type,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=stock_after,
            user=user,
            reference=str(reference or ""),
            notes=notes or "",
        )

        if stock_after <= item.minimum_threshold < stock_before:
            dispatch_on_commit(
                notify_low_stock,
                item_code=item.code,
                item_name=item.name,
                current_stock=stock_after,
                minimum_threshold=item.minimum_threshold,
            )

    logger.info(
        "stock_transaction_applied",
        extra={
            "item_code": item.code,
            "transaction_type": transaction_type,
            "quantity": quantity,
            "stock_before": stock_before,
            "stock_after": stock_after,
            "user_id": str(user.pk) if user is not None else None,
        },
    )
    return entry


@dataclass(frozen=True)
class LedgerBreak:
    item_code: str
    transaction_id: int | None
    problem: str


def _expected_after(entry):
    if entry.type in InventoryTransaction.INCREASING_TYPES:
        return entry.stock_before + entry.quantity
    if entry.type in InventoryTransaction.DECREASING_TYPES:
        return entry.stock_before - entry.quantity
    return entry.quantity


def verify_ledger(item_code=None):
    """Replay transactions per item and report every place the chain does not balance."""
    items = InventoryItem.objects.all()
    if item_code is not None:
        items = items.filter(code=item_code)

    breaks = []
    for item in items.order_by("code"):
        previous = None
        for entry in item.transactions.order_by("id"):
            if _expected_after(entry) != entry.stock_after:
                breaks.append(LedgerBreak(item.code, entry.id, f"stock_after {entry.stock_after} does not follow from {entry.type} of {entry.quantity} on {entry.stock_before}"))
            if previous is not None and previous.stock_after != entry.stock_before:
                breaks.append(LedgerBreak(item.code, entry.id, f"stock_before {entry.stock_before} does not match previous stock_after {previous.stock_after}"))
            previous = entry
        if previous is not None and previous.stock_after != item.current_stock:
            breaks.append(LedgerBreak(item.code, previous.id, f"current_stock {item.current_stock} does not match last stock_after {previous.stock_after}"))
    return breaks
