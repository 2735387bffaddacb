from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q

from common.exceptions import InvalidRequestError, NotFoundError
from common.utils import to_decimal
from inventory.ledger import apply_transaction
from inventory.models import InventoryItem, InventoryTransaction

MONEY_QUANT = Decimal("0.01")
INITIAL_STOCK_REFERENCE = "INITIAL_STOCK"


def _to_money(value):
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def low_stock_warning_ratio():
    return Decimal(str(getattr(settings, "INVENTORY_LOW_STOCK_WARNING_RATIO", "1.5")))


def get_item(item_code):
    item = InventoryItem.objects.select_related("category").filter(code=item_code).first()
    if item is None:
        raise NotFoundError(f"Inventory item {item_code} was not found.", {"item_code": str(item_code)})
    return item


@transaction.atomic
def create_inventory_item(*, initial_stock=None, user=None, **fields):
    """Create an item with zero stock and book any opening balance through the ledger."""
    item = InventoryItem.objects.create(current_stock=Decimal("0"), **fields)
    if initial_stock is not None and to_decimal(initial_stock, field="initial_stock") > 0:
        apply_transaction(
            item.code,
            InventoryTransaction.Type.IN,
            initial_stock,
            user=user,
            reference=INITIAL_STOCK_REFERENCE,
            notes="Initial stock",
        )
        item.refresh_from_db()
    return item


def filter_items(queryset, *, search=None, category=None, stock_level=None, is_active=None):
    if search:
        queryset = queryset.filter(Q(code__icontains=search) | Q(name__icontains=search) | Q(description__icontains=search))
    if category:
        queryset = queryset.filter(category_id=category)
    if is_active is not None:
        queryset = queryset.filter(is_active=is_active)
    if stock_level == InventoryItem.StockLevel.LOW:
        queryset = queryset.filter(current_stock__lte=F("minimum_threshold"))
    elif stock_level == InventoryItem.StockLevel.WARNING:
        queryset = queryset.filter(
            current_stock__gt=F("minimum_threshold"),
            current_stock__lte=F("minimum_threshold") * low_stock_warning_ratio(),
        )
    elif stock_level == InventoryItem.StockLevel.IN_STOCK:
        queryset = queryset.filter(current_stock__gt=F("minimum_threshold") * low_stock_warning_ratio())
    elif stock_level:
        raise InvalidRequestError(
            f"Unknown stock level filter: {stock_level}.",
            {"stock_level": stock_level, "allowed": list(InventoryItem.StockLevel.values)},
        )
    return queryset


def low_stock_items():
    return InventoryItem.objects.low_stock().select_related("category").order_by("current_stock", "code")


def check_availability(lines):
    """Report, per requested line, whether current stock covers it.

    Read-only snapshot: nothing is reserved, so the answer can change before a
    material request is approved.
    """
    rows = []
    for line in lines:
        item_code = str(line.get("item_code") or "").strip()
        if not item_code:
            raise InvalidRequestError("Each line needs an item_code.")
        required = to_decimal(line.get("quantity"))
        item = get_item(item_code)
        shortage = max(required - item.current_stock, Decimal("0"))
        rows.append(
            {
                "item_code": item.code,
                "item_name": item.name,
                "available": item.current_stock,
                "required": required,
                "shortage": shortage,
                "is_available": shortage == 0,
            }
        )
    return {"all_available": all(row["is_available"] for row in rows), "items": rows}


def transaction_history(item_code, limit=None):
    item = get_item(item_code)
    if limit is None:
        limit = getattr(settings, "INVENTORY_HISTORY_LIMIT", 50)
    return list(item.transactions.select_related("user").order_by("-id")[:limit])
