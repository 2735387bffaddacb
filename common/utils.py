import datetime
import decimal
import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.utils import timezone

from common.exceptions import InvalidRequestError, InvalidStateError

logger = logging.getLogger(__name__)

QUANTITY_QUANT = Decimal("0.01")


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def to_decimal(value, *, field="quantity"):
    """Parse ``value`` into a two-place Decimal, raising InvalidRequestError when it is not numeric."""
    if isinstance(value, bool) or value is None or value == "":
        raise InvalidRequestError(f"{field} must be a number.", {"field": field, "value": value})
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequestError(f"{field} must be a number.", {"field": field, "value": str(value)}) from exc
    if not parsed.is_finite():
        raise InvalidRequestError(f"{field} must be a finite number.", {"field": field, "value": str(value)})
    return parsed.quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def create_with_document_code(model, prefix, *, field="code", attempts=5, **fields):
    """Create a ``model`` row under the next free document code.

    Concurrent creators can compute the same serial; the loser's insert hits
    the unique index inside a savepoint and is retried with a fresh code.
    """
    for attempt in range(1, attempts + 1):
        code = next_document_code(model.objects.all(), prefix, field=field)
        try:
            with transaction.atomic():
                return model.objects.create(**{field: code}, **fields)
        except IntegrityError:
            logger.warning(
                "document_code_collision",
                extra={"details": {"code": code, "attempt": attempt}},
            )
    raise InvalidStateError(
        f"Could not allocate a unique {prefix} code; please retry.",
        {"prefix": prefix, "attempts": attempts},
    )


def next_document_code(queryset, prefix, field="code"):
    """Return the next ``<PREFIX>-YYYYMMDD-NNNN`` code for the documents in ``queryset``."""
    day_prefix = timezone.now().strftime(f"{prefix}-%Y%m%d-")
    existing = queryset.filter(**{f"{field}__startswith": day_prefix}).values_list(field, flat=True)
    serial = max([int(str(code).split("-")[-1]) for code in existing if str(code).split("-")[-1].isdigit()] + [0]) + 1
    return f"{day_prefix}{serial:04d}"
