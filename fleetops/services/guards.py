from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from fleetops.errors import ConcurrencyConflictError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
MILLI = Decimal('0.001')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_uuid(value: Any, field: str = 'id') -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(f'{field} must be a UUID', field=field) from exc


def parse_optional_uuid(value: Any, field: str) -> uuid.UUID | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_uuid(value, field)


def to_decimal(value: Any, field: str = 'amount') -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f'{field} must be a number', field=field) from exc
    if not parsed.is_finite():
        raise ValidationError(f'{field} must be a number', field=field)
    return parsed


def money(value: Any) -> Decimal:
    if value is None:
        return Decimal('0.00')
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantity(value: Any) -> Decimal:
    if value is None:
        return Decimal('0.000')
    return Decimal(value).quantize(MILLI, rounding=ROUND_HALF_UP)


def money_equal(left: Any, right: Any) -> bool:
    return money(left) == money(right)


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def page_bounds(page: int | None, page_size: int | None, *, default_size: int, max_size: int) -> tuple[int, int]:
    page = page if page and page > 0 else 1
    size = page_size if page_size and page_size > 0 else default_size
    size = min(size, max_size)
    return page, size


def conditional_update(
    db: Session,
    model,
    ids: Iterable[uuid.UUID],
    *,
    expected_status,
    values: dict[str, Any],
    strict: bool = True,
    extra_criteria: Iterable[Any] = (),
) -> int:
    """Move rows out of ``expected_status`` only if they are still in it.

    Returns the number of rows changed. With ``strict`` a short count means a
    concurrent writer got there first and the whole operation must be retried.
    """
    id_list = list(dict.fromkeys(ids))
    if not id_list:
        return 0
    statuses = expected_status if isinstance(expected_status, (list, tuple, set, frozenset)) else [expected_status]
    stmt = (
        update(model)
        .where(model.id.in_(id_list), model.status.in_(list(statuses)), *extra_criteria)
        .values(**values)
    )
    count = db.execute(stmt).rowcount
    if count != len(id_list):
        if strict:
            logger.warning(
                'Guarded update on %s changed %s of %s rows', model.__tablename__, count, len(id_list)
            )
            raise ConcurrencyConflictError(
                'Stock changed, retry',
                expected=len(id_list),
                updated=count,
            )
        logger.warning(
            'Guarded update on %s changed %s of %s rows, continuing', model.__tablename__, count, len(id_list)
        )
    return count
