"""Shared service utilities: UUID coercion, money, UTC time, ordering, pagination."""
from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

from fastapi import HTTPException
from sqlalchemy import Select

T = TypeVar("T")
E = TypeVar("E", bound=enum.Enum)

CENTS = Decimal("0.01")
UNIT_PRICE_PLACES = Decimal("0.0001")


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def to_money(value: Any) -> Decimal:
    """Quantize an amount to two fractional digits."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_unit_price(value: Any) -> Decimal | None:
    """Quantize a unit price to four fractional digits."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(UNIT_PRICE_PLACES, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_enum(value: str, enum_cls: type[E], field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise HTTPException(
            status_code=400, detail=f"Invalid {field}. Allowed: {allowed}"
        ) from exc


def apply_ordering(
    query: Select[Any],
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Select[Any]:
    """Apply ordering to a select statement with validation."""
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Select[Any], limit: int, offset: int) -> Select[Any]:
    """Apply limit/offset to a select statement."""
    return query.limit(limit).offset(offset)
