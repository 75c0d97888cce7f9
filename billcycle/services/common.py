"""Query and lookup helpers shared by the billcycle services."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

ModelT = TypeVar("ModelT")

_DIRECTIONS = {"asc", "desc"}


def _not_found(model, detail: str | None) -> HTTPException:
    return HTTPException(status_code=404, detail=detail or f"{model.__name__} not found")


def coerce_uuid(value):
    """Parse an identifier; malformed ids read as missing rows (404)."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Invalid identifier") from exc


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    column = allowed_columns.get(order_by)
    if column is None:
        allowed = ", ".join(sorted(allowed_columns))
        raise HTTPException(status_code=400, detail=f"Invalid order_by. Allowed: {allowed}")
    if order_dir not in _DIRECTIONS:
        raise HTTPException(status_code=400, detail="Invalid order_dir. Allowed: asc, desc")
    return query.order_by(column.desc() if order_dir == "desc" else column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.offset(offset).limit(limit)


def validate_enum(value, enum_cls, label: str):
    """Map a raw filter value onto ``enum_cls``; None passes through."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def get_by_id(db: Session, model: type[ModelT], value, **kwargs) -> ModelT | None:
    key = coerce_uuid(value)
    return None if key is None else db.get(model, key, **kwargs)


def get_or_404(db: Session, model: type[ModelT], id, detail: str | None = None) -> ModelT:
    entity = get_by_id(db, model, id)
    if entity is None:
        raise _not_found(model, detail)
    return entity


def get_for_update(db: Session, model: type[ModelT], id, detail: str | None = None) -> ModelT:
    """Re-read a row with ``FOR UPDATE`` and refresh any cached instance.

    Callers hold the matching keyed lock, which is what serializes writers on
    backends (SQLite) that ignore row locks.
    """
    entity = (
        db.query(model)
        .populate_existing()
        .with_for_update()
        .filter(model.id == coerce_uuid(id))
        .one_or_none()
    )
    if entity is None:
        raise _not_found(model, detail)
    return entity
