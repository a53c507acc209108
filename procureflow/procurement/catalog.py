# procureflow/procurement/catalog.py
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..db import commit_or_raise
from ..errors import ConflictError, NotFoundError, ValidationError
from ..logging_config import get_logger
from ..models import Item, utcnow

logger = get_logger("catalog")

DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 100

# (min, max) lengths after trimming
_TEXT_RULES = {
    "name": (2, 200),
    "category": (2, 100),
    "description": (10, 2000),
}

_EDITABLE = ("name", "category", "description", "price", "unit", "preferred_supplier")


def item_to_dict(item: Item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "category": item.category,
        "description": item.description or "",
        "price": item.price,
        "unit": item.unit,
        "preferred_supplier": item.preferred_supplier,
        "status": item.status,
        "created_by_user_id": item.created_by_user_id,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


# -------------------
# Validation
# -------------------
def _check_text(field: str, value: Any, problems: List[Dict[str, str]]) -> None:
    lo, hi = _TEXT_RULES[field]
    label = field.capitalize()
    text = value.strip() if isinstance(value, str) else ""
    if len(text) < lo:
        problems.append({"field": field, "message": f"{label} must be at least {lo} characters"})
    elif len(text) > hi:
        problems.append({"field": field, "message": f"{label} must not exceed {hi} characters"})


def _check_price(value: Any, problems: List[Dict[str, str]]) -> None:
    ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    if not ok or not math.isfinite(value) or value <= 0:
        problems.append({"field": "price", "message": "Price must be a positive number"})


def validate_item_fields(fields: Dict[str, Any], partial: bool = False) -> None:
    """Raise ValidationError listing every bad field.

    With ``partial`` only the fields present are checked (updates).
    """
    problems: List[Dict[str, str]] = []
    for field in _TEXT_RULES:
        if not partial or field in fields:
            _check_text(field, fields.get(field), problems)
    if not partial or "price" in fields:
        _check_price(fields.get("price"), problems)
    if problems:
        raise ValidationError.from_fields(problems)


# -------------------
# Queries
# -------------------
def find_duplicates(db: Session, name: str, category: str, limit: int = 5) -> List[Item]:
    """Items whose name and category equal the given ones, ignoring case."""
    return (
        db.query(Item)
        .filter(
            func.lower(Item.name) == name.strip().lower(),
            func.lower(Item.category) == category.strip().lower(),
        )
        .order_by(Item.id)
        .limit(limit)
        .all()
    )


def search_items(
    db: Session,
    q: Optional[str] = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
    max_price: Optional[float] = None,
    category: Optional[str] = None,
    include_archived: bool = False,
) -> List[Item]:
    """Keyword search over name, category and description.

    Every whitespace separated term has to match one of the three fields.
    Results come back in insertion order.
    """
    limit = max(1, min(int(limit or DEFAULT_SEARCH_LIMIT), MAX_SEARCH_LIMIT))

    query = db.query(Item)
    if not include_archived:
        query = query.filter(Item.status == "active")
    if max_price is not None and max_price > 0:
        query = query.filter(Item.price <= max_price)
    if category and category.strip():
        query = query.filter(func.lower(Item.category) == category.strip().lower())

    for term in (q or "").split():
        pattern = f"%{term.lower()}%"
        query = query.filter(
            or_(
                func.lower(Item.name).like(pattern),
                func.lower(Item.category).like(pattern),
                func.lower(Item.description).like(pattern),
            )
        )

    return query.order_by(Item.id).limit(limit).all()


def get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item", item_id)
    return item


# -------------------
# Mutations
# -------------------
def create_item(
    db: Session,
    *,
    name: str,
    category: str,
    description: str,
    price: float,
    unit: Optional[str] = None,
    preferred_supplier: Optional[str] = None,
    created_by_user_id: Optional[int] = None,
    allow_duplicate: bool = False,
) -> Item:
    """
    Register a new catalog item.

    Raises ValidationError for bad fields and ConflictError when an item
    with the same name and category exists, unless ``allow_duplicate`` is set.
    """
    validate_item_fields(
        {"name": name, "category": category, "description": description, "price": price}
    )
    name, category, description = name.strip(), category.strip(), description.strip()

    duplicates = find_duplicates(db, name, category)
    if duplicates:
        dup_ids = [d.id for d in duplicates]
        if not allow_duplicate:
            logger.info(
                "Duplicate item rejected",
                extra={"item_name": name, "category": category, "duplicate_ids": dup_ids},
            )
            raise ConflictError(
                "Potential duplicate items found with the same name and category",
                details={"duplicates": [item_to_dict(d) for d in duplicates]},
            )
        logger.warning(
            "Duplicate check overridden",
            extra={
                "item_name": name,
                "category": category,
                "duplicate_ids": dup_ids,
                "overridden_by": created_by_user_id,
            },
        )

    item = Item(
        name=name,
        category=category,
        description=description,
        price=float(price),
        unit=unit,
        preferred_supplier=preferred_supplier,
        status="active",
        created_by_user_id=created_by_user_id,
    )
    db.add(item)
    commit_or_raise(db, "create item")
    db.refresh(item)

    logger.info("Item created", extra={"item_id": item.id, "item_name": name, "category": category})
    return item


def update_item(db: Session, item_id: int, **changes: Any) -> Item:
    item = get_item(db, item_id)

    updates = {k: v for k, v in changes.items() if k in _EDITABLE and v is not None}
    if not updates:
        raise ValidationError("No fields to update")
    validate_item_fields(updates, partial=True)

    for field, value in updates.items():
        setattr(item, field, value.strip() if isinstance(value, str) else value)
    item.updated_at = utcnow()

    db.add(item)
    commit_or_raise(db, "update item")
    db.refresh(item)
    logger.info("Item updated", extra={"item_id": item.id, "fields": sorted(updates)})
    return item


def archive_item(db: Session, item_id: int) -> Item:
    """Soft delete: archived items drop out of search and cannot be carted."""
    item = get_item(db, item_id)
    if item.status != "archived":
        item.status = "archived"
        item.updated_at = utcnow()
        db.add(item)
        commit_or_raise(db, "archive item")
        db.refresh(item)
        logger.info("Item archived", extra={"item_id": item.id})
    return item
