# procureflow/procurement/checkout.py
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import commit_or_raise
from ..errors import EmptyCartError, NotFoundError, StorageError
from ..logging_config import get_logger
from ..models import Cart, Item, PurchaseRequest, utcnow
from .cart import dump_lines, line_subtotal, load_lines

logger = get_logger("checkout")

_REQUEST_NUMBER_RE = re.compile(r"^PR-(\d{4})-(\d+)$")


def purchase_request_to_dict(pr: PurchaseRequest) -> Dict[str, Any]:
    return {
        "id": pr.id,
        "request_number": pr.request_number,
        "user_id": pr.user_id,
        "items": load_lines(pr.items_json),
        "total": pr.total,
        "notes": pr.notes or "",
        "status": pr.status,
        "source": pr.source,
        "created_at": pr.created_at,
    }


def next_request_number(db: Session, year: Optional[int] = None) -> str:
    """PR-<year>-<sequence>, sequence restarting at 0001 each year."""
    year = year or datetime.now().year
    prefix = f"PR-{year}-"
    numbers = (
        db.query(PurchaseRequest.request_number)
        .filter(PurchaseRequest.request_number.like(f"{prefix}%"))
        .all()
    )
    seq = 0
    for (number,) in numbers:
        m = _REQUEST_NUMBER_RE.match(number or "")
        if m:
            seq = max(seq, int(m.group(2)))
    return f"{prefix}{seq + 1:04d}"


def find_by_idempotency_key(db: Session, user_id: int, key: Optional[str]) -> Optional[PurchaseRequest]:
    if not key:
        return None
    return (
        db.query(PurchaseRequest)
        .filter(PurchaseRequest.user_id == user_id, PurchaseRequest.idempotency_key == key)
        .first()
    )


def _snapshot_lines(db: Session, lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [x.get("item_id") for x in lines]
    items = {it.id: it for it in db.query(Item).filter(Item.id.in_(ids)).all()}

    snapshot: List[Dict[str, Any]] = []
    for line in lines:
        item = items.get(line.get("item_id"))
        snapshot.append(
            {
                "item_id": line.get("item_id"),
                "name": line.get("name"),
                "category": item.category if item else "General",
                "description": (item.description or "") if item else "",
                "unit_price": float(line.get("unit_price", 0.0) or 0.0),
                "quantity": int(line.get("quantity", 1) or 1),
                "subtotal": line_subtotal(line),
            }
        )
    return snapshot


def checkout(
    db: Session,
    user_id: int,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    source: str = "ui",
) -> PurchaseRequest:
    """
    Turn the user's cart into a purchase request.

    The request insert and the cart clear are committed together.  When an
    ``idempotency_key`` was already used by this user, the earlier request
    is returned and the cart is left alone.
    """
    existing = find_by_idempotency_key(db, user_id, idempotency_key)
    if existing:
        logger.info(
            "Checkout replayed",
            extra={"purchase_request_id": existing.id, "idempotency_key": idempotency_key},
        )
        return existing

    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    lines = load_lines(cart.items_json) if cart else []
    if not lines:
        raise EmptyCartError()

    snapshot = _snapshot_lines(db, lines)
    total = round(sum(x["subtotal"] for x in snapshot), 2)

    pr = PurchaseRequest(
        request_number=next_request_number(db),
        user_id=user_id,
        items_json=dump_lines(snapshot),
        total=total,
        notes=(notes or "").strip(),
        status="submitted",
        source=source,
        idempotency_key=idempotency_key,
    )
    db.add(pr)

    cart.items_json = "[]"
    cart.updated_at = utcnow()
    db.add(cart)

    try:
        commit_or_raise(db, "complete checkout")
    except StorageError as exc:
        # a concurrent submit with the same key won the unique constraint
        existing = None
        if isinstance(exc.__cause__, IntegrityError):
            existing = find_by_idempotency_key(db, user_id, idempotency_key)
        if existing is None:
            raise
        logger.info(
            "Checkout replayed after concurrent submit",
            extra={"purchase_request_id": existing.id, "idempotency_key": idempotency_key},
        )
        return existing
    db.refresh(pr)

    logger.info(
        "Purchase request submitted",
        extra={
            "purchase_request_id": pr.id,
            "request_number": pr.request_number,
            "total": total,
            "line_count": len(snapshot),
        },
    )
    return pr


def list_purchase_requests(db: Session, user_id: int, status: Optional[str] = None) -> List[PurchaseRequest]:
    query = db.query(PurchaseRequest).filter(PurchaseRequest.user_id == user_id)
    if status:
        query = query.filter(PurchaseRequest.status == status)
    return query.order_by(PurchaseRequest.id.desc()).all()


def get_purchase_request(db: Session, user_id: int, request_id: int) -> PurchaseRequest:
    pr = (
        db.query(PurchaseRequest)
        .filter(PurchaseRequest.id == request_id, PurchaseRequest.user_id == user_id)
        .first()
    )
    if pr is None:
        raise NotFoundError("Purchase request", request_id)
    return pr
