# procureflow/procurement/cart.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import currency_symbol as default_currency_symbol
from ..db import commit_or_raise
from ..errors import CartLimitError, NotFoundError, ValidationError
from ..logging_config import get_logger
from ..models import Cart, Item, utcnow

logger = get_logger("cart")

MAX_LINE_QUANTITY = 999
MAX_CART_LINES = 50


# -------------------
# Line helpers
# -------------------
def load_lines(items_json: str | None) -> List[Dict[str, Any]]:
    try:
        v = json.loads(items_json or "[]")
        return v if isinstance(v, list) else []
    except ValueError:
        return []


def dump_lines(lines: List[Dict[str, Any]]) -> str:
    return json.dumps(lines, ensure_ascii=False, default=str)


def line_subtotal(line: Dict[str, Any]) -> float:
    qty = int(line.get("quantity", 1) or 1)
    price = float(line.get("unit_price", 0.0) or 0.0)
    return round(qty * price, 2)


def cart_total(lines: List[Dict[str, Any]]) -> float:
    return round(sum(line_subtotal(x) for x in lines), 2)


def build_summary(lines: List[Dict[str, Any]], currency_symbol: Optional[str] = None) -> Tuple[str, float]:
    cur = default_currency_symbol() if currency_symbol is None else currency_symbol
    if not lines:
        return ("Your cart is empty.", 0.0)

    out: List[str] = []
    for i, line in enumerate(lines, start=1):
        qty = int(line.get("quantity", 1) or 1)
        name = str(line.get("name", "Item"))
        out.append(f"{i}. x{qty} {name} = {cur}{line_subtotal(line):.2f}")

    total = cart_total(lines)
    return ("Cart summary:\n" + "\n".join(out) + f"\n\nTotal: {cur}{total:.2f}", total)


def cart_to_dict(cart: Cart) -> Dict[str, Any]:
    lines = load_lines(cart.items_json)
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": [{**line, "subtotal": line_subtotal(line)} for line in lines],
        "item_count": sum(int(x.get("quantity", 0) or 0) for x in lines),
        "total_cost": cart_total(lines),
        "updated_at": cart.updated_at,
    }


def _find_line(lines: List[Dict[str, Any]], item_id: int) -> Optional[Dict[str, Any]]:
    for line in lines:
        if line.get("item_id") == item_id:
            return line
    return None


def _check_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be a whole number")
    if quantity < 1 or quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_LINE_QUANTITY}")
    return quantity


# -------------------
# Service
# -------------------
def get_or_create_cart(db: Session, user_id: int) -> Cart:
    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    if cart:
        cart.items_json = cart.items_json or "[]"
        return cart

    cart = Cart(user_id=user_id, items_json="[]")
    db.add(cart)
    commit_or_raise(db, "create cart")
    db.refresh(cart)
    return cart


def _save(db: Session, cart: Cart, lines: List[Dict[str, Any]], action: str) -> Cart:
    cart.items_json = dump_lines(lines)
    cart.updated_at = utcnow()
    db.add(cart)
    commit_or_raise(db, action)
    db.refresh(cart)
    return cart


def get_cart(db: Session, user_id: int) -> Dict[str, Any]:
    return cart_to_dict(get_or_create_cart(db, user_id))


def add_item(db: Session, user_id: int, item_id: int, quantity: int = 1) -> Dict[str, Any]:
    """Add ``quantity`` of an item. Repeated adds accumulate on one line."""
    quantity = _check_quantity(quantity)

    item = db.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item", item_id)
    if item.status != "active":
        raise ValidationError(f"Item {item_id} is not available")

    cart = get_or_create_cart(db, user_id)
    lines = load_lines(cart.items_json)

    line = _find_line(lines, item_id)
    if line is not None:
        new_qty = int(line.get("quantity", 0)) + quantity
        if new_qty > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Total quantity for item {item_id} cannot exceed {MAX_LINE_QUANTITY}"
            )
        line["quantity"] = new_qty
    else:
        if len(lines) >= MAX_CART_LINES:
            raise CartLimitError(f"Cart cannot hold more than {MAX_CART_LINES} different items")
        lines.append(
            {
                "item_id": item.id,
                "name": item.name,
                "unit_price": float(item.price),
                "quantity": quantity,
                "added_at": utcnow().isoformat(),
            }
        )

    cart = _save(db, cart, lines, "add item to cart")
    logger.info("Cart item added", extra={"item_id": item_id, "quantity": quantity})
    return cart_to_dict(cart)


def update_item_quantity(db: Session, user_id: int, item_id: int, quantity: int) -> Dict[str, Any]:
    quantity = _check_quantity(quantity)
    cart = get_or_create_cart(db, user_id)
    lines = load_lines(cart.items_json)

    line = _find_line(lines, item_id)
    if line is None:
        raise NotFoundError("Cart item", item_id)
    line["quantity"] = quantity

    return cart_to_dict(_save(db, cart, lines, "update cart item"))


def remove_item(db: Session, user_id: int, item_id: int) -> Dict[str, Any]:
    cart = get_or_create_cart(db, user_id)
    lines = load_lines(cart.items_json)

    kept = [x for x in lines if x.get("item_id") != item_id]
    if len(kept) == len(lines):
        raise NotFoundError("Cart item", item_id)

    cart = _save(db, cart, kept, "remove cart item")
    logger.info("Cart item removed", extra={"item_id": item_id})
    return cart_to_dict(cart)


def clear_cart(db: Session, user_id: int) -> Dict[str, Any]:
    cart = get_or_create_cart(db, user_id)
    return cart_to_dict(_save(db, cart, [], "clear cart"))
