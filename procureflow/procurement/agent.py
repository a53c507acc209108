# procureflow/procurement/agent.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import currency_symbol
from ..db import commit_or_raise
from ..errors import NotFoundError, ValidationError
from ..logging_config import get_logger
from ..models import AgentConversation, Item, utcnow
from . import cart as cart_service
from . import catalog, checkout
from .nlp import basic_normalize, fuzzy_best_key, is_greeting, parse_user_message

logger = get_logger("agent")

TITLE_MAX = 60
SEARCH_LIMIT = 10
PENDING_CHECKOUT = "checkout"

HELP_TEXT = (
    "I can help you find catalog items and manage your cart. Try:\n"
    "- 'ergonomic chairs under $300' to search\n"
    "- 'add 2 stapler' to add an item\n"
    "- 'remove stapler' to take it out\n"
    "- 'cart' to see your cart\n"
    "- 'checkout' to submit a purchase request"
)

_CART_WORDS = {"cart", "basket", "my cart", "show cart", "view cart", "show my cart", "summary"}
_CHECKOUT_WORDS = {"checkout", "check out", "submit", "place order", "submit order"}
_CONFIRM_WORDS = {"confirm checkout", "confirm", "yes checkout", "confirm order"}
_ADD_PREFIXES = ("add ", "put ", "order ")
_REMOVE_PREFIXES = ("remove ", "delete ", "take out ")


# -------------------
# Conversation documents
# -------------------
def load_messages(messages_json: str | None) -> List[Dict[str, Any]]:
    try:
        v = json.loads(messages_json or "[]")
        return v if isinstance(v, list) else []
    except ValueError:
        return []


def dump_messages(messages: List[Dict[str, Any]]) -> str:
    return json.dumps(messages, ensure_ascii=False, default=str)


def conversation_to_dict(conv: AgentConversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "user_id": conv.user_id,
        "title": conv.title,
        "messages": load_messages(conv.messages_json),
        "created_at": conv.created_at,
        "updated_at": conv.updated_at,
    }


def conversation_summary(conv: AgentConversation) -> Dict[str, Any]:
    messages = load_messages(conv.messages_json)
    last = messages[-1]["content"] if messages else ""
    return {
        "id": conv.id,
        "title": conv.title,
        "message_count": len(messages),
        "last_message": last[:120],
        "updated_at": conv.updated_at,
    }


def _pending_action(messages: List[Dict[str, Any]]) -> Optional[str]:
    """The ``pending`` marker of the latest agent message, if any."""
    for msg in reversed(messages):
        if msg.get("role") == "agent":
            return msg.get("pending")
    return None


def _message(role: str, content: str, **attachments: Any) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"role": role, "content": content, "created_at": utcnow().isoformat()}
    msg.update({k: v for k, v in attachments.items() if v is not None})
    return msg


def get_conversation(db: Session, user_id: int, conversation_id: int) -> AgentConversation:
    conv = (
        db.query(AgentConversation)
        .filter(AgentConversation.id == conversation_id, AgentConversation.user_id == user_id)
        .first()
    )
    if conv is None:
        raise NotFoundError("Conversation", conversation_id)
    return conv


def list_conversations(db: Session, user_id: int, limit: int = 10) -> List[AgentConversation]:
    limit = max(1, min(int(limit or 10), 100))
    return (
        db.query(AgentConversation)
        .filter(AgentConversation.user_id == user_id)
        .order_by(AgentConversation.updated_at.desc(), AgentConversation.id.desc())
        .limit(limit)
        .all()
    )


def delete_conversation(db: Session, user_id: int, conversation_id: int) -> None:
    conv = get_conversation(db, user_id, conversation_id)
    db.delete(conv)
    commit_or_raise(db, "delete conversation")


def catalog_snapshot(db: Session, limit: int = 120) -> Dict[str, Any]:
    """Small view of the active catalog, used as hints for the LLM."""
    items = catalog.search_items(db, limit=min(limit, catalog.MAX_SEARCH_LIMIT))
    cats = sorted({it.category for it in items})
    return {
        "categories": cats,
        "items": [{"id": it.id, "name": it.name, "category": it.category, "price": it.price} for it in items],
    }


# -------------------
# Actions
# -------------------
def _item_card(item: Item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "category": item.category,
        "description": item.description or "",
        "price": item.price,
        "unit": item.unit,
    }


def _search_reply(db: Session, text: str) -> Dict[str, Any]:
    cur = currency_symbol()
    parsed = parse_user_message(text)
    items = catalog.search_items(db, q=parsed.query, max_price=parsed.max_price, limit=SEARCH_LIMIT)

    # widen to single terms when the full phrase finds nothing
    if not items and len(parsed.query.split()) > 1:
        for term in sorted(parsed.query.split(), key=len, reverse=True):
            items = catalog.search_items(db, q=term, max_price=parsed.max_price, limit=SEARCH_LIMIT)
            if items:
                break

    cap = f" under {cur}{parsed.max_price:.2f}" if parsed.max_price is not None else ""
    if not items:
        return {"content": f"I couldn't find any catalog items matching '{parsed.query}'{cap}."}

    lines = [f"{i}. {it.name} ({it.category}) - {cur}{it.price:.2f}" for i, it in enumerate(items, start=1)]
    content = (
        f"I found {len(items)} item(s) matching '{parsed.query}'{cap}:\n"
        + "\n".join(lines)
        + "\n\nSay 'add <quantity> <item name>' to add one to your cart."
    )
    return {"content": content, "items": [_item_card(it) for it in items]}


def _best_item(db: Session, query: str, max_price: Optional[float]) -> Optional[Item]:
    items = catalog.search_items(db, q=query, max_price=max_price, limit=SEARCH_LIMIT)
    if not items:
        by_name = {it.name.lower(): it for it in catalog.search_items(db, limit=catalog.MAX_SEARCH_LIMIT)}
        key = fuzzy_best_key(list(by_name), query)
        return by_name.get(key) if key else None
    exact = [it for it in items if it.name.lower() == query.lower()]
    return exact[0] if exact else items[0]


def _add_reply(db: Session, user_id: int, text: str) -> Dict[str, Any]:
    parsed = parse_user_message(text)
    item = _best_item(db, parsed.query, parsed.max_price)
    if item is None:
        return {"content": f"I couldn't find '{parsed.query}' in the catalog."}

    qty = parsed.quantity or 1
    try:
        cart = cart_service.add_item(db, user_id, item.id, qty)
    except (ValidationError, NotFoundError) as exc:
        return {"content": f"I couldn't add {item.name}: {exc.message}"}

    summary, _ = cart_service.build_summary(cart["items"])
    return {"content": f"Added {qty} x {item.name} to your cart.\n\n{summary}", "cart": cart}


def _remove_reply(db: Session, user_id: int, text: str) -> Dict[str, Any]:
    target = parse_user_message(text).query
    cart = cart_service.get_cart(db, user_id)
    by_name = {str(line.get("name", "")).lower(): line for line in cart["items"]}

    key = next((n for n in by_name if target and target in n), None) or fuzzy_best_key(list(by_name), target)
    if not key:
        return {"content": f"'{target}' is not in your cart."}

    line = by_name[key]
    cart = cart_service.remove_item(db, user_id, line["item_id"])
    summary, _ = cart_service.build_summary(cart["items"])
    return {"content": f"Removed {line['name']} from your cart.\n\n{summary}", "cart": cart}


def _cart_reply(db: Session, user_id: int) -> Dict[str, Any]:
    cart = cart_service.get_cart(db, user_id)
    summary, _ = cart_service.build_summary(cart["items"])
    return {"content": summary, "cart": cart}


def _checkout_prompt(db: Session, user_id: int) -> Dict[str, Any]:
    cart = cart_service.get_cart(db, user_id)
    if not cart["items"]:
        return {"content": "Your cart is empty. Add items before checking out.", "cart": cart}
    summary, _ = cart_service.build_summary(cart["items"])
    return {
        "content": f"{summary}\n\nReply 'confirm checkout' to submit this purchase request.",
        "cart": cart,
        "pending": PENDING_CHECKOUT,
    }


def _confirm_checkout(db: Session, user_id: int) -> Dict[str, Any]:
    try:
        pr = checkout.checkout(db, user_id, source="agent")
    except ValidationError as exc:
        return {"content": exc.message}
    cur = currency_symbol()
    return {
        "content": f"Purchase request {pr.request_number} submitted. Total: {cur}{pr.total:.2f}",
        "purchase_request": checkout.purchase_request_to_dict(pr),
    }


def respond(db: Session, user_id: int, text: str, pending: Optional[str] = None) -> Dict[str, Any]:
    """
    Pick one action for the message and return the agent reply payload.

    ``pending`` is what the previous agent reply asked for. A confirmation
    only submits when that reply was the checkout prompt; otherwise the
    prompt is shown first.
    """
    norm = basic_normalize(text)

    if not norm or is_greeting(norm):
        return {"content": HELP_TEXT}
    if norm in _CART_WORDS:
        return _cart_reply(db, user_id)
    if norm in _CONFIRM_WORDS:
        if pending == PENDING_CHECKOUT:
            return _confirm_checkout(db, user_id)
        return _checkout_prompt(db, user_id)
    if norm in _CHECKOUT_WORDS:
        return _checkout_prompt(db, user_id)
    for prefix in _REMOVE_PREFIXES:
        if norm.startswith(prefix):
            return _remove_reply(db, user_id, norm[len(prefix):])
    for prefix in _ADD_PREFIXES:
        if norm.startswith(prefix):
            return _add_reply(db, user_id, norm[len(prefix):])

    return _search_reply(db, text)


# -------------------
# Entry point
# -------------------
def handle_message(
    db: Session,
    user_id: int,
    message: str,
    conversation_id: Optional[int] = None,
    command_text: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Run one chat turn and return the updated conversation.

    ``command_text`` is the LLM's rewrite of the message when the
    interpreter is enabled; the stored user message is always the original.
    """
    message = (message or "").strip()
    if not message:
        raise ValidationError("Message cannot be empty")

    if conversation_id is not None:
        conv = get_conversation(db, user_id, conversation_id)
    else:
        conv = AgentConversation(user_id=user_id, title=message[:TITLE_MAX], messages_json="[]")
        db.add(conv)
        commit_or_raise(db, "create conversation")
        db.refresh(conv)

    messages = load_messages(conv.messages_json)
    pending = _pending_action(messages)
    messages.append(_message("user", message))

    reply = respond(db, user_id, command_text or message, pending=pending)
    content = reply.pop("content")
    messages.append(_message("agent", content, **reply))

    conv.messages_json = dump_messages(messages)
    conv.updated_at = utcnow()
    db.add(conv)
    commit_or_raise(db, "save conversation")
    db.refresh(conv)

    logger.info(
        "Agent turn completed",
        extra={"conversation_id": conv.id, "message_count": len(messages), "rewritten": bool(command_text)},
    )
    return conversation_to_dict(conv)
