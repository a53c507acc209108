# procureflow/command_router.py
from __future__ import annotations

from typing import Any, Dict


def _price_suffix(cmd: Dict[str, Any]) -> str:
    max_price = cmd.get("max_price")
    if max_price is None:
        return ""
    try:
        return f" under {float(max_price):g}"
    except (TypeError, ValueError):
        return ""


def command_to_userlike_text(cmd: Dict[str, Any]) -> str:
    """Render a structured command as text the rule-based agent understands."""
    intent = (cmd.get("intent") or "unknown").strip()

    if intent == "search_catalog":
        query = (cmd.get("query") or cmd.get("item_name") or "").strip()
        return f"{query}{_price_suffix(cmd)}".strip()

    if intent == "add_to_cart":
        name = (cmd.get("item_name") or cmd.get("query") or "").strip()
        qty = int(cmd.get("quantity") or 1)
        if not name:
            return ""
        return f"add {qty} {name}"

    if intent == "remove_from_cart":
        name = (cmd.get("item_name") or cmd.get("query") or "").strip()
        return f"remove {name}" if name else ""

    if intent == "view_cart":
        return "cart"

    if intent == "checkout":
        return "checkout"

    if intent == "confirm_checkout":
        return "confirm checkout"

    if intent == "help":
        return "help"

    return ""
