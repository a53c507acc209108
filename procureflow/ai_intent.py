# procureflow/ai_intent.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .config import settings
from .errors import AgentError
from .logging_config import get_logger

logger = get_logger("ai_intent")

SYSTEM = """You are an intent parser for a procurement assistant.
Convert the user's message into ONE JSON command that matches the provided JSON schema.
Rules:
- Never invent catalog items. Use item names from the catalog hints when the user refers to one.
- "query" is the short product phrase to search for (e.g. "blue pens"), without prices or quantities.
- Use intent "confirm_checkout" only when the user clearly confirms a checkout the assistant proposed.
- If unsure, use intent "search_catalog" with the user's product phrase, or "help".
"""

# JSON Schema for Structured Outputs
COMMAND_SCHEMA: Dict[str, Any] = {
    "name": "procurement_command",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "intent": {
                "type": "string",
                "enum": [
                    "search_catalog",
                    "add_to_cart",
                    "remove_from_cart",
                    "view_cart",
                    "checkout",
                    "confirm_checkout",
                    "help",
                    "unknown",
                ],
            },
            "query": {"type": ["string", "null"]},
            "item_name": {"type": ["string", "null"]},
            "quantity": {"type": ["integer", "null"], "minimum": 1},
            "max_price": {"type": ["number", "null"]},
        },
        "required": ["intent", "query", "item_name", "quantity", "max_price"],
    },
    "strict": True,
}

_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.openai_api_key)
    return _client


def is_enabled() -> bool:
    return bool(settings.llm_enabled and settings.openai_api_key)


def _catalog_hints(catalog: Dict[str, Any]) -> Dict[str, Any]:
    # Keep hints small to control cost + latency.
    items = [
        {"name": it.get("name"), "category": it.get("category"), "price": it.get("price")}
        for it in (catalog.get("items") or [])
    ]
    return {"categories": catalog.get("categories") or [], "items": items[:120]}


async def interpret_message_llm(
    message: str,
    catalog: Dict[str, Any],
    history: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Ask the model for one structured command. Any failure raises AgentError."""
    payload = {
        "message": message,
        "recent_messages": [
            {"role": m.get("role"), "content": m.get("content")} for m in (history or [])[-6:]
        ],
        "catalog_hints": _catalog_hints(catalog),
    }

    try:
        resp = await get_client().chat.completions.create(
            model=settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM},
                {"role": "user", "content": json.dumps(payload, ensure_ascii=False, default=str)},
            ],
            response_format={"type": "json_schema", "json_schema": COMMAND_SCHEMA},
        )
        cmd = json.loads(resp.choices[0].message.content or "")
    except (OpenAIError, ValueError, IndexError) as exc:
        logger.error("LLM interpretation failed", extra={"model": settings.openai_model}, exc_info=True)
        raise AgentError("The assistant is unavailable right now. Please try again.") from exc

    if not isinstance(cmd, dict):
        raise AgentError("The assistant returned an unexpected response.")
    return cmd
