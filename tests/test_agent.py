"""Tests for the chat agent: parsing, actions, conversations and the LLM layer."""

import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from procureflow import ai_intent
from procureflow.command_router import command_to_userlike_text
from procureflow.errors import NotFoundError, ValidationError
from procureflow.models import PurchaseRequest
from procureflow.procurement import agent, cart
from procureflow.procurement.nlp import fuzzy_best_key, parse_user_message


@pytest.fixture
def office_catalog(make_item):
    return {
        "chair": make_item("Ergonomic Chair", "Furniture", price=249.0, description="Mesh ergonomic office chair"),
        "deluxe": make_item("Deluxe Chair", "Furniture", price=899.0, description="Leather executive chair"),
        "stapler": make_item("Stapler", "Office Supplies", price=12.5, description="Heavy duty desktop stapler"),
    }


def _last(conversation):
    return conversation["messages"][-1]


# -------------------
# Parsing
# -------------------
@pytest.mark.parametrize(
    "text, query, qty, max_price",
    [
        ("I need 5 staplers under $20", "stapler", 5, 20.0),
        ("ergonomic chairs under $300", "ergonomic chair", None, 300.0),
        ("2x blue pens", "blue pen", 2, None),
        ("Hey can I get some batteries please", "batteri", None, None),
        ("monitors less than 150.50", "monitor", None, 150.5),
    ],
)
def test_parse_user_message(text, query, qty, max_price):
    parsed = parse_user_message(text)
    assert (parsed.query, parsed.quantity, parsed.max_price) == (query, qty, max_price)


def test_fuzzy_best_key():
    keys = ["stapler", "ergonomic chair"]
    assert fuzzy_best_key(keys, "staplr") == "stapler"
    assert fuzzy_best_key(keys, "projector") is None
    assert fuzzy_best_key([], "stapler") is None


@pytest.mark.parametrize(
    "cmd, expected",
    [
        ({"intent": "search_catalog", "query": "chairs", "max_price": 300}, "chairs under 300"),
        ({"intent": "add_to_cart", "item_name": "Stapler", "quantity": 3}, "add 3 Stapler"),
        ({"intent": "add_to_cart", "item_name": None, "quantity": 3}, ""),
        ({"intent": "remove_from_cart", "item_name": "Stapler"}, "remove Stapler"),
        ({"intent": "view_cart"}, "cart"),
        ({"intent": "checkout"}, "checkout"),
        ({"intent": "confirm_checkout"}, "confirm checkout"),
        ({"intent": "unknown"}, ""),
    ],
)
def test_command_to_userlike_text(cmd, expected):
    assert command_to_userlike_text(cmd) == expected


# -------------------
# Actions
# -------------------
def test_greeting_returns_help(db_session, user):
    assert agent.respond(db_session, user.id, "hello")["content"] == agent.HELP_TEXT


def test_search_respects_price_cap(db_session, user, office_catalog):
    reply = agent.respond(db_session, user.id, "ergonomic chairs under $300")
    assert [i["id"] for i in reply["items"]] == [office_catalog["chair"].id]
    assert "Ergonomic Chair" in reply["content"]


def test_search_falls_back_to_single_terms(db_session, user, office_catalog):
    # no item has "wheel"; the longest term wins
    reply = agent.respond(db_session, user.id, "executive chair with wheels")
    assert [i["name"] for i in reply["items"]] == ["Deluxe Chair"]


def test_search_without_results(db_session, user, office_catalog):
    reply = agent.respond(db_session, user.id, "projector")
    assert "items" not in reply
    assert "couldn't find" in reply["content"]


def test_add_and_remove_through_chat(db_session, user, office_catalog):
    reply = agent.respond(db_session, user.id, "add 3 staplers")
    assert reply["cart"]["items"][0]["quantity"] == 3
    assert reply["cart"]["items"][0]["item_id"] == office_catalog["stapler"].id

    reply = agent.respond(db_session, user.id, "remove stapler")
    assert reply["cart"]["items"] == []


def test_add_unknown_item(db_session, user, office_catalog):
    reply = agent.respond(db_session, user.id, "add 2 projectors")
    assert "couldn't find" in reply["content"]
    assert cart.get_cart(db_session, user.id)["items"] == []


@pytest.mark.parametrize("word", ["batteries", "battery"])
def test_search_finds_ies_plurals(db_session, user, make_item, word):
    batteries = make_item("AA Batteries", "Electronics", price=6.0, description="Pack of 8 alkaline cells")
    reply = agent.respond(db_session, user.id, word)
    assert [i["id"] for i in reply.get("items", [])] == [batteries.id]


def test_add_ies_plural_through_chat(db_session, user, make_item):
    batteries = make_item("AA Batteries", "Electronics", price=6.0, description="Pack of 8 alkaline cells")
    reply = agent.respond(db_session, user.id, "add 2 batteries")
    assert [(x["item_id"], x["quantity"]) for x in reply["cart"]["items"]] == [(batteries.id, 2)]


def test_checkout_needs_confirmation(db_session, user, office_catalog):
    conv = agent.handle_message(db_session, user.id, "add 2 stapler")

    conv = agent.handle_message(db_session, user.id, "checkout", conversation_id=conv["id"])
    assert "confirm checkout" in _last(conv)["content"]
    assert _last(conv)["pending"] == agent.PENDING_CHECKOUT
    assert db_session.query(PurchaseRequest).count() == 0

    conv = agent.handle_message(db_session, user.id, "confirm checkout", conversation_id=conv["id"])
    pr = _last(conv)["purchase_request"]
    assert pr["source"] == "agent"
    assert pr["total"] == pytest.approx(25.0)
    assert pr["request_number"] in _last(conv)["content"]
    assert "pending" not in _last(conv)
    assert cart.get_cart(db_session, user.id)["items"] == []


@pytest.mark.parametrize("word", ["confirm", "confirm checkout"])
def test_confirm_without_prompt_only_prompts(db_session, user, office_catalog, word):
    agent.respond(db_session, user.id, "add 3 stapler")

    conv = agent.handle_message(db_session, user.id, word)

    assert "purchase_request" not in _last(conv)
    assert "confirm checkout" in _last(conv)["content"]
    assert db_session.query(PurchaseRequest).count() == 0
    assert cart.get_cart(db_session, user.id)["items"][0]["quantity"] == 3


def test_confirm_after_another_reply_only_prompts(db_session, user, office_catalog):
    conv = agent.handle_message(db_session, user.id, "add 1 stapler")
    conv = agent.handle_message(db_session, user.id, "checkout", conversation_id=conv["id"])
    conv = agent.handle_message(db_session, user.id, "cart", conversation_id=conv["id"])

    conv = agent.handle_message(db_session, user.id, "confirm", conversation_id=conv["id"])
    assert "purchase_request" not in _last(conv)
    assert db_session.query(PurchaseRequest).count() == 0


def test_confirm_with_empty_cart(db_session, user):
    reply = agent.respond(db_session, user.id, "confirm checkout", pending=agent.PENDING_CHECKOUT)
    assert "purchase_request" not in reply
    assert "empty" in reply["content"].lower()


# -------------------
# Conversations
# -------------------
def test_handle_message_creates_and_extends_conversation(db_session, user, office_catalog):
    conv = agent.handle_message(db_session, user.id, "Show me staplers")
    assert conv["title"] == "Show me staplers"
    assert [m["role"] for m in conv["messages"]] == ["user", "agent"]
    assert _last(conv)["items"][0]["name"] == "Stapler"

    conv = agent.handle_message(db_session, user.id, "cart", conversation_id=conv["id"])
    assert len(conv["messages"]) == 4
    assert _last(conv)["content"] == "Your cart is empty."


def test_title_is_truncated(db_session, user):
    conv = agent.handle_message(db_session, user.id, "x" * 100)
    assert len(conv["title"]) == agent.TITLE_MAX


def test_command_text_drives_reply_but_original_is_stored(db_session, user, office_catalog):
    conv = agent.handle_message(db_session, user.id, "could you grab me three staplers", command_text="add 3 Stapler")
    assert conv["messages"][0]["content"] == "could you grab me three staplers"
    assert _last(conv)["cart"]["items"][0]["quantity"] == 3


def test_blank_message_is_rejected(db_session, user):
    with pytest.raises(ValidationError):
        agent.handle_message(db_session, user.id, "   ")


def test_conversations_are_scoped_to_owner(db_session, user, other_user):
    conv = agent.handle_message(db_session, user.id, "hello")

    with pytest.raises(NotFoundError):
        agent.get_conversation(db_session, other_user.id, conv["id"])
    with pytest.raises(NotFoundError):
        agent.handle_message(db_session, other_user.id, "cart", conversation_id=conv["id"])
    assert agent.list_conversations(db_session, other_user.id) == []

    agent.delete_conversation(db_session, user.id, conv["id"])
    assert agent.list_conversations(db_session, user.id) == []


# -------------------
# HTTP + LLM layer
# -------------------
class _FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def fake_llm(monkeypatch):
    def _install(content=None, error=None):
        completions = _FakeCompletions(content, error)
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        monkeypatch.setattr(ai_intent, "is_enabled", lambda: True)
        monkeypatch.setattr(ai_intent, "get_client", lambda: client)
        return completions

    return _install


def test_chat_endpoint_round_trip(client, auth_headers, office_catalog):
    resp = client.post("/agent/chat", json={"message": "stapler"}, headers=auth_headers)
    assert resp.status_code == 200
    conv = resp.json()["data"]

    resp = client.post(
        "/agent/chat",
        json={"message": "add 1 stapler", "conversation_id": conv["id"]},
        headers=auth_headers,
    )
    assert len(resp.json()["data"]["messages"]) == 4

    listing = client.get("/agent/conversations", headers=auth_headers).json()["data"]
    assert listing["count"] == 1
    assert listing["conversations"][0]["message_count"] == 4

    detail = client.get(f"/agent/conversations/{conv['id']}", headers=auth_headers)
    assert detail.status_code == 200

    assert client.delete(f"/agent/conversations/{conv['id']}", headers=auth_headers).status_code == 200
    assert client.get(f"/agent/conversations/{conv['id']}", headers=auth_headers).status_code == 404


def test_chat_requires_auth(client):
    assert client.post("/agent/chat", json={"message": "hi"}).status_code == 401


def test_chat_rejects_empty_message(client, auth_headers):
    resp = client.post("/agent/chat", json={"message": ""}, headers=auth_headers)
    assert resp.status_code == 400


def test_llm_command_is_applied(client, auth_headers, office_catalog, fake_llm):
    cmd = {"intent": "add_to_cart", "query": None, "item_name": "Stapler", "quantity": 4, "max_price": None}
    completions = fake_llm(content=json.dumps(cmd))

    resp = client.post("/agent/chat", json={"message": "four of those staplers pls"}, headers=auth_headers)

    assert resp.status_code == 200
    messages = resp.json()["data"]["messages"]
    assert messages[0]["content"] == "four of those staplers pls"
    assert messages[-1]["cart"]["items"][0]["quantity"] == 4
    sent = json.loads(completions.calls[0]["messages"][1]["content"])
    assert "Stapler" in [i["name"] for i in sent["catalog_hints"]["items"]]


def test_llm_failure_is_agent_error(client, auth_headers, fake_llm):
    fake_llm(error=OpenAIError("boom"))

    resp = client.post("/agent/chat", json={"message": "find me chairs"}, headers=auth_headers)

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["kind"] == "agent_error"
    assert "boom" not in error["message"]
    assert client.get("/agent/conversations", headers=auth_headers).json()["data"]["count"] == 0


def test_llm_malformed_output_is_agent_error(client, auth_headers, fake_llm):
    fake_llm(content="not json")
    resp = client.post("/agent/chat", json={"message": "chairs"}, headers=auth_headers)
    assert resp.status_code == 500
    assert resp.json()["error"]["kind"] == "agent_error"
