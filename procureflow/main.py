# procureflow/main.py
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import ai_intent
from .auth import create_token, decode_token, hash_password, verify_password
from .command_router import command_to_userlike_text
from .config import settings
from .db import Base, commit_or_raise, engine, get_db
from .errors import AgentError, AuthError, ConflictError, ProcureFlowError
from .logging_config import LogContext, configure_logging, get_logger
from .models import User
from .procurement import agent, cart, catalog, checkout
from .schemas import (
    CartItemIn,
    CartQuantityIn,
    ChatIn,
    CheckoutIn,
    ItemCreate,
    ItemUpdate,
    LoginIn,
    RegisterIn,
)

configure_logging(level=settings.log_level, json_lines=settings.log_json)
logger = get_logger("api")

app = FastAPI(title="ProcureFlow API")

Base.metadata.create_all(bind=engine)

GENERIC_ERROR = "An unexpected error occurred. Please try again."


# -------------------
# Envelope
# -------------------
def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"ok": True, "data": data}))


def fail(status_code: int, kind: str, message: str, details: Any = None) -> JSONResponse:
    error: Dict[str, Any] = {"kind": kind, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"ok": False, "error": error}))


# -------------------
# Middleware + error handlers
# -------------------
@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    cid = request.headers.get("X-Correlation-ID") or uuid4().hex
    started = time.perf_counter()
    with LogContext.bind(correlation_id=cid, route=f"{request.method} {request.url.path}"):
        # errors without a registered handler are re-raised out of call_next
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await unhandled_error_handler(request, exc)
        logger.info(
            "Request completed",
            extra={
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
    response.headers["X-Correlation-ID"] = cid
    return response


@app.exception_handler(ProcureFlowError)
async def procureflow_error_handler(request: Request, exc: ProcureFlowError):
    if exc.status_code >= 500:
        logger.error("Request failed", extra={"error_kind": exc.kind}, exc_info=exc)
        message = exc.message if isinstance(exc, AgentError) else GENERIC_ERROR
        return fail(exc.status_code, exc.kind, message)

    logger.warning("Request rejected", extra={"error_kind": exc.kind, "error_message": exc.message})
    return fail(exc.status_code, exc.kind, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    logger.warning("Request rejected", extra={"error_kind": "validation_error", "fields": [d["field"] for d in details]})
    return fail(400, "validation_error", "Request validation failed", details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = "not_found" if exc.status_code == 404 else "http_error"
    return fail(exc.status_code, kind, str(exc.detail))


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure", exc_info=exc)
    return fail(500, "storage_error", GENERIC_ERROR)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return fail(500, "internal_error", GENERIC_ERROR)


# -------------------
# Helpers
# -------------------
async def require_user_id(authorization: str | None = Header(default=None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Missing Bearer token")

    token = authorization.split(" ", 1)[1].strip()
    uid = decode_token(token)
    if not uid:
        raise AuthError("Invalid or expired token")
    LogContext.set(user_id=str(uid))
    return uid


def user_to_dict(u: User) -> Dict[str, Any]:
    return {"id": u.id, "name": u.name, "email": u.email, "role": u.role, "created_at": u.created_at}


async def _apply_optional_llm_rewrite(
    message: str, db: Session, history: List[Dict[str, Any]]
) -> Optional[str]:
    """
    Optional LLM layer converting messy user text into a command the agent
    understands. Failures propagate as AgentError.
    """
    if not ai_intent.is_enabled():
        return None

    cmd = await ai_intent.interpret_message_llm(
        message=message,
        catalog=agent.catalog_snapshot(db),
        history=history,
    )
    return command_to_userlike_text(cmd) or None


# -------------------
# Health
# -------------------
@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return ok({"status": "ok", "service": "procureflow", "llm_enabled": ai_intent.is_enabled()})


# -------------------
# Auth
# -------------------
@app.post("/auth/register")
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    email = payload.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise ConflictError("Email already registered")

    u = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        role="requester",
    )
    db.add(u)
    commit_or_raise(db, "register user")
    db.refresh(u)
    logger.info("User registered", extra={"new_user_id": u.id})
    return ok({"token": create_token(u.id), "token_type": "bearer", "user": user_to_dict(u)}, 201)


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    u = db.query(User).filter(User.email == payload.email.lower()).first()
    if not u or not verify_password(payload.password, u.password_hash):
        raise AuthError("Invalid email or password")
    return ok({"token": create_token(u.id), "token_type": "bearer", "user": user_to_dict(u)})


@app.get("/auth/me")
def me(user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    u = db.get(User, user_id)
    if not u:
        raise AuthError("User not found")
    return ok(user_to_dict(u))


# -------------------
# Catalog
# -------------------
@app.get("/items")
def list_items(
    q: Optional[str] = None,
    limit: int = Query(default=catalog.DEFAULT_SEARCH_LIMIT, ge=1, le=catalog.MAX_SEARCH_LIMIT),
    max_price: Optional[float] = Query(default=None, gt=0),
    category: Optional[str] = None,
    include_archived: bool = False,
    db: Session = Depends(get_db),
):
    items = catalog.search_items(
        db,
        q=q,
        limit=limit,
        max_price=max_price,
        category=category,
        include_archived=include_archived,
    )
    return ok({"items": [catalog.item_to_dict(it) for it in items], "count": len(items)})


@app.post("/items")
def create_item(payload: ItemCreate, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    item = catalog.create_item(
        db,
        name=payload.name,
        category=payload.category,
        description=payload.description,
        price=payload.price,
        unit=payload.unit,
        preferred_supplier=payload.preferred_supplier,
        created_by_user_id=user_id,
        allow_duplicate=payload.allow_duplicate,
    )
    return ok(catalog.item_to_dict(item), 201)


@app.get("/items/{item_id}")
def get_item(item_id: int, db: Session = Depends(get_db)):
    return ok(catalog.item_to_dict(catalog.get_item(db, item_id)))


@app.patch("/items/{item_id}")
def update_item(
    item_id: int,
    payload: ItemUpdate,
    user_id: int = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    item = catalog.update_item(db, item_id, **payload.model_dump(exclude_unset=True))
    return ok(catalog.item_to_dict(item))


@app.delete("/items/{item_id}")
def delete_item(item_id: int, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(catalog.item_to_dict(catalog.archive_item(db, item_id)))


# -------------------
# Cart
# -------------------
@app.get("/cart")
def get_cart(user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(cart.get_cart(db, user_id))


@app.post("/cart/items")
def add_cart_item(payload: CartItemIn, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(cart.add_item(db, user_id, payload.item_id, payload.quantity))


@app.patch("/cart/items/{item_id}")
def update_cart_item(
    item_id: int,
    payload: CartQuantityIn,
    user_id: int = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    return ok(cart.update_item_quantity(db, user_id, item_id, payload.quantity))


@app.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: int, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(cart.remove_item(db, user_id, item_id))


@app.delete("/cart")
def clear_cart(user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(cart.clear_cart(db, user_id))


# -------------------
# Checkout + purchase requests
# -------------------
@app.post("/checkout")
def submit_checkout(
    payload: Optional[CheckoutIn] = None,
    user_id: int = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    payload = payload or CheckoutIn()
    pr = checkout.checkout(db, user_id, notes=payload.notes, idempotency_key=payload.idempotency_key)
    return ok(checkout.purchase_request_to_dict(pr))


@app.get("/purchase-requests")
def list_purchase_requests(
    status: Optional[str] = None,
    user_id: int = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    requests = checkout.list_purchase_requests(db, user_id, status=status)
    return ok({"purchase_requests": [checkout.purchase_request_to_dict(pr) for pr in requests], "count": len(requests)})


@app.get("/purchase-requests/{request_id}")
def get_purchase_request(request_id: int, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(checkout.purchase_request_to_dict(checkout.get_purchase_request(db, user_id, request_id)))


# -------------------
# Agent chat
# -------------------
@app.post("/agent/chat")
async def agent_chat(payload: ChatIn, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    history: List[Dict[str, Any]] = []
    if payload.conversation_id is not None:
        conv = agent.get_conversation(db, user_id, payload.conversation_id)
        history = agent.load_messages(conv.messages_json)

    command_text = await _apply_optional_llm_rewrite(payload.message, db, history)

    conversation = agent.handle_message(
        db,
        user_id,
        payload.message,
        conversation_id=payload.conversation_id,
        command_text=command_text,
    )
    return ok(conversation)


@app.get("/agent/conversations")
def list_conversations(
    limit: int = Query(default=10, ge=1, le=100),
    user_id: int = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    convs = agent.list_conversations(db, user_id, limit=limit)
    return ok({"conversations": [agent.conversation_summary(c) for c in convs], "count": len(convs)})


@app.get("/agent/conversations/{conversation_id}")
def get_conversation(conversation_id: int, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    return ok(agent.conversation_to_dict(agent.get_conversation(db, user_id, conversation_id)))


@app.delete("/agent/conversations/{conversation_id}")
def delete_conversation(conversation_id: int, user_id: int = Depends(require_user_id), db: Session = Depends(get_db)):
    agent.delete_conversation(db, user_id, conversation_id)
    return ok({"id": conversation_id, "deleted": True})


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
