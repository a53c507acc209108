# procureflow/models.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)

from .db import Base
from .errors import ImmutableRecordError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="requester")  # requester | admin
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Item(Base):
    __tablename__ = "items"
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, index=True)
    category = Column(String(100), nullable=False, index=True)
    description = Column(Text, default="")
    price = Column(Float, nullable=False)
    unit = Column(String, nullable=True)
    preferred_supplier = Column(String, nullable=True)
    status = Column(String, default="active")  # active | archived
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Cart(Base):
    __tablename__ = "carts"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    items_json = Column(Text, default="[]")  # [{item_id, name, unit_price, quantity, added_at}]
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"
    __table_args__ = (UniqueConstraint("user_id", "idempotency_key"),)

    id = Column(Integer, primary_key=True)
    request_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    items_json = Column(Text, nullable=False)  # line snapshots, frozen at checkout
    total = Column(Float, nullable=False)
    notes = Column(Text, default="")
    status = Column(String, default="submitted")
    source = Column(String, default="ui")  # ui | agent
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AgentConversation(Base):
    __tablename__ = "agent_conversations"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, default="")
    messages_json = Column(Text, default="[]")  # [{role, content, created_at, items?, cart?}]
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


# Purchase requests are append-only.
@event.listens_for(PurchaseRequest, "before_update")
def _purchase_request_no_update(mapper, connection, target: PurchaseRequest) -> None:
    raise ImmutableRecordError("PurchaseRequest", target.id)


@event.listens_for(PurchaseRequest, "before_delete")
def _purchase_request_no_delete(mapper, connection, target: PurchaseRequest) -> None:
    raise ImmutableRecordError("PurchaseRequest", target.id)
