"""
Request schemas.

Shapes and value ranges for everything the API accepts.  Requests that do
not match are rejected with a 400 ``validation_error`` before any service
code runs.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

MAX_LINE_QUANTITY = 999


def _not_blank(v: Optional[str]) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError("must not be blank")
    return v


# -------------------
# Auth
# -------------------
class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=200)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


# -------------------
# Catalog
# -------------------
class ItemCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    category: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., gt=0, allow_inf_nan=False)
    unit: Optional[str] = Field(default=None, max_length=50)
    preferred_supplier: Optional[str] = Field(default=None, max_length=200)
    allow_duplicate: bool = False

    check_blank = field_validator("name", "category", "description")(_not_blank)


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    category: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, min_length=10, max_length=2000)
    price: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    unit: Optional[str] = Field(default=None, max_length=50)
    preferred_supplier: Optional[str] = Field(default=None, max_length=200)

    check_blank = field_validator("name", "category", "description")(_not_blank)


# -------------------
# Cart / checkout
# -------------------
class CartItemIn(BaseModel):
    item_id: int
    quantity: int = Field(default=1, ge=1, le=MAX_LINE_QUANTITY)


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY)


class CheckoutIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=100)


# -------------------
# Agent
# -------------------
class ChatIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    conversation_id: Optional[int] = None

    check_blank = field_validator("message")(_not_blank)
