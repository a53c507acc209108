"""
Typed exceptions for ProcureFlow.

Every error carries a machine-readable ``kind``, the HTTP ``status_code`` the
route layer answers with, a human message and optional structured
``details``.  Services raise these; ``main.py`` turns them into the error
envelope ``{"ok": false, "error": {"kind", "message", "details"?}}``.

    ProcureFlowError
    +-- ValidationError          400
    |   +-- EmptyCartError       400
    |   +-- CartLimitError       400
    +-- AuthError                401
    +-- NotFoundError            404
    +-- ConflictError            409
    +-- StorageError             500
    |   +-- ImmutableRecordError 500
    +-- AgentError               500
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ProcureFlowError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details is not None:
            err["details"] = self.details
        return err


class ValidationError(ProcureFlowError):
    kind = "validation_error"
    status_code = 400

    @classmethod
    def from_fields(cls, problems: List[Dict[str, str]]) -> "ValidationError":
        msg = "Validation failed: " + ", ".join(p["message"] for p in problems)
        return cls(msg, details=problems)


class EmptyCartError(ValidationError):
    kind = "empty_cart"

    def __init__(self) -> None:
        super().__init__("Cart is empty. Add items before checking out.")


class CartLimitError(ValidationError):
    kind = "cart_limit_exceeded"


class AuthError(ProcureFlowError):
    kind = "unauthorized"
    status_code = 401


class NotFoundError(ProcureFlowError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        msg = f"{resource} not found" if resource_id is None else f"{resource} not found: {resource_id}"
        super().__init__(msg)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(ProcureFlowError):
    kind = "conflict"
    status_code = 409


class StorageError(ProcureFlowError):
    kind = "storage_error"


class ImmutableRecordError(StorageError):
    kind = "immutable_record"

    def __init__(self, entity: str, entity_id: Optional[int] = None):
        super().__init__(f"{entity} {entity_id} is immutable")
        self.entity = entity
        self.entity_id = entity_id


class AgentError(ProcureFlowError):
    kind = "agent_error"
