from __future__ import annotations

from typing import Any


class LendingError(RuntimeError):
    code = "lending_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class ValidationError(LendingError):
    """Malformed input, rejected before any ledger call."""

    code = "validation_error"
    status_code = 400


class NotFound(LendingError):
    code = "not_found"
    status_code = 404


class InsufficientStock(LendingError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, item_id: int, requested: int, available: int, item_name: str | None = None) -> None:
        label = item_name or f"Item {item_id}"
        super().__init__(
            f"{label}: requested {requested}, only {available} available.",
            itemID=item_id,
            itemName=item_name,
            requested=requested,
            available=available,
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class Conflict(LendingError):
    code = "conflict"
    status_code = 409


class AlreadyTerminal(LendingError):
    """The record already left the state the operation needs. Idempotent callers treat it as a no-op."""

    code = "already_terminal"
    status_code = 409


class PartiallyApplied(LendingError):
    """The first store call of a two-step unit of work committed, the second did not."""

    code = "partially_applied"
    status_code = 500

    def __init__(self, message: str, *, operation: str, completed: str, missing: str, **context: Any) -> None:
        super().__init__(message, operation=operation, completed=completed, missing=missing, **context)
        self.operation = operation
        self.completed = completed
        self.missing = missing


class UpstreamUnavailable(LendingError):
    code = "upstream_unavailable"
    status_code = 503
