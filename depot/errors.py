from __future__ import annotations

from typing import Any, Optional


class DepotError(Exception):
    """Base for every rejection the core raises. All of them are recoverable."""

    status_code = 400
    error = "depot_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, **self.details}


class NotFound(DepotError):
    status_code = 404
    error = "not_found"


class InvalidTransition(DepotError):
    error = "invalid_transition"

    def __init__(self, entity: str, current: str, requested: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"cannot move {entity} from {current} to {requested}",
            entity=entity,
            current_status=current,
            requested_status=requested,
        )


class StaleTransition(DepotError):
    status_code = 409
    error = "stale_transition"

    def __init__(self, entity: str, entity_id: int, expected: str, actual: Optional[str]) -> None:
        super().__init__(
            f"{entity} {entity_id} is no longer {expected}; re-read and retry",
            entity=entity,
            entity_id=entity_id,
            expected_status=expected,
            actual_status=actual,
        )


class ChecklistBlocked(DepotError):
    status_code = 409
    error = "checklist_blocked"

    def __init__(
        self,
        entity_type: str,
        entity_id: int,
        response_id: int,
        template_code: str,
        failed_items: list[dict],
    ) -> None:
        super().__init__(
            f"{entity_type} {entity_id} failed checklist {template_code}",
            entity_type=entity_type,
            entity_id=entity_id,
            checklist_response_id=response_id,
            template_code=template_code,
            failed_items=failed_items,
        )


class InvalidMovement(DepotError):
    error = "invalid_movement"


class InvalidQuantity(DepotError):
    error = "invalid_quantity"


class QuoteExpired(DepotError):
    error = "quote_expired"


class ChecklistIncomplete(DepotError):
    error = "checklist_incomplete"


class ApprovalNotPermitted(DepotError):
    status_code = 403
    error = "approval_not_permitted"


class ValidationFailed(DepotError):
    status_code = 422
    error = "validation_failed"


class LedgerBusy(DepotError):
    status_code = 409
    error = "ledger_busy"
