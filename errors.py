"""
Errors raised by the request workflow.

Callers map these to their own transport codes; main.py does it for HTTP.
"""
from typing import Optional


class WorkflowError(Exception):
    """Base class for every error the workflow surfaces to its caller."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra(self) -> dict:
        return {}


class ValidationError(WorkflowError):
    """Malformed input: empty item list, non-positive quantity, missing remarks."""


class InvalidTransition(WorkflowError):
    """The request's current status does not allow the operation."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)

    def extra(self) -> dict:
        return {"current_status": self.current_status}


class InsufficientStock(WorkflowError):
    """
    Raised when approving a request would drive an item's stock negative.
    The whole approval is rolled back before this is raised.
    """

    def __init__(self, item_id: int, item_name: str, requested: int, available: int):
        self.item_id = item_id
        self.item_name = item_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {item_name!r}: "
            f"requested {requested}, available {available}"
        )

    def extra(self) -> dict:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "requested": self.requested,
            "available": self.available,
        }


class NotFound(WorkflowError):
    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
