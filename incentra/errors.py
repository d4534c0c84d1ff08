"""Exception types for Incentra.

Every failure a caller can act on is one of these. The API layer maps them to
the ``{success: false, message, errors}`` envelope using ``status_code``; raw
store exceptions are never surfaced.
"""

from __future__ import annotations

from typing import Any


class IncentraError(Exception):
    """Base exception for all Incentra errors.

    Attributes:
        message: Human-readable error description
        details: Additional error context
    """

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(IncentraError):
    """Malformed or missing input: a bad field value or an enum outside its allowed set."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: str | None = None,
        allowed_values: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if allowed_values is not None:
            details["allowed_values"] = list(allowed_values)
        super().__init__(message, details)
        self.field = field
        self.allowed_values = allowed_values


class ConfigurationError(IncentraError):
    """A required policy value is absent for the date in question.

    Never caught and zeroed: it must stop the submission or approval flow.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        policy_scope: str | None = None,
        as_of: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if policy_scope:
            details["policy_scope"] = policy_scope
        if as_of:
            details["as_of"] = as_of
        super().__init__(message, details)
        self.policy_scope = policy_scope


class PermissionDeniedError(IncentraError):
    """Caller lacks the role, ownership or assignment an action requires."""

    status_code = 403

    def __init__(
        self,
        message: str,
        capability: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if capability:
            details["capability"] = capability
        super().__init__(message, details)
        self.capability = capability


class NotFoundError(IncentraError):
    """A referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity.replace('_', ' ').capitalize()} not found",
            {"entity": entity, "entity_id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class StateError(IncentraError):
    """The operation is not legal for the entity's current status."""

    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        attempted: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if current_status:
            details["current_status"] = current_status
        if attempted:
            details["attempted"] = attempted
        super().__init__(message, details)
        self.current_status = current_status
        self.attempted = attempted


class InvalidTransitionError(StateError):
    """A status edge that the entity's transition table does not list."""

    def __init__(self, entity: str, current_status: str, attempted: str, allowed: list[str]):
        super().__init__(
            f"Cannot move {entity} from '{current_status}' to '{attempted}'",
            current_status=current_status,
            attempted=attempted,
            details={"entity": entity, "allowed": allowed},
        )
