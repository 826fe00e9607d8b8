"""
Typed failures returned by every engine operation.

Each error carries a stable ``error_code`` and an HTTP-ish ``status_code``
so the API layer can translate it without knowing the individual classes.
The message is informational only; callers branch on the type or code.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine failures."""

    error_code = "ERR_ENGINE"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(EngineError):
    """Malformed or out-of-range input."""

    error_code = "ERR_VALIDATION"
    status_code = 422


class InvalidStateError(EngineError):
    """Operation not legal from the entity's current status."""

    error_code = "ERR_INVALID_STATE"
    status_code = 409


class PolicyViolationError(EngineError):
    """A business rule blocks the action; ``rule`` names which one."""

    error_code = "ERR_POLICY"
    status_code = 409

    def __init__(self, rule: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.rule = rule
        super().__init__(message, {"rule": rule, **(details or {})})


class CapacityExceededError(EngineError):
    """Lost the race for the last seat; retry against another trip."""

    error_code = "ERR_CAPACITY"
    status_code = 409


class AlreadyRespondedError(EngineError):
    """Someone already answered; safe to treat as a no-op by the caller."""

    error_code = "ERR_ALREADY_RESPONDED"
    status_code = 409


class DuplicateArrivalError(EngineError):
    error_code = "ERR_DUPLICATE_ARRIVAL"
    status_code = 409


class IncompleteRosterError(EngineError):
    """Departure attempted with participants neither met nor cancelled."""

    error_code = "ERR_INCOMPLETE_ROSTER"
    status_code = 409

    def __init__(self, unresolved: list[int]):
        self.unresolved = unresolved
        super().__init__(
            f"{len(unresolved)} participant(s) neither met nor cancelled",
            {"unresolved_participant_ids": unresolved},
        )


class TripNotLockedError(EngineError):
    error_code = "ERR_TRIP_NOT_LOCKED"
    status_code = 409


class NotFoundError(EngineError):
    error_code = "ERR_NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, {"resource": resource, "id": resource_id})


class AuthorizationError(EngineError):
    """Actor is not a party to the entity (or lacks the required role)."""

    error_code = "ERR_FORBIDDEN"
    status_code = 403


class LockTimeoutError(EngineError):
    """Could not obtain the entity locks in time; retryable."""

    error_code = "ERR_LOCK_TIMEOUT"
    status_code = 503
