"""Exceptions raised by the agent monitor.

Every failure a caller can recover from is a :class:`MonitorError` with a
machine-readable ``kind`` so a transport layer can map it to its own status
codes.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base exception for monitor operations."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class NotFoundError(MonitorError):
    """Raised when a referenced entity does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(MonitorError):
    """Raised when a state machine rejects the requested move."""

    kind = "invalid_transition"

    def __init__(
        self,
        entity: str,
        entity_id: str,
        current: str,
        target: str,
        detail: str | None = None,
    ) -> None:
        message = f"{entity} {entity_id}: cannot go from {current} to {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class ValidationError(MonitorError):
    """Raised when caller-supplied data violates a field constraint."""

    kind = "validation"


class ConflictError(MonitorError):
    """Raised when creating an entity whose id is already taken."""

    kind = "conflict"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} already exists: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id
