"""Error taxonomy for the budget control domain.

Every error carries a human-readable ``reason``.  The HTTP layer maps
``ValidationError`` to 400, ``NotFoundError`` to 404 and
``PreconditionFailed`` to 409.  Partial completion of batch operations is
never raised; it is reported in the operation's result.
"""

from __future__ import annotations


class PlanningError(Exception):
    """Base class for domain errors."""

    status_code = 500

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.reason,
                "status_code": self.status_code}


class ValidationError(PlanningError, ValueError):
    """Malformed input, rejected before anything is written."""

    status_code = 400

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field


class PreconditionFailed(PlanningError):
    """The operation is not allowed in the entity's current state."""

    status_code = 409


class NotFoundError(PlanningError, LookupError):
    """A referenced entity does not exist or is in the trash."""

    status_code = 404

    def __init__(self, entity: str, entity_id) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id
