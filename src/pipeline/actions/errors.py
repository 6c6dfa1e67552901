"""Exception taxonomy for the action pipeline.

- NotFoundError: opportunity, action or stage absent; surfaced to callers.
- StateConflictError: operation on an action in the wrong status; surfaced.
- InvalidOracleOutputError: oracle output failed parsing or schema checks;
  recovered by retry and fallback inside the agents.
- DetailValidationError: a handler rejected candidate details; the candidate
  or decision is dropped.
- ExecutionError: a handler's side-effecting call failed.
"""

from __future__ import annotations


class ActionPipelineError(Exception):
    """Base class for action pipeline errors."""


class NotFoundError(ActionPipelineError, LookupError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class StateConflictError(ActionPipelineError, ValueError):
    """Raised when an action is not in the status an operation requires."""

    def __init__(self, action_id: str, status: str, message: str | None = None) -> None:
        self.action_id = action_id
        self.status = status
        super().__init__(message or f"Action {action_id} has conflicting status: {status}")


class InvalidOracleOutputError(ActionPipelineError, ValueError):
    """Raised when oracle output cannot be parsed or fails validation."""


class DetailValidationError(ActionPipelineError, ValueError):
    """Raised by a handler when candidate details are rejected."""


class ExecutionError(ActionPipelineError, RuntimeError):
    """Raised when a handler fails to perform its side effect."""
