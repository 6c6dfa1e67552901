"""Action type registry: the single lookup from ActionType to handler.

Agents and the execution service never branch on action type names; they
resolve the handler here. The registry also renders the handler catalogue
used in proposal prompts.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.pipeline.actions.handlers import DEFAULT_HANDLERS, ActionHandler, HandlerDependencies
from src.pipeline.actions.schemas import ActionType

logger = structlog.get_logger(__name__)


class ActionTypeRegistry:
    """Registry of action handlers keyed by ActionType."""

    def __init__(self) -> None:
        self._handlers: dict[ActionType, ActionHandler] = {}

    def register(self, handler: ActionHandler) -> None:
        """Register a handler for its action type.

        Raises:
            ValueError: If a handler for the same type is already registered.
        """
        if handler.action_type in self._handlers:
            raise ValueError(f"Handler already registered: {handler.action_type.value}")
        self._handlers[handler.action_type] = handler
        logger.debug("action_handler_registered", action_type=handler.action_type.value)

    def get_handler(self, action_type: ActionType | str) -> ActionHandler | None:
        try:
            key = ActionType(action_type)
        except ValueError:
            return None
        return self._handlers.get(key)

    def handlers(self) -> list[ActionHandler]:
        return list(self._handlers.values())

    def prompt_handlers(self) -> list[ActionHandler]:
        """Handlers advertised to the oracle as available capabilities."""
        return [h for h in self._handlers.values() if h.include_in_prompt]

    def describe_for_prompt(self) -> str:
        """Bullet list of advertised action types with their details schema keys."""
        lines = []
        for handler in self.prompt_handlers():
            fields = ", ".join(handler.details_schema().get("properties", {}))
            lines.append(f"- {handler.action_type.value}: {handler.description} (details: {fields})")
        return "\n".join(lines)

    def details_schemas(self) -> dict[str, Any]:
        """Details JSON schema per registered action type."""
        return {h.action_type.value: h.details_schema() for h in self._handlers.values()}

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def create_action_registry(deps: HandlerDependencies) -> ActionTypeRegistry:
    """Build a registry with one instance of every built-in handler."""
    registry = ActionTypeRegistry()
    for handler_cls in DEFAULT_HANDLERS:
        registry.register(handler_cls(deps))
    logger.info("action_registry_created", handler_count=len(registry))
    return registry
