"""Content composition for validated actions.

ContentComposer asks each action's handler for final content and merges it
over the draft details; the handler then re-checks the merged details.
Compositions run concurrently and fail independently: an action whose
composition raises or is rejected is returned with its draft details.

LOOKUP actions whose answer is empty, low-confidence or a "not found"
phrase are converted into a research TASK.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.pipeline.actions.errors import DetailValidationError
from src.pipeline.actions.handlers.base import tomorrow
from src.pipeline.actions.registry import ActionTypeRegistry
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    CandidateAction,
)

logger = structlog.get_logger(__name__)

NOT_FOUND_PHRASES: tuple[str, ...] = (
    "no information found",
    "could not find",
    "unable to locate",
    "no data available",
    "not found",
    "no results",
    "not accessible",
)

# Threading ids are owned by validation, never by composition
PROTECTED_KEYS = frozenset({"reply_to_message_id", "thread_id"})


def _nested(value: Any, key: str) -> Any:
    if isinstance(value, dict) and isinstance(value.get(key), dict):
        return value[key]
    return value


def unwrap_composed_result(composed: Any) -> dict[str, Any] | None:
    """Normalize a composition payload to its content dict.

    Walks at most two levels of ``result`` nesting. A ``schema_result`` dict
    found at the innermost level, the first level or the top wins over the
    unwrapped object itself.
    """
    if not isinstance(composed, dict):
        return None
    level1 = _nested(composed, "result")
    level2 = _nested(level1, "result")
    for candidate in (level2, level1, composed):
        schema_result = candidate.get("schema_result")
        if isinstance(schema_result, dict):
            return schema_result
    return level2


def is_lookup_useful(content: dict[str, Any], min_confidence: float = 0.3) -> bool:
    answer = (content.get("answer") or "").strip()
    if not answer:
        return False
    confidence = content.get("confidence")
    if isinstance(confidence, (int, float)) and confidence < min_confidence:
        return False
    lowered = answer.lower()
    return not any(phrase in lowered for phrase in NOT_FOUND_PHRASES)


class ContentComposer:
    """Fills in final content for actions through their handlers.

    Args:
        registry: Action type registry.
        min_lookup_confidence: Lookup answers below this become research tasks.
    """

    def __init__(self, registry: ActionTypeRegistry, min_lookup_confidence: float = 0.3) -> None:
        self._registry = registry
        self._min_lookup_confidence = min_lookup_confidence

    async def compose_actions(
        self, actions: list[CandidateAction], context: ActionPipelineContext
    ) -> list[CandidateAction]:
        """Compose all actions concurrently, preserving order."""
        if not actions:
            return []
        composed = await asyncio.gather(
            *(self.compose_action(action, context) for action in actions)
        )
        logger.info(
            "content_composition_complete",
            opportunity_id=context.opportunity.id,
            actions=len(composed),
        )
        return list(composed)

    async def compose_action(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> CandidateAction:
        """Compose one action. Never raises; failures keep the draft."""
        handler = self._registry.get_handler(action.type)
        if handler is None:
            return action
        try:
            content = unwrap_composed_result(await handler.compose_content(action, context))
            if action.type == ActionType.LOOKUP and content is not None:
                if not is_lookup_useful(content, self._min_lookup_confidence):
                    return await self._convert_lookup_to_task(action, context)
        except Exception:
            logger.warning(
                "content_composition_failed",
                action_type=action.type.value,
                action_id=action.id,
                exc_info=True,
            )
            return action

        if not content:
            return action
        patch = {k: v for k, v in content.items() if k not in PROTECTED_KEYS}
        merged = action.model_copy(update={"details": {**action.details, **patch}})
        try:
            details = handler.check_composed(merged, context)
        except DetailValidationError as exc:
            logger.info(
                "composed_content_rejected",
                action_type=action.type.value,
                action_id=action.id,
                reason=str(exc)[:300],
            )
            return action
        return merged.model_copy(update={"details": details})

    async def _convert_lookup_to_task(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> CandidateAction:
        query = action.details.get("query") or "Information needed"
        task_details: dict[str, Any] = {
            "title": f"Research: {query}"[:100],
            "description": action.details.get("query")
            or "Manual research required: automated lookup found no useful information",
            "due_date": tomorrow().isoformat(),
        }
        task = action.model_copy(
            update={
                "type": ActionType.TASK,
                "details": task_details,
                "converted_from_lookup": True,
            }
        )
        logger.info("lookup_converted_to_task", action_id=action.id, query=query)

        task_handler = self._registry.get_handler(ActionType.TASK)
        content = None
        if task_handler is not None:
            try:
                content = unwrap_composed_result(
                    await task_handler.compose_content(task, context)
                )
            except Exception:
                logger.warning("lookup_task_composition_failed", action_id=action.id, exc_info=True)

        details = {**task_details, **(content or {}), "converted_from_lookup": True}
        return task.model_copy(update={"details": details})
