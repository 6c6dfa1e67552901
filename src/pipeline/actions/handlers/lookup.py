"""LOOKUP handler: answer a research question about the deal.

The answer is produced during composition. When composition finds nothing
useful the composer converts the action into a research TASK.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.handlers.base import ActionHandler, context_summary
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    CandidateAction,
    ProposedAction,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class LookupDetails(BaseModel):
    query: str = Field(min_length=5, max_length=300)
    answer: str | None = None
    sources: list[str] = Field(default_factory=list)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ComposedLookupContent(BaseModel):
    answer: str = ""
    sources: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class LookupHandler(ActionHandler):
    action_type = ActionType.LOOKUP
    description = "Research a question about the account, deal or contacts."
    details_model = LookupDetails
    composed_model = ComposedLookupContent
    include_in_prompt = False

    def build_compose_messages(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> list[dict[str, str]]:
        return [
            {
                "role": "system",
                "content": (
                    "You are a research assistant. Answer the question using only "
                    "the context provided and your general knowledge. If you cannot "
                    "find the answer say so and set confidence to 0."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"{context_summary(context)}\n\n"
                    f"Question: {action.details.get('query', '')}"
                ),
            },
        ]

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = LookupDetails.model_validate(action.details)
        logger.info("lookup_recorded", action_id=action.id, query=details.query)
        return {
            "type": "lookup_recorded",
            "query": details.query,
            "answer": details.answer,
            "sources": details.sources,
        }
