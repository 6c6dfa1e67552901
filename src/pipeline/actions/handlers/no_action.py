"""NO_ACTION handler: deliberately wait and review the deal later."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.handlers.base import ActionHandler, today, tomorrow
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    ProposedAction,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class NoActionDetails(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)
    next_review_date: date | None = None


class NoActionHandler(ActionHandler):
    action_type = ActionType.NO_ACTION
    description = (
        "Take no action now because the ball is in the customer's court or "
        "timing is wrong. Set a date to review the deal again."
    )
    details_model = NoActionDetails

    def check_details(
        self,
        details: NoActionDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> NoActionDetails:
        if details.next_review_date is None or details.next_review_date <= today():
            return details.model_copy(update={"next_review_date": tomorrow()})
        return details

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = NoActionDetails.model_validate(action.details)
        logger.info(
            "no_action_logged",
            action_id=action.id,
            next_review_date=str(details.next_review_date),
        )
        return {
            "type": "no_action_logged",
            "reason": details.reason,
            "next_review_date": (
                details.next_review_date.isoformat() if details.next_review_date else None
            ),
        }
