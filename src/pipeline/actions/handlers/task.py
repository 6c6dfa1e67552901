"""TASK handler: a to-do for the seller, due on a given date."""

from __future__ import annotations

from datetime import date, time, datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.handlers.base import (
    ActionHandler,
    activity_result,
    today,
    tomorrow,
)
from src.pipeline.actions.repository import new_id
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    Activity,
    ActivityKind,
    ActivityStatus,
    ActivityType,
    ProposedAction,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)

# Tasks are due at the start of the business day
TASK_DUE_TIME = time(9, 0)


class TaskDetails(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    due_date: date = Field(description="YYYY-MM-DD")
    description: str | None = None


class ComposedTaskContent(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=10, max_length=2000)


class TaskHandler(ActionHandler):
    action_type = ActionType.TASK
    description = "Create a follow-up task for the seller with a due date."
    details_model = TaskDetails
    composed_model = ComposedTaskContent
    include_in_prompt = False

    def check_details(
        self,
        details: TaskDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> TaskDetails:
        if details.due_date < today():
            return details.model_copy(update={"due_date": tomorrow()})
        return details

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = TaskDetails.model_validate(action.details)
        activity = Activity(
            id=new_id(),
            kind=ActivityKind.ACTIVITY,
            activity_type=ActivityType.TASK.value,
            opportunity_id=action.opportunity_id,
            status=ActivityStatus.TO_DO.value,
            title=details.title,
            description=details.description,
            date=datetime.combine(details.due_date, TASK_DUE_TIME, tzinfo=timezone.utc),
            metadata={"source_action_id": action.id},
            created_by=actor_id,
        )
        await self.repository.create_activity(activity, session=session)
        logger.info("task_created", action_id=action.id, activity_id=activity.id)
        return activity_result(
            "task_created",
            activity.id,
            ActivityKind.ACTIVITY,
            due_date=details.due_date.isoformat(),
        )
