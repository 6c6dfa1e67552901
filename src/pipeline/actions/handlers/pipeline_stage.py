"""UPDATE_PIPELINE_STAGE handler: move the opportunity to another stage."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.errors import DetailValidationError, ExecutionError
from src.pipeline.actions.handlers.base import ActionHandler
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    ProposedAction,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class PipelineStageDetails(BaseModel):
    target_stage_id: str = Field(description="Id of a stage from the pipeline stage list")
    target_stage_name: str | None = None


class UpdatePipelineStageHandler(ActionHandler):
    action_type = ActionType.UPDATE_PIPELINE_STAGE
    description = (
        "Move the opportunity to a different pipeline stage when recent "
        "activity shows the deal has progressed or regressed."
    )
    details_model = PipelineStageDetails

    def check_details(
        self,
        details: PipelineStageDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> PipelineStageDetails:
        stage = next(
            (s for s in context.pipeline_stages if s.id == details.target_stage_id),
            None,
        )
        if stage is None:
            raise DetailValidationError(
                f"Stage {details.target_stage_id!r} is not in the opportunity's pipeline"
            )
        if stage.id == context.opportunity.stage_id:
            raise DetailValidationError(f"Opportunity is already in stage {stage.name!r}")
        return details.model_copy(update={"target_stage_name": stage.name})

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = PipelineStageDetails.model_validate(action.details)
        opportunity = await self.repository.get_opportunity(
            action.opportunity_id, session=session
        )
        if opportunity is None:
            raise ExecutionError(f"Opportunity {action.opportunity_id} not found")

        stages = await self.repository.list_pipeline_stages(
            opportunity.pipeline_id, session=session
        )
        target = next((s for s in stages if s.id == details.target_stage_id), None)
        if target is None:
            raise ExecutionError(
                f"Stage {details.target_stage_id} no longer exists in pipeline "
                f"{opportunity.pipeline_id}"
            )

        await self.repository.update_opportunity_stage(
            opportunity.id, target.id, session=session
        )
        logger.info(
            "pipeline_stage_updated",
            action_id=action.id,
            opportunity_id=opportunity.id,
            old_stage=opportunity.stage_name,
            new_stage=target.name,
        )
        return {
            "type": "pipeline_stage_updated",
            "old_stage_id": opportunity.stage_id,
            "old_stage_name": opportunity.stage_name,
            "new_stage_id": target.id,
            "new_stage_name": target.name,
        }
