"""LINKEDIN_MESSAGE handler: a LinkedIn message for the seller to send."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.errors import DetailValidationError, ExecutionError
from src.pipeline.actions.handlers.base import (
    ActionHandler,
    activity_result,
    ensure_utc,
    normalize_email,
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
    utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class LinkedInDetails(BaseModel):
    contact_email: str
    message: str | None = Field(default=None, max_length=3000)
    scheduled_for: datetime | None = None


class ComposedLinkedInContent(BaseModel):
    message: str = Field(min_length=10, max_length=3000)


class LinkedInMessageHandler(ActionHandler):
    action_type = ActionType.LINKEDIN_MESSAGE
    description = (
        "Send a LinkedIn message to a contact on the opportunity. The seller "
        "sends it manually."
    )
    details_model = LinkedInDetails
    composed_model = ComposedLinkedInContent

    def check_details(
        self,
        details: LinkedInDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> LinkedInDetails:
        email = normalize_email(details.contact_email)
        if not email or email not in valid_emails:
            raise DetailValidationError(
                f"LinkedIn contact {details.contact_email!r} is not a contact on the opportunity"
            )
        return details.model_copy(
            update={
                "contact_email": email,
                "scheduled_for": ensure_utc(details.scheduled_for) or utc_now(),
            }
        )

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = LinkedInDetails.model_validate(action.details)
        if not details.message:
            raise ExecutionError(f"LinkedIn action {action.id} has no message")
        contact = await self.repository.find_contact_by_email(
            details.contact_email, session=session
        )
        if contact is None:
            raise ExecutionError(f"No contact found for {details.contact_email}")

        activity = Activity(
            id=new_id(),
            kind=ActivityKind.ACTIVITY,
            activity_type=ActivityType.LINKEDIN.value,
            opportunity_id=action.opportunity_id,
            status=ActivityStatus.TO_DO.value,
            title=f"LinkedIn message to {contact.full_name}",
            description=details.message,
            date=ensure_utc(details.scheduled_for) or utc_now(),
            contact_ids=[contact.id],
            metadata={
                "source_action_id": action.id,
                "linkedin_profile": contact.linkedin_profile,
            },
            created_by=actor_id,
        )
        await self.repository.create_activity(activity, session=session)
        logger.info("linkedin_task_created", action_id=action.id, activity_id=activity.id)
        return activity_result("linkedin_task_created", activity.id, ActivityKind.ACTIVITY)
