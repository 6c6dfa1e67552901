"""CALL handler: schedule a phone call with a known contact."""

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


class CallDetails(BaseModel):
    contact_email: str
    scheduled_for: datetime | None = None
    purpose: str | None = Field(default=None, max_length=1000)


class ComposedCallContent(BaseModel):
    purpose: str = Field(min_length=10, max_length=1000)
    talking_points: list[str] = Field(default_factory=list)


class CallHandler(ActionHandler):
    action_type = ActionType.CALL
    description = "Schedule a phone call with a contact on the opportunity."
    details_model = CallDetails
    composed_model = ComposedCallContent

    def check_details(
        self,
        details: CallDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> CallDetails:
        email = normalize_email(details.contact_email)
        if not email or email not in valid_emails:
            raise DetailValidationError(
                f"Call contact {details.contact_email!r} is not a contact on the opportunity"
            )
        return details.model_copy(
            update={
                "contact_email": email,
                "scheduled_for": ensure_utc(details.scheduled_for),
            }
        )

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = CallDetails.model_validate(action.details)
        contact = await self.repository.find_contact_by_email(
            details.contact_email, session=session
        )
        if contact is None:
            raise ExecutionError(f"No contact found for {details.contact_email}")

        purpose = details.purpose or "Call"
        activity = Activity(
            id=new_id(),
            kind=ActivityKind.ACTIVITY,
            activity_type=ActivityType.CALL.value,
            opportunity_id=action.opportunity_id,
            status=ActivityStatus.SCHEDULED.value,
            title=f"Call with {contact.full_name}",
            description=purpose,
            date=ensure_utc(details.scheduled_for) or utc_now(),
            contact_ids=[contact.id],
            metadata={
                "source_action_id": action.id,
                "contact_email": details.contact_email,
                "talking_points": action.details.get("talking_points", []),
            },
            created_by=actor_id,
        )
        await self.repository.create_activity(activity, session=session)
        logger.info("call_scheduled", action_id=action.id, activity_id=activity.id)
        return activity_result("call_scheduled", activity.id, ActivityKind.ACTIVITY)
