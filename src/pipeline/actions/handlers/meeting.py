"""MEETING handler: create, update or cancel a calendar meeting.

update and cancel target an existing calendar activity from the context's
future events. Only create produces a new resulting activity.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.errors import DetailValidationError, ExecutionError
from src.pipeline.actions.handlers.base import (
    ActionHandler,
    activity_result,
    ensure_utc,
    filter_emails,
)
from src.pipeline.actions.repository import new_id
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    Activity,
    ActivityKind,
    ActivityStatus,
    ProposedAction,
)
from src.pipeline.services.gsuite import CalendarEventRequest

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class MeetingMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"


class MeetingDetails(BaseModel):
    mode: MeetingMode = MeetingMode.CREATE
    existing_calendar_activity_id: str | None = None
    title: str | None = Field(default=None, max_length=200)
    attendees: list[str] = Field(default_factory=list)
    duration: int | None = Field(default=None, ge=15, le=480, description="Minutes")
    scheduled_for: datetime | None = None
    location: str | None = None
    agenda: str | None = None


class ComposedMeetingContent(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    agenda: str = Field(min_length=10, max_length=3000)


class MeetingHandler(ActionHandler):
    action_type = ActionType.MEETING
    description = (
        "Schedule a new meeting with contacts, or update or cancel an upcoming "
        "meeting from the calendar."
    )
    details_model = MeetingDetails
    composed_model = ComposedMeetingContent

    def check_details(
        self,
        details: MeetingDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> MeetingDetails:
        if details.mode in (MeetingMode.UPDATE, MeetingMode.CANCEL):
            event_ids = {event.id for event in context.future_events}
            if details.existing_calendar_activity_id not in event_ids:
                raise DetailValidationError(
                    f"Meeting {details.mode.value} references unknown calendar activity "
                    f"{details.existing_calendar_activity_id!r}"
                )
        if details.mode == MeetingMode.CANCEL:
            return details

        missing = [
            name
            for name in ("title", "duration", "scheduled_for")
            if getattr(details, name) is None
        ]
        if missing:
            raise DetailValidationError(f"Meeting is missing {', '.join(missing)}")
        attendees = filter_emails(details.attendees, valid_emails)
        if not attendees:
            raise DetailValidationError(
                f"No valid attendees among {details.attendees}"
            )
        return details.model_copy(
            update={
                "attendees": attendees,
                "scheduled_for": ensure_utc(details.scheduled_for),
            }
        )

    def _event_request(self, details: MeetingDetails) -> CalendarEventRequest:
        start = ensure_utc(details.scheduled_for)
        return CalendarEventRequest(
            title=details.title or "Meeting",
            start=start,
            end=start + timedelta(minutes=details.duration or 30),
            attendees=details.attendees,
            location=details.location,
            description=details.agenda,
        )

    async def _existing_event(
        self, details: MeetingDetails, session: AsyncSession
    ) -> Activity:
        if not details.existing_calendar_activity_id:
            raise ExecutionError(f"Meeting {details.mode.value} needs a calendar activity")
        existing = await self.repository.get_activity(
            details.existing_calendar_activity_id, session=session
        )
        if existing is None:
            raise ExecutionError(
                f"Calendar activity {details.existing_calendar_activity_id} not found"
            )
        return existing

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = MeetingDetails.model_validate(action.details)
        provider = self._deps.calendar_provider
        if provider is None:
            raise ExecutionError("No calendar provider configured")

        if details.mode == MeetingMode.CANCEL:
            existing = await self._existing_event(details, session)
            if existing.provider_event_id:
                try:
                    await provider.cancel_event(existing.provider_event_id)
                except Exception as exc:
                    raise ExecutionError(f"Calendar cancel failed: {exc}") from exc
            await self.repository.update_activity(
                existing.id, {"status": ActivityStatus.CANCELLED.value}, session=session
            )
            logger.info("meeting_cancelled", action_id=action.id, activity_id=existing.id)
            return {"type": "meeting_cancelled", "calendar_activity_id": existing.id}

        request = self._event_request(details)

        if details.mode == MeetingMode.UPDATE:
            existing = await self._existing_event(details, session)
            if existing.provider_event_id:
                try:
                    await provider.update_event(existing.provider_event_id, request)
                except Exception as exc:
                    raise ExecutionError(f"Calendar update failed: {exc}") from exc
            await self.repository.update_activity(
                existing.id,
                {
                    "title": request.title,
                    "description": request.description,
                    "start_time": request.start,
                    "end_time": request.end,
                    "date": request.start,
                    "attendees": request.attendees,
                    "location": request.location,
                },
                session=session,
            )
            logger.info("meeting_updated", action_id=action.id, activity_id=existing.id)
            return {"type": "meeting_updated", "calendar_activity_id": existing.id}

        try:
            event = await provider.create_event(request)
        except Exception as exc:
            raise ExecutionError(f"Calendar create failed: {exc}") from exc

        activity = Activity(
            id=new_id(),
            kind=ActivityKind.CALENDAR,
            opportunity_id=action.opportunity_id,
            status=ActivityStatus.SCHEDULED.value,
            title=request.title,
            description=request.description,
            date=request.start,
            start_time=request.start,
            end_time=request.end,
            attendees=request.attendees,
            location=request.location,
            provider_event_id=event.event_id,
            metadata={"source_action_id": action.id, "html_link": event.html_link},
            created_by=actor_id,
        )
        await self.repository.create_activity(activity, session=session)
        logger.info(
            "meeting_created",
            action_id=action.id,
            activity_id=activity.id,
            event_id=event.event_id,
        )
        return activity_result(
            "meeting_created",
            activity.id,
            ActivityKind.CALENDAR,
            event_id=event.event_id,
        )
