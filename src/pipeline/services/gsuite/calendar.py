"""Google Calendar service for creating, updating and cancelling meetings.

Uses GSuiteAuthManager for delegated credentials. Calls are wrapped in
asyncio.to_thread() and send invitation updates to all attendees.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.pipeline.services.gsuite.auth import GSuiteAuthManager
from src.pipeline.services.gsuite.models import CalendarEventRequest, CalendarEventResult

logger = structlog.get_logger(__name__)


def _event_body(request: CalendarEventRequest) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": request.title,
        "start": {"dateTime": request.start.isoformat()},
        "end": {"dateTime": request.end.isoformat()},
        "attendees": [{"email": email} for email in request.attendees],
    }
    if request.location:
        body["location"] = request.location
    if request.description:
        body["description"] = request.description
    return body


class GoogleCalendarService:
    """Google Calendar API v3 writes on the seller's primary calendar.

    Args:
        auth_manager: GSuiteAuthManager instance (shared with Gmail).
        calendar_id: Calendar to write to.
    """

    def __init__(self, auth_manager: GSuiteAuthManager, calendar_id: str = "primary") -> None:
        self._auth_manager = auth_manager
        self._calendar_id = calendar_id

    async def create_event(self, request: CalendarEventRequest) -> CalendarEventResult:
        service = self._auth_manager.get_calendar_service()

        def _create() -> dict:
            return (
                service.events()
                .insert(
                    calendarId=self._calendar_id,
                    body=_event_body(request),
                    sendUpdates="all",
                )
                .execute()
            )

        logger.info("creating_calendar_event", title=request.title, start=request.start.isoformat())
        result = await asyncio.to_thread(_create)
        return CalendarEventResult(
            event_id=result.get("id", ""),
            html_link=result.get("htmlLink"),
            status=result.get("status", "confirmed"),
        )

    async def update_event(
        self, event_id: str, request: CalendarEventRequest
    ) -> CalendarEventResult:
        service = self._auth_manager.get_calendar_service()

        def _patch() -> dict:
            return (
                service.events()
                .patch(
                    calendarId=self._calendar_id,
                    eventId=event_id,
                    body=_event_body(request),
                    sendUpdates="all",
                )
                .execute()
            )

        logger.info("updating_calendar_event", event_id=event_id)
        result = await asyncio.to_thread(_patch)
        return CalendarEventResult(
            event_id=result.get("id", event_id),
            html_link=result.get("htmlLink"),
            status=result.get("status", "confirmed"),
        )

    async def cancel_event(self, event_id: str) -> None:
        service = self._auth_manager.get_calendar_service()

        def _delete() -> None:
            service.events().delete(
                calendarId=self._calendar_id,
                eventId=event_id,
                sendUpdates="all",
            ).execute()

        logger.info("cancelling_calendar_event", event_id=event_id)
        await asyncio.to_thread(_delete)
