"""Pydantic schemas for Gmail and Google Calendar provider calls."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EmailAttachment(BaseModel):
    """File attached to an outgoing email (read from ``file_path``)."""

    filename: str
    file_path: str
    content_type: str = "application/octet-stream"


class EmailMessage(BaseModel):
    """Email message to send via Gmail API."""

    to: list[str]
    subject: str
    body_html: str
    body_text: str | None = None
    thread_id: str | None = None
    in_reply_to: str | None = None
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    attachments: list[EmailAttachment] = Field(default_factory=list)


class SentEmailResult(BaseModel):
    """Result from sending an email via Gmail API."""

    message_id: str
    thread_id: str
    label_ids: list[str] = Field(default_factory=list)


class CalendarEventRequest(BaseModel):
    """Event payload for creating or updating a calendar event."""

    title: str
    start: datetime
    end: datetime
    attendees: list[str] = Field(default_factory=list)
    location: str | None = None
    description: str | None = None


class CalendarEventResult(BaseModel):
    """Result of a calendar create/update call."""

    event_id: str
    html_link: str | None = None
    status: str = "confirmed"
