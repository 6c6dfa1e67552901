"""Google Workspace providers used by action executors.

Gmail sends (and threads) outbound email; Google Calendar creates, updates
and cancels meetings. Both authenticate with a service account using
domain-wide delegation to act as the seller.
"""

from src.pipeline.services.gsuite.auth import GSuiteAuthManager
from src.pipeline.services.gsuite.calendar import GoogleCalendarService
from src.pipeline.services.gsuite.gmail import GmailService
from src.pipeline.services.gsuite.models import (
    CalendarEventRequest,
    CalendarEventResult,
    EmailAttachment,
    EmailMessage,
    SentEmailResult,
)

__all__ = [
    "CalendarEventRequest",
    "CalendarEventResult",
    "EmailAttachment",
    "EmailMessage",
    "GmailService",
    "GoogleCalendarService",
    "GSuiteAuthManager",
    "SentEmailResult",
]
