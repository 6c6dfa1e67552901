"""Delegated Google API clients for the seller's mailbox and calendar.

A single service account with domain-wide delegation impersonates the
seller. Built API resources are cached per (api, mailbox).
"""

from __future__ import annotations

from typing import Any, NamedTuple

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = structlog.get_logger(__name__)


class GoogleApi(NamedTuple):
    name: str
    version: str
    scopes: tuple[str, ...]


GMAIL = GoogleApi("gmail", "v1", ("https://www.googleapis.com/auth/gmail.send",))
CALENDAR = GoogleApi("calendar", "v3", ("https://www.googleapis.com/auth/calendar.events",))


class GSuiteAuthManager:
    """Builds and caches delegated Gmail and Calendar resources.

    Args:
        service_account_file: Path to the service account JSON key.
        delegated_user_email: Seller mailbox to impersonate by default.
    """

    def __init__(self, service_account_file: str, delegated_user_email: str) -> None:
        self._service_account_file = service_account_file
        self._delegated_user_email = delegated_user_email
        self._service_cache: dict[str, Any] = {}

    @property
    def delegated_user_email(self) -> str:
        return self._delegated_user_email

    def _resource(self, api: GoogleApi, user_email: str | None) -> Any:
        mailbox = user_email or self._delegated_user_email
        cache_key = f"{api.name}:{mailbox}"
        if cache_key not in self._service_cache:
            logger.info("building_google_service", api=api.name, user_email=mailbox)
            credentials = service_account.Credentials.from_service_account_file(
                self._service_account_file, scopes=list(api.scopes)
            ).with_subject(mailbox)
            self._service_cache[cache_key] = build(
                api.name, api.version, credentials=credentials, cache_discovery=False
            )
        return self._service_cache[cache_key]

    def get_gmail_service(self, user_email: str | None = None) -> Any:
        return self._resource(GMAIL, user_email)

    def get_calendar_service(self, user_email: str | None = None) -> Any:
        return self._resource(CALENDAR, user_email)
