"""Base class and shared helpers for action type handlers.

Each action kind is implemented by one ActionHandler subclass that supplies:
- ``details_model``: Pydantic model of the type-specific details payload
- ``validate_details``: ground-truth checks against the pipeline context
- ``compose_content``: oracle call that fills in final content (optional)
- ``execute``: the side-effecting work, run inside the caller's transaction

Handlers receive their collaborators through HandlerDependencies so tests
can substitute mocks for the repository, oracle and providers.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Any, ClassVar

import structlog
from pydantic import BaseModel, ValidationError

from src.pipeline.actions.errors import DetailValidationError
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    ActivityKind,
    CandidateAction,
    ProposedAction,
    utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.pipeline.actions.repository import ActionRepository
    from src.pipeline.services.gsuite import GmailService, GoogleCalendarService
    from src.pipeline.services.oracle import ReasoningOracle

logger = structlog.get_logger(__name__)


@dataclass
class HandlerDependencies:
    """Collaborators shared by all handlers.

    Providers are optional: a handler that needs a missing provider fails
    at execution time with ExecutionError.
    """

    repository: ActionRepository
    oracle: ReasoningOracle
    email_provider: GmailService | None = None
    calendar_provider: GoogleCalendarService | None = None


# ── Helpers ─────────────────────────────────────────────────────────────────


def today() -> date:
    return utc_now().date()


def tomorrow() -> date:
    return today() + timedelta(days=1)


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def filter_emails(addresses: list[str], valid_emails: set[str]) -> list[str]:
    """Keep addresses present in ``valid_emails``, lowercased and deduplicated."""
    kept: list[str] = []
    for address in addresses:
        normalized = normalize_email(address)
        if normalized and normalized in valid_emails and normalized not in kept:
            kept.append(normalized)
    return kept


def context_summary(context: ActionPipelineContext, activity_limit: int = 10) -> str:
    """Compact textual rendering of the context for composition prompts."""
    opportunity = context.opportunity
    lines = [
        f"Opportunity: {opportunity.name} (stage: {opportunity.stage_name})",
    ]
    if opportunity.summary:
        lines.append(f"Summary: {opportunity.summary}")
    if context.contacts:
        lines.append("Contacts:")
        for entry in context.contacts:
            contact = entry.contact
            role = entry.intelligence.current_role or "unknown role"
            lines.append(
                f"- {contact.full_name} <{contact.primary_email or 'no email'}>"
                f", {contact.title or 'no title'}, {role}"
            )
    if context.recent_activities:
        lines.append("Recent activity:")
        for activity in context.recent_activities[:activity_limit]:
            lines.append(
                f"- [{activity.kind.value}] {activity.date.date().isoformat()} "
                f"{activity.display_summary}"
            )
    return "\n".join(lines)


# ── Handler ─────────────────────────────────────────────────────────────────


class ActionHandler(ABC):
    """Strategy for one action kind."""

    action_type: ClassVar[ActionType]
    description: ClassVar[str]
    details_model: ClassVar[type[BaseModel]]
    composed_model: ClassVar[type[BaseModel] | None] = None
    include_in_prompt: ClassVar[bool] = True

    def __init__(self, deps: HandlerDependencies) -> None:
        self._deps = deps

    @property
    def repository(self) -> ActionRepository:
        return self._deps.repository

    @property
    def oracle(self) -> ReasoningOracle:
        return self._deps.oracle

    @classmethod
    def details_schema(cls) -> dict[str, Any]:
        """JSON schema of the details payload."""
        return cls.details_model.model_json_schema()

    def parse_details(self, details: dict[str, Any]) -> Any:
        """Validate ``details`` against the details model.

        Raises:
            DetailValidationError: If the payload does not fit the model.
        """
        try:
            return self.details_model.model_validate(details)
        except ValidationError as exc:
            raise DetailValidationError(
                f"Invalid {self.action_type.value} details: {exc}"
            ) from exc

    def validate_details(
        self,
        action: CandidateAction | ProposedAction,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> dict[str, Any]:
        """Validate and sanitize an action's details against the context.

        Args:
            action: Candidate or persisted action carrying ``details``.
            context: Pipeline context snapshot.
            valid_emails: Lowercased contact emails of the opportunity.
            valid_activity_ids: Ids of threaded email activities.

        Returns:
            The sanitized details as a JSON-compatible dict.

        Raises:
            DetailValidationError: If the details are rejected.
        """
        parsed = self.parse_details(action.details)
        checked = self.check_details(parsed, context, valid_emails, valid_activity_ids)
        return checked.model_dump(mode="json")

    def check_details(
        self,
        details: Any,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> Any:
        """Type-specific ground-truth checks. Returns the sanitized model."""
        return details

    def check_composed(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> dict[str, Any]:
        """Re-check details after composed content was merged over them.

        Handlers whose composition may rewrite validated fields override
        this.

        Raises:
            DetailValidationError: If the merged details are rejected.
        """
        return action.details

    def build_compose_messages(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> list[dict[str, str]]:
        """Prompt messages for content composition."""
        return [
            {
                "role": "system",
                "content": (
                    "You are a sales assistant writing the final content for an "
                    f"approved {self.action_type.value} action. Be concise, specific "
                    "and grounded in the context provided."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"{context_summary(context)}\n\n"
                    f"Action reasoning: {action.reasoning}\n"
                    f"Action strategy: {action.action_strategy or 'none'}\n"
                    f"Draft details:\n{json.dumps(action.details, indent=2, default=str)}"
                ),
            },
        ]

    async def compose_content(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> dict[str, Any] | None:
        """Ask the oracle for final content. Returns None when not composed."""
        if self.composed_model is None:
            return None
        composed = await self.oracle.generate(
            self.build_compose_messages(action, context),
            self.composed_model,
            agent_name=f"compose_{self.action_type.value.lower()}",
            input_variables={
                "opportunity_id": context.opportunity.id,
                "action_type": self.action_type.value,
            },
        )
        return composed.model_dump(mode="json", exclude_none=True)

    @abstractmethod
    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        """Perform the action's side effect.

        Returns:
            Result dict. When it contains ``activity_id`` and
            ``activity_kind`` the caller records a resulting activity.

        Raises:
            ExecutionError: If the side effect cannot be performed.
        """


def activity_result(
    result_type: str, activity_id: str, kind: ActivityKind, **extra: Any
) -> dict[str, Any]:
    """Executor result dict carrying a resulting activity reference."""
    return {
        "type": result_type,
        "activity_id": activity_id,
        "activity_kind": kind.value,
        **extra,
    }
