"""Shared fixtures for action pipeline tests.

Provides:
- FakeRepository: in-memory stand-in for ActionRepository with the same
  async method signatures; ``transaction()`` restores a snapshot when the
  block raises, so rollback behavior is observable
- FakeOracle: scripted ReasoningOracle replacement keyed by agent name,
  with valid default content for every composition call
- A seeded opportunity ("opp-1") with two contacts, a threaded inbound
  email, a note and one upcoming meeting
- Registry, composer and agent fixtures wired with zero-delay retry policies
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.pipeline.actions.context import ContextAssembler
from src.pipeline.actions.errors import InvalidOracleOutputError
from src.pipeline.actions.execution import ActionExecutionService
from src.pipeline.actions.handlers import HandlerDependencies
from src.pipeline.actions.registry import create_action_registry
from src.pipeline.actions.schemas import (
    OPEN_STATUSES,
    ActionStatus,
    Activity,
    ActivityKind,
    ActivityStatus,
    ActivityType,
    Contact,
    ContactIntelligence,
    Opportunity,
    PipelineStage,
    ProposedAction,
    utc_now,
)
from src.pipeline.actions.service import ActionPipelineService
from src.pipeline.agents.composer import ContentComposer
from src.pipeline.agents.evaluation import EvaluationAgent
from src.pipeline.agents.proposal import ProposalAgent
from src.pipeline.config import Settings
from src.pipeline.services.gsuite import CalendarEventResult, SentEmailResult
from src.pipeline.services.retry import RetryPolicy

OPPORTUNITY_ID = "opp-1"
PIPELINE_ID = "pipe-1"
INBOUND_EMAIL_ID = "act-email-1"
INBOUND_MESSAGE_ID = "<msg-1@acme.com>"
INBOUND_THREAD_ID = "thread-1"
NOTE_ID = "act-note-1"
MEETING_ID = "evt-1"


# ── Fake repository ─────────────────────────────────────────────────────────


class FakeRepository:
    """In-memory ActionRepository. The ``session`` arguments are ignored."""

    def __init__(self) -> None:
        self.stages: dict[str, PipelineStage] = {}
        self.opportunities: dict[str, Opportunity] = {}
        self.contacts: dict[str, Contact] = {}
        self.intelligence: dict[tuple[str, str], ContactIntelligence] = {}
        self.activities: dict[str, Activity] = {}
        self.actions: dict[str, ProposedAction] = {}
        self.attachments: set[str] = set()
        self.locked_reads: list[str] = []
        self.savepoints = 0

    def _snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(
            {
                "stages": self.stages,
                "opportunities": self.opportunities,
                "contacts": self.contacts,
                "intelligence": self.intelligence,
                "activities": self.activities,
                "actions": self.actions,
                "attachments": self.attachments,
            }
        )

    @asynccontextmanager
    async def transaction(self):
        snapshot = self._snapshot()
        try:
            yield object()
        except BaseException:
            self._restore(snapshot)
            raise

    @asynccontextmanager
    async def savepoint(self, session):
        snapshot = self._snapshot()
        self.savepoints += 1
        try:
            yield session
        except BaseException:
            self._restore(snapshot)
            raise

    def _restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # Opportunities & stages

    async def get_opportunity(self, opportunity_id, session=None):
        opportunity = self.opportunities.get(opportunity_id)
        if opportunity is None:
            return None
        return opportunity.model_copy(update={"stage": self.stages.get(opportunity.stage_id)})

    async def list_pipeline_stages(self, pipeline_id, session=None):
        stages = [s for s in self.stages.values() if s.pipeline_id == pipeline_id]
        return sorted(stages, key=lambda s: s.order)

    async def update_opportunity_stage(self, opportunity_id, stage_id, session=None):
        opportunity = self.opportunities[opportunity_id]
        self.opportunities[opportunity_id] = opportunity.model_copy(update={"stage_id": stage_id})

    async def add_contact_to_opportunity(self, opportunity_id, contact_id, role, session=None):
        opportunity = self.opportunities[opportunity_id]
        contact_ids = list(opportunity.contact_ids)
        if contact_id not in contact_ids:
            contact_ids.append(contact_id)
        roles = [*opportunity.person_roles, {"contact_id": contact_id, "role": role}]
        self.opportunities[opportunity_id] = opportunity.model_copy(
            update={"contact_ids": contact_ids, "person_roles": roles}
        )

    # Contacts

    async def list_contacts(self, contact_ids, session=None):
        return [self.contacts[c] for c in contact_ids if c in self.contacts]

    async def find_contact_by_email(self, email, session=None):
        wanted = email.lower()
        for contact in self.contacts.values():
            if any(address.lower() == wanted for address in contact.emails):
                return contact
        return None

    async def create_contact(self, contact, session=None):
        self.contacts[contact.id] = contact
        return contact

    async def get_or_create_contact_intelligence(self, contact_id, opportunity_id, session=None):
        key = (contact_id, opportunity_id)
        if key not in self.intelligence:
            self.intelligence[key] = ContactIntelligence(
                id=f"intel-{contact_id}",
                contact_id=contact_id,
                opportunity_id=opportunity_id,
            )
        return self.intelligence[key]

    async def append_role_assignment(self, contact_id, opportunity_id, assignment, session=None):
        intelligence = await self.get_or_create_contact_intelligence(contact_id, opportunity_id)
        self.intelligence[(contact_id, opportunity_id)] = intelligence.model_copy(
            update={"role_assignments": [*intelligence.role_assignments, assignment]}
        )

    # Activities

    async def list_recent_activities(self, opportunity_id, kind, limit, session=None):
        now = utc_now()
        rows = [
            a
            for a in self.activities.values()
            if a.opportunity_id == opportunity_id and a.kind == kind and a.date <= now
        ]
        rows.sort(key=lambda a: a.date, reverse=True)
        return rows[:limit]

    async def list_future_events(self, opportunity_id, now, limit, session=None):
        rows = [
            a
            for a in self.activities.values()
            if a.opportunity_id == opportunity_id
            and a.kind == ActivityKind.CALENDAR
            and a.status == ActivityStatus.SCHEDULED.value
            and a.date > now
        ]
        rows.sort(key=lambda a: a.date)
        return rows[:limit]

    async def get_activity(self, activity_id, session=None):
        return self.activities.get(activity_id)

    async def create_activity(self, activity, session=None):
        self.activities[activity.id] = activity
        return activity

    async def update_activity(self, activity_id, values, session=None):
        activity = self.activities[activity_id]
        update = {("metadata" if k == "metadata_json" else k): v for k, v in values.items()}
        self.activities[activity_id] = activity.model_copy(update=update)

    async def delete_activity(self, activity_id, session=None):
        return self.activities.pop(activity_id, None) is not None

    # Proposed actions

    async def get_action(self, action_id, session=None, for_update=False):
        if for_update:
            self.locked_reads.append(action_id)
        return self.actions.get(action_id)

    async def list_actions(self, opportunity_id, statuses=None, session=None):
        wanted = set(statuses) if statuses is not None else None
        return [
            a
            for a in self.actions.values()
            if a.opportunity_id == opportunity_id and (wanted is None or a.status in wanted)
        ]

    async def list_open_actions(self, opportunity_id, session=None):
        return await self.list_actions(opportunity_id, OPEN_STATUSES)

    async def list_actions_with_pending_scheduled_sends(self, opportunity_id, session=None):
        action_ids = {
            a.metadata.get("source_action_id")
            for a in self.activities.values()
            if a.opportunity_id == opportunity_id
            and a.kind == ActivityKind.EMAIL
            and a.status == ActivityStatus.SCHEDULED.value
            and not a.is_draft
            and not a.is_sent
        }
        return [self.actions[i] for i in action_ids if i in self.actions]

    async def create_actions(self, actions, session=None):
        for action in actions:
            self.actions[action.id] = action
        return actions

    async def save_action(self, action, session=None):
        self.actions[action.id] = action
        return action

    async def cancel_proposed_actions(self, opportunity_id, session=None):
        count = 0
        for action in list(self.actions.values()):
            if action.opportunity_id == opportunity_id and action.status == ActionStatus.PROPOSED:
                self.actions[action.id] = action.model_copy(
                    update={"status": ActionStatus.CANCELLED}
                )
                count += 1
        return count

    async def delete_attachments(self, attachment_ids, session=None):
        ids = [a for a in attachment_ids if a in self.attachments]
        self.attachments.difference_update(ids)
        return len(ids)


# ── Fake oracle ─────────────────────────────────────────────────────────────

DEFAULT_COMPOSED: dict[str, dict[str, Any]] = {
    "ComposedEmailContent": {
        "subject": "Re: Pricing for the Acme rollout",
        "body": "Hi Jane,\n\nThanks for the questions. Pricing details are below.",
    },
    "ComposedTaskContent": {
        "title": "Prepare pricing summary",
        "description": "Summarize pricing tiers discussed on the last call.",
    },
    "ComposedMeetingContent": {
        "title": "Acme technical deep dive",
        "agenda": "Walk through the integration plan and open questions.",
    },
    "ComposedCallContent": {
        "purpose": "Confirm budget approval timeline",
        "talking_points": ["Budget", "Timeline"],
    },
    "ComposedLinkedInContent": {
        "message": "Great to connect, Jane. Looking forward to next steps.",
    },
    "ComposedLookupContent": {
        "answer": "Acme runs Salesforce for CRM.",
        "sources": ["call notes"],
        "confidence": 0.9,
    },
    "ComposedAddContactContent": {
        "rationale": "Mentioned as the budget owner on the last call.",
    },
}


class FakeOracle:
    """Scripted oracle keyed by agent name.

    ``responses[agent_name]`` is a list consumed in order; its last entry
    repeats. Entries may be dicts (validated into the output model),
    model instances or exceptions (raised). Unscripted ``compose_*`` calls
    return DEFAULT_COMPOSED content.
    """

    def __init__(self) -> None:
        self.responses: dict[str, list[Any]] = {}
        self.calls: list[dict[str, Any]] = []

    def script(self, agent_name: str, *responses: Any) -> None:
        self.responses[agent_name] = list(responses)

    def calls_for(self, agent_name: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["agent_name"] == agent_name]

    async def generate(self, messages, output_model, *, agent_name, input_variables=None, model=None):
        self.calls.append(
            {"agent_name": agent_name, "messages": messages, "input_variables": input_variables}
        )
        queue = self.responses.get(agent_name)
        if queue:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        elif agent_name.startswith("compose_"):
            item = DEFAULT_COMPOSED[output_model.__name__]
        else:
            raise InvalidOracleOutputError(f"No scripted response for {agent_name}")

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            return output_model.model_validate(item)
        return item


# ── Seed data ───────────────────────────────────────────────────────────────


def seed_opportunity(repo: FakeRepository) -> None:
    now = utc_now()
    for order, (stage_id, name, won, lost) in enumerate(
        [
            ("stage-discovery", "Discovery", False, False),
            ("stage-proposal", "Proposal", False, False),
            ("stage-won", "Closed Won", True, False),
            ("stage-lost", "Closed Lost", False, True),
        ]
    ):
        repo.stages[stage_id] = PipelineStage(
            id=stage_id,
            pipeline_id=PIPELINE_ID,
            name=name,
            order=order,
            is_closed_won=won,
            is_closed_lost=lost,
        )

    repo.contacts["contact-1"] = Contact(
        id="contact-1",
        first_name="Jane",
        last_name="Doe",
        title="VP Engineering",
        emails=["Jane.Doe@acme.com"],
    )
    repo.contacts["contact-2"] = Contact(
        id="contact-2",
        first_name="Bob",
        last_name="Smith",
        title="Procurement",
        emails=["bob@acme.com", "bob.smith@acme.io"],
    )

    repo.opportunities[OPPORTUNITY_ID] = Opportunity(
        id=OPPORTUNITY_ID,
        name="Acme platform rollout",
        pipeline_id=PIPELINE_ID,
        stage_id="stage-discovery",
        amount=120000.0,
        contact_ids=["contact-1", "contact-2"],
        deal_health={"trend": "improving", "momentum": "high", "narrative": "Engaged buyer"},
    )

    repo.activities[INBOUND_EMAIL_ID] = Activity(
        id=INBOUND_EMAIL_ID,
        kind=ActivityKind.EMAIL,
        opportunity_id=OPPORTUNITY_ID,
        status=ActivityStatus.RECEIVED.value,
        subject="Pricing question",
        summary="Jane asked for pricing tiers",
        date=now - timedelta(days=1),
        message_id=INBOUND_MESSAGE_ID,
        thread_id=INBOUND_THREAD_ID,
        from_address="jane.doe@acme.com",
    )
    repo.activities[NOTE_ID] = Activity(
        id=NOTE_ID,
        kind=ActivityKind.ACTIVITY,
        activity_type=ActivityType.NOTE.value,
        opportunity_id=OPPORTUNITY_ID,
        title="Discovery call notes",
        date=now - timedelta(days=3),
    )


def add_future_meeting(repo: FakeRepository) -> Activity:
    start = utc_now() + timedelta(days=3)
    meeting = Activity(
        id=MEETING_ID,
        kind=ActivityKind.CALENDAR,
        opportunity_id=OPPORTUNITY_ID,
        status=ActivityStatus.SCHEDULED.value,
        title="Technical review",
        date=start,
        start_time=start,
        end_time=start + timedelta(hours=1),
        attendees=["jane.doe@acme.com"],
        provider_event_id="gcal-evt-1",
    )
    repo.activities[meeting.id] = meeting
    return meeting


def make_action(
    action_id: str = "action-1",
    action_type: str = "EMAIL",
    status: ActionStatus = ActionStatus.PROPOSED,
    details: dict[str, Any] | None = None,
    **extra: Any,
) -> ProposedAction:
    if details is None:
        details = {
            "to": ["jane.doe@acme.com"],
            "subject": "Pricing",
            "body": "Hi Jane, here are the pricing tiers we discussed.",
            "scheduled_for": (utc_now() - timedelta(minutes=1)).isoformat(),
        }
    return ProposedAction(
        id=action_id,
        opportunity_id=OPPORTUNITY_ID,
        type=action_type,
        status=status,
        details=details,
        reasoning="Jane asked for pricing in her last email.",
        **extra,
    )


def later(**kwargs: Any) -> datetime:
    return utc_now() + timedelta(**kwargs)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        PROPOSAL_MAX_ATTEMPTS=3,
        PROPOSAL_RETRY_DELAY_SECONDS=0,
        EVALUATION_MAX_ATTEMPTS=2,
        EVALUATION_RETRY_DELAY_SECONDS=0,
        LANGFUSE_PUBLIC_KEY="",
        LANGFUSE_SECRET_KEY="",
    )


@pytest.fixture
def repo() -> FakeRepository:
    repository = FakeRepository()
    seed_opportunity(repository)
    return repository


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def email_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.send_email.return_value = SentEmailResult(
        message_id="gmail-msg-1", thread_id=INBOUND_THREAD_ID
    )
    return provider


@pytest.fixture
def calendar_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.create_event.return_value = CalendarEventResult(
        event_id="gcal-new-1", html_link="https://calendar.example/evt"
    )
    return provider


@pytest.fixture
def deps(repo, oracle, email_provider, calendar_provider) -> HandlerDependencies:
    return HandlerDependencies(
        repository=repo,
        oracle=oracle,
        email_provider=email_provider,
        calendar_provider=calendar_provider,
    )


@pytest.fixture
def registry(deps):
    return create_action_registry(deps)


@pytest.fixture
def assembler(repo, settings) -> ContextAssembler:
    return ContextAssembler(repo, settings)


@pytest.fixture
async def context(assembler):
    return await assembler.assemble(OPPORTUNITY_ID)


@pytest.fixture
def composer(registry) -> ContentComposer:
    return ContentComposer(registry)


@pytest.fixture
def proposal_agent(oracle, registry, composer) -> ProposalAgent:
    return ProposalAgent(oracle, registry, composer, RetryPolicy(max_attempts=3, delay=0))


@pytest.fixture
def evaluation_agent(oracle, registry, composer, proposal_agent) -> EvaluationAgent:
    return EvaluationAgent(
        oracle, registry, composer, proposal_agent, RetryPolicy(max_attempts=2, delay=0)
    )


@pytest.fixture
def execution(repo, registry) -> ActionExecutionService:
    return ActionExecutionService(repo, registry)


@pytest.fixture
def service(
    repo, assembler, proposal_agent, evaluation_agent, composer, execution
) -> ActionPipelineService:
    return ActionPipelineService(
        repository=repo,
        assembler=assembler,
        proposal_agent=proposal_agent,
        evaluation_agent=evaluation_agent,
        composer=composer,
        execution=execution,
    )
