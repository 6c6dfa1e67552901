"""Pydantic domain types for the action pipeline.

Defines:
- Enums: ActionType, ActionStatus, ActorType, ActivityKind, ActivityStatus,
  ActivityType
- References: ActivityRef, ActorTag
- Entities: PipelineStage, Opportunity, Contact, ContactIntelligence,
  ContactWithIntelligence, Activity, ProposedAction
- Context: DealIntelligence, ActionPipelineContext (frozen snapshot consumed
  by the agents and handlers)
- CandidateAction: oracle-proposed action prior to persistence
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class ActionType(str, Enum):
    """Kinds of action the pipeline can propose and execute."""

    EMAIL = "EMAIL"
    TASK = "TASK"
    MEETING = "MEETING"
    CALL = "CALL"
    LINKEDIN_MESSAGE = "LINKEDIN_MESSAGE"
    NO_ACTION = "NO_ACTION"
    LOOKUP = "LOOKUP"
    UPDATE_PIPELINE_STAGE = "UPDATE_PIPELINE_STAGE"
    ADD_CONTACT = "ADD_CONTACT"


class ActionStatus(str, Enum):
    """Lifecycle state of a proposed action."""

    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES: tuple[ActionStatus, ...] = (ActionStatus.PROPOSED, ActionStatus.APPROVED)


class ActorType(str, Enum):
    """Who created or last edited an action."""

    AI_AGENT = "AI_AGENT"
    USER = "USER"


class ActivityKind(str, Enum):
    """Storage kind of an activity record."""

    ACTIVITY = "activity"
    EMAIL = "email"
    CALENDAR = "calendar"


class ActivityStatus(str, Enum):
    SCHEDULED = "scheduled"
    TO_DO = "to_do"
    COMPLETED = "completed"
    SENT = "sent"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    """Subtype of generic activities."""

    CALL = "call"
    NOTE = "note"
    TASK = "task"
    LINKEDIN = "linkedin"
    OTHER = "other"


# ── References ──────────────────────────────────────────────────────────────


class ActivityRef(BaseModel):
    """Pointer to an activity record of a given kind."""

    activity_id: str
    activity_kind: ActivityKind


class ActorTag(BaseModel):
    """Actor stamp for creation and edits."""

    type: ActorType
    id: str | None = None
    at: datetime | None = None


# ── Entities ────────────────────────────────────────────────────────────────


class PipelineStage(BaseModel):
    id: str
    pipeline_id: str
    name: str
    order: int = 0
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @property
    def is_closed(self) -> bool:
        return self.is_closed_won or self.is_closed_lost


class Opportunity(BaseModel):
    """The deal being worked, with its current stage resolved."""

    id: str
    name: str
    description: str | None = None
    pipeline_id: str
    stage_id: str
    stage: PipelineStage | None = None
    amount: float | None = None
    probability: float | None = None
    expected_close_date: datetime | None = None
    summary: str | None = None
    contact_ids: list[str] = Field(default_factory=list)
    person_roles: list[dict[str, Any]] = Field(default_factory=list)
    meddpicc: dict[str, Any] = Field(default_factory=dict)
    deal_health: dict[str, Any] = Field(default_factory=dict)
    risk_factors: list[Any] = Field(default_factory=list)
    key_milestones: list[Any] = Field(default_factory=list)
    next_steps: list[Any] = Field(default_factory=list)

    @property
    def stage_name(self) -> str:
        return self.stage.name if self.stage else "Unknown"


class Contact(BaseModel):
    id: str
    first_name: str
    last_name: str
    title: str | None = None
    emails: list[str] = Field(default_factory=list)
    linkedin_profile: str | None = None
    background_info: str | None = None

    @property
    def primary_email(self) -> str | None:
        return self.emails[0] if self.emails else None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ContactIntelligence(BaseModel):
    """Opportunity-scoped intelligence for a contact."""

    id: str
    contact_id: str
    opportunity_id: str
    engagement_score: float | None = None
    responsiveness: dict[str, Any] = Field(default_factory=dict)
    role_assignments: list[dict[str, Any]] = Field(default_factory=list)
    relationship_story: str | None = None

    @property
    def current_role(self) -> str | None:
        if not self.role_assignments:
            return None
        return self.role_assignments[-1].get("role")


class ContactWithIntelligence(BaseModel):
    contact: Contact
    intelligence: ContactIntelligence


class Activity(BaseModel):
    """An activity record of any kind.

    Email fields are populated for ``ActivityKind.EMAIL`` and calendar fields
    for ``ActivityKind.CALENDAR``.
    """

    id: str
    kind: ActivityKind
    opportunity_id: str
    activity_type: str | None = None
    status: str = ActivityStatus.COMPLETED.value
    title: str | None = None
    description: str | None = None
    summary: str | None = None
    date: datetime
    start_time: datetime | None = None
    end_time: datetime | None = None
    contact_ids: list[str] = Field(default_factory=list)
    # Email
    message_id: str | None = None
    thread_id: str | None = None
    subject: str | None = None
    from_address: str | None = None
    to_addresses: list[str] = Field(default_factory=list)
    cc_addresses: list[str] = Field(default_factory=list)
    is_draft: bool = False
    is_sent: bool = False
    # Calendar
    attendees: list[str] = Field(default_factory=list)
    location: str | None = None
    provider_event_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None

    @property
    def ref(self) -> ActivityRef:
        return ActivityRef(activity_id=self.id, activity_kind=self.kind)

    @property
    def display_summary(self) -> str:
        return self.summary or self.title or self.subject or "Activity"


class ProposedAction(BaseModel):
    """Central pipeline entity: a recommended, not-yet-executed action."""

    id: str
    opportunity_id: str
    type: ActionType
    status: ActionStatus = ActionStatus.PROPOSED
    details: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    priority: int = 5
    action_strategy: str | None = None
    source_activities: list[ActivityRef] = Field(default_factory=list)
    resulting_activities: list[ActivityRef] = Field(default_factory=list)
    created_by: ActorTag = Field(default_factory=lambda: ActorTag(type=ActorType.AI_AGENT))
    last_edited_by: ActorTag | None = None
    approved_by: str | None = None
    scheduled_for: datetime | None = None
    executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def source_activity_ids(self) -> list[str]:
        return [ref.activity_id for ref in self.source_activities]


# ── Context ─────────────────────────────────────────────────────────────────


class DealIntelligence(BaseModel):
    """Condensed deal view included in every oracle prompt."""

    name: str
    stage: str
    amount: float | None = None
    probability: float | None = None
    expected_close_date: datetime | None = None
    summary: str | None = None
    meddpicc: dict[str, Any] = Field(default_factory=dict)
    deal_health_trend: str | None = None
    momentum: str | None = None
    narrative: str | None = None
    risk_factors: list[Any] = Field(default_factory=list)
    key_milestones: list[Any] = Field(default_factory=list)
    next_steps: list[Any] = Field(default_factory=list)


class ActionPipelineContext(BaseModel):
    """Immutable snapshot of everything the agents may reference.

    Ground-truth sets (contact emails, activity ids) are derived from this
    snapshot to reject oracle output that names people or records that do
    not exist.
    """

    model_config = ConfigDict(frozen=True)

    opportunity: Opportunity
    pipeline_stages: list[PipelineStage] = Field(default_factory=list)
    contacts: list[ContactWithIntelligence] = Field(default_factory=list)
    recent_activities: list[Activity] = Field(default_factory=list)
    future_events: list[Activity] = Field(default_factory=list)
    deal_intelligence: DealIntelligence
    existing_actions: list[ProposedAction] = Field(default_factory=list)

    def valid_contact_emails(self) -> set[str]:
        """All email addresses of the opportunity's contacts, lowercased."""
        return {
            email.lower()
            for entry in self.contacts
            for email in entry.contact.emails
            if email
        }

    def activity_ids(self) -> set[str]:
        return {activity.id for activity in self.recent_activities}

    def valid_email_activity_ids(self) -> set[str]:
        """Ids of email activities that belong to a thread (reply targets)."""
        return {
            activity.id
            for activity in self.recent_activities
            if activity.kind == ActivityKind.EMAIL and activity.thread_id
        }

    def find_activity(self, activity_id: str) -> Activity | None:
        for activity in self.recent_activities:
            if activity.id == activity_id:
                return activity
        for event in self.future_events:
            if event.id == activity_id:
                return event
        return None

    def find_contact_by_email(self, email: str) -> ContactWithIntelligence | None:
        wanted = email.lower()
        for entry in self.contacts:
            if any(address.lower() == wanted for address in entry.contact.emails):
                return entry
        return None


# ── Candidates ──────────────────────────────────────────────────────────────


class CandidateAction(BaseModel):
    """An action as proposed by the oracle, before persistence.

    Also used to carry a persisted action through composition (``id`` set).
    """

    id: str | None = None
    type: ActionType
    details: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    source_activity_ids: list[str] = Field(default_factory=list)
    priority: int = Field(default=5, ge=1, le=10)
    action_strategy: str | None = None
    converted_from_lookup: bool = False

    @classmethod
    def from_proposed(cls, action: ProposedAction) -> CandidateAction:
        return cls(
            id=action.id,
            type=action.type,
            details=dict(action.details),
            reasoning=action.reasoning,
            source_activity_ids=action.source_activity_ids,
            priority=action.priority,
            action_strategy=action.action_strategy,
            converted_from_lookup=bool(action.details.get("converted_from_lookup")),
        )
