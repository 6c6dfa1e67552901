"""Action pipeline repository -- async persistence for all pipeline entities.

Provides ActionRepository with the session_factory callable pattern. Reads
and writes accept an optional ``session``: when given, the call joins that
session's transaction (handler executors and reconciliation pass the session
from ``transaction()``); otherwise the call runs in its own short
transaction.

Rows are converted to the Pydantic domain types in
``src.pipeline.actions.schemas`` by the ``_model_to_*`` helpers; JSON
columns are written from ``model_dump(mode="json")``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Iterable
from contextlib import aclosing, asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import Text, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipeline.actions.schemas import (
    OPEN_STATUSES,
    ActionStatus,
    ActionType,
    Activity,
    ActivityKind,
    ActivityRef,
    ActivityStatus,
    ActorTag,
    Contact,
    ContactIntelligence,
    Opportunity,
    PipelineStage,
    ProposedAction,
)
from src.pipeline.models.pipeline import (
    ActivityModel,
    AttachmentModel,
    ContactIntelligenceModel,
    ContactModel,
    OpportunityModel,
    PipelineStageModel,
    ProposedActionModel,
)

logger = structlog.get_logger(__name__)


def new_id() -> str:
    """Generate a new entity id."""
    return str(uuid.uuid4())


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_stage(model: PipelineStageModel) -> PipelineStage:
    return PipelineStage(
        id=str(model.id),
        pipeline_id=str(model.pipeline_id),
        name=model.name,
        order=model.order_index or 0,
        is_closed_won=bool(model.is_closed_won),
        is_closed_lost=bool(model.is_closed_lost),
    )


def _model_to_opportunity(
    model: OpportunityModel, stage: PipelineStage | None
) -> Opportunity:
    """Convert OpportunityModel to Opportunity with its stage resolved."""
    return Opportunity(
        id=str(model.id),
        name=model.name,
        description=model.description,
        pipeline_id=str(model.pipeline_id),
        stage_id=str(model.stage_id),
        stage=stage,
        amount=model.amount,
        probability=model.probability,
        expected_close_date=model.expected_close_date,
        summary=model.summary,
        contact_ids=[str(c) for c in (model.contact_ids or [])],
        person_roles=list(model.person_roles or []),
        meddpicc=model.meddpicc or {},
        deal_health=model.deal_health or {},
        risk_factors=list(model.risk_factors or []),
        key_milestones=list(model.key_milestones or []),
        next_steps=list(model.next_steps or []),
    )


def _model_to_contact(model: ContactModel) -> Contact:
    return Contact(
        id=str(model.id),
        first_name=model.first_name,
        last_name=model.last_name,
        title=model.title,
        emails=list(model.emails or []),
        linkedin_profile=model.linkedin_profile,
        background_info=model.background_info,
    )


def _model_to_intelligence(model: ContactIntelligenceModel) -> ContactIntelligence:
    return ContactIntelligence(
        id=str(model.id),
        contact_id=str(model.contact_id),
        opportunity_id=str(model.opportunity_id),
        engagement_score=model.engagement_score,
        responsiveness=model.responsiveness or {},
        role_assignments=list(model.role_assignments or []),
        relationship_story=model.relationship_story,
    )


def _model_to_activity(model: ActivityModel) -> Activity:
    """Convert ActivityModel to Activity schema."""
    return Activity(
        id=str(model.id),
        kind=ActivityKind(model.kind),
        opportunity_id=str(model.opportunity_id),
        activity_type=model.activity_type,
        status=model.status,
        title=model.title,
        description=model.description,
        summary=model.summary,
        date=model.date,
        start_time=model.start_time,
        end_time=model.end_time,
        contact_ids=[str(c) for c in (model.contact_ids or [])],
        message_id=model.message_id,
        thread_id=model.thread_id,
        subject=model.subject,
        from_address=model.from_address,
        to_addresses=list(model.to_addresses or []),
        cc_addresses=list(model.cc_addresses or []),
        is_draft=bool(model.is_draft),
        is_sent=bool(model.is_sent),
        attendees=list(model.attendees or []),
        location=model.location,
        provider_event_id=model.provider_event_id,
        metadata=model.metadata_json or {},
        created_by=model.created_by,
    )


def _activity_to_model(activity: Activity) -> ActivityModel:
    return ActivityModel(
        id=uuid.UUID(activity.id),
        opportunity_id=uuid.UUID(activity.opportunity_id),
        kind=activity.kind.value,
        activity_type=activity.activity_type,
        status=activity.status,
        title=activity.title,
        description=activity.description,
        summary=activity.summary,
        date=activity.date,
        start_time=activity.start_time,
        end_time=activity.end_time,
        contact_ids=list(activity.contact_ids),
        message_id=activity.message_id,
        thread_id=activity.thread_id,
        subject=activity.subject,
        from_address=activity.from_address,
        to_addresses=list(activity.to_addresses),
        cc_addresses=list(activity.cc_addresses),
        is_draft=activity.is_draft,
        is_sent=activity.is_sent,
        attendees=list(activity.attendees),
        location=activity.location,
        provider_event_id=activity.provider_event_id,
        metadata_json=dict(activity.metadata),
        created_by=activity.created_by,
    )


def _model_to_action(model: ProposedActionModel) -> ProposedAction:
    """Convert ProposedActionModel to ProposedAction schema."""
    last_edited = model.last_edited_by or None
    return ProposedAction(
        id=str(model.id),
        opportunity_id=str(model.opportunity_id),
        type=ActionType(model.action_type),
        status=ActionStatus(model.status),
        details=model.details or {},
        reasoning=model.reasoning or "",
        priority=model.priority or 5,
        action_strategy=model.action_strategy,
        source_activities=[
            ActivityRef.model_validate(ref) for ref in (model.source_activities or [])
        ],
        resulting_activities=[
            ActivityRef.model_validate(ref) for ref in (model.resulting_activities or [])
        ],
        created_by=ActorTag.model_validate(model.created_by or {"type": "AI_AGENT"}),
        last_edited_by=ActorTag.model_validate(last_edited) if last_edited else None,
        approved_by=model.approved_by,
        scheduled_for=model.scheduled_for,
        executed_at=model.executed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _action_values(action: ProposedAction) -> dict[str, Any]:
    """Column values for an insert/update of a ProposedAction."""
    return {
        "opportunity_id": uuid.UUID(action.opportunity_id),
        "action_type": action.type.value,
        "status": action.status.value,
        "details": action.details,
        "reasoning": action.reasoning,
        "priority": action.priority,
        "action_strategy": action.action_strategy,
        "source_activities": [r.model_dump(mode="json") for r in action.source_activities],
        "resulting_activities": [
            r.model_dump(mode="json") for r in action.resulting_activities
        ],
        "created_by": action.created_by.model_dump(mode="json"),
        "last_edited_by": (
            action.last_edited_by.model_dump(mode="json") if action.last_edited_by else None
        ),
        "approved_by": action.approved_by,
        "scheduled_for": action.scheduled_for,
        "executed_at": action.executed_at,
    }


# ── Repository ──────────────────────────────────────────────────────────────


class ActionRepository:
    """Async persistence for opportunities, contacts, activities and actions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Transactions ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session and run the block inside one transaction.

        Commits on normal exit and rolls back when the block raises.
        """
        async with aclosing(self._session_factory()) as sessions:
            async for session in sessions:
                async with session.begin():
                    yield session
                break

    @asynccontextmanager
    async def savepoint(
        self, session: AsyncSession | None
    ) -> AsyncIterator[AsyncSession | None]:
        """Run the block in a SAVEPOINT of ``session``.

        A failure inside the block rolls back only the block and leaves the
        outer transaction usable. Without a session the block runs as is;
        repository calls then open their own transactions.
        """
        if session is None:
            yield None
            return
        async with session.begin_nested():
            yield session

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
        else:
            async with self.transaction() as new_session:
                yield new_session

    # ── Opportunities & stages ──────────────────────────────────────────────

    async def get_opportunity(
        self, opportunity_id: str, session: AsyncSession | None = None
    ) -> Opportunity | None:
        """Get an opportunity by ID with its current stage resolved."""
        async with self._scope(session) as s:
            model = await s.get(OpportunityModel, uuid.UUID(opportunity_id))
            if model is None:
                return None
            stage_model = await s.get(PipelineStageModel, model.stage_id)
            stage = _model_to_stage(stage_model) if stage_model else None
            return _model_to_opportunity(model, stage)

    async def list_pipeline_stages(
        self, pipeline_id: str, session: AsyncSession | None = None
    ) -> list[PipelineStage]:
        """List a pipeline's stages in display order."""
        async with self._scope(session) as s:
            stmt = (
                select(PipelineStageModel)
                .where(PipelineStageModel.pipeline_id == uuid.UUID(pipeline_id))
                .order_by(PipelineStageModel.order_index)
            )
            result = await s.execute(stmt)
            return [_model_to_stage(m) for m in result.scalars().all()]

    async def update_opportunity_stage(
        self, opportunity_id: str, stage_id: str, session: AsyncSession | None = None
    ) -> None:
        async with self._scope(session) as s:
            await s.execute(
                update(OpportunityModel)
                .where(OpportunityModel.id == uuid.UUID(opportunity_id))
                .values(stage_id=uuid.UUID(stage_id))
            )

    async def add_contact_to_opportunity(
        self,
        opportunity_id: str,
        contact_id: str,
        role: str | None,
        session: AsyncSession | None = None,
    ) -> None:
        """Link a contact to an opportunity and record their person role.

        Both writes are idempotent: an already-linked contact is not
        duplicated and an existing role entry is replaced.
        """
        async with self._scope(session) as s:
            model = await s.get(OpportunityModel, uuid.UUID(opportunity_id))
            if model is None:
                return
            contact_ids = [str(c) for c in (model.contact_ids or [])]
            if contact_id not in contact_ids:
                contact_ids.append(contact_id)
            roles = [
                r for r in (model.person_roles or []) if r.get("contact_id") != contact_id
            ]
            if role:
                roles.append({"contact_id": contact_id, "role": role})
            # Reassign so SQLAlchemy detects the JSON change
            model.contact_ids = contact_ids
            model.person_roles = roles

    # ── Contacts ────────────────────────────────────────────────────────────

    async def list_contacts(
        self, contact_ids: Iterable[str], session: AsyncSession | None = None
    ) -> list[Contact]:
        ids = [uuid.UUID(c) for c in contact_ids]
        if not ids:
            return []
        async with self._scope(session) as s:
            result = await s.execute(select(ContactModel).where(ContactModel.id.in_(ids)))
            by_id = {str(m.id): _model_to_contact(m) for m in result.scalars().all()}
            # Preserve the opportunity's contact ordering
            return [by_id[str(i)] for i in ids if str(i) in by_id]

    async def find_contact_by_email(
        self, email: str, session: AsyncSession | None = None
    ) -> Contact | None:
        """Find a contact having ``email`` among its addresses (case-insensitive)."""
        wanted = email.lower()
        async with self._scope(session) as s:
            # Prefilter on the serialized address list, then match exactly
            stmt = select(ContactModel).where(
                ContactModel.emails.cast(Text).ilike(f"%\"{wanted}\"%")
            )
            result = await s.execute(stmt)
            for model in result.scalars().all():
                if any(str(e).lower() == wanted for e in (model.emails or [])):
                    return _model_to_contact(model)
            return None

    async def create_contact(
        self, contact: Contact, session: AsyncSession | None = None
    ) -> Contact:
        async with self._scope(session) as s:
            s.add(
                ContactModel(
                    id=uuid.UUID(contact.id),
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    title=contact.title,
                    emails=list(contact.emails),
                    linkedin_profile=contact.linkedin_profile,
                    background_info=contact.background_info,
                )
            )
            await s.flush()
            return contact

    async def get_or_create_contact_intelligence(
        self,
        contact_id: str,
        opportunity_id: str,
        session: AsyncSession | None = None,
    ) -> ContactIntelligence:
        """Get the contact's intelligence for an opportunity, creating it if absent."""
        async with self._scope(session) as s:
            stmt = select(ContactIntelligenceModel).where(
                ContactIntelligenceModel.contact_id == uuid.UUID(contact_id),
                ContactIntelligenceModel.opportunity_id == uuid.UUID(opportunity_id),
            )
            result = await s.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = ContactIntelligenceModel(
                    id=uuid.uuid4(),
                    contact_id=uuid.UUID(contact_id),
                    opportunity_id=uuid.UUID(opportunity_id),
                    responsiveness={},
                    role_assignments=[],
                )
                s.add(model)
                await s.flush()
                logger.info(
                    "contact_intelligence_created",
                    contact_id=contact_id,
                    opportunity_id=opportunity_id,
                )
            return _model_to_intelligence(model)

    async def append_role_assignment(
        self,
        contact_id: str,
        opportunity_id: str,
        assignment: dict[str, Any],
        session: AsyncSession | None = None,
    ) -> None:
        async with self._scope(session) as s:
            intelligence = await self.get_or_create_contact_intelligence(
                contact_id, opportunity_id, session=s
            )
            model = await s.get(ContactIntelligenceModel, uuid.UUID(intelligence.id))
            model.role_assignments = [*(model.role_assignments or []), assignment]

    # ── Activities ──────────────────────────────────────────────────────────

    async def list_recent_activities(
        self,
        opportunity_id: str,
        kind: ActivityKind,
        limit: int,
        session: AsyncSession | None = None,
    ) -> list[Activity]:
        """Most recent activities of one kind, newest first."""
        async with self._scope(session) as s:
            stmt = (
                select(ActivityModel)
                .where(
                    ActivityModel.opportunity_id == uuid.UUID(opportunity_id),
                    ActivityModel.kind == kind.value,
                )
                .order_by(ActivityModel.date.desc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def list_future_events(
        self,
        opportunity_id: str,
        now: datetime,
        limit: int,
        session: AsyncSession | None = None,
    ) -> list[Activity]:
        """Upcoming calendar commitments that are still scheduled, soonest first."""
        async with self._scope(session) as s:
            stmt = (
                select(ActivityModel)
                .where(
                    ActivityModel.opportunity_id == uuid.UUID(opportunity_id),
                    ActivityModel.kind == ActivityKind.CALENDAR.value,
                    ActivityModel.start_time > now,
                    ActivityModel.status.in_(
                        [ActivityStatus.SCHEDULED.value, ActivityStatus.TO_DO.value]
                    ),
                )
                .order_by(ActivityModel.start_time.asc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def get_activity(
        self, activity_id: str, session: AsyncSession | None = None
    ) -> Activity | None:
        async with self._scope(session) as s:
            model = await s.get(ActivityModel, uuid.UUID(activity_id))
            return _model_to_activity(model) if model else None

    async def create_activity(
        self, activity: Activity, session: AsyncSession | None = None
    ) -> Activity:
        async with self._scope(session) as s:
            s.add(_activity_to_model(activity))
            await s.flush()
            return activity

    async def update_activity(
        self,
        activity_id: str,
        values: dict[str, Any],
        session: AsyncSession | None = None,
    ) -> None:
        """Update columns of an activity (keys are ActivityModel attribute names)."""
        async with self._scope(session) as s:
            await s.execute(
                update(ActivityModel)
                .where(ActivityModel.id == uuid.UUID(activity_id))
                .values(**values)
            )

    async def delete_activity(
        self, activity_id: str, session: AsyncSession | None = None
    ) -> bool:
        async with self._scope(session) as s:
            result = await s.execute(
                delete(ActivityModel).where(ActivityModel.id == uuid.UUID(activity_id))
            )
            return (result.rowcount or 0) > 0

    # ── Proposed actions ────────────────────────────────────────────────────

    async def get_action(
        self,
        action_id: str,
        session: AsyncSession | None = None,
        for_update: bool = False,
    ) -> ProposedAction | None:
        """Get an action by ID.

        Args:
            action_id: Action UUID string.
            session: Session of an enclosing transaction, if any.
            for_update: Lock the row until the enclosing transaction ends.
        """
        async with self._scope(session) as s:
            stmt = select(ProposedActionModel).where(
                ProposedActionModel.id == uuid.UUID(action_id)
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await s.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_action(model) if model else None

    async def list_actions(
        self,
        opportunity_id: str,
        statuses: Iterable[ActionStatus] | None = None,
        session: AsyncSession | None = None,
    ) -> list[ProposedAction]:
        """List an opportunity's actions, newest first, optionally by status."""
        async with self._scope(session) as s:
            stmt = select(ProposedActionModel).where(
                ProposedActionModel.opportunity_id == uuid.UUID(opportunity_id)
            )
            if statuses is not None:
                stmt = stmt.where(
                    ProposedActionModel.status.in_([st.value for st in statuses])
                )
            stmt = stmt.order_by(ProposedActionModel.created_at.desc())
            result = await s.execute(stmt)
            return [_model_to_action(m) for m in result.scalars().all()]

    async def list_open_actions(
        self, opportunity_id: str, session: AsyncSession | None = None
    ) -> list[ProposedAction]:
        return await self.list_actions(opportunity_id, OPEN_STATUSES, session=session)

    async def list_actions_with_pending_scheduled_sends(
        self, opportunity_id: str, session: AsyncSession | None = None
    ) -> list[ProposedAction]:
        """Actions that own a scheduled, unsent, non-draft email activity."""
        async with self._scope(session) as s:
            stmt = select(ActivityModel).where(
                ActivityModel.opportunity_id == uuid.UUID(opportunity_id),
                ActivityModel.kind == ActivityKind.EMAIL.value,
                ActivityModel.status == ActivityStatus.SCHEDULED.value,
                ActivityModel.is_draft.is_(False),
                ActivityModel.is_sent.is_(False),
            )
            result = await s.execute(stmt)
            action_ids = {
                m.metadata_json.get("source_action_id")
                for m in result.scalars().all()
                if m.metadata_json and m.metadata_json.get("source_action_id")
            }
            if not action_ids:
                return []
            stmt = select(ProposedActionModel).where(
                ProposedActionModel.id.in_([uuid.UUID(a) for a in action_ids])
            )
            result = await s.execute(stmt)
            return [_model_to_action(m) for m in result.scalars().all()]

    async def create_actions(
        self, actions: list[ProposedAction], session: AsyncSession | None = None
    ) -> list[ProposedAction]:
        if not actions:
            return []
        async with self._scope(session) as s:
            for action in actions:
                s.add(ProposedActionModel(id=uuid.UUID(action.id), **_action_values(action)))
            await s.flush()
            return actions

    async def save_action(
        self, action: ProposedAction, session: AsyncSession | None = None
    ) -> ProposedAction:
        """Persist every mutable field of ``action``."""
        async with self._scope(session) as s:
            await s.execute(
                update(ProposedActionModel)
                .where(ProposedActionModel.id == uuid.UUID(action.id))
                .values(**_action_values(action))
            )
            return action

    async def cancel_proposed_actions(
        self, opportunity_id: str, session: AsyncSession | None = None
    ) -> int:
        """Bulk-cancel every PROPOSED action of an opportunity.

        Returns:
            Number of actions cancelled.
        """
        async with self._scope(session) as s:
            result = await s.execute(
                update(ProposedActionModel)
                .where(
                    ProposedActionModel.opportunity_id == uuid.UUID(opportunity_id),
                    ProposedActionModel.status == ActionStatus.PROPOSED.value,
                )
                .values(status=ActionStatus.CANCELLED.value)
            )
            return result.rowcount or 0

    # ── Attachments ─────────────────────────────────────────────────────────

    async def delete_attachments(
        self, attachment_ids: Iterable[str], session: AsyncSession | None = None
    ) -> int:
        ids = [uuid.UUID(a) for a in attachment_ids]
        if not ids:
            return 0
        async with self._scope(session) as s:
            result = await s.execute(
                delete(AttachmentModel).where(AttachmentModel.id.in_(ids))
            )
            return result.rowcount or 0
