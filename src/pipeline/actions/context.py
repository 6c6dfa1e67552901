"""Context assembly for the action pipeline.

ContextAssembler builds the immutable ActionPipelineContext the agents
reason over: the opportunity with its pipeline stages, contacts paired with
their opportunity-scoped intelligence, recent activity per kind, upcoming
calendar commitments, a deal-intelligence digest and the actions still in
play.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from src.pipeline.actions.errors import NotFoundError
from src.pipeline.actions.repository import ActionRepository
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActivityKind,
    ContactWithIntelligence,
    DealIntelligence,
    Opportunity,
    ProposedAction,
    utc_now,
)
from src.pipeline.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def build_deal_intelligence(opportunity: Opportunity) -> DealIntelligence:
    health = opportunity.deal_health or {}
    return DealIntelligence(
        name=opportunity.name,
        stage=opportunity.stage_name,
        amount=opportunity.amount,
        probability=opportunity.probability,
        expected_close_date=opportunity.expected_close_date,
        summary=opportunity.summary,
        meddpicc=opportunity.meddpicc,
        deal_health_trend=health.get("trend"),
        momentum=health.get("momentum"),
        narrative=health.get("narrative"),
        risk_factors=opportunity.risk_factors,
        key_milestones=opportunity.key_milestones,
        next_steps=opportunity.next_steps,
    )


def merge_actions(*groups: list[ProposedAction]) -> list[ProposedAction]:
    """Union of action lists, first occurrence of each id wins."""
    seen: set[str] = set()
    merged: list[ProposedAction] = []
    for group in groups:
        for action in group:
            if action.id not in seen:
                seen.add(action.id)
                merged.append(action)
    return merged


class ContextAssembler:
    """Builds ActionPipelineContext snapshots from the repository.

    Args:
        repository: Pipeline persistence.
        settings: Limits for recent activities and future events.
    """

    def __init__(self, repository: ActionRepository, settings: Settings | None = None) -> None:
        self._repository = repository
        self._settings = settings or get_settings()

    async def assemble(
        self, opportunity_id: str, now: datetime | None = None
    ) -> ActionPipelineContext:
        """Assemble the context for one opportunity.

        Only side effect: contact intelligence records are created on first use.

        Raises:
            NotFoundError: If the opportunity does not exist.
        """
        now = now or utc_now()
        repo = self._repository

        opportunity = await repo.get_opportunity(opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity", opportunity_id)

        stages = await repo.list_pipeline_stages(opportunity.pipeline_id)

        contacts: list[ContactWithIntelligence] = []
        for contact in await repo.list_contacts(opportunity.contact_ids):
            intelligence = await repo.get_or_create_contact_intelligence(
                contact.id, opportunity.id
            )
            contacts.append(ContactWithIntelligence(contact=contact, intelligence=intelligence))

        recent = []
        for kind in ActivityKind:
            recent.extend(
                await repo.list_recent_activities(
                    opportunity.id, kind, self._settings.RECENT_ACTIVITY_LIMIT
                )
            )
        recent.sort(key=lambda activity: activity.date, reverse=True)

        future_events = await repo.list_future_events(
            opportunity.id, now, self._settings.FUTURE_EVENT_LIMIT
        )

        existing_actions = merge_actions(
            await repo.list_open_actions(opportunity.id),
            await repo.list_actions_with_pending_scheduled_sends(opportunity.id),
        )

        logger.info(
            "pipeline_context_assembled",
            opportunity_id=opportunity.id,
            contacts=len(contacts),
            recent_activities=len(recent),
            future_events=len(future_events),
            existing_actions=len(existing_actions),
        )
        return ActionPipelineContext(
            opportunity=opportunity,
            pipeline_stages=stages,
            contacts=contacts,
            recent_activities=recent,
            future_events=future_events,
            deal_intelligence=build_deal_intelligence(opportunity),
            existing_actions=existing_actions,
        )
