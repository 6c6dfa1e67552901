"""Action pipeline service: the operations exposed to callers.

ActionPipelineService ties together context assembly, the proposal and
evaluation agents, persistence and execution:

- generate_proposed_actions: propose, validate, compose and persist
- re_evaluate_actions: reconcile open actions and apply the decisions
- cancel_all_proposed_actions: bulk-cancel an opportunity's proposals
- approve_action / reject_action / update_action: human review
- recompose_action_content: rebuild an open action's content
- get_actions / get_action / is_opportunity_eligible: reads

create_pipeline_service() wires the default collaborators from settings.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipeline.actions.context import ContextAssembler
from src.pipeline.actions.errors import NotFoundError, StateConflictError
from src.pipeline.actions.execution import ActionExecutionService, ExecutionOutcome
from src.pipeline.actions.handlers import HandlerDependencies
from src.pipeline.actions.registry import ActionTypeRegistry, create_action_registry
from src.pipeline.actions.repository import ActionRepository, new_id
from src.pipeline.actions.schemas import (
    OPEN_STATUSES,
    ActionPipelineContext,
    ActionStatus,
    ActivityRef,
    ActorTag,
    ActorType,
    CandidateAction,
    ProposedAction,
    utc_now,
)
from src.pipeline.agents.composer import ContentComposer
from src.pipeline.agents.evaluation import EvaluationAgent, deduplicate_decisions
from src.pipeline.agents.proposal import ProposalAgent
from src.pipeline.agents.schemas import DecisionType, EvaluationResult
from src.pipeline.config import Settings, get_settings
from src.pipeline.core.database import get_session
from src.pipeline.core.monitoring import actions_proposed_total, evaluation_decisions_total
from src.pipeline.observability.capture import UsageCapture
from src.pipeline.observability.tracer import PipelineTracer
from src.pipeline.services.llm import LLMService
from src.pipeline.services.oracle import ReasoningOracle
from src.pipeline.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# Statuses a reconciliation decision may still act on
RECONCILABLE_STATUSES = (*OPEN_STATUSES, ActionStatus.EXECUTED)


@dataclass
class ApprovalResult:
    action: ProposedAction
    execution: ExecutionOutcome | None = None


def _parse_schedule(details: dict[str, Any]) -> datetime | None:
    value = details.get("scheduled_for")
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def resolve_source_activities(
    activity_ids: list[str], context: ActionPipelineContext
) -> list[ActivityRef]:
    """Resolve activity ids to references carrying their kind."""
    refs = []
    for activity_id in activity_ids:
        activity = context.find_activity(activity_id)
        if activity is None:
            logger.info("source_activity_unresolved", activity_id=activity_id)
            continue
        refs.append(activity.ref)
    return refs


def to_proposed_action(
    candidate: CandidateAction, context: ActionPipelineContext
) -> ProposedAction:
    now = utc_now()
    return ProposedAction(
        id=new_id(),
        opportunity_id=context.opportunity.id,
        type=candidate.type,
        status=ActionStatus.PROPOSED,
        details=candidate.details,
        reasoning=candidate.reasoning,
        priority=candidate.priority,
        action_strategy=candidate.action_strategy,
        source_activities=resolve_source_activities(candidate.source_activity_ids, context),
        created_by=ActorTag(type=ActorType.AI_AGENT, at=now),
        scheduled_for=_parse_schedule(candidate.details),
        created_at=now,
        updated_at=now,
    )


class ActionPipelineService:
    """Entry point for the action pipeline operations.

    Args:
        repository: Pipeline persistence.
        assembler: Context assembler.
        proposal_agent: Proposal agent.
        evaluation_agent: Evaluation agent.
        composer: Content composer.
        execution: Execution service.
        tracer: Optional Langfuse operation tagging.
    """

    def __init__(
        self,
        repository: ActionRepository,
        assembler: ContextAssembler,
        proposal_agent: ProposalAgent,
        evaluation_agent: EvaluationAgent,
        composer: ContentComposer,
        execution: ActionExecutionService,
        tracer: PipelineTracer | None = None,
    ) -> None:
        self._repository = repository
        self._assembler = assembler
        self._proposal_agent = proposal_agent
        self._evaluation_agent = evaluation_agent
        self._composer = composer
        self._execution = execution
        self._tracer = tracer

    @property
    def execution(self) -> ActionExecutionService:
        return self._execution

    # ── Reads ───────────────────────────────────────────────────────────────

    async def is_opportunity_eligible(self, opportunity_id: str) -> bool:
        """Closed opportunities and opportunities without contacts are skipped.

        Raises:
            NotFoundError: If the opportunity does not exist.
        """
        opportunity = await self._repository.get_opportunity(opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity", opportunity_id)
        if opportunity.stage is not None and opportunity.stage.is_closed:
            logger.info(
                "opportunity_ineligible",
                opportunity_id=opportunity_id,
                reason="closed_stage",
                stage=opportunity.stage.name,
            )
            return False
        if not opportunity.contact_ids:
            logger.info("opportunity_ineligible", opportunity_id=opportunity_id, reason="no_contacts")
            return False
        return True

    async def get_actions(
        self, opportunity_id: str, statuses: list[ActionStatus] | None = None
    ) -> list[ProposedAction]:
        return await self._repository.list_actions(opportunity_id, statuses)

    async def get_action(self, action_id: str) -> ProposedAction:
        """Raises NotFoundError if the action does not exist."""
        action = await self._repository.get_action(action_id)
        if action is None:
            raise NotFoundError("ProposedAction", action_id)
        return action

    # ── Pipeline runs ───────────────────────────────────────────────────────

    async def generate_proposed_actions(self, opportunity_id: str) -> list[ProposedAction]:
        """Propose, compose and persist new actions for an opportunity.

        Returns:
            The persisted PROPOSED actions; empty for ineligible opportunities.

        Raises:
            NotFoundError: If the opportunity does not exist.
        """
        if not await self.is_opportunity_eligible(opportunity_id):
            return []

        with self._trace("generate_proposed_actions", opportunity_id):
            context = await self._assembler.assemble(opportunity_id)
            candidates = await self._proposal_agent.propose(context)
            actions = [to_proposed_action(c, context) for c in candidates]
            await self._repository.create_actions(actions)

        for action in actions:
            actions_proposed_total.labels(action_type=action.type.value, source="proposal").inc()
        logger.info(
            "proposed_actions_generated",
            opportunity_id=opportunity_id,
            count=len(actions),
            types=[a.type.value for a in actions],
        )
        return actions

    async def re_evaluate_actions(
        self, opportunity_id: str, reason: str | None = None
    ) -> ActionPipelineContext:
        """Reconcile existing actions and events with the latest activity.

        Returns:
            The context re-assembled after applying the decisions. For an
            ineligible opportunity the current context, with nothing applied.

        Raises:
            NotFoundError: If the opportunity does not exist.
        """
        if not await self.is_opportunity_eligible(opportunity_id):
            return await self._assembler.assemble(opportunity_id)

        with self._trace("re_evaluate_actions", opportunity_id):
            context = await self._assembler.assemble(opportunity_id)
            result = await self._evaluation_agent.evaluate(context, reason)
            await self.apply_evaluation(context, result)
        return await self._assembler.assemble(opportunity_id)

    async def apply_evaluation(
        self, context: ActionPipelineContext, result: EvaluationResult
    ) -> list[ProposedAction]:
        """Apply decisions and persist new actions in one transaction.

        Returns:
            The newly created actions.
        """
        decisions = deduplicate_decisions(result.action_decisions)
        now = utc_now()
        released: list[str] = []
        async with self._repository.transaction() as session:
            for decision in decisions:
                action = await self._repository.get_action(
                    decision.action_id, session=session, for_update=True
                )
                if action is None or action.status not in RECONCILABLE_STATUSES:
                    logger.info(
                        "evaluation_decision_skipped",
                        action_id=decision.action_id,
                        status=action.status.value if action else None,
                    )
                    continue

                if decision.decision == DecisionType.CANCEL:
                    await self._execution.unwind_resulting_activities(action, session=session)
                    released += await self._execution.release_attachments(
                        action, session=session
                    )
                    await self._repository.save_action(
                        action.model_copy(update={"status": ActionStatus.CANCELLED}),
                        session=session,
                    )
                elif decision.decision == DecisionType.MODIFY:
                    updates: dict[str, Any] = {
                        "details": decision.modified_details,
                        "reasoning": decision.reasoning or action.reasoning,
                        "action_strategy": decision.action_strategy or action.action_strategy,
                        "last_edited_by": ActorTag(type=ActorType.AI_AGENT, at=now),
                    }
                    if action.resulting_activities:
                        await self._execution.unwind_resulting_activities(
                            action, session=session
                        )
                        updates.update(
                            resulting_activities=[],
                            status=ActionStatus.PROPOSED,
                            executed_at=None,
                        )
                    await self._repository.save_action(
                        action.model_copy(update=updates), session=session
                    )

                evaluation_decisions_total.labels(decision=decision.decision.value).inc()
                logger.info(
                    "evaluation_decision_applied",
                    action_id=action.id,
                    decision=decision.decision.value,
                )

            new_actions = [to_proposed_action(c, context) for c in result.new_actions]
            await self._repository.create_actions(new_actions, session=session)

        await self._execution.remove_attachment_files(released)
        for action in new_actions:
            actions_proposed_total.labels(action_type=action.type.value, source="evaluation").inc()
        return new_actions

    async def cancel_all_proposed_actions(self, opportunity_id: str) -> int:
        """Cancel every PROPOSED action of an opportunity.

        Returns:
            Number of actions cancelled.
        """
        released: list[str] = []
        async with self._repository.transaction() as session:
            proposed = await self._repository.list_actions(
                opportunity_id, [ActionStatus.PROPOSED], session=session
            )
            for action in proposed:
                released += await self._execution.release_attachments(action, session=session)
            count = await self._repository.cancel_proposed_actions(
                opportunity_id, session=session
            )
        await self._execution.remove_attachment_files(released)
        logger.info("proposed_actions_cancelled", opportunity_id=opportunity_id, count=count)
        return count

    # ── Review ──────────────────────────────────────────────────────────────

    async def approve_action(
        self, action_id: str, approver_id: str, execute_immediately: bool = False
    ) -> ApprovalResult:
        """Approve a PROPOSED action, optionally executing it right away.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is not PROPOSED.
        """
        async with self._repository.transaction() as session:
            action = await self._locked_action(action_id, session)
            if action.status != ActionStatus.PROPOSED:
                raise StateConflictError(action_id, action.status.value)
            approved = action.model_copy(
                update={"status": ActionStatus.APPROVED, "approved_by": approver_id}
            )
            await self._repository.save_action(approved, session=session)
        logger.info("action_approved", action_id=action_id, approver_id=approver_id)

        if not execute_immediately:
            return ApprovalResult(action=approved)
        outcome = await self._execution.execute(action_id, approver_id)
        return ApprovalResult(action=await self.get_action(action_id), execution=outcome)

    async def reject_action(
        self, action_id: str, actor_id: str, reason: str | None = None
    ) -> ProposedAction:
        """Reject a PROPOSED action and release its attachments.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is not PROPOSED.
        """
        now = utc_now()
        async with self._repository.transaction() as session:
            action = await self._locked_action(action_id, session)
            if action.status != ActionStatus.PROPOSED:
                raise StateConflictError(action_id, action.status.value)
            released = await self._execution.release_attachments(action, session=session)
            rejected = action.model_copy(
                update={
                    "status": ActionStatus.REJECTED,
                    "details": {
                        **action.details,
                        "rejection_reason": reason,
                        "rejected_at": now.isoformat(),
                    },
                    "last_edited_by": ActorTag(type=ActorType.USER, id=actor_id, at=now),
                }
            )
            await self._repository.save_action(rejected, session=session)
        await self._execution.remove_attachment_files(released)
        logger.info("action_rejected", action_id=action_id, actor_id=actor_id)
        return rejected

    async def update_action(
        self,
        action_id: str,
        actor_id: str,
        details: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
    ) -> ProposedAction:
        """Apply a user's edits to an action.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is EXECUTED or REJECTED.
        """
        now = utc_now()
        async with self._repository.transaction() as session:
            action = await self._locked_action(action_id, session)
            if action.status in (ActionStatus.EXECUTED, ActionStatus.REJECTED):
                raise StateConflictError(
                    action_id,
                    action.status.value,
                    f"Cannot edit action {action_id} in status {action.status.value}",
                )
            updates: dict[str, Any] = {
                "last_edited_by": ActorTag(type=ActorType.USER, id=actor_id, at=now),
            }
            if details:
                updates["details"] = {**action.details, **details}
            if scheduled_for is not None:
                updates["scheduled_for"] = scheduled_for
            updated = action.model_copy(update=updates)
            await self._repository.save_action(updated, session=session)
        logger.info("action_updated", action_id=action_id, actor_id=actor_id)
        return updated

    async def recompose_action_content(self, action_id: str) -> ProposedAction:
        """Compose an open action's content again and reset it to PROPOSED.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is no longer open.
        """
        action = await self.get_action(action_id)
        if action.status not in OPEN_STATUSES:
            raise StateConflictError(action_id, action.status.value)

        context = await self._assembler.assemble(action.opportunity_id)
        composed = await self._composer.compose_action(
            CandidateAction.from_proposed(action), context
        )

        async with self._repository.transaction() as session:
            current = await self._locked_action(action_id, session)
            if current.status not in OPEN_STATUSES:
                raise StateConflictError(action_id, current.status.value)
            merged = (
                composed.details
                if composed.type != current.type
                else {**current.details, **composed.details}
            )
            updated = current.model_copy(
                update={
                    "type": composed.type,
                    "details": merged,
                    "status": ActionStatus.PROPOSED,
                    "approved_by": None,
                }
            )
            await self._repository.save_action(updated, session=session)
        logger.info("action_recomposed", action_id=action_id, action_type=updated.type.value)
        return updated

    # ── Internals ───────────────────────────────────────────────────────────

    async def _locked_action(self, action_id: str, session: AsyncSession) -> ProposedAction:
        action = await self._repository.get_action(action_id, session=session, for_update=True)
        if action is None:
            raise NotFoundError("ProposedAction", action_id)
        return action

    def _trace(self, operation: str, opportunity_id: str):
        if self._tracer is None:
            return _NullTrace()
        return self._tracer.trace_operation(operation, opportunity_id)


class _NullTrace:
    def __enter__(self) -> dict[str, Any]:
        return {}

    def __exit__(self, *exc_info: Any) -> None:
        return None


# ── Factory ─────────────────────────────────────────────────────────────────


def create_pipeline_service(
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]] = get_session,
    settings: Settings | None = None,
    oracle: ReasoningOracle | None = None,
    email_provider: Any = None,
    calendar_provider: Any = None,
    registry: ActionTypeRegistry | None = None,
) -> ActionPipelineService:
    """Wire an ActionPipelineService with the default collaborators.

    Args:
        session_factory: Async session generator (e.g. core.database.get_session).
        settings: Retry budgets and limits. Uses get_settings() if None.
        oracle: Structured-output oracle. Built over LLMService with sampled
            eval capture if None.
        email_provider: GmailService for EMAIL execution.
        calendar_provider: GoogleCalendarService for MEETING execution.
        registry: Pre-built registry; built from the default handlers if None.
    """
    settings = settings or get_settings()
    if oracle is None:
        oracle = ReasoningOracle(
            LLMService(settings),
            capture=UsageCapture(session_factory, settings.EVAL_CAPTURE_SAMPLE_RATE),
        )
    repository = ActionRepository(session_factory)
    if registry is None:
        registry = create_action_registry(
            HandlerDependencies(
                repository=repository,
                oracle=oracle,
                email_provider=email_provider,
                calendar_provider=calendar_provider,
            )
        )
    composer = ContentComposer(registry, min_lookup_confidence=settings.LOOKUP_MIN_CONFIDENCE)
    proposal_agent = ProposalAgent(
        oracle,
        registry,
        composer,
        RetryPolicy(
            max_attempts=settings.PROPOSAL_MAX_ATTEMPTS,
            delay=settings.PROPOSAL_RETRY_DELAY_SECONDS,
        ),
    )
    evaluation_agent = EvaluationAgent(
        oracle,
        registry,
        composer,
        proposal_agent,
        RetryPolicy(
            max_attempts=settings.EVALUATION_MAX_ATTEMPTS,
            delay=settings.EVALUATION_RETRY_DELAY_SECONDS,
        ),
    )
    return ActionPipelineService(
        repository=repository,
        assembler=ContextAssembler(repository, settings),
        proposal_agent=proposal_agent,
        evaluation_agent=evaluation_agent,
        composer=composer,
        execution=ActionExecutionService(repository, registry),
        tracer=PipelineTracer(settings),
    )
