"""Evaluation agent: reconcile open actions and upcoming events with new activity.

EvaluationAgent asks the oracle for a KEEP/CANCEL/MODIFY decision per open
action and a KEEP/CANCEL/RESCHEDULE decision per upcoming calendar event.
Decisions are then:

1. Validated one by one: malformed decisions and unknown ids are dropped. MODIFY patches are parsed (JSON
   strings allowed), must carry more than bookkeeping keys, are merged over
   the original details keeping every value the patch leaves null, and must
   pass the handler's validator.
2. Deduplicated: one decision per action, the richest wins.
3. Composed: every MODIFY gets fully composed content.

When nothing is open and no events are upcoming the agent delegates to the
ProposalAgent. When the oracle keeps failing it falls back to keeping
everything unchanged.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import ValidationError

from src.pipeline.actions.errors import DetailValidationError
from src.pipeline.actions.registry import ActionTypeRegistry
from src.pipeline.actions.schemas import ActionPipelineContext, CandidateAction
from src.pipeline.agents.composer import ContentComposer
from src.pipeline.agents.prompts import EVALUATION_SYSTEM_PROMPT, build_evaluation_prompt
from src.pipeline.agents.proposal import ProposalAgent
from src.pipeline.agents.schemas import (
    ActionDecision,
    DecisionType,
    EvaluationResponse,
    EvaluationResult,
    EventDecision,
    EventDecisionType,
    validate_item,
)
from src.pipeline.services.oracle import ReasoningOracle
from src.pipeline.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

BOOKKEEPING_KEYS = frozenset({"action_id", "decision", "reasoning", "action_strategy"})
RICHNESS_TEXT_KEYS = ("subject", "body", "to", "cc", "attachments")


# ── Decision helpers ────────────────────────────────────────────────────────


def parse_modified_details(value: dict[str, Any] | str | None) -> dict[str, Any] | None:
    """Return a MODIFY patch as a dict, decoding JSON strings."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def merge_preserving_defined(original: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``patch`` on ``original``; null patch values keep the original."""
    merged = dict(original)
    for key, value in patch.items():
        if value is not None:
            merged[key] = value
    return merged


def _is_populated(value: Any) -> bool:
    return value not in (None, "", [], {})


def decision_richness(decision: ActionDecision) -> int:
    """Score used to pick between decisions on the same action.

    MODIFY with an object patch scores its populated keys plus the lengths
    of subject, body, to, cc and attachments. Everything else scores 0.
    """
    if decision.decision != DecisionType.MODIFY or not isinstance(
        decision.modified_details, dict
    ):
        return 0
    details = decision.modified_details
    score = sum(1 for value in details.values() if _is_populated(value))
    for key in RICHNESS_TEXT_KEYS:
        value = details.get(key)
        if isinstance(value, (str, list)):
            score += len(value)
    return score


def deduplicate_decisions(decisions: list[ActionDecision]) -> list[ActionDecision]:
    """Keep one decision per action id: highest richness, later wins ties.

    Survivors keep their relative order. Idempotent.
    """
    best: dict[str, int] = {}
    for index, decision in enumerate(decisions):
        current = best.get(decision.action_id)
        if current is None or decision_richness(decision) >= decision_richness(
            decisions[current]
        ):
            best[decision.action_id] = index

    discarded = len(decisions) - len(best)
    if discarded:
        logger.info("evaluation_decisions_deduplicated", discarded=discarded, kept=len(best))
    return [decisions[i] for i in sorted(best.values())]


def conservative_evaluation(context: ActionPipelineContext) -> EvaluationResponse:
    """Keep everything; ask for new actions only if there is activity to react to."""
    return EvaluationResponse(
        action_decisions=[
            ActionDecision(
                action_id=action.id,
                decision=DecisionType.KEEP,
                reasoning="Evaluation unavailable; keeping action unchanged.",
            )
            for action in context.existing_actions
        ],
        event_decisions=[
            EventDecision(
                event_id=event.id,
                decision=EventDecisionType.KEEP,
                reasoning="Evaluation unavailable; keeping event unchanged.",
            )
            for event in context.future_events
        ],
        needs_new_actions=bool(context.recent_activities),
        new_action_justification=(
            "Recent activity exists" if context.recent_activities else None
        ),
        overall_assessment="Conservative fallback evaluation.",
    )


# ── Agent ───────────────────────────────────────────────────────────────────


class EvaluationAgent:
    """Reconciles existing actions and events against the current context.

    Args:
        oracle: Structured-output oracle.
        registry: Action type registry.
        composer: Content composer for MODIFY decisions.
        proposal_agent: Used for new gaps and when nothing is open.
        retry_policy: Attempt budget for the oracle call.
    """

    agent_name = "evaluation_agent"

    def __init__(
        self,
        oracle: ReasoningOracle,
        registry: ActionTypeRegistry,
        composer: ContentComposer,
        proposal_agent: ProposalAgent,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._oracle = oracle
        self._registry = registry
        self._composer = composer
        self._proposal_agent = proposal_agent
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, delay=1.0)

    async def evaluate(
        self, context: ActionPipelineContext, reason: str | None = None
    ) -> EvaluationResult:
        """Run the reconciliation flow for ``context``."""
        opportunity_id = context.opportunity.id
        if not context.existing_actions and not context.future_events:
            logger.info("evaluation_delegated_to_proposal", opportunity_id=opportunity_id)
            new_actions = await self._proposal_agent.propose(context)
            return EvaluationResult(
                needs_new_actions=True,
                new_action_justification="No open actions or upcoming events",
                new_actions=new_actions,
            )

        response = await self._request_evaluation(context, reason)
        used_fallback = response is None
        if response is None:
            response = conservative_evaluation(context)

        decisions = self.validate_decisions(response.action_decisions, context)
        decisions = deduplicate_decisions(decisions)
        decisions = await self._compose_modifications(decisions, context)
        events = self.validate_event_decisions(response.event_decisions, context)
        for event in events:
            logger.info(
                "event_decision_recorded",
                opportunity_id=opportunity_id,
                event_id=event.event_id,
                decision=event.decision.value,
                new_scheduled_time=(
                    event.new_scheduled_time.isoformat() if event.new_scheduled_time else None
                ),
            )

        new_actions: list[CandidateAction] = []
        if response.needs_new_actions:
            try:
                new_actions = await self._proposal_agent.propose(context)
            except Exception:
                logger.warning(
                    "evaluation_new_actions_failed",
                    opportunity_id=opportunity_id,
                    exc_info=True,
                )

        logger.info(
            "evaluation_complete",
            opportunity_id=opportunity_id,
            decisions=len(decisions),
            events=len(events),
            new_actions=len(new_actions),
            used_fallback=used_fallback,
        )
        return EvaluationResult(
            action_decisions=decisions,
            event_decisions=events,
            needs_new_actions=response.needs_new_actions,
            new_action_justification=response.new_action_justification,
            overall_assessment=response.overall_assessment,
            new_actions=new_actions,
            used_fallback=used_fallback,
        )

    async def _request_evaluation(
        self, context: ActionPipelineContext, reason: str | None
    ) -> EvaluationResponse | None:
        max_attempts = self._retry_policy.max_attempts
        try:
            async for attempt in self._retry_policy.attempts():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    prompt = build_evaluation_prompt(
                        context, reason, attempt=number, max_attempts=max_attempts
                    )
                    return await self._oracle.generate(
                        [
                            {"role": "system", "content": EVALUATION_SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        EvaluationResponse,
                        agent_name=self.agent_name,
                        input_variables={
                            "opportunity_id": context.opportunity.id,
                            "reason": reason,
                            "attempt": number,
                        },
                    )
        except Exception as exc:
            logger.warning(
                "evaluation_attempts_exhausted",
                opportunity_id=context.opportunity.id,
                max_attempts=max_attempts,
                error=str(exc),
            )
        return None

    def validate_decisions(
        self, decisions: list[Any], context: ActionPipelineContext
    ) -> list[ActionDecision]:
        """Drop malformed decisions, unknown ids and invalid MODIFY patches.

        Accepted MODIFY decisions carry the merged, validated details.
        """
        actions_by_id = {action.id: action for action in context.existing_actions}
        valid_emails = context.valid_contact_emails()
        email_activity_ids = context.valid_email_activity_ids()

        accepted: list[ActionDecision] = []
        for item in decisions:
            try:
                decision = validate_item(ActionDecision, item)
            except ValidationError as exc:
                logger.info(
                    "evaluation_malformed_decision_dropped",
                    action_id=item.get("action_id") if isinstance(item, dict) else None,
                    reason=str(exc)[:300],
                )
                continue
            action = actions_by_id.get(decision.action_id)
            if action is None:
                logger.info("evaluation_unknown_action_dropped", action_id=decision.action_id)
                continue
            if decision.decision != DecisionType.MODIFY:
                accepted.append(decision)
                continue

            patch = parse_modified_details(decision.modified_details)
            if patch is None:
                logger.info("evaluation_modify_unparseable", action_id=action.id)
                continue
            patch = {k: v for k, v in patch.items() if k not in BOOKKEEPING_KEYS}
            if not patch:
                logger.info("evaluation_modify_noop", action_id=action.id)
                continue

            handler = self._registry.get_handler(action.type)
            if handler is None:
                continue
            merged = merge_preserving_defined(action.details, patch)
            try:
                details = handler.validate_details(
                    action.model_copy(update={"details": merged}),
                    context,
                    valid_emails,
                    email_activity_ids,
                )
            except DetailValidationError as exc:
                logger.info(
                    "evaluation_modify_rejected",
                    action_id=action.id,
                    reason=str(exc)[:300],
                )
                continue
            accepted.append(decision.model_copy(update={"modified_details": details}))
        return accepted

    def validate_event_decisions(
        self, decisions: list[Any], context: ActionPipelineContext
    ) -> list[EventDecision]:
        event_ids = {event.id for event in context.future_events}
        kept: list[EventDecision] = []
        for item in decisions:
            try:
                decision = validate_item(EventDecision, item)
            except ValidationError as exc:
                logger.info("evaluation_malformed_event_dropped", reason=str(exc)[:300])
                continue
            if decision.event_id in event_ids:
                kept.append(decision)
        if len(kept) < len(decisions):
            logger.info("evaluation_events_dropped", dropped=len(decisions) - len(kept))
        return kept

    async def _compose_modifications(
        self, decisions: list[ActionDecision], context: ActionPipelineContext
    ) -> list[ActionDecision]:
        actions_by_id = {action.id: action for action in context.existing_actions}
        modify_indexes = [
            i for i, d in enumerate(decisions) if d.decision == DecisionType.MODIFY
        ]
        if not modify_indexes:
            return decisions

        candidates = []
        for i in modify_indexes:
            decision = decisions[i]
            action = actions_by_id[decision.action_id]
            strategy = decision.action_strategy or action.action_strategy
            if decision.content_requirements:
                strategy = f"{strategy or ''}\nContent requirements: {decision.content_requirements}"
            candidates.append(
                CandidateAction.from_proposed(action).model_copy(
                    update={
                        "details": decision.modified_details,
                        "reasoning": decision.reasoning or action.reasoning,
                        "action_strategy": strategy,
                    }
                )
            )

        composed = await self._composer.compose_actions(candidates, context)
        result = list(decisions)
        for i, candidate in zip(modify_indexes, composed):
            original_type = actions_by_id[decisions[i].action_id].type
            if candidate.type != original_type:
                # A modified action keeps its type
                continue
            result[i] = decisions[i].model_copy(update={"modified_details": candidate.details})
        return result
