"""Proposal agent: next best actions for an opportunity.

ProposalAgent asks the oracle for 1-5 candidate actions and validates each
on its own: the item must fit ProposalOutputAction, source activity ids
must exist in the context and details must pass the handler's validator.
Invalid candidates are dropped individually. An
empty result or oracle error retries the whole call within the RetryPolicy
budget; when the budget is spent a single manual-review TASK is returned.
Validated candidates are composed before returning.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from src.pipeline.actions.errors import DetailValidationError
from src.pipeline.actions.handlers.base import tomorrow
from src.pipeline.actions.registry import ActionTypeRegistry
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    CandidateAction,
)
from src.pipeline.agents.composer import ContentComposer
from src.pipeline.agents.prompts import PROPOSAL_SYSTEM_PROMPT, build_proposal_prompt
from src.pipeline.agents.schemas import (
    MAX_PROPOSED_ACTIONS,
    ProposalOutputAction,
    ProposalResponse,
    validate_item,
)
from src.pipeline.services.oracle import ReasoningOracle
from src.pipeline.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

FALLBACK_REASONING = (
    "Generated actions failed validation after multiple attempts. Manual "
    "strategic review needed to determine the best next step."
)


class EmptyProposalError(Exception):
    """No candidate survived validation."""


def build_fallback_action(context: ActionPipelineContext) -> CandidateAction:
    """Manual-review TASK referencing the most recent activity, if any."""
    return CandidateAction(
        type=ActionType.TASK,
        details={
            "title": "Manual review: decide next action",
            "description": (
                "Review recent activities and determine the next strategic action "
                "for this opportunity. Automated recommendation failed validation."
            ),
            "due_date": tomorrow().isoformat(),
        },
        reasoning=FALLBACK_REASONING,
        source_activity_ids=[a.id for a in context.recent_activities[:1]],
        priority=1,
        action_strategy="Automated recommendation failed; manual analysis required.",
    )


class ProposalAgent:
    """Generates validated, composed candidate actions.

    Args:
        oracle: Structured-output oracle.
        registry: Action type registry.
        composer: Content composer for validated candidates.
        retry_policy: Attempt budget for the oracle call.
    """

    agent_name = "proposal_agent"

    def __init__(
        self,
        oracle: ReasoningOracle,
        registry: ActionTypeRegistry,
        composer: ContentComposer,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._oracle = oracle
        self._registry = registry
        self._composer = composer
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=5, delay=1.0)

    async def propose(self, context: ActionPipelineContext) -> list[CandidateAction]:
        """Propose, validate and compose actions for ``context``."""
        candidates = await self.generate_candidates(context)
        return await self._composer.compose_actions(candidates, context)

    async def generate_candidates(
        self, context: ActionPipelineContext
    ) -> list[CandidateAction]:
        """Validated but uncomposed candidates, or the fallback action."""
        max_attempts = self._retry_policy.max_attempts
        try:
            async for attempt in self._retry_policy.attempts():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    response = await self._call_oracle(context, number, max_attempts)
                    validated = self.validate_candidates(response.actions, context)
                    if not validated:
                        logger.warning(
                            "proposal_empty_after_validation",
                            opportunity_id=context.opportunity.id,
                            attempt=number,
                            raw_count=len(response.actions),
                        )
                        raise EmptyProposalError(
                            f"No valid actions on attempt {number}/{max_attempts}"
                        )
                    logger.info(
                        "proposal_generated",
                        opportunity_id=context.opportunity.id,
                        attempt=number,
                        raw_count=len(response.actions),
                        valid_count=len(validated),
                    )
                    return validated
        except Exception as exc:
            logger.warning(
                "proposal_attempts_exhausted",
                opportunity_id=context.opportunity.id,
                max_attempts=max_attempts,
                error=str(exc),
            )
        return [build_fallback_action(context)]

    async def _call_oracle(
        self, context: ActionPipelineContext, attempt: int, max_attempts: int
    ) -> ProposalResponse:
        prompt = build_proposal_prompt(
            context,
            self._registry.describe_for_prompt(),
            attempt=attempt,
            max_attempts=max_attempts,
        )
        return await self._oracle.generate(
            [
                {"role": "system", "content": PROPOSAL_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            ProposalResponse,
            agent_name=self.agent_name,
            input_variables={
                "opportunity_id": context.opportunity.id,
                "attempt": attempt,
            },
        )

    def validate_candidates(
        self,
        raw_actions: list[Any],
        context: ActionPipelineContext,
    ) -> list[CandidateAction]:
        """Drop malformed items, dangling source ids and handler-rejected details.

        Only the first MAX_PROPOSED_ACTIONS items are considered.

        Returns:
            Surviving candidates with sanitized details.
        """
        activity_ids = context.activity_ids()
        valid_emails = context.valid_contact_emails()
        email_activity_ids = context.valid_email_activity_ids()

        if len(raw_actions) > MAX_PROPOSED_ACTIONS:
            logger.info(
                "proposal_truncated",
                raw_count=len(raw_actions),
                kept=MAX_PROPOSED_ACTIONS,
            )

        validated: list[CandidateAction] = []
        for item in raw_actions[:MAX_PROPOSED_ACTIONS]:
            try:
                raw = validate_item(ProposalOutputAction, item)
            except ValidationError as exc:
                logger.info(
                    "proposal_malformed_action_dropped",
                    errors=exc.error_count(),
                    reason=str(exc)[:300],
                )
                continue

            source_ids = [i for i in raw.source_activity_ids if i in activity_ids]
            if len(source_ids) < len(raw.source_activity_ids):
                logger.info(
                    "proposal_dangling_source_ids_dropped",
                    action_type=raw.type.value,
                    dropped=[i for i in raw.source_activity_ids if i not in activity_ids],
                )
            if not source_ids:
                continue

            handler = self._registry.get_handler(raw.type)
            if handler is None:
                logger.warning("proposal_unknown_action_type", action_type=raw.type.value)
                continue

            candidate = raw.to_candidate().model_copy(
                update={"source_activity_ids": source_ids}
            )
            try:
                details = handler.validate_details(
                    candidate, context, valid_emails, email_activity_ids
                )
            except DetailValidationError as exc:
                logger.info(
                    "proposal_details_rejected",
                    action_type=raw.type.value,
                    reason=str(exc)[:300],
                )
                continue
            validated.append(candidate.model_copy(update={"details": details}))
        return validated
