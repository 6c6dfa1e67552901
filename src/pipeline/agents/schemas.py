"""Oracle output models for the proposal and evaluation agents.

ProposalResponse and EvaluationResponse are the shapes the oracle must
return. Their list items are accepted as raw JSON and validated one by one
by the agents (ProposalOutputAction, ActionDecision, EventDecision), so one
malformed item does not sink its siblings. The prompt still shows the full
item schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, Field, WithJsonSchema

from src.pipeline.actions.schemas import ActionType, CandidateAction

M = TypeVar("M", bound=BaseModel)

MAX_PROPOSED_ACTIONS = 5


def inline_json_schema(model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema of ``model`` with ``$defs`` references expanded in place."""
    schema = model.model_json_schema()
    defs = schema.pop("$defs", {})

    def resolve(node: Any) -> Any:
        if isinstance(node, dict):
            resolved = {k: resolve(v) for k, v in node.items() if k != "$ref"}
            ref = node.get("$ref", "")
            if ref.startswith("#/$defs/"):
                return {**resolve(defs[ref.rsplit("/", 1)[-1]]), **resolved}
            return resolved
        if isinstance(node, list):
            return [resolve(v) for v in node]
        return node

    return resolve(schema)


def validate_item(model: type[M], raw: Any) -> M:
    """Validate one raw list item; instances of ``model`` pass through.

    Raises:
        pydantic.ValidationError: If ``raw`` does not fit ``model``.
    """
    return raw if isinstance(raw, model) else model.model_validate(raw)


# ── Proposal ────────────────────────────────────────────────────────────────


class ProposalOutputAction(BaseModel):
    type: ActionType
    details: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = Field(min_length=10, max_length=500)
    source_activity_ids: list[str] = Field(
        min_length=1, description="Ids of activities from the context that motivate this action"
    )
    priority: int = Field(ge=1, le=10, description="1 is most urgent")
    action_strategy: str | None = None

    def to_candidate(self) -> CandidateAction:
        return CandidateAction(
            type=self.type,
            details=self.details,
            reasoning=self.reasoning,
            source_activity_ids=self.source_activity_ids,
            priority=self.priority,
            action_strategy=self.action_strategy,
        )


RawProposalAction = Annotated[Any, WithJsonSchema(inline_json_schema(ProposalOutputAction))]


class ProposalResponse(BaseModel):
    actions: list[RawProposalAction] = Field(
        default_factory=list,
        description=f"One to {MAX_PROPOSED_ACTIONS} actions, most important first",
    )


# ── Evaluation ──────────────────────────────────────────────────────────────


class DecisionType(str, Enum):
    KEEP = "KEEP"
    CANCEL = "CANCEL"
    MODIFY = "MODIFY"


class EventDecisionType(str, Enum):
    KEEP = "KEEP"
    CANCEL = "CANCEL"
    RESCHEDULE = "RESCHEDULE"


class ActionDecision(BaseModel):
    action_id: str
    decision: DecisionType
    reasoning: str = ""
    modified_details: dict[str, Any] | str | None = Field(
        default=None,
        description="For MODIFY: only the detail fields that change",
    )
    content_requirements: str | None = Field(
        default=None, description="For MODIFY: what the rewritten content must cover"
    )
    action_strategy: str | None = None


class EventDecision(BaseModel):
    event_id: str
    decision: EventDecisionType
    reasoning: str = ""
    new_scheduled_time: datetime | None = None


RawActionDecision = Annotated[Any, WithJsonSchema(inline_json_schema(ActionDecision))]
RawEventDecision = Annotated[Any, WithJsonSchema(inline_json_schema(EventDecision))]


class EvaluationResponse(BaseModel):
    action_decisions: list[RawActionDecision] = Field(default_factory=list)
    event_decisions: list[RawEventDecision] = Field(default_factory=list)
    needs_new_actions: bool = False
    new_action_justification: str | None = None
    overall_assessment: str | None = None


@dataclass
class EvaluationResult:
    """Validated, deduplicated evaluation ready to apply.

    MODIFY decisions carry their merged and composed details in
    ``modified_details``.
    """

    action_decisions: list[ActionDecision] = field(default_factory=list)
    event_decisions: list[EventDecision] = field(default_factory=list)
    needs_new_actions: bool = False
    new_action_justification: str | None = None
    overall_assessment: str | None = None
    new_actions: list[CandidateAction] = field(default_factory=list)
    used_fallback: bool = False
