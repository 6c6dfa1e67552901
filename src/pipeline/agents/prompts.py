"""Prompt templates for the proposal and evaluation agents.

Builders render the ActionPipelineContext into plain-text sections with the
exact ids and email addresses the oracle is allowed to reference. The
oracle's output schema is appended by ReasoningOracle, so builders only
describe the task.

Exports:
    PROPOSAL_SYSTEM_PROMPT: Persona for next-best-action proposals.
    EVALUATION_SYSTEM_PROMPT: Persona for reconciling open actions.
    build_proposal_prompt: User prompt for the proposal agent.
    build_evaluation_prompt: User prompt for the evaluation agent.
"""

from __future__ import annotations

import json

from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    Activity,
    ActivityKind,
    ProposedAction,
    utc_now,
)


# ── System Prompts ──────────────────────────────────────────────────────────


PROPOSAL_SYSTEM_PROMPT: str = """\
You are an elite B2B sales strategist. Given the current state of an \
opportunity, recommend between one and five next best actions that advance \
the deal. Ground every action in specific recent activities and reference \
only the ids and email addresses listed in the context. Prefer one strong \
action over several weak ones.\
"""

EVALUATION_SYSTEM_PROMPT: str = """\
You are a sales operations reviewer. New activity has arrived on an \
opportunity that already has open actions and upcoming meetings. Decide for \
each open action whether it should be kept as is, cancelled, or modified to \
reflect what changed, and for each upcoming meeting whether to keep, cancel \
or reschedule it. Modify an existing action rather than asking for a \
duplicate. Only ask for new actions when there is a gap no open action covers.\
"""


# ── Formatting ──────────────────────────────────────────────────────────────


def _format_activity(activity: Activity) -> str:
    parts = [
        f"id={activity.id}",
        f"kind={activity.kind.value}",
        f"date={activity.date.isoformat()}",
        f"status={activity.status}",
    ]
    if activity.kind == ActivityKind.EMAIL:
        parts.append(f"from={activity.from_address or 'unknown'}")
        parts.append(f"to={', '.join(activity.to_addresses)}")
        if activity.message_id:
            parts.append(f"message_id={activity.message_id}")
        if activity.thread_id:
            parts.append(f"thread_id={activity.thread_id}")
    elif activity.activity_type:
        parts.append(f"type={activity.activity_type}")
    line = "- " + " | ".join(parts)
    return f"{line}\n  {activity.display_summary}"


def _format_event(event: Activity) -> str:
    start = event.start_time.isoformat() if event.start_time else event.date.isoformat()
    attendees = ", ".join(event.attendees) or "none"
    return f"- id={event.id} | {event.title or 'Meeting'} | start={start} | attendees={attendees}"


def _format_action(action: ProposedAction) -> str:
    details = json.dumps(action.details, default=str)
    return (
        f"- id={action.id} | type={action.type.value} | status={action.status.value} "
        f"| priority={action.priority}\n"
        f"  reasoning: {action.reasoning}\n"
        f"  details: {details}"
    )


def _format_contacts(context: ActionPipelineContext) -> str:
    if not context.contacts:
        return "No contacts."
    lines = []
    for entry in context.contacts:
        contact = entry.contact
        intel = entry.intelligence
        emails = ", ".join(contact.emails) or "no email"
        lines.append(
            f"- {contact.full_name} ({contact.title or 'no title'}) emails: {emails}"
            f" | role: {intel.current_role or 'unknown'}"
            f" | engagement: {intel.engagement_score if intel.engagement_score is not None else 'n/a'}"
        )
        if intel.relationship_story:
            lines.append(f"  story: {intel.relationship_story}")
    return "\n".join(lines)


def _format_stages(context: ActionPipelineContext) -> str:
    lines = []
    for stage in context.pipeline_stages:
        flags = []
        if stage.id == context.opportunity.stage_id:
            flags.append("CURRENT")
        if stage.is_closed_won:
            flags.append("closed won")
        if stage.is_closed_lost:
            flags.append("closed lost")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(f"- id={stage.id} | {stage.name}{suffix}")
    return "\n".join(lines) or "No stages."


def _format_deal(context: ActionPipelineContext) -> str:
    deal = context.deal_intelligence
    return json.dumps(deal.model_dump(mode="json", exclude_none=True), indent=2)


def _format_section(title: str, lines: list[str], empty: str) -> str:
    body = "\n".join(lines) if lines else empty
    return f"## {title}\n{body}"


# ── Builders ────────────────────────────────────────────────────────────────


def build_proposal_prompt(
    context: ActionPipelineContext,
    action_catalogue: str,
    attempt: int = 1,
    max_attempts: int = 1,
) -> str:
    """Build the proposal agent's user prompt.

    Args:
        context: Assembled pipeline context.
        action_catalogue: Registry rendering of the available action types.
        attempt: Current attempt number (1-based).
        max_attempts: Total attempts in the retry budget.
    """
    now = utc_now()
    sections = [
        f"Today is {now.date().isoformat()}, current time {now.strftime('%H:%M')} UTC.",
        f"## AVAILABLE ACTION TYPES\n{action_catalogue}",
        f"## DEAL INTELLIGENCE\n{_format_deal(context)}",
        f"## PIPELINE STAGES\n{_format_stages(context)}",
        f"## CONTACTS\n{_format_contacts(context)}",
        _format_section(
            "RECENT ACTIVITIES",
            [_format_activity(a) for a in context.recent_activities],
            "No recent activity.",
        ),
        _format_section(
            "UPCOMING MEETINGS",
            [_format_event(e) for e in context.future_events],
            "No upcoming meetings.",
        ),
        _format_section(
            "OPEN ACTIONS (do not duplicate)",
            [_format_action(a) for a in context.existing_actions],
            "No open actions.",
        ),
        (
            "## RULES\n"
            "- source_activity_ids must be ids from RECENT ACTIVITIES.\n"
            "- Email addresses must come from CONTACTS.\n"
            "- To reply to an email set reply_to_message_id to that email's id.\n"
            "- Dates must be in the future."
        ),
    ]
    if attempt > 1:
        remaining = max_attempts - attempt
        sections.append(
            f"## RETRY ATTEMPT {attempt}/{max_attempts}\n"
            f"Previous attempts failed validation; {remaining} attempt(s) remain after this one. "
            "Use only the exact activity ids and email addresses listed above, "
            "keep all dates in the future and only propose multiple actions when "
            "they are truly independent."
        )
    return "\n\n".join(sections)


def build_evaluation_prompt(
    context: ActionPipelineContext,
    reason: str | None = None,
    attempt: int = 1,
    max_attempts: int = 1,
) -> str:
    """Build the evaluation agent's user prompt.

    Args:
        context: Assembled pipeline context including existing actions.
        reason: Human-readable trigger for the re-evaluation.
        attempt: Current attempt number (1-based).
        max_attempts: Total attempts in the retry budget.
    """
    now = utc_now()
    sections = [
        f"Today is {now.date().isoformat()}, current time {now.strftime('%H:%M')} UTC.",
        f"Trigger: {reason or 'new activity on the opportunity'}",
        f"## DEAL INTELLIGENCE\n{_format_deal(context)}",
        f"## CONTACTS\n{_format_contacts(context)}",
        _format_section(
            "RECENT ACTIVITIES",
            [_format_activity(a) for a in context.recent_activities],
            "No recent activity.",
        ),
        _format_section(
            "EXISTING ACTIONS",
            [_format_action(a) for a in context.existing_actions],
            "No existing actions.",
        ),
        _format_section(
            "UPCOMING MEETINGS",
            [_format_event(e) for e in context.future_events],
            "No upcoming meetings.",
        ),
        (
            "## RULES\n"
            "- Return one decision per existing action id and per meeting id.\n"
            "- For MODIFY put only the changed detail fields in modified_details "
            "and describe the required content in content_requirements.\n"
            "- Set needs_new_actions only for gaps no existing action covers."
        ),
    ]
    if attempt > 1:
        sections.append(
            f"## RETRY ATTEMPT {attempt}/{max_attempts}\n"
            "The previous response was invalid. Use only the ids listed above."
        )
    return "\n\n".join(sections)
