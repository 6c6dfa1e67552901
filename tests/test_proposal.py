"""Tests for the proposal agent and content composer.

Validates partial-success filtering of oracle candidates, the retry and
fallback path, per-action composition isolation, composition payload
unwrapping and LOOKUP-to-TASK conversion.
"""

from __future__ import annotations

import pytest

from conftest import INBOUND_EMAIL_ID, INBOUND_MESSAGE_ID, INBOUND_THREAD_ID, NOTE_ID
from src.pipeline.actions.errors import InvalidOracleOutputError
from src.pipeline.actions.handlers.base import tomorrow
from src.pipeline.actions.schemas import ActionType, CandidateAction
from src.pipeline.agents.composer import is_lookup_useful, unwrap_composed_result
from src.pipeline.agents.proposal import FALLBACK_REASONING, build_fallback_action
from src.pipeline.agents.prompts import build_proposal_prompt


def _raw_action(action_type: str = "EMAIL", source_ids=None, **details) -> dict:
    if not details and action_type == "EMAIL":
        details = {"to": ["jane.doe@acme.com"], "reply_to_message_id": INBOUND_EMAIL_ID}
    return {
        "type": action_type,
        "details": details,
        "reasoning": "Jane asked about pricing and is waiting for an answer.",
        "source_activity_ids": source_ids or [INBOUND_EMAIL_ID],
        "priority": 2,
        "action_strategy": "Answer promptly to keep momentum.",
    }


def _carol_details() -> dict:
    return {
        "contact_first_name": "Carol",
        "contact_last_name": "King",
        "suggested_role": "Economic Buyer",
    }


# ── Candidate validation ─────────────────────────────────────────────────────


class TestProposalValidation:
    """Partial success: invalid candidates are dropped individually."""

    @pytest.mark.asyncio
    async def test_dangling_source_ids_drop_only_those_candidates(
        self, proposal_agent, oracle, context
    ) -> None:
        oracle.script(
            "proposal_agent",
            {
                "actions": [
                    _raw_action(),
                    _raw_action("CALL", contact_email="bob@acme.com"),
                    _raw_action("NO_ACTION", source_ids=["act-ghost"], reason="wait"),
                    _raw_action(
                        "LINKEDIN_MESSAGE",
                        source_ids=[NOTE_ID],
                        contact_email="jane.doe@acme.com",
                    ),
                    _raw_action("CALL", source_ids=["act-ghost-2"], contact_email="bob@acme.com"),
                ]
            },
        )

        candidates = await proposal_agent.generate_candidates(context)

        assert [c.type for c in candidates] == [
            ActionType.EMAIL,
            ActionType.CALL,
            ActionType.LINKEDIN_MESSAGE,
        ]
        assert len(oracle.calls_for("proposal_agent")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad_fields",
        [
            {"source_activity_ids": []},
            {"reasoning": "short"},
            {"type": "SMS"},
            {"priority": 42},
        ],
    )
    async def test_malformed_candidate_does_not_discard_valid_sibling(
        self, proposal_agent, oracle, context, bad_fields
    ) -> None:
        bad = {**_raw_action("CALL", contact_email="bob@acme.com"), **bad_fields}
        oracle.script("proposal_agent", {"actions": [_raw_action(), bad]})

        candidates = await proposal_agent.generate_candidates(context)

        assert [c.type for c in candidates] == [ActionType.EMAIL]
        assert candidates[0].reasoning != FALLBACK_REASONING
        assert len(oracle.calls_for("proposal_agent")) == 1

    @pytest.mark.asyncio
    async def test_only_first_five_candidates_considered(
        self, proposal_agent, oracle, context
    ) -> None:
        oracle.script(
            "proposal_agent",
            {
                "actions": [
                    _raw_action("NO_ACTION", reason=f"Waiting on customer {i}")
                    for i in range(7)
                ]
            },
        )

        candidates = await proposal_agent.generate_candidates(context)

        assert len(candidates) == 5
        assert candidates[-1].details["reason"] == "Waiting on customer 4"

    @pytest.mark.asyncio
    async def test_partially_dangling_ids_are_pruned(self, proposal_agent, oracle, context) -> None:
        oracle.script(
            "proposal_agent",
            {"actions": [_raw_action(source_ids=[INBOUND_EMAIL_ID, "act-ghost"])]},
        )
        candidates = await proposal_agent.generate_candidates(context)
        assert candidates[0].source_activity_ids == [INBOUND_EMAIL_ID]

    @pytest.mark.asyncio
    async def test_handler_rejections_dropped(self, proposal_agent, oracle, context) -> None:
        oracle.script(
            "proposal_agent",
            {
                "actions": [
                    _raw_action("EMAIL", to=["stranger@other.com"]),
                    _raw_action("NO_ACTION", reason="Customer is reviewing the proposal"),
                ]
            },
        )
        candidates = await proposal_agent.generate_candidates(context)
        assert [c.type for c in candidates] == [ActionType.NO_ACTION]

    @pytest.mark.asyncio
    async def test_inbound_email_yields_threaded_reply(self, proposal_agent, oracle, context) -> None:
        oracle.script("proposal_agent", {"actions": [_raw_action()]})

        actions = await proposal_agent.propose(context)

        assert len(actions) == 1
        reply = actions[0]
        assert reply.type == ActionType.EMAIL
        assert reply.details["reply_to_message_id"] == INBOUND_MESSAGE_ID
        assert reply.details["thread_id"] == INBOUND_THREAD_ID
        assert reply.details["subject"]
        assert reply.details["body"]


# ── Retry and fallback ───────────────────────────────────────────────────────


class TestProposalRetry:
    @pytest.mark.asyncio
    async def test_retries_after_empty_then_succeeds(self, proposal_agent, oracle, context) -> None:
        oracle.script(
            "proposal_agent",
            {"actions": []},
            {"actions": [_raw_action()]},
        )
        candidates = await proposal_agent.generate_candidates(context)

        assert len(candidates) == 1
        calls = oracle.calls_for("proposal_agent")
        assert len(calls) == 2
        assert "RETRY ATTEMPT 2/3" in calls[1]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_manual_review_task(
        self, proposal_agent, oracle, context
    ) -> None:
        oracle.script("proposal_agent", InvalidOracleOutputError("not json"))

        candidates = await proposal_agent.generate_candidates(context)

        assert len(oracle.calls_for("proposal_agent")) == 3
        assert len(candidates) == 1
        fallback = candidates[0]
        assert fallback.type == ActionType.TASK
        assert fallback.priority == 1
        assert fallback.reasoning == FALLBACK_REASONING
        assert fallback.source_activity_ids == [INBOUND_EMAIL_ID]

    @pytest.mark.asyncio
    async def test_all_candidates_invalid_every_attempt_falls_back(
        self, proposal_agent, oracle, context
    ) -> None:
        oracle.script(
            "proposal_agent",
            {"actions": [_raw_action(source_ids=["act-ghost"])]},
        )
        candidates = await proposal_agent.generate_candidates(context)
        assert candidates[0].details["title"] == "Manual review: decide next action"

    @pytest.mark.asyncio
    async def test_fallback_without_activity_has_no_sources(self, context) -> None:
        empty = context.model_copy(update={"recent_activities": []})
        fallback = build_fallback_action(empty)
        assert fallback.source_activity_ids == []
        assert fallback.details["due_date"] == tomorrow().isoformat()


class TestProposalPrompt:
    def test_prompt_lists_contacts_activities_and_catalogue(self, context, registry) -> None:
        prompt = build_proposal_prompt(context, registry.describe_for_prompt())
        assert INBOUND_EMAIL_ID in prompt
        assert "jane.doe@acme.com" in prompt.lower()
        assert "EMAIL" in prompt
        assert "RETRY ATTEMPT" not in prompt


# ── Composition ──────────────────────────────────────────────────────────────


class TestUnwrapComposedResult:
    def test_plain_dict(self) -> None:
        assert unwrap_composed_result({"subject": "Hi"}) == {"subject": "Hi"}

    def test_two_levels_of_result(self) -> None:
        payload = {"result": {"result": {"subject": "Hi"}}}
        assert unwrap_composed_result(payload) == {"subject": "Hi"}

    def test_schema_result_wins(self) -> None:
        payload = {"result": {"schema_result": {"subject": "Schema"}, "subject": "Raw"}}
        assert unwrap_composed_result(payload) == {"subject": "Schema"}

    def test_non_dict_is_none(self) -> None:
        assert unwrap_composed_result("text") is None


class TestContentComposer:
    @pytest.mark.asyncio
    async def test_compose_fills_content_and_protects_threading(
        self, composer, oracle, context
    ) -> None:
        oracle.script(
            "compose_email",
            {"subject": "Pricing tiers", "body": "Hi Jane, the tiers are attached."},
        )
        draft = CandidateAction(
            type=ActionType.EMAIL,
            details={"to": ["jane.doe@acme.com"], "thread_id": INBOUND_THREAD_ID},
        )

        composed = await composer.compose_action(draft, context)

        assert composed.details["subject"] == "Pricing tiers"
        assert composed.details["thread_id"] == INBOUND_THREAD_ID

    @pytest.mark.asyncio
    async def test_one_failure_keeps_its_draft_others_composed(
        self, composer, oracle, context
    ) -> None:
        oracle.script("compose_call", RuntimeError("model down"))
        call = CandidateAction(type=ActionType.CALL, details={"contact_email": "bob@acme.com"})
        email = CandidateAction(type=ActionType.EMAIL, details={"to": ["jane.doe@acme.com"]})

        composed = await composer.compose_actions([call, email], context)

        assert composed[0].details == {"contact_email": "bob@acme.com"}
        assert "subject" in composed[1].details

    @pytest.mark.asyncio
    async def test_composed_contact_fields_are_normalized(self, composer, oracle, context) -> None:
        oracle.script(
            "compose_add_contact",
            {
                "rationale": "Carol owns the budget and joined the last pricing call.",
                "contact_email": "  Carol.King@Acme.COM ",
                "contact_title": "  VP Finance ",
            },
        )
        draft = CandidateAction(type=ActionType.ADD_CONTACT, details=_carol_details())

        composed = await composer.compose_action(draft, context)

        assert composed.details["contact_email"] == "carol.king@acme.com"
        assert composed.details["contact_title"] == "VP Finance"
        assert composed.details["rationale"].startswith("Carol owns the budget")

    @pytest.mark.asyncio
    async def test_composed_email_of_existing_contact_keeps_draft(
        self, composer, oracle, context
    ) -> None:
        oracle.script(
            "compose_add_contact",
            {
                "rationale": "Carol owns the budget and joined the last pricing call.",
                "contact_email": "jane.doe@acme.com",
            },
        )
        draft = CandidateAction(type=ActionType.ADD_CONTACT, details=_carol_details())

        composed = await composer.compose_action(draft, context)

        assert composed == draft

    @pytest.mark.asyncio
    async def test_no_action_is_not_composed(self, composer, oracle, context) -> None:
        draft = CandidateAction(type=ActionType.NO_ACTION, details={"reason": "wait"})
        composed = await composer.compose_action(draft, context)
        assert composed == draft
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_useful_lookup_kept(self, composer, context) -> None:
        draft = CandidateAction(type=ActionType.LOOKUP, details={"query": "Which CRM does Acme use?"})
        composed = await composer.compose_action(draft, context)
        assert composed.type == ActionType.LOOKUP
        assert composed.details["answer"] == "Acme runs Salesforce for CRM."

    @pytest.mark.asyncio
    async def test_unhelpful_lookup_becomes_research_task(self, composer, oracle, context) -> None:
        oracle.script(
            "compose_lookup",
            {"answer": "No information found about this.", "confidence": 0.8},
        )
        draft = CandidateAction(
            type=ActionType.LOOKUP,
            details={"query": "Who signs contracts at Acme?"},
            source_activity_ids=[NOTE_ID],
        )

        composed = await composer.compose_action(draft, context)

        assert composed.type == ActionType.TASK
        assert composed.converted_from_lookup is True
        assert composed.details["converted_from_lookup"] is True
        assert composed.details["due_date"] == tomorrow().isoformat()
        assert composed.source_activity_ids == [NOTE_ID]
        assert oracle.calls_for("compose_task")


class TestIsLookupUseful:
    @pytest.mark.parametrize(
        "content,expected",
        [
            ({"answer": "Acme uses Salesforce", "confidence": 0.9}, True),
            ({"answer": "", "confidence": 0.9}, False),
            ({"answer": "Acme uses Salesforce", "confidence": 0.1}, False),
            ({"answer": "Could not find any record", "confidence": 0.9}, False),
            ({"answer": "Acme uses Salesforce"}, True),
        ],
    )
    def test_usefulness(self, content, expected) -> None:
        assert is_lookup_useful(content) is expected
