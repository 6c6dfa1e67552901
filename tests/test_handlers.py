"""Tests for the action type registry and per-type handler behavior.

Covers registry lookup and prompt catalogue, details validation against
the pipeline context for every action type, and handler execution against
the in-memory repository with mocked Gmail/Calendar providers.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from conftest import (
    INBOUND_EMAIL_ID,
    INBOUND_MESSAGE_ID,
    INBOUND_THREAD_ID,
    MEETING_ID,
    OPPORTUNITY_ID,
    add_future_meeting,
    later,
    make_action,
)
from src.pipeline.actions.errors import DetailValidationError, ExecutionError
from src.pipeline.actions.handlers import EmailHandler
from src.pipeline.actions.handlers.base import filter_emails, today, tomorrow
from src.pipeline.actions.registry import ActionTypeRegistry
from src.pipeline.actions.schemas import (
    ActionType,
    ActivityKind,
    ActivityStatus,
    CandidateAction,
)


def _validate(registry, context, action_type: ActionType, details: dict) -> dict:
    handler = registry.get_handler(action_type)
    candidate = CandidateAction(type=action_type, details=details)
    return handler.validate_details(
        candidate,
        context,
        context.valid_contact_emails(),
        context.valid_email_activity_ids(),
    )


# ── Registry ─────────────────────────────────────────────────────────────────


class TestActionTypeRegistry:
    """Registry lookup, duplicates and prompt catalogue."""

    def test_every_action_type_has_a_handler(self, registry) -> None:
        assert len(registry) == len(ActionType)
        for action_type in ActionType:
            assert registry.get_handler(action_type) is not None

    def test_lookup_by_string_and_unknown(self, registry) -> None:
        assert registry.get_handler("EMAIL").action_type == ActionType.EMAIL
        assert registry.get_handler("FAX") is None

    def test_duplicate_registration_rejected(self, deps) -> None:
        registry = ActionTypeRegistry()
        registry.register(EmailHandler(deps))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(EmailHandler(deps))

    def test_prompt_catalogue_hides_internal_types(self, registry) -> None:
        catalogue = registry.describe_for_prompt()
        assert "- EMAIL:" in catalogue
        assert "- TASK:" not in catalogue
        assert "- LOOKUP:" not in catalogue

    def test_details_schemas_cover_all_types(self, registry) -> None:
        schemas = registry.details_schemas()
        assert set(schemas) == {t.value for t in ActionType}
        assert "to" in schemas["EMAIL"]["properties"]


class TestFilterEmails:
    def test_lowercases_dedupes_and_drops_unknown(self) -> None:
        valid = {"jane.doe@acme.com", "bob@acme.com"}
        result = filter_emails(
            ["Jane.Doe@ACME.com", "jane.doe@acme.com", "stranger@evil.com", " bob@acme.com "],
            valid,
        )
        assert result == ["jane.doe@acme.com", "bob@acme.com"]


# ── EMAIL ────────────────────────────────────────────────────────────────────


class TestEmailValidation:
    """Recipient filtering and reply threading."""

    async def test_unknown_recipients_removed(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.EMAIL,
            {"to": ["JANE.DOE@acme.com", "ceo@other.com"], "cc": ["bob@acme.com", "x@y.com"]},
        )
        assert details["to"] == ["jane.doe@acme.com"]
        assert details["cc"] == ["bob@acme.com"]
        assert details["scheduled_for"] is not None

    async def test_no_valid_recipient_rejected(self, registry, context) -> None:
        with pytest.raises(DetailValidationError):
            _validate(registry, context, ActionType.EMAIL, {"to": ["ceo@other.com"]})

    async def test_reply_by_activity_id_resolves_message_and_thread(
        self, registry, context
    ) -> None:
        details = _validate(
            registry,
            context,
            ActionType.EMAIL,
            {"to": ["jane.doe@acme.com"], "reply_to_message_id": INBOUND_EMAIL_ID},
        )
        assert details["reply_to_message_id"] == INBOUND_MESSAGE_ID
        assert details["thread_id"] == INBOUND_THREAD_ID

    async def test_reply_by_message_id_resolves(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.EMAIL,
            {"to": ["jane.doe@acme.com"], "reply_to_message_id": INBOUND_MESSAGE_ID},
        )
        assert details["thread_id"] == INBOUND_THREAD_ID

    async def test_unknown_reply_target_nulls_threading(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.EMAIL,
            {
                "to": ["jane.doe@acme.com"],
                "reply_to_message_id": "<invented@nowhere>",
                "thread_id": "made-up-thread",
            },
        )
        assert details["reply_to_message_id"] is None
        assert details["thread_id"] is None

    async def test_standalone_known_thread_kept(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.EMAIL,
            {"to": ["jane.doe@acme.com"], "thread_id": INBOUND_THREAD_ID},
        )
        assert details["thread_id"] == INBOUND_THREAD_ID


class TestEmailExecution:
    """Immediate send versus scheduled send."""

    @pytest.mark.asyncio
    async def test_immediate_send_records_sent_activity(
        self, registry, repo, email_provider
    ) -> None:
        handler = registry.get_handler(ActionType.EMAIL)
        result = await handler.execute(make_action(), "user-1", object())

        assert result["type"] == "sent"
        email_provider.send_email.assert_awaited_once()
        message = email_provider.send_email.await_args.args[0]
        assert message.to == ["jane.doe@acme.com"]
        activity = repo.activities[result["activity_id"]]
        assert activity.kind == ActivityKind.EMAIL
        assert activity.is_sent is True
        assert activity.status == ActivityStatus.SENT.value

    @pytest.mark.asyncio
    async def test_future_send_creates_scheduled_activity(
        self, registry, repo, email_provider
    ) -> None:
        action = make_action(
            details={
                "to": ["jane.doe@acme.com"],
                "subject": "Pricing",
                "body": "Hi Jane, here are the pricing tiers.",
                "scheduled_for": later(days=1).isoformat(),
            }
        )
        handler = registry.get_handler(ActionType.EMAIL)
        result = await handler.execute(action, "user-1", object())

        assert result["type"] == "scheduled"
        email_provider.send_email.assert_not_awaited()
        activity = repo.activities[result["activity_id"]]
        assert activity.status == ActivityStatus.SCHEDULED.value
        assert activity.message_id.startswith(f"scheduled-{action.id}-")
        assert activity.metadata["source_action_id"] == action.id

    @pytest.mark.asyncio
    async def test_missing_body_fails(self, registry) -> None:
        action = make_action(details={"to": ["jane.doe@acme.com"], "subject": "Hi"})
        with pytest.raises(ExecutionError):
            await registry.get_handler(ActionType.EMAIL).execute(action, "user-1", object())

    @pytest.mark.asyncio
    async def test_provider_failure_is_execution_error(self, registry, email_provider) -> None:
        email_provider.send_email.side_effect = RuntimeError("quota exceeded")
        with pytest.raises(ExecutionError, match="quota exceeded"):
            await registry.get_handler(ActionType.EMAIL).execute(make_action(), "u", object())


# ── TASK / NO_ACTION ─────────────────────────────────────────────────────────


class TestDateNormalization:
    async def test_past_task_due_date_moves_to_tomorrow(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.TASK,
            {"title": "Follow up", "due_date": (today() - timedelta(days=5)).isoformat()},
        )
        assert details["due_date"] == tomorrow().isoformat()

    async def test_future_task_due_date_kept(self, registry, context) -> None:
        due = (today() + timedelta(days=7)).isoformat()
        details = _validate(registry, context, ActionType.TASK, {"title": "Prep", "due_date": due})
        assert details["due_date"] == due

    async def test_no_action_review_date_defaults_to_tomorrow(self, registry, context) -> None:
        details = _validate(registry, context, ActionType.NO_ACTION, {"reason": "Waiting"})
        assert details["next_review_date"] == tomorrow().isoformat()

    async def test_no_action_review_today_moves_to_tomorrow(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.NO_ACTION,
            {"next_review_date": today().isoformat()},
        )
        assert details["next_review_date"] == tomorrow().isoformat()

    @pytest.mark.asyncio
    async def test_task_execution_creates_to_do_activity(self, registry, repo) -> None:
        due = date.today() + timedelta(days=2)
        action = make_action(
            action_type="TASK", details={"title": "Send deck", "due_date": due.isoformat()}
        )
        result = await registry.get_handler(ActionType.TASK).execute(action, "u", object())

        activity = repo.activities[result["activity_id"]]
        assert result["type"] == "task_created"
        assert activity.status == ActivityStatus.TO_DO.value
        assert activity.date.hour == 9


# ── CALL / LINKEDIN ──────────────────────────────────────────────────────────


class TestContactScopedTypes:
    async def test_call_requires_known_contact(self, registry, context) -> None:
        with pytest.raises(DetailValidationError):
            _validate(registry, context, ActionType.CALL, {"contact_email": "who@else.com"})

    async def test_call_email_normalized(self, registry, context) -> None:
        details = _validate(registry, context, ActionType.CALL, {"contact_email": "BOB@acme.com"})
        assert details["contact_email"] == "bob@acme.com"

    async def test_linkedin_defaults_schedule_to_now(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.LINKEDIN_MESSAGE,
            {"contact_email": "jane.doe@acme.com", "message": "Hello"},
        )
        assert details["scheduled_for"] is not None

    @pytest.mark.asyncio
    async def test_call_execution_schedules_activity(self, registry, repo) -> None:
        action = make_action(
            action_type="CALL",
            details={"contact_email": "bob@acme.com", "scheduled_for": later(days=1).isoformat()},
        )
        result = await registry.get_handler(ActionType.CALL).execute(action, "u", object())

        activity = repo.activities[result["activity_id"]]
        assert activity.status == ActivityStatus.SCHEDULED.value
        assert activity.contact_ids == ["contact-2"]

    @pytest.mark.asyncio
    async def test_linkedin_without_message_fails(self, registry) -> None:
        action = make_action(
            action_type="LINKEDIN_MESSAGE", details={"contact_email": "bob@acme.com"}
        )
        with pytest.raises(ExecutionError):
            await registry.get_handler(ActionType.LINKEDIN_MESSAGE).execute(action, "u", object())


# ── MEETING ──────────────────────────────────────────────────────────────────


class TestMeetingHandler:
    async def test_create_requires_title_duration_and_time(self, registry, context) -> None:
        with pytest.raises(DetailValidationError, match="duration"):
            _validate(
                registry,
                context,
                ActionType.MEETING,
                {"title": "Demo", "attendees": ["jane.doe@acme.com"], "scheduled_for": later(days=2).isoformat()},
            )

    async def test_update_requires_known_event(self, registry, context) -> None:
        with pytest.raises(DetailValidationError, match="unknown calendar activity"):
            _validate(
                registry,
                context,
                ActionType.MEETING,
                {"mode": "update", "existing_calendar_activity_id": "evt-missing"},
            )

    async def test_cancel_of_known_event_accepted(self, registry, repo, assembler) -> None:
        add_future_meeting(repo)
        context = await assembler.assemble(OPPORTUNITY_ID)
        details = _validate(
            registry,
            context,
            ActionType.MEETING,
            {"mode": "cancel", "existing_calendar_activity_id": MEETING_ID},
        )
        assert details["mode"] == "cancel"

    @pytest.mark.asyncio
    async def test_create_execution_records_calendar_activity(
        self, registry, repo, calendar_provider
    ) -> None:
        action = make_action(
            action_type="MEETING",
            details={
                "title": "Deep dive",
                "attendees": ["jane.doe@acme.com"],
                "duration": 45,
                "scheduled_for": later(days=2).isoformat(),
            },
        )
        result = await registry.get_handler(ActionType.MEETING).execute(action, "u", object())

        request = calendar_provider.create_event.await_args.args[0]
        assert (request.end - request.start) == timedelta(minutes=45)
        activity = repo.activities[result["activity_id"]]
        assert activity.kind == ActivityKind.CALENDAR
        assert activity.provider_event_id == "gcal-new-1"

    @pytest.mark.asyncio
    async def test_cancel_execution_marks_event_cancelled(
        self, registry, repo, calendar_provider
    ) -> None:
        add_future_meeting(repo)
        action = make_action(
            action_type="MEETING",
            details={"mode": "cancel", "existing_calendar_activity_id": MEETING_ID},
        )
        result = await registry.get_handler(ActionType.MEETING).execute(action, "u", object())

        calendar_provider.cancel_event.assert_awaited_once_with("gcal-evt-1")
        assert result == {"type": "meeting_cancelled", "calendar_activity_id": MEETING_ID}
        assert repo.activities[MEETING_ID].status == ActivityStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_missing_calendar_provider_fails(self, registry, deps) -> None:
        deps.calendar_provider = None
        action = make_action(action_type="MEETING", details={"mode": "cancel"})
        with pytest.raises(ExecutionError, match="calendar provider"):
            await registry.get_handler(ActionType.MEETING).execute(action, "u", object())


# ── UPDATE_PIPELINE_STAGE / ADD_CONTACT ──────────────────────────────────────


class TestStageAndContactHandlers:
    async def test_stage_must_exist_and_differ(self, registry, context) -> None:
        with pytest.raises(DetailValidationError):
            _validate(registry, context, ActionType.UPDATE_PIPELINE_STAGE, {"target_stage_id": "nope"})
        with pytest.raises(DetailValidationError, match="already in stage"):
            _validate(
                registry,
                context,
                ActionType.UPDATE_PIPELINE_STAGE,
                {"target_stage_id": "stage-discovery"},
            )

    async def test_stage_name_filled_from_pipeline(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.UPDATE_PIPELINE_STAGE,
            {"target_stage_id": "stage-proposal", "target_stage_name": "wrong"},
        )
        assert details["target_stage_name"] == "Proposal"

    @pytest.mark.asyncio
    async def test_stage_execution_moves_opportunity(self, registry, repo) -> None:
        action = make_action(
            action_type="UPDATE_PIPELINE_STAGE", details={"target_stage_id": "stage-proposal"}
        )
        result = await registry.get_handler(ActionType.UPDATE_PIPELINE_STAGE).execute(
            action, "u", object()
        )
        assert result["old_stage_name"] == "Discovery"
        assert result["new_stage_name"] == "Proposal"
        assert repo.opportunities[OPPORTUNITY_ID].stage_id == "stage-proposal"

    async def test_existing_contact_rejected(self, registry, context) -> None:
        with pytest.raises(DetailValidationError, match="already a contact"):
            _validate(
                registry,
                context,
                ActionType.ADD_CONTACT,
                {
                    "contact_first_name": " jane ",
                    "contact_last_name": "DOE",
                    "suggested_role": "Champion",
                },
            )

    async def test_new_contact_trimmed_and_lowercased(self, registry, context) -> None:
        details = _validate(
            registry,
            context,
            ActionType.ADD_CONTACT,
            {
                "contact_first_name": " Carol ",
                "contact_last_name": "King ",
                "contact_email": " Carol.King@Acme.com",
                "suggested_role": "Economic Buyer",
            },
        )
        assert details["contact_first_name"] == "Carol"
        assert details["contact_email"] == "carol.king@acme.com"

    @pytest.mark.asyncio
    async def test_add_contact_execution_links_contact_with_role(self, registry, repo) -> None:
        action = make_action(
            action_type="ADD_CONTACT",
            details={
                "contact_first_name": "Carol",
                "contact_last_name": "King",
                "contact_email": "carol.king@acme.com",
                "suggested_role": "Economic Buyer",
            },
        )
        result = await registry.get_handler(ActionType.ADD_CONTACT).execute(action, "u", object())

        assert result["contact_created"] is True
        assert result["contact_id"] in repo.opportunities[OPPORTUNITY_ID].contact_ids
        intelligence = repo.intelligence[(result["contact_id"], OPPORTUNITY_ID)]
        assert intelligence.current_role == "Economic Buyer"
