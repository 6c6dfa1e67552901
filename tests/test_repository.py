"""Tests for ActionRepository row conversion and session handling.

Uses a mocked AsyncSession; no database required.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.pipeline.actions.repository import (
    ActionRepository,
    _action_values,
    _activity_to_model,
    _model_to_action,
    _model_to_activity,
)
from src.pipeline.actions.schemas import (
    ActionStatus,
    ActionType,
    Activity,
    ActivityKind,
    ActivityRef,
    ActorTag,
    ActorType,
    ProposedAction,
)
from src.pipeline.models.pipeline import ProposedActionModel

ACTION_ID = str(uuid.uuid4())
OPPORTUNITY_ID = str(uuid.uuid4())
ACTIVITY_ID = str(uuid.uuid4())


def _make_session(model=None) -> MagicMock:
    session = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = model
    session.execute = AsyncMock(return_value=result)
    return session


def _session_factory(session):
    async def factory():
        yield session

    return factory


class TestConversions:
    def test_action_values_serialize_refs_and_actors(self):
        action = ProposedAction(
            id=ACTION_ID,
            opportunity_id=OPPORTUNITY_ID,
            type=ActionType.TASK,
            status=ActionStatus.EXECUTED,
            details={"title": "Send deck"},
            resulting_activities=[
                ActivityRef(activity_id=ACTIVITY_ID, activity_kind=ActivityKind.ACTIVITY)
            ],
            last_edited_by=ActorTag(type=ActorType.USER, id="user-1"),
        )

        values = _action_values(action)

        assert values["opportunity_id"] == uuid.UUID(OPPORTUNITY_ID)
        assert values["action_type"] == "TASK"
        assert values["status"] == "EXECUTED"
        assert values["resulting_activities"] == [
            {"activity_id": ACTIVITY_ID, "activity_kind": "activity"}
        ]
        assert values["created_by"]["type"] == "AI_AGENT"
        assert values["last_edited_by"]["id"] == "user-1"

    def test_model_to_action_defaults_missing_json(self):
        model = ProposedActionModel(
            id=uuid.UUID(ACTION_ID),
            opportunity_id=uuid.UUID(OPPORTUNITY_ID),
            action_type="NO_ACTION",
            status="PROPOSED",
            details=None,
            source_activities=None,
            resulting_activities=None,
            created_by=None,
            last_edited_by=None,
        )

        action = _model_to_action(model)

        assert action.id == ACTION_ID
        assert action.type == ActionType.NO_ACTION
        assert action.details == {}
        assert action.source_activities == []
        assert action.created_by.type == ActorType.AI_AGENT
        assert action.last_edited_by is None

    def test_activity_metadata_maps_to_json_column(self):
        activity = Activity(
            id=ACTIVITY_ID,
            kind=ActivityKind.EMAIL,
            opportunity_id=OPPORTUNITY_ID,
            status="scheduled",
            date=datetime(2026, 3, 2, tzinfo=timezone.utc),
            to_addresses=["jane.doe@acme.com"],
            metadata={"source_action_id": ACTION_ID},
        )

        model = _activity_to_model(activity)

        assert model.metadata_json == {"source_action_id": ACTION_ID}
        assert _model_to_activity(model) == activity


class TestActionRepository:
    async def test_get_action_for_update_locks_row(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        assert await repository.get_action(ACTION_ID, session=session, for_update=True) is None

        statement = session.execute.call_args.args[0]
        assert "FOR UPDATE" in str(statement)

    async def test_get_action_without_lock(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        await repository.get_action(ACTION_ID, session=session)

        assert "FOR UPDATE" not in str(session.execute.call_args.args[0])

    async def test_transaction_wraps_block_in_begin(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        async with repository.transaction() as active:
            assert active is session

        session.begin.assert_called_once()
        session.begin.return_value.__aexit__.assert_awaited_once()

    async def test_transaction_propagates_errors(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        with pytest.raises(RuntimeError, match="handler failed"):
            async with repository.transaction():
                raise RuntimeError("handler failed")

        exc_type = session.begin.return_value.__aexit__.call_args.args[0]
        assert exc_type is RuntimeError

    async def test_savepoint_rolls_back_only_nested_block(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        with pytest.raises(RuntimeError, match="delete failed"):
            async with repository.savepoint(session) as scoped:
                assert scoped is session
                raise RuntimeError("delete failed")

        session.begin_nested.assert_called_once()
        exc_type = session.begin_nested.return_value.__aexit__.call_args.args[0]
        assert exc_type is RuntimeError
        session.begin.assert_not_called()

    async def test_savepoint_without_session_is_passthrough(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        async with repository.savepoint(None) as scoped:
            assert scoped is None

        session.begin_nested.assert_not_called()

    async def test_calls_without_session_open_their_own(self):
        session = _make_session()
        repository = ActionRepository(_session_factory(session))

        await repository.get_action(ACTION_ID)

        session.begin.assert_called_once()
        session.execute.assert_awaited_once()
