"""Execution of approved actions and compensating cleanup.

ActionExecutionService runs one APPROVED action through its handler inside
a single transaction: the handler's side effect, the resulting activity
reference and the EXECUTED status commit together. When the handler fails
the transaction rolls back, attachments are released and the action is
marked REJECTED in a separate write; the caller gets a structured failure.

Cleanup of resulting activities is shared with reconciliation: a record is
deleted only while it is still pre-commitment (a scheduled email, or a
scheduled/to-do activity or event). Sent or completed records are kept.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipeline.actions.errors import ExecutionError, NotFoundError, StateConflictError
from src.pipeline.actions.registry import ActionTypeRegistry
from src.pipeline.actions.repository import ActionRepository
from src.pipeline.actions.schemas import (
    OPEN_STATUSES,
    ActionStatus,
    ActivityKind,
    ActivityRef,
    ActivityStatus,
    ProposedAction,
    utc_now,
)
from src.pipeline.core.monitoring import action_executions_total, activity_cleanups_total

logger = structlog.get_logger(__name__)

CLEANABLE_EMAIL_STATUSES = frozenset({ActivityStatus.SCHEDULED.value})
CLEANABLE_STATUSES = frozenset({ActivityStatus.SCHEDULED.value, ActivityStatus.TO_DO.value})


@dataclass
class ExecutionOutcome:
    """Structured result of an execution attempt."""

    success: bool
    executed_at: datetime | None = None
    details: dict[str, Any] | None = None
    error: str | None = None


def attachment_refs(action: ProposedAction) -> list[dict[str, Any]]:
    attachments = action.details.get("attachments") or []
    return [a for a in attachments if isinstance(a, dict) and a.get("id")]


class ActionExecutionService:
    """Executes approved actions and unwinds their side effects.

    Args:
        repository: Pipeline persistence.
        registry: Action type registry.
    """

    def __init__(self, repository: ActionRepository, registry: ActionTypeRegistry) -> None:
        self._repository = repository
        self._registry = registry

    async def execute(self, action_id: str, actor_id: str) -> ExecutionOutcome:
        """Execute an APPROVED action.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is not APPROVED. Nothing is changed.
        """
        action_type = "unknown"
        try:
            async with self._repository.transaction() as session:
                action = await self._repository.get_action(
                    action_id, session=session, for_update=True
                )
                if action is None:
                    raise NotFoundError("ProposedAction", action_id)
                if action.status != ActionStatus.APPROVED:
                    raise StateConflictError(
                        action_id,
                        action.status.value,
                        f"Action {action_id} is not approved for execution "
                        f"(status: {action.status.value})",
                    )
                action_type = action.type.value

                handler = self._registry.get_handler(action.type)
                if handler is None:
                    raise ExecutionError(f"No handler registered for {action.type.value}")

                logger.info("action_execution_started", action_id=action_id, action_type=action_type)
                result = await handler.execute(action, actor_id, session)

                resulting = list(action.resulting_activities)
                if result.get("activity_id") and result.get("activity_kind"):
                    resulting.append(
                        ActivityRef(
                            activity_id=result["activity_id"],
                            activity_kind=ActivityKind(result["activity_kind"]),
                        )
                    )
                executed_at = utc_now()
                await self._repository.save_action(
                    action.model_copy(
                        update={
                            "status": ActionStatus.EXECUTED,
                            "executed_at": executed_at,
                            "resulting_activities": resulting,
                        }
                    ),
                    session=session,
                )
        except (NotFoundError, StateConflictError):
            raise
        except Exception as exc:
            logger.warning(
                "action_execution_failed",
                action_id=action_id,
                action_type=action_type,
                error=str(exc),
                exc_info=True,
            )
            action_executions_total.labels(action_type=action_type, outcome="failed").inc()
            await self._mark_failed(action_id)
            return ExecutionOutcome(success=False, error=str(exc) or type(exc).__name__)

        action_executions_total.labels(action_type=action_type, outcome="executed").inc()
        logger.info("action_executed", action_id=action_id, action_type=action_type)
        return ExecutionOutcome(success=True, executed_at=executed_at, details=result)

    async def _mark_failed(self, action_id: str) -> None:
        """Release attachments and mark the action REJECTED, best effort."""
        try:
            action = await self._repository.get_action(action_id)
            if action is None:
                return
            async with self._repository.transaction() as session:
                released = await self.release_attachments(action, session=session)
                await self._repository.save_action(
                    action.model_copy(
                        update={"status": ActionStatus.REJECTED, "executed_at": utc_now()}
                    ),
                    session=session,
                )
            await self.remove_attachment_files(released)
        except Exception:
            logger.warning("action_failure_update_failed", action_id=action_id, exc_info=True)

    async def schedule_execution(
        self, action_id: str, scheduled_for: datetime
    ) -> ProposedAction:
        """Record when an open action should be executed.

        Raises:
            NotFoundError: The action does not exist.
            StateConflictError: The action is no longer open.
        """
        async with self._repository.transaction() as session:
            action = await self._repository.get_action(
                action_id, session=session, for_update=True
            )
            if action is None:
                raise NotFoundError("ProposedAction", action_id)
            if action.status not in OPEN_STATUSES:
                raise StateConflictError(action_id, action.status.value)
            updated = action.model_copy(update={"scheduled_for": scheduled_for})
            await self._repository.save_action(updated, session=session)
        logger.info(
            "action_execution_scheduled",
            action_id=action_id,
            scheduled_for=scheduled_for.isoformat(),
        )
        return updated

    # ── Cleanup ─────────────────────────────────────────────────────────────

    async def cleanup_resulting_activity(
        self, ref: ActivityRef, session: AsyncSession | None = None
    ) -> bool:
        """Delete a resulting activity if it is still pre-commitment.

        Returns:
            True if the record was deleted.
        """
        activity = await self._repository.get_activity(ref.activity_id, session=session)
        if activity is None:
            logger.info("resulting_activity_missing", activity_id=ref.activity_id)
            activity_cleanups_total.labels(
                activity_kind=ref.activity_kind.value, result="missing"
            ).inc()
            return False

        allowed = (
            CLEANABLE_EMAIL_STATUSES
            if activity.kind == ActivityKind.EMAIL
            else CLEANABLE_STATUSES
        )
        if activity.status not in allowed:
            logger.info(
                "resulting_activity_not_cleanable",
                activity_id=activity.id,
                activity_kind=activity.kind.value,
                status=activity.status,
            )
            activity_cleanups_total.labels(
                activity_kind=activity.kind.value, result="kept"
            ).inc()
            return False

        await self._repository.delete_activity(activity.id, session=session)
        activity_cleanups_total.labels(activity_kind=activity.kind.value, result="deleted").inc()
        logger.info(
            "resulting_activity_deleted",
            activity_id=activity.id,
            activity_kind=activity.kind.value,
        )
        return True

    async def unwind_resulting_activities(
        self, action: ProposedAction, session: AsyncSession | None = None
    ) -> int:
        """Clean up every resulting activity of ``action``. Failures are logged.

        Each cleanup runs in its own savepoint so a failed delete does not
        abort the caller's transaction.

        Returns:
            Number of records deleted.
        """
        deleted = 0
        for ref in action.resulting_activities:
            try:
                async with self._repository.savepoint(session) as scoped:
                    if await self.cleanup_resulting_activity(ref, session=scoped):
                        deleted += 1
            except Exception:
                logger.warning(
                    "resulting_activity_cleanup_failed",
                    action_id=action.id,
                    activity_id=ref.activity_id,
                    exc_info=True,
                )
        return deleted

    async def release_attachments(
        self, action: ProposedAction, session: AsyncSession | None = None
    ) -> list[str]:
        """Delete the action's attachment rows. Failures are logged.

        Files stay on disk: pass the returned paths to
        ``remove_attachment_files`` once the transaction has committed.

        Returns:
            File paths of the released attachments.
        """
        attachments = attachment_refs(action)
        if not attachments:
            return []
        try:
            async with self._repository.savepoint(session) as scoped:
                count = await self._repository.delete_attachments(
                    [a["id"] for a in attachments], session=scoped
                )
        except Exception:
            logger.warning("attachment_release_failed", action_id=action.id, exc_info=True)
            return []
        logger.info("attachments_released", action_id=action.id, count=count)
        return [a["file_path"] for a in attachments if a.get("file_path")]

    async def remove_attachment_files(self, paths: list[str]) -> None:
        """Unlink released attachment files, best effort."""
        for path in paths:
            try:
                await asyncio.to_thread(Path(path).unlink, missing_ok=True)
            except OSError:
                logger.warning("attachment_file_remove_failed", path=path, exc_info=True)
