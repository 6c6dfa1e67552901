"""EMAIL handler: compose, send or schedule an outbound email.

Recipients are restricted to the opportunity's known contacts. Reply and
thread ids are resolved against email activities in the context and are
never taken from composer output.
"""

from __future__ import annotations

import html
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.errors import DetailValidationError, ExecutionError
from src.pipeline.actions.handlers.base import (
    ActionHandler,
    activity_result,
    ensure_utc,
    filter_emails,
)
from src.pipeline.actions.repository import new_id
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    Activity,
    ActivityKind,
    ActivityStatus,
    CandidateAction,
    ProposedAction,
    utc_now,
)
from src.pipeline.services.gsuite import EmailAttachment, EmailMessage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class AttachmentRef(BaseModel):
    id: str
    filename: str
    file_path: str
    content_type: str = "application/octet-stream"
    size: int = 0


class EmailDetails(BaseModel):
    to: list[str] = Field(min_length=1, description="Recipient contact emails")
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    scheduled_for: datetime | None = Field(
        default=None, description="When to send; omitted means immediately"
    )
    reply_to_message_id: str | None = Field(
        default=None, description="Activity id or message id of the email being answered"
    )
    thread_id: str | None = None
    subject: str | None = None
    body: str | None = None
    attachments: list[AttachmentRef] = Field(default_factory=list)
    priority: Literal["low", "normal", "high"] = "normal"


class ComposedEmailContent(BaseModel):
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=10, max_length=5000)


def _find_email_activity(
    context: ActionPipelineContext, reference: str, valid_activity_ids: set[str]
) -> Activity | None:
    for activity in context.recent_activities:
        if activity.kind != ActivityKind.EMAIL or not activity.message_id:
            continue
        if activity.id == reference and activity.id in valid_activity_ids:
            return activity
        if activity.message_id == reference:
            return activity
    return None


class EmailHandler(ActionHandler):
    action_type = ActionType.EMAIL
    description = (
        "Send an email to one or more contacts on the opportunity, either as a "
        "new message or as a reply in an existing thread. Can be scheduled."
    )
    details_model = EmailDetails
    composed_model = ComposedEmailContent

    def check_details(
        self,
        details: EmailDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> EmailDetails:
        to = filter_emails(details.to, valid_emails)
        if not to:
            raise DetailValidationError(
                f"No valid recipients among {details.to}"
            )
        cc = [a for a in filter_emails(details.cc, valid_emails) if a not in to]
        bcc = filter_emails(details.bcc, valid_emails)

        reply_to = None
        thread_id = None
        if details.reply_to_message_id:
            original = _find_email_activity(
                context, details.reply_to_message_id, valid_activity_ids
            )
            if original is not None:
                reply_to = original.message_id
                thread_id = original.thread_id
            else:
                logger.info(
                    "email_reply_target_unresolved",
                    reference=details.reply_to_message_id,
                )
        elif details.thread_id:
            known_threads = {
                a.thread_id
                for a in context.recent_activities
                if a.kind == ActivityKind.EMAIL and a.thread_id
            }
            if details.thread_id in known_threads:
                thread_id = details.thread_id

        return details.model_copy(
            update={
                "to": to,
                "cc": cc,
                "bcc": bcc,
                "scheduled_for": ensure_utc(details.scheduled_for) or utc_now(),
                "reply_to_message_id": reply_to,
                "thread_id": thread_id,
            }
        )

    async def compose_content(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> dict[str, Any] | None:
        content = await super().compose_content(action, context)
        if content is None:
            return None
        # Threading is resolved during validation only
        content.pop("reply_to_message_id", None)
        content.pop("thread_id", None)
        return content

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = EmailDetails.model_validate(action.details)
        if not details.subject or not details.body:
            raise ExecutionError(f"Email action {action.id} has no composed subject/body")

        now = utc_now()
        scheduled_for = ensure_utc(details.scheduled_for)
        if scheduled_for and scheduled_for > now:
            activity = Activity(
                id=new_id(),
                kind=ActivityKind.EMAIL,
                opportunity_id=action.opportunity_id,
                status=ActivityStatus.SCHEDULED.value,
                title=details.subject,
                subject=details.subject,
                description=details.body,
                date=scheduled_for,
                message_id=f"scheduled-{action.id}-{int(now.timestamp() * 1000)}",
                thread_id=details.thread_id,
                to_addresses=details.to,
                cc_addresses=details.cc,
                metadata={
                    "source_action_id": action.id,
                    "reply_to_message_id": details.reply_to_message_id,
                    "bcc": details.bcc,
                    "attachments": [a.model_dump() for a in details.attachments],
                },
                created_by=actor_id,
            )
            await self.repository.create_activity(activity, session=session)
            logger.info(
                "email_scheduled",
                action_id=action.id,
                activity_id=activity.id,
                scheduled_for=scheduled_for.isoformat(),
            )
            return activity_result(
                "scheduled",
                activity.id,
                ActivityKind.EMAIL,
                scheduled_for=scheduled_for.isoformat(),
            )

        provider = self._deps.email_provider
        if provider is None:
            raise ExecutionError("No email provider configured")

        message = EmailMessage(
            to=details.to,
            cc=details.cc,
            bcc=details.bcc,
            subject=details.subject,
            body_text=details.body,
            body_html=html.escape(details.body).replace("\n", "<br>"),
            thread_id=details.thread_id,
            in_reply_to=details.reply_to_message_id,
            attachments=[
                EmailAttachment(
                    filename=a.filename,
                    file_path=a.file_path,
                    content_type=a.content_type,
                )
                for a in details.attachments
            ],
        )
        try:
            sent = await provider.send_email(message)
        except Exception as exc:
            raise ExecutionError(f"Email send failed: {exc}") from exc

        activity = Activity(
            id=new_id(),
            kind=ActivityKind.EMAIL,
            opportunity_id=action.opportunity_id,
            status=ActivityStatus.SENT.value,
            title=details.subject,
            subject=details.subject,
            description=details.body,
            date=now,
            message_id=sent.message_id,
            thread_id=sent.thread_id,
            to_addresses=details.to,
            cc_addresses=details.cc,
            is_sent=True,
            metadata={"source_action_id": action.id},
            created_by=actor_id,
        )
        await self.repository.create_activity(activity, session=session)
        logger.info("email_sent", action_id=action.id, message_id=sent.message_id)
        return activity_result(
            "sent",
            activity.id,
            ActivityKind.EMAIL,
            message_id=sent.message_id,
            thread_id=sent.thread_id,
        )
