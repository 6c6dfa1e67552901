"""Gmail delivery for EMAIL actions.

Messages are encoded as RFC 2822 MIME (plain text plus HTML alternative,
file attachments read from disk) and sent through the Gmail API as the
delegated seller. Replies carry In-Reply-To/References and the Gmail
thread id so they land in the customer's existing thread.
"""

from __future__ import annotations

import asyncio
import base64
from email.message import EmailMessage as MimeMessage
from pathlib import Path

import structlog

from src.pipeline.services.gsuite.auth import GSuiteAuthManager
from src.pipeline.services.gsuite.models import EmailAttachment, EmailMessage, SentEmailResult

logger = structlog.get_logger(__name__)


def _attach(mime: MimeMessage, attachment: EmailAttachment) -> None:
    maintype, _, subtype = attachment.content_type.partition("/")
    mime.add_attachment(
        Path(attachment.file_path).read_bytes(),
        maintype=maintype or "application",
        subtype=subtype or "octet-stream",
        filename=attachment.filename,
    )


def build_mime_message(email: EmailMessage) -> str:
    """Encode ``email`` as a base64url RFC 2822 message for ``messages.send``."""
    mime = MimeMessage()
    mime["To"] = ", ".join(email.to)
    mime["Subject"] = email.subject
    for header, addresses in (("Cc", email.cc), ("Bcc", email.bcc)):
        if addresses:
            mime[header] = ", ".join(addresses)
    if email.in_reply_to:
        mime["In-Reply-To"] = email.in_reply_to
        mime["References"] = email.in_reply_to

    if email.body_text:
        mime.set_content(email.body_text)
        mime.add_alternative(email.body_html, subtype="html")
    else:
        mime.set_content(email.body_html, subtype="html")

    for attachment in email.attachments:
        _attach(mime, attachment)

    return base64.urlsafe_b64encode(mime.as_bytes()).decode()


class GmailService:
    """Sends email from the delegated seller mailbox.

    Args:
        auth_manager: Shared GSuiteAuthManager.
        sender: Mailbox to send from. Defaults to the delegated user.
    """

    def __init__(self, auth_manager: GSuiteAuthManager, sender: str | None = None) -> None:
        self._auth = auth_manager
        self._sender = sender or auth_manager.delegated_user_email

    async def send_email(self, email: EmailMessage) -> SentEmailResult:
        """Send ``email``; the blocking API call runs in a worker thread."""
        service = self._auth.get_gmail_service(self._sender)
        # Attachment reads happen here too
        raw = await asyncio.to_thread(build_mime_message, email)
        body = {"raw": raw}
        if email.thread_id:
            body["threadId"] = email.thread_id

        logger.info(
            "sending_email",
            to=email.to,
            subject=email.subject,
            thread_id=email.thread_id,
            attachments=len(email.attachments),
        )
        result = await asyncio.to_thread(
            lambda: service.users().messages().send(userId="me", body=body).execute()
        )
        return SentEmailResult(
            message_id=result.get("id", ""),
            thread_id=result.get("threadId", ""),
            label_ids=result.get("labelIds", []),
        )
