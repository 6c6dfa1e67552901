"""ADD_CONTACT handler: add a newly discovered stakeholder to the deal."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.pipeline.actions.errors import DetailValidationError
from src.pipeline.actions.handlers.base import ActionHandler, normalize_email
from src.pipeline.actions.repository import new_id
from src.pipeline.actions.schemas import (
    ActionPipelineContext,
    ActionType,
    CandidateAction,
    Contact,
    ProposedAction,
    utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)


class PersonRole(str, Enum):
    ECONOMIC_BUYER = "Economic Buyer"
    CHAMPION = "Champion"
    INFLUENCER = "Influencer"
    USER = "User"
    BLOCKER = "Blocker"
    DECISION_MAKER = "Decision Maker"
    OTHER = "Other"
    UNINVOLVED = "Uninvolved"


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class AddContactDetails(BaseModel):
    contact_first_name: str = Field(min_length=1, max_length=100)
    contact_last_name: str = Field(min_length=1, max_length=100)
    contact_email: str | None = None
    contact_title: str | None = Field(default=None, max_length=200)
    suggested_role: PersonRole
    rationale: str | None = None
    linkedin_profile: str | None = None
    background_info: str | None = None
    source_urls: list[str] | None = None


class ComposedAddContactContent(BaseModel):
    rationale: str = Field(min_length=20, max_length=3000)
    contact_email: str | None = None
    contact_title: str | None = Field(default=None, max_length=200)
    linkedin_profile: str | None = None
    background_info: str | None = Field(default=None, max_length=2000)
    source_urls: list[str] | None = None


class AddContactHandler(ActionHandler):
    action_type = ActionType.ADD_CONTACT
    description = (
        "Add a stakeholder who is mentioned in recent activity but is not yet "
        "a contact on the opportunity, with their likely role in the deal."
    )
    details_model = AddContactDetails
    composed_model = ComposedAddContactContent

    def check_details(
        self,
        details: AddContactDetails,
        context: ActionPipelineContext,
        valid_emails: set[str],
        valid_activity_ids: set[str],
    ) -> AddContactDetails:
        first_name = details.contact_first_name.strip()
        last_name = details.contact_last_name.strip()
        if not first_name or not last_name:
            raise DetailValidationError("Contact first and last name are required")
        email = normalize_email(details.contact_email)

        for entry in context.contacts:
            existing = entry.contact
            same_email = bool(email) and any(
                address.lower() == email for address in existing.emails
            )
            same_name = (
                existing.first_name.strip().lower() == first_name.lower()
                and existing.last_name.strip().lower() == last_name.lower()
            )
            if same_email or same_name:
                raise DetailValidationError(
                    f"{first_name} {last_name} is already a contact on this opportunity"
                )

        return details.model_copy(
            update={
                "contact_first_name": first_name,
                "contact_last_name": last_name,
                "contact_email": email,
                "contact_title": _clean(details.contact_title),
                "rationale": _clean(details.rationale),
                "linkedin_profile": _clean(details.linkedin_profile),
                "background_info": _clean(details.background_info),
            }
        )

    def check_composed(
        self, action: CandidateAction, context: ActionPipelineContext
    ) -> dict[str, Any]:
        # Composition may supply the email and title
        return self.validate_details(
            action,
            context,
            context.valid_contact_emails(),
            context.valid_email_activity_ids(),
        )

    async def execute(
        self, action: ProposedAction, actor_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        details = AddContactDetails.model_validate(action.details)

        contact = None
        if details.contact_email:
            contact = await self.repository.find_contact_by_email(
                details.contact_email, session=session
            )
        created = contact is None
        if contact is None:
            contact = await self.repository.create_contact(
                Contact(
                    id=new_id(),
                    first_name=details.contact_first_name,
                    last_name=details.contact_last_name,
                    title=details.contact_title,
                    emails=[details.contact_email] if details.contact_email else [],
                    linkedin_profile=details.linkedin_profile,
                    background_info=details.background_info,
                ),
                session=session,
            )

        role = details.suggested_role.value
        await self.repository.add_contact_to_opportunity(
            action.opportunity_id, contact.id, role, session=session
        )
        await self.repository.append_role_assignment(
            contact.id,
            action.opportunity_id,
            {
                "role": role,
                "assigned_at": utc_now().isoformat(),
                "assigned_by": actor_id,
                "source_action_id": action.id,
                "rationale": details.rationale,
            },
            session=session,
        )
        logger.info(
            "contact_added",
            action_id=action.id,
            contact_id=contact.id,
            created=created,
            role=role,
        )
        return {
            "type": "contact_added",
            "contact_id": contact.id,
            "contact_created": created,
            "role": role,
        }
