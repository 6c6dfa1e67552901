"""Action pipeline persistence models.

SQLAlchemy models on PipelineBase:
- PipelineStageModel: Ordered stages of a sales pipeline
- OpportunityModel: The deal being worked, with its deal intelligence
- ContactModel: Stakeholders (one or more email addresses)
- ContactIntelligenceModel: Opportunity-scoped intelligence per contact
- ActivityModel: Historical and scheduled activities (generic, email, calendar)
- ProposedActionModel: Actions recommended by the pipeline and their lifecycle
- AttachmentModel: Files attached to proposed email actions
- EvalRunModel: Captured oracle calls for offline evaluation

References between tables are application-level (no FK constraints); the
activity ``kind`` column distinguishes generic, email and calendar records.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.pipeline.core.database import PipelineBase


class PipelineStageModel(PipelineBase):
    """A stage within a sales pipeline, ordered by ``order_index``."""

    __tablename__ = "pipeline_stages"
    __table_args__ = (Index("ix_pipeline_stages_pipeline", "pipeline_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    pipeline_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    is_closed_won: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    is_closed_lost: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class OpportunityModel(PipelineBase):
    """Deal being worked by the seller.

    Deal intelligence (MEDDPICC, deal health, risks, milestones, next steps)
    is stored as JSON documents maintained by upstream intelligence jobs.
    """

    __tablename__ = "opportunities"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    pipeline_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    stage_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    probability: Mapped[float | None] = mapped_column(Float, nullable=True)
    expected_close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_ids: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    person_roles: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    meddpicc: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    deal_health: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    risk_factors: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    key_milestones: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    next_steps: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(PipelineBase):
    """Stakeholder. The first entry of ``emails`` is the primary address."""

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    emails: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    linkedin_profile: Mapped[str | None] = mapped_column(String(500), nullable=True)
    background_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactIntelligenceModel(PipelineBase):
    """Opportunity-scoped intelligence for one contact."""

    __tablename__ = "contact_intelligence"
    __table_args__ = (
        UniqueConstraint(
            "contact_id",
            "opportunity_id",
            name="uq_contact_intelligence_contact_opportunity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    opportunity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    engagement_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    responsiveness: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    role_assignments: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    relationship_story: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ActivityModel(PipelineBase):
    """Activity record of kind ``activity``, ``email`` or ``calendar``.

    Email columns (message_id, thread_id, addresses, draft/sent flags) and
    calendar columns (start/end time, attendees, provider event id) are only
    populated for their kind.
    """

    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_opportunity_kind_date", "opportunity_id", "kind", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    opportunity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    activity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), default="completed", server_default=text("'completed'")
    )
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    contact_ids: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    message_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    thread_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_addresses: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    cc_addresses: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    is_draft: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    is_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    attendees: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    provider_event_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ProposedActionModel(PipelineBase):
    """A recommended action and its lifecycle state.

    ``source_activities`` and ``resulting_activities`` hold lists of
    ``{"activity_id", "activity_kind"}`` references. ``created_by`` and
    ``last_edited_by`` hold actor tags ``{"type", "id", "at"}``.
    """

    __tablename__ = "proposed_actions"
    __table_args__ = (
        Index("ix_proposed_actions_opportunity_status", "opportunity_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    opportunity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="PROPOSED", server_default=text("'PROPOSED'")
    )
    details: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    reasoning: Mapped[str] = mapped_column(Text, default="", server_default=text("''"))
    priority: Mapped[int] = mapped_column(Integer, default=5, server_default=text("5"))
    action_strategy: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_activities: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    resulting_activities: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    created_by: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    last_edited_by: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class AttachmentModel(PipelineBase):
    """Stored file referenced from an email action's details."""

    __tablename__ = "attachments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    action_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    content_type: Mapped[str] = mapped_column(String(200), nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class EvalRunModel(PipelineBase):
    """One captured oracle call (prompt, output, usage, latency)."""

    __tablename__ = "eval_runs"
    __table_args__ = (Index("ix_eval_runs_agent_created", "agent_name", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    input_variables: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    input_messages: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    output_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    parsed_output: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    usage: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
