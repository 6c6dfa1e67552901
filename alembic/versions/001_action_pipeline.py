"""Create action pipeline tables.

Revision ID: 001_action_pipeline
Revises:
Create Date: 2026-10-19

Creates the tables for the action pipeline:
- pipeline_stages, opportunities: deals and their pipeline position
- contacts, contact_intelligence: stakeholders and per-deal intelligence
- activities: historical and scheduled activities (generic, email, calendar)
- proposed_actions: recommended actions and their lifecycle
- attachments: files referenced from email action details
- eval_runs: captured oracle calls for offline evaluation

No foreign key constraints (application-level referential integrity via
the repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_action_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _json_column(name: str, default: str) -> sa.Column:
    return sa.Column(
        name, sa.JSON(), server_default=sa.text(f"'{default}'::json"), nullable=False
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── pipeline_stages ──────────────────────────────────────────────────

    op.create_table(
        "pipeline_stages",
        _id_column(),
        sa.Column("pipeline_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("order_index", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_closed_won", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_closed_lost", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_pipeline_stages_pipeline", "pipeline_stages", ["pipeline_id"])

    # ── opportunities ────────────────────────────────────────────────────

    op.create_table(
        "opportunities",
        _id_column(),
        sa.Column("pipeline_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stage_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("probability", sa.Float(), nullable=True),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        _json_column("contact_ids", "[]"),
        _json_column("person_roles", "[]"),
        _json_column("meddpicc", "{}"),
        _json_column("deal_health", "{}"),
        _json_column("risk_factors", "[]"),
        _json_column("key_milestones", "[]"),
        _json_column("next_steps", "[]"),
        *_timestamps(),
    )

    # ── contacts / contact_intelligence ──────────────────────────────────

    op.create_table(
        "contacts",
        _id_column(),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        _json_column("emails", "[]"),
        sa.Column("linkedin_profile", sa.String(500), nullable=True),
        sa.Column("background_info", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "contact_intelligence",
        _id_column(),
        sa.Column("contact_id", UUID(as_uuid=True), nullable=False),
        sa.Column("opportunity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("engagement_score", sa.Float(), nullable=True),
        _json_column("responsiveness", "{}"),
        _json_column("role_assignments", "[]"),
        sa.Column("relationship_story", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "contact_id",
            "opportunity_id",
            name="uq_contact_intelligence_contact_opportunity",
        ),
    )

    # ── activities ───────────────────────────────────────────────────────

    op.create_table(
        "activities",
        _id_column(),
        sa.Column("opportunity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("activity_type", sa.String(50), nullable=True),
        sa.Column(
            "status",
            sa.String(30),
            server_default=sa.text("'completed'"),
            nullable=False,
        ),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        _json_column("contact_ids", "[]"),
        sa.Column("message_id", sa.String(500), nullable=True),
        sa.Column("thread_id", sa.String(500), nullable=True),
        sa.Column("subject", sa.String(500), nullable=True),
        sa.Column("from_address", sa.String(255), nullable=True),
        _json_column("to_addresses", "[]"),
        _json_column("cc_addresses", "[]"),
        sa.Column("is_draft", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_sent", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _json_column("attendees", "[]"),
        sa.Column("location", sa.String(500), nullable=True),
        sa.Column("provider_event_id", sa.String(500), nullable=True),
        _json_column("metadata_json", "{}"),
        sa.Column("created_by", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_activities_opportunity_kind_date",
        "activities",
        ["opportunity_id", "kind", "date"],
    )

    # ── proposed_actions ─────────────────────────────────────────────────

    op.create_table(
        "proposed_actions",
        _id_column(),
        sa.Column("opportunity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'PROPOSED'"),
            nullable=False,
        ),
        _json_column("details", "{}"),
        sa.Column("reasoning", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("5"), nullable=False),
        sa.Column("action_strategy", sa.Text(), nullable=True),
        _json_column("source_activities", "[]"),
        _json_column("resulting_activities", "[]"),
        _json_column("created_by", "{}"),
        sa.Column("last_edited_by", sa.JSON(), nullable=True),
        sa.Column("approved_by", sa.String(100), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_proposed_actions_opportunity_status",
        "proposed_actions",
        ["opportunity_id", "status"],
    )

    # ── attachments ──────────────────────────────────────────────────────

    op.create_table(
        "attachments",
        _id_column(),
        sa.Column("action_id", UUID(as_uuid=True), nullable=True),
        sa.Column("filename", sa.String(500), nullable=False),
        sa.Column("file_path", sa.String(1000), nullable=False),
        sa.Column("content_type", sa.String(200), nullable=False),
        sa.Column("size", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    # ── eval_runs ────────────────────────────────────────────────────────

    op.create_table(
        "eval_runs",
        _id_column(),
        sa.Column("agent_name", sa.String(100), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        _json_column("input_variables", "{}"),
        _json_column("input_messages", "[]"),
        sa.Column("output_text", sa.Text(), nullable=True),
        sa.Column("parsed_output", sa.JSON(), nullable=True),
        _json_column("usage", "{}"),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("model_name", sa.String(200), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_eval_runs_agent_created", "eval_runs", ["agent_name", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_eval_runs_agent_created", table_name="eval_runs")
    op.drop_table("eval_runs")
    op.drop_table("attachments")
    op.drop_index("ix_proposed_actions_opportunity_status", table_name="proposed_actions")
    op.drop_table("proposed_actions")
    op.drop_index("ix_activities_opportunity_kind_date", table_name="activities")
    op.drop_table("activities")
    op.drop_table("contact_intelligence")
    op.drop_table("contacts")
    op.drop_table("opportunities")
    op.drop_index("ix_pipeline_stages_pipeline", table_name="pipeline_stages")
    op.drop_table("pipeline_stages")
