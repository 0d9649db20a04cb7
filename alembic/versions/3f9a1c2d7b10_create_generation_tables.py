"""create_generation_tables

Revision ID: 3f9a1c2d7b10
Revises:
Create Date: 2025-11-03 10:12:41.208317

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum("IN_QUEUE", "IN_PROGRESS", "COMPLETED", "FAILED", name="jobstatus")
ledger_entry_kind = sa.Enum("RESERVE", "REFUND", name="ledgerentrykind")


def upgrade() -> None:
    """Create points ledger, session, style, job and fallback metric tables."""
    op.create_table(
        "user_points",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_user_points_balance_non_negative"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "points_ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", ledger_entry_kind, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "kind", name="uq_points_ledger_job_kind"),
    )
    op.create_index("ix_points_ledger_entries_job_id", "points_ledger_entries", ["job_id"])
    op.create_index("ix_points_ledger_entries_user_id", "points_ledger_entries", ["user_id"])

    op.create_table(
        "generation_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_sessions_user_id", "generation_sessions", ["user_id"])

    op.create_table(
        "art_styles",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.PrimaryKeyConstraint("id"),
    )
    # Style 1 is "no style"
    op.execute("INSERT INTO art_styles (id, name, prompt) VALUES (1, 'No style', '')")

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("input_image_urls", sa.JSON(), nullable=True),
        sa.Column("style_id", sa.Integer(), nullable=False),
        sa.Column("aspect_ratio", sa.String(length=10), nullable=False),
        sa.Column("num_images", sa.Integer(), nullable=False),
        sa.Column("model_type", sa.String(length=50), nullable=False),
        sa.Column("resolution", sa.String(length=10), nullable=True),
        sa.Column("endpoint_key", sa.String(length=100), nullable=False),
        sa.Column("correlation_id", sa.String(length=255), nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("image_urls", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("points_reserved", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["generation_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_session_id", "generation_jobs", ["session_id"])
    op.create_index("ix_generation_jobs_correlation_id", "generation_jobs", ["correlation_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])

    op.create_table(
        "provider_fallback_metrics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("active_endpoint", sa.String(length=100), nullable=False),
        sa.Column("fallback_endpoint", sa.String(length=100), nullable=False),
        sa.Column("error_type", sa.String(length=100), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_provider_fallback_metrics_user_id", "provider_fallback_metrics", ["user_id"]
    )
    op.create_index(
        "ix_provider_fallback_metrics_created_at", "provider_fallback_metrics", ["created_at"]
    )


def downgrade() -> None:
    """Drop all generation tables and enum types."""
    op.drop_table("provider_fallback_metrics")
    op.drop_table("generation_jobs")
    op.drop_table("art_styles")
    op.drop_table("generation_sessions")
    op.drop_table("points_ledger_entries")
    op.drop_table("user_points")
    job_status.drop(op.get_bind(), checkfirst=True)
    ledger_entry_kind.drop(op.get_bind(), checkfirst=True)
