"""add_generation_provider_settings

Revision ID: 8b2e4d6f1a37
Revises: 3f9a1c2d7b10
Create Date: 2025-11-12 14:37:05.611942

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8b2e4d6f1a37"
down_revision: Union[str, Sequence[str], None] = "3f9a1c2d7b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add per-model active provider settings and the job's serving provider."""
    op.create_table(
        "generation_provider_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_type", sa.String(length=64), nullable=False),
        sa.Column("active_provider", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("model_type"),
    )

    op.add_column(
        "generation_jobs",
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="fal-ai"),
    )
    # Endpoint keys now carry the provider
    op.execute("UPDATE generation_jobs SET endpoint_key = 'fal-ai:' || endpoint_key")
    op.execute(
        "UPDATE provider_fallback_metrics SET "
        "active_endpoint = 'fal-ai:' || active_endpoint, "
        "fallback_endpoint = 'fal-ai:' || fallback_endpoint"
    )


def downgrade() -> None:
    """Drop provider settings and restore provider-less endpoint keys."""
    op.execute(
        "UPDATE provider_fallback_metrics SET "
        "active_endpoint = split_part(active_endpoint, ':', 2) || ':' "
        "|| split_part(active_endpoint, ':', 3), "
        "fallback_endpoint = split_part(fallback_endpoint, ':', 2) || ':' "
        "|| split_part(fallback_endpoint, ':', 3)"
    )
    op.execute(
        "UPDATE generation_jobs SET endpoint_key = split_part(endpoint_key, ':', 2) || ':' "
        "|| split_part(endpoint_key, ':', 3)"
    )
    op.drop_column("generation_jobs", "provider")
    op.drop_table("generation_provider_settings")
