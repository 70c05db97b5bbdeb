"""anon muted

Revision ID: 0002_anon_muted
Revises: 0001_anon_tags
Create Date: 2026-10-12 21:51:46.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_anon_muted"
down_revision = "0001_anon_tags"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "anon_muted",
        sa.Column("owner_id", sa.String(), primary_key=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("anon_muted")
