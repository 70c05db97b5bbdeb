"""anon tags

Revision ID: 0001_anon_tags
Revises: 
Create Date: 2026-10-12 21:51:31.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_anon_tags"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "anon_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("tag", sa.Integer(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        # Concurrent allocators racing for one tag in one window must not both commit.
        sa.UniqueConstraint("window_start", "tag", name="uq_anon_tags_window_tag"),
    )
    op.create_index("ix_anon_tags_owner_window", "anon_tags", ["owner_id", "window_start"])


def downgrade() -> None:
    op.drop_index("ix_anon_tags_owner_window", table_name="anon_tags")
    op.drop_table("anon_tags")
