"""Crawler jobs and link frontier

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "crawlers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("root_path", sa.Text(), nullable=False, unique=True),
        sa.Column("status", sa.String(10), nullable=False, server_default="idle"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("status", sa.String(10), nullable=False, server_default="fresh"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("origin", sa.Text(), nullable=False, server_default="<ROOT>"),
        sa.Column("crawler_id", sa.Integer(), sa.ForeignKey("crawlers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("crawler_id", "path", name="uq_links_crawler_path"),
    )
    op.create_index("ix_links_crawler_id", "links", ["crawler_id"])
    op.create_index("ix_links_claim", "links", ["crawler_id", "status", "id"])


def downgrade() -> None:
    op.drop_index("ix_links_claim", table_name="links")
    op.drop_index("ix_links_crawler_id", table_name="links")
    op.drop_table("links")
    op.drop_table("crawlers")
