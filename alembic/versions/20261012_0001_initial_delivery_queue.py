"""Initial newsletter issue and delivery queue schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "newsletter_issues",
        sa.Column("newsletter_issue_id", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text(), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("newsletter_issue_id"),
    )

    op.create_table(
        "issue_delivery_queue",
        sa.Column("newsletter_issue_id", sa.String(), nullable=False),
        sa.Column("subscriber_email", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["newsletter_issue_id"],
            ["newsletter_issues.newsletter_issue_id"],
        ),
        sa.PrimaryKeyConstraint("newsletter_issue_id", "subscriber_email"),
    )


def downgrade() -> None:
    op.drop_table("issue_delivery_queue")
    op.drop_table("newsletter_issues")
