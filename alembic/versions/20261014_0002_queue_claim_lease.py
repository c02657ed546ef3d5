"""Add claim lease columns to the delivery queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("issue_delivery_queue") as batch_op:
        batch_op.add_column(sa.Column("lease_owner", sa.String(), nullable=True))
        batch_op.add_column(
            sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        )
        batch_op.create_index(
            "idx_issue_delivery_queue_lease",
            ["lease_expires_at"],
        )


def downgrade() -> None:
    with op.batch_alter_table("issue_delivery_queue") as batch_op:
        batch_op.drop_index("idx_issue_delivery_queue_lease")
        batch_op.drop_column("lease_expires_at")
        batch_op.drop_column("lease_owner")
