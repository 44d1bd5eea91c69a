"""add approval_expires_at to pipeline_runs

Revision ID: 8b2e4f6a1c93
Revises: 3f1c2a9d7b4e
Create Date: 2026-10-19 16:40:07.551902

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "8b2e4f6a1c93"
down_revision: Union[str, Sequence[str], None] = "3f1c2a9d7b4e"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "pipeline_runs",
        sa.Column("approval_expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_pipeline_runs_approval_expires_at", "pipeline_runs", ["approval_expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_pipeline_runs_approval_expires_at", table_name="pipeline_runs")
    op.drop_column("pipeline_runs", "approval_expires_at")
