"""milestone submit / approve / reject workflow

Revision ID: 0002_milestone_workflow
Revises: 0001_escrow_core
Create Date: 2026-10-20 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_milestone_workflow"
down_revision: Union[str, Sequence[str], None] = "0001_escrow_core"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "escrow_milestones",
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
    )
    op.add_column("escrow_milestones", sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("escrow_milestones", sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("escrow_milestones", sa.Column("rejection_reason", sa.String(length=500), nullable=True))
    op.create_check_constraint(
        "ck_escrow_milestone_status",
        "escrow_milestones",
        "status IN ('pending','submitted','approved','rejected')",
    )


def downgrade() -> None:
    op.drop_constraint("ck_escrow_milestone_status", "escrow_milestones", type_="check")
    op.drop_column("escrow_milestones", "rejection_reason")
    op.drop_column("escrow_milestones", "approved_at")
    op.drop_column("escrow_milestones", "submitted_at")
    op.drop_column("escrow_milestones", "status")
