"""escrow core tables

Revision ID: 0001_escrow_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_escrow_core"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(28, 8)
Rate = sa.Numeric(10, 6)


def _ts(name, nullable=True, default_now=False):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default_now else None,
    )


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=256), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("admin_role", sa.String(length=16), nullable=True),
        sa.Column("permissions", JSONType, nullable=False),
        _ts("created_at", nullable=False, default_now=True),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "escrows",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("escrow_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("buyer_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("buyer_name", sa.String(length=128), nullable=False),
        sa.Column("buyer_email", sa.String(length=256), nullable=False),
        sa.Column("buyer_tier", sa.String(length=16), nullable=False),
        sa.Column("seller_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_name", sa.String(length=128), nullable=False),
        sa.Column("seller_email", sa.String(length=256), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("currency_type", sa.String(length=8), nullable=False),
        sa.Column("buyer_fee_rate", Rate, nullable=True),
        sa.Column("seller_fee_rate", Rate, nullable=True),
        sa.Column("buyer_fee", Money, nullable=True),
        sa.Column("seller_fee", Money, nullable=True),
        sa.Column("buyer_pays", Money, nullable=True),
        sa.Column("net_payout", Money, nullable=True),
        sa.Column("refund_amount", Money, nullable=True),
        sa.Column("released_amount", Money, nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("tracking_number", sa.String(length=128), nullable=True),
        sa.Column("courier_service", sa.String(length=128), nullable=True),
        _ts("delivered_at"),
        sa.Column("inspection_period_days", sa.Integer(), nullable=False),
        _ts("inspection_expires_at"),
        _ts("expires_at"),
        _ts("funded_at"),
        _ts("completed_at"),
        _ts("paid_out_at"),
        _ts("cancelled_at"),
        _ts("archived_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        _ts("created_at", nullable=False, default_now=True),
        _ts("updated_at", nullable=False, default_now=True),
        sa.CheckConstraint("amount > 0", name="ck_escrows_amount_positive"),
    )
    op.create_index("ix_escrows_buyer_status", "escrows", ["buyer_id", "status"])
    op.create_index("ix_escrows_seller_status", "escrows", ["seller_id", "status"])
    op.create_index("ix_escrows_status_expires", "escrows", ["status", "expires_at"])
    op.create_index("ix_escrows_status_inspection", "escrows", ["status", "inspection_expires_at"])

    op.create_table(
        "escrow_timeline",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("escrow_pk", sa.Uuid(), sa.ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("actor_role", sa.String(length=16), nullable=False),
        sa.Column("note", sa.String(length=500), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_escrow_timeline_escrow_seq", "escrow_timeline", ["escrow_pk", "seq"])

    op.create_table(
        "escrow_milestones",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("escrow_pk", sa.Uuid(), sa.ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("amount", Money, nullable=False),
        sa.UniqueConstraint("escrow_pk", "position", name="uq_escrow_milestone_position"),
        sa.CheckConstraint("amount > 0", name="ck_escrow_milestone_amount_positive"),
    )

    op.create_table(
        "disputes",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("dispute_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("escrow_pk", sa.Uuid(), sa.ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("reason", sa.String(length=48), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=False),
        sa.Column("evidence", JSONType, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("initiator_id", sa.String(length=128), nullable=False),
        sa.Column("initiator_role", sa.String(length=16), nullable=False),
        _ts("deadline_at", nullable=False),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        _ts("assigned_at"),
        sa.Column("winner", sa.String(length=16), nullable=True),
        sa.Column("summary", sa.String(length=2000), nullable=True),
        sa.Column("refund_amount", Money, nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        _ts("resolved_at"),
        _ts("created_at", nullable=False, default_now=True),
    )
    op.create_index("ix_disputes_escrow_status", "disputes", ["escrow_pk", "status"])
    op.create_index("ix_disputes_status_created", "disputes", ["status", "created_at"])

    op.create_table(
        "fee_schedules",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("buyer_fee_rate", Rate, nullable=False),
        sa.Column("seller_fee_rate", Rate, nullable=False),
        sa.Column("monthly_cost", Money, nullable=False),
        sa.Column("setup_fee", Money, nullable=False),
        sa.Column("max_transaction_amount", Money, nullable=False),
        sa.Column("max_transactions_per_month", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        _ts("updated_at", nullable=False, default_now=True),
        sa.UniqueConstraint("tier", "currency", name="uq_fee_schedule_tier_currency"),
        sa.CheckConstraint("buyer_fee_rate >= 0 AND buyer_fee_rate < 1", name="ck_fee_schedule_buyer_rate"),
        sa.CheckConstraint("seller_fee_rate >= 0 AND seller_fee_rate < 1", name="ck_fee_schedule_seller_rate"),
        sa.CheckConstraint("max_transaction_amount >= -1", name="ck_fee_schedule_max_amount"),
        sa.CheckConstraint("max_transactions_per_month >= -1", name="ck_fee_schedule_max_tx"),
    )

    op.create_table(
        "fee_history",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("field", sa.String(length=48), nullable=False),
        sa.Column("old_value", Money, nullable=True),
        sa.Column("new_value", Money, nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_fee_history_tier_currency", "fee_history", ["tier", "currency"])
    op.create_index("ix_fee_history_created_at", "fee_history", ["created_at"])

    op.create_table(
        "audit_log_records",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        _ts("created_at", nullable=False, default_now=True),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("route", sa.String(length=256), nullable=True),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_role", sa.String(length=64), nullable=False),
        sa.Column("subject_type", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=96), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("payload_summary_json", JSONType, nullable=False),
    )
    op.create_index("ix_audit_log_records_request_id", "audit_log_records", ["request_id"])
    op.create_index("ix_audit_subject", "audit_log_records", ["subject_type", "subject_id"])
    op.create_index("ix_audit_action", "audit_log_records", ["action"])
    op.create_index("ix_audit_created", "audit_log_records", ["created_at"])

    op.create_table(
        "idempotency_key_records",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint_key", sa.String(length=128), nullable=False),
        sa.Column("idem_key", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_status", sa.String(length=16), nullable=False),
        sa.Column("response_json", JSONType, nullable=False),
        _ts("created_at", nullable=False, default_now=True),
        sa.UniqueConstraint("user_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
    )
    op.create_index("ix_idem_lookup", "idempotency_key_records", ["user_id", "endpoint_key"])


def downgrade():
    op.drop_table("idempotency_key_records")
    op.drop_table("audit_log_records")
    op.drop_table("fee_history")
    op.drop_table("fee_schedules")
    op.drop_table("disputes")
    op.drop_table("escrow_milestones")
    op.drop_table("escrow_timeline")
    op.drop_table("escrows")
    op.drop_table("users")
