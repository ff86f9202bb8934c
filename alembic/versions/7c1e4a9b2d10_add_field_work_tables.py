"""Add work order drafts and certification call logs.

Revision ID: 7c1e4a9b2d10
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    draft_kind = postgresql.ENUM(
        "equipment",
        "work_complete",
        name="workorderdraftkind",
    )
    draft_kind.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "work_order_drafts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("work_id", sa.String(length=64), nullable=False),
        sa.Column(
            "draft_kind",
            postgresql.ENUM(
                "equipment",
                "work_complete",
                name="workorderdraftkind",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column("fingerprint", sa.Text()),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("work_id", "draft_kind", name="uq_work_order_drafts_work_kind"),
    )
    op.create_index("ix_work_order_drafts_work_id", "work_order_drafts", ["work_id"])

    op.create_table(
        "certification_call_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("work_id", sa.String(length=64), nullable=False),
        sa.Column("contract_id", sa.String(length=64)),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("success", sa.Boolean()),
        sa.Column("result_code", sa.String(length=40)),
        sa.Column("message", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_certification_call_logs_work_id", "certification_call_logs", ["work_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_certification_call_logs_work_id", table_name="certification_call_logs")
    op.drop_table("certification_call_logs")
    op.drop_index("ix_work_order_drafts_work_id", table_name="work_order_drafts")
    op.drop_table("work_order_drafts")
    postgresql.ENUM(name="workorderdraftkind").drop(op.get_bind(), checkfirst=True)
