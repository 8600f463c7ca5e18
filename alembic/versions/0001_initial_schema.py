"""Initial knowledge, investigation and pattern tables.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "knowledge",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("topic", sa.String(length=200), nullable=False),
        sa.Column("fact", sa.Text(), nullable=False),
        sa.Column("context", sa.Text()),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0.8"),
        sa.Column("source", sa.String(length=20), nullable=False, server_default="discovered"),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_verified", sa.DateTime(timezone=True)),
        sa.Column("contradicts_id", sa.Integer(), sa.ForeignKey("knowledge.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used", sa.DateTime(timezone=True)),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="check_knowledge_confidence"),
    )
    op.create_index("ix_knowledge_topic", "knowledge", ["topic"])
    op.create_index("ix_knowledge_topic_is_valid", "knowledge", ["topic", "is_valid"])

    op.create_table(
        "investigations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("thread_id", sa.BigInteger(), nullable=False),
        sa.Column("trigger", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolution", sa.Text()),
    )
    op.create_index("ix_investigations_thread_id", "investigations", ["thread_id"])
    op.create_index("ix_investigations_resolved", "investigations", ["resolved"])
    op.create_index(
        "ix_investigations_thread_resolved",
        "investigations",
        ["thread_id", "resolved"],
    )

    op.create_table(
        "investigation_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "investigation_id",
            sa.Integer(),
            sa.ForeignKey("investigations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("plugin", sa.String(length=100)),
        sa.Column("result_summary", sa.Text()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_investigation_steps_investigation_id",
        "investigation_steps",
        ["investigation_id"],
    )

    op.create_table(
        "patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symptom", sa.Text(), nullable=False),
        sa.Column("common_cause", sa.Text()),
        sa.Column("resolution", sa.Text()),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_seen", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_patterns_symptom", "patterns", ["symptom"])
    op.create_index("ix_patterns_occurrence_count", "patterns", ["occurrence_count"])


def downgrade() -> None:
    op.drop_index("ix_patterns_occurrence_count", table_name="patterns")
    op.drop_index("ix_patterns_symptom", table_name="patterns")
    op.drop_table("patterns")
    op.drop_index("ix_investigation_steps_investigation_id", table_name="investigation_steps")
    op.drop_table("investigation_steps")
    op.drop_index("ix_investigations_thread_resolved", table_name="investigations")
    op.drop_index("ix_investigations_resolved", table_name="investigations")
    op.drop_index("ix_investigations_thread_id", table_name="investigations")
    op.drop_table("investigations")
    op.drop_index("ix_knowledge_topic_is_valid", table_name="knowledge")
    op.drop_index("ix_knowledge_topic", table_name="knowledge")
    op.drop_table("knowledge")
