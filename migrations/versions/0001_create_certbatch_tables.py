"""create template, batch, participant and certificate id tables

Revision ID: 0001
Revises: 
Create Date: 2024-03-15 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("file_path", sa.String(500), nullable=True),
        sa.Column("storage_key", sa.String(500), nullable=True),
        sa.Column("surface_kind", sa.String(10), nullable=False, server_default="pdf"),
        sa.Column("image_format", sa.String(10), nullable=True),
        sa.Column("placement_config", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("event_categories", sa.JSON(), nullable=False),
        sa.Column("template_id", sa.Integer(), sa.ForeignKey("templates.id"), nullable=True),
        sa.Column("total_participants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("certificates_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sr_no", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("certificate_id", sa.String(50), nullable=False),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("certificate_path", sa.String(500), nullable=True),
        sa.Column("cloud_url", sa.String(1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("certificate_id", name="uq_participants_certificate_id"),
    )
    op.create_index("ix_participants_email", "participants", ["email"])
    op.create_index("ix_participants_batch_id", "participants", ["batch_id"])
    op.create_table(
        "certificate_id_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("certificate_id", sa.String(50), nullable=False),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("event_prefix", sa.String(10), nullable=False, server_default="SOU"),
        sa.Column("generated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("certificate_id", name="uq_certificate_id_logs_certificate_id"),
    )
    op.create_index("ix_certificate_id_logs_batch_id", "certificate_id_logs", ["batch_id"])
    op.create_index("ix_certificate_id_logs_generated_at", "certificate_id_logs", ["generated_at"])


def downgrade() -> None:
    op.drop_index("ix_certificate_id_logs_generated_at", table_name="certificate_id_logs")
    op.drop_index("ix_certificate_id_logs_batch_id", table_name="certificate_id_logs")
    op.drop_table("certificate_id_logs")
    op.drop_index("ix_participants_batch_id", table_name="participants")
    op.drop_index("ix_participants_email", table_name="participants")
    op.drop_table("participants")
    op.drop_table("batches")
    op.drop_table("templates")
