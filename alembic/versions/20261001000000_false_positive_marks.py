"""Add false_positive_marks table for the database mark store.

Revision ID: 20261001000000
Revises:
Create Date: 2026-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "20261001000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "false_positive_marks",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("repository", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("change_set_id", sa.String(length=255), nullable=False),
        sa.Column("check_id", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.String(length=2048), nullable=False),
        sa.Column("line", sa.Integer(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("requester", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approval_state", sa.String(length=32), nullable=False),
        sa.Column("decided_by", sa.String(length=255), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "repository",
            "change_set_id",
            "check_id",
            "file_path",
            "line",
            "content_hash",
            "sequence",
            name="uq_false_positive_marks_key_sequence",
        ),
    )
    op.create_index(
        op.f("ix_false_positive_marks_repository"),
        "false_positive_marks",
        ["repository"],
    )
    op.create_index(
        op.f("ix_false_positive_marks_change_set_id"),
        "false_positive_marks",
        ["change_set_id"],
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_false_positive_marks_change_set_id"), table_name="false_positive_marks")
    op.drop_index(op.f("ix_false_positive_marks_repository"), table_name="false_positive_marks")
    op.drop_table("false_positive_marks")
