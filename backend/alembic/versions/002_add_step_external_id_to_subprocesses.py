"""add step_external_id to subprocesses

Revision ID: 002
Revises: 001
Create Date: 2025-10-22

Subprocesses created before diagram generation were matched to their step
by name only.
"""
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    from sqlalchemy import inspect as sa_inspect

    inspector = sa_inspect(op.get_bind())
    columns = {c["name"] for c in inspector.get_columns("subprocesses")}
    if "step_external_id" not in columns:
        op.add_column(
            "subprocesses", sa.Column("step_external_id", sa.String(100), nullable=True)
        )
        op.create_index(
            "ix_subprocesses_step_external_id", "subprocesses", ["step_external_id"]
        )


def downgrade() -> None:
    op.drop_index("ix_subprocesses_step_external_id", table_name="subprocesses")
    op.drop_column("subprocesses", "step_external_id")
